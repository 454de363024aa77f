"""Deterministic two-scene split for long videos without explicit scenes.

Both scenes repeat a base context (subject, setting, style words pulled
from the prompt) so the video model keeps characters and look consistent
across the cut; the second scene escalates the first action verb found.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List

_SUBJECT_RE = re.compile(r"\b(A|An|The)\s+([^,.]+(?:and [^,.]+)?)", re.IGNORECASE)
_SETTING_WORDS = ("in", "under", "on", "beside", "through", "across")
_STYLE_RE = re.compile(
    r"\b(cinematic|dramatic|epic|intense|ethereal|mystical|vibrant|dark|bright|"
    r"moody|surreal|realistic|stylized)\b",
    re.IGNORECASE,
)
_ACTION_RE = re.compile(
    r"\b(tossed|navigates|emerges|writhing|swoops|pans|fixates|creaking|ascending|"
    r"descending|moving|falling|rising|turning|spinning|exploding|collapsing)\b",
    re.IGNORECASE,
)

FALLBACK_PROGRESSION = (
    "The action continues with increasing intensity, building toward a dramatic climax "
    "while maintaining all visual elements from the previous scene"
)


@dataclass(frozen=True)
class SplitResult:
    base_context: str
    scenes: List[str]


def extract_base_context(prompt: str) -> str:
    """Subject, setting and style cues shared by every scene ('' if none)."""
    parts: List[str] = []

    subject = _SUBJECT_RE.search(prompt)
    if subject:
        parts.append(f"Consistent character(s): {subject.group(0).strip()}")

    for word in _SETTING_WORDS:
        setting = re.search(rf"\b{word}\s+([^,.]+)", prompt, re.IGNORECASE)
        if setting:
            parts.append(f"Setting: {setting.group(0).strip()}")
            break

    styles = _STYLE_RE.findall(prompt)
    if styles:
        parts.append(f"Visual style: {', '.join(styles)}")

    return ". ".join(parts) + "." if parts else ""


def action_progression(prompt: str) -> str:
    verb = _ACTION_RE.search(prompt)
    if verb:
        return (
            "Continue the action with escalating intensity. "
            f"The {verb.group(0)} motion intensifies as the scene progresses toward its climax"
        )
    return FALLBACK_PROGRESSION


def split_prompt(prompt: str, scene_seconds: int = 8) -> SplitResult:
    """Split *prompt* into an establishing scene and a continuation."""
    prompt = prompt.strip().rstrip(".")
    base = extract_base_context(prompt)
    end = scene_seconds * 2
    scene1 = (
        f"{base} SCENE 1 (First {scene_seconds} seconds): {prompt}. "
        "Focus on establishing the scene, characters, and initial action. "
        "Maintain consistent lighting, color palette, and visual style."
    )
    scene2 = (
        f"{base} SCENE 2 (Continuation, seconds {scene_seconds}-{end}): "
        "Continue from the previous scene with the SAME characters, SAME visual style, "
        "SAME color palette, and SAME lighting. "
        f"{action_progression(prompt)}. Ensure seamless visual continuity with Scene 1."
    )
    return SplitResult(base_context=base, scenes=[scene1.strip(), scene2.strip()])
