"""Tests for the two-scene prompt split."""
from media_engine.api.jobs.scene_splitter import (
    FALLBACK_PROGRESSION,
    action_progression,
    extract_base_context,
    split_prompt,
)


def test_base_context_picks_subject_setting_and_style():
    ctx = extract_base_context("A red fox running through a snowy forest, cinematic and moody")
    assert "Consistent character(s): A red fox running through a snowy forest" in ctx
    assert "Setting: through a snowy forest" in ctx
    assert "Visual style: cinematic, moody" in ctx
    assert ctx.endswith(".")


def test_base_context_empty_without_cues():
    assert extract_base_context("fireworks") == ""


def test_progression_escalates_first_action_verb():
    assert "The spinning motion intensifies" in action_progression("a top spinning on glass")
    assert action_progression("a still lake") == FALLBACK_PROGRESSION


def test_split_produces_two_timed_scenes():
    result = split_prompt("A ship tossed by waves under a stormy sky.", scene_seconds=5)
    first, second = result.scenes
    assert "SCENE 1 (First 5 seconds): A ship tossed by waves under a stormy sky." in first
    assert "SCENE 2 (Continuation, seconds 5-10)" in second
    assert "The tossed motion intensifies" in second
    assert first.startswith(result.base_context)
    assert second.startswith(result.base_context)


def test_split_is_deterministic():
    assert split_prompt("The city at night") == split_prompt("The city at night")


def test_second_scene_keeps_subject_and_setting():
    result = split_prompt("A kite rises over a beach")
    assert result.base_context == "Consistent character(s): A kite rises over a beach."
    for scene in result.scenes:
        assert "kite" in scene
        assert "beach" in scene
    assert FALLBACK_PROGRESSION in result.scenes[1]
