"""
Per-provider extraction of artifact URLs from raw prediction output.

Providers disagree on output shape: a bare string, a list of strings, or
a dict whose URL sits under one of several keys.  Each backend names its
adapter in ``config_data/backends.yaml`` instead of guessing.
"""
from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlparse

OutputAdapter = Callable[[Any], List[str]]

# Lookup order for mesh-producing models.
_MESH_KEYS = ("mesh", "glb", "model", "output", "url")


def _as_url(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    if isinstance(value, dict):
        inner = value.get("url")
        if isinstance(inner, str) and inner.strip():
            return inner.strip()
    if isinstance(value, list):
        for item in value:
            url = _as_url(item)
            if url:
                return url
    return None


def uri_output(output: Any) -> List[str]:
    """Single artifact: a string, or the first usable entry of a list."""
    url = _as_url(output)
    return [url] if url else []


def uri_list_output(output: Any) -> List[str]:
    """Every artifact in a list output (multi-image models)."""
    if isinstance(output, list):
        return [u for u in (_as_url(item) for item in output) if u]
    return uri_output(output)


def mesh_output(output: Any) -> List[str]:
    """Mesh models return a dict keyed by mesh/glb/model/output/url, or a bare URL."""
    if isinstance(output, dict):
        for key in _MESH_KEYS:
            url = _as_url(output.get(key))
            if url:
                return [url]
        return []
    return uri_output(output)


_ADAPTERS: Dict[str, OutputAdapter] = {
    "uri": uri_output,
    "uri_list": uri_list_output,
    "mesh": mesh_output,
}


def get_output_adapter(name: str) -> OutputAdapter:
    key = str(name).lower().strip()
    if key not in _ADAPTERS:
        available = ", ".join(sorted(_ADAPTERS))
        raise ValueError(f"Unknown output adapter '{name}'. Available: {available}")
    return _ADAPTERS[key]


# ── Model formats ─────────────────────────────────────────────────────

MODEL_EXPORT_FORMATS = ["GLB", "OBJ", "GLTF", "ZIP"]

_FORMAT_CONTENT_TYPES = {
    "glb": "model/gltf-binary",
    "gltf": "model/gltf+json",
    "obj": "text/plain",
    "zip": "application/zip",
}


def detect_model_format(url: str) -> str:
    """Lower-case file extension for a mesh URL; GLB when unknown."""
    path = urlparse(url).path.lower()
    for ext in ("gltf", "obj", "zip", "glb"):
        if path.endswith("." + ext):
            return ext
    return "glb"


def model_content_type(ext: str) -> str:
    return _FORMAT_CONTENT_TYPES.get(ext, "application/octet-stream")
