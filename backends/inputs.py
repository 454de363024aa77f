"""
Map provider-neutral requests onto each prediction model's input schema.
"""
from __future__ import annotations

from typing import Any, Callable, Dict

from .base import GenerationRequest

InputBuilder = Callable[[GenerationRequest], Dict[str, Any]]

_ASPECT_RATIOS = {
    "1:1": 1.0, "16:9": 16 / 9, "9:16": 9 / 16, "4:3": 4 / 3, "3:4": 3 / 4,
    "3:2": 3 / 2, "2:3": 2 / 3, "21:9": 21 / 9, "9:21": 9 / 21,
}


def nearest_aspect_ratio(width: int, height: int) -> str:
    target = width / height
    return min(_ASPECT_RATIOS, key=lambda k: abs(_ASPECT_RATIOS[k] - target))


def _aspect(req: GenerationRequest) -> str:
    if req.aspect_ratio:
        return req.aspect_ratio
    if req.width and req.height:
        return nearest_aspect_ratio(req.width, req.height)
    return "1:1"


def flux_schnell(req: GenerationRequest) -> Dict[str, Any]:
    inp: Dict[str, Any] = {
        "prompt": req.prompt,
        "go_fast": True,
        "megapixels": "1",
        "num_outputs": req.num_outputs,
        "aspect_ratio": _aspect(req),
        "output_format": "webp",
        "output_quality": 80,
        "num_inference_steps": 4,
    }
    if req.seed is not None:
        inp["seed"] = req.seed
    return inp


def real_esrgan(req: GenerationRequest) -> Dict[str, Any]:
    return {"image": req.image_url, "scale": req.scale or 4, "face_enhance": False}


def pixverse(req: GenerationRequest) -> Dict[str, Any]:
    # The model only accepts 5 or 8 second clips.
    inp: Dict[str, Any] = {
        "prompt": req.prompt,
        "duration": 8 if req.duration and req.duration > 5 else 5,
    }
    if req.negative_prompt:
        inp["negative_prompt"] = req.negative_prompt
    if req.seed is not None:
        inp["seed"] = req.seed
    if req.aspect_ratio:
        inp["aspect_ratio"] = req.aspect_ratio
    if req.image_url and req.image_url.startswith(("http://", "https://")):
        inp["image"] = req.image_url
    return inp


def _hunyuan3d(req: GenerationRequest, *, steps: int, chunks: int, faces: int, octree: int) -> Dict[str, Any]:
    from .. import config as cfg

    return {
        "image": req.image_url,
        "seed": req.seed if req.seed is not None else cfg.DEFAULT_MESH_SEED,
        "steps": req.steps or steps,
        "num_chunks": chunks,
        "max_facenum": faces,
        "guidance_scale": req.guidance if req.guidance is not None else 7.5,
        "generate_texture": True,
        "octree_resolution": octree,
        "remove_background": True,
    }


def hunyuan3d_standard(req: GenerationRequest) -> Dict[str, Any]:
    return _hunyuan3d(req, steps=30, chunks=4000, faces=15000, octree=196)


def hunyuan3d_cad(req: GenerationRequest) -> Dict[str, Any]:
    return _hunyuan3d(req, steps=50, chunks=8000, faces=20000, octree=256)


_BUILDERS: Dict[str, InputBuilder] = {
    "flux_schnell": flux_schnell,
    "real_esrgan": real_esrgan,
    "pixverse": pixverse,
    "hunyuan3d_standard": hunyuan3d_standard,
    "hunyuan3d_cad": hunyuan3d_cad,
}


def get_input_builder(name: str) -> InputBuilder:
    key = str(name).lower().strip()
    if key not in _BUILDERS:
        available = ", ".join(sorted(_BUILDERS))
        raise ValueError(f"Unknown input builder '{name}'. Available: {available}")
    return _BUILDERS[key]
