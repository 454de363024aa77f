"""
Backend registry: builds fallback chains from their YAML definitions.
"""
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

from .base import GenerationBackend

logger = logging.getLogger(__name__)

BackendFactory = Callable[..., GenerationBackend]


def _prediction_factory(media: str, spec: Dict[str, Any], **creds: Any) -> GenerationBackend:
    """Lazily import and construct a predictions-API backend."""
    from .. import config as cfg
    from .inputs import get_input_builder
    from .output_adapters import get_output_adapter
    from .replicate import PredictionBackend

    return PredictionBackend(
        spec["name"],
        media,
        model=spec.get("model"),
        version=spec.get("version"),
        inputs=get_input_builder(spec["inputs"]),
        outputs=get_output_adapter(spec.get("outputs", "uri")),
        api_token=creds.get("replicate_api_token") or "",
        base_url=spec.get("base_url") or cfg.PREDICTION_API_BASE,
        timeout_s=float(spec.get("timeout_s", cfg.BACKEND_REQUEST_TIMEOUT_S)),
        submit_retries=int(spec.get("submit_retries", 1)),
        retry_backoff_s=float(spec.get("retry_backoff_s", cfg.SUBMIT_RETRY_BACKOFF_S)),
        webhook_url=creds.get("webhook_url"),
        client=creds.get("client"),
    )


def _gateway_factory(media: str, spec: Dict[str, Any], **creds: Any) -> GenerationBackend:
    """Lazily import and construct a chat-gateway image backend."""
    from .. import config as cfg
    from .gateway import ChatImageGatewayBackend

    return ChatImageGatewayBackend(
        spec["name"],
        media,
        model=spec["model"],
        url=spec.get("url") or cfg.IMAGE_GATEWAY_URL,
        api_key=creds.get("gateway_api_key") or "",
        timeout_s=float(spec.get("timeout_s", cfg.BACKEND_REQUEST_TIMEOUT_S)),
        client=creds.get("client"),
    )


_REGISTRY: Dict[str, BackendFactory] = {
    "prediction": _prediction_factory,
    "chat_gateway": _gateway_factory,
}


def get_backend_factory(kind: str) -> BackendFactory:
    """Return the factory registered for a backend kind."""
    key = str(kind).lower().strip()
    if key not in _REGISTRY:
        available = ", ".join(sorted(_REGISTRY.keys()))
        raise ValueError(f"Unknown backend kind '{kind}'. Available: {available}")
    return _REGISTRY[key]


def list_backend_kinds() -> List[str]:
    """Return the names of supported backend kinds."""
    return sorted(_REGISTRY.keys())


def register_backend(kind: str, factory: BackendFactory) -> None:
    """Register or override a backend factory under a normalized key."""
    key = str(kind).lower().strip()
    if not key:
        raise ValueError("Backend kind cannot be empty.")
    _REGISTRY[key] = factory


def build_chains(
    definitions: Optional[Dict[str, List[Dict[str, Any]]]] = None,
    **creds: Any,
) -> Dict[str, List[GenerationBackend]]:
    """Instantiate every configured chain.

    *definitions* defaults to ``config.FALLBACK_CHAINS``.  Entries with an
    unknown kind are skipped with a warning so one bad line does not take
    the other media types down.
    """
    if definitions is None:
        from .. import config as cfg

        definitions = cfg.FALLBACK_CHAINS

    chains: Dict[str, List[GenerationBackend]] = {}
    for media, entries in definitions.items():
        built: List[GenerationBackend] = []
        for spec in entries:
            try:
                factory = get_backend_factory(spec.get("kind", ""))
                built.append(factory(media, spec, **creds))
            except (KeyError, ValueError) as exc:
                logger.warning("Skipping %s backend %r: %s", media, spec.get("name"), exc)
        chains[media] = built
    return chains
