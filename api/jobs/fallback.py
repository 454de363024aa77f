"""Ordered backend fallback for one generation step."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import httpx

from ...backends.base import BackendResponse, GenerationBackend, GenerationRequest
from .cancellation import CancelToken
from .exceptions import (
    AllBackendsUnavailable,
    BackendFailure,
    ContentPolicyError,
    InvalidRequestError,
    QuotaOrRateLimitError,
)

logger = logging.getLogger(__name__)


@dataclass
class DispatchResult:
    backend: GenerationBackend
    response: BackendResponse
    attempts: List[Tuple[str, str]] = field(default_factory=list)

    @property
    def backend_name(self) -> str:
        return self.backend.name


class ModelFallbackChain:
    """Tries each backend of a media chain in priority order.

    Quota, rate-limit and backend failures advance to the next backend.
    Content-policy and request-validation errors surface immediately:
    another backend would be asked the same thing.  Each backend is
    called at most once per :meth:`dispatch`.
    """

    def __init__(self, chains: Dict[str, Sequence[GenerationBackend]]) -> None:
        self._chains: Dict[str, List[GenerationBackend]] = {k: list(v) for k, v in chains.items()}

    def media_kinds(self) -> List[str]:
        return sorted(self._chains)

    def backends(self, media: str) -> List[GenerationBackend]:
        return list(self._chains.get(media, []))

    def find(self, name: str) -> Optional[GenerationBackend]:
        """Look a backend up by name across every chain."""
        for chain in self._chains.values():
            for backend in chain:
                if backend.name == name:
                    return backend
        return None

    async def dispatch(
        self,
        media: str,
        request: GenerationRequest,
        token: Optional[CancelToken] = None,
    ) -> DispatchResult:
        chain = self._chains.get(media)
        if not chain:
            raise InvalidRequestError(f"No backends configured for '{media}'")

        attempts: List[Tuple[str, str]] = []
        for backend in chain:
            if token is not None:
                token.raise_if_cancelled()
            if not backend.available():
                attempts.append((backend.name, "not configured"))
                logger.debug("Skipping %s backend %s: not configured", media, backend.name)
                continue
            try:
                response = await backend.submit(request)
            except (ContentPolicyError, InvalidRequestError):
                raise
            except QuotaOrRateLimitError as exc:
                attempts.append((backend.name, str(exc)))
                logger.warning("%s backend %s refused (quota/rate limit): %s", media, backend.name, exc)
                continue
            except BackendFailure as exc:
                attempts.append((backend.name, str(exc)))
                logger.warning("%s backend %s failed: %s", media, backend.name, exc)
                continue
            except httpx.HTTPError as exc:
                attempts.append((backend.name, f"{type(exc).__name__}: {exc}"))
                logger.warning("%s backend %s unreachable: %s", media, backend.name, exc)
                continue
            if attempts:
                logger.info("%s request served by fallback backend %s", media, backend.name)
            return DispatchResult(backend=backend, response=response, attempts=attempts)

        last_name, last_detail = attempts[-1] if attempts else ("none", "no backends")
        raise AllBackendsUnavailable(
            f"All {media} backends unavailable ({len(attempts)} tried); "
            f"last error from {last_name}: {last_detail}"
        )
