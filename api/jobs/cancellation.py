"""Cooperative cancellation for running pipelines."""
from __future__ import annotations

import asyncio

from .exceptions import JobCancelled


class CancelToken:
    """One per running pipeline.  Tripped by ``JobRegistry.cancel``.

    Pipelines check it between steps; :meth:`sleep` doubles as the poll
    delay so a cancel is observed immediately rather than after the
    full interval.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise JobCancelled()

    async def sleep(self, seconds: float) -> bool:
        """Wait up to *seconds*; return True if cancelled meanwhile."""
        if self._event.is_set():
            return True
        try:
            await asyncio.wait_for(self._event.wait(), timeout=max(seconds, 0.0))
        except asyncio.TimeoutError:
            return False
        return True
