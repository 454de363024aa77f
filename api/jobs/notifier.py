"""Job update fan-out: callbacks plus SSE event queues."""
from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict, List, Optional, Union

from .models import JobRecord

logger = logging.getLogger(__name__)

UpdateCallback = Callable[[JobRecord], Union[None, Awaitable[None]]]

# Events that end an SSE stream.
_FINAL_EVENTS = ("completed", "failed")


class UpdateNotifier:
    """Delivers each committed job change to its subscribers.

    The registry calls :meth:`publish` only after the store has committed,
    so a subscriber never sees state that is not yet durable.  A failing
    callback is logged and does not affect other subscribers or the job.
    """

    def __init__(self) -> None:
        self._callbacks: Dict[str, List[UpdateCallback]] = {}
        self._queues: Dict[str, List[asyncio.Queue]] = {}

    def subscribe(self, job_id: str, callback: UpdateCallback) -> Callable[[], None]:
        """Register *callback* for *job_id*; returns an idempotent unsubscribe handle."""
        self._callbacks.setdefault(job_id, []).append(callback)

        def _unsubscribe() -> None:
            subs = self._callbacks.get(job_id, [])
            if callback in subs:
                subs.remove(callback)
            if not subs:
                self._callbacks.pop(job_id, None)

        return _unsubscribe

    def subscriber_count(self, job_id: str) -> int:
        return len(self._callbacks.get(job_id, [])) + len(self._queues.get(job_id, []))

    async def publish(self, record: JobRecord, event: str = "updated") -> None:
        """Fan *record* out to callbacks and event streams for its job."""
        for cb in list(self._callbacks.get(record.job_id, [])):
            try:
                result = cb(record)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.warning("Update callback for job %s raised", record.job_id, exc_info=True)

        payload = {"event": event, "job_id": record.job_id, "data": record.model_dump(mode="json")}
        for q in list(self._queues.get(record.job_id, [])):
            await q.put(payload)

    async def stream(
        self,
        job_id: str,
        initial: Optional[JobRecord] = None,
    ) -> AsyncGenerator[Dict[str, Any], None]:
        """Yield job events until the job reaches a terminal state."""
        queue: asyncio.Queue = asyncio.Queue()
        self._queues.setdefault(job_id, []).append(queue)
        try:
            if initial is not None:
                yield {"event": "status", "job_id": job_id, "data": initial.model_dump(mode="json")}
                if initial.is_terminal:
                    return

            while True:
                event = await queue.get()
                yield event
                if event.get("event") in _FINAL_EVENTS:
                    break
        finally:
            subs = self._queues.get(job_id, [])
            if queue in subs:
                subs.remove(queue)
            if not subs:
                self._queues.pop(job_id, None)
