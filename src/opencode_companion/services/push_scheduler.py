from __future__ import annotations

import asyncio
import logging

from opencode_companion.services.context_service import ContextSynchronizer, SyncOutcome


LOGGER = logging.getLogger("opencode_companion.context")


class ContextPushScheduler:
    """Debounces context pushes and runs them one at a time.

    A new ``schedule`` call replaces a push that is still waiting out its
    debounce delay. A push that already started is never cancelled; the next
    one waits for it on the lock.
    """

    def __init__(self, synchronizer: ContextSynchronizer, *, debounce_seconds: float) -> None:
        self._synchronizer = synchronizer
        self._debounce_seconds = max(0.0, float(debounce_seconds))
        self._lock = asyncio.Lock()
        self._pending: asyncio.Task[SyncOutcome] | None = None
        self._in_flight: set[asyncio.Task[SyncOutcome]] = set()

    @property
    def debounce_seconds(self) -> float:
        return self._debounce_seconds

    def set_debounce_seconds(self, value: float) -> None:
        self._debounce_seconds = max(0.0, float(value))

    def schedule(self, session_id: str, context_text: str | None) -> asyncio.Task[SyncOutcome]:
        self.cancel()
        task = asyncio.create_task(self._run(session_id, context_text))
        self._pending = task
        return task

    def cancel(self) -> None:
        pending, self._pending = self._pending, None
        if pending is not None and not pending.done():
            pending.cancel()

    async def flush(self) -> None:
        tasks = [task for task in (self._pending, *self._in_flight) if task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _run(self, session_id: str, context_text: str | None) -> SyncOutcome:
        await asyncio.sleep(self._debounce_seconds)
        task = asyncio.current_task()
        if self._pending is task:
            self._pending = None
        self._in_flight.add(task)
        try:
            async with self._lock:
                outcome = await self._synchronizer.update_context(session_id, context_text)
        finally:
            self._in_flight.discard(task)
        LOGGER.debug(
            "Context push finished outcome=%s",
            outcome.value,
            extra={"component": "context", "operation": "push", "result": outcome.value, "session_id": session_id},
        )
        return outcome
