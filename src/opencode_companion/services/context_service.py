from __future__ import annotations

import logging
from enum import Enum

from companion_core.errors import TransportError
from opencode_companion.integrations.transport import ContextPart, TransportClient, TransportResult


LOGGER = logging.getLogger("opencode_companion.context")


class SyncOutcome(str, Enum):
    NOOP = "noop"
    CLEARED = "cleared"
    UPDATED = "updated"
    CREATED = "created"
    FAILED = "failed"


class ContextSynchronizer:
    """Keeps at most one live context part in the tracked session.

    Context changes update that part in place. Clearing the context marks the
    part ``ignored`` instead of deleting it. Callers must not run two
    ``update_context`` calls for the same session concurrently.
    """

    def __init__(self, client: TransportClient, *, session_title: str) -> None:
        self._client = client
        self.session_title = session_title
        self._tracked_session_id: str | None = None
        self._last_part: ContextPart | None = None

    @property
    def tracked_session_id(self) -> str | None:
        return self._tracked_session_id

    @property
    def last_part(self) -> ContextPart | None:
        return self._last_part

    def reset_tracking(self) -> None:
        self._tracked_session_id, self._last_part = None, None

    def update_base_url(self, api_base_url: str, ui_base_url: str, project_directory: str) -> None:
        if self._client.update_base_url(api_base_url, ui_base_url, project_directory):
            LOGGER.info(
                "Server address changed to %s; dropping tracked context",
                api_base_url,
                extra={"component": "context", "operation": "update_base_url"},
            )
            self.reset_tracking()

    def get_session_url(self, session_id: str) -> str:
        return self._client.get_session_url(session_id)

    def resolve_session_id(self, url: str) -> str | None:
        return self._client.resolve_session_id(url)

    async def create_session(self) -> TransportResult[str]:
        return await self._client.create_session(self.session_title)

    async def update_context(self, session_id: str, context_text: str | None) -> SyncOutcome:
        if session_id != self._tracked_session_id:
            # The previous session's part may belong to a session that no longer exists.
            self._tracked_session_id, self._last_part = session_id, None

        if not context_text:
            if self._last_part is None:
                return SyncOutcome.NOOP
            await self._ignore_last_part()
            return SyncOutcome.CLEARED

        if self._last_part is not None:
            result = await self._client.update_part(self._last_part, text=context_text)
            if result.ok:
                self._last_part = result.payload
                return SyncOutcome.UPDATED
            LOGGER.info(
                "Context part update rejected; replacing it with a new message",
                extra=self._log_extra("update_part", "fallback", result.error),
            )
            await self._ignore_last_part()

        result = await self._client.send_message(session_id, context_text)
        if not result.ok:
            LOGGER.warning(
                "Context push failed for session %s",
                session_id,
                extra=self._log_extra("send_message", "error", result.error),
            )
            return SyncOutcome.FAILED
        if session_id == self._tracked_session_id:
            self._last_part = result.payload
        return SyncOutcome.CREATED

    async def _ignore_last_part(self) -> None:
        part, self._last_part = self._last_part, None
        if part is None:
            return
        result = await self._client.update_part(part, ignored=True)
        if not result.ok:
            LOGGER.warning(
                "Failed to mark context part %s ignored",
                part.id,
                extra=self._log_extra("ignore_part", "error", result.error),
            )

    def _log_extra(self, operation: str, result: str, error: TransportError | None) -> dict[str, object]:
        return {
            "component": "context",
            "operation": operation,
            "result": result,
            "session_id": self._tracked_session_id or "",
            "error_class": error.error_code if error is not None else "",
        }
