from __future__ import annotations

import dataclasses
import json
import logging
import urllib.parse
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

import httpx

from companion_core.errors import TransportError
from companion_core.shared import normalize_base_url, session_id_from_url, session_url


DIRECTORY_HEADER = "x-opencode-directory"
DEFAULT_REQUEST_TIMEOUT_SECONDS = 10.0

LOGGER = logging.getLogger("opencode_companion.transport")

T = TypeVar("T")


@dataclass(frozen=True)
class TransportResult(Generic[T]):
    payload: T | None = None
    error: TransportError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, payload: T | None) -> "TransportResult[T]":
        return cls(payload=payload)

    @classmethod
    def failure(cls, error: TransportError) -> "TransportResult[T]":
        return cls(error=error)


def unwrap_payload(value: Any) -> Any | None:
    """Normalize the server's response envelopes to the bare payload.

    Payloads arrive bare, under ``data``, or under ``message``; empty bodies
    map to ``None``.
    """
    if not value:
        return None
    if isinstance(value, dict):
        if value.get("data"):
            return value["data"]
        if value.get("message"):
            return value["message"]
    return value


def _segment(value: str) -> str:
    return urllib.parse.quote(str(value), safe="")


@dataclass(frozen=True)
class ContextPart:
    id: str
    message_id: str
    session_id: str
    type: str = "text"
    text: str | None = None
    ignored: bool = False
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, value: Any) -> "ContextPart | None":
        if not isinstance(value, dict):
            return None
        part_id = value.get("id")
        message_id = value.get("messageID")
        session_id = value.get("sessionID")
        if not all(isinstance(item, str) and item for item in (part_id, message_id, session_id)):
            return None
        known = {"id", "messageID", "sessionID", "type", "text", "ignored"}
        return cls(
            id=part_id,
            message_id=message_id,
            session_id=session_id,
            type=str(value.get("type") or "text"),
            text=value.get("text") if isinstance(value.get("text"), str) else None,
            ignored=bool(value.get("ignored", False)),
            extra={key: item for key, item in value.items() if key not in known},
        )

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = dict(self.extra)
        payload.update(
            {
                "id": self.id,
                "messageID": self.message_id,
                "sessionID": self.session_id,
                "type": self.type,
                "ignored": self.ignored,
            }
        )
        if self.text is not None:
            payload["text"] = self.text
        return payload

    def with_updates(self, **changes: Any) -> "ContextPart":
        return dataclasses.replace(self, **changes)


class TransportClient:
    """JSON client for the opencode server session API.

    Every call returns a ``TransportResult``; network and HTTP failures are
    logged and carried as ``TransportError`` values, never raised.
    """

    def __init__(
        self,
        api_base_url: str,
        ui_base_url: str,
        project_directory: str,
        *,
        timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_base_url = normalize_base_url(api_base_url)
        self.ui_base_url = normalize_base_url(ui_base_url)
        self.project_directory = str(project_directory or "")
        self._client = httpx.AsyncClient(timeout=timeout_seconds, transport=transport)

    def update_base_url(self, api_base_url: str, ui_base_url: str, project_directory: str) -> bool:
        next_api = normalize_base_url(api_base_url)
        next_ui = normalize_base_url(ui_base_url)
        next_directory = str(project_directory or "")
        if (next_api, next_ui, next_directory) == (self.api_base_url, self.ui_base_url, self.project_directory):
            return False
        self.api_base_url = next_api
        self.ui_base_url = next_ui
        self.project_directory = next_directory
        return True

    def get_session_url(self, session_id: str) -> str:
        return session_url(self.ui_base_url, session_id)

    @staticmethod
    def resolve_session_id(url: str) -> str | None:
        return session_id_from_url(url)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def request(self, method: str, path: str, body: Any | None = None) -> TransportResult[Any]:
        url = f"{self.api_base_url}{path}"
        headers = {"Content-Type": "application/json", DIRECTORY_HEADER: self.project_directory}
        try:
            response = await self._client.request(
                method,
                url,
                headers=headers,
                content=None if body is None else json.dumps(body),
            )
        except (httpx.HTTPError, OSError) as exc:
            LOGGER.warning(
                "API request error method=%s path=%s error=%s",
                method,
                path,
                exc,
                extra={"component": "transport", "operation": method.lower(), "result": "error",
                       "error_class": exc.__class__.__name__},
            )
            return TransportResult.failure(TransportError(f"{method} {path} failed: {exc}"))

        if not response.is_success:
            LOGGER.warning(
                "API request failed method=%s path=%s status=%s",
                method,
                path,
                response.status_code,
                extra={"component": "transport", "operation": method.lower(), "result": "http_error",
                       "error_class": "http_error"},
            )
            return TransportResult.failure(
                TransportError(
                    f"{method} {path} failed with HTTP {response.status_code}",
                    status_code=response.status_code,
                )
            )

        try:
            payload = response.json() if response.content else None
        except ValueError:
            payload = None
        return TransportResult.success(payload)

    async def create_session(self, title: str) -> TransportResult[str]:
        result = await self.request("POST", "/session", {"title": title})
        if not result.ok:
            return TransportResult.failure(result.error)
        session = unwrap_payload(result.payload)
        session_id = session.get("id") if isinstance(session, dict) else None
        if not isinstance(session_id, str) or not session_id:
            return TransportResult.failure(TransportError("Session creation returned no session id"))
        return TransportResult.success(session_id)

    async def send_message(self, session_id: str, text: str) -> TransportResult[ContextPart]:
        """Post a text part that does not ask the assistant for a reply.

        The payload is the first part of the created message, or ``None`` when
        the server echoed a message without parts.
        """
        result = await self.request(
            "POST",
            f"/session/{_segment(session_id)}/message",
            {"noReply": True, "parts": [{"type": "text", "text": text}]},
        )
        if not result.ok:
            return TransportResult.failure(result.error)
        message = unwrap_payload(result.payload)
        info = message.get("info") if isinstance(message, dict) else None
        if not isinstance(info, dict) or not info.get("id"):
            LOGGER.error(
                "Failed to inject context message session_id=%s",
                session_id,
                extra={"component": "transport", "operation": "send_message", "result": "error",
                       "session_id": session_id},
            )
            return TransportResult.failure(TransportError("Message creation returned no message info"))
        parts = message.get("parts") if isinstance(message.get("parts"), list) else []
        LOGGER.info(
            "Injected context message session_id=%s chars=%s",
            session_id,
            len(text),
            extra={"component": "transport", "operation": "send_message", "result": "ok", "session_id": session_id},
        )
        return TransportResult.success(ContextPart.from_payload(parts[0]) if parts else None)

    async def update_part(self, part: ContextPart, **changes: Any) -> TransportResult[ContextPart]:
        updated = part.with_updates(**changes)
        path = (
            f"/session/{_segment(part.session_id)}/message/{_segment(part.message_id)}"
            f"/part/{_segment(part.id)}"
        )
        result = await self.request("PATCH", path, updated.to_payload())
        if not result.ok:
            return TransportResult.failure(result.error)
        echoed = unwrap_payload(result.payload)
        if echoed is None:
            return TransportResult.failure(TransportError(f"PATCH {path} returned no part"))
        return TransportResult.success(ContextPart.from_payload(echoed) or updated)
