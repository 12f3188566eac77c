from __future__ import annotations

import json
import sys
import unittest
from pathlib import Path
from typing import Any, Callable

import httpx
import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from companion_core.errors import TransportError
from opencode_companion.integrations import ContextPart, TransportClient, unwrap_payload


API_URL = "http://127.0.0.1:14096"
UI_URL = "http://127.0.0.1:14096/L3ZhdWx0"


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        (None, None),
        ({}, None),
        ("", None),
        ({"id": "ses_1"}, {"id": "ses_1"}),
        ({"data": {"id": "ses_1"}}, {"id": "ses_1"}),
        ({"message": {"id": "msg_1"}}, {"id": "msg_1"}),
        ({"data": None, "message": {"id": "msg_1"}}, {"id": "msg_1"}),
        ({"data": {"id": "a"}, "message": {"id": "b"}}, {"id": "a"}),
    ],
)
def test_unwrap_payload_normalizes_response_envelopes(value: Any, expected: Any) -> None:
    assert unwrap_payload(value) == expected


def test_context_part_round_trips_unknown_fields() -> None:
    raw = {
        "id": "prt_1",
        "messageID": "msg_1",
        "sessionID": "ses_1",
        "type": "text",
        "text": "hello",
        "synthetic": True,
    }

    part = ContextPart.from_payload(raw)

    assert part is not None
    assert part.extra == {"synthetic": True}
    assert part.to_payload() == {**raw, "ignored": False}


@pytest.mark.parametrize(
    "value",
    [None, "prt_1", {"id": "prt_1"}, {"id": "prt_1", "messageID": "msg_1", "sessionID": ""}],
)
def test_context_part_rejects_incomplete_payloads(value: Any) -> None:
    assert ContextPart.from_payload(value) is None


class RecordingServer:
    def __init__(self, responder: Callable[[httpx.Request], httpx.Response]) -> None:
        self.requests: list[httpx.Request] = []
        self._responder = responder

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self._responder(request)

    def body(self, index: int = -1) -> Any:
        return json.loads(self.requests[index].content)


def _part(**changes: Any) -> ContextPart:
    base = ContextPart(id="prt_1", message_id="msg_1", session_id="ses_1", text="old")
    return base.with_updates(**changes)


class TransportClientTests(unittest.IsolatedAsyncioTestCase):
    def _client(self, responder: Callable[[httpx.Request], httpx.Response]) -> tuple[TransportClient, RecordingServer]:
        server = RecordingServer(responder)
        client = TransportClient(API_URL, UI_URL, "/vault", transport=httpx.MockTransport(server))
        self.addAsyncCleanup(client.aclose)
        return client, server

    async def test_requests_carry_json_and_directory_headers(self) -> None:
        client, server = self._client(lambda request: httpx.Response(200, json={"id": "ses_1"}))

        await client.create_session("Obsidian")

        request = server.requests[0]
        self.assertEqual(request.method, "POST")
        self.assertEqual(str(request.url), f"{API_URL}/session")
        self.assertEqual(request.headers["content-type"], "application/json")
        self.assertEqual(request.headers["x-opencode-directory"], "/vault")
        self.assertEqual(server.body(), {"title": "Obsidian"})

    async def test_create_session_accepts_wrapped_payload(self) -> None:
        client, _server = self._client(lambda request: httpx.Response(200, json={"data": {"id": "ses_9"}}))

        result = await client.create_session("Obsidian")

        self.assertTrue(result.ok)
        self.assertEqual(result.payload, "ses_9")

    async def test_create_session_without_id_fails(self) -> None:
        client, _server = self._client(lambda request: httpx.Response(200, json={"title": "Obsidian"}))

        result = await client.create_session("Obsidian")

        self.assertFalse(result.ok)
        self.assertIsInstance(result.error, TransportError)

    async def test_http_error_status_becomes_failed_result(self) -> None:
        client, _server = self._client(lambda request: httpx.Response(500, text="boom"))

        with self.assertLogs("opencode_companion.transport", level="WARNING"):
            result = await client.request("GET", "/session")

        self.assertFalse(result.ok)
        self.assertEqual(result.error.status_code, 500)

    async def test_network_error_becomes_failed_result(self) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client, _server = self._client(refuse)

        with self.assertLogs("opencode_companion.transport", level="WARNING"):
            result = await client.request("GET", "/session")

        self.assertFalse(result.ok)
        self.assertIsNone(result.error.status_code)

    async def test_empty_or_invalid_body_is_a_null_payload(self) -> None:
        client, _server = self._client(lambda request: httpx.Response(200, content=b""))
        self.assertIsNone((await client.request("GET", "/x")).payload)

        client, _server = self._client(lambda request: httpx.Response(200, content=b"not json"))
        result = await client.request("GET", "/x")
        self.assertTrue(result.ok)
        self.assertIsNone(result.payload)

    async def test_send_message_posts_no_reply_text_part(self) -> None:
        echoed = {
            "info": {"id": "msg_1"},
            "parts": [{"id": "prt_1", "messageID": "msg_1", "sessionID": "ses 1", "type": "text", "text": "ctx"}],
        }
        client, server = self._client(lambda request: httpx.Response(200, json=echoed))

        result = await client.send_message("ses 1", "ctx")

        self.assertEqual(server.requests[0].url.raw_path, b"/session/ses%201/message")
        self.assertEqual(server.body(), {"noReply": True, "parts": [{"type": "text", "text": "ctx"}]})
        self.assertTrue(result.ok)
        self.assertEqual(result.payload.id, "prt_1")
        self.assertEqual(result.payload.text, "ctx")

    async def test_send_message_without_parts_succeeds_with_no_part(self) -> None:
        client, _server = self._client(lambda request: httpx.Response(200, json={"info": {"id": "msg_1"}, "parts": []}))

        result = await client.send_message("ses_1", "ctx")

        self.assertTrue(result.ok)
        self.assertIsNone(result.payload)

    async def test_send_message_without_info_fails(self) -> None:
        client, _server = self._client(lambda request: httpx.Response(200, json={"parts": []}))

        with self.assertLogs("opencode_companion.transport", level="ERROR"):
            result = await client.send_message("ses_1", "ctx")

        self.assertFalse(result.ok)

    async def test_update_part_patches_full_merged_part(self) -> None:
        client, server = self._client(lambda request: httpx.Response(200, json=json.loads(request.content)))

        result = await client.update_part(_part(), text="new")

        request = server.requests[0]
        self.assertEqual(request.method, "PATCH")
        self.assertEqual(request.url.path, "/session/ses_1/message/msg_1/part/prt_1")
        self.assertEqual(
            server.body(),
            {"id": "prt_1", "messageID": "msg_1", "sessionID": "ses_1", "type": "text", "text": "new", "ignored": False},
        )
        self.assertTrue(result.ok)
        self.assertEqual(result.payload.text, "new")

    async def test_update_part_falls_back_to_local_part_when_echo_is_not_a_part(self) -> None:
        client, _server = self._client(lambda request: httpx.Response(200, json={"ok": True}))

        result = await client.update_part(_part(), ignored=True)

        self.assertTrue(result.ok)
        self.assertTrue(result.payload.ignored)
        self.assertEqual(result.payload.text, "old")

    async def test_update_part_with_empty_echo_fails(self) -> None:
        client, _server = self._client(lambda request: httpx.Response(200, content=b""))

        result = await client.update_part(_part(), text="new")

        self.assertFalse(result.ok)

    async def test_update_base_url_reports_changes(self) -> None:
        client, _server = self._client(lambda request: httpx.Response(200))

        self.assertFalse(client.update_base_url(API_URL + "/", UI_URL, "/vault"))
        self.assertTrue(client.update_base_url("http://127.0.0.1:15000", UI_URL, "/vault"))
        self.assertEqual(client.api_base_url, "http://127.0.0.1:15000")

    async def test_session_url_round_trips_through_resolve(self) -> None:
        client, _server = self._client(lambda request: httpx.Response(200))

        url = client.get_session_url("ses_1")

        self.assertEqual(url, f"{UI_URL}/session/ses_1")
        self.assertEqual(TransportClient.resolve_session_id(url), "ses_1")


if __name__ == "__main__":
    unittest.main()
