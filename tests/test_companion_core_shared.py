from __future__ import annotations

import base64
import sys
import urllib.parse
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from companion_core.shared import (
    encode_project_directory,
    host_port_netloc,
    normalize_base_url,
    server_api_url,
    server_ui_url,
    session_id_from_url,
    session_url,
)


def test_normalize_base_url_strips_trailing_slashes() -> None:
    assert normalize_base_url("http://127.0.0.1:14096///") == "http://127.0.0.1:14096"
    assert normalize_base_url("") == ""


def test_host_port_netloc_brackets_ipv6() -> None:
    assert host_port_netloc("127.0.0.1", 14096) == "127.0.0.1:14096"
    assert host_port_netloc("::1", 14096) == "[::1]:14096"
    assert host_port_netloc("[::1]", None) == "[::1]"


@pytest.mark.parametrize("directory", ["/home/me/vault", "C:\\Users\\me\\Vault", "/tmp/Notizen äöü/日本"])
def test_project_directory_segment_is_quoted_base64_of_the_path(directory: str) -> None:
    segment = encode_project_directory(directory)

    assert "/" not in segment
    assert base64.b64decode(urllib.parse.unquote(segment)).decode("utf-8") == directory


def test_server_urls_are_deterministic() -> None:
    assert server_api_url("127.0.0.1", 14096) == "http://127.0.0.1:14096"
    first = server_ui_url("127.0.0.1", 14096, "/vault")
    second = server_ui_url("127.0.0.1", 14096, "/vault")

    assert first == second
    assert first == f"http://127.0.0.1:14096/{encode_project_directory('/vault')}"
    assert server_ui_url("127.0.0.1", 14096, "/other") != first


@pytest.mark.parametrize("session_id", ["ses_abc123", "ses with space", "a/b?c#d"])
def test_session_url_round_trips_session_id(session_id: str) -> None:
    url = session_url("http://127.0.0.1:14096/L3ZhdWx0/", session_id)

    assert url.startswith("http://127.0.0.1:14096/L3ZhdWx0/session/")
    assert session_id_from_url(url) == session_id


def test_session_id_from_url_ignores_query_and_fragment() -> None:
    assert session_id_from_url("http://host/dir/session/ses_1?tab=2#part") == "ses_1"
    assert session_id_from_url("http://host/dir/session/ses_1/message/msg_2") == "ses_1"


@pytest.mark.parametrize("url", ["", "http://host/dir", "http://host/dir/session/", "not a url"])
def test_session_id_from_url_returns_none_without_session_segment(url: str) -> None:
    assert session_id_from_url(url) is None
