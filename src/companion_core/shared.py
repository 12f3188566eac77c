from __future__ import annotations

import base64
import re
import urllib.parse


_SESSION_SEGMENT_RE = re.compile(r"/session/([^/?#]+)")


def normalize_base_url(base_url: str) -> str:
    return str(base_url or "").strip().rstrip("/")


def host_port_netloc(host: str, port: int | None) -> str:
    hostname = str(host or "").strip()
    if ":" in hostname and not hostname.startswith("["):
        hostname = f"[{hostname}]"
    if port is None:
        return hostname
    return f"{hostname}:{int(port)}"


def encode_project_directory(directory: str) -> str:
    """Encode a directory path as a single URL path segment.

    The path is base64-encoded (UTF-8) and the characters base64 shares with
    URL syntax are percent-quoted, so the segment never contains ``/``.
    """
    encoded = base64.b64encode(str(directory).encode("utf-8")).decode("ascii")
    return urllib.parse.quote(encoded, safe="=")


def server_api_url(hostname: str, port: int) -> str:
    return f"http://{host_port_netloc(hostname, port)}"


def server_ui_url(hostname: str, port: int, directory: str) -> str:
    return f"{server_api_url(hostname, port)}/{encode_project_directory(directory)}"


def session_url(ui_base_url: str, session_id: str) -> str:
    return f"{normalize_base_url(ui_base_url)}/session/{urllib.parse.quote(str(session_id), safe='')}"


def session_id_from_url(url: str) -> str | None:
    path = urllib.parse.urlsplit(str(url or "")).path
    match = _SESSION_SEGMENT_RE.search(path)
    if match is None:
        return None
    return urllib.parse.unquote(match.group(1)) or None
