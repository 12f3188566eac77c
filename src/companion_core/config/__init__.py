from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

try:
    import tomllib
except ModuleNotFoundError:  # pragma: no cover - Python < 3.11
    import tomli as tomllib

from companion_core.errors import ConfigurationError
from companion_core.logging import normalize_log_level


DEFAULT_EXECUTABLE_PATH = "opencode"
DEFAULT_HOSTNAME = "127.0.0.1"
DEFAULT_PORT = 14096
DEFAULT_STARTUP_TIMEOUT_MS = 15000
DEFAULT_CORS_ORIGIN = "app://obsidian.md"
DEFAULT_SESSION_TITLE = "Obsidian"
DEFAULT_CONTEXT_DEBOUNCE_MS = 500

_SECTION_KEYS = ("server", "context", "logging")
_SERVER_KEYS = (
    "executable_path",
    "hostname",
    "port",
    "startup_timeout_ms",
    "cors_origin",
    "auto_start",
    "project_directory",
)
_CONTEXT_KEYS = ("session_title", "debounce_ms")
_LOGGING_KEYS = ("level", "domains")


def _ensure_dict(value: object, *, label: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigurationError(f"{label} must be a table/object.")
    return dict(value)


def _ensure_str(value: object, *, label: str, default: str) -> str:
    if value is None:
        return default
    if not isinstance(value, str) or not value.strip():
        raise ConfigurationError(f"{label} must be a non-empty string.")
    return value.strip()


def _ensure_optional_str(value: object, *, label: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ConfigurationError(f"{label} must be a string.")
    return value.strip() or None


def _ensure_int(value: object, *, label: str, default: int, minimum: int, maximum: int | None = None) -> int:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigurationError(f"{label} must be an integer.")
    if value < minimum or (maximum is not None and value > maximum):
        bound = f"between {minimum} and {maximum}" if maximum is not None else f"at least {minimum}"
        raise ConfigurationError(f"{label} must be {bound}.")
    return value


def _ensure_bool(value: object, *, label: str, default: bool) -> bool:
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ConfigurationError(f"{label} must be a boolean.")
    return value


def _reject_unknown_keys(values: Mapping[str, Any], *, allowed: tuple[str, ...], section: str) -> None:
    unknown = sorted(key for key in values if key not in allowed)
    if unknown:
        raise ConfigurationError(f"Unknown keys in section '{section}': {', '.join(unknown)}")


@dataclass(frozen=True)
class CompanionSettings:
    """Immutable settings snapshot shared by the supervisor and the coordinator."""

    executable_path: str = DEFAULT_EXECUTABLE_PATH
    hostname: str = DEFAULT_HOSTNAME
    port: int = DEFAULT_PORT
    startup_timeout_ms: int = DEFAULT_STARTUP_TIMEOUT_MS
    cors_origin: str = DEFAULT_CORS_ORIGIN
    auto_start: bool = False
    project_directory: str | None = None
    session_title: str = DEFAULT_SESSION_TITLE
    context_debounce_ms: int = DEFAULT_CONTEXT_DEBOUNCE_MS
    log_level: str = "info"
    log_domains: dict[str, str] = field(default_factory=dict)

    def with_updates(self, **changes: Any) -> "CompanionSettings":
        return dataclasses.replace(self, **changes)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any] | dict[str, Any]) -> "CompanionSettings":
        if not isinstance(payload, Mapping):
            raise ConfigurationError("Config payload root must be a table/object.")

        raw = dict(payload)
        _reject_unknown_keys(raw, allowed=_SECTION_KEYS, section="<root>")
        server = _ensure_dict(raw.get("server"), label="section 'server'")
        context = _ensure_dict(raw.get("context"), label="section 'context'")
        logging_raw = _ensure_dict(raw.get("logging"), label="section 'logging'")
        _reject_unknown_keys(server, allowed=_SERVER_KEYS, section="server")
        _reject_unknown_keys(context, allowed=_CONTEXT_KEYS, section="context")
        _reject_unknown_keys(logging_raw, allowed=_LOGGING_KEYS, section="logging")

        domains_raw = _ensure_dict(logging_raw.get("domains"), label="section 'logging.domains'")
        return cls(
            executable_path=_ensure_str(
                server.get("executable_path"), label="server.executable_path", default=DEFAULT_EXECUTABLE_PATH
            ),
            hostname=_ensure_str(server.get("hostname"), label="server.hostname", default=DEFAULT_HOSTNAME),
            port=_ensure_int(server.get("port"), label="server.port", default=DEFAULT_PORT, minimum=1, maximum=65535),
            startup_timeout_ms=_ensure_int(
                server.get("startup_timeout_ms"),
                label="server.startup_timeout_ms",
                default=DEFAULT_STARTUP_TIMEOUT_MS,
                minimum=0,
            ),
            cors_origin=_ensure_str(server.get("cors_origin"), label="server.cors_origin", default=DEFAULT_CORS_ORIGIN),
            auto_start=_ensure_bool(server.get("auto_start"), label="server.auto_start", default=False),
            project_directory=_ensure_optional_str(server.get("project_directory"), label="server.project_directory"),
            session_title=_ensure_str(
                context.get("session_title"), label="context.session_title", default=DEFAULT_SESSION_TITLE
            ),
            context_debounce_ms=_ensure_int(
                context.get("debounce_ms"),
                label="context.debounce_ms",
                default=DEFAULT_CONTEXT_DEBOUNCE_MS,
                minimum=0,
            ),
            log_level=normalize_log_level(logging_raw.get("level")),
            log_domains={str(key): normalize_log_level(value) for key, value in domains_raw.items()},
        )

    @classmethod
    def from_toml_path(cls, path: str | Path) -> "CompanionSettings":
        config_path = Path(path)
        try:
            raw = config_path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ConfigurationError(f"Unable to read config file {config_path}: {exc}") from exc
        try:
            parsed = tomllib.loads(raw)
        except tomllib.TOMLDecodeError as exc:
            raise ConfigurationError(f"Invalid TOML in {config_path}: {exc}") from exc
        return cls.from_dict(parsed)


def load_companion_settings(path: str | Path) -> CompanionSettings:
    return CompanionSettings.from_toml_path(path)


def load_companion_settings_dict(payload: Mapping[str, Any] | dict[str, Any]) -> CompanionSettings:
    return CompanionSettings.from_dict(payload)


__all__ = [
    "CompanionSettings",
    "DEFAULT_CONTEXT_DEBOUNCE_MS",
    "DEFAULT_CORS_ORIGIN",
    "DEFAULT_EXECUTABLE_PATH",
    "DEFAULT_HOSTNAME",
    "DEFAULT_PORT",
    "DEFAULT_SESSION_TITLE",
    "DEFAULT_STARTUP_TIMEOUT_MS",
    "load_companion_settings",
    "load_companion_settings_dict",
]
