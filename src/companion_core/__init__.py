from __future__ import annotations

from .config import (
    CompanionSettings,
    DEFAULT_HOSTNAME,
    DEFAULT_PORT,
    load_companion_settings,
    load_companion_settings_dict,
)
from .errors import (
    ConfigurationError,
    ExecutableNotFoundError,
    ReadinessTimeoutError,
    SpawnError,
    TransportError,
    TypedCompanionError,
    UnexpectedExitError,
)

__all__ = [
    "CompanionSettings",
    "ConfigurationError",
    "DEFAULT_HOSTNAME",
    "DEFAULT_PORT",
    "ExecutableNotFoundError",
    "ReadinessTimeoutError",
    "SpawnError",
    "TransportError",
    "TypedCompanionError",
    "UnexpectedExitError",
    "load_companion_settings",
    "load_companion_settings_dict",
]
