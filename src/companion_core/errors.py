from __future__ import annotations


class TypedCompanionError(RuntimeError):
    """Base class for typed operational errors surfaced to users."""

    error_code = "INTERNAL_ERROR"
    failure_class = "internal"
    user_message = "An internal error occurred."

    def metadata(self) -> dict[str, str]:
        return {
            "error_code": self.error_code,
            "failure_class": self.failure_class,
            "user_message": self.user_message,
        }

    def payload(self, *, detail: str | None = None) -> dict[str, str]:
        payload = self.metadata()
        payload["detail"] = str(self) if detail is None else str(detail)
        return payload


def typed_error_payload(exc: BaseException) -> dict[str, str] | None:
    if isinstance(exc, TypedCompanionError):
        return exc.payload()
    return None


class ConfigurationError(TypedCompanionError):
    """Settings parsing error or missing required setting."""

    error_code = "CONFIGURATION_ERROR"
    failure_class = "configuration"
    user_message = "Configuration is invalid."


class SpawnError(TypedCompanionError):
    """The operating system refused to launch the server process."""

    error_code = "SPAWN_ERROR"
    failure_class = "spawn"
    user_message = "The server process could not be started."


class ExecutableNotFoundError(SpawnError):
    """The configured server executable does not exist."""

    error_code = "EXECUTABLE_NOT_FOUND"
    user_message = "The server executable was not found."


class ReadinessTimeoutError(TypedCompanionError):
    """The server never answered its health check during startup."""

    error_code = "READINESS_TIMEOUT"
    failure_class = "readiness"
    user_message = "The server did not become ready in time."


class UnexpectedExitError(TypedCompanionError):
    """The server process exited while it was serving."""

    error_code = "UNEXPECTED_EXIT"
    failure_class = "process_exit"
    user_message = "The server process exited unexpectedly."


class TransportError(TypedCompanionError):
    """HTTP request against the server API failed."""

    error_code = "TRANSPORT_ERROR"
    failure_class = "network"
    user_message = "The server API request failed."

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
