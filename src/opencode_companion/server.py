from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from pathlib import Path
from typing import Any, AsyncIterator

import click
import httpx
import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from companion_core import (
    CompanionSettings,
    ConfigurationError,
    ExecutableNotFoundError,
    ReadinessTimeoutError,
    TransportError,
    load_companion_settings,
)
from companion_core.errors import TypedCompanionError, typed_error_payload
from companion_core import logging as core_logging
from opencode_companion.api import register_companion_routes
from opencode_companion.integrations import TransportClient, TransportResult
from opencode_companion.runtime import HealthProbe, ProcessState, ProcessSupervisor, ProcessTreeTerminator
from opencode_companion.runtime.supervisor import Spawner
from opencode_companion.services import ContextPushScheduler, ContextSynchronizer


DEFAULT_CONTROL_HOST = "127.0.0.1"
DEFAULT_CONTROL_PORT = 14097

LOGGER = logging.getLogger("opencode_companion")
LOGGER.addHandler(logging.NullHandler())


class CompanionState:
    """Wires the supervisor to the context synchronizer.

    The supervisor and the synchronizer never call each other; this class
    observes supervisor state and points the synchronizer at the live server.
    """

    def __init__(
        self,
        *,
        settings: CompanionSettings,
        fallback_project_directory: str | None = None,
        health_probe: HealthProbe | None = None,
        terminator: ProcessTreeTerminator | None = None,
        spawn: Spawner | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings
        self._fallback_project_directory = fallback_project_directory or None
        self.supervisor = ProcessSupervisor(
            settings,
            self.project_directory,
            health_probe=health_probe,
            terminator=terminator,
            spawn=spawn,
        )
        self.transport = TransportClient(
            self.supervisor.get_api_url(),
            self.supervisor.get_url(),
            self.project_directory or "",
            transport=http_transport,
        )
        self.synchronizer = ContextSynchronizer(self.transport, session_title=settings.session_title)
        self.scheduler = ContextPushScheduler(
            self.synchronizer,
            debounce_seconds=settings.context_debounce_ms / 1000.0,
        )
        self._startup_task: asyncio.Task[bool] | None = None
        self._unsubscribe = self.supervisor.subscribe(self._on_state_change)

    @property
    def project_directory(self) -> str | None:
        return self.settings.project_directory or self._fallback_project_directory

    def is_running(self) -> bool:
        return self.supervisor.state is ProcessState.RUNNING

    def _on_state_change(self, state: ProcessState) -> None:
        LOGGER.info(
            "Server state changed to %s",
            state.value,
            extra={"component": "coordinator", "operation": "state_change", "result": state.value},
        )
        if state is ProcessState.RUNNING:
            self._point_synchronizer_at_server()
        else:
            self.scheduler.cancel()
            self.synchronizer.reset_tracking()

    def _point_synchronizer_at_server(self) -> None:
        self.synchronizer.update_base_url(
            self.supervisor.get_api_url(),
            self.supervisor.get_url(),
            self.project_directory or "",
        )

    async def start_server(self) -> bool:
        return await self.supervisor.start()

    async def stop_server(self) -> None:
        await self.supervisor.stop()

    def schedule_auto_start(self) -> None:
        if not self.settings.auto_start:
            return
        self._startup_task = asyncio.create_task(self.start_server())

    def _server_identity(self) -> tuple[object, ...]:
        settings = self.settings
        return (
            settings.executable_path,
            settings.hostname,
            settings.port,
            settings.cors_origin,
            self.project_directory,
        )

    async def update_settings(self, settings: CompanionSettings) -> bool:
        """Swap in a new settings snapshot.

        A running server is restarted when its launch address or directory
        changed; the synchronizer follows once the server is running again.
        Returns whether a restart happened and succeeded.
        """
        was_running = self.is_running()
        previous_identity = self._server_identity()
        self.settings = settings
        self.supervisor.update_settings(settings)
        self.supervisor.update_project_directory(self.project_directory)
        self.synchronizer.session_title = settings.session_title
        self.scheduler.set_debounce_seconds(settings.context_debounce_ms / 1000.0)
        if not was_running or self._server_identity() == previous_identity:
            return False
        await self.stop_server()
        return await self.start_server()

    async def update_project_directory(self, directory: str) -> bool:
        return await self.update_settings(self.settings.with_updates(project_directory=directory))

    async def create_session(self) -> TransportResult[str]:
        return await self.synchronizer.create_session()

    def push_context(self, session_ref: str, context_text: str | None) -> str | None:
        reference = str(session_ref or "").strip()
        if "/session/" in reference:
            session_id = self.synchronizer.resolve_session_id(reference)
        else:
            session_id = reference or None
        if session_id is None:
            return None
        self.scheduler.schedule(session_id, context_text)
        return session_id

    def status_payload(self) -> dict[str, Any]:
        failure = self.supervisor.last_failure
        return {
            "state": self.supervisor.state.value,
            "last_error": self.supervisor.last_error,
            "error": typed_error_payload(failure) if failure is not None else None,
            "url": self.supervisor.get_url(),
            "api_url": self.supervisor.get_api_url(),
            "pid": self.supervisor.pid,
            "project_directory": self.project_directory,
        }

    async def shutdown(self) -> None:
        self.scheduler.cancel()
        await self.scheduler.flush()
        # stop() makes an in-progress start() give up and tear down what it spawned.
        await self.supervisor.stop()
        if self._startup_task is not None:
            await asyncio.gather(self._startup_task, return_exceptions=True)
        self._unsubscribe()
        await self.transport.aclose()


def _core_error_payload(exc: Exception) -> tuple[int, dict[str, str]]:
    payload = typed_error_payload(exc)
    if payload is None:
        return 500, {"error_code": "INTERNAL_ERROR", "detail": str(exc)}
    if isinstance(exc, ConfigurationError):
        return 400, payload
    if isinstance(exc, ExecutableNotFoundError):
        return 424, payload
    if isinstance(exc, ReadinessTimeoutError):
        return 504, payload
    if isinstance(exc, TransportError):
        return 502, payload
    return 500, payload


def _http_error_code(status_code: int) -> str:
    if status_code == 400:
        return "BAD_REQUEST"
    if status_code == 404:
        return "NOT_FOUND"
    if status_code == 409:
        return "CONFLICT"
    return "HTTP_ERROR"


def create_app(state: CompanionState) -> FastAPI:
    @contextlib.asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        state.schedule_auto_start()
        try:
            yield
        finally:
            await state.shutdown()

    app = FastAPI(lifespan=lifespan)
    app.state.companion_state = state

    @app.exception_handler(TypedCompanionError)
    async def _handle_typed_companion_error(_request: Request, exc: TypedCompanionError) -> JSONResponse:
        status, payload = _core_error_payload(exc)
        return JSONResponse(status_code=status, content=payload)

    @app.exception_handler(HTTPException)
    async def _handle_http_exception(_request: Request, exc: HTTPException) -> JSONResponse:
        return JSONResponse(
            status_code=int(exc.status_code or 500),
            content={"error_code": _http_error_code(int(exc.status_code or 500)), "detail": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    register_companion_routes(app, state=state, logger=LOGGER)
    return app


def _resolve_log_level(log_level: str | None, settings: CompanionSettings) -> str:
    cli_value = str(log_level or "").strip()
    if cli_value:
        return core_logging.normalize_log_level(cli_value)
    return core_logging.normalize_log_level(settings.log_level)


def _uvicorn_log_level(level: str) -> str:
    return "warning" if level in {"warning", "error", "critical"} else level


@click.command(help="Supervise a local opencode server and keep session context in sync.")
@click.option(
    "--config-file",
    default=None,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="TOML settings file.",
)
@click.option(
    "--project-dir",
    default=None,
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    help="Project directory used when the settings do not name one. Defaults to the current directory.",
)
@click.option("--host", default=DEFAULT_CONTROL_HOST, show_default=True, help="Control API bind host.")
@click.option("--port", default=DEFAULT_CONTROL_PORT, show_default=True, type=int, help="Control API bind port.")
@click.option("--log-level", default=None, help="Overrides [logging].level from the settings file.")
@click.option("--auto-start/--no-auto-start", default=None, help="Start the opencode server with the control API.")
def main(
    config_file: Path | None,
    project_dir: Path | None,
    host: str,
    port: int,
    log_level: str | None,
    auto_start: bool | None,
) -> None:
    settings = CompanionSettings()
    if config_file is not None:
        try:
            settings = load_companion_settings(config_file)
        except ConfigurationError as exc:
            click.echo(
                json.dumps(
                    {"event": "companion_config_load_error", "config_path": str(config_file), "error": str(exc)},
                    sort_keys=True,
                ),
                err=True,
            )
            raise click.ClickException(str(exc)) from exc
    if auto_start is not None:
        settings = settings.with_updates(auto_start=auto_start)

    normalized_log_level = _resolve_log_level(log_level, settings)
    core_logging.configure_structured_logger(LOGGER, level=normalized_log_level)
    core_logging.configure_domain_log_levels(domains=settings.log_domains, logger_prefix="opencode_companion")

    fallback_directory = str((project_dir or Path.cwd()).resolve())
    state = CompanionState(settings=settings, fallback_project_directory=fallback_directory)
    LOGGER.info(
        "Starting control API host=%s port=%s project_directory=%s server_url=%s",
        host,
        port,
        state.project_directory,
        state.supervisor.get_api_url(),
        extra={"component": "startup", "operation": "control_api_start", "result": "started"},
    )
    uvicorn.run(create_app(state), host=host, port=port, log_level=_uvicorn_log_level(normalized_log_level))


if __name__ == "__main__":
    main()
