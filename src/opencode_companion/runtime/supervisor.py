from __future__ import annotations

import asyncio
import logging
import os
import shutil
import subprocess
import sys
from enum import Enum
from typing import Any, Awaitable, Callable

from companion_core.config import CompanionSettings
from companion_core.errors import (
    ConfigurationError,
    ExecutableNotFoundError,
    ReadinessTimeoutError,
    SpawnError,
    TypedCompanionError,
    UnexpectedExitError,
)
from companion_core.shared import server_api_url, server_ui_url
from opencode_companion.runtime.health import HealthProbe
from opencode_companion.runtime.termination import ProcessTreeTerminator, select_terminator


POLL_INTERVAL_SECONDS = 0.5
GRACEFUL_STOP_TIMEOUT_SECONDS = 2.0
FORCED_STOP_TIMEOUT_SECONDS = 3.0
OUTPUT_DRAIN_TIMEOUT_SECONDS = 1.0
SERVER_ENV_OVERRIDES = {"NODE_USE_SYSTEM_CA": "1"}

LOGGER = logging.getLogger("opencode_companion.supervisor")
OUTPUT_LOGGER = logging.getLogger("opencode_companion.server_output")


class ProcessState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    ERROR = "error"


StateObserver = Callable[[ProcessState], None]
Spawner = Callable[..., Awaitable[Any]]


def build_server_command(settings: CompanionSettings, executable: str | None = None) -> list[str]:
    return [
        executable or settings.executable_path,
        "serve",
        "--port",
        str(settings.port),
        "--hostname",
        settings.hostname,
        "--cors",
        settings.cors_origin,
    ]


def build_server_env(base_env: dict[str, str] | None = None) -> dict[str, str]:
    env = dict(os.environ if base_env is None else base_env)
    env.update(SERVER_ENV_OVERRIDES)
    return env


class ProcessSupervisor:
    """Owns the lifecycle of one spawned ``opencode serve`` process.

    ``start`` attaches to an instance that already answers its health check
    instead of spawning a second one. ``stop`` reports ``stopped`` before any
    teardown I/O and never raises.
    """

    def __init__(
        self,
        settings: CompanionSettings,
        project_directory: str | None,
        *,
        health_probe: HealthProbe | None = None,
        terminator: ProcessTreeTerminator | None = None,
        spawn: Spawner | None = None,
        platform: str | None = None,
        poll_interval_seconds: float = POLL_INTERVAL_SECONDS,
        graceful_stop_timeout_seconds: float = GRACEFUL_STOP_TIMEOUT_SECONDS,
        forced_stop_timeout_seconds: float = FORCED_STOP_TIMEOUT_SECONDS,
    ) -> None:
        self._settings = settings
        self._project_directory = project_directory or None
        self._platform = sys.platform if platform is None else platform
        self._health_probe = health_probe or HealthProbe()
        self._terminator = terminator or select_terminator(self._platform)
        self._spawn = spawn or asyncio.create_subprocess_exec
        self._poll_interval_seconds = float(poll_interval_seconds)
        self._graceful_stop_timeout_seconds = float(graceful_stop_timeout_seconds)
        self._forced_stop_timeout_seconds = float(forced_stop_timeout_seconds)

        self._state = ProcessState.STOPPED
        self._observers: list[StateObserver] = []
        self._process: Any | None = None
        self._exit_watcher: asyncio.Task[None] | None = None
        self._output_tasks: list[asyncio.Task[None]] = []
        self._last_error: str | None = None
        self._last_failure: TypedCompanionError | None = None
        self._early_exit_code: int | None = None
        self._start_generation = 0

    @property
    def state(self) -> ProcessState:
        return self._state

    @property
    def last_error(self) -> str | None:
        if self._state is not ProcessState.ERROR:
            return None
        return self._last_error

    @property
    def last_failure(self) -> TypedCompanionError | None:
        if self._state is not ProcessState.ERROR:
            return None
        return self._last_failure

    @property
    def settings(self) -> CompanionSettings:
        return self._settings

    @property
    def project_directory(self) -> str | None:
        return self._project_directory

    @property
    def pid(self) -> int | None:
        process = self._process
        return None if process is None else process.pid

    def update_settings(self, settings: CompanionSettings) -> None:
        self._settings = settings

    def update_project_directory(self, directory: str | None) -> None:
        self._project_directory = directory or None

    def get_url(self) -> str:
        return server_ui_url(self._settings.hostname, self._settings.port, self._project_directory or "")

    def get_api_url(self) -> str:
        return server_api_url(self._settings.hostname, self._settings.port)

    def subscribe(self, observer: StateObserver) -> Callable[[], None]:
        self._observers.append(observer)

        def dispose() -> None:
            try:
                self._observers.remove(observer)
            except ValueError:
                pass

        return dispose

    async def start(self) -> bool:
        if self._state in (ProcessState.STARTING, ProcessState.RUNNING):
            return True

        self._start_generation += 1
        generation = self._start_generation
        self._last_error = None
        self._last_failure = None
        self._early_exit_code = None
        self._set_state(ProcessState.STARTING)

        directory = self._project_directory
        if not directory:
            return self._fail(ConfigurationError("Project directory not configured"))

        settings = self._settings
        healthy = await self._health_probe.check(self.get_api_url())
        if self._superseded(generation):
            return False
        if healthy:
            LOGGER.info(
                "Server already running on port %s; attaching",
                settings.port,
                extra={"component": "supervisor", "operation": "start", "result": "attached"},
            )
            self._set_state(ProcessState.RUNNING)
            return True

        executable = shutil.which(settings.executable_path) or settings.executable_path
        cmd = build_server_command(settings, executable)
        LOGGER.info(
            "Starting server executable=%s port=%s hostname=%s cwd=%s",
            settings.executable_path,
            settings.port,
            settings.hostname,
            directory,
            extra={"component": "supervisor", "operation": "spawn"},
        )
        try:
            process = await self._spawn(
                *cmd,
                cwd=directory,
                env=build_server_env(),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                **self._spawn_options(),
            )
        except FileNotFoundError as exc:
            if self._superseded(generation):
                return False
            if exc.filename is not None and str(exc.filename) == str(directory):
                return self._fail(SpawnError(f"Failed to start: project directory not found '{directory}'"))
            return self._fail(ExecutableNotFoundError(f"Executable not found at '{settings.executable_path}'"))
        except OSError as exc:
            if self._superseded(generation):
                return False
            return self._fail(SpawnError(f"Failed to start: {exc}"))

        if self._superseded(generation):
            # stop() or a newer start() ran while the process was being spawned.
            await self._terminate_process(process, [], None)
            return False

        self._process = process
        LOGGER.info(
            "Server process spawned pid=%s",
            process.pid,
            extra={"component": "supervisor", "operation": "spawn", "result": "spawned", "pid": process.pid},
        )
        self._output_tasks = [
            asyncio.create_task(self._pump_output(stream, level, process.pid))
            for stream, level in ((process.stdout, logging.INFO), (process.stderr, logging.WARNING))
            if stream is not None
        ]
        self._exit_watcher = asyncio.create_task(self._watch_exit(process))

        ready = await self._wait_for_server_or_exit(settings.startup_timeout_ms / 1000.0)
        if self._superseded(generation):
            if self._process is process:
                await self._terminate_process(*self._detach())
            return False
        if ready:
            self._set_state(ProcessState.RUNNING)
            return True

        exited_early = self._process is not process
        await self.stop()
        if generation != self._start_generation:
            # A newer start() began while this attempt was tearing down.
            return False
        if self._early_exit_code is not None:
            return self._fail(
                ReadinessTimeoutError(f"Process exited unexpectedly (exit code {self._early_exit_code})")
            )
        if exited_early:
            return self._fail(ReadinessTimeoutError("Process exited before server became ready"))
        return self._fail(ReadinessTimeoutError("Server failed to start within timeout"))

    async def stop(self) -> None:
        detached = self._detach()
        self._set_state(ProcessState.STOPPED)
        await self._terminate_process(*detached)

    def _superseded(self, generation: int) -> bool:
        return generation != self._start_generation or self._state is not ProcessState.STARTING

    def _detach(self) -> tuple[Any | None, list[asyncio.Task[None]], asyncio.Task[None] | None]:
        process, self._process = self._process, None
        output_tasks, self._output_tasks = self._output_tasks, []
        exit_watcher, self._exit_watcher = self._exit_watcher, None
        return process, output_tasks, exit_watcher

    async def _terminate_process(
        self,
        process: Any | None,
        output_tasks: list[asyncio.Task[None]],
        exit_watcher: asyncio.Task[None] | None,
    ) -> None:
        try:
            if process is None or process.returncode is not None:
                return
            pid = process.pid
            LOGGER.info(
                "Stopping server process tree pid=%s",
                pid,
                extra={"component": "supervisor", "operation": "stop", "pid": pid},
            )
            await self._terminator.terminate(pid, force=False)
            if await self._wait_for_exit(process, self._graceful_stop_timeout_seconds):
                LOGGER.info(
                    "Server stopped gracefully",
                    extra={"component": "supervisor", "operation": "stop", "result": "graceful", "pid": pid},
                )
                return

            LOGGER.warning(
                "Server did not exit gracefully; forcing termination",
                extra={"component": "supervisor", "operation": "stop", "result": "forcing", "pid": pid},
            )
            await self._terminator.terminate(pid, force=True)
            if await self._wait_for_exit(process, self._forced_stop_timeout_seconds):
                LOGGER.info(
                    "Server stopped after forced termination",
                    extra={"component": "supervisor", "operation": "stop", "result": "forced", "pid": pid},
                )
                return
            LOGGER.error(
                "Failed to stop server process tree pid=%s within timeout",
                pid,
                extra={"component": "supervisor", "operation": "stop", "result": "error", "pid": pid},
            )
        finally:
            if exit_watcher is not None and not exit_watcher.done():
                exit_watcher.cancel()
                await asyncio.gather(exit_watcher, return_exceptions=True)
            await self._drain_output_tasks(output_tasks)

    def _spawn_options(self) -> dict[str, Any]:
        if self._platform == "win32":
            return {"creationflags": getattr(subprocess, "CREATE_NO_WINDOW", 0)}
        return {"start_new_session": True}

    def _set_state(self, state: ProcessState) -> None:
        if state is self._state:
            return
        self._state = state
        for observer in list(self._observers):
            try:
                observer(state)
            except Exception:
                LOGGER.exception("Process state observer failed for state=%s", state.value)

    def _fail(self, error: TypedCompanionError) -> bool:
        self._last_error = str(error)
        self._last_failure = error
        LOGGER.error(
            "%s",
            error,
            extra={
                "component": "supervisor",
                "operation": "start",
                "result": "error",
                "error_class": error.error_code,
            },
        )
        self._set_state(ProcessState.ERROR)
        return False

    async def _wait_for_server_or_exit(self, timeout_seconds: float) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max(0.0, timeout_seconds)
        while loop.time() < deadline:
            if self._process is None or self._state is not ProcessState.STARTING:
                LOGGER.info("Process exited before server became ready")
                return False
            if await self._health_probe.check(self.get_api_url()):
                return True
            await asyncio.sleep(self._poll_interval_seconds)
        return False

    async def _watch_exit(self, process: Any) -> None:
        returncode = await process.wait()
        LOGGER.info(
            "Server process exited with code %s",
            returncode,
            extra={"component": "supervisor", "operation": "exit", "pid": process.pid},
        )
        if self._process is not process:
            return
        self._process = None
        if self._state is ProcessState.STARTING and returncode is not None and returncode > 0:
            self._early_exit_code = returncode
        elif self._state is ProcessState.RUNNING:
            error = UnexpectedExitError(f"Server process exited unexpectedly (exit code {returncode})")
            LOGGER.warning(
                "%s",
                error,
                extra={
                    "component": "supervisor",
                    "operation": "exit",
                    "result": "stopped",
                    "pid": process.pid,
                    "error_class": error.error_code,
                },
            )
            self._set_state(ProcessState.STOPPED)

    @staticmethod
    async def _wait_for_exit(process: Any, timeout_seconds: float) -> bool:
        if process.returncode is not None:
            return True
        try:
            await asyncio.wait_for(process.wait(), timeout=timeout_seconds)
        except asyncio.TimeoutError:
            return False
        return True

    @staticmethod
    async def _pump_output(stream: asyncio.StreamReader, level: int, pid: int) -> None:
        while True:
            line = await stream.readline()
            if not line:
                return
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                OUTPUT_LOGGER.log(level, "%s", text, extra={"component": "server_output", "pid": pid})

    @staticmethod
    async def _drain_output_tasks(tasks: list[asyncio.Task[None]]) -> None:
        if not tasks:
            return
        _done, pending = await asyncio.wait(tasks, timeout=OUTPUT_DRAIN_TIMEOUT_SECONDS)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
