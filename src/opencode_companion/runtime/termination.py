from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
from typing import Protocol


LOGGER = logging.getLogger("opencode_companion.runtime")


class ProcessTreeTerminator(Protocol):
    async def terminate(self, pid: int, *, force: bool) -> None: ...


class ProcessGroupTerminator:
    """Signals the whole process group the child leads (POSIX).

    The child is spawned in its own session, so its pgid equals its pid. When
    that is not the case (the platform refused to detach it, or the pid was
    reused) only the pid itself is signalled.
    """

    async def terminate(self, pid: int, *, force: bool) -> None:
        sig = signal.SIGKILL if force else signal.SIGTERM
        try:
            pgid = os.getpgid(pid)
        except ProcessLookupError:
            return
        except OSError:
            pgid = 0

        try:
            if pgid == pid:
                os.killpg(pgid, sig)
            else:
                LOGGER.warning(
                    "Process %s is not a process group leader (pgid=%s); signalling the process only",
                    pid,
                    pgid,
                    extra={"component": "runtime", "operation": "terminate", "pid": pid},
                )
                os.kill(pid, sig)
        except ProcessLookupError:
            return
        except (PermissionError, OSError) as exc:
            LOGGER.warning(
                "Failed to send %s to process tree %s: %s",
                sig.name,
                pid,
                exc,
                extra={"component": "runtime", "operation": "terminate", "pid": pid, "result": "error"},
            )


class TaskkillTreeTerminator:
    """Terminates a process and its descendants by pid with ``taskkill /T``."""

    async def terminate(self, pid: int, *, force: bool) -> None:
        cmd = ["taskkill", "/T", "/PID", str(pid)]
        if force:
            cmd.insert(1, "/F")
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
            returncode = await proc.wait()
        except OSError as exc:
            LOGGER.warning(
                "taskkill failed for process tree %s: %s",
                pid,
                exc,
                extra={"component": "runtime", "operation": "terminate", "pid": pid, "result": "error"},
            )
            return
        if returncode != 0:
            LOGGER.debug("taskkill exited with %s for process tree %s", returncode, pid)


def select_terminator(platform: str | None = None) -> ProcessTreeTerminator:
    resolved = sys.platform if platform is None else platform
    if resolved == "win32":
        return TaskkillTreeTerminator()
    return ProcessGroupTerminator()
