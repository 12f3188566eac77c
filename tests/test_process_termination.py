from __future__ import annotations

import signal
import sys
import unittest
from pathlib import Path
from unittest.mock import AsyncMock, Mock, patch

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from opencode_companion.runtime import termination
from opencode_companion.runtime.termination import (
    ProcessGroupTerminator,
    TaskkillTreeTerminator,
    select_terminator,
)


class SelectTerminatorTests(unittest.TestCase):
    def test_windows_uses_taskkill(self) -> None:
        self.assertIsInstance(select_terminator("win32"), TaskkillTreeTerminator)

    def test_posix_uses_process_groups(self) -> None:
        self.assertIsInstance(select_terminator("linux"), ProcessGroupTerminator)
        self.assertIsInstance(select_terminator("darwin"), ProcessGroupTerminator)


@unittest.skipUnless(hasattr(signal, "SIGKILL"), "POSIX signals required")
class ProcessGroupTerminatorTests(unittest.IsolatedAsyncioTestCase):
    async def test_graceful_signals_the_group_with_sigterm(self) -> None:
        with patch.object(termination.os, "getpgid", return_value=321), patch.object(
            termination.os, "killpg", create=True
        ) as killpg, patch.object(termination.os, "kill") as kill:
            await ProcessGroupTerminator().terminate(321, force=False)

        killpg.assert_called_once_with(321, signal.SIGTERM)
        kill.assert_not_called()

    async def test_forced_signals_the_group_with_sigkill(self) -> None:
        with patch.object(termination.os, "getpgid", return_value=321), patch.object(
            termination.os, "killpg", create=True
        ) as killpg:
            await ProcessGroupTerminator().terminate(321, force=True)

        killpg.assert_called_once_with(321, signal.SIGKILL)

    async def test_non_leader_signals_only_the_process(self) -> None:
        with patch.object(termination.os, "getpgid", return_value=1), patch.object(
            termination.os, "killpg", create=True
        ) as killpg, patch.object(termination.os, "kill") as kill:
            with self.assertLogs("opencode_companion.runtime", level="WARNING"):
                await ProcessGroupTerminator().terminate(321, force=False)

        killpg.assert_not_called()
        kill.assert_called_once_with(321, signal.SIGTERM)

    async def test_already_exited_process_is_ignored(self) -> None:
        with patch.object(termination.os, "getpgid", side_effect=ProcessLookupError), patch.object(
            termination.os, "killpg", create=True
        ) as killpg:
            await ProcessGroupTerminator().terminate(321, force=True)

        killpg.assert_not_called()

    async def test_permission_error_is_logged_not_raised(self) -> None:
        with patch.object(termination.os, "getpgid", return_value=321), patch.object(
            termination.os, "killpg", create=True, side_effect=PermissionError("denied")
        ):
            with self.assertLogs("opencode_companion.runtime", level="WARNING"):
                await ProcessGroupTerminator().terminate(321, force=False)


class TaskkillTreeTerminatorTests(unittest.IsolatedAsyncioTestCase):
    async def _run(self, *, force: bool) -> Mock:
        process = Mock()
        process.wait = AsyncMock(return_value=0)
        spawn = AsyncMock(return_value=process)
        with patch.object(termination.asyncio, "create_subprocess_exec", spawn):
            await TaskkillTreeTerminator().terminate(77, force=force)
        return spawn

    async def test_graceful_tree_kill(self) -> None:
        spawn = await self._run(force=False)

        self.assertEqual(spawn.await_args.args, ("taskkill", "/T", "/PID", "77"))

    async def test_forced_tree_kill(self) -> None:
        spawn = await self._run(force=True)

        self.assertEqual(spawn.await_args.args, ("taskkill", "/F", "/T", "/PID", "77"))

    async def test_missing_taskkill_is_logged_not_raised(self) -> None:
        spawn = AsyncMock(side_effect=FileNotFoundError("taskkill"))
        with patch.object(termination.asyncio, "create_subprocess_exec", spawn):
            with self.assertLogs("opencode_companion.runtime", level="WARNING"):
                await TaskkillTreeTerminator().terminate(77, force=False)


if __name__ == "__main__":
    unittest.main()
