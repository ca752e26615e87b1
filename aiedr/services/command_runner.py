"""
External command execution for host checks.

run() returns the command's stdout, or None when the executable could not
be spawned or did not finish within its timeout. A timed-out process is
killed and reaped before returning.
"""

import asyncio
import logging
from typing import Optional, Protocol, Sequence

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0


class CommandRunner(Protocol):
    async def run(
        self,
        executable: str,
        args: Sequence[str] = (),
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> Optional[str]:
        ...


class SubprocessCommandRunner:
    """asyncio subprocess runner. Never raises."""

    async def run(
        self,
        executable: str,
        args: Sequence[str] = (),
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> Optional[str]:
        try:
            proc = await asyncio.create_subprocess_exec(
                executable, *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
                stdin=asyncio.subprocess.DEVNULL,
            )
        except (FileNotFoundError, PermissionError) as e:
            logger.debug(f"Cannot run {executable}: {e}")
            return None
        except OSError as e:
            logger.warning(f"Failed to spawn {executable}: {e}")
            return None

        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"{executable} timed out after {timeout}s, terminating")
            await self._terminate(proc)
            return None
        except asyncio.CancelledError:
            await self._terminate(proc)
            raise

        if proc.returncode:
            logger.debug(f"{executable} exited with status {proc.returncode}")
        return stdout.decode("utf-8", errors="replace")

    @staticmethod
    async def _terminate(proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is not None:
            return
        try:
            proc.kill()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=2.0)
        except asyncio.TimeoutError:
            logger.error(f"Process {proc.pid} did not exit after kill")
