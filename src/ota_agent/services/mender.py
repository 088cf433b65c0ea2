"""Updater backed by the mender command line tool."""

import asyncio
import logging
from collections import deque
from typing import Optional, Protocol

from ota_agent.models.errors import UpdaterError


class Updater(Protocol):
    """Install/commit/rollback capability driven by the orchestrator.

    install() pushes every output line to the progress queue and returns
    when the install finished. All methods raise UpdaterError on failure.
    Cancelling install() must stop the underlying operation.
    """

    async def install(self, url: str, progress: asyncio.Queue) -> None: ...

    async def commit(self) -> None: ...

    async def rollback(self) -> None: ...


class MenderUpdater:
    """Runs `mender -install|-commit|-rollback` as a subprocess."""

    OUTPUT_TAIL = 5

    def __init__(self, binary: str = "mender"):
        self.logger = logging.getLogger("ota_agent.mender")
        self.binary = binary

    async def install(self, url: str, progress: asyncio.Queue) -> None:
        await self._run("-install", url, progress=progress)

    async def commit(self) -> None:
        await self._run("-commit")

    async def rollback(self) -> None:
        await self._run("-rollback")

    async def _run(self, *args: str, progress: Optional[asyncio.Queue] = None) -> None:
        """Run mender and stream its output.

        Raises:
            UpdaterError: if mender cannot be started or exits non-zero
        """
        command = [self.binary, *args]
        self.logger.info(f"Running: {' '.join(command)}")

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            raise UpdaterError(f"Unable to start {self.binary}: {e}") from e

        tail: deque[str] = deque(maxlen=self.OUTPUT_TAIL)
        try:
            while True:
                line = await process.stdout.readline()
                if not line:
                    break
                text = line.decode("utf-8", errors="replace").rstrip()
                if not text:
                    continue
                tail.append(text)
                self.logger.debug(f"mender: {text}")
                if progress is not None:
                    progress.put_nowait(text)
            returncode = await process.wait()
        except BaseException as e:
            # Cancelled or output unreadable: do not leave mender running
            if process.returncode is None:
                self.logger.warning(f"Killing {self.binary} {args[0]} (pid {process.pid})")
                process.kill()
                await process.wait()
            if isinstance(e, ValueError):
                raise UpdaterError(f"Unreadable output from {self.binary} {args[0]}: {e}") from e
            raise

        if returncode != 0:
            raise UpdaterError(
                f"{self.binary} {args[0]} exited with code {returncode}: "
                f"{' | '.join(tail)}"
            )
        self.logger.info(f"{self.binary} {args[0]} completed")
