"""System reboot trigger."""

import asyncio
import logging
import shlex
from typing import Protocol


class Rebooter(Protocol):
    """Fire-and-forget reboot; success means the OS accepted the request."""

    async def reboot(self) -> None: ...


class SystemRebooter:
    """Reboots the device with a shell command (default `shutdown -r now`)."""

    def __init__(self, command: str = "shutdown -r now"):
        self.logger = logging.getLogger("ota_agent.process")
        self.command = command

    async def reboot(self) -> None:
        """Run the reboot command.

        Raises:
            RuntimeError: If the command fails
        """
        self.logger.info(f"Rebooting: {self.command}")

        try:
            process = await asyncio.create_subprocess_exec(
                *shlex.split(self.command),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, stderr = await process.communicate()
        except OSError as e:
            self.logger.error(f"Failed to run reboot command: {e}")
            raise RuntimeError(f"Failed to run {self.command}: {e}") from e

        if process.returncode != 0:
            raise RuntimeError(
                f"Reboot failed: exit code {process.returncode}, "
                f"stderr: {stderr.decode().strip()}"
            )

        self.logger.info("Reboot requested")
