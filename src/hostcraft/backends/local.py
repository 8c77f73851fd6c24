"""Backend for the machine hostcraft itself runs on."""
import asyncio
import logging
import socket
from typing import Optional

from .base import BackendConfig
from .command import CommandBackend

logger = logging.getLogger(__name__)


class LocalBackend(CommandBackend):
    """Run commands through a local /bin/sh subprocess."""

    def __init__(self, host_id: str = "localhost", config: Optional[BackendConfig] = None):
        super().__init__(host_id, config or BackendConfig(type="local", host=socket.gethostname()))

    async def connect(self) -> bool:
        self._connected = True
        logger.debug(f"Using local host for {self.host_id}")
        return True

    async def disconnect(self) -> None:
        self._connected = False

    async def execute(self, command: str) -> tuple[bool, str]:
        """Execute a command in a local shell."""
        process = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=self.config.timeout
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise TimeoutError(f"Command timed out after {self.config.timeout}s: {command}")

        out = stdout.decode("utf-8", errors="ignore")
        err = stderr.decode("utf-8", errors="ignore")
        if process.returncode != 0:
            logger.debug(f"Command '{command}' failed (exit {process.returncode}): {err}")
            return False, f"{out}\n{err}".strip()
        return True, out.strip()
