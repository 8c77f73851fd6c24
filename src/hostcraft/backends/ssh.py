"""SSH backend for remote hosts.

This handler supports:
- Password or key-based authentication (password from config or env var)
- Retry with backoff while establishing the session
- Optional sudo elevation for non-root users
"""
import asyncio
import logging
from typing import Optional

import paramiko

from .base import BackendConfig
from .command import CommandBackend
from ..utils.connection import with_retry
from ..utils.logging_config import timed

logger = logging.getLogger(__name__)


class SSHBackend(CommandBackend):
    """Remote host reached over SSH."""

    def __init__(self, host_id: str, config: BackendConfig):
        super().__init__(host_id, config)
        self._ssh: Optional[paramiko.SSHClient] = None

    @timed("connect")
    @with_retry()
    async def connect(self) -> bool:
        """Connect to the host via SSH."""
        logger.info(f"Connecting to {self.host_id} at {self.config.host}")

        loop = asyncio.get_event_loop()
        password = self.config.get_password() or None

        def _connect():
            ssh = paramiko.SSHClient()
            ssh.load_system_host_keys()
            ssh.set_missing_host_key_policy(paramiko.AutoAddPolicy())
            ssh.connect(
                hostname=self.config.host,
                port=self.config.port,
                username=self.config.username,
                password=password,
                key_filename=self.config.key_file,
                timeout=self.config.timeout,
                allow_agent=password is None,
                look_for_keys=password is None and self.config.key_file is None,
            )
            return ssh

        client = await loop.run_in_executor(None, _connect)
        if self._ssh:
            self._ssh.close()
        self._ssh = client
        self._connected = True
        logger.info(f"Connected to {self.host_id}")
        return True

    async def disconnect(self) -> None:
        """Disconnect from the host."""
        if self._ssh:
            self._ssh.close()
            self._ssh = None
        self._connected = False
        logger.info(f"Disconnected from {self.host_id}")

    async def execute(self, command: str) -> tuple[bool, str]:
        """Execute a command via SSH."""
        if not self._ssh:
            raise ConnectionError("Not connected")

        ssh = self._ssh
        loop = asyncio.get_event_loop()

        def _exec():
            stdin, stdout, stderr = ssh.exec_command(
                command, timeout=self.config.timeout
            )
            out = stdout.read().decode("utf-8", errors="ignore")
            err = stderr.read().decode("utf-8", errors="ignore")
            exit_code = stdout.channel.recv_exit_status()
            return exit_code, out, err

        exit_code, out, err = await loop.run_in_executor(None, _exec)

        if exit_code != 0:
            logger.debug(f"Command '{command}' failed (exit {exit_code}): {err}")
            return False, f"{out}\n{err}".strip()
        return True, out.strip()
