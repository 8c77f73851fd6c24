"""Base backend abstraction for managed hosts."""
import asyncio
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

from ..reconcile_engine.schema import ResourceKind

logger = logging.getLogger(__name__)


@dataclass
class BackendConfig:
    """Configuration for a managed host."""
    type: str
    name: str = ""
    host: str = "localhost"
    port: int = 22
    username: str = "root"
    password: Optional[str] = None
    password_env: str = "HOSTCRAFT_PASSWORD"
    key_file: Optional[str] = None
    timeout: int = 30
    retries: int = 3
    retry_delay: float = 2
    use_sudo: bool = False
    # Where hostcraft records what it manages on the host
    state_dir: str = "/var/lib/hostcraft"
    profile_path: str = "/etc/profile.d/hostcraft.sh"
    # Overrides for the command templates of command-based backends
    commands: dict = field(default_factory=dict)
    # Seed state for the in-memory backend
    state_file: Optional[str] = None
    description: str = ""

    def get_password(self) -> str:
        """Get password from config or environment variable."""
        if self.password:
            return self.password
        return os.environ.get(self.password_env, "")


@dataclass
class HostStatus:
    """Host reachability and identity information."""
    reachable: bool
    hostname: Optional[str] = None
    os_release: Optional[str] = None
    kernel: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "reachable": self.reachable,
            "hostname": self.hostname,
            "os_release": self.os_release,
            "kernel": self.kernel,
            "error": self.error,
        }


class SystemBackend(ABC):
    """Abstract base class for host backends.

    A backend answers "what is there now" for one resource kind at a time
    and applies single-resource changes. Observed payloads use the same
    field names as declaration payloads so they can be compared directly:

        package  {"version": str}
        service  {"active": bool, "config_hash": str, "config": dict}
        user     {"description", "groups", "shell", "is_normal_user", "uid", "home"}
        env      {"value": str}
        alias    {"command": str}
        file     {"content": str, "mode": str}
        setting  {"value": Any}
    """

    def __init__(self, host_id: str, config: BackendConfig):
        self.host_id = host_id
        self.config = config
        self._connected = False
        self._sessions = 0
        self._session_lock = asyncio.Lock()
        # Held for a whole reconcile run so runs on one host never interleave
        self.run_lock = asyncio.Lock()

    @property
    def name(self) -> str:
        return self.config.name or self.host_id

    @property
    def is_connected(self) -> bool:
        return self._connected

    # Connection management
    @abstractmethod
    async def connect(self) -> bool:
        """Establish connection to the host."""
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        """Close connection to the host."""
        pass

    @abstractmethod
    async def check_health(self) -> HostStatus:
        """Check host reachability and identity."""
        pass

    # Observation
    @abstractmethod
    async def env_read_all(self) -> dict[str, str]:
        """Environment variables of the host (the $NAME interpolation table)."""
        pass

    @abstractmethod
    async def query_resource(self, kind: ResourceKind, name: str) -> Optional[dict[str, Any]]:
        """Observe one resource.

        Returns:
            Observed payload, or None if the resource does not exist
        """
        pass

    @abstractmethod
    async def list_resources(self, kind: ResourceKind) -> dict[str, dict[str, Any]]:
        """Observe every resource of a kind (used for exclusively owned kinds)."""
        pass

    # Modification
    @abstractmethod
    async def apply_resource(
        self,
        kind: ResourceKind,
        name: str,
        payload: dict[str, Any],
    ) -> tuple[bool, str]:
        """Create or update a resource to match payload.

        Returns:
            Tuple of (success, output)
        """
        pass

    @abstractmethod
    async def remove_resource(self, kind: ResourceKind, name: str) -> tuple[bool, str]:
        """Remove a resource (a service is stopped and disabled).

        Returns:
            Tuple of (success, output)
        """
        pass

    async def restore_resource(
        self,
        kind: ResourceKind,
        name: str,
        observed: Optional[dict[str, Any]],
    ) -> tuple[bool, str]:
        """Put a resource back to a previously observed state.

        Used to undo a failed action. None means the resource did not exist.
        """
        if observed is None:
            return await self.remove_resource(kind, name)
        if kind == ResourceKind.SERVICE and not observed.get("active"):
            return await self.remove_resource(kind, name)
        return await self.apply_resource(kind, name, observed)

    # Shared sessions
    async def open_session(self) -> None:
        """Connect unless another user of this backend already has."""
        async with self._session_lock:
            if self._sessions == 0 or not self._connected:
                await self.connect()
            self._sessions += 1

    async def close_session(self) -> None:
        """Disconnect once the last user is done."""
        async with self._session_lock:
            self._sessions = max(0, self._sessions - 1)
            if self._sessions == 0 and self._connected:
                await self.disconnect()

    # Context manager support
    async def __aenter__(self):
        await self.open_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close_session()
        return False
