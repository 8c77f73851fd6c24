"""In-memory host backend.

Keeps host state in a dict, optionally seeded from (and written back to) a
YAML state file. Used for offline planning against a recorded snapshot and
throughout the test suite.

State file layout:

    package:
      git: {version: "2.43.0"}
    service:
      sshd: {active: true, config: {ports: [22]}}
    user:
      chris: {description: Chris, groups: [wheel], shell: zsh}
    environ:
      HOME: /home/chris
"""
import asyncio
import copy
import logging
from pathlib import Path
from typing import Any, Optional

import yaml

from .base import BackendConfig, HostStatus, SystemBackend
from ..reconcile_engine.schema import ResourceKind, config_hash, make_key

logger = logging.getLogger(__name__)


class BackendOperationError(RuntimeError):
    """Raised by the in-memory backend for injected probe failures."""


class InMemoryBackend(SystemBackend):
    """Backend that operates on a dict instead of a real host."""

    def __init__(
        self,
        host_id: str = "memory",
        config: Optional[BackendConfig] = None,
        state: Optional[dict] = None,
    ):
        super().__init__(host_id, config or BackendConfig(type="memory"))
        self.state: dict[ResourceKind, dict[str, dict[str, Any]]] = {}
        # "query:<kind>", "list:<kind>", "apply:<key>", "remove:<key>"
        self.fail_on: set[str] = set()
        self.delays: dict[ResourceKind, float] = {}
        self.calls: list[str] = []
        self.environ: dict[str, str] = {}

        if state is None and self.config.state_file:
            state = self._load_state_file(Path(self.config.state_file).expanduser())
        if state:
            self.load(state)

    def load(self, state: dict) -> None:
        """Replace the current state from a plain kind -> name -> payload dict."""
        self.state = {}
        state = dict(state or {})
        self.environ = {str(k): str(v) for k, v in (state.pop("environ", None) or {}).items()}
        for kind_name, resources in state.items():
            kind = ResourceKind(kind_name)
            self.state[kind] = {
                str(name): dict(payload or {}) for name, payload in (resources or {}).items()
            }

    def dump(self) -> dict:
        """Current state as plain data."""
        data = {
            kind.value: copy.deepcopy(resources)
            for kind, resources in self.state.items()
            if resources
        }
        if self.environ:
            data["environ"] = dict(self.environ)
        return data

    @staticmethod
    def _load_state_file(path: Path) -> dict:
        if not path.exists():
            logger.info(f"State file {path} not found, starting empty")
            return {}
        with open(path) as f:
            return yaml.safe_load(f) or {}

    def _save_state_file(self) -> None:
        if not self.config.state_file:
            return
        path = Path(self.config.state_file).expanduser()
        with open(path, "w") as f:
            yaml.safe_dump(self.dump(), f, default_flow_style=False, sort_keys=True)

    # --- Connection ---

    async def connect(self) -> bool:
        self._connected = True
        return True

    async def disconnect(self) -> None:
        self._connected = False

    async def check_health(self) -> HostStatus:
        return HostStatus(reachable=True, hostname=self.host_id, os_release="in-memory")

    # --- Observation ---

    async def env_read_all(self) -> dict[str, str]:
        self.calls.append("env")
        return dict(self.environ)

    async def _maybe_fail(self, operation: str, kind: ResourceKind) -> None:
        delay = self.delays.get(kind)
        if delay:
            await asyncio.sleep(delay)
        if f"{operation}:{kind.value}" in self.fail_on:
            raise BackendOperationError(f"{operation} {kind.value} failed")

    def _observed(self, kind: ResourceKind, payload: dict[str, Any]) -> dict[str, Any]:
        observed = copy.deepcopy(payload)
        if kind == ResourceKind.SERVICE:
            observed.setdefault("active", True)
            if "config" in observed:
                observed["config_hash"] = config_hash(observed["config"])
        return observed

    async def query_resource(self, kind: ResourceKind, name: str) -> Optional[dict[str, Any]]:
        self.calls.append(f"query:{make_key(kind, name)}")
        await self._maybe_fail("query", kind)
        payload = self.state.get(kind, {}).get(name)
        return None if payload is None else self._observed(kind, payload)

    async def list_resources(self, kind: ResourceKind) -> dict[str, dict[str, Any]]:
        self.calls.append(f"list:{kind.value}")
        await self._maybe_fail("list", kind)
        return {
            name: self._observed(kind, payload)
            for name, payload in sorted(self.state.get(kind, {}).items())
        }

    # --- Modification ---

    async def apply_resource(
        self,
        kind: ResourceKind,
        name: str,
        payload: dict[str, Any],
    ) -> tuple[bool, str]:
        key = make_key(kind, name)
        self.calls.append(f"apply:{key}")
        if f"apply:{key}" in self.fail_on:
            return False, f"injected failure applying {key}"

        resources = self.state.setdefault(kind, {})
        if kind == ResourceKind.SERVICE:
            resources[name] = {
                "active": True,
                "config": copy.deepcopy(payload.get("config", {})),
            }
        else:
            current = resources.get(name, {})
            current.update({k: copy.deepcopy(v) for k, v in payload.items() if v is not None})
            resources[name] = current

        self._save_state_file()
        return True, f"applied {key}"

    async def remove_resource(self, kind: ResourceKind, name: str) -> tuple[bool, str]:
        key = make_key(kind, name)
        self.calls.append(f"remove:{key}")
        if f"remove:{key}" in self.fail_on:
            return False, f"injected failure removing {key}"

        resources = self.state.get(kind, {})
        if kind == ResourceKind.SERVICE and name in resources:
            resources[name]["active"] = False
        else:
            resources.pop(name, None)

        self._save_state_file()
        return True, f"removed {key}"
