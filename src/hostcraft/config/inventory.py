"""Host inventory management from YAML configuration."""
import logging
from dataclasses import fields
from pathlib import Path
from typing import Optional

import yaml

from ..backends import create_backend, SystemBackend
from ..backends.base import BackendConfig
from ..reconcile_engine.settings import EngineSettings

logger = logging.getLogger(__name__)

LOCAL_HOST_ID = "localhost"

_BACKEND_FIELDS = {f.name for f in fields(BackendConfig)}


class HostInventory:
    """Manages the host inventory loaded from YAML config.

    ```yaml
    defaults:
      username: root
      timeout: 30

    hosts:
      workstation:
        type: local
      build-box:
        type: ssh
        host: 192.168.1.20
        use_sudo: true
        username: deploy
      snapshot:
        type: memory
        state_file: ./state.yaml

    groups:
      desktops: [workstation]

    engine:
      probe_timeout: 10
    ```

    Without a hosts.yaml the inventory holds a single local host.
    """

    def __init__(self, config_path: Optional[str] = None, required: bool = False):
        """
        Initialize inventory.

        Args:
            config_path: Explicit hosts.yaml path (searched for if omitted)
            required: Raise FileNotFoundError instead of falling back to localhost
        """
        self.config_path = config_path or self._find_config(required)
        self._config: dict = {}
        self._hosts: dict[str, SystemBackend] = {}
        self._load_config()

    def _find_config(self, required: bool) -> Optional[str]:
        """Find the hosts.yaml config file."""
        search_paths = [
            Path.cwd() / "configs" / "hosts.yaml",
            Path.cwd() / "hosts.yaml",
            Path.home() / ".config" / "hostcraft" / "hosts.yaml",
            Path("/etc/hostcraft/hosts.yaml"),
        ]

        for path in search_paths:
            if path.exists():
                return str(path)

        if required:
            raise FileNotFoundError(
                "Could not find hosts.yaml. Create one in ./configs/hosts.yaml"
            )
        return None

    def _load_config(self) -> None:
        """Load the YAML configuration."""
        if self.config_path is None:
            logger.debug("No hosts.yaml found, using local host only")
            self._config = {"hosts": {LOCAL_HOST_ID: {"type": "local"}}}
            return

        with open(self.config_path) as f:
            self._config = yaml.safe_load(f) or {}

        hosts = self._config.get("hosts") or {}
        if not isinstance(hosts, dict):
            raise ValueError(f"{self.config_path}: 'hosts' must be a mapping")
        self._config["hosts"] = hosts

        # Apply defaults
        defaults = self._config.get("defaults", {})
        for host_id, host_config in hosts.items():
            if host_config is None:
                host_config = hosts[host_id] = {}
            for key, value in defaults.items():
                if key not in host_config:
                    host_config[key] = value
            host_config.setdefault("type", "local")
            host_config.setdefault("name", host_id)

            # Relative state files are relative to the inventory file
            state_file = host_config.get("state_file")
            if state_file and not Path(state_file).expanduser().is_absolute():
                host_config["state_file"] = str(Path(self.config_path).parent / state_file)

            unknown = set(host_config) - _BACKEND_FIELDS
            if unknown:
                raise ValueError(
                    f"{self.config_path}: host '{host_id}' has unknown keys: "
                    f"{', '.join(sorted(unknown))}"
                )

        self._validate_groups()

    def get_host_ids(self) -> list[str]:
        """Get all host IDs."""
        return list(self._config.get("hosts", {}).keys())

    def get_host_config(self, host_id: str) -> dict:
        """Get raw config for a host."""
        hosts = self._config.get("hosts", {})
        if host_id not in hosts:
            raise KeyError(f"Unknown host: {host_id}")
        return hosts[host_id]

    def default_host_id(self) -> str:
        """Host used when none is given: the only host, or 'localhost'."""
        host_ids = self.get_host_ids()
        if len(host_ids) == 1:
            return host_ids[0]
        if LOCAL_HOST_ID in host_ids:
            return LOCAL_HOST_ID
        raise KeyError(
            f"Several hosts defined ({', '.join(host_ids)}); choose one with --host"
        )

    def get_backend(self, host_id: str) -> SystemBackend:
        """Get or create a backend instance."""
        if host_id not in self._hosts:
            config = self.get_host_config(host_id)
            self._hosts[host_id] = create_backend(host_id, config)
        return self._hosts[host_id]

    def engine_settings(self, base: Optional[EngineSettings] = None) -> EngineSettings:
        """Engine settings: environment, then the inventory's `engine:` section."""
        base = base or EngineSettings.from_env()
        return base.merged(self._config.get("engine"))

    async def close_all(self) -> None:
        """Close all host connections."""
        for backend in self._hosts.values():
            if backend.is_connected:
                await backend.disconnect()
        self._hosts.clear()

    # === Group Management ===

    def _validate_groups(self) -> None:
        """Validate that all group members reference valid hosts."""
        groups = self._config.get("groups", {})
        hosts = self._config.get("hosts", {})

        for group_name, members in groups.items():
            if not isinstance(members, list):
                logger.warning(f"Group '{group_name}' should be a list of host IDs")
                continue
            for host_id in members:
                if host_id not in hosts:
                    logger.warning(
                        f"Group '{group_name}' references unknown host: {host_id}"
                    )

    def get_groups(self) -> dict[str, list[str]]:
        """Get all defined groups and their members."""
        return dict(self._config.get("groups", {}))

    def get_group_members(self, group_name: str) -> list[str]:
        """Get host IDs in a group.

        Raises:
            KeyError: If group doesn't exist
        """
        groups = self._config.get("groups", {})
        if group_name not in groups:
            raise KeyError(f"Unknown group: {group_name}")
        return list(groups[group_name])

    def get_host_groups(self, host_id: str) -> list[str]:
        """Get all groups a host belongs to."""
        return [
            group_name
            for group_name, members in self._config.get("groups", {}).items()
            if host_id in members
        ]

    def describe_host(self, host_id: str) -> dict:
        """Summary of a host's configuration without secrets."""
        config = self.get_host_config(host_id)
        return {
            "id": host_id,
            "name": config.get("name", host_id),
            "type": config.get("type"),
            "host": config.get("host", "localhost"),
            "description": config.get("description", ""),
            "groups": self.get_host_groups(host_id),
        }
