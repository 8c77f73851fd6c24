"""Shell-command based backend shared by the local and SSH backends.

Packages, services and users are driven through the host's own tools
(dpkg/apt, systemctl, getent/useradd by default; every command can be
overridden per host in the inventory). Resources with no native tool
(session variables, aliases, settings) and the bookkeeping needed to
observe service config and managed files are kept as records under the
host's state directory:

    /var/lib/hostcraft/<kind>/<url-quoted name>

Environment variables and aliases are additionally rendered into a
profile script so login shells pick them up.
"""
import base64
import json
import logging
import posixpath
import shlex
from abc import abstractmethod
from typing import Any, Optional
from urllib.parse import quote, unquote

from .base import BackendConfig, HostStatus, SystemBackend
from ..reconcile_engine.schema import ResourceKind, config_hash

logger = logging.getLogger(__name__)

DEFAULT_COMMANDS = {
    "package_query": "dpkg-query -W -f='${Version}' {name}",
    "package_list": "dpkg-query -W -f='${Package}\\t${Version}\\n'",
    "package_spec": "{name}={version}",
    "package_install": "DEBIAN_FRONTEND=noninteractive apt-get install -y {spec}",
    "package_remove": "DEBIAN_FRONTEND=noninteractive apt-get remove -y {name}",
    "service_active": "systemctl is-active --quiet {name}",
    "service_list": "systemctl list-units --type=service --state=active --no-legend --plain",
    "service_start": "systemctl enable --now {name}",
    "service_restart": "systemctl restart {name}",
    "service_stop": "systemctl disable --now {name}",
    "user_query": "getent passwd {name}",
    "user_groups": "id -nG {name}",
    "user_list": "getent passwd",
    "user_add": "useradd {options} {name}",
    "user_modify": "usermod {options} {name}",
    "user_remove": "userdel {name}",
}

# Normal (human) accounts; system accounts are never listed for removal
NORMAL_UID_MIN = 1000
NORMAL_UID_MAX = 65533

MISSING = "__HOSTCRAFT_MISSING__"


def render_command(template: str, **values: str) -> str:
    """Fill {placeholders} in a command template.

    Values are substituted verbatim; callers quote them.
    """
    command = template
    for key, value in values.items():
        command = command.replace("{" + key + "}", value)
    return command


def normalize_mode(mode: Optional[str]) -> Optional[str]:
    """'644' -> '0644'."""
    if mode is None:
        return None
    mode = str(mode).strip()
    return mode.zfill(4) if mode.isdigit() else mode


class CommandBackend(SystemBackend):
    """Backend that reconciles a host by running shell commands on it."""

    def __init__(self, host_id: str, config: BackendConfig):
        super().__init__(host_id, config)
        self.commands = {**DEFAULT_COMMANDS, **(config.commands or {})}

    @abstractmethod
    async def execute(self, command: str) -> tuple[bool, str]:
        """Execute a raw shell command on the host.

        Returns:
            Tuple of (success, output)
        """
        pass

    async def run(self, command: str) -> tuple[bool, str]:
        """Execute a command, elevated with sudo when configured."""
        if self.config.use_sudo:
            command = f"sudo -n sh -c {shlex.quote(command)}"
        logger.debug(f"[{self.host_id}] $ {command}")
        return await self.execute(command)

    async def run_template(self, name: str, /, **values: str) -> tuple[bool, str]:
        quoted = {k: v if k in ("options", "spec") else shlex.quote(v) for k, v in values.items()}
        return await self.run(render_command(self.commands[name], **quoted))

    async def check_health(self) -> HostStatus:
        """Check host reachability and identity."""
        try:
            if not self._connected:
                await self.connect()
            success, hostname = await self.run("uname -n")
            if not success:
                return HostStatus(reachable=False, error=hostname)
            _, kernel = await self.run("uname -sr")
            _, release = await self.run(
                ". /etc/os-release 2>/dev/null && echo \"$PRETTY_NAME\" || uname -o"
            )
            return HostStatus(
                reachable=True,
                hostname=hostname.strip(),
                os_release=release.strip() or None,
                kernel=kernel.strip() or None,
            )
        except Exception as e:
            return HostStatus(reachable=False, error=str(e))

    # === State-dir records ===

    def _record_dir(self, kind: ResourceKind) -> str:
        return posixpath.join(self.config.state_dir, kind.value)

    def _record_path(self, kind: ResourceKind, name: str) -> str:
        return posixpath.join(self._record_dir(kind), quote(name, safe=""))

    async def _write_text(self, path: str, text: str) -> tuple[bool, str]:
        encoded = base64.b64encode(text.encode()).decode()
        directory = posixpath.dirname(path)
        return await self.run(
            f"mkdir -p {shlex.quote(directory)} && "
            f"printf %s {shlex.quote(encoded)} | base64 -d > {shlex.quote(path)}"
        )

    async def _read_text(self, path: str) -> Optional[str]:
        """Read a file, None if it does not exist."""
        qpath = shlex.quote(path)
        success, output = await self.run(
            f"if [ -f {qpath} ]; then base64 < {qpath}; else echo {MISSING}; fi"
        )
        if not success:
            raise OSError(f"Failed to read {path}: {output}")
        if output.strip() == MISSING:
            return None
        return base64.b64decode(output).decode("utf-8", errors="replace")

    async def _write_record(self, kind: ResourceKind, name: str, text: str) -> tuple[bool, str]:
        return await self._write_text(self._record_path(kind, name), text)

    async def _read_record(self, kind: ResourceKind, name: str) -> Optional[str]:
        return await self._read_text(self._record_path(kind, name))

    async def _remove_record(self, kind: ResourceKind, name: str) -> tuple[bool, str]:
        return await self.run(f"rm -f {shlex.quote(self._record_path(kind, name))}")

    async def _list_records(self, kind: ResourceKind) -> list[str]:
        directory = shlex.quote(self._record_dir(kind))
        success, output = await self.run(f"ls -1 {directory} 2>/dev/null || true")
        if not success:
            raise OSError(f"Failed to list {kind.value} records: {output}")
        return sorted(unquote(line) for line in output.splitlines() if line.strip())

    # === Observation ===

    async def env_read_all(self) -> dict[str, str]:
        # The login user's environment, not the sudo one
        success, output = await self.execute("env")
        if not success:
            raise OSError(f"Failed to read environment: {output}")
        environ = {}
        for line in output.splitlines():
            name, sep, value = line.partition("=")
            if sep and name.isidentifier():
                environ[name] = value
        return environ

    async def query_resource(self, kind: ResourceKind, name: str) -> Optional[dict[str, Any]]:
        if kind == ResourceKind.PACKAGE:
            return await self._query_package(name)
        if kind == ResourceKind.SERVICE:
            return await self._query_service(name)
        if kind == ResourceKind.USER:
            return await self._query_user(name)
        if kind == ResourceKind.FILE:
            return await self._query_file(name)
        return await self._query_record_kind(kind, name)

    async def list_resources(self, kind: ResourceKind) -> dict[str, dict[str, Any]]:
        if kind == ResourceKind.PACKAGE:
            return await self._list_packages()
        if kind == ResourceKind.SERVICE:
            return await self._list_services()
        if kind == ResourceKind.USER:
            return await self._list_users()

        names = await self._list_records(kind)
        resources = {}
        for name in names:
            observed = await self.query_resource(kind, name)
            if observed is not None:
                resources[name] = observed
        return resources

    async def _query_package(self, name: str) -> Optional[dict[str, Any]]:
        success, output = await self.run_template("package_query", name=name)
        version = output.strip()
        if not success or not version:
            return None
        return {"version": version}

    async def _list_packages(self) -> dict[str, dict[str, Any]]:
        success, output = await self.run_template("package_list")
        if not success:
            raise OSError(f"Failed to list packages: {output}")
        packages = {}
        for line in output.splitlines():
            name, _, version = line.partition("\t")
            if name.strip() and version.strip():
                packages[name.strip()] = {"version": version.strip()}
        return packages

    async def _query_service(self, name: str) -> Optional[dict[str, Any]]:
        active, _ = await self.run_template("service_active", name=name)
        text = await self._read_record(ResourceKind.SERVICE, name)
        if text is None and not active:
            return None
        observed: dict[str, Any] = {"active": active}
        if text is not None:
            config = json.loads(text)
            observed["config"] = config
            observed["config_hash"] = config_hash(config)
        return observed

    async def _list_services(self) -> dict[str, dict[str, Any]]:
        success, output = await self.run_template("service_list")
        if not success:
            raise OSError(f"Failed to list services: {output}")
        names = set(await self._list_records(ResourceKind.SERVICE))
        for line in output.splitlines():
            unit = line.split()[0] if line.split() else ""
            if unit.endswith(".service"):
                names.add(unit[:-len(".service")])

        services = {}
        for name in sorted(names):
            observed = await self._query_service(name)
            if observed is not None:
                services[name] = observed
        return services

    async def _query_user(self, name: str) -> Optional[dict[str, Any]]:
        success, output = await self.run_template("user_query", name=name)
        if not success or not output.strip():
            return None
        entry = output.strip().split(":")
        if len(entry) < 7:
            raise ValueError(f"Unexpected passwd entry for {name}: {output.strip()}")

        _, groups_out = await self.run_template("user_groups", name=name)
        # First group from `id -nG` is the primary group
        groups = sorted(groups_out.split()[1:])
        uid = int(entry[2])
        return {
            "description": entry[4].split(",")[0],
            "groups": groups,
            "shell": posixpath.basename(entry[6]),
            "is_normal_user": NORMAL_UID_MIN <= uid <= NORMAL_UID_MAX,
            "uid": uid,
            "home": entry[5],
        }

    async def _list_users(self) -> dict[str, dict[str, Any]]:
        success, output = await self.run_template("user_list")
        if not success:
            raise OSError(f"Failed to list users: {output}")
        users = {}
        for line in output.splitlines():
            entry = line.split(":")
            if len(entry) < 7 or not entry[2].isdigit():
                continue
            if not NORMAL_UID_MIN <= int(entry[2]) <= NORMAL_UID_MAX:
                continue
            observed = await self._query_user(entry[0])
            if observed is not None:
                users[entry[0]] = observed
        return users

    async def _query_file(self, name: str) -> Optional[dict[str, Any]]:
        qpath = shlex.quote(name)
        success, output = await self.run(
            f"if [ -f {qpath} ]; then stat -c %a {qpath}; base64 < {qpath}; "
            f"else echo {MISSING}; fi"
        )
        if not success:
            raise OSError(f"Failed to read {name}: {output}")
        lines = output.splitlines()
        if not lines or lines[0].strip() == MISSING:
            return None
        content = base64.b64decode("".join(lines[1:])).decode("utf-8", errors="replace")
        return {"content": content, "mode": normalize_mode(lines[0])}

    async def _query_record_kind(self, kind: ResourceKind, name: str) -> Optional[dict[str, Any]]:
        text = await self._read_record(kind, name)
        if text is None:
            return None
        if kind == ResourceKind.ALIAS:
            return {"command": text}
        if kind == ResourceKind.SETTING:
            return {"value": json.loads(text)}
        return {"value": text}

    # === Modification ===

    async def apply_resource(
        self,
        kind: ResourceKind,
        name: str,
        payload: dict[str, Any],
    ) -> tuple[bool, str]:
        if kind == ResourceKind.PACKAGE:
            return await self._apply_package(name, payload)
        if kind == ResourceKind.SERVICE:
            return await self._apply_service(name, payload)
        if kind == ResourceKind.USER:
            return await self._apply_user(name, payload)
        if kind == ResourceKind.FILE:
            return await self._apply_file(name, payload)
        return await self._apply_record_kind(kind, name, payload)

    async def remove_resource(self, kind: ResourceKind, name: str) -> tuple[bool, str]:
        if kind == ResourceKind.PACKAGE:
            return await self.run_template("package_remove", name=name)
        if kind == ResourceKind.SERVICE:
            success, output = await self.run_template("service_stop", name=name)
            if not success:
                return False, output
            await self._remove_record(ResourceKind.SERVICE, name)
            return True, output
        if kind == ResourceKind.USER:
            return await self.run_template("user_remove", name=name)
        if kind == ResourceKind.FILE:
            success, output = await self.run(f"rm -f {shlex.quote(name)}")
            if success:
                await self._remove_record(ResourceKind.FILE, name)
            return success, output

        success, output = await self._remove_record(kind, name)
        if success and kind in (ResourceKind.ENV, ResourceKind.ALIAS):
            return await self._sync_profile()
        return success, output

    async def _apply_package(self, name: str, payload: dict[str, Any]) -> tuple[bool, str]:
        version = payload.get("version")
        spec = shlex.quote(name)
        if version:
            spec = render_command(
                self.commands["package_spec"],
                name=shlex.quote(name),
                version=shlex.quote(str(version)),
            )
        return await self.run_template("package_install", spec=spec)

    async def _apply_service(self, name: str, payload: dict[str, Any]) -> tuple[bool, str]:
        config = payload.get("config", {})
        text = json.dumps(config, sort_keys=True, indent=2, default=str)
        success, output = await self._write_record(ResourceKind.SERVICE, name, text)
        if not success:
            return False, output

        outputs = [output]
        for template in ("service_start", "service_restart"):
            success, output = await self.run_template(template, name=name)
            outputs.append(output)
            if not success:
                return False, "\n".join(o for o in outputs if o)
        return True, "\n".join(o for o in outputs if o)

    async def _apply_user(self, name: str, payload: dict[str, Any]) -> tuple[bool, str]:
        exists = await self._query_user(name) is not None

        options = []
        if payload.get("description") is not None:
            options.append(f"-c {shlex.quote(payload['description'])}")
        if payload.get("groups") is not None:
            options.append(f"-G {shlex.quote(','.join(payload['groups']))}")
        if payload.get("shell"):
            shell = shlex.quote(payload["shell"])
            options.append(f"-s \"$(command -v {shell} || echo /bin/sh)\"")
        if payload.get("home"):
            options.append(f"-d {shlex.quote(payload['home'])}")
        if payload.get("uid") is not None:
            options.append(f"-u {int(payload['uid'])}")
        if not exists and payload.get("is_normal_user"):
            options.append("-m")

        template = "user_modify" if exists else "user_add"
        return await self.run_template(template, name=name, options=" ".join(options))

    async def _apply_file(self, name: str, payload: dict[str, Any]) -> tuple[bool, str]:
        success, output = await self._write_text(name, payload.get("content") or "")
        if not success:
            return False, output
        mode = normalize_mode(payload.get("mode"))
        if mode:
            success, output = await self.run(f"chmod {shlex.quote(mode)} {shlex.quote(name)}")
            if not success:
                return False, output
        return await self._write_record(ResourceKind.FILE, name, "")

    async def _apply_record_kind(
        self,
        kind: ResourceKind,
        name: str,
        payload: dict[str, Any],
    ) -> tuple[bool, str]:
        if kind == ResourceKind.ALIAS:
            text = str(payload.get("command", ""))
        elif kind == ResourceKind.SETTING:
            text = json.dumps(payload.get("value"), sort_keys=True)
        else:
            text = str(payload.get("value", ""))

        success, output = await self._write_record(kind, name, text)
        if success and kind in (ResourceKind.ENV, ResourceKind.ALIAS):
            return await self._sync_profile()
        return success, output

    async def _sync_profile(self) -> tuple[bool, str]:
        """Render managed variables and aliases into the profile script."""
        lines = ["# Managed by hostcraft. Do not edit."]
        for name in await self._list_records(ResourceKind.ENV):
            value = await self._read_record(ResourceKind.ENV, name)
            if value is not None:
                lines.append(f"export {name}={shlex.quote(value)}")
        for name in await self._list_records(ResourceKind.ALIAS):
            command = await self._read_record(ResourceKind.ALIAS, name)
            if command is not None:
                lines.append(f"alias {name}={shlex.quote(command)}")

        success, output = await self._write_text(self.config.profile_path, "\n".join(lines) + "\n")
        if success:
            output = f"updated {self.config.profile_path}"
        return success, output
