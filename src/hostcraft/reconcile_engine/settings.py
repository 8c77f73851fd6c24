"""Engine settings.

Environment variables:
- HOSTCRAFT_PROBE_TIMEOUT: Per-kind probe timeout in seconds (default: 30)
- HOSTCRAFT_EXCLUSIVE_KINDS: Comma-separated kinds hostcraft owns exclusively
- HOSTCRAFT_FOLLOW_IMPORTS: Set to "0" to ignore `imports` (default: 1)
- HOSTCRAFT_ROLLBACK: Set to "0" to skip rollback of a failed action (default: 1)
- HOSTCRAFT_AUDIT_DIR: Directory for the audit log (default: ~/.hostcraft)

An `engine:` section in the host inventory overrides the environment:

```yaml
engine:
  probe_timeout: 10
  exclusive_kinds: [alias]
```
"""
import logging
import os
from dataclasses import dataclass, field, fields, replace
from typing import Any, Optional

from .schema import ResourceKind

logger = logging.getLogger(__name__)

DEFAULT_PROBE_TIMEOUT = 30.0
DEFAULT_AUDIT_DIR = "~/.hostcraft"


def _parse_kinds(value: Any) -> set[ResourceKind]:
    """Parse kinds from a comma-separated string or a list."""
    if isinstance(value, str):
        items = [v.strip() for v in value.split(",")]
    else:
        items = [str(v).strip() for v in (value or [])]

    kinds = set()
    for item in items:
        if not item:
            continue
        try:
            kinds.add(ResourceKind(item))
        except ValueError:
            raise ValueError(
                f"Unknown resource kind '{item}' "
                f"(expected one of: {', '.join(k.value for k in ResourceKind)})"
            )
    return kinds


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() not in ("0", "false", "no", "off", "")


@dataclass
class EngineSettings:
    """Tunable engine behaviour."""
    probe_timeout: float = DEFAULT_PROBE_TIMEOUT
    exclusive_kinds: set[ResourceKind] = field(default_factory=set)
    follow_imports: bool = True
    rollback_failed_action: bool = True
    audit_dir: str = DEFAULT_AUDIT_DIR

    @classmethod
    def from_env(cls) -> "EngineSettings":
        """Load settings from environment variables."""
        timeout = float(os.environ.get("HOSTCRAFT_PROBE_TIMEOUT", str(DEFAULT_PROBE_TIMEOUT)))
        if timeout <= 0:
            raise ValueError(f"HOSTCRAFT_PROBE_TIMEOUT must be positive, got {timeout}")

        return cls(
            probe_timeout=timeout,
            exclusive_kinds=_parse_kinds(os.environ.get("HOSTCRAFT_EXCLUSIVE_KINDS", "")),
            follow_imports=_parse_bool(os.environ.get("HOSTCRAFT_FOLLOW_IMPORTS", "1")),
            rollback_failed_action=_parse_bool(os.environ.get("HOSTCRAFT_ROLLBACK", "1")),
            audit_dir=os.environ.get("HOSTCRAFT_AUDIT_DIR", DEFAULT_AUDIT_DIR),
        )

    def merged(self, overrides: Optional[dict]) -> "EngineSettings":
        """Return a copy with values from an inventory `engine:` section applied."""
        if not overrides:
            return self

        known = {f.name for f in fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise ValueError(f"Unknown engine settings: {', '.join(sorted(unknown))}")

        values = dict(overrides)
        if "exclusive_kinds" in values:
            values["exclusive_kinds"] = _parse_kinds(values["exclusive_kinds"])
        if "probe_timeout" in values:
            values["probe_timeout"] = float(values["probe_timeout"])
        for name in ("follow_imports", "rollback_failed_action"):
            if name in values:
                values[name] = _parse_bool(values[name])
        return replace(self, **values)

    def to_dict(self) -> dict:
        return {
            "probe_timeout": self.probe_timeout,
            "exclusive_kinds": sorted(k.value for k in self.exclusive_kinds),
            "follow_imports": self.follow_imports,
            "rollback_failed_action": self.rollback_failed_action,
            "audit_dir": self.audit_dir,
        }
