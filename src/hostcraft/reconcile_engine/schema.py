"""Schema definitions for the reconcile engine.

Defines the attribute tree, resource declarations, observed state, plans and
all related result dataclasses.
"""
import hashlib
import json
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union

from .errors import ProbeError, ValidationError


# --- Attribute tree ---

ScalarValue = Union[str, int, float, bool, None]


@dataclass(eq=False)
class Scalar:
    """Leaf value in an attribute tree."""
    value: ScalarValue

    def __eq__(self, other: object) -> bool:
        # Type-strict: true is not 1 and 1 is not 1.0
        if not isinstance(other, Scalar):
            return NotImplemented
        return type(self.value) is type(other.value) and self.value == other.value

    def __hash__(self) -> int:
        return hash((type(self.value).__name__, self.value))


@dataclass
class ListNode:
    """Ordered list of attribute nodes."""
    items: list["AttributeNode"] = field(default_factory=list)


@dataclass
class MappingNode:
    """Mapping of unique string keys to attribute nodes."""
    entries: dict[str, "AttributeNode"] = field(default_factory=dict)

    def get(self, key: str) -> Optional["AttributeNode"]:
        return self.entries.get(key)

    def get_path(self, path: Union[str, tuple[str, ...]]) -> Optional["AttributeNode"]:
        """Look up a nested node by dotted path or key tuple."""
        keys = split_path(path) if isinstance(path, str) else path
        node: AttributeNode = self
        for key in keys:
            if not isinstance(node, MappingNode) or key not in node.entries:
                return None
            node = node.entries[key]
        return node

    def __contains__(self, key: str) -> bool:
        return key in self.entries

    def __len__(self) -> int:
        return len(self.entries)


AttributeNode = Union[Scalar, ListNode, MappingNode]

_PLAIN_SEGMENT = re.compile(r"^[A-Za-z_][A-Za-z0-9_'\-]*$")


def split_path(path: str) -> tuple[str, ...]:
    """Split a dotted path, honouring double-quoted segments."""
    keys = []
    current = ""
    in_quotes = False
    for char in path:
        if char == '"':
            in_quotes = not in_quotes
        elif char == "." and not in_quotes:
            keys.append(current)
            current = ""
        else:
            current += char
    keys.append(current)
    return tuple(k for k in keys if k != "")


def format_path(keys: tuple[str, ...]) -> str:
    """Join keys into a dotted path, quoting keys that need it."""
    return ".".join(k if _PLAIN_SEGMENT.match(k) else f'"{k}"' for k in keys)


def from_python(value: Any) -> AttributeNode:
    """Convert plain Python data (e.g. loaded YAML) into an attribute tree."""
    if isinstance(value, dict):
        return MappingNode({str(k): from_python(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return ListNode([from_python(v) for v in value])
    if value is None or isinstance(value, (str, bool, int, float)):
        return Scalar(value)
    return Scalar(str(value))


def to_python(node: AttributeNode) -> Any:
    """Convert an attribute tree back into plain Python data."""
    if isinstance(node, MappingNode):
        return {k: to_python(v) for k, v in node.entries.items()}
    if isinstance(node, ListNode):
        return [to_python(v) for v in node.items]
    return node.value


def config_hash(config: Any) -> str:
    """Stable short hash of a JSON-serialisable config value."""
    text = json.dumps(config, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(text.encode()).hexdigest()[:16]


# --- Resources ---

class ResourceKind(str, Enum):
    """Kinds of resources the engine reconciles."""
    PACKAGE = "package"
    SERVICE = "service"
    USER = "user"
    ENV = "env"
    FILE = "file"
    ALIAS = "alias"
    SETTING = "setting"


class Ensure(str, Enum):
    """Whether a declared resource should exist."""
    PRESENT = "present"
    ABSENT = "absent"


def make_key(kind: ResourceKind, name: str) -> str:
    return f"{kind.value}:{name}"


def parse_key(key: str) -> tuple[ResourceKind, str]:
    """Split an identity key like 'user:chris' into kind and name."""
    kind_str, sep, name = key.partition(":")
    if not sep or not name:
        raise ValueError(f"Invalid identity key: {key}")
    return ResourceKind(kind_str), name


@dataclass
class ResourceDeclaration:
    """One desired resource, identified by kind and name."""
    kind: ResourceKind
    name: str
    payload: dict[str, Any] = field(default_factory=dict)
    ensure: Ensure = Ensure.PRESENT
    requires: list[str] = field(default_factory=list)
    sources: list[str] = field(default_factory=list)
    order: int = 0

    @property
    def key(self) -> str:
        return make_key(self.kind, self.name)

    def comparable_state(self) -> dict[str, Any]:
        """State compared against the observed counterpart."""
        if self.kind == ResourceKind.SERVICE:
            if self.ensure == Ensure.ABSENT:
                return {"active": False}
            return {
                "active": True,
                "config_hash": config_hash(self.payload.get("config", {})),
            }
        return {k: v for k, v in self.payload.items() if v is not None}

    def same_desired_value(self, other: "ResourceDeclaration") -> bool:
        return self.ensure == other.ensure and self.payload == other.payload

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "ensure": self.ensure.value,
            "payload": self.payload,
            "requires": list(self.requires),
            "sources": list(self.sources),
        }


@dataclass
class DesiredStateSet:
    """Ordered desired resources plus 'A before B' dependency edges."""
    declarations: list[ResourceDeclaration] = field(default_factory=list)
    edges: list[tuple[str, str]] = field(default_factory=list)
    exclusive_kinds: set[ResourceKind] = field(default_factory=set)

    def get(self, key: str) -> Optional[ResourceDeclaration]:
        for decl in self.declarations:
            if decl.key == key:
                return decl
        return None

    def by_kind(self, kind: ResourceKind) -> list[ResourceDeclaration]:
        return [d for d in self.declarations if d.kind == kind]

    def kinds(self) -> list[ResourceKind]:
        """Kinds present in this set or owned exclusively, in enum order."""
        present = {d.kind for d in self.declarations} | self.exclusive_kinds
        return [k for k in ResourceKind if k in present]

    def keys(self) -> list[str]:
        return [d.key for d in self.declarations]

    def __len__(self) -> int:
        return len(self.declarations)


@dataclass
class ObservedResource:
    """A resource as found on the live system."""
    kind: ResourceKind
    name: str
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> str:
        return make_key(self.kind, self.name)

    @property
    def is_present(self) -> bool:
        if self.kind == ResourceKind.SERVICE:
            return bool(self.payload.get("active"))
        return True


@dataclass
class ObservedState:
    """Snapshot of the live system for one run."""
    resources: dict[ResourceKind, dict[str, ObservedResource]] = field(default_factory=dict)
    errors: dict[ResourceKind, ProbeError] = field(default_factory=dict)
    complete_kinds: set[ResourceKind] = field(default_factory=set)

    def add(self, resource: ObservedResource) -> None:
        self.resources.setdefault(resource.kind, {})[resource.name] = resource

    def get(self, kind: ResourceKind, name: str) -> Optional[ObservedResource]:
        return self.resources.get(kind, {}).get(name)

    def by_kind(self, kind: ResourceKind) -> list[ObservedResource]:
        return list(self.resources.get(kind, {}).values())

    def failed(self, kind: ResourceKind) -> bool:
        return kind in self.errors

    def to_dict(self) -> dict:
        return {
            "resources": {
                kind.value: {name: r.payload for name, r in sorted(items.items())}
                for kind, items in self.resources.items()
            },
            "errors": [e.to_dict() for e in self.errors.values()],
        }


# --- Validation Results ---

@dataclass
class ValidationResult:
    """Result of schema validation."""
    valid: bool
    errors: list[ValidationError] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    tree: Optional[MappingNode] = None


# --- Plan ---

class ActionType(str, Enum):
    """Type of action in a plan."""
    INSTALL = "install"
    REMOVE = "remove"
    MODIFY = "modify"
    NOOP = "noop"


@dataclass
class Action:
    """A single planned action on one resource."""
    action_type: ActionType
    declaration: ResourceDeclaration
    reason: dict[str, dict[str, Any]] = field(default_factory=dict)
    observed: Optional[dict[str, Any]] = None

    @property
    def key(self) -> str:
        return self.declaration.key

    def describe(self) -> str:
        return f"{self.action_type.value} {self.key}"

    def to_dict(self) -> dict:
        return {
            "action": self.action_type.value,
            "key": self.key,
            "reason": self.reason,
            "desired": self.declaration.payload,
            "observed": self.observed,
        }


@dataclass
class Plan:
    """Ordered actions that move observed state to desired state."""
    actions: list[Action] = field(default_factory=list)
    probe_errors: list[ProbeError] = field(default_factory=list)

    @property
    def changes(self) -> list[Action]:
        return [a for a in self.actions if a.action_type != ActionType.NOOP]

    @property
    def no_change(self) -> bool:
        return len(self.changes) == 0

    def count(self, action_type: ActionType) -> int:
        return sum(1 for a in self.actions if a.action_type == action_type)

    def to_dict(self) -> dict:
        return {
            "actions": [a.to_dict() for a in self.actions],
            "summary": {t.value: self.count(t) for t in ActionType},
            "probe_errors": [e.to_dict() for e in self.probe_errors],
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, sort_keys=True, default=str)


# --- Execution ---

@dataclass
class ExecuteOptions:
    """Options for plan execution."""
    dry_run: bool = False
    rollback_failed_action: bool = True
    audit_context: str = ""
    user: Optional[str] = None


@dataclass
class ExecuteResult:
    """Result of plan execution."""
    success: bool = False
    dry_run: bool = False
    cancelled: bool = False
    applied: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed_action: Optional[str] = None
    error: Optional[dict] = None
    rollback_performed: bool = False
    rollback_output: str = ""

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "success": self.success,
            "dry_run": self.dry_run,
            "cancelled": self.cancelled,
            "applied": self.applied,
            "skipped": self.skipped,
            "failed_action": self.failed_action,
            "error": self.error,
            "rollback_performed": self.rollback_performed,
            "rollback_output": self.rollback_output,
        }


class RunState(str, Enum):
    """Stages of a single reconciliation run."""
    PENDING = "pending"
    PARSED = "parsed"
    VALIDATED = "validated"
    MODELED = "modeled"
    PROBED = "probed"
    PLANNED = "planned"
    EXECUTED = "executed"
    FAILED = "failed"
    DRY_RUN_REPORTED = "dry_run_reported"
