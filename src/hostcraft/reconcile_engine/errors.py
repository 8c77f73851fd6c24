"""Error taxonomy for the reconcile engine.

Every error carries structured context and can be turned into a dict for
JSON output, so callers do not have to parse messages.
"""
from typing import Any, Optional


class ReconcileError(Exception):
    """Base class for all reconcile engine errors."""

    def to_dict(self) -> dict:
        return {"error": type(self).__name__, "message": str(self)}


class ParseError(ReconcileError):
    """Declaration text could not be parsed."""

    def __init__(
        self,
        message: str,
        line: int = 0,
        column: int = 0,
        source: Optional[str] = None,
    ):
        self.message = message
        self.line = line
        self.column = column
        self.source = source
        location = f"{source or '<input>'}:{line}:{column}"
        super().__init__(f"{location}: {message}")

    def to_dict(self) -> dict:
        return {
            "error": "ParseError",
            "message": self.message,
            "line": self.line,
            "column": self.column,
            "source": self.source,
        }


class ValidationError(ReconcileError):
    """A declared value does not match the option schema."""

    def __init__(self, path: str, expected: str, found: Any):
        self.path = path
        self.expected = expected
        self.found = found
        super().__init__(f"{path}: expected {expected}, found {found!r}")

    def to_dict(self) -> dict:
        return {
            "error": "ValidationError",
            "path": self.path,
            "expected": self.expected,
            "found": self.found,
        }


class ConflictError(ReconcileError):
    """Two declaration sites disagree about the same identity key."""

    def __init__(
        self,
        key: str,
        value_a: Any,
        value_b: Any,
        sites: Optional[list[str]] = None,
    ):
        self.key = key
        self.value_a = value_a
        self.value_b = value_b
        self.sites = sites or []
        where = f" (declared at {', '.join(self.sites)})" if self.sites else ""
        super().__init__(
            f"Conflicting declarations for {key}: {value_a!r} vs {value_b!r}{where}"
        )

    def to_dict(self) -> dict:
        return {
            "error": "ConflictError",
            "key": self.key,
            "value_a": self.value_a,
            "value_b": self.value_b,
            "sites": self.sites,
        }


class ProbeError(ReconcileError):
    """Probing one resource kind failed. Non-fatal."""

    def __init__(self, kind: str, cause: str):
        self.kind = kind
        self.cause = cause
        super().__init__(f"Probe for {kind} failed: {cause}")

    def to_dict(self) -> dict:
        return {"error": "ProbeError", "kind": self.kind, "cause": self.cause}


class PlanError(ReconcileError):
    """The dependency graph contains a cycle."""

    def __init__(self, cycle: list[str]):
        self.cycle = cycle
        super().__init__(f"Dependency cycle: {' -> '.join(cycle)}")

    def to_dict(self) -> dict:
        return {"error": "PlanError", "cycle": self.cycle}


class ExecutionError(ReconcileError):
    """Applying a single plan action failed."""

    def __init__(self, action: str, cause: str):
        self.action = action
        self.cause = cause
        super().__init__(f"{action} failed: {cause}")

    def to_dict(self) -> dict:
        return {"error": "ExecutionError", "action": self.action, "cause": self.cause}
