"""Reconcile Engine - Declarative host state management.

The Reconcile Engine brings a machine to the state described in a
declaration file:
- Declare packages, services, users, variables and settings, not commands
- Schema validation before anything touches the host
- Concurrent probing of the current state
- Dependency-ordered plans with per-action rollback

Usage:
    from hostcraft.backends import LocalBackend
    from hostcraft.reconcile_engine import ReconcileEngine

    engine = ReconcileEngine(LocalBackend())
    report = await engine.plan_file("configuration.nix")
    print(format_report(report))
"""

from .errors import (
    ReconcileError,
    ParseError,
    ValidationError,
    ConflictError,
    ProbeError,
    PlanError,
    ExecutionError,
)
from .schema import (
    Scalar,
    ListNode,
    MappingNode,
    ResourceKind,
    Ensure,
    ResourceDeclaration,
    DesiredStateSet,
    ObservedResource,
    ObservedState,
    ValidationResult,
    ActionType,
    Action,
    Plan,
    ExecuteOptions,
    ExecuteResult,
    RunState,
)
from .parser import DeclarationParser, compute_checksum, merge_trees, render
from .options import OptionDefinition, OptionSchema, default_schema
from .validator import ConfigValidator
from .model import ModelBuilder
from .settings import EngineSettings
from .prober import StateProber
from .diff import DiffEngine, summarize_plan
from .executor import PlanExecutor
from .engine import (
    ReconcileEngine,
    RunReport,
    format_report,
    format_error,
    EXIT_OK,
    EXIT_EXECUTION_FAILED,
    EXIT_INVALID,
    EXIT_PROBE_FAILED,
)

__all__ = [
    # Main engine
    "ReconcileEngine",
    "RunReport",
    "format_report",
    "format_error",
    "EXIT_OK",
    "EXIT_EXECUTION_FAILED",
    "EXIT_INVALID",
    "EXIT_PROBE_FAILED",
    # Errors
    "ReconcileError",
    "ParseError",
    "ValidationError",
    "ConflictError",
    "ProbeError",
    "PlanError",
    "ExecutionError",
    # Schema classes
    "Scalar",
    "ListNode",
    "MappingNode",
    "ResourceKind",
    "Ensure",
    "ResourceDeclaration",
    "DesiredStateSet",
    "ObservedResource",
    "ObservedState",
    "ValidationResult",
    "ActionType",
    "Action",
    "Plan",
    "ExecuteOptions",
    "ExecuteResult",
    "RunState",
    # Parser
    "DeclarationParser",
    "compute_checksum",
    "merge_trees",
    "render",
    # Components (for advanced use)
    "OptionDefinition",
    "OptionSchema",
    "default_schema",
    "ConfigValidator",
    "ModelBuilder",
    "EngineSettings",
    "StateProber",
    "DiffEngine",
    "summarize_plan",
    "PlanExecutor",
]
