"""Main Reconcile Engine - orchestrates a full plan/apply run.

Provides a single entry point for:
1. Parsing the declaration file (and its imports)
2. Validating against the option schema
3. Building the desired-state model
4. Probing the host's current state
5. Planning the ordered changes
6. Executing (or dry-running) the plan

A run moves forward through RunState and never re-enters a state:

    pending -> parsed -> validated -> modeled -> probed -> planned
            -> executed | failed | dry_run_reported
"""
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional, Union

from ..utils.logging_config import timed_section
from .diff import DiffEngine, summarize_plan
from .errors import ConflictError, ParseError, PlanError, ProbeError, ReconcileError, ValidationError
from .executor import PlanExecutor
from .model import ModelBuilder
from .options import OptionSchema, default_schema
from .parser import DeclarationParser, compute_checksum, default_env
from .prober import StateProber
from .schema import (
    DesiredStateSet,
    ExecuteOptions,
    ExecuteResult,
    MappingNode,
    ObservedState,
    Plan,
    RunState,
    ValidationResult,
)
from .settings import EngineSettings
from .validator import ConfigValidator

if TYPE_CHECKING:
    from ..backends.base import SystemBackend

logger = logging.getLogger(__name__)

# Process exit codes
EXIT_OK = 0
EXIT_EXECUTION_FAILED = 1
EXIT_INVALID = 2
EXIT_PROBE_FAILED = 3

# Final states a run may end in
TERMINAL_STATES = {RunState.EXECUTED, RunState.FAILED, RunState.DRY_RUN_REPORTED}


@dataclass
class RunReport:
    """Outcome of one reconciliation run."""
    state: RunState = RunState.PENDING
    exit_code: int = EXIT_OK
    history: list[RunState] = field(default_factory=lambda: [RunState.PENDING])
    checksum: Optional[str] = None
    warnings: list[str] = field(default_factory=list)
    errors: list[dict] = field(default_factory=list)
    plan: Optional[Plan] = None
    result: Optional[ExecuteResult] = None

    @property
    def success(self) -> bool:
        return self.exit_code == EXIT_OK

    def advance(self, state: RunState) -> None:
        """Move to the next state. A state is never entered twice."""
        if self.state in TERMINAL_STATES:
            raise RuntimeError(f"Run already finished in state {self.state.value}")
        if state in self.history:
            raise RuntimeError(f"Run state {state.value} already entered")
        self.history.append(state)
        self.state = state

    def fail(self, exit_code: int, *errors: ReconcileError) -> "RunReport":
        self.errors.extend(e.to_dict() for e in errors)
        self.exit_code = exit_code
        self.advance(RunState.FAILED)
        return self

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "exit_code": self.exit_code,
            "history": [s.value for s in self.history],
            "checksum": self.checksum,
            "warnings": self.warnings,
            "errors": self.errors,
            "plan": self.plan.to_dict() if self.plan else None,
            "result": self.result.to_dict() if self.result else None,
        }


class ReconcileEngine:
    """
    Main Reconcile Engine for bringing a host to its declared state.

    Usage:
        engine = ReconcileEngine(backend)
        report = await engine.plan_file("configuration.nix")
        report = await engine.apply_file("configuration.nix")
    """

    def __init__(
        self,
        backend: "SystemBackend",
        schema: Optional[OptionSchema] = None,
        settings: Optional[EngineSettings] = None,
        env: Optional[dict[str, str]] = None,
    ):
        """
        Initialize the Reconcile Engine.

        Args:
            backend: Host backend to probe and change
            schema: Option schema (defaults to the built-in schema)
            settings: Engine settings (defaults to EngineSettings.from_env())
            env: Interpolation variables (defaults to the host's environment,
                read through the backend at the start of each run)
        """
        self.backend = backend
        self.schema = schema or default_schema()
        self.settings = settings or EngineSettings.from_env()
        self.env = env

        self.parser = DeclarationParser()
        self.validator = ConfigValidator(self.schema)
        self.builder = ModelBuilder(self.schema)
        self.prober = StateProber(backend, timeout=self.settings.probe_timeout)
        self.diff_engine = DiffEngine()
        self.executor = PlanExecutor(backend)

    def cancel(self) -> None:
        """Stop the running (or next) apply before its next action."""
        logger.warning("Cancellation requested")
        self.executor.cancel()

    # === Stages (for external use) ===

    def load(self, path: Union[str, Path], env: Optional[dict[str, str]] = None) -> MappingNode:
        """Parse a declaration file, following imports per settings."""
        return self.parser.load_file(
            path,
            self._env(env),
            follow_imports=self.settings.follow_imports,
        )

    def parse_text(
        self,
        text: str,
        syntax: str = "nix",
        source: Optional[str] = None,
        env: Optional[dict[str, str]] = None,
    ) -> MappingNode:
        """Parse declaration text ("nix" or "yaml")."""
        if syntax == "yaml":
            return self.parser.parse_yaml(text, self._env(env), source)
        return self.parser.parse(text, self._env(env), source)

    def _env(self, env: Optional[dict[str, str]]) -> dict[str, str]:
        if env is not None:
            return env
        if self.env is not None:
            return self.env
        return default_env()

    def validate(self, tree: MappingNode) -> ValidationResult:
        return self.validator.validate(tree)

    def model(self, tree: MappingNode) -> DesiredStateSet:
        """Build the desired-state set, adding exclusive kinds from settings."""
        desired = self.builder.build(tree)
        desired.exclusive_kinds |= self.settings.exclusive_kinds
        return desired

    async def probe(self, desired: DesiredStateSet) -> ObservedState:
        return await self.prober.probe(desired)

    def plan(self, desired: DesiredStateSet, observed: ObservedState) -> Plan:
        return self.diff_engine.calculate(desired, observed)

    # === Full runs ===

    async def plan_file(self, path: Union[str, Path]) -> RunReport:
        """Plan a declaration file without changing the host."""
        return await self._run(lambda env: self.load(path, env), apply=False)

    async def apply_file(
        self,
        path: Union[str, Path],
        dry_run: bool = False,
        audit_context: str = "",
        user: Optional[str] = None,
    ) -> RunReport:
        """Plan and apply a declaration file."""
        options = self._execute_options(dry_run, audit_context or f"apply {path}", user)
        return await self._run(lambda env: self.load(path, env), apply=True, options=options)

    async def plan_text(self, text: str, syntax: str = "nix") -> RunReport:
        """Plan declaration text without changing the host."""
        return await self._run(lambda env: self.parse_text(text, syntax, env=env), apply=False)

    async def apply_text(
        self,
        text: str,
        syntax: str = "nix",
        dry_run: bool = False,
        audit_context: str = "",
        user: Optional[str] = None,
    ) -> RunReport:
        """Plan and apply declaration text."""
        options = self._execute_options(dry_run, audit_context, user)
        return await self._run(lambda env: self.parse_text(text, syntax, env=env), apply=True, options=options)

    async def preview(self, path: Union[str, Path]) -> str:
        """
        Preview changes without applying.

        Returns human-readable plan summary.
        """
        report = await self.plan_file(path)
        return format_report(report)

    def _execute_options(self, dry_run: bool, audit_context: str, user: Optional[str]) -> ExecuteOptions:
        return ExecuteOptions(
            dry_run=dry_run,
            rollback_failed_action=self.settings.rollback_failed_action,
            audit_context=audit_context,
            user=user,
        )

    async def _run(
        self,
        load,
        apply: bool,
        options: Optional[ExecuteOptions] = None,
    ) -> RunReport:
        report = RunReport()

        async with self.backend.run_lock:
            # The host supplies the interpolation table, so connect first.
            # Nothing is changed before the plan exists.
            try:
                await self.backend.open_session()
            except Exception as e:
                return self._host_unreachable(report, e)

            try:
                try:
                    env = self.env if self.env is not None else await self.backend.env_read_all()
                except Exception as e:
                    return self._host_unreachable(report, e)

                async with timed_section("reconcile", host_id=self.backend.host_id, apply=apply):
                    desired = self._prepare(report, load, env)
                    if desired is None:
                        return report
                    return await self._run_on_host(report, desired, apply, options)
            finally:
                await self.backend.close_session()

    def _host_unreachable(self, report: RunReport, error: Exception) -> RunReport:
        logger.error(f"Connection to {self.backend.host_id} failed: {error}")
        return report.fail(
            EXIT_PROBE_FAILED,
            ProbeError("host", str(error) or error.__class__.__name__),
        )

    def _prepare(self, report: RunReport, load, env: dict[str, str]) -> Optional[DesiredStateSet]:
        """Parse, validate and model. Declaration problems fail with EXIT_INVALID."""
        try:
            tree = load(env)
            report.checksum = compute_checksum(tree)
            report.advance(RunState.PARSED)
        except (ParseError, ConflictError) as e:
            logger.error(f"Parse failed: {e}")
            report.fail(EXIT_INVALID, e)
            return None

        validation = self.validate(tree)
        report.warnings.extend(validation.warnings)
        if not validation.valid:
            for error in validation.errors:
                logger.error(f"Validation failed: {error}")
            report.fail(EXIT_INVALID, *validation.errors)
            return None
        report.advance(RunState.VALIDATED)

        try:
            desired = self.model(validation.tree)
        except (ConflictError, ValidationError) as e:
            logger.error(f"Model failed: {e}")
            report.fail(EXIT_INVALID, e)
            return None
        report.advance(RunState.MODELED)
        logger.info(f"Modeled {len(desired)} resources")
        return desired

    async def _run_on_host(
        self,
        report: RunReport,
        desired: DesiredStateSet,
        apply: bool,
        options: Optional[ExecuteOptions],
    ) -> RunReport:
        observed = await self.probe(desired)
        kinds = desired.kinds()
        if kinds and all(observed.failed(kind) for kind in kinds):
            return report.fail(EXIT_PROBE_FAILED, *(observed.errors[kind] for kind in kinds))
        report.advance(RunState.PROBED)

        try:
            report.plan = self.plan(desired, observed)
        except PlanError as e:
            logger.error(f"Planning failed: {e}")
            return report.fail(EXIT_INVALID, e)
        report.advance(RunState.PLANNED)

        if not apply:
            report.advance(RunState.DRY_RUN_REPORTED)
            return report

        options = options or ExecuteOptions()
        logger.info(f"{'DRY RUN: ' if options.dry_run else ''}Executing plan")
        report.result = await self.executor.execute(report.plan, options)

        if options.dry_run:
            report.advance(RunState.DRY_RUN_REPORTED)
        elif report.result.success:
            report.advance(RunState.EXECUTED)
        else:
            report.exit_code = EXIT_EXECUTION_FAILED
            if report.result.error:
                report.errors.append(report.result.error)
            elif report.result.cancelled:
                report.errors.append({"error": "Cancelled", "skipped": report.result.skipped})
            report.advance(RunState.FAILED)
        return report


def format_report(report: RunReport) -> str:
    """Human-readable report for terminal output."""
    lines = []

    if report.plan is not None:
        lines.append(summarize_plan(report.plan))

    result = report.result
    if result is not None and not result.dry_run:
        lines.append("")
        for applied in result.applied:
            lines.append(f"  applied: {applied}")
        if result.failed_action:
            lines.append(f"  FAILED:  {result.failed_action}")
            if result.rollback_output or result.rollback_performed:
                status = "ok" if result.rollback_performed else "failed"
                lines.append(f"  rollback ({status}): {result.rollback_output}")
        if result.cancelled:
            lines.append("  cancelled")
        for skipped in result.skipped:
            lines.append(f"  skipped: {skipped}")

    if report.errors and report.state == RunState.FAILED and report.plan is None:
        lines.append("Errors:")
        for error in report.errors:
            lines.append(f"  - {format_error(error)}")

    if report.warnings:
        lines.append("")
        lines.append("Warnings:")
        lines.extend(f"  - {w}" for w in report.warnings)

    return "\n".join(lines).strip("\n")


def format_error(error: dict[str, Any]) -> str:
    kind = error.get("error", "Error")
    if kind == "ParseError":
        return f"{error.get('source') or '<input>'}:{error.get('line')}:{error.get('column')}: {error.get('message')}"
    if kind == "ValidationError":
        return f"{error['path']}: expected {error['expected']}, found {error['found']!r}"
    if kind == "ConflictError":
        return (
            f"conflicting declarations for {error['key']}: "
            f"{error['value_a']!r} vs {error['value_b']!r}"
            + (f" ({', '.join(error['sites'])})" if error.get("sites") else "")
        )
    if kind == "ProbeError":
        return f"probe for {error['kind']} failed: {error['cause']}"
    if kind == "PlanError":
        return f"dependency cycle: {' -> '.join(error['cycle'])}"
    details = {k: v for k, v in error.items() if k != "error"}
    return f"{kind}: {details}"
