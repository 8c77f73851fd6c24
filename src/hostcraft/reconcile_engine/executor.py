"""Executor for applying plans to a host.

Actions run strictly one at a time in plan order. On the first failure the
failed action alone is rolled back (earlier successful actions are kept),
the rest of the plan is skipped and the run stops. Cancellation is checked
between actions, never in the middle of one.
"""
import asyncio
import logging
from typing import TYPE_CHECKING, Optional

from ..utils.audit_log import ChangeTracker
from .errors import ExecutionError
from .schema import Action, ActionType, ExecuteOptions, ExecuteResult, Plan

if TYPE_CHECKING:
    from ..backends.base import SystemBackend

logger = logging.getLogger(__name__)


class PlanExecutor:
    """Execute plans against a host backend."""

    def __init__(self, backend: "SystemBackend", cancel_event: Optional[asyncio.Event] = None):
        """
        Initialize executor.

        Args:
            backend: Connected host backend
            cancel_event: Event that stops execution before the next action
        """
        self.backend = backend
        self.cancel_event = cancel_event or asyncio.Event()

    def cancel(self) -> None:
        """Request cancellation; the action in progress still completes."""
        self.cancel_event.set()

    async def execute(self, plan: Plan, options: Optional[ExecuteOptions] = None) -> ExecuteResult:
        """
        Execute a plan.

        Args:
            plan: Ordered plan from the diff engine
            options: Execution options (dry_run, rollback, audit context)

        Returns:
            ExecuteResult with applied/skipped actions and failure details
        """
        try:
            return await self._execute(plan, options or ExecuteOptions())
        finally:
            # A cancel request ends with the run it stopped
            self.cancel_event.clear()

    async def _execute(self, plan: Plan, options: ExecuteOptions) -> ExecuteResult:
        result = ExecuteResult(dry_run=options.dry_run)
        tracker = ChangeTracker(
            self.backend.host_id,
            user=options.user,
            context=options.audit_context,
        )
        changes = plan.changes

        if options.dry_run:
            return self._dry_run(changes, result, tracker)

        for index, action in enumerate(changes):
            if self.cancel_event.is_set():
                result.cancelled = True
                result.skipped = [a.describe() for a in changes[index:]]
                logger.warning(
                    f"Execution cancelled before {action.describe()}, "
                    f"{len(result.skipped)} actions skipped"
                )
                return result

            logger.info(f"Applying {action.describe()}")
            success, output = await self._apply(action)
            tracker.log_change(
                operation=action.action_type.value,
                resource=action.key,
                success=success,
                output=output,
                error=None if success else output,
                before_state=action.observed,
                after_state=None if action.action_type == ActionType.REMOVE
                else action.declaration.payload,
            )

            if success:
                result.applied.append(action.describe())
                continue

            error = ExecutionError(action.describe(), output)
            logger.error(str(error))
            result.failed_action = action.describe()
            result.error = error.to_dict()
            if options.rollback_failed_action:
                await self._rollback(action, result, tracker)
            result.skipped = [a.describe() for a in changes[index + 1:]]
            result.success = False
            return result

        result.success = True
        logger.info(f"Applied {len(result.applied)} actions")
        return result

    def _dry_run(
        self,
        changes: list[Action],
        result: ExecuteResult,
        tracker: ChangeTracker,
    ) -> ExecuteResult:
        """Handle dry-run mode - report without touching the host."""
        for action in changes:
            result.applied.append(f"[DRY-RUN] {action.describe()}")
            tracker.log_change(
                operation=action.action_type.value,
                resource=action.key,
                success=True,
                dry_run=True,
                before_state=action.observed,
                after_state=action.declaration.payload,
            )
        result.success = True
        return result

    async def _apply(self, action: Action) -> tuple[bool, str]:
        decl = action.declaration
        try:
            if action.action_type == ActionType.REMOVE:
                return await self.backend.remove_resource(decl.kind, decl.name)
            return await self.backend.apply_resource(decl.kind, decl.name, decl.payload)
        except Exception as e:
            logger.exception(f"{action.describe()} raised: {e}")
            return False, str(e) or e.__class__.__name__

    async def _rollback(
        self,
        action: Action,
        result: ExecuteResult,
        tracker: ChangeTracker,
    ) -> None:
        """Undo the partial effect of the failed action only."""
        decl = action.declaration
        previous = None if action.action_type == ActionType.INSTALL else action.observed
        logger.warning(f"Rolling back {action.describe()}")

        try:
            success, output = await self.backend.restore_resource(decl.kind, decl.name, previous)
        except Exception as e:
            success, output = False, str(e) or e.__class__.__name__

        tracker.log_change(
            operation="rollback",
            resource=action.key,
            success=success,
            output=output,
            error=None if success else output,
            after_state=previous,
        )
        result.rollback_performed = success
        result.rollback_output = output
        if success:
            logger.info(f"Rollback of {action.describe()} completed")
        else:
            logger.error(f"Rollback of {action.describe()} failed: {output}")
