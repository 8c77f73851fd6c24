"""Diff and plan engine.

Compares desired declarations against observed state and orders the
resulting actions so every dependency is applied before its dependents.
Ties between independent resources are broken by declaration order, so the
same inputs always produce the same plan.
"""
import heapq
import logging
from typing import Any, Optional

from .errors import PlanError
from .schema import (
    Action,
    ActionType,
    DesiredStateSet,
    Ensure,
    ObservedResource,
    ObservedState,
    Plan,
    ResourceDeclaration,
    ResourceKind,
)

logger = logging.getLogger(__name__)


class DiffEngine:
    """Calculate the ordered plan between desired and observed state."""

    def calculate(self, desired: DesiredStateSet, observed: ObservedState) -> Plan:
        """
        Calculate the plan that moves observed state to desired state.

        Args:
            desired: Desired state set from the model builder
            observed: Observed state from the prober

        Returns:
            Plan with one action per declaration (in dependency order)
            followed by removals of unmanaged resources of exclusive kinds

        Raises:
            PlanError: If the dependency edges contain a cycle
        """
        actions = {
            decl.key: self._diff_resource(
                decl,
                observed.get(decl.kind, decl.name),
                observed.failed(decl.kind),
            )
            for decl in desired.declarations
        }

        ordered = [actions[key] for key in self._order(desired)]
        plan = Plan(
            actions=ordered + self._unmanaged(desired, observed),
            probe_errors=list(observed.errors.values()),
        )

        logger.info(
            f"Plan: {plan.count(ActionType.INSTALL)} install, "
            f"{plan.count(ActionType.MODIFY)} modify, "
            f"{plan.count(ActionType.REMOVE)} remove, "
            f"{plan.count(ActionType.NOOP)} unchanged"
        )
        return plan

    def _diff_resource(
        self,
        decl: ResourceDeclaration,
        current: Optional[ObservedResource],
        probe_failed: bool,
    ) -> Action:
        """Decide the action for a single declaration."""
        observed_payload = current.payload if current else None

        if decl.ensure == Ensure.ABSENT:
            if current is not None and current.is_present:
                return Action(
                    action_type=ActionType.REMOVE,
                    declaration=decl,
                    reason={"ensure": {"observed": "present", "desired": "absent"}},
                    observed=observed_payload,
                )
            return Action(ActionType.NOOP, decl, observed=observed_payload)

        if current is None:
            return Action(
                action_type=ActionType.INSTALL,
                declaration=decl,
                reason={"ensure": {
                    "observed": "unknown" if probe_failed else "absent",
                    "desired": "present",
                }},
            )

        reason = _compare(decl.comparable_state(), current.payload)
        if reason:
            return Action(
                action_type=ActionType.MODIFY,
                declaration=decl,
                reason=reason,
                observed=observed_payload,
            )
        return Action(ActionType.NOOP, decl, observed=observed_payload)

    def _order(self, desired: DesiredStateSet) -> list[str]:
        """Topologically sort declaration keys, ties by declaration order."""
        order = {decl.key: decl.order for decl in desired.declarations}
        dependents: dict[str, list[str]] = {key: [] for key in order}
        indegree = {key: 0 for key in order}

        for before, after in desired.edges:
            if before not in order or after not in order:
                continue
            dependents[before].append(after)
            indegree[after] += 1

        ready = [(order[key], key) for key, count in indegree.items() if count == 0]
        heapq.heapify(ready)

        result = []
        while ready:
            _, key = heapq.heappop(ready)
            result.append(key)
            for dependent in dependents[key]:
                indegree[dependent] -= 1
                if indegree[dependent] == 0:
                    heapq.heappush(ready, (order[dependent], dependent))

        if len(result) != len(order):
            remaining = {key for key, count in indegree.items() if count > 0}
            raise PlanError(_find_cycle(remaining, dependents, order))

        return result

    def _unmanaged(self, desired: DesiredStateSet, observed: ObservedState) -> list[Action]:
        """Removals for observed resources of exclusive kinds with no declaration."""
        declared = set(desired.keys())
        actions = []

        for kind in ResourceKind:
            if kind not in desired.exclusive_kinds:
                continue
            if observed.failed(kind) or kind not in observed.complete_kinds:
                continue
            for resource in sorted(observed.by_kind(kind), key=lambda r: r.name):
                if resource.key in declared or not resource.is_present:
                    continue
                actions.append(Action(
                    action_type=ActionType.REMOVE,
                    declaration=ResourceDeclaration(
                        kind=kind,
                        name=resource.name,
                        ensure=Ensure.ABSENT,
                        sources=["reconcile.exclusive"],
                    ),
                    reason={"ensure": {"observed": "present", "desired": "unmanaged"}},
                    observed=resource.payload,
                ))

        return actions


def _compare(desired: dict[str, Any], observed: dict[str, Any]) -> dict[str, dict[str, Any]]:
    """Fields of desired that observed does not match."""
    reason = {}
    for field_name, desired_value in desired.items():
        observed_value = observed.get(field_name)
        if not _same(desired_value, observed_value):
            reason[field_name] = {"observed": observed_value, "desired": desired_value}
    return reason


def _same(a: Any, b: Any) -> bool:
    # bool is an int subclass; True must not match 1
    if isinstance(a, bool) or isinstance(b, bool):
        return type(a) is type(b) and a == b
    return a == b


def _find_cycle(
    remaining: set[str],
    dependents: dict[str, list[str]],
    order: dict[str, int],
) -> list[str]:
    """Return one cycle among the unsorted keys, first node repeated at the end."""
    start = min(remaining, key=lambda k: order[k])
    path: list[str] = []
    on_path: dict[str, int] = {}
    visited: set[str] = set()

    def visit(key: str) -> Optional[list[str]]:
        on_path[key] = len(path)
        path.append(key)
        for nxt in sorted(dependents[key], key=lambda k: order[k]):
            if nxt not in remaining:
                continue
            if nxt in on_path:
                return path[on_path[nxt]:] + [nxt]
            if nxt not in visited:
                found = visit(nxt)
                if found:
                    return found
        visited.add(key)
        on_path.pop(key)
        path.pop()
        return None

    for key in [start] + sorted(remaining - {start}, key=lambda k: order[k]):
        if key not in visited:
            cycle = visit(key)
            if cycle:
                return cycle
    return sorted(remaining, key=lambda k: order[k])


def summarize_plan(plan: Plan, show_unchanged: bool = False) -> str:
    """
    Create a human-readable summary of a plan.

    Useful for dry-run output and logging.
    """
    lines = []

    for error in plan.probe_errors:
        lines.append(f"Warning: probe for {error.kind} failed: {error.cause}")
    if lines:
        lines.append("")

    if plan.no_change:
        lines.append("No changes needed - current state matches desired state")
        return "\n".join(lines)

    lines.append(f"Changes to apply ({len(plan.changes)} total):")
    lines.append("")

    markers = {
        ActionType.INSTALL: "[+]",
        ActionType.MODIFY: "[~]",
        ActionType.REMOVE: "[-]",
        ActionType.NOOP: "[=]",
    }
    for action in plan.actions:
        if action.action_type == ActionType.NOOP and not show_unchanged:
            continue
        lines.append(f"  {markers[action.action_type]} {action.action_type.value} {action.key}")
        if action.action_type == ActionType.MODIFY:
            for field_name, values in action.reason.items():
                lines.append(
                    f"      {field_name}: {values['observed']!r} -> {values['desired']!r}"
                )
        elif action.action_type == ActionType.INSTALL:
            for field_name, value in action.declaration.comparable_state().items():
                lines.append(f"      {field_name}: {value!r}")

    return "\n".join(lines)
