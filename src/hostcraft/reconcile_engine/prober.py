"""Current-state prober.

Observes the live host one resource kind at a time, with all kinds probed
concurrently. Each kind gets its own timeout; a kind that fails or times
out is recorded as a ProbeError and left empty, the other kinds still
produce results.
"""
import asyncio
import logging
from typing import TYPE_CHECKING, Any, Optional

from ..utils.logging_config import timed_section
from .errors import ProbeError
from .schema import (
    DesiredStateSet,
    ObservedResource,
    ObservedState,
    ResourceKind,
)
from .settings import DEFAULT_PROBE_TIMEOUT

if TYPE_CHECKING:
    from ..backends.base import SystemBackend

logger = logging.getLogger(__name__)


class StateProber:
    """Observe the resources a desired-state set refers to."""

    def __init__(self, backend: "SystemBackend", timeout: float = DEFAULT_PROBE_TIMEOUT):
        """
        Initialize prober.

        Args:
            backend: Connected host backend
            timeout: Per-kind probe timeout in seconds
        """
        self.backend = backend
        self.timeout = timeout

    async def probe(self, desired: DesiredStateSet) -> ObservedState:
        """
        Observe current state for every kind in the desired set.

        Exclusively owned kinds are listed in full so unmanaged resources
        can be found; other kinds only look up the declared names.

        Args:
            desired: Desired state (drives which kinds and names are probed)

        Returns:
            ObservedState, with a ProbeError per failed kind
        """
        kinds = desired.kinds()
        observed = ObservedState()

        async with timed_section("probe", host_id=self.backend.host_id, kinds=len(kinds)):
            results = await asyncio.gather(
                *(self._probe_with_timeout(kind, desired) for kind in kinds)
            )

        # Merge in kind order so the result does not depend on completion order
        for kind, resources, error, complete in results:
            if error is not None:
                observed.errors[kind] = error
                continue
            for name, payload in resources.items():
                observed.add(ObservedResource(kind=kind, name=name, payload=payload))
            if complete:
                observed.complete_kinds.add(kind)

        if observed.errors:
            logger.warning(
                f"Probe failed for {len(observed.errors)} of {len(kinds)} kinds: "
                f"{', '.join(k.value for k in observed.errors)}"
            )
        else:
            logger.info(f"Probed {len(kinds)} kinds on {self.backend.host_id}")
        return observed

    async def _probe_with_timeout(
        self,
        kind: ResourceKind,
        desired: DesiredStateSet,
    ) -> tuple[ResourceKind, dict[str, dict[str, Any]], Optional[ProbeError], bool]:
        complete = kind in desired.exclusive_kinds
        try:
            resources = await asyncio.wait_for(
                self._probe_kind(kind, desired, complete),
                timeout=self.timeout,
            )
            return kind, resources, None, complete
        except asyncio.TimeoutError:
            error = ProbeError(kind.value, f"timed out after {self.timeout:g}s")
        except Exception as e:
            error = ProbeError(kind.value, str(e) or e.__class__.__name__)

        logger.warning(f"Probe {kind.value} failed: {error.cause}")
        return kind, {}, error, False

    async def _probe_kind(
        self,
        kind: ResourceKind,
        desired: DesiredStateSet,
        complete: bool,
    ) -> dict[str, dict[str, Any]]:
        if complete:
            return await self.backend.list_resources(kind)

        resources = {}
        for decl in desired.by_kind(kind):
            payload = await self.backend.query_resource(kind, decl.name)
            if payload is not None:
                resources[decl.name] = payload
        logger.debug(f"Probed {kind.value}: {len(resources)} of {len(desired.by_kind(kind))} present")
        return resources
