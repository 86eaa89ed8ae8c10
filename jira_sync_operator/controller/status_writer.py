"""
Conflict-aware status writes.

Every status change goes through StatusWriter.apply:

1. re-read the resource
2. check the observed phase is still one the caller expects
3. apply the mutation to the fresh copy
4. write it back under the fresh resourceVersion

A ConflictError at step 4 restarts from step 1. A phase mismatch at step 2
means another writer already moved the resource on, so the transition is
dropped instead of being replayed on top of newer state.
"""

from __future__ import annotations

from typing import Callable, Collection, Optional

import structlog

from ..clock import Clock, SystemClock
from ..errors import ConflictError
from ..resources.models import Phase, SyncResource
from ..resources.store import ResourceStore

logger = structlog.get_logger()

Mutation = Callable[[SyncResource], Optional[bool]]


class StaleTransition(Exception):
    """The resource left the expected phase before the write landed."""

    def __init__(self, key: str, expected: Collection[Optional[Phase]], observed: Optional[Phase]):
        self.key = key
        self.expected = expected
        self.observed = observed
        super().__init__(f"{key}: expected phase in {sorted(str(p) for p in expected)}, observed {observed}")


class StatusWriter:
    """Applies status mutations with re-read-and-retry on conflicts."""

    def __init__(self, store: ResourceStore, clock: Optional[Clock] = None, max_attempts: int = 5):
        self.store = store
        self.clock = clock or SystemClock()
        self.max_attempts = max(1, max_attempts)

    async def apply(
        self,
        namespace: str,
        name: str,
        mutate: Mutation,
        expected_phases: Optional[Collection[Optional[Phase]]] = None,
    ) -> SyncResource:
        """
        Apply `mutate` to the latest copy of a resource and persist it.

        `mutate` edits the resource in place. Returning False means "nothing
        to write"; the fresh copy is returned unchanged.

        Raises:
            StaleTransition: the phase moved outside `expected_phases`
            ConflictError: still conflicting after max_attempts re-reads
            NotFoundError: the resource is gone
        """
        log = logger.bind(resource=f"{namespace}/{name}")
        attempt = 0
        while True:
            attempt += 1
            current = await self.store.get(namespace, name)
            if expected_phases is not None and current.status.phase not in expected_phases:
                log.info(
                    "stale_transition_dropped",
                    observed=current.status.phase.value if current.status.phase else None,
                )
                raise StaleTransition(current.key, expected_phases, current.status.phase)

            if mutate(current) is False:
                return current

            current.status.last_status_update = self.clock.now()
            try:
                return await self.store.update_status(current)
            except ConflictError:
                log.debug("status_conflict", attempt=attempt)
                if attempt == self.max_attempts:
                    log.warning("status_conflict_exhausted", attempts=attempt)
                    raise
