"""
Batch job driver.

Partitions input into fixed-size work units and processes them strictly in
order, consulting the checkpoint store so that a killed job can be resumed
without repeating completed work.

Per-unit state machine: Pending -> InProgress -> {Completed, Failed}.
Completed and Failed are terminal for a store; only an operator clearing
the failed set moves a unit back to Pending.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from ..config.loader import JobConfig
from ..providers.base import GenerateResult
from ..storage.checkpoint import CheckpointStore
from ..storage.models import KeyPart, OutcomeStatus, UnitOutcome, WorkUnitKey
from ..storage.sinks import OutputSink
from .cancellation import CancelToken
from .errors import CallFailed
from .stats import JobStats
from .token_counter import estimate_tokens

logger = logging.getLogger(__name__)

Group = Union[KeyPart, Tuple[KeyPart, ...]]


@dataclass(frozen=True)
class WorkUnit:
    """One checkpointable chunk of input."""
    key: WorkUnitKey
    items: Tuple[Any, ...]
    cost_estimate: int


@dataclass
class JobResult:
    """Summary of one driver run."""
    units_completed: int = 0
    units_failed: int = 0
    units_skipped: int = 0
    units_cached: int = 0
    total_cost: int = 0
    retries: int = 0
    rotations: int = 0
    outcomes: List[UnitOutcome] = field(default_factory=list)

    @property
    def has_failures(self) -> bool:
        return self.units_failed > 0

    def summary(self) -> str:
        """One-line summary that never reports failed units as success."""
        counts = (
            f"{self.units_completed} completed, {self.units_failed} failed, "
            f"{self.units_skipped} skipped, {self.units_cached} already done; "
            f"{self.total_cost:,} tokens, {self.retries} retries, {self.rotations} rotations"
        )
        if self.units_failed:
            return f"Job completed with {self.units_failed} FAILED unit(s): {counts}"
        if self.units_skipped:
            return f"Job completed with {self.units_skipped} previously failed unit(s) skipped: {counts}"
        return f"Job completed successfully: {counts}"


def partition_items(
    items: Sequence[Any],
    chunk_size: int,
    group: Group = (),
    estimate: Callable[[Any], int] = lambda item: estimate_tokens(str(item)),
) -> List[WorkUnit]:
    """Split ``items`` into ordered work units of at most ``chunk_size`` items.

    The key of each unit is the group parts followed by the chunk index.

    Raises:
        ValueError: If chunk_size is less than 1
    """
    if chunk_size < 1:
        raise ValueError("chunk_size must be >= 1")
    group_parts = group if isinstance(group, tuple) else (group,)

    units = []
    items = list(items)
    for index, start in enumerate(range(0, len(items), chunk_size)):
        chunk = tuple(items[start:start + chunk_size])
        units.append(WorkUnit(
            key=WorkUnitKey(group_parts + (index,)),
            items=chunk,
            cost_estimate=sum(estimate(item) for item in chunk),
        ))
    return units


class BatchJobDriver:
    """Runs work units sequentially against a checkpoint store and output sink.

    ``stats`` should be the same JobStats instance the work function's
    RetryingCaller updates; a unit's cost is the tokens spent while it ran.
    """

    def __init__(
        self,
        store: CheckpointStore,
        sink: Optional[OutputSink] = None,
        *,
        flush_every: int = 1,
        tolerate_failures: bool = True,
        clear_on_success: bool = True,
        stats: Optional[JobStats] = None,
        cancel_token: Optional[CancelToken] = None,
        cached_result: Optional[Callable[[WorkUnitKey], Any]] = None,
    ):
        if flush_every < 1:
            raise ValueError("flush_every must be >= 1")
        self.store = store
        self.sink = sink
        self.flush_every = flush_every
        self.tolerate_failures = tolerate_failures
        self.clear_on_success = clear_on_success
        self.stats = stats if stats is not None else JobStats.from_dict(store.stats)
        self.cancel_token = cancel_token or CancelToken()
        self.cached_result = cached_result

    @classmethod
    def from_config(cls, store: CheckpointStore, job: JobConfig, **kwargs: Any) -> "BatchJobDriver":
        return cls(
            store,
            flush_every=job.flush_every_n_units,
            tolerate_failures=job.tolerate_unit_failures,
            clear_on_success=job.clear_on_success,
            **kwargs,
        )

    def run(
        self,
        items: Sequence[Any],
        chunk_size: int,
        per_unit_work: Callable[[WorkUnit], Any],
        group: Group = (),
    ) -> JobResult:
        """Partition ``items`` and process every unit in order."""
        return self.run_units(partition_items(items, chunk_size, group), per_unit_work)

    def run_groups(
        self,
        groups: Mapping[Group, Sequence[Any]],
        chunk_size: int,
        per_unit_work: Callable[[WorkUnit], Any],
    ) -> JobResult:
        """Process several input groups as one job sharing one checkpoint."""
        units: List[WorkUnit] = []
        for group, items in groups.items():
            units.extend(partition_items(items, chunk_size, group))
        return self.run_units(units, per_unit_work)

    def run_units(
        self,
        units: Iterable[WorkUnit],
        per_unit_work: Callable[[WorkUnit], Any],
    ) -> JobResult:
        """Process prepared work units in order.

        Raises:
            CallFailed: If a unit fails and failures are not tolerated
            FatalError: On a non-retryable provider or configuration error
            JobCancelled: If cancellation was requested
        """
        units = list(units)
        result = JobResult()
        start = (self.stats.tokens_spent, self.stats.retries, self.stats.rotations)
        since_flush = 0

        logger.info("Starting job: %d work unit(s)", len(units))
        try:
            for position, unit in enumerate(units, start=1):
                self.cancel_token.raise_if_cancelled()

                if self.store.is_completed(unit.key):
                    logger.info("Skipping already processed batch %s", unit.key)
                    value = self.cached_result(unit.key) if self.cached_result else None
                    result.units_cached += 1
                    result.outcomes.append(UnitOutcome(unit.key, OutcomeStatus.SKIPPED_AS_DONE, value=value))
                    continue

                if self.store.is_failed(unit.key):
                    logger.warning("Skipping previously failed batch %s", unit.key)
                    result.units_skipped += 1
                    result.outcomes.append(UnitOutcome(unit.key, OutcomeStatus.SKIPPED_FAILED))
                    continue

                logger.info(
                    "Processing batch %d/%d %s (%d items)",
                    position, len(units), unit.key, len(unit.items)
                )
                outcome = self._process(unit, per_unit_work)
                result.outcomes.append(outcome)
                if outcome.status == OutcomeStatus.COMPLETED:
                    result.units_completed += 1
                else:
                    result.units_failed += 1

                since_flush += 1
                if since_flush >= self.flush_every:
                    self._flush()
                    since_flush = 0
        finally:
            self._flush()

        result.total_cost = self.stats.tokens_spent - start[0]
        result.retries = self.stats.retries - start[1]
        result.rotations = self.stats.rotations - start[2]

        if result.units_failed or self.store.has_failures():
            logger.warning(
                "%d unit(s) failed in this run, %d failed in total. Checkpoint retained at %s",
                result.units_failed, len(self.store.failed_keys()), self.store.path
            )
        elif self.clear_on_success:
            self.store.clear()

        logger.info(result.summary())
        return result

    def _process(self, unit: WorkUnit, per_unit_work: Callable[[WorkUnit], Any]) -> UnitOutcome:
        tokens_before = self.stats.tokens_spent
        try:
            value = per_unit_work(unit)
        except CallFailed as exc:
            cost = self.stats.tokens_spent - tokens_before
            if not self.tolerate_failures:
                logger.error("Failed to process batch %s, aborting job: %s", unit.key, exc)
                raise
            logger.error("Failed to process batch %s: %s", unit.key, exc)
            outcome = UnitOutcome(unit.key, OutcomeStatus.FAILED, cost=cost, error=str(exc))
            if self.sink is not None:
                self.sink.append_result(unit.key, outcome)
            self.store.mark_failed(unit.key)
            self.stats.units_failed += 1
            return outcome

        if isinstance(value, GenerateResult):
            value = value.value
        cost = self.stats.tokens_spent - tokens_before
        outcome = UnitOutcome(unit.key, OutcomeStatus.COMPLETED, value=value, cost=cost)
        # The sink must accept the output before the unit counts as completed
        if self.sink is not None:
            self.sink.append_result(unit.key, outcome)
        self.store.mark_completed(unit.key, cost)
        self.stats.units_completed += 1
        return outcome

    def _flush(self) -> None:
        self.store.flush(self.stats.to_dict())
        if self.sink is not None:
            self.sink.flush()
