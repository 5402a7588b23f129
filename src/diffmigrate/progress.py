"""
Per-entity progress tracking for running migrations.

The executor reports every applied batch to a ProgressTracker, which turns
the running counts into ProgressSnapshots: how far each entity has got, how
fast it is going and when it should finish. Snapshots are immutable, so a
caller may hold on to one while the run moves on.

Example:
    >>> tracker = ProgressTracker("nightly", on_progress=print)
    >>> result = await executor.execute_migration_tasks(
    ...     tasks, session_id="nightly", progress=tracker
    ... )
    >>> tracker.latest("offices").progress_percent
    100.0
"""

from __future__ import annotations

import logging
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)

# Share of the total after which an entity is reported as completing
COMPLETING_THRESHOLD = 95.0

DEFAULT_HISTORY_SIZE = 100


class ProgressStatus(Enum):
    """Phase of one entity's migration as seen by the tracker."""

    STARTING = "starting"
    RUNNING = "running"
    COMPLETING = "completing"
    COMPLETED = "completed"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_final(self) -> bool:
        return self in (
            ProgressStatus.COMPLETED,
            ProgressStatus.PAUSED,
            ProgressStatus.CANCELLED,
            ProgressStatus.FAILED,
        )


@dataclass(frozen=True)
class ProgressSnapshot:
    """
    Progress of one entity at a point in time.

    Attributes:
        session_id: Session the entity belongs to.
        entity_type: Entity being migrated.
        status: Phase of the migration.
        records_processed: Records consumed so far, including those done
            before a resume.
        total_records: Records expected in total, if known.
        batch_number: Last batch applied.
        batch_size: Records consumed by the last batch.
        records_per_second: Throughput of the current run.
        average_batch_ms: Mean wall time of the batches in the current run.
        elapsed_seconds: Time since the tracker started the entity.
        estimated_remaining_seconds: Time left at the current rate, if known.
        timestamp: When the snapshot was taken.
    """

    session_id: str
    entity_type: str
    status: ProgressStatus
    records_processed: int = 0
    total_records: int | None = None
    batch_number: int = 0
    batch_size: int = 0
    records_per_second: float = 0.0
    average_batch_ms: float = 0.0
    elapsed_seconds: float = 0.0
    estimated_remaining_seconds: float | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def records_remaining(self) -> int | None:
        if self.total_records is None:
            return None
        return max(self.total_records - self.records_processed, 0)

    @property
    def progress_percent(self) -> float:
        """Completion percentage rounded to two places; 0 when the total is unknown."""
        if self.status == ProgressStatus.COMPLETED:
            return 100.0
        if not self.total_records:
            return 0.0
        return round(min(self.records_processed / self.total_records * 100, 100.0), 2)

    @property
    def estimated_completion(self) -> datetime | None:
        if self.estimated_remaining_seconds is None:
            return None
        return self.timestamp + timedelta(seconds=self.estimated_remaining_seconds)

    def to_dict(self) -> dict[str, Any]:
        completion = self.estimated_completion
        return {
            "session_id": self.session_id,
            "entity_type": self.entity_type,
            "status": self.status.value,
            "records_processed": self.records_processed,
            "records_remaining": self.records_remaining,
            "total_records": self.total_records,
            "progress_percent": self.progress_percent,
            "batch_number": self.batch_number,
            "batch_size": self.batch_size,
            "records_per_second": self.records_per_second,
            "average_batch_ms": self.average_batch_ms,
            "elapsed_seconds": self.elapsed_seconds,
            "estimated_remaining_seconds": self.estimated_remaining_seconds,
            "estimated_completion": completion.isoformat() if completion else None,
            "timestamp": self.timestamp.isoformat(),
        }


ProgressCallback = Callable[[ProgressSnapshot], None]


@dataclass
class _EntityState:
    total_records: int | None
    baseline: int
    started: float
    processed: int = 0
    batch_number: int = 0
    batch_size: int = 0
    batches: int = 0
    batch_ms_total: float = 0.0


class ProgressTracker:
    """
    Collects batch reports for one session and derives progress snapshots.

    Rates cover the current run only: records already processed before a
    resume count towards the percentage but not towards throughput.
    """

    def __init__(
        self,
        session_id: str,
        *,
        on_progress: ProgressCallback | None = None,
        clock: Callable[[], float] = time.monotonic,
        history_size: int = DEFAULT_HISTORY_SIZE,
    ) -> None:
        """
        Initialize the tracker.

        Args:
            session_id: Session being tracked.
            on_progress: Called with every new snapshot. Exceptions it raises
                are logged and otherwise ignored.
            clock: Monotonic clock in seconds.
            history_size: Snapshots kept per entity.
        """
        self.session_id = session_id
        self._on_progress = on_progress
        self._clock = clock
        self._history_size = history_size
        self._states: dict[str, _EntityState] = {}
        self._history: dict[str, deque[ProgressSnapshot]] = {}

    def start(
        self,
        entity_type: str,
        total_records: int | None,
        *,
        already_processed: int = 0,
        batch_number: int = 0,
    ) -> ProgressSnapshot:
        """Begin tracking an entity; a resumed entity passes its checkpointed counts."""
        self._states[entity_type] = _EntityState(
            total_records=total_records,
            baseline=already_processed,
            started=self._clock(),
            processed=already_processed,
            batch_number=batch_number,
        )
        return self._emit(entity_type, ProgressStatus.STARTING)

    def record_batch(
        self,
        entity_type: str,
        *,
        records_processed: int,
        batch_number: int,
        batch_size: int,
        duration_ms: float,
    ) -> ProgressSnapshot:
        """
        Record an applied batch.

        Args:
            entity_type: Entity the batch belongs to.
            records_processed: Total records consumed so far.
            batch_number: Number of the batch just applied.
            batch_size: Records the batch consumed.
            duration_ms: Wall time of the batch.
        """
        state = self._states.get(entity_type)
        if state is None:
            self.start(entity_type, None)
            state = self._states[entity_type]
        state.processed = records_processed
        state.batch_number = batch_number
        state.batch_size = batch_size
        state.batches += 1
        state.batch_ms_total += duration_ms
        # Sources can grow while a scan is running
        if state.total_records is not None and records_processed > state.total_records:
            state.total_records = records_processed

        status = ProgressStatus.RUNNING
        if state.total_records and (
            records_processed / state.total_records * 100 >= COMPLETING_THRESHOLD
        ):
            status = ProgressStatus.COMPLETING
        return self._emit(entity_type, status)

    def finish(self, entity_type: str, status: ProgressStatus) -> ProgressSnapshot:
        """Record the final status of an entity."""
        if entity_type not in self._states:
            self.start(entity_type, None)
        state = self._states[entity_type]
        if status == ProgressStatus.COMPLETED:
            state.total_records = state.processed
        return self._emit(entity_type, status)

    def latest(self, entity_type: str) -> ProgressSnapshot | None:
        history = self._history.get(entity_type)
        return history[-1] if history else None

    def snapshots(self) -> dict[str, ProgressSnapshot]:
        """Latest snapshot of every tracked entity."""
        return {name: history[-1] for name, history in self._history.items() if history}

    def history(self, entity_type: str) -> list[ProgressSnapshot]:
        return list(self._history.get(entity_type, ()))

    def _emit(self, entity_type: str, status: ProgressStatus) -> ProgressSnapshot:
        state = self._states[entity_type]
        elapsed = max(self._clock() - state.started, 0.0)
        done_this_run = state.processed - state.baseline
        rate = done_this_run / elapsed if elapsed > 0 else 0.0

        remaining_seconds: float | None = None
        if status == ProgressStatus.COMPLETED:
            remaining_seconds = 0.0
        elif state.total_records is not None and rate > 0:
            remaining_seconds = max(state.total_records - state.processed, 0) / rate

        snapshot = ProgressSnapshot(
            session_id=self.session_id,
            entity_type=entity_type,
            status=status,
            records_processed=state.processed,
            total_records=state.total_records,
            batch_number=state.batch_number,
            batch_size=state.batch_size,
            records_per_second=round(rate, 2),
            average_batch_ms=(
                round(state.batch_ms_total / state.batches, 2) if state.batches else 0.0
            ),
            elapsed_seconds=elapsed,
            estimated_remaining_seconds=remaining_seconds,
        )
        history = self._history.setdefault(entity_type, deque(maxlen=self._history_size))
        history.append(snapshot)

        if self._on_progress is not None:
            try:
                self._on_progress(snapshot)
            except Exception:
                logger.exception(
                    "Progress callback failed",
                    extra={"session_id": self.session_id, "entity_type": entity_type},
                )
        return snapshot


__all__ = [
    "COMPLETING_THRESHOLD",
    "ProgressCallback",
    "ProgressSnapshot",
    "ProgressStatus",
    "ProgressTracker",
]
