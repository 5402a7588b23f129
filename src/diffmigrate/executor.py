"""
BatchMigrationExecutor - applies migration tasks to the destination store.

The executor turns a set of MigrationTasks into batched, idempotent upserts
against the destination. Entities run in dependency order; independent
entities run concurrently up to ``ExecutionConfig.parallelism``.

Execution Flow:
    1. Validate the task set (known entities, no cycles) before any write
    2. Load and validate every existing checkpoint for the session
    3. Build (or reuse) the session's reconciliation index
    4. For each entity, once all of its prerequisites have completed:
       a. Read the next batch from the source, starting at the checkpoint
       b. Resolve foreign keys through the index
       c. Transform and upsert the batch in one destination transaction
       d. Record the new mappings and advance the checkpoint
       e. Honour pause, cancel and shutdown requests at the batch boundary
    5. Aggregate per-entity results into an ExecutionResult

Failure Semantics:
    - A failing batch is retried with backoff, then isolated: its records
      are reported as failed and the entity continues with the next batch.
    - An entity whose prerequisite did not complete is marked FAILED
      without writing anything.
    - Structural errors (unknown entity, dependency cycle, corrupt
      checkpoint) are raised before anything is written.

Usage:
    >>> executor = BatchMigrationExecutor(source, destination, checkpoints, registry)
    >>> result = await executor.execute_migration_tasks(tasks, session_id="nightly")
    >>> result.overall_status
    <OverallStatus.COMPLETED: 'completed'>
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import replace
from datetime import UTC, datetime
from typing import Any, Protocol
from uuid import uuid4

from diffmigrate.config import MAX_ID_CHUNK_SIZE, ExecutionConfig
from diffmigrate.entities import EntityDefinition, EntityRegistry
from diffmigrate.exceptions import (
    BatchApplyError,
    DiffMigrationError,
    StoreConnectionError,
    ValidationError,
)
from diffmigrate.graph import DependencyGraph
from diffmigrate.hashing import calculate_content_hash
from diffmigrate.integrity import (
    DEFAULT_SAMPLE_SIZE,
    IntegrityReport,
    RecordComparison,
    compare_record,
)
from diffmigrate.models import (
    BatchResult,
    BatchStatus,
    Checkpoint,
    DestinationRecord,
    EntityExecutionResult,
    ExecutionResult,
    MigrationTask,
    OverallStatus,
    SourceRecord,
    TaskStatus,
)
from diffmigrate.observability import Tracer, create_tracer
from diffmigrate.observability.attributes import (
    ATTR_BATCH_NUMBER,
    ATTR_BATCH_OFFSET,
    ATTR_BATCH_SIZE,
    ATTR_ENTITY_TYPE,
    ATTR_EXECUTION_STATUS,
    ATTR_RECORDS_FAILED,
    ATTR_RECORDS_SUCCEEDED,
    ATTR_SESSION_ID,
    ATTR_TASK_COUNT,
)
from diffmigrate.progress import ProgressStatus, ProgressTracker
from diffmigrate.reconciliation import ReconciliationIndex
from diffmigrate.repositories.checkpoint import CheckpointRepository
from diffmigrate.retry import RetryError, RetryStats, retry_async
from diffmigrate.stores.interface import DestinationStore, SourceStore

logger = logging.getLogger(__name__)

# Exceptions worth retrying when applying a batch
RETRYABLE_BATCH_EXCEPTIONS: tuple[type[Exception], ...] = (
    BatchApplyError,
    StoreConnectionError,
    ConnectionError,
    TimeoutError,
    OSError,
)

EntityStatusCallback = Callable[[str, TaskStatus], None]


class ExecutionControl:
    """
    Cooperative pause, cancel and suspend switches for a running execution.

    The executor consults the control between batches only, so a batch is
    never interrupted half-applied.

    - ``pause``/``resume``: block at the next boundary until resumed
    - ``cancel``: stop at the next boundary; the run ends CANCELLED
    - ``suspend``: stop at the next boundary; the run ends PAUSED and
      can be resumed later from its checkpoints
    """

    def __init__(self) -> None:
        self._is_cancelled = False
        self._is_suspended = False
        self._is_paused = False
        self._resume_event = asyncio.Event()
        self._resume_event.set()

    @property
    def is_paused(self) -> bool:
        return self._is_paused

    @property
    def is_cancelled(self) -> bool:
        return self._is_cancelled

    @property
    def is_suspended(self) -> bool:
        return self._is_suspended

    @property
    def is_stopping(self) -> bool:
        return self._is_cancelled or self._is_suspended

    def pause(self) -> None:
        self._is_paused = True
        self._resume_event.clear()
        logger.info("Execution pause requested")

    def resume(self) -> None:
        self._is_paused = False
        self._resume_event.set()
        logger.info("Execution resumed")

    def cancel(self) -> None:
        self._is_cancelled = True
        # Wake anything blocked on a pause so it can observe the cancellation
        self._resume_event.set()
        logger.info("Execution cancellation requested")

    def suspend(self) -> None:
        self._is_suspended = True
        self._resume_event.set()
        logger.info("Execution suspend requested")

    async def wait_at_boundary(self) -> OverallStatus | None:
        """
        Block while paused, then report whether execution must stop.

        Returns:
            None to continue, OverallStatus.CANCELLED after ``cancel`` or
            OverallStatus.PAUSED after ``suspend``.
        """
        if self._is_paused and not self.is_stopping:
            await self._resume_event.wait()
        if self._is_cancelled:
            return OverallStatus.CANCELLED
        if self._is_suspended:
            return OverallStatus.PAUSED
        return None


class RecordTransformer(Protocol):
    """Turns a source record into a destination row."""

    def __call__(
        self,
        entity: EntityDefinition,
        record: SourceRecord,
        foreign_keys: Mapping[str, str | None],
    ) -> dict[str, Any]: ...


class DefaultTransformer:
    """
    Column-preserving transformer.

    Copies the source columns, drops the source id and raw foreign key
    columns, and adds the legacy id, resolved foreign keys, timestamp and
    (when the entity stores one) the content hash.
    """

    def __init__(self, hash_algorithm: str = "sha256", exclude_fields: Iterable[str] = ()) -> None:
        self.hash_algorithm = hash_algorithm
        self.exclude_fields = tuple(exclude_fields)

    def __call__(
        self,
        entity: EntityDefinition,
        record: SourceRecord,
        foreign_keys: Mapping[str, str | None],
    ) -> dict[str, Any]:
        dropped = {entity.source_id_column, *(fk.source_field for fk in entity.foreign_keys)}
        row = {key: value for key, value in record.data.items() if key not in dropped}
        row.update(foreign_keys)
        row[entity.legacy_id_column] = record.legacy_id
        row[entity.destination_timestamp_column] = record.updated_at
        if entity.content_hash_column:
            row[entity.content_hash_column] = record.content_hash or calculate_content_hash(
                record.data, self.hash_algorithm, self.exclude_fields
            )
        return row


class BatchMigrationExecutor:
    """
    Executes migration tasks in batches with checkpointed progress.

    Example:
        >>> executor = BatchMigrationExecutor(
        ...     source, destination, InMemoryCheckpointRepository(), registry,
        ...     config=ExecutionConfig(parallelism=2),
        ... )
        >>> result = await executor.execute_migration_tasks(tasks)
    """

    def __init__(
        self,
        source: SourceStore,
        destination: DestinationStore,
        checkpoint_repo: CheckpointRepository,
        registry: EntityRegistry,
        *,
        config: ExecutionConfig | None = None,
        transformers: Mapping[str, RecordTransformer] | None = None,
        default_transformer: RecordTransformer | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the executor.

        Args:
            source: Legacy store to read from.
            destination: Destination store to upsert into.
            checkpoint_repo: Where batch progress is persisted.
            registry: Entity definitions.
            config: Execution settings.
            transformers: Per-entity record transformers.
            default_transformer: Transformer for entities without their own.
            tracer: Optional tracer.
            enable_tracing: Whether to enable tracing when no tracer is given.
        """
        self._source = source
        self._destination = destination
        self._checkpoints = checkpoint_repo
        self._registry = registry
        self._config = config or ExecutionConfig()
        self._transformers = dict(transformers or {})
        self._default_transformer = default_transformer or DefaultTransformer()
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

    @property
    def config(self) -> ExecutionConfig:
        return self._config

    def transformer_for(self, entity_type: str) -> RecordTransformer:
        return self._transformers.get(entity_type, self._default_transformer)

    async def execute_migration_tasks(
        self,
        tasks: Sequence[MigrationTask],
        *,
        session_id: str | None = None,
        index: ReconciliationIndex | None = None,
        control: ExecutionControl | None = None,
        on_entity_status: EntityStatusCallback | None = None,
        progress: ProgressTracker | None = None,
    ) -> ExecutionResult:
        """
        Execute a set of migration tasks.

        Args:
            tasks: One task per entity.
            session_id: Session owning the checkpoints. A fresh id is
                generated when omitted, so nothing is resumed.
            index: Reconciliation index to resolve foreign keys with; built
                from the destination when omitted.
            control: Pause/cancel switches consulted between batches.
            on_entity_status: Called whenever an entity changes status.
            progress: Receives a report for every applied batch.

        Returns:
            ExecutionResult with per-entity detail.

        Raises:
            ValidationError: If two tasks target the same entity.
            UnknownEntityError: If a task names an unregistered entity.
            CyclicDependencyError: If the task dependencies form a cycle.
            CheckpointCorruptionError: If a stored checkpoint is inconsistent.
            StoreConnectionError: If the index or checkpoints cannot be loaded.
        """
        session_id = session_id or str(uuid4())
        control = control or ExecutionControl()
        started_at = datetime.now(UTC)

        with self._tracer.span(
            "diffmigrate.executor.execute_migration_tasks",
            {ATTR_SESSION_ID: session_id, ATTR_TASK_COUNT: len(tasks)},
        ) as span:
            graph = self._validate(tasks)
            checkpoints = await self._load_checkpoints(session_id, tasks)

            if index is None:
                index = await ReconciliationIndex.build(
                    self.index_entities(tasks),
                    self._destination,
                    session_id=session_id,
                    tracer=self._tracer,
                )

            logger.info(
                "Executing %d migration tasks",
                len(tasks),
                extra={
                    "session_id": session_id,
                    "order": graph.order(),
                    "resuming": sorted(checkpoints),
                },
            )

            results = {task.entity_type: EntityExecutionResult(task.entity_type) for task in tasks}
            done = {task.entity_type: asyncio.Event() for task in tasks}
            semaphore = asyncio.Semaphore(self._config.parallelism)

            by_name = {task.entity_type: task for task in tasks}
            # Start in dependency order so priority decides who gets a worker slot first
            runners = [
                asyncio.create_task(
                    self._run_entity(
                        by_name[name],
                        graph=graph,
                        session_id=session_id,
                        checkpoint=checkpoints.get(name),
                        index=index,
                        control=control,
                        results=results,
                        done=done,
                        semaphore=semaphore,
                        on_entity_status=on_entity_status,
                        progress=progress,
                    ),
                    name=f"diffmigrate-{session_id}-{name}",
                )
                for name in graph.order()
            ]
            try:
                await asyncio.gather(*runners)
            except BaseException:
                for runner in runners:
                    runner.cancel()
                await asyncio.gather(*runners, return_exceptions=True)
                raise

            result = ExecutionResult(
                overall_status=self._overall_status(results, control),
                total_records_processed=sum(r.records_processed for r in results.values()),
                total_records_failed=sum(r.records_failed for r in results.values()),
                total_records_skipped=sum(r.records_skipped for r in results.values()),
                entities=results,
                started_at=started_at,
                completed_at=datetime.now(UTC),
            )

            if span:
                span.set_attribute(ATTR_EXECUTION_STATUS, result.overall_status.value)
                span.set_attribute(ATTR_RECORDS_FAILED, result.total_records_failed)

            logger.info(
                "Migration execution finished: %s (%d processed, %d failed, %d skipped)",
                result.overall_status.value,
                result.total_records_processed,
                result.total_records_failed,
                result.total_records_skipped,
                extra={"session_id": session_id, "duration_ms": result.duration_ms},
            )
            return result

    # -------------------------------------------------------------------------
    # Preflight
    # -------------------------------------------------------------------------

    def _validate(self, tasks: Sequence[MigrationTask]) -> DependencyGraph:
        seen: set[str] = set()
        for task in tasks:
            if task.entity_type in seen:
                raise ValidationError(
                    f"Duplicate task for entity {task.entity_type}",
                    field_name="entity_type",
                    value=task.entity_type,
                )
            seen.add(task.entity_type)
            self._registry.get(task.entity_type)

        graph = DependencyGraph.from_tasks(tasks)
        graph.validate()
        return graph

    async def _load_checkpoints(
        self,
        session_id: str,
        tasks: Sequence[MigrationTask],
    ) -> dict[str, Checkpoint]:
        checkpoints: dict[str, Checkpoint] = {}
        for task in tasks:
            checkpoint = await self._checkpoints.get_checkpoint(session_id, task.entity_type)
            if checkpoint is None:
                continue
            total = len(task.record_ids) if task.record_ids is not None else None
            checkpoint.validate(total)
            checkpoints[task.entity_type] = checkpoint
        return checkpoints

    def index_entities(self, tasks: Sequence[MigrationTask]) -> list[EntityDefinition]:
        """Entities whose mappings a run of ``tasks`` needs: the tasks and their FK parents."""
        entities: dict[str, EntityDefinition] = {}
        for task in tasks:
            entity = self._registry.get(task.entity_type)
            entities[entity.name] = entity
            for fk in entity.foreign_keys:
                entities.setdefault(fk.parent_entity, self._registry.get(fk.parent_entity))
        return list(entities.values())

    # -------------------------------------------------------------------------
    # Per-entity execution
    # -------------------------------------------------------------------------

    def _set_status(
        self,
        result: EntityExecutionResult,
        status: TaskStatus,
        callback: EntityStatusCallback | None,
    ) -> None:
        if status == result.status:
            return
        if not result.status.can_transition_to(status):
            logger.warning(
                "Ignoring invalid task transition %s -> %s",
                result.status.value,
                status.value,
                extra={"entity_type": result.entity_type},
            )
            return
        result.status = status
        if status == TaskStatus.RUNNING:
            result.started_at = datetime.now(UTC)
        elif status.is_terminal:
            result.completed_at = datetime.now(UTC)
        if callback is not None:
            callback(result.entity_type, status)

    async def _run_entity(
        self,
        task: MigrationTask,
        *,
        graph: DependencyGraph,
        session_id: str,
        checkpoint: Checkpoint | None,
        index: ReconciliationIndex,
        control: ExecutionControl,
        results: dict[str, EntityExecutionResult],
        done: dict[str, asyncio.Event],
        semaphore: asyncio.Semaphore,
        on_entity_status: EntityStatusCallback | None,
        progress: ProgressTracker | None,
    ) -> None:
        result = results[task.entity_type]
        try:
            prerequisites = [d for d in graph.dependencies_of(task.entity_type) if d in done]
            for dependency in prerequisites:
                await done[dependency].wait()

            if await control.wait_at_boundary() is not None:
                if control.is_cancelled:
                    self._set_status(result, TaskStatus.CANCELLED, on_entity_status)
                return

            blocked = [d for d in prerequisites if results[d].status != TaskStatus.COMPLETED]
            if blocked:
                result.blocked_by = blocked
                result.errors.append(
                    {
                        "error_type": "DependencyNotCompleted",
                        "message": f"Prerequisites did not complete: {', '.join(blocked)}",
                        "blocked_by": blocked,
                    }
                )
                logger.warning(
                    "Skipping %s: prerequisites %s did not complete",
                    task.entity_type,
                    blocked,
                    extra={"session_id": session_id, "entity_type": task.entity_type},
                )
                self._set_status(result, TaskStatus.FAILED, on_entity_status)
                if progress is not None:
                    progress.finish(task.entity_type, ProgressStatus.FAILED)
                return

            async with semaphore:
                self._set_status(result, TaskStatus.RUNNING, on_entity_status)
                await self._migrate_entity(
                    task,
                    session_id=session_id,
                    checkpoint=checkpoint or Checkpoint(session_id, task.entity_type),
                    index=index,
                    control=control,
                    result=result,
                    on_entity_status=on_entity_status,
                    progress=progress,
                )
        except Exception as e:
            cause = e.last_error if isinstance(e, RetryError) else e
            logger.error(
                "Migration of %s failed: %s",
                task.entity_type,
                cause,
                exc_info=True,
                extra={"session_id": session_id, "entity_type": task.entity_type},
            )
            if isinstance(cause, DiffMigrationError):
                error = cause.to_dict()
            else:
                error = {"message": str(cause)}
            error["error_type"] = type(cause).__name__
            result.errors.append(error)
            self._set_status(result, TaskStatus.FAILED, on_entity_status)
            if progress is not None:
                progress.finish(task.entity_type, ProgressStatus.FAILED)
        finally:
            done[task.entity_type].set()

    async def _migrate_entity(
        self,
        task: MigrationTask,
        *,
        session_id: str,
        checkpoint: Checkpoint,
        index: ReconciliationIndex,
        control: ExecutionControl,
        result: EntityExecutionResult,
        on_entity_status: EntityStatusCallback | None,
        progress: ProgressTracker | None,
    ) -> None:
        entity = self._registry.get(task.entity_type)
        offset = checkpoint.last_processed_offset
        batch_number = checkpoint.batches_completed
        result.resumed_from_offset = offset

        if offset:
            logger.info(
                "Resuming %s from offset %d (batch %d)",
                entity.name,
                offset,
                batch_number,
                extra={"session_id": session_id, "entity_type": entity.name},
            )

        if progress is not None:
            progress.start(
                entity.name,
                await self._total_records(entity, task, session_id),
                already_processed=offset,
                batch_number=batch_number,
            )

        with self._tracer.span(
            "diffmigrate.executor.entity",
            {
                ATTR_SESSION_ID: session_id,
                ATTR_ENTITY_TYPE: entity.name,
                ATTR_BATCH_SIZE: task.batch_size,
                ATTR_BATCH_OFFSET: offset,
            },
        ) as span:
            while True:
                if await control.wait_at_boundary() is not None:
                    logger.info(
                        "Stopping %s at offset %d",
                        entity.name,
                        offset,
                        extra={"session_id": session_id, "entity_type": entity.name},
                    )
                    self._set_status(result, TaskStatus.CANCELLED, on_entity_status)
                    if progress is not None:
                        progress.finish(
                            entity.name,
                            ProgressStatus.CANCELLED
                            if control.is_cancelled
                            else ProgressStatus.PAUSED,
                        )
                    return

                records, consumed = await self._fetch_batch(entity, task, offset)
                if consumed == 0:
                    break

                batch_number += 1
                batch = await self._apply_batch(
                    entity,
                    records,
                    batch_number=batch_number,
                    offset=offset,
                    session_id=session_id,
                    index=index,
                    result=result,
                )
                # Ids that vanished from the source since detection count as skipped
                missing = consumed - batch.records_processed
                if missing:
                    batch = replace(batch, records_skipped=batch.records_skipped + missing)
                result.record_batch(batch)

                checkpoint = checkpoint.advance(
                    processed=consumed,
                    succeeded=batch.records_succeeded,
                    failed=batch.records_failed,
                    skipped=batch.records_skipped,
                    last_processed_id=records[-1].legacy_id if records else None,
                )
                await self._save_checkpoint(checkpoint)
                offset = checkpoint.last_processed_offset
                if progress is not None:
                    progress.record_batch(
                        entity.name,
                        records_processed=offset,
                        batch_number=batch_number,
                        batch_size=consumed,
                        duration_ms=batch.duration_ms,
                    )

                if consumed < task.batch_size:
                    break

            if span:
                span.set_attribute(ATTR_RECORDS_SUCCEEDED, result.records_succeeded)
                span.set_attribute(ATTR_RECORDS_FAILED, result.records_failed)

        status = TaskStatus.COMPLETED if result.batches_failed == 0 else TaskStatus.PARTIALLY_FAILED
        self._set_status(result, status, on_entity_status)
        if progress is not None:
            progress.finish(entity.name, ProgressStatus.COMPLETED)
        logger.info(
            "Migrated %s: %d succeeded, %d failed, %d skipped in %d batches",
            entity.name,
            result.records_succeeded,
            result.records_failed,
            result.records_skipped,
            result.batches_completed + result.batches_failed,
            extra={
                "session_id": session_id,
                "entity_type": entity.name,
                "status": status.value,
            },
        )

    async def _fetch_batch(
        self,
        entity: EntityDefinition,
        task: MigrationTask,
        offset: int,
    ) -> tuple[list[SourceRecord], int]:
        """
        Read the batch starting at ``offset``.

        Returns:
            The records read and how far the offset advances. For an explicit
            id list the advance is the size of the id slice, even when some
            ids no longer exist in the source.
        """
        timestamp_field = entity.timestamp_field(self._config.timestamp_field)

        if task.record_ids is None:
            records = await retry_async(
                lambda: self._source.scan(
                    entity,
                    offset=offset,
                    limit=task.batch_size,
                    timestamp_field=timestamp_field,
                ),
                config=self._config.retry,
                operation_name=f"scan {entity.name}",
            )
            return records, len(records)

        ids = list(task.record_ids[offset : offset + task.batch_size])
        found: list[SourceRecord] = []
        for start in range(0, len(ids), MAX_ID_CHUNK_SIZE):
            chunk = ids[start : start + MAX_ID_CHUNK_SIZE]
            found.extend(
                await retry_async(
                    lambda chunk=chunk: self._source.fetch_by_ids(
                        entity, chunk, timestamp_field=timestamp_field
                    ),
                    config=self._config.retry,
                    operation_name=f"fetch {entity.name}",
                )
            )
        return found, len(ids)

    async def _total_records(
        self,
        entity: EntityDefinition,
        task: MigrationTask,
        session_id: str,
    ) -> int | None:
        """Records the task will consume, or None when the source cannot say."""
        if task.record_ids is not None:
            return len(task.record_ids)
        try:
            return await retry_async(
                lambda: self._source.count(
                    entity, timestamp_field=entity.timestamp_field(self._config.timestamp_field)
                ),
                config=self._config.retry,
                operation_name=f"count {entity.name}",
            )
        except RetryError as e:
            logger.warning(
                "Could not count %s; progress will have no total: %s",
                entity.name,
                e.last_error,
                extra={"session_id": session_id, "entity_type": entity.name},
            )
            return None

    async def _apply_batch(
        self,
        entity: EntityDefinition,
        records: Sequence[SourceRecord],
        *,
        batch_number: int,
        offset: int,
        session_id: str,
        index: ReconciliationIndex,
        result: EntityExecutionResult,
    ) -> BatchResult:
        start = time.perf_counter()
        transform = self.transformer_for(entity.name)
        rows: list[dict[str, Any]] = []
        row_ids: list[str] = []
        skipped = 0

        for record in records:
            resolution = index.resolve_foreign_keys(entity, record)
            if resolution.should_skip:
                skipped += 1
                assert resolution.error is not None
                result.errors.append(resolution.error.to_dict())
                continue
            result.fk_gaps.extend(resolution.gaps)
            rows.append(transform(entity, record, resolution.values))
            row_ids.append(record.legacy_id)

        if skipped:
            logger.warning(
                "Skipped %d %s records with unresolved foreign keys in batch %d",
                skipped,
                entity.name,
                batch_number,
                extra={"session_id": session_id, "entity_type": entity.name},
            )

        if not rows:
            return BatchResult(
                batch_number=batch_number,
                offset=offset,
                status=BatchStatus.SUCCESS,
                records_skipped=skipped,
                attempts=0,
                duration_ms=(time.perf_counter() - start) * 1000,
            )

        stats = RetryStats()
        with self._tracer.span(
            "diffmigrate.executor.batch",
            {
                ATTR_SESSION_ID: session_id,
                ATTR_ENTITY_TYPE: entity.name,
                ATTR_BATCH_NUMBER: batch_number,
                ATTR_BATCH_OFFSET: offset,
                ATTR_BATCH_SIZE: len(rows),
            },
        ):
            try:
                mapping = await retry_async(
                    lambda: self._upsert(entity, rows, batch_number, row_ids, session_id),
                    config=self._config.retry,
                    retryable_exceptions=RETRYABLE_BATCH_EXCEPTIONS,
                    operation_name=f"upsert {entity.name} batch {batch_number}",
                    stats=stats,
                )
            except RetryError as e:
                error = BatchApplyError(
                    f"Batch {batch_number} of {entity.name} failed after "
                    f"{e.attempts} attempts: {e.last_error}",
                    entity_type=entity.name,
                    batch_number=batch_number,
                    record_ids=row_ids,
                    session_id=session_id,
                )
                logger.error(
                    "Isolating failed batch %d of %s (%d records)",
                    batch_number,
                    entity.name,
                    len(rows),
                    extra={
                        "session_id": session_id,
                        "entity_type": entity.name,
                        "error_type": type(e.last_error).__name__,
                    },
                )
                result.errors.append(error.to_dict())
                result.failed_record_ids.extend(row_ids)
                return BatchResult(
                    batch_number=batch_number,
                    offset=offset,
                    status=BatchStatus.FAILED,
                    records_failed=len(rows),
                    records_skipped=skipped,
                    attempts=stats.attempts,
                    duration_ms=(time.perf_counter() - start) * 1000,
                    error=str(e.last_error),
                )

        index.record(entity.name, mapping)
        logger.debug(
            "Applied batch %d of %s (%d rows)",
            batch_number,
            entity.name,
            len(rows),
            extra={"session_id": session_id, "entity_type": entity.name},
        )
        return BatchResult(
            batch_number=batch_number,
            offset=offset,
            status=BatchStatus.SUCCESS,
            records_succeeded=len(rows),
            records_skipped=skipped,
            attempts=stats.attempts,
            duration_ms=(time.perf_counter() - start) * 1000,
        )

    async def _upsert(
        self,
        entity: EntityDefinition,
        rows: Sequence[Mapping[str, Any]],
        batch_number: int,
        record_ids: Sequence[str],
        session_id: str,
    ) -> dict[str, str]:
        try:
            return await asyncio.wait_for(
                self._destination.upsert(entity, rows),
                timeout=self._config.batch_timeout,
            )
        except RETRYABLE_BATCH_EXCEPTIONS:
            raise
        except Exception as e:
            raise BatchApplyError(
                str(e),
                entity_type=entity.name,
                batch_number=batch_number,
                record_ids=record_ids,
                session_id=session_id,
            ) from e

    async def _save_checkpoint(self, checkpoint: Checkpoint) -> None:
        saved = await retry_async(
            lambda: self._checkpoints.save_checkpoint(checkpoint),
            config=self._config.retry,
            operation_name=f"save checkpoint {checkpoint.entity_type}",
        )
        if not saved:
            logger.warning(
                "Checkpoint for %s at offset %d was older than the stored one",
                checkpoint.entity_type,
                checkpoint.last_processed_offset,
                extra={"session_id": checkpoint.session_id},
            )

    # -------------------------------------------------------------------------
    # Integrity
    # -------------------------------------------------------------------------

    async def validate_migration_integrity(
        self,
        entity_type: str,
        sample_size: int = DEFAULT_SAMPLE_SIZE,
    ) -> IntegrityReport:
        """
        Compare a sample of migrated records with their source rows.

        The first ``sample_size`` source records (in legacy id order) are
        transformed again and compared with the destination rows stored for
        the same legacy ids. Foreign key columns are taken from the stored
        row, so the comparison covers record content rather than key
        resolution. Stores that expose no row contents are compared by
        content hash when the entity keeps one.

        Args:
            entity_type: Entity to sample.
            sample_size: Number of source records to compare.

        Returns:
            IntegrityReport with one comparison per sampled record.

        Raises:
            ValidationError: If sample_size is not positive.
            UnknownEntityError: If the entity is not registered.
            RetryError: If the stores stay unreachable after retries.
        """
        if sample_size < 1:
            raise ValidationError(
                f"sample_size must be positive, got {sample_size}",
                field_name="sample_size",
                value=sample_size,
            )
        entity = self._registry.get(entity_type)
        timestamp_field = entity.timestamp_field(self._config.timestamp_field)

        with self._tracer.span(
            "diffmigrate.executor.validate_integrity",
            {ATTR_ENTITY_TYPE: entity.name, ATTR_BATCH_SIZE: sample_size},
        ):
            records = await retry_async(
                lambda: self._source.scan(
                    entity, offset=0, limit=sample_size, timestamp_field=timestamp_field
                ),
                config=self._config.retry,
                operation_name=f"sample {entity.name}",
            )
            stored: dict[str, DestinationRecord] = {}
            ids = [record.legacy_id for record in records]
            for start in range(0, len(ids), MAX_ID_CHUNK_SIZE):
                chunk = ids[start : start + MAX_ID_CHUNK_SIZE]
                found = await retry_async(
                    lambda chunk=chunk: self._destination.find_by_legacy_ids(
                        entity, chunk, hash_column=entity.content_hash_column
                    ),
                    config=self._config.retry,
                    operation_name=f"sample {entity.name} destination",
                )
                stored.update((row.legacy_id, row) for row in found)

            report = IntegrityReport(
                entity_type=entity.name,
                results=tuple(self._compare(entity, r, stored.get(r.legacy_id)) for r in records),
            )

        log = logger.info if report.is_valid else logger.warning
        log(
            "Integrity sample of %s: %d of %d matched (%.2f%%)",
            entity.name,
            report.successful_matches,
            report.total_validated,
            report.match_percentage,
            extra={
                "entity_type": entity.name,
                "is_valid": report.is_valid,
                "mismatched_ids": [m.legacy_id for m in report.mismatches],
            },
        )
        return report

    def _compare(
        self,
        entity: EntityDefinition,
        record: SourceRecord,
        stored: DestinationRecord | None,
    ) -> RecordComparison:
        if stored is None:
            return compare_record(record.legacy_id, record.data, None)

        actual = stored.data
        foreign_keys = {
            fk.target_field: actual.get(fk.target_field) if actual is not None else None
            for fk in entity.foreign_keys
        }
        expected = self.transformer_for(entity.name)(entity, record, foreign_keys)

        if actual is None:
            hash_column = entity.content_hash_column
            if hash_column is None or stored.content_hash is None:
                return RecordComparison(record.legacy_id, expected, {})
            expected = {hash_column: expected.get(hash_column)}
            actual = {hash_column: stored.content_hash}

        # Key and audit columns are store-managed or matched by the lookup itself
        excluded = (
            entity.legacy_id_column,
            entity.destination_id_column,
            entity.destination_timestamp_column,
        )
        return compare_record(record.legacy_id, expected, actual, excluded)

    @staticmethod
    def _overall_status(
        results: Mapping[str, EntityExecutionResult],
        control: ExecutionControl,
    ) -> OverallStatus:
        if control.is_cancelled:
            return OverallStatus.CANCELLED
        statuses = [r.status for r in results.values()]
        if control.is_suspended and any(
            not status.is_terminal or status == TaskStatus.CANCELLED for status in statuses
        ):
            return OverallStatus.PAUSED
        if all(status == TaskStatus.COMPLETED for status in statuses):
            return OverallStatus.COMPLETED
        if not any(
            status in (TaskStatus.COMPLETED, TaskStatus.PARTIALLY_FAILED) for status in statuses
        ):
            return OverallStatus.FAILED
        return OverallStatus.PARTIAL


__all__ = [
    "RETRYABLE_BATCH_EXCEPTIONS",
    "EntityStatusCallback",
    "ExecutionControl",
    "RecordTransformer",
    "DefaultTransformer",
    "BatchMigrationExecutor",
]
