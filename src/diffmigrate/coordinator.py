"""
SessionCoordinator - admits, runs and steers migration sessions.

A session claims a set of entities and executes their migration tasks in
the background. The coordinator is the single owner of in-process session
state (worker tasks, execution controls, reconciliation indexes); everything
that must survive a restart lives in the session and checkpoint
repositories.

State machine:
    QUEUED -> RUNNING <-> PAUSED -> {COMPLETED, FAILED, CANCELLED}

Responsibilities:
    - Reject sessions whose entities overlap a live session (ConflictError)
    - Reject cyclic task sets before anything is persisted
    - Run each session's tasks on a background worker and expose a handle
    - Track per-entity progress of every running session
    - Pause, resume and cancel cooperatively at batch boundaries
    - Recover sessions left RUNNING by a crashed process
    - Suspend live sessions on shutdown so they can be resumed later

Usage:
    >>> async with SessionCoordinator(
    ...     source, destination, session_repo, checkpoint_repo, registry
    ... ) as coordinator:
    ...     handle = await coordinator.start_session("nightly", ["offices", "doctors"])
    ...     result = await handle.wait()
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping, Sequence
from datetime import UTC, datetime
from typing import Any

from diffmigrate.config import ExecutionConfig
from diffmigrate.entities import EntityRegistry
from diffmigrate.exceptions import (
    ConflictError,
    InvalidSessionTransitionError,
    SessionNotFoundError,
    ValidationError,
)
from diffmigrate.executor import BatchMigrationExecutor, ExecutionControl, RecordTransformer
from diffmigrate.graph import DependencyGraph
from diffmigrate.integrity import DEFAULT_SAMPLE_SIZE, IntegrityReport
from diffmigrate.models import (
    ExecutionResult,
    MigrationSession,
    MigrationTask,
    OverallStatus,
    SessionStatus,
)
from diffmigrate.observability import Tracer, create_tracer
from diffmigrate.observability.attributes import (
    ATTR_ENTITY_COUNT,
    ATTR_SESSION_ID,
    ATTR_SESSION_STATUS,
)
from diffmigrate.progress import ProgressCallback, ProgressSnapshot, ProgressTracker
from diffmigrate.reconciliation import ReconciliationIndex
from diffmigrate.repositories.checkpoint import CheckpointRepository
from diffmigrate.repositories.session import SessionRepository
from diffmigrate.stores.interface import DestinationStore, SourceStore

logger = logging.getLogger(__name__)

# Session status reached when an execution ends with the given outcome
TERMINAL_STATUS_BY_OUTCOME: dict[OverallStatus, SessionStatus] = {
    OverallStatus.COMPLETED: SessionStatus.COMPLETED,
    OverallStatus.PARTIAL: SessionStatus.FAILED,
    OverallStatus.FAILED: SessionStatus.FAILED,
    OverallStatus.CANCELLED: SessionStatus.CANCELLED,
    OverallStatus.PAUSED: SessionStatus.PAUSED,
}


class SessionHandle:
    """
    Caller-facing handle on a session's background execution.

    Attributes:
        session_id: Session the handle belongs to.
    """

    def __init__(
        self,
        session_id: str,
        task: asyncio.Task[ExecutionResult],
        tracker: ProgressTracker | None = None,
    ) -> None:
        self.session_id = session_id
        self._task = task
        self._tracker = tracker or ProgressTracker(session_id)
        self._status = SessionStatus.RUNNING

    @property
    def status(self) -> SessionStatus:
        """Last status the coordinator recorded for the session."""
        return self._status

    def done(self) -> bool:
        return self._task.done()

    def progress(self) -> dict[str, ProgressSnapshot]:
        """Latest progress snapshot of every entity the run has reached."""
        return self._tracker.snapshots()

    async def wait(self) -> ExecutionResult:
        """
        Wait for the execution to finish.

        Cancelling the waiter does not cancel the session.

        Raises:
            Exception: Whatever stopped the execution before it produced a result.
        """
        return await asyncio.shield(self._task)

    def add_done_callback(self, callback: Callable[[SessionHandle], None]) -> None:
        self._task.add_done_callback(lambda _: callback(self))

    def update_status(self, status: SessionStatus) -> None:
        """Record a status change; called by the owning coordinator."""
        self._status = status

    async def join(self) -> None:
        """Wait for the worker to stop without raising its exception."""
        await asyncio.wait([self._task])

    def __repr__(self) -> str:
        return f"SessionHandle(session_id={self.session_id!r}, status={self._status.value})"


class SessionCoordinator:
    """
    Process-wide owner of migration sessions.

    Construct one per process, call ``recover`` on startup and ``shutdown``
    (or use ``async with``) on teardown.
    """

    def __init__(
        self,
        source: SourceStore,
        destination: DestinationStore,
        session_repo: SessionRepository,
        checkpoint_repo: CheckpointRepository,
        registry: EntityRegistry,
        *,
        execution_config: ExecutionConfig | None = None,
        transformers: Mapping[str, RecordTransformer] | None = None,
        executor: BatchMigrationExecutor | None = None,
        on_progress: ProgressCallback | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the coordinator.

        Args:
            source: Legacy store.
            destination: Destination store.
            session_repo: Persistence for session rows.
            checkpoint_repo: Persistence for checkpoints.
            registry: Entity definitions.
            execution_config: Settings for the executor it builds.
            transformers: Per-entity record transformers.
            executor: Pre-built executor (overrides the three above).
            on_progress: Called with every progress snapshot of every session.
            tracer: Optional tracer.
            enable_tracing: Whether to enable tracing when no tracer is given.
        """
        self._destination = destination
        self._sessions = session_repo
        self._checkpoints = checkpoint_repo
        self._registry = registry
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._on_progress = on_progress
        self._executor = executor or BatchMigrationExecutor(
            source,
            destination,
            checkpoint_repo,
            registry,
            config=execution_config,
            transformers=transformers,
            tracer=self._tracer,
        )

        self._lock = asyncio.Lock()
        self._handles: dict[str, SessionHandle] = {}
        self._controls: dict[str, ExecutionControl] = {}
        self._indexes: dict[str, ReconciliationIndex] = {}
        self._closed = False

    async def __aenter__(self) -> SessionCoordinator:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.shutdown()

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def handle(self, session_id: str) -> SessionHandle | None:
        """Handle of the session's live worker in this process, if any."""
        return self._handles.get(session_id)

    def _is_live(self, session_id: str) -> bool:
        handle = self._handles.get(session_id)
        return handle is not None and not handle.done()

    def get_progress(self, session_id: str) -> dict[str, ProgressSnapshot]:
        """
        Latest per-entity progress of a session running in this process.

        Finished sessions are forgotten; their handles keep the final snapshots.
        """
        handle = self._handles.get(session_id)
        return handle.progress() if handle is not None else {}

    async def validate_migration_integrity(
        self,
        entity_type: str,
        sample_size: int = DEFAULT_SAMPLE_SIZE,
    ) -> IntegrityReport:
        """Sample migrated records of an entity against the source."""
        return await self._executor.validate_migration_integrity(entity_type, sample_size)

    async def get_session(self, session_id: str) -> MigrationSession | None:
        """Load a session with its latest checkpoints."""
        session = await self._sessions.get_session(session_id)
        if session is None:
            return None
        checkpoints = await self._checkpoints.list_checkpoints(session_id)
        session.checkpoints = {cp.entity_type: cp for cp in checkpoints}
        return session

    async def list_active_sessions(self) -> list[MigrationSession]:
        return await self._sessions.list_active_sessions()

    async def _require(self, session_id: str) -> MigrationSession:
        session = await self._sessions.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start_session(
        self,
        session_id: str,
        entities: Sequence[str],
        *,
        tasks: Sequence[MigrationTask] | None = None,
        analysis_id: str | None = None,
    ) -> SessionHandle:
        """
        Admit a session and start executing it in the background.

        Args:
            session_id: Unique id for the new session.
            entities: Entity types the session claims.
            tasks: Tasks to execute; derived from the registry when omitted.
                Must cover exactly ``entities``.
            analysis_id: Detection run the tasks came from, if any.

        Returns:
            Handle on the running session.

        Raises:
            ValidationError: If the request is malformed or the id is taken.
            UnknownEntityError: If an entity is not registered.
            CyclicDependencyError: If the task dependencies form a cycle.
            ConflictError: If an entity is claimed by another live session.
        """
        if self._closed:
            raise ValidationError("Coordinator is shut down", entity_type="session")

        claimed = list(dict.fromkeys(entities))
        if not claimed:
            raise ValidationError(
                "A session must claim at least one entity",
                field_name="entities",
                entity_type="session",
            )
        for name in claimed:
            self._registry.get(name)

        if tasks is None:
            tasks = self._registry.tasks_for(
                claimed, batch_size=self._executor.config.default_batch_size
            )
        elif sorted(t.entity_type for t in tasks) != sorted(claimed):
            raise ValidationError(
                "Session tasks must cover exactly the claimed entities",
                field_name="tasks",
                value=[t.entity_type for t in tasks],
                entity_type="session",
            )
        DependencyGraph.from_tasks(tasks).validate()

        with self._tracer.span(
            "diffmigrate.coordinator.start_session",
            {ATTR_SESSION_ID: session_id, ATTR_ENTITY_COUNT: len(claimed)},
        ):
            async with self._lock:
                await self._check_claims(session_id, claimed, tasks)

                session = MigrationSession(
                    session_id=session_id,
                    entities=claimed,
                    tasks=list(tasks),
                    analysis_id=analysis_id,
                )
                await self._sessions.create_session(session)
                logger.info(
                    "Session %s queued for %s",
                    session_id,
                    claimed,
                    extra={"session_id": session_id, "analysis_id": analysis_id},
                )
                return await self._launch(session)

    async def _check_claims(
        self,
        session_id: str,
        claimed: Sequence[str],
        tasks: Sequence[MigrationTask],
    ) -> None:
        """
        Raise ConflictError if another active session holds a claimed entity
        or any prerequisite of one. Caller holds the lock.
        """
        prerequisites = self._registry.prerequisites_of(claimed)
        prerequisites.update(dep for task in tasks for dep in task.dependencies)
        prerequisites.difference_update(claimed)

        for active in await self._sessions.list_active_sessions():
            if active.session_id == session_id:
                continue
            overlap = sorted(set(claimed) & set(active.entities))
            if overlap:
                logger.warning(
                    "Session %s conflicts with %s on %s",
                    session_id,
                    active.session_id,
                    overlap,
                    extra={"session_id": session_id},
                )
                raise ConflictError(session_id, active.session_id, overlap)
            # Dependents would resolve foreign keys against a partially migrated parent
            held = sorted(prerequisites & set(active.entities))
            if held:
                logger.warning(
                    "Session %s depends on %s still claimed by %s",
                    session_id,
                    held,
                    active.session_id,
                    extra={"session_id": session_id},
                )
                raise ConflictError(session_id, active.session_id, held, prerequisite=True)

    async def _launch(self, session: MigrationSession) -> SessionHandle:
        """Move a session to RUNNING and start its worker. Caller holds the lock."""
        now = datetime.now(UTC)
        session.status = SessionStatus.RUNNING
        session.started_at = session.started_at or now
        session.updated_at = now
        await self._sessions.update_session(session)

        control = ExecutionControl()
        tracker = ProgressTracker(session.session_id, on_progress=self._on_progress)
        task = asyncio.create_task(
            self._run_session(session.session_id, list(session.tasks), control, tracker),
            name=f"diffmigrate-session-{session.session_id}",
        )
        handle = SessionHandle(session.session_id, task, tracker)
        task.add_done_callback(self._on_worker_done)
        self._controls[session.session_id] = control
        self._handles[session.session_id] = handle

        logger.info(
            "Session %s running",
            session.session_id,
            extra={"session_id": session.session_id},
        )
        return handle

    async def _run_session(
        self,
        session_id: str,
        tasks: list[MigrationTask],
        control: ExecutionControl,
        tracker: ProgressTracker,
    ) -> ExecutionResult:
        with self._tracer.span(
            "diffmigrate.coordinator.run_session",
            {ATTR_SESSION_ID: session_id},
        ) as span:
            try:
                index = self._indexes.get(session_id)
                if index is None:
                    index = await ReconciliationIndex.build(
                        self._executor.index_entities(tasks),
                        self._destination,
                        session_id=session_id,
                        tracer=self._tracer,
                    )
                    self._indexes[session_id] = index

                result = await self._executor.execute_migration_tasks(
                    tasks,
                    session_id=session_id,
                    index=index,
                    control=control,
                    progress=tracker,
                )
            except Exception as e:
                logger.error(
                    "Session %s failed: %s",
                    session_id,
                    e,
                    exc_info=True,
                    extra={"session_id": session_id},
                )
                await self._finish(session_id, SessionStatus.FAILED, error_message=str(e))
                raise

            status = TERMINAL_STATUS_BY_OUTCOME[result.overall_status]
            error_message = None
            if status == SessionStatus.FAILED:
                error_message = (
                    f"Execution ended {result.overall_status.value}: "
                    f"{result.total_records_failed} records failed, "
                    f"failed entities {result.failed_entities}"
                )
            await self._finish(
                session_id,
                status,
                error_message=error_message,
                result_summary=result.to_dict(),
            )
            if span:
                span.set_attribute(ATTR_SESSION_STATUS, status.value)
            return result

    async def _finish(
        self,
        session_id: str,
        status: SessionStatus,
        *,
        error_message: str | None = None,
        result_summary: dict[str, Any] | None = None,
    ) -> None:
        async with self._lock:
            session = await self._require(session_id)
            now = datetime.now(UTC)
            # The worker's outcome wins over a pause that arrived after the last batch
            session.status = status
            session.updated_at = now
            session.error_message = error_message
            if result_summary is not None:
                session.result_summary = result_summary
            if status.is_terminal:
                session.completed_at = now
                self._indexes.pop(session_id, None)
            await self._sessions.update_session(session)

            handle = self._handles.get(session_id)
            if handle is not None:
                handle.update_status(status)
            if status.is_terminal:
                # Callers keep their own reference; the coordinator forgets finished workers
                self._handles.pop(session_id, None)
                self._controls.pop(session_id, None)

        logger.info(
            "Session %s finished as %s",
            session_id,
            status.value,
            extra={"session_id": session_id, "status": status.value},
        )

    def _on_worker_done(self, task: asyncio.Task[ExecutionResult]) -> None:
        # Failures are logged and persisted by the worker itself
        if not task.cancelled():
            task.exception()

    async def pause_session(self, session_id: str) -> SessionStatus:
        """
        Pause a running session at its next batch boundary.

        Raises:
            SessionNotFoundError: If the session does not exist.
            InvalidSessionTransitionError: If the session is not running.
        """
        async with self._lock:
            session = await self._require(session_id)
            if not session.can_transition_to(SessionStatus.PAUSED):
                raise InvalidSessionTransitionError(
                    session_id, session.status, SessionStatus.PAUSED
                )

            control = self._controls.get(session_id)
            if control is not None and self._is_live(session_id):
                control.pause()

            session.status = SessionStatus.PAUSED
            session.updated_at = datetime.now(UTC)
            await self._sessions.update_session(session)
            handle = self._handles.get(session_id)
            if handle is not None:
                handle.update_status(SessionStatus.PAUSED)

        logger.info("Session %s paused", session_id, extra={"session_id": session_id})
        return SessionStatus.PAUSED

    async def resume_session(self, session_id: str) -> SessionStatus:
        """
        Resume a paused session from its checkpoints.

        A session paused in this process continues on its existing worker;
        one recovered from a previous process gets a new worker.

        Raises:
            SessionNotFoundError: If the session does not exist.
            InvalidSessionTransitionError: If the session is not paused.
        """
        async with self._lock:
            session = await self._require(session_id)
            if session.status != SessionStatus.PAUSED:
                raise InvalidSessionTransitionError(
                    session_id, session.status, SessionStatus.RUNNING
                )
            await self._check_claims(session_id, session.entities, session.tasks)

            if self._is_live(session_id):
                control = self._controls[session_id]
                if control.is_stopping:
                    # Being cancelled or suspended; its worker is on the way out
                    raise InvalidSessionTransitionError(
                        session_id, session.status, SessionStatus.RUNNING
                    )
                session.status = SessionStatus.RUNNING
                session.updated_at = datetime.now(UTC)
                await self._sessions.update_session(session)
                control.resume()
                self._handles[session_id].update_status(SessionStatus.RUNNING)
            else:
                if self._closed:
                    raise ValidationError("Coordinator is shut down", entity_type="session")
                await self._launch(session)

        logger.info("Session %s resumed", session_id, extra={"session_id": session_id})
        return SessionStatus.RUNNING

    async def cancel_session(self, session_id: str) -> SessionStatus:
        """
        Cancel a session.

        A live worker stops at its next batch boundary; the call returns once
        it has. Batches already committed stay committed.

        Returns:
            The session's final status (COMPLETED if it finished before the
            cancellation was observed).

        Raises:
            SessionNotFoundError: If the session does not exist.
            InvalidSessionTransitionError: If the session is already terminal.
        """
        async with self._lock:
            session = await self._require(session_id)
            if not session.can_transition_to(SessionStatus.CANCELLED):
                raise InvalidSessionTransitionError(
                    session_id, session.status, SessionStatus.CANCELLED
                )

            handle = self._handles.get(session_id)
            if handle is None or handle.done():
                now = datetime.now(UTC)
                session.status = SessionStatus.CANCELLED
                session.updated_at = now
                session.completed_at = now
                await self._sessions.update_session(session)
                self._indexes.pop(session_id, None)
                logger.info("Session %s cancelled", session_id, extra={"session_id": session_id})
                return SessionStatus.CANCELLED

            self._controls[session_id].cancel()

        logger.info(
            "Session %s cancellation requested; waiting for the current batch",
            session_id,
            extra={"session_id": session_id},
        )
        await handle.join()
        session = await self._require(session_id)
        return session.status

    async def recover(self) -> list[str]:
        """
        Reconcile persisted sessions with the workers of this process.

        Sessions left RUNNING without a live worker are marked PAUSED so an
        operator can resume them from their checkpoints. Sessions still
        QUEUED never started and are marked FAILED.

        Returns:
            Ids of the sessions now awaiting ``resume_session``.
        """
        paused: list[str] = []
        async with self._lock:
            for session in await self._sessions.list_active_sessions():
                if self._is_live(session.session_id):
                    continue
                now = datetime.now(UTC)
                if session.status == SessionStatus.RUNNING:
                    session.status = SessionStatus.PAUSED
                    session.updated_at = now
                    await self._sessions.update_session(session)
                    paused.append(session.session_id)
                elif session.status == SessionStatus.QUEUED:
                    session.status = SessionStatus.FAILED
                    session.error_message = "Session was never started by a worker"
                    session.updated_at = now
                    session.completed_at = now
                    await self._sessions.update_session(session)
                elif session.status == SessionStatus.PAUSED:
                    paused.append(session.session_id)

        if paused:
            logger.warning(
                "Recovered %d interrupted sessions: %s",
                len(paused),
                paused,
                extra={"sessions": paused},
            )
        return paused

    async def shutdown(self) -> None:
        """Suspend every live session at its next batch boundary and wait for it."""
        self._closed = True
        live = [h for h in self._handles.values() if not h.done()]
        for handle in live:
            self._controls[handle.session_id].suspend()
        if live:
            logger.info(
                "Suspending %d live sessions for shutdown",
                len(live),
                extra={"sessions": [h.session_id for h in live]},
            )
            await asyncio.gather(*(h.join() for h in live))
        self._controls.clear()
        self._indexes.clear()


__all__ = [
    "TERMINAL_STATUS_BY_OUTCOME",
    "SessionHandle",
    "SessionCoordinator",
]
