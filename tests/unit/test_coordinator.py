"""
Unit tests for SessionCoordinator.

Tests cover:
- Admission: validation, cycle rejection and entity conflicts
- Background execution and persisted results
- Pause, resume and cancel
- Crash recovery and shutdown
- Progress snapshots and integrity sampling
"""

import asyncio

import pytest

from diffmigrate.coordinator import SessionCoordinator, SessionHandle
from diffmigrate.exceptions import (
    CheckpointCorruptionError,
    ConflictError,
    CyclicDependencyError,
    InvalidSessionTransitionError,
    SessionNotFoundError,
    UnknownEntityError,
    ValidationError,
)
from diffmigrate.models import (
    Checkpoint,
    MigrationSession,
    MigrationTask,
    OverallStatus,
    SessionStatus,
)
from diffmigrate.progress import ProgressStatus
from diffmigrate.stores import InMemoryDestinationStore


class GatedDestinationStore(InMemoryDestinationStore):
    """Destination store whose upserts block until the gate opens."""

    def __init__(self):
        super().__init__()
        self.gate = asyncio.Event()
        self.entered = asyncio.Event()

    async def upsert(self, entity, rows):
        self.entered.set()
        await self.gate.wait()
        return await super().upsert(entity, rows)


@pytest.fixture
def destination():
    return GatedDestinationStore()


@pytest.fixture
def make_coordinator(source_store, session_repo, checkpoint_repo, registry, execution_config):
    def factory(destination, **kwargs):
        return SessionCoordinator(
            source_store,
            destination,
            session_repo,
            checkpoint_repo,
            registry,
            execution_config=execution_config,
            enable_tracing=False,
            **kwargs,
        )

    return factory


@pytest.fixture
def coordinator(make_coordinator, destination):
    return make_coordinator(destination)


@pytest.fixture
def offices_data(source_store, make_source_record):
    source_store.add_many("offices", [make_source_record(str(i)) for i in range(1, 21)])


OFFICE_TASKS = [MigrationTask("offices", batch_size=10)]


async def _entered(destination):
    await asyncio.wait_for(destination.entered.wait(), timeout=2)


class TestStartSession:
    """Tests for session admission."""

    @pytest.mark.asyncio
    async def test_runs_to_completion(self, coordinator, destination, session_repo, offices_data):
        destination.gate.set()

        handle = await coordinator.start_session("s1", ["offices"], tasks=OFFICE_TASKS)
        result = await handle.wait()

        assert isinstance(handle, SessionHandle)
        assert result.overall_status == OverallStatus.COMPLETED
        assert handle.status == SessionStatus.COMPLETED
        session = await session_repo.get_session("s1")
        assert session.status == SessionStatus.COMPLETED
        assert session.completed_at is not None
        assert session.result_summary["overall_status"] == "completed"
        assert len(destination.rows("offices")) == 20
        assert coordinator.handle("s1") is None

    @pytest.mark.asyncio
    async def test_tasks_derived_from_registry(self, coordinator, destination, session_repo):
        destination.gate.set()

        handle = await coordinator.start_session("s1", ["offices", "doctors"], analysis_id="a1")
        await handle.wait()

        session = await session_repo.get_session("s1")
        assert session.analysis_id == "a1"
        assert [t.entity_type for t in session.tasks] == ["offices", "doctors"]
        assert session.tasks[1].dependencies == ("offices",)

    @pytest.mark.asyncio
    async def test_get_session_includes_checkpoints(self, coordinator, destination, offices_data):
        destination.gate.set()
        handle = await coordinator.start_session("s1", ["offices"], tasks=OFFICE_TASKS)
        await handle.wait()

        session = await coordinator.get_session("s1")

        assert session.checkpoints["offices"].last_processed_offset == 20
        assert await coordinator.get_session("missing") is None

    @pytest.mark.asyncio
    async def test_overlapping_session_rejected(self, coordinator, destination, offices_data):
        """Test that a second session cannot claim an entity a live session holds."""
        first = await coordinator.start_session("A", ["offices", "doctors"])
        await _entered(destination)

        with pytest.raises(ConflictError) as exc_info:
            await coordinator.start_session("B", ["doctors", "patients"])

        assert exc_info.value.blocking_session_id == "A"
        assert exc_info.value.overlapping_entities == ["doctors"]
        assert "A" in str(exc_info.value)

        destination.gate.set()
        await first.wait()
        second = await coordinator.start_session("B", ["doctors", "patients"])
        await second.wait()

    @pytest.mark.asyncio
    async def test_dependent_rejected_while_prerequisite_claimed(
        self, coordinator, destination, source_store, make_source_record, offices_data
    ):
        """Test that patients cannot start while another session is writing offices."""
        source_store.add("patients", make_source_record("1", office_id=3))
        first = await coordinator.start_session("A", ["offices"], tasks=OFFICE_TASKS)
        await _entered(destination)

        with pytest.raises(ConflictError) as exc_info:
            await coordinator.start_session("B", ["patients"])

        error = exc_info.value
        assert error.prerequisite is True
        assert error.blocking_session_id == "A"
        assert error.overlapping_entities == ["offices"]
        assert error.to_dict()["prerequisite"] is True
        assert destination.rows("patients") == []

        destination.gate.set()
        await first.wait()
        second = await coordinator.start_session("B", ["patients"])
        result = await second.wait()

        assert result.overall_status == OverallStatus.COMPLETED
        (patient,) = destination.rows("patients")
        assert patient["office_id"] is not None

    @pytest.mark.asyncio
    async def test_transitive_prerequisite_blocks(self, coordinator, destination, offices_data):
        first = await coordinator.start_session("A", ["offices"], tasks=OFFICE_TASKS)
        await _entered(destination)

        with pytest.raises(ConflictError) as exc_info:
            await coordinator.start_session("B", ["orders"])

        assert exc_info.value.overlapping_entities == ["offices"]
        destination.gate.set()
        await first.wait()

    @pytest.mark.asyncio
    async def test_explicit_task_dependencies_checked(
        self, coordinator, destination, offices_data
    ):
        first = await coordinator.start_session("A", ["offices"], tasks=OFFICE_TASKS)
        await _entered(destination)

        with pytest.raises(ConflictError):
            await coordinator.start_session(
                "B", ["files"], tasks=[MigrationTask("files", dependencies=("offices",))]
            )

        destination.gate.set()
        await first.wait()

    @pytest.mark.asyncio
    async def test_prerequisite_session_may_start_beside_dependent(
        self, coordinator, destination, source_store, make_source_record, offices_data
    ):
        """Only the dependent side is held back."""
        source_store.add("patients", make_source_record("1"))
        first = await coordinator.start_session("A", ["patients"])
        await _entered(destination)

        second = await coordinator.start_session("B", ["offices"], tasks=OFFICE_TASKS)

        destination.gate.set()
        await asyncio.gather(first.wait(), second.wait())

    @pytest.mark.asyncio
    async def test_disjoint_sessions_run_concurrently(
        self, coordinator, destination, source_store, make_source_record, offices_data
    ):
        source_store.add("files", make_source_record("1"))
        first = await coordinator.start_session("A", ["offices"], tasks=OFFICE_TASKS)
        second = await coordinator.start_session("B", ["files"])

        assert {s.session_id for s in await coordinator.list_active_sessions()} == {"A", "B"}
        destination.gate.set()
        results = await asyncio.gather(first.wait(), second.wait())

        assert [r.overall_status for r in results] == [OverallStatus.COMPLETED] * 2

    @pytest.mark.asyncio
    async def test_duplicate_session_id_rejected(self, coordinator, destination):
        destination.gate.set()
        handle = await coordinator.start_session("s1", ["files"])
        await handle.wait()

        with pytest.raises(ValidationError):
            await coordinator.start_session("s1", ["offices"])

    @pytest.mark.asyncio
    async def test_cycle_rejected_before_persisting(self, coordinator, session_repo):
        tasks = [
            MigrationTask("offices", dependencies=("doctors",)),
            MigrationTask("doctors", dependencies=("offices",)),
        ]

        with pytest.raises(CyclicDependencyError):
            await coordinator.start_session("s1", ["offices", "doctors"], tasks=tasks)

        assert await session_repo.list_sessions() == []

    @pytest.mark.asyncio
    async def test_invalid_requests(self, coordinator):
        with pytest.raises(ValidationError):
            await coordinator.start_session("s1", [])
        with pytest.raises(UnknownEntityError):
            await coordinator.start_session("s1", ["widgets"])
        with pytest.raises(ValidationError):
            await coordinator.start_session("s1", ["offices", "files"], tasks=OFFICE_TASKS)

    @pytest.mark.asyncio
    async def test_worker_failure_marks_session_failed(
        self, coordinator, destination, checkpoint_repo, session_repo, offices_data
    ):
        checkpoint_repo.put(Checkpoint("s1", "offices", 5, records_succeeded=9))

        handle = await coordinator.start_session("s1", ["offices"], tasks=OFFICE_TASKS)
        with pytest.raises(CheckpointCorruptionError):
            await handle.wait()

        session = await session_repo.get_session("s1")
        assert session.status == SessionStatus.FAILED
        assert "corrupt" in session.error_message.lower()

    @pytest.mark.asyncio
    async def test_partial_execution_marks_session_failed(
        self, make_coordinator, session_repo, offices_data
    ):
        class FlakyDestination(InMemoryDestinationStore):
            async def upsert(self, entity, rows):
                if any(row["legacy_office_id"] == "15" for row in rows):
                    raise ConnectionError("connection reset")
                return await super().upsert(entity, rows)

        coordinator = make_coordinator(FlakyDestination())
        handle = await coordinator.start_session("s1", ["offices"], tasks=OFFICE_TASKS)
        result = await handle.wait()

        assert result.overall_status == OverallStatus.PARTIAL
        session = await session_repo.get_session("s1")
        assert session.status == SessionStatus.FAILED
        assert "partial" in session.error_message


class TestPauseResume:
    """Tests for pausing and resuming sessions."""

    @pytest.mark.asyncio
    async def test_pause_then_resume(self, coordinator, destination, session_repo, offices_data):
        handle = await coordinator.start_session("s1", ["offices"], tasks=OFFICE_TASKS)
        await _entered(destination)

        assert await coordinator.pause_session("s1") == SessionStatus.PAUSED
        destination.gate.set()
        await asyncio.sleep(0.05)

        assert not handle.done()
        assert destination.upsert_calls == 1
        assert handle.status == SessionStatus.PAUSED
        assert (await session_repo.get_session("s1")).status == SessionStatus.PAUSED

        assert await coordinator.resume_session("s1") == SessionStatus.RUNNING
        result = await asyncio.wait_for(handle.wait(), timeout=5)

        assert result.overall_status == OverallStatus.COMPLETED
        assert destination.upsert_calls == 2
        assert (await session_repo.get_session("s1")).status == SessionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_paused_session_keeps_claim(self, coordinator, destination, offices_data):
        await coordinator.start_session("s1", ["offices"], tasks=OFFICE_TASKS)
        await _entered(destination)
        await coordinator.pause_session("s1")

        with pytest.raises(ConflictError):
            await coordinator.start_session("s2", ["offices"])

        destination.gate.set()
        await coordinator.cancel_session("s1")

    @pytest.mark.asyncio
    async def test_invalid_transitions(self, coordinator, destination, offices_data):
        handle = await coordinator.start_session("s1", ["offices"], tasks=OFFICE_TASKS)
        await _entered(destination)

        with pytest.raises(InvalidSessionTransitionError):
            await coordinator.resume_session("s1")

        destination.gate.set()
        await handle.wait()
        with pytest.raises(InvalidSessionTransitionError):
            await coordinator.pause_session("s1")
        with pytest.raises(InvalidSessionTransitionError):
            await coordinator.cancel_session("s1")

    @pytest.mark.asyncio
    async def test_unknown_session(self, coordinator):
        for operation in (
            coordinator.pause_session,
            coordinator.resume_session,
            coordinator.cancel_session,
        ):
            with pytest.raises(SessionNotFoundError):
                await operation("missing")


class TestCancel:
    """Tests for cancelling sessions."""

    @pytest.mark.asyncio
    async def test_cancel_waits_for_current_batch(
        self, coordinator, destination, session_repo, offices_data
    ):
        handle = await coordinator.start_session("s1", ["offices"], tasks=OFFICE_TASKS)
        await _entered(destination)

        cancelling = asyncio.create_task(coordinator.cancel_session("s1"))
        await asyncio.sleep(0.05)
        assert not cancelling.done()

        destination.gate.set()
        status = await asyncio.wait_for(cancelling, timeout=5)

        assert status == SessionStatus.CANCELLED
        assert handle.done()
        assert destination.upsert_calls == 1
        session = await session_repo.get_session("s1")
        assert session.status == SessionStatus.CANCELLED
        assert session.completed_at is not None

    @pytest.mark.asyncio
    async def test_cancel_paused_session(self, coordinator, destination, offices_data):
        await coordinator.start_session("s1", ["offices"], tasks=OFFICE_TASKS)
        await _entered(destination)
        await coordinator.pause_session("s1")
        destination.gate.set()

        status = await asyncio.wait_for(coordinator.cancel_session("s1"), timeout=5)

        assert status == SessionStatus.CANCELLED
        assert destination.upsert_calls == 1

    @pytest.mark.asyncio
    async def test_cancel_releases_claim(self, coordinator, destination, offices_data):
        await coordinator.start_session("s1", ["offices"], tasks=OFFICE_TASKS)
        await _entered(destination)
        destination.gate.set()
        await coordinator.cancel_session("s1")

        handle = await coordinator.start_session("s2", ["offices"], tasks=OFFICE_TASKS)
        result = await handle.wait()

        assert result.overall_status == OverallStatus.COMPLETED


class TestRecovery:
    """Tests for crash recovery and shutdown."""

    @pytest.mark.asyncio
    async def test_recover_interrupted_sessions(
        self, coordinator, destination, session_repo, checkpoint_repo, offices_data
    ):
        await session_repo.create_session(
            MigrationSession(
                "crashed", ["offices"], tasks=OFFICE_TASKS, status=SessionStatus.RUNNING
            )
        )
        await session_repo.create_session(MigrationSession("never", ["files"]))
        checkpoint_repo.put(
            Checkpoint(
                "crashed",
                "offices",
                last_processed_offset=10,
                records_succeeded=10,
                batches_completed=1,
            )
        )

        assert await coordinator.recover() == ["crashed"]

        never = await session_repo.get_session("never")
        assert never.status == SessionStatus.FAILED
        assert never.error_message
        assert (await session_repo.get_session("crashed")).status == SessionStatus.PAUSED

        destination.gate.set()
        await coordinator.resume_session("crashed")
        result = await coordinator.handle("crashed").wait()

        assert result.overall_status == OverallStatus.COMPLETED
        assert result.entities["offices"].resumed_from_offset == 10
        assert destination.upsert_calls == 1

    @pytest.mark.asyncio
    async def test_recovered_session_can_be_cancelled(self, coordinator, session_repo):
        await session_repo.create_session(
            MigrationSession("crashed", ["offices"], status=SessionStatus.RUNNING)
        )
        await coordinator.recover()

        assert await coordinator.cancel_session("crashed") == SessionStatus.CANCELLED
        assert await coordinator.list_active_sessions() == []

    @pytest.mark.asyncio
    async def test_resume_waits_for_claimed_prerequisite(
        self, coordinator, destination, session_repo, offices_data
    ):
        await session_repo.create_session(
            MigrationSession(
                "crashed",
                ["patients"],
                tasks=[MigrationTask("patients", dependencies=("doctors", "offices"))],
                status=SessionStatus.RUNNING,
            )
        )
        await coordinator.recover()
        first = await coordinator.start_session("A", ["offices"], tasks=OFFICE_TASKS)
        await _entered(destination)

        with pytest.raises(ConflictError) as exc_info:
            await coordinator.resume_session("crashed")

        assert exc_info.value.prerequisite is True
        assert (await session_repo.get_session("crashed")).status == SessionStatus.PAUSED

        destination.gate.set()
        await first.wait()
        assert await coordinator.resume_session("crashed") == SessionStatus.RUNNING
        result = await coordinator.handle("crashed").wait()
        assert result.overall_status == OverallStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_recover_skips_live_sessions(self, coordinator, destination, offices_data):
        handle = await coordinator.start_session("s1", ["offices"], tasks=OFFICE_TASKS)
        await _entered(destination)

        assert await coordinator.recover() == []

        destination.gate.set()
        await handle.wait()

    @pytest.mark.asyncio
    async def test_shutdown_suspends_and_next_process_resumes(
        self, make_coordinator, destination, session_repo, offices_data
    ):
        coordinator = make_coordinator(destination)
        handle = await coordinator.start_session("s1", ["offices"], tasks=OFFICE_TASKS)
        await _entered(destination)

        stopping = asyncio.create_task(coordinator.shutdown())
        destination.gate.set()
        await asyncio.wait_for(stopping, timeout=5)

        assert handle.done()
        assert (await handle.wait()).overall_status == OverallStatus.PAUSED
        assert (await session_repo.get_session("s1")).status == SessionStatus.PAUSED
        with pytest.raises(ValidationError):
            await coordinator.start_session("s2", ["files"])

        async with make_coordinator(destination) as restarted:
            assert await restarted.recover() == ["s1"]
            await restarted.resume_session("s1")
            result = await restarted.handle("s1").wait()

        assert result.overall_status == OverallStatus.COMPLETED
        assert result.entities["offices"].resumed_from_offset == 10
        assert len(destination.rows("offices")) == 20


class TestProgressAndIntegrity:
    """Tests for progress snapshots and integrity sampling through the coordinator."""

    @pytest.mark.asyncio
    async def test_progress_while_running(self, coordinator, destination, offices_data):
        handle = await coordinator.start_session("s1", ["offices"], tasks=OFFICE_TASKS)
        await _entered(destination)

        running = coordinator.get_progress("s1")["offices"]
        assert running.status == ProgressStatus.STARTING
        assert running.total_records == 20

        destination.gate.set()
        await handle.wait()

        final = handle.progress()["offices"]
        assert final.status == ProgressStatus.COMPLETED
        assert final.progress_percent == 100.0
        assert coordinator.get_progress("s1") == {}

    @pytest.mark.asyncio
    async def test_progress_callback(self, make_coordinator, destination, offices_data):
        received = []
        coordinator = make_coordinator(destination, on_progress=received.append)
        destination.gate.set()

        handle = await coordinator.start_session("s1", ["offices"], tasks=OFFICE_TASKS)
        await handle.wait()

        assert {s.session_id for s in received} == {"s1"}
        assert [s.records_processed for s in received] == [0, 10, 20, 20]
        assert received[-1].status == ProgressStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_unknown_session_has_no_progress(self, coordinator):
        assert coordinator.get_progress("missing") == {}

    @pytest.mark.asyncio
    async def test_integrity_after_session(self, coordinator, destination, offices_data):
        destination.gate.set()
        handle = await coordinator.start_session("s1", ["offices"], tasks=OFFICE_TASKS)
        await handle.wait()

        report = await coordinator.validate_migration_integrity("offices", sample_size=5)

        assert report.total_validated == 5
        assert report.is_valid
