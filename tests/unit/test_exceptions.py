"""
Unit tests for exceptions module.

Tests the exception hierarchy, messages, classification metadata and
serialization.
"""

import logging

import pytest

from diffmigrate.exceptions import (
    BatchApplyError,
    CheckpointCorruptionError,
    ConflictError,
    CyclicDependencyError,
    DiffMigrationError,
    ErrorRecoverability,
    ErrorSeverity,
    ForeignKeyResolutionError,
    InvalidSessionTransitionError,
    SessionNotFoundError,
    StoreConnectionError,
    TimestampAnomalyError,
    UnknownEntityError,
    ValidationError,
)
from diffmigrate.models import SessionStatus


class TestDiffMigrationError:
    """Tests for the base DiffMigrationError."""

    def test_base_exception(self):
        """Test that DiffMigrationError can be raised with message."""
        with pytest.raises(DiffMigrationError) as exc_info:
            raise DiffMigrationError("Test error")
        assert str(exc_info.value) == "Test error"

    def test_str_includes_context(self):
        error = DiffMigrationError("boom", session_id="s1", entity_type="offices")
        assert str(error) == "boom session_id=s1 entity_type=offices"

    def test_to_dict(self):
        data = DiffMigrationError("boom", entity_type="offices").to_dict()
        assert data["message"] == "boom"
        assert data["entity_type"] == "offices"
        assert data["error_code"] == "DIFFMIGRATE_ERROR"
        assert data["classification"]["recoverability"] == "fatal"


class TestErrorClassificationEnums:
    def test_severity_log_levels(self):
        assert ErrorSeverity.CRITICAL.log_level == logging.CRITICAL
        assert ErrorSeverity.INFO.log_level == logging.INFO

    def test_severity_should_alert(self):
        assert ErrorSeverity.ERROR.should_alert
        assert not ErrorSeverity.WARNING.should_alert

    def test_recoverability_flags(self):
        assert ErrorRecoverability.TRANSIENT.should_retry
        assert ErrorRecoverability.FATAL.should_abort
        assert not ErrorRecoverability.RECOVERABLE.should_retry


class TestValidationError:
    """Tests for ValidationError."""

    def test_is_value_error(self):
        """Test that ValidationError can be caught as ValueError."""
        assert issubclass(ValidationError, ValueError)
        assert issubclass(ValidationError, DiffMigrationError)

    def test_field_in_dict(self):
        error = ValidationError("bad size", field_name="batch_size", value=0)
        assert error.value == 0
        assert error.to_dict()["field"] == "batch_size"
        assert error.recoverability_type.should_abort


class TestStoreConnectionError:
    """Tests for StoreConnectionError."""

    def test_is_connection_error(self):
        assert issubclass(StoreConnectionError, ConnectionError)

    def test_is_transient_with_retry_policy(self):
        error = StoreConnectionError("timeout", store="source", operation="scan")
        assert error.store == "source"
        assert error.operation == "scan"
        assert error.recoverable
        assert error.recoverability_type.should_retry
        assert error.retry_config is not None


class TestConflictError:
    """Tests for ConflictError."""

    def test_message_names_blocking_session(self):
        error = ConflictError("session-b", "session-a", ["doctors", "offices"])
        assert error.session_id == "session-b"
        assert error.blocking_session_id == "session-a"
        assert error.overlapping_entities == ["doctors", "offices"]
        assert "session-a" in str(error)
        assert "doctors, offices" in str(error)

    def test_to_dict_includes_blocking_session(self):
        data = ConflictError("b", "a", ["offices"]).to_dict()
        assert data["error_code"] == "SESSION_CONFLICT"
        assert data["blocking_session_id"] == "a"
        assert data["overlapping_entities"] == ["offices"]


class TestStructuralErrors:
    """Tests for errors that abort before any work starts."""

    def test_cyclic_dependency(self):
        error = CyclicDependencyError(["a", "b", "a"])
        assert error.cycle == ["a", "b", "a"]
        assert "a -> b -> a" in str(error)
        assert error.error_code == "CYCLIC_DEPENDENCY"

    def test_checkpoint_corruption_is_critical(self):
        error = CheckpointCorruptionError("s1", "offices", "negative offset -1")
        assert error.reason == "negative offset -1"
        assert error.severity == ErrorSeverity.CRITICAL
        assert error.recoverability_type.should_abort

    def test_unknown_entity(self):
        error = UnknownEntityError("widgets")
        assert error.entity_type == "widgets"
        assert "widgets" in str(error)


class TestRecordLevelErrors:
    """Tests for errors that are isolated to a batch or record."""

    def test_batch_apply_error(self):
        error = BatchApplyError(
            "insert failed", entity_type="offices", batch_number=3, record_ids=["1", "2"]
        )
        assert error.batch_number == 3
        assert error.record_ids == ["1", "2"]
        assert error.error_code == "BATCH_APPLY_FAILED"
        assert error.recoverability_type.should_retry

    def test_timestamp_anomaly(self):
        error = TimestampAnomalyError("7", ["future timestamp"], 0.67, entity_type="offices")
        assert error.record_id == "7"
        assert error.confidence == 0.67
        assert "future timestamp" in str(error)

    def test_fk_resolution(self):
        error = ForeignKeyResolutionError(
            entity_type="patients",
            record_id="10",
            field_name="doctor_id",
            parent_entity="doctors",
            parent_legacy_id="4",
        )
        assert error.error_code == "FK_UNRESOLVED"
        assert "doctor_id=4" in str(error)


class TestSessionErrors:
    def test_session_not_found(self):
        error = SessionNotFoundError("missing")
        assert error.session_id == "missing"
        assert "Session not found" in str(error)

    def test_invalid_transition(self):
        error = InvalidSessionTransitionError(
            "s1", SessionStatus.COMPLETED, SessionStatus.RUNNING
        )
        assert error.current_status == SessionStatus.COMPLETED
        assert "completed to running" in str(error)
