"""
Unit tests for ChangeDetector.

Tests cover:
- New / modified / unchanged / deleted detection
- Source pagination and bounded destination lookups
- Confidence and change thresholds
- Partial-scan delete warnings and hash fallback warnings
- Inclusion filters, record caps and strict timestamps
- Per-entity failure isolation in detect_all
"""

from datetime import timedelta

import pytest

from diffmigrate.classifier import ChangeClassifier
from diffmigrate.config import DetectionConfig, DetectionOptions
from diffmigrate.detector import (
    HASH_FALLBACK_WARNING,
    PARTIAL_SCAN_DELETE_WARNING,
    READY_RECOMMENDATION,
    ChangeDetector,
    generate_recommendations,
)
from diffmigrate.entities import EntityDefinition, EntityRegistry
from diffmigrate.hashing import calculate_content_hash
from diffmigrate.models import ChangeType, DetectionMethod, DetectionSummary
from diffmigrate.reconciliation import ReconciliationIndex
from diffmigrate.stores import InMemoryDestinationStore, InMemorySourceStore


class RecordingDestinationStore(InMemoryDestinationStore):
    """Destination store that records the size of every lookup."""

    def __init__(self):
        super().__init__()
        self.lookup_sizes = []

    async def find_by_legacy_ids(self, entity, legacy_ids, *, hash_column=None):
        self.lookup_sizes.append(len(legacy_ids))
        return await super().find_by_legacy_ids(entity, legacy_ids, hash_column=hash_column)


class FailingSourceStore(InMemorySourceStore):
    """Source store whose scans fail for selected entities."""

    def __init__(self, failing, error_factory=lambda: ValueError("table is locked")):
        super().__init__()
        self.failing = set(failing)
        self.error_factory = error_factory
        self.scan_calls = 0

    async def scan(self, entity, **kwargs):
        self.scan_calls += 1
        if entity.name in self.failing:
            raise self.error_factory()
        return await super().scan(entity, **kwargs)


@pytest.fixture
def destination():
    return RecordingDestinationStore()


@pytest.fixture
def make_detector(registry, fixed_clock, fast_retry):
    def factory(source, destination, config=None, *, entity_registry=None):
        return ChangeDetector(
            source,
            destination,
            config or DetectionConfig(),
            registry=entity_registry or registry,
            classifier=ChangeClassifier(fixed_clock),
            retry_config=fast_retry,
            enable_tracing=False,
        )

    return factory


class TestDetectChanges:
    """Tests for single-entity detection."""

    @pytest.mark.asyncio
    async def test_classifies_new_modified_unchanged(
        self, source_store, destination, offices, make_source_record, make_detector, now
    ):
        records = [make_source_record(str(i), name=f"Office {i}") for i in range(1, 6)]
        source_store.add("offices", *records)
        destination.seed(offices, "1", updated_at=records[0].updated_at)
        destination.seed(offices, "2", updated_at=now - timedelta(hours=10))

        result = await make_detector(source_store, destination).detect_changes("offices")

        assert not result.has_error
        assert result.total_records_analyzed == 5
        assert result.summary.new_records == 3
        assert result.summary.modified_records == 1
        assert result.summary.unchanged_records == 1
        assert result.summary.change_percentage == 80.0
        assert result.detection_method == DetectionMethod.TIMESTAMP_ONLY
        assert [c.record_id for c in result.changes_of(ChangeType.NEW)] == ["3", "4", "5"]
        assert result.should_migrate

    @pytest.mark.asyncio
    async def test_empty_entity(self, source_store, destination, make_detector):
        result = await make_detector(source_store, destination).detect_changes("offices")
        assert result.total_records_analyzed == 0
        assert result.summary.change_percentage == 0.0
        assert result.changes == ()
        assert not result.should_migrate

    @pytest.mark.asyncio
    async def test_paginates_source(self, destination, make_source_record, make_detector):
        source = FailingSourceStore(failing=())
        source.add("offices", *(make_source_record(str(i)) for i in range(1, 6)))
        detector = make_detector(source, destination, DetectionConfig(batch_size=2))

        result = await detector.detect_changes("offices")

        assert result.total_records_analyzed == 5
        assert source.scan_calls == 3
        assert result.performance.queries_executed == 3 + len(destination.lookup_sizes)

    @pytest.mark.asyncio
    async def test_lookups_bounded_to_chunk_size(
        self, source_store, destination, offices, make_source_record, make_detector
    ):
        """Test that no destination lookup carries more than 1000 ids."""
        records = [make_source_record(str(i)) for i in range(1, 2501)]
        source_store.add_many("offices", records)

        result = await make_detector(
            source_store, destination, DetectionConfig(batch_size=2500)
        ).detect_changes("offices")

        assert result.summary.new_records == 2500
        assert destination.lookup_sizes == [1000, 1000, 500]

    @pytest.mark.asyncio
    async def test_index_skips_lookup_for_unmapped_ids(
        self, source_store, destination, offices, make_source_record, make_detector
    ):
        source_store.add("offices", make_source_record("1"), make_source_record("2"))
        index = ReconciliationIndex()
        index.ensure("offices")

        result = await make_detector(source_store, destination).detect_changes(
            "offices", index=index
        )

        assert result.summary.new_records == 2
        assert destination.lookup_sizes == []

    @pytest.mark.asyncio
    async def test_time_window(
        self, source_store, destination, make_source_record, make_detector, now
    ):
        source_store.add(
            "offices",
            make_source_record("1", hours_ago=48),
            make_source_record("2", hours_ago=1),
        )
        options = DetectionOptions(since_timestamp=now - timedelta(hours=24))

        result = await make_detector(source_store, destination).detect_changes("offices", options)

        assert [c.record_id for c in result.changes] == ["2"]

    @pytest.mark.asyncio
    async def test_max_records_caps_scan(
        self, source_store, destination, make_source_record, make_detector
    ):
        source_store.add("offices", *(make_source_record(str(i)) for i in range(1, 6)))
        options = DetectionOptions(max_records=3)

        result = await make_detector(
            source_store, destination, DetectionConfig(batch_size=2)
        ).detect_changes("offices", options)

        assert result.total_records_analyzed == 3

    @pytest.mark.asyncio
    async def test_unknown_entity_becomes_error_result(
        self, source_store, destination, make_detector
    ):
        result = await make_detector(source_store, destination).detect_changes("widgets")
        assert result.has_error
        assert "widgets" in result.error
        assert result.summary.total_changes == 0

    @pytest.mark.asyncio
    async def test_transient_scan_failure_is_retried(
        self, destination, make_source_record, make_detector
    ):
        failures = iter([ConnectionError("reset")])

        class FlakySource(InMemorySourceStore):
            async def scan(self, entity, **kwargs):
                error = next(failures, None)
                if error is not None:
                    raise error
                return await super().scan(entity, **kwargs)

        source = FlakySource()
        source.add("offices", make_source_record("1"))

        result = await make_detector(source, destination).detect_changes("offices")

        assert not result.has_error
        assert result.summary.new_records == 1


class TestDeleteDetection:
    """Tests for deletion detection."""

    @pytest.mark.asyncio
    async def test_destination_only_record_is_deleted(
        self, source_store, destination, offices, make_source_record, make_detector, now
    ):
        record = make_source_record("1")
        source_store.add("offices", record)
        destination.seed(offices, "1", updated_at=record.updated_at)
        destination.seed(offices, "99", updated_at=now - timedelta(days=3))

        result = await make_detector(source_store, destination).detect_changes(
            "offices", DetectionOptions(include_deletes=True)
        )

        deleted = result.changes_of(ChangeType.DELETED)
        assert [c.record_id for c in deleted] == ["99"]
        assert result.summary.deleted_records == 1
        assert PARTIAL_SCAN_DELETE_WARNING not in result.warnings
        # Deletes are reported but never migrated
        assert result.migratable_record_ids == ()

    @pytest.mark.asyncio
    async def test_partial_scan_delete_warning(
        self, source_store, destination, offices, make_source_record, make_detector, now
    ):
        source_store.add("offices", make_source_record("1", hours_ago=1))
        destination.seed(offices, "2", updated_at=now - timedelta(days=30))
        options = DetectionOptions(
            include_deletes=True, since_timestamp=now - timedelta(days=1)
        )

        result = await make_detector(source_store, destination).detect_changes("offices", options)

        assert PARTIAL_SCAN_DELETE_WARNING in result.warnings
        deleted = result.changes_of(ChangeType.DELETED)
        assert any("partial" in note for note in deleted[0].metadata.notes)

    @pytest.mark.asyncio
    async def test_deletes_not_detected_by_default(
        self, source_store, destination, offices, make_detector
    ):
        destination.seed(offices, "99")
        result = await make_detector(source_store, destination).detect_changes("offices")
        assert result.summary.deleted_records == 0


class TestThresholds:
    """Tests for confidence and change thresholds."""

    @pytest.mark.asyncio
    async def test_low_confidence_records_excluded(
        self, source_store, destination, make_source_record, make_detector
    ):
        source_store.add(
            "offices",
            make_source_record("1"),
            make_source_record("2", hours_ago=400 * 24),
        )
        options = DetectionOptions(confidence_threshold=0.9)

        result = await make_detector(source_store, destination).detect_changes("offices", options)

        assert [c.record_id for c in result.changes] == ["1"]
        assert result.summary.excluded_low_confidence == 1
        assert result.excluded[0].record_id == "2"
        assert "below threshold" in result.excluded[0].reason

    @pytest.mark.asyncio
    async def test_strict_timestamps_exclude_anomalies(
        self, source_store, destination, make_source_record, make_detector
    ):
        source_store.add(
            "offices",
            make_source_record("1"),
            make_source_record("2", hours_ago=-72),
        )
        options = DetectionOptions(strict_timestamps=True)

        result = await make_detector(source_store, destination).detect_changes("offices", options)

        assert [c.record_id for c in result.changes] == ["1"]
        assert result.excluded[0].record_id == "2"

    @pytest.mark.asyncio
    async def test_below_change_threshold(
        self, source_store, destination, offices, make_source_record, make_detector
    ):
        records = [make_source_record(str(i)) for i in range(1, 11)]
        source_store.add_many("offices", records)
        for record in records[1:]:
            destination.seed(offices, record.legacy_id, updated_at=record.updated_at)

        result = await make_detector(source_store, destination).detect_changes(
            "offices", DetectionOptions(change_threshold=50.0)
        )

        assert result.summary.change_percentage == 10.0
        assert result.summary.below_threshold
        assert not result.should_migrate
        assert any("below the requested threshold" in r for r in result.recommendations)


class TestFiltersAndHashing:
    @pytest.mark.asyncio
    async def test_record_filter(
        self, source_store, destination, make_source_record, make_detector
    ):
        source_store.add(
            "offices",
            make_source_record("1", name="keep"),
            make_source_record("2", name="skip"),
        )
        options = DetectionOptions(record_filter=lambda r: r.data.get("name") != "skip")

        result = await make_detector(source_store, destination).detect_changes("offices", options)

        assert result.summary.filtered_records == 1
        assert [c.record_id for c in result.changes] == ["1"]

    @pytest.mark.asyncio
    async def test_entity_filter(self, destination, make_source_record, fixed_clock, fast_retry):
        registry = EntityRegistry(
            [
                EntityDefinition(
                    "offices",
                    "dispatch_office",
                    "offices",
                    record_filter=lambda r: not r.data.get("is_test"),
                )
            ]
        )
        source = InMemorySourceStore()
        source.add(
            "offices", make_source_record("1"), make_source_record("2", is_test=True)
        )
        detector = ChangeDetector(
            source,
            destination,
            registry=registry,
            classifier=ChangeClassifier(fixed_clock),
            retry_config=fast_retry,
            enable_tracing=False,
        )

        result = await detector.detect_changes("offices")

        assert result.summary.filtered_records == 1

    @pytest.mark.asyncio
    async def test_hash_comparison(self, destination, make_source_record, make_detector, now):
        entity = EntityDefinition(
            "offices",
            "dispatch_office",
            "offices",
            legacy_id_column="legacy_office_id",
            content_hash_column="content_hash",
        )
        registry = EntityRegistry([entity])
        same = make_source_record("1", name="Main")
        changed = make_source_record("2", name="Elm")
        source = InMemorySourceStore()
        source.add("offices", same, changed)
        destination.seed(
            entity,
            "1",
            updated_at=now - timedelta(days=5),
            content_hash=calculate_content_hash(same.data),
        )
        destination.seed(
            entity, "2", updated_at=changed.updated_at, content_hash="sha256_0000000000000000"
        )
        config = DetectionConfig(enable_content_hashing=True, content_hash_field="content_hash")

        result = await make_detector(
            source, destination, config, entity_registry=registry
        ).detect_changes("offices")

        assert result.detection_method == DetectionMethod.FULL_CONTENT_HASH
        assert result.summary.unchanged_records == 1
        assert [c.record_id for c in result.changes] == ["2"]
        assert HASH_FALLBACK_WARNING not in result.warnings

    @pytest.mark.asyncio
    async def test_hash_fallback_warning(
        self, source_store, destination, offices, make_source_record, make_detector, now
    ):
        source_store.add("offices", make_source_record("1"))
        destination.seed(offices, "1", updated_at=now - timedelta(days=2))
        config = DetectionConfig(enable_content_hashing=True, content_hash_field="content_hash")

        result = await make_detector(source_store, destination, config).detect_changes("offices")

        assert result.summary.modified_records == 1
        assert HASH_FALLBACK_WARNING in result.warnings


class TestDetectAll:
    """Tests for multi-entity detection."""

    @pytest.mark.asyncio
    async def test_failure_isolated_per_entity(
        self, destination, make_source_record, make_detector
    ):
        source = FailingSourceStore(failing={"doctors"})
        source.add("offices", make_source_record("1"))
        source.add("doctors", make_source_record("1"))

        report = await make_detector(source, destination).detect_all(
            ["offices", "doctors", "offices"]
        )

        assert list(report.results) == ["offices", "doctors"]
        assert report.failed_entities == ["doctors"]
        assert report.results["doctors"].error == "table is locked"
        assert report.results["offices"].summary.new_records == 1
        assert report.entities_to_migrate == ["offices"]
        assert report.total_changes == 1

    @pytest.mark.asyncio
    async def test_spans_recorded(
        self, source_store, destination, registry, fixed_clock, mock_tracer
    ):
        detector = ChangeDetector(
            source_store,
            destination,
            registry=registry,
            classifier=ChangeClassifier(fixed_clock),
            tracer=mock_tracer,
        )

        await detector.detect_all(["offices"])

        assert mock_tracer.span_names == [
            "diffmigrate.detector.detect_all",
            "diffmigrate.detector.detect_changes",
        ]


class TestRecommendations:
    def test_ready_when_nothing_stands_out(self):
        summary = DetectionSummary(new_records=5, change_percentage=5.0)
        assert generate_recommendations(summary, 100, 10.0) == [READY_RECOMMENDATION]

    def test_high_change_and_hashing_hint(self):
        summary = DetectionSummary(new_records=1, modified_records=40, change_percentage=41.0)
        recommendations = generate_recommendations(
            summary, 100, 10.0, hashing_available=True, hashing_enabled=False
        )
        assert len(recommendations) == 3
        assert READY_RECOMMENDATION not in recommendations
