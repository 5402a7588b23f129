"""
Unit tests for the reconciliation index.

Tests cover:
- LookupMapping bidirectional lookups and duplicate handling
- Building an index with one destination scan per entity
- Mappings added by the session's own upserts
- Strict and soft foreign key resolution
"""

import pytest

from diffmigrate.exceptions import ForeignKeyResolutionError
from diffmigrate.reconciliation import LookupMapping, ReconciliationIndex


class TestLookupMapping:
    """Tests for LookupMapping."""

    def test_forward_and_reverse(self):
        mapping = LookupMapping("offices")
        mapping.record("17", "4821")
        assert mapping.get_destination_id("17") == "4821"
        assert mapping.get_legacy_id("4821") == "17"
        assert "17" in mapping
        assert len(mapping) == 1

    def test_unknown_ids(self):
        mapping = LookupMapping("offices")
        assert mapping.get_destination_id("1") is None
        assert mapping.get_legacy_id("1") is None

    def test_duplicate_keeps_latest(self):
        """Test that a legacy id seen twice keeps the later destination id."""
        mapping = LookupMapping("offices")
        mapping.record("17", "1")
        mapping.record("17", "2")
        assert mapping.get_destination_id("17") == "2"
        assert mapping.get_legacy_id("1") is None
        assert mapping.duplicates == 1

    def test_same_pair_twice_is_not_duplicate(self):
        mapping = LookupMapping("offices")
        mapping.record("17", "1")
        mapping.record("17", "1")
        assert mapping.duplicates == 0
        assert mapping.legacy_ids == frozenset({"17"})


class TestBuild:
    """Tests for ReconciliationIndex.build."""

    @pytest.mark.asyncio
    async def test_indexes_each_entity(self, destination_store, offices, doctors):
        office_id = destination_store.seed(offices, "10", name="Main")
        doctor_id = destination_store.seed(doctors, "20", name="Dr. Lee")

        index = await ReconciliationIndex.build(
            [offices, doctors], destination_store, session_id="s1", enable_tracing=False
        )

        assert index.lookup("offices", "10") == office_id
        assert index.lookup("doctors", "20") == doctor_id
        assert index.lookup("offices", "11") is None
        assert set(index) == {"offices", "doctors"}

    @pytest.mark.asyncio
    async def test_unindexed_entity_lookup_is_none(self, destination_store, offices):
        index = await ReconciliationIndex.build([offices], destination_store, enable_tracing=False)
        assert index.lookup("patients", "1") is None
        assert len(index["offices"]) == 0

    @pytest.mark.asyncio
    async def test_duplicate_entities_scanned_once(self, destination_store, offices, mock_tracer):
        await ReconciliationIndex.build([offices, offices], destination_store, tracer=mock_tracer)
        assert mock_tracer.span_names == [
            "diffmigrate.reconciliation.build",
            "diffmigrate.reconciliation.scan_entity",
        ]

    @pytest.mark.asyncio
    async def test_snapshot_not_refreshed(self, destination_store, offices):
        """Test that rows written outside the session are not picked up."""
        index = await ReconciliationIndex.build([offices], destination_store, enable_tracing=False)
        destination_store.seed(offices, "10")
        assert index.lookup("offices", "10") is None


class TestRecord:
    def test_record_adds_mappings(self):
        index = ReconciliationIndex()
        index.record("offices", {"1": "100", "2": "200"})
        assert index.lookup("offices", "2") == "200"
        assert "offices" in index

    def test_ensure_creates_empty_mapping(self):
        index = ReconciliationIndex()
        mapping = index.ensure("files")
        assert index["files"] is mapping
        assert index.ensure("files") is mapping


class TestResolveForeignKeys:
    """Tests for strict and soft foreign key policies."""

    @pytest.fixture
    def index(self):
        index = ReconciliationIndex()
        index.record("doctors", {"4": "400"})
        index.record("offices", {"1": "100"})
        return index

    def test_all_resolved(self, index, patients, make_source_record):
        record = make_source_record("10", doctor_id=4, office_id=1)
        resolution = index.resolve_foreign_keys(patients, record)
        assert resolution.values == {"doctor_id": "400", "office_id": "100"}
        assert resolution.gaps == []
        assert not resolution.should_skip

    def test_soft_gap_written_as_null(self, index, patients, make_source_record):
        record = make_source_record("10", doctor_id=4, office_id=9)
        resolution = index.resolve_foreign_keys(patients, record)
        assert resolution.values["office_id"] is None
        assert resolution.gaps == [
            {
                "record_id": "10",
                "field": "office_id",
                "parent_entity": "offices",
                "parent_legacy_id": "9",
            }
        ]
        assert not resolution.should_skip

    def test_strict_miss_skips_record(self, index, patients, make_source_record):
        record = make_source_record("10", doctor_id=5, office_id=1)
        resolution = index.resolve_foreign_keys(patients, record)
        assert resolution.should_skip
        assert isinstance(resolution.error, ForeignKeyResolutionError)
        assert resolution.error.parent_entity == "doctors"
        assert resolution.error.parent_legacy_id == "5"

    def test_null_source_value_is_not_a_gap(self, index, patients, make_source_record):
        record = make_source_record("10", doctor_id=None, office_id=None)
        resolution = index.resolve_foreign_keys(patients, record)
        assert resolution.values == {"doctor_id": None, "office_id": None}
        assert resolution.gaps == []
        assert not resolution.should_skip

    def test_destination_field_used(self, index, doctors, make_source_record):
        record = make_source_record("4", office_id=1)
        resolution = index.resolve_foreign_keys(doctors, record)
        assert resolution.values == {"primary_office_id": "100"}
