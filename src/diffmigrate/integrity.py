"""
Post-migration integrity sampling.

A sample of source records is re-transformed and compared field by field
with the rows the destination holds for the same legacy ids. The report
says how many matched, what differed, and whether the match rate clears
the acceptance threshold.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from diffmigrate.hashing import changed_fields

# Minimum match percentage for a sample to count as valid
INTEGRITY_THRESHOLD = 95.0

# Failed matches above which the migration logic itself is suspect
MAX_TOLERATED_FAILURES = 5

DEFAULT_SAMPLE_SIZE = 100

MISSING_IN_DESTINATION = "<missing in destination>"


@dataclass(frozen=True)
class RecordComparison:
    """Outcome of comparing one sampled record."""

    legacy_id: str
    source_data: Mapping[str, Any]
    destination_data: Mapping[str, Any] | None
    differences: tuple[str, ...] = ()

    @property
    def is_match(self) -> bool:
        return not self.differences

    def to_dict(self) -> dict[str, Any]:
        return {
            "legacy_id": self.legacy_id,
            "is_match": self.is_match,
            "differences": list(self.differences),
            "source_data": dict(self.source_data),
            "destination_data": (
                dict(self.destination_data) if self.destination_data is not None else None
            ),
        }


def compare_record(
    legacy_id: str,
    expected: Mapping[str, Any],
    actual: Mapping[str, Any] | None,
    exclude_fields: Iterable[str] = (),
) -> RecordComparison:
    """
    Compare the row a record should have produced with the stored row.

    Args:
        legacy_id: Legacy id of the record.
        expected: Row produced by transforming the source record.
        actual: Stored destination row, or None when it does not exist.
        exclude_fields: Fields left out of the comparison.
    """
    if actual is None:
        return RecordComparison(legacy_id, expected, None, (MISSING_IN_DESTINATION,))
    return RecordComparison(
        legacy_id, expected, actual, changed_fields(expected, actual, exclude_fields)
    )


@dataclass(frozen=True)
class IntegrityReport:
    """
    Result of sampling one entity.

    Attributes:
        entity_type: Entity sampled.
        results: One comparison per sampled record.
        checked_at: When the sample was taken.
    """

    entity_type: str
    results: tuple[RecordComparison, ...] = ()
    checked_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def total_validated(self) -> int:
        return len(self.results)

    @property
    def successful_matches(self) -> int:
        return sum(1 for result in self.results if result.is_match)

    @property
    def failed_matches(self) -> int:
        return self.total_validated - self.successful_matches

    @property
    def match_percentage(self) -> float:
        """Share of matching records; an empty sample counts as a full match."""
        if not self.results:
            return 100.0
        return round(self.successful_matches / self.total_validated * 100, 2)

    @property
    def is_valid(self) -> bool:
        return self.match_percentage >= INTEGRITY_THRESHOLD

    @property
    def mismatches(self) -> list[RecordComparison]:
        return [result for result in self.results if not result.is_match]

    @property
    def recommendations(self) -> list[str]:
        advice = []
        if not self.is_valid:
            advice.append("Low match percentage - investigate data transformation issues")
        if self.failed_matches > MAX_TOLERATED_FAILURES:
            advice.append("Multiple validation failures - review migration logic")
        if not advice:
            advice.append("Validation successful - migration integrity confirmed")
        return advice

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "is_valid": self.is_valid,
            "summary": {
                "total_validated": self.total_validated,
                "successful_matches": self.successful_matches,
                "failed_matches": self.failed_matches,
                "match_percentage": self.match_percentage,
            },
            "results": [result.to_dict() for result in self.results],
            "recommendations": self.recommendations,
            "checked_at": self.checked_at.isoformat(),
        }


__all__ = [
    "DEFAULT_SAMPLE_SIZE",
    "INTEGRITY_THRESHOLD",
    "MAX_TOLERATED_FAILURES",
    "MISSING_IN_DESTINATION",
    "IntegrityReport",
    "RecordComparison",
    "compare_record",
]
