"""
Record-level change classification.

The classifier decides, for one source record and its destination match (if
any), whether the record is new, modified or unchanged, and how confident
that decision is. It is pure: it reads its inputs and a clock and never
touches a store.

Confidence model:
    Every emitted change starts at BASE_CONFIDENCE. Timestamp anomalies
    subtract fixed penalties, cumulatively, and the result is clamped to
    [0, 1]:

    - STALE_PENALTY when the source timestamp is more than a year old
    - FUTURE_PENALTY when it is more than a day in the future
    - INVERSION_PENALTY when it is older than the destination match

    Anomalies never make a record fail; they lower confidence and are listed
    in the change metadata so that a confidence threshold can hold the
    record back.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from diffmigrate.config import DetectionConfig
from diffmigrate.entities import EntityDefinition
from diffmigrate.exceptions import TimestampAnomalyError
from diffmigrate.hashing import calculate_content_hash, changed_fields
from diffmigrate.models import (
    ChangeMetadata,
    ChangeRecord,
    ChangeType,
    DestinationRecord,
    SourceRecord,
    as_utc,
)

BASE_CONFIDENCE = 0.97
DELETE_CONFIDENCE = 0.90

STALE_AFTER = timedelta(days=365)
FUTURE_TOLERANCE = timedelta(days=1)

STALE_PENALTY = 0.2
FUTURE_PENALTY = 0.3
INVERSION_PENALTY = 0.4

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class TimestampAssessment:
    """Confidence after anomaly penalties, with the anomalies that applied."""

    confidence: float
    anomalies: tuple[str, ...] = ()

    @property
    def is_anomalous(self) -> bool:
        return bool(self.anomalies)


class ChangeClassifier:
    """
    Classifies single records as new, modified, deleted or unchanged.

    Args:
        clock: Returns "now"; injectable so that classification is
            deterministic for a fixed snapshot.

    Example:
        >>> classifier = ChangeClassifier()
        >>> change = classifier.classify(source_record, None, config, entity=patients)
        >>> change.change_type
        <ChangeType.NEW: 'new'>
    """

    def __init__(self, clock: Clock | None = None) -> None:
        self._clock = clock or _utcnow

    def now(self) -> datetime:
        return as_utc(self._clock())

    def assess_timestamps(
        self,
        source_timestamp: datetime,
        destination_timestamp: datetime | None = None,
        *,
        now: datetime | None = None,
    ) -> TimestampAssessment:
        """
        Apply the timestamp anomaly model.

        Args:
            source_timestamp: Source last-modified timestamp.
            destination_timestamp: Timestamp of the destination match, if any.
            now: Reference time (defaults to the classifier clock).

        Returns:
            TimestampAssessment with the clamped confidence and anomaly notes.
        """
        now = as_utc(now) if now is not None else self.now()
        source_timestamp = as_utc(source_timestamp)
        confidence = BASE_CONFIDENCE
        anomalies: list[str] = []

        age = now - source_timestamp
        if age > STALE_AFTER:
            confidence -= STALE_PENALTY
            anomalies.append(
                f"source timestamp is {age.days} days old (possible stale extraction)"
            )

        ahead = source_timestamp - now
        if ahead > FUTURE_TOLERANCE:
            confidence -= FUTURE_PENALTY
            anomalies.append(
                f"source timestamp is {ahead.total_seconds() / 86400:.1f} days in the future "
                "(clock desync)"
            )

        if destination_timestamp is not None and source_timestamp < as_utc(destination_timestamp):
            confidence -= INVERSION_PENALTY
            anomalies.append(
                "source timestamp is earlier than the destination match "
                "(destination updated independently)"
            )

        return TimestampAssessment(
            confidence=round(min(1.0, max(0.0, confidence)), 4),
            anomalies=tuple(anomalies),
        )

    def classify(
        self,
        source_record: SourceRecord,
        destination_match: DestinationRecord | None,
        config: DetectionConfig,
        *,
        entity: EntityDefinition,
        strict: bool = False,
    ) -> ChangeRecord | None:
        """
        Classify one source record against its destination match.

        Args:
            source_record: Record read from the source store.
            destination_match: Destination record with the same legacy id,
                or None if there is none.
            config: Detection configuration.
            entity: Definition of the record's entity type.
            strict: Raise instead of emitting a change with timestamp anomalies.

        Returns:
            A NEW or MODIFIED ChangeRecord, or None when the record is unchanged.

        Raises:
            TimestampAnomalyError: If strict and the record has anomalies.
        """
        content_hash = self._content_hash(source_record, config)
        notes: list[str] = []

        if destination_match is None:
            change_type = ChangeType.NEW
            destination_timestamp = None
        else:
            destination_timestamp = destination_match.updated_at
            modified, reason = self._is_modified(
                source_record, destination_match, content_hash, config
            )
            if not modified:
                return None
            change_type = ChangeType.MODIFIED
            notes.append(reason)

        assessment = self.assess_timestamps(source_record.updated_at, destination_timestamp)
        if strict and assessment.is_anomalous:
            raise TimestampAnomalyError(
                source_record.legacy_id,
                assessment.anomalies,
                assessment.confidence,
                entity_type=entity.name,
            )

        fields: tuple[str, ...] = ()
        if destination_match is not None and destination_match.data is not None:
            fields = changed_fields(
                source_record.data, destination_match.data, config.exclude_fields
            )

        return ChangeRecord(
            record_id=source_record.legacy_id,
            change_type=change_type,
            source_timestamp=as_utc(source_record.updated_at),
            destination_timestamp=(
                as_utc(destination_timestamp) if destination_timestamp is not None else None
            ),
            content_hash=content_hash,
            previous_content_hash=(
                destination_match.content_hash if destination_match is not None else None
            ),
            confidence=assessment.confidence,
            metadata=ChangeMetadata(
                entity_type=entity.name,
                source_table=entity.source_table,
                destination_table=entity.destination_table,
                destination_id=destination_match.destination_id if destination_match else None,
                changed_fields=fields,
                anomalies=assessment.anomalies,
                notes=tuple(notes),
            ),
        )

    def classify_deletion(
        self,
        destination_record: DestinationRecord,
        *,
        entity: EntityDefinition,
        partial_scan: bool = False,
    ) -> ChangeRecord:
        """
        Classify a destination record whose legacy id is absent from the source scan.

        Args:
            destination_record: The orphaned destination record.
            entity: Definition of the record's entity type.
            partial_scan: True when the source scan was time-windowed or capped,
                which makes the classification unreliable.

        Returns:
            A DELETED ChangeRecord.
        """
        notes = ["legacy id not present in source scan"]
        if partial_scan:
            notes.append("source scan was partial; record may exist outside the window")

        timestamp = destination_record.updated_at or self.now()
        return ChangeRecord(
            record_id=destination_record.legacy_id,
            change_type=ChangeType.DELETED,
            source_timestamp=as_utc(timestamp),
            destination_timestamp=(
                as_utc(destination_record.updated_at) if destination_record.updated_at else None
            ),
            previous_content_hash=destination_record.content_hash,
            confidence=DELETE_CONFIDENCE,
            metadata=ChangeMetadata(
                entity_type=entity.name,
                source_table=entity.source_table,
                destination_table=entity.destination_table,
                destination_id=destination_record.destination_id,
                notes=tuple(notes),
            ),
        )

    def _content_hash(self, record: SourceRecord, config: DetectionConfig) -> str | None:
        if not config.enable_content_hashing:
            return None
        if record.content_hash is not None:
            return record.content_hash
        return calculate_content_hash(record.data, config.hash_algorithm, config.exclude_fields)

    def _is_modified(
        self,
        source_record: SourceRecord,
        destination_match: DestinationRecord,
        content_hash: str | None,
        config: DetectionConfig,
    ) -> tuple[bool, str]:
        if content_hash is not None and destination_match.content_hash is not None:
            if content_hash != destination_match.content_hash:
                return True, "content hash differs"
            return False, "content hash matches"

        if destination_match.updated_at is None:
            return True, "destination timestamp missing"

        delta = abs(
            as_utc(source_record.updated_at) - as_utc(destination_match.updated_at)
        ).total_seconds()
        reason = "timestamp differs by %.3fs" % delta
        if content_hash is not None:
            reason = f"{reason} (no stored destination hash)"
        return delta > config.timestamp_tolerance, reason


__all__ = [
    "BASE_CONFIDENCE",
    "DELETE_CONFIDENCE",
    "STALE_PENALTY",
    "FUTURE_PENALTY",
    "INVERSION_PENALTY",
    "TimestampAssessment",
    "ChangeClassifier",
]
