"""
Configuration for change detection and batch execution.

All configuration objects are frozen dataclasses validated in
``__post_init__``: invalid values raise ``ValidationError`` at construction,
before any store is touched.

Example:
    >>> config = DetectionConfig(
    ...     timestamp_field="updated_at",
    ...     content_hash_field="content_hash",
    ...     enable_content_hashing=True,
    ...     batch_size=2000,
    ... )
    >>> options = DetectionOptions(include_deletes=True, change_threshold=1.0)
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from diffmigrate.exceptions import ValidationError
from diffmigrate.models import SourceRecord, as_utc
from diffmigrate.retry import RetryConfig

SUPPORTED_HASH_ALGORITHMS = ("md5", "sha1", "sha256")

# Upper bound on ids per destination lookup query
MAX_ID_CHUNK_SIZE = 1000

RecordFilter = Callable[[SourceRecord], bool]
"""Inclusion predicate: return False to leave a source record out of detection."""


@dataclass(frozen=True)
class DetectionConfig:
    """
    Configuration for change detection.

    Attributes:
        timestamp_field: Source column holding the last-modified timestamp.
        content_hash_field: Destination column holding the stored content hash.
        enable_content_hashing: Compare content hashes instead of timestamps
            when both sides have one. Requires content_hash_field.
        batch_size: Source records per page (1-10000).
        parallelism: Entities analyzed concurrently (1-10).
        timestamp_tolerance: Seconds of clock skew absorbed when comparing
            timestamps.
        exclude_fields: Extra fields left out of content hashes.
        hash_algorithm: One of md5, sha1, sha256.
        id_chunk_size: Legacy ids per destination lookup (1-1000).
    """

    timestamp_field: str = "updated_at"
    content_hash_field: str | None = None
    enable_content_hashing: bool = False
    batch_size: int = 1000
    parallelism: int = 4
    timestamp_tolerance: float = 1.0
    exclude_fields: tuple[str, ...] = ()
    hash_algorithm: str = "sha256"
    id_chunk_size: int = MAX_ID_CHUNK_SIZE

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if not self.timestamp_field:
            raise ValidationError(
                "timestamp_field must not be empty",
                field_name="timestamp_field",
                value=self.timestamp_field,
            )

        if not 1 <= self.batch_size <= 10000:
            raise ValidationError(
                f"batch_size must be between 1 and 10000, got {self.batch_size}",
                field_name="batch_size",
                value=self.batch_size,
            )

        if not 1 <= self.parallelism <= 10:
            raise ValidationError(
                f"parallelism must be between 1 and 10, got {self.parallelism}",
                field_name="parallelism",
                value=self.parallelism,
            )

        if self.timestamp_tolerance < 0:
            raise ValidationError(
                f"timestamp_tolerance must be >= 0, got {self.timestamp_tolerance}",
                field_name="timestamp_tolerance",
                value=self.timestamp_tolerance,
            )

        if self.enable_content_hashing and not self.content_hash_field:
            raise ValidationError(
                "content_hash_field is required when enable_content_hashing is set",
                field_name="content_hash_field",
            )

        if self.hash_algorithm not in SUPPORTED_HASH_ALGORITHMS:
            raise ValidationError(
                f"hash_algorithm must be one of {', '.join(SUPPORTED_HASH_ALGORITHMS)}, "
                f"got {self.hash_algorithm!r}",
                field_name="hash_algorithm",
                value=self.hash_algorithm,
            )

        if not 1 <= self.id_chunk_size <= MAX_ID_CHUNK_SIZE:
            raise ValidationError(
                f"id_chunk_size must be between 1 and {MAX_ID_CHUNK_SIZE}, "
                f"got {self.id_chunk_size}",
                field_name="id_chunk_size",
                value=self.id_chunk_size,
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp_field": self.timestamp_field,
            "content_hash_field": self.content_hash_field,
            "enable_content_hashing": self.enable_content_hashing,
            "batch_size": self.batch_size,
            "parallelism": self.parallelism,
            "timestamp_tolerance": self.timestamp_tolerance,
            "exclude_fields": list(self.exclude_fields),
            "hash_algorithm": self.hash_algorithm,
            "id_chunk_size": self.id_chunk_size,
        }


@dataclass(frozen=True)
class DetectionOptions:
    """
    Per-call detection options.

    Attributes:
        since_timestamp: Only analyze source records modified at or after this.
        until_timestamp: Only analyze source records modified before this.
        include_deletes: Also classify destination records missing from the
            source scan as deleted. Trustworthy only on a full scan.
        change_threshold: Entity-level percentage (0-100) below which the
            entity is reported but left out of the "to migrate" set.
        confidence_threshold: Records below this confidence (0-1) are
            excluded and reported instead of migrated.
        max_records: Stop after analyzing this many source records.
        record_filter: Caller-supplied inclusion predicate.
        strict_timestamps: Exclude any record with a timestamp anomaly.
    """

    since_timestamp: datetime | None = None
    until_timestamp: datetime | None = None
    include_deletes: bool = False
    change_threshold: float = 0.0
    confidence_threshold: float = 0.0
    max_records: int | None = None
    record_filter: RecordFilter | None = field(default=None, compare=False)
    strict_timestamps: bool = False

    def __post_init__(self) -> None:
        """Validate option values."""
        if (
            self.since_timestamp is not None
            and self.until_timestamp is not None
            and as_utc(self.until_timestamp) <= as_utc(self.since_timestamp)
        ):
            raise ValidationError(
                "until_timestamp must be after since_timestamp",
                field_name="until_timestamp",
                value=self.until_timestamp,
            )

        if not 0.0 <= self.change_threshold <= 100.0:
            raise ValidationError(
                f"change_threshold must be between 0 and 100, got {self.change_threshold}",
                field_name="change_threshold",
                value=self.change_threshold,
            )

        if not 0.0 <= self.confidence_threshold <= 1.0:
            raise ValidationError(
                f"confidence_threshold must be between 0 and 1, got {self.confidence_threshold}",
                field_name="confidence_threshold",
                value=self.confidence_threshold,
            )

        if self.max_records is not None and self.max_records < 1:
            raise ValidationError(
                f"max_records must be >= 1, got {self.max_records}",
                field_name="max_records",
                value=self.max_records,
            )

    @property
    def is_partial_scan(self) -> bool:
        """True when the source scan does not cover the full history."""
        return (
            self.since_timestamp is not None
            or self.until_timestamp is not None
            or self.max_records is not None
        )


@dataclass(frozen=True)
class ExecutionConfig:
    """
    Configuration for the batch migration executor.

    Attributes:
        parallelism: Entities migrated concurrently (1-10).
        retry: Backoff policy for failed batch applies and source reads.
        batch_timeout: Seconds allowed for one apply attempt (>= 1).
        default_batch_size: Batch size for tasks derived from the registry.
        timestamp_field: Source timestamp column for entities that do not
            declare their own.

    Example:
        >>> config = ExecutionConfig(parallelism=2, retry=RetryConfig(max_retries=5))
    """

    parallelism: int = 3
    retry: RetryConfig = field(default_factory=RetryConfig)
    batch_timeout: float = 300.0
    default_batch_size: int = 500
    timestamp_field: str = "updated_at"

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if not 1 <= self.parallelism <= 10:
            raise ValidationError(
                f"parallelism must be between 1 and 10, got {self.parallelism}",
                field_name="parallelism",
                value=self.parallelism,
            )

        if self.batch_timeout < 1:
            raise ValidationError(
                f"batch_timeout must be >= 1 second, got {self.batch_timeout}",
                field_name="batch_timeout",
                value=self.batch_timeout,
            )

        if not 1 <= self.default_batch_size <= 5000:
            raise ValidationError(
                f"default_batch_size must be between 1 and 5000, got {self.default_batch_size}",
                field_name="default_batch_size",
                value=self.default_batch_size,
            )


__all__ = [
    "SUPPORTED_HASH_ALGORITHMS",
    "MAX_ID_CHUNK_SIZE",
    "RecordFilter",
    "DetectionConfig",
    "DetectionOptions",
    "ExecutionConfig",
]
