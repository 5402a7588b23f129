"""
ChangeDetector - differential detection across an entity's record set.

The detector pages through the source store, looks up the matching
destination records in bounded chunks, and hands each pair to the
ChangeClassifier. It never writes to either store.

Detection Flow:
    1. Page through the source (``DetectionConfig.batch_size`` per page,
       optionally windowed by ``since_timestamp``/``until_timestamp`` and
       capped by ``max_records``)
    2. Drop records rejected by the entity or caller inclusion filter
    3. Look up destination matches, at most ``id_chunk_size`` ids per query
    4. Classify; hold back records below the confidence threshold
    5. Optionally classify destination records missing from the scan as deleted
    6. Summarize, measure and recommend

Failure Semantics:
    A failure while analyzing one entity never aborts the others. It is
    logged and converted into a zero-change DetectionResult carrying the
    error.

Usage:
    >>> detector = ChangeDetector(source, destination, DetectionConfig(), registry=registry)
    >>> result = await detector.detect_changes(
    ...     "patients",
    ...     DetectionOptions(since_timestamp=last_run, include_deletes=True),
    ... )
    >>> result.summary.total_changes
    42
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Iterable, Sequence
from datetime import UTC, datetime
from uuid import uuid4

from diffmigrate.classifier import ChangeClassifier
from diffmigrate.config import DetectionConfig, DetectionOptions
from diffmigrate.entities import EntityDefinition, EntityRegistry
from diffmigrate.exceptions import CONNECTIVITY_RETRY_CONFIG, TimestampAnomalyError
from diffmigrate.models import (
    ChangeRecord,
    ChangeType,
    DestinationRecord,
    DetectionMethod,
    DetectionPerformance,
    DetectionReport,
    DetectionResult,
    DetectionSummary,
    ExcludedRecord,
    SourceRecord,
)
from diffmigrate.observability import Tracer, create_tracer
from diffmigrate.observability.attributes import (
    ATTR_ANALYSIS_ID,
    ATTR_CHANGES_DETECTED,
    ATTR_DETECTION_METHOD,
    ATTR_ENTITY_COUNT,
    ATTR_ENTITY_TYPE,
    ATTR_RECORDS_ANALYZED,
)
from diffmigrate.reconciliation import ReconciliationIndex
from diffmigrate.retry import RetryConfig, retry_async
from diffmigrate.stores.interface import DestinationStore, SourceStore, legacy_sort_key

logger = logging.getLogger(__name__)

# Recommendation thresholds
HIGH_CHANGE_PERCENTAGE = 25.0
MANY_NEW_RECORDS = 1000
SLOW_ANALYSIS_MS = 60_000
LARGE_ENTITY_RECORDS = 50_000

READY_RECOMMENDATION = "Change detection completed successfully - ready for migration execution"

PARTIAL_SCAN_DELETE_WARNING = (
    "Delete detection ran on a partial source scan (time window or record cap); "
    "records outside the scanned range are reported as deleted"
)
HASH_FALLBACK_WARNING = (
    "Content hashing is enabled but some destination records have no stored hash; "
    "those records were compared by timestamp"
)


def generate_recommendations(
    summary: DetectionSummary,
    total_records_analyzed: int,
    analysis_duration_ms: float,
    *,
    hashing_available: bool = False,
    hashing_enabled: bool = False,
) -> list[str]:
    """
    Operator guidance derived from a detection summary.

    Returns:
        Recommendations; a single "ready" note when nothing stands out.
    """
    recommendations = []

    if summary.change_percentage > HIGH_CHANGE_PERCENTAGE:
        recommendations.append(
            "High change percentage detected - verify timestamp accuracy and "
            "consider data validation"
        )
    if summary.new_records > MANY_NEW_RECORDS:
        recommendations.append(
            "Large number of new records - consider batch processing with checkpoint intervals"
        )
    if summary.modified_records > summary.new_records * 2:
        recommendations.append(
            "High modification rate - verify source data is not experiencing systematic updates"
        )
    if analysis_duration_ms > SLOW_ANALYSIS_MS:
        recommendations.append(
            "Analysis took longer than expected - consider adding database indexes "
            "or reducing batch size"
        )
    if hashing_available and not hashing_enabled:
        recommendations.append(
            "Content hashing available but not enabled - enable for higher accuracy detection"
        )
    if total_records_analyzed > LARGE_ENTITY_RECORDS:
        recommendations.append(
            "Large migration detected - enable checkpoint saving and consider parallel processing"
        )
    if summary.below_threshold:
        recommendations.append(
            f"Change percentage {summary.change_percentage}% is below the requested "
            "threshold - entity left out of the migration set"
        )

    if not recommendations:
        recommendations.append(READY_RECOMMENDATION)
    return recommendations


class _Scan:
    """Running state of one entity analysis."""

    def __init__(self) -> None:
        self.analyzed = 0
        self.queries = 0
        self.seen_ids: set[str] = set()
        self.changes: list[ChangeRecord] = []
        self.excluded: list[ExcludedRecord] = []
        self.unchanged = 0
        self.filtered = 0
        self.anomalous = 0
        self.hash_fallback = False

    def count(self, change_type: ChangeType) -> int:
        return sum(1 for change in self.changes if change.change_type == change_type)


class ChangeDetector:
    """
    Detects new, modified and deleted records per entity.

    Args:
        source: Legacy source store (read-only).
        destination: Destination store (read-only here).
        config: Detection configuration.
        registry: Entity definitions.
        classifier: Record classifier (default uses the wall clock).
        retry_config: Backoff for store reads that fail with connectivity errors.
        tracer: Optional tracer.
        enable_tracing: Whether to enable tracing when no tracer is given.
    """

    def __init__(
        self,
        source: SourceStore,
        destination: DestinationStore,
        config: DetectionConfig | None = None,
        *,
        registry: EntityRegistry,
        classifier: ChangeClassifier | None = None,
        retry_config: RetryConfig | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._source = source
        self._destination = destination
        self._config = config or DetectionConfig()
        self._registry = registry
        self._classifier = classifier or ChangeClassifier()
        self._retry_config = retry_config or CONNECTIVITY_RETRY_CONFIG
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

    @property
    def config(self) -> DetectionConfig:
        return self._config

    def detection_method(self, options: DetectionOptions) -> DetectionMethod:
        if not self._config.enable_content_hashing:
            return DetectionMethod.TIMESTAMP_ONLY
        if options.is_partial_scan:
            return DetectionMethod.TIMESTAMP_WITH_HASH
        return DetectionMethod.FULL_CONTENT_HASH

    async def detect_changes(
        self,
        entity_type: str,
        options: DetectionOptions | None = None,
        *,
        index: ReconciliationIndex | None = None,
    ) -> DetectionResult:
        """
        Detect changes for one entity.

        Args:
            entity_type: Registered entity type.
            options: Per-call options (defaults analyze the full history).
            index: Session reconciliation index. When it covers the entity,
                legacy ids absent from it are known to be new without a
                destination query, and delete detection reuses its ids.

        Returns:
            DetectionResult; on failure, a zero-change result with ``error`` set.
        """
        options = options or DetectionOptions()
        method = self.detection_method(options)
        started = time.perf_counter()
        scan = _Scan()

        with self._tracer.span(
            "diffmigrate.detector.detect_changes",
            {ATTR_ENTITY_TYPE: entity_type, ATTR_DETECTION_METHOD: method.value},
        ) as span:
            try:
                entity = self._registry.get(entity_type)
                await self._scan_source(entity, options, scan, index)
                if options.include_deletes:
                    await self._detect_deleted(entity, options, scan, index)
            except Exception as e:
                duration_ms = (time.perf_counter() - started) * 1000
                logger.error(
                    "Change detection failed for %s: %s",
                    entity_type,
                    e,
                    exc_info=True,
                    extra={"entity_type": entity_type},
                )
                return DetectionResult.failed(
                    entity_type,
                    str(e),
                    detection_method=method,
                    analysis_duration_ms=duration_ms,
                    queries_executed=scan.queries,
                )

            result = self._build_result(entity, options, method, scan, started)
            if span is not None:
                span.set_attribute(ATTR_RECORDS_ANALYZED, result.total_records_analyzed)
                span.set_attribute(ATTR_CHANGES_DETECTED, len(result.changes))

        logger.info(
            "Detected %d changes in %d %s records (%.2f%%)",
            result.summary.total_changes,
            result.total_records_analyzed,
            entity_type,
            result.summary.change_percentage,
            extra={
                "entity_type": entity_type,
                "new": result.summary.new_records,
                "modified": result.summary.modified_records,
                "deleted": result.summary.deleted_records,
                "duration_ms": result.performance.analysis_duration_ms,
            },
        )
        return result

    async def detect_all(
        self,
        entity_types: Iterable[str],
        options: DetectionOptions | None = None,
        *,
        index: ReconciliationIndex | None = None,
    ) -> DetectionReport:
        """
        Detect changes for several entities concurrently.

        At most ``DetectionConfig.parallelism`` entities are analyzed at once.
        Each entity fails independently.

        Returns:
            DetectionReport with one result per entity, in request order.
        """
        entity_types = list(dict.fromkeys(entity_types))
        analysis_id = str(uuid4())
        started_at = datetime.now(UTC)
        semaphore = asyncio.Semaphore(self._config.parallelism)

        async def run(entity_type: str) -> DetectionResult:
            async with semaphore:
                return await self.detect_changes(entity_type, options, index=index)

        with self._tracer.span(
            "diffmigrate.detector.detect_all",
            {ATTR_ANALYSIS_ID: analysis_id, ATTR_ENTITY_COUNT: len(entity_types)},
        ):
            results = await asyncio.gather(*(run(name) for name in entity_types))

        report = DetectionReport(
            analysis_id=analysis_id,
            results=dict(zip(entity_types, results, strict=True)),
            started_at=started_at,
            completed_at=datetime.now(UTC),
        )
        if report.failed_entities:
            logger.warning(
                "Detection failed for %d of %d entities: %s",
                len(report.failed_entities),
                len(entity_types),
                ", ".join(report.failed_entities),
                extra={"analysis_id": analysis_id},
            )
        return report

    async def _scan_source(
        self,
        entity: EntityDefinition,
        options: DetectionOptions,
        scan: _Scan,
        index: ReconciliationIndex | None,
    ) -> None:
        config = self._config
        timestamp_field = entity.timestamp_field(config.timestamp_field)
        filters = [f for f in (entity.record_filter, options.record_filter) if f is not None]
        offset = 0

        while True:
            limit = config.batch_size
            if options.max_records is not None:
                limit = min(limit, options.max_records - scan.analyzed)
                if limit <= 0:
                    break

            page = await retry_async(
                lambda offset=offset, limit=limit: self._source.scan(
                    entity,
                    offset=offset,
                    limit=limit,
                    timestamp_field=timestamp_field,
                    since=options.since_timestamp,
                    until=options.until_timestamp,
                ),
                config=self._retry_config,
                operation_name=f"scan {entity.name}",
            )
            scan.queries += 1
            if not page:
                break

            offset += len(page)
            scan.analyzed += len(page)
            candidates = []
            for record in page:
                scan.seen_ids.add(record.legacy_id)
                if filters and not all(f(record) for f in filters):
                    scan.filtered += 1
                    continue
                candidates.append(record)

            matches = await self._lookup_matches(entity, candidates, index, scan)
            for record in candidates:
                self._classify(entity, record, matches.get(record.legacy_id), options, scan)

            logger.debug(
                "Analyzed page of %d %s records at offset %d",
                len(page),
                entity.name,
                offset - len(page),
                extra={"entity_type": entity.name},
            )
            if len(page) < limit:
                break

    async def _lookup_matches(
        self,
        entity: EntityDefinition,
        records: Sequence[SourceRecord],
        index: ReconciliationIndex | None,
        scan: _Scan,
    ) -> dict[str, DestinationRecord]:
        legacy_ids = [record.legacy_id for record in records]
        if index is not None and entity.name in index:
            mapping = index[entity.name]
            legacy_ids = [legacy_id for legacy_id in legacy_ids if legacy_id in mapping]
        return await self._find_in_chunks(entity, legacy_ids, scan)

    async def _find_in_chunks(
        self,
        entity: EntityDefinition,
        legacy_ids: Sequence[str],
        scan: _Scan,
    ) -> dict[str, DestinationRecord]:
        chunk_size = self._config.id_chunk_size
        hash_column = self._hash_column(entity)
        matches: dict[str, DestinationRecord] = {}

        for start in range(0, len(legacy_ids), chunk_size):
            chunk = legacy_ids[start : start + chunk_size]
            found = await retry_async(
                lambda chunk=chunk: self._destination.find_by_legacy_ids(
                    entity, chunk, hash_column=hash_column
                ),
                config=self._retry_config,
                operation_name=f"lookup {entity.name}",
            )
            scan.queries += 1
            for record in found:
                matches[record.legacy_id] = record
        return matches

    def _hash_column(self, entity: EntityDefinition) -> str | None:
        if not self._config.enable_content_hashing:
            return None
        return entity.content_hash_column or self._config.content_hash_field

    def _classify(
        self,
        entity: EntityDefinition,
        record: SourceRecord,
        match: DestinationRecord | None,
        options: DetectionOptions,
        scan: _Scan,
    ) -> None:
        try:
            change = self._classifier.classify(
                record,
                match,
                self._config,
                entity=entity,
                strict=options.strict_timestamps,
            )
        except TimestampAnomalyError as e:
            scan.excluded.append(ExcludedRecord(e.record_id, e.confidence, e.message))
            return

        if change is None:
            scan.unchanged += 1
            return
        if self._config.enable_content_hashing and match is not None and not match.content_hash:
            scan.hash_fallback = True
        if change.metadata.anomalies:
            scan.anomalous += 1
        self._accept(change, options, scan)

    def _accept(self, change: ChangeRecord, options: DetectionOptions, scan: _Scan) -> None:
        if change.confidence < options.confidence_threshold:
            threshold = options.confidence_threshold
            reason = f"confidence {change.confidence} below threshold {threshold}"
            if change.metadata.anomalies:
                reason = f"{reason}: {'; '.join(change.metadata.anomalies)}"
            scan.excluded.append(ExcludedRecord(change.record_id, change.confidence, reason))
            return
        scan.changes.append(change)

    async def _detect_deleted(
        self,
        entity: EntityDefinition,
        options: DetectionOptions,
        scan: _Scan,
        index: ReconciliationIndex | None,
    ) -> None:
        if index is not None and entity.name in index:
            destination_ids = set(index[entity.name].legacy_ids)
        else:
            destination_ids = set()
            async for legacy_id, _ in self._destination.scan_mappings(entity):
                destination_ids.add(legacy_id)
            scan.queries += 1

        missing = sorted(destination_ids - scan.seen_ids, key=legacy_sort_key)
        found = await self._find_in_chunks(entity, missing, scan)
        partial = options.is_partial_scan
        for legacy_id in missing:
            record = found.get(legacy_id)
            if record is None:
                continue
            change = self._classifier.classify_deletion(record, entity=entity, partial_scan=partial)
            self._accept(change, options, scan)

    def _build_result(
        self,
        entity: EntityDefinition,
        options: DetectionOptions,
        method: DetectionMethod,
        scan: _Scan,
        started: float,
    ) -> DetectionResult:
        new = scan.count(ChangeType.NEW)
        modified = scan.count(ChangeType.MODIFIED)
        deleted = scan.count(ChangeType.DELETED)
        total = new + modified + deleted
        percentage = round(total / scan.analyzed * 100, 2) if scan.analyzed else 0.0

        summary = DetectionSummary(
            new_records=new,
            modified_records=modified,
            deleted_records=deleted,
            unchanged_records=scan.unchanged,
            filtered_records=scan.filtered,
            excluded_low_confidence=len(scan.excluded),
            change_percentage=percentage,
            below_threshold=options.change_threshold > 0 and percentage < options.change_threshold,
        )

        warnings = []
        if options.include_deletes and options.is_partial_scan:
            warnings.append(PARTIAL_SCAN_DELETE_WARNING)
            logger.warning(
                "Delete detection for %s ran on a partial scan and may report false deletions",
                entity.name,
                extra={"entity_type": entity.name},
            )
        if scan.hash_fallback:
            warnings.append(HASH_FALLBACK_WARNING)
        if scan.anomalous:
            logger.warning(
                "%d %s changes carry timestamp anomalies",
                scan.anomalous,
                entity.name,
                extra={"entity_type": entity.name},
            )

        # Measured, not estimated
        duration_ms = (time.perf_counter() - started) * 1000
        records_per_second = scan.analyzed / (duration_ms / 1000) if duration_ms > 0 else 0.0

        hashing_available = bool(entity.content_hash_column or self._config.content_hash_field)

        return DetectionResult(
            entity_type=entity.name,
            total_records_analyzed=scan.analyzed,
            changes=tuple(scan.changes),
            summary=summary,
            performance=DetectionPerformance(
                analysis_duration_ms=round(duration_ms, 3),
                queries_executed=scan.queries,
                records_per_second=round(records_per_second, 2),
            ),
            detection_method=method,
            excluded=tuple(scan.excluded),
            warnings=tuple(warnings),
            recommendations=tuple(
                generate_recommendations(
                    summary,
                    scan.analyzed,
                    duration_ms,
                    hashing_available=hashing_available,
                    hashing_enabled=self._config.enable_content_hashing,
                )
            ),
        )


__all__ = [
    "ChangeDetector",
    "generate_recommendations",
    "PARTIAL_SCAN_DELETE_WARNING",
    "HASH_FALLBACK_WARNING",
    "READY_RECOMMENDATION",
]
