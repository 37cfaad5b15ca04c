from __future__ import annotations

import logging
import math
import threading
import time
from collections.abc import Iterable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any

import numpy as np

from .analysis_cache import AnalysisCache
from .coefficients import CoefficientTable
from .deviation import DeviationClassifier, DeviationStatus
from .duplicate_resolver import CanonicalRoute, resolution_summary, resolve_duplicates
from .errors import AnalysisCancelledError, NormDataError, NotFoundError, ValidationError
from .logging_utils import log_event
from .models import AnalysisRequest, NormCurve, ObservationRow
from .norm_store import CurveValidationReport, NormCurveStore
from .section_merger import ConflictWarning, MergedSegment, MergeOutcome, merge_segments
from .settings import settings

SKIP_NO_NORM_ID = "no_norm_id"
SKIP_NORM_NOT_FOUND = "norm_not_found"
SKIP_NORM_NOT_INTERPOLABLE = "norm_not_interpolable"
SKIP_MISSING_LOAD = "missing_load"
SKIP_NON_FINITE_DEVIATION = "non_finite_deviation"


@dataclass(frozen=True)
class RouteSnapshot:
    """A canonical route together with its merged segment list."""

    route: CanonicalRoute
    merge: MergeOutcome

    @property
    def label(self) -> str:
        return self.route.label

    @property
    def segments(self) -> tuple[MergedSegment, ...]:
        return self.merge.segments

    @property
    def is_single_section(self) -> bool:
        return len(self.merge.segments) == 1

    def segment(self, name: str) -> MergedSegment | None:
        return self.merge.segment(name)

    @property
    def locomotive(self) -> tuple[str | None, int | None]:
        for row in self.route.rows:
            if row.locomotive_series and row.locomotive_number is not None:
                return row.locomotive_series, row.locomotive_number
        return None, None

    def as_dict(self) -> dict[str, Any]:
        series, number = self.locomotive
        return {
            **self.route.as_dict(),
            "locomotive_series": series,
            "locomotive_number": number,
            "segments": [seg.as_dict() for seg in self.merge.segments],
            "dropped_segments": list(self.merge.dropped),
            "warnings": [w.as_dict() for w in self.merge.warnings],
        }


@dataclass(frozen=True)
class RecordAnalysis:
    route_label: str
    segment_name: str
    norm_id: str | None
    load: float | None = None
    actual: float | None = None
    expected: float | None = None
    deviation_pct: float | None = None
    status: DeviationStatus | None = None
    coefficient: float = 1.0
    skip_reason: str | None = None

    @property
    def analyzed(self) -> bool:
        return self.status is not None

    def as_dict(self) -> dict[str, Any]:
        return {
            "route": self.route_label,
            "segment_name": self.segment_name,
            "norm_id": self.norm_id,
            "load": self.load,
            "actual": self.actual,
            "expected": self.expected,
            "deviation_pct": self.deviation_pct,
            "status": self.status.label if self.status is not None else None,
            "coefficient": self.coefficient,
            "skip_reason": self.skip_reason,
        }


@dataclass(frozen=True)
class DeviationStatistics:
    mean: float
    median: float
    stddev: float
    minimum: float
    maximum: float
    worst: DeviationStatus
    problematic_fraction: float

    def as_dict(self) -> dict[str, Any]:
        return {
            "mean": round(self.mean, 6),
            "median": round(self.median, 6),
            "stddev": round(self.stddev, 6),
            "min": round(self.minimum, 6),
            "max": round(self.maximum, 6),
            "worst": self.worst.label,
            "problematic_fraction": round(self.problematic_fraction, 6),
        }


@dataclass(frozen=True)
class AnalysisResult:
    segment_name: str
    norm_id: str | None
    single_section_only: bool
    cache_key: str
    records: tuple[RecordAnalysis, ...] = ()
    histogram: dict[DeviationStatus, int] = field(default_factory=dict)
    statistics: DeviationStatistics | None = None
    warnings: tuple[ConflictWarning, ...] = ()

    @property
    def total(self) -> int:
        return len(self.records)

    @property
    def analyzed(self) -> int:
        return sum(1 for r in self.records if r.analyzed)

    @property
    def skipped(self) -> int:
        return self.total - self.analyzed

    def skip_reasons(self) -> dict[str, int]:
        out: dict[str, int] = {}
        for record in self.records:
            if record.skip_reason is not None:
                out[record.skip_reason] = out.get(record.skip_reason, 0) + 1
        return out

    def as_dict(self) -> dict[str, Any]:
        return {
            "segment_name": self.segment_name,
            "norm_id": self.norm_id,
            "single_section_only": self.single_section_only,
            "cache_key": self.cache_key,
            "total": self.total,
            "analyzed": self.analyzed,
            "skipped": self.skipped,
            "skip_reasons": self.skip_reasons(),
            "histogram": {status.label: count for status, count in self.histogram.items()},
            "statistics": self.statistics.as_dict() if self.statistics is not None else None,
            "records": [r.as_dict() for r in self.records],
            "warnings": [w.as_dict() for w in self.warnings],
        }


@dataclass(frozen=True)
class IngestionSummary:
    input_rows: int
    total_rows: int
    canonical_routes: int
    duplicate_groups: int
    discarded_rows: int
    partial_keys: int
    merge_warnings: int
    dropped_segments: int
    revision: int

    def as_dict(self) -> dict[str, int]:
        return {
            "input_rows": self.input_rows,
            "total_rows": self.total_rows,
            "canonical_routes": self.canonical_routes,
            "duplicate_groups": self.duplicate_groups,
            "discarded_rows": self.discarded_rows,
            "partial_keys": self.partial_keys,
            "merge_warnings": self.merge_warnings,
            "dropped_segments": self.dropped_segments,
            "revision": self.revision,
        }


@dataclass(frozen=True)
class _ObservationState:
    rows: tuple[ObservationRow, ...] = ()
    routes: tuple[RouteSnapshot, ...] = ()
    revision: int = 0


def _deviation_pct(actual: float, expected: float) -> float:
    if expected <= 0.0:
        return 0.0
    return (actual - expected) / expected * 100.0


class AnalysisCoordinator:
    """Orchestrates resolution, merging, norm evaluation and classification for segment analyses.

    Ingestion swaps whole immutable snapshots; analyses read whichever snapshot is
    current when they start and are cached against the data revision they saw.
    """

    def __init__(
        self,
        *,
        store: NormCurveStore | None = None,
        classifier: DeviationClassifier | None = None,
        coefficients: CoefficientTable | None = None,
        cache: AnalysisCache[AnalysisResult] | None = None,
        max_workers: int | None = None,
    ) -> None:
        self.store = store or NormCurveStore()
        self.classifier = classifier or DeviationClassifier()
        self._coefficients = coefficients if coefficients is not None else CoefficientTable()
        self._coefficient_revision = 0
        if cache is None:
            cache = AnalysisCache(
                ttl_s=settings.analysis_cache_ttl_s,
                max_entries=settings.analysis_cache_max_entries,
            )
        self._cache: AnalysisCache[AnalysisResult] = cache
        self._max_workers = max_workers or settings.analysis_max_workers
        self._ingest_lock = threading.Lock()
        self._state = _ObservationState()

    # ingestion

    def ingest_curves(self, curves: Iterable[NormCurve]) -> dict[str, str]:
        report = self.store.upsert(curves)
        if report:
            self._cache.clear()
        return report

    def ingest_observations(self, rows: Iterable[ObservationRow], *, replace: bool = False) -> IngestionSummary:
        incoming = tuple(rows)
        with self._ingest_lock:
            previous = self._state
            all_rows = incoming if replace else previous.rows + incoming
            routes = resolve_duplicates(all_rows)
            snapshots = tuple(
                RouteSnapshot(route=route, merge=merge_segments(route.rows, route_label=route.label))
                for route in routes
            )
            self._state = _ObservationState(rows=all_rows, routes=snapshots, revision=previous.revision + 1)
            self._cache.clear()

        counts = resolution_summary(routes)
        summary = IngestionSummary(
            input_rows=len(incoming),
            total_rows=len(all_rows),
            canonical_routes=counts["canonical_routes"],
            duplicate_groups=counts["duplicate_groups"],
            discarded_rows=counts["discarded_rows"],
            partial_keys=counts["partial_keys"],
            merge_warnings=sum(len(s.merge.warnings) for s in snapshots),
            dropped_segments=sum(len(s.merge.dropped) for s in snapshots),
            revision=self._state.revision,
        )
        log_event("observations_ingested", replace=replace, **summary.as_dict())
        return summary

    def set_coefficients(self, table: CoefficientTable) -> None:
        with self._ingest_lock:
            self._coefficients = table
            self._coefficient_revision += 1
            self._cache.clear()
        log_event("coefficients_updated", locomotives=len(table), filtered_out=table.filtered_out)

    @property
    def coefficients(self) -> CoefficientTable:
        return self._coefficients

    @property
    def observation_revision(self) -> int:
        return self._state.revision

    def _revision(self) -> tuple[int, int, int]:
        return (self.store.revision, self._state.revision, self._coefficient_revision)

    # analysis

    @staticmethod
    def _validate_request(request: AnalysisRequest) -> None:
        if not request.segment_name:
            raise ValidationError(
                reason_code="invalid_request",
                message="segment_name must not be empty",
                details={"request": request.model_dump(mode="json")},
            )

    def analyze(
        self,
        request: AnalysisRequest,
        cancel_event: threading.Event | None = None,
    ) -> AnalysisResult:
        self._validate_request(request)
        t0 = time.perf_counter()
        # The revision is read before the snapshots it labels.
        revision = self._revision()
        state = self._state
        coefficients = self._coefficients
        key = request.cache_key()

        result, from_cache = self._cache.get_or_compute(
            key,
            lambda: self._compute(request, key, state, coefficients, cancel_event),
            revision=revision,
        )
        log_event(
            "analysis_completed",
            segment_name=request.segment_name,
            norm_id=request.norm_id,
            cache_key=key,
            from_cache=from_cache,
            total=result.total,
            analyzed=result.analyzed,
            skipped=result.skipped,
            duration_ms=round((time.perf_counter() - t0) * 1000, 2),
        )
        return result

    def analyze_many(
        self,
        requests: Sequence[AnalysisRequest],
        cancel_event: threading.Event | None = None,
    ) -> list[AnalysisResult]:
        for request in requests:
            self._validate_request(request)
        if not requests:
            return []

        with ThreadPoolExecutor(max_workers=max(1, min(self._max_workers, len(requests)))) as executor:
            futures = [executor.submit(self.analyze, request, cancel_event) for request in requests]
            try:
                return [future.result() for future in futures]
            except AnalysisCancelledError:
                for future in futures:
                    future.cancel()
                raise

    def _candidates(self, state: _ObservationState, request: AnalysisRequest) -> list[RouteSnapshot]:
        out = []
        for snapshot in state.routes:
            if snapshot.segment(request.segment_name) is None:
                continue
            if request.single_section_only and not snapshot.is_single_section:
                continue
            out.append(snapshot)
        return out

    def _analyze_record(
        self,
        snapshot: RouteSnapshot,
        segment: MergedSegment,
        request: AnalysisRequest,
        coefficients: CoefficientTable,
    ) -> RecordAnalysis:
        norm_id = request.norm_id or segment.norm_id
        base = {"route_label": snapshot.label, "segment_name": segment.segment_name, "norm_id": norm_id}
        if not norm_id:
            return RecordAnalysis(**base, skip_reason=SKIP_NO_NORM_ID)
        if segment.load is None:
            return RecordAnalysis(**base, skip_reason=SKIP_MISSING_LOAD)

        try:
            expected = self.store.evaluate(norm_id, segment.load)
        except NotFoundError:
            return RecordAnalysis(**base, load=segment.load, skip_reason=SKIP_NORM_NOT_FOUND)
        except NormDataError as e:
            log_event(
                "norm_not_interpolable",
                level=logging.WARNING,
                norm_id=norm_id,
                reason_code=e.reason_code,
                detail=e.message,
            )
            return RecordAnalysis(**base, load=segment.load, skip_reason=SKIP_NORM_NOT_INTERPOLABLE)

        actual = segment.specific_actual
        coefficient = 1.0
        if request.apply_coefficients:
            series, number = snapshot.locomotive
            coefficient = coefficients.coefficient(series, number)
            actual = actual / coefficient

        percent = _deviation_pct(actual, expected)
        if not math.isfinite(percent):
            log_event(
                "deviation_not_finite",
                level=logging.WARNING,
                route=snapshot.label,
                norm_id=norm_id,
                load=segment.load,
                expected=expected,
            )
            return RecordAnalysis(**base, load=segment.load, skip_reason=SKIP_NON_FINITE_DEVIATION)
        return RecordAnalysis(
            **base,
            load=segment.load,
            actual=actual,
            expected=expected,
            deviation_pct=percent,
            status=self.classifier.classify(percent),
            coefficient=coefficient,
        )

    def _compute(
        self,
        request: AnalysisRequest,
        key: str,
        state: _ObservationState,
        coefficients: CoefficientTable,
        cancel_event: threading.Event | None,
    ) -> AnalysisResult:
        records: list[RecordAnalysis] = []
        warnings: list[ConflictWarning] = []

        for snapshot in self._candidates(state, request):
            if cancel_event is not None and cancel_event.is_set():
                log_event(
                    "analysis_cancelled",
                    level=logging.WARNING,
                    segment_name=request.segment_name,
                    processed=len(records),
                )
                raise AnalysisCancelledError(
                    reason_code="analysis_cancelled",
                    message="analysis cancelled",
                    details={"segment_name": request.segment_name, "processed": len(records)},
                )
            segment = snapshot.segment(request.segment_name)
            if segment is None:
                continue
            records.append(self._analyze_record(snapshot, segment, request, coefficients))
            warnings.extend(w for w in snapshot.merge.warnings if w.segment_name == request.segment_name)

        percents = [r.deviation_pct for r in records if r.analyzed and r.deviation_pct is not None]
        batch = self.classifier.classify_batch(percents)
        statistics = None
        if percents and batch.worst is not None:
            values = np.array(percents, dtype=float)
            statistics = DeviationStatistics(
                mean=float(np.mean(values)),
                median=float(np.median(values)),
                stddev=float(np.std(values)),
                minimum=float(np.min(values)),
                maximum=float(np.max(values)),
                worst=batch.worst,
                problematic_fraction=batch.problematic_fraction,
            )

        return AnalysisResult(
            segment_name=request.segment_name,
            norm_id=request.norm_id,
            single_section_only=request.single_section_only,
            cache_key=key,
            records=tuple(records),
            histogram=batch.histogram,
            statistics=statistics,
            warnings=tuple(warnings),
        )

    # presentation helpers

    def canonical_routes(self) -> list[CanonicalRoute]:
        return [snapshot.route for snapshot in self._state.routes]

    def route_snapshots(self) -> list[RouteSnapshot]:
        return list(self._state.routes)

    def sections(self) -> list[dict[str, Any]]:
        summary: dict[str, dict[str, Any]] = {}
        for snapshot in self._state.routes:
            for segment in snapshot.segments:
                entry = summary.setdefault(
                    segment.segment_name,
                    {"name": segment.segment_name, "route_count": 0, "single_section_routes": 0, "norm_ids": set()},
                )
                entry["route_count"] += 1
                if snapshot.is_single_section:
                    entry["single_section_routes"] += 1
                if segment.norm_id:
                    entry["norm_ids"].add(segment.norm_id)
        return [
            {**entry, "norm_ids": sorted(entry["norm_ids"])}
            for _, entry in sorted(summary.items())
        ]

    def routes_for_section(self, name: str, *, single_section_only: bool = False) -> list[RouteSnapshot]:
        request = AnalysisRequest(segment_name=name, single_section_only=single_section_only)
        return self._candidates(self._state, request)

    def norms_for_section(self, name: str) -> dict[str, int]:
        routes = self.routes_for_section(name)
        if not routes:
            raise NotFoundError(
                reason_code="section_not_found",
                message=f"section '{name}' not found",
                details={"segment_name": name},
            )
        counts: dict[str, int] = {}
        for snapshot in routes:
            segment = snapshot.segment(name)
            if segment is not None and segment.norm_id:
                counts[segment.norm_id] = counts.get(segment.norm_id, 0) + 1
        return dict(sorted(counts.items()))

    def validate_curves(self) -> CurveValidationReport:
        return self.store.validate()

    def cache_stats(self) -> dict[str, Any]:
        return {
            "analysis": self._cache.snapshot(),
            "functions": self.store.stats(),
            "revision": list(self._revision()),
        }

    def clear_cache(self) -> int:
        cleared = self._cache.clear()
        log_event("analysis_cache_cleared", cleared=cleared)
        return cleared
