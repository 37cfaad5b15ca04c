from __future__ import annotations

import math
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from threading import Lock

from .errors import NormDataError, NotFoundError
from .interpolation import InterpolationFunction, build_interpolation
from .keyed_locks import KeyedLocks
from .logging_utils import log_event
from .models import NormCurve, SamplePoint

Builder = Callable[[Sequence[SamplePoint]], InterpolationFunction]

MANY_POINTS_WARNING = 20


@dataclass(frozen=True)
class _FunctionEntry:
    curve: NormCurve
    function: InterpolationFunction


@dataclass(frozen=True)
class CurveValidationReport:
    healthy: tuple[str, ...] = ()
    invalid: dict[str, str] = field(default_factory=dict)
    warnings: dict[str, tuple[str, ...]] = field(default_factory=dict)

    def as_dict(self) -> dict[str, object]:
        return {
            "healthy": list(self.healthy),
            "invalid": dict(self.invalid),
            "warnings": {key: list(value) for key, value in self.warnings.items()},
            "healthy_count": len(self.healthy),
            "invalid_count": len(self.invalid),
        }


class NormCurveStore:
    """Immutable curve snapshots by id plus lazily built, per-id cached interpolation functions.

    Writers swap in a new id -> curve map under a lock, so readers always see a
    whole curve. A cached function is only served while its curve is still the
    current snapshot for that id; concurrent builds for one id are single-flight.
    """

    def __init__(self, *, builder: Builder = build_interpolation) -> None:
        self._builder = builder
        self._write_lock = Lock()
        self._stats_lock = Lock()
        self._build_locks = KeyedLocks()
        self._curves: dict[str, NormCurve] = {}
        self._functions: dict[str, _FunctionEntry] = {}
        self._revision = 0

        self._hits = 0
        self._misses = 0
        self._builds = 0

    @property
    def revision(self) -> int:
        return self._revision

    def upsert(self, curves: Iterable[NormCurve]) -> dict[str, str]:
        results: dict[str, str] = {}
        with self._write_lock:
            current = self._curves
            updated = dict(current)
            changed: list[str] = []
            for curve in curves:
                previous = updated.get(curve.norm_id)
                if curve.norm_id not in results:
                    results[curve.norm_id] = "added" if previous is None else "updated"
                if previous is not None and previous == curve:
                    continue
                updated[curve.norm_id] = curve
                changed.append(curve.norm_id)

            if changed:
                self._curves = updated
                for norm_id in changed:
                    self._functions.pop(norm_id, None)
                self._revision += 1

        log_event(
            "norm_curves_upserted",
            added=sum(1 for v in results.values() if v == "added"),
            updated=sum(1 for v in results.values() if v == "updated"),
            replaced=len(set(changed)),
            revision=self._revision,
        )
        return results

    def remove(self, norm_ids: Iterable[str]) -> int:
        with self._write_lock:
            updated = dict(self._curves)
            removed = 0
            for norm_id in norm_ids:
                if updated.pop(norm_id, None) is not None:
                    self._functions.pop(norm_id, None)
                    removed += 1
            if removed:
                self._curves = updated
                self._revision += 1
            return removed

    def clear(self) -> int:
        with self._write_lock:
            cleared = len(self._curves)
            self._curves = {}
            self._functions.clear()
            self._revision += 1
            return cleared

    def curve_ids(self) -> list[str]:
        return sorted(self._curves)

    def curves(self) -> list[NormCurve]:
        snapshot = self._curves
        return [snapshot[key] for key in sorted(snapshot)]

    def get_curve(self, norm_id: str) -> NormCurve:
        curve = self._curves.get(norm_id)
        if curve is None:
            raise NotFoundError(
                reason_code="norm_not_found",
                message=f"norm curve '{norm_id}' not found",
                details={"norm_id": norm_id},
            )
        return curve

    def _count(self, *, hit: bool = False, miss: bool = False, build: bool = False) -> None:
        with self._stats_lock:
            self._hits += int(hit)
            self._misses += int(miss)
            self._builds += int(build)

    def get_function(self, norm_id: str) -> InterpolationFunction:
        curve = self.get_curve(norm_id)
        entry = self._functions.get(norm_id)
        if entry is not None and entry.curve is curve:
            self._count(hit=True)
            return entry.function

        self._count(miss=True)
        with self._build_locks.hold(norm_id):
            # Another thread may have finished the build while we waited.
            curve = self.get_curve(norm_id)
            entry = self._functions.get(norm_id)
            if entry is not None and entry.curve is curve:
                return entry.function

            function = self._builder(curve.points)
            self._count(build=True)
            with self._write_lock:
                if self._curves.get(norm_id) is curve:
                    self._functions[norm_id] = _FunctionEntry(curve=curve, function=function)
            return function

    def evaluate(self, norm_id: str, load: float) -> float:
        return self.get_function(norm_id)(load)

    def validate(self) -> CurveValidationReport:
        healthy: list[str] = []
        invalid: dict[str, str] = {}
        warnings: dict[str, tuple[str, ...]] = {}

        for curve in self.curves():
            points = curve.points
            if len(points) < 1:
                invalid[curve.norm_id] = "no sample points"
                continue
            if any(
                not (math.isfinite(p.load) and math.isfinite(p.consumption)) or p.load <= 0 or p.consumption <= 0
                for p in points
            ):
                invalid[curve.norm_id] = "non-positive or non-finite sample coordinates"
                continue
            try:
                function = self._builder(points)
            except NormDataError as e:
                invalid[curve.norm_id] = f"interpolation failed: {e}"
                continue

            healthy.append(curve.norm_id)
            notes: list[str] = []
            if len(points) == 1:
                notes.append("single sample point, constant norm")
            if len(points) > MANY_POINTS_WARNING:
                notes.append(f"many sample points ({len(points)})")
            if len(points) >= 3 and function.kind != "hyperbolic":
                notes.append("hyperbolic fit not used, piecewise-linear model in effect")
            if notes:
                warnings[curve.norm_id] = tuple(notes)

        log_event(
            "norm_curves_validated",
            healthy=len(healthy),
            invalid=len(invalid),
            warnings=len(warnings),
        )
        return CurveValidationReport(healthy=tuple(healthy), invalid=invalid, warnings=warnings)

    def stats(self) -> dict[str, int]:
        with self._stats_lock:
            return {
                "curves": len(self._curves),
                "cached_functions": len(self._functions),
                "hits": self._hits,
                "misses": self._misses,
                "builds": self._builds,
                "revision": self._revision,
            }

