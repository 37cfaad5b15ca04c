from __future__ import annotations

import math
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from .models import ObservationRow

GROSS_TON_KM_UNIT = 10_000.0


@dataclass(frozen=True)
class MergedSegment:
    segment_name: str
    distance_km: float | None = None
    gross_ton_km: float | None = None
    actual_consumption: float = 0.0
    norm_consumption: float | None = None
    load: float | None = None
    norm_id: str | None = None
    entry_count: int = 1

    @property
    def specific_actual(self) -> float:
        """Actual consumption per 10^4 gross ton-km, or as recorded when ton-km is unknown."""
        if self.gross_ton_km is not None and self.gross_ton_km > 0:
            return self.actual_consumption * GROSS_TON_KM_UNIT / self.gross_ton_km
        return self.actual_consumption

    def as_dict(self) -> dict[str, object]:
        return {
            "segment_name": self.segment_name,
            "distance_km": self.distance_km,
            "gross_ton_km": self.gross_ton_km,
            "actual_consumption": self.actual_consumption,
            "norm_consumption": self.norm_consumption,
            "load": self.load,
            "norm_id": self.norm_id,
            "entry_count": self.entry_count,
        }


@dataclass(frozen=True)
class ConflictWarning:
    route: str
    segment_name: str
    kept_norm_id: str
    conflicting_norm_id: str

    @property
    def message(self) -> str:
        return (
            f"route {self.route}: segment '{self.segment_name}' keeps norm "
            f"'{self.kept_norm_id}', ignoring '{self.conflicting_norm_id}'"
        )

    def as_dict(self) -> dict[str, str]:
        return {
            "route": self.route,
            "segment_name": self.segment_name,
            "kept_norm_id": self.kept_norm_id,
            "conflicting_norm_id": self.conflicting_norm_id,
            "message": self.message,
        }


@dataclass(frozen=True)
class MergeOutcome:
    segments: tuple[MergedSegment, ...] = ()
    warnings: tuple[ConflictWarning, ...] = ()
    dropped: tuple[str, ...] = field(default=())

    def segment(self, name: str) -> MergedSegment | None:
        for seg in self.segments:
            if seg.segment_name == name:
                return seg
        return None


def _as_segment(entry: ObservationRow | MergedSegment) -> MergedSegment:
    if isinstance(entry, MergedSegment):
        return entry
    return MergedSegment(
        segment_name=entry.segment_name,
        distance_km=entry.distance_km,
        gross_ton_km=entry.gross_ton_km,
        actual_consumption=entry.actual_consumption,
        norm_consumption=entry.norm_consumption,
        load=entry.load,
        norm_id=entry.norm_id,
    )


def _optional_sum(values: Iterable[float | None]) -> float | None:
    present = [v for v in values if v is not None]
    if not present:
        return None
    # fsum is exactly rounded, so the total does not depend on entry order.
    return math.fsum(present)


def _merged_load(parts: Sequence[MergedSegment]) -> float | None:
    loaded = [p for p in parts if p.load is not None]
    if not loaded:
        return None
    if len(loaded) == 1:
        return loaded[0].load
    weights = [p.distance_km for p in loaded]
    if all(w is not None and w > 0 for w in weights):
        total = math.fsum(weights)  # type: ignore[arg-type]
        return math.fsum(p.load * p.distance_km for p in loaded) / total  # type: ignore[operator]
    return math.fsum(p.load for p in loaded) / len(loaded)  # type: ignore[misc]


def merge_segments(
    entries: Iterable[ObservationRow | MergedSegment],
    *,
    route_label: str = "",
) -> MergeOutcome:
    """Consolidate repeated segment entries of one route.

    Additive quantities are summed, the first non-empty norm id wins and every
    other norm id seen for that segment becomes a ConflictWarning. Segments left
    with zero distance and zero actual consumption are dropped.
    """
    grouped: dict[str, list[MergedSegment]] = {}
    for entry in entries:
        seg = _as_segment(entry)
        grouped.setdefault(seg.segment_name, []).append(seg)

    segments: list[MergedSegment] = []
    warnings: list[ConflictWarning] = []
    dropped: list[str] = []

    for name, parts in grouped.items():
        norm_ids = [p.norm_id for p in parts if p.norm_id]
        kept_norm = norm_ids[0] if norm_ids else None
        seen_conflicts: set[str] = set()
        for other in norm_ids[1:]:
            if other != kept_norm and other not in seen_conflicts:
                seen_conflicts.add(other)
                warnings.append(
                    ConflictWarning(
                        route=route_label,
                        segment_name=name,
                        kept_norm_id=kept_norm or "",
                        conflicting_norm_id=other,
                    )
                )

        merged = MergedSegment(
            segment_name=name,
            distance_km=_optional_sum(p.distance_km for p in parts),
            gross_ton_km=_optional_sum(p.gross_ton_km for p in parts),
            actual_consumption=math.fsum(p.actual_consumption for p in parts),
            norm_consumption=_optional_sum(p.norm_consumption for p in parts),
            load=_merged_load(parts),
            norm_id=kept_norm,
            entry_count=sum(p.entry_count for p in parts),
        )
        if not merged.distance_km and not merged.actual_consumption:
            dropped.append(name)
            continue
        segments.append(merged)

    return MergeOutcome(segments=tuple(segments), warnings=tuple(warnings), dropped=tuple(dropped))
