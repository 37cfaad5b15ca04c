from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import date
from enum import Enum

from .models import ObservationRow


class KeyCompleteness(str, Enum):
    COMPLETE = "complete"
    PARTIAL = "partial"


@dataclass(frozen=True)
class RouteKey:
    route_number: str | None
    trip_date: date | None
    operator_id: str | None
    completeness: KeyCompleteness

    @classmethod
    def of_row(cls, row: ObservationRow) -> "RouteKey":
        parts = (row.route_number, row.trip_date, row.operator_id)
        completeness = KeyCompleteness.COMPLETE if all(p is not None for p in parts) else KeyCompleteness.PARTIAL
        return cls(
            route_number=row.route_number,
            trip_date=row.trip_date,
            operator_id=row.operator_id,
            completeness=completeness,
        )

    @property
    def is_complete(self) -> bool:
        return self.completeness is KeyCompleteness.COMPLETE

    @property
    def label(self) -> str:
        trip_date = self.trip_date.isoformat() if self.trip_date is not None else "-"
        return f"{self.route_number or '-'}_{trip_date}_{self.operator_id or '-'}"

    def as_dict(self) -> dict[str, object]:
        return {
            "route_number": self.route_number,
            "trip_date": self.trip_date.isoformat() if self.trip_date is not None else None,
            "operator_id": self.operator_id,
            "completeness": self.completeness.value,
        }


@dataclass(frozen=True)
class DiscardedVersion:
    """A losing route version; kept for audit only."""

    key: RouteKey
    source_id: str
    row_indexes: tuple[int, ...]

    def as_dict(self) -> dict[str, object]:
        return {
            "key": self.key.as_dict(),
            "source_id": self.source_id,
            "row_indexes": list(self.row_indexes),
        }


@dataclass(frozen=True)
class CanonicalRoute:
    key: RouteKey
    rows: tuple[ObservationRow, ...]
    row_indexes: tuple[int, ...]
    source_id: str
    duplicate_count: int
    discarded: tuple[DiscardedVersion, ...] = ()

    @property
    def label(self) -> str:
        return self.key.label

    @property
    def kept_row_count(self) -> int:
        return len(self.rows)

    @property
    def discarded_row_count(self) -> int:
        return sum(len(version.row_indexes) for version in self.discarded)

    def as_dict(self) -> dict[str, object]:
        return {
            "key": self.key.as_dict(),
            "label": self.label,
            "source_id": self.source_id,
            "duplicate_count": self.duplicate_count,
            "row_indexes": list(self.row_indexes),
            "discarded": [version.as_dict() for version in self.discarded],
        }


@dataclass
class _Version:
    source_id: str
    first_index: int
    indexes: list[int]
    rows: list[ObservationRow]

    def rank(self) -> tuple[int, float, float, int]:
        # max() picks the winner: most complete, then highest consumption, then
        # most recent, then earliest in the input.
        return (
            sum(row.optional_field_count() for row in self.rows),
            sum(row.actual_consumption for row in self.rows),
            max(row.provenance.recorded_ts() for row in self.rows),
            -self.first_index,
        )


def _versions(indexed_rows: Sequence[tuple[int, ObservationRow]]) -> list[_Version]:
    versions: list[_Version] = []
    by_source: dict[str, _Version] = {}
    for index, row in indexed_rows:
        source_id = row.provenance.source_id
        version = by_source.get(source_id) if source_id else None
        if version is None:
            version = _Version(source_id=source_id, first_index=index, indexes=[], rows=[])
            versions.append(version)
            if source_id:
                by_source[source_id] = version
        version.indexes.append(index)
        version.rows.append(row)
    return versions


def resolve_duplicates(rows: Iterable[ObservationRow]) -> list[CanonicalRoute]:
    """Group rows by natural key and keep one route version per group.

    Rows whose key is missing a component never join a group: each one becomes
    its own canonical route. Output order follows the first appearance of each
    group in the input.
    """
    groups: dict[RouteKey, list[tuple[int, ObservationRow]]] = {}
    order: list[RouteKey | int] = []
    singles: dict[int, tuple[RouteKey, ObservationRow]] = {}

    for index, row in enumerate(rows):
        key = RouteKey.of_row(row)
        if not key.is_complete:
            singles[index] = (key, row)
            order.append(index)
            continue
        if key not in groups:
            groups[key] = []
            order.append(key)
        groups[key].append((index, row))

    out: list[CanonicalRoute] = []
    for item in order:
        if isinstance(item, int):
            key, row = singles[item]
            out.append(
                CanonicalRoute(
                    key=key,
                    rows=(row,),
                    row_indexes=(item,),
                    source_id=row.provenance.source_id,
                    duplicate_count=1,
                )
            )
            continue

        versions = _versions(groups[item])
        winner = max(versions, key=lambda v: v.rank())
        discarded = tuple(
            DiscardedVersion(key=item, source_id=v.source_id, row_indexes=tuple(v.indexes))
            for v in versions
            if v is not winner
        )
        out.append(
            CanonicalRoute(
                key=item,
                rows=tuple(winner.rows),
                row_indexes=tuple(winner.indexes),
                source_id=winner.source_id,
                duplicate_count=len(versions),
                discarded=discarded,
            )
        )
    return out


def resolution_summary(routes: Sequence[CanonicalRoute]) -> dict[str, int]:
    kept = sum(route.kept_row_count for route in routes)
    discarded = sum(route.discarded_row_count for route in routes)
    return {
        "input_rows": kept + discarded,
        "canonical_routes": len(routes),
        "kept_rows": kept,
        "discarded_rows": discarded,
        "duplicate_groups": sum(1 for route in routes if route.duplicate_count > 1),
        "partial_keys": sum(1 for route in routes if not route.key.is_complete),
    }
