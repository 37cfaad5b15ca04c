from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass
from enum import IntEnum

from .errors import ValidationError
from .settings import settings


class DeviationStatus(IntEnum):
    EXCELLENT = 0
    GOOD = 1
    ACCEPTABLE = 2
    POOR = 3
    CRITICAL = 4

    @property
    def label(self) -> str:
        return self.name.lower()


@dataclass(frozen=True)
class DeviationThresholds:
    """Upper bounds (absolute percent) of the Excellent/Good/Acceptable/Poor buckets."""

    excellent: float = 5.0
    good: float = 10.0
    acceptable: float = 20.0
    poor: float = 30.0

    def __post_init__(self) -> None:
        bounds = self.as_tuple()
        if any(not math.isfinite(b) or b <= 0.0 for b in bounds) or any(
            lo >= hi for lo, hi in zip(bounds, bounds[1:])
        ):
            raise ValidationError(
                reason_code="invalid_thresholds",
                message="deviation thresholds must be positive and strictly ascending",
                details={"thresholds": list(bounds)},
            )

    @classmethod
    def from_settings(cls) -> "DeviationThresholds":
        return cls(
            excellent=settings.deviation_excellent_max_pct,
            good=settings.deviation_good_max_pct,
            acceptable=settings.deviation_acceptable_max_pct,
            poor=settings.deviation_poor_max_pct,
        )

    def as_tuple(self) -> tuple[float, float, float, float]:
        return (self.excellent, self.good, self.acceptable, self.poor)


@dataclass(frozen=True)
class BatchClassification:
    statuses: tuple[DeviationStatus, ...]
    histogram: dict[DeviationStatus, int]
    worst: DeviationStatus | None
    problematic_fraction: float

    @property
    def total(self) -> int:
        return len(self.statuses)

    def as_dict(self) -> dict[str, object]:
        return {
            "total": self.total,
            "histogram": {status.label: count for status, count in self.histogram.items()},
            "worst": self.worst.label if self.worst is not None else None,
            "problematic_fraction": round(self.problematic_fraction, 6),
        }


class DeviationClassifier:
    def __init__(self, thresholds: DeviationThresholds | None = None) -> None:
        self.thresholds = thresholds or DeviationThresholds.from_settings()

    def classify(self, percent: float) -> DeviationStatus:
        value = float(percent)
        if not math.isfinite(value):
            raise ValidationError(
                reason_code="invalid_request",
                message="deviation percent must be finite",
                details={"percent": str(percent)},
            )
        magnitude = abs(value)
        for status, bound in zip(DeviationStatus, self.thresholds.as_tuple()):
            if magnitude <= bound:
                return status
        return DeviationStatus.CRITICAL

    @staticmethod
    def severity(status: DeviationStatus) -> int:
        return int(status)

    @staticmethod
    def requires_corrective_action(status: DeviationStatus) -> bool:
        return status >= DeviationStatus.POOR

    @staticmethod
    def is_acceptable(status: DeviationStatus) -> bool:
        return status <= DeviationStatus.ACCEPTABLE

    def classify_batch(self, percents: Iterable[float]) -> BatchClassification:
        statuses = tuple(self.classify(p) for p in percents)
        histogram: dict[DeviationStatus, int] = {}
        for status in sorted(statuses):
            histogram[status] = histogram.get(status, 0) + 1
        problematic = sum(1 for s in statuses if self.requires_corrective_action(s))
        return BatchClassification(
            statuses=statuses,
            histogram=histogram,
            worst=max(statuses) if statuses else None,
            problematic_fraction=(problematic / len(statuses)) if statuses else 0.0,
        )
