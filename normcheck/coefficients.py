from __future__ import annotations

import re
from collections.abc import Iterable

import numpy as np
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import ValidationError

_NON_ALNUM = re.compile(r"[^0-9A-ZА-ЯЁ]")
AT_NORM_TOLERANCE = 1e-3


def normalize_series(series: object) -> str:
    """Uppercase a locomotive series and keep letters and digits only ("вл-80с" -> "ВЛ80С")."""
    if series is None:
        return ""
    return _NON_ALNUM.sub("", str(series).upper())


class LocomotiveCoefficient(BaseModel):
    model_config = ConfigDict(frozen=True)

    series: str = Field(..., min_length=1)
    number: int
    coefficient: float = Field(..., gt=0)
    work_total: float = Field(default=0.0, ge=0)

    @field_validator("series", mode="before")
    @classmethod
    def strip_series(cls, value: object) -> object:
        return str(value).strip() if value is not None else value

    @property
    def series_normalized(self) -> str:
        return normalize_series(self.series)

    @property
    def deviation_pct(self) -> float:
        return (self.coefficient - 1.0) * 100.0


class CoefficientTable:
    """Per-locomotive consumption coefficients, looked up by normalized series and number."""

    def __init__(self, records: Iterable[LocomotiveCoefficient] = (), *, min_work_threshold: float = 0.0) -> None:
        if min_work_threshold < 0:
            raise ValidationError(
                reason_code="invalid_coefficient",
                message="min_work_threshold must be >= 0",
                details={"min_work_threshold": min_work_threshold},
            )
        self.min_work_threshold = float(min_work_threshold)
        self._by_key: dict[tuple[str, int], LocomotiveCoefficient] = {}
        self.filtered_out = 0
        for record in records:
            if self.min_work_threshold > 0 and record.work_total < self.min_work_threshold:
                self.filtered_out += 1
                continue
            # Later records for the same locomotive win.
            self._by_key[(record.series_normalized, record.number)] = record

    def __len__(self) -> int:
        return len(self._by_key)

    def coefficient(self, series: str | None, number: int | None) -> float:
        if not series or number is None:
            return 1.0
        record = self._by_key.get((normalize_series(series), int(number)))
        return record.coefficient if record is not None else 1.0

    def has(self, series: str | None, number: int | None) -> bool:
        if not series or number is None:
            return False
        return (normalize_series(series), int(number)) in self._by_key

    def series(self) -> list[str]:
        return sorted({series for series, _ in self._by_key})

    def records(self) -> list[LocomotiveCoefficient]:
        return [self._by_key[key] for key in sorted(self._by_key)]

    def statistics(self) -> dict[str, float | int]:
        if not self._by_key:
            return {"count": 0, "series_count": 0}
        values = np.array([r.coefficient for r in self._by_key.values()], dtype=float)
        deviations = (values - 1.0) * 100.0
        return {
            "count": int(values.size),
            "series_count": len(self.series()),
            "mean_coefficient": float(np.mean(values)),
            "min_coefficient": float(np.min(values)),
            "max_coefficient": float(np.max(values)),
            "mean_deviation_pct": float(np.mean(deviations)),
            "above_norm": int(np.sum(values > 1.0 + AT_NORM_TOLERANCE)),
            "below_norm": int(np.sum(values < 1.0 - AT_NORM_TOLERANCE)),
            "at_norm": int(np.sum(np.abs(values - 1.0) <= AT_NORM_TOLERANCE)),
        }
