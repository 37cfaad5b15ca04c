from __future__ import annotations

import hashlib
import json
from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _finite(v: float) -> float:
    if v != v or v in (float("inf"), float("-inf")):
        raise ValueError("value must be finite")
    return v


def _blank_to_none(value: object) -> object:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        if isinstance(value, float) and value.is_integer():
            value = int(value)
        return str(value)
    if isinstance(value, str):
        text = value.strip()
        return text or None
    return value


class SamplePoint(BaseModel):
    """One (load, consumption) sample of a norm curve; both strictly positive."""

    model_config = ConfigDict(frozen=True)

    load: float = Field(..., gt=0)
    consumption: float = Field(..., gt=0)

    @field_validator("load", "consumption")
    @classmethod
    def finite(cls, v: float) -> float:
        return _finite(v)

    def as_tuple(self) -> tuple[float, float]:
        return (self.load, self.consumption)


class NormCurve(BaseModel):
    model_config = ConfigDict(frozen=True)

    norm_id: str = Field(..., min_length=1)
    norm_type: str = "unknown"
    description: str = ""
    points: tuple[SamplePoint, ...] = ()
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("norm_id", mode="before")
    @classmethod
    def strip_id(cls, value: object) -> object:
        return _blank_to_none(value) or ""

    @field_validator("points", mode="before")
    @classmethod
    def accept_pairs(cls, value: object) -> object:
        if not isinstance(value, (list, tuple)):
            return value
        out: list[object] = []
        for item in value:
            if isinstance(item, (list, tuple)) and len(item) == 2:
                out.append({"load": item[0], "consumption": item[1]})
            else:
                out.append(item)
        return out

    @field_validator("points")
    @classmethod
    def sort_by_load(cls, value: tuple[SamplePoint, ...]) -> tuple[SamplePoint, ...]:
        return tuple(sorted(value, key=lambda p: p.load))

    @property
    def load_range(self) -> tuple[float, float]:
        if not self.points:
            return 0.0, 0.0
        return self.points[0].load, self.points[-1].load


class Provenance(BaseModel):
    """Where an observation row came from: the source document and when it was recorded."""

    model_config = ConfigDict(frozen=True)

    source_id: str = ""
    recorded_at: datetime | None = None

    @field_validator("source_id", mode="before")
    @classmethod
    def strip_source(cls, value: object) -> object:
        return _blank_to_none(value) or ""

    def recorded_ts(self) -> float:
        if self.recorded_at is None:
            return float("-inf")
        return self.recorded_at.timestamp()


class ObservationRow(BaseModel):
    model_config = ConfigDict(frozen=True)

    route_number: str | None = None
    trip_date: date | None = None
    operator_id: str | None = None
    segment_name: str = Field(..., min_length=1)
    norm_id: str | None = None
    load: float | None = Field(default=None, gt=0)
    actual_consumption: float = Field(default=0.0, ge=0)
    norm_consumption: float | None = Field(default=None, ge=0)
    distance_km: float | None = Field(default=None, ge=0)
    gross_ton_km: float | None = Field(default=None, ge=0)
    locomotive_series: str | None = None
    locomotive_number: int | None = None
    provenance: Provenance = Field(default_factory=Provenance)

    @field_validator("route_number", "operator_id", "norm_id", "locomotive_series", mode="before")
    @classmethod
    def normalize_text(cls, value: object) -> object:
        return _blank_to_none(value)

    @field_validator("segment_name", mode="before")
    @classmethod
    def strip_segment(cls, value: object) -> object:
        return _blank_to_none(value) or ""

    @field_validator("trip_date", mode="before")
    @classmethod
    def blank_date(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        if isinstance(value, datetime):
            return value.date()
        return value

    @field_validator("load", "actual_consumption", "norm_consumption", "distance_km", "gross_ton_km")
    @classmethod
    def finite(cls, v: float | None) -> float | None:
        if v is None:
            return v
        return _finite(v)

    def optional_field_count(self) -> int:
        """How many optional descriptive fields carry a value (used to rank duplicates)."""
        values = (
            self.norm_id,
            self.load,
            self.norm_consumption,
            self.distance_km,
            self.gross_ton_km,
            self.locomotive_series,
            self.locomotive_number,
        )
        return sum(1 for v in values if v is not None)


class AnalysisRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    segment_name: str = ""
    norm_id: str | None = None
    single_section_only: bool = False
    apply_coefficients: bool = False

    @field_validator("segment_name", mode="before")
    @classmethod
    def strip_segment(cls, value: object) -> object:
        if value is None:
            return ""
        return value.strip() if isinstance(value, str) else value

    @field_validator("norm_id", mode="before")
    @classmethod
    def blank_norm(cls, value: object) -> object:
        return _blank_to_none(value)

    def cache_key(self) -> str:
        material = json.dumps(self.model_dump(mode="json"), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(material.encode("utf-8")).hexdigest()


class NormBatchRequest(BaseModel):
    curves: list[dict[str, Any]] = Field(default_factory=list)


class ObservationBatchRequest(BaseModel):
    rows: list[dict[str, Any]] = Field(default_factory=list)
    replace: bool = False


class CoefficientBatchRequest(BaseModel):
    coefficients: list[dict[str, Any]] = Field(default_factory=list)
    min_work_threshold: float = Field(default=0.0, ge=0)
