from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from .coefficients import LocomotiveCoefficient
from .logging_utils import log_event
from .models import NormCurve, ObservationRow

M = TypeVar("M", bound=BaseModel)


@dataclass(frozen=True)
class RejectedRecord:
    index: int
    message: str

    def as_dict(self) -> dict[str, Any]:
        return {"index": self.index, "message": self.message}


@dataclass(frozen=True)
class ParsedBatch(Generic[M]):
    items: tuple[M, ...] = ()
    rejected: tuple[RejectedRecord, ...] = field(default=())

    @property
    def accepted_count(self) -> int:
        return len(self.items)

    @property
    def rejected_count(self) -> int:
        return len(self.rejected)


def _error_message(exc: PydanticValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts) or str(exc)


def _parse(model: type[M], raw: Iterable[Any], *, kind: str) -> ParsedBatch[M]:
    items: list[M] = []
    rejected: list[RejectedRecord] = []
    for index, record in enumerate(raw):
        if isinstance(record, model):
            items.append(record)
            continue
        if not isinstance(record, Mapping):
            rejected.append(RejectedRecord(index=index, message=f"expected an object, got {type(record).__name__}"))
            continue
        try:
            items.append(model.model_validate(dict(record)))
        except PydanticValidationError as e:
            rejected.append(RejectedRecord(index=index, message=_error_message(e)))

    if rejected:
        log_event(
            "ingestion_records_rejected",
            level=logging.WARNING,
            kind=kind,
            accepted=len(items),
            rejected=len(rejected),
            first_error=rejected[0].message,
        )
    return ParsedBatch(items=tuple(items), rejected=tuple(rejected))


def parse_norm_curves(raw: Iterable[Any]) -> ParsedBatch[NormCurve]:
    return _parse(NormCurve, raw, kind="norm_curve")


def parse_observation_rows(raw: Iterable[Any]) -> ParsedBatch[ObservationRow]:
    return _parse(ObservationRow, raw, kind="observation_row")


def parse_coefficients(raw: Iterable[Any]) -> ParsedBatch[LocomotiveCoefficient]:
    return _parse(LocomotiveCoefficient, raw, kind="locomotive_coefficient")
