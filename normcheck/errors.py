from __future__ import annotations

from dataclasses import dataclass
from typing import Any

FROZEN_REASON_CODES: frozenset[str] = frozenset(
    {
        "invalid_request",
        "invalid_sample_point",
        "invalid_thresholds",
        "invalid_coefficient",
        "empty_curve",
        "norm_not_found",
        "section_not_found",
        "degenerate_model",
        "analysis_cancelled",
    }
)


@dataclass
class NormDataError(ValueError):
    reason_code: str
    message: str
    details: dict[str, Any] | None = None

    def __str__(self) -> str:
        return self.message


class ValidationError(NormDataError):
    """Malformed input rejected synchronously; callers must not retry it unchanged."""


class NotFoundError(NormDataError):
    pass


class DegenerateModelError(NormDataError):
    """Raised inside the interpolation engine and recovered there with a linear fallback."""


class AnalysisCancelledError(NormDataError):
    pass


def normalize_reason_code(reason_code: str, *, default: str = "invalid_request") -> str:
    code = str(reason_code or "").strip()
    if code in FROZEN_REASON_CODES:
        return code
    return default
