from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Literal

import numpy as np

from .errors import DegenerateModelError, ValidationError
from .logging_utils import log_event
from .models import SamplePoint
from .settings import settings

FunctionKind = Literal["constant", "hyperbolic", "linear"]


@dataclass(frozen=True)
class InterpolationFunction:
    """Load -> consumption mapping derived from a norm curve's sample points.

    - ``constant``: ``b`` everywhere
    - ``hyperbolic``: ``a / load + b``; loads <= 0 evaluate at the smallest sampled load
    - ``linear``: piecewise-linear through ``loads``/``consumptions``, clamped outside
    """

    kind: FunctionKind
    a: float = 0.0
    b: float = 0.0
    loads: tuple[float, ...] = ()
    consumptions: tuple[float, ...] = ()

    def __call__(self, load: float) -> float:
        x = float(load)
        if self.kind == "constant":
            return self.b
        if self.kind == "hyperbolic":
            if x <= 0.0:
                x = self.loads[0]
            return self.a / x + self.b
        return float(np.interp(x, self.loads, self.consumptions))

    def as_dict(self) -> dict[str, object]:
        return {
            "kind": self.kind,
            "a": round(self.a, 9),
            "b": round(self.b, 9),
            "loads": list(self.loads),
            "consumptions": list(self.consumptions),
        }


def _normalize_points(points: Sequence[SamplePoint | tuple[float, float]]) -> list[tuple[float, float]]:
    out: list[tuple[float, float]] = []
    for idx, pt in enumerate(points):
        if not isinstance(pt, SamplePoint):
            try:
                load, consumption = pt
                pt = SamplePoint(load=load, consumption=consumption)
            except (TypeError, ValueError) as e:
                raise ValidationError(
                    reason_code="invalid_sample_point",
                    message="sample points need a positive, finite load and consumption",
                    details={"index": idx, "point": repr(pt)},
                ) from e
        out.append(pt.as_tuple())
    # Stable: equal loads keep their input order.
    out.sort(key=lambda p: p[0])
    return out


def _constant(pts: list[tuple[float, float]]) -> InterpolationFunction:
    avg = float(np.mean([y for _, y in pts]))
    return InterpolationFunction(
        kind="constant",
        b=avg,
        loads=tuple(x for x, _ in pts),
        consumptions=tuple(y for _, y in pts),
    )


def _linear(pts: list[tuple[float, float]]) -> InterpolationFunction:
    # Collapse duplicate loads to their mean consumption so the knots are strictly increasing.
    loads: list[float] = []
    consumptions: list[list[float]] = []
    for x, y in pts:
        if loads and x == loads[-1]:
            consumptions[-1].append(y)
        else:
            loads.append(x)
            consumptions.append([y])
    ys = [float(np.mean(group)) for group in consumptions]
    if len(loads) == 1:
        return InterpolationFunction(kind="constant", b=ys[0], loads=tuple(loads), consumptions=tuple(ys))
    return InterpolationFunction(kind="linear", loads=tuple(loads), consumptions=tuple(ys))


def _two_point(pts: list[tuple[float, float]], *, load_eps: float) -> InterpolationFunction:
    (x1, y1), (x2, y2) = pts
    if abs(x2 - x1) < load_eps:
        return _constant(pts)
    # y1 = a/x1 + b, y2 = a/x2 + b
    a = (y1 - y2) * x1 * x2 / (x2 - x1)
    b = (y2 * x2 - y1 * x1) / (x2 - x1)
    return InterpolationFunction(kind="hyperbolic", a=a, b=b, loads=(x1, x2), consumptions=(y1, y2))


def _least_squares(pts: list[tuple[float, float]], *, degenerate_eps: float) -> InterpolationFunction:
    x = np.array([p[0] for p in pts], dtype=float)
    y = np.array([p[1] for p in pts], dtype=float)
    if np.any(x == 0.0):
        raise DegenerateModelError(
            reason_code="degenerate_model",
            message="zero load in sample points",
            details={"loads": x.tolist()},
        )

    n = float(len(pts))
    inv_x = 1.0 / x
    sum_inv_x = float(np.sum(inv_x))
    sum_inv_x2 = float(np.sum(inv_x * inv_x))
    sum_y = float(np.sum(y))
    sum_y_inv_x = float(np.sum(y * inv_x))

    # Normal equations:
    # [sum(1/x^2)  sum(1/x)] [a]   [sum(y/x)]
    # [sum(1/x)    n       ] [b] = [sum(y)  ]
    det = sum_inv_x2 * n - sum_inv_x * sum_inv_x
    scale = max(1.0, sum_inv_x2 * n)
    if abs(det) <= degenerate_eps * scale:
        raise DegenerateModelError(
            reason_code="degenerate_model",
            message="degenerate normal equations for hyperbolic fit",
            details={"determinant": det, "points": len(pts)},
        )

    a = (sum_y_inv_x * n - sum_y * sum_inv_x) / det
    b = (sum_inv_x2 * sum_y - sum_inv_x * sum_y_inv_x) / det
    return InterpolationFunction(
        kind="hyperbolic",
        a=a,
        b=b,
        loads=tuple(float(v) for v in x),
        consumptions=tuple(float(v) for v in y),
    )


def max_relative_residual(fn: InterpolationFunction, pts: Sequence[tuple[float, float]]) -> float:
    worst = 0.0
    for x, y in pts:
        residual = abs(fn(x) - y) / max(abs(y), 1e-12)
        worst = max(worst, residual)
    return worst


def build_interpolation(
    points: Sequence[SamplePoint | tuple[float, float]],
    *,
    load_eps: float | None = None,
    degenerate_eps: float | None = None,
    fit_tolerance: float | None = None,
) -> InterpolationFunction:
    """Build the interpolation function for a norm curve's sample points.

    1 point gives a constant, 2 points the exact hyperbola ``a/load + b``,
    3+ points a least-squares hyperbola. Degenerate fits fall back to piecewise-linear
    interpolation through the sorted samples. When ``fit_tolerance`` is set (off by
    default), a fit whose worst relative residual exceeds it falls back the same way.

    Raw ``(load, consumption)`` tuples are validated like ``SamplePoint``; a
    non-positive or non-finite coordinate raises ``ValidationError``.
    """
    pts = _normalize_points(points)
    if not pts:
        raise ValidationError(reason_code="empty_curve", message="norm curve has no sample points")

    load_eps = settings.interpolation_load_eps if load_eps is None else load_eps
    degenerate_eps = settings.interpolation_degenerate_eps if degenerate_eps is None else degenerate_eps
    fit_tolerance = settings.hyperbola_fit_tolerance if fit_tolerance is None else fit_tolerance

    if len(pts) == 1:
        return _constant(pts)
    if len(pts) == 2:
        return _two_point(pts, load_eps=load_eps)

    try:
        fitted = _least_squares(pts, degenerate_eps=degenerate_eps)
    except DegenerateModelError as e:
        log_event(
            "interpolation_degenerate_fallback",
            level=logging.WARNING,
            reason=e.message,
            point_count=len(pts),
            details=e.details,
        )
        return _linear(pts)

    if fit_tolerance is None:
        return fitted
    residual = max_relative_residual(fitted, pts)
    if residual > fit_tolerance:
        log_event(
            "interpolation_fit_rejected",
            level=logging.DEBUG,
            point_count=len(pts),
            max_relative_residual=round(residual, 6),
            fit_tolerance=fit_tolerance,
        )
        return _linear(pts)
    return fitted
