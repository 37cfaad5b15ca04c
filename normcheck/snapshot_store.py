from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from datetime import UTC, datetime
from pathlib import Path
from threading import Lock
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from .logging_utils import log_event
from .models import NormCurve
from .settings import settings


_LOCK = Lock()


def _snapshot_path() -> Path:
    path = Path(settings.out_dir) / "snapshots" / "norm_curves.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def _read_snapshot() -> dict[str, Any]:
    path = _snapshot_path()
    if not path.exists():
        return {}

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        log_event("norm_snapshot_unreadable", level=logging.WARNING, path=str(path), error=str(e))
        return {}

    if not isinstance(raw, dict):
        return {}
    return raw


def save_curve_snapshot(curves: Iterable[NormCurve]) -> int:
    entries = [curve.model_dump(mode="json") for curve in curves]
    payload = {
        "updated_at": datetime.now(UTC).isoformat(),
        "curves": entries,
    }
    with _LOCK:
        path = _snapshot_path()
        path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    return len(entries)


def load_curve_snapshot() -> tuple[list[NormCurve], str | None]:
    with _LOCK:
        payload = _read_snapshot()

    updated_at = payload.get("updated_at")
    raw_curves = payload.get("curves")
    if not isinstance(raw_curves, list):
        return [], None

    curves: list[NormCurve] = []
    skipped = 0
    for entry in raw_curves:
        if not isinstance(entry, dict):
            skipped += 1
            continue
        try:
            curves.append(NormCurve.model_validate(entry))
        except PydanticValidationError:
            skipped += 1
    if skipped:
        log_event("norm_snapshot_entries_skipped", level=logging.WARNING, skipped=skipped, loaded=len(curves))
    return curves, updated_at if isinstance(updated_at, str) else None


def clear_curve_snapshot() -> int:
    with _LOCK:
        path = _snapshot_path()
        if not path.exists():
            return 0
        payload = _read_snapshot()
        raw_curves = payload.get("curves")
        count = len(raw_curves) if isinstance(raw_curves, list) else 0
        path.write_text("{}", encoding="utf-8")
        return count
