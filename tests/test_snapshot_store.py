from __future__ import annotations

import json
from pathlib import Path

import pytest

from normcheck import snapshot_store
from normcheck.models import NormCurve


@pytest.fixture()
def out_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.setattr(snapshot_store.settings, "out_dir", str(tmp_path))
    return tmp_path


def test_save_and_load_roundtrip(out_dir: Path) -> None:
    curves = [
        NormCurve(norm_id="N1", norm_type="traction", points=[(10, 45), (20, 50)], metadata={"page": 3}),
        NormCurve(norm_id="N2", points=[(15, 30)]),
    ]
    assert snapshot_store.save_curve_snapshot(curves) == 2
    assert (out_dir / "snapshots" / "norm_curves.json").exists()

    loaded, updated_at = snapshot_store.load_curve_snapshot()
    assert loaded == curves
    assert updated_at is not None


def test_load_missing_snapshot_is_empty(out_dir: Path) -> None:
    assert snapshot_store.load_curve_snapshot() == ([], None)


def test_malformed_entries_are_skipped(out_dir: Path) -> None:
    path = out_dir / "snapshots" / "norm_curves.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps(
            {
                "updated_at": "2024-01-01T00:00:00+00:00",
                "curves": [
                    {"norm_id": "N1", "points": [{"load": 10, "consumption": 45}]},
                    {"norm_id": "", "points": []},
                    "junk",
                ],
            }
        ),
        encoding="utf-8",
    )
    loaded, updated_at = snapshot_store.load_curve_snapshot()
    assert [c.norm_id for c in loaded] == ["N1"]
    assert updated_at == "2024-01-01T00:00:00+00:00"


def test_unreadable_snapshot_is_empty(out_dir: Path) -> None:
    path = out_dir / "snapshots" / "norm_curves.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("{not json", encoding="utf-8")
    assert snapshot_store.load_curve_snapshot() == ([], None)


def test_clear_snapshot(out_dir: Path) -> None:
    assert snapshot_store.clear_curve_snapshot() == 0
    snapshot_store.save_curve_snapshot([NormCurve(norm_id="N1", points=[(10, 45)])])
    assert snapshot_store.clear_curve_snapshot() == 1
    assert snapshot_store.load_curve_snapshot() == ([], None)
