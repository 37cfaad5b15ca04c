from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pytest
from fastapi.testclient import TestClient

import normcheck.main as main_module
from normcheck.main import app


def _curves() -> dict[str, Any]:
    return {
        "curves": [
            {"norm_id": "N1", "norm_type": "traction", "points": [[10, 45], [20, 50], [30, 55]]},
            {"norm_id": "BROKEN", "points": [[0, 45]]},
        ]
    }


def _rows() -> dict[str, Any]:
    base = {"trip_date": "2024-01-01", "operator_id": "42", "norm_id": "N1", "load": 20, "distance_km": 10}
    return {
        "rows": [
            {**base, "route_number": "7", "segment_name": "A-B", "actual_consumption": 55},
            {**base, "route_number": "7", "segment_name": "A-B", "actual_consumption": 50},
            {**base, "route_number": "8", "segment_name": "A-B", "actual_consumption": 50},
            {"segment_name": ""},
        ]
    }


@pytest.fixture()
def client() -> Iterator[TestClient]:
    with TestClient(app) as c:
        yield c


def test_health(client: TestClient) -> None:
    assert client.get("/health").json() == {"status": "ok"}


def test_ingest_and_analyze_flow(client: TestClient) -> None:
    norms = client.post("/norms", json=_curves())
    assert norms.status_code == 200
    body = norms.json()
    assert body["results"] == {"N1": "added"}
    assert body["rejected"][0]["index"] == 1

    obs = client.post("/observations", json=_rows())
    assert obs.status_code == 200
    body = obs.json()
    assert body["accepted"] == 3
    assert body["summary"]["canonical_routes"] == 2
    assert body["summary"]["duplicate_groups"] == 1

    resp = client.post("/analyze", json={"segment_name": "A-B"})
    assert resp.status_code == 200
    result = resp.json()
    assert result["total"] == 2
    assert result["analyzed"] == 2
    assert result["histogram"] == {"excellent": 1, "good": 1}
    assert result["statistics"]["worst"] == "good"
    assert len(result["cache_key"]) == 64

    sections = client.get("/sections").json()["sections"]
    assert sections == [{"name": "A-B", "route_count": 2, "single_section_routes": 2, "norm_ids": ["N1"]}]
    assert client.get("/sections/A-B/norms").json() == {"section": "A-B", "norms": {"N1": 2}}

    stats = client.get("/cache/stats").json()
    assert stats["analysis"]["size"] == 1
    assert client.delete("/cache").json() == {"cleared": 1}


def test_analyze_errors_map_to_http(client: TestClient) -> None:
    assert client.post("/analyze", json={"segment_name": "  "}).status_code == 400
    assert client.get("/sections/nowhere/norms").status_code == 404

    empty = client.post("/analyze", json={"segment_name": "nowhere"})
    assert empty.status_code == 200
    assert empty.json()["total"] == 0
    assert empty.json()["histogram"] == {}


def test_validate_norms(client: TestClient) -> None:
    client.post(
        "/norms",
        json={"curves": [{"norm_id": "S", "points": [[10, 45]]}, {"norm_id": "E", "points": []}]},
    )
    report = client.get("/norms/validate").json()
    assert "S" in report["healthy"]
    assert "E" in report["invalid"]
    assert "S" in report["warnings"]


def test_coefficients_endpoint(client: TestClient) -> None:
    resp = client.post(
        "/coefficients",
        json={
            "coefficients": [
                {"series": "ВЛ80С", "number": 1, "coefficient": 1.1, "work_total": 10},
                {"series": "ВЛ80С", "number": 2, "coefficient": 0.9, "work_total": 500},
                {"series": "ВЛ80С", "number": 3, "coefficient": -1},
            ],
            "min_work_threshold": 100,
        },
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["accepted"] == 2
    assert body["loaded"] == 1
    assert body["filtered_out"] == 1
    assert body["rejected"][0]["index"] == 2


def test_snapshot_warm_start(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(main_module.settings, "out_dir", str(tmp_path))
    monkeypatch.setattr(main_module.settings, "norm_snapshot_enabled", True)

    with TestClient(app) as c:
        assert c.post("/norms", json=_curves()).status_code == 200
    assert (tmp_path / "snapshots" / "norm_curves.json").exists()

    with TestClient(app) as c:
        report = c.get("/norms/validate").json()
        assert report["healthy"] == ["N1"]
