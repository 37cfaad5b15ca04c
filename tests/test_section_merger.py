from __future__ import annotations

import itertools
from typing import Any

import pytest

from normcheck.models import ObservationRow
from normcheck.section_merger import MergedSegment, merge_segments


def _entry(segment: str, **overrides: Any) -> ObservationRow:
    payload: dict[str, Any] = {"segment_name": segment, "actual_consumption": 10.0, "distance_km": 5.0}
    payload.update(overrides)
    return ObservationRow.model_validate(payload)


def test_repeated_segments_are_summed() -> None:
    outcome = merge_segments(
        [
            _entry("A-B", distance_km=10.0, gross_ton_km=1000.0, actual_consumption=30.0, norm_consumption=28.0),
            _entry("B-C", distance_km=4.0, actual_consumption=8.0),
            _entry("A-B", distance_km=5.0, gross_ton_km=500.0, actual_consumption=15.0, norm_consumption=14.0),
        ]
    )
    assert [s.segment_name for s in outcome.segments] == ["A-B", "B-C"]
    merged = outcome.segment("A-B")
    assert merged is not None
    assert merged.distance_km == pytest.approx(15.0)
    assert merged.gross_ton_km == pytest.approx(1500.0)
    assert merged.actual_consumption == pytest.approx(45.0)
    assert merged.norm_consumption == pytest.approx(42.0)
    assert merged.entry_count == 2
    assert outcome.warnings == ()


def test_first_norm_id_wins_and_conflicts_are_recorded() -> None:
    outcome = merge_segments(
        [
            _entry("A-B"),
            _entry("A-B", norm_id="N1"),
            _entry("A-B", norm_id="N2"),
            _entry("A-B", norm_id="N1"),
            _entry("A-B", norm_id="N2"),
        ],
        route_label="7_2024-01-01_42",
    )
    merged = outcome.segment("A-B")
    assert merged is not None
    assert merged.norm_id == "N1"
    assert len(outcome.warnings) == 1
    warning = outcome.warnings[0]
    assert (warning.route, warning.kept_norm_id, warning.conflicting_norm_id) == ("7_2024-01-01_42", "N1", "N2")
    assert "N2" in warning.message


def test_load_is_distance_weighted() -> None:
    outcome = merge_segments(
        [
            _entry("A-B", distance_km=30.0, load=10.0),
            _entry("A-B", distance_km=10.0, load=30.0),
        ]
    )
    assert outcome.segments[0].load == pytest.approx(15.0)


def test_load_plain_mean_when_distance_missing() -> None:
    outcome = merge_segments(
        [
            _entry("A-B", distance_km=None, load=10.0),
            _entry("A-B", distance_km=None, load=30.0),
        ]
    )
    assert outcome.segments[0].load == pytest.approx(20.0)


def test_empty_segments_are_dropped() -> None:
    outcome = merge_segments(
        [
            _entry("A-B", distance_km=0.0, actual_consumption=0.0),
            _entry("B-C", distance_km=None, actual_consumption=0.0),
            _entry("C-D"),
        ]
    )
    assert [s.segment_name for s in outcome.segments] == ["C-D"]
    assert outcome.dropped == ("A-B", "B-C")


def test_additive_fields_are_order_independent() -> None:
    entries = [
        _entry("A-B", distance_km=0.1, actual_consumption=0.7, gross_ton_km=1.3, load=11.0),
        _entry("A-B", distance_km=0.2, actual_consumption=0.1, gross_ton_km=2.9, load=17.0),
        _entry("A-B", distance_km=0.3, actual_consumption=0.2, gross_ton_km=0.3, load=23.0),
        _entry("A-B", distance_km=1e-9, actual_consumption=1e9, gross_ton_km=7.7, load=5.0),
    ]
    baseline = merge_segments(entries).segments[0]
    for perm in itertools.permutations(entries):
        merged = merge_segments(perm).segments[0]
        assert merged.distance_km == baseline.distance_km
        assert merged.actual_consumption == baseline.actual_consumption
        assert merged.gross_ton_km == baseline.gross_ton_km
        assert merged.load == baseline.load


def test_merging_merged_output_is_idempotent() -> None:
    outcome = merge_segments(
        [
            _entry("A-B", distance_km=10.0, load=12.0, norm_id="N1"),
            _entry("B-C", distance_km=3.0, load=20.0),
            _entry("A-B", distance_km=6.0, load=20.0, norm_id="N1"),
        ]
    )
    again = merge_segments(outcome.segments)
    assert again.segments == outcome.segments
    assert again.warnings == ()


def test_specific_actual_uses_gross_ton_km() -> None:
    seg = MergedSegment(segment_name="A-B", actual_consumption=50.0, gross_ton_km=10_000.0)
    assert seg.specific_actual == pytest.approx(50.0)
    seg = MergedSegment(segment_name="A-B", actual_consumption=50.0, gross_ton_km=20_000.0)
    assert seg.specific_actual == pytest.approx(25.0)
    assert MergedSegment(segment_name="A-B", actual_consumption=55.0).specific_actual == 55.0
