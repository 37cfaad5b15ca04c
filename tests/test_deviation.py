from __future__ import annotations

import math

import pytest

from normcheck.deviation import DeviationClassifier, DeviationStatus, DeviationThresholds
from normcheck.errors import ValidationError


@pytest.mark.parametrize(
    ("percent", "expected"),
    [
        (0.0, DeviationStatus.EXCELLENT),
        (5.0, DeviationStatus.EXCELLENT),
        (-5.0, DeviationStatus.EXCELLENT),
        (5.0001, DeviationStatus.GOOD),
        (10.0, DeviationStatus.GOOD),
        (-10.0, DeviationStatus.GOOD),
        (10.0001, DeviationStatus.ACCEPTABLE),
        (20.0, DeviationStatus.ACCEPTABLE),
        (20.5, DeviationStatus.POOR),
        (30.0, DeviationStatus.POOR),
        (-30.0, DeviationStatus.POOR),
        (30.01, DeviationStatus.CRITICAL),
        (-250.0, DeviationStatus.CRITICAL),
    ],
)
def test_boundaries_belong_to_lower_bucket(percent: float, expected: DeviationStatus) -> None:
    assert DeviationClassifier(DeviationThresholds()).classify(percent) is expected


def test_classification_is_monotonic_in_magnitude() -> None:
    classifier = DeviationClassifier(DeviationThresholds())
    magnitudes = [step * 0.05 for step in range(800)]
    statuses = [classifier.classify(m) for m in magnitudes]
    assert statuses == sorted(statuses)
    assert [classifier.classify(-m) for m in magnitudes] == statuses


def test_corrective_action_and_acceptability() -> None:
    classifier = DeviationClassifier(DeviationThresholds())
    assert [classifier.requires_corrective_action(s) for s in DeviationStatus] == [False, False, False, True, True]
    assert [classifier.is_acceptable(s) for s in DeviationStatus] == [True, True, True, False, False]
    assert [classifier.severity(s) for s in DeviationStatus] == [0, 1, 2, 3, 4]


def test_custom_thresholds() -> None:
    classifier = DeviationClassifier(DeviationThresholds(excellent=1, good=2, acceptable=3, poor=4))
    assert classifier.classify(2.0) is DeviationStatus.GOOD
    assert classifier.classify(4.5) is DeviationStatus.CRITICAL


@pytest.mark.parametrize(
    "bounds",
    [
        (5.0, 5.0, 20.0, 30.0),
        (10.0, 5.0, 20.0, 30.0),
        (0.0, 10.0, 20.0, 30.0),
        (-1.0, 10.0, 20.0, 30.0),
        (5.0, 10.0, 20.0, math.inf),
    ],
)
def test_invalid_thresholds_rejected(bounds: tuple[float, float, float, float]) -> None:
    with pytest.raises(ValidationError) as exc:
        DeviationThresholds(*bounds)
    assert exc.value.reason_code == "invalid_thresholds"


@pytest.mark.parametrize("value", [math.nan, math.inf, -math.inf])
def test_non_finite_percent_rejected(value: float) -> None:
    with pytest.raises(ValidationError):
        DeviationClassifier().classify(value)


def test_default_thresholds_follow_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    from normcheck import deviation

    monkeypatch.setattr(deviation.settings, "deviation_excellent_max_pct", 2.0)
    classifier = DeviationClassifier()
    assert classifier.thresholds.excellent == 2.0
    assert classifier.classify(3.0) is DeviationStatus.GOOD


def test_classify_batch_summary() -> None:
    classifier = DeviationClassifier(DeviationThresholds())
    batch = classifier.classify_batch([1.0, -7.0, 12.0, 25.0, 40.0, -2.0])
    assert batch.total == 6
    assert batch.histogram == {
        DeviationStatus.EXCELLENT: 2,
        DeviationStatus.GOOD: 1,
        DeviationStatus.ACCEPTABLE: 1,
        DeviationStatus.POOR: 1,
        DeviationStatus.CRITICAL: 1,
    }
    assert batch.worst is DeviationStatus.CRITICAL
    assert batch.problematic_fraction == pytest.approx(2 / 6)
    assert batch.as_dict()["histogram"]["excellent"] == 2


def test_classify_batch_empty() -> None:
    batch = DeviationClassifier(DeviationThresholds()).classify_batch([])
    assert batch.total == 0
    assert batch.histogram == {}
    assert batch.worst is None
    assert batch.problematic_fraction == 0.0
