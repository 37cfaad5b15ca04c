from __future__ import annotations

import logging
from pathlib import Path

import pytest
from pydantic import ValidationError as PydanticValidationError

import normcheck.logging_utils as logging_utils
from normcheck.errors import (
    FROZEN_REASON_CODES,
    AnalysisCancelledError,
    DegenerateModelError,
    NormDataError,
    NotFoundError,
    ValidationError,
    normalize_reason_code,
)
from normcheck.models import AnalysisRequest, SamplePoint
from normcheck.settings import Settings


def test_error_hierarchy_and_message() -> None:
    for cls in (ValidationError, NotFoundError, DegenerateModelError, AnalysisCancelledError):
        err = cls(reason_code="invalid_request", message="bad input", details={"x": 1})
        assert isinstance(err, NormDataError)
        assert isinstance(err, ValueError)
        assert str(err) == "bad input"
        assert err.details == {"x": 1}


def test_normalize_reason_code() -> None:
    assert normalize_reason_code("norm_not_found") == "norm_not_found"
    assert normalize_reason_code("  analysis_cancelled ") == "analysis_cancelled"
    assert normalize_reason_code("made_up") == "invalid_request"
    assert normalize_reason_code("", default="empty_curve") == "empty_curve"
    assert "degenerate_model" in FROZEN_REASON_CODES


@pytest.mark.parametrize("point", [{"load": 0, "consumption": 1}, {"load": 1, "consumption": -2}, {"load": float("inf"), "consumption": 1}])
def test_sample_point_rejects_bad_coordinates(point: dict[str, float]) -> None:
    with pytest.raises(PydanticValidationError):
        SamplePoint(**point)


def test_request_cache_key_is_stable() -> None:
    a = AnalysisRequest(segment_name="A-B", norm_id="N1")
    b = AnalysisRequest(segment_name=" A-B ", norm_id=" N1 ")
    c = AnalysisRequest(segment_name="A-B", norm_id="N1", single_section_only=True)
    assert a.cache_key() == b.cache_key()
    assert a.cache_key() != c.cache_key()


def test_settings_reject_non_ascending_thresholds(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DEVIATION_GOOD_MAX_PCT", "50")
    with pytest.raises(PydanticValidationError):
        Settings()


def test_logger_file_handler_follows_settings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(logging_utils.settings, "out_dir", str(tmp_path))

    monkeypatch.setattr(logging_utils.settings, "log_file_enabled", False)
    quiet = logging_utils.get_logger("normcheck_test_nofile")
    assert not any(isinstance(h, logging.FileHandler) for h in quiet.handlers)

    monkeypatch.setattr(logging_utils.settings, "log_file_enabled", True)
    noisy = logging_utils.get_logger("normcheck_test_file")
    files = [h for h in noisy.handlers if isinstance(h, logging.FileHandler)]
    assert len(files) == 1
    assert Path(files[0].baseFilename) == tmp_path / "logs" / "normcheck_test_file.log.jsonl"
    assert logging_utils.get_logger("normcheck_test_file") is noisy
    for handler in files:
        handler.close()


def test_settings_read_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ANALYSIS_CACHE_TTL_S", "120")
    monkeypatch.setenv("LOG_LEVEL", "debug")
    cfg = Settings()
    assert cfg.analysis_cache_ttl_s == 120
    assert cfg.log_level == "DEBUG"


def test_hyperbola_fit_tolerance_is_off_by_default(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("HYPERBOLA_FIT_TOLERANCE", raising=False)
    assert Settings().hyperbola_fit_tolerance is None
    monkeypatch.setenv("HYPERBOLA_FIT_TOLERANCE", "0.01")
    assert Settings().hyperbola_fit_tolerance == 0.01
