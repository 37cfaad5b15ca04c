from __future__ import annotations

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Validated settings (env-driven), keeping thresholds and cache policy out of code."""

    model_config = SettingsConfigDict(
        env_file=(".env",),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    out_dir: str = Field(default="out", alias="OUT_DIR")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_file_enabled: bool = Field(default=True, alias="LOG_FILE_ENABLED")

    # Absolute deviation thresholds in percent; a value equal to a threshold
    # belongs to the lower-severity bucket.
    deviation_excellent_max_pct: float = Field(default=5.0, gt=0.0, alias="DEVIATION_EXCELLENT_MAX_PCT")
    deviation_good_max_pct: float = Field(default=10.0, gt=0.0, alias="DEVIATION_GOOD_MAX_PCT")
    deviation_acceptable_max_pct: float = Field(default=20.0, gt=0.0, alias="DEVIATION_ACCEPTABLE_MAX_PCT")
    deviation_poor_max_pct: float = Field(default=30.0, gt=0.0, alias="DEVIATION_POOR_MAX_PCT")

    interpolation_load_eps: float = Field(default=1e-12, gt=0.0, alias="INTERPOLATION_LOAD_EPS")
    interpolation_degenerate_eps: float = Field(default=1e-10, gt=0.0, alias="INTERPOLATION_DEGENERATE_EPS")
    # Unset: a non-degenerate least-squares hyperbola is always used. Set: max relative
    # residual it may leave on any sample before the piecewise-linear model is used.
    hyperbola_fit_tolerance: float | None = Field(default=None, ge=0.0, alias="HYPERBOLA_FIT_TOLERANCE")

    analysis_cache_ttl_s: int = Field(default=3600, ge=1, alias="ANALYSIS_CACHE_TTL_S")
    analysis_cache_max_entries: int = Field(default=256, ge=1, alias="ANALYSIS_CACHE_MAX_ENTRIES")
    analysis_max_workers: int = Field(default=4, ge=1, le=64, alias="ANALYSIS_MAX_WORKERS")

    norm_snapshot_enabled: bool = Field(default=False, alias="NORM_SNAPSHOT_ENABLED")

    @model_validator(mode="after")
    def _thresholds_ascending(self) -> "Settings":
        bounds = (
            self.deviation_excellent_max_pct,
            self.deviation_good_max_pct,
            self.deviation_acceptable_max_pct,
            self.deviation_poor_max_pct,
        )
        if any(lo >= hi for lo, hi in zip(bounds, bounds[1:])):
            raise ValueError("deviation thresholds must be strictly ascending")
        self.log_level = str(self.log_level or "INFO").strip().upper() or "INFO"
        return self


settings = Settings()
