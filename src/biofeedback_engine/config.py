"""Centralised engine settings loaded from environment / .env file."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent


class Settings(BaseSettings):
    """All runtime constants for the biofeedback engine.

    Values are read from environment variables first, then from a *.env* file
    located at the project root.  Every variable lives in the flat
    ``BIOFEEDBACK_`` namespace (e.g. ``BIOFEEDBACK_TEMPO_MAX=1.25``).
    """

    model_config = SettingsConfigDict(
        env_prefix="BIOFEEDBACK_",
        env_file=str(_PROJECT_ROOT / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Clocks ────────────────────────────────────────────────
    control_hz: float = 10.0
    max_frame_dt_sec: float = 0.1
    max_control_steps_per_frame: int = 3

    # ── Vitals bounds ─────────────────────────────────────────
    hr_hard_min: float = 30.0
    hr_hard_max: float = 220.0
    hr_soft_min: float = 40.0
    hr_soft_max: float = 200.0

    # ── Tempo control ─────────────────────────────────────────
    tempo_min: float = 1.0
    tempo_max: float = 1.3
    tempo_up_step: float = 0.002
    tempo_down_step: float = 0.001
    tempo_low_alignment: float = 0.35
    tempo_high_alignment: float = 0.8
    tempo_deadband: float = 0.01
    tempo_adapt_after_sec: float = 10.0

    # ── Safety guard ──────────────────────────────────────────
    min_session_sec_before_emergency: float = 10.0
    emergency_prediction_error: float = 0.95
    pattern_lockout_sec: float = 24 * 60 * 60
    resonance_success_threshold: float = 0.5

    # ── Persistence ───────────────────────────────────────────
    retention_sec: float = 7 * 24 * 60 * 60
    persisted_event_types: list[str] = [
        "START_SESSION",
        "HALT",
        "SAFETY_INTERDICTION",
        "CYCLE_COMPLETE",
        "ADJUST_TEMPO",
    ]
    event_log_size: int = 1000

    # ── State estimator ───────────────────────────────────────
    estimator_q_base: float = 0.01
    estimator_r_base: float = 0.15
    estimator_adaptive_r: bool = True
    estimator_r_adaptation_rate: float = 0.2
    estimator_outlier_threshold: float = 3.0

    # ── Camera capture ────────────────────────────────────────
    capture_fps: float = 30.0
    buffer_seconds: float = 6.0
    min_buffer_samples: int = 64

    # ── Logging ───────────────────────────────────────────────
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"


@lru_cache
def get_settings() -> Settings:
    """Return a cached :class:`Settings` singleton."""
    return Settings()
