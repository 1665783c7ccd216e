"""Shared Pydantic models used across the engine."""

from __future__ import annotations

import time
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

# ── Enums ─────────────────────────────────────────────────────


class BreathPhase(str, Enum):
    """The four phases of a breathing cycle, in cyclic order."""
    INHALE = "inhale"
    HOLD_IN = "holdIn"
    EXHALE = "exhale"
    HOLD_OUT = "holdOut"


PHASE_ORDER: tuple[BreathPhase, ...] = (
    BreathPhase.INHALE,
    BreathPhase.HOLD_IN,
    BreathPhase.EXHALE,
    BreathPhase.HOLD_OUT,
)


class PhysiologicalCategory(str, Enum):
    """Autonomic effect a breathing protocol aims for.

    Selects the estimator's target belief vector.
    """
    PARASYMPATHETIC = "parasympathetic"
    BALANCED = "balanced"
    SYMPATHETIC = "sympathetic"
    DEFAULT = "default"


class SignalQuality(str, Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"


# ── Breathing protocols ───────────────────────────────────────


class BreathPattern(BaseModel):
    """Static, immutable description of a paced-breathing protocol."""

    model_config = ConfigDict(frozen=True)

    id: str
    label: str
    tag: str = ""
    description: str = ""
    timings: dict[BreathPhase, float]
    recommended_cycles: int = Field(ge=1)
    tier: Literal[1, 2, 3] = 1
    category: PhysiologicalCategory = PhysiologicalCategory.DEFAULT

    @field_validator("timings")
    @classmethod
    def _check_timings(cls, v: dict[BreathPhase, float]) -> dict[BreathPhase, float]:
        full = {phase: float(v.get(phase, 0.0)) for phase in PHASE_ORDER}
        if any(d < 0 for d in full.values()):
            raise ValueError("phase durations must be >= 0")
        if not any(d > 0 for d in full.values()):
            raise ValueError("at least one phase must have a positive duration")
        return full

    def duration(self, phase: BreathPhase) -> float:
        return self.timings[phase]

    @property
    def cycle_duration(self) -> float:
        return sum(self.timings.values())

    @property
    def breaths_per_minute(self) -> float:
        return 60.0 / self.cycle_duration

    def first_phase(self) -> BreathPhase:
        """Return the first phase of a cycle with a non-zero duration."""
        for phase in PHASE_ORDER:
            if self.timings[phase] > 0:
                return phase
        raise ValueError(f"pattern {self.id} has no active phase")  # pragma: no cover


def _pattern(
    pattern_id: str,
    label: str,
    tag: str,
    description: str,
    timings: tuple[float, float, float, float],
    recommended_cycles: int,
    tier: int,
    category: PhysiologicalCategory,
) -> BreathPattern:
    return BreathPattern(
        id=pattern_id,
        label=label,
        tag=tag,
        description=description,
        timings=dict(zip(PHASE_ORDER, timings)),
        recommended_cycles=recommended_cycles,
        tier=tier,
        category=category,
    )


_P = PhysiologicalCategory

BREATHING_PATTERNS: dict[str, BreathPattern] = {
    p.id: p
    for p in (
        _pattern("4-7-8", "Tranquility", "Sleep & Anxiety",
                 "A natural tranquilizer for the nervous system.",
                 (4, 7, 8, 0), 4, 1, _P.PARASYMPATHETIC),
        _pattern("box", "Focus", "Concentration",
                 "Equal-sided breathing to steady attention under pressure.",
                 (4, 4, 4, 4), 6, 1, _P.BALANCED),
        _pattern("calm", "Balance", "Coherence",
                 "Restores balance to your heart rate variability.",
                 (4, 0, 6, 0), 8, 1, _P.BALANCED),
        _pattern("coherence", "Coherence", "Heart Health",
                 "Six breaths per minute, the resonance rate for most adults.",
                 (6, 0, 6, 0), 10, 2, _P.BALANCED),
        _pattern("deep-relax", "Deep Rest", "Stress Relief",
                 "Doubling the exhalation to trigger the parasympathetic system.",
                 (4, 0, 8, 0), 6, 1, _P.PARASYMPATHETIC),
        _pattern("7-11", "7-11", "Deep Calm",
                 "A slow technique for panic and deep anxiety.",
                 (7, 0, 11, 0), 4, 2, _P.PARASYMPATHETIC),
        _pattern("awake", "Energize", "Wake Up",
                 "Fast-paced rhythm to boost alertness and energy levels.",
                 (4, 0, 2, 0), 15, 2, _P.SYMPATHETIC),
        _pattern("triangle", "Triangle", "Yoga",
                 "A geometric pattern for emotional stability and control.",
                 (4, 4, 4, 0), 8, 1, _P.BALANCED),
        _pattern("tactical", "Tactical", "Advanced Focus",
                 "Extended box breathing for high-stress situations.",
                 (5, 5, 5, 5), 5, 2, _P.BALANCED),
        _pattern("buteyko", "Light Air", "Health",
                 "Reduced breathing to improve oxygen uptake.",
                 (3, 0, 3, 4), 12, 3, _P.PARASYMPATHETIC),
        _pattern("wim-hof", "Tummo Power", "Immunity",
                 "Charge the body. Inhale deeply, let go. Repeat.",
                 (2, 0, 1, 15), 30, 3, _P.SYMPATHETIC),
    )
}


def get_pattern(pattern_id: str) -> BreathPattern:
    """Look up a pattern by id.

    Raises :class:`KeyError` if the id is not in the catalogue.
    """
    try:
        return BREATHING_PATTERNS[pattern_id]
    except KeyError:
        raise KeyError(
            f"Unknown breathing pattern {pattern_id!r}. "
            f"Available: {sorted(BREATHING_PATTERNS)}"
        ) from None


# ── Control-loop input / belief ───────────────────────────────


class Observation(BaseModel):
    """A single control-tick input vector.  Never persisted raw."""

    model_config = ConfigDict(frozen=True)

    timestamp: float = Field(default_factory=time.time)
    delta_time: float = Field(0.0, ge=0.0, allow_inf_nan=False)
    user_interaction: Literal["pause", "resume", "touch"] | None = None
    visibility_state: Literal["visible", "hidden"] = "visible"

    heart_rate: float | None = None
    hr_confidence: float | None = Field(None, ge=0.0, le=1.0)
    respiration_rate: float | None = None
    stress_index: float | None = None
    facial_valence: float | None = Field(None, ge=-1.0, le=1.0)


class BeliefState(BaseModel):
    """Point estimates and uncertainty over the latent user state."""

    model_config = ConfigDict(frozen=True)

    arousal: float = Field(0.5, ge=0.0, le=1.0)
    attention: float = Field(0.5, ge=0.0, le=1.0)
    rhythm_alignment: float = Field(0.0, ge=0.0, le=1.0)
    valence: float = Field(0.0, ge=-1.0, le=1.0)

    arousal_variance: float = Field(0.2, ge=0.0)
    attention_variance: float = Field(0.2, ge=0.0)
    rhythm_variance: float = Field(0.3, ge=0.0)

    prediction_error: float = Field(0.0, ge=0.0)
    innovation: float = 0.0
    mahalanobis_distance: float = Field(0.0, ge=0.0)
    confidence: float = Field(0.0, ge=0.0, le=1.0)


# ── Safety registry ───────────────────────────────────────────

RESONANCE_HISTORY_LENGTH = 5


class SafetyProfile(BaseModel):
    """Per-pattern safety accumulators.  Persisted externally."""

    model_config = ConfigDict(frozen=True)

    pattern_id: str
    cumulative_stress_score: float = 0.0
    last_incident_timestamp: float = 0.0
    safety_lock_until: float = 0.0
    resonance_history: tuple[float, ...] = ()

    @field_validator("resonance_history")
    @classmethod
    def _trim_history(cls, v: tuple[float, ...]) -> tuple[float, ...]:
        return tuple(v[-RESONANCE_HISTORY_LENGTH:])

    def is_locked(self, now: float) -> bool:
        return self.safety_lock_until > now

    def record_outcome(self, outcome: float, *, stress: float = 0.0) -> SafetyProfile:
        """Return a copy with *outcome* appended to the rolling history."""
        history = (*self.resonance_history, outcome)[-RESONANCE_HISTORY_LENGTH:]
        return self.model_copy(
            update={
                "resonance_history": history,
                "cumulative_stress_score": self.cumulative_stress_score + stress,
            }
        )


# ── Camera vitals ─────────────────────────────────────────────


class HRVMetrics(BaseModel):
    model_config = ConfigDict(frozen=True)

    rmssd: float  # ms, parasympathetic tone
    sdnn: float  # ms, overall variability
    stress_index: float  # Baevsky approximation, sympathetic tone


class AffectiveState(BaseModel):
    model_config = ConfigDict(frozen=True)

    valence: float = Field(ge=-1.0, le=1.0)
    arousal: float = Field(ge=0.0, le=1.0)
    mood_label: Literal["anxious", "calm", "focused", "neutral", "distracted"] = "neutral"


class VitalSigns(BaseModel):
    """Latest camera-derived vitals as seen by the control loop."""

    model_config = ConfigDict(frozen=True)

    heart_rate: float = 0.0
    respiration_rate: float | None = None
    hrv: HRVMetrics | None = None
    affective: AffectiveState | None = None
    confidence: float = 0.0
    signal_quality: SignalQuality = SignalQuality.POOR
    snr: float = 0.0
    motion_level: float = 0.0
