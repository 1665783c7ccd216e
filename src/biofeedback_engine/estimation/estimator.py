"""Adaptive state estimator — recursive fusion of noisy physiological input.

Maintains a :class:`BeliefState` over four latent dimensions (arousal,
attention, rhythm alignment, valence) and refreshes it once per control
tick.

Model
-----
1. **Predict** — every dimension relaxes toward the loaded protocol's target
   vector with a first-order lag ``1 - exp(-dt / tau)``; process variance
   grows by ``q_base * dt``.
2. **Correct** — per-dimension updates:

   =================  =====================================================
   Dimension          Update
   =================  =====================================================
   Arousal            Scalar Kalman step on fused HR / stress index, gated
                      by a Mahalanobis outlier test
   Rhythm alignment   Kalman step on respiration-rate match (noisy, gated)
   Valence            Exponential blend with the facial valence proxy
   Attention          Decay when distracted, linear recovery otherwise
   =================  =====================================================

3. **Derive** — prediction error (RMS distance from target) and an overall
   confidence score.

Outliers are absorbed locally as variance inflation; nothing here raises.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

import structlog

from biofeedback_engine.config import Settings, get_settings
from biofeedback_engine.models import (
    BeliefState,
    BreathPattern,
    Observation,
    PhysiologicalCategory,
)

logger = structlog.get_logger(__name__)

# ── Constants ─────────────────────────────────────────────────

_TAU_AROUSAL = 15.0
_TAU_RHYTHM = 10.0
_TAU_VALENCE = 8.0
_TAU_ATTENTION = 5.0

_MIN_HR_CONFIDENCE = 0.3
_HR_REST = 50.0  # bpm mapped to arousal 0
_HR_SPAN = 70.0  # bpm mapped to a full arousal unit
_STRESS_INDEX_HIGH = 300.0
_HR_WEIGHT = 0.6

_VALENCE_KEEP = 0.8
_DISTRACTION_DECAY = 0.95
_ATTENTION_RECOVERY_RATE = 0.15  # per second

_OUTLIER_VARIANCE_BUMP = 0.01
_RESPIRATION_TOLERANCE_BPM = 3.0
_RESPIRATION_EXTRA_NOISE = 0.5


@dataclass(frozen=True, slots=True)
class TargetState:
    arousal: float
    attention: float
    rhythm_alignment: float
    valence: float


PROTOCOL_TARGETS: dict[PhysiologicalCategory, TargetState] = {
    PhysiologicalCategory.PARASYMPATHETIC: TargetState(0.2, 0.5, 0.8, 0.6),
    PhysiologicalCategory.BALANCED: TargetState(0.4, 0.7, 0.9, 0.5),
    PhysiologicalCategory.SYMPATHETIC: TargetState(0.7, 0.8, 0.6, 0.7),
    PhysiologicalCategory.DEFAULT: TargetState(0.5, 0.6, 0.7, 0.5),
}


@dataclass(frozen=True, slots=True)
class EstimatorConfig:
    q_base: float = 0.01
    r_base: float = 0.15
    adaptive_r: bool = True
    r_adaptation_rate: float = 0.2
    outlier_threshold: float = 3.0

    @classmethod
    def from_settings(cls, settings: Settings) -> EstimatorConfig:
        return cls(
            q_base=settings.estimator_q_base,
            r_base=settings.estimator_r_base,
            adaptive_r=settings.estimator_adaptive_r,
            r_adaptation_rate=settings.estimator_r_adaptation_rate,
            outlier_threshold=settings.estimator_outlier_threshold,
        )


def _clamp(value: float, lo: float = 0.0, hi: float = 1.0) -> float:
    return max(lo, min(hi, value))


@dataclass(slots=True)
class _Scalar:
    """Result of one gated Kalman correction."""

    value: float
    variance: float
    innovation: float
    distance: float
    accepted: bool


def _kalman_step(
    predicted: float,
    variance: float,
    measured: float,
    noise: float,
    threshold: float,
) -> _Scalar:
    s = variance + noise
    innovation = measured - predicted
    distance = math.sqrt(innovation * innovation / s)
    if distance > threshold:
        return _Scalar(predicted, variance + _OUTLIER_VARIANCE_BUMP, 0.0, distance, False)
    gain = variance / s
    return _Scalar(
        predicted + gain * innovation,
        (1.0 - gain) * variance,
        innovation,
        distance,
        True,
    )


class AdaptiveStateEstimator:
    """Per-dimension predict / correct filter over the user's latent state.

    Parameters
    ----------
    config : EstimatorConfig | None
        Filter constants.  Defaults to values from :func:`get_settings`.
    """

    def __init__(self, config: EstimatorConfig | None = None) -> None:
        self._config = config or EstimatorConfig.from_settings(get_settings())
        self._target = PROTOCOL_TARGETS[PhysiologicalCategory.DEFAULT]
        self._pattern: BreathPattern | None = None
        self._belief = BeliefState()

    # ── Protocol ──────────────────────────────────────────────

    def set_protocol(self, pattern: BreathPattern | None) -> None:
        """Swap the target vector; ``None`` restores the default target."""
        self._pattern = pattern
        category = pattern.category if pattern else PhysiologicalCategory.DEFAULT
        self._target = PROTOCOL_TARGETS.get(category, PROTOCOL_TARGETS[PhysiologicalCategory.DEFAULT])

    @property
    def target(self) -> TargetState:
        return self._target

    @property
    def belief(self) -> BeliefState:
        return self._belief.model_copy()

    def reset(self) -> None:
        self._belief = BeliefState()
        self.set_protocol(None)

    # ── Update ────────────────────────────────────────────────

    def update(self, obs: Observation, dt: float) -> BeliefState:
        """Run one predict / correct cycle and return a copy of the belief."""
        dt = max(0.0, dt)
        predicted = self._predict(dt)
        corrected = self._correct(predicted, obs, dt)

        certainty = 1.0 - min(1.0, (corrected["arousal_variance"] + corrected["attention_variance"]) / 2)
        sensor_quality = obs.hr_confidence if obs.hr_confidence is not None else 0.5

        self._belief = BeliefState(
            **corrected,
            prediction_error=self._prediction_error(corrected["arousal"], corrected["rhythm_alignment"]),
            confidence=_clamp(math.sqrt(max(0.0, certainty * sensor_quality))),
        )
        return self._belief.model_copy()

    def _predict(self, dt: float) -> dict[str, float]:
        b, t = self._belief, self._target

        def relax(value: float, target: float, tau: float) -> float:
            return value + (1.0 - math.exp(-dt / tau)) * (target - value)

        q = self._config.q_base * dt
        return {
            "arousal": _clamp(relax(b.arousal, t.arousal, _TAU_AROUSAL)),
            "attention": _clamp(relax(b.attention, t.attention, _TAU_ATTENTION)),
            "rhythm_alignment": _clamp(relax(b.rhythm_alignment, t.rhythm_alignment, _TAU_RHYTHM)),
            "valence": _clamp(relax(b.valence, t.valence, _TAU_VALENCE), -1.0, 1.0),
            "arousal_variance": b.arousal_variance + q,
            "attention_variance": b.attention_variance + q,
            "rhythm_variance": b.rhythm_variance + q,
        }

    def _measurement_noise(self, confidence: float) -> float:
        r = self._config.r_base
        if self._config.adaptive_r:
            r += (1.0 - confidence) * self._config.r_adaptation_rate
        return r

    def _correct(self, p: dict[str, float], obs: Observation, dt: float) -> dict[str, float]:
        c = dict(p)
        innovation = 0.0
        mahalanobis = 0.0
        hr_ok = (
            obs.heart_rate is not None
            and obs.hr_confidence is not None
            and obs.hr_confidence > _MIN_HR_CONFIDENCE
        )

        # Arousal: fused HR + stress index
        if hr_ok:
            measured = (obs.heart_rate - _HR_REST) / _HR_SPAN
            if obs.stress_index is not None:
                stress_norm = min(1.0, obs.stress_index / _STRESS_INDEX_HIGH)
                measured = _HR_WEIGHT * measured + (1.0 - _HR_WEIGHT) * stress_norm
            step = _kalman_step(
                p["arousal"],
                p["arousal_variance"],
                _clamp(measured),
                self._measurement_noise(obs.hr_confidence),
                self._config.outlier_threshold,
            )
            c["arousal"], c["arousal_variance"] = step.value, step.variance
            innovation, mahalanobis = step.innovation, step.distance
            if not step.accepted:
                logger.debug("estimator.outlier_rejected", dimension="arousal", distance=round(step.distance, 3))

        # Rhythm: respiration rate vs the protocol's breathing rate
        if hr_ok and obs.respiration_rate is not None and self._pattern is not None:
            mismatch = abs(obs.respiration_rate - self._pattern.breaths_per_minute)
            step = _kalman_step(
                p["rhythm_alignment"],
                p["rhythm_variance"],
                math.exp(-mismatch / _RESPIRATION_TOLERANCE_BPM),
                self._measurement_noise(obs.hr_confidence) + _RESPIRATION_EXTRA_NOISE,
                self._config.outlier_threshold,
            )
            c["rhythm_alignment"], c["rhythm_variance"] = step.value, step.variance

        # Valence: already a bounded, smoothed proxy
        if obs.facial_valence is not None:
            c["valence"] = _VALENCE_KEEP * c["valence"] + (1.0 - _VALENCE_KEEP) * obs.facial_valence

        distracted = obs.user_interaction == "pause" or obs.visibility_state == "hidden"
        if distracted:
            c["attention"] = p["attention"] * _DISTRACTION_DECAY
        else:
            c["attention"] = min(1.0, c["attention"] + _ATTENTION_RECOVERY_RATE * dt)

        c["arousal"] = _clamp(c["arousal"])
        c["attention"] = _clamp(c["attention"])
        c["rhythm_alignment"] = _clamp(c["rhythm_alignment"])
        c["valence"] = _clamp(c["valence"], -1.0, 1.0)
        c["innovation"] = innovation
        c["mahalanobis_distance"] = mahalanobis
        return c

    def _prediction_error(self, arousal: float, rhythm: float) -> float:
        err_arousal = (arousal - self._target.arousal) ** 2
        err_rhythm = (rhythm - self._target.rhythm_alignment) ** 2
        return math.sqrt(0.5 * err_arousal + 0.5 * err_rhythm)
