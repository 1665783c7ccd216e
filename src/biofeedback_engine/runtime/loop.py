"""Fixed-rate control loop between the capture cadence and the kernel.

Render / capture frames arrive at an irregular rate.  Each frame's delta
is clamped, accumulated, and drained in fixed ``1 / control_hz`` steps,
never more than ``max_control_steps_per_frame`` per call: a stalled
frame cannot burst the kernel with catch-up ticks.
"""

from __future__ import annotations

import time
from typing import Callable, Literal

import structlog

from biofeedback_engine.config import Settings, get_settings
from biofeedback_engine.kernel import BiofeedbackKernel
from biofeedback_engine.models import Observation, VitalSigns

logger = structlog.get_logger(__name__)

_STEP_EPSILON = 1e-9
_SOFT_BOUND_PENALTY = 0.5

Interaction = Literal["pause", "resume", "touch"]


class ControlLoop:
    """Drives :meth:`BiofeedbackKernel.tick` at a fixed control rate.

    Parameters
    ----------
    kernel : BiofeedbackKernel
        The kernel to tick.
    settings : Settings | None
        Clock and vitals-bound constants.
    clock : callable
        Epoch-seconds clock used to timestamp observations.
    """

    def __init__(
        self,
        kernel: BiofeedbackKernel,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._kernel = kernel
        self._settings = settings or get_settings()
        self._clock = clock
        self._step_sec = 1.0 / self._settings.control_hz
        self._accumulator = 0.0
        self._pending_interaction: Interaction | None = None
        self.dropped_sec = 0.0

    @property
    def step_sec(self) -> float:
        return self._step_sec

    def advance(
        self,
        frame_dt: float,
        vitals: VitalSigns | None = None,
        *,
        interaction: Interaction | None = None,
        visibility: Literal["visible", "hidden"] = "visible",
    ) -> int:
        """Feed one frame's delta; returns the number of kernel ticks run."""
        s = self._settings
        self._accumulator += min(max(0.0, frame_dt), s.max_frame_dt_sec)
        if interaction is not None:
            self._pending_interaction = interaction

        steps = 0
        while self._accumulator + _STEP_EPSILON >= self._step_sec and steps < s.max_control_steps_per_frame:
            obs = self.build_observation(vitals, interaction=self._pending_interaction, visibility=visibility)
            self._pending_interaction = None
            self._kernel.tick(self._step_sec, obs)
            self._accumulator = max(0.0, self._accumulator - self._step_sec)
            steps += 1

        if self._accumulator + _STEP_EPSILON >= self._step_sec:
            self.dropped_sec += self._accumulator
            logger.warning("control_loop.backlog_dropped", dropped_sec=round(self._accumulator, 4))
            self._accumulator = 0.0
        return steps

    def build_observation(
        self,
        vitals: VitalSigns | None,
        *,
        interaction: Interaction | None = None,
        visibility: Literal["visible", "hidden"] = "visible",
    ) -> Observation:
        """Sanitise camera vitals into an estimator observation.

        Heart rate outside the hard bounds is dropped; outside the soft
        bounds its confidence is halved.  A zero-confidence reading is
        omitted altogether.
        """
        s = self._settings
        heart_rate: float | None = None
        hr_confidence: float | None = None
        if vitals is not None and vitals.heart_rate > 0:
            hr = vitals.heart_rate
            if s.hr_hard_min <= hr <= s.hr_hard_max:
                confidence = max(0.0, min(1.0, vitals.confidence))
                if not s.hr_soft_min <= hr <= s.hr_soft_max:
                    confidence *= _SOFT_BOUND_PENALTY
                if confidence > 0:
                    heart_rate, hr_confidence = hr, confidence
            else:
                logger.debug("control_loop.hr_out_of_bounds", heart_rate=round(hr, 1))

        return Observation(
            timestamp=self._clock(),
            delta_time=self._step_sec,
            user_interaction=interaction,
            visibility_state=visibility,
            heart_rate=heart_rate,
            hr_confidence=hr_confidence,
            respiration_rate=vitals.respiration_rate if vitals else None,
            stress_index=vitals.hrv.stress_index if vitals and vitals.hrv else None,
            facial_valence=vitals.affective.valence if vitals and vitals.affective else None,
        )
