"""Safety guard — intercepts belief updates and polices tempo changes.

The guard never mutates kernel state itself.  :meth:`SafetyGuard.evaluate`
returns follow-up events which the kernel dispatches like any other, so a
guard decision is indistinguishable in the log from the same command issued
by an external actor.

Rules, evaluated in order for every belief update while a session is
active:

1. ``prediction_error`` above the emergency threshold, once the session
   has run for the minimum duration → ``SAFETY_INTERDICTION`` /
   ``EMERGENCY_HALT``.  Before that the emergency is suppressed.
2. After ``tempo_adapt_after_sec`` of session time, poor rhythm alignment
   asks for the slowest tempo and strong alignment for the nominal one.
   Between the two thresholds nothing is requested.
"""

from __future__ import annotations

import structlog

from biofeedback_engine.config import Settings, get_settings
from biofeedback_engine.kernel.events import AdjustTempo, InterdictionAction, KernelEvent, SafetyInterdiction
from biofeedback_engine.kernel.state import RuntimeState
from biofeedback_engine.models import BeliefState, SafetyProfile

logger = structlog.get_logger(__name__)


class SafetyGuard:
    """Stateless policy object configured from :class:`Settings`."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()

    # ── Belief interception ───────────────────────────────────

    def evaluate(self, state: RuntimeState, belief: BeliefState, now: float) -> list[KernelEvent]:
        s = self._settings
        if not state.is_active:
            return []

        if belief.prediction_error > s.emergency_prediction_error:
            if state.session_duration >= s.min_session_sec_before_emergency:
                logger.warning(
                    "safety.emergency_halt",
                    prediction_error=round(belief.prediction_error, 3),
                    session_duration=round(state.session_duration, 1),
                )
                return [
                    SafetyInterdiction(
                        risk_level=belief.prediction_error,
                        action=InterdictionAction.EMERGENCY_HALT,
                        pattern_id=state.pattern.id if state.pattern else None,
                        timestamp=now,
                    )
                ]
            logger.debug("safety.emergency_suppressed", session_duration=round(state.session_duration, 1))

        if state.session_duration < s.tempo_adapt_after_sec:
            return []

        if belief.rhythm_alignment < s.tempo_low_alignment:
            target, reason = s.tempo_max, "low rhythm alignment"
        elif belief.rhythm_alignment > s.tempo_high_alignment:
            target, reason = s.tempo_min, "rhythm alignment recovered"
        else:
            return []

        if not self.is_meaningful_change(state.tempo_target, target):
            return []
        return [AdjustTempo(scale=target, reason=reason, source="guard", timestamp=now)]

    # ── Tempo discipline ──────────────────────────────────────

    def clamp_tempo(self, scale: float) -> float:
        return max(self._settings.tempo_min, min(self._settings.tempo_max, scale))

    def is_meaningful_change(self, current_target: float, requested: float) -> bool:
        return abs(self.clamp_tempo(requested) - current_target) > self._settings.tempo_deadband

    def step_tempo(self, current: float, target: float) -> float:
        """Move *current* toward *target* by at most one configured step."""
        if target > current:
            return min(target, current + self._settings.tempo_up_step)
        return max(target, current - self._settings.tempo_down_step)

    # ── Safety profiles ───────────────────────────────────────

    def apply_emergency(self, profile: SafetyProfile, *, risk: float, now: float) -> SafetyProfile:
        """Record a failed outcome and lock the pattern out."""
        return profile.record_outcome(0.0, stress=risk).model_copy(
            update={
                "last_incident_timestamp": now,
                "safety_lock_until": now + self._settings.pattern_lockout_sec,
            }
        )

    def apply_session_end(self, profile: SafetyProfile, *, cycles: int, prediction_error: float) -> SafetyProfile:
        success = cycles >= 1 and prediction_error < self._settings.resonance_success_threshold
        return profile.record_outcome(1.0 if success else 0.0, stress=prediction_error)
