"""Biofeedback kernel — the single-writer session state machine.

Lifecycle::

    IDLE ──LOAD_PROTOCOL──▶ IDLE (pattern loaded) ──START_SESSION──▶ RUNNING
    RUNNING ⇄ PAUSED           (INTERRUPTION / RESUME)
    RUNNING | PAUSED ──HALT──▶ IDLE
    any ──SAFETY_INTERDICTION(EMERGENCY_HALT)──▶ SAFETY_LOCK ──RESET──▶ IDLE

Everything enters through :meth:`BiofeedbackKernel.dispatch`.  Accepted
events are committed to the :class:`RuntimeState`, appended to a ring-buffer
log, optionally persisted, and announced to subscribers.  Rejected events
leave state untouched; where a rejection is safety-relevant a
``SAFETY_INTERDICTION`` record is dispatched in its place.

Access is synchronous and single-threaded: callers serialise ``dispatch``
and ``tick`` (one logical control loop per kernel).
"""

from __future__ import annotations

import math
import time
from collections import deque
from typing import Any, Callable

import structlog
from pydantic import ValidationError

from biofeedback_engine.config import Settings, get_settings
from biofeedback_engine.estimation import AdaptiveStateEstimator, EstimatorConfig
from biofeedback_engine.kernel.events import (
    AdjustTempo,
    AIVoiceMessage,
    BeliefUpdate,
    Boot,
    CycleComplete,
    Halt,
    InterdictionAction,
    Interruption,
    KernelEvent,
    LoadProtocol,
    LoadSafetyRegistry,
    PhaseTransition,
    Reset,
    Resume,
    SafetyInterdiction,
    StartSession,
    Tick,
)
from biofeedback_engine.kernel.safety import SafetyGuard
from biofeedback_engine.kernel.state import KernelStatus, RuntimeState
from biofeedback_engine.models import (
    PHASE_ORDER,
    BeliefState,
    BreathPattern,
    BreathPhase,
    Observation,
    SafetyProfile,
    get_pattern,
)
from biofeedback_engine.storage import EventRepository

logger = structlog.get_logger(__name__)

StateListener = Callable[[RuntimeState], None]

SAFETY_REGISTRY_META_KEY = "safety_registry"

# Absorbs float drift when many small dt values sum to a phase boundary
_PHASE_EPSILON = 1e-6


def next_phase(pattern: BreathPattern, phase: BreathPhase) -> tuple[BreathPhase, bool]:
    """Return the next non-empty phase and whether the cycle wrapped."""
    idx = PHASE_ORDER.index(phase)
    for step in range(1, len(PHASE_ORDER) + 1):
        candidate = PHASE_ORDER[(idx + step) % len(PHASE_ORDER)]
        if pattern.duration(candidate) > 0:
            return candidate, idx + step >= len(PHASE_ORDER)
    raise ValueError(f"pattern {pattern.id} has no active phase")  # pragma: no cover


class BiofeedbackKernel:
    """Owns one :class:`RuntimeState` and the estimator that feeds it.

    Parameters
    ----------
    settings : Settings | None
        Engine constants; defaults to :func:`get_settings`.
    repository : EventRepository | None
        Persistence collaborator.  Every call is failure-tolerant.
    estimator : AdaptiveStateEstimator | None
        Belief filter run on each tick while a session is active.
    clock : callable
        Epoch-seconds clock for kernel-generated timestamps.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        repository: EventRepository | None = None,
        estimator: AdaptiveStateEstimator | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository
        self._estimator = estimator or AdaptiveStateEstimator(EstimatorConfig.from_settings(self._settings))
        self._guard = SafetyGuard(self._settings)
        self._clock = clock
        self._persisted_types = frozenset(self._settings.persisted_event_types)

        self._state = RuntimeState()
        self._log: deque[KernelEvent] = deque(maxlen=self._settings.event_log_size)
        self._subscribers: list[StateListener] = []

        self._handlers: dict[str, Callable[[Any, list[KernelEvent]], bool]] = {
            "BOOT": self._on_boot,
            "RESET": self._on_reset,
            "LOAD_PROTOCOL": self._on_load_protocol,
            "START_SESSION": self._on_start_session,
            "TICK": self._on_tick,
            "BELIEF_UPDATE": self._on_belief_update,
            "PHASE_TRANSITION": self._on_record,
            "CYCLE_COMPLETE": self._on_record,
            "INTERRUPTION": self._on_interruption,
            "RESUME": self._on_resume,
            "HALT": self._on_halt,
            "SAFETY_INTERDICTION": self._on_safety_interdiction,
            "LOAD_SAFETY_REGISTRY": self._on_load_safety_registry,
            "ADJUST_TEMPO": self._on_adjust_tempo,
            "AI_INTERVENTION": self._on_record,
            "AI_VOICE_MESSAGE": self._on_voice_message,
        }

        self._boot()

    # ── Public API ────────────────────────────────────────────

    def dispatch(self, event: KernelEvent) -> None:
        """Apply *event*, then dispatch any follow-up events it produced."""
        follow_ups: list[KernelEvent] = []
        accepted = self._handlers[event.type](event, follow_ups)
        if accepted:
            self._state = self._state.model_copy(update={"last_event_at": event.timestamp})
            self._log.append(event)
            self._persist(event)
            self._notify()
        for follow_up in follow_ups:
            self.dispatch(follow_up)

    def now(self) -> float:
        """Current time on the kernel's clock, for stamping external events."""
        return self._clock()

    def tick(self, dt: float, observation: Observation | None = None) -> None:
        """Control-loop entry point: interaction handling, phase clock, estimation."""
        if not math.isfinite(dt) or dt < 0.0:
            logger.warning("kernel.invalid_dt", dt=dt)
            dt = 0.0
        obs = observation or Observation(timestamp=self._clock(), delta_time=dt)
        status = self._state.status
        if status is KernelStatus.RUNNING and (
            obs.user_interaction == "pause" or obs.visibility_state == "hidden"
        ):
            kind = "pause" if obs.user_interaction == "pause" else "background"
            self.dispatch(Interruption(kind=kind, timestamp=obs.timestamp))
        elif status is KernelStatus.PAUSED and obs.user_interaction == "resume":
            self.dispatch(Resume(timestamp=obs.timestamp))
        self.dispatch(Tick(dt=dt, observation=obs, timestamp=obs.timestamp))

    def apply_belief_update(self, belief: BeliefState) -> None:
        """Route an externally computed belief through the safety guard."""
        self.dispatch(BeliefUpdate(belief=belief, timestamp=self._clock()))

    def load_safety_registry(self, registry: dict[str, SafetyProfile | dict[str, Any]]) -> None:
        """Replace the whole registry."""
        self.dispatch(LoadSafetyRegistry(registry=registry, timestamp=self._clock()))

    def update_safety_profile(self, pattern_id: str, profile: SafetyProfile | dict[str, Any]) -> None:
        """Replace one registry entry, or patch it with a partial dict."""
        if isinstance(profile, SafetyProfile):
            updated = profile
        else:
            base = self._state.safety_registry.get(pattern_id) or SafetyProfile(pattern_id=pattern_id)
            updated = SafetyProfile.model_validate({**base.model_dump(), **profile, "pattern_id": pattern_id})
        registry = {**self._state.safety_registry, pattern_id: updated}
        self.dispatch(LoadSafetyRegistry(registry=registry, timestamp=self._clock()))

    def get_state(self) -> RuntimeState:
        """Deep-copied snapshot; mutating it never reaches the kernel."""
        return self._state.model_copy(deep=True)

    def subscribe(self, callback: StateListener) -> Callable[[], None]:
        """Register *callback*; returns a function that unregisters it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def get_log_buffer(self) -> list[KernelEvent]:
        return list(self._log)

    def reset(self) -> None:
        self.dispatch(Reset(timestamp=self._clock()))

    # ── Boot ──────────────────────────────────────────────────

    def _boot(self) -> None:
        self.dispatch(Boot(timestamp=self._clock()))
        if self._repository is None:
            return

        try:
            removed = self._repository.garbage_collect(self._clock())
            logger.debug("kernel.garbage_collected", removed=removed)
        except Exception as exc:
            logger.error("kernel.persist_failed", operation="garbage_collect", error=str(exc))

        try:
            raw = self._repository.get_meta(SAFETY_REGISTRY_META_KEY)
        except Exception as exc:
            logger.error("kernel.persist_failed", operation="get_meta", error=str(exc))
            return
        if not raw:
            return
        try:
            registry = {pid: SafetyProfile.model_validate(p) for pid, p in raw.items()}
        except (ValidationError, AttributeError, TypeError) as exc:
            logger.error("kernel.registry_restore_failed", error=str(exc))
            return
        self.load_safety_registry(registry)
        logger.info("kernel.registry_restored", patterns=len(registry))

    # ── Event handlers ────────────────────────────────────────
    # Each returns True when the event is committed to the log.

    def _on_boot(self, event: Boot, follow_ups: list[KernelEvent]) -> bool:
        logger.info("kernel.boot")
        return True

    def _on_record(self, event: KernelEvent, follow_ups: list[KernelEvent]) -> bool:
        return True

    def _on_reset(self, event: Reset, follow_ups: list[KernelEvent]) -> bool:
        self._estimator.reset()
        self._state = RuntimeState(safety_registry=self._state.safety_registry)
        logger.info("kernel.reset")
        return True

    def _on_load_protocol(self, event: LoadProtocol, follow_ups: list[KernelEvent]) -> bool:
        state = self._state
        if state.status is KernelStatus.SAFETY_LOCK:
            logger.warning("kernel.transition_rejected", event_type=event.type, status=state.status.value)
            return False
        try:
            pattern = get_pattern(event.pattern_id)
        except KeyError:
            logger.warning("kernel.unknown_pattern", pattern_id=event.pattern_id)
            return False
        if self._reject_if_locked(pattern.id, event.timestamp, follow_ups):
            return False

        if state.is_active:
            self._end_session()

        self._estimator.set_protocol(pattern)
        first = pattern.first_phase()
        self._state = self._state.model_copy(
            update={
                "status": KernelStatus.IDLE,
                "pattern": pattern,
                "phase": first,
                "phase_elapsed": 0.0,
                "phase_duration": pattern.duration(first),
                "cycle_count": 0,
                "session_duration": 0.0,
                "tempo_scale": self._settings.tempo_min,
                "tempo_target": self._settings.tempo_min,
            }
        )
        logger.info("kernel.protocol_loaded", pattern_id=pattern.id)
        return True

    def _on_start_session(self, event: StartSession, follow_ups: list[KernelEvent]) -> bool:
        state = self._state
        if state.status is KernelStatus.SAFETY_LOCK:
            logger.warning("kernel.start_rejected", reason="safety_lock")
            follow_ups.append(
                SafetyInterdiction(
                    action=InterdictionAction.REJECT_START,
                    pattern_id=state.pattern.id if state.pattern else None,
                    timestamp=event.timestamp,
                )
            )
            return False
        if state.pattern is None:
            logger.warning("kernel.start_rejected", reason="no_pattern")
            return False
        if state.status is not KernelStatus.IDLE:
            logger.warning("kernel.start_rejected", reason="already_active", status=state.status.value)
            return False
        if self._reject_if_locked(state.pattern.id, event.timestamp, follow_ups):
            return False

        first = state.pattern.first_phase()
        self._state = state.model_copy(
            update={
                "status": KernelStatus.RUNNING,
                "phase": first,
                "phase_elapsed": 0.0,
                "phase_duration": state.pattern.duration(first),
                "cycle_count": 0,
                "session_duration": 0.0,
            }
        )
        logger.info("kernel.session_started", pattern_id=state.pattern.id)
        return True

    def _on_tick(self, event: Tick, follow_ups: list[KernelEvent]) -> bool:
        state = self._state
        updates: dict[str, Any] = {"last_observation": event.observation}

        if state.status is KernelStatus.RUNNING and state.pattern is not None:
            updates.update(self._advance_phase(state, event.dt, event.timestamp, follow_ups))
            updates["session_duration"] = state.session_duration + event.dt

        if state.tempo_scale != state.tempo_target:
            updates["tempo_scale"] = self._guard.step_tempo(state.tempo_scale, state.tempo_target)

        self._state = state.model_copy(update=updates)

        if self._state.is_active:
            belief = self._estimator.update(event.observation, event.dt)
            follow_ups.append(BeliefUpdate(belief=belief, timestamp=event.timestamp))
        return True

    def _advance_phase(
        self,
        state: RuntimeState,
        dt: float,
        now: float,
        follow_ups: list[KernelEvent],
    ) -> dict[str, Any]:
        # A larger tempo scale stretches every phase, slowing the guide
        pattern = state.pattern
        phase, duration = state.phase, state.phase_duration
        elapsed = state.phase_elapsed + dt / state.tempo_scale
        cycles = state.cycle_count

        # Whole cycles past the current phase return to the same point
        overshoot = elapsed - duration
        if overshoot >= pattern.cycle_duration:
            folded = int(overshoot // pattern.cycle_duration)
            elapsed -= folded * pattern.cycle_duration
            cycles += folded
            follow_ups.append(CycleComplete(count=cycles, timestamp=now))
            logger.debug("kernel.cycles_folded", folded=folded)

        while elapsed >= duration - _PHASE_EPSILON:
            elapsed = max(0.0, elapsed - duration)
            following, wrapped = next_phase(pattern, phase)
            follow_ups.append(PhaseTransition(from_phase=phase, to_phase=following, timestamp=now))
            if wrapped:
                cycles += 1
                follow_ups.append(CycleComplete(count=cycles, timestamp=now))
            phase, duration = following, pattern.duration(following)

        return {
            "phase": phase,
            "phase_elapsed": elapsed,
            "phase_duration": duration,
            "cycle_count": cycles,
        }

    def _on_belief_update(self, event: BeliefUpdate, follow_ups: list[KernelEvent]) -> bool:
        follow_ups.extend(self._guard.evaluate(self._state, event.belief, event.timestamp))
        self._state = self._state.model_copy(update={"belief": event.belief})
        return True

    def _on_interruption(self, event: Interruption, follow_ups: list[KernelEvent]) -> bool:
        if self._state.status is not KernelStatus.RUNNING:
            return False
        self._state = self._state.model_copy(update={"status": KernelStatus.PAUSED})
        logger.info("kernel.paused", kind=event.kind)
        return True

    def _on_resume(self, event: Resume, follow_ups: list[KernelEvent]) -> bool:
        if self._state.status is not KernelStatus.PAUSED:
            return False
        self._state = self._state.model_copy(update={"status": KernelStatus.RUNNING})
        logger.info("kernel.resumed")
        return True

    def _on_halt(self, event: Halt, follow_ups: list[KernelEvent]) -> bool:
        if not self._state.is_active:
            logger.warning("kernel.transition_rejected", event_type=event.type, status=self._state.status.value)
            return False
        self._end_session()
        self._state = self._state.model_copy(update={"status": KernelStatus.IDLE})
        logger.info("kernel.halted", reason=event.reason)
        return True

    def _on_safety_interdiction(self, event: SafetyInterdiction, follow_ups: list[KernelEvent]) -> bool:
        if event.action is not InterdictionAction.EMERGENCY_HALT:
            return True

        state = self._state
        pattern_id = event.pattern_id or (state.pattern.id if state.pattern else None)
        if pattern_id is not None:
            profile = state.safety_registry.get(pattern_id) or SafetyProfile(pattern_id=pattern_id)
            locked = self._guard.apply_emergency(profile, risk=event.risk_level, now=event.timestamp)
            self._state = state.model_copy(
                update={"safety_registry": {**state.safety_registry, pattern_id: locked}}
            )
            self._save_registry()
        self._state = self._state.model_copy(update={"status": KernelStatus.SAFETY_LOCK})
        logger.warning("kernel.safety_lock", pattern_id=pattern_id, risk_level=round(event.risk_level, 3))
        return True

    def _on_load_safety_registry(self, event: LoadSafetyRegistry, follow_ups: list[KernelEvent]) -> bool:
        self._state = self._state.model_copy(update={"safety_registry": dict(event.registry)})
        logger.info("kernel.registry_loaded", patterns=len(event.registry))
        return True

    def _on_adjust_tempo(self, event: AdjustTempo, follow_ups: list[KernelEvent]) -> bool:
        state = self._state
        if not self._guard.is_meaningful_change(state.tempo_target, event.scale):
            logger.debug("kernel.tempo_ignored", requested=event.scale, target=state.tempo_target)
            return False
        target = self._guard.clamp_tempo(event.scale)
        self._state = state.model_copy(
            update={
                "tempo_target": target,
                "tempo_scale": self._guard.step_tempo(state.tempo_scale, target),
            }
        )
        logger.info("kernel.tempo_adjusted", target=target, source=event.source, reason=event.reason)
        return True

    def _on_voice_message(self, event: AIVoiceMessage, follow_ups: list[KernelEvent]) -> bool:
        logger.info("kernel.voice_message", sentiment=event.sentiment)
        return True

    # ── Internals ─────────────────────────────────────────────

    def _reject_if_locked(self, pattern_id: str, now: float, follow_ups: list[KernelEvent]) -> bool:
        profile = self._state.safety_registry.get(pattern_id)
        if profile is None or not profile.is_locked(now):
            return False
        logger.warning("kernel.pattern_locked", pattern_id=pattern_id, locked_until=profile.safety_lock_until)
        follow_ups.append(
            SafetyInterdiction(
                action=InterdictionAction.PATTERN_LOCKED,
                risk_level=0.0,
                pattern_id=pattern_id,
                timestamp=now,
            )
        )
        return True

    def _end_session(self) -> None:
        """Fold the finished session's outcome into the pattern's profile."""
        state = self._state
        if state.pattern is None:
            return
        pattern_id = state.pattern.id
        profile = state.safety_registry.get(pattern_id) or SafetyProfile(pattern_id=pattern_id)
        updated = self._guard.apply_session_end(
            profile,
            cycles=state.cycle_count,
            prediction_error=state.belief.prediction_error,
        )
        self._state = state.model_copy(update={"safety_registry": {**state.safety_registry, pattern_id: updated}})
        self._save_registry()
        logger.info(
            "kernel.session_ended",
            pattern_id=pattern_id,
            cycles=state.cycle_count,
            outcome=updated.resonance_history[-1],
        )

    def _should_persist(self, event: KernelEvent) -> bool:
        if isinstance(event, SafetyInterdiction) and event.action is InterdictionAction.EMERGENCY_HALT:
            return True
        if event.type not in self._persisted_types:
            return False
        if isinstance(event, AdjustTempo):
            return event.source == "ai"
        return True

    def _persist(self, event: KernelEvent) -> None:
        if self._repository is None or not self._should_persist(event):
            return
        try:
            self._repository.write_event(event)
        except Exception as exc:
            logger.error("kernel.persist_failed", operation="write_event", event_type=event.type, error=str(exc))

    def _save_registry(self) -> None:
        if self._repository is None:
            return
        payload = {pid: p.model_dump(mode="json") for pid, p in self._state.safety_registry.items()}
        try:
            self._repository.set_meta(SAFETY_REGISTRY_META_KEY, payload)
        except Exception as exc:
            logger.error("kernel.persist_failed", operation="set_meta", error=str(exc))

    def _notify(self) -> None:
        for callback in list(self._subscribers):
            try:
                callback(self.get_state())
            except Exception as exc:
                logger.error("kernel.subscriber_error", error=str(exc))
