"""Tests for the session kernel and its safety guard."""

from __future__ import annotations

import math

import pytest

from biofeedback_engine.config import Settings
from biofeedback_engine.kernel import BiofeedbackKernel, InterdictionAction, KernelStatus
from biofeedback_engine.kernel.events import (
    AdjustTempo,
    BeliefUpdate,
    Halt,
    LoadProtocol,
    SafetyInterdiction,
    StartSession,
)
from biofeedback_engine.models import BREATHING_PATTERNS, BeliefState, BreathPhase, Observation, SafetyProfile


def _start(kernel: BiofeedbackKernel, pattern_id: str) -> None:
    kernel.dispatch(LoadProtocol(pattern_id=pattern_id))
    kernel.dispatch(StartSession())


def _interdictions(kernel: BiofeedbackKernel, action: InterdictionAction) -> list:
    return [
        e for e in kernel.get_log_buffer()
        if isinstance(e, SafetyInterdiction) and e.action is action
    ]


def _belief(**overrides) -> BeliefState:
    values = {"arousal": 0.5, "attention": 0.5, "rhythm_alignment": 0.5, "valence": 0.0}
    values.update(overrides)
    return BeliefState(**values)


class TestKernelLifecycle:
    """Core state-machine transitions."""

    def test_initial_state_is_idle(self, kernel):
        state = kernel.get_state()
        assert state.status is KernelStatus.IDLE
        assert state.phase is BreathPhase.INHALE
        assert state.cycle_count == 0
        assert state.pattern is None

    def test_boot_is_logged(self, kernel):
        assert kernel.get_log_buffer()[0].type == "BOOT"

    def test_load_protocol(self, kernel):
        kernel.dispatch(LoadProtocol(pattern_id="4-7-8"))
        state = kernel.get_state()
        assert state.pattern is not None
        assert state.pattern.id == "4-7-8"
        assert state.phase_duration == 4

    def test_unknown_pattern_is_rejected(self, kernel):
        kernel.dispatch(LoadProtocol(pattern_id="does-not-exist"))
        assert kernel.get_state().pattern is None
        assert all(e.type != "LOAD_PROTOCOL" for e in kernel.get_log_buffer())

    def test_start_without_pattern_is_rejected(self, kernel):
        kernel.dispatch(StartSession())
        assert kernel.get_state().status is KernelStatus.IDLE

    def test_box_phase_transition(self, kernel):
        _start(kernel, "box")
        assert kernel.get_state().status is KernelStatus.RUNNING

        kernel.tick(4.1)
        state = kernel.get_state()
        assert state.phase is BreathPhase.HOLD_IN
        assert state.phase_duration == 4

    def test_cycle_count_increments_at_boundary(self, kernel):
        _start(kernel, "awake")
        kernel.tick(4.1)
        assert kernel.get_state().phase is BreathPhase.EXHALE

        kernel.tick(2.1)
        state = kernel.get_state()
        assert state.phase is BreathPhase.INHALE
        assert state.cycle_count == 1
        assert any(e.type == "CYCLE_COMPLETE" for e in kernel.get_log_buffer())

    def test_zero_length_phases_are_skipped(self, kernel):
        _start(kernel, "calm")  # 4-0-6-0
        kernel.tick(4.0)
        assert kernel.get_state().phase is BreathPhase.EXHALE
        transitions = [e for e in kernel.get_log_buffer() if e.type == "PHASE_TRANSITION"]
        assert [(t.from_phase, t.to_phase) for t in transitions] == [(BreathPhase.INHALE, BreathPhase.EXHALE)]

    def test_large_dt_spans_several_phases(self, kernel):
        _start(kernel, "box")  # 16 s cycle
        kernel.tick(16 * 3 + 5)
        state = kernel.get_state()
        assert state.cycle_count == 3
        assert state.phase is BreathPhase.HOLD_IN
        assert state.phase_elapsed == pytest.approx(1.0)

    def test_huge_dt_folds_whole_cycles(self, kernel):
        _start(kernel, "box")
        kernel.tick(16 * 1000 + 3)
        state = kernel.get_state()
        assert state.cycle_count == 1000
        assert state.phase is BreathPhase.INHALE
        assert state.phase_elapsed == pytest.approx(3.0)
        transitions = [e for e in kernel.get_log_buffer() if e.type == "PHASE_TRANSITION"]
        assert len(transitions) == 4

    @pytest.mark.parametrize("dt", [math.inf, math.nan, -1.0])
    def test_invalid_dt_does_not_advance(self, kernel, dt):
        _start(kernel, "box")
        kernel.tick(dt)
        state = kernel.get_state()
        assert state.phase is BreathPhase.INHALE
        assert state.phase_elapsed == 0.0
        assert state.session_duration == 0.0

    def test_slower_tempo_stretches_cycle(self, mock_repository, clock):
        settings = Settings(_env_file=None, tempo_up_step=1.0, tempo_adapt_after_sec=1e9)
        kernel = BiofeedbackKernel(settings=settings, repository=mock_repository, clock=clock)
        _start(kernel, "box")
        kernel.dispatch(AdjustTempo(scale=1.3, source="user"))
        assert kernel.get_state().tempo_scale == pytest.approx(1.3)

        kernel.tick(16 * 1.3 - 0.1)
        assert kernel.get_state().cycle_count == 0
        kernel.tick(0.2)
        assert kernel.get_state().cycle_count == 1

    @pytest.mark.parametrize("pattern_id", sorted(BREATHING_PATTERNS))
    @pytest.mark.parametrize("dt", [0.1, 0.25, 1 / 30])
    def test_one_full_cycle_for_every_pattern(self, kernel, pattern_id, dt):
        _start(kernel, pattern_id)
        cycle = BREATHING_PATTERNS[pattern_id].cycle_duration
        steps = round(cycle / dt)
        for _ in range(steps):
            kernel.tick(dt)
        state = kernel.get_state()
        assert state.cycle_count == 1
        assert state.phase is BreathPhase.INHALE

    def test_pause_and_resume_via_observation(self, kernel):
        _start(kernel, "box")
        kernel.tick(1.0, Observation(user_interaction="pause"))
        assert kernel.get_state().status is KernelStatus.PAUSED

        kernel.tick(3.0)
        assert kernel.get_state().phase_elapsed == pytest.approx(0.0)

        kernel.tick(1.0, Observation(user_interaction="resume"))
        state = kernel.get_state()
        assert state.status is KernelStatus.RUNNING
        assert state.phase_elapsed == pytest.approx(1.0)

    def test_hidden_page_interrupts_session(self, kernel):
        _start(kernel, "box")
        kernel.tick(0.1, Observation(visibility_state="hidden"))
        assert kernel.get_state().status is KernelStatus.PAUSED
        interruption = [e for e in kernel.get_log_buffer() if e.type == "INTERRUPTION"][-1]
        assert interruption.kind == "background"

    def test_halt_returns_to_idle_and_records_outcome(self, kernel, mock_repository):
        _start(kernel, "awake")
        kernel.tick(6.0)
        kernel.dispatch(Halt(reason="user"))

        state = kernel.get_state()
        assert state.status is KernelStatus.IDLE
        profile = state.safety_registry["awake"]
        assert profile.resonance_history == (1.0,)
        mock_repository.set_meta.assert_called()

    def test_halt_without_cycles_records_failure(self, kernel):
        _start(kernel, "box")
        kernel.dispatch(Halt())
        assert kernel.get_state().safety_registry["box"].resonance_history == (0.0,)

    def test_switching_pattern_mid_session_ends_it(self, kernel):
        _start(kernel, "box")
        kernel.dispatch(LoadProtocol(pattern_id="calm"))
        state = kernel.get_state()
        assert state.status is KernelStatus.IDLE
        assert state.pattern.id == "calm"
        assert "box" in state.safety_registry

    def test_reset_clears_session_but_keeps_registry(self, kernel, clock):
        kernel.update_safety_profile("box", {"cumulative_stress_score": 2.0})
        _start(kernel, "calm")
        kernel.reset()
        state = kernel.get_state()
        assert state.status is KernelStatus.IDLE
        assert state.pattern is None
        assert state.safety_registry["box"].cumulative_stress_score == 2.0


class TestSafetyGuard:
    """Interdiction and tempo rules."""

    def test_start_rejected_while_locked(self, kernel):
        kernel.dispatch(SafetyInterdiction(risk_level=1.0, action=InterdictionAction.EMERGENCY_HALT))
        assert kernel.get_state().status is KernelStatus.SAFETY_LOCK

        kernel.dispatch(StartSession())
        assert kernel.get_state().status is KernelStatus.SAFETY_LOCK
        assert _interdictions(kernel, InterdictionAction.REJECT_START)

    def test_emergency_halt_after_minimum_session(self, kernel, mock_repository):
        _start(kernel, "4-7-8")
        kernel.tick(15)
        mock_repository.reset_mock()

        kernel.dispatch(BeliefUpdate(belief=_belief(arousal=1.0, prediction_error=0.99)))

        assert kernel.get_state().status is KernelStatus.SAFETY_LOCK
        written = [call.args[0] for call in mock_repository.write_event.call_args_list]
        assert any(
            e.type == "SAFETY_INTERDICTION" and e.action is InterdictionAction.EMERGENCY_HALT
            for e in written
        )

    def test_emergency_suppressed_before_minimum_session(self, kernel, mock_repository):
        _start(kernel, "4-7-8")
        kernel.tick(5)
        mock_repository.reset_mock()

        kernel.dispatch(BeliefUpdate(belief=_belief(arousal=1.0, prediction_error=0.99)))

        assert kernel.get_state().status is KernelStatus.RUNNING
        mock_repository.write_event.assert_not_called()

    def test_emergency_locks_pattern_out(self, kernel, settings, clock):
        _start(kernel, "4-7-8")
        kernel.tick(15)
        kernel.dispatch(BeliefUpdate(belief=_belief(prediction_error=0.99), timestamp=clock()))

        profile = kernel.get_state().safety_registry["4-7-8"]
        assert profile.resonance_history[-1] == 0.0
        assert profile.cumulative_stress_score == pytest.approx(0.99)
        assert profile.safety_lock_until == pytest.approx(clock() + settings.pattern_lockout_sec)

    def test_locked_pattern_is_not_loaded(self, kernel, clock):
        kernel.load_safety_registry({
            "wim-hof": SafetyProfile(
                pattern_id="wim-hof",
                cumulative_stress_score=10,
                last_incident_timestamp=clock(),
                safety_lock_until=clock() + 100,
            )
        })
        kernel.dispatch(LoadProtocol(pattern_id="wim-hof", timestamp=clock()))

        assert kernel.get_state().pattern is None
        assert _interdictions(kernel, InterdictionAction.PATTERN_LOCKED)

    def test_expired_lock_allows_loading(self, kernel, clock):
        kernel.update_safety_profile("wim-hof", {"safety_lock_until": clock() - 1})
        kernel.dispatch(LoadProtocol(pattern_id="wim-hof", timestamp=clock()))
        assert kernel.get_state().pattern.id == "wim-hof"

    def test_low_alignment_slows_tempo(self, kernel, settings):
        _start(kernel, "coherence")
        kernel.tick(12)
        kernel.dispatch(BeliefUpdate(belief=_belief(rhythm_alignment=0.1)))

        state = kernel.get_state()
        assert state.tempo_scale > 1.0
        assert state.tempo_target == settings.tempo_max

    def test_sustained_low_alignment_is_bounded(self, kernel, settings):
        _start(kernel, "coherence")
        for _ in range(400):
            kernel.tick(0.1)
            kernel.dispatch(BeliefUpdate(belief=_belief(rhythm_alignment=0.1)))
        state = kernel.get_state()
        assert 1.0 < state.tempo_scale <= settings.tempo_max

    def test_tempo_unchanged_inside_hysteresis_band(self, kernel):
        _start(kernel, "coherence")
        kernel.tick(12)
        kernel.dispatch(BeliefUpdate(belief=_belief(rhythm_alignment=0.6)))
        assert kernel.get_state().tempo_target == 1.0

    def test_recovered_alignment_brings_tempo_back(self, kernel, settings):
        _start(kernel, "coherence")
        kernel.tick(12)
        kernel.dispatch(BeliefUpdate(belief=_belief(rhythm_alignment=0.1)))
        kernel.dispatch(BeliefUpdate(belief=_belief(rhythm_alignment=0.95)))
        state = kernel.get_state()
        assert state.tempo_target == settings.tempo_min

    def test_tempo_request_clamped_and_stepped(self, kernel, settings):
        _start(kernel, "box")
        kernel.dispatch(AdjustTempo(scale=5.0, reason="test", source="user"))
        state = kernel.get_state()
        assert state.tempo_target == settings.tempo_max
        assert state.tempo_scale == pytest.approx(1.0 + settings.tempo_up_step)

    def test_tempo_request_inside_deadband_ignored(self, kernel):
        _start(kernel, "box")
        kernel.dispatch(AdjustTempo(scale=1.005, source="user"))
        assert kernel.get_state().tempo_target == 1.0
        assert all(e.type != "ADJUST_TEMPO" for e in kernel.get_log_buffer())


class TestKernelPersistenceAndObservers:
    """Persistence whitelist, subscriber isolation and snapshots."""

    def test_start_session_is_persisted(self, kernel, mock_repository):
        _start(kernel, "calm")
        written = [call.args[0].type for call in mock_repository.write_event.call_args_list]
        assert "START_SESSION" in written

    def test_only_ai_tempo_changes_are_persisted(self, kernel, mock_repository):
        _start(kernel, "box")
        kernel.dispatch(AdjustTempo(scale=1.2, source="user"))
        kernel.dispatch(AdjustTempo(scale=1.0, source="ai"))
        sources = [
            call.args[0].source
            for call in mock_repository.write_event.call_args_list
            if call.args[0].type == "ADJUST_TEMPO"
        ]
        assert sources == ["ai"]

    def test_persistence_failure_is_isolated(self, kernel, mock_repository):
        mock_repository.write_event.side_effect = OSError("disk full")
        _start(kernel, "box")
        assert kernel.get_state().status is KernelStatus.RUNNING

    def test_boot_restores_registry(self, settings, mock_repository, clock):
        mock_repository.get_meta.return_value = {
            "box": {"pattern_id": "box", "safety_lock_until": clock() + 60},
        }
        kernel = BiofeedbackKernel(settings=settings, repository=mock_repository, clock=clock)
        kernel.dispatch(LoadProtocol(pattern_id="box", timestamp=clock()))
        assert kernel.get_state().pattern is None
        mock_repository.garbage_collect.assert_called_once()

    def test_boot_survives_broken_repository(self, settings, mock_repository, clock):
        mock_repository.garbage_collect.side_effect = RuntimeError("boom")
        mock_repository.get_meta.side_effect = RuntimeError("boom")
        kernel = BiofeedbackKernel(settings=settings, repository=mock_repository, clock=clock)
        assert kernel.get_state().status is KernelStatus.IDLE

    def test_subscriber_exception_is_isolated(self, kernel):
        seen = []

        def broken(state):
            raise ValueError("subscriber bug")

        kernel.subscribe(broken)
        kernel.subscribe(lambda state: seen.append(state.status))
        _start(kernel, "box")

        assert kernel.get_state().status is KernelStatus.RUNNING
        assert seen[-1] is KernelStatus.RUNNING

    def test_unsubscribe(self, kernel):
        seen = []
        unsubscribe = kernel.subscribe(seen.append)
        kernel.dispatch(LoadProtocol(pattern_id="box"))
        unsubscribe()
        kernel.dispatch(StartSession())
        assert len(seen) == 1

    def test_snapshot_is_isolated(self, kernel):
        kernel.update_safety_profile("box", {"cumulative_stress_score": 1.0})
        snapshot = kernel.get_state()
        snapshot.safety_registry.clear()
        assert "box" in kernel.get_state().safety_registry

    def test_log_buffer_is_bounded(self, settings, clock):
        small = settings.model_copy(update={"event_log_size": 10})
        kernel = BiofeedbackKernel(settings=small, clock=clock)
        _start(kernel, "box")
        for _ in range(50):
            kernel.tick(0.1)
        assert len(kernel.get_log_buffer()) == 10
