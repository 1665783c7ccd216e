"""Runtime state owned by the kernel; readers only ever see snapshots."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from biofeedback_engine.models import BeliefState, BreathPattern, BreathPhase, Observation, SafetyProfile


class KernelStatus(str, Enum):
    IDLE = "IDLE"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    SAFETY_LOCK = "SAFETY_LOCK"


ACTIVE_STATUSES = frozenset({KernelStatus.RUNNING, KernelStatus.PAUSED})


class RuntimeState(BaseModel):
    """Single source of truth for one kernel instance.

    Frozen: the kernel replaces it wholesale on every committed mutation.
    """

    model_config = ConfigDict(frozen=True)

    status: KernelStatus = KernelStatus.IDLE
    phase: BreathPhase = BreathPhase.INHALE
    phase_elapsed: float = 0.0
    phase_duration: float = 0.0
    cycle_count: int = 0
    tempo_scale: float = 1.0
    tempo_target: float = 1.0
    session_duration: float = 0.0
    pattern: BreathPattern | None = None
    belief: BeliefState = Field(default_factory=BeliefState)
    safety_registry: dict[str, SafetyProfile] = Field(default_factory=dict)
    last_observation: Observation | None = None
    last_event_at: float = 0.0

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES
