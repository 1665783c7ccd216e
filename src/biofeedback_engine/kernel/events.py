"""Kernel events — a closed, tagged union of everything that can happen.

Every state transition enters the kernel as one of these models.  Events
are immutable and carry a float epoch ``timestamp``; raw payloads (from a
host UI or a voice bridge) are validated with :func:`parse_event`.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from biofeedback_engine.models import BeliefState, BreathPhase, Observation, SafetyProfile

# ── Enums ─────────────────────────────────────────────────────


class InterdictionAction(str, Enum):
    EMERGENCY_HALT = "EMERGENCY_HALT"
    PATTERN_LOCKED = "PATTERN_LOCKED"
    REJECT_START = "REJECT_START"


# ── Event models ──────────────────────────────────────────────


class _Event(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp: float = Field(default_factory=time.time)


class Boot(_Event):
    type: Literal["BOOT"] = "BOOT"


class Reset(_Event):
    type: Literal["RESET"] = "RESET"


class LoadProtocol(_Event):
    type: Literal["LOAD_PROTOCOL"] = "LOAD_PROTOCOL"
    pattern_id: str


class StartSession(_Event):
    type: Literal["START_SESSION"] = "START_SESSION"


class Tick(_Event):
    type: Literal["TICK"] = "TICK"
    dt: float = Field(ge=0.0, allow_inf_nan=False)
    observation: Observation


class BeliefUpdate(_Event):
    type: Literal["BELIEF_UPDATE"] = "BELIEF_UPDATE"
    belief: BeliefState


class PhaseTransition(_Event):
    type: Literal["PHASE_TRANSITION"] = "PHASE_TRANSITION"
    from_phase: BreathPhase
    to_phase: BreathPhase


class CycleComplete(_Event):
    type: Literal["CYCLE_COMPLETE"] = "CYCLE_COMPLETE"
    count: int


class Interruption(_Event):
    type: Literal["INTERRUPTION"] = "INTERRUPTION"
    kind: Literal["pause", "background"] = "pause"


class Resume(_Event):
    type: Literal["RESUME"] = "RESUME"


class Halt(_Event):
    type: Literal["HALT"] = "HALT"
    reason: str = ""


class SafetyInterdiction(_Event):
    type: Literal["SAFETY_INTERDICTION"] = "SAFETY_INTERDICTION"
    risk_level: float = Field(0.0, ge=0.0)
    action: InterdictionAction
    pattern_id: str | None = None


class LoadSafetyRegistry(_Event):
    type: Literal["LOAD_SAFETY_REGISTRY"] = "LOAD_SAFETY_REGISTRY"
    registry: dict[str, SafetyProfile]


class AdjustTempo(_Event):
    type: Literal["ADJUST_TEMPO"] = "ADJUST_TEMPO"
    scale: float = Field(gt=0.0)
    reason: str = ""
    source: Literal["ai", "guard", "user"] = "user"


class AIIntervention(_Event):
    type: Literal["AI_INTERVENTION"] = "AI_INTERVENTION"
    intent: str
    parameters: dict[str, Any] = Field(default_factory=dict)


class AIVoiceMessage(_Event):
    type: Literal["AI_VOICE_MESSAGE"] = "AI_VOICE_MESSAGE"
    text: str
    sentiment: str = "neutral"


KernelEvent = Annotated[
    Union[
        Boot,
        Reset,
        LoadProtocol,
        StartSession,
        Tick,
        BeliefUpdate,
        PhaseTransition,
        CycleComplete,
        Interruption,
        Resume,
        Halt,
        SafetyInterdiction,
        LoadSafetyRegistry,
        AdjustTempo,
        AIIntervention,
        AIVoiceMessage,
    ],
    Field(discriminator="type"),
]

_EVENT_ADAPTER: TypeAdapter[KernelEvent] = TypeAdapter(KernelEvent)


def parse_event(raw: dict[str, Any]) -> KernelEvent:
    """Validate a raw ``{"type": ..., ...}`` payload into a typed event.

    Raises :class:`pydantic.ValidationError` for unknown types or bad fields.
    """
    return _EVENT_ADAPTER.validate_python(raw)
