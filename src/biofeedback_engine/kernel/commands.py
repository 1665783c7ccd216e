"""Command bridge — maps voice / AI tool calls onto ordinary kernel events.

An external assistant can only act through :meth:`CommandBridge.handle`,
which validates the tool arguments and dispatches the same events a user
or the safety guard would.  Every call is recorded as an
``AI_INTERVENTION`` event before it is carried out.
"""

from __future__ import annotations

from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from biofeedback_engine.kernel.core import BiofeedbackKernel
from biofeedback_engine.kernel.events import AdjustTempo, AIIntervention, AIVoiceMessage, LoadProtocol, StartSession
from biofeedback_engine.kernel.state import KernelStatus
from biofeedback_engine.models import BREATHING_PATTERNS

logger = structlog.get_logger(__name__)

# ── Tool declarations ─────────────────────────────────────────

TOOL_DECLARATIONS: list[dict[str, Any]] = [
    {
        "name": "adjust_tempo",
        "description": "Adjust the breathing guide speed based on user distress or relaxation levels.",
        "parameters": {
            "type": "object",
            "properties": {
                "scale": {
                    "type": "number",
                    "description": "Tempo multiplier. 1.0 is normal, larger is slower (calming).",
                },
                "reason": {"type": "string", "description": "The clinical reason for this adjustment."},
            },
            "required": ["scale", "reason"],
        },
    },
    {
        "name": "switch_pattern",
        "description": "Switch the current breathing pattern to a more suitable technique.",
        "parameters": {
            "type": "object",
            "properties": {
                "patternId": {
                    "type": "string",
                    "description": "The ID of the breathing pattern.",
                    "enum": sorted(BREATHING_PATTERNS),
                },
                "reason": {"type": "string"},
            },
            "required": ["patternId", "reason"],
        },
    },
    {
        "name": "speak",
        "description": "Say a short guidance message to the user.",
        "parameters": {
            "type": "object",
            "properties": {
                "text": {"type": "string"},
                "sentiment": {"type": "string", "description": "calm, encouraging or neutral."},
            },
            "required": ["text"],
        },
    },
]


# ── Argument schemas ──────────────────────────────────────────


class _AdjustTempoArgs(BaseModel):
    scale: float = Field(gt=0.0)
    reason: str = ""


class _SwitchPatternArgs(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    pattern_id: str = Field(alias="patternId")
    reason: str = ""


class _SpeakArgs(BaseModel):
    text: str = Field(min_length=1)
    sentiment: str = "neutral"


class CommandBridge:
    """Executes named tool calls against a :class:`BiofeedbackKernel`."""

    def __init__(self, kernel: BiofeedbackKernel) -> None:
        self._kernel = kernel

    def handle(self, name: str, args: dict[str, Any] | None = None) -> dict[str, Any]:
        """Run tool *name* and return a JSON-serialisable result for the caller."""
        args = args or {}
        handler = {
            "adjust_tempo": self._adjust_tempo,
            "switch_pattern": self._switch_pattern,
            "speak": self._speak,
        }.get(name)
        if handler is None:
            logger.warning("commands.unknown_tool", name=name)
            return {"status": "failed", "error": f"Unknown tool: {name}"}

        self._kernel.dispatch(AIIntervention(intent=name, parameters=dict(args), timestamp=self._kernel.now()))
        try:
            result = handler(args)
        except ValidationError as exc:
            logger.warning("commands.invalid_arguments", name=name, errors=exc.error_count())
            return {"status": "failed", "error": "Invalid arguments"}

        logger.info("commands.executed", name=name, status=result["status"])
        return result

    # ── Tools ─────────────────────────────────────────────────

    def _adjust_tempo(self, args: dict[str, Any]) -> dict[str, Any]:
        parsed = _AdjustTempoArgs.model_validate(args)
        self._kernel.dispatch(
            AdjustTempo(
                scale=parsed.scale,
                reason=f"AI: {parsed.reason}",
                source="ai",
                timestamp=self._kernel.now(),
            )
        )
        return {"status": "success", "new_tempo": self._kernel.get_state().tempo_target}

    def _switch_pattern(self, args: dict[str, Any]) -> dict[str, Any]:
        parsed = _SwitchPatternArgs.model_validate(args)
        self._kernel.dispatch(LoadProtocol(pattern_id=parsed.pattern_id, timestamp=self._kernel.now()))
        self._kernel.dispatch(StartSession(timestamp=self._kernel.now()))

        state = self._kernel.get_state()
        if state.status is KernelStatus.RUNNING and state.pattern is not None and state.pattern.id == parsed.pattern_id:
            return {"status": "switched", "pattern": parsed.pattern_id}
        return {"status": "rejected", "pattern": parsed.pattern_id, "kernel_status": state.status.value}

    def _speak(self, args: dict[str, Any]) -> dict[str, Any]:
        parsed = _SpeakArgs.model_validate(args)
        self._kernel.dispatch(
            AIVoiceMessage(text=parsed.text, sentiment=parsed.sentiment, timestamp=self._kernel.now())
        )
        return {"status": "spoken"}
