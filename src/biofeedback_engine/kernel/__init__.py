"""Session kernel — state machine, safety guard and external command bridge."""

from biofeedback_engine.kernel.commands import TOOL_DECLARATIONS, CommandBridge
from biofeedback_engine.kernel.core import BiofeedbackKernel
from biofeedback_engine.kernel.events import InterdictionAction, KernelEvent, parse_event
from biofeedback_engine.kernel.safety import SafetyGuard
from biofeedback_engine.kernel.state import KernelStatus, RuntimeState

__all__ = [
    "TOOL_DECLARATIONS",
    "BiofeedbackKernel",
    "CommandBridge",
    "InterdictionAction",
    "KernelEvent",
    "KernelStatus",
    "RuntimeState",
    "SafetyGuard",
    "parse_event",
]
