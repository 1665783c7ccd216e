"""Runtime glue between capture cadence and the kernel."""

from biofeedback_engine.runtime.loop import ControlLoop

__all__ = ["ControlLoop"]
