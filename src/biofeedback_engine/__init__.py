"""Closed-loop breathing biofeedback engine."""

__version__ = "0.1.0"
