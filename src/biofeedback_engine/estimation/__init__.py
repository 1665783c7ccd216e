"""Recursive estimation of the user's arousal / attention / rhythm / valence."""

from biofeedback_engine.estimation.estimator import (
    PROTOCOL_TARGETS,
    AdaptiveStateEstimator,
    EstimatorConfig,
    TargetState,
)

__all__ = [
    "PROTOCOL_TARGETS",
    "AdaptiveStateEstimator",
    "EstimatorConfig",
    "TargetState",
]
