"""Shared pytest fixtures."""

from __future__ import annotations

from unittest.mock import MagicMock

import numpy as np
import pytest

from biofeedback_engine.config import Settings
from biofeedback_engine.kernel import BiofeedbackKernel
from biofeedback_engine.models import BeliefState
from biofeedback_engine.storage import EventRepository, InMemoryEventRepository
from biofeedback_engine.vitals.messages import ColorSample, ProcessingRequest

FS = 30.0
PULSE_HZ = 1.2  # 72 bpm


class FakeClock:
    """Manually advanced epoch clock."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def mock_repository() -> MagicMock:
    repo = MagicMock(spec=EventRepository)
    repo.get_meta.return_value = None
    repo.garbage_collect.return_value = 0
    return repo


@pytest.fixture
def memory_repository() -> InMemoryEventRepository:
    return InMemoryEventRepository()


@pytest.fixture
def kernel(settings, mock_repository, clock) -> BiofeedbackKernel:
    return BiofeedbackKernel(settings=settings, repository=mock_repository, clock=clock)


@pytest.fixture
def calm_belief() -> BeliefState:
    return BeliefState(
        arousal=0.3,
        attention=0.7,
        rhythm_alignment=0.6,
        valence=0.2,
        prediction_error=0.1,
        confidence=0.8,
    )


def make_samples(rgb: np.ndarray, fs: float = FS, start: float = 0.0) -> tuple[ColorSample, ...]:
    return tuple(
        ColorSample(r=float(r), g=float(g), b=float(b), timestamp=start + i / fs)
        for i, (r, g, b) in enumerate(rgb)
    )


@pytest.fixture
def pulse_request() -> ProcessingRequest:
    """Six seconds of skin colour carrying a 72 bpm pulse plus faint noise."""
    rng = np.random.default_rng(42)
    t = np.arange(180) / FS
    wave = np.sin(2 * np.pi * PULSE_HZ * t)
    rgb = np.column_stack([
        150.0 + 0.3 * wave,
        120.0 + 1.0 * wave,
        100.0 + 0.2 * wave,
    ]) + rng.normal(0.0, 0.02, size=(180, 3))
    return ProcessingRequest(rgb_data=make_samples(rgb), motion_score=0.0, sample_rate=FS)


@pytest.fixture
def noise_request() -> ProcessingRequest:
    rng = np.random.default_rng(7)
    rgb = np.array([150.0, 120.0, 100.0]) + rng.normal(0.0, 2.0, size=(180, 3))
    return ProcessingRequest(rgb_data=make_samples(rgb), motion_score=0.0, sample_rate=FS)
