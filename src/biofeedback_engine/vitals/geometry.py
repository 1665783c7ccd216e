"""Facial geometry features: valence proxy, head motion, mood label."""

from __future__ import annotations

import math

import numpy as np

# FaceMesh landmark indices
LIP_LEFT, LIP_RIGHT = 61, 291
BROW_INNER_LEFT, BROW_INNER_RIGHT = 107, 336
FACE_LEFT, FACE_RIGHT = 234, 454
NOSE_TIP = 1

# Empirical neutral ratios and gains
_NEUTRAL_SMILE_RATIO = 0.35
_SMILE_GAIN = 5.0
_NEUTRAL_BROW_RATIO = 0.25
_FURROW_GAIN = 8.0

_MOTION_FULL_SCALE_PX = 10.0


def _dist(a: np.ndarray, b: np.ndarray) -> float:
    return math.hypot(a[0] - b[0], a[1] - b[1])


def geometric_valence(keypoints: np.ndarray) -> float:
    """Training-free valence proxy in [-1, 1].

    A wide mouth relative to face width reads as a smile; inner brows
    drawn together read as a furrow.  Valence is smile minus furrow.
    """
    face_width = _dist(keypoints[FACE_LEFT], keypoints[FACE_RIGHT])
    if face_width <= 0:
        return 0.0
    smile_ratio = _dist(keypoints[LIP_LEFT], keypoints[LIP_RIGHT]) / face_width
    brow_ratio = _dist(keypoints[BROW_INNER_LEFT], keypoints[BROW_INNER_RIGHT]) / face_width

    smile = (smile_ratio - _NEUTRAL_SMILE_RATIO) * _SMILE_GAIN
    furrow = (_NEUTRAL_BROW_RATIO - brow_ratio) * _FURROW_GAIN
    return max(-1.0, min(1.0, smile - max(0.0, furrow)))


class MotionTracker:
    """Frame-to-frame nose-tip displacement, normalised to [0, 1]."""

    def __init__(self, full_scale_px: float = _MOTION_FULL_SCALE_PX) -> None:
        self._full_scale = full_scale_px
        self._last: np.ndarray | None = None

    def update(self, keypoints: np.ndarray) -> float:
        nose = keypoints[NOSE_TIP].copy()
        if self._last is None:
            self._last = nose
            return 0.0
        moved = _dist(nose, self._last)
        self._last = nose
        return min(1.0, moved / self._full_scale)

    def reset(self) -> None:
        self._last = None


def classify_mood(valence: float, arousal: float) -> str:
    if arousal > 0.7:
        return "anxious"
    if valence > 0.3 and arousal < 0.5:
        return "calm"
    if valence > 0.2 and 0.4 < arousal < 0.7:
        return "focused"
    if arousal < 0.2:
        return "distracted"
    return "neutral"
