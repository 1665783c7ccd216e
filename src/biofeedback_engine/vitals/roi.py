"""Regions of interest on the face and their mean skin colour.

Keypoints follow the MediaPipe FaceMesh indexing (468/478 points) in pixel
coordinates.  Three regions are sampled, forehead and both cheeks, and
fused by a plain mean: any one of them can be spoiled by a specular
highlight or partial occlusion.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import numpy as np

# FaceMesh landmark indices
FOREHEAD_X_POINTS = (109, 338, 297, 332)
FOREHEAD_Y_POINTS = (109, 338, 297)
LEFT_CHEEK_POINTS = (123, 50, 205)
RIGHT_CHEEK_POINTS = (352, 280, 425)

_DEFAULT_STRIDE = 2  # every other row and column


@dataclass(frozen=True, slots=True)
class ROI:
    x: int
    y: int
    width: int
    height: int

    @property
    def empty(self) -> bool:
        return self.width <= 0 or self.height <= 0


def as_keypoints(points: Sequence[Sequence[float]] | np.ndarray) -> np.ndarray:
    """Coerce detector output to an ``(n, 2)`` float array of pixel coordinates."""
    arr = np.asarray(points, dtype=np.float64)
    if arr.ndim != 2 or arr.shape[1] < 2:
        raise ValueError(f"expected (n, 2) keypoints, got shape {arr.shape}")
    return arr[:, :2]


def _bounding_roi(xs: np.ndarray, ys: np.ndarray, width: int, height: int) -> ROI:
    xs = np.clip(xs, 0, width)
    ys = np.clip(ys, 0, height)
    x0, y0 = int(np.floor(xs.min())), int(np.floor(ys.min()))
    x1, y1 = int(np.ceil(xs.max())), int(np.ceil(ys.max()))
    return ROI(x0, y0, x1 - x0, y1 - y0)


def forehead_roi(keypoints: np.ndarray, width: int, height: int) -> ROI:
    return _bounding_roi(
        keypoints[list(FOREHEAD_X_POINTS), 0],
        keypoints[list(FOREHEAD_Y_POINTS), 1],
        width,
        height,
    )


def cheek_roi(keypoints: np.ndarray, width: int, height: int, *, left: bool) -> ROI:
    idx = list(LEFT_CHEEK_POINTS if left else RIGHT_CHEEK_POINTS)
    return _bounding_roi(keypoints[idx, 0], keypoints[idx, 1], width, height)


def mean_roi_color(frame: np.ndarray, roi: ROI, stride: int = _DEFAULT_STRIDE) -> np.ndarray:
    """Mean RGB of a spatially subsampled region; zeros for an empty region."""
    if roi.empty:
        return np.zeros(3)
    patch = frame[roi.y:roi.y + roi.height:stride, roi.x:roi.x + roi.width:stride, :3]
    if patch.size == 0:
        return np.zeros(3)
    return patch.reshape(-1, 3).mean(axis=0).astype(np.float64)


def fused_color(frame: np.ndarray, keypoints: np.ndarray) -> np.ndarray:
    """Average the forehead and cheek colours into one ``(r, g, b)`` sample."""
    height, width = frame.shape[:2]
    regions = (
        forehead_roi(keypoints, width, height),
        cheek_roi(keypoints, width, height, left=True),
        cheek_roi(keypoints, width, height, left=False),
    )
    return np.mean([mean_roi_color(frame, roi) for roi in regions], axis=0)
