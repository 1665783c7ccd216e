"""Camera vitals — ROI colour extraction, rPPG / HRV worker, face geometry.

Architecture
------------
1. **ROI** (`roi.py`) — forehead + cheek regions from facial keypoints,
   fused mean colour.
2. **Geometry** (`geometry.py`) — valence proxy, head motion, mood label.
3. **rPPG** (`rppg.py`) — POS pulse extraction, spectral HR / respiration,
   time-domain HRV, confidence.
4. **Worker** (`worker.py`) — single-flight thread executor for (3).
5. **Engine** (`engine.py`) — per-frame orchestration and signal-loss
   handling.
"""

from biofeedback_engine.vitals.engine import CameraVitalsEngine, FaceDetector
from biofeedback_engine.vitals.messages import (
    ColorSample,
    ProcessingRequest,
    VitalsError,
    VitalsResult,
)
from biofeedback_engine.vitals.rppg import process_signal
from biofeedback_engine.vitals.worker import RPPGWorker

__all__ = [
    "CameraVitalsEngine",
    "ColorSample",
    "FaceDetector",
    "ProcessingRequest",
    "RPPGWorker",
    "VitalsError",
    "VitalsResult",
    "process_signal",
]
