"""Camera vitals engine — frames + keypoints in, fused vital signs out.

Per frame:

1. Ask the injected :class:`FaceDetector` for keypoints.  Zero faces means
   "signal lost": vitals are not recomputed, confidence decays by 0.95 per
   frame and the quality tier is downgraded.  Faces beyond the first are
   ignored.
2. Average forehead + cheek colour and append it to a fixed-duration ring
   buffer.
3. Update the smoothed geometric valence and the head-motion score.
4. Once the buffer holds more than ``min_buffer_samples`` and no job is in
   flight, hand a *copy* of the buffer to the rPPG worker in the
   background.  Until it completes the last result is reused.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from typing import Protocol, Sequence

import numpy as np
import structlog

from biofeedback_engine.config import Settings, get_settings
from biofeedback_engine.models import AffectiveState, SignalQuality, VitalSigns
from biofeedback_engine.vitals.geometry import MotionTracker, classify_mood, geometric_valence
from biofeedback_engine.vitals.messages import ColorSample, ProcessingRequest, VitalsResult
from biofeedback_engine.vitals.roi import as_keypoints, fused_color
from biofeedback_engine.vitals.worker import RPPGWorker

logger = structlog.get_logger(__name__)

_VALENCE_KEEP = 0.9
_AROUSAL_KEEP = 0.95
_STRESS_INDEX_HIGH = 500.0
_LOST_FACE_DECAY = 0.95
_FAIR_CONFIDENCE = 0.4


class FaceDetector(Protocol):
    """External landmark detector (e.g. a MediaPipe FaceMesh wrapper)."""

    def detect(self, frame: np.ndarray) -> Sequence[np.ndarray]:
        """Return one ``(n, 2)`` pixel-space keypoint array per detected face."""
        ...


class CameraVitalsEngine:
    """Turns video frames into :class:`VitalSigns`.

    Parameters
    ----------
    detector : FaceDetector
        Supplies facial keypoints for each frame.
    worker : RPPGWorker | None
        Extraction worker; one is created if omitted.
    settings : Settings | None
        Capture rate, buffer duration and trigger length.
    """

    def __init__(
        self,
        detector: FaceDetector,
        *,
        worker: RPPGWorker | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._detector = detector
        self._worker = worker or RPPGWorker()
        self._sample_rate = self._settings.capture_fps
        self._buffer: deque[ColorSample] = deque(
            maxlen=int(self._settings.capture_fps * self._settings.buffer_seconds)
        )
        self._motion = MotionTracker()
        self._valence = 0.0
        self._arousal = 0.0
        self._job: asyncio.Task[None] | None = None
        self._generation = 0
        self.last_known_vitals = VitalSigns()

    # ── Introspection ─────────────────────────────────────────

    @property
    def buffer_length(self) -> int:
        return len(self._buffer)

    @property
    def job_in_flight(self) -> bool:
        return (self._job is not None and not self._job.done()) or self._worker.in_flight

    # ── Frame processing ──────────────────────────────────────

    async def process_frame(self, frame: np.ndarray, timestamp: float | None = None) -> VitalSigns:
        faces = self._detector.detect(frame)
        if len(faces) == 0:
            return self._decay()

        keypoints = as_keypoints(faces[0])
        r, g, b = fused_color(frame, keypoints)
        self._buffer.append(
            ColorSample(r=r, g=g, b=b, timestamp=timestamp if timestamp is not None else time.time())
        )

        self._valence = _VALENCE_KEEP * self._valence + (1 - _VALENCE_KEEP) * geometric_valence(keypoints)
        motion = self._motion.update(keypoints)

        if len(self._buffer) > self._settings.min_buffer_samples and not self.job_in_flight:
            self._start_job(motion)

        current = self.last_known_vitals
        stress = current.hrv.stress_index if current.hrv else 0.0
        self._arousal = _AROUSAL_KEEP * self._arousal + (1 - _AROUSAL_KEEP) * min(1.0, stress / _STRESS_INDEX_HIGH)

        self.last_known_vitals = current.model_copy(
            update={
                "affective": AffectiveState(
                    valence=self._valence,
                    arousal=self._arousal,
                    mood_label=classify_mood(self._valence, self._arousal),
                ),
                "motion_level": motion,
            }
        )
        return self.last_known_vitals

    def _decay(self) -> VitalSigns:
        confidence = self.last_known_vitals.confidence * _LOST_FACE_DECAY
        quality = SignalQuality.FAIR if confidence > _FAIR_CONFIDENCE else SignalQuality.POOR
        self.last_known_vitals = self.last_known_vitals.model_copy(
            update={"confidence": confidence, "signal_quality": quality}
        )
        return self.last_known_vitals

    # ── Worker jobs ───────────────────────────────────────────

    def _start_job(self, motion: float) -> None:
        request = ProcessingRequest(
            rgb_data=tuple(self._buffer),
            motion_score=motion,
            sample_rate=self._sample_rate,
        )
        self._job = asyncio.create_task(self._run_job(request, self._generation))

    async def _run_job(self, request: ProcessingRequest, generation: int) -> None:
        result = await self._worker.submit(request)
        if generation != self._generation:
            logger.debug("vitals.result_discarded", generation=generation)
            return
        if not isinstance(result, VitalsResult):
            # Busy or error: keep the last known vitals
            return
        self.last_known_vitals = self.last_known_vitals.model_copy(
            update={
                "heart_rate": result.heart_rate,
                "respiration_rate": result.respiration_rate,
                "hrv": result.hrv,
                "confidence": result.confidence,
                "snr": result.snr,
                "signal_quality": result.signal_quality,
            }
        )
        logger.debug(
            "vitals.updated",
            heart_rate=round(result.heart_rate, 1),
            confidence=round(result.confidence, 3),
        )

    async def wait_for_job(self) -> None:
        """Await the outstanding extraction job, if any."""
        if self._job is not None:
            await self._job

    def reset(self) -> None:
        """Clear buffers; a job still in flight will have its result discarded."""
        self._generation += 1
        self._buffer.clear()
        self._motion.reset()
        self._valence = 0.0
        self._arousal = 0.0
        self.last_known_vitals = VitalSigns()

    def close(self) -> None:
        self._generation += 1
        self._worker.close()
