"""Request / response messages exchanged with the rPPG worker."""

from __future__ import annotations

from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from biofeedback_engine.models import HRVMetrics, SignalQuality


class ColorSample(BaseModel):
    """Fused ROI colour for one captured frame."""

    model_config = ConfigDict(frozen=True)

    r: float
    g: float
    b: float
    timestamp: float


class ProcessingRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["process_signal"] = "process_signal"
    rgb_data: tuple[ColorSample, ...]
    motion_score: float = Field(0.0, ge=0.0, le=1.0)
    sample_rate: float = 30.0


class VitalsResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["vitals_result"] = "vitals_result"
    heart_rate: float
    respiration_rate: float
    hrv: HRVMetrics | None = None
    confidence: float
    snr: float
    signal_quality: SignalQuality


class VitalsError(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["error"] = "error"
    message: str


WorkerResponse = Annotated[Union[VitalsResult, VitalsError], Field(discriminator="type")]
