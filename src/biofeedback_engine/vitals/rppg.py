"""rPPG / HRV extraction — pulse, respiration and variability from face colour.

Pure NumPy functions operating on a snapshot of fused ROI colour samples.
Executed off the capture loop by :class:`~biofeedback_engine.vitals.worker.RPPGWorker`.

Pipeline
--------
1. **POS** (Plane-Orthogonal-to-Skin, Wang et al. 2017) — temporal
   normalisation by a local mean, projection onto ``S1 = G - B`` and
   ``S2 = G + B - 2R``, combined as ``H = S1 + alpha * S2`` with
   ``alpha = std(S1) / std(S2)`` over the same local window.
2. **Smoothing / detrend** — 5-sample moving average, global DC removal.
3. **Heart rate** — Hamming-windowed FFT peak in 0.66–3.66 Hz.
4. **Respiration** — FFT peak in 0.1–0.5 Hz on the same windowed signal.
   A 6 s buffer resolves this band only coarsely; treat the value as
   low-confidence.
5. **HRV** — adaptive-threshold peak detection, RMSSD, SDNN and an
   approximate Baevsky stress index.
6. **Confidence** — motion and spectral SNR penalties, multiplied.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import numpy as np

from biofeedback_engine.models import HRVMetrics, SignalQuality
from biofeedback_engine.vitals.messages import (
    ColorSample,
    ProcessingRequest,
    VitalsError,
    VitalsResult,
)

# ── Constants ─────────────────────────────────────────────────

MIN_SAMPLES = 64

HR_BAND_HZ = (0.66, 3.66)  # 40–220 bpm
RESP_BAND_HZ = (0.1, 0.5)  # 6–30 breaths/min

_POS_WINDOW_SEC = 1.6
_SMOOTH_HALF_WIDTH = 2  # 5-sample symmetric window
_NFFT = 512
_HAMMING_LOBE_HALF_WIDTH = 2  # main-lobe half width, in un-padded bins

_PEAK_THRESHOLD_STD = 0.5
_MIN_PEAK_DISTANCE_SEC = 0.3  # caps detectable rate at 200 bpm
_MIN_PEAKS_FOR_HRV = 3

_SNR_FULL_TRUST = 10.0
_SNR_CEILING = 100.0
_STRESS_INDEX_SCALE = 10_000.0

_QUALITY_EXCELLENT = 0.7
_QUALITY_GOOD = 0.4


# ── Step 1: POS projection ────────────────────────────────────


def pos_projection(rgb: np.ndarray, fs: float) -> np.ndarray:
    """Project an ``(n, 3)`` RGB trace onto the POS pulse signal.

    Each sample is normalised by the channel means of a window of
    ``floor(1.6 * fs)`` samples on each side of it.
    """
    rgb = np.asarray(rgb, dtype=np.float64)
    n = rgb.shape[0]
    half = int(np.floor(_POS_WINDOW_SEC * fs))
    h = np.zeros(n, dtype=np.float64)

    for i in range(n):
        seg = rgb[max(0, i - half):min(n, i + half)]
        means = seg.mean(axis=0)
        means[means == 0] = 1.0
        norm = seg / means
        s1 = norm[:, 1] - norm[:, 2]
        s2 = norm[:, 1] + norm[:, 2] - 2.0 * norm[:, 0]
        std2 = s2.std()
        alpha = s1.std() / std2 if std2 > 0 else 0.0

        cn = rgb[i] / means
        h[i] = (cn[1] - cn[2]) + alpha * (cn[1] + cn[2] - 2.0 * cn[0])
    return h


# ── Step 2: smoothing ─────────────────────────────────────────


def smooth_and_detrend(signal: np.ndarray) -> np.ndarray:
    """Symmetric moving average (edges shrink) followed by DC removal."""
    signal = np.asarray(signal, dtype=np.float64)
    kernel = np.ones(2 * _SMOOTH_HALF_WIDTH + 1)
    sums = np.convolve(signal, kernel, mode="same")
    counts = np.convolve(np.ones_like(signal), kernel, mode="same")
    smoothed = sums / counts
    return smoothed - smoothed.mean()


# ── Steps 3/4: spectral peak ──────────────────────────────────


@dataclass(frozen=True, slots=True)
class SpectralPeak:
    frequency_hz: float
    power: float
    snr: float

    @property
    def per_minute(self) -> float:
        return self.frequency_hz * 60.0


def windowed_spectrum(signal: np.ndarray, fs: float, nfft: int = _NFFT) -> tuple[np.ndarray, np.ndarray]:
    """Return ``(freqs, power)`` of the Hamming-windowed, zero-padded signal.

    Signals longer than *nfft* are truncated to their first *nfft* samples.
    """
    signal = np.asarray(signal, dtype=np.float64)[:nfft]
    windowed = signal * np.hamming(signal.size)
    spectrum = np.fft.rfft(windowed, n=nfft)
    power = spectrum.real ** 2 + spectrum.imag ** 2
    freqs = np.fft.rfftfreq(nfft, d=1.0 / fs)
    return freqs, power


def spectral_peak(
    signal: np.ndarray,
    fs: float,
    band: tuple[float, float],
    nfft: int = _NFFT,
) -> SpectralPeak:
    """Locate the dominant frequency of *signal* inside *band*.

    SNR is the power of the peak's Hamming main lobe divided by the rest of
    the in-band power.  Zero padding spreads a pure tone over several bins,
    so the lobe rather than the single maximum bin is counted as "peak".
    """
    length = min(len(signal), nfft)
    freqs, power = windowed_spectrum(signal, fs, nfft)
    bin_hz = fs / nfft
    lo = int(np.floor(band[0] / bin_hz))
    hi = int(np.floor(band[1] / bin_hz))
    in_band = power[lo:hi + 1]
    if in_band.size == 0 or not np.any(in_band > 0):
        return SpectralPeak(0.0, 0.0, 0.0)

    idx = int(np.argmax(in_band))
    lobe = int(np.ceil(_HAMMING_LOBE_HALF_WIDTH * nfft / max(length, 1)))
    peak_power = float(in_band[max(0, idx - lobe):idx + lobe + 1].sum())
    noise_power = float(in_band.sum()) - peak_power
    snr = peak_power / noise_power if noise_power > 0 else _SNR_CEILING
    return SpectralPeak(float(freqs[lo + idx]), float(in_band[idx]), snr)


# ── Step 5: HRV ───────────────────────────────────────────────


def detect_peaks(signal: np.ndarray, fs: float) -> list[int]:
    """Indices of local maxima above ``mean + 0.5 * std``, at least 0.3 s apart."""
    signal = np.asarray(signal, dtype=np.float64)
    if signal.size < 3:
        return []
    threshold = signal.mean() + _PEAK_THRESHOLD_STD * signal.std()
    min_distance = int(np.floor(_MIN_PEAK_DISTANCE_SEC * fs))

    mid = signal[1:-1]
    candidates = np.flatnonzero((mid > threshold) & (mid > signal[:-2]) & (mid > signal[2:])) + 1

    peaks: list[int] = []
    last = -min_distance
    for i in candidates:
        if i - last > min_distance:
            peaks.append(int(i))
            last = int(i)
    return peaks


def hrv_metrics(peaks: Sequence[int], fs: float) -> HRVMetrics | None:
    """Time-domain HRV from peak indices; ``None`` below three peaks.

    The Baevsky index ``AMo / (2 * Mo * MxDMn)`` is approximated with the
    interval mean standing in for the mode and a fixed amplitude term.  This
    only holds for near-Gaussian interval distributions.
    """
    if len(peaks) < _MIN_PEAKS_FOR_HRV:
        return None
    intervals = np.diff(np.asarray(peaks, dtype=np.float64)) * 1000.0 / fs
    rmssd = float(np.sqrt(np.mean(np.diff(intervals) ** 2)))
    sdnn = float(intervals.std())
    mode = float(intervals.mean())
    spread = float(intervals.max() - intervals.min()) or 1.0
    stress_index = 1000.0 / (2.0 * mode * spread) * _STRESS_INDEX_SCALE
    return HRVMetrics(rmssd=rmssd, sdnn=sdnn, stress_index=stress_index)


# ── Step 6: confidence ────────────────────────────────────────


def fuse_confidence(motion_score: float, snr: float) -> float:
    motion_penalty = max(0.0, 1.0 - 2.0 * motion_score)
    return motion_penalty * min(1.0, snr / _SNR_FULL_TRUST)


def signal_quality_for(confidence: float) -> SignalQuality:
    if confidence > _QUALITY_EXCELLENT:
        return SignalQuality.EXCELLENT
    if confidence > _QUALITY_GOOD:
        return SignalQuality.GOOD
    return SignalQuality.POOR


# ── Entry point ───────────────────────────────────────────────


def samples_to_array(samples: Sequence[ColorSample]) -> np.ndarray:
    return np.array([(s.r, s.g, s.b) for s in samples], dtype=np.float64).reshape(-1, 3)


def process_signal(request: ProcessingRequest) -> VitalsResult | VitalsError:
    """Run the full extraction on one buffer snapshot.

    Insufficient or malformed input is returned as a :class:`VitalsError`,
    never as a silent zero.
    """
    if len(request.rgb_data) < MIN_SAMPLES:
        return VitalsError(
            message=f"Insufficient data: {len(request.rgb_data)} samples, need {MIN_SAMPLES}",
        )
    if request.sample_rate <= 0:
        return VitalsError(message=f"Invalid sample rate: {request.sample_rate}")

    rgb = samples_to_array(request.rgb_data)
    if not np.all(np.isfinite(rgb)):
        return VitalsError(message="Non-finite colour samples in buffer")

    fs = request.sample_rate
    pulse = smooth_and_detrend(pos_projection(rgb, fs))

    heart = spectral_peak(pulse, fs, HR_BAND_HZ)
    resp = spectral_peak(pulse, fs, RESP_BAND_HZ)
    hrv = hrv_metrics(detect_peaks(pulse, fs), fs)

    confidence = fuse_confidence(request.motion_score, heart.snr)
    return VitalsResult(
        heart_rate=heart.per_minute,
        respiration_rate=resp.per_minute,
        hrv=hrv,
        confidence=confidence,
        snr=heart.snr,
        signal_quality=signal_quality_for(confidence),
    )
