"""Tests for the rPPG / HRV extraction algorithm."""

from __future__ import annotations

import numpy as np
import pytest

from biofeedback_engine.models import SignalQuality
from biofeedback_engine.vitals.messages import ColorSample, ProcessingRequest, VitalsError, VitalsResult
from biofeedback_engine.vitals.rppg import (
    HR_BAND_HZ,
    detect_peaks,
    fuse_confidence,
    hrv_metrics,
    pos_projection,
    process_signal,
    signal_quality_for,
    smooth_and_detrend,
    spectral_peak,
)

FS = 30.0


class TestProcessSignal:
    """End-to-end extraction on synthetic buffers."""

    def test_recovers_injected_pulse(self, pulse_request):
        result = process_signal(pulse_request)
        assert isinstance(result, VitalsResult)
        assert result.heart_rate == pytest.approx(72.0, abs=3.0)
        assert result.confidence > 0.5
        assert result.hrv is not None

    def test_pure_noise_has_low_confidence(self, noise_request):
        result = process_signal(noise_request)
        assert isinstance(result, VitalsResult)
        assert result.confidence < 0.3

    def test_motion_penalises_confidence(self, pulse_request):
        still = process_signal(pulse_request)
        shaky = process_signal(pulse_request.model_copy(update={"motion_score": 0.3}))
        assert shaky.confidence == pytest.approx(still.confidence * 0.4)

    def test_insufficient_samples_is_an_error(self):
        samples = tuple(ColorSample(r=1.0, g=1.0, b=1.0, timestamp=i / FS) for i in range(63))
        result = process_signal(ProcessingRequest(rgb_data=samples))
        assert isinstance(result, VitalsError)
        assert "Insufficient" in result.message

    def test_non_finite_samples_are_an_error(self):
        samples = [ColorSample(r=1.0, g=1.0, b=1.0, timestamp=i / FS) for i in range(80)]
        samples[10] = ColorSample(r=float("nan"), g=1.0, b=1.0, timestamp=10 / FS)
        result = process_signal(ProcessingRequest(rgb_data=tuple(samples)))
        assert isinstance(result, VitalsError)


class TestSignalSteps:
    """Individual stages of the pipeline."""

    def test_pos_output_matches_input_length(self):
        rgb = np.full((90, 3), 100.0)
        assert pos_projection(rgb, FS).shape == (90,)

    def test_detrended_signal_has_zero_mean(self):
        out = smooth_and_detrend(np.linspace(0.0, 10.0, 100))
        assert out.mean() == pytest.approx(0.0, abs=1e-9)

    def test_spectral_peak_finds_tone(self):
        t = np.arange(300) / FS
        peak = spectral_peak(np.sin(2 * np.pi * 2.0 * t), FS, HR_BAND_HZ)
        assert peak.frequency_hz == pytest.approx(2.0, abs=FS / 512)
        assert peak.snr > 10

    def test_spectral_peak_of_flat_signal(self):
        peak = spectral_peak(np.zeros(200), FS, HR_BAND_HZ)
        assert peak.frequency_hz == 0.0
        assert peak.snr == 0.0

    def test_peaks_respect_minimum_distance(self):
        t = np.arange(300) / FS
        peaks = detect_peaks(np.sin(2 * np.pi * 1.25 * t), FS)
        assert len(peaks) == 13
        assert np.all(np.diff(peaks) > int(0.3 * FS))


class TestHRV:
    """Time-domain heart-rate variability."""

    def test_none_below_three_peaks(self):
        assert hrv_metrics([10, 40], FS) is None

    def test_regular_intervals(self):
        metrics = hrv_metrics([0, 30, 60, 90], FS)
        assert metrics.rmssd == pytest.approx(0.0)
        assert metrics.sdnn == pytest.approx(0.0)
        # zero spread counts as 1 ms
        assert metrics.stress_index == pytest.approx(1000.0 / (2 * 1000.0 * 1.0) * 10_000)

    def test_irregular_intervals(self):
        metrics = hrv_metrics([0, 30, 54, 84], FS)  # 1000, 800, 1000 ms
        assert metrics.rmssd == pytest.approx(200.0)
        assert metrics.sdnn > 0


class TestConfidence:
    @pytest.mark.parametrize(
        ("motion", "snr", "expected"),
        [(0.0, 20.0, 1.0), (0.0, 5.0, 0.5), (0.25, 10.0, 0.5), (0.6, 50.0, 0.0)],
    )
    def test_fuse_confidence(self, motion, snr, expected):
        assert fuse_confidence(motion, snr) == pytest.approx(expected)

    def test_quality_tiers(self):
        assert signal_quality_for(0.8) is SignalQuality.EXCELLENT
        assert signal_quality_for(0.5) is SignalQuality.GOOD
        assert signal_quality_for(0.4) is SignalQuality.POOR
