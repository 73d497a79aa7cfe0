from __future__ import annotations

import numpy as np
import pytest

from vitalcam.rates import estimate_heart_rate, estimate_rate_fft, estimate_respiratory_rate


def test_square_wave_rate() -> None:
    fs = 8.0
    # 2 Hz square wave sampled at 8 Hz: period of 4 samples
    x = np.tile([1.0, 1.0, -1.0, -1.0], 16)
    assert estimate_rate_fft(x, fs, 0.5, 3.0) == pytest.approx(120.0)


def test_estimate_heart_rate_on_sine() -> None:
    fs = 30.0
    f = 1.2  # Hz -> 72 BPM
    t = np.arange(0, 20.0, 1 / fs)
    x = np.sin(2 * np.pi * f * t)
    bpm = estimate_heart_rate(x, fs)
    assert bpm is not None
    assert 70.0 <= bpm <= 74.0


def test_estimate_respiratory_rate_on_sine() -> None:
    fs = 30.0
    t = np.arange(0, 30.0, 1 / fs)
    x = np.sin(2 * np.pi * 0.25 * t) + 0.2 * np.sin(2 * np.pi * 1.3 * t)
    rr = estimate_respiratory_rate(x, fs)
    assert rr is not None
    assert 13.0 <= rr <= 17.0


def test_rate_within_band() -> None:
    rng = np.random.RandomState(0)
    x = rng.randn(300)
    rate = estimate_rate_fft(x, 30.0, 0.7, 3.0)
    assert rate is not None
    assert 0.7 * 60 <= rate <= 3.0 * 60


def test_no_bin_in_band_returns_none() -> None:
    x = np.tile([1.0, -1.0], 32)
    # bins of an 8 Hz signal stop below 4 Hz
    assert estimate_rate_fft(x, 8.0, 4.5, 5.0) is None


def test_desired_resolution_refines_estimate() -> None:
    fs = 30.0
    t = np.arange(0, 4.0, 1 / fs)
    x = np.sin(2 * np.pi * 1.13 * t)
    coarse = estimate_rate_fft(x, fs, 0.7, 3.0)
    fine = estimate_rate_fft(x, fs, 0.7, 3.0, desired_resolution_hz=0.005)
    assert coarse is not None and fine is not None
    assert abs(fine - 67.8) < abs(coarse - 67.8)
    assert abs(fine - 67.8) < 1.5


def test_invalid_input_raises() -> None:
    with pytest.raises(ValueError):
        estimate_rate_fft(np.zeros(0), 30.0, 0.7, 3.0)
    with pytest.raises(ValueError):
        estimate_rate_fft(np.ones(10), 30.0, 3.0, 0.7)
