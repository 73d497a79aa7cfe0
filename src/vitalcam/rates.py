"""Rate estimation from waveforms by spectral peak picking."""

from __future__ import annotations

import math
from typing import Optional

import numpy as np

from .config import CALC_HR_MAX, CALC_HR_MIN, CALC_RR_MAX, CALC_RR_MIN


def estimate_rate_fft(
    waveform: np.ndarray,
    fs: float,
    fmin: float,
    fmax: float,
    desired_resolution_hz: Optional[float] = None,
) -> Optional[float]:
    """Estimate a rate [1/min] from the strongest in-band FFT bin.

    The signal is zero-padded to the next power of two, or further if
    ``desired_resolution_hz`` asks for finer bins.

    Returns:
        Dominant frequency times 60, or None if no bin lies in [fmin, fmax].
    """
    x = np.asarray(waveform, dtype=np.float64)
    if x.size == 0 or fs <= 0 or fmin >= fmax:
        raise ValueError("Invalid waveform data, sampling frequency, or frequency range.")
    n_fft = 2 ** int(math.ceil(math.log2(x.size)))
    if desired_resolution_hz:
        desired = int(math.ceil(fs / desired_resolution_hz))
        n_fft = max(n_fft, 2 ** int(math.ceil(math.log2(desired))))
    mag = np.abs(np.fft.rfft(x, n=n_fft))[: max(n_fft // 2, 1)]
    freqs = np.arange(mag.size) * fs / n_fft
    band = (freqs >= fmin) & (freqs <= fmax)
    if not np.any(band):
        return None
    idx = np.flatnonzero(band)[int(np.argmax(mag[band]))]
    return float(freqs[idx] * 60.0)


def estimate_heart_rate(ppg: np.ndarray, fs: float) -> Optional[float]:
    return estimate_rate_fft(ppg, fs, CALC_HR_MIN / 60, CALC_HR_MAX / 60)


def estimate_respiratory_rate(resp: np.ndarray, fs: float) -> Optional[float]:
    return estimate_rate_fft(resp, fs, CALC_RR_MIN / 60, CALC_RR_MAX / 60)
