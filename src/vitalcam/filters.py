"""Waveform postprocessing: detrending, smoothing and standardization."""

from __future__ import annotations

import math

import numpy as np
from scipy import sparse
from scipy.signal import lfilter
from scipy.sparse.linalg import spsolve

from .config import CALC_HR_MAX, CALC_RR_MAX


def moving_average(x: np.ndarray, size: int) -> np.ndarray:
    """Causal moving average; the first samples average what is available.

    Args:
        x: 1D array.
        size: window length in samples. ``size <= 1`` returns the input.
    """
    x = np.asarray(x, dtype=np.float64)
    if size <= 1 or x.size == 0:
        return x
    csum = np.cumsum(x)
    out = csum.copy()
    out[size:] = csum[size:] - csum[:-size]
    counts = np.minimum(np.arange(1, x.size + 1), size)
    return out / counts


def moving_average_size_for_response(fs: float, cutoff: float) -> int:
    """Moving average length with its -3 dB point near ``cutoff`` [Hz]."""
    if cutoff <= 0:
        raise ValueError("Cutoff frequency must be greater than zero.")
    f = cutoff / fs
    return max(int(math.floor(math.sqrt(0.196202 + f * f) / f)), 1)


def moving_average_size_for_hr_response(fs: float) -> int:
    return moving_average_size_for_response(fs, CALC_HR_MAX / 60)


def moving_average_size_for_rr_response(fs: float) -> int:
    return moving_average_size_for_response(fs, CALC_RR_MAX / 60)


def detrend_lambda_for_hr_response(fs: float) -> int:
    return int(math.floor(0.1614 * math.pow(fs, 1.9804)))


def detrend_lambda_for_rr_response(fs: float) -> int:
    return int(math.floor(4.4248 * math.pow(fs, 2.1253)))


def detrend(x: np.ndarray, lam: float) -> np.ndarray:
    """Smoothness-priors detrending (Tarvainen et al., 2002).

    Solves ``(I + lam^2 D2^T D2) trend = x`` with a sparse second-difference
    operator ``D2`` and returns ``x - trend``.
    """
    x = np.asarray(x, dtype=np.float64)
    n = x.size
    if n < 3:
        return x
    ones = np.ones(n)
    d2 = sparse.spdiags([ones, -2 * ones, ones], [0, 1, 2], n - 2, n)
    a = sparse.identity(n, format="csc") + (lam * lam) * (d2.T @ d2)
    trend = spsolve(sparse.csc_matrix(a), x)
    return x - trend


def efficient_detrend(x: np.ndarray, fs: float, cutoff: float = 0.5) -> np.ndarray:
    """First-order high-pass IIR; the output starts at ``x[0]``."""
    x = np.asarray(x, dtype=np.float64)
    if x.size == 0:
        return x
    dt = 1.0 / fs
    rc = 1.0 / (2 * math.pi * cutoff)
    alpha = rc / (rc + dt)
    y, _ = lfilter([alpha, -alpha], [1.0, -alpha], x, zi=[(1.0 - alpha) * x[0]])
    return y


def efficient_detrend_zero_phase(x: np.ndarray, fs: float, cutoff: float = 0.5) -> np.ndarray:
    forward = efficient_detrend(x, fs, cutoff)
    return efficient_detrend(forward[::-1], fs, cutoff)[::-1]


def adaptive_detrend(
    x: np.ndarray, fs: float, cutoff: float = 0.5, threshold: int = 300
) -> np.ndarray:
    """Matrix detrend for short signals, zero-phase IIR beyond ``threshold``."""
    x = np.asarray(x, dtype=np.float64)
    if x.size <= threshold:
        return detrend(x, detrend_lambda_for_hr_response(fs))
    return efficient_detrend_zero_phase(x, fs, cutoff)


def standardize(x: np.ndarray) -> np.ndarray:
    x = np.asarray(x, dtype=np.float64)
    if x.size == 0:
        return x
    std = x.std()
    return (x - x.mean()) / (std or 1.0)
