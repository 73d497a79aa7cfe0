"""CHROM color projection."""

from __future__ import annotations

import numpy as np


def chrom_signal(rgb: np.ndarray) -> np.ndarray:
    """Compute the CHROM pulse signal for a window of mean RGB.

    Args:
        rgb: [n, 3] array of spatially averaged R, G, B.
    """
    rgb = np.asarray(rgb, dtype=np.float64)
    rn = rgb / rgb.mean(axis=0, keepdims=True) - 1.0
    r, g, b = rn[:, 0], rn[:, 1], rn[:, 2]
    xs = 3 * r - 2 * g
    ys = 1.5 * r + g - 1.5 * b
    sy = ys.std()
    alpha = xs.std() / sy if sy != 0 else 0.0
    return xs - alpha * ys


def g_signal(rgb: np.ndarray) -> np.ndarray:
    """Green channel of a window of mean RGB."""
    return np.asarray(rgb, dtype=np.float64)[:, 1].copy()
