"""POS color projection."""

from __future__ import annotations

import numpy as np

# Projection plane orthogonal to the skin tone, rows (G-B, -2R+G+B)
_P = np.array([[0.0, 1.0, -1.0], [-2.0, 1.0, 1.0]])


def pos_signal(rgb: np.ndarray) -> np.ndarray:
    """Compute the POS pulse signal for a window of mean RGB.

    Args:
        rgb: [n, 3] array of spatially averaged R, G, B.
    """
    rgb = np.asarray(rgb, dtype=np.float64)
    cn = rgb / rgb.mean(axis=0, keepdims=True)
    s = cn @ _P.T
    s0, s1 = s[:, 0], s[:, 1]
    sigma1 = s0.std()
    sigma2 = s1.std()
    ratio = sigma1 / sigma2 if sigma2 != 0 else 0.0
    return -(s0 + ratio * s1)
