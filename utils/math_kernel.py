# utils/math_kernel.py – Polynomial fit, keystone solve and robust statistics

from __future__ import annotations

from typing import Sequence, Tuple

import numpy as np
from scipy import linalg

__all__ = [
    "poly_fit",
    "poly_eval",
    "poly_derivative",
    "solve_keystone",
    "map_keystone",
    "apply_keystone",
    "quantile_nth",
    "mean",
    "stddev",
]

_DENOM_EPS = 1e-9

Point = Tuple[float, float]


# ───────────────────────────────────────────── polynomials


def poly_fit(
    x: Sequence[float] | np.ndarray,
    y: Sequence[float] | np.ndarray,
    order: int,
    weights: Sequence[float] | np.ndarray | None = None,
) -> np.ndarray:
    """Least-squares polynomial fit.

    Parameters
    ----------
    x, y:
        Sample coordinates of equal length.
    order:
        Polynomial degree. At least ``order + 1`` samples are required.
    weights:
        Optional per-sample weights. Rows of the Vandermonde system are
        scaled by ``sqrt(w)`` so the residual is weighted by ``w``.

    Returns
    -------
    numpy.ndarray
        ``order + 1`` coefficients, highest power first (``np.polyval`` order).
    """
    x = np.asarray(x, dtype=np.float64)
    y = np.asarray(y, dtype=np.float64)
    if x.shape != y.shape or x.ndim != 1:
        raise ValueError("x and y must be 1-D arrays of equal length")
    if order < 0:
        raise ValueError("order must be non-negative")
    if x.size < order + 1:
        raise ValueError(f"need at least {order + 1} samples for order {order}")

    vander = np.vander(x, order + 1)  # highest power in the first column
    rhs = y
    if weights is not None:
        w = np.asarray(weights, dtype=np.float64)
        if w.shape != x.shape or np.any(w < 0):
            raise ValueError("weights must be non-negative and match x")
        sw = np.sqrt(w)
        vander = vander * sw[:, None]
        rhs = y * sw
    coeffs, *_ = np.linalg.lstsq(vander, rhs, rcond=None)
    return coeffs


def poly_eval(coeffs: Sequence[float] | np.ndarray, x):
    """Evaluate highest-first ``coeffs`` at ``x`` (scalar or array)."""
    return np.polyval(np.asarray(coeffs, dtype=np.float64), x)


def poly_derivative(coeffs: Sequence[float] | np.ndarray) -> np.ndarray:
    coeffs = np.asarray(coeffs, dtype=np.float64)
    if coeffs.size <= 1:
        return np.zeros(1)
    return np.polyder(coeffs)


# ───────────────────────────────────────────── keystone


def solve_keystone(src: Sequence[Point], dst: Sequence[Point]) -> np.ndarray:
    """Solve the 8-parameter projective map taking ``dst`` points onto ``src``.

    The returned ``k`` satisfies

        x_src = (k0*x + k1*y + k2) / (k6*x + k7*y + 1)
        y_src = (k3*x + k4*y + k5) / (k6*x + k7*y + 1)

    for each ``(x, y)`` in ``dst``, which is the inverse map needed to
    rasterize a rectified image from a distorted one. The 8×8 system is
    solved by QR decomposition with column pivoting.
    """
    src_arr = np.asarray(src, dtype=np.float64)
    dst_arr = np.asarray(dst, dtype=np.float64)
    if src_arr.shape != (4, 2) or dst_arr.shape != (4, 2):
        raise ValueError("solve_keystone expects four (x, y) pairs per side")
    if not (np.all(np.isfinite(src_arr)) and np.all(np.isfinite(dst_arr))):
        raise ValueError("corner coordinates must be finite")

    a = np.zeros((8, 8))
    b = np.zeros(8)
    for i, ((xu, yu), (xd, yd)) in enumerate(zip(src_arr, dst_arr)):
        a[2 * i] = [xd, yd, 1.0, 0.0, 0.0, 0.0, -xd * xu, -yd * xu]
        a[2 * i + 1] = [0.0, 0.0, 0.0, xd, yd, 1.0, -xd * yu, -yd * yu]
        b[2 * i] = xu
        b[2 * i + 1] = yu

    q, r, perm = linalg.qr(a, pivoting=True)
    diag = np.abs(np.diag(r))
    if diag.size == 0 or diag[-1] <= diag[0] * 1e-12:
        raise np.linalg.LinAlgError("keystone system is singular")
    z = linalg.solve_triangular(r, q.T @ b)
    k = np.empty(8)
    k[perm] = z
    return k


def map_keystone(k: Sequence[float] | np.ndarray, x, y):
    """Apply the rational keystone form to coordinates ``(x, y)``."""
    k = np.asarray(k, dtype=np.float64)
    x = np.asarray(x, dtype=np.float64)
    y = np.asarray(y, dtype=np.float64)
    denom = k[6] * x + k[7] * y + 1.0
    xs = (k[0] * x + k[1] * y + k[2]) / denom
    ys = (k[3] * x + k[4] * y + k[5]) / denom
    return xs, ys


def _round_half_away(v: np.ndarray) -> np.ndarray:
    return np.sign(v) * np.floor(np.abs(v) + 0.5)


def apply_keystone(image: np.ndarray, k: Sequence[float] | np.ndarray) -> np.ndarray:
    """Rasterize the rectified image by inverse mapping every output pixel.

    Output pixels whose source lies outside ``image`` (or whose denominator
    vanishes) are left at zero.
    """
    image = np.asarray(image)
    if image.ndim != 2:
        raise ValueError("apply_keystone expects a 2-D image")
    k = np.asarray(k, dtype=np.float64)
    h, w = image.shape
    yy, xx = np.indices((h, w), dtype=np.float64)

    denom = k[6] * xx + k[7] * yy + 1.0
    valid = np.abs(denom) >= _DENOM_EPS
    safe = np.where(valid, denom, 1.0)
    xs = _round_half_away((k[0] * xx + k[1] * yy + k[2]) / safe)
    ys = _round_half_away((k[3] * xx + k[4] * yy + k[5]) / safe)
    valid &= (xs >= 0) & (xs < w) & (ys >= 0) & (ys < h)

    out = np.zeros_like(image)
    out[valid] = image[ys[valid].astype(np.intp), xs[valid].astype(np.intp)]
    return out


# ───────────────────────────────────────────── statistics


def quantile_nth(values, p: float) -> float:
    """Return the element at index ``floor(n*p)`` after an nth-element partition.

    The index is clamped to the last element. Runs in O(n).
    """
    arr = np.asarray(values).ravel()
    if arr.size == 0:
        raise ValueError("quantile_nth of an empty array")
    if not 0.0 <= p <= 1.0:
        raise ValueError("p must lie in [0, 1]")
    idx = min(int(arr.size * p), arr.size - 1)
    return float(np.partition(arr, idx)[idx])


def mean(values) -> float:
    arr = np.asarray(values, dtype=np.float64)
    if arr.size == 0:
        return 0.0
    return float(arr.mean())


def stddev(values) -> float:
    """Population standard deviation (``ddof=0``)."""
    arr = np.asarray(values, dtype=np.float64)
    if arr.size == 0:
        return 0.0
    return float(arr.std())
