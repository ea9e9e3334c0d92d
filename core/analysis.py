# core/analysis.py – Patch statistics, SNR curves, polynomial fit and DR crossings

from __future__ import annotations

import dataclasses
import logging
import math
import os
from typing import Iterable, List, Optional, Sequence, Tuple

os.environ.setdefault("OPENBLAS_NUM_THREADS", "1")

import numpy as np

from core.models import (
    CurveData,
    DynamicRangeResult,
    FitModel,
    PatchAnalysisResult,
    PatchSample,
)
from utils.math_kernel import mean, poly_derivative, poly_eval, poly_fit, stddev

__all__ = [
    "DEFAULT_SNR_FLOOR_DB",
    "PERMISSIVE_SNR_FLOOR_DB",
    "SATURATION_PIXEL_LEVEL",
    "MAX_SATURATED_RATIO",
    "CURVE_POINTS",
    "analyze_patches",
    "analyze_patches_two_pass",
    "render_debug_image",
    "normalization_offset_db",
    "normalize_snr_db",
    "build_curve",
    "is_sufficient",
    "fit_curve",
    "find_crossing",
    "crossing_ev",
    "generate_curve_points",
    "calculate_dynamic_range",
]

DEFAULT_SNR_FLOOR_DB = -10.0
PERMISSIVE_SNR_FLOOR_DB = -90.0
SATURATION_PIXEL_LEVEL = 0.9
MAX_SATURATED_RATIO = 0.01
CURVE_POINTS = 201

_NEWTON_MAX_ITER = 10
_NEWTON_TOL = 1e-7
_DEBUG_GAMMA = 1.0 / 2.2

# ───────────────────────────── patch analysis


def _draw_rect(img: np.ndarray, x0: int, y0: int, w: int, h: int, value: float) -> None:
    x1 = x0 + w - 1
    y1 = y0 + h - 1
    img[y0, x0 : x1 + 1] = value
    img[y1, x0 : x1 + 1] = value
    img[y0 : y1 + 1, x0] = value
    img[y0 : y1 + 1, x1] = value


def analyze_patches(
    image: np.ndarray,
    rows: int,
    cols: int,
    patch_ratio: float = 0.5,
    snr_floor_db: float = DEFAULT_SNR_FLOOR_DB,
    *,
    draw_overlay: bool = True,
) -> PatchAnalysisResult:
    """Measure signal and noise in the centre of every chart cell.

    Parameters
    ----------
    image:
        Rectified, cropped chart in normalized units (0 = black, 1 = saturation).
    rows, cols:
        Chart grid.
    patch_ratio:
        Fraction of each cell's width/height that is sampled, centred.
    snr_floor_db:
        Patches whose per-pixel SNR is below this are rejected.
    draw_overlay:
        When true, a copy of ``image`` with accepted patches outlined is returned.

    Notes
    -----
    A patch is kept only if ``signal > 0``, ``noise > 0``, its SNR is at least
    ``snr_floor_db`` and fewer than 1 % of its pixels exceed 0.9.
    """
    img = np.asarray(image, dtype=np.float64)
    if img.ndim != 2:
        raise ValueError("analyze_patches expects a 2-D image")
    if not 0.0 < patch_ratio <= 1.0:
        raise ValueError("patch_ratio must lie in (0, 1]")

    max_pixel = float(img.max()) if img.size else 0.0
    overlay = img.copy() if draw_overlay else None
    h, w = img.shape
    cell_h = h // rows if rows > 0 else 0
    cell_w = w // cols if cols > 0 else 0
    if cell_h == 0 or cell_w == 0:
        logging.warning("Crop %dx%d too small for a %dx%d grid", w, h, cols, rows)
        return PatchAnalysisResult((), overlay, max_pixel, snr_floor_db)

    ph = max(1, int(cell_h * patch_ratio))
    pw = max(1, int(cell_w * patch_ratio))
    oy = (cell_h - ph) // 2
    ox = (cell_w - pw) // 2
    mark = max_pixel if max_pixel > 0 else 1.0

    samples: List[PatchSample] = []
    for j in range(rows):
        for i in range(cols):
            y0 = j * cell_h + oy
            x0 = i * cell_w + ox
            patch = img[y0 : y0 + ph, x0 : x0 + pw]
            signal = mean(patch)
            noise = stddev(patch)
            if signal <= 0 or noise <= 0:
                continue
            if 20.0 * math.log10(signal / noise) < snr_floor_db:
                continue
            sat_ratio = np.count_nonzero(patch > SATURATION_PIXEL_LEVEL) / patch.size
            if sat_ratio >= MAX_SATURATED_RATIO:
                continue
            samples.append(PatchSample(signal=signal, noise=noise, row=j, col=i))
            if overlay is not None:
                _draw_rect(overlay, x0, y0, pw, ph, mark)

    logging.debug(
        "analyze_patches: %d/%d patches accepted (floor %.1f dB)",
        len(samples),
        rows * cols,
        snr_floor_db,
    )
    return PatchAnalysisResult(tuple(samples), overlay, max_pixel, snr_floor_db)


def analyze_patches_two_pass(
    image: np.ndarray,
    rows: int,
    cols: int,
    patch_ratio: float,
    thresholds_db: Sequence[float],
    *,
    snr_floor_db: float = DEFAULT_SNR_FLOOR_DB,
    permissive_floor_db: float = PERMISSIVE_SNR_FLOOR_DB,
    reanalyze: bool = True,
    draw_overlay: bool = True,
) -> PatchAnalysisResult:
    """Run :func:`analyze_patches`; retry with a permissive floor when the dark tail is missing.

    If every accepted patch is above the highest requested threshold the curve
    cannot reach it, so the patches are measured again with
    ``permissive_floor_db``.
    """
    first = analyze_patches(
        image, rows, cols, patch_ratio, snr_floor_db, draw_overlay=draw_overlay
    )
    if not reanalyze or not first.samples or not thresholds_db:
        return first
    if first.min_snr_db <= max(thresholds_db):
        return first
    logging.info(
        "Lowest patch SNR %.2f dB above all thresholds; re-analyzing with floor %.1f dB",
        first.min_snr_db,
        permissive_floor_db,
    )
    return analyze_patches(
        image, rows, cols, patch_ratio, permissive_floor_db, draw_overlay=draw_overlay
    )


def render_debug_image(image: np.ndarray, max_value: float) -> np.ndarray:
    """Scale by ``max_value``, clamp to [0, 1] and apply a 1/2.2 gamma."""
    img = np.asarray(image, dtype=np.float64)
    scale = max_value if max_value > 0 else 1.0
    return np.clip(img / scale, 0.0, 1.0) ** _DEBUG_GAMMA


# ───────────────────────────── curve building


def normalization_offset_db(sensor_mpx: float, target_mpx: float) -> float:
    """dB offset that rescales per-pixel SNR to ``target_mpx``.

    Equivalent to multiplying linear SNR by ``sqrt(sensor_mpx / target_mpx)``.
    Zero when either resolution is unknown or normalization is disabled.
    """
    if sensor_mpx > 0 and target_mpx > 0:
        return 10.0 * math.log10(sensor_mpx / target_mpx)
    return 0.0


def normalize_snr_db(snr_db, sensor_mpx: float, target_mpx: float):
    return np.asarray(snr_db, dtype=np.float64) + normalization_offset_db(
        sensor_mpx, target_mpx
    )


def build_curve(
    samples: Iterable[PatchSample],
    *,
    filename: str,
    channel_tag: str,
    camera_model: str = "",
    iso: int = 0,
    sensor_mpx: float = 0.0,
    target_mpx: float = 0.0,
) -> CurveData:
    """Convert patch samples into an (EV, SNR dB) curve sorted by SNR."""
    samples = list(samples)
    signal = np.asarray([s.signal for s in samples], dtype=np.float64)
    noise = np.asarray([s.noise for s in samples], dtype=np.float64)
    offset = normalization_offset_db(sensor_mpx, target_mpx)
    if signal.size:
        ev = np.log2(signal)
        snr = 20.0 * np.log10(signal / noise) + offset
        order = np.argsort(snr, kind="stable")
        ev, snr = ev[order], snr[order]
    else:
        ev = np.zeros(0)
        snr = np.zeros(0)
    return CurveData(
        filename=filename,
        camera_model=camera_model,
        iso=iso,
        channel_tag=channel_tag,
        signal_ev=ev,
        snr_db=snr,
        normalization_db=offset,
    )


def is_sufficient(snr_db, threshold_db: float) -> bool:
    """True when the measured (normalized) SNR values straddle ``threshold_db``."""
    snr = np.asarray(snr_db, dtype=np.float64)
    if snr.size == 0:
        return False
    return bool(snr.min() < threshold_db < snr.max())


# ───────────────────────────── fitting & crossings


def fit_curve(
    signal_ev,
    snr_db,
    order: int,
    model: FitModel = FitModel.EV_OF_SNR,
    weights=None,
) -> np.ndarray:
    """Polynomial coefficients (highest first) for the selected model."""
    if model is FitModel.EV_OF_SNR:
        return poly_fit(snr_db, signal_ev, order, weights)
    return poly_fit(signal_ev, snr_db, order, weights)


def find_crossing(coeffs, target: float, lo: float, hi: float) -> Optional[float]:
    """Solve ``poly(x) == target`` for ``x`` in ``[lo, hi]``.

    Quadratics use the closed form (larger in-range root first); cubics and
    higher use Newton–Raphson from the interval midpoint. Returns ``None``
    when no solution lies in the interval.
    """
    lo, hi = min(lo, hi), max(lo, hi)
    c = np.trim_zeros(np.array(coeffs, dtype=np.float64, copy=True), "f")
    if c.size < 2:
        return None
    c[-1] -= target
    degree = c.size - 1

    if degree == 1:
        x = -c[1] / c[0]
        return float(x) if lo <= x <= hi else None

    if degree == 2:
        a, b, cc = c
        disc = b * b - 4.0 * a * cc
        if disc < 0:
            return None
        q = -0.5 * (b + math.copysign(math.sqrt(disc), b))
        if q == 0.0:
            roots = [-b / (2.0 * a)]
        else:
            roots = sorted((q / a, cc / q), reverse=True)
        for r in roots:
            if lo <= r <= hi:
                return float(r)
        return None

    deriv = poly_derivative(c)
    x = (lo + hi) / 2.0
    for _ in range(_NEWTON_MAX_ITER):
        fp = float(poly_eval(deriv, x))
        if abs(fp) < _NEWTON_TOL:
            break
        step = float(poly_eval(c, x)) / fp
        x -= step
        if abs(step) < _NEWTON_TOL:
            break
    if math.isfinite(x) and lo <= x <= hi:
        return float(x)
    return None


def crossing_ev(curve: CurveData, threshold_db: float) -> Optional[float]:
    """EV at which the fitted curve reaches ``threshold_db`` inside the measured range."""
    if not curve.has_fit or curve.patches_used == 0:
        return None
    ev_min = float(curve.signal_ev.min())
    ev_max = float(curve.signal_ev.max())
    if curve.fit_model is FitModel.EV_OF_SNR:
        ev = float(poly_eval(curve.poly_coeffs, threshold_db))
        return ev if ev_min <= ev <= ev_max else None
    return find_crossing(curve.poly_coeffs, threshold_db, ev_min, ev_max)


def generate_curve_points(
    coeffs, model: FitModel, curve: CurveData, n: int = CURVE_POINTS
) -> np.ndarray:
    """Dense ``(ev, snr_db)`` polyline across the measured range."""
    if curve.patches_used == 0 or np.asarray(coeffs).size == 0:
        return np.zeros((0, 2))
    if model is FitModel.EV_OF_SNR:
        snr = np.linspace(curve.snr_db.min(), curve.snr_db.max(), n)
        ev = poly_eval(coeffs, snr)
    else:
        ev = np.linspace(curve.signal_ev.min(), curve.signal_ev.max(), n)
        snr = poly_eval(coeffs, ev)
    return np.column_stack([ev, snr])


def calculate_dynamic_range(
    curve: CurveData,
    thresholds_db: Sequence[float],
    *,
    order: int = 3,
    model: FitModel = FitModel.EV_OF_SNR,
    normalized_to_mpx: float = 0.0,
    weights=None,
) -> Tuple[CurveData, List[DynamicRangeResult]]:
    """Fit ``curve`` and return it with one :class:`DynamicRangeResult` per threshold.

    With fewer than ``order + 1`` points no fit is made and every threshold is
    reported without a DR value.
    """
    fitted = curve
    if curve.patches_used >= order + 1:
        coeffs = fit_curve(curve.signal_ev, curve.snr_db, order, model, weights)
        fitted = dataclasses.replace(
            curve,
            poly_coeffs=coeffs,
            fit_model=model,
            curve_points=generate_curve_points(coeffs, model, curve),
        )
    else:
        logging.warning(
            "%s [%s]: %d valid patches, need %d for an order-%d fit",
            curve.filename,
            curve.channel_tag,
            curve.patches_used,
            order + 1,
            order,
        )

    results: List[DynamicRangeResult] = []
    for t in thresholds_db:
        sufficient = is_sufficient(curve.snr_db, t)
        ev = crossing_ev(fitted, t) if sufficient else None
        results.append(
            DynamicRangeResult(
                filename=curve.filename,
                channel_tag=curve.channel_tag,
                threshold_db=float(t),
                dr_ev=(0.0 - ev) if ev is not None else None,
                patches_used=curve.patches_used,
                normalized_to_mpx=float(normalized_to_mpx),
                sufficient=sufficient,
            )
        )
    return fitted, results
