# core/geometry.py – Bayer channel planes, chart corners and keystone rectification

from __future__ import annotations

import logging
import math
from typing import Callable, Optional, Sequence, Tuple

import numpy as np

from core.errors import GeometryError
from core.models import Calibration, Channel, ChartGeometry, KeystoneParams, RawFrame
from utils.math_kernel import apply_keystone, quantile_nth, solve_keystone

__all__ = [
    "MINIMUM_CHART_AREA_FRACTION",
    "CornerDetector",
    "extract_channel",
    "order_corners",
    "polygon_area",
    "detect_chart_corners",
    "compute_chart_geometry",
    "rectify_and_crop",
    "prepare_chart_image",
]

Point = Tuple[float, float]
Corners = Tuple[Point, Point, Point, Point]

# A detection covering less of the frame than this is treated as a miss.
MINIMUM_CHART_AREA_FRACTION = 0.30
_MARKER_RADIUS_FRACTION = 0.01
_EPS = 1e-9

CornerDetector = Callable[[RawFrame, Calibration], Optional[Corners]]

_CHANNEL_OFFSETS = {
    Channel.R: (0, 0),
    Channel.G1: (0, 1),
    Channel.G2: (1, 0),
    Channel.B: (1, 1),
}


# ───────────────────────────────────────────── bayer planes


def extract_channel(mosaic: np.ndarray, channel: Channel) -> np.ndarray:
    """Return the half-resolution plane of one Bayer site (RGGB layout).

    ``Channel.AVG`` averages the four sites.
    """
    mosaic = np.asarray(mosaic)
    if channel is Channel.AVG:
        h = mosaic.shape[0] // 2
        w = mosaic.shape[1] // 2
        planes = [
            mosaic[dy::2, dx::2][:h, :w].astype(np.float64)
            for dy, dx in _CHANNEL_OFFSETS.values()
        ]
        return sum(planes) / 4.0
    dy, dx = _CHANNEL_OFFSETS[channel]
    return mosaic[dy::2, dx::2].astype(np.float64)


# ───────────────────────────────────────────── corners


def order_corners(points: Sequence[Point]) -> Corners:
    """Sort four arbitrary points into TL, BL, BR, TR order."""
    pts = np.asarray(points, dtype=np.float64)
    if pts.shape != (4, 2) or not np.all(np.isfinite(pts)):
        raise GeometryError("exactly four finite (x, y) corners are required")
    s = pts[:, 0] + pts[:, 1]
    ratio = pts[:, 0] / (pts[:, 1] + _EPS)
    idx = [int(np.argmin(s)), int(np.argmin(ratio)), int(np.argmax(s)), int(np.argmax(ratio))]
    if len(set(idx)) != 4:
        raise GeometryError(f"cannot order chart corners {pts.tolist()}")
    tl, bl, br, tr = (tuple(float(v) for v in pts[i]) for i in idx)
    return (tl, bl, br, tr)  # type: ignore[return-value]


def polygon_area(points: Sequence[Point]) -> float:
    pts = np.asarray(points, dtype=np.float64)
    x, y = pts[:, 0], pts[:, 1]
    return float(abs(np.dot(x, np.roll(y, -1)) - np.dot(y, np.roll(x, -1))) / 2.0)


def detect_chart_corners(frame: RawFrame, calibration: Calibration) -> Optional[Corners]:
    """Locate the four bright corner markers of the chart.

    Works on the normalized G1 plane split into quadrants. In each quadrant the
    pixels above the quantile matching the expected marker area are taken and
    their median position is the corner. Returns sensor-pixel coordinates in
    TL, BL, BR, TR order, or ``None`` when the detected quadrilateral is too
    small to be the chart.
    """
    plane = extract_channel(calibration.normalize(frame.sensor), Channel.G1)
    h, w = plane.shape
    if h < 4 or w < 4:
        return None
    hh, hw = h // 2, w // 2
    radius = _MARKER_RADIUS_FRACTION * math.hypot(w, h)
    circle_area = math.pi * radius * radius
    quadrant_area = float(hh * hw)
    q = 1.0 - min(1.0, circle_area / quadrant_area / 4.0)

    origins = {"tl": (0, 0), "bl": (hh, 0), "br": (hh, hw), "tr": (0, hw)}
    found: dict[str, Point] = {}
    for name, (oy, ox) in origins.items():
        quad = plane[oy : oy + hh, ox : ox + hw]
        thresh = quantile_nth(quad, q)
        ys, xs = np.nonzero(quad >= thresh)
        if xs.size == 0:
            return None
        found[name] = (float(np.median(xs)) + ox, float(np.median(ys)) + oy)

    corners = [found["tl"], found["bl"], found["br"], found["tr"]]
    area = polygon_area(corners)
    if area < MINIMUM_CHART_AREA_FRACTION * h * w:
        logging.warning(
            "Corner detection rejected: chart covers %.1f%% of the image",
            100.0 * area / (h * w),
        )
        return None
    return tuple((x * 2.0, y * 2.0) for x, y in corners)  # type: ignore[return-value]


# ───────────────────────────────────────────── keystone


def _round_half_up(v: float) -> int:
    return int(math.floor(v + 0.5))


def compute_chart_geometry(corners_sensor: Sequence[Point]) -> ChartGeometry:
    """Keystone parameters and crop for corners given in sensor pixels (TL, BL, BR, TR)."""
    pts = np.asarray(corners_sensor, dtype=np.float64)
    if pts.shape != (4, 2) or not np.all(np.isfinite(pts)):
        raise GeometryError("chart geometry needs four finite corners")
    c = pts / 2.0  # sensor -> bayer plane

    xtl = (c[0, 0] + c[1, 0]) / 2.0
    ytl = (c[0, 1] + c[3, 1]) / 2.0
    xbr = (c[2, 0] + c[3, 0]) / 2.0
    ybr = (c[1, 1] + c[2, 1]) / 2.0
    dst = [(xtl, ytl), (xtl, ybr), (xbr, ybr), (xbr, ytl)]

    try:
        k = solve_keystone([tuple(p) for p in c], dst)
    except (np.linalg.LinAlgError, ValueError) as exc:
        raise GeometryError(f"keystone solve failed: {exc}") from exc

    crop = (
        _round_half_up(xtl),
        _round_half_up(ytl),
        _round_half_up(xbr - xtl),
        _round_half_up(ybr - ytl),
    )
    if crop[2] <= 0 or crop[3] <= 0:
        raise GeometryError(f"invalid crop area {crop} from corners {pts.tolist()}")

    geometry = ChartGeometry(
        corners=tuple((float(x), float(y)) for x, y in c),  # type: ignore[arg-type]
        destination=tuple(dst),  # type: ignore[arg-type]
        keystone=KeystoneParams(tuple(k)),
        crop=crop,
    )
    logging.info("Chart geometry: crop=%s keystone=%s", crop, np.round(k, 6).tolist())
    return geometry


def rectify_and_crop(plane: np.ndarray, geometry: ChartGeometry) -> np.ndarray:
    """Undo the keystone on a Bayer plane and cut out the chart rectangle."""
    rectified = apply_keystone(plane, geometry.keystone.as_array())
    x, y, w, h = geometry.crop
    if x < 0 or y < 0 or x + w > rectified.shape[1] or y + h > rectified.shape[0]:
        raise GeometryError(
            f"crop {geometry.crop} outside rectified image {rectified.shape[::-1]}"
        )
    return rectified[y : y + h, x : x + w].copy()


def prepare_chart_image(
    frame: RawFrame,
    calibration: Calibration,
    geometry: ChartGeometry,
    channel: Channel,
) -> np.ndarray:
    """Normalize → channel plane → rectify → crop."""
    plane = extract_channel(calibration.normalize(frame.sensor), channel)
    return rectify_and_crop(plane, geometry)
