# core/calibration.py – Black level / saturation calibration

from __future__ import annotations

import logging
import math
from pathlib import Path
from typing import Optional

import numpy as np

from core.errors import CalibrationError, RawDecodeError
from core.loader import load_raw_frame
from core.models import Calibration, RawFrame
from utils.math_kernel import mean, quantile_nth

__all__ = [
    "SATURATION_QUANTILE",
    "DEFAULT_BLACK_LEVEL",
    "DEFAULT_BIT_DEPTH",
    "black_level_from_dark_frame",
    "saturation_from_frame",
    "estimate_black_level",
    "estimate_saturation",
    "calibrate",
]

SATURATION_QUANTILE = 0.05
DEFAULT_BLACK_LEVEL = 256.0
DEFAULT_BIT_DEPTH = 14


def _decode(path: Path, what: str) -> RawFrame:
    try:
        return load_raw_frame(path)
    except RawDecodeError as exc:
        raise CalibrationError(f"cannot decode {what} frame: {exc}") from exc


def black_level_from_dark_frame(frame: RawFrame) -> float:
    """Mean of all active-area pixels of a dark exposure."""
    return mean(frame.active)


def saturation_from_frame(frame: RawFrame) -> float:
    """Saturation from the brightest tail of an over-exposed frame.

    The frame is partitioned in descending order and the value at index
    ``floor(n * 0.05)`` is returned, so isolated hot pixels above the true
    clipping level are ignored.
    """
    active = np.asarray(frame.active, dtype=np.float64)
    return -quantile_nth(-active, SATURATION_QUANTILE)


def estimate_black_level(frame: RawFrame) -> float:
    """Black level from RAW metadata, else nearest power of two to the darkest pixel."""
    if frame.black_from_metadata > 0:
        return float(frame.black_from_metadata)
    darkest = float(np.min(frame.active)) if frame.active.size else 0.0
    if darkest <= 0:
        return DEFAULT_BLACK_LEVEL
    return float(2 ** round(math.log2(darkest)))


def estimate_saturation(frame: RawFrame) -> float:
    """Saturation from RAW metadata, else the bit depth's full scale."""
    if frame.saturation_maximum > 0:
        return float(frame.saturation_maximum)
    bits = frame.bit_depth if frame.bit_depth > 0 else DEFAULT_BIT_DEPTH
    return float((1 << bits) - 1)


def calibrate(config, reference: Optional[RawFrame] = None) -> Calibration:
    """Build the run's :class:`Calibration` from ``config``.

    Files take precedence over numbers. With ``config.calibrate_from_metadata``
    the numbers are replaced by estimates from ``reference``.
    """
    use_metadata = config.calibrate_from_metadata and reference is not None

    if config.dark_file is not None:
        black = black_level_from_dark_frame(_decode(config.dark_file, "dark"))
        logging.info("Black level from %s: %.2f", config.dark_file, black)
    elif use_metadata:
        black = estimate_black_level(reference)
        logging.info("Black level estimated from metadata: %.2f", black)
    else:
        black = float(config.dark_value)

    if config.sat_file is not None:
        sat = saturation_from_frame(_decode(config.sat_file, "saturation"))
        logging.info("Saturation from %s: %.2f", config.sat_file, sat)
    elif use_metadata:
        sat = estimate_saturation(reference)
        logging.info("Saturation estimated from metadata: %.2f", sat)
    else:
        sat = float(config.sat_value)

    calib = Calibration(black_level=black, saturation_value=sat)
    logging.info(
        "Calibration: black=%.2f saturation=%.2f",
        calib.black_level,
        calib.saturation_value,
    )
    return calib
