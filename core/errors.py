# core/errors.py – Error taxonomy and failure kinds

from __future__ import annotations

from enum import Enum

__all__ = [
    "DynaRangeError",
    "RawDecodeError",
    "CalibrationError",
    "GeometryError",
    "FailureKind",
    "RunStatus",
]


class DynaRangeError(RuntimeError):
    """Base class for measurement failures."""


class RawDecodeError(DynaRangeError):
    """A RAW (or TIFF mosaic) file could not be decoded into a sensor plane."""


class CalibrationError(DynaRangeError):
    """Black level / saturation could not be established or are inconsistent."""


class GeometryError(DynaRangeError):
    """Chart corners or the rectified crop are unusable."""


class FailureKind(str, Enum):
    RAW_DECODE = "raw_decode"
    CALIBRATION = "calibration"
    GEOMETRY = "geometry"
    INSUFFICIENT_DATA = "insufficient_data"
    NO_CROSSING = "no_crossing"
    NO_OUTPUT = "no_output"


class RunStatus(str, Enum):
    OK = "ok"
    CANCELLED = "cancelled"
    FAILED = "failed"
