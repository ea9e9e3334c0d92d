# core/models.py – Value objects shared by the measurement pipeline

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from functools import cached_property
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import numpy as np

from core.errors import CalibrationError, FailureKind, RunStatus

__all__ = [
    "Channel",
    "FitModel",
    "RawFrame",
    "Calibration",
    "KeystoneParams",
    "ChartGeometry",
    "PatchSample",
    "PatchAnalysisResult",
    "CurveData",
    "DynamicRangeResult",
    "PreAnalysisResult",
    "FileResult",
    "PlotBounds",
    "RunReport",
]

Point = Tuple[float, float]
Rect = Tuple[int, int, int, int]


class Channel(str, Enum):
    R = "R"
    G1 = "G1"
    G2 = "G2"
    B = "B"
    AVG = "AVG"


class FitModel(str, Enum):
    EV_OF_SNR = "ev_of_snr"
    SNR_OF_EV = "snr_of_ev"


# ───────────────────────────────────────────── raw input


@dataclass(frozen=True, eq=False)
class RawFrame:
    """Decoded sensor plane plus the metadata the pipeline needs.

    ``active_rect`` is ``(top, left, width, height)`` in sensor pixels and
    defaults to the full frame. ``sensor`` is kept as a read-only view.
    """

    path: Path
    sensor: np.ndarray
    active_rect: Optional[Rect] = None
    black_from_metadata: float = 0.0
    saturation_maximum: float = 0.0
    bit_depth: int = 0
    iso: int = 0
    camera_model: str = ""
    megapixels: float = 0.0

    def __post_init__(self) -> None:
        if self.sensor.ndim != 2:
            raise ValueError(f"sensor plane must be 2-D, got {self.sensor.shape}")
        h, w = self.sensor.shape
        rect = self.active_rect
        if rect is None:
            rect = (0, 0, w, h)
        top, left, rw, rh = (int(v) for v in rect)
        if top < 0 or left < 0 or rw <= 0 or rh <= 0 or top + rh > h or left + rw > w:
            rect = (0, 0, w, h)
        else:
            rect = (top, left, rw, rh)
        object.__setattr__(self, "active_rect", rect)
        object.__setattr__(self, "path", Path(self.path))
        sensor = self.sensor.view()
        sensor.flags.writeable = False
        object.__setattr__(self, "sensor", sensor)

    @property
    def height(self) -> int:
        return int(self.sensor.shape[0])

    @property
    def width(self) -> int:
        return int(self.sensor.shape[1])

    @cached_property
    def active(self) -> np.ndarray:
        top, left, w, h = self.active_rect  # type: ignore[misc]
        return self.sensor[top : top + h, left : left + w]


@dataclass(frozen=True)
class Calibration:
    black_level: float
    saturation_value: float

    def __post_init__(self) -> None:
        black = float(self.black_level)
        sat = float(self.saturation_value)
        if not (math.isfinite(black) and math.isfinite(sat)):
            raise CalibrationError("calibration values must be finite")
        if not 0.0 <= black < sat:
            raise CalibrationError(
                f"invalid calibration: black={black:g} saturation={sat:g} "
                "(need 0 <= black < saturation)"
            )
        object.__setattr__(self, "black_level", black)
        object.__setattr__(self, "saturation_value", sat)

    @property
    def span(self) -> float:
        return self.saturation_value - self.black_level

    def normalize(self, data: np.ndarray) -> np.ndarray:
        """Map DN to the 0..1 range between black and saturation."""
        return (np.asarray(data, dtype=np.float64) - self.black_level) / self.span


# ───────────────────────────────────────────── geometry


@dataclass(frozen=True)
class KeystoneParams:
    coeffs: Tuple[float, ...]

    def __post_init__(self) -> None:
        if len(self.coeffs) != 8:
            raise ValueError("KeystoneParams needs exactly 8 coefficients")
        object.__setattr__(self, "coeffs", tuple(float(c) for c in self.coeffs))

    def as_array(self) -> np.ndarray:
        return np.asarray(self.coeffs, dtype=np.float64)


@dataclass(frozen=True)
class ChartGeometry:
    """Chart placement in Bayer-plane (half resolution) coordinates."""

    corners: Tuple[Point, Point, Point, Point]
    destination: Tuple[Point, Point, Point, Point]
    keystone: KeystoneParams
    crop: Rect  # x, y, width, height


# ───────────────────────────────────────────── patches and curves


@dataclass(frozen=True)
class PatchSample:
    signal: float
    noise: float
    row: int
    col: int

    @property
    def snr_db(self) -> float:
        return 20.0 * math.log10(self.signal / self.noise)


@dataclass(frozen=True, eq=False)
class PatchAnalysisResult:
    samples: Tuple[PatchSample, ...]
    overlay: Optional[np.ndarray]
    max_pixel_value: float
    snr_floor_db: float

    @property
    def min_snr_db(self) -> float:
        if not self.samples:
            return float("nan")
        return min(s.snr_db for s in self.samples)


@dataclass(frozen=True, eq=False)
class CurveData:
    filename: str
    camera_model: str
    iso: int
    channel_tag: str
    signal_ev: np.ndarray
    snr_db: np.ndarray
    poly_coeffs: np.ndarray = field(default_factory=lambda: np.zeros(0))
    fit_model: FitModel = FitModel.EV_OF_SNR
    curve_points: np.ndarray = field(default_factory=lambda: np.zeros((0, 2)))
    normalization_db: float = 0.0

    @property
    def patches_used(self) -> int:
        return int(len(self.signal_ev))

    @property
    def has_fit(self) -> bool:
        return self.poly_coeffs.size > 0


@dataclass(frozen=True)
class DynamicRangeResult:
    filename: str
    channel_tag: str
    threshold_db: float
    dr_ev: Optional[float]
    patches_used: int
    normalized_to_mpx: float
    sufficient: bool


# ───────────────────────────────────────────── run bookkeeping


@dataclass(frozen=True)
class PreAnalysisResult:
    path: Path
    mean_brightness: float
    saturation_ratio: float
    has_saturated: bool = False
    iso: int = 0
    megapixels: float = 0.0
    camera_model: str = ""


@dataclass
class FileResult:
    path: Path
    order: int
    curves: List[CurveData] = field(default_factory=list)
    results: List[DynamicRangeResult] = field(default_factory=list)
    failures: List[Tuple[FailureKind, str]] = field(default_factory=list)

    @property
    def filename(self) -> str:
        return self.path.name

    @property
    def processed(self) -> bool:
        """True when the file produced curve data (possibly without a fit)."""
        return bool(self.curves)


@dataclass(frozen=True)
class PlotBounds:
    ev_min: float = -15.0
    ev_max: float = 1.0
    db_min: float = -20.0
    db_max: float = 40.0


@dataclass
class RunReport:
    status: RunStatus = RunStatus.OK
    fatal_error: Optional[Tuple[FailureKind, str]] = None
    files: List[FileResult] = field(default_factory=list)
    bounds: PlotBounds = field(default_factory=PlotBounds)
    calibration: Optional[Calibration] = None
    sensor_mpx: float = 0.0
    reference: Optional[Path] = None
    skipped: List[Tuple[Path, FailureKind, str]] = field(default_factory=list)
    artifacts: Dict[str, Path] = field(default_factory=dict)

    @property
    def curves(self) -> List[CurveData]:
        return [c for f in self.files for c in f.curves]

    @property
    def results(self) -> List[DynamicRangeResult]:
        return [r for f in self.files for r in f.results]

    @property
    def processed_files(self) -> List[FileResult]:
        return [f for f in self.files if f.processed]
