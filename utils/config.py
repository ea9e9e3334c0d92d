# utils/config.py – YAML config loading and the immutable run Configuration

from __future__ import annotations

import copy
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple

import yaml

from core.models import Channel, FitModel

__all__ = [
    "PLOT_MODES",
    "PLOT_FORMATS",
    "Configuration",
    "load_config",
    "set_nested",
    "apply_overrides",
    "build_configuration",
    "parse_float",
    "parse_thresholds",
    "parse_corners",
    "parse_channels",
]

PLOT_MODES = ("none", "plot", "plot+command")
PLOT_FORMATS = ("PNG", "SVG", "PDF")

Point = Tuple[float, float]

# ────────────────────────────────────────────────
# Load & merge config
# ────────────────────────────────────────────────
_DEFAULT_CFG_PATH = Path(__file__).parent.parent / "config" / "default_config.yaml"


def _read_yaml(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


def _merge_dict(dst: Dict[str, Any], src: Dict[str, Any]) -> Dict[str, Any]:
    """Recursive dict merge (src overwrites dst)."""
    for k, v in src.items():
        if isinstance(v, dict) and isinstance(dst.get(k), dict):
            dst[k] = _merge_dict(dst[k], v)
        else:
            dst[k] = v
    return dst


def load_config(project_cfg_path: Path | str | None = None) -> Dict[str, Any]:
    """Return merged config dict (default <- project).

    A directory argument means ``<dir>/config.yaml``. Without an argument the
    defaults alone are returned.
    """
    cfg = _read_yaml(_DEFAULT_CFG_PATH)
    if project_cfg_path is None:
        return cfg
    project_yaml = Path(project_cfg_path)
    if project_yaml.is_dir():
        project_yaml = project_yaml / "config.yaml"
    return _merge_dict(cfg, _read_yaml(project_yaml))


def set_nested(cfg: Dict[str, Any], dotted: str, value: Any) -> None:
    """Set ``cfg["a"]["b"] = value`` for ``dotted == "a.b"``."""
    keys = dotted.split(".")
    node = cfg
    for key in keys[:-1]:
        node = node.setdefault(key, {})
    node[keys[-1]] = value


def apply_overrides(cfg: Dict[str, Any], overrides: Mapping[str, Any]) -> Dict[str, Any]:
    """Return a copy of ``cfg`` with dotted-key overrides applied (``None`` skipped)."""
    out = copy.deepcopy(cfg)
    for dotted, value in overrides.items():
        if value is not None:
            set_nested(out, dotted, value)
    return out


# ────────────────────────────────────────────────
# Value parsing
# ────────────────────────────────────────────────


def parse_float(value: Any, name: str) -> float:
    """Parse a number with '.' as decimal separator regardless of locale."""
    if isinstance(value, bool):
        raise ValueError(f"{name}: expected a number, got {value!r}")
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name}: expected a number, got {value!r}") from exc


def parse_thresholds(value: Any) -> Tuple[float, ...]:
    """Thresholds from a list or a comma/space separated string, de-duplicated."""
    if isinstance(value, str):
        items: Sequence[Any] = [v for v in value.replace(",", " ").split() if v]
    elif isinstance(value, (int, float)):
        items = [value]
    else:
        items = list(value or [])
    out: list[float] = []
    for item in items:
        t = parse_float(item, "snr_thresholds_db")
        if t not in out:
            out.append(t)
    if not out:
        raise ValueError("snr_thresholds_db: at least one threshold is required")
    return tuple(out)


def parse_corners(value: Any) -> Optional[Tuple[Point, Point, Point, Point]]:
    """Four ``[x, y]`` pairs, or eight numbers, or ``None``."""
    if value is None:
        return None
    if isinstance(value, str):
        value = [v for v in value.replace(",", " ").split() if v]
    flat: list[float] = []
    for item in value:
        if isinstance(item, (list, tuple)):
            flat.extend(parse_float(v, "chart.corners") for v in item)
        else:
            flat.append(parse_float(item, "chart.corners"))
    if len(flat) != 8:
        raise ValueError("chart.corners: expected four (x, y) points")
    pts = [(flat[i], flat[i + 1]) for i in range(0, 8, 2)]
    return (pts[0], pts[1], pts[2], pts[3])


def parse_channels(value: Any) -> Tuple[Channel, ...]:
    if isinstance(value, str):
        value = [v for v in value.replace(",", " ").split() if v]
    out: list[Channel] = []
    for item in value or []:
        try:
            ch = Channel(str(item).upper())
        except ValueError as exc:
            raise ValueError(f"processing.channels: unknown channel {item!r}") from exc
        if ch not in out:
            out.append(ch)
    if not out:
        raise ValueError("processing.channels: at least one channel is required")
    return tuple(out)


def _optional_path(value: Any) -> Optional[Path]:
    if value is None or value == "":
        return None
    return Path(value)


# ────────────────────────────────────────────────
# Immutable run configuration
# ────────────────────────────────────────────────


@dataclass(frozen=True)
class Configuration:
    input_files: Tuple[Path, ...]
    dark_file: Optional[Path] = None
    dark_value: float = 0.0
    sat_file: Optional[Path] = None
    sat_value: float = 16383.0
    calibrate_from_metadata: bool = False
    output_dir: Path = Path(".")
    output_file: Optional[Path] = None
    camera_name: str = ""
    snr_thresholds_db: Tuple[float, ...] = (12.0, 0.0)
    dr_normalization_mpx: float = 8.0
    sensor_resolution_mpx: float = 0.0
    poly_order: int = 3
    fit_model: FitModel = FitModel.EV_OF_SNR
    snr_floor_db: float = -10.0
    permissive_snr_floor_db: float = -90.0
    reanalyze_low_snr: bool = True
    patch_ratio: float = 0.5
    grid_rows: int = 7
    grid_cols: int = 11
    chart_corners: Optional[Tuple[Point, Point, Point, Point]] = None
    channels: Tuple[Channel, ...] = (Channel.AVG,)
    plot_mode: str = "none"
    plot_format: str = "PNG"
    plot_bundle: bool = False
    report_summary: bool = True
    debug_images: bool = False
    max_workers: int = 1
    log_level: str = "INFO"
    log_file: Optional[Path] = None

    def __post_init__(self) -> None:
        if not self.input_files:
            raise ValueError("input_files: at least one input file is required")
        if self.poly_order not in (2, 3):
            raise ValueError("processing.poly_order must be 2 or 3")
        if not 0.0 < self.patch_ratio <= 1.0:
            raise ValueError("chart.patch_ratio must lie in (0, 1]")
        if self.grid_rows < 1 or self.grid_cols < 1:
            raise ValueError("chart grid must have at least one row and column")
        if self.dr_normalization_mpx < 0 or self.sensor_resolution_mpx < 0:
            raise ValueError("resolution values must be >= 0")
        if self.plot_mode not in PLOT_MODES:
            raise ValueError(f"output.plot_mode must be one of {PLOT_MODES}")
        if self.plot_format not in PLOT_FORMATS:
            raise ValueError(f"output.plot_format must be one of {PLOT_FORMATS}")
        if self.max_workers < 1:
            raise ValueError("processing.max_workers must be >= 1")

    @property
    def csv_path(self) -> Path:
        from utils.naming import NamingContext, csv_filename

        if self.output_file is not None:
            return self.output_file
        return self.output_dir / csv_filename(NamingContext.from_config(self))


def build_configuration(cfg: Mapping[str, Any]) -> Configuration:
    """Validate a merged config dict and freeze it into a :class:`Configuration`."""
    calib = cfg.get("calibration", {}) or {}
    chart = cfg.get("chart", {}) or {}
    proc = cfg.get("processing", {}) or {}
    out = cfg.get("output", {}) or {}
    log = cfg.get("logging", {}) or {}

    try:
        fit_model = FitModel(str(proc.get("fit_model", "ev_of_snr")).lower())
    except ValueError as exc:
        raise ValueError(f"processing.fit_model: {exc}") from exc

    return Configuration(
        input_files=tuple(Path(p) for p in cfg.get("input_files", []) or []),
        dark_file=_optional_path(calib.get("dark_file")),
        dark_value=parse_float(calib.get("dark_value", 0.0), "calibration.dark_value"),
        sat_file=_optional_path(calib.get("sat_file")),
        sat_value=parse_float(calib.get("sat_value", 16383), "calibration.sat_value"),
        calibrate_from_metadata=bool(calib.get("from_metadata", False)),
        output_dir=Path(out.get("output_dir") or "."),
        output_file=_optional_path(out.get("output_file")),
        camera_name=str(out.get("camera_name") or ""),
        snr_thresholds_db=parse_thresholds(proc.get("snr_thresholds_db", [12.0, 0.0])),
        dr_normalization_mpx=parse_float(
            proc.get("dr_normalization_mpx", 8.0), "processing.dr_normalization_mpx"
        ),
        sensor_resolution_mpx=parse_float(
            proc.get("sensor_resolution_mpx", 0.0), "processing.sensor_resolution_mpx"
        ),
        poly_order=int(proc.get("poly_order", 3)),
        fit_model=fit_model,
        snr_floor_db=parse_float(proc.get("snr_floor_db", -10.0), "processing.snr_floor_db"),
        permissive_snr_floor_db=parse_float(
            proc.get("permissive_snr_floor_db", -90.0),
            "processing.permissive_snr_floor_db",
        ),
        reanalyze_low_snr=bool(proc.get("reanalyze_low_snr", True)),
        patch_ratio=parse_float(chart.get("patch_ratio", 0.5), "chart.patch_ratio"),
        grid_rows=int(chart.get("grid_rows", 7)),
        grid_cols=int(chart.get("grid_cols", 11)),
        chart_corners=parse_corners(chart.get("corners")),
        channels=parse_channels(proc.get("channels", ["AVG"])),
        plot_mode=str(out.get("plot_mode", "none")).lower(),
        plot_format=str(out.get("plot_format", "PNG")).upper(),
        plot_bundle=bool(out.get("plot_bundle", False)),
        report_summary=bool(out.get("report_summary", True)),
        debug_images=bool(out.get("debug_images", False)),
        max_workers=int(proc.get("max_workers", 1)),
        log_level=str(log.get("level", "INFO")).upper(),
        log_file=_optional_path(log.get("file")),
    )
