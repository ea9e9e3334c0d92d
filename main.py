#!/usr/bin/env python
import sys
import os
import logging
import faulthandler
import argparse
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from core.errors import RunStatus
from core.pipeline import run_pipeline
from utils.config import (
    PLOT_FORMATS,
    PLOT_MODES,
    apply_overrides,
    build_configuration,
    load_config,
    parse_channels,
    parse_corners,
    parse_thresholds,
)
from utils.logger import setup_logging


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dynarange",
        description="Measure sensor dynamic range from RAW exposures of a test chart.",
    )
    parser.add_argument("input_files", nargs="*", type=Path, help="RAW (or TIFF mosaic) files")
    parser.add_argument("--config", type=Path, help="YAML config file or folder with config.yaml")

    calib = parser.add_argument_group("calibration")
    dark = calib.add_mutually_exclusive_group()
    dark.add_argument("--dark-file", type=Path)
    dark.add_argument("--dark-value", type=float)
    sat = calib.add_mutually_exclusive_group()
    sat.add_argument("--sat-file", type=Path)
    sat.add_argument("--sat-value", type=float)
    calib.add_argument(
        "--from-metadata",
        action="store_true",
        default=None,
        help="estimate black/saturation from RAW metadata when no file is given",
    )

    proc = parser.add_argument_group("processing")
    proc.add_argument("--snr-thresholds-db", help="comma separated, e.g. 12,0")
    proc.add_argument("--dr-normalization-mpx", type=float)
    proc.add_argument("--sensor-resolution-mpx", type=float)
    proc.add_argument("--poly-order", type=int, choices=(2, 3))
    proc.add_argument("--fit-model", choices=("ev_of_snr", "snr_of_ev"))
    proc.add_argument("--patch-ratio", type=float)
    proc.add_argument("--grid-rows", type=int)
    proc.add_argument("--grid-cols", type=int)
    proc.add_argument("--chart-corners", help="x1,y1,...,x4,y4 in sensor pixels (TL,BL,BR,TR)")
    proc.add_argument("--channels", help="comma separated subset of R,G1,G2,B,AVG")
    proc.add_argument("--workers", type=int)

    out = parser.add_argument_group("output")
    out.add_argument("--output-dir", type=Path)
    out.add_argument("--output-file", type=Path)
    out.add_argument("--camera-name")
    out.add_argument("--plot-mode", choices=PLOT_MODES)
    out.add_argument("--plot-format", type=str.upper, choices=PLOT_FORMATS)
    out.add_argument("--plot-bundle", action="store_true", default=None)
    out.add_argument("--debug-images", action="store_true", default=None)
    out.add_argument("--log-level")
    out.add_argument("--log-file", type=Path)
    return parser


def _overrides(args: argparse.Namespace) -> Dict[str, Any]:
    def _str(p: Optional[Path]) -> Optional[str]:
        return None if p is None else str(p)

    ov: Dict[str, Any] = {
        "calibration.dark_file": _str(args.dark_file),
        "calibration.dark_value": args.dark_value,
        "calibration.sat_file": _str(args.sat_file),
        "calibration.sat_value": args.sat_value,
        "calibration.from_metadata": args.from_metadata,
        "processing.dr_normalization_mpx": args.dr_normalization_mpx,
        "processing.sensor_resolution_mpx": args.sensor_resolution_mpx,
        "processing.poly_order": args.poly_order,
        "processing.fit_model": args.fit_model,
        "processing.max_workers": args.workers,
        "chart.patch_ratio": args.patch_ratio,
        "chart.grid_rows": args.grid_rows,
        "chart.grid_cols": args.grid_cols,
        "output.output_dir": _str(args.output_dir),
        "output.output_file": _str(args.output_file),
        "output.camera_name": args.camera_name,
        "output.plot_mode": args.plot_mode,
        "output.plot_format": args.plot_format,
        "output.plot_bundle": args.plot_bundle,
        "output.debug_images": args.debug_images,
        "logging.level": args.log_level,
        "logging.file": _str(args.log_file),
    }
    if args.snr_thresholds_db is not None:
        ov["processing.snr_thresholds_db"] = list(parse_thresholds(args.snr_thresholds_db))
    if args.chart_corners is not None:
        ov["chart.corners"] = [list(p) for p in parse_corners(args.chart_corners)]
    if args.channels is not None:
        ov["processing.channels"] = [c.value for c in parse_channels(args.channels)]
    # a numeric value on the command line overrides a configured calibration file
    if args.dark_value is not None:
        ov["calibration.dark_file"] = ""
    if args.sat_value is not None:
        ov["calibration.sat_file"] = ""
    if args.input_files:
        ov["input_files"] = [str(p) for p in args.input_files]
    return ov


def main(argv: Optional[List[str]] = None) -> int:
    setup_logging()

    if os.environ.get("NO_FAULTHANDLER") is None:
        faulthandler.enable()

    args = build_parser().parse_args(argv)
    try:
        cfg = apply_overrides(load_config(args.config), _overrides(args))
        config = build_configuration(cfg)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        logging.error("Invalid configuration: %s", exc)
        return 1

    report = run_pipeline(config)
    if report.status is RunStatus.FAILED:
        kind, msg = report.fatal_error or ("unknown", "")
        logging.error("Run failed (%s): %s", getattr(kind, "value", kind), msg)
        return 1
    return 0 if report.processed_files else 1


if __name__ == "__main__":
    sys.exit(main())
