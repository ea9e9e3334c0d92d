# core/report_gen.py – DR record stream, CSV/summary writers and plot bundles

from __future__ import annotations

import csv
import json
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence

from core.models import CurveData, DynamicRangeResult, RunReport
from utils.naming import channel_display, curve_label, format_threshold

__all__ = [
    "iter_records",
    "csv_fieldnames",
    "csv_rows",
    "report_csv",
    "plot_bundle",
    "plot_bundles",
    "save_plot_bundles_json",
    "save_summary_txt",
]

# ──────────────────────────────────────────────── helpers


def _write_if_enabled(flag: bool, path: Path, writer) -> None:
    if flag:
        writer(path)


def _fmt_dr(value: Optional[float]) -> str:
    return "" if value is None else f"{value:.4f}"


def _multi_channel(report: RunReport) -> bool:
    return len({c.channel_tag for c in report.curves}) > 1


def _results_for(curve: CurveData, results: Sequence[DynamicRangeResult]):
    return [r for r in results if r.channel_tag == curve.channel_tag]


# ──────────────────────────────────────────────── public api


def iter_records(report: RunReport) -> Iterator[DynamicRangeResult]:
    """One record per processed file × channel × threshold, in brightness order."""
    for f in report.processed_files:
        yield from f.results


def csv_fieldnames(thresholds_db: Sequence[float], multi_channel: bool) -> List[str]:
    names = ["filename"]
    if multi_channel:
        names.append("channel")
    names.extend(format_threshold(t) for t in thresholds_db)
    names.append("patches_used")
    return names


def csv_rows(report: RunReport, thresholds_db: Sequence[float]) -> List[Dict[str, Any]]:
    """Pivot the record stream into one row per file (per channel when several)."""
    multi = _multi_channel(report)
    rows: List[Dict[str, Any]] = []
    for f in report.processed_files:
        for curve in f.curves:
            by_t = {r.threshold_db: r for r in _results_for(curve, f.results)}
            row: Dict[str, Any] = {"filename": f.filename}
            if multi:
                row["channel"] = curve.channel_tag
            for t in thresholds_db:
                res = by_t.get(float(t))
                row[format_threshold(t)] = _fmt_dr(res.dr_ev if res else None)
            row["patches_used"] = curve.patches_used
            rows.append(row)
    return rows


def report_csv(
    rows: List[Dict[str, Any]], path: Path, fieldnames: Optional[Sequence[str]] = None
) -> None:
    if fieldnames is None:
        if not rows:
            return
        fieldnames = list(rows[0].keys())
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", newline="", encoding="utf-8") as fh:
        w = csv.DictWriter(fh, fieldnames=list(fieldnames))
        w.writeheader()
        w.writerows(rows)


def plot_bundle(curve: CurveData, results: Sequence[DynamicRangeResult]) -> Dict[str, Any]:
    """Plot-ready description of one curve.

    ``crossings`` maps each threshold (as text) to the EV where the curve
    reaches it, or ``None`` when there is no valid crossing.
    """
    crossings: Dict[str, Optional[float]] = {}
    for r in _results_for(curve, results):
        crossings[f"{r.threshold_db:g}"] = None if r.dr_ev is None else -r.dr_ev
    return {
        "filename": curve.filename,
        "camera_model": curve.camera_model,
        "iso": curve.iso,
        "channel_tag": curve.channel_tag,
        "label": curve_label(curve.filename, curve.channel_tag),
        "points": [[float(e), float(s)] for e, s in zip(curve.signal_ev, curve.snr_db)],
        "curve_points": curve.curve_points.tolist(),
        "poly_coeffs": [float(c) for c in curve.poly_coeffs],
        "fit_model": curve.fit_model.value,
        "crossings": crossings,
    }


def plot_bundles(report: RunReport) -> List[Dict[str, Any]]:
    return [plot_bundle(c, f.results) for f in report.processed_files for c in f.curves]


def save_plot_bundles_json(report: RunReport, path: Path, enabled: bool = True) -> None:
    def writer(p: Path) -> None:
        out = {
            "status": report.status.value,
            "bounds": {
                "ev": [report.bounds.ev_min, report.bounds.ev_max],
                "db": [report.bounds.db_min, report.bounds.db_max],
            },
            "curves": plot_bundles(report),
        }
        p.write_text(json.dumps(out, indent=2), encoding="utf-8")

    _write_if_enabled(enabled, path, writer)


def _meta_lines(report: RunReport, config) -> list[str]:
    lines: list[str] = []
    if config.camera_name:
        lines.append(f"Camera: {config.camera_name}")
    if report.calibration is not None:
        lines.append(
            f"Calibration: black={report.calibration.black_level:.2f} "
            f"saturation={report.calibration.saturation_value:.2f}"
        )
    if report.sensor_mpx > 0:
        lines.append(f"Sensor: {report.sensor_mpx:.2f} Mpx")
    if config.dr_normalization_mpx > 0:
        lines.append(f"DR normalized to: {config.dr_normalization_mpx:g} Mpx")
    else:
        lines.append("DR normalized to: per-pixel")
    lines.append(f"Polynomial order: {config.poly_order} ({config.fit_model.value})")
    if report.reference is not None:
        lines.append(f"Reference frame: {report.reference.name}")
    lines.append(f"Status: {report.status.value}")
    lines.append(f"Date: {datetime.now().strftime('%Y-%m-%d')}")
    return lines


def save_summary_txt(report: RunReport, config, path: Path) -> None:
    """Aligned text table of DR (EV) per file and threshold, with run metadata."""

    def writer(p: Path):
        lines = _meta_lines(report, config)
        lines.append("")

        header = ["File", "Channel"]
        header += [f"{format_threshold(t)} (EV)" for t in config.snr_thresholds_db]
        header.append("Patches")
        rows: list[list[str]] = []
        for f in report.processed_files:
            for curve in f.curves:
                by_t = {r.threshold_db: r for r in _results_for(curve, f.results)}
                row = [f.filename, channel_display(curve.channel_tag)]
                for t in config.snr_thresholds_db:
                    res = by_t.get(float(t))
                    row.append(_fmt_dr(res.dr_ev if res else None) or "N/A")
                row.append(str(curve.patches_used))
                rows.append(row)

        table = [header] + rows
        col_widths = [max(len(str(col[i])) for col in table) for i in range(len(header))]
        col_widths[0] = max(20, col_widths[0])

        def fmt(row: list[str]) -> str:
            return "  ".join(text.ljust(col_widths[i]) for i, text in enumerate(row))

        lines.append(fmt(header))
        for row in rows:
            lines.append(fmt(row))

        problems = [
            (f.filename, kind.value, msg) for f in report.files for kind, msg in f.failures
        ]
        problems += [(p.name, kind.value, msg) for p, kind, msg in report.skipped]
        if problems:
            lines.append("")
            lines.append("Issues:")
            for name, kind, msg in problems:
                lines.append(f"  {name}: {kind} – {msg}")
        lines.append("")
        p.write_text("\n".join(lines), encoding="utf-8")

    _write_if_enabled(config.report_summary, path, writer)
