# core/plotting.py – SNR curve figures and debug artifacts

from __future__ import annotations

import logging
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Sequence

import matplotlib

matplotlib.use("Agg")  # avoid GUI backend so plotting works inside threads
import matplotlib.pyplot as plt
from matplotlib.figure import Figure
import numpy as np
import tifffile

from core.analysis import render_debug_image
from core.models import CurveData, DynamicRangeResult, PlotBounds
from utils.logger import log_memory_usage
from utils.naming import curve_label

__all__ = [
    "ArtifactKind",
    "plot_snr_curves",
    "save_debug_image",
    "save_corner_overlay",
    "save_crop_dump",
    "write_artifact",
]


class ArtifactKind(str, Enum):
    PLOT_SUMMARY = "plot_summary"
    PLOT_INDIVIDUAL = "plot_individual"
    DEBUG_PATCHES = "debug_patches"
    DEBUG_CORNERS = "debug_corners"
    DEBUG_CROP = "debug_crop"


def _crossings(curve: CurveData, results: Sequence[DynamicRangeResult]):
    for r in results:
        if r.channel_tag == curve.channel_tag and r.dr_ev is not None:
            yield r.threshold_db, -r.dr_ev


def plot_snr_curves(
    curves: Sequence[CurveData],
    results: Sequence[DynamicRangeResult],
    bounds: PlotBounds,
    thresholds_db: Sequence[float],
    output_path: Path,
    *,
    title: str = "SNR Curves",
    footer: Optional[str] = None,
    return_fig: bool = False,
) -> Figure | None:
    """Plot measured points, fitted polylines and threshold crossings."""
    logging.info("plot_snr_curves: output=%s (%d curves)", output_path, len(curves))
    log_memory_usage("plot start: ")

    fig, ax = plt.subplots(figsize=(9, 6))
    colors = plt.rcParams["axes.prop_cycle"].by_key().get("color", ["C0"])
    drawn = 0
    for curve in curves:
        if curve.patches_used == 0:
            continue
        color = colors[drawn % len(colors)]
        drawn += 1
        label = curve_label(curve.filename, curve.channel_tag)
        ax.plot(
            curve.signal_ev,
            curve.snr_db,
            linestyle="None",
            marker="o",
            markersize=3,
            color=color,
            label=label,
        )
        if curve.curve_points.size:
            ax.plot(
                curve.curve_points[:, 0],
                curve.curve_points[:, 1],
                linestyle="-",
                color=color,
                label="_nolegend_",
            )
        for t, ev in _crossings(curve, results):
            ax.plot([ev], [t], marker="x", markersize=8, color=color, label="_nolegend_")
            ax.annotate(
                f"{-ev:.2f} EV",
                (ev, t),
                textcoords="offset points",
                xytext=(4, 4),
                fontsize=7,
                color=color,
            )

    for t in thresholds_db:
        ax.axhline(t, color="r", linestyle="--", linewidth=0.8, label=f"{t:g} dB")

    ax.set_xlim(bounds.ev_min, bounds.ev_max)
    ax.set_ylim(bounds.db_min, bounds.db_max)
    ax.set_xlabel("Signal (EV)")
    ax.set_ylabel("SNR (dB)")
    ax.set_title(title)
    ax.grid(True, which="both")
    ax.legend(fontsize=7)
    if footer:
        fig.text(0.01, 0.01, footer, fontsize=6, family="monospace", ha="left")
    fig.tight_layout(rect=(0, 0.03 if footer else 0, 1, 1))
    output_path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(output_path)
    if return_fig:
        log_memory_usage("plot end: ")
        return fig
    plt.close(fig)
    log_memory_usage("plot end: ")
    return None


def save_debug_image(image: np.ndarray, max_value: float, output_path: Path) -> None:
    """Write a gamma-encoded grayscale PNG of a normalized chart image."""
    output_path.parent.mkdir(parents=True, exist_ok=True)
    plt.imsave(output_path, render_debug_image(image, max_value), cmap="gray", vmin=0, vmax=1)


def save_corner_overlay(
    preview: np.ndarray,
    corners: Sequence[tuple[float, float]],
    output_path: Path,
    *,
    return_fig: bool = False,
) -> Figure | None:
    """Draw the chart quadrilateral (sensor coordinates) on the RGB preview."""
    fig = plt.figure(figsize=(8, 6))
    ax = fig.add_subplot(1, 1, 1)
    ax.imshow(preview)
    pts = np.asarray(list(corners) + [corners[0]], dtype=np.float64)
    ax.plot(pts[:, 0], pts[:, 1], color="lime", linewidth=1)
    for name, (x, y) in zip(("TL", "BL", "BR", "TR"), corners):
        ax.plot([x], [y], marker="o", color="r", markersize=4)
        ax.annotate(name, (x, y), color="yellow", fontsize=8)
    ax.set_axis_off()
    plt.tight_layout()
    output_path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(output_path)
    if return_fig:
        return fig
    plt.close(fig)
    return None


def save_crop_dump(image: np.ndarray, output_path: Path) -> None:
    output_path.parent.mkdir(parents=True, exist_ok=True)
    tifffile.imwrite(output_path, np.asarray(image, dtype=np.float32))


_WRITERS: Dict[ArtifactKind, Callable[..., Any]] = {
    ArtifactKind.PLOT_SUMMARY: plot_snr_curves,
    ArtifactKind.PLOT_INDIVIDUAL: plot_snr_curves,
    ArtifactKind.DEBUG_PATCHES: save_debug_image,
    ArtifactKind.DEBUG_CORNERS: save_corner_overlay,
    ArtifactKind.DEBUG_CROP: save_crop_dump,
}


def write_artifact(kind: ArtifactKind, output_path: Path, *args: Any, **kwargs: Any) -> Path:
    """Write one artifact with the writer registered for ``kind``."""
    _WRITERS[kind](*args, output_path=output_path, **kwargs)
    logging.info("Wrote %s: %s", kind.value, output_path)
    return output_path
