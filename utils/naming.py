# utils/naming.py – Deterministic artifact filenames, plot titles and labels

from __future__ import annotations

import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Tuple

from core.models import Channel

__all__ = [
    "NamingContext",
    "safe_camera_name",
    "channel_tag",
    "channel_display",
    "summary_plot_filename",
    "individual_plot_filename",
    "csv_filename",
    "debug_filename",
    "patches_filename",
    "crop_dump_filename",
    "plot_title",
    "curve_label",
    "format_threshold",
    "generate_command",
]

_AVG_TAG = "avg"


@dataclass(frozen=True)
class NamingContext:
    camera_name: str = ""
    channels: Tuple[Channel, ...] = (Channel.AVG,)
    plot_format: str = "PNG"

    @classmethod
    def from_config(cls, config) -> "NamingContext":
        return cls(
            camera_name=config.camera_name,
            channels=tuple(config.channels),
            plot_format=config.plot_format,
        )

    @property
    def extension(self) -> str:
        return self.plot_format.lower()

    @property
    def camera_suffix(self) -> str:
        name = safe_camera_name(self.camera_name)
        return f"_{name}" if name else ""


def safe_camera_name(name: str | None) -> str:
    """Camera name usable in filenames (spaces become underscores)."""
    return "_".join((name or "").strip().split())


def channel_tag(channel: Channel) -> str:
    return _AVG_TAG if channel is Channel.AVG else channel.value


def channel_display(tag: str) -> str:
    return "AVG (Full)" if tag == _AVG_TAG else tag


def _channel_suffix(channels: Iterable[Channel]) -> str:
    channels = list(channels)
    parts = []
    if Channel.AVG in channels:
        parts.append("_average")
    singles = [c.value for c in channels if c is not Channel.AVG]
    if singles:
        parts.append("_channels_" + "_".join(singles))
    return "".join(parts)


def summary_plot_filename(ctx: NamingContext) -> str:
    return f"snr_curves{ctx.camera_suffix}{_channel_suffix(ctx.channels)}.{ctx.extension}"


def individual_plot_filename(
    ctx: NamingContext, iso: int, source: str, tag: str
) -> str:
    """``snr_curve_ISO<n>[_camera]_<channel>.<ext>``; the file stem replaces ISO when unknown."""
    head = f"ISO{iso}" if iso > 0 else Path(source).stem
    head = safe_camera_name(head)
    return f"snr_curve_{head}{ctx.camera_suffix}_{tag}.{ctx.extension}"


def csv_filename(ctx: NamingContext) -> str:
    return f"results{ctx.camera_suffix}.csv"


def debug_filename(ctx: NamingContext, kind: str) -> str:
    return f"debug_{kind}{ctx.camera_suffix}.png"


def patches_filename(ctx: NamingContext) -> str:
    return f"printpatches{ctx.camera_suffix}.png"


def crop_dump_filename(source: str, tag: str) -> str:
    return f"debug_crop_{safe_camera_name(Path(source).stem)}_{tag}.tiff"


def plot_title(ctx: NamingContext, iso: int | None = None) -> str:
    """``SNR Curves (camera)`` for the summary, ``SNR Curve (camera, ISO n)`` per file."""
    camera = (ctx.camera_name or "").strip()
    if iso is None:
        return f"SNR Curves ({camera})" if camera else "SNR Curves"
    parts = [p for p in (camera, f"ISO {iso}" if iso > 0 else "") if p]
    return f"SNR Curve ({', '.join(parts)})" if parts else "SNR Curve"


def curve_label(filename: str, tag: str) -> str:
    return f"{Path(filename).stem} ({channel_display(tag)})"


def format_threshold(threshold_db: float) -> str:
    """Column label for one threshold, e.g. ``DR(12dB)`` or ``DR(-1.5dB)``."""
    return f"DR({threshold_db:g}dB)"


def generate_command(config) -> str:
    """Command line equivalent to ``config`` (shown under plots in plot+command mode)."""
    args = ["dynarange"]
    if config.dark_file is not None:
        args += ["--dark-file", str(config.dark_file)]
    else:
        args += ["--dark-value", f"{config.dark_value:g}"]
    if config.sat_file is not None:
        args += ["--sat-file", str(config.sat_file)]
    else:
        args += ["--sat-value", f"{config.sat_value:g}"]
    args += [
        "--snr-thresholds-db",
        ",".join(f"{t:g}" for t in config.snr_thresholds_db),
        "--dr-normalization-mpx",
        f"{config.dr_normalization_mpx:g}",
        "--poly-order",
        str(config.poly_order),
        "--patch-ratio",
        f"{config.patch_ratio:g}",
        "--grid-rows",
        str(config.grid_rows),
        "--grid-cols",
        str(config.grid_cols),
    ]
    if config.sensor_resolution_mpx > 0:
        args += ["--sensor-resolution-mpx", f"{config.sensor_resolution_mpx:g}"]
    if config.chart_corners is not None:
        flat = [f"{v:g}" for pt in config.chart_corners for v in pt]
        args += ["--chart-corners", ",".join(flat)]
    args += ["--channels", ",".join(c.value for c in config.channels)]
    args += [str(p.name) for p in config.input_files]
    return " ".join(shlex.quote(a) for a in args)
