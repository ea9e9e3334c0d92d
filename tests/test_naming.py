#!/usr/bin/env python3
import shlex
from pathlib import Path

import pytest

from core.models import Channel
from utils.config import apply_overrides, build_configuration, load_config
from utils.naming import (
    NamingContext,
    channel_display,
    channel_tag,
    crop_dump_filename,
    csv_filename,
    curve_label,
    debug_filename,
    format_threshold,
    generate_command,
    individual_plot_filename,
    patches_filename,
    plot_title,
    summary_plot_filename,
)


@pytest.mark.parametrize(
    "camera,channels,fmt,expected",
    [
        ("", (Channel.AVG,), "PNG", "snr_curves_average.png"),
        ("Cam A", (Channel.AVG,), "SVG", "snr_curves_Cam_A_average.svg"),
        ("", (Channel.R, Channel.B), "PDF", "snr_curves_channels_R_B.pdf"),
        ("X", (Channel.AVG, Channel.G1), "PNG", "snr_curves_X_average_channels_G1.png"),
    ],
)
def test_summary_plot_filename(camera, channels, fmt, expected):
    ctx = NamingContext(camera_name=camera, channels=channels, plot_format=fmt)
    assert summary_plot_filename(ctx) == expected


def test_individual_plot_filename():
    ctx = NamingContext(camera_name="Cam")
    assert individual_plot_filename(ctx, 800, "IMG_1.dng", "avg") == "snr_curve_ISO800_Cam_avg.png"
    assert individual_plot_filename(ctx, 0, "dir/IMG 1.dng", "R") == "snr_curve_IMG_1_Cam_R.png"


def test_other_filenames():
    ctx = NamingContext(camera_name="Cam")
    assert csv_filename(ctx) == "results_Cam.csv"
    assert csv_filename(NamingContext()) == "results.csv"
    assert debug_filename(ctx, "corners") == "debug_corners_Cam.png"
    assert patches_filename(NamingContext()) == "printpatches.png"
    assert crop_dump_filename("a/b/shot.dng", "G1") == "debug_crop_shot_G1.tiff"


def test_titles_and_labels():
    assert plot_title(NamingContext()) == "SNR Curves"
    assert plot_title(NamingContext(camera_name="Cam")) == "SNR Curves (Cam)"
    assert plot_title(NamingContext(camera_name="Cam"), 400) == "SNR Curve (Cam, ISO 400)"
    assert plot_title(NamingContext(), 0) == "SNR Curve"
    assert curve_label("shot_ISO100.dng", "avg") == "shot_ISO100 (AVG (Full))"
    assert channel_tag(Channel.AVG) == "avg"
    assert channel_tag(Channel.G2) == "G2"
    assert channel_display("B") == "B"


@pytest.mark.parametrize("t,label", [(12.0, "DR(12dB)"), (0.0, "DR(0dB)"), (-1.5, "DR(-1.5dB)")])
def test_format_threshold(t, label):
    assert format_threshold(t) == label


def test_generate_command_round_trips_through_shell_split():
    cfg = apply_overrides(
        load_config(),
        {
            "input_files": ["/data/my shot.dng", "b.dng"],
            "calibration.dark_value": 512,
            "chart.corners": [[1, 2], [3, 4], [5, 6], [7, 8]],
        },
    )
    cmd = generate_command(build_configuration(cfg))
    args = shlex.split(cmd)
    assert args[0] == "dynarange"
    assert args[args.index("--dark-value") + 1] == "512"
    assert args[args.index("--snr-thresholds-db") + 1] == "12,0"
    assert args[args.index("--chart-corners") + 1] == "1,2,3,4,5,6,7,8"
    assert args[-2:] == ["my shot.dng", "b.dng"]
    assert Path(args[-1]).name == "b.dng"
