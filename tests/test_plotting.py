#!/usr/bin/env python3
from pathlib import Path

import pytest

np = pytest.importorskip("numpy")
tifffile = pytest.importorskip("tifffile")
pytest.importorskip("matplotlib")

from core import plotting
from core.analysis import calculate_dynamic_range
from core.models import CurveData, PlotBounds


def _fitted():
    curve = CurveData(
        filename="shot_ISO100.dng",
        camera_model="",
        iso=100,
        channel_tag="avg",
        signal_ev=np.array([-10.0, -8.0, -6.0, -4.0]),
        snr_db=np.array([-5.0, 3.0, 12.0, 21.0]),
    )
    return calculate_dynamic_range(curve, [12.0, 0.0], order=3)


def test_plot_snr_curves_draws_thresholds_and_crossings(tmp_path):
    fitted, results = _fitted()
    out = tmp_path / "snr_curves.png"
    fig = plotting.plot_snr_curves(
        [fitted],
        results,
        PlotBounds(),
        [12.0, 0.0],
        out,
        title="SNR Curves (Cam)",
        return_fig=True,
    )
    assert out.exists()
    ax = fig.axes[0]
    assert ax.get_title() == "SNR Curves (Cam)"
    labels = [l.get_label() for l in ax.lines]
    assert "12 dB" in labels and "0 dB" in labels
    crossings = [l for l in ax.lines if l.get_marker() == "x"]
    assert len(crossings) == sum(r.dr_ev is not None for r in results)
    assert crossings[0].get_xdata()[0] == pytest.approx(-6.0)
    assert ax.get_xlim() == (-15.0, 1.0)


def test_plot_footer_and_vector_format(tmp_path):
    fitted, results = _fitted()
    out = tmp_path / "snr_curves.svg"
    fig = plotting.plot_snr_curves(
        [fitted], results, PlotBounds(), [12.0], out, footer="dynarange a.dng", return_fig=True
    )
    assert out.read_text(encoding="utf-8").lstrip().startswith("<?xml")
    assert any(t.get_text() == "dynarange a.dng" for t in fig.texts)


def test_debug_artifacts(tmp_path):
    img = np.linspace(0.0, 0.5, 200).reshape(10, 20)
    patches = plotting.write_artifact(
        plotting.ArtifactKind.DEBUG_PATCHES, tmp_path / "printpatches.png", img, 0.5
    )
    assert patches.exists() and patches.stat().st_size > 0

    crop = plotting.write_artifact(
        plotting.ArtifactKind.DEBUG_CROP, tmp_path / "debug_crop_x_avg.tiff", img
    )
    back = tifffile.imread(crop)
    assert back.dtype == np.float32
    assert np.allclose(back, img, atol=1e-6)

    preview = np.zeros((40, 60, 3), dtype=np.uint8)
    corners = [(5.0, 5.0), (5.0, 35.0), (55.0, 35.0), (55.0, 5.0)]
    out = plotting.write_artifact(
        plotting.ArtifactKind.DEBUG_CORNERS, tmp_path / "debug_corners.png", preview, corners
    )
    assert Path(out).exists()


def test_each_curve_gets_its_own_color(tmp_path):
    fitted, results = _fitted()
    other = CurveData(
        filename="shot_ISO800.dng",
        camera_model="",
        iso=800,
        channel_tag="avg",
        signal_ev=fitted.signal_ev + 1.0,
        snr_db=fitted.snr_db,
    )
    fig = plotting.plot_snr_curves(
        [fitted, other], results, PlotBounds(), [12.0], tmp_path / "c.png", return_fig=True
    )
    points = [l for l in fig.axes[0].lines if l.get_marker() == "o"]
    assert len(points) == 2
    assert points[0].get_color() != points[1].get_color()
