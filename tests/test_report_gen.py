#!/usr/bin/env python3
import csv
import json
from pathlib import Path
from types import SimpleNamespace

import pytest

np = pytest.importorskip("numpy")

from core import report_gen
from core.aggregator import aggregate, compute_plot_bounds
from core.analysis import calculate_dynamic_range
from core.errors import FailureKind, RunStatus
from core.models import Calibration, CurveData, FileResult, FitModel, PlotBounds, RunReport

THRESHOLDS = (12.0, 0.0)


def _file(name, order, ev, snr, tag="avg"):
    curve = CurveData(
        filename=name,
        camera_model="Cam",
        iso=100,
        channel_tag=tag,
        signal_ev=np.asarray(ev, dtype=np.float64),
        snr_db=np.asarray(snr, dtype=np.float64),
    )
    fitted, results = calculate_dynamic_range(curve, THRESHOLDS, order=3)
    return FileResult(path=Path(name), order=order, curves=[fitted], results=results)


def _report():
    good = _file("b_ISO100.dng", 0, [-10, -8, -6, -4], [-5, 3, 12.0, 21])
    short = _file("a_ISO200.dng", 1, [-6, -4, -2], [0, 12, 24])
    short.failures.append((FailureKind.INSUFFICIENT_DATA, "3 valid patches"))
    broken = FileResult(path=Path("c.dng"), order=2)
    broken.failures.append((FailureKind.GEOMETRY, "crop outside image"))
    files = aggregate([short, broken, good])
    return RunReport(
        status=RunStatus.OK,
        files=files,
        bounds=compute_plot_bounds(c for f in files for c in f.curves),
        calibration=Calibration(256.0, 4095.0),
        sensor_mpx=24.0,
        reference=Path("b_ISO100.dng"),
        skipped=[(Path("d.dng"), FailureKind.RAW_DECODE, "unsupported file")],
    )


def _config(**kw):
    base = dict(
        camera_name="Cam",
        dr_normalization_mpx=8.0,
        poly_order=3,
        fit_model=FitModel.EV_OF_SNR,
        snr_thresholds_db=THRESHOLDS,
        report_summary=True,
    )
    base.update(kw)
    return SimpleNamespace(**base)


def test_record_stream_in_order():
    report = _report()
    records = list(report_gen.iter_records(report))
    assert [r.filename for r in records] == ["b_ISO100.dng"] * 2 + ["a_ISO200.dng"] * 2
    assert [r.threshold_db for r in records[:2]] == list(THRESHOLDS)


def test_csv_rows_and_file(tmp_path):
    report = _report()
    fields = report_gen.csv_fieldnames(THRESHOLDS, multi_channel=False)
    assert fields == ["filename", "DR(12dB)", "DR(0dB)", "patches_used"]

    rows = report_gen.csv_rows(report, THRESHOLDS)
    assert [r["filename"] for r in rows] == ["b_ISO100.dng", "a_ISO200.dng"]
    assert rows[0]["DR(12dB)"] == "6.0000"
    assert rows[0]["patches_used"] == 4
    assert rows[1]["DR(12dB)"] == ""
    assert rows[1]["patches_used"] == 3

    out = tmp_path / "results.csv"
    report_gen.report_csv(rows, out, fields)
    with out.open(newline="", encoding="utf-8") as fh:
        read = list(csv.DictReader(fh))
    assert read[0]["DR(12dB)"] == "6.0000"
    assert len(read) == 2


def test_csv_header_written_without_rows(tmp_path):
    out = tmp_path / "empty.csv"
    report_gen.report_csv([], out, report_gen.csv_fieldnames([12.0], multi_channel=False))
    assert out.read_text(encoding="utf-8").strip() == "filename,DR(12dB),patches_used"


def test_channel_column_when_several_channels():
    a = _file("x.dng", 0, [-10, -8, -6, -4], [-5, 3, 12.0, 21], tag="avg")
    b = _file("x.dng", 0, [-10, -8, -6, -4], [-6, 2, 11.0, 20], tag="R")
    merged = FileResult(
        path=Path("x.dng"), order=0, curves=a.curves + b.curves, results=a.results + b.results
    )
    rows = report_gen.csv_rows(RunReport(files=[merged]), THRESHOLDS)
    assert [r["channel"] for r in rows] == ["avg", "R"]
    assert "channel" in report_gen.csv_fieldnames(THRESHOLDS, multi_channel=True)


def test_plot_bundle_crossings():
    report = _report()
    bundles = report_gen.plot_bundles(report)
    assert len(bundles) == 2
    first = bundles[0]
    assert first["label"] == "b_ISO100 (AVG (Full))"
    assert first["crossings"]["12"] == pytest.approx(-6.0)
    assert first["fit_model"] == "ev_of_snr"
    assert len(first["points"]) == 4
    assert len(first["poly_coeffs"]) == 4
    assert bundles[1]["crossings"] == {"12": None, "0": None}
    assert bundles[1]["curve_points"] == []


def test_plot_bundle_json(tmp_path):
    out = tmp_path / "snr_curves.json"
    report_gen.save_plot_bundles_json(_report(), out)
    data = json.loads(out.read_text(encoding="utf-8"))
    assert data["status"] == "ok"
    assert data["bounds"]["ev"] == [-11.0, 1.0]
    assert data["bounds"]["db"] == [-5.0, 25.0]
    assert len(data["curves"]) == 2

    disabled = tmp_path / "off.json"
    report_gen.save_plot_bundles_json(_report(), disabled, enabled=False)
    assert not disabled.exists()


def test_summary_txt(tmp_path):
    out = tmp_path / "summary.txt"
    report_gen.save_summary_txt(_report(), _config(), out)
    text = out.read_text(encoding="utf-8")
    assert "Camera: Cam" in text
    assert "DR normalized to: 8 Mpx" in text
    assert "DR(12dB) (EV)" in text
    assert "6.0000" in text
    assert "N/A" in text
    assert "Issues:" in text
    assert "c.dng: geometry" in text
    assert "d.dng: raw_decode" in text

    skipped = tmp_path / "none.txt"
    report_gen.save_summary_txt(_report(), _config(report_summary=False), skipped)
    assert not skipped.exists()


def test_plot_bounds():
    report = _report()
    assert report.bounds == PlotBounds(-11.0, 1.0, -5.0, 25.0)
    assert compute_plot_bounds([]) == PlotBounds(-15.0, 1.0, -20.0, 40.0)

    bright = CurveData("x", "", 0, "avg", np.array([-2.0, 2.2]), np.array([1.0, 41.0]))
    assert compute_plot_bounds([bright]) == PlotBounds(-3.0, 4.0, 0.0, 45.0)
