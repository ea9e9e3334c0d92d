#!/usr/bin/env python3
from pathlib import Path

import pytest

yaml = pytest.importorskip("yaml")

from core.models import Channel, FitModel
from utils.config import (
    apply_overrides,
    build_configuration,
    load_config,
    parse_channels,
    parse_corners,
    parse_thresholds,
)


def _with_inputs(cfg, *files):
    return apply_overrides(cfg, {"input_files": [str(f) for f in files or ("a.dng",)]})


def test_load_config_merges_defaults(tmp_path):
    project_cfg = {
        "processing": {"poly_order": 2},
        "output": {"camera_name": "Bench Cam"},
    }
    cfg_file = tmp_path / "config.yaml"
    with cfg_file.open("w", encoding="utf-8") as fh:
        yaml.safe_dump(project_cfg, fh)

    cfg = load_config(cfg_file)

    # project override applied
    assert cfg["processing"]["poly_order"] == 2
    assert cfg["output"]["camera_name"] == "Bench Cam"

    # default values preserved
    assert cfg["processing"]["snr_thresholds_db"] == [12.0, 0.0]
    assert cfg["chart"]["grid_cols"] == 11
    assert cfg["calibration"]["sat_value"] == 16383


def test_load_config_from_directory(tmp_path):
    (tmp_path / "config.yaml").write_text("chart:\n  grid_rows: 5\n", encoding="utf-8")
    assert load_config(tmp_path)["chart"]["grid_rows"] == 5


def test_defaults_build_configuration():
    conf = build_configuration(_with_inputs(load_config()))
    assert conf.input_files == (Path("a.dng"),)
    assert conf.snr_thresholds_db == (12.0, 0.0)
    assert conf.dr_normalization_mpx == 8.0
    assert conf.poly_order == 3
    assert conf.fit_model is FitModel.EV_OF_SNR
    assert conf.channels == (Channel.AVG,)
    assert conf.dark_file is None and conf.sat_file is None
    assert conf.plot_mode == "none"
    assert conf.csv_path == Path(".") / "results.csv"


def test_overrides_skip_none_and_do_not_mutate():
    base = load_config()
    out = apply_overrides(base, {"output.camera_name": "X", "chart.grid_rows": None})
    assert out["output"]["camera_name"] == "X"
    assert out["chart"]["grid_rows"] == base["chart"]["grid_rows"]
    assert base["output"]["camera_name"] is None


def test_csv_path_uses_camera_name_and_output_file(tmp_path):
    cfg = _with_inputs(load_config())
    conf = build_configuration(
        apply_overrides(cfg, {"output.output_dir": str(tmp_path), "output.camera_name": "My Cam"})
    )
    assert conf.csv_path == tmp_path / "results_My_Cam.csv"

    conf = build_configuration(apply_overrides(cfg, {"output.output_file": "out/dr.csv"}))
    assert conf.csv_path == Path("out/dr.csv")


@pytest.mark.parametrize(
    "value,expected",
    [
        ("12,0", (12.0, 0.0)),
        ("12 0 12", (12.0, 0.0)),
        ([20, "3.5"], (20.0, 3.5)),
        (6, (6.0,)),
    ],
)
def test_parse_thresholds(value, expected):
    assert parse_thresholds(value) == expected


@pytest.mark.parametrize("value", ["", [], "12,abc", [True]])
def test_parse_thresholds_invalid(value):
    with pytest.raises(ValueError):
        parse_thresholds(value)


def test_parse_corners():
    want = ((1.0, 2.0), (3.0, 4.0), (5.0, 6.0), (7.0, 8.0))
    assert parse_corners("1,2,3,4,5,6,7,8") == want
    assert parse_corners([[1, 2], [3, 4], [5, 6], [7, 8]]) == want
    assert parse_corners(None) is None
    with pytest.raises(ValueError):
        parse_corners([1, 2, 3])


def test_parse_channels():
    assert parse_channels("r, g1,AVG,R") == (Channel.R, Channel.G1, Channel.AVG)
    with pytest.raises(ValueError):
        parse_channels("X")
    with pytest.raises(ValueError):
        parse_channels([])


@pytest.mark.parametrize(
    "key,value",
    [
        ("input_files", []),
        ("processing.poly_order", 4),
        ("processing.fit_model", "spline"),
        ("chart.patch_ratio", 0.0),
        ("chart.grid_rows", 0),
        ("processing.dr_normalization_mpx", -1),
        ("output.plot_mode", "gui"),
        ("output.plot_format", "BMP"),
        ("processing.max_workers", 0),
        ("calibration.dark_value", "abc"),
    ],
)
def test_invalid_configuration(key, value):
    cfg = apply_overrides(_with_inputs(load_config()), {key: value})
    with pytest.raises(ValueError):
        build_configuration(cfg)


def test_empty_calibration_path_means_unset():
    cfg = apply_overrides(
        _with_inputs(load_config()),
        {"calibration.dark_file": "", "calibration.sat_file": "sat.dng"},
    )
    conf = build_configuration(cfg)
    assert conf.dark_file is None
    assert conf.sat_file == Path("sat.dng")
