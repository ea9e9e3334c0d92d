#!/usr/bin/env python3
from types import SimpleNamespace

import pytest

np = pytest.importorskip("numpy")
tifffile = pytest.importorskip("tifffile")

from core.errors import RawDecodeError
from core import loader
from core.loader import iso_from_filename, load_raw_frame, read_exif, render_preview
from core.models import RawFrame


@pytest.mark.parametrize(
    "name,iso",
    [
        ("IMG_ISO800.dng", 800),
        ("chart-iso_1600.ARW", 1600),
        ("a7_ISO-100_01.nef", 100),
        ("no_speed.cr2", 0),
    ],
)
def test_iso_from_filename(name, iso):
    assert iso_from_filename(name) == iso


def test_load_tiff_mosaic(tmp_path):
    data = (np.arange(24, dtype=np.uint16) * 100).reshape(4, 6)
    path = tmp_path / "chart_ISO400.tiff"
    tifffile.imwrite(path, data)

    frame = load_raw_frame(path, camera_model="Bench")
    assert frame.sensor.shape == (4, 6)
    assert frame.active_rect == (0, 0, 6, 4)
    assert np.array_equal(frame.active, data)
    assert frame.iso == 400
    assert frame.camera_model == "Bench"
    assert frame.saturation_maximum == 65535.0
    assert frame.megapixels == pytest.approx(24e-6)
    assert not frame.sensor.flags.writeable


def test_rgb_tiff_rejected(tmp_path):
    path = tmp_path / "rgb.tiff"
    tifffile.imwrite(path, np.zeros((4, 4, 3), dtype=np.uint8))
    with pytest.raises(RawDecodeError):
        load_raw_frame(path)


def test_missing_file(tmp_path):
    with pytest.raises(RawDecodeError):
        load_raw_frame(tmp_path / "missing.dng")


def test_invalid_active_rect_falls_back_to_full_frame():
    frame = RawFrame(path="x.tiff", sensor=np.zeros((4, 6), np.uint16), active_rect=(2, 2, 10, 10))
    assert frame.active_rect == (0, 0, 6, 4)
    frame = RawFrame(path="x.tiff", sensor=np.zeros((4, 6), np.uint16), active_rect=(1, 2, 2, 2))
    assert frame.active.shape == (2, 2)


def test_tiff_preview_is_rgb8(tmp_path):
    path = tmp_path / "p.tiff"
    tifffile.imwrite(path, np.full((4, 6), 1000, dtype=np.uint16))
    preview = render_preview(path)
    assert preview.shape == (4, 6, 3)
    assert preview.dtype == np.uint8
    assert preview.max() == 255


class _FakeSizes:
    top_margin = 2
    left_margin = 4
    width = 8
    height = 6
    raw_width = 12
    raw_height = 8


class _FakeRaw:
    raw_image = np.arange(96, dtype=np.uint16).reshape(8, 12)
    sizes = _FakeSizes()
    white_level = 16383
    black_level_per_channel = [512, 512, 512, 512]

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


def test_load_vendor_raw_reads_metadata(tmp_path, monkeypatch):
    rawpy = pytest.importorskip("rawpy")
    path = tmp_path / "IMG_ISO1600.dng"
    path.write_bytes(b"raw")
    monkeypatch.setattr(rawpy, "imread", lambda p: _FakeRaw())
    monkeypatch.setattr(loader.shutil, "which", lambda name: None)

    frame = load_raw_frame(path, camera_model="Cam")
    assert frame.active_rect == (2, 4, 8, 6)
    assert frame.active.shape == (6, 8)
    assert frame.black_from_metadata == 512.0
    assert frame.saturation_maximum == 16383.0
    assert frame.bit_depth == 14
    assert frame.megapixels == pytest.approx(96e-6)
    assert frame.iso == 1600


def test_libraw_error_becomes_decode_error(tmp_path, monkeypatch):
    rawpy = pytest.importorskip("rawpy")
    path = tmp_path / "broken.nef"
    path.write_bytes(b"raw")

    def _fail(p):
        raise rawpy.LibRawError("unsupported file format")

    monkeypatch.setattr(rawpy, "imread", _fail)
    with pytest.raises(RawDecodeError):
        load_raw_frame(path)


def test_exif_iso_and_model_take_precedence(tmp_path, monkeypatch):
    rawpy = pytest.importorskip("rawpy")
    path = tmp_path / "IMG_ISO1600.dng"
    path.write_bytes(b"raw")
    calls = []

    def _run(cmd, **kwargs):
        calls.append(cmd)
        return SimpleNamespace(stdout='[{"SourceFile": "x", "ISO": 3200, "Model": "X-T5 "}]')

    monkeypatch.setattr(rawpy, "imread", lambda p: _FakeRaw())
    monkeypatch.setattr(loader.shutil, "which", lambda name: "/usr/bin/exiftool")
    monkeypatch.setattr(loader.subprocess, "run", _run)

    frame = load_raw_frame(path, camera_model="Configured")
    assert frame.iso == 3200
    assert frame.camera_model == "X-T5"
    assert calls[0][0] == "exiftool"


def test_read_exif_without_exiftool(tmp_path, monkeypatch):
    monkeypatch.setattr(loader.shutil, "which", lambda name: None)
    assert read_exif(tmp_path / "a.dng") == (0, "")


def test_read_exif_tolerates_bad_output(tmp_path, monkeypatch):
    monkeypatch.setattr(loader.shutil, "which", lambda name: "/usr/bin/exiftool")
    monkeypatch.setattr(
        loader.subprocess, "run", lambda cmd, **kw: SimpleNamespace(stdout="not json")
    )
    assert read_exif(tmp_path / "a.dng") == (0, "")


def test_frame_does_not_freeze_caller_array():
    data = np.zeros((4, 6), dtype=np.uint16)
    frame = RawFrame(path="x.tiff", sensor=data)
    assert not frame.sensor.flags.writeable
    data[0, 0] = 7
    assert frame.sensor[0, 0] == 7
