# core/loader.py – RAW / Bayer-mosaic loader (rawpy + tifffile)

from __future__ import annotations

import json
import logging
import math
import re
import shutil
import subprocess
from pathlib import Path
from typing import Optional, Tuple

import numpy as np
import rawpy
import tifffile

from core.errors import RawDecodeError
from core.models import RawFrame

__all__ = [
    "TIFF_SUFFIXES",
    "load_raw_frame",
    "render_preview",
    "iso_from_filename",
    "read_exif",
]

TIFF_SUFFIXES = {".tif", ".tiff"}
_ISO_RE = re.compile(r"iso[_\-]?(\d{2,6})", re.IGNORECASE)

# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------


def iso_from_filename(path: Path | str) -> int:
    """Return the ISO encoded in a filename like ``IMG_ISO800.dng`` (0 if none)."""
    m = _ISO_RE.search(Path(path).stem)
    return int(m.group(1)) if m else 0


def read_exif(path: Path | str) -> Tuple[int, str]:
    """ISO and camera model from the file's EXIF via ``exiftool``.

    Returns ``(0, "")`` when exiftool is not installed or reports nothing.
    """
    if not shutil.which("exiftool"):
        return 0, ""
    try:
        result = subprocess.run(
            ["exiftool", "-j", "-n", "-ISO", "-Model", str(path)],
            capture_output=True,
            text=True,
            check=True,
        )
        data = json.loads(result.stdout)
    except subprocess.CalledProcessError as exc:
        logging.warning("exiftool failed for %s: %s", Path(path).name, exc.stderr)
        return 0, ""
    except json.JSONDecodeError as exc:
        logging.warning("Cannot parse exiftool output for %s: %s", Path(path).name, exc)
        return 0, ""
    if not data:
        return 0, ""
    tags = data[0]
    iso = tags.get("ISO", 0)
    try:
        iso = int(float(iso))
    except (TypeError, ValueError):
        iso = 0
    model = str(tags.get("Model") or "").strip()
    return iso, model


def _bits_for(value: float) -> int:
    if value <= 0:
        return 0
    return int(math.ceil(math.log2(float(value) + 1.0)))


def _is_tiff(path: Path) -> bool:
    return path.suffix.lower() in TIFF_SUFFIXES


def _load_tiff(path: Path, camera_model: str) -> RawFrame:
    try:
        data = tifffile.imread(str(path))
    except (OSError, ValueError, tifffile.TiffFileError) as exc:
        raise RawDecodeError(f"{path.name}: cannot read TIFF mosaic ({exc})") from exc
    data = np.asarray(data)
    if data.ndim != 2:
        raise RawDecodeError(
            f"{path.name}: expected a single-plane Bayer mosaic, got shape {data.shape}"
        )
    if not np.issubdtype(data.dtype, np.integer):
        raise RawDecodeError(f"{path.name}: mosaic must hold integer samples")
    bits = int(np.iinfo(data.dtype).bits)
    h, w = data.shape
    return RawFrame(
        path=path,
        sensor=data.astype(np.uint16, copy=False),
        active_rect=(0, 0, w, h),
        black_from_metadata=0.0,
        saturation_maximum=float((1 << min(bits, 16)) - 1),
        bit_depth=min(bits, 16),
        iso=iso_from_filename(path),
        camera_model=camera_model,
        megapixels=w * h / 1e6,
    )


def _load_raw(path: Path, camera_model: str) -> RawFrame:
    try:
        with rawpy.imread(str(path)) as raw:
            try:
                sensor = np.array(raw.raw_image, dtype=np.uint16, copy=True)
            except rawpy.LibRawError as exc:
                raise RawDecodeError(
                    f"{path.name}: no raw sensor plane (compressed or non-Bayer RAW)"
                ) from exc
            sizes = raw.sizes
            white = float(raw.white_level)
            black_levels = [float(v) for v in raw.black_level_per_channel]
            active = (
                int(sizes.top_margin),
                int(sizes.left_margin),
                int(sizes.width),
                int(sizes.height),
            )
            mpx = sizes.raw_width * sizes.raw_height / 1e6
    except rawpy.LibRawError as exc:
        raise RawDecodeError(f"{path.name}: {exc}") from exc
    except OSError as exc:
        raise RawDecodeError(f"{path.name}: {exc}") from exc

    if sensor.size == 0:
        raise RawDecodeError(f"{path.name}: empty raw sensor plane")
    black = float(np.mean(black_levels)) if black_levels else 0.0
    exif_iso, exif_model = read_exif(path)
    return RawFrame(
        path=path,
        sensor=sensor,
        active_rect=active,
        black_from_metadata=black,
        saturation_maximum=white,
        bit_depth=_bits_for(white),
        iso=exif_iso or iso_from_filename(path),
        camera_model=exif_model or camera_model,
        megapixels=mpx if mpx > 0 else sensor.size / 1e6,
    )


# -----------------------------------------------------------------------------
# Public API
# -----------------------------------------------------------------------------


def load_raw_frame(path: Path | str, camera_model: str = "") -> RawFrame:
    """Decode *path* into a :class:`RawFrame`.

    Vendor RAW files go through LibRaw (rawpy); ``.tif``/``.tiff`` files are
    taken as already-extracted Bayer mosaics. Any decode problem is raised as
    :class:`RawDecodeError`.
    """
    path = Path(path)
    if not path.is_file():
        raise RawDecodeError(f"{path}: file not found")
    frame = _load_tiff(path, camera_model) if _is_tiff(path) else _load_raw(path, camera_model)
    logging.debug(
        "decoded %s: %dx%d active=%s black=%.1f white=%.0f",
        path.name,
        frame.width,
        frame.height,
        frame.active_rect,
        frame.black_from_metadata,
        frame.saturation_maximum,
    )
    return frame


def render_preview(path: Path | str, frame: Optional[RawFrame] = None) -> np.ndarray:
    """Return an 8-bit RGB preview in sensor orientation (no EXIF flip).

    Only used for debug overlays.
    """
    path = Path(path)
    if _is_tiff(path):
        if frame is None:
            frame = load_raw_frame(path)
        plane = frame.sensor.astype(np.float64)
        peak = float(plane.max()) or 1.0
        gray = np.clip(plane / peak, 0.0, 1.0) ** (1 / 2.2)
        gray8 = (gray * 255.0 + 0.5).astype(np.uint8)
        return np.repeat(gray8[:, :, None], 3, axis=2)
    try:
        with rawpy.imread(str(path)) as raw:
            return raw.postprocess(user_flip=0, no_auto_bright=True, output_bps=8)
    except rawpy.LibRawError as exc:
        raise RawDecodeError(f"{path.name}: preview failed ({exc})") from exc
