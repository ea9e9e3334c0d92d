# core/preanalysis.py – Exposure ordering and reference-frame selection

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import numpy as np

from core.errors import FailureKind, RawDecodeError
from core.loader import load_raw_frame
from core.models import Calibration, PreAnalysisResult, RawFrame

__all__ = [
    "MAX_PRE_ANALYSIS_SATURATION_RATIO",
    "SATURATION_LEVEL_FRACTION",
    "analyze_frame",
    "pre_analyze",
    "sort_by_brightness",
    "select_reference",
    "iso_order_matches",
    "resolve_sensor_mpx",
]

MAX_PRE_ANALYSIS_SATURATION_RATIO = 0.001
SATURATION_LEVEL_FRACTION = 0.99

Skipped = Tuple[Path, FailureKind, str]


def analyze_frame(frame: RawFrame, calibration: Calibration) -> PreAnalysisResult:
    """Mean brightness and clipped-pixel ratio over the active area."""
    active = frame.active
    total = active.size
    mean_brightness = float(np.mean(active)) if total else 0.0
    limit = SATURATION_LEVEL_FRACTION * calibration.saturation_value
    ratio = float(np.count_nonzero(active >= limit)) / total if total else 0.0
    return PreAnalysisResult(
        path=frame.path,
        mean_brightness=mean_brightness,
        saturation_ratio=ratio,
        has_saturated=ratio > MAX_PRE_ANALYSIS_SATURATION_RATIO,
        iso=frame.iso,
        megapixels=frame.megapixels,
        camera_model=frame.camera_model,
    )


def _analyze_path(
    path: Path, calibration: Calibration, camera_model: str
) -> PreAnalysisResult:
    frame = load_raw_frame(path, camera_model)
    return analyze_frame(frame, calibration)


def sort_by_brightness(results: Sequence[PreAnalysisResult]) -> List[PreAnalysisResult]:
    """Darkest first; ties keep input order."""
    return sorted(results, key=lambda r: r.mean_brightness)


def pre_analyze(
    paths: Sequence[Path],
    calibration: Calibration,
    *,
    max_workers: int = 1,
    camera_model: str = "",
) -> Tuple[List[PreAnalysisResult], List[Skipped]]:
    """Decode every input and return them sorted darkest → brightest.

    Files that cannot be decoded are returned separately and left out of the
    ordering.
    """
    paths = [Path(p) for p in paths]
    with ThreadPoolExecutor(max_workers=max(1, max_workers)) as pool:
        futures = [pool.submit(_analyze_path, p, calibration, camera_model) for p in paths]
        analyzed: List[PreAnalysisResult] = []
        skipped: List[Skipped] = []
        for path, fut in zip(paths, futures):
            try:
                res = fut.result()
            except RawDecodeError as exc:
                logging.warning("Pre-analysis skipped %s: %s", path.name, exc)
                skipped.append((path, FailureKind.RAW_DECODE, str(exc)))
                continue
            logging.info(
                "Pre-analysis %s: mean=%.2f sat_ratio=%.5f",
                path.name,
                res.mean_brightness,
                res.saturation_ratio,
            )
            analyzed.append(res)
    ordered = sort_by_brightness(analyzed)
    if not iso_order_matches(ordered):
        logging.warning(
            "Brightness order differs from ISO order: %s",
            ", ".join(f"{r.path.name}(ISO {r.iso})" for r in ordered),
        )
    return ordered, skipped


def select_reference(ordered: Sequence[PreAnalysisResult]) -> Optional[int]:
    """Index of the brightest frame without clipped pixels.

    Falls back to the darkest frame (index 0) when every frame is saturated;
    ``None`` for an empty sequence.
    """
    if not ordered:
        return None
    for idx in range(len(ordered) - 1, -1, -1):
        if not ordered[idx].has_saturated:
            logging.info("Reference frame: %s", ordered[idx].path.name)
            return idx
    logging.warning(
        "All frames exceed %.1f%% saturated pixels; using darkest frame %s as reference",
        MAX_PRE_ANALYSIS_SATURATION_RATIO * 100,
        ordered[0].path.name,
    )
    return 0


def iso_order_matches(ordered: Sequence[PreAnalysisResult]) -> bool:
    """True unless known ISO values decrease along the brightness order."""
    isos = [r.iso for r in ordered if r.iso > 0]
    if len(isos) != len(ordered):
        return True
    return all(a <= b for a, b in zip(isos, isos[1:]))


def resolve_sensor_mpx(override_mpx: float, result: Optional[PreAnalysisResult]) -> float:
    """Configured override, else the reference frame's metadata megapixels, else 0."""
    if override_mpx > 0:
        return float(override_mpx)
    if result is not None and result.megapixels > 0:
        return float(result.megapixels)
    return 0.0
