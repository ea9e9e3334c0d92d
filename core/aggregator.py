# core/aggregator.py – Ordered collection of per-file results and global plot bounds

from __future__ import annotations

import math
from typing import Iterable, List, Sequence

import numpy as np

from core.models import CurveData, FileResult, PlotBounds

__all__ = ["compute_plot_bounds", "aggregate"]


def compute_plot_bounds(curves: Iterable[CurveData]) -> PlotBounds:
    """Axis limits that fit every measured point of every curve.

    EV spans ``[floor(min) - 1, max(1, ceil(max) + 1)]``; dB snaps outward to
    multiples of 5. Without data the default
    ``[-15, 1] x [-20, 40]`` is returned.
    """
    evs: List[np.ndarray] = []
    dbs: List[np.ndarray] = []
    for c in curves:
        if c.patches_used:
            evs.append(np.asarray(c.signal_ev))
            dbs.append(np.asarray(c.snr_db))
    if not evs:
        return PlotBounds()
    ev = np.concatenate(evs)
    db = np.concatenate(dbs)
    ev_lo, ev_hi = float(ev.min()), float(ev.max())
    db_lo, db_hi = float(db.min()), float(db.max())
    return PlotBounds(
        ev_min=math.floor(ev_lo) - 1.0,
        ev_max=max(1.0, math.ceil(ev_hi) + 1.0),
        db_min=math.floor(db_lo / 5.0) * 5.0,
        db_max=math.ceil(db_hi / 5.0) * 5.0,
    )


def aggregate(file_results: Sequence[FileResult]) -> List[FileResult]:
    """Return file results in pre-analysis brightness order."""
    return sorted(file_results, key=lambda f: f.order)
