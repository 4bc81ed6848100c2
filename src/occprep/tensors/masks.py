#!/usr/bin/env python3
"""masks.py

Sampling-possible tensors M[stream]: 1 where a non-detection is informative.

- citsci: M[i,j,k,l] = in_range[i,j] for every interval and visit. Citizen
  science effort is treated as always on at in-range sites.
- museum: M[i,j,k,l] = in_range[i,j] AND event[j,k,l], where event marks the
  (site, interval, visit) triples with a qualifying community sampling event.

After construction V <= M must hold everywhere. It is checked, never assumed.
With the "drop" policy, detections at out-of-range cells are zeroed and
counted first; the check still runs afterwards.
"""

from __future__ import annotations

from typing import Dict, Tuple

import numpy as np
import pandas as pd

from occprep.errors import IndexMismatch, MaskInvariantViolation
from occprep.logging_config import get_logger
from occprep.records.binning import MasterIndex
from occprep.records.schema import INTERVAL_COL, SITE_COL, VISIT_COL
from occprep.tensors.detection import TENSOR_DTYPE


logger = get_logger(__name__)

CITSCI = "citsci"
MUSEUM = "museum"


def range_matrix(ranges: pd.DataFrame, index: MasterIndex) -> np.ndarray:
    """(n_species, n_sites) {0,1} matrix from a range table already aligned to the index."""
    if tuple(ranges.index) != index.species or tuple(int(c) for c in ranges.columns) != index.sites:
        raise IndexMismatch("range axis order", ["range table not aligned to master index"])
    return ranges.to_numpy(dtype=bool).astype(TENSOR_DTYPE)


def sampling_event_array(events: pd.DataFrame, index: MasterIndex) -> np.ndarray:
    """(n_sites, n_intervals, n_visits) {0,1} array of qualifying museum events."""
    out = np.zeros((index.n_sites, index.n_intervals, index.n_visits), dtype=TENSOR_DTYPE)
    if events.empty:
        return out

    site_pos = {s: j for j, s in enumerate(index.sites)}
    interval_pos = {v: k for k, v in enumerate(index.intervals)}
    visit_pos = {v: l for l, v in enumerate(index.visits)}

    for axis, col, pos in (
        ("site", SITE_COL, site_pos),
        ("interval", INTERVAL_COL, interval_pos),
        ("visit", VISIT_COL, visit_pos),
    ):
        unknown = set(int(x) for x in events[col].unique()) - set(pos)
        if unknown:
            raise IndexMismatch(f"sampling event {axis}", unknown)

    j = events[SITE_COL].map(lambda s: site_pos[int(s)]).to_numpy()
    k = events[INTERVAL_COL].map(lambda v: interval_pos[int(v)]).to_numpy()
    l = events[VISIT_COL].map(lambda v: visit_pos[int(v)]).to_numpy()
    out[j, k, l] = 1
    return out


def citsci_mask(in_range: np.ndarray, shape: Tuple[int, int, int, int]) -> np.ndarray:
    return np.broadcast_to(in_range[:, :, None, None], shape).astype(TENSOR_DTYPE)


def museum_mask(in_range: np.ndarray, events: np.ndarray) -> np.ndarray:
    return (in_range[:, :, None, None] & events[None, :, :, :]).astype(TENSOR_DTYPE)


def check_detections_within_mask(
    V: np.ndarray,
    M: np.ndarray,
    stream: str,
    index: MasterIndex,
) -> None:
    """Raise MaskInvariantViolation if V > M anywhere."""
    if V.shape != M.shape:
        raise MaskInvariantViolation(stream, -1, [f"shape {V.shape} != {M.shape}"])
    bad = np.argwhere(V > M)
    if len(bad):
        examples = [index.cell_label(*cell) for cell in bad[:5]]
        raise MaskInvariantViolation(stream, len(bad), examples)


def drop_masked_detections(V: np.ndarray, M: np.ndarray, stream: str) -> Tuple[np.ndarray, int]:
    """Zero detections where M is 0. Returns (new V, number of cells zeroed)."""
    bad = V > M
    n = int(bad.sum())
    if n:
        logger.warning("Dropping %d %s detection(s) at cells where sampling was not possible", n, stream)
        V = np.where(bad, 0, V).astype(TENSOR_DTYPE)
    return V, n


def build_masks(
    V: Dict[str, np.ndarray],
    in_range: np.ndarray,
    events: np.ndarray,
    index: MasterIndex,
    *,
    policy: str = "raise",
) -> Tuple[Dict[str, np.ndarray], Dict[str, np.ndarray], Dict[str, int]]:
    """Build both masks and enforce V <= M.

    Args:
        V: {"citsci": tensor, "museum": tensor}
        in_range: (n_species, n_sites) range matrix
        events: (n_sites, n_intervals, n_visits) sampling event array
        index: master index the tensors were built against
        policy: "raise" to fail on any V > M, "drop" to zero those detections first

    Returns:
        (V, M, dropped) with dropped = {stream: cells zeroed}
    """
    M = {
        CITSCI: citsci_mask(in_range, index.shape),
        MUSEUM: museum_mask(in_range, events),
    }
    V_out = dict(V)
    dropped: Dict[str, int] = {}
    for stream in (CITSCI, MUSEUM):
        if policy == "drop":
            V_out[stream], n = drop_masked_detections(V_out[stream], M[stream], stream)
            if n:
                dropped[stream] = n
        check_detections_within_mask(V_out[stream], M[stream], stream, index)
    return V_out, M, dropped
