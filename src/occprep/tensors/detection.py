#!/usr/bin/env python3
"""detection.py

Dense detection tensors V[stream] of shape (n_species, n_sites, n_intervals, n_visits).

The input is sparse: one row per observed (species, site, interval, visit).
Each (interval, visit) slice is completed against the full species x site
product from the master index (an outer join via reindex, fill 0), so species
and sites with no records anywhere still get explicit zeros. Cell counts are
clipped to 1; presence is binary.
"""

from __future__ import annotations

import numpy as np
import pandas as pd

from occprep.errors import IndexMismatch, InputDataError
from occprep.records.binning import MasterIndex
from occprep.records.schema import INTERVAL_COL, SITE_COL, SPECIES_COL, VISIT_COL


TENSOR_DTYPE = np.uint8


def check_index(records: pd.DataFrame, index: MasterIndex) -> None:
    """Raise IndexMismatch if any record falls outside the master lists."""
    axes = (
        ("species", SPECIES_COL, index.species),
        ("site", SITE_COL, index.sites),
        ("interval", INTERVAL_COL, index.intervals),
        ("visit", VISIT_COL, index.visits),
    )
    for axis, col, labels in axes:
        if col not in records.columns:
            raise InputDataError(f"Records have no '{col}' column")
        unknown = set(records[col].unique()) - set(labels)
        if unknown:
            raise IndexMismatch(axis, unknown)


def _complete_slice(slice_records: pd.DataFrame, index: MasterIndex) -> np.ndarray:
    """(n_species, n_sites) presence matrix for one interval/visit slice."""
    counts = slice_records.groupby([SPECIES_COL, SITE_COL]).size()
    full = pd.MultiIndex.from_product(
        [list(index.species), list(index.sites)],
        names=[SPECIES_COL, SITE_COL],
    )
    completed = counts.reindex(full, fill_value=0).clip(upper=1)
    return completed.to_numpy(dtype=TENSOR_DTYPE).reshape(index.n_species, index.n_sites)


def build_detection_tensor(records: pd.DataFrame, index: MasterIndex) -> np.ndarray:
    """Dense {0,1} tensor for one stream's deduplicated records."""
    check_index(records, index)
    V = np.zeros(index.shape, dtype=TENSOR_DTYPE)
    if records.empty or index.n_species == 0 or index.n_sites == 0:
        return V

    grouped = records.groupby([INTERVAL_COL, VISIT_COL])
    for k, interval in enumerate(index.intervals):
        for l, visit in enumerate(index.visits):
            key = (interval, visit)
            if key not in grouped.groups:
                continue
            V[:, :, k, l] = _complete_slice(grouped.get_group(key), index)
    return V
