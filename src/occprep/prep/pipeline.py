#!/usr/bin/env python3
"""pipeline.py

Turn site-tagged occurrence records into the occupancy model's inputs.

This module exposes one entry point, build_occupancy_bundle(), which runs:

    normalize -> bin -> pooled species filter (phase 1) -> pooled dedup
      -> master index -> stream split (phase 2) -> V[citsci], V[museum]
      -> range matrix + museum sampling events -> M[citsci], M[museum]
      -> V <= M check -> OccupancyBundle

Fatal errors (ConfigurationError, IndexMismatch, MaskInvariantViolation)
propagate out; nothing partial is returned. Recoverable conditions are
counted in bundle.report.

Example:
    bundle = build_occupancy_bundle(records, sites, config, range_points=points)
    write_bundle(bundle, Path("data/processed/occupancy_bundle.npz"))
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional, Sequence

import geopandas as gpd
import numpy as np
import pandas as pd

from occprep.config import PrepConfig
from occprep.errors import ConfigurationError, IndexMismatch, InputDataError
from occprep.logging_config import get_logger
from occprep.report import PrepReport
from occprep.records.binning import (
    MasterIndex,
    bin_records,
    dedupe_cells,
    filter_rare_species,
    master_index,
)
from occprep.records.schema import normalize_records
from occprep.records.streams import split_streams
from occprep.ranges.sites import site_covariates, site_list
from occprep.ranges.species_ranges import align_ranges, compute_species_ranges
from occprep.tensors.detection import build_detection_tensor
from occprep.tensors.masks import (
    CITSCI,
    MUSEUM,
    build_masks,
    check_detections_within_mask,
    range_matrix,
    sampling_event_array,
)


logger = get_logger(__name__)


# -----------------------------------------------------------------------------
# Bundle
# -----------------------------------------------------------------------------

@dataclass
class OccupancyBundle:
    """Everything the inference engine needs, built against one master index."""

    V_citsci: np.ndarray
    V_museum: np.ndarray
    M_citsci: np.ndarray
    M_museum: np.ndarray
    index: MasterIndex
    site_covariates: Dict[str, np.ndarray] = field(default_factory=dict)
    report: PrepReport = field(default_factory=PrepReport)

    @property
    def n_species(self) -> int:
        return self.index.n_species

    @property
    def n_sites(self) -> int:
        return self.index.n_sites

    @property
    def n_intervals(self) -> int:
        return self.index.n_intervals

    @property
    def n_visits(self) -> int:
        return self.index.n_visits

    def tensors(self) -> Dict[str, np.ndarray]:
        return {
            "V_citsci": self.V_citsci,
            "V_museum": self.V_museum,
            "M_citsci": self.M_citsci,
            "M_museum": self.M_museum,
        }

    def validate(self) -> None:
        """Re-check shape, {0,1} values and V <= M for both streams."""
        for name, arr in self.tensors().items():
            if arr.shape != self.index.shape:
                raise IndexMismatch(f"{name} shape", [f"{arr.shape} != {self.index.shape}"])
            if arr.size and not np.isin(arr, (0, 1)).all():
                raise InputDataError(f"{name} has values outside {{0, 1}}")
        for name, arr in self.site_covariates.items():
            if len(arr) != self.n_sites:
                raise IndexMismatch(f"covariate {name} length", [f"{len(arr)} != {self.n_sites}"])
        check_detections_within_mask(self.V_citsci, self.M_citsci, CITSCI, self.index)
        check_detections_within_mask(self.V_museum, self.M_museum, MUSEUM, self.index)

    def dims(self) -> Dict[str, int]:
        return {
            "n_species": self.n_species,
            "n_sites": self.n_sites,
            "n_intervals": self.n_intervals,
            "n_visits": self.n_visits,
        }


# -----------------------------------------------------------------------------
# Core function
# -----------------------------------------------------------------------------

def build_occupancy_bundle(
    records: pd.DataFrame,
    sites: gpd.GeoDataFrame,
    config: PrepConfig,
    *,
    ranges: Optional[pd.DataFrame] = None,
    range_points: Optional[pd.DataFrame] = None,
    degenerate_ranges: Sequence[str] = (),
    covariate_columns: Optional[Sequence[str]] = None,
) -> OccupancyBundle:
    """Build detection and mask tensors for both streams.

    Exactly one of `ranges` (a cached table) or `range_points` (the range
    corpus, ranges computed here for the surviving species) must be given.

    Args:
        records: Occurrence records tagged with site ids (see records.schema)
        sites: Prepared site grid; its row order is the site axis order
        config: Validated run configuration
        ranges: Boolean species x site table covering every surviving species
        range_points: Historical points for compute_species_ranges()
        degenerate_ranges: Species flagged degenerate when `ranges` was cached
        covariate_columns: Site columns to pass through (default: all numeric)

    Returns:
        A validated OccupancyBundle.
    """
    if (ranges is None) == (range_points is None):
        raise ConfigurationError("Pass exactly one of ranges= or range_points=")

    design = config.design
    report = PrepReport()

    # --- Phase 1: pooled records ---
    df = normalize_records(records, config.columns, report)
    binned = bin_records(df, design, report)
    binned, species = filter_rare_species(binned, design.min_records_per_species, report)
    pooled = dedupe_cells(binned)
    index = master_index(pooled, species, site_list(sites))
    logger.info(
        "Master index: %d species x %d sites x %d intervals x %d visits",
        *index.shape,
    )

    # --- Phase 2: per-stream, same species set ---
    split = split_streams(binned, design, report)
    V = {
        CITSCI: build_detection_tensor(split.citsci, index),
        MUSEUM: build_detection_tensor(split.museum, index),
    }

    # --- Masks ---
    if ranges is None:
        ranges = compute_species_ranges(
            range_points,
            sites,
            index.species,
            config.ranges,
            min_year=design.min_year_for_range_inference,
            report=report,
        )
    else:
        report.degenerate_ranges = [s for s in index.species if s in set(degenerate_ranges)]
    in_range = range_matrix(align_ranges(ranges, index.species, index.sites), index)
    events = sampling_event_array(split.sampling_events, index)
    V, M, dropped = build_masks(V, in_range, events, index, policy=config.out_of_range_detections)
    report.out_of_range_detections = dropped

    bundle = OccupancyBundle(
        V_citsci=V[CITSCI],
        V_museum=V[MUSEUM],
        M_citsci=M[CITSCI],
        M_museum=M[MUSEUM],
        index=index,
        site_covariates=site_covariates(sites, covariate_columns),
        report=report,
    )
    bundle.validate()
    return bundle
