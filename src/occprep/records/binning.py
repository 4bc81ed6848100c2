#!/usr/bin/env python3
"""binning.py

Temporal binning of occurrence records into occupancy intervals and visits.

    year_offset    = year - era_start
    interval_index = year_offset // interval_length
    visit_index    = year_offset %  interval_length

so with era 2000-2005 and interval_length 3, year 2001 lands in interval 0,
visit 1 and year 2004 in interval 1, visit 1.

The species filter is the first of two phases: the surviving species set is
computed once on the pooled (citsci + museum) binned records and then reused
unchanged by the stream splitter. It is never recomputed per stream.

Called by:
  occprep.prep.pipeline.build_occupancy_bundle()
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import pandas as pd

from occprep.config import StudyDesign
from occprep.errors import ConfigurationError
from occprep.report import (
    MISSING_SPECIES,
    OUTSIDE_ERA,
    PARTIAL_INTERVAL,
    RARE_SPECIES,
    PrepReport,
)
from occprep.records.schema import (
    CELL_COLS,
    INTERVAL_COL,
    SITE_COL,
    SPECIES_COL,
    VISIT_COL,
    YEAR_COL,
    YEAR_OFFSET_COL,
)


# -----------------------------------------------------------------------------
# Master index
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class MasterIndex:
    """Ordered axis labels shared by every tensor in a bundle.

    n_intervals / n_visits are what the data realized after binning and
    filtering, not the interval_length requested in the study design.
    """

    species: Tuple[str, ...]
    sites: Tuple[int, ...]
    intervals: Tuple[int, ...]
    visits: Tuple[int, ...]

    @property
    def n_species(self) -> int:
        return len(self.species)

    @property
    def n_sites(self) -> int:
        return len(self.sites)

    @property
    def n_intervals(self) -> int:
        return len(self.intervals)

    @property
    def n_visits(self) -> int:
        return len(self.visits)

    @property
    def shape(self) -> Tuple[int, int, int, int]:
        return (self.n_species, self.n_sites, self.n_intervals, self.n_visits)

    def cell_label(self, i: int, j: int, k: int, l: int) -> tuple:
        """Translate array positions back into (species, site, interval, visit) labels."""
        return (self.species[i], self.sites[j], self.intervals[k], self.visits[l])


# -----------------------------------------------------------------------------
# Binning
# -----------------------------------------------------------------------------

def bin_records(
    records: pd.DataFrame,
    design: StudyDesign,
    report: Optional[PrepReport] = None,
) -> pd.DataFrame:
    """Assign year offset, interval and visit to normalized records.

    Drops (and counts) records with no species label, records outside
    [era_start, era_end], and, when design.partial_interval == "drop",
    records that fall in a trailing interval shorter than interval_length.
    """
    report = report if report is not None else PrepReport()
    df = records

    no_species = df[SPECIES_COL].isna() | (df[SPECIES_COL].astype(str).str.strip() == "")
    report.drop(MISSING_SPECIES, int(no_species.sum()))
    df = df[~no_species].copy()

    df[YEAR_OFFSET_COL] = df[YEAR_COL].astype("int64") - design.era_start
    in_era = (df[YEAR_OFFSET_COL] >= 0) & (df[YEAR_OFFSET_COL] < design.total_years)
    report.drop(OUTSIDE_ERA, int((~in_era).sum()))
    df = df[in_era].copy()

    df[INTERVAL_COL] = df[YEAR_OFFSET_COL] // design.interval_length
    df[VISIT_COL] = df[YEAR_OFFSET_COL] % design.interval_length

    if design.partial_interval == "drop" and design.has_partial_interval:
        partial = df[INTERVAL_COL] >= design.n_full_intervals
        report.drop(PARTIAL_INTERVAL, int(partial.sum()))
        df = df[~partial]

    return df.reset_index(drop=True)


def filter_rare_species(
    binned: pd.DataFrame,
    min_records: int,
    report: Optional[PrepReport] = None,
) -> Tuple[pd.DataFrame, List[str]]:
    """Drop species with fewer than min_records pooled binned records.

    Counts are taken over both streams before cell deduplication.

    Returns:
        (surviving records, alphabetized species list)
    """
    report = report if report is not None else PrepReport()
    counts = binned.groupby(SPECIES_COL).size()
    report.species_counts = {str(k): int(v) for k, v in counts.sort_index().items()}

    keep = sorted(counts[counts >= min_records].index.astype(str).tolist())
    mask = binned[SPECIES_COL].isin(keep)
    report.drop(RARE_SPECIES, int((~mask).sum()))
    return binned[mask].reset_index(drop=True), keep


def dedupe_cells(binned: pd.DataFrame) -> pd.DataFrame:
    """Collapse records to one row per (species, site, interval, visit); first wins."""
    return binned.drop_duplicates(subset=CELL_COLS, keep="first").reset_index(drop=True)


def master_index(
    pooled: pd.DataFrame,
    species_list: Sequence[str],
    sites: Sequence[int],
) -> MasterIndex:
    """Build the master index from the pooled, deduplicated record set.

    Intervals and visits are the sorted sets actually present; sites keep the
    provider's order.
    """
    site_tuple = tuple(int(s) for s in sites)
    if len(set(site_tuple)) != len(site_tuple):
        raise ConfigurationError("Site list contains duplicate site ids")
    return MasterIndex(
        species=tuple(str(s) for s in species_list),
        sites=site_tuple,
        intervals=tuple(int(x) for x in sorted(pooled[INTERVAL_COL].unique())),
        visits=tuple(int(x) for x in sorted(pooled[VISIT_COL].unique())),
    )

