#!/usr/bin/env python3
"""streams.py

Split binned, species-filtered records into the citizen science and museum
streams (phase 2 of the two-phase pipeline).

Museum specimens carry no sampling protocol, so a museum record only counts
if it came from a community sampling event: one collector group (usually the
holding institution) collecting at one site in one year and yielding at least
`min_distinct_species_per_sampling_event` distinct species. That grouping is
coarser than a tensor cell, so it is applied to the pre-dedup museum records
before they are collapsed to one row per cell.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import pandas as pd

from occprep.config import StudyDesign
from occprep.report import NO_SAMPLING_EVENT, PrepReport
from occprep.records.binning import dedupe_cells
from occprep.records.schema import (
    COLLECTOR_COL,
    CROWD,
    EVENT_COLS,
    MUSEUM,
    PROVENANCE_COL,
    SITE_COL,
    SPECIES_COL,
    YEAR_COL,
)


EVENT_GROUP_COLS = [COLLECTOR_COL, YEAR_COL, SITE_COL]


@dataclass(frozen=True)
class StreamSplit:
    citsci: pd.DataFrame
    museum: pd.DataFrame
    # one row per (site_id, interval_index, visit_index) with a qualifying museum event
    sampling_events: pd.DataFrame


def sampling_event_table(museum: pd.DataFrame) -> pd.DataFrame:
    """Distinct species per (collector_group, year, site_id) group."""
    if museum.empty:
        return pd.DataFrame(columns=EVENT_GROUP_COLS + ["n_species"])
    return (
        museum.groupby(EVENT_GROUP_COLS, sort=True)[SPECIES_COL]
        .nunique()
        .rename("n_species")
        .reset_index()
    )


def qualifying_museum_records(
    museum: pd.DataFrame,
    min_distinct_species: int,
) -> pd.DataFrame:
    """Keep museum records whose (collector_group, year, site) group is a community sampling event."""
    if museum.empty:
        return museum.copy()
    n_species = museum.groupby(EVENT_GROUP_COLS)[SPECIES_COL].transform("nunique")
    return museum[n_species >= min_distinct_species].reset_index(drop=True)


def split_streams(
    binned: pd.DataFrame,
    design: StudyDesign,
    report: Optional[PrepReport] = None,
) -> StreamSplit:
    """Partition records by provenance and apply the museum sampling-event filter.

    `binned` must already be restricted to the pooled species set; this
    function never drops species on its own.
    """
    report = report if report is not None else PrepReport()

    citsci = binned[binned[PROVENANCE_COL] == CROWD]
    museum_all = binned[binned[PROVENANCE_COL] == MUSEUM]

    museum = qualifying_museum_records(museum_all, design.min_distinct_species_per_sampling_event)
    report.drop(NO_SAMPLING_EVENT, len(museum_all) - len(museum))

    events = (
        museum[EVENT_COLS]
        .drop_duplicates()
        .sort_values(EVENT_COLS)
        .reset_index(drop=True)
    )
    report.n_sampling_events = len(sampling_event_table(museum))

    return StreamSplit(
        citsci=dedupe_cells(citsci),
        museum=dedupe_cells(museum),
        sampling_events=events,
    )
