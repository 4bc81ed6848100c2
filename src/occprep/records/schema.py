#!/usr/bin/env python3
"""occprep.records.schema

Canonical column names for occurrence records and the normalization step that
maps whatever the site provider hands us onto them.

The provider is expected to have already tagged every record with a site id.
Normalization only renames columns, maps provenance labels and drops rows the
core cannot place (unknown provenance, no site).
"""

from __future__ import annotations

from typing import Mapping, Optional

import pandas as pd

from occprep.errors import ConfigurationError, InputDataError
from occprep.report import MISSING_YEAR, PrepReport, UNASSIGNED_SITE, UNKNOWN_PROVENANCE


# Occurrence record columns
SPECIES_COL = "species"
SITE_COL = "site_id"
YEAR_COL = "year"
PROVENANCE_COL = "provenance"
COLLECTOR_COL = "collector_group"

REQUIRED_COLS = [SPECIES_COL, SITE_COL, YEAR_COL, PROVENANCE_COL]

# Columns added by binning
YEAR_OFFSET_COL = "year_offset"
INTERVAL_COL = "interval_index"
VISIT_COL = "visit_index"

CELL_COLS = [SPECIES_COL, SITE_COL, INTERVAL_COL, VISIT_COL]
EVENT_COLS = [SITE_COL, INTERVAL_COL, VISIT_COL]

# Provenance
CROWD = "CROWD"
MUSEUM = "MUSEUM"

# GBIF basisOfRecord values seen in the raw exports
PROVENANCE_ALIASES = {
    "CROWD": CROWD,
    "HUMAN_OBSERVATION": CROWD,
    "MUSEUM": MUSEUM,
    "PRESERVED_SPECIMEN": MUSEUM,
}

# Range corpus columns (Darwin Core names)
LON_COL = "decimalLongitude"
LAT_COL = "decimalLatitude"
UNCERTAINTY_COL = "coordinateUncertaintyInMeters"


def _normalize_provenance(x) -> Optional[str]:
    if x is None or (isinstance(x, float) and pd.isna(x)):
        return None
    return PROVENANCE_ALIASES.get(str(x).strip().upper())


def normalize_records(
    records: pd.DataFrame,
    columns: Optional[Mapping[str, str]] = None,
    report: Optional[PrepReport] = None,
) -> pd.DataFrame:
    """Rename, validate and type-coerce raw occurrence records.

    Args:
        records: Raw records from the site provider
        columns: Optional {input_name: canonical_name} renames
        report: PrepReport to count dropped rows into

    Returns:
        A new DataFrame with canonical columns. Missing species labels are
        left in place; the binner counts and drops those.
    """
    report = report if report is not None else PrepReport()
    df = records.rename(columns=dict(columns or {})).copy()

    missing = [c for c in REQUIRED_COLS if c not in df.columns]
    if missing:
        raise ConfigurationError(
            f"Occurrence records are missing required columns {missing}. "
            f"Available columns: {list(df.columns)}"
        )
    if COLLECTOR_COL not in df.columns:
        df[COLLECTOR_COL] = ""

    report.input_records = len(df)

    df[PROVENANCE_COL] = df[PROVENANCE_COL].map(_normalize_provenance)
    unknown = df[PROVENANCE_COL].isna()
    report.drop(UNKNOWN_PROVENANCE, int(unknown.sum()))
    df = df[~unknown]

    no_site = df[SITE_COL].isna()
    report.drop(UNASSIGNED_SITE, int(no_site.sum()))
    df = df[~no_site]

    no_year = df[YEAR_COL].isna()
    report.drop(MISSING_YEAR, int(no_year.sum()))
    df = df[~no_year].copy()

    report.citsci_records = int((df[PROVENANCE_COL] == CROWD).sum())
    report.museum_records = int((df[PROVENANCE_COL] == MUSEUM).sum())

    ids = pd.to_numeric(df[SITE_COL], errors="coerce")
    bad = ids.isna() | (ids % 1 != 0)
    if bad.any():
        raise InputDataError(
            f"Record site ids must be integers; got {list(df.loc[bad, SITE_COL].unique()[:10])}"
        )
    df[SITE_COL] = ids.astype("int64")
    df[YEAR_COL] = df[YEAR_COL].astype("int64")
    df[SPECIES_COL] = df[SPECIES_COL].fillna("").astype(str).str.strip()
    # Null collector groups pool into one group
    df[COLLECTOR_COL] = df[COLLECTOR_COL].fillna("").astype(str)

    return df.reset_index(drop=True)
