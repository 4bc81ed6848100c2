#!/usr/bin/env python3
"""species_ranges.py

Infer where each species can occur, as a boolean species x site table.

For every species:
1. Take its historical points from the range corpus (all years after
   min_year_for_range_inference, not just the study window)
2. Drop points with coordinate uncertainty at or above the threshold
   (a missing uncertainty counts as 0 and is kept) and points hit by an
   exclusion rule
3. Project to an equal-area CRS and take the convex hull
4. A site is in range iff its polygon intersects the hull

A species with fewer than 3 usable points, or whose points are collinear,
has no areal hull. Its range is False at every site and it is listed in
the run report (RangeDegenerate). Point/line hulls are never intersected.

The result depends only on the corpus, the sites and the settings, so it can
be computed once and cached with write_range_table().
"""

from __future__ import annotations

from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple

import geopandas as gpd
import pandas as pd
from shapely.geometry import MultiPoint, Polygon

from occprep.config import ExclusionRule, RangeSettings
from occprep.errors import IndexMismatch, InputDataError
from occprep.logging_config import get_logger
from occprep.report import PrepReport
from occprep.records.schema import (
    LAT_COL,
    LON_COL,
    SITE_COL,
    SPECIES_COL,
    UNCERTAINTY_COL,
    YEAR_COL,
)


logger = get_logger(__name__)

POINT_CRS = "EPSG:4326"
RANGE_REQUIRED_COLS = [SPECIES_COL, LON_COL, LAT_COL, YEAR_COL]
IN_RANGE_COL = "in_range"
DEGENERATE_COL = "degenerate"


# -----------------------------------------------------------------------------
# Point filtering
# -----------------------------------------------------------------------------

def _rule_mask(points: pd.DataFrame, rule: ExclusionRule) -> pd.Series:
    """True for points the rule drops."""
    if rule.column not in points.columns:
        raise InputDataError(
            f"Exclusion rule refers to column '{rule.column}' which the range corpus lacks"
        )
    col = points[rule.column]
    if rule.below is not None:
        hit = pd.to_numeric(col, errors="coerce") < rule.below
    elif rule.above is not None:
        hit = pd.to_numeric(col, errors="coerce") > rule.above
    elif rule.at_least is not None:
        hit = pd.to_numeric(col, errors="coerce") >= rule.at_least
    elif rule.isin is not None:
        hit = col.isin(rule.isin)
    else:
        hit = ~col.isin(rule.not_in)
    if rule.species is not None:
        hit = hit & (points[SPECIES_COL] == rule.species)
    return hit.fillna(False).astype(bool)


def apply_exclusions(points: pd.DataFrame, rules: Iterable[ExclusionRule]) -> pd.DataFrame:
    drop = pd.Series(False, index=points.index)
    for rule in rules:
        if rule.species is not None and not (points[SPECIES_COL] == rule.species).any():
            continue
        drop |= _rule_mask(points, rule)
    return points[~drop]


def clean_range_points(points: pd.DataFrame, settings: RangeSettings) -> pd.DataFrame:
    """Apply the species-independent filters and every exclusion rule."""
    missing = [c for c in RANGE_REQUIRED_COLS if c not in points.columns]
    if missing:
        raise InputDataError(
            f"Range corpus is missing required columns {missing}. "
            f"Available columns: {list(points.columns)}"
        )
    df = points.dropna(subset=[LON_COL, LAT_COL, YEAR_COL])

    if UNCERTAINTY_COL in df.columns:
        uncertainty = pd.to_numeric(df[UNCERTAINTY_COL], errors="coerce").fillna(0)
        df = df[uncertainty < settings.max_coordinate_uncertainty_m]

    df = apply_exclusions(df, settings.exclusions)
    return df.reset_index(drop=True)


def species_points(cleaned: pd.DataFrame, species: str, min_year: int) -> pd.DataFrame:
    """Points for one species strictly after min_year."""
    sel = (cleaned[SPECIES_COL] == species) & (cleaned[YEAR_COL].astype("int64") > min_year)
    return cleaned.loc[sel, [LON_COL, LAT_COL]]


# -----------------------------------------------------------------------------
# Hull + intersection
# -----------------------------------------------------------------------------

def species_hull(lonlat: pd.DataFrame, crs: str) -> Optional[Polygon]:
    """Convex hull of lon/lat points in `crs`, or None when it has no area."""
    if len(lonlat) < 3:
        return None
    pts = gpd.GeoSeries(
        gpd.points_from_xy(lonlat[LON_COL], lonlat[LAT_COL]),
        crs=POINT_CRS,
    ).to_crs(crs)
    hull = MultiPoint(list(pts)).convex_hull
    if hull.is_empty or hull.geom_type != "Polygon" or hull.area <= 0:
        return None
    return hull


def sites_in_hull(sites: gpd.GeoDataFrame, hull: Optional[Polygon]) -> pd.Series:
    """Boolean per site (site_id index); all False for a missing hull."""
    ids = pd.Index(sites[SITE_COL].astype("int64"), name=SITE_COL)
    if hull is None:
        return pd.Series(False, index=ids)
    return pd.Series(sites.geometry.intersects(hull).to_numpy(), index=ids)


def compute_species_ranges(
    points: pd.DataFrame,
    sites: gpd.GeoDataFrame,
    species_list: Sequence[str],
    settings: Optional[RangeSettings] = None,
    *,
    min_year: int = 0,
    report: Optional[PrepReport] = None,
) -> pd.DataFrame:
    """Boolean in-range table, one row per species, one column per site.

    Args:
        points: Range corpus (species, decimalLongitude, decimalLatitude, year, ...)
        sites: Prepared site grid (see sites.prepare_sites)
        species_list: Species to compute, in output row order
        settings: CRS, uncertainty threshold and exclusion rules
        min_year: Only points with year > min_year are used
        report: Degenerate species are appended to report.degenerate_ranges

    Returns:
        DataFrame[bool] indexed by species with site ids as columns.
    """
    settings = settings or RangeSettings()
    report = report if report is not None else PrepReport()

    cleaned = clean_range_points(points, settings)
    sites_prj = sites.to_crs(settings.crs)

    rows = {}
    for species in species_list:
        hull = species_hull(species_points(cleaned, species, min_year), settings.crs)
        if hull is None:
            logger.warning(
                "Range hull for %s is degenerate (fewer than 3 non-collinear points); "
                "treating every site as out of range",
                species,
            )
            report.degenerate_ranges.append(str(species))
        rows[str(species)] = sites_in_hull(sites_prj, hull)

    if not rows:
        return pd.DataFrame(
            index=pd.Index([], name=SPECIES_COL),
            columns=pd.Index(sites[SITE_COL].astype("int64"), name=SITE_COL),
            dtype=bool,
        )
    table = pd.DataFrame(rows).T.astype(bool)
    table.index.name = SPECIES_COL
    table.columns.name = SITE_COL
    return table


# -----------------------------------------------------------------------------
# Alignment + caching
# -----------------------------------------------------------------------------

def align_ranges(ranges: pd.DataFrame, species: Sequence[str], sites: Sequence[int]) -> pd.DataFrame:
    """Reorder a range table to the master species/site order.

    Raises IndexMismatch when a master species or site has no range row/column.
    """
    missing_species = set(species) - set(ranges.index.astype(str))
    if missing_species:
        raise IndexMismatch("range species", missing_species)
    cols = pd.Index(ranges.columns).astype("int64")
    missing_sites = set(int(s) for s in sites) - set(cols)
    if missing_sites:
        raise IndexMismatch("range site", missing_sites)
    out = ranges.copy()
    out.index = out.index.astype(str)
    out.columns = cols
    return out.loc[list(species), [int(s) for s in sites]].astype(bool)


def range_table_to_long(ranges: pd.DataFrame) -> pd.DataFrame:
    long = ranges.stack().rename(IN_RANGE_COL).reset_index()
    long.columns = [SPECIES_COL, SITE_COL, IN_RANGE_COL]
    long[SITE_COL] = long[SITE_COL].astype("int64")
    long[IN_RANGE_COL] = long[IN_RANGE_COL].astype(bool)
    return long


def range_table_from_long(long: pd.DataFrame) -> pd.DataFrame:
    missing = [c for c in (SPECIES_COL, SITE_COL, IN_RANGE_COL) if c not in long.columns]
    if missing:
        raise InputDataError(f"Range table is missing columns {missing}")
    wide = long.pivot(index=SPECIES_COL, columns=SITE_COL, values=IN_RANGE_COL)
    if wide.isna().any().any():
        raise InputDataError("Range table is incomplete: some species x site pairs are missing")
    wide.index = wide.index.astype(str)
    wide.columns = wide.columns.astype("int64")
    return wide.astype(bool)


def write_range_table(ranges: pd.DataFrame, path: Path, degenerate: Sequence[str] = ()) -> None:
    """Cache a range table as long-format parquet (species, site_id, in_range, degenerate)."""
    long = range_table_to_long(ranges)
    long[DEGENERATE_COL] = long[SPECIES_COL].isin(set(degenerate))
    path.parent.mkdir(parents=True, exist_ok=True)
    long.to_parquet(path, index=False)


def read_range_table(path: Path) -> Tuple[pd.DataFrame, List[str]]:
    """Load a cached range table. Returns (wide table, degenerate species)."""
    if not path.exists():
        raise InputDataError(f"Range table not found: {path}")
    long = pd.read_parquet(path)
    degenerate: List[str] = []
    if DEGENERATE_COL in long.columns:
        degenerate = sorted(long.loc[long[DEGENERATE_COL].astype(bool), SPECIES_COL].astype(str).unique())
    return range_table_from_long(long), degenerate
