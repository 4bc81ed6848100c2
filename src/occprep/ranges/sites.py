#!/usr/bin/env python3
"""sites.py

Load the site grid (one polygon per site) handed over by the spatial site
provider, and clean it enough for range intersection.

The grid itself is built elsewhere. Here we only:
1. Read the layer (GeoPackage, shapefile, GeoJSON, anything geopandas reads)
2. Find the site id column
3. Fix invalid geometries
4. Keep the provider's row order, which becomes the site axis order

Notes:
- The id column is inferred when not given (grid_id, site_id, id...).
- Extra numeric columns (pop_density, impervious_cover, site_area, ...) are
  site covariates and pass through untouched.
"""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional, Sequence

import geopandas as gpd
import numpy as np
import pandas as pd

from occprep.errors import InputDataError
from occprep.records.schema import SITE_COL


# -----------------------------------------------------------------------------
# Helper functions
# -----------------------------------------------------------------------------

def _pick_id_field(columns: List[str], preferred: Optional[str] = None) -> str:
    """Infer which column holds the integer site id.

    If preferred is provided and exists, use it. Otherwise score columns by
    name (site/grid/cell + id).
    """
    if preferred:
        if preferred in columns:
            return preferred
        raise InputDataError(f"--site-id-field '{preferred}' not found. Available columns: {columns}")

    candidates = []
    for c in columns:
        if c == "geometry":
            continue
        cl = c.lower()
        score = 0
        if cl in ("site_id", "grid_id"):
            score += 6
        if "id" in cl:
            score += 3
        if "site" in cl or "grid" in cl or "cell" in cl:
            score += 2
        if "name" in cl or "area" in cl or "density" in cl:
            score -= 2
        candidates.append((score, c))

    if not candidates:
        raise InputDataError("Site layer has no attribute columns; can't find a site id.")
    candidates.sort(reverse=True)
    best_score, best_col = candidates[0]
    if best_score < 3:
        raise InputDataError(
            "Couldn't confidently infer the site id column. "
            "Pass --site-id-field explicitly.\n"
            f"Columns: {columns}\n"
            f"Top guesses: {candidates[:8]}"
        )
    return best_col


def _make_valid(gdf: gpd.GeoDataFrame) -> gpd.GeoDataFrame:
    """Repair invalid polygons (self-intersections from gridding/clipping)."""
    gdf = gdf.copy()
    invalid = ~gdf.geometry.is_valid
    if invalid.any():
        gdf.loc[invalid, "geometry"] = gdf.geometry[invalid].make_valid()
    return gdf


# -----------------------------------------------------------------------------
# Core functions
# -----------------------------------------------------------------------------

def prepare_sites(gdf: gpd.GeoDataFrame, id_field: Optional[str] = None) -> gpd.GeoDataFrame:
    """Validate a site GeoDataFrame and rename its id column to site_id.

    Raises:
        InputDataError: empty layer, no CRS, duplicate or non-integer ids,
            missing geometries.
    """
    if gdf.empty:
        raise InputDataError("Site layer contains zero features. Wrong file?")
    if gdf.crs is None:
        raise InputDataError(
            "Site layer has no CRS. Fix that first; range intersection depends on it."
        )

    field = _pick_id_field(list(gdf.columns), preferred=id_field)
    out = gdf.rename(columns={field: SITE_COL}) if field != SITE_COL else gdf.copy()

    if out[SITE_COL].isna().any():
        raise InputDataError(f"Site id column '{field}' has missing values")
    ids = pd.to_numeric(out[SITE_COL], errors="coerce")
    if ids.isna().any() or not (ids % 1 == 0).all():
        raise InputDataError(f"Site id column '{field}' must hold integers")
    out[SITE_COL] = ids.astype("int64")
    dupes = out[SITE_COL][out[SITE_COL].duplicated()].unique().tolist()
    if dupes:
        raise InputDataError(f"Duplicate site ids in site layer: {dupes[:10]}")

    if out.geometry.isna().any() or out.geometry.is_empty.any():
        raise InputDataError("Site layer has missing or empty geometries")

    out = _make_valid(out)
    return out.reset_index(drop=True)


def load_sites(
    path: Path,
    *,
    id_field: Optional[str] = None,
    layer: Optional[str] = None,
) -> gpd.GeoDataFrame:
    """Read and prepare the site grid from disk."""
    if not path.exists():
        raise InputDataError(f"Site layer not found: {path}")
    gdf = gpd.read_file(path, layer=layer) if layer else gpd.read_file(path)
    return prepare_sites(gdf, id_field=id_field)


def site_list(sites: gpd.GeoDataFrame) -> List[int]:
    """Site ids in provider order."""
    return [int(s) for s in sites[SITE_COL].tolist()]


def site_covariates(
    sites: gpd.GeoDataFrame,
    columns: Optional[Sequence[str]] = None,
) -> Dict[str, np.ndarray]:
    """Per-site covariate vectors, in site order.

    Defaults to every numeric, non-id attribute column.
    """
    if columns is None:
        columns = [
            c for c in sites.columns
            if c not in (SITE_COL, "geometry")
            and pd.api.types.is_numeric_dtype(sites[c])
            and not pd.api.types.is_bool_dtype(sites[c])
        ]
    missing = [c for c in columns if c not in sites.columns]
    if missing:
        raise InputDataError(f"Site covariate columns not found: {missing}")
    non_numeric = [c for c in columns if not pd.api.types.is_numeric_dtype(sites[c])]
    if non_numeric:
        raise InputDataError(f"Site covariate columns must be numeric: {non_numeric}")
    return {str(c): sites[c].to_numpy(dtype=float, na_value=np.nan) for c in columns}
