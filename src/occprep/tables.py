#!/usr/bin/env python3
"""occprep.tables

Read tabular inputs (occurrence records, range corpus) by file extension.
"""

from __future__ import annotations

from pathlib import Path

import pandas as pd

from occprep.errors import InputDataError


def read_table(path: Path) -> pd.DataFrame:
    """Read .parquet, .csv, or tab-separated .tsv/.txt (GBIF downloads)."""
    if not path.exists():
        raise InputDataError(f"Table not found: {path}")
    suffix = path.suffix.lower()
    if suffix in (".parquet", ".pq"):
        return pd.read_parquet(path)
    if suffix == ".csv":
        return pd.read_csv(path, low_memory=False)
    if suffix in (".tsv", ".txt"):
        return pd.read_csv(path, sep="\t", low_memory=False)
    raise InputDataError(f"Don't know how to read {path} (expected .parquet, .csv, .tsv)")
