#!/usr/bin/env python3
"""bundle_io.py

Persist an OccupancyBundle as one compressed .npz plus a JSON report.

    occupancy_bundle.npz          V_citsci, V_museum, M_citsci, M_museum,
                                  species, sites, intervals, visits,
                                  n_species, n_sites, n_intervals, n_visits,
                                  cov__<name> per site covariate
    occupancy_bundle_report.json  PrepReport.to_dict()

Tensors and index lists always travel together in the same file, and
read_bundle() validates before returning, so a reader can't pair tensors
with the wrong axis order.
"""

from __future__ import annotations

import json
from pathlib import Path

import numpy as np

from occprep.errors import InputDataError
from occprep.prep.pipeline import OccupancyBundle
from occprep.records.binning import MasterIndex
from occprep.report import PrepReport


COVARIATE_PREFIX = "cov__"


def report_path_for(bundle_path: Path) -> Path:
    return bundle_path.with_name(f"{bundle_path.stem}_report.json")


def write_bundle(bundle: OccupancyBundle, path: Path) -> Path:
    """Validate and write the bundle. Returns the report path."""
    bundle.validate()
    path.parent.mkdir(parents=True, exist_ok=True)

    arrays = dict(bundle.tensors())
    arrays.update({
        "species": np.asarray(bundle.index.species, dtype=str),
        "sites": np.asarray(bundle.index.sites, dtype=np.int64),
        "intervals": np.asarray(bundle.index.intervals, dtype=np.int64),
        "visits": np.asarray(bundle.index.visits, dtype=np.int64),
    })
    for name, value in bundle.dims().items():
        arrays[name] = np.asarray(value, dtype=np.int64)
    for name, values in bundle.site_covariates.items():
        arrays[f"{COVARIATE_PREFIX}{name}"] = np.asarray(values, dtype=float)

    with path.open("wb") as f:
        np.savez_compressed(f, **arrays)

    report_path = report_path_for(path)
    report_path.write_text(json.dumps(bundle.report.to_dict(), indent=2, sort_keys=True))
    return report_path


def read_bundle(path: Path) -> OccupancyBundle:
    """Load and validate a bundle written by write_bundle()."""
    if not path.exists():
        raise InputDataError(f"Bundle not found: {path}")

    with np.load(path, allow_pickle=False) as data:
        required = ["V_citsci", "V_museum", "M_citsci", "M_museum", "species", "sites", "intervals", "visits"]
        missing = [k for k in required if k not in data.files]
        if missing:
            raise InputDataError(f"{path} is missing arrays {missing}")

        index = MasterIndex(
            species=tuple(str(s) for s in data["species"]),
            sites=tuple(int(s) for s in data["sites"]),
            intervals=tuple(int(x) for x in data["intervals"]),
            visits=tuple(int(x) for x in data["visits"]),
        )
        for name in ("n_species", "n_sites", "n_intervals", "n_visits"):
            if name in data.files and int(data[name]) != getattr(index, name):
                raise InputDataError(f"{path}: {name}={int(data[name])} disagrees with index lists")

        covariates = {
            key[len(COVARIATE_PREFIX):]: data[key]
            for key in data.files
            if key.startswith(COVARIATE_PREFIX)
        }
        bundle = OccupancyBundle(
            V_citsci=data["V_citsci"],
            V_museum=data["V_museum"],
            M_citsci=data["M_citsci"],
            M_museum=data["M_museum"],
            index=index,
            site_covariates=covariates,
        )

    report_path = report_path_for(path)
    if report_path.exists():
        bundle.report = PrepReport.from_dict(json.loads(report_path.read_text()))

    bundle.validate()
    return bundle
