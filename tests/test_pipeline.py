#!/usr/bin/env python3

from __future__ import annotations

import json
import sys
from pathlib import Path

import geopandas as gpd
import numpy as np
import pandas as pd
import pytest
from shapely.geometry import box

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

from occprep.config import PrepConfig, RangeSettings, StudyDesign
from occprep.errors import ConfigurationError, IndexMismatch, InputDataError, MaskInvariantViolation
from occprep.prep.bundle_io import read_bundle, write_bundle
from occprep.prep.pipeline import build_occupancy_bundle
from occprep.ranges.sites import prepare_sites


def _config(policy="raise", **design):
    params = dict(era_start=2000, era_end=2005, interval_length=3, min_distinct_species_per_sampling_event=2)
    params.update(design)
    return PrepConfig(
        design=StudyDesign(**params),
        ranges=RangeSettings(crs="EPSG:4326"),
        out_of_range_detections=policy,
    )


def _sites():
    gdf = gpd.GeoDataFrame(
        {"grid_id": [10, 20, 30], "pop_density": [1.5, 0.0, 12.0]},
        geometry=[box(1.0, 1.0, 1.5, 1.5), box(5.0, 5.0, 6.0, 6.0), box(1.9, 1.9, 3.0, 3.0)],
        crs="EPSG:4326",
    )
    return prepare_sites(gdf)


def _range_points():
    # A and B share a square hull covering sites 10 and 30, never 20
    square = [(0.0, 0.0), (2.0, 0.0), (0.0, 2.0), (2.0, 2.0)]
    rows = [(sp, x, y, 1990) for sp in ("A", "B") for x, y in square]
    return pd.DataFrame(rows, columns=["species", "decimalLongitude", "decimalLatitude", "year"])


def _records(extra=()):
    rows = [
        ("A", 10, 2001, "CROWD", ""),
        ("A", 10, 2001, "CROWD", ""),
        ("A", 30, 2004, "MUSEUM", "X"),
        ("B", 30, 2004, "MUSEUM", "X"),
    ]
    rows.extend(extra)
    return pd.DataFrame(rows, columns=["species", "site_id", "year", "provenance", "collector_group"])


def test_end_to_end_bundle():
    bundle = build_occupancy_bundle(_records(), _sites(), _config(), range_points=_range_points())

    assert bundle.index.species == ("A", "B")
    assert bundle.index.sites == (10, 20, 30)
    assert bundle.index.intervals == (0, 1)
    assert bundle.index.visits == (1,)
    assert bundle.dims() == {"n_species": 2, "n_sites": 3, "n_intervals": 2, "n_visits": 1}

    for arr in bundle.tensors().values():
        assert arr.shape == (2, 3, 2, 1)
        assert set(np.unique(arr)) <= {0, 1}

    assert bundle.V_citsci.sum() == 1
    assert bundle.V_citsci[0, 0, 0, 0] == 1
    assert bundle.V_museum[:, 2, 1, 0].tolist() == [1, 1]
    assert bundle.V_museum.sum() == 2

    # citsci: in range at sites 10 and 30, every interval/visit
    assert bundle.M_citsci.sum() == 2 * 2 * 2
    assert not bundle.M_citsci[:, 1].any()
    # museum: only the (site 30, interval 1, visit 0) sampling event
    assert bundle.M_museum.sum() == 2
    assert bundle.M_museum[:, 2, 1, 0].tolist() == [1, 1]

    assert (bundle.V_citsci <= bundle.M_citsci).all()
    assert (bundle.V_museum <= bundle.M_museum).all()

    np.testing.assert_allclose(bundle.site_covariates["pop_density"], [1.5, 0.0, 12.0])
    assert bundle.report.input_records == 4
    assert bundle.report.species_counts == {"A": 3, "B": 1}
    assert bundle.report.n_sampling_events == 1


def test_pipeline_is_deterministic():
    a = build_occupancy_bundle(_records(), _sites(), _config(), range_points=_range_points())
    b = build_occupancy_bundle(_records(), _sites(), _config(), range_points=_range_points())
    assert a.index == b.index
    for name, arr in a.tensors().items():
        np.testing.assert_array_equal(arr, b.tensors()[name])


def test_rare_species_dropped_from_both_streams():
    bundle = build_occupancy_bundle(
        _records(), _sites(), _config(min_records_per_species=2), range_points=_range_points()
    )
    assert bundle.index.species == ("A",)
    # B goes before the stream split, so X at site 30 in 2004 is left with one species
    assert bundle.V_museum.sum() == 0
    assert bundle.M_museum.sum() == 0
    assert bundle.report.dropped["rare_species"] == 1
    assert bundle.report.dropped["no_sampling_event"] == 1


def test_out_of_range_detection_raises_by_default():
    records = _records(extra=[("A", 20, 2001, "CROWD", "")])
    with pytest.raises(MaskInvariantViolation):
        build_occupancy_bundle(records, _sites(), _config(), range_points=_range_points())


def test_out_of_range_detection_dropped_when_configured():
    records = _records(extra=[("A", 20, 2001, "CROWD", "")])
    bundle = build_occupancy_bundle(records, _sites(), _config("drop"), range_points=_range_points())
    assert bundle.V_citsci[0, 1].sum() == 0
    assert bundle.report.out_of_range_detections == {"citsci": 1}


def test_cached_ranges_and_degenerate_list():
    ranges = pd.DataFrame(
        [[True, False, True], [False, False, True], [True, True, True]],
        index=["A", "B", "unused"],
        columns=[10, 20, 30],
    )
    bundle = build_occupancy_bundle(
        _records(),
        _sites(),
        _config(),
        ranges=ranges,
        degenerate_ranges=["unused", "B"],
    )
    assert bundle.report.degenerate_ranges == ["B"]
    assert bundle.M_citsci[1].sum() == 2


def test_cached_ranges_must_cover_every_species():
    ranges = pd.DataFrame([[True, False, True]], index=["A"], columns=[10, 20, 30])
    with pytest.raises(IndexMismatch) as exc:
        build_occupancy_bundle(_records(), _sites(), _config(), ranges=ranges)
    assert exc.value.missing == ["B"]


def test_exactly_one_range_source():
    with pytest.raises(ConfigurationError):
        build_occupancy_bundle(_records(), _sites(), _config())


def test_configured_column_names():
    raw = _records().rename(columns={
        "site_id": "grid_id",
        "provenance": "basisOfRecord",
        "collector_group": "institutionCode",
    })
    raw["basisOfRecord"] = raw["basisOfRecord"].map({"CROWD": "HUMAN_OBSERVATION", "MUSEUM": "PRESERVED_SPECIMEN"})
    config = PrepConfig(
        design=_config().design,
        ranges=RangeSettings(crs="EPSG:4326"),
        columns={"grid_id": "site_id", "basisOfRecord": "provenance", "institutionCode": "collector_group"},
    )
    bundle = build_occupancy_bundle(raw, _sites(), config, range_points=_range_points())
    assert bundle.V_museum.sum() == 2


# -----------------------------------------------------------------------------
# Bundle IO
# -----------------------------------------------------------------------------

def test_written_bundle_reads_back_with_report(tmp_path):
    bundle = build_occupancy_bundle(_records(), _sites(), _config(), range_points=_range_points())
    path = tmp_path / "processed" / "occupancy_bundle.npz"
    report_path = write_bundle(bundle, path)

    assert report_path.name == "occupancy_bundle_report.json"
    assert json.loads(report_path.read_text())["species_counts"] == {"A": 3, "B": 1}

    loaded = read_bundle(path)
    assert loaded.index == bundle.index
    np.testing.assert_array_equal(loaded.M_museum, bundle.M_museum)
    assert loaded.report.n_sampling_events == 1
    assert list(loaded.site_covariates) == ["pop_density"]


def test_read_bundle_rejects_broken_invariant(tmp_path):
    bundle = build_occupancy_bundle(_records(), _sites(), _config(), range_points=_range_points())
    path = tmp_path / "bundle.npz"
    arrays = dict(bundle.tensors())
    arrays["M_citsci"] = np.zeros_like(bundle.M_citsci)
    np.savez(
        path,
        species=np.asarray(bundle.index.species),
        sites=np.asarray(bundle.index.sites),
        intervals=np.asarray(bundle.index.intervals),
        visits=np.asarray(bundle.index.visits),
        **arrays,
    )
    with pytest.raises(MaskInvariantViolation):
        read_bundle(path)


def test_read_missing_bundle(tmp_path):
    with pytest.raises(InputDataError):
        read_bundle(tmp_path / "nope.npz")


def test_site_layer_with_name_column_builds():
    sites = _sites()
    sites["site_name"] = pd.array(["north", "middle", "south"], dtype="string")
    bundle = build_occupancy_bundle(_records(), sites, _config(), range_points=_range_points())
    assert list(bundle.site_covariates) == ["pop_density"]
