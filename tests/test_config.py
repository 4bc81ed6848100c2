#!/usr/bin/env python3

from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Ensure we can import from src without installing the package
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

from occprep.config import (
    ExclusionRule,
    StudyDesign,
    load_config,
    load_yaml,
    parse_config,
)
from occprep.errors import ConfigurationError


def test_design_derived_quantities():
    d = StudyDesign(era_start=2000, era_end=2005, interval_length=3)
    assert d.total_years == 6
    assert d.n_full_intervals == 2
    assert not d.has_partial_interval


def test_design_with_trailing_partial_interval():
    d = StudyDesign(era_start=2000, era_end=2006, interval_length=3)
    assert d.total_years == 7
    assert d.n_full_intervals == 2
    assert d.has_partial_interval


def test_empty_window_is_configuration_error():
    with pytest.raises(ConfigurationError):
        StudyDesign(era_start=2005, era_end=2004, interval_length=1)


@pytest.mark.parametrize("length", [0, -2])
def test_non_positive_interval_length_is_configuration_error(length):
    with pytest.raises(ConfigurationError):
        StudyDesign(era_start=2000, era_end=2005, interval_length=length)


def test_unknown_partial_interval_policy():
    with pytest.raises(ConfigurationError):
        StudyDesign(era_start=2000, era_end=2005, interval_length=3, partial_interval="pad")


def test_exclusion_rule_needs_exactly_one_condition():
    with pytest.raises(ConfigurationError):
        ExclusionRule(column="decimalLongitude")
    with pytest.raises(ConfigurationError):
        ExclusionRule(column="decimalLongitude", below=-100, above=-50)


def test_parse_config_full_mapping():
    cfg = parse_config({
        "study_design": {
            "era_start": 2000,
            "era_end": 2005,
            "interval_length": 3,
            "min_records_per_species": 2,
            "min_distinct_species_per_sampling_event": 3,
            "min_year_for_range_inference": 1950,
        },
        "ranges": {
            "crs": "EPSG:4326",
            "exclusions": [
                {"species": "impatiens", "column": "decimalLongitude", "below": -100},
                {"species": "affinis", "column": "stateProvince", "not_in": ["Iowa", "Ohio"]},
            ],
        },
        "masks": {"out_of_range_detections": "drop"},
        "columns": {"grid_id": "site_id"},
    })
    assert cfg.design.min_distinct_species_per_sampling_event == 3
    assert cfg.ranges.crs == "EPSG:4326"
    assert cfg.ranges.exclusions[0].below == -100.0
    assert cfg.ranges.exclusions[1].not_in == ("Iowa", "Ohio")
    assert cfg.out_of_range_detections == "drop"
    assert cfg.columns == {"grid_id": "site_id"}


def test_parse_config_requires_study_design():
    with pytest.raises(ConfigurationError):
        parse_config({"ranges": {}})


def test_parse_config_missing_required_option():
    with pytest.raises(ConfigurationError):
        parse_config({"study_design": {"era_start": 2000, "era_end": 2005}})


def test_parse_config_bad_policy():
    with pytest.raises(ConfigurationError):
        parse_config({
            "study_design": {"era_start": 2000, "era_end": 2005, "interval_length": 3},
            "masks": {"out_of_range_detections": "ignore"},
        })


def test_load_yaml_missing_file(tmp_path):
    with pytest.raises(ConfigurationError):
        load_yaml(tmp_path / "nope.yaml")


def test_load_yaml_rejects_non_mapping(tmp_path):
    p = tmp_path / "list.yaml"
    p.write_text("- 1\n- 2\n")
    with pytest.raises(ConfigurationError):
        load_yaml(p)


def test_shipped_config_loads():
    cfg = load_config(ROOT / "config" / "study_design.yaml")
    assert cfg.design.interval_length > 0
    assert cfg.out_of_range_detections == "raise"


def test_at_least_rule_from_yaml_mapping():
    rule = ExclusionRule.from_mapping({"column": "decimalLatitude", "at_least": 50})
    assert rule.at_least == 50.0
    assert rule.above is None


def test_shipped_config_carries_core_state_trims():
    cfg = load_config(ROOT / "config" / "study_design.yaml")
    by_species = {r.species: r for r in cfg.ranges.exclusions if r.not_in is not None}
    assert set(by_species) == {"affinis", "vosnesenskii"}
    assert "Nevada" in by_species["vosnesenskii"].not_in
    latitude = [r for r in cfg.ranges.exclusions if r.column == "decimalLatitude"]
    assert latitude[0].at_least == 50.0
