#!/usr/bin/env python3

from __future__ import annotations

import sys
from pathlib import Path

import pandas as pd

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

from occprep.config import StudyDesign
from occprep.records.binning import bin_records
from occprep.records.schema import normalize_records
from occprep.records.streams import qualifying_museum_records, sampling_event_table, split_streams
from occprep.report import PrepReport


DESIGN = StudyDesign(
    era_start=2000,
    era_end=2005,
    interval_length=3,
    min_distinct_species_per_sampling_event=3,
)


def _binned(rows):
    df = pd.DataFrame(rows, columns=["species", "site_id", "year", "provenance", "collector_group"])
    return bin_records(normalize_records(df), DESIGN)


def test_small_museum_group_is_not_a_sampling_event():
    # institution X collected only 2 species at site 7 in 2003
    binned = _binned([
        ("A", 7, 2003, "MUSEUM", "X"),
        ("B", 7, 2003, "MUSEUM", "X"),
    ])
    report = PrepReport()
    split = split_streams(binned, DESIGN, report)
    assert split.museum.empty
    assert split.sampling_events.empty
    assert report.dropped["no_sampling_event"] == 2
    assert report.n_sampling_events == 0


def test_community_sampling_event_keeps_all_its_records():
    binned = _binned([
        ("A", 7, 2003, "MUSEUM", "X"),
        ("B", 7, 2003, "MUSEUM", "X"),
        ("C", 7, 2003, "MUSEUM", "X"),
        ("C", 7, 2003, "MUSEUM", "X"),
    ])
    report = PrepReport()
    split = split_streams(binned, DESIGN, report)
    # duplicate C collapses to one cell
    assert sorted(split.museum["species"]) == ["A", "B", "C"]
    assert split.sampling_events[["site_id", "interval_index", "visit_index"]].values.tolist() == [[7, 1, 0]]
    assert report.n_sampling_events == 1
    assert report.dropped["no_sampling_event"] == 0


def test_event_groups_are_per_collector():
    # 3 species at site 7 in 2003, but split across two institutions
    binned = _binned([
        ("A", 7, 2003, "MUSEUM", "X"),
        ("B", 7, 2003, "MUSEUM", "X"),
        ("C", 7, 2003, "MUSEUM", "Y"),
    ])
    assert qualifying_museum_records(binned[binned["provenance"] == "MUSEUM"], 3).empty


def test_event_groups_are_per_year():
    binned = _binned([
        ("A", 7, 2003, "MUSEUM", "X"),
        ("B", 7, 2003, "MUSEUM", "X"),
        ("C", 7, 2004, "MUSEUM", "X"),
    ])
    table = sampling_event_table(binned)
    assert table["n_species"].tolist() == [2, 1]


def test_citsci_records_pass_through_deduplicated():
    binned = _binned([
        ("A", 1, 2001, "CROWD", ""),
        ("A", 1, 2001, "CROWD", ""),
        ("B", 2, 2004, "CROWD", ""),
        ("A", 1, 2001, "MUSEUM", "X"),
    ])
    split = split_streams(binned, DESIGN)
    assert len(split.citsci) == 2
    assert set(split.citsci["provenance"]) == {"CROWD"}
    assert split.museum.empty


def test_split_never_drops_citsci_species():
    binned = _binned([("Z", 1, 2001, "CROWD", "")])
    split = split_streams(binned, DESIGN)
    assert split.citsci["species"].tolist() == ["Z"]
