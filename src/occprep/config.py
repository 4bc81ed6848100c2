#!/usr/bin/env python3
"""occprep.config

Shared configuration for the occprep subsystems (records, ranges, tensors, prep).

One YAML file describes a pipeline run:

    study_design:
      era_start: 2000
      era_end: 2005
      interval_length: 3
      min_records_per_species: 20
      min_distinct_species_per_sampling_event: 3
      min_year_for_range_inference: 1950
      partial_interval: retain      # or: drop
    ranges:
      crs: "EPSG:5070"
      max_coordinate_uncertainty_m: 10000
      exclusions:
        - {column: decimalLatitude, at_least: 50}
        - {species: impatiens, column: decimalLongitude, below: -100}
    masks:
      out_of_range_detections: raise   # or: drop
    columns:
      grid_id: site_id

Design notes:
- YAML loading is strict: files must exist and be valid mappings.
- Everything is validated at load time so bad designs fail before any work.
- StudyDesign keeps interval_length (a design input) separate from the
  n_intervals / n_visits realized by the data, which live on MasterIndex.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from occprep.errors import ConfigurationError


PARTIAL_INTERVAL_POLICIES = ("retain", "drop")
# "raise" aborts on any detection outside its mask. "drop" is an opt-in
# departure from that abort: offending detections are zeroed and counted.
OUT_OF_RANGE_POLICIES = ("raise", "drop")

DEFAULT_CONFIG_YAML = Path("config/study_design.yaml")
DEFAULT_RANGE_CRS = "EPSG:5070"
DEFAULT_MAX_UNCERTAINTY_M = 10000.0


# -----------------------------------------------------------------------------
# YAML loading
# -----------------------------------------------------------------------------

def load_yaml(path: Path) -> Dict[str, Any]:
    """Load a YAML file and return as dict.

    Raises ConfigurationError on missing file or invalid format (non-mapping).
    """
    if not path.exists():
        raise ConfigurationError(f"Config not found: {path}")
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if not isinstance(data, dict):
        raise ConfigurationError(f"Expected YAML mapping at {path}")
    return data


def _section(data: Mapping[str, Any], name: str) -> Dict[str, Any]:
    sec = data.get(name) or {}
    if not isinstance(sec, dict):
        raise ConfigurationError(f"'{name}:' must be a mapping")
    return sec


def _as_int(sec: Mapping[str, Any], key: str, default: Optional[int] = None) -> int:
    if key not in sec:
        if default is None:
            raise ConfigurationError(f"study_design is missing required option '{key}'")
        return default
    try:
        return int(sec[key])
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"study_design.{key} must be an integer, got {sec[key]!r}") from e


# -----------------------------------------------------------------------------
# Study design
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class StudyDesign:
    """Fixed parameters of one pipeline run.

    era_start and era_end are inclusive years. interval_length is the number
    of years per occupancy interval; each year inside an interval is a visit.
    """

    era_start: int
    era_end: int
    interval_length: int
    min_records_per_species: int = 1
    min_distinct_species_per_sampling_event: int = 1
    min_year_for_range_inference: int = 0
    partial_interval: str = "retain"

    def __post_init__(self) -> None:
        if self.total_years <= 0:
            raise ConfigurationError(
                f"Study window is empty: era_start={self.era_start} era_end={self.era_end}"
            )
        if self.interval_length <= 0:
            raise ConfigurationError(f"interval_length must be positive, got {self.interval_length}")
        if self.min_records_per_species < 0:
            raise ConfigurationError("min_records_per_species must be >= 0")
        if self.min_distinct_species_per_sampling_event < 0:
            raise ConfigurationError("min_distinct_species_per_sampling_event must be >= 0")
        if self.partial_interval not in PARTIAL_INTERVAL_POLICIES:
            raise ConfigurationError(
                f"partial_interval must be one of {PARTIAL_INTERVAL_POLICIES}, got {self.partial_interval!r}"
            )

    @property
    def total_years(self) -> int:
        return self.era_end - self.era_start + 1

    @property
    def n_full_intervals(self) -> int:
        return self.total_years // self.interval_length

    @property
    def has_partial_interval(self) -> bool:
        return self.total_years % self.interval_length != 0

    @classmethod
    def from_mapping(cls, sec: Mapping[str, Any]) -> "StudyDesign":
        return cls(
            era_start=_as_int(sec, "era_start"),
            era_end=_as_int(sec, "era_end"),
            interval_length=_as_int(sec, "interval_length"),
            min_records_per_species=_as_int(sec, "min_records_per_species", 1),
            min_distinct_species_per_sampling_event=_as_int(sec, "min_distinct_species_per_sampling_event", 1),
            min_year_for_range_inference=_as_int(sec, "min_year_for_range_inference", 0),
            partial_interval=str(sec.get("partial_interval", "retain")),
        )


# -----------------------------------------------------------------------------
# Range inference settings
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class ExclusionRule:
    """Drop range points where `column` matches the condition.

    Exactly one of below / above / at_least / isin / not_in is set. below and
    above are strict; at_least also drops values equal to the bound. A rule
    without a species applies to every species.
    """

    column: str
    species: Optional[str] = None
    below: Optional[float] = None
    above: Optional[float] = None
    at_least: Optional[float] = None
    isin: Optional[tuple] = None
    not_in: Optional[tuple] = None

    def __post_init__(self) -> None:
        conditions = (self.below, self.above, self.at_least, self.isin, self.not_in)
        n_conditions = sum(x is not None for x in conditions)
        if n_conditions != 1:
            raise ConfigurationError(
                f"Exclusion rule on '{self.column}' needs exactly one of below/above/at_least/in/not_in"
            )

    @classmethod
    def from_mapping(cls, d: Mapping[str, Any]) -> "ExclusionRule":
        if not isinstance(d, Mapping) or "column" not in d:
            raise ConfigurationError(f"Exclusion rule must be a mapping with 'column': {d!r}")
        isin = d.get("in")
        not_in = d.get("not_in")
        return cls(
            column=str(d["column"]),
            species=d.get("species"),
            below=float(d["below"]) if d.get("below") is not None else None,
            above=float(d["above"]) if d.get("above") is not None else None,
            at_least=float(d["at_least"]) if d.get("at_least") is not None else None,
            isin=tuple(isin) if isin is not None else None,
            not_in=tuple(not_in) if not_in is not None else None,
        )


@dataclass(frozen=True)
class RangeSettings:
    crs: str = DEFAULT_RANGE_CRS
    max_coordinate_uncertainty_m: float = DEFAULT_MAX_UNCERTAINTY_M
    exclusions: tuple = ()

    @classmethod
    def from_mapping(cls, sec: Mapping[str, Any]) -> "RangeSettings":
        rules = sec.get("exclusions") or []
        if not isinstance(rules, list):
            raise ConfigurationError("ranges.exclusions must be a list")
        return cls(
            crs=str(sec.get("crs", DEFAULT_RANGE_CRS)),
            max_coordinate_uncertainty_m=float(sec.get("max_coordinate_uncertainty_m", DEFAULT_MAX_UNCERTAINTY_M)),
            exclusions=tuple(ExclusionRule.from_mapping(r) for r in rules),
        )


# -----------------------------------------------------------------------------
# Whole-run config
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class PrepConfig:
    design: StudyDesign
    ranges: RangeSettings = field(default_factory=RangeSettings)
    out_of_range_detections: str = "raise"
    columns: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.out_of_range_detections not in OUT_OF_RANGE_POLICIES:
            raise ConfigurationError(
                f"masks.out_of_range_detections must be one of {OUT_OF_RANGE_POLICIES}, "
                f"got {self.out_of_range_detections!r}"
            )


def parse_config(data: Mapping[str, Any]) -> PrepConfig:
    """Build a validated PrepConfig from a parsed YAML mapping."""
    if "study_design" not in data:
        raise ConfigurationError("Config must have a top-level 'study_design:' mapping")
    columns = _section(data, "columns")
    return PrepConfig(
        design=StudyDesign.from_mapping(_section(data, "study_design")),
        ranges=RangeSettings.from_mapping(_section(data, "ranges")),
        out_of_range_detections=str(_section(data, "masks").get("out_of_range_detections", "raise")),
        columns={str(k): str(v) for k, v in columns.items()},
    )


def load_config(path: Path) -> PrepConfig:
    return parse_config(load_yaml(path))


def describe_design(design: StudyDesign) -> List[str]:
    """Human-readable summary lines, used by CLI dry runs."""
    lines = [
        f"Era: {design.era_start}-{design.era_end} ({design.total_years} years)",
        f"Interval length: {design.interval_length} years "
        f"({design.n_full_intervals} full interval(s))",
    ]
    if design.has_partial_interval:
        lines.append(
            f"Trailing partial interval of {design.total_years % design.interval_length} year(s): "
            f"{design.partial_interval}"
        )
    lines.append(f"Min records per species: {design.min_records_per_species}")
    lines.append(f"Min species per sampling event: {design.min_distinct_species_per_sampling_event}")
    lines.append(f"Range points after year: {design.min_year_for_range_inference}")
    return lines
