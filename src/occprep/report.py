#!/usr/bin/env python3
"""occprep.report

Per-run report of recoverable conditions.

Nothing recoverable is surfaced per record. Each stage calls
`report.drop(reason, n)` once with an aggregate count, and the CLI prints
`summary_lines()` at the end of a run (and writes `to_dict()` next to the
bundle).
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, List


# Drop reasons, in pipeline order
MISSING_SPECIES = "missing_species"
UNKNOWN_PROVENANCE = "unknown_provenance"
UNASSIGNED_SITE = "unassigned_site"
MISSING_YEAR = "missing_year"
OUTSIDE_ERA = "outside_era"
PARTIAL_INTERVAL = "partial_interval"
RARE_SPECIES = "rare_species"
NO_SAMPLING_EVENT = "no_sampling_event"


@dataclass
class PrepReport:
    dropped: Counter = field(default_factory=Counter)
    input_records: int = 0
    citsci_records: int = 0
    museum_records: int = 0
    species_counts: Dict[str, int] = field(default_factory=dict)
    degenerate_ranges: List[str] = field(default_factory=list)
    n_sampling_events: int = 0
    out_of_range_detections: Dict[str, int] = field(default_factory=dict)

    def drop(self, reason: str, n: int) -> None:
        if n:
            self.dropped[reason] += int(n)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dropped": dict(self.dropped),
            "input_records": self.input_records,
            "citsci_records": self.citsci_records,
            "museum_records": self.museum_records,
            "species_counts": dict(self.species_counts),
            "degenerate_ranges": list(self.degenerate_ranges),
            "n_sampling_events": self.n_sampling_events,
            "out_of_range_detections": dict(self.out_of_range_detections),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "PrepReport":
        return cls(
            dropped=Counter(d.get("dropped", {})),
            input_records=int(d.get("input_records", 0)),
            citsci_records=int(d.get("citsci_records", 0)),
            museum_records=int(d.get("museum_records", 0)),
            species_counts={str(k): int(v) for k, v in d.get("species_counts", {}).items()},
            degenerate_ranges=list(d.get("degenerate_ranges", [])),
            n_sampling_events=int(d.get("n_sampling_events", 0)),
            out_of_range_detections={str(k): int(v) for k, v in d.get("out_of_range_detections", {}).items()},
        )

    def summary_lines(self) -> List[str]:
        lines = [
            f"Input records: {self.input_records} "
            f"(citsci={self.citsci_records}, museum={self.museum_records})",
        ]
        if self.dropped:
            lines.append("Dropped records:")
            for reason, n in self.dropped.items():
                lines.append(f"  - {reason}: {n}")
        lines.append(f"Qualifying museum sampling events: {self.n_sampling_events}")
        if self.degenerate_ranges:
            lines.append(
                f"Degenerate ranges (out of range everywhere): {', '.join(self.degenerate_ranges)}"
            )
        for stream, n in self.out_of_range_detections.items():
            lines.append(f"Out-of-range {stream} detections dropped: {n}")
        return lines
