#!/usr/bin/env python3
"""occprep.errors

Exceptions raised by the occupancy data prep pipeline.

Only fatal conditions are exceptions. Records with a missing species label
and species whose range hull degenerates are recoverable: they are counted in
the per-run PrepReport and logged, and the run continues.
"""

from __future__ import annotations


class OccPrepError(Exception):
    """Base class for all fatal pipeline errors."""


class ConfigurationError(OccPrepError, ValueError):
    """Study design or YAML config is unusable (bad window, interval length, policy...)."""


class InputDataError(OccPrepError, ValueError):
    """Site geometries, records or range points cannot be used as given."""


class IndexMismatch(OccPrepError, KeyError):
    """A component referenced a species/site/interval/visit absent from the master lists."""

    def __init__(self, axis: str, missing) -> None:
        self.axis = axis
        self.missing = sorted(missing, key=str)
        preview = self.missing[:10]
        more = "" if len(self.missing) <= 10 else f" (+{len(self.missing) - 10} more)"
        super().__init__(f"{axis} values not in master index: {preview}{more}")

    def __str__(self) -> str:
        # KeyError would otherwise repr() the message
        return str(self.args[0])


class MaskInvariantViolation(OccPrepError):
    """A detection exists where the sampling-possible mask says sampling could not happen."""

    def __init__(self, stream: str, n_cells: int, examples) -> None:
        self.stream = stream
        self.n_cells = n_cells
        self.examples = list(examples)
        super().__init__(
            f"V[{stream}] > M[{stream}] at {n_cells} cell(s); "
            f"first (species, site, interval, visit): {self.examples}"
        )
