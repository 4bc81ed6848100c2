#!/usr/bin/env python3
"""occprep.ranges

Species range CLI for occprep.

This is one of the occprep subsystem CLIs:
- occprep.ranges → species range inference (this file)
- occprep.prep   → detection/mask tensor bundle

Range inference is the slow part of a run (one hull and one grid
intersection per species), and it does not depend on the study window.
Compute it once here, then hand the parquet to `occprep.prep build
--ranges-parquet` for every rerun.

Outputs:
- data/interim/tables/species_ranges.parquet → species, site_id, in_range, degenerate

Examples:
  # Ranges for every species in the corpus
  python -m occprep.ranges compute \
    --points data/raw/occurrence_data/all_records.csv \
    --sites data/interim/vectors/sites.gpkg

  # Only some species
  python -m occprep.ranges compute --points ... --sites ... --species impatiens affinis
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import List, Optional

from occprep.config import DEFAULT_CONFIG_YAML, load_config
from occprep.errors import OccPrepError


DEFAULT_RANGES_PARQUET = Path("data/interim/tables/species_ranges.parquet")


# -----------------------------------------------------------------------------
# CLI structure
# -----------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for occprep.ranges."""
    ap = argparse.ArgumentParser(
        prog="occprep.ranges",
        description="Species range inference for occprep",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Subsystem CLIs:
  python -m occprep.ranges  # Species ranges (this)
  python -m occprep.prep    # Detection / mask tensors
        """,
    )

    # --- Global args ---
    ap.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG_YAML,
        help=f"Path to study design YAML (default: {DEFAULT_CONFIG_YAML})",
    )
    ap.add_argument(
        "--dry-run",
        action="store_true",
        help="Print planned actions without writing files",
    )
    ap.add_argument(
        "--overwrite",
        action="store_true",
        help="Overwrite existing output files",
    )

    sub = ap.add_subparsers(dest="command", required=True)

    # --- compute ---
    comp = sub.add_parser(
        "compute",
        help="Compute convex-hull species ranges against the site grid",
        description="""
Compute a boolean species x site range table.

This command:
1. Reads the range corpus (historical occurrence points)
2. Filters by coordinate uncertainty, year and exclusion rules (config 'ranges:')
3. Takes each species' convex hull in an equal-area CRS
4. Marks every site whose polygon intersects the hull
5. Writes the table to parquet
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    comp.add_argument("--points", required=True, type=Path, help="Range corpus (.csv/.tsv/.parquet)")
    comp.add_argument("--sites", required=True, type=Path, help="Site grid (GeoPackage or similar)")
    comp.add_argument("--layer", default=None, help="Layer name in the site file")
    comp.add_argument(
        "--site-id-field",
        default=None,
        help="Site id column (auto-detected if not specified)",
    )
    comp.add_argument("--species", nargs="+", default=None, help="Species to compute (default: all in corpus)")
    comp.add_argument(
        "--out",
        type=Path,
        default=DEFAULT_RANGES_PARQUET,
        help=f"Output parquet (default: {DEFAULT_RANGES_PARQUET})",
    )

    return ap


# -----------------------------------------------------------------------------
# Command handlers
# -----------------------------------------------------------------------------

def _handle_compute(args: argparse.Namespace) -> int:
    """Handle the compute subcommand."""
    config = load_config(args.config)

    if args.out.exists() and not args.overwrite and not args.dry_run:
        print(f"[SKIP] {args.out} exists (use --overwrite)")
        return 0

    if args.dry_run:
        print("[dry-run] Would compute species ranges:")
        print(f"  Range corpus: {args.points}")
        print(f"  Sites: {args.sites}")
        print(f"  CRS: {config.ranges.crs}")
        print(f"  Max coordinate uncertainty (m): {config.ranges.max_coordinate_uncertainty_m}")
        print(f"  Exclusion rules: {len(config.ranges.exclusions)}")
        print(f"  Points after year: {config.design.min_year_for_range_inference}")
        print(f"  Output: {args.out}")
        return 0

    # Lazy imports: keeps CLI startup fast, avoids loading geopandas until needed
    from occprep.ranges.sites import load_sites
    from occprep.ranges.species_ranges import compute_species_ranges, write_range_table
    from occprep.records.schema import SPECIES_COL
    from occprep.report import PrepReport
    from occprep.tables import read_table

    points = read_table(args.points)
    sites = load_sites(args.sites, id_field=args.site_id_field, layer=args.layer)

    if SPECIES_COL not in points.columns:
        raise SystemExit(f"Range corpus has no '{SPECIES_COL}' column: {args.points}")
    species = args.species or sorted(points[SPECIES_COL].dropna().astype(str).unique())

    report = PrepReport()
    ranges = compute_species_ranges(
        points,
        sites,
        species,
        config.ranges,
        min_year=config.design.min_year_for_range_inference,
        report=report,
    )
    write_range_table(ranges, args.out, degenerate=report.degenerate_ranges)

    print(f"[ranges] Wrote {len(ranges)} species x {len(sites)} sites -> {args.out}")
    in_range_counts = ranges.sum(axis=1)
    for sp, n in in_range_counts.items():
        flag = " (degenerate)" if sp in report.degenerate_ranges else ""
        print(f"  - {sp}: {int(n)} site(s) in range{flag}")
    return 0


# -----------------------------------------------------------------------------
# Main entrypoint
# -----------------------------------------------------------------------------

def main(argv: Optional[List[str]] = None) -> int:
    """Main entrypoint for occprep.ranges CLI."""
    ap = build_parser()
    args = ap.parse_args(argv)

    handlers = {
        "compute": _handle_compute,
    }

    handler = handlers.get(args.command)
    if handler is None:
        raise SystemExit(f"Unknown command: {args.command}")

    try:
        return handler(args)
    except OccPrepError as e:
        raise SystemExit(f"[ranges] {type(e).__name__}: {e}") from e


if __name__ == "__main__":
    raise SystemExit(main())
