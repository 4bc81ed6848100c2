#!/usr/bin/env python3
"""occprep.prep

Tensor bundle CLI for occprep.

This is one of the occprep subsystem CLIs:
- occprep.ranges → species range inference
- occprep.prep   → detection/mask tensor bundle (this file)

Responsibilities:
- Bin site-tagged occurrence records into intervals and visits
- Split into citizen science and museum streams
- Build V_citsci, V_museum, M_citsci, M_museum against one master index
- Check V <= M and write everything as a single bundle

Outputs:
- data/processed/occupancy_bundle.npz          → tensors, index lists, dims, covariates
- data/processed/occupancy_bundle_report.json  → dropped-record counts, degenerate ranges

Examples:
  # Full run, computing ranges on the fly
  python -m occprep.prep build \
    --records data/interim/tables/records_with_sites.parquet \
    --sites data/interim/vectors/sites.gpkg \
    --range-points data/raw/occurrence_data/all_records.csv

  # Rerun with cached ranges (see python -m occprep.ranges compute)
  python -m occprep.prep build --records ... --sites ... \
    --ranges-parquet data/interim/tables/species_ranges.parquet

  # Re-check a bundle before handing it to the model
  python -m occprep.prep verify --bundle data/processed/occupancy_bundle.npz
"""

from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import List, Optional

from occprep.config import DEFAULT_CONFIG_YAML, describe_design, load_config
from occprep.errors import OccPrepError


DEFAULT_BUNDLE_NPZ = Path("data/processed/occupancy_bundle.npz")


# -----------------------------------------------------------------------------
# CLI structure
# -----------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for occprep.prep."""
    ap = argparse.ArgumentParser(
        prog="occprep.prep",
        description="Detection and sampling-mask tensors for occupancy models",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Subsystem CLIs:
  python -m occprep.ranges  # Species ranges
  python -m occprep.prep    # Detection / mask tensors (this)
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

    # --- build ---
    build = sub.add_parser(
        "build",
        help="Build the detection/mask tensor bundle",
        description="""
Build V_citsci, V_museum, M_citsci and M_museum from site-tagged records.

Ranges come either from --range-points (computed now) or from
--ranges-parquet (cached by `python -m occprep.ranges compute`).
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    build.add_argument("--records", required=True, type=Path, help="Site-tagged occurrence records")
    build.add_argument("--sites", required=True, type=Path, help="Site grid (GeoPackage or similar)")
    build.add_argument("--layer", default=None, help="Layer name in the site file")
    build.add_argument(
        "--site-id-field",
        default=None,
        help="Site id column (auto-detected if not specified)",
    )
    src = build.add_mutually_exclusive_group(required=True)
    src.add_argument("--range-points", type=Path, help="Range corpus; ranges computed during the run")
    src.add_argument("--ranges-parquet", type=Path, help="Cached range table")
    build.add_argument(
        "--covariates",
        nargs="*",
        default=None,
        help="Site covariate columns to include (default: all numeric site columns)",
    )
    build.add_argument(
        "--out",
        type=Path,
        default=DEFAULT_BUNDLE_NPZ,
        help=f"Output bundle (default: {DEFAULT_BUNDLE_NPZ})",
    )

    # --- verify ---
    ver = sub.add_parser("verify", help="Re-validate a written bundle")
    ver.add_argument("--bundle", type=Path, default=DEFAULT_BUNDLE_NPZ, help="Bundle .npz to check")
    ver.add_argument("--json", action="store_true", help="Emit JSON to stdout")

    return ap


# -----------------------------------------------------------------------------
# Command handlers
# -----------------------------------------------------------------------------

def _handle_build(args: argparse.Namespace) -> int:
    """Handle the build subcommand."""
    config = load_config(args.config)

    if args.out.exists() and not args.overwrite and not args.dry_run:
        print(f"[SKIP] {args.out} exists (use --overwrite)")
        return 0

    if args.dry_run:
        print("[dry-run] Would build occupancy bundle:")
        print(f"  Records: {args.records}")
        print(f"  Sites: {args.sites}")
        if args.ranges_parquet:
            print(f"  Ranges (cached): {args.ranges_parquet}")
        else:
            print(f"  Range corpus: {args.range_points}")
        for line in describe_design(config.design):
            print(f"  {line}")
        print(f"  Out-of-range detections: {config.out_of_range_detections}")
        print(f"  Output: {args.out}")
        return 0

    # Lazy imports to keep CLI startup fast
    from occprep.prep.bundle_io import write_bundle
    from occprep.prep.pipeline import build_occupancy_bundle
    from occprep.ranges.sites import load_sites
    from occprep.ranges.species_ranges import read_range_table
    from occprep.tables import read_table

    records = read_table(args.records)
    sites = load_sites(args.sites, id_field=args.site_id_field, layer=args.layer)

    if args.ranges_parquet:
        ranges, degenerate = read_range_table(args.ranges_parquet)
        bundle = build_occupancy_bundle(
            records,
            sites,
            config,
            ranges=ranges,
            degenerate_ranges=degenerate,
            covariate_columns=args.covariates,
        )
    else:
        bundle = build_occupancy_bundle(
            records,
            sites,
            config,
            range_points=read_table(args.range_points),
            covariate_columns=args.covariates,
        )

    report_path = write_bundle(bundle, args.out)

    # --- Human-friendly summary ---
    dims = bundle.dims()
    print(f"[prep] Wrote bundle -> {args.out}")
    print(f"[prep] Wrote report -> {report_path}")
    print(
        f"  shape: {dims['n_species']} species x {dims['n_sites']} sites x "
        f"{dims['n_intervals']} intervals x {dims['n_visits']} visits"
    )
    print(f"  citsci detections: {int(bundle.V_citsci.sum())}")
    print(f"  museum detections: {int(bundle.V_museum.sum())}")
    for line in bundle.report.summary_lines():
        print(f"  {line}")
    return 0


def _handle_verify(args: argparse.Namespace) -> int:
    """Handle the verify subcommand."""
    from occprep.prep.bundle_io import read_bundle

    bundle = read_bundle(args.bundle)
    result = {
        "ok": True,
        "bundle": str(args.bundle),
        "dims": bundle.dims(),
        "detections": {
            "citsci": int(bundle.V_citsci.sum()),
            "museum": int(bundle.V_museum.sum()),
        },
        "covariates": sorted(bundle.site_covariates),
    }
    if args.json:
        print(json.dumps(result, indent=2))
    else:
        print(f"[OK] {args.bundle}")
        for k, v in result["dims"].items():
            print(f"  - {k}: {v}")
        print(f"  - citsci detections: {result['detections']['citsci']}")
        print(f"  - museum detections: {result['detections']['museum']}")
    return 0


# -----------------------------------------------------------------------------
# Main entrypoint
# -----------------------------------------------------------------------------

def main(argv: Optional[List[str]] = None) -> int:
    """Main entrypoint for occprep.prep CLI."""
    ap = build_parser()
    args = ap.parse_args(argv)

    handlers = {
        "build": _handle_build,
        "verify": _handle_verify,
    }

    handler = handlers.get(args.command)
    if handler is None:
        raise SystemExit(f"Unknown command: {args.command}")

    try:
        return handler(args)
    except OccPrepError as e:
        raise SystemExit(f"[prep] {type(e).__name__}: {e}") from e


if __name__ == "__main__":
    raise SystemExit(main())
