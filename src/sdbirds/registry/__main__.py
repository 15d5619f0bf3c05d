#!/usr/bin/env python3
"""sdbirds.registry

Survey-site definition CLI for sdbirds.

This is one of several sdbirds subsystem CLIs:
- sdbirds.registry → survey-site definition and buffers (this file)
- sdbirds.ingest   → i-Tree sectors, bird point counts, MODIS time series
- sdbirds.geo      → zonal statistics over buffered sites
- sdbirds.features → site table join and urban-suburban gradient
- sdbirds.model    → diversity regression and occupancy models

sdbirds.registry is the source of truth for survey sites. Every other
subsystem joins on the `site_id` values it writes.

Outputs:
- data/interim/vectors/sites.gpkg
    layer `sites`                 → survey points
    layer `sites_buffer_<r>m`     → one buffer layer per radius

Examples:
  python -m sdbirds.registry prep-sites
  python -m sdbirds.registry prep-sites --sites-csv data/raw/sites/survey_points.csv --buffers 100 250
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import List, Optional

from sdbirds.config import (
    load_yaml,
    DEFAULT_SITES_YAML,
    DEFAULT_SITES_GPKG,
)


# -----------------------------------------------------------------------------
# CLI structure
# -----------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for sdbirds.registry."""
    ap = argparse.ArgumentParser(
        prog="sdbirds.registry",
        description="Survey-site definition for sdbirds (source of truth for site ids)",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Subsystem CLIs:
  python -m sdbirds.registry  # Survey sites (this)
  python -m sdbirds.ingest    # i-Tree, point counts, MODIS
  python -m sdbirds.geo       # Zonal statistics
  python -m sdbirds.features  # Site table + gradient
  python -m sdbirds.model     # Regression + occupancy
        """,
    )

    # --- Global args ---
    ap.add_argument(
        "--sites-yaml",
        type=Path,
        default=DEFAULT_SITES_YAML,
        help=f"Path to sites YAML (default: {DEFAULT_SITES_YAML})",
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

    # --- Subcommands ---
    sub = ap.add_subparsers(dest="command", required=True)

    # --- prep-sites ---
    prep = sub.add_parser(
        "prep-sites",
        help="Build site points and buffer layers from the survey CSV",
        description="""
Process the survey-point CSV into canonical registry outputs.

This command:
1. Reads the survey points (CSV path and column names from sites YAML)
2. Normalizes site ids and rejects duplicates
3. Drops points with invalid coordinates (listed)
4. Buffers each point in a metric CRS, one layer per radius
5. Writes the GeoPackage
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    prep.add_argument(
        "--sites-csv",
        type=Path,
        default=None,
        help="Survey-point CSV (default: sites_csv from sites YAML)",
    )
    prep.add_argument(
        "--out-gpkg",
        type=Path,
        default=DEFAULT_SITES_GPKG,
        help=f"Output GeoPackage path (default: {DEFAULT_SITES_GPKG})",
    )
    prep.add_argument(
        "--buffers",
        nargs="+",
        type=float,
        default=None,
        help="Buffer radii in metres (default: buffers_m from sites YAML)",
    )
    prep.add_argument(
        "--metric-crs",
        default=None,
        help="Projected CRS for buffering (default: crs.metric from sites YAML, else EPSG:32619)",
    )

    return ap


# -----------------------------------------------------------------------------
# Command handlers
# -----------------------------------------------------------------------------

def _handle_prep_sites(args: argparse.Namespace) -> int:
    """Handle the prep-sites subcommand."""
    sites_yaml = load_yaml(args.sites_yaml)

    sites_csv = args.sites_csv or sites_yaml.get("sites_csv")
    if not sites_csv:
        raise SystemExit("No --sites-csv given and sites YAML has no sites_csv")
    sites_csv = Path(sites_csv)

    crs_cfg = sites_yaml.get("crs") if isinstance(sites_yaml.get("crs"), dict) else {}
    metric_crs = args.metric_crs or crs_cfg.get("metric", "EPSG:32619")
    src_crs = crs_cfg.get("source", "EPSG:4326")
    radii = args.buffers or sites_yaml.get("buffers_m") or [250]
    cols = sites_yaml.get("columns") if isinstance(sites_yaml.get("columns"), dict) else {}

    if args.out_gpkg.exists() and not args.overwrite:
        print(f"[SKIP] {args.out_gpkg} exists (use --overwrite)")
        return 0

    if args.dry_run:
        print("[dry-run] Would prepare survey sites:")
        print(f"  Input CSV: {sites_csv}")
        print(f"  Output GeoPackage: {args.out_gpkg}")
        print(f"  CRS: {src_crs} -> {metric_crs}")
        print(f"  Buffers (m): {', '.join(str(r) for r in radii)}")
        return 0

    if args.out_gpkg.exists():
        args.out_gpkg.unlink()

    # Lazy import to keep CLI startup fast
    from sdbirds.registry.prep_sites import prep_sites

    prep_sites(
        sites_csv,
        args.out_gpkg,
        id_field=cols.get("id", "site_id"),
        lon_field=cols.get("lon", "lon"),
        lat_field=cols.get("lat", "lat"),
        sector_field=cols.get("sector", "sector"),
        src_crs=src_crs,
        metric_crs=metric_crs,
        buffer_radii_m=radii,
    )
    return 0


# -----------------------------------------------------------------------------
# Main entrypoint
# -----------------------------------------------------------------------------

def main(argv: Optional[List[str]] = None) -> int:
    """Main entrypoint for sdbirds.registry CLI."""
    ap = build_parser()
    args = ap.parse_args(argv)

    handlers = {
        "prep-sites": _handle_prep_sites,
    }

    handler = handlers.get(args.command)
    if handler is None:
        raise SystemExit(f"Unknown command: {args.command}")

    return handler(args)


if __name__ == "__main__":
    raise SystemExit(main())
