#!/usr/bin/env python3
"""sdbirds.geo

Geospatial processing CLI for sdbirds.

This is one of several sdbirds subsystem CLIs:
- sdbirds.registry → survey-site definition and buffers
- sdbirds.ingest   → i-Tree sectors, bird point counts, MODIS time series
- sdbirds.geo      → zonal statistics over buffered sites (this file)
- sdbirds.features → site table join and urban-suburban gradient
- sdbirds.model    → diversity regression and occupancy models

sdbirds.geo handles raster operations on *already-prepared* inputs:
- Land-cover class fractions per site buffer
- Continuous raster summaries per site buffer

It does NOT define sites (that's sdbirds.registry).

Examples:
  # Land-cover fractions in the 250 m buffers (raster + classes from sources.yaml)
  python -m sdbirds.geo landcover --buffer 250

  # Any continuous raster
  python -m sdbirds.geo zonal-stats --raster data/raw/lst/lst_2020.tif --buffer 250 --prefix lst_
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import List, Optional

from sdbirds.config import (
    load_yaml,
    source_config,
    DEFAULT_SOURCES_YAML,
    DEFAULT_SITES_GPKG,
    DEFAULT_TABLES_DIR,
)


# -----------------------------------------------------------------------------
# CLI structure
# -----------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for sdbirds.geo."""
    ap = argparse.ArgumentParser(
        prog="sdbirds.geo",
        description="Geospatial processing for sdbirds (zonal statistics)",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Subsystem CLIs:
  python -m sdbirds.registry  # Survey sites
  python -m sdbirds.ingest    # i-Tree, point counts, MODIS
  python -m sdbirds.geo       # Zonal statistics (this)
  python -m sdbirds.features  # Site table + gradient
  python -m sdbirds.model     # Regression + occupancy
        """,
    )

    # --- Global args ---
    ap.add_argument(
        "--sources-yaml",
        type=Path,
        default=DEFAULT_SOURCES_YAML,
        help=f"Path to sources.yaml (default: {DEFAULT_SOURCES_YAML})",
    )
    ap.add_argument(
        "--sites-gpkg",
        type=Path,
        default=DEFAULT_SITES_GPKG,
        help=f"Registry GeoPackage (default: {DEFAULT_SITES_GPKG})",
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

    # --- landcover ---
    lc = sub.add_parser(
        "landcover",
        help="Land-cover class fractions per site buffer",
        description="""
Compute the fraction of each land-cover class inside every site buffer.

Inputs:
- Land-cover raster and class mapping (sources.yaml -> landcover)
- Buffer layer from sdbirds.registry

Outputs:
- data/interim/tables/landcover_<r>m.parquet
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    lc.add_argument("--buffer", type=float, default=250, help="Buffer radius in metres (default: 250)")
    lc.add_argument("--raster", type=Path, default=None, help="Override raster path from sources.yaml")
    lc.add_argument("--out", type=Path, default=None, help="Output parquet")

    # --- zonal-stats ---
    zonal = sub.add_parser(
        "zonal-stats",
        help="Continuous raster summary per site buffer",
        description="""
Compute summary statistics of a continuous raster for each site buffer.

Outputs:
- data/interim/tables/zonal_<prefix><r>m.parquet
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    zonal.add_argument("--raster", type=Path, required=True, help="Input raster path")
    zonal.add_argument("--buffer", type=float, default=250, help="Buffer radius in metres (default: 250)")
    zonal.add_argument("--prefix", default="", help="Column prefix (e.g. lst_)")
    zonal.add_argument("--stats", nargs="+", default=["mean", "std", "min", "max", "count"],
                       help="Statistics to compute (default: mean std min max count)")
    zonal.add_argument("--out", type=Path, default=None, help="Output parquet")

    return ap


# -----------------------------------------------------------------------------
# Command handlers
# -----------------------------------------------------------------------------

def _load_zones(args: argparse.Namespace):
    if not args.sites_gpkg.exists():
        raise SystemExit(f"Sites GeoPackage not found: {args.sites_gpkg} (run: python -m sdbirds.registry prep-sites)")

    import geopandas as gpd
    from sdbirds.registry.prep_sites import buffer_layer_names

    layer = buffer_layer_names([args.buffer])[0]
    try:
        return gpd.read_file(args.sites_gpkg, layer=layer)
    except ValueError as e:
        raise SystemExit(f"Buffer layer {layer} not found in {args.sites_gpkg}: {e}") from e


def _handle_landcover(args: argparse.Namespace) -> int:
    """Handle the landcover subcommand."""
    cfg = source_config(load_yaml(args.sources_yaml), "landcover")
    raster = args.raster or Path(cfg.get("path", ""))
    out = args.out or DEFAULT_TABLES_DIR / f"landcover_{int(args.buffer)}m.parquet"

    if out.exists() and not args.overwrite:
        print(f"[SKIP] {out}")
        return 0

    if args.dry_run:
        print("[dry-run] Would compute land-cover fractions:")
        print(f"  Raster: {raster}")
        print(f"  Buffer: {args.buffer} m")
        print(f"  Output: {out}")
        return 0

    zones = _load_zones(args)

    from sdbirds.geo.zonal_stats import landcover_fractions, write_zonal_table

    df = landcover_fractions(raster, zones, cfg)
    write_zonal_table(df, out, label=f"landcover {args.buffer:g} m")
    return 0


def _handle_zonal_stats(args: argparse.Namespace) -> int:
    """Handle the zonal-stats subcommand."""
    out = args.out or DEFAULT_TABLES_DIR / f"zonal_{args.prefix}{int(args.buffer)}m.parquet"

    if out.exists() and not args.overwrite:
        print(f"[SKIP] {out}")
        return 0

    if args.dry_run:
        print("[dry-run] Would compute zonal statistics:")
        print(f"  Raster: {args.raster}")
        print(f"  Buffer: {args.buffer} m")
        print(f"  Stats: {' '.join(args.stats)}")
        print(f"  Output: {out}")
        return 0

    zones = _load_zones(args)

    from sdbirds.geo.zonal_stats import zonal_stats, write_zonal_table

    df = zonal_stats(args.raster, zones, prefix=args.prefix, stats=args.stats)
    write_zonal_table(df, out, label=f"{args.raster.name} {args.buffer:g} m")
    return 0


# -----------------------------------------------------------------------------
# Main entrypoint
# -----------------------------------------------------------------------------

def main(argv: Optional[List[str]] = None) -> int:
    """Main entrypoint for sdbirds.geo CLI."""
    ap = build_parser()
    args = ap.parse_args(argv)

    handlers = {
        "landcover": _handle_landcover,
        "zonal-stats": _handle_zonal_stats,
    }

    handler = handlers.get(args.command)
    if handler is None:
        raise SystemExit(f"Unknown command: {args.command}")

    return handler(args)


if __name__ == "__main__":
    raise SystemExit(main())
