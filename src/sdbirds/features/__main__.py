#!/usr/bin/env python3
"""sdbirds.features

Site table and urban-suburban gradient CLI for sdbirds.

This is one of several sdbirds subsystem CLIs:
- sdbirds.registry → survey-site definition and buffers
- sdbirds.ingest   → i-Tree sectors, bird point counts, MODIS time series
- sdbirds.geo      → zonal statistics over buffered sites
- sdbirds.features → site table join and urban-suburban gradient (this file)
- sdbirds.model    → diversity regression and occupancy models

Outputs:
- data/processed/site_table.parquet     → one row per site, every covariate
- data/processed/site_gradient.parquet  → site table + rank_score, gradient_pc1, gradient_class
- data/processed/gradient_pca_loadings.csv

Examples:
  python -m sdbirds.features build-table
  python -m sdbirds.features gradient
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Dict, List, Optional

from sdbirds.config import (
    load_yaml,
    source_config,
    DEFAULT_SOURCES_YAML,
    DEFAULT_SITES_YAML,
    DEFAULT_TABLES_DIR,
    DEFAULT_SITE_TABLE,
    DEFAULT_GRADIENT_TABLE,
)


# -----------------------------------------------------------------------------
# CLI structure
# -----------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for sdbirds.features."""
    ap = argparse.ArgumentParser(
        prog="sdbirds.features",
        description="Site table join and urban-suburban gradient for sdbirds",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    # --- Global args ---
    ap.add_argument("--sources-yaml", type=Path, default=DEFAULT_SOURCES_YAML,
                    help=f"Path to sources.yaml (default: {DEFAULT_SOURCES_YAML})")
    ap.add_argument("--sites-yaml", type=Path, default=DEFAULT_SITES_YAML,
                    help=f"Path to sites YAML (default: {DEFAULT_SITES_YAML})")
    ap.add_argument("--dry-run", action="store_true", help="Print planned actions without writing files")
    ap.add_argument("--overwrite", action="store_true", help="Overwrite existing output files")

    sub = ap.add_subparsers(dest="command", required=True)

    # --- build-table ---
    bt = sub.add_parser(
        "build-table",
        help="Join diversity, i-Tree, land cover and MODIS tables per site",
        description="""
Join every per-site table on site_id.

Inputs (from earlier stages):
- point counts (sdbirds.ingest point-counts) -> diversity indices
- i-Tree plot summary (sdbirds.ingest itree)
- land-cover fractions (sdbirds.geo landcover)
- MODIS summaries (sdbirds.ingest modis), one per active band
- any extra parquet tables passed with --extra
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    bt.add_argument("--buffer", type=float, default=None,
                    help="Buffer radius of the land-cover table (default: gradient.buffer_m from sites YAML)")
    bt.add_argument("--how", choices=["inner", "left", "outer"], default="inner", help="Join type (default: inner)")
    bt.add_argument("--abundance", choices=["max", "sum"], default="max",
                    help="Community matrix aggregation across visits (default: max)")
    bt.add_argument("--by-season", action="store_true", help="Summarize MODIS by dry/wet season")
    bt.add_argument("--extra", nargs="*", type=Path, default=[], help="Extra per-site parquet tables")
    bt.add_argument("--out", type=Path, default=DEFAULT_SITE_TABLE, help=f"Output parquet (default: {DEFAULT_SITE_TABLE})")

    # --- gradient ---
    gr = sub.add_parser("gradient", help="Rank score + PCA urbanization gradient")
    gr.add_argument("--site-table", type=Path, default=DEFAULT_SITE_TABLE, help=f"Input (default: {DEFAULT_SITE_TABLE})")
    gr.add_argument("--out", type=Path, default=DEFAULT_GRADIENT_TABLE, help=f"Output parquet (default: {DEFAULT_GRADIENT_TABLE})")

    return ap


# -----------------------------------------------------------------------------
# Command handlers
# -----------------------------------------------------------------------------

def _read_parquet(path: Path, what: str):
    if not path.exists():
        raise SystemExit(f"{what} not found: {path}")
    import pandas as pd

    return pd.read_parquet(path)


def _handle_build_table(args: argparse.Namespace) -> int:
    """Handle the build-table subcommand."""
    sources_yaml = load_yaml(args.sources_yaml)
    sites_yaml = load_yaml(args.sites_yaml) if args.sites_yaml.exists() else {}
    gcfg = sites_yaml.get("gradient") if isinstance(sites_yaml.get("gradient"), dict) else {}
    buffer_m = args.buffer or gcfg.get("buffer_m", 250)

    pc_path = Path(source_config(sources_yaml, "point_counts").get("out_path", "data/interim/tables/point_counts.parquet"))
    itree_path = Path(source_config(sources_yaml, "itree").get("out_path", "data/interim/tables/itree_plots.parquet"))
    lc_path = DEFAULT_TABLES_DIR / f"landcover_{int(buffer_m)}m.parquet"
    modis_cfg = source_config(sources_yaml, "modis")
    modis_dir = Path(modis_cfg.get("out_dir", "data/interim/tables/modis"))
    modis_keys = [str(b) for b in modis_cfg.get("bands_active", [])]

    if args.out.exists() and not args.overwrite:
        print(f"[SKIP] {args.out}")
        return 0

    if args.dry_run:
        print("[dry-run] Would join per-site tables:")
        print(f"  Point counts: {pc_path}")
        print(f"  i-Tree plots: {itree_path}")
        print(f"  Land cover: {lc_path}")
        for k in modis_keys:
            print(f"  MODIS {k}: {modis_dir / f'modis_{k}.parquet'}")
        for p in args.extra:
            print(f"  Extra: {p}")
        print(f"  Output: {args.out}")
        return 0

    from sdbirds.features.build_features import build_site_table
    from sdbirds.ingest.fetch_modis import summarize_modis
    from sdbirds.ingest.point_counts import community_matrix
    from sdbirds.model.diversity import diversity_indices

    counts = _read_parquet(pc_path, "Point-count table")
    tables: Dict[str, object] = {
        "birds": diversity_indices(community_matrix(counts, how=args.abundance)),
        "itree": _read_parquet(itree_path, "i-Tree plot table"),
        "landcover": _read_parquet(lc_path, "Land-cover table"),
    }
    for k in modis_keys:
        raw = _read_parquet(modis_dir / f"modis_{k}.parquet", f"MODIS {k} table")
        tables[f"modis_{k}"] = summarize_modis(raw, prefix=k, by_season=args.by_season)
    for p in args.extra:
        tables[p.stem] = _read_parquet(p, "Extra table")

    site_table = build_site_table(tables, how=args.how)

    args.out.parent.mkdir(parents=True, exist_ok=True)
    site_table.to_parquet(args.out, index=False)
    print(f"Wrote site table -> {args.out}")
    return 0


def _handle_gradient(args: argparse.Namespace) -> int:
    """Handle the gradient subcommand."""
    sites_yaml = load_yaml(args.sites_yaml)
    gcfg = sites_yaml.get("gradient")
    if not isinstance(gcfg, dict):
        raise SystemExit(f"{args.sites_yaml} missing 'gradient:' block")

    if args.out.exists() and not args.overwrite:
        print(f"[SKIP] {args.out}")
        return 0

    from sdbirds.features.gradient import build_gradient, criteria_from_config

    try:
        criteria = criteria_from_config(gcfg.get("criteria") or [])
    except ValueError as e:
        raise SystemExit(f"Bad gradient config in {args.sites_yaml}: {e}") from e

    if args.dry_run:
        print("[dry-run] Would build the urbanization gradient:")
        print(f"  Site table: {args.site_table}")
        for c in criteria:
            print(f"  - {c.column} (direction {c.direction:+d}, weight {c.weight:g})")
        print(f"  Output: {args.out}")
        return 0

    site_table = _read_parquet(args.site_table, "Site table")
    try:
        result = build_gradient(
            site_table,
            criteria,
            anchor=gcfg.get("anchor"),
            n_components=int(gcfg.get("n_components", 2)),
        )
    except (KeyError, ValueError) as e:
        raise SystemExit(f"Gradient failed for {args.site_table}: {e}") from e

    args.out.parent.mkdir(parents=True, exist_ok=True)
    result["table"].to_parquet(args.out, index=False)
    loadings_csv = args.out.with_name("gradient_pca_loadings.csv")
    loadings = result["pca"].loadings.copy()
    loadings.loc["explained_variance_ratio"] = result["pca"].explained_variance_ratio
    loadings.to_csv(loadings_csv)

    counts = result["table"]["gradient_class"].value_counts().sort_index()
    print(f"Wrote gradient -> {args.out}")
    print(f"Wrote PCA loadings -> {loadings_csv}")
    print("Sites per class: " + ", ".join(f"{k}={v}" for k, v in counts.items()))
    return 0


# -----------------------------------------------------------------------------
# Main entrypoint
# -----------------------------------------------------------------------------

def main(argv: Optional[List[str]] = None) -> int:
    """Main entrypoint for sdbirds.features CLI."""
    ap = build_parser()
    args = ap.parse_args(argv)

    handlers = {
        "build-table": _handle_build_table,
        "gradient": _handle_gradient,
    }

    handler = handlers.get(args.command)
    if handler is None:
        raise SystemExit(f"Unknown command: {args.command}")

    return handler(args)


if __name__ == "__main__":
    raise SystemExit(main())
