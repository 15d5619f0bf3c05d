#!/usr/bin/env python3
"""sdbirds.ingest

Data ingestion CLI for sdbirds.

This is one of several sdbirds subsystem CLIs:
- sdbirds.registry → survey-site definition and buffers
- sdbirds.ingest   → data ingestion (this file)
- sdbirds.geo      → zonal statistics over buffered sites
- sdbirds.features → site table join and urban-suburban gradient
- sdbirds.model    → diversity regression and occupancy models

Design goals:
- One entrypoint for ingestion only
- One level of subcommands (dataset names)
- Config-driven defaults via YAML
- Optional verify mode that checks local inputs exist

Examples:
  # i-Tree sector reports -> plot summary
  python -m sdbirds.ingest itree

  # Bird point counts -> canonical long table
  python -m sdbirds.ingest point-counts

  # MODIS NDVI + LST per site (ORNL DAAC web service)
  python -m sdbirds.ingest modis --bands ndvi lst_day --start 2019-01-01 --end 2021-12-31

  # Verify that local inputs exist
  python -m sdbirds.ingest verify --source all
"""

from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import Any, Dict, List, Optional

from sdbirds.config import (
    load_yaml,
    source_config,
    aoi_from_sites_yaml,
    format_bbox,
    DEFAULT_SOURCES_YAML,
    DEFAULT_SITES_YAML,
    DEFAULT_SITES_GPKG,
)


# -----------------------------
# Verify helpers (lightweight)
# -----------------------------

def _verify_source(source_id: str, sources_yaml: Dict[str, Any]) -> Dict[str, Any]:
    """Best-effort verification of local inputs.

    Rules:
    - `sectors` mapping of globs (i-Tree): every sector glob matches a file
    - `path`: the file exists
    - otherwise (remote sources like MODIS): report "no verify rule"
    """
    sources = sources_yaml.get("sources")
    if not isinstance(sources, dict) or source_id not in sources:
        return {"source": source_id, "ok": False, "reason": "unknown source"}

    cfg = sources[source_id]
    if not isinstance(cfg, dict):
        return {"source": source_id, "ok": False, "reason": "bad config block"}

    sectors = cfg.get("sectors")
    if isinstance(sectors, dict) and sectors:
        counts = {str(k): len(sorted(Path().glob(str(v)))) for k, v in sectors.items()}
        missing = [k for k, n in counts.items() if n == 0]
        result = {"source": source_id, "ok": not missing, "rule": "sectors", "count": sum(counts.values())}
        if missing:
            result["reason"] = f"no files for sectors: {', '.join(missing)}"
        return result

    path = cfg.get("path")
    if isinstance(path, str) and path.strip():
        p = Path(path)
        if not p.exists():
            return {"source": source_id, "ok": False, "rule": "path", "reason": f"missing file: {p}"}
        return {"source": source_id, "ok": True, "rule": "path", "sample": [str(p)]}

    return {"source": source_id, "ok": True, "rule": "none", "note": "no verify rule (skipped)"}


def _read_sites(gpkg: Path, layer: str):
    """Survey points (site_id, lon, lat) from the registry GeoPackage."""
    if not gpkg.exists():
        raise SystemExit(f"Sites GeoPackage not found: {gpkg} (run: python -m sdbirds.registry prep-sites)")

    import geopandas as gpd

    gdf = gpd.read_file(gpkg, layer=layer)
    if gdf.crs is not None and gdf.crs.to_epsg() != 4326:
        gdf = gdf.to_crs("EPSG:4326")
    gdf["lon"] = gdf.geometry.x
    gdf["lat"] = gdf.geometry.y
    return gdf[["site_id", "lon", "lat"]].copy()


# -----------------------------
# CLI
# -----------------------------

def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="sdbirds.ingest", description="Data ingestion for sdbirds")

    # Global args (available for all subcommands)
    ap.add_argument("--sources-yaml", type=Path, default=DEFAULT_SOURCES_YAML, help=f"Path to sources.yaml (default: {DEFAULT_SOURCES_YAML})")
    ap.add_argument("--sites-yaml", type=Path, default=DEFAULT_SITES_YAML, help=f"Path to sites YAML (default: {DEFAULT_SITES_YAML})")
    ap.add_argument("--overwrite", action="store_true", help="Ignore cache and re-download/rewrite outputs")
    ap.add_argument("--dry-run", action="store_true", help="Print planned actions without downloading/writing")
    ap.add_argument("--limit", type=int, default=None, help="Debug: only process first N items")

    sub = ap.add_subparsers(dest="command", required=True)

    # --- itree ---
    itree = sub.add_parser("itree", help="Stack i-Tree sector reports and summarize per plot")
    itree.add_argument("--out", type=Path, default=None, help="Output parquet (default from sources.yaml)")

    # --- point-counts ---
    pc = sub.add_parser("point-counts", help="Read bird point counts into the canonical long table")
    pc.add_argument("--out", type=Path, default=None, help="Output parquet (default from sources.yaml)")

    # --- modis ---
    modis = sub.add_parser("modis", help="Fetch MODIS time series per survey site")
    modis.add_argument("--bands", nargs="+", default=None, help="Band keys (default: bands_active from sources.yaml)")
    modis.add_argument("--start", default=None, help="First date YYYY-MM-DD (default from sources.yaml)")
    modis.add_argument("--end", default=None, help="Last date YYYY-MM-DD (default from sources.yaml)")
    modis.add_argument("--sites-gpkg", type=Path, default=DEFAULT_SITES_GPKG, help=f"Registry GeoPackage (default: {DEFAULT_SITES_GPKG})")
    modis.add_argument("--layer", default="sites", help="Point layer name (default: sites)")

    # --- verify ---
    ver = sub.add_parser("verify", help="Verify that required local inputs exist")
    ver.add_argument("--source", default="all", help="Source id to verify (or 'all')")
    ver.add_argument("--json", action="store_true", help="Emit JSON to stdout")

    return ap


def main(argv: Optional[List[str]] = None) -> int:
    ap = build_parser()
    args = ap.parse_args(argv)

    # Load YAMLs only once, inside main (so import doesn't have side effects)
    sources_yaml = load_yaml(args.sources_yaml)

    if args.command == "verify":
        sources = sources_yaml.get("sources")
        if not isinstance(sources, dict):
            raise SystemExit("sources.yaml must contain top-level 'sources:' mapping")

        if args.source == "all":
            results = [_verify_source(sid, sources_yaml) for sid in sorted(sources.keys())]
        else:
            results = [_verify_source(args.source, sources_yaml)]

        ok = all(r.get("ok") for r in results)
        if args.json:
            print(json.dumps({"ok": ok, "results": results}, indent=2))
        else:
            for r in results:
                status = "OK" if r.get("ok") else "MISSING"
                print(f"[{status}] {r['source']} ({r.get('rule','?')})")
                if "reason" in r:
                    print(f"  - reason: {r['reason']}")
                if "count" in r:
                    print(f"  - count: {r['count']}")
                for s in r.get("sample", []):
                    print(f"    - {s}")
            print(f"Overall: {'OK' if ok else 'NOT OK'}")
        return 0 if ok else 2

    if args.command == "itree":
        cfg = source_config(sources_yaml, "itree")
        out = args.out or Path(cfg.get("out_path", "data/interim/tables/itree_plots.parquet"))

        from sdbirds.ingest.itree import ingest_itree

        return ingest_itree(itree_cfg=cfg, out_path=out, overwrite=args.overwrite, dry_run=args.dry_run)

    if args.command == "point-counts":
        cfg = source_config(sources_yaml, "point_counts")
        out = args.out or Path(cfg.get("out_path", "data/interim/tables/point_counts.parquet"))

        from sdbirds.ingest.point_counts import ingest_point_counts

        return ingest_point_counts(pc_cfg=cfg, out_path=out, overwrite=args.overwrite, dry_run=args.dry_run)

    if args.command == "modis":
        cfg = source_config(sources_yaml, "modis")

        band_keys = args.bands
        if band_keys is None:
            active = cfg.get("bands_active")
            if not isinstance(active, list) or not active:
                raise SystemExit("No --bands provided and sources.yaml has no modis.bands_active")
            band_keys = [str(b) for b in active]

        start = args.start or cfg.get("start")
        end = args.end or cfg.get("end")
        if not start or not end:
            raise SystemExit("MODIS needs --start/--end or modis.start/modis.end in sources.yaml")

        if args.sites_yaml.exists():
            aoi = aoi_from_sites_yaml(load_yaml(args.sites_yaml))
            if aoi:
                print(f"Study area from config: {format_bbox(aoi)}")

        sites = _read_sites(args.sites_gpkg, args.layer)

        # Lazy import handler (keeps CLI import fast)
        from sdbirds.ingest.fetch_modis import fetch_modis

        return fetch_modis(
            modis_cfg=cfg,
            sites=sites,
            band_keys=band_keys,
            start=start,
            end=end,
            out_dir=Path(cfg.get("out_dir", "data/interim/tables/modis")),
            overwrite=args.overwrite,
            dry_run=args.dry_run,
            limit=args.limit,
        )

    raise SystemExit(f"Unknown command: {args.command}")


if __name__ == "__main__":
    raise SystemExit(main())
