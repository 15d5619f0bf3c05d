#!/usr/bin/env python3
"""itree.py

Read i-Tree Eco report exports for the Santo Domingo sectors and stack them
into one table per report, then summarize trees per plot.

Each sector (CN, GA, SC, ZC) is its own i-Tree project, exported as a folder
of CSV reports. A report is selected from a sector's file list by a name
pattern (e.g. "Trees", "Plots"); the same report from every sector is then
row-bound with a `SectorID` column.

Called by:
  python -m sdbirds.ingest itree

Notes:
- `Crew` is text in some sectors and numeric in others; it is always read
  back as string so the sectors stack without dtype conflicts.
- Plot ids are only unique within a sector, so the site key is built from
  both: `<SectorID>-<PlotId>`.
"""

from __future__ import annotations

import math
import re
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

import pandas as pd

from sdbirds.config import normalize_site_id


# -----------------------------------------------------------------------------
# Reading sector reports
# -----------------------------------------------------------------------------

def itree_read_csv(
    csv_files: Sequence[Path],
    data_file_pattern: str,
    sector_id: str,
) -> pd.DataFrame:
    """Read the report(s) matching data_file_pattern from one sector.

    Args:
        csv_files: Full paths of the sector's exported CSV files
        data_file_pattern: Regex searched in each file name to pick the report
        sector_id: Sector label added as `SectorID` (e.g. "CN")

    Raises:
        SystemExit: When no file in the sector matches the pattern.
    """
    rx = re.compile(data_file_pattern)
    picked = [Path(p) for p in csv_files if rx.search(Path(p).name)]
    if not picked:
        raise SystemExit(
            f"No i-Tree file matching '{data_file_pattern}' for sector {sector_id}.\n"
            f"Files searched: {[str(p) for p in csv_files]}"
        )

    frames = [pd.read_csv(p) for p in picked]
    df = pd.concat(frames, ignore_index=True) if len(frames) > 1 else frames[0]
    df["SectorID"] = sector_id
    if "Crew" in df.columns:
        df["Crew"] = df["Crew"].map(lambda x: x if pd.isna(x) else str(x))
    return df


def itree_sector_combine(
    sector_files: Mapping[str, Sequence[Path]],
    data_file_pattern: str,
) -> pd.DataFrame:
    """Read one report from every sector and stack them.

    Columns are unioned across sectors; a column missing in a sector is NaN
    for that sector's rows.
    """
    if not sector_files:
        raise SystemExit("No i-Tree sectors configured.")
    frames = [
        itree_read_csv(files, data_file_pattern, sector_id)
        for sector_id, files in sector_files.items()
    ]
    return pd.concat(frames, ignore_index=True, sort=False)


def sector_files_from_config(itree_cfg: Dict[str, Any]) -> Dict[str, List[Path]]:
    """Expand `sources.itree.sectors` globs into sorted file lists."""
    sectors = itree_cfg.get("sectors")
    if not isinstance(sectors, dict) or not sectors:
        raise SystemExit("sources.yaml itree block needs a 'sectors:' mapping of sector -> glob")

    out: Dict[str, List[Path]] = {}
    for sector_id, pattern in sectors.items():
        files = sorted(Path().glob(str(pattern)))
        if not files:
            raise SystemExit(f"No i-Tree exports found for sector {sector_id}: {pattern}")
        out[str(sector_id)] = files
    return out


# -----------------------------------------------------------------------------
# Plot summaries
# -----------------------------------------------------------------------------

def itree_site_id(sector: Any, plot: Any) -> str:
    """Site key for an i-Tree plot: sector + plot id ("CN", 3 -> "CN-3")."""
    p = plot
    if isinstance(p, float) and not math.isnan(p) and p.is_integer():
        p = int(p)
    return normalize_site_id(f"{sector}-{p}")


def _basal_area_m2(dbh_cm: pd.Series) -> pd.Series:
    return math.pi * (dbh_cm / 200.0) ** 2


def summarize_itree_plots(
    trees: pd.DataFrame,
    *,
    plot_field: str = "PlotId",
    species_field: str = "Species",
    dbh_field: str = "DBH",
    plots: Optional[pd.DataFrame] = None,
    cover_field: str = "Percent Tree Cover",
) -> pd.DataFrame:
    """Summarize the stacked tree report to one row per plot.

    Returns columns:
        site_id, SectorID, plot, n_trees, tree_richness, mean_dbh_cm,
        basal_area_m2, [tree_cover_pct]

    Plots present in the plot table but without trees get zero counts and
    NaN mean DBH. Plots with trees but no plot-table row are kept with NaN
    tree cover and reported.
    """
    for c in (plot_field, species_field, dbh_field, "SectorID"):
        if c not in trees.columns:
            raise KeyError(f"i-Tree tree table missing column '{c}'. Available: {list(trees.columns)}")

    t = trees[["SectorID", plot_field, species_field, dbh_field]].copy()
    t = t[t[plot_field].notna()]
    t[dbh_field] = pd.to_numeric(t[dbh_field], errors="coerce")
    t["_ba"] = _basal_area_m2(t[dbh_field])
    t[species_field] = t[species_field].astype("string").str.strip()

    g = t.groupby(["SectorID", plot_field], sort=True)
    out = pd.DataFrame({
        "n_trees": g.size(),
        "tree_richness": g[species_field].nunique(),
        "mean_dbh_cm": g[dbh_field].mean(),
        "basal_area_m2": g["_ba"].sum(),
    }).reset_index()

    if plots is not None:
        for c in (plot_field, "SectorID"):
            if c not in plots.columns:
                raise KeyError(f"i-Tree plot table missing column '{c}'. Available: {list(plots.columns)}")
        keep = ["SectorID", plot_field] + ([cover_field] if cover_field in plots.columns else [])
        p = plots[keep].drop_duplicates(["SectorID", plot_field])
        out = p.merge(out, on=["SectorID", plot_field], how="outer", indicator=True)
        orphans = out[out["_merge"] == "right_only"]
        if not orphans.empty:
            print(f"  - warning: {int(orphans['n_trees'].sum())} trees on {len(orphans)} plots missing "
                  f"from the plot table (kept, no tree cover): "
                  f"{[itree_site_id(s, q) for s, q in zip(orphans['SectorID'], orphans[plot_field])][:10]}")
        out = out.drop(columns="_merge")
        out["n_trees"] = out["n_trees"].fillna(0).astype(int)
        out["tree_richness"] = out["tree_richness"].fillna(0).astype(int)
        out["basal_area_m2"] = out["basal_area_m2"].fillna(0.0)
        if cover_field in out.columns:
            out = out.rename(columns={cover_field: "tree_cover_pct"})
            out["tree_cover_pct"] = pd.to_numeric(out["tree_cover_pct"], errors="coerce")
        else:
            print(f"  - warning: plot table has no '{cover_field}' column; tree_cover_pct omitted")

    out = out.rename(columns={plot_field: "plot"})
    out.insert(0, "site_id", [itree_site_id(s, p) for s, p in zip(out["SectorID"], out["plot"])])

    dupes = out["site_id"].duplicated()
    if dupes.any():
        raise ValueError(f"Duplicate i-Tree site ids: {sorted(out.loc[dupes, 'site_id'].unique())}")

    out["mean_dbh_cm"] = out["mean_dbh_cm"].astype(float)
    out["basal_area_m2"] = out["basal_area_m2"].astype(float)
    return out.reset_index(drop=True)


# -----------------------------------------------------------------------------
# Core function (called by sdbirds.ingest)
# -----------------------------------------------------------------------------

def ingest_itree(
    *,
    itree_cfg: Dict[str, Any],
    out_path: Path,
    overwrite: bool = False,
    dry_run: bool = False,
) -> int:
    """Stack the i-Tree tree/plot reports across sectors and write the plot summary."""
    fields = itree_cfg.get("fields") if isinstance(itree_cfg.get("fields"), dict) else {}
    trees_pattern = str(itree_cfg.get("trees_pattern", "Trees"))
    plots_pattern = itree_cfg.get("plots_pattern")

    if out_path.exists() and not overwrite:
        print(f"[SKIP] {out_path}")
        return 0

    if dry_run:
        sectors = itree_cfg.get("sectors") if isinstance(itree_cfg.get("sectors"), dict) else {}
        print(f"[dry-run] Would stack i-Tree reports from {len(sectors)} sectors:")
        for k, v in sectors.items():
            print(f"  - {k}: {v}")
        print(f"  - trees pattern: {trees_pattern}")
        if plots_pattern:
            print(f"  - plots pattern: {plots_pattern}")
        print(f"  - out: {out_path}")
        return 0

    sector_files = sector_files_from_config(itree_cfg)
    print(f"[ITREE] sectors: {', '.join(f'{k} ({len(v)} files)' for k, v in sector_files.items())}")
    print(f"  - trees pattern: {trees_pattern}")
    if plots_pattern:
        print(f"  - plots pattern: {plots_pattern}")
    print(f"  - out: {out_path}")

    trees = itree_sector_combine(sector_files, trees_pattern)
    plots = itree_sector_combine(sector_files, str(plots_pattern)) if plots_pattern else None

    summary = summarize_itree_plots(
        trees,
        plot_field=fields.get("plot", "PlotId"),
        species_field=fields.get("species", "Species"),
        dbh_field=fields.get("dbh", "DBH"),
        plots=plots,
        cover_field=fields.get("cover", "Percent Tree Cover"),
    )

    out_path.parent.mkdir(parents=True, exist_ok=True)
    summary.to_parquet(out_path, index=False)

    print(f"[ITREE] {len(trees)} trees across {len(summary)} plots -> {out_path}")
    for sector, n in summary.groupby("SectorID")["n_trees"].sum().items():
        print(f"  - {sector}: {int(n)} trees")
    return 0
