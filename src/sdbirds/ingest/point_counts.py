#!/usr/bin/env python3
"""point_counts.py

Bird point-count surveys: canonical long table, community matrix, survey
effort and per-species detection histories.

Canonical long table columns:
    site_id, visit, species, count

A row with an empty species is an effort-only row: the point was surveyed on
that visit and nothing was detected. Those rows are what separate "surveyed,
not detected" (0) from "not surveyed" (NaN) in detection histories.

Called by:
  python -m sdbirds.ingest point-counts
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict

import numpy as np
import pandas as pd

from sdbirds.config import normalize_site_id


CANONICAL_COLUMNS = ["site_id", "visit", "species", "count"]


def _coerce_visit(v: pd.Series) -> pd.Series:
    """Numeric visits become ints (1, 2, ...); anything else stays text."""
    num = pd.to_numeric(v, errors="coerce")
    if num.notna().all() and (num % 1 == 0).all():
        return num.astype(int)
    return v.astype(str).str.strip()


def tidy_point_counts(
    df: pd.DataFrame,
    *,
    site_field: str = "site_id",
    visit_field: str = "visit",
    species_field: str = "species",
    count_field: str = "count",
) -> pd.DataFrame:
    """Map a raw survey table onto the canonical long table.

    - site ids are normalized
    - species names are stripped; empty species -> effort-only row
    - missing counts on a detection default to 1; effort-only rows get 0

    Raises:
        KeyError: On missing input columns
        ValueError: On non-numeric, negative or fractional counts, or empty site ids
    """
    missing = [c for c in (site_field, visit_field, species_field) if c not in df.columns]
    if missing:
        raise KeyError(f"Point-count table missing columns {missing}. Available: {list(df.columns)}")

    out = pd.DataFrame({
        "site_id": df[site_field].map(normalize_site_id),
        "visit": _coerce_visit(df[visit_field]),
        "species": df[species_field].astype("string").str.strip().replace("", pd.NA),
    })
    if count_field in df.columns:
        raw = df[count_field]
        out["count"] = pd.to_numeric(raw, errors="coerce")
        present = raw.notna() & raw.astype(str).str.strip().ne("")
        bad = present & out["count"].isna()
        if bad.any():
            raise ValueError(f"Non-numeric counts in point-count data: {sorted(set(raw[bad].astype(str)))[:10]}")
    else:
        out["count"] = np.nan

    if (out["site_id"] == "").any():
        raise ValueError(f"{int((out['site_id'] == '').sum())} point-count rows have no site id")

    detection = out["species"].notna()
    out.loc[detection & out["count"].isna(), "count"] = 1
    out.loc[~detection, "count"] = 0

    if (out["count"] < 0).any():
        bad = out.loc[out["count"] < 0, ["site_id", "visit", "species"]]
        raise ValueError(f"Negative counts in point-count data:\n{bad.to_string(index=False)}")
    if (out["count"] % 1 != 0).any():
        raise ValueError("Point counts must be whole numbers")

    out["count"] = out["count"].astype(int)
    return out[CANONICAL_COLUMNS].reset_index(drop=True)


def load_point_counts(path: Path, **fields: str) -> pd.DataFrame:
    """Read a point-count CSV into the canonical long table."""
    if not path.exists():
        raise SystemExit(f"Point-count CSV not found: {path}")
    return tidy_point_counts(pd.read_csv(path), **fields)


# -----------------------------------------------------------------------------
# Matrices
# -----------------------------------------------------------------------------

def community_matrix(counts: pd.DataFrame, how: str = "max") -> pd.DataFrame:
    """Site x species abundance matrix.

    how="max": per species, the largest visit total (standard point-count
               abundance index; avoids double counting across visits)
    how="sum": per species, the total over all visits

    Sites that were surveyed but had no detections are all-zero rows.
    """
    if how not in ("max", "sum"):
        raise ValueError(f"how must be 'max' or 'sum', got {how!r}")

    sites = sorted(counts["site_id"].unique())
    det = counts[counts["species"].notna() & (counts["count"] > 0)]

    per_visit = det.groupby(["site_id", "species", "visit"], as_index=False)["count"].sum()
    agg = per_visit.groupby(["site_id", "species"])["count"].agg(how)

    m = agg.unstack("species", fill_value=0) if not agg.empty else pd.DataFrame(index=pd.Index([], name="site_id"))
    m = m.reindex(index=sites, fill_value=0).fillna(0).astype(int)
    m = m.reindex(columns=sorted(m.columns))
    m.index.name = "site_id"
    m.columns.name = "species"
    return m


def survey_effort(counts: pd.DataFrame) -> pd.DataFrame:
    """Site x visit boolean matrix: True where the point was surveyed."""
    pairs = counts[["site_id", "visit"]].drop_duplicates()
    effort = pd.crosstab(pairs["site_id"], pairs["visit"]) > 0
    effort = effort.reindex(columns=sorted(effort.columns))
    effort.columns.name = "visit"
    return effort


def detection_history(counts: pd.DataFrame, species: str) -> pd.DataFrame:
    """Site x visit detection history for one species.

    1.0 detected, 0.0 surveyed but not detected, NaN not surveyed.
    """
    effort = survey_effort(counts)
    hist = pd.DataFrame(
        np.where(effort.to_numpy(), 0.0, np.nan),
        index=effort.index,
        columns=effort.columns,
    )

    det = counts[counts["species"].eq(species).fillna(False).astype(bool) & (counts["count"] > 0)]
    if det.empty:
        print(f"  - warning: species '{species}' never detected; history is all zeros")
    for site_id, visit in det[["site_id", "visit"]].drop_duplicates().itertuples(index=False):
        hist.loc[site_id, visit] = 1.0
    return hist


# -----------------------------------------------------------------------------
# Core function (called by sdbirds.ingest)
# -----------------------------------------------------------------------------

def ingest_point_counts(
    *,
    pc_cfg: Dict[str, Any],
    out_path: Path,
    overwrite: bool = False,
    dry_run: bool = False,
) -> int:
    """Read the raw point-count CSV and write the canonical long table."""
    src = pc_cfg.get("path")
    if not src:
        raise SystemExit("sources.yaml point_counts block missing 'path'")
    fields = pc_cfg.get("fields") if isinstance(pc_cfg.get("fields"), dict) else {}

    if out_path.exists() and not overwrite:
        print(f"[SKIP] {out_path}")
        return 0

    print(f"[BIRDS] {src} -> {out_path}")
    if dry_run:
        return 0

    counts = load_point_counts(
        Path(src),
        site_field=fields.get("site", "site_id"),
        visit_field=fields.get("visit", "visit"),
        species_field=fields.get("species", "species"),
        count_field=fields.get("count", "count"),
    )

    out_path.parent.mkdir(parents=True, exist_ok=True)
    counts.to_parquet(out_path, index=False)

    n_det = int(counts["species"].notna().sum())
    print(f"[BIRDS] {counts['site_id'].nunique()} sites, "
          f"{counts[['site_id', 'visit']].drop_duplicates().shape[0]} surveys, "
          f"{n_det} detection rows, {counts['species'].nunique()} species")
    return 0
