#!/usr/bin/env python3
"""build_features.py

*how the separate tables become one row per site*

Joins every per-site table (bird diversity, i-Tree plot summaries, land-cover
fractions, MODIS summaries, zonal stats) on `site_id`.

- Join keys must be unique within each table; duplicates are an error, not
  something to aggregate silently.
- Sites missing from a table are reported per table.
- A column present in more than one table keeps its first occurrence and the
  later ones are suffixed with `__<table name>`.
"""

from __future__ import annotations

from typing import Dict, List, Mapping

import pandas as pd


def build_site_table(
    tables: Mapping[str, pd.DataFrame],
    *,
    how: str = "inner",
    key: str = "site_id",
) -> pd.DataFrame:
    """Merge named per-site tables on `key`, in the given order."""
    if not tables:
        raise ValueError("No tables to join")
    if how not in ("inner", "left", "outer"):
        raise ValueError(f"how must be inner, left or outer; got {how!r}")

    for name, df in tables.items():
        if key not in df.columns:
            raise KeyError(f"Table '{name}' has no '{key}' column")
        dupes = df[key][df[key].duplicated()].unique().tolist()
        if dupes:
            raise ValueError(f"Table '{name}' has duplicate {key} values: {sorted(map(str, dupes))[:10]}")

    all_ids = set()
    for df in tables.values():
        all_ids |= set(df[key])

    out = None
    seen: List[str] = [key]
    for name, df in tables.items():
        missing = all_ids - set(df[key])
        if missing:
            print(f"[JOIN] {name}: {len(missing)} sites missing ({sorted(map(str, missing))[:5]}...)")

        renames: Dict[str, str] = {}
        for c in df.columns:
            if c != key and c in seen:
                renames[c] = f"{c}__{name}"
        part = df.rename(columns=renames)
        seen.extend(c for c in part.columns if c != key)

        out = part if out is None else out.merge(part, on=key, how=how)

    out = out.sort_values(key).reset_index(drop=True)
    print(f"[JOIN] {len(tables)} tables -> {len(out)} sites x {len(out.columns) - 1} columns ({how})")
    return out
