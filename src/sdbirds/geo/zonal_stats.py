#!/usr/bin/env python3
"""zonal_stats.py

Zonal statistics over buffered survey sites.

Two modes:
- continuous rasters (LST, NDVI composites, imperviousness %) → mean, std,
  min, max, count of the valid pixels inside each buffer
- categorical rasters (land cover) → fraction of valid pixels per class

Zones are reprojected to the raster CRS; each zone is read with
rasterio.mask.mask(crop=True, filled=False) so only the pixels whose centres
fall inside the buffer count. Zones that miss the raster, or contain only
nodata, get NaN stats and count 0 (warned, not fatal).

Called by:
  python -m sdbirds.geo zonal-stats ...
  python -m sdbirds.geo landcover ...
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

import geopandas as gpd
import numpy as np
import pandas as pd
import rasterio
from rasterio.errors import WindowError
from rasterio.mask import mask
from shapely.geometry import box, mapping


CONTINUOUS_STATS = ("mean", "std", "min", "max", "count")


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------

def _valid_values(src: rasterio.io.DatasetReader, geom, nodata: Optional[float]) -> np.ndarray:
    """Valid pixel values of band 1 inside geom (1-D array, may be empty)."""
    try:
        data, _ = mask(src, [mapping(geom)], crop=True, filled=False, indexes=1)
    except (ValueError, WindowError):
        # Input shapes do not overlap raster
        return np.array([], dtype="float64")

    arr = np.ma.asarray(data)
    valid = ~np.ma.getmaskarray(arr)
    values = np.asarray(arr.data)[valid]
    if nodata is not None:
        if np.isnan(nodata):
            values = values[~np.isnan(values)]
        else:
            values = values[values != nodata]
    if np.issubdtype(values.dtype, np.floating):
        values = values[~np.isnan(values)]
    return values


def _continuous_row(values: np.ndarray, stats: Sequence[str]) -> Dict[str, float]:
    row: Dict[str, float] = {}
    n = int(values.size)
    for s in stats:
        if s == "count":
            row[s] = n
        elif n == 0:
            row[s] = np.nan
        elif s == "mean":
            row[s] = float(np.mean(values))
        elif s == "std":
            row[s] = float(np.std(values, ddof=0))
        elif s == "min":
            row[s] = float(np.min(values))
        elif s == "max":
            row[s] = float(np.max(values))
    return row


def _categorical_row(
    values: np.ndarray,
    class_map: Mapping[int, str],
    prefix: str,
) -> Dict[str, float]:
    n = int(values.size)
    row: Dict[str, float] = {}
    known = np.zeros(values.shape, dtype=bool)
    for code, name in class_map.items():
        hit = values == code
        known |= hit
        row[f"{prefix}{name}"] = float(hit.sum()) / n if n else np.nan
    row[f"{prefix}other"] = float((~known).sum()) / n if n else np.nan
    row["count"] = n
    return row


# -----------------------------------------------------------------------------
# Core function
# -----------------------------------------------------------------------------

def zonal_stats(
    raster_path: Path,
    zones: gpd.GeoDataFrame,
    *,
    id_field: str = "site_id",
    categorical: bool = False,
    class_map: Optional[Mapping[int, str]] = None,
    prefix: str = "",
    stats: Sequence[str] = CONTINUOUS_STATS,
    nodata: Optional[float] = None,
) -> pd.DataFrame:
    """Compute per-zone statistics of band 1 of a raster.

    Args:
        raster_path: GeoTIFF (or any GDAL raster)
        zones: Polygons with an id column
        id_field: Zone id column
        categorical: Class fractions instead of continuous stats
        class_map: {pixel code: class name} (categorical only)
        prefix: Prefix for output columns (e.g. "lc_", "lst_")
        stats: Subset of mean/std/min/max/count (continuous only)
        nodata: Override the raster's nodata value

    Returns:
        One row per zone, `id_field` first.
    """
    if id_field not in zones.columns:
        raise KeyError(f"Zones missing id column '{id_field}'. Available: {list(zones.columns)}")
    if zones.crs is None:
        raise ValueError("Zones have no CRS; can't align them with the raster.")
    if categorical and not class_map:
        raise ValueError("Categorical zonal stats need a class_map")
    unknown = [s for s in stats if s not in CONTINUOUS_STATS]
    if unknown:
        raise ValueError(f"Unknown stats {unknown}; choose from {list(CONTINUOUS_STATS)}")
    if not Path(raster_path).exists():
        raise SystemExit(f"Raster not found: {raster_path}")

    rows: List[Dict[str, Any]] = []
    empty: List[str] = []

    with rasterio.open(raster_path) as src:
        if src.crs is None:
            raise SystemExit(f"Raster has no CRS: {raster_path}")
        nd = src.nodata if nodata is None else nodata
        z = zones.to_crs(src.crs)
        raster_box = box(*src.bounds)

        for zid, geom in zip(z[id_field], z.geometry):
            if geom is None or geom.is_empty or not geom.intersects(raster_box):
                values = np.array([], dtype="float64")
            else:
                values = _valid_values(src, geom, nd)

            if categorical:
                row = _categorical_row(values, class_map, prefix)  # type: ignore[arg-type]
                row = {k if k != "count" else f"{prefix}count": v for k, v in row.items()}
            else:
                row = {f"{prefix}{k}": v for k, v in _continuous_row(values, stats).items()}
            if values.size == 0:
                empty.append(str(zid))
            rows.append({id_field: zid, **row})

    if empty:
        print(f"  - warning: {len(empty)} zones with no valid pixels: {empty[:10]}")

    return pd.DataFrame(rows)


def landcover_fractions(
    raster_path: Path,
    zones: gpd.GeoDataFrame,
    landcover_cfg: Dict[str, Any],
    *,
    id_field: str = "site_id",
) -> pd.DataFrame:
    """Class fractions per zone using `sources.landcover` (classes, prefix)."""
    classes = landcover_cfg.get("classes")
    if not isinstance(classes, dict) or not classes:
        raise SystemExit("sources.yaml landcover block missing 'classes:' mapping")
    class_map = {int(k): str(v) for k, v in classes.items()}
    return zonal_stats(
        raster_path,
        zones,
        id_field=id_field,
        categorical=True,
        class_map=class_map,
        prefix=str(landcover_cfg.get("prefix", "lc_")),
        nodata=landcover_cfg.get("nodata"),
    )


def write_zonal_table(df: pd.DataFrame, out_path: Path, *, label: str) -> None:
    out_path.parent.mkdir(parents=True, exist_ok=True)
    df.to_parquet(out_path, index=False)
    print(f"[ZONAL] {label}: {len(df)} zones, {len(df.columns) - 1} columns -> {out_path}")
