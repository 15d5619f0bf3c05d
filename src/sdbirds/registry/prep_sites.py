#!/usr/bin/env python3
"""prep_sites.py

Turn the survey-point CSV (bird point-count stations, co-located with i-Tree
plots) into a clean GeoPackage holding the site points plus one buffer layer
per radius. Every downstream stage (zonal stats, MODIS, joins) keys on the
`site_id` written here.

Called by:
  python -m sdbirds.registry prep-sites --sites-csv data/raw/sites/survey_points.csv

Notes:
- Site ids are normalized so "cn_01", "CN 01" and "CN-01" match.
- Buffers are built in a metric CRS (default EPSG:32619, UTM 19N, which
  covers Santo Domingo) and written back in that CRS.
- Rows with unusable coordinates are dropped and listed, never silently.
"""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional, Sequence

import geopandas as gpd
import pandas as pd

from sdbirds.config import normalize_site_id


# -----------------------------------------------------------------------------
# Helper functions
# -----------------------------------------------------------------------------

def _buffer_layer_name(radius_m: float) -> str:
    """Layer name for a buffer radius: 250 -> 'sites_buffer_250m'."""
    r = float(radius_m)
    label = str(int(r)) if r.is_integer() else str(r).replace(".", "p")
    return f"sites_buffer_{label}m"


def _require_columns(df: pd.DataFrame, columns: Sequence[str], what: str) -> None:
    missing = [c for c in columns if c not in df.columns]
    if missing:
        raise ValueError(f"{what} is missing required columns {missing}. Available: {list(df.columns)}")


def sites_to_points(
    df: pd.DataFrame,
    *,
    id_field: str = "site_id",
    lon_field: str = "lon",
    lat_field: str = "lat",
    sector_field: Optional[str] = "sector",
    src_crs: str = "EPSG:4326",
) -> gpd.GeoDataFrame:
    """Build a validated point GeoDataFrame from a survey-site table.

    Returns columns: site_id, [sector], lon, lat, geometry (in src_crs).
    """
    _require_columns(df, [id_field, lon_field, lat_field], "Survey site table")

    out = pd.DataFrame({"site_id": df[id_field].map(normalize_site_id)})
    if sector_field and sector_field in df.columns:
        out["sector"] = df[sector_field].astype(str).str.strip().str.upper()
    out["lon"] = pd.to_numeric(df[lon_field], errors="coerce")
    out["lat"] = pd.to_numeric(df[lat_field], errors="coerce")

    if (out["site_id"] == "").any():
        raise ValueError(f"{int((out['site_id'] == '').sum())} rows have an empty '{id_field}'.")

    dupes = sorted(out.loc[out["site_id"].duplicated(), "site_id"].unique().tolist())
    if dupes:
        raise ValueError(f"Duplicate site ids after normalization: {dupes}")

    bad = out["lon"].isna() | out["lat"].isna()
    if src_crs.upper() in ("EPSG:4326", "WGS84"):
        bad |= ~out["lon"].between(-180, 180) | ~out["lat"].between(-90, 90)
    if bad.any():
        print(f"  - warning: dropping {int(bad.sum())} sites with invalid coordinates: "
              f"{out.loc[bad, 'site_id'].tolist()}")
        out = out[~bad].copy()

    return gpd.GeoDataFrame(
        out,
        geometry=gpd.points_from_xy(out["lon"], out["lat"]),
        crs=src_crs,
    ).reset_index(drop=True)


def buffer_sites(
    points: gpd.GeoDataFrame,
    radius_m: float,
    *,
    metric_crs: str = "EPSG:32619",
) -> gpd.GeoDataFrame:
    """Buffer site points by radius_m metres (computed in metric_crs)."""
    if radius_m <= 0:
        raise ValueError(f"Buffer radius must be positive, got {radius_m}")
    if points.crs is None:
        raise ValueError("Site points have no CRS; can't buffer in metres.")
    projected = points.to_crs(metric_crs)
    out = projected.drop(columns="geometry").copy()
    out["buffer_m"] = float(radius_m)
    return gpd.GeoDataFrame(out, geometry=projected.geometry.buffer(radius_m), crs=projected.crs)


# -----------------------------------------------------------------------------
# Core function (called by sdbirds.registry)
# -----------------------------------------------------------------------------

def prep_sites(
    sites_csv: Path,
    out_gpkg: Path,
    *,
    id_field: str = "site_id",
    lon_field: str = "lon",
    lat_field: str = "lat",
    sector_field: Optional[str] = "sector",
    src_crs: str = "EPSG:4326",
    metric_crs: str = "EPSG:32619",
    buffer_radii_m: Sequence[float] = (100.0, 250.0, 500.0),
    layer: str = "sites",
) -> Dict[str, gpd.GeoDataFrame]:
    """Process the survey-site CSV into a point layer and buffer layers.

    Args:
        sites_csv: CSV with one row per survey point
        out_gpkg: Output GeoPackage path
        id_field, lon_field, lat_field, sector_field: Input column names
        src_crs: CRS of the input coordinates
        metric_crs: Projected CRS used for buffering
        buffer_radii_m: One buffer layer is written per radius
        layer: Name of the point layer

    Returns:
        Mapping layer name -> GeoDataFrame (also written to out_gpkg).

    Raises:
        SystemExit: On missing input or when no valid sites remain.
    """
    if not sites_csv.exists():
        raise SystemExit(f"Survey site CSV not found: {sites_csv}")

    df = pd.read_csv(sites_csv)
    if df.empty:
        raise SystemExit(f"Survey site CSV has zero rows: {sites_csv}")

    points = sites_to_points(
        df,
        id_field=id_field,
        lon_field=lon_field,
        lat_field=lat_field,
        sector_field=sector_field,
        src_crs=src_crs,
    )
    if points.empty:
        raise SystemExit("No survey sites with valid coordinates remain.")

    layers: Dict[str, gpd.GeoDataFrame] = {layer: points}
    for r in sorted(set(float(x) for x in buffer_radii_m)):
        layers[_buffer_layer_name(r)] = buffer_sites(points, r, metric_crs=metric_crs)

    # Every layer must carry exactly the point layer's ids
    ids = set(points["site_id"])
    for name, gdf in layers.items():
        if set(gdf["site_id"]) != ids:
            raise SystemExit(f"Layer {name} lost site ids during buffering.")

    out_gpkg.parent.mkdir(parents=True, exist_ok=True)
    for name, gdf in layers.items():
        gdf.to_file(out_gpkg, layer=name, driver="GPKG")

    print(f"Wrote {len(points)} sites -> {out_gpkg}")
    print("Layers:")
    for name, gdf in layers.items():
        print(f"  - {name} | crs={gdf.crs.to_string() if gdf.crs else '?'} | n={len(gdf)}")
    if "sector" in points.columns:
        counts = points["sector"].value_counts().sort_index()
        print("Sites per sector: " + ", ".join(f"{k}={v}" for k, v in counts.items()))

    return layers


def buffer_layer_names(radii: Sequence[float]) -> List[str]:
    """Names of the buffer layers prep_sites writes for the given radii."""
    return [_buffer_layer_name(r) for r in sorted(set(float(x) for x in radii))]
