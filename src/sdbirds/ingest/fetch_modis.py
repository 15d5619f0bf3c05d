#!/usr/bin/env python3
"""fetch_modis.py

Fetch MODIS vegetation (MOD13Q1 NDVI/EVI) and land-surface temperature
(MOD11A2) time series for every survey site from the ORNL DAAC MODIS web
service, and summarize them per site.

This module is called by `python -m sdbirds.ingest modis ...` via a thin dispatcher.

Scope:
- Point subsets only (site lon/lat, optional km window around it)
- Raw integer values are kept next to the scaled value for traceability
- Fill / out-of-range values become NaN before scaling
- One parquet per band: <out_dir>/modis_<band_key>.parquet
- Respect dry_run / overwrite / limit

Service notes:
- GET {base_url}/{product}/dates?latitude=..&longitude=..
- GET {base_url}/{product}/subset?latitude=..&longitude=..&band=..
      &startDate=AYYYYDDD&endDate=AYYYYDDD&kmAboveBelow=..&kmLeftRight=..
- The service returns at most 10 composite dates per subset request.

Required deps: requests, pandas, numpy
"""

from __future__ import annotations

from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import requests


DEFAULT_BASE_URL = "https://modis.ornl.gov/rst/api/v1"
MAX_DATES_PER_REQUEST = 10
JSON_HEADERS = {"Accept": "application/json"}

# Santo Domingo: dry season Dec-Apr, wet season May-Nov
DRY_MONTHS = (12, 1, 2, 3, 4)


# -----------------------------------------------------------------------------
# Date helpers
# -----------------------------------------------------------------------------

def to_modis_date(d: date) -> str:
    """date(2019, 2, 1) -> 'A2019032'."""
    return f"A{d.year}{d.timetuple().tm_yday:03d}"


def from_modis_date(s: str) -> date:
    """'A2019032' -> date(2019, 2, 1)."""
    if not (isinstance(s, str) and len(s) == 8 and s.startswith("A") and s[1:].isdigit()):
        raise ValueError(f"Not a MODIS date: {s!r}")
    return datetime.strptime(s[1:], "%Y%j").date()


def _as_date(x: Any) -> date:
    if isinstance(x, datetime):
        return x.date()
    if isinstance(x, date):
        return x
    return datetime.strptime(str(x), "%Y-%m-%d").date()


def _chunks(items: Sequence[str], n: int) -> List[Sequence[str]]:
    return [items[i:i + n] for i in range(0, len(items), n)]


def season_of(month: int) -> str:
    return "dry" if month in DRY_MONTHS else "wet"


# -----------------------------------------------------------------------------
# Web service calls
# -----------------------------------------------------------------------------

def _get_json(session: requests.Session, url: str, params: Dict[str, Any], timeout: float) -> Dict[str, Any]:
    resp = session.get(url, params=params, headers=JSON_HEADERS, timeout=timeout)
    resp.raise_for_status()
    data = resp.json()
    if not isinstance(data, dict):
        raise ValueError(f"Unexpected MODIS response from {url}: {type(data).__name__}")
    return data


def modis_dates(
    session: requests.Session,
    product: str,
    lat: float,
    lon: float,
    start: Any,
    end: Any,
    *,
    base_url: str = DEFAULT_BASE_URL,
    timeout: float = 60,
) -> List[str]:
    """Composite dates (AYYYYDDD) available for a point within [start, end]."""
    start_d, end_d = _as_date(start), _as_date(end)
    if start_d > end_d:
        raise ValueError(f"start ({start_d}) must be <= end ({end_d})")

    data = _get_json(
        session,
        f"{base_url}/{product}/dates",
        {"latitude": lat, "longitude": lon},
        timeout,
    )
    out = []
    for d in data.get("dates", []):
        md = d.get("modis_date") if isinstance(d, dict) else None
        if md and start_d <= from_modis_date(md) <= end_d:
            out.append(md)
    return sorted(out)


def fetch_modis_subset(
    session: requests.Session,
    product: str,
    band: str,
    lat: float,
    lon: float,
    dates: Sequence[str],
    *,
    km_above_below: int = 0,
    km_left_right: int = 0,
    base_url: str = DEFAULT_BASE_URL,
    timeout: float = 60,
) -> pd.DataFrame:
    """Fetch raw pixel values for a point, chunking dates by the service limit.

    Returns a long DataFrame:
        modis_date, calendar_date, band, pixel, raw
    """
    rows: List[Dict[str, Any]] = []
    for chunk in _chunks(sorted(dates), MAX_DATES_PER_REQUEST):
        params = {
            "latitude": lat,
            "longitude": lon,
            "band": band,
            "startDate": chunk[0],
            "endDate": chunk[-1],
            "kmAboveBelow": int(km_above_below),
            "kmLeftRight": int(km_left_right),
        }
        data = _get_json(session, f"{base_url}/{product}/subset", params, timeout)
        for entry in data.get("subset", []):
            md = entry.get("modis_date")
            cal = entry.get("calendar_date") or from_modis_date(md).isoformat()
            for i, v in enumerate(entry.get("data", [])):
                rows.append({
                    "modis_date": md,
                    "calendar_date": cal,
                    "band": entry.get("band", band),
                    "pixel": i,
                    "raw": v,
                })

    df = pd.DataFrame(rows, columns=["modis_date", "calendar_date", "band", "pixel", "raw"])
    df["calendar_date"] = pd.to_datetime(df["calendar_date"])
    df["raw"] = pd.to_numeric(df["raw"], errors="coerce")
    return df.drop_duplicates(["modis_date", "pixel"]).reset_index(drop=True)


def scale_modis_values(
    df: pd.DataFrame,
    *,
    scale: float,
    fill_value: Optional[float] = None,
    valid_range: Optional[Tuple[float, float]] = None,
    offset: float = 0.0,
) -> pd.DataFrame:
    """Add a `value` column: raw * scale + offset, NaN for fill/out-of-range."""
    out = df.copy()
    raw = out["raw"].astype(float)
    bad = raw.isna()
    if fill_value is not None:
        bad |= raw == float(fill_value)
    if valid_range is not None:
        lo, hi = valid_range
        bad |= (raw < float(lo)) | (raw > float(hi))
    out["value"] = np.where(bad, np.nan, raw * float(scale) + float(offset))
    return out


# -----------------------------------------------------------------------------
# Summaries
# -----------------------------------------------------------------------------

def summarize_modis(df: pd.DataFrame, *, prefix: str, by_season: bool = False) -> pd.DataFrame:
    """Per-site summary of scaled pixel-date values.

    Columns: site_id, <prefix>_mean, <prefix>_median, <prefix>_sd, <prefix>_n
    With by_season, one set per season: <prefix>_dry_mean, <prefix>_wet_mean, ...
    """
    v = df[df["value"].notna()].copy()
    keys = ["site_id"]
    if by_season:
        v["season"] = pd.to_datetime(v["calendar_date"]).dt.month.map(season_of)
        keys.append("season")

    g = v.groupby(keys)["value"]
    s = pd.DataFrame({
        "mean": g.mean(),
        "median": g.median(),
        "sd": g.std(ddof=1),
        "n": g.size(),
    })

    stats = list(s.columns)
    if by_season:
        if s.empty:
            s = pd.DataFrame(index=pd.Index([], name="site_id"))
        else:
            s = s.unstack("season")
            s.columns = [f"{prefix}_{season}_{stat}" for stat, season in s.columns]
        columns = [f"{prefix}_{season}_{stat}" for season in ("dry", "wet") for stat in stats]
    else:
        s.columns = [f"{prefix}_{stat}" for stat in stats]
        columns = list(s.columns)

    # every season gets its columns even when it has no valid values
    sites = sorted(df["site_id"].unique())
    s = s.reindex(index=sites, columns=columns)
    for c in s.columns:
        if c.endswith("_n"):
            s[c] = s[c].fillna(0).astype(int)
    s.index.name = "site_id"
    return s.reset_index()


# -----------------------------------------------------------------------------
# Core function (called by sdbirds.ingest)
# -----------------------------------------------------------------------------

def fetch_modis(
    *,
    modis_cfg: Dict[str, Any],
    sites: pd.DataFrame,
    band_keys: Sequence[str],
    start: Any,
    end: Any,
    out_dir: Path,
    overwrite: bool = False,
    dry_run: bool = False,
    limit: Optional[int] = None,
    session: Optional[requests.Session] = None,
) -> int:
    """Fetch every (band, site) series and write one parquet per band.

    Parameters
    ----------
    modis_cfg : dict
        `sources.modis` block from sources.yaml.
    sites : DataFrame
        Needs site_id, lon, lat (EPSG:4326).
    band_keys : list[str]
        Keys under `modis.bands` (e.g. ["ndvi", "lst_day"]).
    start, end : date or "YYYY-MM-DD"
        Inclusive calendar range.
    limit : int | None
        Debug: only process first N site requests (across bands).
    """
    bands_cfg = modis_cfg.get("bands")
    if not isinstance(bands_cfg, dict):
        raise SystemExit("sources.yaml modis block missing 'bands:' mapping")
    for c in ("site_id", "lon", "lat"):
        if c not in sites.columns:
            raise SystemExit(f"Site table needs '{c}' for MODIS requests")

    base_url = str(modis_cfg.get("base_url", DEFAULT_BASE_URL)).rstrip("/")
    timeout = float(modis_cfg.get("timeout_s", 60))
    kab = int(modis_cfg.get("km_above_below", 0))
    klr = int(modis_cfg.get("km_left_right", 0))

    session = session or requests.Session()
    n_requests = 0

    for key in band_keys:
        bcfg = bands_cfg.get(key)
        if not isinstance(bcfg, dict):
            raise SystemExit(f"sources.yaml modis.bands missing '{key}'")
        product, band = bcfg.get("product"), bcfg.get("band")
        if not product or not band:
            raise SystemExit(f"modis.bands.{key} needs product and band")

        out_path = out_dir / f"modis_{key}.parquet"
        if out_path.exists() and not overwrite:
            print(f"[SKIP] {out_path.name}")
            continue

        print(f"[MODIS] {key}: {product}/{band} {start} .. {end} ({len(sites)} sites)")
        print(f"  - out: {out_path}")
        if dry_run:
            continue

        frames: List[pd.DataFrame] = []
        for site in sites.itertuples(index=False):
            n_requests += 1
            if limit is not None and n_requests > int(limit):
                print(f"[MODIS] Reached --limit {limit}; stopping")
                break

            try:
                dates = modis_dates(session, product, site.lat, site.lon, start, end,
                                    base_url=base_url, timeout=timeout)
                raw = fetch_modis_subset(session, product, band, site.lat, site.lon, dates,
                                         km_above_below=kab, km_left_right=klr,
                                         base_url=base_url, timeout=timeout)
            except (requests.RequestException, ValueError) as e:
                raise SystemExit(f"MODIS fetch failed for site {site.site_id} band {key}: {e}") from e

            if raw.empty:
                print(f"  - warning: no {key} data for site {site.site_id}")
                continue
            raw.insert(0, "site_id", site.site_id)
            frames.append(raw)

        if not frames:
            print(f"  - warning: nothing fetched for {key}; no file written")
            continue

        df = pd.concat(frames, ignore_index=True)
        vr = bcfg.get("valid_range")
        df = scale_modis_values(
            df,
            scale=float(bcfg.get("scale", 1.0)),
            fill_value=bcfg.get("fill_value"),
            valid_range=tuple(vr) if isinstance(vr, (list, tuple)) and len(vr) == 2 else None,
            offset=float(bcfg.get("offset", 0.0)),
        )

        out_path.parent.mkdir(parents=True, exist_ok=True)
        df.to_parquet(out_path, index=False)
        valid = int(df["value"].notna().sum())
        print(f"[MODIS] {key}: {len(df)} pixel-dates ({valid} valid) -> {out_path}")

        if limit is not None and n_requests > int(limit):
            break

    print("[MODIS] Done")
    return 0


if __name__ == "__main__":
    raise SystemExit(
        "This module is not meant to be run directly. "
        "Use: python -m sdbirds.ingest modis --start 2019-01-01 --end 2021-12-31"
    )
