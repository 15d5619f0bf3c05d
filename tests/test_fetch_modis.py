#!/usr/bin/env python3

from __future__ import annotations

import sys
from datetime import date, timedelta
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

# Ensure we can import from src without installing the package
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

from sdbirds.ingest import fetch_modis as fm


# 16-day composites through 2019, plus one in 2020 outside the test range
ALL_DATES = [fm.to_modis_date(date(2019, 1, 1) + timedelta(days=16 * i)) for i in range(23)]
ALL_DATES.append("A2020001")


class _FakeResponse:
    def __init__(self, payload):
        self._payload = payload

    def raise_for_status(self):
        return None

    def json(self):
        return self._payload


class _FakeSession:
    """Answers /dates and /subset like the ORNL DAAC service."""

    def __init__(self):
        self.calls = []

    def get(self, url, params=None, headers=None, timeout=None):
        self.calls.append((url, dict(params or {})))
        if url.endswith("/dates"):
            return _FakeResponse({"dates": [{"modis_date": d, "calendar_date": ""} for d in ALL_DATES]})
        lo, hi = params["startDate"], params["endDate"]
        picked = [d for d in ALL_DATES if lo <= d <= hi]
        # two pixels per date; second pixel is fill on the first date
        subset = []
        for i, d in enumerate(picked):
            subset.append({
                "modis_date": d,
                "calendar_date": fm.from_modis_date(d).isoformat(),
                "band": params["band"],
                "data": [5000 + i, -3000 if i == 0 else 6000],
            })
        return _FakeResponse({"subset": subset})


MODIS_CFG = {
    "base_url": "https://example.test/api",
    "bands": {
        "ndvi": {
            "product": "MOD13Q1",
            "band": "250m_16_days_NDVI",
            "scale": 0.0001,
            "fill_value": -3000,
            "valid_range": [-2000, 10000],
        },
    },
}


def test_modis_date_roundtrip_and_errors():
    assert fm.to_modis_date(date(2019, 2, 1)) == "A2019032"
    assert fm.from_modis_date("A2019032") == date(2019, 2, 1)
    with pytest.raises(ValueError):
        fm.from_modis_date("2019-02-01")


def test_season_of():
    assert fm.season_of(1) == "dry"
    assert fm.season_of(12) == "dry"
    assert fm.season_of(7) == "wet"


def test_modis_dates_filters_range():
    s = _FakeSession()
    dates = fm.modis_dates(s, "MOD13Q1", 18.47, -69.9, "2019-01-01", "2019-12-31", base_url="https://x")
    assert len(dates) == 23
    assert "A2020001" not in dates
    assert s.calls[0][0] == "https://x/MOD13Q1/dates"


def test_subset_chunks_requests_by_ten_dates():
    s = _FakeSession()
    dates = ALL_DATES[:23]
    df = fm.fetch_modis_subset(s, "MOD13Q1", "250m_16_days_NDVI", 18.47, -69.9, dates, base_url="https://x")
    subset_calls = [c for c in s.calls if c[0].endswith("/subset")]
    assert len(subset_calls) == 3
    assert len(df) == 23 * 2
    assert list(df.columns) == ["modis_date", "calendar_date", "band", "pixel", "raw"]


def test_scale_modis_values_masks_fill_and_range():
    df = pd.DataFrame({"raw": [5000, -3000, 20000, np.nan]})
    out = fm.scale_modis_values(df, scale=0.0001, fill_value=-3000, valid_range=(-2000, 10000))
    assert out["value"].iloc[0] == pytest.approx(0.5)
    assert out["value"].iloc[1:].isna().all()


def test_scale_lst_to_celsius():
    df = pd.DataFrame({"raw": [15000]})
    out = fm.scale_modis_values(df, scale=0.02, offset=-273.15)
    assert out["value"].iloc[0] == pytest.approx(26.85)


def test_summarize_modis_overall_and_by_season():
    df = pd.DataFrame({
        "site_id": ["A", "A", "A", "B"],
        "calendar_date": pd.to_datetime(["2019-01-10", "2019-02-10", "2019-07-10", "2019-07-10"]),
        "value": [0.2, 0.4, 0.6, np.nan],
    })
    s = fm.summarize_modis(df, prefix="ndvi").set_index("site_id")
    assert s.loc["A", "ndvi_mean"] == pytest.approx(0.4)
    assert s.loc["A", "ndvi_n"] == 3
    assert s.loc["B", "ndvi_n"] == 0
    assert np.isnan(s.loc["B", "ndvi_mean"])

    ss = fm.summarize_modis(df, prefix="ndvi", by_season=True).set_index("site_id")
    assert ss.loc["A", "ndvi_dry_mean"] == pytest.approx(0.3)
    assert ss.loc["A", "ndvi_wet_mean"] == pytest.approx(0.6)


def test_fetch_modis_writes_band_parquet(tmp_path):
    sites = pd.DataFrame({"site_id": ["CN-1", "GA-1"], "lon": [-69.93, -69.95], "lat": [18.47, 18.50]})
    s = _FakeSession()
    rc = fm.fetch_modis(
        modis_cfg=MODIS_CFG,
        sites=sites,
        band_keys=["ndvi"],
        start="2019-01-01",
        end="2019-12-31",
        out_dir=tmp_path,
        session=s,
    )
    assert rc == 0
    df = pd.read_parquet(tmp_path / "modis_ndvi.parquet")
    assert set(df["site_id"]) == {"CN-1", "GA-1"}
    assert len(df) == 2 * 23 * 2
    # fill on the first date of each chunk is masked
    assert df["value"].isna().sum() == 2 * 3
    assert df["value"].dropna().between(0.5, 0.61).all()


def test_fetch_modis_dry_run_makes_no_requests(tmp_path):
    sites = pd.DataFrame({"site_id": ["CN-1"], "lon": [-69.93], "lat": [18.47]})
    s = _FakeSession()
    fm.fetch_modis(modis_cfg=MODIS_CFG, sites=sites, band_keys=["ndvi"], start="2019-01-01",
                   end="2019-12-31", out_dir=tmp_path, dry_run=True, session=s)
    assert s.calls == []
    assert not (tmp_path / "modis_ndvi.parquet").exists()


def test_fetch_modis_unknown_band(tmp_path):
    sites = pd.DataFrame({"site_id": ["CN-1"], "lon": [-69.93], "lat": [18.47]})
    with pytest.raises(SystemExit):
        fm.fetch_modis(modis_cfg=MODIS_CFG, sites=sites, band_keys=["evi"], start="2019-01-01",
                       end="2019-12-31", out_dir=tmp_path, session=_FakeSession())


def test_summarize_by_season_keeps_empty_season_columns():
    df = pd.DataFrame({
        "site_id": ["A", "A", "B"],
        "calendar_date": pd.to_datetime(["2019-01-10", "2019-02-10", "2019-03-10"]),
        "value": [0.2, 0.4, np.nan],
    })
    ss = fm.summarize_modis(df, prefix="ndvi", by_season=True).set_index("site_id")
    expected = {f"ndvi_{season}_{stat}" for season in ("dry", "wet") for stat in ("mean", "median", "sd", "n")}
    assert expected <= set(ss.columns)
    assert list(ss.index) == ["A", "B"]
    assert ss.loc["A", "ndvi_dry_mean"] == pytest.approx(0.3)
    assert ss.loc["A", "ndvi_wet_n"] == 0
    assert np.isnan(ss.loc["A", "ndvi_wet_mean"])
    assert ss.loc["B", "ndvi_dry_n"] == 0

    empty = fm.summarize_modis(df.assign(value=np.nan), prefix="ndvi", by_season=True)
    assert expected <= set(empty.columns)
    assert (empty["ndvi_wet_n"] == 0).all()
