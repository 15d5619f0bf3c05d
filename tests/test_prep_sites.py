#!/usr/bin/env python3

from __future__ import annotations

import sys
from pathlib import Path

import geopandas as gpd
import pandas as pd
import pytest

# Ensure we can import from src without installing the package
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

from sdbirds.registry import prep_sites as ps


def _sites_df():
    return pd.DataFrame({
        "id": ["cn_01", "CN 02", "ga-1", "zc-4"],
        "lon": [-69.93, -69.92, -69.95, "bad"],
        "lat": [18.47, 18.48, 18.50, 18.46],
        "sector": ["cn", "CN", "ga", "zc"],
    })


def test_buffer_layer_name():
    assert ps._buffer_layer_name(250) == "sites_buffer_250m"
    assert ps._buffer_layer_name(62.5) == "sites_buffer_62p5m"
    assert ps.buffer_layer_names([500, 100, 100.0]) == ["sites_buffer_100m", "sites_buffer_500m"]


def test_sites_to_points_normalizes_and_drops_bad_coords():
    pts = ps.sites_to_points(_sites_df(), id_field="id")
    assert list(pts["site_id"]) == ["CN-01", "CN-02", "GA-1"]
    assert list(pts["sector"]) == ["CN", "CN", "GA"]
    assert pts.crs.to_epsg() == 4326


def test_sites_to_points_rejects_duplicate_ids():
    df = _sites_df()
    df.loc[1, "id"] = "CN_01"
    with pytest.raises(ValueError, match="Duplicate"):
        ps.sites_to_points(df, id_field="id")


def test_buffer_sites_area_in_metres():
    pts = ps.sites_to_points(_sites_df(), id_field="id")
    buf = ps.buffer_sites(pts, 100)
    assert buf.crs.to_epsg() == 32619
    assert set(buf["buffer_m"]) == {100.0}
    # polygonal buffer approximates pi r^2
    assert buf.geometry.area.between(31000, 31500).all()
    with pytest.raises(ValueError):
        ps.buffer_sites(pts, 0)


def test_prep_sites_writes_all_layers(tmp_path):
    csv = tmp_path / "sites.csv"
    _sites_df().to_csv(csv, index=False)
    out = tmp_path / "sites.gpkg"

    layers = ps.prep_sites(csv, out, id_field="id", buffer_radii_m=[250, 100])

    assert list(layers) == ["sites", "sites_buffer_100m", "sites_buffer_250m"]
    for name in layers:
        back = gpd.read_file(out, layer=name)
        assert sorted(back["site_id"]) == ["CN-01", "CN-02", "GA-1"]


def test_prep_sites_missing_csv(tmp_path):
    with pytest.raises(SystemExit):
        ps.prep_sites(tmp_path / "none.csv", tmp_path / "out.gpkg")
