#!/usr/bin/env python3

from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Ensure we can import from src without installing the package
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

from sdbirds import config as cfg


def test_normalize_site_id_variants():
    assert cfg.normalize_site_id(" cn_01 ") == "CN-01"
    assert cfg.normalize_site_id("CN 01") == "CN-01"
    assert cfg.normalize_site_id("cn--01") == "CN-01"
    assert cfg.normalize_site_id("GA-3") == "GA-3"


def test_normalize_site_id_emptyish_inputs():
    assert cfg.normalize_site_id(None) == ""
    assert cfg.normalize_site_id("") == ""
    assert cfg.normalize_site_id("  ") == ""
    assert cfg.normalize_site_id(float("nan")) == ""


def test_coerce_bbox():
    assert cfg.coerce_bbox([-70, 18, "-69.5", 18.6]) == (-70.0, 18.0, -69.5, 18.6)
    assert cfg.coerce_bbox([1, 2, 3]) is None
    assert cfg.coerce_bbox(["a", 2, 3, 4]) is None
    assert cfg.coerce_bbox(None) is None


def test_aoi_prefers_top_level_bounds():
    y = {
        "bounds": [-70.05, 18.42, -69.82, 18.56],
        "sectors": {"CN": {"bounds": [0, 0, 1, 1]}},
    }
    assert cfg.aoi_from_sites_yaml(y) == (-70.05, 18.42, -69.82, 18.56)


def test_aoi_union_of_sector_bounds():
    y = {"sectors": {
        "CN": {"bounds": [-70.0, 18.45, -69.9, 18.5]},
        "ZC": {"bounds": [-69.95, 18.40, -69.85, 18.48]},
        "GA": {"name": "no bounds"},
    }}
    assert cfg.aoi_from_sites_yaml(y) == (-70.0, 18.40, -69.85, 18.5)
    assert cfg.aoi_from_sites_yaml({}) is None


def test_load_yaml_and_source_config(tmp_path):
    p = tmp_path / "sources.yaml"
    p.write_text("sources:\n  point_counts:\n    path: a.csv\n", encoding="utf-8")
    y = cfg.load_yaml(p)
    assert cfg.source_config(y, "point_counts") == {"path": "a.csv"}
    with pytest.raises(SystemExit):
        cfg.source_config(y, "modis")


def test_load_yaml_rejects_missing_and_non_mapping(tmp_path):
    with pytest.raises(SystemExit):
        cfg.load_yaml(tmp_path / "nope.yaml")
    p = tmp_path / "list.yaml"
    p.write_text("- 1\n- 2\n", encoding="utf-8")
    with pytest.raises(SystemExit):
        cfg.load_yaml(p)


def test_repo_config_files_parse():
    sources = cfg.load_yaml(ROOT / "config" / "sources.yaml")
    for sid in ("itree", "point_counts", "modis", "landcover"):
        assert isinstance(cfg.source_config(sources, sid), dict)
    sites = cfg.load_yaml(ROOT / "config" / "sites.yaml")
    assert cfg.aoi_from_sites_yaml(sites) is not None
    assert set(sites["sectors"]) == {"CN", "GA", "SC", "ZC"}
