#!/usr/bin/env python3

from __future__ import annotations

import sys
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

# Ensure we can import from src without installing the package
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

from sdbirds.features import gradient as gr


def _sites(n=9, seed=3):
    rng = np.random.default_rng(seed)
    urban = np.linspace(0, 1, n)
    return pd.DataFrame({
        "site_id": [f"S-{i}" for i in range(n)],
        "lc_built": urban + rng.normal(0, 0.02, n),
        "lc_trees": 1 - urban + rng.normal(0, 0.02, n),
        "ndvi_mean": 0.7 - 0.4 * urban + rng.normal(0, 0.01, n),
    })


CRITERIA = [
    gr.Criterion("lc_built", 1),
    gr.Criterion("lc_trees", -1),
    gr.Criterion("ndvi_mean", -1),
]


def test_criterion_validation():
    with pytest.raises(ValueError):
        gr.Criterion("x", direction=0)
    with pytest.raises(ValueError):
        gr.Criterion("x", weight=0)
    crit = gr.criteria_from_config([{"column": "lc_built"}, {"column": "lc_trees", "direction": -1, "weight": 2}])
    assert crit[1] == gr.Criterion("lc_trees", -1, 2.0)
    with pytest.raises(ValueError):
        gr.criteria_from_config([])


def test_rank_score_orders_sites_and_spans_unit_interval():
    s = gr.rank_score(_sites(), CRITERIA)
    assert s.name == "rank_score"
    assert s.iloc[0] == pytest.approx(0.0)
    assert s.iloc[-1] == pytest.approx(1.0)
    assert s.is_monotonic_increasing


def test_rank_score_direction_and_weights():
    df = pd.DataFrame({"site_id": ["a", "b", "c"], "x": [1.0, 2.0, 3.0], "y": [3.0, 2.0, 1.0]})
    up = gr.rank_score(df, [gr.Criterion("x", 1)])
    down = gr.rank_score(df, [gr.Criterion("x", -1)])
    assert up.tolist() == [0.0, 0.5, 1.0]
    assert down.tolist() == [1.0, 0.5, 0.0]
    # x and y disagree; weighting x 3:1 tilts the score toward x
    w = gr.rank_score(df, [gr.Criterion("x", 1, 3.0), gr.Criterion("y", 1, 1.0)])
    assert w.tolist() == pytest.approx([0.25, 0.5, 0.75])


def test_rank_score_missing_values_get_nan():
    df = _sites()
    df.loc[4, "ndvi_mean"] = np.nan
    s = gr.rank_score(df, CRITERIA)
    assert np.isnan(s.iloc[4])
    assert s.drop(index=4).between(0, 1).all()
    with pytest.raises(ValueError):
        gr.rank_score(df.iloc[:1], CRITERIA)


def test_classify_gradient_tertiles():
    score = pd.Series([0.1, 0.9, 0.5, np.nan, 0.2, 0.8, 0.4])
    cls = gr.classify_gradient(score)
    assert cls.tolist()[:3] == ["rural", "urban", "suburban"]
    assert pd.isna(cls.iloc[3])
    assert cls.value_counts().to_dict() == {"rural": 2, "suburban": 2, "urban": 2}


def test_pca_gradient_anchor_sign():
    df = _sites()
    p = gr.pca_gradient(df, ["lc_trees", "lc_built", "ndvi_mean"], anchor="lc_built")
    assert (p.loadings.loc["lc_built"] > 0).all()
    assert p.loadings.loc["lc_trees", "PC1"] < 0
    assert p.explained_variance_ratio["PC1"] > 0.9
    # PC1 rises with the built fraction
    assert np.corrcoef(p.pc1.to_numpy(), df["lc_built"].to_numpy())[0, 1] > 0.95
    assert list(p.scores.index) == df["site_id"].tolist()


def test_pca_gradient_rejects_unknown_anchor():
    with pytest.raises(ValueError):
        gr.pca_gradient(_sites(), ["lc_built", "lc_trees"], anchor="ndvi_mean")


def test_build_gradient_agreement():
    res = gr.build_gradient(_sites(), CRITERIA, anchor="lc_built")
    t = res["table"]
    assert {"rank_score", "gradient_pc1", "gradient_class"} <= set(t.columns)
    assert res["spearman"] > 0.9
    assert t["gradient_class"].iloc[0] == "rural"
    assert t["gradient_class"].iloc[-1] == "urban"
