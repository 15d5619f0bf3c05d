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

from sdbirds.model import diversity as dv


def test_diversity_indices_known_values():
    m = pd.DataFrame(
        {"sp1": [2, 4, 0], "sp2": [2, 0, 0]},
        index=pd.Index(["A", "B", "C"], name="site_id"),
    )
    d = dv.diversity_indices(m).set_index("site_id")

    assert d.loc["A", "richness"] == 2
    assert d.loc["A", "abundance"] == 4
    assert d.loc["A", "shannon"] == pytest.approx(np.log(2))
    assert d.loc["A", "simpson"] == pytest.approx(0.5)
    assert d.loc["A", "evenness"] == pytest.approx(1.0)

    assert d.loc["B", "shannon"] == 0.0
    assert d.loc["B", "simpson"] == 0.0
    assert np.isnan(d.loc["B", "evenness"])

    assert d.loc["C"].drop("evenness").tolist() == [0, 0, 0.0, 0.0]


def test_diversity_rejects_negative():
    with pytest.raises(ValueError):
        dv.diversity_indices(pd.DataFrame({"sp1": [-1]}))


def _gradient_data(n=40, seed=11):
    rng = np.random.default_rng(seed)
    x = np.linspace(-2, 2, n)
    return pd.DataFrame({
        "site_id": [f"S-{i}" for i in range(n)],
        "gradient_pc1": x,
        "richness": 10 - 2.0 * x + rng.normal(0, 0.5, n),
        "gradient_class": np.repeat(["rural", "suburban", "urban", "urban"], n // 4),
    })


def test_fit_diversity_lm_recovers_slope():
    fit = dv.fit_diversity_lm(_gradient_data(), "richness", ["gradient_pc1"])
    c = fit.coefficients.set_index("term")

    assert fit.formula == "richness ~ gradient_pc1"
    assert list(c.index) == ["Intercept", "gradient_pc1"]
    assert c.loc["gradient_pc1", "estimate"] == pytest.approx(-2.0, abs=0.2)
    assert c.loc["Intercept", "estimate"] == pytest.approx(10.0, abs=0.3)
    assert c.loc["gradient_pc1", "p_value"] < 1e-6
    assert c.loc["gradient_pc1", "ci_low"] < c.loc["gradient_pc1", "estimate"] < c.loc["gradient_pc1", "ci_high"]
    assert fit.n == 40
    assert fit.r_squared > 0.9
    assert fit.summary_row()["response"] == "richness"


def test_fit_diversity_lm_categorical_and_missing_rows():
    d = _gradient_data()
    d.loc[0, "richness"] = np.nan
    fit = dv.fit_diversity_lm(d, "richness", ["gradient_class"])
    assert fit.n == 39
    terms = fit.coefficients["term"].tolist()
    assert terms[0] == "Intercept"
    assert any("urban" in t for t in terms)


def test_fit_diversity_lm_errors():
    d = _gradient_data()
    with pytest.raises(KeyError):
        dv.fit_diversity_lm(d, "shannon", ["gradient_pc1"])
    with pytest.raises(ValueError):
        dv.fit_diversity_lm(d, "richness", [])
    with pytest.raises(ValueError):
        dv.fit_diversity_lm(d.rename(columns={"gradient_pc1": "gradient pc1"}), "richness", ["gradient pc1"])
    with pytest.raises(ValueError):
        dv.fit_diversity_lm(d.iloc[:2], "richness", ["gradient_pc1"])
