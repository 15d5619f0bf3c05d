#!/usr/bin/env python3

from __future__ import annotations

import sys
from pathlib import Path

import numpy as np
import pandas as pd
import pytest
from scipy.special import expit, logit

# Ensure we can import from src without installing the package
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

from sdbirds.model import occupancy as oc


def _simulate(n_sites=500, n_visits=4, psi=0.6, p=0.5, beta=0.0, seed=42):
    rng = np.random.default_rng(seed)
    x = rng.normal(0, 1, n_sites)
    psi_i = expit(logit(psi) + beta * x)
    z = rng.random(n_sites) < psi_i
    y = (rng.random((n_sites, n_visits)) < p) & z[:, None]
    sites = pd.Index([f"S-{i}" for i in range(n_sites)], name="site_id")
    history = pd.DataFrame(y.astype(float), index=sites, columns=range(1, n_visits + 1))
    covs = pd.DataFrame({"urban": x}, index=sites)
    return history, covs


def _coef(fit, submodel, term):
    c = fit.coefficients
    return c[(c["submodel"] == submodel) & (c["term"] == term)].iloc[0]


def test_intercept_only_recovers_psi_and_p():
    h, _ = _simulate()
    fit = oc.fit_occupancy(h)

    assert fit.converged
    assert fit.n_sites == 500
    psi_hat = expit(_coef(fit, "psi", "(Intercept)")["estimate"])
    p_hat = expit(_coef(fit, "p", "(Intercept)")["estimate"])
    assert psi_hat == pytest.approx(0.6, abs=0.08)
    assert p_hat == pytest.approx(0.5, abs=0.06)
    # imperfect detection: naive occupancy underestimates psi
    assert fit.naive_occupancy < psi_hat
    assert np.isfinite(fit.coefficients["std_error"]).all()
    assert fit.aic == pytest.approx(2 * 2 - 2 * fit.loglik)


def test_occupancy_covariate_slope():
    h, covs = _simulate(beta=1.0, seed=7)
    fit = oc.fit_occupancy(h, covs, psi_covs=["urban"])
    b = _coef(fit, "psi", "urban")
    assert b["estimate"] == pytest.approx(1.0, abs=0.45)
    assert b["p_value"] < 0.01

    pred = fit.predict(covs)
    assert list(pred.columns) == ["psi", "p"]
    assert pred.loc[covs["urban"].idxmax(), "psi"] > pred.loc[covs["urban"].idxmin(), "psi"]


def test_unsurveyed_visits_and_sites():
    h, _ = _simulate(n_sites=300, seed=5)
    h.iloc[:50, 3] = np.nan
    h.iloc[-10:, :] = np.nan
    fit = oc.fit_occupancy(h)
    assert fit.n_sites == 290
    assert len(fit.sites) == 290


def test_missing_covariates_drop_sites():
    h, covs = _simulate(n_sites=200, seed=9)
    covs.iloc[:5, 0] = np.nan
    fit = oc.fit_occupancy(h, covs, psi_covs=["urban"])
    assert fit.n_sites == 195


def test_bad_history_values():
    h, _ = _simulate(n_sites=20)
    h.iloc[0, 0] = 2
    with pytest.raises(ValueError):
        oc.fit_occupancy(h)
    with pytest.raises(ValueError):
        oc.fit_occupancy(h.iloc[:0])


def test_covariates_without_table():
    h, _ = _simulate(n_sites=20)
    with pytest.raises(ValueError):
        oc.fit_occupancy(h, psi_covs=["urban"])


def test_fit_species_occupancy_from_counts():
    h, covs = _simulate(n_sites=200, n_visits=3, seed=1)
    rows = []
    for site, visits in h.iterrows():
        for visit, y in visits.items():
            rows.append({"site_id": site, "visit": visit,
                         "species": "Coereba flaveola" if y else None, "count": int(y)})
    # one site holds the only record of a rare species
    rows.append({"site_id": "S-0", "visit": 1, "species": "Loxigilla violacea", "count": 1})
    counts = pd.DataFrame(rows)
    counts["species"] = counts["species"].astype("string")

    out = oc.fit_species_occupancy(counts, covs, psi_covs=["urban"], min_detections=3)

    assert out["species"].tolist() == ["Coereba flaveola"]
    row = out.iloc[0]
    assert row["n_sites"] == 200
    assert row["psi_mean"] == pytest.approx(0.6, abs=0.1)
    assert row["psi_mean"] >= row["naive_occupancy"]
    assert {"beta", "beta_se", "beta_p"} <= set(out.columns)


def test_all_covariates_missing_raises():
    h, covs = _simulate(n_sites=20)
    covs["urban"] = np.nan
    with pytest.raises(ValueError, match="complete covariates"):
        oc.fit_occupancy(h, covs, psi_covs=["urban"])
