#!/usr/bin/env python3
"""occupancy.py

Single-season site-occupancy model (MacKenzie et al. 2002) fitted by maximum
likelihood.

    psi_i = logistic(X_i . beta)     probability site i is occupied
    p_i   = logistic(Z_i . alpha)    per-visit detection probability

Site likelihood over the surveyed visits only (NaN visits are skipped):
    detected at least once:  psi * prod(p^y (1 - p)^(1 - y))
    never detected:          psi * prod(1 - p) + (1 - psi)

Sites with no surveyed visit carry no information and are dropped.
Covariates are site-level and used as given; standardize before fitting.

Estimation: scipy.optimize.minimize (BFGS) on the negative log-likelihood;
standard errors from the inverse of a finite-difference Hessian.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
from scipy.optimize import minimize
from scipy.special import expit
from scipy.stats import norm

from sdbirds.ingest.point_counts import detection_history


# -----------------------------------------------------------------------------
# Design matrices and likelihood
# -----------------------------------------------------------------------------

def _design(site_covs: Optional[pd.DataFrame], covs: Sequence[str], index: pd.Index) -> np.ndarray:
    cols = [np.ones(len(index))]
    for c in covs:
        if site_covs is None or c not in site_covs.columns:
            raise KeyError(f"Site covariate '{c}' not available")
        cols.append(site_covs.loc[index, c].to_numpy(dtype=float))
    return np.column_stack(cols)


def _neg_loglik(theta: np.ndarray, y: np.ndarray, surveyed: np.ndarray,
                X: np.ndarray, Z: np.ndarray) -> float:
    kx = X.shape[1]
    psi = expit(X @ theta[:kx])
    p = expit(Z @ theta[kx:])

    eps = 1e-12
    log_p = np.log(np.clip(p, eps, 1.0))
    log_q = np.log(np.clip(1.0 - p, eps, 1.0))

    # sum over surveyed visits of log p^y (1-p)^(1-y)
    ll_det = (surveyed * (y * log_p[:, None] + (1.0 - y) * log_q[:, None])).sum(axis=1)
    detected = (surveyed * y).sum(axis=1) > 0

    lik = np.where(
        detected,
        psi * np.exp(ll_det),
        psi * np.exp(ll_det) + (1.0 - psi),
    )
    return float(-np.log(np.clip(lik, eps, None)).sum())


def _numeric_hessian(f, x: np.ndarray, step: float = 1e-4) -> np.ndarray:
    k = x.size
    h = np.zeros((k, k))
    for i in range(k):
        for j in range(i, k):
            ei = np.zeros(k)
            ej = np.zeros(k)
            ei[i] = step
            ej[j] = step
            v = (f(x + ei + ej) - f(x + ei - ej) - f(x - ei + ej) + f(x - ei - ej)) / (4 * step * step)
            h[i, j] = h[j, i] = v
    return h


# -----------------------------------------------------------------------------
# Fit
# -----------------------------------------------------------------------------

@dataclass
class OccupancyFit:
    coefficients: pd.DataFrame
    loglik: float
    aic: float
    n_sites: int
    naive_occupancy: float
    converged: bool
    psi_covs: List[str]
    p_covs: List[str]
    sites: pd.Index

    def _coef(self, submodel: str) -> np.ndarray:
        c = self.coefficients
        return c.loc[c["submodel"] == submodel, "estimate"].to_numpy()

    def predict(self, site_covs: Optional[pd.DataFrame] = None, index: Optional[pd.Index] = None) -> pd.DataFrame:
        """Occupancy (psi) and detection (p) probabilities per site."""
        if site_covs is None and index is None:
            raise ValueError("Need site_covs or an index to predict for")
        idx = site_covs.index if site_covs is not None else index
        X = _design(site_covs, self.psi_covs, idx)
        Z = _design(site_covs, self.p_covs, idx)
        return pd.DataFrame({
            "psi": expit(X @ self._coef("psi")),
            "p": expit(Z @ self._coef("p")),
        }, index=idx)


def fit_occupancy(
    history: pd.DataFrame,
    site_covs: Optional[pd.DataFrame] = None,
    *,
    psi_covs: Sequence[str] = (),
    p_covs: Sequence[str] = (),
) -> OccupancyFit:
    """Fit psi(~psi_covs) p(~p_covs) to a site x visit detection history.

    Args:
        history: 1 detected / 0 not detected / NaN not surveyed; indexed by site
        site_covs: Covariates indexed by site (must cover every surveyed site)
        psi_covs: Occupancy covariates
        p_covs: Detection covariates

    Raises:
        ValueError: On values other than 0/1/NaN, or no surveyed sites
    """
    psi_covs, p_covs = list(psi_covs), list(p_covs)
    h = history.astype(float)
    vals = h.to_numpy()
    if not np.isin(vals[~np.isnan(vals)], (0.0, 1.0)).all():
        raise ValueError("Detection history must contain only 0, 1 or NaN")

    surveyed_any = ~np.isnan(vals).all(axis=1)
    if not surveyed_any.all():
        print(f"  - warning: {int((~surveyed_any).sum())} sites never surveyed; dropped")
    h = h.loc[surveyed_any]
    if h.empty:
        raise ValueError("No surveyed sites in detection history")

    if psi_covs or p_covs:
        if site_covs is None:
            raise ValueError("Covariates requested but no site_covs given")
        missing_sites = h.index.difference(site_covs.index)
        if len(missing_sites):
            raise KeyError(f"site_covs missing {len(missing_sites)} sites: {list(missing_sites[:5])}")
        cov_na = site_covs.loc[h.index, psi_covs + p_covs].isna().any(axis=1)
        if cov_na.any():
            print(f"  - warning: {int(cov_na.sum())} sites with missing covariates dropped")
            h = h.loc[~cov_na.to_numpy()]
        if h.empty:
            raise ValueError("No surveyed sites with complete covariates")

    y_raw = h.to_numpy()
    surveyed = (~np.isnan(y_raw)).astype(float)
    y = np.nan_to_num(y_raw, nan=0.0)

    X = _design(site_covs, psi_covs, h.index)
    Z = _design(site_covs, p_covs, h.index)
    k = X.shape[1] + Z.shape[1]

    def f(theta: np.ndarray) -> float:
        return _neg_loglik(theta, y, surveyed, X, Z)

    res = minimize(f, np.zeros(k), method="BFGS")
    theta = res.x

    cov = None
    try:
        cov = np.linalg.inv(_numeric_hessian(f, theta))
    except np.linalg.LinAlgError:
        print("  - warning: singular Hessian; standard errors unavailable")
    se = np.sqrt(np.clip(np.diag(cov), 0, None)) if cov is not None else np.full(k, np.nan)

    terms = (["(Intercept)"] + psi_covs) + (["(Intercept)"] + p_covs)
    submodels = ["psi"] * X.shape[1] + ["p"] * Z.shape[1]
    with np.errstate(divide="ignore", invalid="ignore"):
        z = theta / se
    coefs = pd.DataFrame({
        "submodel": submodels,
        "term": terms,
        "estimate": theta,
        "std_error": se,
        "z_value": z,
        "p_value": 2 * norm.sf(np.abs(z)),
    })

    detected = (y * surveyed).sum(axis=1) > 0
    loglik = -float(res.fun)
    return OccupancyFit(
        coefficients=coefs,
        loglik=loglik,
        aic=2 * k - 2 * loglik,
        n_sites=int(len(h)),
        naive_occupancy=float(detected.mean()),
        converged=bool(res.success),
        psi_covs=psi_covs,
        p_covs=p_covs,
        sites=h.index,
    )


# -----------------------------------------------------------------------------
# All species
# -----------------------------------------------------------------------------

def fit_species_occupancy(
    counts: pd.DataFrame,
    site_covs: Optional[pd.DataFrame] = None,
    *,
    psi_covs: Sequence[str] = (),
    p_covs: Sequence[str] = (),
    min_detections: int = 3,
) -> pd.DataFrame:
    """Fit the occupancy model for every species detected at enough sites.

    Returns one row per species:
        species, n_sites_detected, n_sites, naive_occupancy, psi_mean,
        p_mean, aic, converged, and for the first psi covariate: beta, beta_se, beta_p
    """
    det = counts[counts["species"].notna() & (counts["count"] > 0)]
    per_species = det.groupby("species")["site_id"].nunique().sort_values(ascending=False)
    keep = per_species[per_species >= int(min_detections)]
    skipped = len(per_species) - len(keep)
    print(f"[OCCU] {len(keep)} species with >= {min_detections} detection sites ({skipped} skipped)")

    rows: List[Dict[str, object]] = []
    for species, n_det in keep.items():
        hist = detection_history(counts, species)
        fit = fit_occupancy(hist, site_covs, psi_covs=psi_covs, p_covs=p_covs)

        pred = fit.predict(site_covs.loc[fit.sites] if site_covs is not None else None,
                           index=fit.sites)
        row: Dict[str, object] = {
            "species": species,
            "n_sites_detected": int(n_det),
            "n_sites": fit.n_sites,
            "naive_occupancy": fit.naive_occupancy,
            "psi_mean": float(pred["psi"].mean()),
            "p_mean": float(pred["p"].mean()),
            "aic": fit.aic,
            "converged": fit.converged,
        }
        if psi_covs:
            c = fit.coefficients
            b = c[(c["submodel"] == "psi") & (c["term"] == psi_covs[0])].iloc[0]
            row.update({"beta": b["estimate"], "beta_se": b["std_error"], "beta_p": b["p_value"]})
        rows.append(row)
        print(f"  - {species}: naive={fit.naive_occupancy:.2f} psi={row['psi_mean']:.2f} "
              f"{'ok' if fit.converged else 'NOT CONVERGED'}")

    return pd.DataFrame(rows)
