#!/usr/bin/env python3
"""diversity.py

Bird alpha-diversity per site and its linear relationship with the
urbanization gradient.

Indices (from a site x species abundance matrix):
- richness  S          number of species with abundance > 0
- abundance N          total individuals
- shannon   H'         -sum(p_i ln p_i)
- simpson   1 - D      1 - sum(p_i^2)
- evenness  J          H' / ln S  (NaN when S <= 1)

Regression is ordinary least squares through the statsmodels formula API.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import numpy as np
import pandas as pd
import statsmodels.formula.api as smf


def diversity_indices(matrix: pd.DataFrame) -> pd.DataFrame:
    """Per-site diversity indices from a site x species abundance matrix."""
    m = matrix.to_numpy(dtype=float)
    if (m < 0).any():
        raise ValueError("Abundance matrix has negative values")

    n = m.sum(axis=1)
    s = (m > 0).sum(axis=1)
    with np.errstate(divide="ignore", invalid="ignore"):
        p = np.where(n[:, None] > 0, m / n[:, None], 0.0)
        plogp = np.where(p > 0, p * np.log(p), 0.0)
    shannon = -plogp.sum(axis=1)
    simpson = np.where(n > 0, 1.0 - (p ** 2).sum(axis=1), 0.0)
    with np.errstate(divide="ignore", invalid="ignore"):
        evenness = np.where(s > 1, shannon / np.log(np.maximum(s, 2)), np.nan)

    out = pd.DataFrame({
        "richness": s.astype(int),
        "abundance": n.astype(int),
        "shannon": shannon + 0.0,
        "simpson": simpson,
        "evenness": evenness,
    }, index=matrix.index)
    out.index.name = matrix.index.name or "site_id"
    return out.reset_index()


# -----------------------------------------------------------------------------
# Linear models
# -----------------------------------------------------------------------------

@dataclass
class LinearFit:
    response: str
    formula: str
    coefficients: pd.DataFrame
    r_squared: float
    adj_r_squared: float
    aic: float
    n: int
    result: object

    def summary_row(self) -> dict:
        return {
            "response": self.response,
            "formula": self.formula,
            "n": self.n,
            "r_squared": self.r_squared,
            "adj_r_squared": self.adj_r_squared,
            "aic": self.aic,
        }


def fit_diversity_lm(
    data: pd.DataFrame,
    response: str,
    predictors: Sequence[str],
) -> LinearFit:
    """OLS of a diversity index on gradient predictors.

    Rows with a missing response or predictor are dropped first.
    Categorical predictors (e.g. gradient_class) are expanded by patsy.
    """
    predictors = list(predictors)
    missing = [c for c in [response] + predictors if c not in data.columns]
    if missing:
        raise KeyError(f"Columns not in data: {missing}")
    if not predictors:
        raise ValueError("Need at least one predictor")

    d = data[[response] + predictors].dropna()
    dropped = len(data) - len(d)
    if dropped:
        print(f"  - warning: {dropped} rows with missing values dropped for {response}")

    bad = [c for c in [response] + predictors if not c.isidentifier()]
    if bad:
        raise ValueError(f"Column names must be valid identifiers for the formula: {bad}")

    formula = f"{response} ~ " + " + ".join(predictors)
    model = smf.ols(formula, data=d)
    n_params = model.exog.shape[1]
    if len(d) < n_params + 1:
        raise ValueError(f"{response}: {len(d)} rows is too few for {n_params} parameters")

    res = model.fit()
    ci = res.conf_int()
    coefs = pd.DataFrame({
        "term": list(res.params.index),
        "estimate": res.params.to_numpy(),
        "std_error": res.bse.to_numpy(),
        "t_value": res.tvalues.to_numpy(),
        "p_value": res.pvalues.to_numpy(),
        "ci_low": ci.iloc[:, 0].to_numpy(),
        "ci_high": ci.iloc[:, 1].to_numpy(),
    })

    return LinearFit(
        response=response,
        formula=formula,
        coefficients=coefs,
        r_squared=float(res.rsquared),
        adj_r_squared=float(res.rsquared_adj),
        aic=float(res.aic),
        n=int(res.nobs),
        result=res,
    )

