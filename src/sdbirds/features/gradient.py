#!/usr/bin/env python3
"""gradient.py

Urban-suburban gradient for the survey sites.

Two complementary constructions over the same site variables:

1. Rank-based multi-criteria score
   Each criterion is ranked across sites, oriented so that a higher rank is
   more urban, rescaled to [0, 1], and averaged with weights.

2. Principal component analysis
   Variables are standardized and decomposed; each component's sign is fixed
   so its loading on an anchor variable (one that rises with urbanization,
   e.g. built-up fraction) is positive. PC1 is then the gradient.

build_gradient() computes both and reports how well they agree.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

import numpy as np
import pandas as pd
from scipy.stats import spearmanr
from sklearn.decomposition import PCA
from sklearn.preprocessing import StandardScaler


DEFAULT_CLASS_LABELS = ("rural", "suburban", "urban")


# -----------------------------------------------------------------------------
# Criteria
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class Criterion:
    column: str
    direction: int = 1
    weight: float = 1.0

    def __post_init__(self) -> None:
        if self.direction not in (1, -1):
            raise ValueError(f"direction for '{self.column}' must be 1 or -1, got {self.direction}")
        if not self.weight > 0:
            raise ValueError(f"weight for '{self.column}' must be positive, got {self.weight}")


def criteria_from_config(items: Sequence[Mapping[str, Any]]) -> List[Criterion]:
    """Build criteria from the `gradient.criteria` list in sites.yaml."""
    out = []
    for it in items:
        if not isinstance(it, Mapping) or "column" not in it:
            raise ValueError(f"Gradient criterion needs a 'column': {it}")
        out.append(Criterion(
            column=str(it["column"]),
            direction=int(it.get("direction", 1)),
            weight=float(it.get("weight", 1.0)),
        ))
    if not out:
        raise ValueError("No gradient criteria configured")
    return out


def _require(df: pd.DataFrame, columns: Sequence[str]) -> None:
    missing = [c for c in columns if c not in df.columns]
    if missing:
        raise KeyError(f"Site table missing gradient columns {missing}")


# -----------------------------------------------------------------------------
# Rank-based score
# -----------------------------------------------------------------------------

def rank_score(
    df: pd.DataFrame,
    criteria: Sequence[Criterion],
    *,
    key: str = "site_id",
) -> pd.Series:
    """Weighted mean of rescaled, direction-oriented ranks (0 = least urban).

    Sites with any missing criterion get NaN and do not take part in the
    ranking of the others. Ties share the average rank.
    """
    cols = [c.column for c in criteria]
    _require(df, cols)

    complete = df[cols].notna().all(axis=1)
    n = int(complete.sum())
    if n < 2:
        raise ValueError(f"Rank score needs at least two sites with all criteria, got {n}")

    sub = df.loc[complete, cols]
    total_w = sum(c.weight for c in criteria)
    score = pd.Series(0.0, index=sub.index)
    for c in criteria:
        r = (sub[c.column] * c.direction).rank(method="average")
        score += c.weight * (r - 1.0) / (n - 1.0)
    score /= total_w

    out = pd.Series(np.nan, index=df.index, name="rank_score")
    out.loc[score.index] = score
    if key in df.columns:
        dropped = df.loc[~complete, key].tolist()
        if dropped:
            print(f"  - warning: {len(dropped)} sites without all criteria get no rank score: {dropped[:10]}")
    return out


def classify_gradient(
    score: pd.Series,
    labels: Sequence[str] = DEFAULT_CLASS_LABELS,
) -> pd.Series:
    """Equal-count classes over the non-missing scores (low -> high)."""
    valid = score.dropna()
    k = len(labels)
    if valid.size < k:
        raise ValueError(f"Need at least {k} scored sites for {k} classes, got {valid.size}")
    # rank first so ties never collapse quantile edges
    cls = pd.qcut(valid.rank(method="first"), q=k, labels=list(labels))
    return cls.reindex(score.index).rename("gradient_class")


# -----------------------------------------------------------------------------
# PCA gradient
# -----------------------------------------------------------------------------

@dataclass
class PCAGradient:
    scores: pd.DataFrame
    loadings: pd.DataFrame
    explained_variance_ratio: pd.Series
    dropped: List[Any] = field(default_factory=list)

    @property
    def pc1(self) -> pd.Series:
        return self.scores["PC1"]


def pca_gradient(
    df: pd.DataFrame,
    variables: Sequence[str],
    *,
    anchor: Optional[str] = None,
    n_components: int = 2,
    key: str = "site_id",
) -> PCAGradient:
    """PCA on standardized variables with anchor-based sign orientation.

    Args:
        df: Site table
        variables: Columns entering the PCA
        anchor: Column whose loading is forced positive on every component
                (default: first variable)
        n_components: Number of components kept (capped at min(n_vars, n_sites))
        key: Site id column used to index the scores

    Returns:
        PCAGradient with scores indexed by site id (or row index).
    """
    variables = list(variables)
    _require(df, variables)
    anchor = anchor or variables[0]
    if anchor not in variables:
        raise ValueError(f"Anchor '{anchor}' must be one of the PCA variables {variables}")

    complete = df[variables].notna().all(axis=1)
    data = df.loc[complete]
    dropped = df.loc[~complete, key].tolist() if key in df.columns else df.index[~complete].tolist()
    if dropped:
        print(f"  - warning: {len(dropped)} sites with missing PCA variables dropped: {dropped[:10]}")
    if len(data) < 2:
        raise ValueError(f"PCA needs at least two complete sites, got {len(data)}")

    k = min(int(n_components), len(variables), len(data))
    X = StandardScaler().fit_transform(data[variables].to_numpy(dtype=float))
    pca = PCA(n_components=k)
    scores = pca.fit_transform(X)
    components = pca.components_.copy()

    a = variables.index(anchor)
    for i in range(k):
        if components[i, a] < 0:
            components[i] *= -1
            scores[:, i] *= -1

    names = [f"PC{i + 1}" for i in range(k)]
    index = data[key].to_numpy() if key in data.columns else data.index
    return PCAGradient(
        scores=pd.DataFrame(scores, index=pd.Index(index, name=key), columns=names),
        loadings=pd.DataFrame(components.T, index=pd.Index(variables, name="variable"), columns=names),
        explained_variance_ratio=pd.Series(pca.explained_variance_ratio_, index=names, name="explained_variance_ratio"),
        dropped=dropped,
    )


# -----------------------------------------------------------------------------
# Both together
# -----------------------------------------------------------------------------

def build_gradient(
    site_table: pd.DataFrame,
    criteria: Sequence[Criterion],
    *,
    anchor: Optional[str] = None,
    n_components: int = 2,
    labels: Sequence[str] = DEFAULT_CLASS_LABELS,
    key: str = "site_id",
) -> Dict[str, Any]:
    """Rank score + PCA gradient on the site table.

    Returns dict with:
        table     → site_table plus rank_score, gradient_pc1, gradient_class
        pca       → PCAGradient
        spearman  → rank correlation between rank_score and gradient_pc1
    """
    out = site_table.copy()
    out["rank_score"] = rank_score(out, criteria, key=key)

    pca = pca_gradient(out, [c.column for c in criteria], anchor=anchor,
                       n_components=n_components, key=key)
    out["gradient_pc1"] = out[key].map(pca.pc1)
    out["gradient_class"] = classify_gradient(out["rank_score"], labels)

    both = out[["rank_score", "gradient_pc1"]].dropna()
    rho = float(spearmanr(both["rank_score"], both["gradient_pc1"])[0]) if len(both) > 2 else float("nan")

    evr = ", ".join(f"{k}={v:.2f}" for k, v in pca.explained_variance_ratio.items())
    print(f"[GRADIENT] {int(out['rank_score'].notna().sum())} sites scored; explained variance: {evr}")
    print(f"[GRADIENT] Spearman(rank_score, PC1) = {rho:.3f}")
    print("[GRADIENT] PC1 loadings:")
    for var, v in pca.loadings["PC1"].items():
        print(f"  - {var}: {v:+.3f}")

    return {"table": out, "pca": pca, "spearman": rho}
