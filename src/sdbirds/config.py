#!/usr/bin/env python3
"""sdbirds.config

Shared configuration utilities for the sdbirds CLI subsystems.

This module provides common helpers used across sdbirds.registry,
sdbirds.ingest, sdbirds.geo, sdbirds.features and sdbirds.model.

Design notes:
- YAML loading is strict: files must exist and be valid mappings.
- Bbox handling supports both top-level and per-sector bounds in sites YAML.
- Site ids are normalized in one place so every table joins on the same key.
- All functions are pure (no side effects on import).
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

import yaml


# -----------------------------------------------------------------------------
# YAML loading
# -----------------------------------------------------------------------------

def load_yaml(path: Path) -> Dict[str, Any]:
    """Load a YAML file and return as dict.

    Raises SystemExit on missing file or invalid format (non-mapping).
    """
    if not path.exists():
        raise SystemExit(f"Config not found: {path}")
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if not isinstance(data, dict):
        raise SystemExit(f"Expected YAML mapping at {path}")
    return data


def source_config(sources_yaml: Dict[str, Any], source_id: str) -> Dict[str, Any]:
    """Return the `sources: -> <source_id>` block or exit."""
    sources = sources_yaml.get("sources", {})
    cfg = sources.get(source_id) if isinstance(sources, dict) else None
    if not isinstance(cfg, dict):
        raise SystemExit(f"sources.yaml missing sources: -> {source_id}")
    return cfg


# -----------------------------------------------------------------------------
# Site ids
# -----------------------------------------------------------------------------

def normalize_site_id(x: Any) -> str:
    """Normalize a survey site id to its canonical join key.

    ' cn_01 ', 'CN 01' and 'CN-01' all become 'CN-01'.
    Returns empty string for missing inputs.
    """
    if x is None:
        return ""
    s = str(x).strip()
    if not s or s.lower() == "nan":
        return ""
    s = re.sub(r"[\s_]+", "-", s)
    s = re.sub(r"-{2,}", "-", s)
    return s.upper()


# -----------------------------------------------------------------------------
# Bounding box utilities
# -----------------------------------------------------------------------------
# Used by the MODIS fetcher (site subsets) and dry-run summaries.

def coerce_bbox(x: Any) -> Optional[Tuple[float, float, float, float]]:
    """Try to coerce [xmin, ymin, xmax, ymax] into a bbox tuple.

    Returns None if input is invalid or missing.
    """
    if x is None:
        return None
    if isinstance(x, (list, tuple)) and len(x) == 4:
        try:
            xmin, ymin, xmax, ymax = map(float, x)
        except (TypeError, ValueError):
            return None
        return (xmin, ymin, xmax, ymax)
    return None


def union_bbox(
    bboxes: Iterable[Tuple[float, float, float, float]]
) -> Optional[Tuple[float, float, float, float]]:
    """Compute the bounding box that contains all input bboxes.

    Returns None if input is empty.
    """
    bboxes = list(bboxes)
    if not bboxes:
        return None
    xmin = min(b[0] for b in bboxes)
    ymin = min(b[1] for b in bboxes)
    xmax = max(b[2] for b in bboxes)
    ymax = max(b[3] for b in bboxes)
    return (xmin, ymin, xmax, ymax)


def aoi_from_sites_yaml(
    sites_yaml: Dict[str, Any]
) -> Optional[Tuple[float, float, float, float]]:
    """Resolve the study-area bbox from a sites YAML dict.

    Accepts either:
    - top-level `bounds: [xmin, ymin, xmax, ymax]`
    - per-sector entries with `bounds: [...]` under `sectors:`

    If per-sector bounds exist, returns their union.
    Returns None if no valid bounds found.
    """
    bbox = coerce_bbox(sites_yaml.get("bounds"))
    if bbox:
        return bbox

    sectors = sites_yaml.get("sectors")
    if isinstance(sectors, dict):
        bboxes: List[Tuple[float, float, float, float]] = []
        for s in sectors.values():
            if isinstance(s, dict):
                b = coerce_bbox(s.get("bounds"))
                if b:
                    bboxes.append(b)
        return union_bbox(bboxes)

    return None


def format_bbox(b: Tuple[float, float, float, float], precision: int = 5) -> str:
    """Format a bbox tuple as a readable string."""
    return f"[{b[0]:.{precision}f}, {b[1]:.{precision}f}, {b[2]:.{precision}f}, {b[3]:.{precision}f}]"


# -----------------------------------------------------------------------------
# Default paths
# -----------------------------------------------------------------------------
# Centralized so all CLIs use the same defaults.

DEFAULT_SOURCES_YAML = Path("config/sources.yaml")
DEFAULT_SITES_YAML = Path("config/sites.yaml")

DEFAULT_SITES_GPKG = Path("data/interim/vectors/sites.gpkg")
DEFAULT_TABLES_DIR = Path("data/interim/tables")
DEFAULT_PROCESSED_DIR = Path("data/processed")
DEFAULT_SITE_TABLE = DEFAULT_PROCESSED_DIR / "site_table.parquet"
DEFAULT_GRADIENT_TABLE = DEFAULT_PROCESSED_DIR / "site_gradient.parquet"
DEFAULT_MODELS_DIR = DEFAULT_PROCESSED_DIR / "models"
