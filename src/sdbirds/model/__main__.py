#!/usr/bin/env python3
"""sdbirds.model

Statistical modeling CLI for sdbirds.

This is one of several sdbirds subsystem CLIs:
- sdbirds.registry → survey-site definition and buffers
- sdbirds.ingest   → i-Tree sectors, bird point counts, MODIS time series
- sdbirds.geo      → zonal statistics over buffered sites
- sdbirds.features → site table join and urban-suburban gradient
- sdbirds.model    → diversity regression and occupancy models (this file)

Outputs (data/processed/models/):
- diversity_lm_coefficients.csv  → one block of terms per response
- diversity_lm_fits.csv          → r², adj. r², AIC, n per response
- occupancy_species.csv          → one row per species

Examples:
  python -m sdbirds.model diversity-lm --responses richness shannon --predictors gradient_pc1
  python -m sdbirds.model occupancy --psi-covs gradient_pc1 --min-detections 3
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import List, Optional

from sdbirds.config import (
    load_yaml,
    source_config,
    DEFAULT_SOURCES_YAML,
    DEFAULT_GRADIENT_TABLE,
    DEFAULT_MODELS_DIR,
)


# -----------------------------------------------------------------------------
# CLI structure
# -----------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for sdbirds.model."""
    ap = argparse.ArgumentParser(
        prog="sdbirds.model",
        description="Diversity regression and occupancy models for sdbirds",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    # --- Global args ---
    ap.add_argument("--sources-yaml", type=Path, default=DEFAULT_SOURCES_YAML,
                    help=f"Path to sources.yaml (default: {DEFAULT_SOURCES_YAML})")
    ap.add_argument("--gradient-table", type=Path, default=DEFAULT_GRADIENT_TABLE,
                    help=f"Site table with gradient (default: {DEFAULT_GRADIENT_TABLE})")
    ap.add_argument("--out-dir", type=Path, default=DEFAULT_MODELS_DIR,
                    help=f"Output directory (default: {DEFAULT_MODELS_DIR})")
    ap.add_argument("--dry-run", action="store_true", help="Print planned actions without writing files")
    ap.add_argument("--overwrite", action="store_true", help="Overwrite existing output files")

    sub = ap.add_subparsers(dest="command", required=True)

    # --- diversity-lm ---
    lm = sub.add_parser("diversity-lm", help="OLS of diversity indices on the gradient")
    lm.add_argument("--responses", nargs="+", default=["richness", "shannon", "simpson"],
                    help="Diversity columns to model (default: richness shannon simpson)")
    lm.add_argument("--predictors", nargs="+", default=["gradient_pc1"],
                    help="Predictor columns (default: gradient_pc1)")

    # --- occupancy ---
    occ = sub.add_parser("occupancy", help="Single-season occupancy per species")
    occ.add_argument("--psi-covs", nargs="*", default=["gradient_pc1"],
                     help="Occupancy covariates (default: gradient_pc1)")
    occ.add_argument("--p-covs", nargs="*", default=[], help="Detection covariates (default: none)")
    occ.add_argument("--min-detections", type=int, default=3,
                     help="Minimum number of sites with detections to fit a species (default: 3)")
    occ.add_argument("--no-standardize", action="store_false", dest="standardize",
                     help="Use covariates as stored instead of z-scores")

    return ap


# -----------------------------------------------------------------------------
# Command handlers
# -----------------------------------------------------------------------------

def _read_parquet(path: Path, what: str):
    if not path.exists():
        raise SystemExit(f"{what} not found: {path}")
    import pandas as pd

    return pd.read_parquet(path)


def _handle_diversity_lm(args: argparse.Namespace) -> int:
    """Handle the diversity-lm subcommand."""
    coef_csv = args.out_dir / "diversity_lm_coefficients.csv"
    fits_csv = args.out_dir / "diversity_lm_fits.csv"

    if coef_csv.exists() and not args.overwrite:
        print(f"[SKIP] {coef_csv}")
        return 0

    if args.dry_run:
        print("[dry-run] Would fit diversity models:")
        for r in args.responses:
            print(f"  - {r} ~ {' + '.join(args.predictors)}")
        print(f"  Output: {coef_csv}, {fits_csv}")
        return 0

    import pandas as pd
    from sdbirds.model.diversity import fit_diversity_lm

    data = _read_parquet(args.gradient_table, "Gradient table")

    coefs, fits = [], []
    for response in args.responses:
        try:
            fit = fit_diversity_lm(data, response, args.predictors)
        except (KeyError, ValueError) as e:
            raise SystemExit(f"Model {response} ~ {' + '.join(args.predictors)} failed: {e}") from e
        c = fit.coefficients.copy()
        c.insert(0, "response", response)
        coefs.append(c)
        fits.append(fit.summary_row())
        print(f"[LM] {fit.formula}: n={fit.n} r2={fit.r_squared:.3f} AIC={fit.aic:.1f}")
        for _, row in fit.coefficients.iterrows():
            print(f"  - {row['term']}: {row['estimate']:+.4f} (SE {row['std_error']:.4f}, p={row['p_value']:.3g})")

    args.out_dir.mkdir(parents=True, exist_ok=True)
    pd.concat(coefs, ignore_index=True).to_csv(coef_csv, index=False)
    pd.DataFrame(fits).to_csv(fits_csv, index=False)
    print(f"Wrote {coef_csv}")
    print(f"Wrote {fits_csv}")
    return 0


def _handle_occupancy(args: argparse.Namespace) -> int:
    """Handle the occupancy subcommand."""
    out_csv = args.out_dir / "occupancy_species.csv"
    pc_path = Path(source_config(load_yaml(args.sources_yaml), "point_counts")
                   .get("out_path", "data/interim/tables/point_counts.parquet"))

    if out_csv.exists() and not args.overwrite:
        print(f"[SKIP] {out_csv}")
        return 0

    if args.dry_run:
        print("[dry-run] Would fit occupancy models:")
        print(f"  Point counts: {pc_path}")
        print(f"  psi ~ {' + '.join(args.psi_covs) or '1'}; p ~ {' + '.join(args.p_covs) or '1'}")
        print(f"  Min detection sites: {args.min_detections}")
        print(f"  Output: {out_csv}")
        return 0

    from sdbirds.model.occupancy import fit_species_occupancy

    counts = _read_parquet(pc_path, "Point-count table")
    covs = list(dict.fromkeys(args.psi_covs + args.p_covs))
    site_covs = None
    if covs:
        gradient = _read_parquet(args.gradient_table, "Gradient table")
        missing = [c for c in covs if c not in gradient.columns]
        if missing:
            raise SystemExit(f"Covariates not in {args.gradient_table}: {missing}")
        site_covs = gradient.set_index("site_id")[covs].astype(float)
        if args.standardize:
            sd = site_covs.std(ddof=0)
            flat = [c for c in covs if not sd[c] > 0]
            if flat:
                raise SystemExit(f"Covariates with no variation can't be standardized: {flat}")
            site_covs = (site_covs - site_covs.mean()) / sd
        # Occupancy is fitted on the sites that have covariates
        counts = counts[counts["site_id"].isin(site_covs.index)]

    try:
        summary = fit_species_occupancy(
            counts,
            site_covs,
            psi_covs=args.psi_covs,
            p_covs=args.p_covs,
            min_detections=args.min_detections,
        )
    except (KeyError, ValueError) as e:
        raise SystemExit(f"Occupancy models failed: {e}") from e

    args.out_dir.mkdir(parents=True, exist_ok=True)
    summary.to_csv(out_csv, index=False)
    print(f"Wrote {len(summary)} species -> {out_csv}")
    return 0


# -----------------------------------------------------------------------------
# Main entrypoint
# -----------------------------------------------------------------------------

def main(argv: Optional[List[str]] = None) -> int:
    """Main entrypoint for sdbirds.model CLI."""
    ap = build_parser()
    args = ap.parse_args(argv)

    handlers = {
        "diversity-lm": _handle_diversity_lm,
        "occupancy": _handle_occupancy,
    }

    handler = handlers.get(args.command)
    if handler is None:
        raise SystemExit(f"Unknown command: {args.command}")

    return handler(args)


if __name__ == "__main__":
    raise SystemExit(main())
