"""
Red gum understory: variance partitioning of the occurrence model

Splits each species' linear predictor into the terms of a fitted occurrence
model and reports, per posterior draw, the share of the total attributable to
the intercept, the latent variables, flood group, stem density, and the row
random effects. Shares are summarized by posterior mean and 95% HPD interval
and drawn as one stacked bar per species.

Usage:
  uv run python analysis/06_variance_partition/variance_partition.py [--survey 2013]
      [--variant flood_stems_ssvs] [--run-id ...]

Requires the cached posterior data/<survey>/mcmc/occurrence_<variant>.nc
(from phase 04 or 05); it is never refitted here.

Outputs (in results/<survey>/06_variance_partition/<date>/):
  - data/:   variance_partition.parquet (long), variance_partition_means.parquet (wide)
  - plots/:  variance_partition.png, variance_partition.pdf
  - run_info.json, run_log.txt, 06_variance_partition_report.html
"""

import argparse
import sys
from pathlib import Path

import matplotlib

matplotlib.use("Agg")

import arviz as az
import matplotlib.pyplot as plt
import numpy as np
import polars as pl

sys.path.insert(0, str(Path(__file__).resolve().parent.parent.parent))

from redgum.config import DATA_ROOT, DEFAULT_SURVEY, MIN_SPECIES_PLOTS
from redgum.survey import SurveyDesign, load_table

try:
    from analysis.run_context import RunContext, print_header, resolve_upstream_dir
except ModuleNotFoundError:
    from run_context import RunContext, print_header, resolve_upstream_dir  # type: ignore[no-redef]

try:
    from analysis.model_spec import MODEL_VARIANTS, OccurrenceModelSpec, get_variant
except ModuleNotFoundError:
    from model_spec import (  # type: ignore[no-redef]
        MODEL_VARIANTS,
        OccurrenceModelSpec,
        get_variant,
    )

try:
    from analysis.sampling import load_cached_idata
except ModuleNotFoundError:
    from sampling import load_cached_idata  # type: ignore[no-redef]

try:
    from analysis.posterior import hpdi
except ModuleNotFoundError:
    from posterior import hpdi  # type: ignore[no-redef]

try:
    from analysis.plotting import save_pdf
except ModuleNotFoundError:
    from plotting import save_pdf  # type: ignore[no-redef]

try:
    from analysis.occurrence_lv import cache_path, prepare_occurrence_data
except ModuleNotFoundError:
    from occurrence_lv import cache_path, prepare_occurrence_data  # type: ignore[no-redef]

try:
    from analysis.occurrence_covariates import design_matrix
except ModuleNotFoundError:
    from occurrence_covariates import design_matrix  # type: ignore[no-redef]

try:
    from analysis.variance_partition_report import build_variance_partition_report
except ModuleNotFoundError:
    from variance_partition_report import (  # type: ignore[no-redef]
        build_variance_partition_report,
    )

# ── Primer ───────────────────────────────────────────────────────────────────

VARIANCE_PARTITION_PRIMER = """\
# Variance Partitioning

## Purpose

How much of each species' modelled occurrence is explained by flood history,
by red gum stem density, and by residual co-occurrence (latent variables)?

## Method

For every posterior draw the probit-scale linear predictor of species j is a
sum of terms, each evaluated at all plots:

| Component | Term | Contribution |
|-----------|------|--------------|
| intercept | `intercept[j]` | `intercept[j]^2` |
| latent | `lv[i] . lv_coefs[j]` | variance across plots |
| flood | `x_flood[i] . coefs_flood[j]` | variance across plots |
| stems | `x_stems[i] . coefs_stems[j]` | variance across plots |
| random | `site_effect[site(i)] + plot_effect[i]` | variance across plots |

Contributions are divided by their sum, so the shares of each species sum to 1
in every draw. Components absent from the fitted variant are omitted.

## Inputs

- `data/<survey>/mcmc/occurrence_<variant>.nc` (hard stop if missing)
- `01_data_prep/data/occurrence_matrix.parquet`, `plot_lookup.parquet`
- `05_occurrence_covariates/data/covariates.parquet` (covariate variants only)

## Outputs

| File | Description |
|------|-------------|
| `variance_partition.parquet` | species_code, component, mean, hpd_lower, hpd_upper |
| `variance_partition_means.parquet` | One row per species, one column per component |
"""

COMPONENT_COLORS = {
    "intercept": "#bdbdbd",
    "latent": "#7b5ea7",
    "flood": "#1d3f7a",
    "stems": "#8c5a2b",
    "random": "#5f9e6e",
}


# ── Helpers ──────────────────────────────────────────────────────────────────


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Red gum occurrence variance partitioning")
    parser.add_argument("--survey", default=DEFAULT_SURVEY)
    parser.add_argument("--data-dir", default=DATA_ROOT, help="Root of the data directory")
    parser.add_argument("--prep-dir", default=None, help="Override data prep results directory")
    parser.add_argument(
        "--covariates-dir", default=None, help="Override covariate model results directory"
    )
    parser.add_argument("--run-id", default=None, help="Run ID for grouped pipeline output")
    parser.add_argument(
        "--variant",
        default="flood_stems_ssvs",
        choices=list(MODEL_VARIANTS),
        help="Fitted occurrence model to partition",
    )
    parser.add_argument(
        "--min-plots",
        type=int,
        default=MIN_SPECIES_PLOTS,
        help="Must match the value the variant was fitted with",
    )
    return parser.parse_args()


def _draws(idata: az.InferenceData, name: str) -> np.ndarray:
    """Posterior draws of *name* with chains stacked: (draw, ...)."""
    if name not in idata.posterior:
        msg = f"Variable {name!r} not in posterior"
        raise KeyError(msg)
    values = idata.posterior[name].values
    return values.reshape(-1, *values.shape[2:])


def _quadratic_variance(coefs: np.ndarray, cov: np.ndarray) -> np.ndarray:
    """Variance across plots of x . c for every draw and species.

    coefs: (draw, species, k); cov: (k, k) or per-draw (draw, k, k) covariance
    of the plot scores x. Returns (draw, species).
    """
    if cov.ndim == 2:
        return np.einsum("djk,kl,djl->dj", coefs, cov, coefs)
    return np.einsum("djk,dkl,djl->dj", coefs, cov, coefs)


def _plot_covariance(x: np.ndarray) -> np.ndarray:
    """Population covariance of the columns of x, always 2-D."""
    return np.atleast_2d(np.cov(x, rowvar=False, bias=True))


# ── Partitioning ─────────────────────────────────────────────────────────────


def variance_components(
    idata: az.InferenceData,
    data: dict,
    spec: OccurrenceModelSpec,
    covariates: np.ndarray | None = None,
    covariate_names: list[str] | None = None,
) -> dict[str, np.ndarray]:
    """Unnormalized contribution of each term, as (draw, species) arrays."""
    components: dict[str, np.ndarray] = {"intercept": _draws(idata, "intercept") ** 2}
    n_draws, n_species = components["intercept"].shape
    if n_species != data["n_species"]:
        msg = (
            f"Posterior has {n_species} species but the data has {data['n_species']}; "
            f"was the variant fitted with a different --min-plots?"
        )
        raise ValueError(msg)

    if spec.n_latent > 0:
        lv = _draws(idata, "lv")  # (draw, plot, latent)
        centered = lv - lv.mean(axis=1, keepdims=True)
        lv_cov = np.einsum("dpk,dpl->dkl", centered, centered) / lv.shape[1]
        components["latent"] = _quadratic_variance(_draws(idata, "lv_coefs"), lv_cov)

    if spec.has_covariates:
        if covariates is None or covariate_names is None:
            msg = f"Variant {spec.name!r} needs its covariate matrix and names"
            raise ValueError(msg)
        coefs = _draws(idata, "coefs")  # (draw, species, covariate)
        for group in spec.covariates:
            cols = [k for k, name in enumerate(covariate_names) if name.startswith(f"{group}_")]
            cov = _plot_covariance(covariates[:, cols])
            components[group] = _quadratic_variance(coefs[:, :, cols], cov)

    if spec.row_effects != "none":
        row = _draws(idata, "site_effect")[:, data["site_idx"]]  # (draw, plot)
        if spec.row_effects == "site+plot":
            row = row + _draws(idata, "plot_effect")
        components["random"] = np.broadcast_to(
            row.var(axis=1)[:, None], (n_draws, n_species)
        ).copy()

    return components


def variance_partition(
    idata: az.InferenceData,
    data: dict,
    spec: OccurrenceModelSpec,
    covariates: np.ndarray | None = None,
    covariate_names: list[str] | None = None,
) -> dict[str, np.ndarray]:
    """Per-draw variance shares; for each draw and species the shares sum to 1."""
    components = variance_components(idata, data, spec, covariates, covariate_names)
    total = np.sum(list(components.values()), axis=0)
    if np.any(total <= 0):
        msg = "Linear predictor has zero variance for some draw and species"
        raise ValueError(msg)
    return {name: values / total for name, values in components.items()}


def summarize_partition(
    shares: dict[str, np.ndarray],
    species: list[str],
    prob: float = 0.95,
) -> pl.DataFrame:
    """Long table: species_code, component, mean, hpd_lower, hpd_upper."""
    rows = []
    for component, values in shares.items():
        for j, code in enumerate(species):
            lo, hi = hpdi(values[:, j], prob)
            rows.append(
                {
                    "species_code": code,
                    "component": component,
                    "mean": float(values[:, j].mean()),
                    "hpd_lower": lo,
                    "hpd_upper": hi,
                }
            )
    return pl.DataFrame(rows)


def partition_means(summary: pl.DataFrame) -> pl.DataFrame:
    """Wide posterior mean shares, species sorted by descending latent share."""
    components = summary["component"].unique(maintain_order=True).to_list()
    wide = summary.pivot(on="component", index="species_code", values="mean")
    sort_col = "latent" if "latent" in components else components[-1]
    return wide.select("species_code", *components).sort(sort_col, descending=True)


def plot_partition(means: pl.DataFrame, variant: str, out_dir: Path) -> plt.Figure:
    """Stacked bars of posterior mean shares, one bar per species."""
    components = [c for c in means.columns if c != "species_code"]
    species = means["species_code"].to_list()
    x = np.arange(len(species))
    fig, ax = plt.subplots(figsize=(max(8, 0.18 * len(species)), 5))
    bottom = np.zeros(len(species))
    for comp in components:
        vals = means[comp].to_numpy()
        ax.bar(x, vals, bottom=bottom, width=0.85, label=comp, color=COMPONENT_COLORS.get(comp))
        bottom += vals
    ax.set_xticks(x)
    ax.set_xticklabels(species, rotation=90, fontsize=5)
    ax.set_xlim(-0.6, len(species) - 0.4)
    ax.set_ylim(0, 1)
    ax.set_ylabel("Share of linear predictor variance")
    ax.set_title(f"Variance partitioning ({variant})")
    ax.legend(loc="upper right", fontsize=8, ncol=len(components), frameon=False)
    fig.tight_layout()
    fig.savefig(out_dir / "variance_partition.png", dpi=150, bbox_inches="tight")
    print("  Saved: variance_partition.png")
    return fig


# ── Main ─────────────────────────────────────────────────────────────────────


def main() -> None:
    args = parse_args()
    design = SurveyDesign(name=args.survey, data_root=Path(args.data_dir))
    spec = get_variant(args.variant)
    prep_dir = resolve_upstream_dir(
        "01_data_prep", design.results_dir, args.run_id,
        Path(args.prep_dir) if args.prep_dir else None,
    )

    with RunContext(
        survey=args.survey,
        analysis_name="06_variance_partition",
        params=vars(args),
        results_root=design.results_root,
        primer=VARIANCE_PARTITION_PRIMER,
        run_id=args.run_id,
    ) as ctx:
        print(f"Red gum variance partitioning — Survey {args.survey}")
        print(f"Variant:   {spec.describe()}")
        print(f"Data prep: {prep_dir}")
        print(f"Output:    {ctx.run_dir}")

        print_header("LOADING")
        lookup = load_table(prep_dir / "data", "plot_lookup")
        occurrence = load_table(prep_dir / "data", "occurrence_matrix")
        data = prepare_occurrence_data(occurrence, lookup, args.min_plots)
        idata = load_cached_idata(cache_path(design.mcmc_dir, args.variant))

        x, names = None, None
        if spec.has_covariates:
            covariates_dir = resolve_upstream_dir(
                "05_occurrence_covariates", design.results_dir, args.run_id,
                Path(args.covariates_dir) if args.covariates_dir else None,
            )
            table = load_table(covariates_dir / "data", "covariates").sort("plot")
            if table["plot"].to_list() != data["plots"]:
                msg = "Covariate table plots do not match the occurrence matrix"
                raise ValueError(msg)
            x, names = design_matrix(table, spec)
            print(f"  Covariates: {', '.join(names)}")

        print_header("PARTITIONING")
        shares = variance_partition(idata, data, spec, x, names)
        summary = summarize_partition(shares, data["species"])
        summary.write_parquet(ctx.data_dir / "variance_partition.parquet")
        means = partition_means(summary)
        means.write_parquet(ctx.data_dir / "variance_partition_means.parquet")
        for comp in shares:
            print(f"  {comp:<10} mean share across species: {means[comp].mean():.3f}")

        fig = plot_partition(means, args.variant, ctx.plots_dir)
        save_pdf(fig, ctx.plots_dir / "variance_partition.pdf", size="A4", orientation="landscape")

        build_variance_partition_report(
            ctx.report,
            spec=spec,
            means=means,
            plots_dir=ctx.plots_dir,
        )


if __name__ == "__main__":
    main()
