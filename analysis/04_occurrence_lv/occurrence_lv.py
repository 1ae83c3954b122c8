"""
Red gum understory: latent-variable occurrence model

Joint species distribution model for plot x species presence/absence. A probit
link ties each occurrence to a species intercept, plot-level random effects, and
two latent variables whose species loadings capture residual co-occurrence.
With no covariates the latent scores give a model-based ordination of the
plots, drawn here with convex hulls around the flood groups.

build_occurrence_graph() is shared with phases 05 and 06: covariate variants add
flood-group and stem-density coefficients to the same linear predictor.

Usage:
  uv run python analysis/04_occurrence_lv/occurrence_lv.py [--survey 2013]
      [--variant lv_rows] [--refit] [--n-samples 2000] [--n-tune 2000] [--n-chains 4]

Outputs (in results/<survey>/04_occurrence_lv/<date>/):
  - data/:   lv_scores.parquet, lv_loadings.parquet, residual_correlation.parquet,
             species_intercepts.parquet, occurrence_species.parquet, convergence.json
  - plots/:  ordination.png, ordination.pdf, residual_correlation.png
  - run_info.json, run_log.txt, 04_occurrence_lv_report.html
Posterior cached at data/<survey>/mcmc/occurrence_<variant>.nc (reused unless --refit).
"""

import argparse
import json
import sys
from pathlib import Path

import matplotlib

matplotlib.use("Agg")

import arviz as az
import matplotlib.pyplot as plt
import numpy as np
import polars as pl
import pymc as pm
import pytensor.tensor as pt

sys.path.insert(0, str(Path(__file__).resolve().parent.parent.parent))

from redgum.config import (
    DATA_ROOT,
    DEFAULT_SURVEY,
    MIN_SPECIES_PLOTS,
    N_CHAINS,
    N_SAMPLES,
    N_TUNE,
    RANDOM_SEED,
)
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
    from analysis.sampling import convergence_summary, fit_or_load
except ModuleNotFoundError:
    from sampling import convergence_summary, fit_or_load  # type: ignore[no-redef]

try:
    from analysis.posterior import attach_labels, posterior_matrix, summarize_matrix
except ModuleNotFoundError:
    from posterior import (  # type: ignore[no-redef]
        attach_labels,
        posterior_matrix,
        summarize_matrix,
    )

try:
    from analysis.plotting import plot_hulls, save_fig, save_pdf
except ModuleNotFoundError:
    from plotting import plot_hulls, save_fig, save_pdf  # type: ignore[no-redef]

try:
    from analysis.flood_groups import load_flood_groups
except ModuleNotFoundError:
    from flood_groups import load_flood_groups  # type: ignore[no-redef]

try:
    from analysis.occurrence_lv_report import build_occurrence_lv_report
except ModuleNotFoundError:
    from occurrence_lv_report import build_occurrence_lv_report  # type: ignore[no-redef]

# ── Primer ───────────────────────────────────────────────────────────────────

OCCURRENCE_LV_PRIMER = """\
# Latent-Variable Occurrence Model

## Purpose

Models which understory species occur in which plots without any measured
covariates. Two latent variables absorb the shared structure in species
co-occurrence; their plot scores are a model-based ordination, and their
species loadings give residual correlations between species.

## Method

```
y[i, j]       ~ Bernoulli(Phi(eta[i, j]))         -- plot i, species j, probit link
eta[i, j]     = intercept[j] + row[i] + sum_k lv[i, k] * lv_coefs[j, k]
intercept[j]  ~ Normal(0, 2)
lv[i, k]      ~ Normal(0, 1)                      -- 2 latent variables
lv_coefs[j,k] = 0 for j < k                       -- upper triangle fixed at zero
lv_coefs[k,k] ~ HalfNormal(1)                     -- positive diagonal (sign)
lv_coefs[j,k] ~ Normal(0, 1) for j > k
row[i]        = site_effect[site[i]] + plot_effect[i]
site_effect   = site_sd * Normal(0, 1),  site_sd ~ HalfNormal(1)   -- non-centered
plot_effect   = plot_sd * Normal(0, 1),  plot_sd ~ HalfNormal(1)
```

The zero upper triangle and positive diagonal remove the rotation and sign
invariance of the latent variables. Species recorded in fewer than 5 plots are
excluded. Latent scores are initialized from the principal components of the
occurrence matrix. Sampled with nutpie; the posterior is cached and reused
unless `--refit`.

## Inputs

- `01_data_prep/data/occurrence_matrix.parquet`, `plot_lookup.parquet`
- `data/<survey>/derived/flood_groups.parquet` (for the ordination hulls)

## Outputs

| File | Description |
|------|-------------|
| `lv_scores.parquet` | Posterior median latent scores per plot, with flood group |
| `lv_loadings.parquet` | Posterior summary of species loadings |
| `residual_correlation.parquet` | Posterior mean species-species residual correlation |
| `species_intercepts.parquet` | Posterior summary of species intercepts |
| `occurrence_species.parquet` | Species modelled, in model index order |
| `convergence.json` | Share of parameters failing R-hat / ESS / Geweke |
"""

LV_VARIANTS = [name for name, spec in MODEL_VARIANTS.items() if not spec.has_covariates]


# ── Helpers ──────────────────────────────────────────────────────────────────


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Red gum latent-variable occurrence model")
    parser.add_argument("--survey", default=DEFAULT_SURVEY)
    parser.add_argument("--data-dir", default=DATA_ROOT, help="Root of the data directory")
    parser.add_argument("--prep-dir", default=None, help="Override data prep results directory")
    parser.add_argument("--run-id", default=None, help="Run ID for grouped pipeline output")
    parser.add_argument("--variant", default="lv_rows", choices=LV_VARIANTS)
    parser.add_argument("--min-plots", type=int, default=MIN_SPECIES_PLOTS)
    parser.add_argument("--refit", action="store_true", help="Ignore the cached posterior")
    parser.add_argument("--n-samples", type=int, default=N_SAMPLES, help="MCMC draws per chain")
    parser.add_argument("--n-tune", type=int, default=N_TUNE, help="MCMC tuning draws (discarded)")
    parser.add_argument("--n-chains", type=int, default=N_CHAINS, help="Number of MCMC chains")
    return parser.parse_args()


def cache_path(mcmc_dir: Path, variant: str) -> Path:
    return mcmc_dir / f"occurrence_{variant}.nc"


# ── Data ─────────────────────────────────────────────────────────────────────


def prepare_occurrence_data(
    occurrence: pl.DataFrame,
    lookup: pl.DataFrame,
    min_plots: int = MIN_SPECIES_PLOTS,
) -> dict:
    """Presence matrix and index arrays for the occurrence models.

    Species found in fewer than *min_plots* plots are dropped.

    Returns dict with:
    - y: (n_plots, n_species) 0/1 array, rows in plot order
    - plots, species: labels in index order
    - site_idx: 0-based site index per plot; sites: site numbers in index order
    - n_plots, n_species, n_sites, n_dropped
    """
    occurrence = occurrence.sort("plot")
    if occurrence["plot"].to_list() != lookup["plot"].sort().to_list():
        msg = "Occurrence matrix rows do not match the plot lookup"
        raise ValueError(msg)

    all_species = [c for c in occurrence.columns if c != "plot"]
    counts = occurrence.select(all_species).sum().row(0)
    species = [s for s, n in zip(all_species, counts) if n >= min_plots]
    if not species:
        msg = f"No species occur in at least {min_plots} plots"
        raise ValueError(msg)

    plots_sites = lookup.sort("plot")
    sites = sorted(plots_sites["site"].unique().to_list())
    site_pos = {s: i for i, s in enumerate(sites)}

    data = {
        "y": occurrence.select(species).to_numpy().astype(np.int64),
        "plots": occurrence["plot"].to_list(),
        "species": species,
        "site_idx": np.array([site_pos[s] for s in plots_sites["site"].to_list()], dtype=np.int64),
        "sites": sites,
        "n_plots": occurrence.height,
        "n_species": len(species),
        "n_sites": len(sites),
        "n_dropped": len(all_species) - len(species),
    }
    print(
        f"  {data['n_plots']} plots x {data['n_species']} species "
        f"({data['n_dropped']} species in < {min_plots} plots dropped), "
        f"{int(data['y'].sum())} presences"
    )
    return data


def loading_indices(n_species: int, n_latent: int) -> tuple[tuple, tuple]:
    """Row/column indices of the diagonal and the free lower-triangle loadings.

    Entries above the diagonal (j < k) are fixed at zero and appear in neither.
    """
    if n_species < n_latent:
        msg = f"Need at least {n_latent} species for {n_latent} latent variables, got {n_species}"
        raise ValueError(msg)
    diag = (np.arange(n_latent), np.arange(n_latent))
    lower = [(j, k) for k in range(n_latent) for j in range(k + 1, n_species)]
    lower_rows = np.array([j for j, _ in lower], dtype=np.int64)
    lower_cols = np.array([k for _, k in lower], dtype=np.int64)
    return diag, (lower_rows, lower_cols)


def pca_initial_lv(y: np.ndarray, n_latent: int) -> np.ndarray:
    """Standardized principal-component scores of the centered presence matrix.

    Used as starting values for the latent scores so chains start in the same
    rotation and do not split between reflected modes.
    """
    centered = y - y.mean(axis=0, keepdims=True)
    u, s, _ = np.linalg.svd(centered, full_matrices=False)
    scores = u[:, :n_latent] * s[:n_latent]
    return (scores - scores.mean(axis=0)) / (scores.std(axis=0) + 1e-8)


# ── Model ────────────────────────────────────────────────────────────────────


def build_occurrence_graph(
    data: dict,
    spec: OccurrenceModelSpec,
    covariates: np.ndarray | None = None,
    covariate_names: list[str] | None = None,
) -> pm.Model:
    """Build the latent-variable probit occurrence model (unsampled).

    Args:
        data: Output of prepare_occurrence_data().
        spec: Which terms the linear predictor contains.
        covariates: (n_plots, n_covariates) design matrix, required when the
            spec has covariate groups.
        covariate_names: Column names of *covariates*.

    Returns the PyMC model for use with nutpie or pm.sample().
    """
    if spec.has_covariates and covariates is None:
        msg = f"Variant {spec.name!r} needs a covariate matrix"
        raise ValueError(msg)
    if covariates is not None and covariates.shape[0] != data["n_plots"]:
        msg = f"Covariate matrix has {covariates.shape[0]} rows, expected {data['n_plots']}"
        raise ValueError(msg)

    n_species = data["n_species"]
    coords = {
        "plot": data["plots"],
        "species": data["species"],
        "site": data["sites"],
        "latent": [f"LV{k + 1}" for k in range(spec.n_latent)],
    }
    if spec.has_covariates:
        coords["covariate"] = covariate_names or [
            f"x{k + 1}" for k in range(covariates.shape[1])
        ]

    with pm.Model(coords=coords) as model:
        intercept = pm.Normal("intercept", mu=0, sigma=2, dims="species")
        eta = pt.zeros((data["n_plots"], n_species)) + intercept[None, :]

        if spec.n_latent > 0:
            lv = pm.Normal("lv", mu=0, sigma=1, dims=("plot", "latent"))
            (diag_rows, diag_cols), (lower_rows, lower_cols) = loading_indices(
                n_species, spec.n_latent
            )
            diag = pm.HalfNormal("lv_coefs_diag", sigma=1, shape=spec.n_latent)
            loadings = pt.zeros((n_species, spec.n_latent))
            loadings = pt.set_subtensor(loadings[diag_rows, diag_cols], diag)
            if len(lower_rows):
                lower = pm.Normal("lv_coefs_lower", mu=0, sigma=1, shape=len(lower_rows))
                loadings = pt.set_subtensor(loadings[lower_rows, lower_cols], lower)
            lv_coefs = pm.Deterministic("lv_coefs", loadings, dims=("species", "latent"))
            eta = eta + pt.dot(lv, lv_coefs.T)

        if spec.row_effects in ("site", "site+plot"):
            site_sd = pm.HalfNormal("site_sd", sigma=1)
            site_raw = pm.Normal("site_raw", mu=0, sigma=1, dims="site")
            site_effect = pm.Deterministic("site_effect", site_raw * site_sd, dims="site")
            eta = eta + site_effect[data["site_idx"]][:, None]
        if spec.row_effects == "site+plot":
            plot_sd = pm.HalfNormal("plot_sd", sigma=1)
            plot_raw = pm.Normal("plot_raw", mu=0, sigma=1, dims="plot")
            plot_effect = pm.Deterministic("plot_effect", plot_raw * plot_sd, dims="plot")
            eta = eta + plot_effect[:, None]

        if spec.has_covariates:
            x = pt.as_tensor_variable(np.asarray(covariates, dtype=np.float64))
            coefs = spec.coef_prior.build("coefs", ("species", "covariate"))
            eta = eta + pt.dot(x, coefs.T)

        pm.Bernoulli(
            "y",
            p=pm.math.invprobit(eta),
            observed=data["y"],
            dims=("plot", "species"),
        )

    return model


def convergence_vars(spec: OccurrenceModelSpec) -> list[str]:
    """Free parameters (and loadings) checked for convergence."""
    names = ["intercept"]
    if spec.n_latent > 0:
        names += ["lv", "lv_coefs"]
    if spec.row_effects in ("site", "site+plot"):
        names += ["site_sd", "site_effect"]
    if spec.row_effects == "site+plot":
        names += ["plot_sd", "plot_effect"]
    if spec.has_covariates:
        names += ["coefs"]
    return names


# ── Results ──────────────────────────────────────────────────────────────────


def summarize_lv_scores(
    idata: az.InferenceData,
    data: dict,
    lookup: pl.DataFrame,
    flood_groups: pl.DataFrame | None = None,
) -> pl.DataFrame:
    """Posterior median latent score per plot and axis, wide (LV1, LV2, ...)."""
    summary = summarize_matrix(posterior_matrix(idata, ["lv"]))
    wide = (
        summary.select("index_1", "index_2", "median")
        .with_columns(pl.format("LV{}", pl.col("index_2")).alias("axis"))
        .pivot(on="axis", index="index_1", values="median")
        .sort("index_1")
    )
    plots = pl.DataFrame(
        {"index_1": list(range(1, data["n_plots"] + 1)), "plot": data["plots"]},
        schema={"index_1": pl.Int64, "plot": pl.Int64},
    )
    scores = (
        wide.join(plots, on="index_1")
        .drop("index_1")
        .join(lookup.select("plot", "site", "site_plot"), on="plot", how="left")
    )
    if flood_groups is not None:
        scores = scores.join(flood_groups.select("plot", "flood_group"), on="plot", how="left")
    return scores.sort("plot")


def summarize_species_params(
    idata: az.InferenceData,
    data: dict,
    var_names: list[str],
) -> pl.DataFrame:
    """Posterior summaries of species-indexed parameters, labelled by species code."""
    summary = summarize_matrix(posterior_matrix(idata, var_names))
    return attach_labels(summary, "index_1", data["species"], "species_code")


def residual_correlation(idata: az.InferenceData) -> np.ndarray:
    """Posterior mean species x species correlation implied by the loadings.

    On the probit scale the residual covariance is L L' + I, so
    corr[j, j'] = (L L')[j, j'] / sqrt((1 + |L_j|^2)(1 + |L_j'|^2)).
    """
    loadings = idata.posterior["lv_coefs"].values  # (chain, draw, species, lv)
    flat = loadings.reshape(-1, *loadings.shape[2:])
    cov = np.einsum("djk,dlk->djl", flat, flat)
    var = 1.0 + np.einsum("djk,djk->dj", flat, flat)
    corr = cov / np.sqrt(var[:, :, None] * var[:, None, :])
    mean = corr.mean(axis=0)
    np.fill_diagonal(mean, 1.0)
    return mean


def plot_ordination(
    scores: pl.DataFrame,
    loadings: pl.DataFrame,
    out_dir: Path,
    title: str,
) -> plt.Figure:
    """Biplot: plot scores with flood-group hulls and species loading vectors."""
    fig, ax = plt.subplots(figsize=(9, 8))
    xy = scores.select("LV1", "LV2").to_numpy()
    groups = (
        scores["flood_group"].to_numpy()
        if "flood_group" in scores.columns
        else np.ones(scores.height, dtype=np.int64)
    )
    plot_hulls(ax, xy, groups)

    lv_wide = (
        loadings.select("species_code", "index_2", "median")
        .with_columns(pl.format("LV{}", pl.col("index_2")).alias("axis"))
        .pivot(on="axis", index="species_code", values="median")
    )
    vec = lv_wide.select("LV1", "LV2").to_numpy()
    scale = 0.8 * np.abs(xy).max() / max(np.abs(vec).max(), 1e-8)
    for code, (lx, ly) in zip(lv_wide["species_code"].to_list(), vec * scale):
        ax.annotate(
            "",
            xy=(lx, ly),
            xytext=(0, 0),
            arrowprops={"arrowstyle": "->", "color": "#999999", "linewidth": 0.6},
        )
        ax.text(lx, ly, code, fontsize=6, color="#555555", ha="center", va="bottom")

    ax.axhline(0, color="#cccccc", linewidth=0.8)
    ax.axvline(0, color="#cccccc", linewidth=0.8)
    ax.set_xlabel("Latent variable 1")
    ax.set_ylabel("Latent variable 2")
    ax.set_title(title)
    ax.legend(frameon=False, loc="best")
    fig.savefig(out_dir / "ordination.png", dpi=150, bbox_inches="tight", facecolor="white")
    print("  Saved: ordination.png")
    return fig


def plot_residual_correlation(corr: np.ndarray, species: list[str], out_dir: Path) -> None:
    n = len(species)
    fig, ax = plt.subplots(figsize=(max(6, n * 0.18), max(5, n * 0.16)))
    im = ax.imshow(corr, cmap="RdBu_r", vmin=-1, vmax=1)
    ax.set_xticks(range(n))
    ax.set_yticks(range(n))
    ax.set_xticklabels(species, rotation=90, fontsize=5)
    ax.set_yticklabels(species, fontsize=5)
    fig.colorbar(im, ax=ax, shrink=0.7, label="Residual correlation")
    ax.set_title("Species residual correlations from the latent variables")
    save_fig(fig, out_dir / "residual_correlation.png")


# ── Main ─────────────────────────────────────────────────────────────────────


def main() -> None:
    args = parse_args()
    design = SurveyDesign(name=args.survey, data_root=Path(args.data_dir))
    prep_dir = resolve_upstream_dir(
        "01_data_prep", design.results_dir, args.run_id,
        Path(args.prep_dir) if args.prep_dir else None,
    )
    spec = get_variant(args.variant)

    with RunContext(
        survey=args.survey,
        analysis_name="04_occurrence_lv",
        params=vars(args),
        results_root=design.results_root,
        primer=OCCURRENCE_LV_PRIMER,
        run_id=args.run_id,
    ) as ctx:
        print(f"Red gum latent-variable occurrence model — Survey {args.survey}")
        print(f"Data prep: {prep_dir}")
        print(f"Model:     {spec.describe()}")
        print(f"Output:    {ctx.run_dir}")

        print_header("LOADING DATA")
        lookup = load_table(prep_dir / "data", "plot_lookup")
        occurrence = load_table(prep_dir / "data", "occurrence_matrix")
        flood_groups = load_flood_groups(design.derived_dir)
        data = prepare_occurrence_data(occurrence, lookup, args.min_plots)

        print_header("SAMPLING")
        model = build_occurrence_graph(data, spec)
        initial = {"lv": pca_initial_lv(data["y"], spec.n_latent)} if spec.n_latent else None
        idata, sampling_time, from_cache = fit_or_load(
            model,
            cache_path(design.mcmc_dir, spec.name),
            refit=args.refit,
            n_samples=args.n_samples,
            n_tune=args.n_tune,
            n_chains=args.n_chains,
            seed=RANDOM_SEED,
            initial_points=initial,
        )

        print_header("CONVERGENCE")
        convergence = convergence_summary(idata, convergence_vars(spec))
        convergence["sampling_time"] = sampling_time
        convergence["from_cache"] = from_cache
        with open(ctx.data_dir / "convergence.json", "w") as f:
            json.dump(convergence, f, indent=2)

        print_header("RESULTS")
        scores = summarize_lv_scores(idata, data, lookup, flood_groups)
        loadings = summarize_species_params(idata, data, ["lv_coefs"])
        intercepts = summarize_species_params(idata, data, ["intercept"])
        corr = residual_correlation(idata)
        n_strong = int((np.abs(corr[np.triu_indices_from(corr, k=1)]) > 0.5).sum())
        print(f"  {n_strong} species pairs with |residual correlation| > 0.5")

        scores.write_parquet(ctx.data_dir / "lv_scores.parquet")
        loadings.write_parquet(ctx.data_dir / "lv_loadings.parquet")
        intercepts.write_parquet(ctx.data_dir / "species_intercepts.parquet")
        pl.DataFrame(corr, schema=data["species"], orient="row").with_columns(
            pl.Series("species_code", data["species"])
        ).write_parquet(ctx.data_dir / "residual_correlation.parquet")
        pl.DataFrame(
            {
                "species_index": list(range(1, data["n_species"] + 1)),
                "species_code": data["species"],
            }
        ).write_parquet(ctx.data_dir / "occurrence_species.parquet")

        print_header("PLOTS")
        fig = plot_ordination(
            scores, loadings, ctx.plots_dir, f"Model-based ordination ({spec.name})"
        )
        save_pdf(fig, ctx.plots_dir / "ordination.pdf", size="A4", orientation="landscape")
        plot_residual_correlation(corr, data["species"], ctx.plots_dir)

        build_occurrence_lv_report(
            ctx.report,
            spec=spec,
            data=data,
            scores=scores,
            convergence=convergence,
            plots_dir=ctx.plots_dir,
        )


if __name__ == "__main__":
    main()
