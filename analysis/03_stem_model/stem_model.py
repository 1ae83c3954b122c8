"""
Red gum understory: stem density model

Negative-binomial model of red gum stem counts per sub-plot and broad size
class, with plot-level random effects shrunk toward a class mean. Its posterior
median stem densities become covariates in the occurrence models.

Usage:
  uv run python analysis/03_stem_model/stem_model.py [--survey 2013] [--refit]
      [--n-samples 2000] [--n-tune 2000] [--n-chains 4]

Outputs (in results/<survey>/03_stem_model/<date>/):
  - data/:   stem_density_posterior.parquet, stem_class_params.parquet,
             convergence.json
  - plots/:  density_by_class.png, posterior_vs_empirical.png, stem_density.pdf
  - run_info.json, run_log.txt, 03_stem_model_report.html
Posterior cached at data/<survey>/mcmc/stem_model.nc (reused unless --refit).
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
    BROAD_SIZE_CLASSES,
    DATA_ROOT,
    DEFAULT_SURVEY,
    N_CHAINS,
    N_SAMPLES,
    N_TUNE,
    RANDOM_SEED,
    SUBPLOT_AREA_HA,
    SUBPLOTS_PER_PLOT,
)
from redgum.survey import SurveyDesign, broad_class_label, load_table

try:
    from analysis.run_context import RunContext, print_header, resolve_upstream_dir
except ModuleNotFoundError:
    from run_context import RunContext, print_header, resolve_upstream_dir  # type: ignore[no-redef]

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
    from analysis.plotting import save_fig, save_pdf
except ModuleNotFoundError:
    from plotting import save_fig, save_pdf  # type: ignore[no-redef]

try:
    from analysis.stem_model_report import build_stem_model_report
except ModuleNotFoundError:
    from stem_model_report import build_stem_model_report  # type: ignore[no-redef]

# ── Primer ───────────────────────────────────────────────────────────────────

STEM_MODEL_PRIMER = """\
# Stem Density Model

## Purpose

Estimates red gum stem density (stems per hectare) for every plot and broad
size class. Raw sub-plot counts are noisy and often zero; the model borrows
strength across plots within a size class so that sparse plots are shrunk
toward the class mean.

## Method

```
y[s]       ~ NegativeBinomial(mu[s], alpha[c])     -- count in sub-plot s, class c
log mu[s]  = log(0.1 ha) + b[c] + sigma[c] * u[p, c]
b[c]       ~ Normal(0, 5)                          -- class mean log density
sigma[c]   ~ HalfNormal(1)                         -- between-plot SD per class
u[p, c]    ~ Normal(0, 1)                          -- non-centered plot effect
alpha[c]   ~ HalfNormal(10)                        -- dispersion per class

density[p, c] = exp(b[c] + sigma[c] * u[p, c])     -- stems per ha
```

Every plot x sub-plot x class cell is modelled; absent stems are zeros.
Sampled with nutpie. The posterior is cached and reused unless `--refit`.

## Inputs

- `01_data_prep/data/stem_counts_broad.parquet`, `plot_lookup.parquet`, `stem_density.parquet`

## Outputs

| File | Description |
|------|-------------|
| `stem_density_posterior.parquet` | Posterior summary of density per plot x class |
| `stem_class_params.parquet` | Posterior summary of b, sigma, alpha per class |
| `convergence.json` | Share of parameters failing R-hat / ESS / Geweke |
"""

CONVERGENCE_VARS = ["b", "sigma", "alpha", "u"]
SUMMARY_COLUMNS = ("mean", "median", "q2.5", "q25", "q75", "q97.5", "hpd_lower", "hpd_upper")


# ── Helpers ──────────────────────────────────────────────────────────────────


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Red gum stem density model")
    parser.add_argument("--survey", default=DEFAULT_SURVEY)
    parser.add_argument("--data-dir", default=DATA_ROOT, help="Root of the data directory")
    parser.add_argument("--prep-dir", default=None, help="Override data prep results directory")
    parser.add_argument("--run-id", default=None, help="Run ID for grouped pipeline output")
    parser.add_argument("--refit", action="store_true", help="Ignore the cached posterior")
    parser.add_argument("--n-samples", type=int, default=N_SAMPLES, help="MCMC draws per chain")
    parser.add_argument("--n-tune", type=int, default=N_TUNE, help="MCMC tuning draws (discarded)")
    parser.add_argument("--n-chains", type=int, default=N_CHAINS, help="Number of MCMC chains")
    return parser.parse_args()


# ── Data ─────────────────────────────────────────────────────────────────────


def prepare_stem_data(
    stems_broad: pl.DataFrame,
    lookup: pl.DataFrame,
    n_subplots: int = SUBPLOTS_PER_PLOT,
    subplot_area: float = SUBPLOT_AREA_HA,
) -> dict:
    """Complete plot x sub-plot x class grid of counts, zero-filled.

    Returns dict with:
    - y: counts, one per grid cell
    - plot_idx, class_idx: 0-based indices for each cell
    - plots, classes: plot numbers and broad class numbers in index order
    - class_labels, n_plots, n_classes, area
    """
    classes = list(BROAD_SIZE_CLASSES)
    grid = (
        lookup.select("plot")
        .join(pl.DataFrame({"subplot": list(range(1, n_subplots + 1))}), how="cross")
        .join(pl.DataFrame({"broad_class": classes}), how="cross")
    )
    cells = (
        grid.join(
            stems_broad.select("plot", "subplot", "broad_class", "count"),
            on=["plot", "subplot", "broad_class"],
            how="left",
        )
        .with_columns(pl.col("count").fill_null(0))
        .sort("plot", "subplot", "broad_class")
    )
    if cells.height != grid.height:
        msg = "Stem counts contain duplicate plot x sub-plot x class rows"
        raise ValueError(msg)

    plots = lookup["plot"].sort().to_list()
    plot_pos = {p: i for i, p in enumerate(plots)}
    class_pos = {c: i for i, c in enumerate(classes)}

    data = {
        "y": cells["count"].to_numpy().astype(np.int64),
        "plot_idx": np.array([plot_pos[p] for p in cells["plot"].to_list()], dtype=np.int64),
        "class_idx": np.array(
            [class_pos[c] for c in cells["broad_class"].to_list()], dtype=np.int64
        ),
        "plots": plots,
        "classes": classes,
        "class_labels": [broad_class_label(c) for c in classes],
        "n_plots": len(plots),
        "n_classes": len(classes),
        "area": subplot_area,
    }
    print(
        f"  {len(data['y'])} cells ({data['n_plots']} plots x {n_subplots} sub-plots x "
        f"{data['n_classes']} classes), {int((data['y'] == 0).sum())} zeros"
    )
    return data


# ── Model ────────────────────────────────────────────────────────────────────


def build_stem_graph(data: dict) -> pm.Model:
    """Build the negative-binomial stem count model (unsampled).

    Returns the PyMC model for use with nutpie or pm.sample().
    """
    coords = {
        "plot": data["plots"],
        "size_class": data["class_labels"],
        "obs": np.arange(len(data["y"])),
    }
    plot_idx = data["plot_idx"]
    class_idx = data["class_idx"]

    with pm.Model(coords=coords) as model:
        b = pm.Normal("b", mu=0, sigma=5, dims="size_class")
        sigma = pm.HalfNormal("sigma", sigma=1, dims="size_class")
        u = pm.Normal("u", mu=0, sigma=1, dims=("plot", "size_class"))
        alpha = pm.HalfNormal("alpha", sigma=10, dims="size_class")

        log_density = b[None, :] + sigma[None, :] * u
        pm.Deterministic("density", pt.exp(log_density), dims=("plot", "size_class"))

        mu = pt.exp(np.log(data["area"]) + log_density[plot_idx, class_idx])
        pm.NegativeBinomial("y", mu=mu, alpha=alpha[class_idx], observed=data["y"], dims="obs")

    return model


# ── Results ──────────────────────────────────────────────────────────────────


def summarize_stem_density(idata: az.InferenceData, data: dict) -> pl.DataFrame:
    """Posterior summary of density[plot, class] with plot and class columns."""
    summary = summarize_matrix(posterior_matrix(idata, ["density"]))
    summary = attach_labels(summary, "index_2", data["class_labels"], "class_label")
    plots = pl.DataFrame(
        {"index_1": list(range(1, data["n_plots"] + 1)), "plot": data["plots"]},
        schema={"index_1": pl.Int64, "plot": pl.Int64},
    )
    classes = pl.DataFrame(
        {"index_2": list(range(1, data["n_classes"] + 1)), "broad_class": data["classes"]},
        schema={"index_2": pl.Int64, "broad_class": pl.Int64},
    )
    return (
        summary.join(plots, on="index_1", how="left")
        .join(classes, on="index_2", how="left")
        .select("plot", "broad_class", "class_label", *SUMMARY_COLUMNS)
        .sort("plot", "broad_class")
    )


def summarize_class_params(idata: az.InferenceData, data: dict) -> pl.DataFrame:
    summary = summarize_matrix(posterior_matrix(idata, ["b", "sigma", "alpha"]))
    return attach_labels(summary, "index_1", data["class_labels"], "class_label")


def plot_density_by_class(density: pl.DataFrame, out_dir: Path) -> plt.Figure:
    fig, ax = plt.subplots(figsize=(10, 5))
    labels = list(BROAD_SIZE_CLASSES.values())
    values = [
        np.log1p(density.filter(pl.col("broad_class") == c)["median"].to_numpy())
        for c in BROAD_SIZE_CLASSES
    ]
    ax.boxplot(values, tick_labels=labels)
    ax.set_xlabel("Diameter class")
    ax.set_ylabel("log(1 + posterior median stems per ha)")
    ax.set_title("Modelled red gum stem density across plots")
    ax.grid(alpha=0.3, axis="y")
    fig.savefig(out_dir / "density_by_class.png", dpi=150, bbox_inches="tight")
    print("  Saved: density_by_class.png")
    return fig


def plot_posterior_vs_empirical(
    density: pl.DataFrame,
    empirical: pl.DataFrame,
    out_dir: Path,
) -> None:
    joined = density.join(
        empirical.select("plot", "broad_class", "stems_per_ha"),
        on=["plot", "broad_class"],
        how="inner",
    )
    fig, ax = plt.subplots(figsize=(6, 6))
    x = np.log1p(joined["stems_per_ha"].to_numpy())
    y = np.log1p(joined["median"].to_numpy())
    ax.scatter(x, y, s=12, alpha=0.6, color="#3b5d3a")
    lim = max(x.max(), y.max()) * 1.05
    ax.plot([0, lim], [0, lim], color="#888888", linestyle="--", linewidth=1)
    ax.set_xlabel("log(1 + empirical stems per ha)")
    ax.set_ylabel("log(1 + posterior median stems per ha)")
    ax.set_title("Shrinkage of plot stem densities")
    save_fig(fig, out_dir / "posterior_vs_empirical.png")


# ── Main ─────────────────────────────────────────────────────────────────────


def main() -> None:
    args = parse_args()
    design = SurveyDesign(name=args.survey, data_root=Path(args.data_dir))
    prep_dir = resolve_upstream_dir(
        "01_data_prep", design.results_dir, args.run_id,
        Path(args.prep_dir) if args.prep_dir else None,
    )

    with RunContext(
        survey=args.survey,
        analysis_name="03_stem_model",
        params=vars(args),
        results_root=design.results_root,
        primer=STEM_MODEL_PRIMER,
        run_id=args.run_id,
    ) as ctx:
        print(f"Red gum stem density model — Survey {args.survey}")
        print(f"Data prep: {prep_dir}")
        print(f"Output:    {ctx.run_dir}")

        print_header("LOADING DATA")
        lookup = load_table(prep_dir / "data", "plot_lookup")
        stems_broad = load_table(prep_dir / "data", "stem_counts_broad")
        empirical = load_table(prep_dir / "data", "stem_density")
        data = prepare_stem_data(stems_broad, lookup)

        print_header("SAMPLING")
        model = build_stem_graph(data)
        idata, sampling_time, from_cache = fit_or_load(
            model,
            design.mcmc_dir / "stem_model.nc",
            refit=args.refit,
            n_samples=args.n_samples,
            n_tune=args.n_tune,
            n_chains=args.n_chains,
            seed=RANDOM_SEED,
        )

        print_header("CONVERGENCE")
        convergence = convergence_summary(idata, CONVERGENCE_VARS)
        convergence["sampling_time"] = sampling_time
        convergence["from_cache"] = from_cache
        with open(ctx.data_dir / "convergence.json", "w") as f:
            json.dump(convergence, f, indent=2)

        print_header("RESULTS")
        density = summarize_stem_density(idata, data)
        class_params = summarize_class_params(idata, data)
        for row in class_params.filter(pl.col("name") == "b").iter_rows(named=True):
            print(
                f"  {row['class_label']:>13}: exp(b) = {np.exp(row['median']):8.1f} stems/ha "
                f"[{np.exp(row['hpd_lower']):.1f}, {np.exp(row['hpd_upper']):.1f}]"
            )
        density.write_parquet(ctx.data_dir / "stem_density_posterior.parquet")
        class_params.write_parquet(ctx.data_dir / "stem_class_params.parquet")

        print_header("PLOTS")
        fig = plot_density_by_class(density, ctx.plots_dir)
        save_pdf(fig, ctx.plots_dir / "stem_density.pdf", size="A4", orientation="landscape")
        plot_posterior_vs_empirical(density, empirical, ctx.plots_dir)

        build_stem_model_report(
            ctx.report,
            class_params=class_params,
            convergence=convergence,
            plots_dir=ctx.plots_dir,
        )


if __name__ == "__main__":
    main()
