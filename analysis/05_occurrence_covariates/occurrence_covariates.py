"""
Red gum understory: occurrence models with flood and stem covariates

Extends the latent-variable occurrence model with plot covariates: flood group
(groups 2 and 3 against the least-flooded group 1) and modelled red gum stem
density in each broad size class. Species responses are given sparsity-inducing
priors, either a Laplace (Bayesian lasso) prior or stochastic search variable
selection (spike-and-slab), so that weak responses shrink toward zero.

Usage:
  uv run python analysis/05_occurrence_covariates/occurrence_covariates.py
      [--survey 2013] [--variants flood_laplace flood_stems_ssvs] [--refit]

Outputs (in results/<survey>/05_occurrence_covariates/<date>/):
  - data/:   covariates.parquet, coefs_<variant>.parquet, inclusion_<variant>.parquet,
             convergence_<variant>.json, variant_summary.parquet
  - plots/:  coefs_<variant>.png, coefs_<variant>.pdf
  - run_info.json, run_log.txt, 05_occurrence_covariates_report.html
Posteriors cached at data/<survey>/mcmc/occurrence_<variant>.nc (reused unless --refit).
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

sys.path.insert(0, str(Path(__file__).resolve().parent.parent.parent))

from redgum.config import (
    BROAD_SIZE_CLASSES,
    DATA_ROOT,
    DEFAULT_SURVEY,
    MIN_SPECIES_PLOTS,
    N_CHAINS,
    N_FLOOD_GROUPS,
    N_SAMPLES,
    N_TUNE,
    RANDOM_SEED,
)
from redgum.survey import SurveyDesign, broad_class_label, load_table

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
    from analysis.plotting import save_pdf
except ModuleNotFoundError:
    from plotting import save_pdf  # type: ignore[no-redef]

try:
    from analysis.flood_groups import load_flood_groups
except ModuleNotFoundError:
    from flood_groups import load_flood_groups  # type: ignore[no-redef]

try:
    from analysis.occurrence_lv import (
        build_occurrence_graph,
        cache_path,
        convergence_vars,
        pca_initial_lv,
        prepare_occurrence_data,
    )
except ModuleNotFoundError:
    from occurrence_lv import (  # type: ignore[no-redef]
        build_occurrence_graph,
        cache_path,
        convergence_vars,
        pca_initial_lv,
        prepare_occurrence_data,
    )

try:
    from analysis.occurrence_covariates_report import build_occurrence_covariates_report
except ModuleNotFoundError:
    from occurrence_covariates_report import (  # type: ignore[no-redef]
        build_occurrence_covariates_report,
    )

# ── Primer ───────────────────────────────────────────────────────────────────

OCCURRENCE_COVARIATES_PRIMER = """\
# Occurrence Models with Flood and Stem Covariates

## Purpose

Tests how each understory species responds to flood history and to red gum
stem density, after accounting for plot random effects and residual
co-occurrence (two latent variables).

## Method

The linear predictor of the latent-variable model gains `x[i] . coefs[j]`:

- **Flood covariates:** indicators for flood group 2 and flood group 3
  (group 1, the least flooded, is the baseline).
- **Stem covariates:** log(1 + posterior median stems/ha) for each of the six
  broad size classes from the stem density model, standardized to mean 0, SD 1.

Coefficient priors:

| Prior | Form |
|-------|------|
| Laplace | `coefs[j,k] ~ Laplace(0, b[k])`, `b[k] ~ HalfCauchy(1)` |
| SSVS | `coefs[j,k] ~ w[k] Normal(0, 1) + (1 - w[k]) Normal(0, 0.05)`, `w[k] ~ Beta(1, 1)` |

For SSVS the inclusion indicator is summed out of the model so that NUTS can
sample it; its posterior probability is kept as `inclusion_prob[j,k]`.

## Variants

| Variant | Covariates | Prior |
|---------|------------|-------|
| `flood_laplace` | flood | Laplace |
| `flood_stems_laplace` | flood + stems | Laplace |
| `flood_stems_ssvs` | flood + stems | SSVS |

## Inputs

- `01_data_prep/data/occurrence_matrix.parquet`, `plot_lookup.parquet`
- `03_stem_model/data/stem_density_posterior.parquet`
- `data/<survey>/derived/flood_groups.parquet`

## Outputs

| File | Description |
|------|-------------|
| `covariates.parquet` | Plot x covariate design matrix (all covariates) |
| `coefs_<variant>.parquet` | Posterior summary of species x covariate coefficients |
| `inclusion_<variant>.parquet` | SSVS posterior inclusion probabilities |
| `variant_summary.parquet` | Per variant: convergence, number of clear responses |
"""

COVARIATE_VARIANTS = [name for name, spec in MODEL_VARIANTS.items() if spec.has_covariates]


# ── Helpers ──────────────────────────────────────────────────────────────────


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Red gum occurrence models with covariates")
    parser.add_argument("--survey", default=DEFAULT_SURVEY)
    parser.add_argument("--data-dir", default=DATA_ROOT, help="Root of the data directory")
    parser.add_argument("--prep-dir", default=None, help="Override data prep results directory")
    parser.add_argument("--stem-dir", default=None, help="Override stem model results directory")
    parser.add_argument("--run-id", default=None, help="Run ID for grouped pipeline output")
    parser.add_argument(
        "--variants",
        nargs="+",
        default=COVARIATE_VARIANTS,
        choices=COVARIATE_VARIANTS,
        help="Model variants to fit",
    )
    parser.add_argument("--min-plots", type=int, default=MIN_SPECIES_PLOTS)
    parser.add_argument("--refit", action="store_true", help="Ignore cached posteriors")
    parser.add_argument("--n-samples", type=int, default=N_SAMPLES, help="MCMC draws per chain")
    parser.add_argument("--n-tune", type=int, default=N_TUNE, help="MCMC tuning draws (discarded)")
    parser.add_argument("--n-chains", type=int, default=N_CHAINS, help="Number of MCMC chains")
    return parser.parse_args()


# ── Covariates ───────────────────────────────────────────────────────────────


def flood_dummies(flood_groups: pl.DataFrame, n_groups: int = N_FLOOD_GROUPS) -> pl.DataFrame:
    """Indicator columns flood_2 .. flood_k against baseline group 1."""
    return flood_groups.select(
        "plot",
        *[
            (pl.col("flood_group") == g).cast(pl.Float64).alias(f"flood_{g}")
            for g in range(2, n_groups + 1)
        ],
    ).sort("plot")


def stem_covariates(stem_density: pl.DataFrame) -> pl.DataFrame:
    """Standardized log(1 + posterior median stems/ha), one column per broad class.

    A class with the same density in every plot carries no information and
    raises ValueError.
    """
    wide = (
        stem_density.with_columns(
            pl.col("median").log1p().alias("log_density"),
            pl.format("stems_{}", pl.col("broad_class")).alias("column"),
        )
        .pivot(on="column", index="plot", values="log_density")
        .sort("plot")
    )
    columns = [f"stems_{c}" for c in BROAD_SIZE_CLASSES if f"stems_{c}" in wide.columns]
    constant = [c for c in columns if wide[c].std() == 0]
    if constant:
        msg = f"Stem covariates constant across plots: {constant}"
        raise ValueError(msg)
    return wide.select(
        "plot",
        *[((pl.col(c) - pl.col(c).mean()) / pl.col(c).std()).alias(c) for c in columns],
    )


def build_covariates(
    flood_groups: pl.DataFrame,
    stem_density: pl.DataFrame,
    plots: list[int],
) -> pl.DataFrame:
    """Full plot x covariate table (flood dummies, then stem classes).

    Raises ValueError if any plot lacks a flood group or stem densities.
    """
    table = (
        pl.DataFrame({"plot": plots}, schema={"plot": pl.Int64})
        .join(flood_dummies(flood_groups), on="plot", how="left")
        .join(stem_covariates(stem_density), on="plot", how="left")
    )
    incomplete = table.filter(pl.any_horizontal(pl.all().is_null()))
    if incomplete.height > 0:
        msg = f"Covariates missing for plots {incomplete['plot'].to_list()}"
        raise ValueError(msg)
    return table


def design_matrix(table: pl.DataFrame, spec: OccurrenceModelSpec) -> tuple[np.ndarray, list[str]]:
    """Columns of *table* used by *spec*, in covariate-group order."""
    names: list[str] = []
    for group in spec.covariates:
        names += [c for c in table.columns if c.startswith(f"{group}_")]
    if not names:
        msg = f"No covariate columns for groups {spec.covariates}"
        raise ValueError(msg)
    return table.select(names).to_numpy().astype(np.float64), names


def covariate_label(name: str) -> str:
    """Readable label: flood_2 -> "Flood group 2", stems_3 -> "Stems 20-40 cm"."""
    group, _, key = name.partition("_")
    if group == "flood":
        return f"Flood group {key}"
    if group == "stems":
        return f"Stems {broad_class_label(int(key))}"
    return name


# ── Results ──────────────────────────────────────────────────────────────────


def summarize_coefs(
    idata: az.InferenceData,
    data: dict,
    names: list[str],
    var_name: str = "coefs",
) -> pl.DataFrame:
    """Species x covariate summary with species_code, covariate, and clear-effect flag.

    An effect is "clear" when its 95% HPD interval excludes zero.
    """
    summary = summarize_matrix(posterior_matrix(idata, [var_name]))
    summary = attach_labels(summary, "index_1", data["species"], "species_code")
    summary = attach_labels(summary, "index_2", names, "covariate")
    return summary.with_columns(
        ((pl.col("hpd_lower") > 0) | (pl.col("hpd_upper") < 0)).alias("clear_effect")
    )


def plot_coefficients(coefs: pl.DataFrame, variant: str, out_dir: Path) -> plt.Figure:
    """Forest plot of species responses, one panel per covariate."""
    covariates = coefs["covariate"].unique(maintain_order=True).to_list()
    species = sorted(coefs["species_code"].unique().to_list(), reverse=True)
    y_pos = {s: i for i, s in enumerate(species)}
    n_cols = min(4, len(covariates))
    n_rows = int(np.ceil(len(covariates) / n_cols))
    fig, axes = plt.subplots(
        n_rows,
        n_cols,
        figsize=(3.2 * n_cols, 0.14 * len(species) * n_rows + 1.5),
        sharey=True,
        squeeze=False,
    )
    for ax, cov in zip(axes.flat, covariates):
        sub = coefs.filter(pl.col("covariate") == cov)
        y = np.array([y_pos[s] for s in sub["species_code"].to_list()])
        clear = sub["clear_effect"].to_numpy()
        colors = np.where(clear, "#2f6b3a", "#aaaaaa")
        ax.hlines(y, sub["hpd_lower"].to_numpy(), sub["hpd_upper"].to_numpy(), colors=colors)
        ax.scatter(sub["median"].to_numpy(), y, c=colors, s=10, zorder=3)
        ax.axvline(0, color="#aa3333", linewidth=0.8, linestyle="--")
        ax.set_title(covariate_label(cov), fontsize=9)
    for ax in axes.flat[len(covariates) :]:
        ax.set_visible(False)
    axes[0, 0].set_yticks(range(len(species)))
    axes[0, 0].set_yticklabels(species, fontsize=5)
    fig.suptitle(f"Species responses ({variant}): posterior median and 95% HPD")
    fig.tight_layout()
    fig.savefig(out_dir / f"coefs_{variant}.png", dpi=150, bbox_inches="tight")
    print(f"  Saved: coefs_{variant}.png")
    return fig


# ── Main ─────────────────────────────────────────────────────────────────────


def main() -> None:
    args = parse_args()
    design = SurveyDesign(name=args.survey, data_root=Path(args.data_dir))
    prep_dir = resolve_upstream_dir(
        "01_data_prep", design.results_dir, args.run_id,
        Path(args.prep_dir) if args.prep_dir else None,
    )
    stem_dir = resolve_upstream_dir(
        "03_stem_model", design.results_dir, args.run_id,
        Path(args.stem_dir) if args.stem_dir else None,
    )

    with RunContext(
        survey=args.survey,
        analysis_name="05_occurrence_covariates",
        params=vars(args),
        results_root=design.results_root,
        primer=OCCURRENCE_COVARIATES_PRIMER,
        run_id=args.run_id,
    ) as ctx:
        print(f"Red gum occurrence covariate models — Survey {args.survey}")
        print(f"Data prep:  {prep_dir}")
        print(f"Stem model: {stem_dir}")
        print(f"Variants:   {', '.join(args.variants)}")
        print(f"Output:     {ctx.run_dir}")

        print_header("LOADING DATA")
        lookup = load_table(prep_dir / "data", "plot_lookup")
        occurrence = load_table(prep_dir / "data", "occurrence_matrix")
        stem_density = load_table(stem_dir / "data", "stem_density_posterior")
        flood_groups = load_flood_groups(design.derived_dir)
        data = prepare_occurrence_data(occurrence, lookup, args.min_plots)

        covariates = build_covariates(flood_groups, stem_density, data["plots"])
        covariates.write_parquet(ctx.data_dir / "covariates.parquet")
        print(f"  Covariates: {', '.join(c for c in covariates.columns if c != 'plot')}")

        results: dict[str, dict] = {}
        summary_rows = []
        for variant in args.variants:
            spec = get_variant(variant)
            print_header(f"SAMPLING — {variant}")
            print(f"  {spec.describe()}")
            x, names = design_matrix(covariates, spec)
            model = build_occurrence_graph(data, spec, x, names)
            initial = {"lv": pca_initial_lv(data["y"], spec.n_latent)} if spec.n_latent else None
            idata, sampling_time, from_cache = fit_or_load(
                model,
                cache_path(design.mcmc_dir, variant),
                refit=args.refit,
                n_samples=args.n_samples,
                n_tune=args.n_tune,
                n_chains=args.n_chains,
                seed=RANDOM_SEED,
                initial_points=initial,
            )

            print_header(f"CONVERGENCE — {variant}")
            convergence = convergence_summary(idata, convergence_vars(spec))
            convergence["sampling_time"] = sampling_time
            convergence["from_cache"] = from_cache
            with open(ctx.data_dir / f"convergence_{variant}.json", "w") as f:
                json.dump(convergence, f, indent=2)

            print_header(f"RESULTS — {variant}")
            coefs = summarize_coefs(idata, data, names)
            coefs.write_parquet(ctx.data_dir / f"coefs_{variant}.parquet")
            n_clear = int(coefs["clear_effect"].sum())
            print(f"  {n_clear} of {coefs.height} species x covariate effects are clear of zero")

            inclusion = None
            if spec.coef_prior.distribution == "ssvs":
                inclusion = summarize_coefs(idata, data, names, var_name="inclusion_prob")
                inclusion.write_parquet(ctx.data_dir / f"inclusion_{variant}.parquet")
                n_included = int((inclusion["mean"] > 0.5).sum())
                print(f"  {n_included} effects with posterior inclusion probability > 0.5")

            fig = plot_coefficients(coefs, variant, ctx.plots_dir)
            save_pdf(fig, ctx.plots_dir / f"coefs_{variant}.pdf", size="A3", orientation="portrait")

            results[variant] = {
                "spec": spec,
                "coefs": coefs,
                "inclusion": inclusion,
                "convergence": convergence,
            }
            summary_rows.append(
                {
                    "variant": variant,
                    "covariates": " + ".join(spec.covariates),
                    "prior": spec.coef_prior.describe(),
                    "n_clear_effects": n_clear,
                    "pct_rhat_fail": convergence["pct_rhat_fail"],
                    "divergences": convergence["divergences"],
                    "converged": convergence["all_ok"],
                }
            )

        variant_summary = pl.DataFrame(summary_rows)
        variant_summary.write_parquet(ctx.data_dir / "variant_summary.parquet")

        build_occurrence_covariates_report(
            ctx.report,
            results=results,
            variant_summary=variant_summary,
            plots_dir=ctx.plots_dir,
        )


if __name__ == "__main__":
    main()
