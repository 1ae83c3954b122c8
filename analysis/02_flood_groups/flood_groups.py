"""
Red gum understory: flood history groups

Classifies the 66 plots into three flood groups from their satellite inundation
history. Plots are clustered with Ward's method on Jaccard distances between
binary inundated/dry series over the dates with no cloud gaps. One plot that
falls between two groups on the dendrogram is assigned to the majority group of
its nearest neighbours.

The groups are fixed once computed: they are written to
data/<survey>/derived/flood_groups.parquet and reused by every later run until
--reclassify is given. A multiple-imputation check (flood_imputation.py) tests
whether filling the cloud gaps would change the grouping.

Usage:
  uv run python analysis/02_flood_groups/flood_groups.py [--survey 2013]
      [--reclassify] [--metric jaccard] [--n-imputations 20] [--skip-imputation]

Outputs (in results/<survey>/02_flood_groups/<date>/):
  - data/:   flood_groups.parquet, imputation_check.json, imputed_groups.parquet
  - plots/:  dendrogram.png, inundation_by_group.png, flood_groups.pdf
  - run_info.json, run_log.txt, 02_flood_groups_report.html
"""

import argparse
import json
import sys
from datetime import date
from pathlib import Path

import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt
import numpy as np
import polars as pl
from scipy.cluster.hierarchy import dendrogram, fcluster, linkage
from scipy.spatial.distance import pdist, squareform

sys.path.insert(0, str(Path(__file__).resolve().parent.parent.parent))

from redgum.config import (
    DATA_ROOT,
    DEFAULT_SURVEY,
    FLOOD_DISTANCE_METRIC,
    FLOOD_OVERRIDE_NEIGHBOURS,
    FLOOD_OVERRIDE_PLOT,
    IMPUTATION_WORKERS,
    INUNDATION_THRESHOLD,
    N_FLOOD_GROUPS,
    N_IMPUTATIONS,
    RANDOM_SEED,
)
from redgum.survey import SurveyDesign, attach_plot_index, load_table

try:
    from analysis.run_context import RunContext, print_header, resolve_upstream_dir
except ModuleNotFoundError:
    from run_context import RunContext, print_header, resolve_upstream_dir  # type: ignore[no-redef]

try:
    from analysis.plotting import FLOOD_GROUP_COLORS, FLOOD_GROUP_LABELS, save_fig, save_pdf
except ModuleNotFoundError:
    from plotting import (  # type: ignore[no-redef]
        FLOOD_GROUP_COLORS,
        FLOOD_GROUP_LABELS,
        save_fig,
        save_pdf,
    )

try:
    from analysis.flood_imputation import imputation_check
except ModuleNotFoundError:
    from flood_imputation import imputation_check  # type: ignore[no-redef]

try:
    from analysis.flood_groups_report import build_flood_groups_report
except ModuleNotFoundError:
    from flood_groups_report import build_flood_groups_report  # type: ignore[no-redef]

# ── Primer ───────────────────────────────────────────────────────────────────

FLOOD_GROUPS_PRIMER = """\
# Flood History Groups

## Purpose

Summarizes each plot's flood history as one of three groups so that flood
history can enter the occurrence models as a categorical covariate.

## Method

1. **Inundation matrix.** Plots x dates of the proportion of the plot
   inundated, from classified satellite scenes. Cloud-obscured plot-dates are
   missing.
2. **Complete dates.** Only dates observed for every plot are used.
3. **Distance.** Each plot-date is inundated if its proportion exceeds the
   threshold; plots are compared by Jaccard distance between these series.
4. **Clustering.** Ward linkage, cut into 3 groups, relabelled so group 1 is
   the least flooded and group 3 the most.
5. **Override.** One plot sits between groups 2 and 3 on the dendrogram; it
   takes the majority group of its 3 nearest neighbours.
6. **Robustness.** Cloud gaps are filled by 20 stochastic imputations
   (IterativeImputer, one worker process each). The averaged imputed series are
   reclassified (Euclidean distance, Ward) and compared with the primary groups
   by adjusted Rand index. This check never replaces the primary groups.

## Persistence

Groups are written once to `data/<survey>/derived/flood_groups.parquet` and
reused by all later runs until `--reclassify` is passed.

## Outputs

| File | Description |
|------|-------------|
| `flood_groups.parquet` | plot, site, site_plot, flood_group, mean_inundation, overridden |
| `imputation_check.json` | ARI and agreement with the imputed reclassification |
| `imputed_groups.parquet` | Groups from the imputed series, per plot |
"""


# ── Helpers ──────────────────────────────────────────────────────────────────


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Red gum understory flood history groups")
    parser.add_argument("--survey", default=DEFAULT_SURVEY)
    parser.add_argument("--data-dir", default=DATA_ROOT, help="Root of the data directory")
    parser.add_argument("--prep-dir", default=None, help="Override data prep results directory")
    parser.add_argument("--run-id", default=None, help="Run ID for grouped pipeline output")
    parser.add_argument(
        "--reclassify", action="store_true", help="Recompute groups even if already fixed"
    )
    parser.add_argument(
        "--metric",
        default=FLOOD_DISTANCE_METRIC,
        choices=["jaccard", "euclidean"],
        help="Distance between plot inundation series",
    )
    parser.add_argument("--n-imputations", type=int, default=N_IMPUTATIONS)
    parser.add_argument("--workers", type=int, default=IMPUTATION_WORKERS)
    parser.add_argument("--skip-imputation", action="store_true", help="Skip robustness check")
    return parser.parse_args()


# ── Inundation matrix ────────────────────────────────────────────────────────


def inundation_matrix(
    inundation: pl.DataFrame,
    lookup: pl.DataFrame,
) -> tuple[np.ndarray, list[date]]:
    """Plots x dates array of inundation proportion (NaN = cloud or not observed).

    Row i is plot i + 1; columns follow the sorted dates.
    Proportions outside [0, 1] raise ValueError.
    """
    bad = inundation.filter((pl.col("inundation") < 0) | (pl.col("inundation") > 1))
    if bad.height > 0:
        msg = f"{bad.height} inundation values outside [0, 1]"
        raise ValueError(msg)
    records = attach_plot_index(inundation, lookup)
    dates = sorted(records["date"].unique().to_list())
    date_idx = {d: j for j, d in enumerate(dates)}

    matrix = np.full((lookup.height, len(dates)), np.nan)
    rows = records["plot"].to_numpy() - 1
    cols = np.array([date_idx[d] for d in records["date"].to_list()], dtype=np.int64)
    values = records["inundation"].cast(pl.Float64).fill_null(np.nan).to_numpy()
    matrix[rows, cols] = values
    return matrix, dates


def complete_dates(matrix: np.ndarray, dates: list[date]) -> tuple[np.ndarray, list[date]]:
    """Keep only dates observed for every plot."""
    keep = ~np.isnan(matrix).any(axis=0)
    if not keep.any():
        msg = "No date is cloud-free for every plot"
        raise ValueError(msg)
    return matrix[:, keep], [d for d, k in zip(dates, keep) if k]


# ── Classification ───────────────────────────────────────────────────────────


def flood_distance(
    matrix: np.ndarray,
    metric: str = FLOOD_DISTANCE_METRIC,
    threshold: float = INUNDATION_THRESHOLD,
) -> np.ndarray:
    """Condensed pairwise distances between plot inundation series.

    "jaccard" compares binary inundated/dry series (proportion > threshold);
    "euclidean" compares the proportions directly.
    """
    if np.isnan(matrix).any():
        msg = "Inundation matrix has missing values; use complete_dates() or impute first"
        raise ValueError(msg)
    match metric:
        case "jaccard":
            return pdist(matrix > threshold, metric="jaccard")
        case "euclidean":
            return pdist(matrix, metric="euclidean")
        case _:
            msg = f"Unknown distance metric {metric!r}. Supported: jaccard, euclidean"
            raise ValueError(msg)


def relabel_by_inundation(labels: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """Renumber groups 1..k in order of increasing mean inundation."""
    plot_means = np.nanmean(matrix, axis=1)
    groups = np.unique(labels)
    order = sorted(groups, key=lambda g: plot_means[labels == g].mean())
    mapping = {g: i + 1 for i, g in enumerate(order)}
    return np.array([mapping[g] for g in labels], dtype=np.int64)


def classify_flood_groups(
    matrix: np.ndarray,
    metric: str = FLOOD_DISTANCE_METRIC,
    n_groups: int = N_FLOOD_GROUPS,
    threshold: float = INUNDATION_THRESHOLD,
) -> tuple[np.ndarray, np.ndarray]:
    """Ward clustering of plots into *n_groups* flood groups.

    Returns (groups, linkage_matrix). Group 1 is the least flooded.
    """
    dist = flood_distance(matrix, metric, threshold)
    z = linkage(dist, method="ward")
    labels = fcluster(z, t=n_groups, criterion="maxclust")
    if len(np.unique(labels)) != n_groups:
        msg = f"Cut produced {len(np.unique(labels))} groups, expected {n_groups}"
        raise ValueError(msg)
    return relabel_by_inundation(labels, matrix), z


def nearest_neighbours(
    dist: np.ndarray,
    plot: int,
    k: int = FLOOD_OVERRIDE_NEIGHBOURS,
) -> list[int]:
    """The *k* plots (1-based) closest to *plot*, nearest first.

    Ties are broken by plot index.
    """
    square = squareform(dist)
    n = square.shape[0]
    if not 1 <= plot <= n:
        msg = f"Plot {plot} outside 1..{n}"
        raise ValueError(msg)
    if not 1 <= k < n:
        msg = f"k must be in 1..{n - 1}, got {k}"
        raise ValueError(msg)
    d = square[plot - 1].copy()
    d[plot - 1] = np.inf
    order = np.argsort(d, kind="stable")
    return [int(i) + 1 for i in order[:k]]


def apply_override(
    groups: np.ndarray,
    dist: np.ndarray,
    plot: int = FLOOD_OVERRIDE_PLOT,
    k: int = FLOOD_OVERRIDE_NEIGHBOURS,
) -> np.ndarray:
    """Reassign *plot* to the majority group of its *k* nearest neighbours.

    A tie goes to the group of the single nearest neighbour. Returns a copy;
    every other plot keeps its group.
    """
    neighbours = nearest_neighbours(dist, plot, k)
    neighbour_groups = [int(groups[p - 1]) for p in neighbours]
    counts = {g: neighbour_groups.count(g) for g in neighbour_groups}
    top = max(counts.values())
    winners = [g for g in neighbour_groups if counts[g] == top]
    new_groups = groups.copy()
    new_groups[plot - 1] = winners[0]
    return new_groups


def flood_groups_table(
    lookup: pl.DataFrame,
    groups: np.ndarray,
    matrix: np.ndarray,
    overridden_plot: int | None = None,
) -> pl.DataFrame:
    """One row per plot: flood_group, mean inundation, and the override flag."""
    return lookup.select("plot", "site", "site_plot").with_columns(
        pl.Series("flood_group", groups.astype(np.int64)),
        pl.Series("mean_inundation", np.nanmean(matrix, axis=1)),
        (pl.col("plot") == (overridden_plot or -1)).alias("overridden"),
    )


# ── Persistence ──────────────────────────────────────────────────────────────


def save_flood_groups(table: pl.DataFrame, derived_dir: Path) -> Path:
    derived_dir.mkdir(parents=True, exist_ok=True)
    path = derived_dir / "flood_groups.parquet"
    table.write_parquet(path)
    print(f"  Fixed flood groups written: {path}")
    return path


def load_flood_groups(derived_dir: Path, n_groups: int = N_FLOOD_GROUPS) -> pl.DataFrame:
    """Load the fixed flood groups and check they form *n_groups* groups.

    Raises FileNotFoundError if phase 02 has not been run, ValueError if the
    table does not hold groups 1..n_groups.
    """
    table = load_table(derived_dir, "flood_groups")
    found = sorted(table["flood_group"].unique().to_list())
    if found != list(range(1, n_groups + 1)):
        msg = f"Flood groups table holds groups {found}, expected 1..{n_groups}"
        raise ValueError(msg)
    return table.sort("plot")


# ── Plots ────────────────────────────────────────────────────────────────────


def plot_dendrogram(z: np.ndarray, lookup: pl.DataFrame, n_groups: int, out_dir: Path) -> None:
    fig, ax = plt.subplots(figsize=(14, 5))
    # Cut height sits between the merges that leave n_groups and n_groups - 1 clusters
    cut = (z[-n_groups, 2] + z[-(n_groups - 1), 2]) / 2
    dendrogram(
        z,
        labels=lookup["site_plot"].to_list(),
        color_threshold=cut,
        above_threshold_color="#888888",
        leaf_font_size=7,
        ax=ax,
    )
    ax.axhline(cut, color="#aa3333", linestyle="--", linewidth=1)
    ax.set_ylabel("Ward distance")
    ax.set_title(f"Plot flood histories: Ward clustering, {n_groups} groups")
    save_fig(fig, out_dir / "dendrogram.png")


def plot_inundation_by_group(
    matrix: np.ndarray,
    dates: list[date],
    groups: np.ndarray,
    out_dir: Path,
) -> plt.Figure:
    fig, ax = plt.subplots(figsize=(11, 5))
    for g in sorted(set(groups.tolist())):
        mean_series = np.nanmean(matrix[groups == g], axis=0)
        ax.plot(
            dates,
            mean_series,
            marker="o",
            markersize=3,
            color=FLOOD_GROUP_COLORS[g],
            label=f"{g}: {FLOOD_GROUP_LABELS[g]} (n={int((groups == g).sum())})",
        )
    ax.set_ylabel("Mean proportion inundated")
    ax.set_title("Inundation history by flood group")
    ax.legend(frameon=False)
    ax.grid(alpha=0.3)
    fig.autofmt_xdate()
    fig.savefig(out_dir / "inundation_by_group.png", dpi=150, bbox_inches="tight")
    print("  Saved: inundation_by_group.png")
    return fig


# ── Main ─────────────────────────────────────────────────────────────────────


def main() -> None:
    args = parse_args()
    design = SurveyDesign(name=args.survey, data_root=Path(args.data_dir))
    results_root = design.results_dir
    prep_dir = resolve_upstream_dir(
        "01_data_prep", results_root, args.run_id,
        Path(args.prep_dir) if args.prep_dir else None,
    )

    with RunContext(
        survey=args.survey,
        analysis_name="02_flood_groups",
        params=vars(args),
        results_root=design.results_root,
        primer=FLOOD_GROUPS_PRIMER,
        run_id=args.run_id,
    ) as ctx:
        print(f"Red gum understory flood groups — Survey {args.survey}")
        print(f"Data prep: {prep_dir}")
        print(f"Output:    {ctx.run_dir}")

        print_header("INUNDATION MATRIX")
        lookup = load_table(prep_dir / "data", "plot_lookup")
        matrix, dates = inundation_matrix(design.read_raw("inundation"), lookup)
        n_missing = int(np.isnan(matrix).sum())
        print(f"  {matrix.shape[0]} plots x {matrix.shape[1]} dates, {n_missing} cloud gaps")
        complete, complete_d = complete_dates(matrix, dates)
        print(f"  {complete.shape[1]} dates cloud-free for every plot")

        dist = flood_distance(complete, args.metric)
        groups, z = classify_flood_groups(complete, args.metric, N_FLOOD_GROUPS)

        print_header("FLOOD GROUPS")
        fixed_path = design.derived_dir / "flood_groups.parquet"
        if fixed_path.exists() and not args.reclassify:
            table = load_flood_groups(design.derived_dir)
            print(f"  Reusing fixed flood groups: {fixed_path} (pass --reclassify to recompute)")
            n_changed = int((table["flood_group"].to_numpy() != groups).sum())
            if n_changed:
                print(f"  Note: {n_changed} plots differ from a fresh classification")
        else:
            k = FLOOD_OVERRIDE_NEIGHBOURS
            overridden = apply_override(groups, dist, FLOOD_OVERRIDE_PLOT, k)
            neighbours = nearest_neighbours(dist, FLOOD_OVERRIDE_PLOT, k)
            print(
                f"  Override: plot {FLOOD_OVERRIDE_PLOT} group "
                f"{groups[FLOOD_OVERRIDE_PLOT - 1]} -> {overridden[FLOOD_OVERRIDE_PLOT - 1]} "
                f"(neighbours {neighbours})"
            )
            table = flood_groups_table(lookup, overridden, matrix, FLOOD_OVERRIDE_PLOT)
            save_flood_groups(table, design.derived_dir)

        for row in (
            table.group_by("flood_group")
            .agg(pl.len().alias("n"), pl.col("mean_inundation").mean().alias("mean"))
            .sort("flood_group")
            .iter_rows(named=True)
        ):
            print(
                f"  Group {row['flood_group']}: {row['n']} plots, "
                f"mean inundation {row['mean']:.3f}"
            )
        table.write_parquet(ctx.data_dir / "flood_groups.parquet")

        imputation: dict | None = None
        if not args.skip_imputation:
            print_header("IMPUTATION CHECK")
            imputation, imputed_groups = imputation_check(
                matrix,
                table["flood_group"].to_numpy(),
                n_imputations=args.n_imputations,
                seed=RANDOM_SEED,
                workers=args.workers,
            )
            lookup.select("plot", "site_plot").with_columns(
                pl.Series("imputed_group", imputed_groups),
                table["flood_group"],
            ).write_parquet(ctx.data_dir / "imputed_groups.parquet")
            with open(ctx.data_dir / "imputation_check.json", "w") as f:
                json.dump(imputation, f, indent=2)

        print_header("PLOTS")
        plot_dendrogram(z, lookup, N_FLOOD_GROUPS, ctx.plots_dir)
        final_groups = table["flood_group"].to_numpy()
        fig = plot_inundation_by_group(matrix, dates, final_groups, ctx.plots_dir)
        save_pdf(fig, ctx.plots_dir / "flood_groups.pdf", size="A4", orientation="landscape")

        build_flood_groups_report(
            ctx.report,
            table=table,
            n_dates=len(dates),
            n_complete_dates=len(complete_d),
            imputation=imputation,
            plots_dir=ctx.plots_dir,
        )


if __name__ == "__main__":
    main()
