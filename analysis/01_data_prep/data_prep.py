"""
Red gum understory: data preparation

Cleans the raw floristic and stem-count records into the plot-level tables every
downstream phase reads. Plots are indexed 1..66 in site order and the same index
is used in every derived table.

Usage:
  uv run python analysis/01_data_prep/data_prep.py [--survey 2013] [--data-dir data]

Outputs (in results/<survey>/01_data_prep/<date>/):
  - data/:   plot_lookup, occurrence_long, occurrence_matrix, species_summary,
             stem_counts_broad, stem_density, plot_richness (parquet)
             prep_manifest.json
  - plots/:  richness_vs_stems.png
  - run_info.json, run_log.txt, 01_data_prep_report.html
"""

import argparse
import json
import re
import sys
from pathlib import Path

import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt
import numpy as np
import polars as pl

sys.path.insert(0, str(Path(__file__).resolve().parent.parent.parent))

from redgum.config import (
    BROAD_SIZE_CLASSES,
    DATA_ROOT,
    DEFAULT_SURVEY,
    INDETERMINATE_PATTERN,
    N_SITES,
    PLOTS_PER_SITE,
    QUADRATS_PER_PLOT,
    SUBPLOT_AREA_HA,
    SUBPLOTS_PER_PLOT,
)
from redgum.survey import (
    SurveyDesign,
    aggregate_size_classes,
    attach_plot_index,
    build_plot_lookup,
    validate_plot_lookup,
)

try:
    from analysis.run_context import RunContext, print_header
except ModuleNotFoundError:
    from run_context import RunContext, print_header  # type: ignore[no-redef]

try:
    from analysis.plotting import save_fig
except ModuleNotFoundError:
    from plotting import save_fig  # type: ignore[no-redef]

try:
    from analysis.data_prep_report import build_data_prep_report
except ModuleNotFoundError:
    from data_prep_report import build_data_prep_report  # type: ignore[no-redef]

# ── Primer ───────────────────────────────────────────────────────────────────

DATA_PREP_PRIMER = """\
# Data Preparation

## Purpose

Turns the field records into clean plot-level tables. Every later phase reads
these tables rather than the raw CSVs, so counts of plots and species are fixed
here once.

## Method

1. **Plot lookup.** 22 sites x 3 plots. Plot index = (site - 1) * 3 + plot_in_site.
   The lookup is checked against the design (66 contiguous plots) and the run
   stops if it does not match.
2. **Indeterminate taxa.** Records identified only to genus or not at all
   ("sp.", "spp.", "unknown", "indeterminate") are dropped.
3. **Pooling.** Presence in any of the 3 floristic quadrats counts as presence
   in the plot; the number of quadrats is kept as `n_quadrats`.
4. **Occurrence matrix.** Plots x species, 0/1, every plot present even when it
   has no records.
5. **Stem counts.** 11 field diameter classes collapse to 6 broad classes.
   Empirical density is stems per hectare over the 10 x 0.1 ha sub-plots.

## Inputs

`data/<survey>/raw/`: sites.csv, floristics.csv, species_traits.csv, stem_counts.csv

## Outputs

| File | Description |
|------|-------------|
| `plot_lookup.parquet` | plot, site, site_name, plot_in_site, site_plot |
| `occurrence_long.parquet` | One row per (plot, species) presence |
| `occurrence_matrix.parquet` | Wide 0/1 matrix, rows = plots, columns = species codes |
| `species_summary.parquet` | Plot frequency and traits per species |
| `stem_counts_broad.parquet` | Counts per plot x sub-plot x broad class |
| `stem_density.parquet` | Empirical stems/ha per plot x broad class |
| `plot_richness.parquet` | Species richness and total stem density per plot |
| `prep_manifest.json` | Record counts at each filtering step |
"""


# ── Helpers ──────────────────────────────────────────────────────────────────


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Red gum understory data preparation")
    parser.add_argument("--survey", default=DEFAULT_SURVEY)
    parser.add_argument("--data-dir", default=DATA_ROOT, help="Root of the data directory")
    parser.add_argument("--run-id", default=None, help="Run ID for grouped pipeline output")
    return parser.parse_args()


# ── Taxon filtering ──────────────────────────────────────────────────────────


def is_indeterminate(name: str) -> bool:
    """True for taxa not identified to species (e.g. "Juncus sp.", "Unknown forb")."""
    return re.search(INDETERMINATE_PATTERN, name) is not None


def indeterminate_names(records: pl.DataFrame) -> list[str]:
    """Sorted distinct species names that remove_indeterminate_taxa drops."""
    names = records["species_name"].drop_nulls().unique().to_list()
    return sorted(n for n in names if is_indeterminate(n))


def remove_indeterminate_taxa(records: pl.DataFrame) -> pl.DataFrame:
    """Drop records whose species_name is indeterminate or missing.

    Idempotent: filtering an already-filtered frame returns it unchanged.
    """
    return records.filter(
        pl.col("species_name").is_not_null()
        & ~pl.col("species_name").str.contains(INDETERMINATE_PATTERN)
    )


def check_species_codes(records: pl.DataFrame) -> None:
    """Species codes are join keys: each must map to exactly one name."""
    clashes = (
        records.group_by("species_code")
        .agg(pl.col("species_name").n_unique().alias("n_names"))
        .filter(pl.col("n_names") > 1)
    )
    if clashes.height > 0:
        msg = f"Species codes with more than one name: {sorted(clashes['species_code'].to_list())}"
        raise ValueError(msg)


# ── Occurrence ───────────────────────────────────────────────────────────────


def pool_quadrats(records: pl.DataFrame, lookup: pl.DataFrame) -> pl.DataFrame:
    """Collapse quadrat records to one presence per (plot, species_code).

    Returns plot, species_code, n_quadrats sorted by plot then species.
    Quadrat numbers outside 1..QUADRATS_PER_PLOT raise ValueError.
    """
    bad = records.filter(
        (pl.col("quadrat") < 1) | (pl.col("quadrat") > QUADRATS_PER_PLOT)
    )
    if bad.height > 0:
        msg = f"{bad.height} floristic records have quadrat outside 1..{QUADRATS_PER_PLOT}"
        raise ValueError(msg)
    return (
        attach_plot_index(records, lookup)
        .group_by("plot", "species_code")
        .agg(pl.col("quadrat").n_unique().cast(pl.Int64).alias("n_quadrats"))
        .sort("plot", "species_code")
    )


def occurrence_matrix(presences: pl.DataFrame, lookup: pl.DataFrame) -> pl.DataFrame:
    """Wide presence/absence matrix: one row per plot, one 0/1 column per species.

    Rows follow the plot index and include plots with no records (all zeros);
    species columns are sorted by code.
    """
    species = sorted(presences["species_code"].unique().to_list())
    wide = presences.with_columns(pl.lit(1, dtype=pl.Int8).alias("present")).pivot(
        on="species_code", index="plot", values="present"
    )
    return (
        lookup.select("plot")
        .join(wide, on="plot", how="left")
        .with_columns(pl.col(species).fill_null(0).cast(pl.Int8))
        .select("plot", *species)
        .sort("plot")
    )


def species_summary(
    presences: pl.DataFrame,
    records: pl.DataFrame,
    traits: pl.DataFrame,
    n_plots: int,
) -> pl.DataFrame:
    """Per-species plot frequency joined to trait metadata.

    Species without a traits row keep null trait columns and are reported.
    """
    names = records.select("species_code", "species_name").unique(subset=["species_code"])
    summary = (
        presences.group_by("species_code")
        .agg(
            pl.col("plot").n_unique().alias("n_plots"),
            pl.col("n_quadrats").sum().alias("n_quadrats"),
        )
        .with_columns((pl.col("n_plots") / n_plots).alias("frequency"))
        .join(names, on="species_code", how="left")
        .join(traits, on="species_code", how="left")
    )
    trait_cols = [c for c in traits.columns if c != "species_code"]
    if trait_cols:
        missing = summary.filter(pl.col(trait_cols[0]).is_null())
        if missing.height > 0:
            codes = sorted(missing["species_code"].to_list())
            print(f"  WARNING: {missing.height} species have no trait record: {codes}")
    return summary.select(
        "species_code", "species_name", "n_plots", "frequency", "n_quadrats", *trait_cols
    ).sort(["n_plots", "species_code"], descending=[True, False])


# ── Stems ────────────────────────────────────────────────────────────────────


def stem_density_table(
    stems_broad: pl.DataFrame,
    lookup: pl.DataFrame,
    n_subplots: int = SUBPLOTS_PER_PLOT,
    subplot_area: float = SUBPLOT_AREA_HA,
) -> pl.DataFrame:
    """Empirical stems per hectare for every plot x broad class.

    Plot/class combinations with no stems are present with density 0.
    """
    grid = lookup.select("plot").join(
        pl.DataFrame({"broad_class": list(BROAD_SIZE_CLASSES)}), how="cross"
    )
    totals = stems_broad.group_by("plot", "broad_class").agg(pl.col("count").sum())
    return (
        grid.join(totals, on=["plot", "broad_class"], how="left")
        .with_columns(pl.col("count").fill_null(0))
        .with_columns(
            (pl.col("count") / (n_subplots * subplot_area)).alias("stems_per_ha"),
            pl.col("broad_class").replace_strict(BROAD_SIZE_CLASSES).alias("class_label"),
        )
        .sort("plot", "broad_class")
    )


def plot_richness(
    presences: pl.DataFrame,
    density: pl.DataFrame,
    lookup: pl.DataFrame,
) -> pl.DataFrame:
    """Species richness and total stem density per plot."""
    richness = presences.group_by("plot").agg(pl.col("species_code").n_unique().alias("richness"))
    total = density.group_by("plot").agg(pl.col("stems_per_ha").sum().alias("total_stems_per_ha"))
    return (
        lookup.select("plot", "site", "site_plot")
        .join(richness, on="plot", how="left")
        .join(total, on="plot", how="left")
        .with_columns(pl.col("richness").fill_null(0).cast(pl.Int64))
        .sort("plot")
    )


def plot_richness_vs_stems(richness: pl.DataFrame, out_dir: Path) -> None:
    fig, ax = plt.subplots(figsize=(7, 5))
    x = richness["total_stems_per_ha"].to_numpy()
    ax.scatter(np.log1p(x), richness["richness"].to_numpy(), color="#3b5d3a", alpha=0.8)
    ax.set_xlabel("log(1 + total stems per ha)")
    ax.set_ylabel("Understory species richness")
    ax.set_title("Plot richness against red gum stem density")
    ax.grid(alpha=0.3)
    save_fig(fig, out_dir / "richness_vs_stems.png")


# ── Main ─────────────────────────────────────────────────────────────────────


def main() -> None:
    args = parse_args()
    design = SurveyDesign(name=args.survey, data_root=Path(args.data_dir))

    with RunContext(
        survey=args.survey,
        analysis_name="01_data_prep",
        params=vars(args),
        results_root=design.results_root,
        primer=DATA_PREP_PRIMER,
        run_id=args.run_id,
    ) as ctx:
        print(f"Red gum understory data preparation — Survey {args.survey}")
        print(f"Raw data: {design.raw_dir}")
        print(f"Output:   {ctx.run_dir}")

        manifest: dict = {}

        print_header("PLOT LOOKUP")
        lookup = build_plot_lookup(design.read_raw("sites"), PLOTS_PER_SITE)
        validate_plot_lookup(lookup, N_SITES, PLOTS_PER_SITE)
        n_plots = lookup.height
        print(f"  {lookup['site'].n_unique()} sites, {n_plots} plots")
        manifest["n_sites"] = lookup["site"].n_unique()
        manifest["n_plots"] = n_plots

        print_header("FLORISTICS")
        records = design.read_raw("floristics")
        manifest["floristic_records_raw"] = records.height
        manifest["indeterminate_names"] = indeterminate_names(records)
        records = remove_indeterminate_taxa(records)
        manifest["floristic_records_determinate"] = records.height
        n_dropped = manifest["floristic_records_raw"] - records.height
        print(f"  {records.height} records ({n_dropped} indeterminate dropped)")
        for name in manifest["indeterminate_names"]:
            print(f"    dropped: {name}")
        check_species_codes(records)

        presences = pool_quadrats(records, lookup)
        occ = occurrence_matrix(presences, lookup)
        n_species = occ.width - 1
        manifest["presences"] = presences.height
        manifest["n_species"] = n_species
        manifest["plots_without_records"] = n_plots - presences["plot"].n_unique()
        print(f"  {presences.height} plot x species presences, {n_species} species")

        traits = design.read_raw("traits")
        summary = species_summary(presences, records, traits, n_plots)

        print_header("STEM COUNTS")
        stems = attach_plot_index(design.read_raw("stems"), lookup)
        manifest["stem_records_raw"] = stems.height
        stems_broad = aggregate_size_classes(stems)
        density = stem_density_table(stems_broad, lookup)
        manifest["total_stems"] = int(stems_broad["count"].sum())
        print(
            f"  {manifest['total_stems']} stems in {stems_broad.height} "
            "plot x sub-plot x class cells"
        )

        richness = plot_richness(presences, density, lookup)
        print(
            f"  Richness per plot: median {richness['richness'].median():.0f}, "
            f"range {richness['richness'].min()}-{richness['richness'].max()}"
        )

        print_header("SAVING")
        lookup.write_parquet(ctx.data_dir / "plot_lookup.parquet")
        presences.write_parquet(ctx.data_dir / "occurrence_long.parquet")
        occ.write_parquet(ctx.data_dir / "occurrence_matrix.parquet")
        summary.write_parquet(ctx.data_dir / "species_summary.parquet")
        stems_broad.write_parquet(ctx.data_dir / "stem_counts_broad.parquet")
        density.write_parquet(ctx.data_dir / "stem_density.parquet")
        richness.write_parquet(ctx.data_dir / "plot_richness.parquet")
        with open(ctx.data_dir / "prep_manifest.json", "w") as f:
            json.dump(manifest, f, indent=2)
        print(f"  Saved 7 tables and prep_manifest.json to {ctx.data_dir}")

        plot_richness_vs_stems(richness, ctx.plots_dir)

        build_data_prep_report(
            ctx.report,
            manifest=manifest,
            species=summary,
            density=density,
            plots_dir=ctx.plots_dir,
        )


if __name__ == "__main__":
    main()
