"""Data preparation HTML report builder.

Usage (called from data_prep.py):
    from analysis.data_prep_report import build_data_prep_report
    build_data_prep_report(ctx.report, manifest=..., species=..., density=..., plots_dir=...)
"""

from __future__ import annotations

from pathlib import Path

import polars as pl

try:
    from analysis.report import FigureSection, ReportBuilder, TableSection, TextSection, make_gt
except ModuleNotFoundError:
    from report import (  # type: ignore[no-redef]
        FigureSection,
        ReportBuilder,
        TableSection,
        TextSection,
        make_gt,
    )

TOP_SPECIES = 25


def build_data_prep_report(
    report: ReportBuilder,
    *,
    manifest: dict,
    species: pl.DataFrame,
    density: pl.DataFrame,
    plots_dir: Path,
) -> None:
    """Add the data preparation sections to *report*."""
    _add_manifest(report, manifest)
    _add_species_table(report, species)
    _add_density_table(report, density)
    _add_richness_figure(report, plots_dir)
    print(f"  Report: {report.n_sections} sections added")


def _add_manifest(report: ReportBuilder, manifest: dict) -> None:
    rows = "".join(
        f"<tr><td>{k}</td><td>{', '.join(v) if isinstance(v, list) else v}</td></tr>"
        for k, v in manifest.items()
    )
    report.add(
        TextSection(
            id="manifest",
            title="Record Counts",
            html=f"<table>{rows}</table>",
            caption="Counts at each filtering step (also in prep_manifest.json).",
        )
    )


def _add_species_table(report: ReportBuilder, species: pl.DataFrame) -> None:
    if species.height == 0:
        return
    display = species.head(TOP_SPECIES).select(
        "species_code", "species_name", "n_plots", "frequency", "n_quadrats"
    )
    html = make_gt(
        display,
        title="Most Frequent Understory Species",
        subtitle=f"Top {min(TOP_SPECIES, species.height)} of {species.height} species",
        column_labels={
            "species_code": "Code",
            "species_name": "Species",
            "n_plots": "Plots",
            "frequency": "Frequency",
            "n_quadrats": "Quadrats",
        },
        number_formats={"frequency": ".2f"},
    )
    report.add(TableSection(id="species", title="Species Frequency", html=html))


def _add_density_table(report: ReportBuilder, density: pl.DataFrame) -> None:
    display = (
        density.group_by("broad_class", "class_label")
        .agg(
            pl.col("stems_per_ha").mean().alias("mean"),
            pl.col("stems_per_ha").median().alias("median"),
            (pl.col("stems_per_ha") > 0).sum().alias("n_plots_present"),
        )
        .sort("broad_class")
    )
    html = make_gt(
        display,
        title="Empirical Red Gum Stem Density",
        subtitle="Stems per hectare across plots, by broad size class",
        column_labels={
            "broad_class": "Class",
            "class_label": "Diameter",
            "mean": "Mean",
            "median": "Median",
            "n_plots_present": "Plots with stems",
        },
        number_formats={"mean": ".1f", "median": ".1f"},
    )
    report.add(TableSection(id="stem-density", title="Stem Density", html=html))


def _add_richness_figure(report: ReportBuilder, plots_dir: Path) -> None:
    path = plots_dir / "richness_vs_stems.png"
    if path.exists():
        report.add(
            FigureSection.from_file(
                "fig-richness",
                "Richness and Stem Density",
                path,
                caption="Each point is one plot.",
            )
        )
