"""Flood groups HTML report builder.

Usage (called from flood_groups.py):
    from analysis.flood_groups_report import build_flood_groups_report
    build_flood_groups_report(ctx.report, table=..., imputation=..., plots_dir=...)
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


def build_flood_groups_report(
    report: ReportBuilder,
    *,
    table: pl.DataFrame,
    n_dates: int,
    n_complete_dates: int,
    imputation: dict | None,
    plots_dir: Path,
) -> None:
    """Add the flood-group sections to *report*."""
    _add_method_text(report, n_dates, n_complete_dates)
    _add_group_summary(report, table)
    _add_figure(report, plots_dir, "dendrogram.png", "fig-dendrogram", "Dendrogram")
    _add_figure(
        report,
        plots_dir,
        "inundation_by_group.png",
        "fig-inundation",
        "Inundation History by Group",
    )
    _add_override_table(report, table)
    if imputation is not None:
        _add_imputation_text(report, imputation)
    print(f"  Report: {report.n_sections} sections added")


def _add_method_text(report: ReportBuilder, n_dates: int, n_complete_dates: int) -> None:
    report.add(
        TextSection(
            id="method",
            title="Classification",
            html=(
                f"<p>{n_complete_dates} of {n_dates} satellite dates were cloud-free for "
                "every plot. Plots were clustered by Ward's method on the distance between "
                "their inundation series and cut into three groups, numbered from least "
                "to most flooded.</p>"
            ),
        )
    )


def _add_group_summary(report: ReportBuilder, table: pl.DataFrame) -> None:
    display = (
        table.group_by("flood_group")
        .agg(
            pl.len().alias("n_plots"),
            pl.col("site").n_unique().alias("n_sites"),
            pl.col("mean_inundation").mean().alias("mean_inundation"),
            pl.col("mean_inundation").min().alias("min_inundation"),
            pl.col("mean_inundation").max().alias("max_inundation"),
        )
        .sort("flood_group")
    )
    html = make_gt(
        display,
        title="Flood Groups",
        subtitle="Mean proportion of each plot inundated across observed dates",
        column_labels={
            "flood_group": "Group",
            "n_plots": "Plots",
            "n_sites": "Sites",
            "mean_inundation": "Mean",
            "min_inundation": "Min",
            "max_inundation": "Max",
        },
        number_formats={"mean_inundation": ".3f", "min_inundation": ".3f", "max_inundation": ".3f"},
    )
    report.add(TableSection(id="groups", title="Flood Group Summary", html=html))


def _add_override_table(report: ReportBuilder, table: pl.DataFrame) -> None:
    overridden = table.filter(pl.col("overridden"))
    if overridden.height == 0:
        return
    html = make_gt(
        overridden.select("plot", "site_plot", "flood_group", "mean_inundation"),
        title="Manually Assigned Plot",
        subtitle="Assigned to the majority group of its nearest neighbours",
        number_formats={"mean_inundation": ".3f"},
    )
    report.add(TableSection(id="override", title="Override", html=html))


def _add_imputation_text(report: ReportBuilder, imputation: dict) -> None:
    report.add(
        TextSection(
            id="imputation",
            title="Imputation Robustness Check",
            html=(
                f"<p>{imputation['n_cloud_gaps']} cloud gaps were filled by "
                f"{imputation['n_imputations']} stochastic imputations over "
                f"{imputation['n_dates']} dates. Reclassifying the averaged series gives "
                f"an adjusted Rand index of <strong>{imputation['ari']:.3f}</strong> with the "
                f"fixed groups; {imputation['agreement']:.0%} of plots keep their group "
                f"({imputation['n_changed']} change).</p>"
            ),
        )
    )


def _add_figure(
    report: ReportBuilder,
    plots_dir: Path,
    filename: str,
    fig_id: str,
    title: str,
) -> None:
    path = plots_dir / filename
    if path.exists():
        report.add(FigureSection.from_file(fig_id, title, path))
