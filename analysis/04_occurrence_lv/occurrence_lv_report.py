"""Latent-variable occurrence model HTML report builder.

Usage (called from occurrence_lv.py):
    from analysis.occurrence_lv_report import build_occurrence_lv_report
    build_occurrence_lv_report(ctx.report, spec=..., data=..., scores=..., ...)
"""

from __future__ import annotations

from pathlib import Path

import polars as pl

try:
    from analysis.report import (
        FigureSection,
        ReportBuilder,
        TableSection,
        TextSection,
        convergence_section,
        make_gt,
    )
except ModuleNotFoundError:
    from report import (  # type: ignore[no-redef]
        FigureSection,
        ReportBuilder,
        TableSection,
        TextSection,
        convergence_section,
        make_gt,
    )


def build_occurrence_lv_report(
    report: ReportBuilder,
    *,
    spec: object,
    data: dict,
    scores: pl.DataFrame,
    convergence: dict,
    plots_dir: Path,
) -> None:
    """Add the latent-variable model sections to *report*."""
    report.add(
        TextSection(
            id="model",
            title="Model",
            html=(
                f"<p><code>{spec.describe()}</code></p>"  # type: ignore[attr-defined]
                f"<p>{data['n_plots']} plots x {data['n_species']} species "
                f"({data['n_dropped']} rare species excluded).</p>"
            ),
        )
    )
    ordination = plots_dir / "ordination.png"
    if ordination.exists():
        report.add(
            FigureSection.from_file(
                "fig-ordination",
                "Model-Based Ordination",
                ordination,
                caption=(
                    "Posterior median latent scores of each plot, outlined by flood group. "
                    "Grey arrows are species loadings (rescaled)."
                ),
            )
        )
    if "flood_group" in scores.columns:
        _add_group_centroids(report, scores)
    corr = plots_dir / "residual_correlation.png"
    if corr.exists():
        report.add(
            FigureSection.from_file("fig-residual-corr", "Residual Species Correlations", corr)
        )
    report.add(convergence_section(convergence, "occurrence-lv"))
    print(f"  Report: {report.n_sections} sections added")


def _add_group_centroids(report: ReportBuilder, scores: pl.DataFrame) -> None:
    lv_cols = [c for c in scores.columns if c.startswith("LV")]
    display = (
        scores.group_by("flood_group")
        .agg(pl.len().alias("n_plots"), *[pl.col(c).mean() for c in lv_cols])
        .sort("flood_group")
    )
    html = make_gt(
        display,
        title="Flood Group Centroids",
        subtitle="Mean posterior-median latent score per flood group",
        column_labels={"flood_group": "Group", "n_plots": "Plots"},
        number_formats={c: "+.3f" for c in lv_cols},
    )
    report.add(TableSection(id="centroids", title="Group Centroids", html=html))
