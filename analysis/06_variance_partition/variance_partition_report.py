"""Variance partitioning HTML report builder.

Usage (called from variance_partition.py):
    from analysis.variance_partition_report import build_variance_partition_report
    build_variance_partition_report(ctx.report, spec=..., means=..., plots_dir=...)
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


def build_variance_partition_report(
    report: ReportBuilder,
    *,
    spec: object,
    means: pl.DataFrame,
    plots_dir: Path,
) -> None:
    """Add the variance partitioning sections to *report*."""
    components = [c for c in means.columns if c != "species_code"]
    report.add(
        TextSection(
            id="model",
            title="Partitioned Model",
            html=(
                f"<p><code>{spec.describe()}</code></p>"  # type: ignore[attr-defined]
                f"<p>Components: {', '.join(components)}. "
                f"{means.height} species.</p>"
            ),
        )
    )
    fig = plots_dir / "variance_partition.png"
    if fig.exists():
        report.add(
            FigureSection.from_file(
                "fig-partition",
                "Variance Shares by Species",
                fig,
                caption="Posterior mean share of each component; species sorted by latent share.",
            )
        )
    overall = means.select(
        *[pl.col(c).mean().alias(f"{c}_mean") for c in components],
    ).unpivot(variable_name="component", value_name="mean_share")
    overall = overall.with_columns(pl.col("component").str.strip_suffix("_mean"))
    html = make_gt(
        overall,
        title="Average Variance Shares",
        subtitle="Mean over species of the posterior mean share",
        column_labels={"component": "Component", "mean_share": "Mean share"},
        number_formats={"mean_share": ".3f"},
    )
    report.add(TableSection(id="overall", title="Average Shares", html=html))
    print(f"  Report: {report.n_sections} sections added")
