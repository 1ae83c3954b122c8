"""Stem density model HTML report builder.

Usage (called from stem_model.py):
    from analysis.stem_model_report import build_stem_model_report
    build_stem_model_report(ctx.report, class_params=..., convergence=..., plots_dir=...)
"""

from __future__ import annotations

from pathlib import Path

import polars as pl

try:
    from analysis.report import (
        FigureSection,
        ReportBuilder,
        TableSection,
        convergence_section,
        make_gt,
    )
except ModuleNotFoundError:
    from report import (  # type: ignore[no-redef]
        FigureSection,
        ReportBuilder,
        TableSection,
        convergence_section,
        make_gt,
    )


def build_stem_model_report(
    report: ReportBuilder,
    *,
    class_params: pl.DataFrame,
    convergence: dict,
    plots_dir: Path,
) -> None:
    """Add the stem model sections to *report*."""
    _add_class_params_table(report, class_params)
    for filename, fig_id, title in [
        ("density_by_class.png", "fig-density", "Modelled Stem Density by Class"),
        ("posterior_vs_empirical.png", "fig-shrinkage", "Posterior vs Empirical Density"),
    ]:
        path = plots_dir / filename
        if path.exists():
            report.add(FigureSection.from_file(fig_id, title, path))
    report.add(convergence_section(convergence, "stem-model"))
    print(f"  Report: {report.n_sections} sections added")


def _add_class_params_table(report: ReportBuilder, class_params: pl.DataFrame) -> None:
    display = class_params.select(
        "name", "class_label", "median", "hpd_lower", "hpd_upper"
    ).sort("name", "class_label")
    html = make_gt(
        display,
        title="Size-Class Parameters",
        subtitle="b: mean log stems/ha; sigma: between-plot SD; alpha: NB dispersion",
        column_labels={
            "name": "Parameter",
            "class_label": "Class",
            "median": "Median",
            "hpd_lower": "HPD 2.5%",
            "hpd_upper": "HPD 97.5%",
        },
        number_formats={"median": ".3f", "hpd_lower": ".3f", "hpd_upper": ".3f"},
    )
    report.add(TableSection(id="class-params", title="Class Parameters", html=html))
