"""Covariate occurrence model HTML report builder.

Usage (called from occurrence_covariates.py):
    from analysis.occurrence_covariates_report import build_occurrence_covariates_report
    build_occurrence_covariates_report(ctx.report, results=..., variant_summary=..., ...)
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

TOP_EFFECTS = 25


def build_occurrence_covariates_report(
    report: ReportBuilder,
    *,
    results: dict[str, dict],
    variant_summary: pl.DataFrame,
    plots_dir: Path,
) -> None:
    """Add one block of sections per fitted variant, after a comparison table."""
    _add_variant_table(report, variant_summary)
    for variant, res in results.items():
        report.add(
            TextSection(
                id=f"model-{variant}",
                title=f"{variant} — Model",
                html=f"<p><code>{res['spec'].describe()}</code></p>",
            )
        )
        fig = plots_dir / f"coefs_{variant}.png"
        if fig.exists():
            report.add(
                FigureSection.from_file(
                    f"fig-coefs-{variant}",
                    f"{variant} — Species Responses",
                    fig,
                    caption="Green: 95% HPD interval excludes zero.",
                )
            )
        _add_clear_effects(report, variant, res["coefs"], res["inclusion"])
        report.add(convergence_section(res["convergence"], variant, variant))
    print(f"  Report: {report.n_sections} sections added")


def _add_variant_table(report: ReportBuilder, variant_summary: pl.DataFrame) -> None:
    html = make_gt(
        variant_summary,
        title="Fitted Variants",
        column_labels={
            "variant": "Variant",
            "covariates": "Covariates",
            "prior": "Coefficient prior",
            "n_clear_effects": "Clear effects",
            "pct_rhat_fail": "R-hat fail (%)",
            "divergences": "Divergences",
            "converged": "Converged",
        },
        number_formats={"pct_rhat_fail": ".1f"},
    )
    report.add(TableSection(id="variants", title="Variant Comparison", html=html))


def _add_clear_effects(
    report: ReportBuilder,
    variant: str,
    coefs: pl.DataFrame,
    inclusion: pl.DataFrame | None,
) -> None:
    clear = coefs.filter(pl.col("clear_effect"))
    if clear.height == 0:
        return
    display = clear.select("species_code", "covariate", "median", "hpd_lower", "hpd_upper")
    if inclusion is not None:
        display = display.join(
            inclusion.select("species_code", "covariate", pl.col("mean").alias("p_include")),
            on=["species_code", "covariate"],
            how="left",
        )
    display = display.sort(pl.col("median").abs(), descending=True).head(TOP_EFFECTS)
    html = make_gt(
        display,
        title=f"Strongest Species Responses ({variant})",
        subtitle=f"Top {min(TOP_EFFECTS, clear.height)} of {clear.height} effects clear of zero",
        column_labels={
            "species_code": "Species",
            "covariate": "Covariate",
            "median": "Median",
            "hpd_lower": "HPD 2.5%",
            "hpd_upper": "HPD 97.5%",
            "p_include": "P(include)",
        },
        number_formats={
            "median": ".3f",
            "hpd_lower": ".3f",
            "hpd_upper": ".3f",
            "p_include": ".2f",
        },
    )
    report.add(
        TableSection(id=f"effects-{variant}", title=f"{variant} — Clear Effects", html=html)
    )
