"""Shared fixtures for redgum tests.

A miniature survey: 4 sites x 3 plots (12 plots), a handful of floristic
records, stem counts, and an inundation series. Posteriors are built directly
with az.from_dict; no model is ever sampled in the test suite.
"""

from datetime import date

import arviz as az
import numpy as np
import polars as pl
import pytest

from redgum.survey import build_plot_lookup

N_TEST_SITES = 4

# ── Survey fixtures ──────────────────────────────────────────────────────────


@pytest.fixture
def sites() -> pl.DataFrame:
    """4 sites x 3 plots in the raw sites.csv layout."""
    return pl.DataFrame(
        {
            "site": [s for s in range(1, N_TEST_SITES + 1) for _ in range(3)],
            "site_name": [f"Site {s}" for s in range(1, N_TEST_SITES + 1) for _ in range(3)],
            "plot_in_site": [p for _ in range(N_TEST_SITES) for p in (1, 2, 3)],
        }
    )


@pytest.fixture
def lookup(sites: pl.DataFrame) -> pl.DataFrame:
    return build_plot_lookup(sites)


@pytest.fixture
def floristics() -> pl.DataFrame:
    """Quadrat records including one indeterminate taxon and a repeat sighting.

    CAL DIS is recorded in two quadrats of plot 1 (S01-P1).
    """
    return pl.DataFrame(
        {
            "site": [1, 1, 1, 1, 2, 2, 3, 4, 4],
            "plot_in_site": [1, 1, 1, 2, 1, 3, 2, 3, 3],
            "quadrat": [1, 2, 1, 3, 2, 1, 1, 2, 3],
            "species_code": [
                "CALDIS",
                "CALDIS",
                "PASDIS",
                "CALDIS",
                "PASDIS",
                "JUNSP",
                "ELEACU",
                "CALDIS",
                "ELEACU",
            ],
            "species_name": [
                "Calotis discoidea",
                "Calotis discoidea",
                "Paspalum distichum",
                "Calotis discoidea",
                "Paspalum distichum",
                "Juncus sp.",
                "Eleocharis acuta",
                "Calotis discoidea",
                "Eleocharis acuta",
            ],
        }
    )


@pytest.fixture
def stems_broad(lookup: pl.DataFrame) -> pl.DataFrame:
    """Broad-class counts for a few sub-plots; every other cell is implicitly zero."""
    return pl.DataFrame(
        {
            "plot": [1, 1, 2, 5, 12],
            "subplot": [1, 2, 1, 10, 3],
            "broad_class": [1, 1, 3, 6, 2],
            "count": [4, 2, 1, 1, 7],
        }
    )


@pytest.fixture
def inundation_series(lookup: pl.DataFrame) -> tuple[np.ndarray, pl.DataFrame]:
    """Three clearly separated flood regimes over 8 dates, as matrix and long frame.

    Plots 1-4 never flood, 5-8 flood on half the dates, 9-12 on nearly all.
    """
    dry = [0.0] * 8
    mid = [0.6, 0.0, 0.7, 0.0, 0.8, 0.0, 0.5, 0.0]
    wet = [0.9, 0.8, 1.0, 0.7, 0.9, 0.0, 1.0, 0.8]
    matrix = np.array([dry] * 4 + [mid] * 4 + [wet] * 4, dtype=np.float64)
    dates = [date(2000 + k, 10, 1) for k in range(8)]
    rows = [
        {"site": site, "plot_in_site": pis, "date": d, "inundation": matrix[plot - 1, j]}
        for plot, site, pis in lookup.select("plot", "site", "plot_in_site").iter_rows()
        for j, d in enumerate(dates)
    ]
    return matrix, pl.DataFrame(rows)


# ── Posterior fixtures ───────────────────────────────────────────────────────


@pytest.fixture
def rng() -> np.random.Generator:
    return np.random.default_rng(42)


@pytest.fixture
def make_idata():
    """Factory: az.InferenceData from {name: (chain, draw, ...) array}."""

    def _make(
        posterior: dict[str, np.ndarray],
        dims: dict | None = None,
        coords: dict | None = None,
    ) -> az.InferenceData:
        return az.from_dict(posterior=posterior, dims=dims, coords=coords)

    return _make


@pytest.fixture
def eval_at_point():
    """Factory: value of a model variable at a point of (transformed) value variables."""

    def _eval(model, var, point: dict) -> np.ndarray:
        (out,) = model.replace_rvs_by_values([var])
        fn = model.compile_fn(out, inputs=model.value_vars, on_unused_input="ignore")
        return fn(point)

    return _eval
