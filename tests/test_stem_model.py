"""
Tests for the negative-binomial stem density model (analysis/03_stem_model/stem_model.py).

Verifies data preparation and graph construction. MCMC sampling is not tested
(too slow for unit tests); posterior summaries run on hand-built InferenceData.

Run: uv run pytest tests/test_stem_model.py -v
"""

import sys
from pathlib import Path

import numpy as np
import polars as pl
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from analysis.stem_model import (
    SUMMARY_COLUMNS,
    build_stem_graph,
    prepare_stem_data,
    summarize_class_params,
    summarize_stem_density,
)

# ── prepare_stem_data ────────────────────────────────────────────────────────


class TestPrepareStemData:
    def test_full_grid(self, stems_broad, lookup):
        data = prepare_stem_data(stems_broad, lookup)
        assert len(data["y"]) == 12 * 10 * 6
        assert data["n_plots"] == 12
        assert data["n_classes"] == 6

    def test_total_count_preserved(self, stems_broad, lookup):
        data = prepare_stem_data(stems_broad, lookup)
        assert data["y"].sum() == stems_broad["count"].sum()

    def test_indices_zero_based(self, stems_broad, lookup):
        data = prepare_stem_data(stems_broad, lookup)
        assert data["plot_idx"].min() == 0
        assert data["plot_idx"].max() == 11
        assert data["class_idx"].max() == 5

    def test_count_in_right_cell(self, stems_broad, lookup):
        data = prepare_stem_data(stems_broad, lookup)
        # plot 12, sub-plot 3, class 2 holds 7 stems
        cell = (data["plot_idx"] == 11) & (data["class_idx"] == 1)
        assert data["y"][cell].sum() == 7

    def test_duplicate_rows_rejected(self, stems_broad, lookup):
        dup = pl.concat([stems_broad, stems_broad.head(1)])
        with pytest.raises(ValueError, match="duplicate"):
            prepare_stem_data(dup, lookup)


# ── build_stem_graph ─────────────────────────────────────────────────────────


class TestBuildStemGraph:
    def test_free_variables(self, stems_broad, lookup):
        model = build_stem_graph(prepare_stem_data(stems_broad, lookup))
        names = {rv.name for rv in model.free_RVs}
        assert names == {"b", "sigma", "u", "alpha"}

    def test_density_deterministic(self, stems_broad, lookup):
        model = build_stem_graph(prepare_stem_data(stems_broad, lookup))
        assert "density" in {d.name for d in model.deterministics}

    def test_coords(self, stems_broad, lookup):
        data = prepare_stem_data(stems_broad, lookup)
        model = build_stem_graph(data)
        assert list(model.coords["size_class"]) == data["class_labels"]
        assert len(model.coords["plot"]) == 12

    def test_initial_logp_finite(self, stems_broad, lookup):
        model = build_stem_graph(prepare_stem_data(stems_broad, lookup))
        logp = model.compile_logp()(model.initial_point())
        assert np.isfinite(logp)


# ── Summaries ────────────────────────────────────────────────────────────────


@pytest.fixture
def stem_idata(stems_broad, lookup, make_idata, rng):
    data = prepare_stem_data(stems_broad, lookup)
    shape = (2, 50)
    posterior = {
        "b": rng.normal(size=(*shape, 6)),
        "sigma": np.abs(rng.normal(size=(*shape, 6))),
        "alpha": np.abs(rng.normal(size=(*shape, 6))) + 1,
        "density": np.exp(rng.normal(size=(*shape, 12, 6))),
    }
    return make_idata(posterior), data


class TestSummaries:
    def test_density_summary_shape(self, stem_idata):
        idata, data = stem_idata
        summary = summarize_stem_density(idata, data)
        assert summary.height == 12 * 6
        assert summary.columns == ["plot", "broad_class", "class_label", *SUMMARY_COLUMNS]

    def test_density_labels(self, stem_idata):
        idata, data = stem_idata
        summary = summarize_stem_density(idata, data)
        row = summary.filter((pl.col("plot") == 3) & (pl.col("broad_class") == 6))
        assert row["class_label"].item() == ">100 cm"

    def test_density_matches_draws(self, stem_idata):
        idata, data = stem_idata
        summary = summarize_stem_density(idata, data)
        draws = idata.posterior["density"].values[:, :, 2, 5].ravel()
        row = summary.filter((pl.col("plot") == 3) & (pl.col("broad_class") == 6))
        assert row["median"].item() == pytest.approx(np.median(draws))

    def test_class_params(self, stem_idata):
        idata, data = stem_idata
        params = summarize_class_params(idata, data)
        assert params.height == 18
        assert set(params["name"].unique().to_list()) == {"b", "sigma", "alpha"}
        assert params.filter(pl.col("name") == "b")["class_label"][0] == "regeneration"
