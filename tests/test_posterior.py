"""
Tests for posterior matrices, label parsing, and HPD summaries (analysis/posterior.py).

Run: uv run pytest tests/test_posterior.py -v
"""

import sys
from pathlib import Path

import numpy as np
import polars as pl
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from analysis.posterior import (
    attach_labels,
    hpdi,
    parse_param_label,
    parse_param_labels,
    posterior_matrix,
    summarize_matrix,
)

# ── Label parsing ────────────────────────────────────────────────────────────


class TestParseParamLabel:
    def test_two_indices(self):
        assert parse_param_label("lv_coefs[12,2]") == ("lv_coefs", (12, 2))

    def test_one_index(self):
        assert parse_param_label("intercept[3]") == ("intercept", (3,))

    def test_scalar(self):
        assert parse_param_label("site_sd") == ("site_sd", ())

    def test_spaces_after_comma(self):
        assert parse_param_label("density[1, 6]") == ("density", (1, 6))

    def test_dotted_name(self):
        assert parse_param_label("lv.coefs[1,1]") == ("lv.coefs", (1, 1))

    @pytest.mark.parametrize("label", ["", "[1]", "coefs[1,", "coefs[a]", "1coefs"])
    def test_malformed(self, label):
        with pytest.raises(ValueError, match="Malformed"):
            parse_param_label(label)


class TestParseParamLabels:
    def test_ragged_indices(self):
        parsed = parse_param_labels(["site_sd", "intercept[2]", "coefs[3,1]"])
        assert parsed.columns == ["param", "name", "index_1", "index_2"]
        assert parsed["index_1"].to_list() == [None, 2, 3]
        assert parsed["index_2"].to_list() == [None, None, 1]
        assert parsed["index_1"].dtype == pl.Int64

    def test_scalars_only(self):
        parsed = parse_param_labels(["a", "b"])
        assert parsed.columns == ["param", "name"]


# ── posterior_matrix ─────────────────────────────────────────────────────────


class TestPosteriorMatrix:
    def test_columns_one_based(self, make_idata):
        idata = make_idata({"coefs": np.zeros((2, 5, 3, 2)), "sd": np.zeros((2, 5))})
        matrix = posterior_matrix(idata, ["sd", "coefs"])
        assert matrix.columns[:3] == ["sd", "coefs[1,1]", "coefs[1,2]"]
        assert matrix.columns[-1] == "coefs[3,2]"
        assert matrix.height == 10

    def test_values_follow_index(self, make_idata):
        values = np.arange(2 * 4 * 3, dtype=float).reshape(2, 4, 3)
        matrix = posterior_matrix(make_idata({"b": values}), ["b"])
        np.testing.assert_array_equal(matrix["b[2]"].to_numpy(), values[:, :, 1].ravel())

    def test_missing_variable(self, make_idata):
        with pytest.raises(KeyError, match="lv"):
            posterior_matrix(make_idata({"b": np.zeros((1, 4))}), ["lv"])


# ── hpdi ─────────────────────────────────────────────────────────────────────


class TestHpdi:
    def test_deterministic_on_known_draws(self):
        draws = np.arange(101, dtype=float)
        assert hpdi(draws, 0.9) == (0.0, 91.0)

    def test_shortest_window(self):
        draws = np.concatenate([np.full(95, 5.0), [0.0, 100.0, 200.0, 300.0, 400.0]])
        lo, hi = hpdi(draws, 0.9)
        assert lo == hi == 5.0

    def test_order_independent(self):
        rng = np.random.default_rng(1)
        draws = rng.normal(size=500)
        assert hpdi(draws) == hpdi(rng.permutation(draws))

    def test_normal_width(self):
        draws = np.random.default_rng(2).normal(size=20000)
        lo, hi = hpdi(draws, 0.95)
        assert lo == pytest.approx(-1.96, abs=0.06)
        assert hi == pytest.approx(1.96, abs=0.06)

    def test_skewed_interval_shifts_left(self):
        draws = np.random.default_rng(3).exponential(size=5000)
        lo, hi = hpdi(draws, 0.9)
        assert lo < np.quantile(draws, 0.05)
        assert hi < np.quantile(draws, 0.95)

    def test_too_few_draws(self):
        with pytest.raises(ValueError, match="at least 2 draws"):
            hpdi(np.array([1.0]))

    @pytest.mark.parametrize("prob", [0.0, 1.0, 1.5])
    def test_bad_prob(self, prob):
        with pytest.raises(ValueError, match="prob"):
            hpdi(np.arange(10.0), prob)


# ── Summaries ────────────────────────────────────────────────────────────────


class TestSummarizeMatrix:
    def test_columns(self, make_idata, rng):
        idata = make_idata({"b": rng.normal(size=(2, 50, 3))})
        summary = summarize_matrix(posterior_matrix(idata, ["b"]))
        assert summary.columns == [
            "param",
            "name",
            "index_1",
            "mean",
            "median",
            "q2.5",
            "q25",
            "q75",
            "q97.5",
            "hpd_lower",
            "hpd_upper",
        ]
        assert summary["index_1"].to_list() == [1, 2, 3]

    def test_reproducible(self, make_idata, rng):
        idata = make_idata({"b": rng.normal(size=(2, 50, 3))})
        first = summarize_matrix(posterior_matrix(idata, ["b"]))
        second = summarize_matrix(posterior_matrix(idata, ["b"]))
        assert first.equals(second)

    def test_quantiles_ordered(self, make_idata, rng):
        idata = make_idata({"b": rng.normal(size=(2, 50, 3))})
        s = summarize_matrix(posterior_matrix(idata, ["b"]))
        assert (s["q2.5"] <= s["q25"]).all()
        assert (s["q25"] <= s["median"]).all()
        assert (s["median"] <= s["q75"]).all()
        assert (s["q75"] <= s["q97.5"]).all()


class TestAttachLabels:
    def test_labels(self):
        summary = pl.DataFrame({"index_1": [1, 3, 2]})
        result = attach_labels(summary, "index_1", ["a", "b", "c"], "species_code")
        assert result["species_code"].to_list() == ["a", "c", "b"]

    def test_numeric_labels_become_strings(self):
        summary = pl.DataFrame({"index_1": [1, 2]})
        result = attach_labels(summary, "index_1", [10, 20], "plot_label")
        assert result["plot_label"].to_list() == ["10", "20"]

    def test_out_of_range(self):
        summary = pl.DataFrame({"index_1": [1, 4]})
        with pytest.raises(ValueError, match="outside 1..3"):
            attach_labels(summary, "index_1", ["a", "b", "c"], "species_code")
