"""
Tests for variance partitioning (analysis/06_variance_partition/variance_partition.py).

Shares are checked against a hand-worked example and against a brute-force
computation of each linear-predictor term across plots.

Run: uv run pytest tests/test_variance_partition.py -v
"""

import sys
from pathlib import Path

import numpy as np
import polars as pl
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from analysis.model_spec import get_variant
from analysis.variance_partition import (
    partition_means,
    summarize_partition,
    variance_components,
    variance_partition,
)

N_PLOTS = 12
N_SPECIES = 4
SITE_IDX = np.repeat(np.arange(4), 3)
COV_NAMES = ["flood_2", "flood_3", "stems_1", "stems_2", "stems_3"]

# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def data() -> dict:
    return {
        "n_species": N_SPECIES,
        "species": [f"SP{j}" for j in range(N_SPECIES)],
        "site_idx": SITE_IDX,
    }


@pytest.fixture
def x() -> np.ndarray:
    rng = np.random.default_rng(11)
    flood = np.zeros((N_PLOTS, 2))
    flood[4:8, 0] = 1
    flood[8:, 1] = 1
    return np.column_stack([flood, rng.normal(size=(N_PLOTS, 3))])


@pytest.fixture
def full_idata(make_idata):
    """Posterior for flood_stems_ssvs: 2 chains x 30 draws."""
    rng = np.random.default_rng(5)
    shape = (2, 30)
    return make_idata(
        {
            "intercept": rng.normal(size=(*shape, N_SPECIES)),
            "lv": rng.normal(size=(*shape, N_PLOTS, 2)),
            "lv_coefs": rng.normal(size=(*shape, N_SPECIES, 2)),
            "coefs": rng.normal(size=(*shape, N_SPECIES, len(COV_NAMES))),
            "site_effect": rng.normal(size=(*shape, 4)),
            "plot_effect": rng.normal(size=(*shape, N_PLOTS)),
        }
    )


def _flat(idata, name):
    values = idata.posterior[name].values
    return values.reshape(-1, *values.shape[2:])


# ── Hand-worked example ──────────────────────────────────────────────────────


class TestHandWorked:
    @pytest.fixture
    def idata(self, make_idata):
        lv = np.array([[1.0, 0.0], [-1.0, 0.0], [0.0, 1.0], [0.0, -1.0]])
        loadings = np.array([[1.0, 0.0], [1.0, 1.0]])
        return make_idata(
            {
                "intercept": np.broadcast_to([1.0, 0.0], (1, 2, 2)).copy(),
                "lv": np.broadcast_to(lv, (1, 2, 4, 2)).copy(),
                "lv_coefs": np.broadcast_to(loadings, (1, 2, 2, 2)).copy(),
            }
        )

    def test_components(self, idata):
        data = {"n_species": 2, "site_idx": np.zeros(4, dtype=np.int64)}
        comps = variance_components(idata, data, get_variant("lv_only"))
        assert set(comps) == {"intercept", "latent"}
        np.testing.assert_allclose(comps["intercept"][0], [1.0, 0.0])
        # lv covariance across plots is 0.5 * I
        np.testing.assert_allclose(comps["latent"][0], [0.5, 1.0])

    def test_shares(self, idata):
        data = {"n_species": 2, "site_idx": np.zeros(4, dtype=np.int64)}
        shares = variance_partition(idata, data, get_variant("lv_only"))
        np.testing.assert_allclose(shares["intercept"][0], [2 / 3, 0.0])
        np.testing.assert_allclose(shares["latent"][0], [1 / 3, 1.0])


# ── Against brute force ──────────────────────────────────────────────────────


class TestBruteForce:
    def test_latent_matches_direct_variance(self, full_idata, data, x):
        comps = variance_components(
            full_idata, data, get_variant("flood_stems_ssvs"), x, COV_NAMES
        )
        lv, loadings = _flat(full_idata, "lv"), _flat(full_idata, "lv_coefs")
        term = np.einsum("dpk,djk->dpj", lv, loadings)
        np.testing.assert_allclose(comps["latent"], term.var(axis=1))

    def test_covariate_groups_match_direct_variance(self, full_idata, data, x):
        comps = variance_components(
            full_idata, data, get_variant("flood_stems_ssvs"), x, COV_NAMES
        )
        coefs = _flat(full_idata, "coefs")
        flood = np.einsum("pk,djk->dpj", x[:, :2], coefs[:, :, :2])
        stems = np.einsum("pk,djk->dpj", x[:, 2:], coefs[:, :, 2:])
        np.testing.assert_allclose(comps["flood"], flood.var(axis=1))
        np.testing.assert_allclose(comps["stems"], stems.var(axis=1))

    def test_random_matches_direct_variance(self, full_idata, data, x):
        comps = variance_components(
            full_idata, data, get_variant("flood_stems_ssvs"), x, COV_NAMES
        )
        row = _flat(full_idata, "site_effect")[:, SITE_IDX] + _flat(full_idata, "plot_effect")
        expected = np.repeat(row.var(axis=1)[:, None], N_SPECIES, axis=1)
        np.testing.assert_allclose(comps["random"], expected)


class TestVariancePartition:
    def test_shares_sum_to_one(self, full_idata, data, x):
        shares = variance_partition(
            full_idata, data, get_variant("flood_stems_ssvs"), x, COV_NAMES
        )
        assert list(shares) == ["intercept", "latent", "flood", "stems", "random"]
        total = np.sum(list(shares.values()), axis=0)
        np.testing.assert_allclose(total, 1.0)

    def test_shares_non_negative(self, full_idata, data, x):
        shares = variance_partition(
            full_idata, data, get_variant("flood_stems_laplace"), x, COV_NAMES
        )
        assert all((v >= 0).all() for v in shares.values())

    def test_flood_only_variant(self, full_idata, data, x):
        shares = variance_partition(
            full_idata, data, get_variant("flood_laplace"), x[:, :2], COV_NAMES[:2]
        )
        assert "stems" not in shares
        assert "flood" in shares

    def test_covariates_required(self, full_idata, data):
        with pytest.raises(ValueError, match="needs its covariate matrix"):
            variance_partition(full_idata, data, get_variant("flood_laplace"))

    def test_species_count_mismatch(self, full_idata, data, x):
        data = data | {"n_species": N_SPECIES + 1}
        with pytest.raises(ValueError, match="min-plots"):
            variance_partition(full_idata, data, get_variant("lv_rows"))

    def test_missing_variable(self, make_idata, data):
        idata = make_idata({"intercept": np.ones((1, 4, N_SPECIES))})
        with pytest.raises(KeyError, match="lv"):
            variance_partition(idata, data, get_variant("lv_only"))


# ── Summaries ────────────────────────────────────────────────────────────────


class TestSummaries:
    def test_long_summary(self, full_idata, data):
        shares = variance_partition(full_idata, data, get_variant("lv_rows"))
        summary = summarize_partition(shares, data["species"])
        assert summary.height == 3 * N_SPECIES
        assert summary.columns == ["species_code", "component", "mean", "hpd_lower", "hpd_upper"]
        assert (summary["hpd_lower"] <= summary["hpd_upper"]).all()
        assert summary["hpd_lower"].min() >= 0.0
        assert summary["hpd_upper"].max() <= 1.0

    def test_means_wide_and_sorted(self, full_idata, data):
        shares = variance_partition(full_idata, data, get_variant("lv_rows"))
        means = partition_means(summarize_partition(shares, data["species"]))
        assert means.columns == ["species_code", "intercept", "latent", "random"]
        assert means["latent"].to_list() == sorted(means["latent"].to_list(), reverse=True)
        row_sums = means.select(pl.sum_horizontal("intercept", "latent", "random")).to_series()
        np.testing.assert_allclose(row_sums.to_numpy(), 1.0)
