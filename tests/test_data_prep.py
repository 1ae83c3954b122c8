"""
Tests for the data preparation phase (analysis/01_data_prep/data_prep.py).

Verifies the indeterminate-taxon filter, quadrat pooling, the occurrence
matrix shape and counts, species summaries, and empirical stem densities.

Run: uv run pytest tests/test_data_prep.py -v
"""

import sys
from pathlib import Path

import polars as pl
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from analysis.data_prep import (
    check_species_codes,
    indeterminate_names,
    is_indeterminate,
    occurrence_matrix,
    plot_richness,
    pool_quadrats,
    remove_indeterminate_taxa,
    species_summary,
    stem_density_table,
)

# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def determinate(floristics: pl.DataFrame) -> pl.DataFrame:
    return remove_indeterminate_taxa(floristics)


@pytest.fixture
def presences(determinate: pl.DataFrame, lookup: pl.DataFrame) -> pl.DataFrame:
    return pool_quadrats(determinate, lookup)


@pytest.fixture
def traits() -> pl.DataFrame:
    return pl.DataFrame(
        {
            "species_code": ["CALDIS", "PASDIS"],
            "origin": ["native", "native"],
            "life_form": ["forb", "grass"],
        }
    )


# ── Taxon filtering ──────────────────────────────────────────────────────────


class TestIsIndeterminate:
    @pytest.mark.parametrize("name", ["Juncus sp.", "Carex spp.", "Unknown forb"])
    def test_indeterminate(self, name):
        assert is_indeterminate(name)

    @pytest.mark.parametrize("name", ["Calotis discoidea", "Sporobolus mitchellii"])
    def test_determinate(self, name):
        assert not is_indeterminate(name)

    def test_names_listed_for_manifest(self, floristics):
        assert indeterminate_names(floristics) == ["Juncus sp."]

    def test_names_ignore_missing(self):
        records = pl.DataFrame({"species_name": ["Carex spp.", None, "Carex spp."]})
        assert indeterminate_names(records) == ["Carex spp."]


class TestRemoveIndeterminateTaxa:
    @pytest.mark.parametrize(
        "name",
        ["Juncus sp.", "Carex spp.", "Unknown forb", "Indeterminate grass", "unknown"],
    )
    def test_indeterminate_name_dropped(self, name):
        records = pl.DataFrame({"species_code": ["X"], "species_name": [name]})
        assert remove_indeterminate_taxa(records).height == 0

    @pytest.mark.parametrize(
        "name",
        ["Calotis discoidea", "Juncus aridicola", "Sporobolus mitchellii", "Paspalum distichum"],
    )
    def test_determinate_name_kept(self, name):
        records = pl.DataFrame({"species_code": ["X"], "species_name": [name]})
        assert remove_indeterminate_taxa(records).height == 1

    def test_drops_genus_only_records(self, floristics):
        result = remove_indeterminate_taxa(floristics)
        assert "JUNSP" not in result["species_code"].to_list()
        assert result.height == floristics.height - 1

    def test_idempotent(self, floristics):
        once = remove_indeterminate_taxa(floristics)
        twice = remove_indeterminate_taxa(once)
        assert once.equals(twice)

    def test_drops_missing_names(self):
        records = pl.DataFrame(
            {"species_code": ["A", "B"], "species_name": ["Calotis discoidea", None]}
        )
        assert remove_indeterminate_taxa(records)["species_code"].to_list() == ["A"]


class TestCheckSpeciesCodes:
    def test_consistent_codes(self, determinate):
        check_species_codes(determinate)

    def test_code_with_two_names(self):
        records = pl.DataFrame(
            {"species_code": ["CALDIS", "CALDIS"], "species_name": ["Calotis a", "Calotis b"]}
        )
        with pytest.raises(ValueError, match="CALDIS"):
            check_species_codes(records)


# ── Occurrence ───────────────────────────────────────────────────────────────


class TestPoolQuadrats:
    def test_one_row_per_plot_species(self, presences):
        assert presences.height == 7
        assert presences.select("plot", "species_code").is_duplicated().sum() == 0

    def test_quadrat_count(self, presences):
        row = presences.filter((pl.col("plot") == 1) & (pl.col("species_code") == "CALDIS"))
        assert row["n_quadrats"].item() == 2

    def test_bad_quadrat(self, determinate, lookup):
        bad = determinate.with_columns(pl.lit(4).alias("quadrat"))
        with pytest.raises(ValueError, match="quadrat outside"):
            pool_quadrats(bad, lookup)


class TestOccurrenceMatrix:
    def test_shape(self, presences, lookup):
        matrix = occurrence_matrix(presences, lookup)
        assert matrix.height == lookup.height
        assert matrix.columns == ["plot", "CALDIS", "ELEACU", "PASDIS"]

    def test_presence_count_preserved(self, presences, lookup):
        matrix = occurrence_matrix(presences, lookup)
        total = sum(matrix[c].sum() for c in matrix.columns if c != "plot")
        assert total == presences.height

    def test_empty_plots_are_zero(self, presences, lookup):
        matrix = occurrence_matrix(presences, lookup)
        row = matrix.filter(pl.col("plot") == 3).drop("plot").row(0)
        assert row == (0, 0, 0)

    def test_species_column_sums(self, presences, lookup):
        matrix = occurrence_matrix(presences, lookup)
        assert matrix["CALDIS"].sum() == 3
        assert matrix["ELEACU"].sum() == 2


class TestSpeciesSummary:
    def test_frequency(self, presences, determinate, traits):
        summary = species_summary(presences, determinate, traits, n_plots=12)
        caldis = summary.filter(pl.col("species_code") == "CALDIS").row(0, named=True)
        assert caldis["n_plots"] == 3
        assert caldis["frequency"] == pytest.approx(0.25)
        assert caldis["n_quadrats"] == 4

    def test_sorted_by_frequency(self, presences, determinate, traits):
        summary = species_summary(presences, determinate, traits, n_plots=12)
        assert summary["species_code"][0] == "CALDIS"

    def test_missing_traits_warned(self, presences, determinate, traits, capsys):
        summary = species_summary(presences, determinate, traits, n_plots=12)
        assert "ELEACU" in capsys.readouterr().out
        eleacu = summary.filter(pl.col("species_code") == "ELEACU")
        assert eleacu["life_form"].item() is None


# ── Stems ────────────────────────────────────────────────────────────────────


class TestStemDensityTable:
    def test_full_grid(self, stems_broad, lookup):
        density = stem_density_table(stems_broad, lookup)
        assert density.height == lookup.height * 6

    def test_stems_per_ha(self, stems_broad, lookup):
        density = stem_density_table(stems_broad, lookup)
        row = density.filter((pl.col("plot") == 1) & (pl.col("broad_class") == 1))
        # 6 stems over 10 x 0.1 ha sub-plots
        assert row["stems_per_ha"].item() == pytest.approx(6.0)

    def test_absent_class_is_zero(self, stems_broad, lookup):
        density = stem_density_table(stems_broad, lookup)
        row = density.filter((pl.col("plot") == 3) & (pl.col("broad_class") == 4))
        assert row["stems_per_ha"].item() == 0

    def test_class_label(self, stems_broad, lookup):
        density = stem_density_table(stems_broad, lookup)
        assert density.filter(pl.col("broad_class") == 6)["class_label"][0] == ">100 cm"


class TestPlotRichness:
    def test_richness_per_plot(self, presences, stems_broad, lookup):
        density = stem_density_table(stems_broad, lookup)
        richness = plot_richness(presences, density, lookup)
        assert richness.height == 12
        assert richness.filter(pl.col("plot") == 1)["richness"].item() == 2
        assert richness.filter(pl.col("plot") == 3)["richness"].item() == 0
