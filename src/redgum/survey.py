"""Survey design: directory layout, plot lookup, and size-class helpers.

A ``SurveyDesign`` names one field survey and resolves where its raw inputs,
derived tables, cached posteriors, and analysis results live:

    data/<survey>/raw/       field CSVs (read-only)
    data/<survey>/derived/   tables fixed once computed (flood groups)
    data/<survey>/mcmc/      cached posterior NetCDF files
    results/<survey>/        phase outputs (see analysis/run_context.py)
"""

from dataclasses import dataclass
from pathlib import Path

import polars as pl

from redgum.config import (
    BROAD_SIZE_CLASSES,
    DATA_ROOT,
    DEFAULT_SURVEY,
    FIELD_TO_BROAD_CLASS,
    N_SITES,
    PLOTS_PER_SITE,
    RAW_FILES,
    RESULTS_ROOT,
)


@dataclass(frozen=True)
class SurveyDesign:
    """One survey of the site/plot network."""

    name: str = DEFAULT_SURVEY
    data_root: Path = Path(DATA_ROOT)
    results_root: Path = Path(RESULTS_ROOT)

    @property
    def data_dir(self) -> Path:
        return self.data_root / self.name

    @property
    def raw_dir(self) -> Path:
        return self.data_dir / "raw"

    @property
    def derived_dir(self) -> Path:
        return self.data_dir / "derived"

    @property
    def mcmc_dir(self) -> Path:
        return self.data_dir / "mcmc"

    @property
    def results_dir(self) -> Path:
        return self.results_root / self.name

    def raw_path(self, key: str) -> Path:
        """Path to a raw input file by its short key (e.g. "floristics")."""
        if key not in RAW_FILES:
            msg = f"Unknown raw input {key!r}. Known inputs: {', '.join(sorted(RAW_FILES))}"
            raise ValueError(msg)
        return self.raw_dir / RAW_FILES[key]

    def read_raw(self, key: str) -> pl.DataFrame:
        """Read a raw CSV, failing hard if it is missing."""
        path = self.raw_path(key)
        if not path.exists():
            msg = f"Raw input not found: {path}"
            raise FileNotFoundError(msg)
        return pl.read_csv(path, try_parse_dates=True)


def load_table(directory: Path, name: str) -> pl.DataFrame:
    """Load a cached parquet table written by an earlier phase.

    Raises FileNotFoundError when the table is absent; downstream phases never
    recompute upstream tables on their own.
    """
    path = directory / f"{name}.parquet"
    if not path.exists():
        msg = f"Cached table not found: {path} (run the upstream phase first)"
        raise FileNotFoundError(msg)
    return pl.read_parquet(path)


# ── Site / plot lookup ───────────────────────────────────────────────────────


def plot_index(
    site: int | pl.Expr,
    plot_in_site: int | pl.Expr,
    plots_per_site: int = PLOTS_PER_SITE,
) -> int | pl.Expr:
    """1-based plot index: plots are numbered site by site.

    Works on plain integers and on polars column expressions alike.
    """
    return (site - 1) * plots_per_site + plot_in_site


def build_plot_lookup(sites: pl.DataFrame, plots_per_site: int = PLOTS_PER_SITE) -> pl.DataFrame:
    """Build the plot lookup table from the site list.

    Returns one row per plot with columns plot, site, site_name, plot_in_site
    and site_plot (e.g. "S07-P2"), sorted by plot.
    """
    if "site_name" not in sites.columns:
        sites = sites.with_columns(pl.format("Site {}", pl.col("site")).alias("site_name"))
    return (
        sites.select("site", "site_name", "plot_in_site")
        .unique()
        .with_columns(
            plot_index(pl.col("site"), pl.col("plot_in_site"), plots_per_site).alias("plot"),
            pl.format(
                "S{}-P{}",
                pl.col("site").cast(pl.Utf8).str.zfill(2),
                pl.col("plot_in_site"),
            ).alias("site_plot"),
        )
        .select("plot", "site", "site_name", "plot_in_site", "site_plot")
        .sort("plot")
    )


def validate_plot_lookup(
    lookup: pl.DataFrame,
    n_sites: int = N_SITES,
    plots_per_site: int = PLOTS_PER_SITE,
) -> None:
    """Check the lookup matches the nested design exactly.

    Raises ValueError on a wrong number of sites or plots, duplicate plots,
    plot_in_site values outside 1..plots_per_site, or gaps in the plot index.
    """
    n_expected = n_sites * plots_per_site
    if lookup["plot"].n_unique() != lookup.height:
        msg = "Plot lookup contains duplicate plot indices"
        raise ValueError(msg)
    if lookup["site"].n_unique() != n_sites:
        msg = f"Expected {n_sites} sites, found {lookup['site'].n_unique()}"
        raise ValueError(msg)
    if lookup.height != n_expected:
        msg = f"Expected {n_expected} plots ({n_sites} x {plots_per_site}), found {lookup.height}"
        raise ValueError(msg)
    bad = lookup.filter(
        (pl.col("plot_in_site") < 1) | (pl.col("plot_in_site") > plots_per_site)
    )
    if bad.height > 0:
        msg = f"plot_in_site outside 1..{plots_per_site}: {bad['site_plot'].to_list()}"
        raise ValueError(msg)
    if sorted(lookup["plot"].to_list()) != list(range(1, n_expected + 1)):
        msg = f"Plot indices are not contiguous 1..{n_expected}"
        raise ValueError(msg)


def attach_plot_index(df: pl.DataFrame, lookup: pl.DataFrame) -> pl.DataFrame:
    """Join the plot index onto records keyed by (site, plot_in_site).

    Records whose site/plot pair is not in the lookup raise ValueError rather
    than silently dropping out of the analysis.
    """
    joined = df.join(
        lookup.select("site", "plot_in_site", "plot"),
        on=["site", "plot_in_site"],
        how="left",
    )
    missing = joined.filter(pl.col("plot").is_null())
    if missing.height > 0:
        pairs = missing.select("site", "plot_in_site").unique().sort("site", "plot_in_site")
        msg = f"{missing.height} records reference plots absent from the lookup: {pairs.rows()}"
        raise ValueError(msg)
    return joined


# ── Size classes ─────────────────────────────────────────────────────────────


def aggregate_size_classes(
    stems: pl.DataFrame,
    class_col: str = "size_class",
    count_col: str = "count",
    keys: tuple[str, ...] = ("plot", "subplot"),
) -> pl.DataFrame:
    """Sum field size-class counts into the six broad modeling classes.

    Field classes missing from FIELD_TO_BROAD_CLASS raise ValueError.
    Returns keys + broad_class + count, sorted.
    """
    unknown = set(stems[class_col].unique().to_list()) - set(FIELD_TO_BROAD_CLASS)
    if unknown:
        msg = f"Unknown field size classes: {sorted(unknown)}"
        raise ValueError(msg)
    mapping = pl.DataFrame(
        {
            class_col: list(FIELD_TO_BROAD_CLASS.keys()),
            "broad_class": list(FIELD_TO_BROAD_CLASS.values()),
        },
        schema_overrides={class_col: stems.schema[class_col]},
    )
    return (
        stems.join(mapping, on=class_col, how="left")
        .group_by([*keys, "broad_class"])
        .agg(pl.col(count_col).sum().alias(count_col))
        .sort([*keys, "broad_class"])
    )


def broad_class_label(broad_class: int) -> str:
    if broad_class not in BROAD_SIZE_CLASSES:
        msg = f"Unknown broad size class {broad_class}. Known: {list(BROAD_SIZE_CLASSES)}"
        raise ValueError(msg)
    return BROAD_SIZE_CLASSES[broad_class]
