"""Posterior sample matrices and their summaries.

A posterior matrix has one row per retained draw (chains concatenated) and one
column per scalar parameter, labelled ``name[i,j]`` with 1-based indices:

    intercept[1]  intercept[2]  ...  lv_coefs[12,2]

Labels are parsed back into (name, index_1, index_2, ...) so summaries can be
joined to plot, species, or size-class lookups.
"""

import re
from collections.abc import Sequence

import arviz as az
import numpy as np
import polars as pl

_LABEL_RE = re.compile(r"^(?P<name>[A-Za-z_][\w.]*)(?:\[(?P<idx>\d+(?:\s*,\s*\d+)*)\])?$")

SUMMARY_QUANTILES = (0.025, 0.25, 0.5, 0.75, 0.975)


def posterior_matrix(idata: az.InferenceData, var_names: Sequence[str]) -> pl.DataFrame:
    """Flatten posterior variables into a draws x parameters frame.

    Raises KeyError if a variable is not in the posterior.
    """
    columns: dict[str, np.ndarray] = {}
    for var in var_names:
        if var not in idata.posterior:
            msg = f"{var!r} not in posterior (available: {', '.join(idata.posterior.data_vars)})"
            raise KeyError(msg)
        values = idata.posterior[var].values  # (chain, draw, *shape)
        n_chain, n_draw = values.shape[:2]
        shape = values.shape[2:]
        flat = values.reshape(n_chain * n_draw, -1)
        if not shape:
            columns[var] = flat[:, 0]
            continue
        for k, idx in enumerate(np.ndindex(*shape)):
            label = ",".join(str(i + 1) for i in idx)
            columns[f"{var}[{label}]"] = flat[:, k]
    return pl.DataFrame(columns)


def parse_param_label(label: str) -> tuple[str, tuple[int, ...]]:
    """Split ``lv_coefs[12,2]`` into ("lv_coefs", (12, 2)).

    Scalars return an empty index tuple. Malformed labels raise ValueError.
    """
    m = _LABEL_RE.match(label.strip())
    if m is None:
        msg = f"Malformed parameter label: {label!r}"
        raise ValueError(msg)
    idx = m.group("idx")
    indices = tuple(int(i) for i in idx.split(",")) if idx else ()
    return m.group("name"), indices


def parse_param_labels(labels: Sequence[str]) -> pl.DataFrame:
    """Parse many labels into columns param, name, index_1 .. index_k.

    k is the largest number of indices among *labels*; shorter labels get nulls.
    """
    parsed = [parse_param_label(lab) for lab in labels]
    n_idx = max((len(idx) for _, idx in parsed), default=0)
    data: dict[str, list] = {
        "param": list(labels),
        "name": [name for name, _ in parsed],
    }
    for k in range(n_idx):
        data[f"index_{k + 1}"] = [idx[k] if k < len(idx) else None for _, idx in parsed]
    schema = {"param": pl.Utf8, "name": pl.Utf8}
    schema |= {f"index_{k + 1}": pl.Int64 for k in range(n_idx)}
    return pl.DataFrame(data, schema=schema)


def hpdi(x: np.ndarray, prob: float = 0.95) -> tuple[float, float]:
    """Highest posterior density interval from draws.

    The shortest window containing round(n * prob) gaps of the sorted draws,
    the same rule coda's HPDinterval uses. Deterministic for fixed draws.
    """
    if not 0 < prob < 1:
        msg = f"prob must be in (0, 1), got {prob}"
        raise ValueError(msg)
    vals = np.sort(np.asarray(x, dtype=np.float64).ravel())
    n = len(vals)
    if n < 2:
        msg = f"Need at least 2 draws for an HPD interval, got {n}"
        raise ValueError(msg)
    gap = max(1, min(n - 1, round(n * prob)))
    init = np.arange(n - gap)
    i = int(np.argmin(vals[init + gap] - vals[init]))
    return float(vals[i]), float(vals[i + gap])


def summarize_matrix(matrix: pl.DataFrame, prob: float = 0.95) -> pl.DataFrame:
    """Per-parameter mean, quantiles, and HPD interval of a posterior matrix.

    Returns one row per column of *matrix* with param, name, index_* columns
    followed by mean, median, q2.5, q25, q75, q97.5, hpd_lower, hpd_upper.
    """
    values = matrix.to_numpy()
    q = np.quantile(values, SUMMARY_QUANTILES, axis=0)
    bounds = [hpdi(values[:, k], prob) for k in range(values.shape[1])]
    stats = pl.DataFrame(
        {
            "param": matrix.columns,
            "mean": values.mean(axis=0),
            "median": q[2],
            "q2.5": q[0],
            "q25": q[1],
            "q75": q[3],
            "q97.5": q[4],
            "hpd_lower": [lo for lo, _ in bounds],
            "hpd_upper": [hi for _, hi in bounds],
        }
    )
    return pl.concat([parse_param_labels(matrix.columns), stats.drop("param")], how="horizontal")


def attach_labels(
    summary: pl.DataFrame,
    index_col: str,
    labels: Sequence[str],
    name: str,
) -> pl.DataFrame:
    """Map a 1-based index column onto labels (labels[0] is index 1).

    Raises ValueError if an index falls outside 1..len(labels).
    """
    idx = summary[index_col].drop_nulls()
    if len(idx) and (idx.min() < 1 or idx.max() > len(labels)):
        msg = f"{index_col} outside 1..{len(labels)} cannot be labelled as {name}"
        raise ValueError(msg)
    mapping = {i + 1: str(label) for i, label in enumerate(labels)}
    return summary.with_columns(
        pl.col(index_col).replace_strict(mapping, default=None, return_dtype=pl.Utf8).alias(name)
    )
