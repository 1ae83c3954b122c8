"""Sampling, posterior caching, and convergence diagnostics.

Every model in the pipeline is sampled the same way: the PyMC graph is
compiled and sampled by nutpie (chains run concurrently), and the resulting
InferenceData is cached as NetCDF under data/<survey>/mcmc/<model>.nc. A cached
posterior is reused unless the phase is run with --refit.

Convergence is summarized as the percentage of scalar parameters failing each
check (R-hat, bulk ESS, Geweke z) plus the divergence count. Failures are
printed as WARNING lines; nothing is re-run automatically.
"""

import time
from pathlib import Path

import arviz as az
import numpy as np
import nutpie
import pymc as pm

from redgum.config import (
    ESS_THRESHOLD,
    GEWEKE_Z,
    MAX_DIVERGENCES,
    N_CHAINS,
    N_SAMPLES,
    N_TUNE,
    RANDOM_SEED,
    RHAT_THRESHOLD,
)

GEWEKE_FIRST = 0.1
GEWEKE_LAST = 0.5


# ── Caching ─────────────────────────────────────────────────────────────────


def load_cached_idata(path: Path) -> az.InferenceData:
    """Load a cached posterior, failing hard if it has not been fitted yet."""
    if not path.exists():
        msg = f"Cached posterior not found: {path} (fit the model first)"
        raise FileNotFoundError(msg)
    return az.from_netcdf(str(path))


def check_cached_coords(idata: az.InferenceData, model: pm.Model) -> None:
    """Raise ValueError if a cached posterior was fitted to different coordinates.

    Every dimension the model and the cached posterior share must carry the
    same labels in the same order (species list, plots, covariates).
    """
    for dim, labels in model.coords.items():
        if labels is None or dim not in idata.posterior.coords:
            continue
        cached = [str(v) for v in idata.posterior.coords[dim].values.tolist()]
        current = [str(v) for v in labels]
        if cached != current:
            msg = (
                f"Cached posterior coords for {dim!r} differ from the current data "
                f"({len(cached)} cached vs {len(current)} current); rerun with --refit"
            )
            raise ValueError(msg)


def fit_or_load(
    model: pm.Model,
    cache_path: Path,
    *,
    refit: bool = False,
    n_samples: int = N_SAMPLES,
    n_tune: int = N_TUNE,
    n_chains: int = N_CHAINS,
    seed: int = RANDOM_SEED,
    initial_points: dict[str, np.ndarray] | None = None,
) -> tuple[az.InferenceData, float, bool]:
    """Sample *model* with nutpie, or reuse the cached posterior at *cache_path*.

    Args:
        model: A built (unsampled) PyMC model.
        cache_path: NetCDF file the posterior is cached in.
        refit: Ignore any cached posterior and sample again.
        initial_points: Optional starting values by free variable name. Other
            free variables keep nutpie's default jitter.

    Returns (InferenceData, sampling_time_seconds, from_cache).
    """
    if cache_path.exists() and not refit:
        print(f"  Reusing cached posterior: {cache_path}")
        idata = load_cached_idata(cache_path)
        check_cached_coords(idata, model)
        return idata, 0.0, True

    compile_kwargs: dict = {}
    if initial_points:
        compile_kwargs["initial_points"] = initial_points
        # Jitter everything else; HalfNormal scales started at 0 give log(0) = -inf
        compile_kwargs["jitter_rvs"] = {
            rv for rv in model.free_RVs if rv.name not in initial_points
        }
        print(f"  Initial values supplied for: {sorted(initial_points)}")

    print("  Compiling model with nutpie...")
    compiled = nutpie.compile_pymc_model(model, **compile_kwargs)

    print(f"  Sampling: {n_samples} draws, {n_tune} tune, {n_chains} chains")
    print(f"  seed={seed}, sampler=nutpie (Rust NUTS)")

    t0 = time.time()
    idata = nutpie.sample(
        compiled,
        draws=n_samples,
        tune=n_tune,
        chains=n_chains,
        seed=seed,
        progress_bar=True,
        store_divergences=True,
    )
    sampling_time = time.time() - t0
    print(f"  Sampling complete in {sampling_time:.1f}s")

    cache_path.parent.mkdir(parents=True, exist_ok=True)
    idata.to_netcdf(str(cache_path))
    print(f"  Cached posterior: {cache_path}")
    return idata, sampling_time, False


# ── Diagnostics ─────────────────────────────────────────────────────────────


def geweke_z(
    x: np.ndarray,
    first: float = GEWEKE_FIRST,
    last: float = GEWEKE_LAST,
) -> float:
    """Geweke z-score comparing the start and end of one chain.

    The means of the first 10% and last 50% of draws are compared, each
    variance scaled by its segment's effective sample size.
    """
    x = np.asarray(x, dtype=np.float64)
    if first + last >= 1:
        msg = f"Geweke segments overlap: first={first}, last={last}"
        raise ValueError(msg)
    n = len(x)
    a = x[: int(first * n)]
    b = x[n - int(last * n) :]
    if len(a) < 4 or len(b) < 4:
        msg = f"Chain too short for a Geweke test ({n} draws)"
        raise ValueError(msg)
    denom = np.sqrt(_segment_variance(a) + _segment_variance(b))
    if denom == 0:
        return 0.0
    return float((a.mean() - b.mean()) / denom)


def _segment_variance(seg: np.ndarray) -> float:
    """Variance of a segment mean; a constant segment contributes zero."""
    var = np.var(seg, ddof=1)
    if var == 0:
        return 0.0
    return float(var / az.ess(seg))


def _geweke_max(values: np.ndarray) -> np.ndarray:
    """Largest |z| over chains for each scalar in a (chain, draw, ...) array."""
    n_chain, n_draw = values.shape[:2]
    flat = values.reshape(n_chain, n_draw, -1)
    out = np.zeros(flat.shape[2])
    for k in range(flat.shape[2]):
        out[k] = max(abs(geweke_z(flat[c, :, k])) for c in range(n_chain))
    return out


def convergence_summary(
    idata: az.InferenceData,
    var_names: list[str] | None = None,
    rhat_threshold: float = RHAT_THRESHOLD,
    ess_threshold: float = ESS_THRESHOLD,
    geweke_threshold: float = GEWEKE_Z,
) -> dict:
    """Percentage of scalar parameters failing each convergence check.

    Deterministic variables are included when named in *var_names*; by default
    all posterior variables are checked.

    Returns dict with n_params, pct_rhat_fail, pct_ess_fail, pct_geweke_fail,
    max_rhat, min_ess, divergences, and all_ok.
    """
    names = var_names or list(idata.posterior.data_vars)
    names = [v for v in names if v in idata.posterior]

    rhat_ds = az.rhat(idata, var_names=names)
    ess_ds = az.ess(idata, var_names=names, method="bulk")

    rhat = np.concatenate([np.atleast_1d(rhat_ds[v].values).ravel() for v in names])
    ess = np.concatenate([np.atleast_1d(ess_ds[v].values).ravel() for v in names])
    geweke = np.concatenate([_geweke_max(idata.posterior[v].values) for v in names])

    # Constant scalars (fixed zeros in the loading matrix) have undefined R-hat
    rhat = rhat[np.isfinite(rhat)]
    ess = ess[np.isfinite(ess)]

    divergences = 0
    if hasattr(idata, "sample_stats") and "diverging" in idata.sample_stats:
        divergences = int(idata.sample_stats["diverging"].sum().values)

    n_params = len(geweke)
    diag = {
        "n_params": n_params,
        "pct_rhat_fail": 100.0 * float(np.mean(rhat > rhat_threshold)) if len(rhat) else 0.0,
        "pct_ess_fail": 100.0 * float(np.mean(ess < ess_threshold)) if len(ess) else 0.0,
        "pct_geweke_fail": 100.0 * float(np.mean(geweke > geweke_threshold)),
        "max_rhat": float(rhat.max()) if len(rhat) else float("nan"),
        "min_ess": float(ess.min()) if len(ess) else float("nan"),
        "divergences": divergences,
    }

    rhat_ok = diag["pct_rhat_fail"] == 0
    ess_ok = diag["pct_ess_fail"] == 0
    div_ok = divergences < MAX_DIVERGENCES
    print(f"  Parameters checked: {n_params}")
    print(
        f"  R-hat > {rhat_threshold}: {diag['pct_rhat_fail']:.1f}% "
        f"(max {diag['max_rhat']:.3f})  {'OK' if rhat_ok else 'WARNING'}"
    )
    print(
        f"  ESS < {ess_threshold}: {diag['pct_ess_fail']:.1f}% "
        f"(min {diag['min_ess']:.0f})  {'OK' if ess_ok else 'WARNING'}"
    )
    # Expected ~5% false positives at 1.96, so Geweke is reported but not gating
    print(f"  |Geweke z| > {geweke_threshold}: {diag['pct_geweke_fail']:.1f}%")
    print(f"  Divergences: {divergences}  {'OK' if div_ok else 'WARNING'}")

    diag["all_ok"] = rhat_ok and ess_ok and div_ok
    if diag["all_ok"]:
        print("  CONVERGENCE: ALL CHECKS PASSED")
    else:
        print("  CONVERGENCE: SOME CHECKS FAILED — inspect diagnostics")
    return diag
