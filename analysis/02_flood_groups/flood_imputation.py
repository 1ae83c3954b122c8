"""Multiple-imputation robustness check for the flood groups.

The primary classification uses only cloud-free dates. This check keeps every
date instead: cloud gaps are filled by stochastic regression imputation
(scikit-learn IterativeImputer with posterior sampling), each imputation in its
own worker process. Imputed series are binarized, averaged across imputations
into inundation frequencies, and reclassified with Euclidean distance and Ward
linkage. Agreement with the primary groups is reported as the adjusted Rand
index and the fraction of plots assigned to the same group.

The result is diagnostic only; it never replaces the fixed groups.
"""

from concurrent.futures import ProcessPoolExecutor

import numpy as np
from sklearn.experimental import enable_iterative_imputer  # noqa: F401
from sklearn.impute import IterativeImputer
from sklearn.metrics import adjusted_rand_score

from redgum.config import (
    IMPUTATION_WORKERS,
    INUNDATION_THRESHOLD,
    N_FLOOD_GROUPS,
    N_IMPUTATIONS,
    RANDOM_SEED,
)

IMPUTER_MAX_ITER = 10


def impute_once(
    matrix: np.ndarray,
    seed: int,
    threshold: float = INUNDATION_THRESHOLD,
) -> np.ndarray:
    """One stochastic imputation of the cloud gaps, returned as 0/1 inundation.

    Dates with no observation at all carry no information and are dropped,
    so the result can have fewer columns than *matrix*.
    """
    observed = ~np.isnan(matrix).all(axis=0)
    imputer = IterativeImputer(
        sample_posterior=True,
        max_iter=IMPUTER_MAX_ITER,
        random_state=seed,
    )
    filled = imputer.fit_transform(matrix[:, observed])
    filled = np.clip(filled, 0.0, 1.0)
    return (filled > threshold).astype(np.float64)


def _impute_worker(job: tuple[np.ndarray, int, float]) -> np.ndarray:
    matrix, seed, threshold = job
    return impute_once(matrix, seed, threshold)


def multiple_imputation(
    matrix: np.ndarray,
    n_imputations: int = N_IMPUTATIONS,
    seed: int = RANDOM_SEED,
    workers: int = IMPUTATION_WORKERS,
    threshold: float = INUNDATION_THRESHOLD,
) -> np.ndarray:
    """Average of *n_imputations* binary imputations (plots x observed dates).

    Imputation i uses seed + i, so results do not depend on worker scheduling.
    """
    if n_imputations < 1:
        msg = f"n_imputations must be >= 1, got {n_imputations}"
        raise ValueError(msg)
    jobs = [(matrix, seed + i, threshold) for i in range(n_imputations)]
    print(f"  Running {n_imputations} imputations on {workers} worker processes...")
    with ProcessPoolExecutor(max_workers=workers) as executor:
        imputations = list(executor.map(_impute_worker, jobs))
    return np.mean(imputations, axis=0)


def compare_groupings(primary: np.ndarray, alternative: np.ndarray) -> dict:
    """Adjusted Rand index and raw agreement between two labelings.

    Both labelings must number groups by increasing inundation for the
    agreement fraction to be meaningful; the ARI does not depend on labels.
    """
    if len(primary) != len(alternative):
        msg = f"Labelings differ in length: {len(primary)} vs {len(alternative)}"
        raise ValueError(msg)
    return {
        "ari": float(adjusted_rand_score(primary, alternative)),
        "agreement": float(np.mean(np.asarray(primary) == np.asarray(alternative))),
        "n_changed": int(np.sum(np.asarray(primary) != np.asarray(alternative))),
    }


def imputation_check(
    matrix: np.ndarray,
    primary_groups: np.ndarray,
    n_imputations: int = N_IMPUTATIONS,
    seed: int = RANDOM_SEED,
    workers: int = IMPUTATION_WORKERS,
    n_groups: int = N_FLOOD_GROUPS,
) -> tuple[dict, np.ndarray]:
    """Reclassify plots from imputed series and compare with *primary_groups*.

    Returns (summary dict, imputed groups).
    """
    try:
        from analysis.flood_groups import classify_flood_groups
    except ModuleNotFoundError:
        from flood_groups import classify_flood_groups  # type: ignore[no-redef]

    averaged = multiple_imputation(matrix, n_imputations, seed, workers)
    imputed_groups, _ = classify_flood_groups(averaged, metric="euclidean", n_groups=n_groups)
    result = compare_groupings(primary_groups, imputed_groups)
    result |= {
        "n_imputations": n_imputations,
        "n_dates": int(averaged.shape[1]),
        "n_cloud_gaps": int(np.isnan(matrix).sum()),
    }
    status = "OK" if result["agreement"] >= 0.9 else "WARNING"
    print(
        f"  Imputed vs primary: ARI = {result['ari']:.3f}, "
        f"agreement = {result['agreement']:.1%} ({result['n_changed']} plots differ)  {status}"
    )
    return result, imputed_groups
