"""
Comparison of clusters across and within conditions.

This module contains:

- pairwise_distances: Euclidean distances between the profiles of two
  clusters
- compare_dynamics: Bayesian estimate of the typical distance between the
  members of every cluster pair
- jaccard_similarity: Overlap of two metabolite sets
- compare_metabolites: Jaccard similarity of every cluster pair
"""

from concurrent.futures import as_completed
from dataclasses import dataclass
from itertools import combinations, combinations_with_replacement

import jax
import numpy as np
import pandas as pd
from beartype import beartype
from beartype.typing import Dict, Hashable, Iterable, List, Optional, Sequence, Tuple
from pandas import DataFrame
from scipy.spatial.distance import cdist, pdist

from metabodynamics.analysis.clustering import Cluster
from metabodynamics.config import SamplerConfig
from metabodynamics.inference import job_pool, run_nuts
from metabodynamics.logging import configure_logging
from metabodynamics.models import distance_model
from metabodynamics.utils import highest_density_interval

__all__ = [
    "ComparisonResult",
    "compare_dynamics",
    "compare_metabolites",
    "jaccard_similarity",
    "pairwise_distances",
]

logger = configure_logging(__name__)

DYNAMICS_COLUMNS = [
    "cluster_a",
    "cluster_b",
    "mu_mean",
    "mu_sd",
    "mu_hdi_lower",
    "mu_hdi_upper",
    "sigma_mean",
    "num_distances",
    "available",
]
METABOLITES_COLUMNS = [
    "cluster_a",
    "cluster_b",
    "size_a",
    "size_b",
    "intersection",
    "union",
    "jaccard",
]


@dataclass(frozen=True, eq=False)
class ComparisonResult:
    """Pairwise comparison of clusters.

    Attributes:
        table: One row per unordered cluster pair, keyed by the cluster
            labels in canonical order
        plot_table: Symmetric cluster label x cluster label matrix of the
            compared quantity
    """

    table: DataFrame
    plot_table: DataFrame


def _profiles(
    cluster: Cluster,
    timepoints: Optional[Sequence[Hashable]],
) -> np.ndarray:
    if timepoints is None:
        return cluster.profiles
    missing = [t for t in timepoints if t not in cluster.timepoints]
    if missing:
        raise ValueError(
            f"Cluster {cluster.label} has no profile values for timepoints "
            f"{missing}"
        )
    columns = [cluster.timepoints.index(t) for t in timepoints]
    return cluster.profiles[:, columns]


@beartype
def pairwise_distances(
    a: Cluster,
    b: Cluster,
    timepoints: Optional[Sequence[Hashable]] = None,
) -> np.ndarray:
    """
    Euclidean distances between every member profile of `a` and of `b`.

    For a cluster compared with itself every unordered pair of distinct
    members is used once. Distances are returned sorted, so the result does
    not depend on the argument order.

    Args:
        a (Cluster): first cluster.
        b (Cluster): second cluster.
        timepoints (Sequence): ordered timepoints defining the profile
            vector, all timepoints of the clusters if None.

    Returns:
        np.ndarray: sorted distances, empty for a single-member self pair.

    Raises:
        ValueError: if the profiles of the clusters have different lengths.
    """
    profiles_a = _profiles(a, timepoints)
    profiles_b = _profiles(b, timepoints)
    if profiles_a.shape[1] != profiles_b.shape[1]:
        raise ValueError(
            f"Clusters {a.label} and {b.label} have profiles of length "
            f"{profiles_a.shape[1]} and {profiles_b.shape[1]}"
        )

    if a is b or a.key == b.key:
        distances = pdist(profiles_a, metric="euclidean")
    else:
        distances = cdist(profiles_a, profiles_b, metric="euclidean").ravel()
    return np.sort(distances)


def _cluster_pairs(
    clusters: Sequence[Cluster],
    include_self: bool,
) -> List[Tuple[Cluster, Cluster]]:
    if include_self:
        return list(combinations_with_replacement(clusters, 2))
    return list(combinations(clusters, 2))


def _symmetric_matrix(
    table: DataFrame,
    labels: Iterable[str],
    values: str,
) -> DataFrame:
    labels = list(labels)
    matrix = pd.DataFrame(np.nan, index=labels, columns=labels)
    for row in table.itertuples(index=False):
        value = getattr(row, values)
        matrix.loc[row.cluster_a, row.cluster_b] = value
        matrix.loc[row.cluster_b, row.cluster_a] = value
    matrix.index.name = "cluster"
    return matrix


@beartype
def _fit_distances(
    distances: np.ndarray,
    sampler_config: SamplerConfig,
    rng_key: jax.Array,
    hdi_prob: float,
) -> Dict[str, float]:
    output = run_nuts(
        distance_model,
        rng_key,
        sampler_config,
        distances=distances,
    )
    mu = output.samples["mu"]
    lower, upper = highest_density_interval(mu, hdi_prob)
    return {
        "mu_mean": float(mu.mean()),
        "mu_sd": float(mu.std()),
        "mu_hdi_lower": lower,
        "mu_hdi_upper": upper,
        "sigma_mean": float(output.samples["sigma"].mean()),
    }


def _unavailable() -> Dict[str, float]:
    return {
        "mu_mean": np.nan,
        "mu_sd": np.nan,
        "mu_hdi_lower": np.nan,
        "mu_hdi_upper": np.nan,
        "sigma_mean": np.nan,
    }


@beartype
def compare_dynamics(
    clusters: Sequence[Cluster],
    sampler_config: Optional[SamplerConfig] = None,
    timepoints: Optional[Sequence[Hashable]] = None,
    include_self: bool = True,
    hdi_prob: float = 0.95,
) -> ComparisonResult:
    """
    Typical distance between the members of every pair of clusters.

    For each unordered pair, all Euclidean distances between member
    profiles are modelled as draws from a normal distribution with a
    non-negative location. The posterior of the location is the typical
    member-to-member distance of the pair, which reflects the spread of the
    clusters as well as the distance of their centers.

    Pairs are independent jobs run on at most `sampler_config.cores`
    workers, see `job_pool`. A pair is keyed by its canonical order in
    `clusters`, so (a, b) and (b, a) are the same job with the same random
    key. Pairs
    without any distance, such as a single-member cluster compared with
    itself, and pairs whose fit fails are reported with available=False.

    Args:
        clusters (Sequence[Cluster]): clusters of all conditions.
        sampler_config (SamplerConfig): sampler options, defaults if None.
        timepoints (Sequence): ordered timepoints defining the profile
            vector, all timepoints of the clusters if None.
        include_self (bool): whether each cluster is compared with itself.
        hdi_prob (float): probability mass of the interval of mu.

    Returns:
        ComparisonResult: one row per pair with columns cluster_a,
            cluster_b, mu_mean, mu_sd, mu_hdi_lower, mu_hdi_upper,
            sigma_mean, num_distances, available, and the symmetric matrix
            of mu_mean.

    Examples:
        >>> # xdoctest: +SKIP
        >>> comparison = compare_dynamics(
        ...     clusters, SamplerConfig(iter=1000, chains=2, cores=4)
        ... )
        >>> comparison.plot_table.loc["A_1", "B_1"]
    """
    if sampler_config is None:
        sampler_config = SamplerConfig()
    labels = [cluster.label for cluster in clusters]
    if len(set(labels)) != len(labels):
        raise ValueError(f"Cluster labels must be unique, got {labels}")

    pairs = _cluster_pairs(clusters, include_self)
    root_key = jax.random.PRNGKey(sampler_config.seed)
    logger.info(
        f"Comparing dynamics of {len(pairs)} cluster pairs on "
        f"{sampler_config.cores} workers"
    )

    results: Dict[int, Dict[str, float]] = {}
    num_distances: Dict[int, int] = {}
    with job_pool(sampler_config.cores) as executor:
        future_to_index = {}
        for index, (a, b) in enumerate(pairs):
            distances = pairwise_distances(a, b, timepoints)
            num_distances[index] = len(distances)
            if len(distances) == 0:
                logger.debug(
                    f"Pair ({a.label}, {b.label}) has no distances and is "
                    f"reported as unavailable"
                )
                results[index] = _unavailable()
                continue
            future = executor.submit(
                _fit_distances,
                distances,
                sampler_config,
                jax.random.fold_in(root_key, index),
                hdi_prob,
            )
            future_to_index[future] = index

        for future in as_completed(future_to_index):
            index = future_to_index[future]
            a, b = pairs[index]
            try:
                results[index] = future.result()
            except Exception as e:
                logger.error(
                    f"Distance fit failed for pair ({a.label}, {b.label}): "
                    f"{type(e).__name__}: {e}"
                )
                results[index] = _unavailable()

    rows = []
    for index, (a, b) in enumerate(pairs):
        estimates = results[index]
        rows.append(
            {
                "cluster_a": a.label,
                "cluster_b": b.label,
                **estimates,
                "num_distances": num_distances[index],
                "available": bool(np.isfinite(estimates["mu_mean"])),
            }
        )
    table = DataFrame(rows, columns=DYNAMICS_COLUMNS)

    unavailable = int((~table["available"].astype(bool)).sum())
    if unavailable:
        logger.warning(f"{unavailable} of {len(table)} cluster pairs unavailable")
    return ComparisonResult(
        table=table,
        plot_table=_symmetric_matrix(table, labels, "mu_mean"),
    )


@beartype
def jaccard_similarity(a: Iterable[Hashable], b: Iterable[Hashable]) -> float:
    """
    Size of the intersection over the size of the union of two sets.

    Two empty sets are identical and have similarity 1.

    Examples:
        >>> jaccard_similarity({"m1", "m2"}, {"m2", "m3"})
        0.3333333333333333
    """
    a, b = set(a), set(b)
    union = a | b
    if not union:
        return 1.0
    return len(a & b) / len(union)


@beartype
def compare_metabolites(
    clusters: Sequence[Cluster],
    include_self: bool = True,
) -> ComparisonResult:
    """
    Jaccard similarity of the metabolite sets of every pair of clusters.

    Args:
        clusters (Sequence[Cluster]): clusters of all conditions.
        include_self (bool): whether each cluster is compared with itself.

    Returns:
        ComparisonResult: one row per pair with columns cluster_a,
            cluster_b, size_a, size_b, intersection, union, jaccard, and the
            symmetric matrix of jaccard.
    """
    labels = [cluster.label for cluster in clusters]
    if len(set(labels)) != len(labels):
        raise ValueError(f"Cluster labels must be unique, got {labels}")

    rows = []
    for a, b in _cluster_pairs(clusters, include_self):
        members_a, members_b = set(a.members), set(b.members)
        rows.append(
            {
                "cluster_a": a.label,
                "cluster_b": b.label,
                "size_a": len(members_a),
                "size_b": len(members_b),
                "intersection": len(members_a & members_b),
                "union": len(members_a | members_b),
                "jaccard": jaccard_similarity(members_a, members_b),
            }
        )
    table = DataFrame(rows, columns=METABOLITES_COLUMNS)
    logger.info(f"Compared metabolite sets of {len(table)} cluster pairs")
    return ComparisonResult(
        table=table,
        plot_table=_symmetric_matrix(table, labels, "jaccard"),
    )
