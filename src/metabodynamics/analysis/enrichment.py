"""
Over-representation analysis of functional categories in clusters.

For a cluster C of size n and a category F annotated to K of the N
metabolites of the background population, the number of annotated members
under random sampling without replacement is Hypergeometric(N, K, n) with
expectation n K / N. The observed count is compared to this expectation on
the log scale,

    log((observed + eps) / (expected + eps)).

Its uncertainty is the spread of the count over repeated samples of n
metabolites from a population with the category size the cluster implies,
K_hat = round(observed N / n):

    log((Y + eps) / (expected + eps)),  Y ~ Hypergeometric(N, K_hat, n).

The central interval of that quantity decides the status: entirely above
zero is over-represented, entirely below zero is under-represented,
anything else is not significant. A category absent from the cluster has
K_hat = 0 and an interval below zero; a cluster matching the expectation
has K_hat = K and an interval around zero.
"""

from dataclasses import dataclass
from enum import Enum

import numpy as np
from beartype import beartype
from beartype.typing import Dict, Hashable, Literal, Optional, Sequence, Set, Tuple
from pandas import DataFrame
from scipy.stats import hypergeom

from metabodynamics.analysis.clustering import Cluster
from metabodynamics.logging import configure_logging
from metabodynamics.utils import interval_direction

__all__ = [
    "HIERARCHY_LEVELS",
    "EnrichmentResult",
    "EnrichmentStatus",
    "ORA_hypergeometric",
    "log_ratio_interval",
    "ora_hypergeometric",
]

logger = configure_logging(__name__)

HIERARCHY_LEVELS = ("middle_hierarchy", "lower_hierarchy")

RESULT_COLUMNS = [
    "condition",
    "cluster",
    "label",
    "category",
    "hierarchy",
    "cluster_size",
    "category_size",
    "population_size",
    "observed",
    "expected",
    "log_ratio",
    "lower",
    "upper",
    "status",
]


class EnrichmentStatus(str, Enum):
    OVER = "over-represented"
    UNDER = "under-represented"
    NOT_SIGNIFICANT = "not-significant"


_STATUS_BY_DIRECTION = {
    1: EnrichmentStatus.OVER,
    -1: EnrichmentStatus.UNDER,
    0: EnrichmentStatus.NOT_SIGNIFICANT,
}


@dataclass(frozen=True, eq=False)
class EnrichmentResult:
    """Over-representation results of one hierarchy level.

    Attributes:
        table: One row per tested (condition, cluster, category)
        plot_table: Log ratios with categories as rows and cluster labels
            as columns
    """

    table: DataFrame
    plot_table: DataFrame


@beartype
def log_ratio_interval(
    observed: int,
    population_size: int,
    category_size: int,
    cluster_size: int,
    epsilon: float = 0.01,
    interval_prob: float = 0.95,
    method: Literal["quantile", "resample"] = "quantile",
    num_draws: int = 10000,
    rng: Optional[np.random.Generator] = None,
) -> Tuple[float, float]:
    """
    Interval of the observed-over-expected log ratio.

    The count is resampled from Hypergeometric(N, K_hat, n), where
    K_hat = round(observed N / n) is the category size the cluster implies,
    and set against the expected count n K / N. With method="quantile" the
    interval follows from hypergeometric quantiles, since the log ratio is
    increasing in the count. With method="resample" it is the interquantile
    range of `num_draws` hypergeometric draws. For K_hat = 0 or K_hat = N
    the count is fixed and the interval collapses to the observed log
    ratio.

    Args:
        observed (int): annotated members of the cluster.
        population_size (int): N, metabolites in the background.
        category_size (int): K, background metabolites in the category.
        cluster_size (int): n, members of the cluster.
        epsilon (float): pseudo-count added to both counts.
        interval_prob (float): probability mass of the interval.
        method (str): "quantile" or "resample".
        num_draws (int): number of draws for method="resample".
        rng (np.random.Generator): generator for method="resample".

    Returns:
        Tuple[float, float]: lower and upper bound of the log ratio.

    Raises:
        ValueError: if the cluster is empty or larger than the population.

    Examples:
        >>> lower, upper = log_ratio_interval(8, 100, 10, 20)
        >>> lower > 0
        True
        >>> log_ratio_interval(0, 100, 10, 20)[1] < 0
        True
    """
    if not 0 < cluster_size <= population_size:
        raise ValueError(
            f"cluster_size must lie in [1, {population_size}], got {cluster_size}"
        )
    expected = cluster_size * category_size / population_size
    implied_size = int(round(observed * population_size / cluster_size))
    tail = (1.0 - interval_prob) / 2.0

    if implied_size in (0, population_size):
        low_count = high_count = float(observed)
    elif method == "quantile":
        sampling = hypergeom(population_size, implied_size, cluster_size)
        low_count, high_count = sampling.ppf([tail, 1.0 - tail])
    else:
        if rng is None:
            rng = np.random.default_rng(0)
        counts = rng.hypergeometric(
            ngood=implied_size,
            nbad=population_size - implied_size,
            nsample=cluster_size,
            size=num_draws,
        )
        low_count, high_count = np.quantile(
            counts, [tail, 1.0 - tail], method="inverted_cdf"
        )

    lower = np.log((low_count + epsilon) / (expected + epsilon))
    upper = np.log((high_count + epsilon) / (expected + epsilon))
    return float(lower), float(upper)


def _category_sets(
    table: DataFrame,
    tested_column: str,
) -> Dict[Hashable, Set[Hashable]]:
    annotated = table[["metabolite", tested_column]].dropna().drop_duplicates()
    return {
        metabolite: set(group[tested_column])
        for metabolite, group in annotated.groupby("metabolite", sort=False)
    }


@beartype
def ora_hypergeometric(
    background: DataFrame,
    annotations: DataFrame,
    clusters: Sequence[Cluster],
    tested_column: Literal["middle_hierarchy", "lower_hierarchy"],
    method: Literal["quantile", "resample"] = "quantile",
    epsilon: float = 0.01,
    interval_prob: float = 0.95,
    num_draws: int = 10000,
    seed: int = 0,
) -> EnrichmentResult:
    """
    Over-representation analysis of one hierarchy level in every cluster.

    Each hierarchy level is an independent analysis. The tested categories
    are the categories of the level that occur in `annotations` and have at
    least one background metabolite. Pairs with an empty cluster or an
    empty category have no defined null and are left out.

    Args:
        background (DataFrame): reference population, one row per
            (metabolite, category) with columns metabolite,
            middle_hierarchy and lower_hierarchy.
        annotations (DataFrame): annotations of the experiment's
            metabolites, same columns as `background`.
        clusters (Sequence[Cluster]): clusters of all conditions.
        tested_column (str): hierarchy level to test.
        method (str): interval computation, see `log_ratio_interval`.
        epsilon (float): pseudo-count of the log ratio.
        interval_prob (float): probability mass of the interval.
        num_draws (int): hypergeometric draws for method="resample".
        seed (int): seed for method="resample".

    Returns:
        EnrichmentResult: result table and plot-ready log ratio matrix.

    Raises:
        ValueError: if a table misses columns or a cluster is larger than
            the background population.

    Examples:
        >>> # xdoctest: +SKIP
        >>> result = ora_hypergeometric(
        ...     background, annotations, clusters, "middle_hierarchy"
        ... )
        >>> result.table.query("status == 'over-represented'")
    """
    for name, table in (("background", background), ("annotations", annotations)):
        missing = [c for c in ("metabolite", tested_column) if c not in table]
        if missing:
            raise ValueError(f"{name} table misses columns {missing}")

    population_size = int(background["metabolite"].nunique())
    background_sets = _category_sets(background, tested_column)
    category_sizes: Dict[Hashable, int] = {}
    for categories in background_sets.values():
        for category in categories:
            category_sizes[category] = category_sizes.get(category, 0) + 1

    annotation_sets = _category_sets(annotations, tested_column)
    tested_categories = sorted(
        {c for categories in annotation_sets.values() for c in categories},
        key=str,
    )
    untestable = [c for c in tested_categories if category_sizes.get(c, 0) == 0]
    if untestable:
        logger.debug(
            f"Categories without background members are not tested: {untestable}"
        )

    rng = np.random.default_rng(seed)
    rows = []
    for cluster in clusters:
        cluster_size = cluster.size
        if cluster_size == 0:
            logger.debug(f"Cluster {cluster.label} is empty and not tested")
            continue
        if cluster_size > population_size:
            raise ValueError(
                f"Cluster {cluster.label} has {cluster_size} members, more than "
                f"the {population_size} metabolites of the background"
            )

        for category in tested_categories:
            category_size = category_sizes.get(category, 0)
            if category_size == 0:
                continue

            observed = sum(
                category in annotation_sets.get(member, ())
                for member in cluster.members
            )
            expected = cluster_size * category_size / population_size
            lower, upper = log_ratio_interval(
                observed=int(observed),
                population_size=population_size,
                category_size=category_size,
                cluster_size=cluster_size,
                epsilon=epsilon,
                interval_prob=interval_prob,
                method=method,
                num_draws=num_draws,
                rng=rng,
            )
            rows.append(
                {
                    "condition": cluster.condition,
                    "cluster": cluster.cluster_id,
                    "label": cluster.label,
                    "category": category,
                    "hierarchy": tested_column,
                    "cluster_size": cluster_size,
                    "category_size": category_size,
                    "population_size": population_size,
                    "observed": int(observed),
                    "expected": expected,
                    "log_ratio": float(
                        np.log((observed + epsilon) / (expected + epsilon))
                    ),
                    "lower": lower,
                    "upper": upper,
                    "status": _STATUS_BY_DIRECTION[
                        interval_direction(lower, upper)
                    ].value,
                }
            )

    table = DataFrame(rows, columns=RESULT_COLUMNS)
    if table.empty:
        plot_table = DataFrame()
    else:
        plot_table = table.pivot(
            index="category", columns="label", values="log_ratio"
        )
    logger.info(
        f"Tested {len(tested_categories)} {tested_column} categories in "
        f"{len(clusters)} clusters: "
        f"{table['status'].value_counts().to_dict()}"
    )
    return EnrichmentResult(table=table, plot_table=plot_table)


ORA_hypergeometric = ora_hypergeometric
