from dataclasses import dataclass

import numpy as np
from beartype import beartype
from beartype.typing import Callable, Hashable, Mapping, Sequence, Tuple
from jaxtyping import Float
from pandas import DataFrame
from scipy.cluster.hierarchy import fcluster, linkage

from metabodynamics.analysis.estimates import DynamicProfiles
from metabodynamics.logging import configure_logging

__all__ = [
    "Cluster",
    "Clusterer",
    "cluster_dynamics",
    "clusters_from_assignments",
    "clusters_to_frame",
    "ward_clusterer",
]

logger = configure_logging(__name__)

# (profiles, target number of clusters) -> integer label per profile
Clusterer = Callable[[np.ndarray, int], np.ndarray]


@dataclass(frozen=True, eq=False)
class Cluster:
    """Metabolites of one condition grouped by their dynamic profiles.

    Attributes:
        condition: Condition identifier
        cluster_id: Cluster identifier, unique within the condition
        members: Ordered metabolite identifiers
        timepoints: Ordered timepoint identifiers of the profiles
        profiles: Dynamic profile of each member, (members, timepoints)
    """

    condition: Hashable
    cluster_id: int
    members: Tuple[Hashable, ...]
    timepoints: Tuple[Hashable, ...]
    profiles: Float[np.ndarray, "members timepoints"]

    def __post_init__(self):
        profiles = np.array(self.profiles, dtype=float, copy=True).reshape(
            len(self.members), len(self.timepoints)
        )
        profiles.setflags(write=False)
        object.__setattr__(self, "profiles", profiles)

    @property
    def key(self) -> Tuple[Hashable, int]:
        return (self.condition, self.cluster_id)

    @property
    def label(self) -> str:
        return f"{self.condition}_{self.cluster_id}"

    @property
    def size(self) -> int:
        return len(self.members)


@beartype
def ward_clusterer(
    values: np.ndarray,
    n_clusters: int,
) -> np.ndarray:
    """
    Hierarchical clustering with Ward linkage on Euclidean distances.

    Args:
        values: profiles, one row per metabolite.
        n_clusters: maximum number of clusters of the cut.

    Returns:
        np.ndarray: cluster label per row, starting at 1.

    Examples:
        >>> import numpy as np
        >>> values = np.array([[0.0, 0.0], [0.1, 0.0], [5.0, 5.0]])
        >>> labels = ward_clusterer(values, 2)
        >>> bool(labels[0] == labels[1] != labels[2])
        True
    """
    if values.shape[0] == 1:
        return np.ones(1, dtype=np.int64)
    tree = linkage(values, method="ward", metric="euclidean")
    return fcluster(tree, t=n_clusters, criterion="maxclust").astype(np.int64)


@beartype
def clusters_from_assignments(
    profiles: Mapping,
    assignments: Mapping,
) -> Tuple[Cluster, ...]:
    """
    Build clusters from an externally computed assignment.

    Args:
        profiles (Mapping): condition to DynamicProfiles.
        assignments (Mapping): condition to a mapping of metabolite to
            cluster identifier.

    Returns:
        Tuple[Cluster, ...]: clusters ordered by condition and identifier.
    """
    clusters = []
    for condition, condition_profiles in profiles.items():
        if condition not in assignments:
            raise ValueError(f"No cluster assignment for condition {condition!r}")
        labels = assignments[condition]
        unassigned = [m for m in condition_profiles.metabolites if m not in labels]
        if unassigned:
            raise ValueError(
                f"Metabolites without cluster in condition {condition!r}: "
                f"{unassigned}"
            )

        cluster_ids = {int(labels[m]) for m in condition_profiles.metabolites}
        for cluster_id in sorted(cluster_ids):
            members = tuple(
                m
                for m in condition_profiles.metabolites
                if int(labels[m]) == cluster_id
            )
            clusters.append(
                Cluster(
                    condition=condition,
                    cluster_id=cluster_id,
                    members=members,
                    timepoints=condition_profiles.timepoints,
                    profiles=np.stack(
                        [condition_profiles.profile(m) for m in members]
                    ),
                )
            )
    return tuple(clusters)


@beartype
def cluster_dynamics(
    profiles: Mapping,
    n_clusters: int,
    clusterer: Clusterer = ward_clusterer,
) -> Tuple[Cluster, ...]:
    """
    Cluster the dynamic profiles of each condition.

    Args:
        profiles (Mapping): condition to DynamicProfiles.
        n_clusters (int): target number of clusters per condition.
        clusterer (Clusterer): clustering capability, Ward linkage by
            default.

    Returns:
        Tuple[Cluster, ...]: clusters ordered by condition and identifier.

    Examples:
        >>> # xdoctest: +SKIP
        >>> clusters = cluster_dynamics(estimates.profiles, n_clusters=8)
        >>> [cluster.label for cluster in clusters][:3]
        ['A_1', 'A_2', 'A_3']
    """
    if n_clusters < 1:
        raise ValueError(f"n_clusters must be at least 1, got {n_clusters}")

    assignments = {}
    for condition, condition_profiles in profiles.items():
        if not isinstance(condition_profiles, DynamicProfiles):
            raise TypeError(
                f"Expected DynamicProfiles for condition {condition!r}, got "
                f"{type(condition_profiles).__name__}"
            )
        k = min(n_clusters, len(condition_profiles.metabolites))
        labels = clusterer(condition_profiles.values, k)
        assignments[condition] = dict(
            zip(condition_profiles.metabolites, labels.tolist())
        )
        logger.info(
            f"Condition {condition!r}: {len(set(labels.tolist()))} clusters "
            f"of {len(condition_profiles.metabolites)} metabolites"
        )

    return clusters_from_assignments(profiles, assignments)


@beartype
def clusters_to_frame(clusters: Sequence[Cluster]) -> DataFrame:
    """Long table with one row per (condition, cluster, metabolite)."""
    return DataFrame(
        [
            {
                "condition": cluster.condition,
                "cluster": cluster.cluster_id,
                "label": cluster.label,
                "metabolite": member,
            }
            for cluster in clusters
            for member in cluster.members
        ],
        columns=["condition", "cluster", "label", "metabolite"],
    )
