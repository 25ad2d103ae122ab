"""
Synthetic longitudinal metabolomics data with known dynamics.

Metabolites are split into groups sharing a mean trajectory over time. The
trajectory of a group differs between conditions, while the group
membership of each metabolite is the same in every condition, so that
recovered clusters can be checked against the true groups.
"""

import numpy as np
import pandas as pd
from beartype import beartype
from beartype.typing import Hashable, Optional, Sequence, Tuple
from pandas import DataFrame

from metabodynamics.logging import configure_logging
from metabodynamics.observations import standardize_observations

__all__ = [
    "TRAJECTORY_SHAPES",
    "simulate_longitudinal_data",
]

logger = configure_logging(__name__)

# log-scale offsets from the metabolite baseline, one row per shape
TRAJECTORY_SHAPES = np.array(
    [
        [0.0, 1.0, 2.0, 3.0],
        [3.0, 2.0, 1.0, 0.0],
        [0.0, 3.0, 3.0, 0.0],
        [3.0, 0.0, 0.0, 3.0],
        [0.0, 0.0, 0.0, 3.0],
        [3.0, 0.0, 0.0, 0.0],
        [0.0, 3.0, 0.0, 3.0],
        [3.0, 0.0, 3.0, 0.0],
    ]
)


@beartype
def simulate_longitudinal_data(
    conditions: Sequence[Hashable] = ("A", "B", "C"),
    n_groups: int = 8,
    metabolites_per_group: int = 3,
    n_replicates: int = 3,
    noise_sd: float = 0.1,
    baseline_mean: float = 5.0,
    baseline_sd: float = 1.0,
    trajectories: Optional[np.ndarray] = None,
    seed: int = 0,
) -> Tuple[DataFrame, DataFrame]:
    """
    Simulate an observation table with known per-group mean trajectories.

    In condition number c, group g follows trajectory (g + c) mod S of the
    S available trajectories. Each metabolite adds its own baseline to the
    trajectory of its group, and each replicate adds normal noise with
    standard deviation `noise_sd` on the log scale.

    The truth table carries, per (metabolite, condition, time), the group
    label, the true log mean and the true mean on the standardized scale,
    i.e. the true log mean transformed with the same per-(metabolite,
    condition) mean and standard deviation that standardized the simulated
    measurements.

    Args:
        conditions (Sequence[Hashable]): condition identifiers.
        n_groups (int): number of metabolite groups.
        metabolites_per_group (int): metabolites in each group.
        n_replicates (int): replicates per (metabolite, condition, time).
        noise_sd (float): standard deviation of the log-scale noise.
        baseline_mean (float): mean of the metabolite baselines.
        baseline_sd (float): standard deviation of the metabolite baselines.
        trajectories (np.ndarray): trajectories as (shapes, timepoints),
            TRAJECTORY_SHAPES if None.
        seed (int): seed of the random generator.

    Returns:
        Tuple[DataFrame, DataFrame]: observation table with the columns
            metabolite, condition, time, replicate, raw, log, standardized,
            and the truth table.

    Raises:
        ValueError: if there are more groups than trajectories.

    Examples:
        >>> observations, truth = simulate_longitudinal_data(seed=1)
        >>> observations.shape
        (864, 7)
        >>> truth["group"].nunique()
        8
    """
    if trajectories is None:
        trajectories = TRAJECTORY_SHAPES
    trajectories = np.asarray(trajectories, dtype=float)
    num_shapes, num_timepoints = trajectories.shape
    if n_groups > num_shapes:
        raise ValueError(
            f"n_groups={n_groups} exceeds the {num_shapes} available trajectories"
        )
    if n_groups < 1 or metabolites_per_group < 1 or n_replicates < 1:
        raise ValueError(
            "n_groups, metabolites_per_group and n_replicates must be positive"
        )

    rng = np.random.default_rng(seed)
    num_metabolites = n_groups * metabolites_per_group
    width = len(str(num_metabolites))
    metabolites = [f"m{i + 1:0{width}d}" for i in range(num_metabolites)]
    groups = np.repeat(np.arange(1, n_groups + 1), metabolites_per_group)
    timepoints = np.arange(1, num_timepoints + 1)

    truth_rows = []
    observation_rows = []
    for c, condition in enumerate(conditions):
        baselines = rng.normal(baseline_mean, baseline_sd, size=num_metabolites)
        for metabolite, group, baseline in zip(metabolites, groups, baselines):
            shape = trajectories[(group - 1 + c) % num_shapes]
            for time, offset in zip(timepoints, shape):
                log_mean = baseline + offset
                truth_rows.append(
                    {
                        "metabolite": metabolite,
                        "condition": condition,
                        "time": int(time),
                        "group": int(group),
                        "true_log_mean": float(log_mean),
                    }
                )
                noise = rng.normal(0.0, noise_sd, size=n_replicates)
                for replicate in range(1, n_replicates + 1):
                    observation_rows.append(
                        {
                            "metabolite": metabolite,
                            "condition": condition,
                            "time": int(time),
                            "replicate": replicate,
                            "raw": float(np.exp(log_mean + noise[replicate - 1])),
                        }
                    )

    observations = standardize_observations(DataFrame(observation_rows))

    log_values = observations.groupby(["metabolite", "condition"])["log"]
    scaling = pd.DataFrame(
        {
            "log_center": log_values.mean(),
            "log_scale": log_values.std(ddof=1),
        }
    ).reset_index()
    truth = DataFrame(truth_rows).merge(
        scaling, on=["metabolite", "condition"], how="left"
    )
    truth["true_standardized"] = (
        truth["true_log_mean"] - truth["log_center"]
    ) / truth["log_scale"]
    truth = truth.drop(columns=["log_center", "log_scale"])

    logger.info(
        f"Simulated {len(observations)} observations of {num_metabolites} "
        f"metabolites in {len(conditions)} conditions"
    )
    return observations, truth
