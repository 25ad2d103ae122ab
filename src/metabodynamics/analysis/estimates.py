"""
Posterior estimates of per-timepoint means and of their changes.

Differences between consecutive timepoints are computed draw by draw,
matched by chain and draw index, and summarized afterwards so that the
posterior correlation between timepoints is kept.
"""

from dataclasses import dataclass

import numpy as np
import pandas as pd
from beartype import beartype
from beartype.typing import Dict, Hashable, Mapping, Optional, Tuple
from jaxtyping import Float
from pandas import DataFrame

from metabodynamics.inference import GroupModelFit
from metabodynamics.logging import configure_logging
from metabodynamics.utils import highest_density_interval, interval_direction

__all__ = [
    "DynamicProfiles",
    "EstimatesResult",
    "difference_table",
    "estimate_table",
    "extract_estimates_dynamics",
    "select_draws",
]

logger = configure_logging(__name__)

CHANGE_LABELS = {1: "increase", -1: "decrease", 0: "no_change"}

ESTIMATE_COLUMNS = [
    "condition",
    "metabolite",
    "time",
    "mean",
    "sd",
    "hdi_lower",
    "hdi_upper",
]
DIFFERENCE_COLUMNS = [
    "condition",
    "metabolite",
    "time_from",
    "time_to",
    "mean",
    "hdi_lower",
    "hdi_upper",
    "change",
]


@dataclass(frozen=True, eq=False)
class DynamicProfiles:
    """Per-metabolite vectors of posterior mean estimates of one condition.

    The column order of `values` is the order of `timepoints`.

    Attributes:
        condition: Condition identifier
        metabolites: Ordered metabolite identifiers (rows)
        timepoints: Ordered timepoint identifiers (columns)
        values: Posterior means, (metabolites, timepoints)
    """

    condition: Hashable
    metabolites: Tuple[Hashable, ...]
    timepoints: Tuple[Hashable, ...]
    values: Float[np.ndarray, "metabolites timepoints"]

    def __post_init__(self):
        values = np.array(self.values, dtype=float, copy=True)
        if values.shape != (len(self.metabolites), len(self.timepoints)):
            raise ValueError(
                f"values has shape {values.shape}, expected "
                f"{(len(self.metabolites), len(self.timepoints))}"
            )
        values.setflags(write=False)
        object.__setattr__(self, "values", values)

    def profile(self, metabolite: Hashable) -> np.ndarray:
        return self.values[self.metabolites.index(metabolite)]

    def to_frame(self) -> DataFrame:
        """Wide table with one row per metabolite and one column per timepoint."""
        frame = DataFrame(
            self.values,
            index=pd.Index(self.metabolites, name="metabolite"),
            columns=list(self.timepoints),
        )
        frame.insert(0, "condition", self.condition)
        return frame.reset_index()


@dataclass(frozen=True, eq=False)
class EstimatesResult:
    """Estimate tables of a set of group fits.

    Attributes:
        estimates: One row per (condition, metabolite, time)
        differences: One row per (condition, metabolite, consecutive
            timepoint pair)
        profiles: Dynamic profiles per condition
    """

    estimates: DataFrame
    differences: DataFrame
    profiles: Dict[Hashable, DynamicProfiles]

    def profiles_frame(self) -> DataFrame:
        """Long table of all dynamic profiles."""
        frames = [
            profiles.to_frame().melt(
                id_vars=["metabolite", "condition"],
                var_name="time",
                value_name="mean",
            )
            for profiles in self.profiles.values()
        ]
        if not frames:
            return DataFrame(columns=["metabolite", "condition", "time", "mean"])
        return pd.concat(frames, ignore_index=True)


@beartype
def select_draws(
    draws: np.ndarray,
    samples_per_param: Optional[int] = None,
) -> np.ndarray:
    """
    Keep at most `samples_per_param` draws of chain-grouped samples.

    Draws are spread evenly over chains and taken from the start of each
    chain so that draws of different parameters stay matched.

    Args:
        draws: array of shape (chains, draws, ...).
        samples_per_param: total number of draws to keep, all if None.

    Returns:
        np.ndarray: array of shape (chains, kept_draws, ...).
    """
    if samples_per_param is None:
        return draws
    if samples_per_param < draws.shape[0]:
        raise ValueError(
            f"samples_per_param={samples_per_param} is smaller than the "
            f"number of chains {draws.shape[0]}"
        )
    per_chain = min(samples_per_param // draws.shape[0], draws.shape[1])
    return draws[:, :per_chain]


@beartype
def estimate_table(
    fit: GroupModelFit,
    samples_per_param: Optional[int] = None,
    hdi_prob: float = 0.95,
) -> DataFrame:
    """
    Posterior mean, standard deviation and HDI of each per-timepoint mean.

    Args:
        fit (GroupModelFit): fit of one condition.
        samples_per_param (int): number of draws used per parameter.
        hdi_prob (float): probability mass of the interval.

    Returns:
        DataFrame: columns condition, metabolite, time, mean, sd,
            hdi_lower, hdi_upper.
    """
    mu = select_draws(fit.mu, samples_per_param)

    rows = []
    for m, metabolite in enumerate(fit.metabolites):
        for t, time in enumerate(fit.timepoints):
            draws = mu[:, :, m, t]
            lower, upper = highest_density_interval(draws, hdi_prob)
            rows.append(
                {
                    "condition": fit.condition,
                    "metabolite": metabolite,
                    "time": time,
                    "mean": float(draws.mean()),
                    "sd": float(draws.std()),
                    "hdi_lower": lower,
                    "hdi_upper": upper,
                }
            )
    return DataFrame(rows, columns=ESTIMATE_COLUMNS)


@beartype
def difference_table(
    fit: GroupModelFit,
    samples_per_param: Optional[int] = None,
    hdi_prob: float = 0.95,
) -> DataFrame:
    """
    Changes of the mean between consecutive timepoints.

    For every chain and draw, the draw of timepoint t-1 is subtracted from
    the draw of timepoint t; the mean and HDI are computed from these
    differences. A change is an increase when the HDI lies above zero and
    a decrease when it lies below zero.

    Args:
        fit (GroupModelFit): fit of one condition.
        samples_per_param (int): number of draws used per parameter.
        hdi_prob (float): probability mass of the interval.

    Returns:
        DataFrame: columns condition, metabolite, time_from, time_to, mean,
            hdi_lower, hdi_upper, change.
    """
    mu = select_draws(fit.mu, samples_per_param)
    # (chains, draws, metabolites, timepoints - 1)
    delta = mu[..., 1:] - mu[..., :-1]

    rows = []
    for m, metabolite in enumerate(fit.metabolites):
        for t in range(delta.shape[-1]):
            draws = delta[:, :, m, t]
            lower, upper = highest_density_interval(draws, hdi_prob)
            rows.append(
                {
                    "condition": fit.condition,
                    "metabolite": metabolite,
                    "time_from": fit.timepoints[t],
                    "time_to": fit.timepoints[t + 1],
                    "mean": float(draws.mean()),
                    "hdi_lower": lower,
                    "hdi_upper": upper,
                    "change": CHANGE_LABELS[interval_direction(lower, upper)],
                }
            )
    return DataFrame(rows, columns=DIFFERENCE_COLUMNS)


@beartype
def extract_estimates_dynamics(
    fits: Mapping,
    samples_per_param: Optional[int] = None,
    hdi_prob: float = 0.95,
) -> EstimatesResult:
    """
    Estimates, consecutive-timepoint differences and dynamic profiles.

    Args:
        fits (Mapping): condition to GroupModelFit, e.g. DynamicsFits.
        samples_per_param (int): number of draws used per parameter, all
            retained draws if None.
        hdi_prob (float): probability mass of the intervals.

    Returns:
        EstimatesResult: estimate tables and profiles per condition.

    Examples:
        >>> # xdoctest: +SKIP
        >>> estimates = extract_estimates_dynamics(fits)
        >>> estimates.differences.query("change != 'no_change'")
    """
    estimates = [
        estimate_table(fit, samples_per_param, hdi_prob) for fit in fits.values()
    ]
    differences = [
        difference_table(fit, samples_per_param, hdi_prob)
        for fit in fits.values()
    ]
    profiles = {
        condition: DynamicProfiles(
            condition=condition,
            metabolites=fit.metabolites,
            timepoints=fit.timepoints,
            values=select_draws(fit.mu, samples_per_param).mean(axis=(0, 1)),
        )
        for condition, fit in fits.items()
    }

    result = EstimatesResult(
        estimates=pd.concat(estimates, ignore_index=True)
        if estimates
        else DataFrame(columns=ESTIMATE_COLUMNS),
        differences=pd.concat(differences, ignore_index=True)
        if differences
        else DataFrame(columns=DIFFERENCE_COLUMNS),
        profiles=profiles,
    )
    logger.info(
        f"Extracted {len(result.estimates)} estimates and "
        f"{len(result.differences)} differences for {len(profiles)} conditions"
    )
    return result
