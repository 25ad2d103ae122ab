"""
Convergence diagnostics and posterior predictive checks of group fits.

Every function here is a pure function of completed fits: tables are built
per fit and concatenated, and repeated calls with the same seed return
identical tables.
"""

from dataclasses import dataclass

import jax
import numpy as np
import pandas as pd
from beartype import beartype
from beartype.typing import Mapping
from numpyro.infer import Predictive
from pandas import DataFrame

from metabodynamics.inference import GroupModelFit
from metabodynamics.logging import configure_logging
from metabodynamics.models import group_dynamics_model

__all__ = [
    "DiagnosticsResult",
    "diagnostics_summary",
    "extract_diagnostics_dynamics",
    "posterior_predictive_table",
]

logger = configure_logging(__name__)

RHAT_THRESHOLD = 1.01
MIN_ESS = 400.0

SUMMARY_COLUMNS = [
    "condition",
    "metabolite",
    "time",
    "rhat",
    "ess",
    "divergences",
    "treedepth_exceeded",
    "converged",
]


@dataclass(frozen=True, eq=False)
class DiagnosticsResult:
    """Diagnostics tables of a set of group fits.

    Attributes:
        summary: One row per (condition, metabolite, time)
        divergences: Divergent transitions per (condition, chain)
        treedepth: Transitions at the maximum tree depth per
            (condition, chain)
        rhat: Split-R-hat distribution per condition
        ess: Effective sample size distribution per condition
        posterior_predictive: Simulated and observed measurements per
            (condition, metabolite, time, replicate, draw)
    """

    summary: DataFrame
    divergences: DataFrame
    treedepth: DataFrame
    rhat: DataFrame
    ess: DataFrame
    posterior_predictive: DataFrame


@beartype
def diagnostics_summary(
    fit: GroupModelFit,
    rhat_threshold: float = RHAT_THRESHOLD,
    min_ess: float = MIN_ESS,
) -> DataFrame:
    """
    Diagnostics of every (metabolite, timepoint) mean of one fit.

    Divergences and tree depth hits belong to the joint sampler run of the
    condition and are repeated on each of its rows. A row converged when
    its R-hat is at most `rhat_threshold`, its effective sample size is at
    least `min_ess` and the run had no divergent transitions. Undefined
    R-hat (collapsed draws) never counts as converged.

    Args:
        fit (GroupModelFit): fit of one condition.
        rhat_threshold (float): largest acceptable split-R-hat.
        min_ess (float): smallest acceptable effective sample size.

    Returns:
        DataFrame: columns condition, metabolite, time, rhat, ess,
            divergences, treedepth_exceeded, converged.
    """
    num_metabolites, num_timepoints = fit.rhat.shape
    divergences = int(fit.divergences_per_chain.sum())
    treedepth_exceeded = int(fit.treedepth_exceeded_per_chain.sum())

    rhat = fit.rhat.ravel()
    ess = fit.ess.ravel()
    converged = (
        (np.nan_to_num(rhat, nan=np.inf) <= rhat_threshold)
        & (ess >= min_ess)
        & (divergences == 0)
    )

    return DataFrame(
        {
            "condition": fit.condition,
            "metabolite": np.repeat(
                np.asarray(fit.metabolites), num_timepoints
            ),
            "time": np.tile(
                np.asarray(fit.timepoints), num_metabolites
            ),
            "rhat": rhat,
            "ess": ess,
            "divergences": divergences,
            "treedepth_exceeded": treedepth_exceeded,
            "converged": converged,
        },
        columns=SUMMARY_COLUMNS,
    )


def _per_chain_table(fit: GroupModelFit, name: str, counts) -> DataFrame:
    return DataFrame(
        {
            "condition": fit.condition,
            "chain": np.arange(fit.num_chains),
            name: np.asarray(counts, dtype=np.int64),
        }
    )


@beartype
def posterior_predictive_table(
    fit: GroupModelFit,
    num_draws: int = 50,
    seed: int = 0,
) -> DataFrame:
    """
    Posterior predictive check of one fit.

    Observations are simulated from the fitted per-(metabolite, timepoint)
    normal distributions for a random subset of posterior draws and listed
    next to the real observations they replicate.

    Args:
        fit (GroupModelFit): fit of one condition.
        num_draws (int): number of posterior draws to simulate from.
        seed (int): seed of the draw subset and of the simulation.

    Returns:
        DataFrame: columns condition, metabolite, time, replicate, draw,
            observed, simulated.
    """
    samples = fit.flat_samples()
    total_draws = samples["mu"].shape[0]
    num_draws = min(num_draws, total_draws)

    rng = np.random.default_rng(seed)
    draw_index = np.sort(rng.choice(total_draws, size=num_draws, replace=False))
    subset = {name: value[draw_index] for name, value in samples.items()}

    metabolite_index = (
        pd.Categorical(fit.observations["metabolite"], categories=fit.metabolites)
        .codes.astype(np.int32)
    )
    time_index = (
        pd.Categorical(fit.observations["time"], categories=fit.timepoints)
        .codes.astype(np.int32)
    )

    predictive = Predictive(
        group_dynamics_model,
        posterior_samples=subset,
        return_sites=["y"],
    )
    simulated = np.asarray(
        predictive(
            jax.random.PRNGKey(seed),
            metabolite_index=metabolite_index,
            time_index=time_index,
            num_metabolites=len(fit.metabolites),
            num_timepoints=len(fit.timepoints),
        )["y"]
    )

    num_observations = len(fit.observations)
    return DataFrame(
        {
            "condition": fit.condition,
            "metabolite": np.tile(
                fit.observations["metabolite"].to_numpy(), num_draws
            ),
            "time": np.tile(fit.observations["time"].to_numpy(), num_draws),
            "replicate": np.tile(
                fit.observations["replicate"].to_numpy(), num_draws
            ),
            "draw": np.repeat(draw_index, num_observations),
            "observed": np.tile(
                fit.observations["value"].to_numpy(), num_draws
            ),
            "simulated": simulated.reshape(-1),
        }
    )


@beartype
def extract_diagnostics_dynamics(
    fits: Mapping,
    rhat_threshold: float = RHAT_THRESHOLD,
    min_ess: float = MIN_ESS,
    num_ppc_draws: int = 50,
    seed: int = 0,
) -> DiagnosticsResult:
    """
    Aggregate convergence diagnostics over a set of group fits.

    Non-converged rows are kept and flagged; nothing is dropped.

    Args:
        fits (Mapping): condition to GroupModelFit, e.g. DynamicsFits.
        rhat_threshold (float): largest acceptable split-R-hat.
        min_ess (float): smallest acceptable effective sample size.
        num_ppc_draws (int): posterior draws per condition used in the
            posterior predictive check.
        seed (int): seed of the posterior predictive check.

    Returns:
        DiagnosticsResult: summary and plot-ready tables.

    Examples:
        >>> # xdoctest: +SKIP
        >>> diagnostics = extract_diagnostics_dynamics(fits)
        >>> diagnostics.summary.groupby("condition")["converged"].mean()
    """
    summaries = [
        diagnostics_summary(fit, rhat_threshold, min_ess)
        for fit in fits.values()
    ]
    divergences = [
        _per_chain_table(fit, "divergences", fit.divergences_per_chain)
        for fit in fits.values()
    ]
    treedepth = [
        _per_chain_table(
            fit, "treedepth_exceeded", fit.treedepth_exceeded_per_chain
        )
        for fit in fits.values()
    ]
    predictive = [
        posterior_predictive_table(fit, num_ppc_draws, seed)
        for fit in fits.values()
    ]

    summary = (
        pd.concat(summaries, ignore_index=True)
        if summaries
        else DataFrame(columns=SUMMARY_COLUMNS)
    )

    not_converged = summary.loc[~summary["converged"].astype(bool)]
    if len(not_converged):
        logger.warning(
            f"{len(not_converged)} of {len(summary)} parameters did not meet "
            f"rhat <= {rhat_threshold}, ess >= {min_ess} and zero divergences, "
            f"by condition: "
            f"{not_converged.groupby('condition').size().to_dict()}"
        )
    logger.info(f"Diagnostics summary with {len(summary)} rows")

    return DiagnosticsResult(
        summary=summary,
        divergences=_concat(divergences, ["condition", "chain", "divergences"]),
        treedepth=_concat(
            treedepth, ["condition", "chain", "treedepth_exceeded"]
        ),
        rhat=summary[["condition", "metabolite", "time", "rhat"]].copy(),
        ess=summary[["condition", "metabolite", "time", "ess"]].copy(),
        posterior_predictive=_concat(
            predictive,
            [
                "condition",
                "metabolite",
                "time",
                "replicate",
                "draw",
                "observed",
                "simulated",
            ],
        ),
    )


def _concat(frames, columns) -> DataFrame:
    if not frames:
        return DataFrame(columns=columns)
    return pd.concat(frames, ignore_index=True)
