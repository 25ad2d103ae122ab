from concurrent.futures import as_completed

import jax
from beartype import beartype
from beartype.typing import Dict, Hashable, Optional
from pandas import DataFrame

from metabodynamics.config import DynamicsModelConfig
from metabodynamics.inference import (
    DynamicsFits,
    GroupModelFit,
    build_group_fit,
    job_pool,
    run_nuts,
)
from metabodynamics.logging import configure_logging
from metabodynamics.models import group_dynamics_model
from metabodynamics.observations import GroupObservations, group_observations

__all__ = [
    "fit_dynamics_model",
    "fit_group",
]

logger = configure_logging(__name__)


@beartype
def fit_group(
    group: GroupObservations,
    config: DynamicsModelConfig,
    rng_key: jax.Array,
) -> GroupModelFit:
    """
    Fit the hierarchical dynamics model to the observations of one condition.

    Args:
        group (GroupObservations): model input of a single condition.
        config (DynamicsModelConfig): sampler configuration.
        rng_key (jax.Array): random key of this job.

    Returns:
        GroupModelFit: immutable posterior of the condition.
    """
    logger.info(
        f"Fitting condition {group.condition!r}: "
        f"{group.num_metabolites} metabolites x {group.num_timepoints} "
        f"timepoints, {config.chains} chains x {config.iter} iterations"
    )
    output = run_nuts(
        group_dynamics_model,
        rng_key,
        config.sampler(),
        metabolite_index=group.metabolite_index,
        time_index=group.time_index,
        num_metabolites=group.num_metabolites,
        num_timepoints=group.num_timepoints,
        observations=group.values,
    )
    fit = build_group_fit(
        group=group,
        output=output,
        max_treedepth=config.max_treedepth,
        num_warmup=config.num_warmup,
    )

    divergences = int(fit.divergences_per_chain.sum())
    treedepth_exceeded = int(fit.treedepth_exceeded_per_chain.sum())
    if divergences or treedepth_exceeded:
        logger.warning(
            f"Condition {group.condition!r}: {divergences} divergent "
            f"transitions, {treedepth_exceeded} transitions at the maximum "
            f"tree depth of {config.max_treedepth}"
        )
    logger.info(f"Finished condition {group.condition!r}")
    return fit


@beartype
def fit_dynamics_model(
    observations: DataFrame,
    config: Optional[DynamicsModelConfig] = None,
) -> DynamicsFits:
    """
    Fit the dynamics model independently to every condition.

    Each condition is one inference job; jobs share no state and run on at
    most `config.cores` workers, see `job_pool`. A job that fails does
    not stop the others: its condition is left out of the result and the
    failure reason is kept in `DynamicsFits.failures`. Observation table
    problems are raised before any job starts.

    Args:
        observations (DataFrame): observation table with the columns named
            in `config`.
        config (DynamicsModelConfig): model and sampler configuration.

    Returns:
        DynamicsFits: ordered mapping of condition to GroupModelFit.

    Examples:
        >>> # xdoctest: +SKIP
        >>> from metabodynamics.simulation import simulate_longitudinal_data
        >>> observations, _ = simulate_longitudinal_data()
        >>> fits = fit_dynamics_model(
        ...     observations,
        ...     DynamicsModelConfig(iter=1000, chains=2, cores=3),
        ... )
        >>> list(fits)
        ['A', 'B', 'C']
    """
    if config is None:
        config = DynamicsModelConfig()

    groups = group_observations(observations, config)
    root_key = jax.random.PRNGKey(config.seed)
    job_keys = {
        condition: jax.random.fold_in(root_key, index)
        for index, condition in enumerate(groups)
    }

    completed: Dict[Hashable, GroupModelFit] = {}
    failures: Dict[Hashable, str] = {}

    with job_pool(config.cores) as executor:
        future_to_condition = {
            executor.submit(
                fit_group, group, config, job_keys[condition]
            ): condition
            for condition, group in groups.items()
        }
        for future in as_completed(future_to_condition):
            condition = future_to_condition[future]
            try:
                completed[condition] = future.result()
            except Exception as e:
                logger.error(
                    f"Fit failed for condition {condition!r}: "
                    f"{type(e).__name__}: {e}"
                )
                failures[condition] = f"{type(e).__name__}: {e}"

    fits = DynamicsFits(
        {c: completed[c] for c in groups if c in completed},
        failures={c: failures[c] for c in groups if c in failures},
    )
    logger.info(
        f"Fitted {len(fits)} of {len(groups)} conditions"
        + (f", failed: {list(fits.failures)}" if fits.failures else "")
    )
    return fits
