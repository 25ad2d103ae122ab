"""
MCMC utilities and immutable fit containers.

This module contains:

- create_mcmc: Create a NUTS-backed MCMC object from a sampler config
- run_nuts: Run NUTS and return chain-grouped draws and sampler fields
- GroupModelFit: Immutable posterior of one condition's dynamics model
- build_group_fit: Assemble a GroupModelFit and its convergence statistics
- DynamicsFits: Ordered read-only mapping of condition to GroupModelFit
- job_executor: Executor for independent inference jobs
- job_pool: Context manager that can abandon a set of inference jobs
"""

import multiprocessing
from collections.abc import Mapping
from contextlib import contextmanager
from concurrent.futures import Executor, ProcessPoolExecutor, ThreadPoolExecutor
from dataclasses import dataclass, field

import jax
import numpy as np
from beartype import beartype
from beartype.typing import Any, Callable, Dict, Hashable, Iterator, Tuple
from einops import rearrange
from jaxtyping import Bool, Float, Int
from numpyro.diagnostics import effective_sample_size, split_gelman_rubin
from numpyro.infer import MCMC, NUTS
from pandas import DataFrame

from metabodynamics.config import SamplerConfig
from metabodynamics.logging import configure_logging
from metabodynamics.observations import GroupObservations

__all__ = [
    "DynamicsFits",
    "GroupModelFit",
    "SamplerOutput",
    "build_group_fit",
    "convergence_statistics",
    "create_mcmc",
    "job_executor",
    "job_pool",
    "run_nuts",
    "tree_depth",
]

logger = configure_logging(__name__)

EXTRA_FIELDS = ("diverging", "num_steps")


@dataclass(frozen=True, eq=False)
class SamplerOutput:
    """Chain-grouped output of one NUTS run.

    Attributes:
        samples: Draws per site, shape (chains, draws, *site_shape)
        diverging: Divergence flag per draw, shape (chains, draws)
        num_steps: Leapfrog steps per draw, shape (chains, draws)
    """

    samples: Dict[str, np.ndarray]
    diverging: Bool[np.ndarray, "chains draws"]
    num_steps: Int[np.ndarray, "chains draws"]


@beartype
def create_mcmc(
    model: Callable,
    config: SamplerConfig,
) -> MCMC:
    """Create an MCMC object.

    Args:
        model: NumPyro model function
        config: Sampler configuration

    Returns:
        MCMC object
    """
    kernel = NUTS(
        model,
        target_accept_prob=config.adapt_delta,
        max_tree_depth=config.max_treedepth,
    )
    return MCMC(
        kernel,
        num_warmup=config.num_warmup,
        num_samples=config.num_samples,
        num_chains=config.chains,
        chain_method=config.chain_method,
        progress_bar=config.progress_bar,
    )


@beartype
def run_nuts(
    model: Callable,
    rng_key: jax.Array,
    config: SamplerConfig,
    **model_kwargs: Any,
) -> SamplerOutput:
    """Run NUTS on a model.

    Args:
        model: NumPyro model function
        rng_key: JAX random key
        config: Sampler configuration
        **model_kwargs: Keyword arguments for the model

    Returns:
        SamplerOutput with chain-grouped draws and sampler fields

    Raises:
        FloatingPointError: if any retained draw is not finite
    """
    mcmc = create_mcmc(model, config)
    mcmc.run(rng_key, extra_fields=EXTRA_FIELDS, **model_kwargs)

    samples = {
        name: np.asarray(value)
        for name, value in mcmc.get_samples(group_by_chain=True).items()
    }
    for name, value in samples.items():
        if not np.isfinite(value).all():
            raise FloatingPointError(
                f"Sampler returned non-finite draws for site {name!r}"
            )

    extra_fields = mcmc.get_extra_fields(group_by_chain=True)
    return SamplerOutput(
        samples=samples,
        diverging=np.asarray(extra_fields["diverging"], dtype=bool),
        num_steps=np.asarray(extra_fields["num_steps"], dtype=np.int64),
    )


@beartype
def tree_depth(num_steps: np.ndarray) -> np.ndarray:
    """
    Tree depth reached by each NUTS transition.

    A tree of depth d holds at most 2**d - 1 leapfrog steps.

    Examples:
        >>> import numpy as np
        >>> tree_depth(np.array([1, 3, 7, 8, 1023])).tolist()
        [1, 2, 3, 4, 10]
    """
    return np.ceil(np.log2(np.asarray(num_steps) + 1)).astype(np.int64)


@beartype
def convergence_statistics(
    draws: Float[np.ndarray, "chains draws ..."],
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Split-R-hat and effective sample size of chain-grouped draws.

    Draws without any variation have no defined statistics; their R-hat is
    NaN and their effective sample size is reported as 0.

    Args:
        draws: array of shape (chains, draws, *parameter_shape).

    Returns:
        Tuple of (rhat, ess), each of shape parameter_shape.
    """
    with np.errstate(divide="ignore", invalid="ignore"):
        rhat = np.asarray(split_gelman_rubin(draws), dtype=float)
        ess = np.asarray(effective_sample_size(draws), dtype=float)

    collapsed = np.ptp(draws, axis=(0, 1)) == 0
    rhat = np.where(collapsed, np.nan, rhat)
    ess = np.where(collapsed | ~np.isfinite(ess), 0.0, ess)
    return rhat, ess


def _read_only(array: np.ndarray) -> np.ndarray:
    array = np.array(array, copy=True)
    array.setflags(write=False)
    return array


@dataclass(frozen=True, eq=False)
class GroupModelFit:
    """Immutable posterior of the dynamics model of one condition.

    Attributes:
        condition: Condition identifier
        metabolites: Ordered metabolite identifiers
        timepoints: Ordered timepoint identifiers
        mu: Draws of the per-timepoint means, (chains, draws, M, T)
        sigma: Draws of the per-timepoint noise scales, (chains, draws, M, T)
        lambda_: Draws of the metabolite noise rates, (chains, draws, M)
        diverging: Divergence flag per draw, (chains, draws)
        num_steps: Leapfrog steps per draw, (chains, draws)
        max_treedepth: Tree depth limit used by the sampler
        num_warmup: Warmup iterations per chain
        rhat: Split-R-hat of mu, (M, T)
        ess: Effective sample size of mu, (M, T)
        observations: The condition's observations, with the columns
            metabolite, time, replicate, value
    """

    condition: Hashable
    metabolites: Tuple[Hashable, ...]
    timepoints: Tuple[Hashable, ...]
    mu: Float[np.ndarray, "chains draws metabolites timepoints"]
    sigma: Float[np.ndarray, "chains draws metabolites timepoints"]
    lambda_: Float[np.ndarray, "chains draws metabolites"]
    diverging: Bool[np.ndarray, "chains draws"]
    num_steps: Int[np.ndarray, "chains draws"]
    max_treedepth: int
    num_warmup: int
    rhat: Float[np.ndarray, "metabolites timepoints"]
    ess: Float[np.ndarray, "metabolites timepoints"]
    observations: DataFrame = field(repr=False)

    def __post_init__(self):
        for name in (
            "mu",
            "sigma",
            "lambda_",
            "diverging",
            "num_steps",
            "rhat",
            "ess",
        ):
            object.__setattr__(self, name, _read_only(getattr(self, name)))

        expected = (len(self.metabolites), len(self.timepoints))
        if self.mu.shape[2:] != expected:
            raise ValueError(
                f"mu has parameter shape {self.mu.shape[2:]}, "
                f"expected {expected}"
            )

    def __setstate__(self, state):
        self.__dict__.update(state)
        self.__post_init__()

    @property
    def num_chains(self) -> int:
        return int(self.mu.shape[0])

    @property
    def num_draws(self) -> int:
        return int(self.mu.shape[1])

    @property
    def divergences_per_chain(self) -> np.ndarray:
        return self.diverging.sum(axis=1)

    @property
    def treedepth_exceeded_per_chain(self) -> np.ndarray:
        return (tree_depth(self.num_steps) >= self.max_treedepth).sum(axis=1)

    def flat_samples(self) -> Dict[str, np.ndarray]:
        """Draws of every site with chains and draws merged."""
        return {
            "mu": rearrange(self.mu, "c d m t -> (c d) m t"),
            "sigma": rearrange(self.sigma, "c d m t -> (c d) m t"),
            "lambda": rearrange(self.lambda_, "c d m -> (c d) m 1"),
        }


@beartype
def build_group_fit(
    group: GroupObservations,
    output: SamplerOutput,
    max_treedepth: int,
    num_warmup: int,
) -> GroupModelFit:
    """
    Assemble the fit of one condition from raw sampler output.

    Args:
        group: observations the model was fit to.
        output: chain-grouped sampler output with mu, sigma and lambda sites.
        max_treedepth: tree depth limit used by the sampler.
        num_warmup: warmup iterations per chain.

    Returns:
        GroupModelFit: immutable fit with convergence statistics of mu.
    """
    mu = output.samples["mu"]
    rhat, ess = convergence_statistics(mu)

    observations = DataFrame(
        {
            "metabolite": [group.metabolites[i] for i in group.metabolite_index],
            "time": [group.timepoints[i] for i in group.time_index],
            "replicate": group.replicates,
            "value": group.values,
        }
    )

    return GroupModelFit(
        condition=group.condition,
        metabolites=group.metabolites,
        timepoints=group.timepoints,
        mu=mu,
        sigma=output.samples["sigma"],
        lambda_=output.samples["lambda"].reshape(mu.shape[:3]),
        diverging=output.diverging,
        num_steps=output.num_steps,
        max_treedepth=max_treedepth,
        num_warmup=num_warmup,
        rhat=rhat,
        ess=ess,
        observations=observations,
    )


class DynamicsFits(Mapping):
    """
    Ordered read-only mapping of condition identifier to GroupModelFit.

    Conditions whose fit failed are absent from the mapping and listed in
    `failures` with the reason.

    Examples:
        >>> fits = DynamicsFits({}, failures={"A": "divergent initialization"})
        >>> len(fits), dict(fits.failures)
        (0, {'A': 'divergent initialization'})
    """

    def __init__(
        self,
        fits: Dict[Hashable, GroupModelFit],
        failures: Dict[Hashable, str] | None = None,
    ):
        self._fits = dict(fits)
        self._failures = dict(failures or {})

    def __getitem__(self, condition: Hashable) -> GroupModelFit:
        return self._fits[condition]

    def __iter__(self) -> Iterator[Hashable]:
        return iter(self._fits)

    def __len__(self) -> int:
        return len(self._fits)

    def __repr__(self) -> str:
        return (
            f"DynamicsFits(conditions={list(self._fits)}, "
            f"failures={list(self._failures)})"
        )

    @property
    def failures(self) -> Dict[Hashable, str]:
        return dict(self._failures)


@beartype
def job_executor(cores: int) -> Executor:
    """
    Executor for a set of independent inference jobs.

    numpyro keeps its effect handler stack in a module global, so jobs that
    run at the same time need separate processes. Processes are spawned
    rather than forked since the JAX runtime is multithreaded. A single job
    slot runs in a worker thread of the calling process.

    Args:
        cores (int): maximum number of jobs running at the same time.

    Returns:
        Executor: thread pool with one worker if `cores` is 1, otherwise a
            pool of `cores` spawned processes.
    """
    if cores == 1:
        return ThreadPoolExecutor(max_workers=1)
    return ProcessPoolExecutor(
        max_workers=cores,
        mp_context=multiprocessing.get_context("spawn"),
    )


@contextmanager
def job_pool(cores: int) -> Iterator[Executor]:
    """
    Run a set of inference jobs on a `job_executor`.

    On normal exit the pool waits for every submitted job. If the block is
    left by an exception, including KeyboardInterrupt, jobs that have not
    started are cancelled and the pool is shut down without waiting for the
    running ones, so the caller can abandon the job set.

    Args:
        cores (int): maximum number of jobs running at the same time.

    Yields:
        Executor: the executor to submit jobs to.
    """
    executor = job_executor(cores)
    try:
        yield executor
    except BaseException:
        logger.warning("Abandoning inference jobs, pending jobs are cancelled")
        executor.shutdown(wait=False, cancel_futures=True)
        raise
    executor.shutdown(wait=True)
