import numpy as np
import pandas as pd
import pytest

from metabodynamics.analysis.clustering import Cluster
from metabodynamics.config import DynamicsModelConfig
from metabodynamics.inference import GroupModelFit, convergence_statistics
from metabodynamics.simulation import simulate_longitudinal_data
from metabodynamics.tasks.fit import fit_dynamics_model


def _make_group_fit(
    mu,
    condition="A",
    metabolites=None,
    timepoints=None,
    diverging=None,
    num_steps=None,
    max_treedepth=10,
):
    """GroupModelFit from chain-grouped draws of mu, (chains, draws, M, T)."""
    mu = np.asarray(mu, dtype=float)
    chains, draws, num_metabolites, num_timepoints = mu.shape
    if metabolites is None:
        metabolites = tuple(f"m{i + 1}" for i in range(num_metabolites))
    if timepoints is None:
        timepoints = tuple(range(1, num_timepoints + 1))
    if diverging is None:
        diverging = np.zeros((chains, draws), dtype=bool)
    if num_steps is None:
        num_steps = np.full((chains, draws), 7, dtype=np.int64)

    rhat, ess = convergence_statistics(mu)
    observations = pd.DataFrame(
        [
            {
                "metabolite": metabolite,
                "time": time,
                "replicate": replicate,
                "value": float(mu[..., m, t].mean()),
            }
            for m, metabolite in enumerate(metabolites)
            for t, time in enumerate(timepoints)
            for replicate in (1, 2)
        ]
    )
    return GroupModelFit(
        condition=condition,
        metabolites=tuple(metabolites),
        timepoints=tuple(timepoints),
        mu=mu,
        sigma=np.ones_like(mu),
        lambda_=np.ones(mu.shape[:3]),
        diverging=np.asarray(diverging, dtype=bool),
        num_steps=np.asarray(num_steps, dtype=np.int64),
        max_treedepth=max_treedepth,
        num_warmup=draws,
        rhat=rhat,
        ess=ess,
        observations=observations,
    )


def _make_cluster(condition, cluster_id, members, profiles=None):
    members = tuple(members)
    if profiles is None:
        profiles = np.zeros((len(members), 4))
    profiles = np.asarray(profiles, dtype=float)
    return Cluster(
        condition=condition,
        cluster_id=cluster_id,
        members=members,
        timepoints=tuple(range(1, profiles.shape[1] + 1)),
        profiles=profiles,
    )


@pytest.fixture
def group_fit_factory():
    return _make_group_fit


@pytest.fixture
def cluster_factory():
    return _make_cluster


@pytest.fixture
def normal_fit():
    """Fit whose mu draws are independent normals with known moments."""
    rng = np.random.default_rng(42)
    means = np.array([[0.0, 1.0, 1.0], [2.0, 0.0, -2.0]])
    mu = rng.normal(loc=means, scale=0.5, size=(4, 2000, 2, 3))
    return _make_group_fit(mu)


@pytest.fixture
def small_observations():
    observations, _ = simulate_longitudinal_data(
        conditions=("A", "B"),
        n_groups=2,
        metabolites_per_group=2,
        n_replicates=3,
        seed=0,
    )
    return observations


@pytest.fixture
def fast_config():
    return DynamicsModelConfig(iter=200, chains=2, seed=0)


@pytest.fixture(scope="session")
def small_fits():
    """Short real sampler run on two small conditions."""
    observations, _ = simulate_longitudinal_data(
        conditions=("A", "B"),
        n_groups=2,
        metabolites_per_group=2,
        n_replicates=3,
        seed=0,
    )
    return fit_dynamics_model(
        observations,
        DynamicsModelConfig(iter=200, chains=2, seed=0, cores=2),
    )
