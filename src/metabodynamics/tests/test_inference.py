"""Tests for `metabodynamics.inference` module."""

import threading

import jax
import numpy as np
import pytest

from metabodynamics.config import SamplerConfig
from metabodynamics.inference import (
    DynamicsFits,
    convergence_statistics,
    create_mcmc,
    job_pool,
    run_nuts,
    tree_depth,
)
from metabodynamics.models import distance_model


def test_tree_depth():
    num_steps = np.array([[1, 2, 3], [4, 511, 1023]])
    np.testing.assert_array_equal(
        tree_depth(num_steps), [[1, 2, 2], [3, 9, 10]]
    )


def test_convergence_statistics_mixed_chains():
    rng = np.random.default_rng(0)
    draws = rng.normal(size=(4, 500, 2))
    rhat, ess = convergence_statistics(draws)
    assert rhat.shape == (2,)
    assert np.all(np.abs(rhat - 1.0) < 0.02)
    assert np.all(ess > 1000)


def test_convergence_statistics_collapsed_draws():
    draws = np.zeros((2, 100, 1, 2))
    draws[..., 1] = np.random.default_rng(0).normal(size=(2, 100, 1))
    rhat, ess = convergence_statistics(draws)
    assert np.isnan(rhat[0, 0])
    assert ess[0, 0] == 0.0
    assert np.isfinite(rhat[0, 1])
    assert ess[0, 1] > 0


def test_convergence_statistics_separated_chains():
    rng = np.random.default_rng(0)
    draws = rng.normal(size=(2, 200, 1))
    draws[1] += 10.0
    rhat, _ = convergence_statistics(draws)
    assert rhat[0] > 1.5


def test_group_fit_is_read_only(group_fit_factory):
    fit = group_fit_factory(np.zeros((2, 10, 3, 4)))
    assert fit.num_chains == 2
    assert fit.num_draws == 10
    with pytest.raises(ValueError):
        fit.mu[0, 0, 0, 0] = 1.0
    with pytest.raises(AttributeError):
        fit.condition = "B"


def test_group_fit_checks_parameter_shape(group_fit_factory):
    fit = group_fit_factory(np.zeros((2, 10, 3, 4)))
    with pytest.raises(ValueError, match="parameter shape"):
        type(fit)(**{**fit.__dict__, "timepoints": (1, 2, 3)})


def test_group_fit_sampler_counts(group_fit_factory):
    diverging = np.zeros((2, 10), dtype=bool)
    diverging[1, :3] = True
    num_steps = np.full((2, 10), 7)
    num_steps[0, 0] = 1023
    num_steps[0, 1] = 2047
    fit = group_fit_factory(
        np.zeros((2, 10, 1, 2)),
        diverging=diverging,
        num_steps=num_steps,
        max_treedepth=10,
    )
    np.testing.assert_array_equal(fit.divergences_per_chain, [0, 3])
    np.testing.assert_array_equal(fit.treedepth_exceeded_per_chain, [2, 0])


def test_flat_samples(group_fit_factory):
    fit = group_fit_factory(np.arange(2 * 5 * 3 * 4, dtype=float).reshape(2, 5, 3, 4))
    samples = fit.flat_samples()
    assert samples["mu"].shape == (10, 3, 4)
    assert samples["sigma"].shape == (10, 3, 4)
    assert samples["lambda"].shape == (10, 3, 1)
    np.testing.assert_array_equal(samples["mu"][5], fit.mu[1, 0])


def test_dynamics_fits_mapping(group_fit_factory):
    fit_a = group_fit_factory(np.zeros((2, 10, 1, 2)), condition="A")
    fit_c = group_fit_factory(np.zeros((2, 10, 1, 2)), condition="C")
    fits = DynamicsFits({"C": fit_c, "A": fit_a}, failures={"B": "error"})
    assert list(fits) == ["C", "A"]
    assert fits["A"] is fit_a
    assert "B" not in fits
    assert fits.failures == {"B": "error"}
    fits.failures["D"] = "changed"
    assert fits.failures == {"B": "error"}


def test_create_mcmc():
    config = SamplerConfig(iter=100, chains=3, warmup_fraction=0.2)
    mcmc = create_mcmc(distance_model, config)
    assert mcmc.num_warmup == 20
    assert mcmc.num_samples == 80
    assert mcmc.num_chains == 3


def test_run_nuts_distance_model():
    distances = np.random.default_rng(0).normal(3.0, 0.5, size=40)
    config = SamplerConfig(iter=400, chains=2)
    output = run_nuts(
        distance_model, jax.random.PRNGKey(0), config, distances=distances
    )
    assert output.samples["mu"].shape == (2, 200)
    assert output.diverging.shape == (2, 200)
    assert output.num_steps.shape == (2, 200)
    assert abs(output.samples["mu"].mean() - 3.0) < 0.5


def test_run_nuts_is_reproducible():
    distances = np.array([1.0, 1.5, 2.0, 2.5])
    config = SamplerConfig(iter=100, chains=1)
    first = run_nuts(
        distance_model, jax.random.PRNGKey(3), config, distances=distances
    )
    second = run_nuts(
        distance_model, jax.random.PRNGKey(3), config, distances=distances
    )
    np.testing.assert_array_equal(first.samples["mu"], second.samples["mu"])


def _blocking_job(started, release):
    started.set()
    return release.wait(timeout=30)


def test_job_pool_waits_for_jobs():
    with job_pool(1) as executor:
        futures = [executor.submit(sum, [i, 1]) for i in range(3)]
    assert [future.result(timeout=0) for future in futures] == [1, 2, 3]


def test_job_pool_abandons_pending_jobs_on_error():
    started, release = threading.Event(), threading.Event()
    with pytest.raises(RuntimeError, match="interrupted"):
        with job_pool(1) as executor:
            running = executor.submit(_blocking_job, started, release)
            pending = executor.submit(sum, [1, 2])
            assert started.wait(timeout=30)
            raise RuntimeError("interrupted")

    assert pending.cancelled()
    assert not running.done()
    release.set()
    assert running.result(timeout=30) is True
