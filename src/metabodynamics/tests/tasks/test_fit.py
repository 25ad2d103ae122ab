"""Tests for `metabodynamics.tasks.fit` module."""

import numpy as np
import pytest

import metabodynamics.tasks.fit as fit_module
from metabodynamics.config import DynamicsModelConfig
from metabodynamics.inference import GroupModelFit
from metabodynamics.observations import ObservationValidationError
from metabodynamics.tasks.fit import fit_dynamics_model


def test_load_fit():
    from metabodynamics.tasks import fit

    print(fit.__file__)


def test_fit_dynamics_model(small_fits):
    assert list(small_fits) == ["A", "B"]
    assert small_fits.failures == {}

    fit = small_fits["A"]
    assert isinstance(fit, GroupModelFit)
    assert fit.metabolites == ("m1", "m2", "m3", "m4")
    assert fit.timepoints == (1, 2, 3, 4)
    assert fit.mu.shape == (2, 100, 4, 4)
    assert fit.sigma.shape == (2, 100, 4, 4)
    assert fit.lambda_.shape == (2, 100, 4)
    assert fit.rhat.shape == (4, 4)
    assert fit.num_warmup == 100
    assert np.all(fit.sigma > 0)
    assert len(fit.observations) == 4 * 4 * 3


def test_fit_is_independent_of_worker_count(small_fits, small_observations):
    fits = fit_dynamics_model(
        small_observations,
        DynamicsModelConfig(iter=200, chains=2, seed=0, cores=1),
    )
    for condition in ("A", "B"):
        np.testing.assert_allclose(fits[condition].mu, small_fits[condition].mu)


def test_failed_condition_does_not_stop_others(
    monkeypatch, small_observations, fast_config
):
    original = fit_module.fit_group

    def fail_condition_b(group, config, rng_key):
        if group.condition == "B":
            raise FloatingPointError("non-finite draws")
        return original(group, config, rng_key)

    monkeypatch.setattr(fit_module, "fit_group", fail_condition_b)
    fits = fit_dynamics_model(small_observations, fast_config)

    assert list(fits) == ["A"]
    assert "B" not in fits
    assert "non-finite draws" in fits.failures["B"]
    assert "FloatingPointError" in fits.failures["B"]


def test_validation_errors_are_raised_before_fitting(
    monkeypatch, small_observations, fast_config
):
    def unreachable(*args, **kwargs):
        raise AssertionError("fit_group must not be called")

    monkeypatch.setattr(fit_module, "fit_group", unreachable)
    with pytest.raises(ObservationValidationError):
        fit_dynamics_model(
            small_observations.drop(columns=["replicate"]), fast_config
        )


def test_mismatched_timepoints_are_raised_before_fitting(
    monkeypatch, small_observations, fast_config
):
    def unreachable(*args, **kwargs):
        raise AssertionError("fit_group must not be called")

    monkeypatch.setattr(fit_module, "fit_group", unreachable)
    frame = small_observations.loc[
        ~((small_observations["condition"] == "B") & (small_observations["time"] == 4))
    ]
    with pytest.raises(ObservationValidationError, match="missing timepoints"):
        fit_dynamics_model(frame, fast_config)
