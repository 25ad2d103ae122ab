import jax.numpy as jnp
import numpyro
import numpyro.distributions as dist
from beartype import beartype
from beartype.typing import Optional
from jaxtyping import ArrayLike, Float, Int, jaxtyped

__all__ = [
    "DISTANCE_MU_PRIOR",
    "DISTANCE_SIGMA_RATE",
    "LAMBDA_RATE",
    "MU_PRIOR_SCALE",
    "distance_model",
    "group_dynamics_model",
]

# weak prior on standardized per-timepoint means
MU_PRIOR_SCALE = 2.0
# rate of the metabolite-level hyperprior on the noise rate
LAMBDA_RATE = 2.0

DISTANCE_MU_PRIOR = (1.0, 5.0)
DISTANCE_SIGMA_RATE = 1.0

IndexVector = Int[ArrayLike, "number_of_observations"]
ObservationVector = Float[ArrayLike, "number_of_observations"]
DistanceVector = Float[ArrayLike, "number_of_distances"]


@jaxtyped(typechecker=beartype)
def group_dynamics_model(
    metabolite_index: IndexVector,
    time_index: IndexVector,
    num_metabolites: int,
    num_timepoints: int,
    observations: Optional[ObservationVector] = None,
):
    """
    Hierarchical model of the measurements of one condition.

    Every (metabolite, timepoint) has its own mean and noise scale. The noise
    scales of a metabolite share an exponential rate drawn from a
    metabolite-level hyperprior, which partially pools the variance across
    its timepoints.

        lambda[m]   ~ Exponential(LAMBDA_RATE)
        mu[m, t]    ~ Normal(0, MU_PRIOR_SCALE)
        sigma[m, t] ~ Exponential(lambda[m])
        y[i]        ~ Normal(mu[m_i, t_i], sigma[m_i, t_i])

    Args:
        metabolite_index: metabolite position of each observation.
        time_index: timepoint position of each observation.
        num_metabolites: number of metabolites in the condition.
        num_timepoints: number of timepoints in the condition.
        observations: standardized measurements, None to simulate.
    """
    with numpyro.plate("metabolites", num_metabolites, dim=-2):
        lambda_ = numpyro.sample("lambda", dist.Exponential(LAMBDA_RATE))
        with numpyro.plate("timepoints", num_timepoints, dim=-1):
            mu = numpyro.sample("mu", dist.Normal(0.0, MU_PRIOR_SCALE))
            sigma = numpyro.sample("sigma", dist.Exponential(lambda_))

    metabolite_index = jnp.asarray(metabolite_index)
    time_index = jnp.asarray(time_index)

    with numpyro.plate("observations", metabolite_index.shape[0]):
        numpyro.sample(
            "y",
            dist.Normal(
                loc=mu[..., metabolite_index, time_index],
                scale=sigma[..., metabolite_index, time_index],
            ),
            obs=observations,
        )


@jaxtyped(typechecker=beartype)
def distance_model(
    distances: DistanceVector,
):
    """
    One-group model of the pairwise distances between two clusters.

    The location is the typical distance between members of the two
    clusters and is constrained to be non-negative; the scale captures the
    spread of the distances.

        mu    ~ TruncatedNormal(1, 5, low=0)
        sigma ~ Exponential(1)
        d[i]  ~ Normal(mu, sigma)

    Args:
        distances: observed Euclidean distances between profiles.
    """
    loc, scale = DISTANCE_MU_PRIOR
    mu = numpyro.sample(
        "mu", dist.TruncatedNormal(loc=loc, scale=scale, low=0.0)
    )
    sigma = numpyro.sample("sigma", dist.Exponential(DISTANCE_SIGMA_RATE))

    distances = jnp.asarray(distances)
    with numpyro.plate("distances", distances.shape[0]):
        numpyro.sample("distance", dist.Normal(mu, sigma), obs=distances)
