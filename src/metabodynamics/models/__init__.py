from metabodynamics.models._dynamics_model import (
    distance_model,
    group_dynamics_model,
)

__all__ = [
    "distance_model",
    "group_dynamics_model",
]
