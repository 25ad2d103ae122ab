import arviz as az
import numpy as np
from beartype import beartype
from beartype.typing import Tuple

__all__ = [
    "highest_density_interval",
    "interval_direction",
]


@beartype
def highest_density_interval(
    draws: np.ndarray,
    hdi_prob: float = 0.95,
) -> Tuple[float, float]:
    """
    Highest-density interval of a set of posterior draws.

    The draws are flattened, so chain and draw axes may be passed as is.
    The interval comes from the empirical draw distribution and does not
    assume normality.

    Args:
        draws (np.ndarray): posterior draws of a scalar quantity.
        hdi_prob (float): probability mass inside the interval.

    Returns:
        Tuple[float, float]: lower and upper bound.

    Examples:
        >>> import numpy as np
        >>> lower, upper = highest_density_interval(np.arange(101.0), 0.9)
        >>> lower, upper
        (0.0, 90.0)
    """
    interval = az.hdi(np.asarray(draws, dtype=float).ravel(), hdi_prob=hdi_prob)
    return float(interval[0]), float(interval[1])


@beartype
def interval_direction(lower: float, upper: float) -> int:
    """
    Sign of an interval relative to zero.

    Returns:
        int: 1 if the interval lies entirely above zero, -1 if entirely
            below zero, 0 otherwise.

    Examples:
        >>> interval_direction(0.2, 1.0), interval_direction(-1.0, 0.3)
        (1, 0)
    """
    if lower > 0:
        return 1
    if upper < 0:
        return -1
    return 0

