"""
Immutable configuration containers for metabodynamics.

- SamplerConfig: options of the NUTS sampler and the job pool
- DynamicsModelConfig: sampler options plus the observation column names
  used by the group dynamics model
- load_config: read a DynamicsModelConfig from a YAML file
"""

from dataclasses import dataclass, fields
from os import PathLike
from pathlib import Path

import yaml
from beartype import beartype
from beartype.typing import Any, Dict, Hashable, Optional, Tuple

from metabodynamics.logging import configure_logging

__all__ = [
    "CHAIN_METHODS",
    "DynamicsModelConfig",
    "SamplerConfig",
    "load_config",
]

logger = configure_logging(__name__)

CHAIN_METHODS = ("sequential", "parallel", "vectorized")


@dataclass(frozen=True)
class SamplerConfig:
    """Immutable container for sampler configuration.

    Attributes:
        iter: Total number of draws per chain, warmup included
        chains: Number of independent chains
        warmup_fraction: Fraction of `iter` spent in warmup
        max_treedepth: Maximum NUTS tree depth
        adapt_delta: Target acceptance probability during adaptation
        cores: Number of inference jobs run concurrently
        chain_method: numpyro chain method
        seed: Seed of the root JAX random key
        progress_bar: Whether numpyro shows a progress bar
    """

    iter: int = 2000
    chains: int = 4
    warmup_fraction: float = 0.5
    max_treedepth: int = 10
    adapt_delta: float = 0.95
    cores: int = 1
    chain_method: str = "sequential"
    seed: int = 0
    progress_bar: bool = False

    def __post_init__(self):
        if self.iter <= 0:
            raise ValueError(f"iter must be positive, got {self.iter}")
        if self.chains < 1:
            raise ValueError(f"chains must be at least 1, got {self.chains}")
        if not 0.0 < self.warmup_fraction < 1.0:
            raise ValueError(
                f"warmup_fraction must lie in (0, 1), got {self.warmup_fraction}"
            )
        if self.max_treedepth < 1:
            raise ValueError(
                f"max_treedepth must be at least 1, got {self.max_treedepth}"
            )
        if not 0.0 < self.adapt_delta < 1.0:
            raise ValueError(
                f"adapt_delta must lie in (0, 1), got {self.adapt_delta}"
            )
        if self.cores < 1:
            raise ValueError(f"cores must be at least 1, got {self.cores}")
        if self.chain_method not in CHAIN_METHODS:
            raise ValueError(
                f"chain_method must be one of {CHAIN_METHODS}, "
                f"got {self.chain_method!r}"
            )
        # split R-hat halves each chain
        if self.num_samples < 4:
            raise ValueError(
                f"iter={self.iter} with warmup_fraction={self.warmup_fraction} "
                f"leaves {self.num_samples} post-warmup draws, at least 4 are needed"
            )

    @property
    def num_warmup(self) -> int:
        return int(round(self.iter * self.warmup_fraction))

    @property
    def num_samples(self) -> int:
        return self.iter - self.num_warmup

    def replace(self, **kwargs) -> "SamplerConfig":
        """Create a new config with updated values.

        Args:
            **kwargs: Keyword arguments with new values

        Returns:
            New config of the same type with updated values
        """
        return type(self)(**{**self.__dict__, **kwargs})

    def sampler(self) -> "SamplerConfig":
        """Return only the sampler options of this config."""
        return SamplerConfig(
            **{f.name: getattr(self, f.name) for f in fields(SamplerConfig)}
        )


@dataclass(frozen=True)
class DynamicsModelConfig(SamplerConfig):
    """Immutable container for the group dynamics model configuration.

    Attributes:
        scaled_measurement: Column of the standardized measurement
        time: Column of the time identifier
        condition: Column of the condition identifier
        metabolite: Column of the metabolite identifier
        replicate: Column of the replicate identifier
        timepoints: Ordered timepoint identifiers; when None the order comes
            from an ordered categorical time column or from sorting numeric
            or datetime labels
    """

    scaled_measurement: str = "standardized"
    time: str = "time"
    condition: str = "condition"
    metabolite: str = "metabolite"
    replicate: str = "replicate"
    timepoints: Optional[Tuple[Hashable, ...]] = None

    def __post_init__(self):
        super().__post_init__()
        columns = self.columns
        if len(set(columns.values())) != len(columns):
            raise ValueError(f"column names must be distinct, got {columns}")
        if self.timepoints is not None:
            # lists from YAML
            object.__setattr__(self, "timepoints", tuple(self.timepoints))
            if not self.timepoints:
                raise ValueError("timepoints must not be empty")
            if len(set(self.timepoints)) != len(self.timepoints):
                raise ValueError(
                    f"timepoints must be distinct, got {self.timepoints}"
                )

    @property
    def columns(self) -> Dict[str, str]:
        return {
            "metabolite": self.metabolite,
            "condition": self.condition,
            "time": self.time,
            "replicate": self.replicate,
            "scaled_measurement": self.scaled_measurement,
        }


@beartype
def load_config(path: PathLike | str) -> DynamicsModelConfig:
    """
    Load a DynamicsModelConfig from a YAML file.

    Args:
        path (PathLike | str): path to a YAML mapping of config options.

    Returns:
        DynamicsModelConfig: validated configuration.

    Examples:
        >>> # xdoctest: +SKIP
        >>> config = load_config("config.yaml")
        >>> config.chains
        4
    """
    with Path(path).open() as f:
        options: Dict[str, Any] = yaml.safe_load(f) or {}

    if not isinstance(options, dict):
        raise ValueError(f"{path} does not contain a mapping of options")

    known = {f.name for f in fields(DynamicsModelConfig)}
    unknown = sorted(set(options) - known)
    if unknown:
        raise ValueError(f"Unknown configuration options in {path}: {unknown}")

    config = DynamicsModelConfig(**options)
    logger.info(f"Loaded configuration from {path}: {config}")
    return config
