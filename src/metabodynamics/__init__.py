"""
MetaboDynamics

MetaboDynamics estimates and compares the dynamics of metabolite
concentrations across experimental conditions with hierarchical Bayesian
models, and quantifies the functional meaning of clusters of similar
dynamics with over-representation analysis.
"""

from importlib import metadata

import metabodynamics.analysis
import metabodynamics.config
import metabodynamics.inference
import metabodynamics.logging
import metabodynamics.models
import metabodynamics.observations
import metabodynamics.simulation
import metabodynamics.tasks
import metabodynamics.utils

try:
    __version__ = metadata.version(__package__)
except metadata.PackageNotFoundError:
    __version__ = "unknown"

del metadata

__all__ = [
    "analysis",
    "config",
    "inference",
    "logging",
    "models",
    "observations",
    "simulation",
    "tasks",
    "utils",
]
