import metabodynamics.analysis.clustering
import metabodynamics.analysis.comparison
import metabodynamics.analysis.diagnostics
import metabodynamics.analysis.enrichment
import metabodynamics.analysis.estimates
from metabodynamics.analysis.clustering import cluster_dynamics
from metabodynamics.analysis.comparison import (
    compare_dynamics,
    compare_metabolites,
)
from metabodynamics.analysis.diagnostics import extract_diagnostics_dynamics
from metabodynamics.analysis.enrichment import (
    ORA_hypergeometric,
    ora_hypergeometric,
)
from metabodynamics.analysis.estimates import extract_estimates_dynamics

__all__ = [
    "clustering",
    "comparison",
    "diagnostics",
    "enrichment",
    "estimates",
    "ORA_hypergeometric",
    "cluster_dynamics",
    "compare_dynamics",
    "compare_metabolites",
    "extract_diagnostics_dynamics",
    "extract_estimates_dynamics",
    "ora_hypergeometric",
]
