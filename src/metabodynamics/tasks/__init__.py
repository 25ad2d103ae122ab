import metabodynamics.tasks.fit
import metabodynamics.tasks.pipeline
from metabodynamics.tasks.fit import fit_dynamics_model
from metabodynamics.tasks.pipeline import analyze_dynamics, save_analysis

__all__ = [
    "fit",
    "pipeline",
    "analyze_dynamics",
    "fit_dynamics_model",
    "save_analysis",
]
