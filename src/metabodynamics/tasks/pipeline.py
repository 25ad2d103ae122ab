from dataclasses import dataclass, field
from pathlib import Path

from beartype import beartype
from beartype.typing import Dict, List, Optional, Tuple
from pandas import DataFrame

from metabodynamics.analysis.clustering import (
    Cluster,
    Clusterer,
    cluster_dynamics,
    clusters_to_frame,
    ward_clusterer,
)
from metabodynamics.analysis.comparison import (
    ComparisonResult,
    compare_dynamics,
    compare_metabolites,
)
from metabodynamics.analysis.diagnostics import (
    MIN_ESS,
    RHAT_THRESHOLD,
    DiagnosticsResult,
    extract_diagnostics_dynamics,
)
from metabodynamics.analysis.enrichment import (
    HIERARCHY_LEVELS,
    EnrichmentResult,
    ora_hypergeometric,
)
from metabodynamics.analysis.estimates import (
    EstimatesResult,
    extract_estimates_dynamics,
)
from metabodynamics.config import DynamicsModelConfig, SamplerConfig
from metabodynamics.inference import DynamicsFits
from metabodynamics.logging import configure_logging
from metabodynamics.tasks.fit import fit_dynamics_model

__all__ = [
    "DynamicsAnalysis",
    "analyze_dynamics",
    "save_analysis",
]

logger = configure_logging(__name__)


@dataclass(frozen=True, eq=False)
class DynamicsAnalysis:
    """Results of every stage of a dynamics analysis.

    Attributes:
        config: Model and sampler configuration of the fits
        fits: Fits per condition, failed conditions in `fits.failures`
        diagnostics: Convergence diagnostics of the fits
        estimates: Estimates, differences and dynamic profiles
        clusters: Clusters of the dynamic profiles of all conditions
        enrichment: Enrichment results per hierarchy level
        dynamics_comparison: Distance comparison of cluster pairs
        metabolites_comparison: Membership comparison of cluster pairs
    """

    config: DynamicsModelConfig
    fits: DynamicsFits
    diagnostics: DiagnosticsResult
    estimates: EstimatesResult
    clusters: Tuple[Cluster, ...]
    enrichment: Dict[str, EnrichmentResult] = field(default_factory=dict)
    dynamics_comparison: Optional[ComparisonResult] = None
    metabolites_comparison: Optional[ComparisonResult] = None

    def tables(self) -> Dict[str, DataFrame]:
        """All result tables by file stem."""
        tables = {
            "diagnostics_summary": self.diagnostics.summary,
            "diagnostics_divergences": self.diagnostics.divergences,
            "diagnostics_treedepth": self.diagnostics.treedepth,
            "diagnostics_rhat": self.diagnostics.rhat,
            "diagnostics_ess": self.diagnostics.ess,
            "posterior_predictive": self.diagnostics.posterior_predictive,
            "estimates": self.estimates.estimates,
            "differences": self.estimates.differences,
            "profiles": self.estimates.profiles_frame(),
            "clusters": clusters_to_frame(self.clusters),
            "fit_failures": DataFrame(
                list(self.fits.failures.items()),
                columns=["condition", "reason"],
            ),
        }
        for level, result in self.enrichment.items():
            tables[f"enrichment_{level}"] = result.table
        if self.dynamics_comparison is not None:
            tables["compare_dynamics"] = self.dynamics_comparison.table
        if self.metabolites_comparison is not None:
            tables["compare_metabolites"] = self.metabolites_comparison.table
        return tables


@beartype
def analyze_dynamics(
    observations: DataFrame,
    config: Optional[DynamicsModelConfig] = None,
    n_clusters: int = 8,
    background: Optional[DataFrame] = None,
    annotations: Optional[DataFrame] = None,
    clusterer: Clusterer = ward_clusterer,
    samples_per_param: Optional[int] = None,
    rhat_threshold: float = RHAT_THRESHOLD,
    min_ess: float = MIN_ESS,
    compare: bool = True,
    comparison_config: Optional[SamplerConfig] = None,
) -> DynamicsAnalysis:
    """
    Run the dynamics analysis from observations to cluster comparisons.

    The stages run in order: one fit per condition, diagnostics, estimates,
    clustering of the dynamic profiles, enrichment of both hierarchy levels
    when `background` and `annotations` are given, and the comparison of
    all cluster pairs. Every stage after the fits reads only completed fits.
    Non-converged fits are flagged in the diagnostics and their estimates
    are kept.

    Args:
        observations (DataFrame): observation table.
        config (DynamicsModelConfig): model and sampler configuration.
        n_clusters (int): target number of clusters per condition.
        background (DataFrame): background annotation table.
        annotations (DataFrame): annotation table of the measured
            metabolites.
        clusterer (Clusterer): clustering capability.
        samples_per_param (int): draws per parameter used for estimates.
        rhat_threshold (float): largest acceptable split-R-hat.
        min_ess (float): smallest acceptable effective sample size.
        compare (bool): whether to compare cluster dynamics and members.
        comparison_config (SamplerConfig): sampler options of the distance
            model, the sampler options of `config` if None.

    Returns:
        DynamicsAnalysis: results of every stage.

    Raises:
        RuntimeError: if no condition could be fitted.

    Examples:
        >>> # xdoctest: +SKIP
        >>> from metabodynamics.simulation import simulate_longitudinal_data
        >>> observations, truth = simulate_longitudinal_data()
        >>> analysis = analyze_dynamics(
        ...     observations, DynamicsModelConfig(iter=1000, chains=2)
        ... )
        >>> analysis.diagnostics.summary["converged"].mean()
    """
    if config is None:
        config = DynamicsModelConfig()
    if (background is None) != (annotations is None):
        raise ValueError("background and annotations must be given together")

    fits = fit_dynamics_model(observations, config)
    if not fits:
        raise RuntimeError(
            f"No condition could be fitted: {fits.failures}"
        )

    diagnostics = extract_diagnostics_dynamics(
        fits,
        rhat_threshold=rhat_threshold,
        min_ess=min_ess,
        seed=config.seed,
    )
    estimates = extract_estimates_dynamics(fits, samples_per_param)
    clusters = cluster_dynamics(estimates.profiles, n_clusters, clusterer)

    enrichment = {}
    if background is not None:
        for level in HIERARCHY_LEVELS:
            enrichment[level] = ora_hypergeometric(
                background,
                annotations,
                clusters,
                level,
                seed=config.seed,
            )

    dynamics_comparison = None
    metabolites_comparison = None
    if compare:
        dynamics_comparison = compare_dynamics(
            clusters,
            comparison_config or config.sampler(),
        )
        metabolites_comparison = compare_metabolites(clusters)

    return DynamicsAnalysis(
        config=config,
        fits=fits,
        diagnostics=diagnostics,
        estimates=estimates,
        clusters=clusters,
        enrichment=enrichment,
        dynamics_comparison=dynamics_comparison,
        metabolites_comparison=metabolites_comparison,
    )


@beartype
def save_analysis(
    analysis: DynamicsAnalysis,
    output_dir: str | Path,
) -> List[Path]:
    """
    Write every table of an analysis as CSV.

    Plot-ready matrices are written next to their tables with a
    `_matrix` suffix.

    Args:
        analysis (DynamicsAnalysis): analysis results.
        output_dir (str | Path): directory, created if missing.

    Returns:
        List[Path]: paths of the written files.
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    written = []
    for name, table in analysis.tables().items():
        path = output_dir / f"{name}.csv"
        table.to_csv(path, index=False)
        written.append(path)

    matrices = {
        f"enrichment_{level}_matrix": result.plot_table
        for level, result in analysis.enrichment.items()
    }
    if analysis.dynamics_comparison is not None:
        matrices["compare_dynamics_matrix"] = (
            analysis.dynamics_comparison.plot_table
        )
    if analysis.metabolites_comparison is not None:
        matrices["compare_metabolites_matrix"] = (
            analysis.metabolites_comparison.plot_table
        )
    for name, matrix in matrices.items():
        path = output_dir / f"{name}.csv"
        matrix.to_csv(path)
        written.append(path)

    logger.info(f"Wrote {len(written)} tables to {output_dir}")
    return written
