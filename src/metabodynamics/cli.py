"""Command line interface for metabodynamics."""

from pathlib import Path

import click
import pandas as pd

from metabodynamics import __version__
from metabodynamics.config import DynamicsModelConfig, load_config
from metabodynamics.logging import configure_logging

logger = configure_logging(__name__)


@click.group()
@click.version_option(version=__version__)
def main():
    """Bayesian analysis of metabolite dynamics across conditions."""


@main.command()
@click.argument(
    "observations", type=click.Path(exists=True, dir_okay=False, path_type=Path)
)
@click.option(
    "--output",
    "-o",
    "output_dir",
    type=click.Path(file_okay=False, path_type=Path),
    required=True,
    help="Directory for the result tables.",
)
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="YAML file of model and sampler options.",
)
@click.option(
    "--clusters",
    "n_clusters",
    type=click.IntRange(min=1),
    default=8,
    show_default=True,
    help="Target number of clusters per condition.",
)
@click.option(
    "--background",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="CSV of background annotations.",
)
@click.option(
    "--annotations",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="CSV of annotations of the measured metabolites.",
)
@click.option(
    "--no-compare",
    is_flag=True,
    default=False,
    help="Skip the comparison of cluster pairs.",
)
def run(
    observations,
    output_dir,
    config_path,
    n_clusters,
    background,
    annotations,
    no_compare,
):
    """Fit, summarize, cluster and compare the dynamics in OBSERVATIONS."""
    from metabodynamics.tasks.pipeline import analyze_dynamics, save_analysis

    if (background is None) != (annotations is None):
        raise click.UsageError(
            "--background and --annotations must be given together"
        )

    config = (
        load_config(config_path) if config_path else DynamicsModelConfig()
    )
    analysis = analyze_dynamics(
        pd.read_csv(observations),
        config,
        n_clusters=n_clusters,
        background=pd.read_csv(background) if background else None,
        annotations=pd.read_csv(annotations) if annotations else None,
        compare=not no_compare,
    )
    written = save_analysis(analysis, output_dir)
    click.echo(f"Wrote {len(written)} tables to {output_dir}")


@main.command()
@click.argument("output", type=click.Path(dir_okay=False, path_type=Path))
@click.option(
    "--truth",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="CSV for the true means and group labels.",
)
@click.option("--seed", type=int, default=0, show_default=True)
@click.option("--noise-sd", type=float, default=0.1, show_default=True)
def simulate(output, truth, seed, noise_sd):
    """Write a synthetic observation table to OUTPUT."""
    from metabodynamics.simulation import simulate_longitudinal_data

    observations, truth_table = simulate_longitudinal_data(
        noise_sd=noise_sd, seed=seed
    )
    output.parent.mkdir(parents=True, exist_ok=True)
    observations.to_csv(output, index=False)
    if truth is not None:
        truth_table.to_csv(truth, index=False)
    click.echo(f"Wrote {len(observations)} observations to {output}")
