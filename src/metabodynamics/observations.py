"""
Validated observation tables for the group dynamics model.

This module contains:

- standardize_observations: add log and per-(metabolite, condition)
  standardized values to a table of raw measurements
- timepoint_order: resolve the order of the timepoint labels
- validate_observations: check that an observation table is usable
- group_observations: split a validated table into one model input per
  condition
"""

from dataclasses import dataclass

import numpy as np
import pandas as pd
from beartype import beartype
from beartype.typing import Dict, Hashable, Optional, Sequence, Tuple
from jaxtyping import Float, Int
from pandas import DataFrame
from pandas.api.types import is_datetime64_any_dtype, is_numeric_dtype

from metabodynamics.config import DynamicsModelConfig
from metabodynamics.logging import configure_logging

__all__ = [
    "OBSERVATION_COLUMNS",
    "GroupObservations",
    "ObservationValidationError",
    "group_observations",
    "standardize_observations",
    "timepoint_order",
    "validate_observations",
]

logger = configure_logging(__name__)

OBSERVATION_COLUMNS = (
    "metabolite",
    "condition",
    "time",
    "replicate",
    "raw",
    "log",
    "standardized",
)


class ObservationValidationError(ValueError):
    """Raised when an observation table cannot be used for model fitting."""


@dataclass(frozen=True, eq=False)
class GroupObservations:
    """Model input for the observations of one condition.

    Attributes:
        condition: Condition identifier
        metabolites: Ordered metabolite identifiers
        timepoints: Ordered timepoint identifiers
        metabolite_index: Metabolite position of each observation
        time_index: Timepoint position of each observation
        replicates: Replicate identifier of each observation
        values: Modelled measurement of each observation
        frame: The condition's rows, aligned with the arrays above
    """

    condition: Hashable
    metabolites: Tuple[Hashable, ...]
    timepoints: Tuple[Hashable, ...]
    metabolite_index: Int[np.ndarray, "observations"]
    time_index: Int[np.ndarray, "observations"]
    replicates: np.ndarray
    values: Float[np.ndarray, "observations"]
    frame: DataFrame

    @property
    def num_metabolites(self) -> int:
        return len(self.metabolites)

    @property
    def num_timepoints(self) -> int:
        return len(self.timepoints)


@beartype
def standardize_observations(
    frame: DataFrame,
    metabolite: str = "metabolite",
    condition: str = "condition",
    raw: str = "raw",
) -> DataFrame:
    """
    Add `log` and `standardized` columns to a table of raw measurements.

    Standardization is done per (metabolite, condition) across all times and
    replicates, using the sample standard deviation. A series without
    variance standardizes to 0.

    Args:
        frame (DataFrame): table with metabolite, condition and raw columns.
        metabolite (str): metabolite column.
        condition (str): condition column.
        raw (str): raw measurement column, strictly positive.

    Returns:
        DataFrame: copy of `frame` with `log` and `standardized` columns.

    Examples:
        >>> import pandas as pd
        >>> frame = pd.DataFrame({
        ...     "metabolite": ["m1"] * 4,
        ...     "condition": ["A"] * 4,
        ...     "raw": [1.0, 2.0, 4.0, 8.0],
        ... })
        >>> standardize_observations(frame)["standardized"].round(3).tolist()
        [-1.162, -0.387, 0.387, 1.162]
    """
    missing = [c for c in (metabolite, condition, raw) if c not in frame]
    if missing:
        raise ObservationValidationError(f"Missing columns: {missing}")

    raw_values = pd.to_numeric(frame[raw], errors="coerce")
    if raw_values.isna().any() or not np.isfinite(raw_values).all():
        raise ObservationValidationError(
            f"Column {raw!r} contains non-numeric or non-finite values"
        )
    if (raw_values <= 0).any():
        raise ObservationValidationError(
            f"Column {raw!r} must be strictly positive to be log-transformed"
        )

    standardized = frame.copy()
    standardized["log"] = np.log(raw_values.to_numpy(dtype=float))

    grouped = standardized.groupby([metabolite, condition], sort=False)["log"]
    centered = standardized["log"] - grouped.transform("mean")
    scale = grouped.transform(lambda x: x.std(ddof=1))

    constant = ~(scale > 0)
    if constant.any():
        series = (
            standardized.loc[constant, [metabolite, condition]]
            .drop_duplicates()
            .itertuples(index=False, name=None)
        )
        logger.warning(
            f"Series without variance standardized to 0: {list(series)}"
        )
    standardized["standardized"] = np.where(
        constant, 0.0, centered / scale.where(~constant, 1.0)
    )

    return standardized


@beartype
def timepoint_order(
    times: pd.Series,
    timepoints: Optional[Sequence[Hashable]] = None,
) -> Tuple[Hashable, ...]:
    """
    Ordered timepoint identifiers of a time column.

    The order is, by precedence, the explicit `timepoints`, the category
    order of an ordered categorical column, or the sorted labels of a
    numeric or datetime column. Other labels, such as strings, have no
    unambiguous order and are rejected.

    Args:
        times (pd.Series): time column of an observation table.
        timepoints (Sequence[Hashable]): explicit order, must name exactly
            the labels in `times`.

    Returns:
        Tuple[Hashable, ...]: timepoint identifiers, first to last.

    Raises:
        ObservationValidationError: if `timepoints` does not match the
            labels, or the labels cannot be ordered.

    Examples:
        >>> import pandas as pd
        >>> times = pd.Series(["t2", "t10", "t1"])
        >>> timepoint_order(times, ["t1", "t2", "t10"])
        ('t1', 't2', 't10')
        >>> timepoint_order(pd.Series([3, 1, 2]))
        (1, 2, 3)
    """
    labels_present = times.drop_duplicates().tolist()
    present = set(labels_present)

    if timepoints is not None:
        order = tuple(timepoints)
        allowed = set(order)
        unknown = [t for t in labels_present if t not in allowed]
        if unknown:
            raise ObservationValidationError(
                f"Timepoints {unknown} are not in the configured timepoints "
                f"{list(order)}"
            )
        unobserved = [t for t in order if t not in present]
        if unobserved:
            raise ObservationValidationError(
                f"Configured timepoints {unobserved} have no observations"
            )
        return order

    if isinstance(times.dtype, pd.CategoricalDtype):
        if times.cat.ordered:
            return tuple(t for t in times.cat.categories if t in present)
        labels = times.cat.categories
    else:
        labels = times

    if is_numeric_dtype(labels) or is_datetime64_any_dtype(labels):
        return tuple(sorted(present))

    raise ObservationValidationError(
        f"Timepoint labels {sorted(present, key=str)[:5]} have no unambiguous "
        f"order; set DynamicsModelConfig.timepoints or use an ordered "
        f"categorical time column"
    )


@beartype
def validate_observations(
    frame: DataFrame,
    config: Optional[DynamicsModelConfig] = None,
) -> DataFrame:
    """
    Validate an observation table against a model configuration.

    The table must contain every configured column, hold finite numeric
    values in the modelled measurement column, have unique
    (metabolite, condition, time, replicate) keys, have an unambiguous
    timepoint order (see `timepoint_order`), and be rectangular: every
    (metabolite, condition) series is measured at the same set of
    timepoints, across all conditions.

    Args:
        frame (DataFrame): observation table.
        config (DynamicsModelConfig): column names, defaults if None.

    Returns:
        DataFrame: validated copy sorted by condition, metabolite, time and
            replicate.

    Raises:
        ObservationValidationError: if any check fails.
    """
    if config is None:
        config = DynamicsModelConfig()

    columns = config.columns
    missing = [c for c in columns.values() if c not in frame.columns]
    if missing:
        raise ObservationValidationError(
            f"Configured columns not found in observations: {missing}; "
            f"available columns: {list(frame.columns)}"
        )
    if frame.empty:
        raise ObservationValidationError("Observation table is empty")

    key_columns = [
        config.condition,
        config.metabolite,
        config.time,
        config.replicate,
    ]
    if frame[key_columns].isna().any().any():
        raise ObservationValidationError(
            f"Identifier columns {key_columns} contain missing values"
        )

    values = pd.to_numeric(frame[config.scaled_measurement], errors="coerce")
    if values.isna().any() or not np.isfinite(values).all():
        bad_rows = frame.loc[
            values.isna() | ~np.isfinite(values.fillna(0.0)), key_columns
        ]
        raise ObservationValidationError(
            f"Column {config.scaled_measurement!r} contains non-numeric or "
            f"non-finite values in {len(bad_rows)} rows, first: "
            f"{bad_rows.head(3).to_dict(orient='records')}"
        )

    duplicated = frame.duplicated(subset=key_columns, keep=False)
    if duplicated.any():
        raise ObservationValidationError(
            f"Duplicated observation keys: "
            f"{frame.loc[duplicated, key_columns].head(3).to_dict(orient='records')}"
        )

    timepoints = timepoint_order(frame[config.time], config.timepoints)
    expected_times = set(timepoints)
    times_per_series = frame.groupby(
        [config.condition, config.metabolite], sort=True, observed=True
    )[config.time].agg(lambda x: set(x.tolist()))
    for (condition, metabolite), times in times_per_series.items():
        if times != expected_times:
            missing = [t for t in timepoints if t not in times]
            raise ObservationValidationError(
                f"Metabolite {metabolite!r} in condition {condition!r} is "
                f"missing timepoints {missing}; every condition must share "
                f"the timepoints {list(timepoints)}"
            )

    validated = frame.copy()
    validated[config.scaled_measurement] = values.astype(float)
    validated = validated.sort_values(key_columns, kind="stable")
    return validated.reset_index(drop=True)


@beartype
def group_observations(
    frame: DataFrame,
    config: Optional[DynamicsModelConfig] = None,
) -> Dict[Hashable, GroupObservations]:
    """
    Split an observation table into one model input per condition.

    Every condition shares the timepoint order of `timepoint_order`, which
    defines the consecutive pairs of the difference estimates and the
    layout of the dynamic profiles.

    Args:
        frame (DataFrame): observation table.
        config (DynamicsModelConfig): column names, defaults if None.

    Returns:
        Dict[Hashable, GroupObservations]: model inputs ordered by condition.
    """
    if config is None:
        config = DynamicsModelConfig()

    validated = validate_observations(frame, config)
    timepoints = timepoint_order(validated[config.time], config.timepoints)

    groups = {}
    for condition, group in validated.groupby(
        config.condition, sort=True, observed=True
    ):
        group = group.reset_index(drop=True)
        metabolites = tuple(sorted(group[config.metabolite].unique()))

        metabolite_index = (
            pd.Categorical(group[config.metabolite], categories=metabolites)
            .codes.astype(np.int32)
        )
        time_index = (
            pd.Categorical(group[config.time], categories=timepoints)
            .codes.astype(np.int32)
        )

        groups[condition] = GroupObservations(
            condition=condition,
            metabolites=metabolites,
            timepoints=timepoints,
            metabolite_index=metabolite_index,
            time_index=time_index,
            replicates=group[config.replicate].to_numpy(),
            values=group[config.scaled_measurement].to_numpy(dtype=float),
            frame=group,
        )
        logger.debug(
            f"Condition {condition!r}: {len(metabolites)} metabolites, "
            f"{len(timepoints)} timepoints, {len(group)} observations"
        )

    return groups
