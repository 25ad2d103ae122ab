"""Tests for `metabodynamics.observations` module."""

import numpy as np
import pandas as pd
import pytest

from metabodynamics.config import DynamicsModelConfig
from metabodynamics.observations import (
    ObservationValidationError,
    group_observations,
    standardize_observations,
    timepoint_order,
    validate_observations,
)


def test_standardize_per_metabolite_and_condition(small_observations):
    grouped = small_observations.groupby(["metabolite", "condition"])[
        "standardized"
    ]
    np.testing.assert_allclose(grouped.mean(), 0.0, atol=1e-12)
    np.testing.assert_allclose(grouped.std(ddof=1), 1.0)
    np.testing.assert_allclose(
        small_observations["log"], np.log(small_observations["raw"])
    )


def test_standardize_constant_series():
    frame = pd.DataFrame(
        {
            "metabolite": ["m1"] * 3 + ["m2"] * 3,
            "condition": ["A"] * 6,
            "raw": [2.0, 2.0, 2.0, 1.0, 2.0, 3.0],
        }
    )
    standardized = standardize_observations(frame)
    assert standardized["standardized"].iloc[:3].tolist() == [0.0, 0.0, 0.0]
    assert standardized["standardized"].iloc[3:].abs().sum() > 0


def test_standardize_rejects_non_positive():
    frame = pd.DataFrame({"metabolite": ["m1"], "condition": ["A"], "raw": [0.0]})
    with pytest.raises(ObservationValidationError, match="positive"):
        standardize_observations(frame)


def test_validate_returns_sorted_copy(small_observations):
    shuffled = small_observations.sample(frac=1.0, random_state=1)
    validated = validate_observations(shuffled)
    assert validated is not shuffled
    assert validated[["condition", "metabolite", "time", "replicate"]].equals(
        small_observations.sort_values(
            ["condition", "metabolite", "time", "replicate"]
        )[["condition", "metabolite", "time", "replicate"]].reset_index(
            drop=True
        )
    )


def test_validate_missing_column(small_observations):
    with pytest.raises(ObservationValidationError, match="day"):
        validate_observations(
            small_observations, DynamicsModelConfig(time="day")
        )


def test_validate_empty_table(small_observations):
    with pytest.raises(ObservationValidationError, match="empty"):
        validate_observations(small_observations.iloc[:0])


def test_validate_non_numeric_values(small_observations):
    frame = small_observations.copy()
    frame["standardized"] = frame["standardized"].astype(object)
    frame.loc[3, "standardized"] = "high"
    with pytest.raises(ObservationValidationError, match="non-numeric"):
        validate_observations(frame)


def test_validate_non_finite_values(small_observations):
    frame = small_observations.copy()
    frame.loc[0, "standardized"] = np.inf
    with pytest.raises(ObservationValidationError, match="non-finite"):
        validate_observations(frame)


def test_validate_duplicated_keys(small_observations):
    frame = pd.concat([small_observations, small_observations.iloc[[0]]])
    with pytest.raises(ObservationValidationError, match="Duplicated"):
        validate_observations(frame)


def test_validate_missing_timepoint(small_observations):
    frame = small_observations.loc[
        ~(
            (small_observations["metabolite"] == "m1")
            & (small_observations["condition"] == "A")
            & (small_observations["time"] == 2)
        )
    ]
    with pytest.raises(ObservationValidationError, match="missing timepoints"):
        validate_observations(frame)


def test_group_observations(small_observations):
    groups = group_observations(small_observations)
    assert list(groups) == ["A", "B"]

    group = groups["A"]
    assert group.metabolites == ("m1", "m2", "m3", "m4")
    assert group.timepoints == (1, 2, 3, 4)
    assert group.num_metabolites == 4
    assert group.num_timepoints == 4
    assert len(group.values) == 4 * 4 * 3

    frame = group.frame
    np.testing.assert_array_equal(
        np.asarray(group.metabolites)[group.metabolite_index],
        frame["metabolite"].to_numpy(),
    )
    np.testing.assert_array_equal(
        np.asarray(group.timepoints)[group.time_index],
        frame["time"].to_numpy(),
    )
    np.testing.assert_array_equal(group.values, frame["standardized"])
    np.testing.assert_array_equal(group.replicates, frame["replicate"])


def test_group_observations_custom_columns(small_observations):
    frame = small_observations.rename(
        columns={"time": "day", "standardized": "z"}
    )
    groups = group_observations(
        frame, DynamicsModelConfig(time="day", scaled_measurement="z")
    )
    assert groups["B"].timepoints == (1, 2, 3, 4)


def _relabel_times(frame, labels):
    """Replace integer times 1..T by the labels in `labels`."""
    frame = frame.copy()
    frame["time"] = frame["time"].map(dict(enumerate(labels, start=1)))
    return frame


@pytest.fixture
def ten_timepoint_observations():
    rows = [
        {
            "metabolite": metabolite,
            "condition": condition,
            "time": f"t{time}",
            "replicate": replicate,
            "standardized": float(time + replicate),
        }
        for condition in ("A", "B")
        for metabolite in ("m1", "m2")
        for time in range(1, 11)
        for replicate in (1, 2)
    ]
    return pd.DataFrame(rows)


def test_string_timepoints_follow_configured_order(ten_timepoint_observations):
    order = tuple(f"t{time}" for time in range(1, 11))
    groups = group_observations(
        ten_timepoint_observations, DynamicsModelConfig(timepoints=list(order))
    )
    assert groups["A"].timepoints == order
    assert groups["B"].timepoints == order

    group = groups["A"]
    np.testing.assert_array_equal(
        np.asarray(group.timepoints)[group.time_index],
        group.frame["time"].to_numpy(),
    )


def test_string_timepoints_follow_ordered_categorical(ten_timepoint_observations):
    order = [f"t{time}" for time in range(1, 11)]
    frame = ten_timepoint_observations.copy()
    frame["time"] = pd.Categorical(frame["time"], categories=order, ordered=True)
    groups = group_observations(frame)
    assert groups["A"].timepoints == tuple(order)


def test_string_timepoints_without_order_are_rejected(ten_timepoint_observations):
    with pytest.raises(ObservationValidationError, match="unambiguous order"):
        group_observations(ten_timepoint_observations)


def test_configured_timepoints_must_match_labels(small_observations):
    with pytest.raises(ObservationValidationError, match="not in the configured"):
        validate_observations(
            small_observations, DynamicsModelConfig(timepoints=[1, 2, 3])
        )
    with pytest.raises(ObservationValidationError, match="no observations"):
        validate_observations(
            small_observations, DynamicsModelConfig(timepoints=[1, 2, 3, 4, 5])
        )


def test_configured_timepoints_reorder_numeric_labels(small_observations):
    groups = group_observations(
        small_observations, DynamicsModelConfig(timepoints=[4, 3, 2, 1])
    )
    assert groups["A"].timepoints == (4, 3, 2, 1)


def test_timepoint_order_of_datetimes(small_observations):
    frame = _relabel_times(
        small_observations,
        pd.to_datetime(["2024-01-03", "2024-01-01", "2024-01-04", "2024-01-02"]),
    )
    order = timepoint_order(frame["time"])
    expected = pd.to_datetime(
        ["2024-01-01", "2024-01-02", "2024-01-03", "2024-01-04"]
    )
    assert order == tuple(expected)


def test_validate_timepoints_differ_between_conditions(small_observations):
    frame = small_observations.loc[
        ~(
            (small_observations["condition"] == "B")
            & (small_observations["time"] == 4)
        )
    ]
    with pytest.raises(
        ObservationValidationError, match=r"'B' is missing timepoints \[4\]"
    ):
        validate_observations(frame)
