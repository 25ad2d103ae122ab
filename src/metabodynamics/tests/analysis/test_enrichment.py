"""Tests for `metabodynamics.analysis.enrichment` module."""

import numpy as np
import pandas as pd
import pytest
from beartype.roar import BeartypeCallHintParamViolation

from metabodynamics.analysis.enrichment import (
    EnrichmentStatus,
    ORA_hypergeometric,
    log_ratio_interval,
    ora_hypergeometric,
)


def _metabolite(i):
    return f"m{i:03d}"


@pytest.fixture
def background():
    rows = []
    for i in range(1, 101):
        if i <= 10:
            middle, lower = "F", "F1" if i <= 5 else "F2"
        elif i <= 60:
            middle, lower = "G", "L"
        else:
            middle, lower = "H", "L"
        rows.append(
            {
                "metabolite": _metabolite(i),
                "middle_hierarchy": middle,
                "lower_hierarchy": lower,
            }
        )
    return pd.DataFrame(rows)


@pytest.fixture
def clusters(cluster_factory):
    enriched = [_metabolite(i) for i in range(1, 9)] + [
        _metabolite(i) for i in range(61, 73)
    ]
    balanced = [_metabolite(i) for i in (9, 10)] + [
        _metabolite(i) for i in range(11, 29)
    ]
    return (
        cluster_factory("A", 1, enriched),
        cluster_factory("A", 2, balanced),
    )


@pytest.fixture
def annotations(background, clusters):
    members = {m for cluster in clusters for m in cluster.members}
    return background[background["metabolite"].isin(members)].reset_index(
        drop=True
    )


def _row(table, label, category):
    return table[(table["label"] == label) & (table["category"] == category)].iloc[0]


def test_over_represented_category(background, annotations, clusters):
    result = ora_hypergeometric(
        background, annotations, clusters, "middle_hierarchy"
    )
    row = _row(result.table, "A_1", "F")
    assert row["observed"] == 8
    assert row["expected"] == pytest.approx(2.0)
    assert row["cluster_size"] == 20
    assert row["category_size"] == 10
    assert row["population_size"] == 100
    assert row["lower"] > 0
    assert row["status"] == EnrichmentStatus.OVER.value


def test_observed_equal_to_expected_is_not_significant(
    background, annotations, clusters
):
    result = ora_hypergeometric(
        background, annotations, clusters, "middle_hierarchy"
    )
    row = _row(result.table, "A_2", "F")
    assert row["observed"] == 2
    assert row["expected"] == pytest.approx(2.0)
    assert row["lower"] < 0 < row["upper"]
    assert row["status"] == EnrichmentStatus.NOT_SIGNIFICANT.value


def test_absent_category_is_under_represented(background, annotations, clusters):
    result = ora_hypergeometric(
        background, annotations, clusters, "middle_hierarchy"
    )
    row = _row(result.table, "A_1", "G")
    assert row["observed"] == 0
    assert row["expected"] == pytest.approx(10.0)
    assert row["upper"] < 0
    assert row["status"] == EnrichmentStatus.UNDER.value


def test_plot_table(background, annotations, clusters):
    result = ORA_hypergeometric(
        background, annotations, clusters, "middle_hierarchy"
    )
    assert list(result.plot_table.index) == ["F", "G", "H"]
    assert list(result.plot_table.columns) == ["A_1", "A_2"]
    assert result.plot_table.loc["F", "A_1"] == pytest.approx(
        np.log(8.01 / 2.01)
    )


def test_hierarchy_levels_are_independent(background, annotations, clusters):
    result = ora_hypergeometric(
        background, annotations, clusters, "lower_hierarchy"
    )
    assert set(result.table["category"]) == {"F1", "F2", "L"}
    assert (result.table["hierarchy"] == "lower_hierarchy").all()
    row = _row(result.table, "A_1", "F1")
    assert row["category_size"] == 5
    assert row["observed"] == 5


def test_degenerate_inputs_are_excluded(
    background, annotations, clusters, cluster_factory
):
    extra = pd.DataFrame(
        {
            "metabolite": [_metabolite(1)],
            "middle_hierarchy": ["Z"],
            "lower_hierarchy": ["Z1"],
        }
    )
    empty = cluster_factory("A", 3, [], profiles=np.zeros((0, 4)))
    result = ora_hypergeometric(
        background,
        pd.concat([annotations, extra], ignore_index=True),
        clusters + (empty,),
        "middle_hierarchy",
    )
    assert "Z" not in set(result.table["category"])
    assert "A_3" not in set(result.table["label"])
    assert len(result.table) == 2 * 3


def test_cluster_larger_than_background(background, annotations, cluster_factory):
    huge = cluster_factory("A", 1, [f"x{i}" for i in range(101)])
    with pytest.raises(ValueError, match="more than"):
        ora_hypergeometric(background, annotations, (huge,), "middle_hierarchy")


def test_missing_columns(background, annotations, clusters):
    with pytest.raises(ValueError, match="misses columns"):
        ora_hypergeometric(
            background.drop(columns=["lower_hierarchy"]),
            annotations,
            clusters,
            "lower_hierarchy",
        )


def test_unknown_hierarchy_level(background, annotations, clusters):
    with pytest.raises(BeartypeCallHintParamViolation):
        ora_hypergeometric(background, annotations, clusters, "upper_hierarchy")


def test_quantile_interval_bounds():
    lower, upper = log_ratio_interval(8, 100, 10, 20)
    assert lower > 0
    assert upper > lower
    assert log_ratio_interval(2, 100, 10, 20)[0] < 0


def test_resampled_interval_agrees_with_quantiles():
    quantile = log_ratio_interval(8, 100, 10, 20)
    resampled = log_ratio_interval(
        8,
        100,
        10,
        20,
        method="resample",
        num_draws=20000,
        rng=np.random.default_rng(0),
    )
    np.testing.assert_allclose(resampled, quantile, atol=0.3)


def test_resample_method_is_reproducible(background, annotations, clusters):
    first = ora_hypergeometric(
        background, annotations, clusters, "middle_hierarchy", method="resample"
    )
    second = ora_hypergeometric(
        background, annotations, clusters, "middle_hierarchy", method="resample"
    )
    pd.testing.assert_frame_equal(first.table, second.table)


def test_absent_category_with_small_expected_count(background, cluster_factory):
    # P(X = 0) is about 0.1 under Hypergeometric(100, 10, 20)
    members = [_metabolite(i) for i in range(11, 31)]
    cluster = cluster_factory("A", 1, members)
    annotations = background[background["metabolite"].isin(members)]
    annotations = pd.concat(
        [
            annotations,
            pd.DataFrame(
                {
                    "metabolite": [_metabolite(1)],
                    "middle_hierarchy": ["F"],
                    "lower_hierarchy": ["F1"],
                }
            ),
        ],
        ignore_index=True,
    )
    result = ora_hypergeometric(
        background, annotations, (cluster,), "middle_hierarchy"
    )
    row = _row(result.table, "A_1", "F")
    assert row["observed"] == 0
    assert row["expected"] == pytest.approx(2.0)
    assert row["upper"] < 0
    assert row["status"] == EnrichmentStatus.UNDER.value


@pytest.mark.parametrize("method", ["quantile", "resample"])
def test_absent_category_interval_is_below_zero(method):
    lower, upper = log_ratio_interval(
        0, 100, 10, 20, method=method, rng=np.random.default_rng(1)
    )
    assert lower == pytest.approx(np.log(0.01 / 2.01))
    assert upper == pytest.approx(lower)
    assert upper < 0


def test_interval_contains_observed_log_ratio():
    lower, upper = log_ratio_interval(5, 100, 10, 20)
    assert lower < np.log(5.01 / 2.01) < upper


def test_interval_rejects_empty_cluster():
    with pytest.raises(ValueError, match="cluster_size"):
        log_ratio_interval(0, 100, 10, 0)
