import math

import pytest

from riskml.common.exceptions import InvalidConfiguration
from riskml.common.preprocessing import (
    FeatureStatistics,
    Imputer,
    Normalizer,
    PreprocessingStats,
    assert_required_columns,
    map_column_indexes,
    normalize_header_row,
    resolve_column_map,
    standardize,
)

NAN = float("nan")


# ---------------------------------------------------------------------
# Header / column mapping
# ---------------------------------------------------------------------

def test_normalize_header_row_lowercases_strips_and_dedupes() -> None:
    header = normalize_header_row(["\ufeffOffence Type", "Lat/Long", "Offence-Type", "  ", 7])
    assert header == ["offence_type", "lat_long", "offence_type_2", "", ""]


def test_resolve_column_map_accepts_risk_alias_and_defaults() -> None:
    column_map = resolve_column_map({"category": "Offence Type", "risk": "Danger Score"})
    assert column_map["category"] == "offence_type"
    assert column_map["risk_score"] == "danger_score"
    assert column_map["timestamp"] == "timestamp"


def test_missing_required_column_raises_invalid_configuration() -> None:
    indexes = map_column_indexes(["timestamp", "latitude", "longitude"], resolve_column_map(None))
    with pytest.raises(InvalidConfiguration, match="category"):
        assert_required_columns(indexes)


# ---------------------------------------------------------------------
# Imputer
# ---------------------------------------------------------------------

SAMPLES = [[1.0, NAN], [3.0, 4.0], [NAN, 4.0], [3.0, NAN]]


@pytest.mark.parametrize("strategy", ["mean", "median", "most_frequent", "constant", "average", "mode"])
def test_imputer_leaves_no_missing_values(strategy: str) -> None:
    out = Imputer(strategy).fit_transform(SAMPLES)
    assert len(out) == len(SAMPLES)
    assert all(math.isfinite(v) for row in out for v in row)


def test_imputer_statistics_per_strategy() -> None:
    assert Imputer("mean").fit(SAMPLES) == pytest.approx([7.0 / 3.0, 4.0])
    assert Imputer("median").fit(SAMPLES) == pytest.approx([3.0, 4.0])
    assert Imputer("most_frequent").fit(SAMPLES) == pytest.approx([3.0, 4.0])
    assert Imputer("constant", fill_value=-1.0).fit(SAMPLES) == pytest.approx([-1.0, -1.0])


def test_imputer_all_missing_column_uses_fill_value() -> None:
    imputer = Imputer("mean", fill_value=0.5)
    out = imputer.fit_transform([[1.0, NAN], [2.0, NAN]])
    assert [row[1] for row in out] == [0.5, 0.5]


def test_imputer_sentinel_missing_value() -> None:
    imputer = Imputer("mean", missing_value=-999)
    out = imputer.fit_transform([[1.0], [-999.0], [3.0]])
    assert out == [[1.0], [2.0], [3.0]]


def test_imputer_config_round_trip_reuses_statistics() -> None:
    imputer = Imputer("median")
    imputer.fit(SAMPLES)
    restored = Imputer.from_config(imputer.to_config())
    assert restored.statistics == imputer.statistics
    assert restored.transform([[NAN, NAN]]) == [[3.0, 4.0]]


def test_unknown_imputation_strategy_raises() -> None:
    with pytest.raises(InvalidConfiguration):
        Imputer("interpolate")


def test_imputer_transform_before_fit_raises() -> None:
    with pytest.raises(RuntimeError):
        Imputer("mean").transform([[1.0]])


# ---------------------------------------------------------------------
# Standardization + row norm
# ---------------------------------------------------------------------

def test_feature_statistics_population_std_and_zero_variance() -> None:
    stats = FeatureStatistics.fit([[1.0, 5.0], [3.0, 5.0]])
    assert stats.means == pytest.approx([2.0, 5.0])
    assert stats.std_devs == pytest.approx([1.0, 1.0])
    assert standardize([[3.0, 5.0]], stats) == [[1.0, 0.0]]


def test_feature_statistics_match_numpy_population_std() -> None:
    samples = [[2.0, 1.0], [4.0, 1.0], [4.0, 1.0], [4.0, 1.0], [5.0, 1.0], [5.0, 1.0], [7.0, 1.0], [9.0, 1.0]]
    stats = FeatureStatistics.fit(samples)
    assert stats.means == pytest.approx([5.0, 1.0])
    assert stats.std_devs == pytest.approx([2.0, 1.0])
    assert all(isinstance(v, float) for v in stats.means + stats.std_devs)
    assert FeatureStatistics.fit([]) == FeatureStatistics(means=[], std_devs=[])


def test_standardize_is_repeatable_with_same_stats() -> None:
    samples = [[1.0, 2.0], [3.0, 6.0], [5.0, 7.0]]
    stats = FeatureStatistics.fit(samples)
    assert standardize(samples, stats) == standardize(samples, stats)


def test_normalizer_empty_input() -> None:
    assert Normalizer("l2").transform([]) == []


@pytest.mark.parametrize(
    "norm, row, expected",
    [
        ("l2", [3.0, 4.0], [0.6, 0.8]),
        ("l1", [1.0, -3.0], [0.25, -0.75]),
        ("max", [2.0, -4.0], [0.5, -1.0]),
        ("inf", [2.0, -4.0], [0.5, -1.0]),
        ("std", [1.0, 2.0, 3.0], [-1.2247449, 0.0, 1.2247449]),
        ("l2", [0.0, 0.0], [0.0, 0.0]),
    ],
)
def test_normalizer_row_norms(norm, row, expected) -> None:
    assert Normalizer(norm).transform([row])[0] == pytest.approx(expected)


def test_unknown_normalization_raises() -> None:
    with pytest.raises(InvalidConfiguration):
        Normalizer("l3")


def test_preprocessing_chain_is_fit_once_and_reused() -> None:
    train = [[1.0, NAN], [3.0, 2.0], [5.0, 4.0]]
    prep = PreprocessingStats.fit(train, imputation_strategy="mean", normalization="l2")
    assert prep.n_features == 2
    first = prep.transform([[NAN, 10.0]])
    second = prep.transform([[NAN, 10.0]])
    assert first == second
    assert math.sqrt(sum(v * v for v in first[0])) == pytest.approx(1.0)
    sidecar = prep.to_sidecar()
    assert sidecar["normalization"] == {"type": "l2"}
    assert sidecar["imputer"]["statistics"] == pytest.approx([3.0, 3.0])
