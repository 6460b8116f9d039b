import math
import os
from datetime import datetime
from pathlib import Path

import pytest

from riskml.common.buffer import BufferedRow, LabelPolicy, RowBuffer
from riskml.common.exceptions import InvalidConfiguration
from riskml.common.features import (
    NO_DERIVED_POSITIVES,
    build_feature_names,
    parse_timestamp,
    prepare_evaluation_data,
    prepare_training_data,
    threshold_from_histogram,
)


# ---------------------------------------------------------------------
# RowBuffer
# ---------------------------------------------------------------------

def test_row_buffer_spills_past_memory_limit_and_cleans_up(tmp_path: Path) -> None:
    buf = RowBuffer(2, spill_dir=str(tmp_path))
    for i in range(5):
        buf.append(BufferedRow(features=[float(i)], risk=i / 10.0, raw_label=i % 2))

    assert buf.count() == 5
    assert buf.spilled
    assert os.path.exists(buf.spill_path)

    rows = list(buf)
    assert [r.features for r in rows] == [[0.0], [1.0], [2.0], [3.0], [4.0]]
    assert [r.label for r in rows] == [0, 1, 0, 1, 0]
    # iteration is restartable
    assert len(list(buf)) == 5

    path = buf.spill_path
    buf.close()
    buf.close()
    assert not os.path.exists(path)
    with pytest.raises(RuntimeError):
        list(buf)


def test_row_buffer_context_manager_removes_spill_file(tmp_path: Path) -> None:
    with RowBuffer(0, spill_dir=str(tmp_path)) as buf:
        buf.append(BufferedRow(features=[1.0], risk=0.5, timestamp="2024-01-01T10:00:00"))
        path = buf.spill_path
        (row,) = list(buf)
        assert row.timestamp == datetime(2024, 1, 1, 10, 0, 0)
    assert not os.path.exists(path)


def test_label_policy_threshold_and_raw_labels() -> None:
    policy = LabelPolicy(threshold=0.3)
    assert policy.resolve(2, 0.0) == 1
    assert policy.resolve(0, 0.9) == 0
    assert policy.resolve(None, 0.5) == 1
    assert policy.resolve(None, 0.2) == 0
    assert LabelPolicy(threshold=NO_DERIVED_POSITIVES).resolve(None, 1.0) == 0


def test_force_max_risk_positive_marks_only_first_max_row() -> None:
    buf = RowBuffer(10)
    for risk in (0.2, 0.7, 0.7):
        buf.append(BufferedRow(features=[risk], risk=risk))
    buf.set_label_policy(LabelPolicy(threshold=NO_DERIVED_POSITIVES, max_risk=0.7, force_max_risk_positive=True))
    assert [r.label for r in buf] == [0, 1, 0]


# ---------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------

def test_parse_timestamp_formats() -> None:
    assert parse_timestamp("2024-02") == datetime(2024, 2, 29, 23, 59, 59)
    assert parse_timestamp("2024-03-04 10:15:00") == datetime(2024, 3, 4, 10, 15, 0)
    assert parse_timestamp("1700000000") == datetime(2023, 11, 14, 22, 13, 20)
    assert parse_timestamp("not a date") is None
    assert parse_timestamp("") is None


def test_threshold_from_histogram() -> None:
    histogram = [0] * 101
    for b in (10, 20, 30, 40):
        histogram[b] = 1
    assert threshold_from_histogram(histogram, 4) == pytest.approx(0.3)

    single = [0] * 101
    single[50] = 6
    assert threshold_from_histogram(single, 6) == NO_DERIVED_POSITIVES


# ---------------------------------------------------------------------
# Dataset preparation
# ---------------------------------------------------------------------

def test_prepare_training_data_builds_features(balanced_csv: Path) -> None:
    with prepare_training_data(balanced_csv) as prepared:
        assert prepared.categories == ["assault", "burglary"]
        assert prepared.feature_names == build_feature_names(["assault", "burglary"])
        assert len(prepared.feature_names) == 7
        samples, labels = prepared.buffer.materialize()

    assert len(samples) == 10
    assert sorted(labels) == [0] * 5 + [1] * 5
    first = samples[0]
    assert first[0] == pytest.approx(10 / 23.0)
    assert first[4] == pytest.approx(0.10)
    assert first[5:] == [0.0, 1.0]


def test_prepare_training_data_derives_risk_and_labels(unlabelled_csv: Path) -> None:
    with prepare_training_data(unlabelled_csv) as prepared:
        assert prepared.categories == ["robbery", "theft", "vandalism"]
        samples, labels = prepared.buffer.materialize()

    assert len(samples) == 8
    assert all(0.0 <= row[4] <= 1.0 for row in samples)
    assert 0 < sum(labels) < len(labels)


def test_prepare_training_data_skips_unusable_rows(tmp_path: Path, csv_writer) -> None:
    path = csv_writer(
        tmp_path / "messy.csv",
        ["timestamp", "latitude", "longitude", "category", "risk_score", "label"],
        [
            ["2024-01-01 10:00:00", 1.0, 2.0, "a", 0.1, 0],
            ["not a date", 1.0, 2.0, "a", 0.1, 0],
            ["2024-01-02 10:00:00", "north", 2.0, "a", 0.1, 0],
            ["2024-01-03 10:00:00", None, 2.0, "b", 0.9, 1],
            ["2024-01-04 10:00:00", 1.0, 2.0, "b", 0.9, "maybe"],
        ],
    )
    with prepare_training_data(path) as prepared:
        samples, labels = prepared.buffer.materialize()
        assert prepared.skipped_rows == 3

    assert labels == [0, 1]
    assert math.isnan(samples[1][2])


def test_prepare_training_data_drops_overlong_lines(tmp_path: Path) -> None:
    path = tmp_path / "ragged.csv"
    path.write_text(
        "timestamp,latitude,longitude,category,risk_score,label\n"
        "2024-01-01 10:00:00,1.0,2.0,a,0.1,0\n"
        "2024-01-02 10:00:00,1.0,2.0,a,0.1,0,extra\n"
        "2024-01-03 10:00:00,1.0,2.0,b,0.9,1\n",
        encoding="utf-8",
    )
    with prepare_training_data(path) as prepared:
        samples, labels = prepared.buffer.materialize()
        assert prepared.categories == ["a", "b"]

    assert labels == [0, 1]
    assert len(samples) == 2


def test_prepare_training_data_tolerates_undecodable_bytes(tmp_path: Path) -> None:
    path = tmp_path / "latin1.csv"
    path.write_bytes(
        b"timestamp,latitude,longitude,category,risk_score,label\n"
        b"2024-01-01 10:00:00,1.0,2.0,caf\xff,0.1,0\n"
        b"2024-01-03 10:00:00,1.0,2.0,b,0.9,1\n"
    )
    with prepare_training_data(path) as prepared:
        samples, labels = prepared.buffer.materialize()
        assert prepared.skipped_rows == 0
        assert any("\ufffd" in c for c in prepared.categories)

    assert labels == [0, 1]


def test_prepare_training_data_with_schema_mapping(tmp_path: Path, csv_writer) -> None:
    path = csv_writer(
        tmp_path / "renamed.csv",
        ["Reported Date", "Lat", "Long", "Offence Type", "Danger"],
        [["2024-01-01 10:00:00", 1.0, 2.0, "a", 0.2], ["2024-01-02 11:00:00", 1.5, 2.5, "b", 0.8]],
    )
    schema = {"timestamp": "Reported Date", "latitude": "Lat", "longitude": "Long", "category": "Offence Type", "risk": "Danger"}
    with prepare_training_data(path, schema) as prepared:
        samples, _ = prepared.buffer.materialize()
    assert [row[4] for row in samples] == pytest.approx([0.2, 0.8])


def test_prepare_training_data_missing_column_raises(tmp_path: Path, csv_writer) -> None:
    path = csv_writer(tmp_path / "bad.csv", ["timestamp", "latitude", "longitude"], [["2024-01-01", 1, 2]])
    with pytest.raises(InvalidConfiguration):
        prepare_training_data(path)


def test_prepare_evaluation_data_uses_given_categories(balanced_csv: Path) -> None:
    with prepare_evaluation_data(balanced_csv, None, ["burglary"]) as prepared:
        assert len(prepared.feature_names) == 6
        samples, _ = prepared.buffer.materialize()
    assert all(len(row) == 6 for row in samples)
