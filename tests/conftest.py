"""Pytest configuration: make the project root importable and provide small CSV datasets."""

import os
import sys
from pathlib import Path

import pytest

# Project root = parent directory of this tests/ folder
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)


def write_csv(path: Path, header, rows) -> Path:
    lines = [",".join(header)]
    lines += [",".join("" if v is None else str(v) for v in row) for row in rows]
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


@pytest.fixture
def csv_writer():
    return write_csv


@pytest.fixture
def balanced_csv(tmp_path: Path) -> Path:
    """10 rows: 5 burglary (label 0, low risk) and 5 assault (label 1, high risk)."""
    rows = []
    for i in range(5):
        rows.append([f"2024-03-0{i + 1} 10:00:00", 51.5, -0.12, "burglary", round(0.10 + 0.02 * i, 2), 0])
        rows.append([f"2024-03-0{i + 1} 10:00:00", 51.5, -0.12, "assault", round(0.80 + 0.02 * i, 2), 1])
    return write_csv(
        tmp_path / "incidents.csv",
        ["timestamp", "latitude", "longitude", "category", "risk_score", "label"],
        rows,
    )


@pytest.fixture
def unlabelled_csv(tmp_path: Path) -> Path:
    """No label / risk columns; both have to be derived."""
    rows = [
        ["2024-01-01T08:00:00", 40.0, -73.0, "theft"],
        ["2024-01-05T09:00:00", 40.1, -73.1, "theft"],
        ["2024-01-10T10:00:00", 40.2, -73.2, "theft"],
        ["2024-01-15T11:00:00", 40.3, -73.3, "theft"],
        ["2024-01-20T12:00:00", 40.4, -73.4, "robbery"],
        ["2024-01-25T13:00:00", 40.5, -73.5, "robbery"],
        ["2024-01-30T14:00:00", 40.6, -73.6, "vandalism"],
        ["2024-02-04T15:00:00", 40.7, -73.7, "theft"],
    ]
    return write_csv(tmp_path / "unlabelled.csv", ["Timestamp", "Latitude", "Longitude", "Category"], rows)
