"""
Dataset -> engineered feature rows.

Feature layout (fixed order):
    hour_of_day      hour / 23
    day_of_week      (ISO weekday - 1) / 6
    latitude         raw, NaN when blank (filled later by the Imputer)
    longitude        raw, NaN when blank
    risk_score       dataset value clamped to [0, 1], or derived
    category_<name>  one-hot over the tracked categories (sorted, max 64, overflow -> "other")

Training reads the CSV twice: an analysis pass (category counts, time range,
presence of a numeric risk column) and a build pass that writes rows into a
:class:`~riskml.common.buffer.RowBuffer`. Evaluation reuses the categories
persisted in the model artifact so the one-hot columns line up exactly.

Derived values when the dataset lacks them:
    risk  = clamp(0.6 * category_score + 0.4 * recency_score, 0, 1)
    label = 1 when risk >= the 75th-percentile bin of a 101-bin risk histogram
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

import pandas as pd

from riskml.common.buffer import DEFAULT_MEMORY_ROWS, BufferedRow, LabelPolicy, RowBuffer
from riskml.common.io import iter_csv_records, read_csv_header
from riskml.common.preprocessing import (
    assert_required_columns,
    map_column_indexes,
    normalize_header_row,
    resolve_column_map,
)
from riskml.common.utils import clamp, get_logger, to_float_or_none


BASE_FEATURES = ["hour_of_day", "day_of_week", "latitude", "longitude", "risk_score"]
MAX_TRACKED_CATEGORIES = 64
CATEGORY_OVERFLOW_KEY = "__other__"
HISTOGRAM_BINS = 101
NO_DERIVED_POSITIVES = 1.1

_YEAR_MONTH = re.compile(r"^\d{4}-\d{2}$")

logger = get_logger("riskml.common.features")


# ---------------------------------------------------------------------
# Small parsers
# ---------------------------------------------------------------------

def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Lenient timestamp parse: datetimes, epoch seconds, ISO-ish strings, and
    ``YYYY-MM`` (read as the last second of that month). ``None`` if unparseable.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        if not math.isfinite(value):
            return None
        return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)
    if not isinstance(value, str):
        return None
    s = value.strip()
    if not s:
        return None
    if _YEAR_MONTH.match(s):
        start = pd.Timestamp(s + "-01")
        end = start + pd.offsets.MonthEnd(0)
        return end.replace(hour=23, minute=59, second=59).to_pydatetime()
    if re.fullmatch(r"-?\d+(\.\d+)?", s) and len(s) >= 9:
        return parse_timestamp(float(s))
    ts = pd.to_datetime(s, errors="coerce")
    if ts is None or pd.isna(ts):
        return None
    if ts.tzinfo is not None:
        ts = ts.tz_convert("UTC").tz_localize(None)
    return ts.to_pydatetime()


def format_category_feature_name(category: str) -> str:
    if category == CATEGORY_OVERFLOW_KEY:
        return "other"
    name = re.sub(r"[^a-z0-9]+", "_", category.lower())
    name = re.sub(r"_+", "_", name).strip("_")
    return name or "unknown"


def build_feature_names(categories: Sequence[str]) -> List[str]:
    return list(BASE_FEATURES) + [f"category_{format_category_feature_name(c)}" for c in categories]


def _cell(record: Sequence[Optional[str]], index: Optional[int]) -> Optional[str]:
    if index is None or index >= len(record):
        return None
    return record[index]


def _text(value: Optional[str]) -> str:
    return value.strip() if isinstance(value, str) else ""


# ---------------------------------------------------------------------
# Analysis pass
# ---------------------------------------------------------------------

@dataclass
class DatasetAnalysis:
    category_counts: Dict[str, int] = field(default_factory=dict)
    overflowed: bool = False
    min_time: Optional[float] = None
    max_time: Optional[float] = None
    has_numeric_risk: bool = False
    rows: int = 0

    @property
    def min_count(self) -> int:
        return min(self.category_counts.values()) if self.category_counts else 0

    @property
    def max_count(self) -> int:
        return max(self.category_counts.values()) if self.category_counts else 0

    @property
    def time_span(self) -> Optional[float]:
        if self.min_time is None or self.max_time is None:
            return None
        return max(self.max_time - self.min_time, 0.0)

    def categories(self) -> List[str]:
        """Sorted tracked categories, with the overflow bucket last."""
        names = sorted(c for c in self.category_counts if c != CATEGORY_OVERFLOW_KEY)
        if self.overflowed:
            names.append(CATEGORY_OVERFLOW_KEY)
        return names


def _open_indexes(path: str | Path, column_map: Mapping[str, str]) -> Dict[str, Optional[int]]:
    header = normalize_header_row(read_csv_header(path))
    indexes = map_column_indexes(header, column_map)
    assert_required_columns(indexes)
    return indexes


def analyse_dataset(path: str | Path, column_map: Mapping[str, str]) -> DatasetAnalysis:
    indexes = _open_indexes(path, column_map)
    analysis = DatasetAnalysis()
    for record in iter_csv_records(path):
        ts = parse_timestamp(_cell(record, indexes["timestamp"]))
        if ts is None:
            continue
        category = _text(_cell(record, indexes["category"]))
        if category:
            counts = analysis.category_counts
            if category in counts:
                counts[category] += 1
            elif len(counts) - (CATEGORY_OVERFLOW_KEY in counts) < MAX_TRACKED_CATEGORIES:
                counts[category] = 1
            else:
                analysis.overflowed = True
                counts[CATEGORY_OVERFLOW_KEY] = counts.get(CATEGORY_OVERFLOW_KEY, 0) + 1
        seconds = ts.replace(tzinfo=timezone.utc).timestamp()
        analysis.min_time = seconds if analysis.min_time is None else min(analysis.min_time, seconds)
        analysis.max_time = seconds if analysis.max_time is None else max(analysis.max_time, seconds)
        if not analysis.has_numeric_risk:
            analysis.has_numeric_risk = to_float_or_none(_cell(record, indexes["risk_score"])) is not None
        analysis.rows += 1
    return analysis


def derive_risk_score(category: str, ts: datetime, analysis: DatasetAnalysis) -> float:
    """Blend of category frequency (0.6) and recency within the dataset's time range (0.4)."""
    counts = analysis.category_counts
    if category:
        count = counts.get(category, counts.get(CATEGORY_OVERFLOW_KEY, 0))
    else:
        count = analysis.min_count
    lo, hi = analysis.min_count, analysis.max_count
    if hi == lo:
        category_score = 0.5 if hi > 0 else 0.0
    else:
        category_score = (count - lo) / max(hi - lo, 1)

    recency_score = 0.5
    span = analysis.time_span
    if span and analysis.min_time is not None:
        seconds = ts.replace(tzinfo=timezone.utc).timestamp()
        recency_score = clamp((seconds - analysis.min_time) / span, 0.0, 1.0)

    return clamp(0.6 * category_score + 0.4 * recency_score, 0.0, 1.0)


def threshold_from_histogram(histogram: Sequence[int], total: int) -> float:
    """
    Risk value at the 75th percentile bin; ``NO_DERIVED_POSITIVES`` when the
    histogram has at most one populated bin.
    """
    active = sum(1 for c in histogram if c > 0)
    if active <= 1 or total == 0:
        return NO_DERIVED_POSITIVES
    target_rank = int(math.floor(0.75 * max(total - 1, 0))) + 1
    cumulative = 0
    for b, c in enumerate(histogram):
        cumulative += c
        if cumulative >= target_rank:
            return b / 100.0
    return 0.0


# ---------------------------------------------------------------------
# Build pass
# ---------------------------------------------------------------------

@dataclass
class PreparedDataset:
    buffer: RowBuffer
    feature_names: List[str]
    categories: List[str]
    category_overflowed: bool = False
    skipped_rows: int = 0

    def close(self) -> None:
        self.buffer.close()

    def __enter__(self) -> "PreparedDataset":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def _build_buffer(
    path: str | Path,
    column_map: Mapping[str, str],
    analysis: DatasetAnalysis,
    categories: Sequence[str],
    *,
    memory_rows: int,
    include_timestamps: bool,
) -> tuple[RowBuffer, int]:
    indexes = _open_indexes(path, column_map)
    category_index = {c: i for i, c in enumerate(categories)}
    has_overflow = CATEGORY_OVERFLOW_KEY in category_index

    buffer = RowBuffer(memory_rows)
    histogram = [0] * HISTOGRAM_BINS
    max_risk = 0.0
    raw_positive = 0
    needs_derived = False
    skipped = 0

    try:
        for record in iter_csv_records(path):
            ts = parse_timestamp(_cell(record, indexes["timestamp"]))
            if ts is None:
                skipped += 1
                continue

            coords = []
            for role in ("latitude", "longitude"):
                raw = _cell(record, indexes[role])
                value = to_float_or_none(raw)
                if value is None and _text(raw):
                    break
                coords.append(float("nan") if value is None else value)
            if len(coords) != 2:
                skipped += 1
                continue

            raw_label_text = _cell(record, indexes["label"])
            raw_label_value = to_float_or_none(raw_label_text)
            if raw_label_value is None and _text(raw_label_text):
                skipped += 1
                continue
            raw_label = int(round(raw_label_value)) if raw_label_value is not None else None

            category = _text(_cell(record, indexes["category"]))
            encoded = category
            if encoded and encoded not in category_index and has_overflow:
                encoded = CATEGORY_OVERFLOW_KEY

            existing_risk = to_float_or_none(_cell(record, indexes["risk_score"]))
            if analysis.has_numeric_risk and existing_risk is not None:
                risk = clamp(existing_risk, 0.0, 1.0)
            else:
                risk = derive_risk_score(encoded or category, ts, analysis)

            max_risk = max(max_risk, risk)
            histogram[int(clamp(math.floor(risk * 100), 0, 100))] += 1
            if raw_label is None:
                needs_derived = True
            elif raw_label > 0:
                raw_positive += 1

            one_hot = [0.0] * len(categories)
            if encoded in category_index:
                one_hot[category_index[encoded]] = 1.0

            features = [ts.hour / 23.0, (ts.isoweekday() - 1) / 6.0, coords[0], coords[1], risk] + one_hot
            buffer.append(
                BufferedRow(
                    features=features,
                    risk=risk,
                    raw_label=raw_label,
                    timestamp=ts.isoformat() if include_timestamps else None,
                )
            )
    except BaseException:
        buffer.close()
        raise

    total = buffer.count()
    if total == 0:
        return buffer, skipped

    threshold = threshold_from_histogram(histogram, total) if needs_derived else NO_DERIVED_POSITIVES
    positives = raw_positive
    if needs_derived and threshold <= 1.0:
        positives += sum(
            1 for r in buffer.iter_buffered()
            if r.raw_label is None and r.risk >= threshold and r.risk > 0.0
        )
    buffer.set_label_policy(
        LabelPolicy(
            threshold=threshold,
            max_risk=max_risk,
            force_max_risk_positive=positives == 0 and max_risk > 0.0,
        )
    )
    return buffer, skipped


def prepare_training_data(
    path: str | Path,
    schema: Optional[Mapping[str, Any]] = None,
    *,
    memory_rows: int = DEFAULT_MEMORY_ROWS,
) -> PreparedDataset:
    """Analyse + buffer a training CSV. Categories come from the data itself."""
    column_map = resolve_column_map(schema)
    analysis = analyse_dataset(path, column_map)
    categories = analysis.categories()
    buffer, skipped = _build_buffer(
        path, column_map, analysis, categories, memory_rows=memory_rows, include_timestamps=True
    )
    logger.info(
        "Prepared training data from %s | rows=%d skipped=%d categories=%d overflowed=%s",
        path, buffer.count(), skipped, len(categories), analysis.overflowed,
    )
    return PreparedDataset(
        buffer=buffer,
        feature_names=build_feature_names(categories),
        categories=categories,
        category_overflowed=analysis.overflowed,
        skipped_rows=skipped,
    )


def prepare_evaluation_data(
    path: str | Path,
    schema: Optional[Mapping[str, Any]],
    categories: Sequence[str],
    *,
    memory_rows: int = DEFAULT_MEMORY_ROWS,
) -> PreparedDataset:
    """Buffer an evaluation CSV, one-hot encoding against the artifact's ``categories``."""
    column_map = resolve_column_map(schema)
    analysis = analyse_dataset(path, column_map)
    buffer, skipped = _build_buffer(
        path, column_map, analysis, list(categories), memory_rows=memory_rows, include_timestamps=False
    )
    logger.info("Prepared evaluation data from %s | rows=%d skipped=%d", path, buffer.count(), skipped)
    return PreparedDataset(
        buffer=buffer,
        feature_names=build_feature_names(categories),
        categories=list(categories),
        category_overflowed=CATEGORY_OVERFLOW_KEY in categories,
        skipped_rows=skipped,
    )
