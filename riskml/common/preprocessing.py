"""Shared preprocessing helpers for training and evaluation.

Covers:
    * Header normalization and schema-mapping to canonical column roles.
    * ``Imputer``: fills missing feature values from statistics fit once on training rows.
    * ``FeatureStatistics`` / ``standardize``: per-feature mean/std standardization.
    * ``Normalizer``: row-wise L1 / L2 / max / std norm applied after standardization.

Training, grid search and evaluation all go through :func:`standardize`, so a
single epsilon (``STD_EPSILON``) governs zero-variance features everywhere.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

import numpy as np

from riskml.common.exceptions import InvalidConfiguration


STD_EPSILON = 1e-12

# Canonical role -> default column name
CANONICAL_COLUMNS: Dict[str, str] = {
    "timestamp": "timestamp",
    "latitude": "latitude",
    "longitude": "longitude",
    "category": "category",
    "risk_score": "risk_score",
    "label": "label",
}
REQUIRED_COLUMNS = ("timestamp", "latitude", "longitude", "category")


# ---------------------------------------------------------------------
# Header / column mapping
# ---------------------------------------------------------------------

def normalize_column_name(column: str) -> str:
    """
    'Offence Type' -> 'offence_type', '\\ufeffLat/Long' -> 'lat_long'.
    """
    column = column.lstrip("\ufeff").strip()
    if not column:
        return ""
    column = column.lower().replace("-", " ").replace("/", " ")
    column = re.sub(r"[^a-z0-9]+", "_", column)
    column = re.sub(r"_+", "_", column)
    return column.strip("_")


def normalize_header_row(row: Sequence[Any]) -> List[str]:
    """Normalize every header cell and de-duplicate with ``_2``, ``_3`` suffixes."""
    normalized: List[str] = []
    used: set = set()
    for value in row:
        if not isinstance(value, str):
            normalized.append("")
            continue
        column = normalize_column_name(value) or value.strip()
        base = column
        suffix = 1
        while column and column in used:
            suffix += 1
            column = f"{base}_{suffix}"
        if column:
            used.add(column)
        normalized.append(column)
    return normalized


def resolve_column_map(schema: Optional[Mapping[str, Any]]) -> Dict[str, str]:
    """
    Build role -> normalized source column from a caller schema mapping.

    ``risk`` is accepted as an alias for the ``risk_score`` role. Unmapped or
    blank roles fall back to the canonical name.
    """
    schema = dict(schema or {})
    if "risk_score" not in schema and "risk" in schema:
        schema["risk_score"] = schema["risk"]
    out: Dict[str, str] = {}
    for role, default in CANONICAL_COLUMNS.items():
        value = schema.get(role)
        column = normalize_column_name(value) if isinstance(value, str) else ""
        out[role] = column or normalize_column_name(default)
    return out


def map_column_indexes(header: Sequence[str], column_map: Mapping[str, str]) -> Dict[str, Optional[int]]:
    """Role -> index in the normalized header (``None`` when absent)."""
    positions = {c: i for i, c in enumerate(header) if c}
    return {role: positions.get(column) for role, column in column_map.items()}


def assert_required_columns(indexes: Mapping[str, Optional[int]]) -> None:
    for role in REQUIRED_COLUMNS:
        if indexes.get(role) is None:
            raise InvalidConfiguration(f'Dataset is missing required column "{role}".')


# ---------------------------------------------------------------------
# Imputer
# ---------------------------------------------------------------------

IMPUTER_STRATEGIES = ("mean", "median", "most_frequent", "constant")
_IMPUTER_ALIASES = {
    "average": "mean",
    "most frequent": "most_frequent",
    "most-frequent": "most_frequent",
    "mode": "most_frequent",
}


def resolve_imputation_strategy(value: Any, default: Optional[str] = "mean") -> str:
    if value is None or (isinstance(value, str) and not value.strip()):
        if default is None:
            raise InvalidConfiguration("Imputation strategy is required.")
        return default
    key = str(value).strip().lower()
    key = _IMPUTER_ALIASES.get(key, key)
    if key not in IMPUTER_STRATEGIES:
        raise InvalidConfiguration(f'Unknown imputation strategy "{value}".')
    return key


def _is_nan(value: Any) -> bool:
    return isinstance(value, float) and math.isnan(value)


class Imputer:
    """
    Column-wise imputation with statistics fit once and then reused verbatim.

    ``missing_value`` defaults to NaN, in which case any non-finite value counts
    as missing. With a concrete sentinel, values equal to it are missing too.
    """

    def __init__(
        self,
        strategy: str = "mean",
        *,
        missing_value: Any = float("nan"),
        fill_value: float = 0.0,
        statistics: Optional[Sequence[float]] = None,
    ):
        self.strategy = resolve_imputation_strategy(strategy, default=None)
        self.missing_value = missing_value
        self.fill_value = float(fill_value)
        self.statistics: Optional[List[float]] = (
            [float(v) for v in statistics] if statistics is not None else None
        )

    def _missing_mask(self, arr: np.ndarray) -> np.ndarray:
        mask = ~np.isfinite(arr)
        if self.missing_value is not None and not _is_nan(self.missing_value):
            mask |= arr == float(self.missing_value)
        return mask

    def fit(self, samples: Sequence[Sequence[float]]) -> List[float]:
        if len(samples) == 0:
            self.statistics = []
            return []
        arr = np.asarray(samples, dtype=float)
        mask = self._missing_mask(arr)
        stats: List[float] = []
        for j in range(arr.shape[1]):
            observed = arr[~mask[:, j], j]
            if self.strategy == "constant" or observed.size == 0:
                stats.append(self.fill_value)
            elif self.strategy == "mean":
                stats.append(float(observed.mean()))
            elif self.strategy == "median":
                stats.append(float(np.median(observed)))
            else:
                values, counts = np.unique(observed, return_counts=True)
                stats.append(float(values[int(np.argmax(counts))]))
        self.statistics = stats
        return list(stats)

    def transform(self, samples: Sequence[Sequence[float]]) -> List[List[float]]:
        if self.statistics is None:
            raise RuntimeError("Imputer must be fit (or restored) before transform.")
        if len(samples) == 0:
            return []
        arr = np.array(samples, dtype=float)
        mask = self._missing_mask(arr)
        stats = self.statistics or [self.fill_value] * arr.shape[1]
        fill = np.broadcast_to(np.asarray(stats, dtype=float), arr.shape)
        arr[mask] = fill[mask]
        return arr.tolist()

    def fit_transform(self, samples: Sequence[Sequence[float]]) -> List[List[float]]:
        self.fit(samples)
        return self.transform(samples)

    def to_config(self) -> Dict[str, Any]:
        missing = None if _is_nan(self.missing_value) else self.missing_value
        return {
            "strategy": self.strategy,
            "statistics": list(self.statistics or []),
            "missing_value": missing,
            "fill_value": self.fill_value,
        }

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "Imputer":
        missing = config.get("missing_value")
        return cls(
            config.get("strategy") or "mean",
            missing_value=float("nan") if missing is None else missing,
            fill_value=float(config.get("fill_value", 0.0) or 0.0),
            statistics=config.get("statistics") or [],
        )


# ---------------------------------------------------------------------
# Standardization
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class FeatureStatistics:
    means: List[float]
    std_devs: List[float]

    @classmethod
    def fit(cls, samples: Sequence[Sequence[float]]) -> "FeatureStatistics":
        """Population mean/std per column, zero-variance std stored as 1.0."""
        if len(samples) == 0:
            return cls(means=[], std_devs=[])
        arr = np.asarray(samples, dtype=float)
        means = arr.mean(axis=0)
        stds = arr.std(axis=0)
        stds = np.where(stds > STD_EPSILON, stds, 1.0)
        return cls(means=means.tolist(), std_devs=stds.tolist())


def standardize(samples: Sequence[Sequence[float]], stats: FeatureStatistics) -> List[List[float]]:
    """``(x - mean) / std`` with the ``STD_EPSILON`` floor."""
    if len(samples) == 0:
        return []
    arr = np.asarray(samples, dtype=float)
    means = np.asarray(stats.means, dtype=float)
    stds = np.asarray(stats.std_devs, dtype=float)
    stds = np.where(stds > STD_EPSILON, stds, 1.0)
    return ((arr - means) / stds).tolist()


# ---------------------------------------------------------------------
# Row-wise normalizer
# ---------------------------------------------------------------------

NORMS = ("l1", "l2", "max", "std")
_NORM_ALIASES = {"inf": "max", "linf": "max", "z-score": "std", "zscore": "std", "z_score": "std"}


def resolve_normalization(value: Any, default: Optional[str] = "l2") -> str:
    if isinstance(value, Mapping):
        value = value.get("type")
    if value is None or (isinstance(value, str) and not value.strip()):
        if default is None:
            raise InvalidConfiguration("Normalization type is required.")
        return default
    key = str(value).strip().lower()
    key = _NORM_ALIASES.get(key, key)
    if key not in NORMS:
        raise InvalidConfiguration(f'Unknown normalization "{value}".')
    return key


class Normalizer:
    """Row-wise vector norm; recomputed per call, so it holds no fit state."""

    def __init__(self, norm: str = "l2"):
        self.norm = resolve_normalization(norm, default=None)

    def transform(self, samples: Iterable[Sequence[float]]) -> List[List[float]]:
        out: List[List[float]] = []
        for row in samples:
            v = np.asarray(row, dtype=float)
            if v.size == 0:
                out.append([])
                continue
            if self.norm == "std":
                std = float(v.std())
                v = (v - v.mean()) / std if std > STD_EPSILON else v - v.mean()
            else:
                if self.norm == "l1":
                    scale = float(np.abs(v).sum())
                elif self.norm == "l2":
                    scale = float(np.sqrt((v * v).sum()))
                else:
                    scale = float(np.abs(v).max())
                if scale > 0.0:
                    v = v / scale
            out.append(v.tolist())
        return out

    def to_config(self) -> Dict[str, str]:
        return {"type": self.norm}


# ---------------------------------------------------------------------
# Fitted chain: impute -> standardize -> row norm
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class PreprocessingStats:
    """Everything needed to transform new rows exactly as the training rows were."""

    imputer: Imputer
    stats: FeatureStatistics
    normalizer: Normalizer

    @classmethod
    def fit(
        cls,
        samples: Sequence[Sequence[float]],
        *,
        imputation_strategy: str = "mean",
        normalization: str = "l2",
    ) -> "PreprocessingStats":
        imputer = Imputer(imputation_strategy)
        imputed = imputer.fit_transform(samples)
        return cls(imputer=imputer, stats=FeatureStatistics.fit(imputed), normalizer=Normalizer(normalization))

    @property
    def n_features(self) -> int:
        return len(self.stats.means)

    def transform(self, samples: Sequence[Sequence[float]]) -> List[List[float]]:
        if len(samples) == 0:
            return []
        return self.normalizer.transform(standardize(self.imputer.transform(samples), self.stats))

    def to_sidecar(self) -> Dict[str, Any]:
        return {
            "feature_means": list(self.stats.means),
            "feature_std_devs": list(self.stats.std_devs),
            "imputer": self.imputer.to_config(),
            "normalization": self.normalizer.to_config(),
        }
