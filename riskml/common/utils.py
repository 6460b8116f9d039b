"""Miscellaneous utilities shared by training and inference code.

Highlights:
- :func:`get_logger` - stdout logger used across the project.
- :func:`make_run_id` / :func:`make_version` - time-based identifiers for runs and artifacts.
- :func:`best_effort` - wrap a side effect so failures are logged instead of raised.
- :func:`round_metrics` - recursive 4-decimal rounding applied at output boundaries.
"""

from __future__ import annotations

import functools
import json
import logging
import math
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional


# ---------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------

def get_logger(name: str, level: str | int = "INFO") -> logging.Logger:
    """
    Create a simple stdout logger.
    """
    logger = logging.getLogger(name)
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)
    logger.setLevel(level)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("[%(asctime)s] %(levelname)s %(name)s: %(message)s"))
        logger.addHandler(handler)
    logger.propagate = False
    return logger


# ---------------------------------------------------------------------
# Run / time helpers
# ---------------------------------------------------------------------

def make_run_id() -> str:
    """
    Time-based run ID for organizing runs, e.g. 20251104T174530Z.
    """
    return datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def make_version() -> str:
    """Artifact version segment, e.g. 20251104174530123456 (sortable, microsecond resolution)."""
    return datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S%f")


def utcnow_iso() -> str:
    """UTC timestamp in ISO format (for metadata fields)."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


# ---------------------------------------------------------------------
# Best-effort side effects
# ---------------------------------------------------------------------

def best_effort(what: str, logger_name: str = "riskml.best_effort") -> Callable:
    """
    Decorator: run the wrapped call, log and swallow any exception.

    Returns ``None`` when the call fails. Only for side effects that must never
    abort the primary operation (progress cache writes, broadcasts, plots).
    """

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except Exception as e:
                get_logger(logger_name).warning("%s failed: %s", what, e)
                return None

        return wrapper

    return decorator


# ---------------------------------------------------------------------
# Numeric output helpers
# ---------------------------------------------------------------------

def round_metrics(value: Any, digits: int = 4) -> Any:
    """Round every float inside nested dicts/lists to ``digits`` decimals."""
    if isinstance(value, bool):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            return 0.0
        return round(value, digits)
    if isinstance(value, dict):
        return {k: round_metrics(v, digits) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [round_metrics(v, digits) for v in value]
    return value


def clamp(value: float, lower: float, upper: float) -> float:
    return max(lower, min(upper, value))


def dict_to_sorted_json(d: Dict[str, Any]) -> str:
    """
    Deterministic JSON string (keys sorted). Used to dedupe grid combinations.
    """
    return json.dumps(d, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def to_float_or_none(value: Any) -> Optional[float]:
    """Strict numeric parse: finite numbers and numeric strings, otherwise ``None``."""
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        out = float(value)
    elif isinstance(value, str):
        s = value.strip()
        if not s:
            return None
        try:
            out = float(s)
        except ValueError:
            return None
    else:
        return None
    return out if math.isfinite(out) else None
