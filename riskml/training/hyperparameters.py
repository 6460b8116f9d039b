"""
Hyperparameter resolution and grid-search grid construction.

``resolve_hyperparameters`` coerces every known key to its type, clamps it to a
documented range and rounds floats, so identical inputs always echo back
identical values. ``build_search_grid`` expands the per-model default grid,
merged with any user ``search_grid`` / ``grid`` overrides, into a list of
combinations.
"""

from __future__ import annotations

import itertools
import json
from typing import Any, Dict, List, Mapping

from riskml.common.preprocessing import resolve_imputation_strategy, resolve_normalization
from riskml.common.utils import dict_to_sorted_json, to_float_or_none
from riskml.training.classifiers import ModelType


KERNELS = ("linear", "polynomial", "rbf", "sigmoid")
DEFAULT_RANDOM_STATE = 42
_FLOAT_DIGITS = 6


# -----------------------
# Coercion helpers
# -----------------------

def _float(value: Any, default: float, lo: float, hi: float) -> float:
    x = to_float_or_none(value)
    x = default if x is None else x
    return round(max(lo, min(hi, x)), _FLOAT_DIGITS)


def _int(value: Any, default: int, lo: int, hi: int) -> int:
    x = to_float_or_none(value)
    x = default if x is None else int(x)
    return int(max(lo, min(hi, x)))


def _bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        v = value.strip().lower()
        if v in ("1", "true", "yes", "on"):
            return True
        if v in ("0", "false", "no", "off"):
            return False
    return default


def _hidden_layers(value: Any) -> List[int]:
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            value = None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        value = [value]
    if isinstance(value, (list, tuple)) and value:
        layers = [to_float_or_none(v) for v in value]
        if all(v is not None for v in layers):
            return [int(max(1, min(512, v))) for v in layers]
    return [16]


def resolve_kernel_options(kernel: str, options: Mapping[str, Any] | None) -> Dict[str, Any]:
    options = options or {}
    if kernel == "polynomial":
        return {
            "degree": _int(options.get("degree"), 3, 1, 10),
            "gamma": _float(options.get("gamma"), 1.0, 1e-4, 10.0),
            "coef0": _float(options.get("coef0"), 0.0, -10.0, 10.0),
        }
    if kernel == "sigmoid":
        return {
            "gamma": _float(options.get("gamma"), 0.5, 1e-4, 10.0),
            "coef0": _float(options.get("coef0"), 0.0, -10.0, 10.0),
        }
    if kernel == "rbf":
        return {"gamma": _float(options.get("gamma"), 0.5, 1e-4, 10.0)}
    return {}


def _resolve_grid(grid: Any) -> Dict[str, List[Any]]:
    if not isinstance(grid, Mapping):
        return {}
    out: Dict[str, List[Any]] = {}
    for key, values in grid.items():
        if not isinstance(key, str):
            continue
        if not isinstance(values, (list, tuple)):
            values = [values]
        values = [v for v in values if v is not None]
        if values:
            out[key] = list(values)
    return out


# -----------------------
# Public API
# -----------------------

def resolve_hyperparameters(raw: Mapping[str, Any] | None) -> Dict[str, Any]:
    """
    Typed, clamped hyperparameters. Raises ``InvalidConfiguration`` for an
    unknown model_type, normalization or imputation strategy.
    """
    raw = dict(raw or {})
    model_type = ModelType.parse(raw.get("model_type"))
    iterations = _int(raw.get("iterations"), 600, 100, 5000)

    kernel = str(raw.get("kernel") or "rbf").strip().lower()
    if kernel not in KERNELS:
        kernel = "rbf"

    return {
        "model_type": model_type.value,
        "learning_rate": _float(raw.get("learning_rate"), 0.3, 1e-4, 1.0),
        "iterations": iterations,
        "validation_split": _float(raw.get("validation_split"), 0.2, 0.1, 0.5),
        "l2_penalty": _float(raw.get("l2_penalty"), 0.01, 0.0, 10.0),
        "log_interval": _int(raw.get("log_interval"), 200, 1, iterations),
        "normalization": resolve_normalization(raw.get("normalization"), default="l2"),
        "imputation_strategy": resolve_imputation_strategy(raw.get("imputation_strategy"), default="mean"),
        "cost": _float(raw.get("cost"), 1.0, 1e-4, 1000.0),
        "tolerance": _float(raw.get("tolerance"), 1e-3, 1e-6, 0.1),
        "cache_size": _float(raw.get("cache_size"), 100.0, 1.0, 4096.0),
        "shrinking": _bool(raw.get("shrinking"), True),
        "probability_estimates": _bool(raw.get("probability_estimates"), True),
        "kernel": kernel,
        "kernel_options": resolve_kernel_options(kernel, raw.get("kernel_options")),
        "k": _int(raw.get("k"), 5, 1, 21),
        "max_depth": _int(raw.get("max_depth"), 5, 2, 20),
        "min_samples_split": _int(raw.get("min_samples_split"), 2, 2, 20),
        "hidden_layers": _hidden_layers(raw.get("hidden_layers")),
        "cv_folds": _int(raw.get("cv_folds"), 3, 2, 10),
        "cv_validation_split": _float(raw.get("cv_validation_split"), 0.25, 0.1, 0.5),
        "random_state": _int(raw.get("random_state"), DEFAULT_RANDOM_STATE, 0, 2**31 - 1),
        "search_grid": _resolve_grid(raw.get("grid", raw.get("search_grid"))),
    }


def _dedupe(values: List[Any]) -> List[Any]:
    seen = set()
    out = []
    for v in values:
        key = json.dumps(v, sort_keys=True)
        if key not in seen:
            seen.add(key)
            out.append(v)
    return out


def _normalize_grid_value(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        return [int(v) for v in value]
    if isinstance(value, (bool, int)):
        return value
    x = to_float_or_none(value)
    if x is None:
        return value
    if isinstance(value, str) and x.is_integer() and "." not in value:
        return int(x)
    return x


def _merge_numeric(key: str, defaults: List[float], user: Mapping[str, List[Any]], lo: float, hi: float) -> List[float]:
    values = [_float(v, lo, lo, hi) for v in defaults]
    values += [_float(v, lo, lo, hi) for v in user.get(key, []) if to_float_or_none(v) is not None]
    return _dedupe(values)


def _svc_grid(hp: Mapping[str, Any], user: Mapping[str, List[Any]]) -> List[Dict[str, Any]]:
    costs = _merge_numeric("cost", [0.5, 1.0, hp["cost"]], user, 1e-4, 1000.0)
    tols = _merge_numeric("tolerance", [1e-4, hp["tolerance"], 0.01], user, 1e-6, 0.1)
    caches = _merge_numeric("cache_size", [50.0, hp["cache_size"]], user, 1.0, 4096.0)
    shrinking = _dedupe([hp["shrinking"]] + [_bool(v, True) for v in user.get("shrinking", [])])
    probability = _dedupe(
        [hp["probability_estimates"]] + [_bool(v, True) for v in user.get("probability_estimates", [])]
    )

    default_kernel = hp["kernel"]
    kernels = [default_kernel, "rbf", "linear"]
    kernels += [str(v).lower() for v in user.get("kernel", []) if isinstance(v, str)]
    options_by_kernel: Dict[str, List[Dict[str, Any]]] = {}
    for option in user.get("kernel_options", []):
        if not isinstance(option, Mapping):
            continue
        k = str(option.get("kernel") or option.get("type") or default_kernel).lower()
        rest = {kk: vv for kk, vv in option.items() if kk not in ("kernel", "type")}
        options_by_kernel.setdefault(k, []).append(rest)
        kernels.append(k)
    kernels = [k for k in _dedupe(kernels) if k in KERNELS]

    kernel_combos: List[Dict[str, Any]] = []
    seen = set()
    for k in kernels:
        option_sets = options_by_kernel.get(k) or [hp["kernel_options"] if k == default_kernel else {}]
        for opts in option_sets:
            resolved = resolve_kernel_options(k, opts)
            key = k + ":" + dict_to_sorted_json(resolved)
            if key in seen:
                continue
            seen.add(key)
            kernel_combos.append({"kernel": k, "kernel_options": resolved})

    combos = []
    for c, t, cs, sh, pr, kc in itertools.product(costs, tols, caches, shrinking, probability, kernel_combos):
        combos.append(
            {"cost": c, "tolerance": t, "cache_size": cs, "shrinking": sh, "probability_estimates": pr, **kc}
        )
    return combos


def build_search_grid(hp: Mapping[str, Any]) -> List[Dict[str, Any]]:
    """Cartesian product of the model's grid; at least one combination."""
    model_type = ModelType.parse(hp["model_type"])
    user = hp.get("search_grid") or {}

    if model_type is ModelType.SVC:
        return _svc_grid(hp, user)

    if model_type is ModelType.KNN:
        grid: Dict[str, List[Any]] = {"k": [3, 5, max(1, int(hp["k"]))]}
    elif model_type is ModelType.NAIVE_BAYES:
        grid = {}
    elif model_type is ModelType.DECISION_TREE:
        grid = {
            "max_depth": [3, max(3, int(hp["max_depth"]))],
            "min_samples_split": [2, max(2, int(hp["min_samples_split"]))],
        }
    elif model_type is ModelType.MLP:
        grid = {
            "hidden_layers": [list(hp["hidden_layers"]), [8], [16, 8]],
            "learning_rate": [0.05, float(hp["learning_rate"])],
            "iterations": [300, int(hp["iterations"])],
        }
    else:
        grid = {
            "learning_rate": [0.1, float(hp["learning_rate"])],
            "iterations": [400, int(hp["iterations"])],
            "l2_penalty": [0.0, float(hp["l2_penalty"])],
        }

    for key, values in user.items():
        normalized = [_normalize_grid_value(v) for v in values]
        if normalized:
            grid[key] = normalized
    grid = {k: _dedupe(v) for k, v in grid.items()}

    if not grid:
        return [{"iterations": int(hp["iterations"])}]

    keys = list(grid)
    return [dict(zip(keys, combo)) for combo in itertools.product(*(grid[k] for k in keys))]


def apply_combination(hp: Mapping[str, Any], combination: Mapping[str, Any]) -> Dict[str, Any]:
    """Overlay a grid combination and re-resolve so every value stays in range."""
    merged = dict(hp)
    merged.update(combination)
    merged["search_grid"] = hp.get("search_grid") or {}
    return resolve_hyperparameters(merged)
