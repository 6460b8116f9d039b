"""
Grid search over a small hyperparameter grid, scored by cross-validated accuracy.

Each combination is evaluated on ``cv_folds`` random train/validation splits
(``cv_validation_split`` held out). Within a fold the whole preprocessing
chain (imputer -> standardization -> row norm) is refit on the fold's training
part only, so no validation statistics leak into the fit. The best combination
maximizes mean accuracy, ties broken by mean macro-F1.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from riskml.common.metrics import ClassificationReportGenerator
from riskml.common.preprocessing import PreprocessingStats
from riskml.common.utils import get_logger
from riskml.training.classifiers import ModelType, fit_classifier
from riskml.training.hyperparameters import apply_combination


MAX_REPORTED_EVALUATIONS = 10

logger = get_logger("riskml.training.grid_search")


def random_split(
    n: int, validation_fraction: float, rng: np.random.Generator
) -> Tuple[List[int], List[int]]:
    """
    Shuffled (train_idx, val_idx). The validation size is round(n * fraction)
    clamped to [0, n - 1]; when it is 0 the validation indices equal the training indices.
    """
    order = rng.permutation(n).tolist()
    n_val = int(round(n * validation_fraction))
    n_val = max(0, min(n_val, n - 1))
    if n_val == 0:
        return order, list(order)
    return order[n_val:], order[:n_val]


def _score_fold(
    model_type: ModelType,
    params: Mapping[str, Any],
    samples: Sequence[Sequence[float]],
    labels: Sequence[int],
    train_idx: List[int],
    val_idx: List[int],
) -> Tuple[float, float]:
    x_tr = [samples[i] for i in train_idx]
    y_tr = [labels[i] for i in train_idx]
    x_va = [samples[i] for i in val_idx]
    y_va = [labels[i] for i in val_idx]

    prep = PreprocessingStats.fit(
        x_tr,
        imputation_strategy=params["imputation_strategy"],
        normalization=params["normalization"],
    )
    clf = fit_classifier(model_type, params, prep.transform(x_tr), y_tr)
    preds = [int(p) for p in clf.predict(prep.transform(x_va))]
    report = ClassificationReportGenerator.generate(y_va, preds)
    return report.accuracy, report.macro["f1"]


def run_grid_search(
    samples: Sequence[Sequence[float]],
    labels: Sequence[int],
    hyperparameters: Mapping[str, Any],
    grid: Sequence[Mapping[str, Any]],
    progress: Optional[Callable[[float, Optional[str]], Any]] = None,
) -> Dict[str, Any]:
    """
    Returns {best_hyperparameters, best_accuracy, best_macro_f1, evaluations}.

    ``progress`` receives the completed fraction in [0, 1] after each combination.
    """
    model_type = ModelType.parse(hyperparameters["model_type"])
    folds = int(hyperparameters["cv_folds"])
    split = float(hyperparameters["cv_validation_split"])
    seed = int(hyperparameters.get("random_state", 42))

    evaluations: List[Dict[str, Any]] = []
    best: Optional[Dict[str, Any]] = None
    best_key = (-1.0, -1.0)

    for i, combination in enumerate(grid):
        params = apply_combination(hyperparameters, combination)
        rng = np.random.default_rng(seed)
        accs, f1s = [], []
        for _ in range(folds):
            train_idx, val_idx = random_split(len(samples), split, rng)
            acc, f1 = _score_fold(model_type, params, samples, labels, train_idx, val_idx)
            accs.append(acc)
            f1s.append(f1)
        mean_acc = float(np.mean(accs))
        mean_f1 = float(np.mean(f1s))
        evaluations.append({"params": dict(combination), "accuracy": mean_acc, "macro_f1": mean_f1})
        if (mean_acc, mean_f1) > best_key:
            best_key = (mean_acc, mean_f1)
            best = dict(combination)
        logger.debug("grid %d/%d %s -> acc=%.4f f1=%.4f", i + 1, len(grid), combination, mean_acc, mean_f1)
        if progress is not None:
            progress((i + 1) / max(len(grid), 1), f"Grid search {i + 1}/{len(grid)}")

    evaluations.sort(key=lambda e: (e["accuracy"], e["macro_f1"]), reverse=True)
    logger.info(
        "Grid search over %d combinations x %d folds: best acc=%.4f f1=%.4f params=%s",
        len(grid), folds, best_key[0], best_key[1], best,
    )
    return {
        "best_hyperparameters": best or {},
        "best_accuracy": max(best_key[0], 0.0),
        "best_macro_f1": max(best_key[1], 0.0),
        "evaluations": evaluations[:MAX_REPORTED_EVALUATIONS],
    }
