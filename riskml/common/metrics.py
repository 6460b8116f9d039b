"""
Classification metrics shared by training (validation split) and evaluation.

- ClassificationReportGenerator.generate(labels, predictions): confusion matrix,
  per-class precision/recall/F1/support, macro and support-weighted averages, accuracy.
- compute_auc(labels, scores): binary ROC AUC via the Mann-Whitney pair count.
- extract_positive_probability(): positive-class score out of a probability row.
- feature_importances(): |Pearson r| between each feature and the label.
- positive_class_scores(): AUC scores from predict_proba, or the hard-prediction proxy.

Numbers are returned unrounded; callers round at their output boundary with
:func:`riskml.common.utils.round_metrics`.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np


@dataclass
class ClassMetrics:
    precision: float
    recall: float
    f1: float
    support: int

    def as_dict(self) -> Dict[str, float]:
        return {"precision": self.precision, "recall": self.recall, "f1": self.f1, "support": self.support}


@dataclass
class ClassificationReport:
    accuracy: float
    per_class: Dict[int, ClassMetrics]
    macro: Dict[str, float]
    weighted: Dict[str, float]
    labels: List[int] = field(default_factory=list)
    matrix: List[List[int]] = field(default_factory=list)

    def to_metrics(self) -> Dict[str, Any]:
        """Flat layout persisted in artifacts and returned by evaluation."""
        return {
            "accuracy": self.accuracy,
            "macro_precision": self.macro["precision"],
            "macro_recall": self.macro["recall"],
            "macro_f1": self.macro["f1"],
            "weighted_precision": self.weighted["precision"],
            "weighted_recall": self.weighted["recall"],
            "weighted_f1": self.weighted["f1"],
            "per_class": {str(k): v.as_dict() for k, v in self.per_class.items()},
            "confusion_matrix": {"labels": list(self.labels), "matrix": [list(r) for r in self.matrix]},
        }


def _safe_div(num: float, den: float) -> float:
    return num / den if den else 0.0


class ClassificationReportGenerator:
    """Pure function object; holds no state between calls."""

    @staticmethod
    def generate(labels: Sequence[int], predictions: Sequence[int]) -> ClassificationReport:
        if len(labels) != len(predictions):
            raise ValueError(
                f"labels and predictions differ in length ({len(labels)} != {len(predictions)})"
            )
        y_true = [int(v) for v in labels]
        y_pred = [int(v) for v in predictions]
        classes = sorted(set(y_true) | set(y_pred))
        index = {c: i for i, c in enumerate(classes)}

        matrix = [[0] * len(classes) for _ in classes]
        for t, p in zip(y_true, y_pred):
            matrix[index[t]][index[p]] += 1

        per_class: Dict[int, ClassMetrics] = {}
        for c, i in index.items():
            tp = matrix[i][i]
            fp = sum(matrix[r][i] for r in range(len(classes))) - tp
            fn = sum(matrix[i]) - tp
            precision = _safe_div(tp, tp + fp)
            recall = _safe_div(tp, tp + fn)
            f1 = _safe_div(2 * precision * recall, precision + recall)
            per_class[c] = ClassMetrics(precision, recall, f1, tp + fn)

        supported = [m for m in per_class.values() if m.support > 0] or list(per_class.values())
        total_support = sum(m.support for m in per_class.values())

        macro = {
            k: _safe_div(sum(getattr(m, k) for m in supported), len(supported))
            for k in ("precision", "recall", "f1")
        }
        weighted = {
            k: _safe_div(sum(getattr(m, k) * m.support for m in per_class.values()), total_support)
            for k in ("precision", "recall", "f1")
        }
        correct = sum(1 for t, p in zip(y_true, y_pred) if t == p)
        return ClassificationReport(
            accuracy=_safe_div(correct, len(y_true)),
            per_class=per_class,
            macro=macro,
            weighted=weighted,
            labels=classes,
            matrix=matrix,
        )


# ---------------------------------------------------------------------
# AUC
# ---------------------------------------------------------------------

def compute_auc(labels: Sequence[int], scores: Sequence[float]) -> float:
    """
    Mann-Whitney AUC over every (positive, negative) pair; ties count 0.5.

    label == 1 is positive, anything else negative. Returns 0.0 when either
    class is absent. O(P*N): fine for evaluation sets of a few tens of thousands.
    """
    if len(labels) != len(scores):
        raise ValueError("labels and scores differ in length")
    pos = [float(s) for l, s in zip(labels, scores) if int(l) == 1]
    neg = [float(s) for l, s in zip(labels, scores) if int(l) != 1]
    if not pos or not neg:
        return 0.0
    wins = 0.0
    ties = 0.0
    for p in pos:
        for n in neg:
            if p > n:
                wins += 1.0
            elif p == n:
                ties += 1.0
    return (wins + 0.5 * ties) / (len(pos) * len(neg))


_POSITIVE_KEYS = (1, "1", True, "true", "yes", "positive")


def extract_positive_probability(value: Any) -> float:
    """
    Positive-class score in [0, 1] from a scalar or a {class: probability} mapping.
    """
    if isinstance(value, Mapping):
        for key in _POSITIVE_KEYS:
            if key in value:
                return extract_positive_probability(value[key])
        numeric = [float(v) for v in value.values() if isinstance(v, (int, float, np.floating))]
        return extract_positive_probability(max(numeric)) if numeric else 0.0
    try:
        x = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(x):
        return 1.0 if x > 0 else 0.0
    return min(1.0, max(0.0, x))


# ---------------------------------------------------------------------
# Feature importances
# ---------------------------------------------------------------------

def _pretty_feature_name(name: str) -> str:
    return name.replace("_", " ").title()


def feature_importances(
    samples: Sequence[Sequence[float]],
    labels: Sequence[int],
    feature_names: Sequence[str],
    top_n: int = 10,
) -> List[Dict[str, Any]]:
    """Top ``top_n`` features by |correlation| with the label; zero-variance columns score 0."""
    if len(samples) == 0 or not feature_names:
        return []
    X = np.asarray(samples, dtype=float)
    y = np.asarray(labels, dtype=float)
    y_c = y - y.mean()
    y_norm = float(np.sqrt((y_c * y_c).sum()))
    scores = []
    for j, name in enumerate(feature_names):
        x_c = X[:, j] - X[:, j].mean()
        denom = float(np.sqrt((x_c * x_c).sum())) * y_norm
        r = float((x_c * y_c).sum()) / denom if denom > 0 else 0.0
        scores.append({"name": _pretty_feature_name(name), "contribution": round(abs(r), 4)})
    scores.sort(key=lambda d: d["contribution"], reverse=True)
    return scores[:top_n]


def positive_class_scores(
    classifier: Any,
    samples: Sequence[Sequence[float]],
    predictions: Sequence[int],
    logger: Optional[logging.Logger] = None,
) -> Tuple[List[float], str]:
    """
    Scores for AUC plus where they came from.

    ``("probability")``: the class-1 column of ``predict_proba`` when the
    classifier has one and the call succeeds. ``("prediction")``: a 0/1
    indicator of the hard prediction otherwise.
    """
    if hasattr(classifier, "predict_proba"):
        try:
            proba = np.asarray(classifier.predict_proba(samples), dtype=float)
            classes = [int(c) for c in getattr(classifier, "classes_", range(proba.shape[1]))]
            return [extract_positive_probability(dict(zip(classes, row.tolist()))) if 1 in classes else 0.0
                    for row in proba], "probability"
        except Exception as e:
            if logger is not None:
                logger.warning("predict_proba failed (%s); AUC falls back to hard predictions", e)
    elif logger is not None:
        logger.warning("Classifier has no predict_proba; AUC falls back to hard predictions")
    return [1.0 if int(p) == 1 else 0.0 for p in predictions], "prediction"
