"""Evaluation plots (confusion matrix, ROC curve) written as PNG files.

Plot writing never fails an evaluation: each figure is produced best-effort
and a failure is logged as a warning.
"""

from __future__ import annotations

import io
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence

import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt
import numpy as np
from sklearn.metrics import roc_curve

from riskml.common.utils import best_effort


def _fig_to_png_bytes() -> bytes:
    buf = io.BytesIO()
    plt.tight_layout()
    plt.savefig(buf, format="png", bbox_inches="tight")
    plt.close()
    buf.seek(0)
    return buf.getvalue()


def _write_png(path: Path) -> str:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(_fig_to_png_bytes())
    return str(path)


def _annotate_cm(ax, cm: np.ndarray, labels: Sequence[Any]):
    ax.imshow(cm, interpolation="nearest", cmap="Blues")
    for (i, j), v in np.ndenumerate(cm):
        ax.text(j, i, f"{int(v)}", ha="center", va="center", fontsize=9)
    ticks = list(range(len(labels)))
    ax.set_xticks(ticks)
    ax.set_xticklabels([f"Pred {l}" for l in labels])
    ax.set_yticks(ticks)
    ax.set_yticklabels([f"True {l}" for l in labels])


@best_effort("confusion matrix plot", "riskml.inference.plots")
def plot_confusion_matrix(confusion: Mapping[str, Any], out_path: Path, title: str = "Confusion matrix") -> str:
    cm = np.asarray(confusion.get("matrix") or [[0]], dtype=float)
    fig, ax = plt.subplots(figsize=(4, 4))
    _annotate_cm(ax, cm, confusion.get("labels") or [0])
    ax.set_title(title)
    return _write_png(out_path)


@best_effort("ROC curve plot", "riskml.inference.plots")
def plot_roc(labels: Sequence[int], scores: Sequence[float], auc: float, out_path: Path) -> Optional[str]:
    y = np.asarray([1 if int(l) == 1 else 0 for l in labels])
    if len(set(y.tolist())) < 2:
        # ROC is undefined with a single class
        return None
    fpr, tpr, _ = roc_curve(y, np.asarray(scores, dtype=float))

    plt.figure()
    plt.plot(fpr, tpr, label=f"Model ROC (AUC={auc:.3f})")
    plt.plot([0, 1], [0, 1], linestyle="--", label="Random")
    plt.xlabel("False Positive Rate")
    plt.ylabel("True Positive Rate")
    plt.title("ROC Curve (evaluation)")
    plt.legend()
    return _write_png(out_path)


def write_evaluation_plots(
    metrics: Mapping[str, Any],
    labels: Sequence[int],
    scores: Sequence[float],
    out_dir: Path,
) -> Dict[str, str]:
    """Returns {plot name: file path} for the plots that were written."""
    out_dir = Path(out_dir)
    written = {
        "confusion_matrix": plot_confusion_matrix(metrics.get("confusion_matrix") or {}, out_dir / "confusion_matrix.png"),
        "roc_curve": plot_roc(labels, scores, float(metrics.get("auc", 0.0)), out_dir / "roc_curve.png"),
    }
    return {k: v for k, v in written.items() if v}
