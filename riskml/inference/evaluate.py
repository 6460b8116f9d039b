"""Evaluation of a persisted model artifact against a labelled CSV.

- The artifact's imputer, standardization stats and row norm are applied as
  stored; nothing is refit on the evaluation rows.
- One-hot category columns follow the artifact's persisted categories, so the
  feature arity must match ``len(feature_means)`` (``FeatureMismatch`` otherwise).
- AUC is computed from ``predict_proba`` when available, else from the hard
  predictions; ``auc_source`` records which one was used.

Inputs:
- ``models/<model_id>/<version>.json`` (+ ``.model`` blob) in the storage root
- A CSV with the same column roles as training (schema mapping optional)

Outputs:
- Flat metrics dict (accuracy, macro/weighted P/R/F1, per_class, confusion_matrix,
  auc, auc_source, rows), optionally plots on disk.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

from riskml.common.buffer import DEFAULT_MEMORY_ROWS
from riskml.common.exceptions import ArtifactNotFound, EmptyDataset, FeatureMismatch
from riskml.common.features import PreparedDataset, prepare_evaluation_data
from riskml.common.io import LocalStorage
from riskml.common.metrics import ClassificationReportGenerator, compute_auc, positive_class_scores
from riskml.common.progress import ProgressTracker
from riskml.common.utils import get_logger, make_run_id, round_metrics
from riskml.inference.plots import write_evaluation_plots
from riskml.training.artifact_io import ArtifactCodec, LoadedArtifact


STAGE = "evaluating"

logger = get_logger("riskml.inference.evaluate")


# ---------------------------------------------------------------------
# Core evaluation
# ---------------------------------------------------------------------

@dataclass
class EvaluationOutputs:
    metrics: Dict[str, Any]
    labels: List[int]
    scores: List[float]


def score_dataset(
    artifact: LoadedArtifact,
    dataset: PreparedDataset,
    progress: Optional[Callable[..., Any]] = None,
) -> EvaluationOutputs:
    """Metrics plus the per-row labels and AUC scores they were computed from."""

    def _report(percent: float, message: str) -> None:
        if progress is not None:
            progress(percent, message)

    expected = artifact.stats.n_features
    if len(dataset.feature_names) != expected:
        raise FeatureMismatch(expected, len(dataset.feature_names))
    if dataset.buffer.count() == 0:
        raise EmptyDataset("Evaluation dataset contains no usable rows.")

    samples, labels = dataset.buffer.materialize()
    for row in samples:
        if len(row) != expected:
            raise FeatureMismatch(expected, len(row))
    _report(15, f"Loaded {len(samples)} evaluation rows")

    x = artifact.stats.transform(samples)
    _report(35, "Features preprocessed")

    predictions = [int(p) for p in artifact.classifier.predict(x)]
    _report(55, "Predictions computed")

    report = ClassificationReportGenerator.generate(labels, predictions)
    scores, auc_source = positive_class_scores(artifact.classifier, x, predictions, logger)
    metrics = report.to_metrics()
    metrics["auc"] = compute_auc(labels, scores)
    metrics["auc_source"] = auc_source
    metrics["rows"] = len(samples)
    _report(85, "Metrics computed")

    logger.info(
        "Evaluated rows=%d | accuracy=%.4f macro_f1=%.4f auc=%.4f (%s)",
        len(samples), metrics["accuracy"], metrics["macro_f1"], metrics["auc"], auc_source,
    )
    return EvaluationOutputs(metrics=round_metrics(metrics), labels=labels, scores=scores)


def evaluate(
    artifact: LoadedArtifact,
    dataset: PreparedDataset,
    progress: Optional[Callable[..., Any]] = None,
) -> Dict[str, Any]:
    """Score ``dataset`` with ``artifact``; metrics are rounded to 4 decimals."""
    return score_dataset(artifact, dataset, progress).metrics


def resolve_artifact_path(codec: ArtifactCodec, model_id: str, artifact: Optional[str] = None) -> str:
    """Explicit sidecar path if given, else the newest sidecar for ``model_id``."""
    if artifact:
        return artifact
    latest = codec.latest_artifact(model_id)
    if latest is None:
        raise ArtifactNotFound(f"No model artifact found for model_id={model_id}.")
    return latest


# ---------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------

def run_evaluation(
    *,
    dataset_path: str,
    model_id: str,
    artifact_path: Optional[str] = None,
    schema: Optional[Mapping[str, Any]] = None,
    storage_root: str = "storage",
    tracker: Optional[ProgressTracker] = None,
    plots_dir: Optional[str] = None,
    run_id: Optional[str] = None,
    memory_rows: int = DEFAULT_MEMORY_ROWS,
) -> Dict[str, Any]:
    """
    Steps:
      1) Resolve + load the artifact (explicit path or latest for model_id).
      2) Prepare the CSV with the artifact's categories.
      3) Evaluate, report progress under the ``evaluating`` stage.
      4) Optionally write confusion-matrix / ROC plots (best-effort).
    """
    run_id = run_id or make_run_id()
    tracker = tracker or ProgressTracker()
    progress = tracker.callback(model_id, STAGE)
    codec = ArtifactCodec(LocalStorage(storage_root))

    logger.info("=== Evaluating model: %s (run_id=%s) ===", model_id, run_id)
    dataset: Optional[PreparedDataset] = None
    try:
        progress(0, "Loading model artifact")
        path = resolve_artifact_path(codec, model_id, artifact_path)
        artifact = codec.load(path)
        dataset = prepare_evaluation_data(dataset_path, schema, artifact.categories, memory_rows=memory_rows)
        outputs = score_dataset(artifact, dataset, progress)
    except Exception as e:
        logger.exception("Evaluation failed for model_id=%s", model_id)
        tracker.fail(model_id, STAGE, str(e))
        raise
    finally:
        if dataset is not None:
            dataset.close()

    metrics = outputs.metrics
    plots: Dict[str, str] = {}
    if plots_dir:
        plots = write_evaluation_plots(metrics, outputs.labels, outputs.scores, Path(plots_dir) / model_id)

    tracker.done(model_id, STAGE, "Evaluation complete")
    summary = {
        "run_id": run_id,
        "model_id": model_id,
        "artifact_path": path,
        "metrics": metrics,
        "plots": plots,
    }
    logger.info("Evaluation summary: %s", json.dumps(metrics, indent=2))
    return summary
