"""
Model training for the riskml pipeline.

Flow (one model per run):
- Hyperparameters resolved and clamped before anything is fit.
- Rows split once into train / validation (shuffled with ``random_state``).
- Imputer -> standardization -> row norm fit on the training split only.
- Optional grid search (cross-validated accuracy, macro-F1 tie-break) when the
  grid has more than one combination; the winner is merged into the params.
- Final classifier fit on the training split, scored on the validation split.
- Artifact (classifier blob + JSON sidecar) persisted through ``ArtifactCodec``.

Progress is reported at fixed checkpoints (10/25/40/55/70/85/95); grid search
fills the 40-55 band and logistic-regression epochs (every ``log_interval``,
with loss and accuracy) fill 55-70.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

import numpy as np

from riskml.common.buffer import DEFAULT_MEMORY_ROWS
from riskml.common.exceptions import EmptyDataset
from riskml.common.features import PreparedDataset, prepare_training_data
from riskml.common.io import LocalStorage
from riskml.common.metrics import (
    ClassificationReportGenerator,
    compute_auc,
    feature_importances,
    positive_class_scores,
)
from riskml.common.preprocessing import PreprocessingStats
from riskml.common.progress import ProgressTracker
from riskml.common.utils import get_logger, make_run_id, round_metrics
from riskml.training.artifact_io import ArtifactCodec
from riskml.training.classifiers import ModelType, fit_classifier
from riskml.training.grid_search import random_split, run_grid_search
from riskml.training.hyperparameters import apply_combination, build_search_grid, resolve_hyperparameters


STAGE = "training"
GRID_BAND = (40.0, 55.0)
FIT_BAND = (55.0, 70.0)

ProgressFn = Callable[..., Any]


# -----------------------
# Outputs
# -----------------------

@dataclass
class TrainResult:
    model_id: str
    version: str
    artifact_path: str
    metrics: Dict[str, Any]
    hyperparameters: Dict[str, Any]
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "model_id": self.model_id,
            "version": self.version,
            "artifact_path": self.artifact_path,
            "metrics": self.metrics,
            "hyperparameters": self.hyperparameters,
            "metadata": self.metadata,
        }


# -----------------------
# Trainer
# -----------------------

class ModelTrainer:
    def __init__(
        self,
        dataset: PreparedDataset,
        hyperparameters: Optional[Mapping[str, Any]] = None,
        *,
        storage,
        model_id: str,
        training_run_id: Optional[str] = None,
        progress: Optional[ProgressFn] = None,
    ):
        self.dataset = dataset
        self.raw_hyperparameters = dict(hyperparameters or {})
        self.codec = ArtifactCodec(storage)
        self.model_id = model_id
        self.training_run_id = training_run_id
        self.progress = progress
        self.logger = get_logger(f"riskml.training.{model_id}")

        self.params: Dict[str, Any] = {}
        self.model_type: Optional[ModelType] = None
        self.train_x: List[List[float]] = []
        self.train_y: List[int] = []
        self.val_x: List[List[float]] = []
        self.val_y: List[int] = []
        self.stats: Optional[PreprocessingStats] = None
        self.grid_search: Dict[str, Any] = {}
        self.classifier: Any = None
        self.metrics: Dict[str, Any] = {}
        self.importances: List[Dict[str, Any]] = []

    def _report(self, percent: float, message: str, metrics: Optional[Dict[str, Any]] = None) -> None:
        if self.progress is None:
            return
        if metrics is None:
            self.progress(percent, message)
        else:
            self.progress(percent, message, metrics)

    # ---------- load data ----------

    def load(self) -> None:
        if self.dataset.buffer.count() == 0:
            raise EmptyDataset("Dataset contains no usable rows.")
        self.params = resolve_hyperparameters(self.raw_hyperparameters)
        self.model_type = ModelType.parse(self.params["model_type"])
        self._report(10, "Hyperparameters resolved")

        samples, labels = self.dataset.buffer.materialize()
        rng = np.random.default_rng(int(self.params["random_state"]))
        train_idx, val_idx = random_split(len(samples), float(self.params["validation_split"]), rng)
        self.train_x = [samples[i] for i in train_idx]
        self.train_y = [labels[i] for i in train_idx]
        self.val_x = [samples[i] for i in val_idx]
        self.val_y = [labels[i] for i in val_idx]
        self.logger.info(
            "Loaded rows=%d | train=%d validation=%d | features=%d | positives=%d",
            len(samples), len(self.train_x), len(self.val_x), len(self.dataset.feature_names), sum(labels),
        )
        self._report(25, "Training data prepared")

    # ---------- grid search ----------

    def search(self) -> None:
        grid = build_search_grid(self.params)
        self._report(GRID_BAND[0], f"Searching {len(grid)} hyperparameter combinations")
        if len(grid) > 1:
            lo, hi = GRID_BAND

            def _grid_progress(fraction: float, message: Optional[str] = None) -> None:
                self._report(lo + (hi - lo) * fraction, message or "Grid search")

            self.grid_search = run_grid_search(self.train_x, self.train_y, self.params, grid, _grid_progress)
            self.params = apply_combination(self.params, self.grid_search["best_hyperparameters"])
        else:
            self.logger.info("Grid has a single combination; skipping search")
        self._report(GRID_BAND[1], "Hyperparameter search complete")

    # ---------- final fit ----------

    def fit_final(self) -> None:
        self.stats = PreprocessingStats.fit(
            self.train_x,
            imputation_strategy=self.params["imputation_strategy"],
            normalization=self.params["normalization"],
        )
        lo, hi = FIT_BAND

        def _epoch_progress(epoch: int, total: int, loss: float, accuracy: float) -> None:
            self._report(
                lo + (hi - lo) * epoch / total,
                f"Epoch {epoch}/{total}",
                {"current_epoch": epoch, "total_epochs": total, "loss": loss, "accuracy": accuracy},
            )

        self.classifier = fit_classifier(
            self.model_type,
            self.params,
            self.stats.transform(self.train_x),
            self.train_y,
            epoch_callback=_epoch_progress,
        )
        self.logger.info("Fitted %s on %d rows", self.model_type.value, len(self.train_x))
        self._report(70, "Model fitted")

    # ---------- evaluate & save ----------

    def evaluate(self) -> None:
        x_val = self.stats.transform(self.val_x)
        predictions = [int(p) for p in self.classifier.predict(x_val)]
        report = ClassificationReportGenerator.generate(self.val_y, predictions)
        scores, auc_source = positive_class_scores(self.classifier, x_val, predictions, self.logger)
        self.metrics = report.to_metrics()
        self.metrics["auc"] = compute_auc(self.val_y, scores)
        self.metrics["auc_source"] = auc_source
        self.importances = feature_importances(self.train_x, self.train_y, self.dataset.feature_names)
        self.logger.info(
            "Validation accuracy=%.4f macro_f1=%.4f auc=%.4f",
            self.metrics["accuracy"], self.metrics["macro_f1"], self.metrics["auc"],
        )
        self._report(85, "Validation metrics computed")

    def save(self) -> str:
        metrics = round_metrics(self.metrics)
        path = self.codec.save(
            self.classifier,
            self.stats,
            self.dataset.categories,
            metrics,
            self.params,
            model_id=self.model_id,
            feature_names=self.dataset.feature_names,
            training_run_id=self.training_run_id,
            feature_importances=self.importances,
            grid_search=round_metrics(self.grid_search),
            category_overflowed=self.dataset.category_overflowed,
        )
        self._report(95, "Artifact saved")
        return path

    # ---------- summarize ----------

    def summary(self, artifact_path: str) -> TrainResult:
        version = Path(artifact_path).stem
        return TrainResult(
            model_id=self.model_id,
            version=version,
            artifact_path=artifact_path,
            metrics=round_metrics(self.metrics),
            hyperparameters=self.params,
            metadata={
                "training_run_id": self.training_run_id,
                "feature_names": list(self.dataset.feature_names),
                "categories": list(self.dataset.categories),
                "category_overflowed": self.dataset.category_overflowed,
                "train_rows": len(self.train_x),
                "validation_rows": len(self.val_x),
                "skipped_rows": self.dataset.skipped_rows,
                "feature_importances": self.importances,
                "grid_search": round_metrics(self.grid_search),
            },
        )


# -----------------------
# Public API
# -----------------------

def train(
    dataset: PreparedDataset,
    hyperparameters: Optional[Mapping[str, Any]] = None,
    progress: Optional[ProgressFn] = None,
    *,
    storage=None,
    model_id: str,
    training_run_id: Optional[str] = None,
) -> TrainResult:
    """
    Train one classifier on a prepared dataset and persist its artifact.

    Raises ``EmptyDataset`` for an empty buffer and ``InvalidConfiguration``
    for unusable hyperparameters; nothing is written in either case.
    """
    trainer = ModelTrainer(
        dataset,
        hyperparameters,
        storage=storage if storage is not None else LocalStorage("storage"),
        model_id=model_id,
        training_run_id=training_run_id,
        progress=progress,
    )
    trainer.load()
    trainer.search()
    trainer.fit_final()
    trainer.evaluate()
    path = trainer.save()
    return trainer.summary(path)


def run_training(
    *,
    dataset_path: str,
    model_id: str,
    schema: Optional[Mapping[str, Any]] = None,
    hyperparameters: Optional[Mapping[str, Any]] = None,
    storage_root: str = "storage",
    tracker: Optional[ProgressTracker] = None,
    run_id: Optional[str] = None,
    memory_rows: int = DEFAULT_MEMORY_ROWS,
) -> Dict[str, Any]:
    """
    Read the CSV, train, persist. Progress goes to ``tracker`` under the
    ``training`` stage; a failure marks the run failed and re-raises.
    """
    logger = get_logger("riskml.training.train")
    run_id = run_id or make_run_id()
    tracker = tracker or ProgressTracker()
    progress = tracker.callback(model_id, STAGE)

    logger.info("=== Training model: %s (run_id=%s) ===", model_id, run_id)
    dataset: Optional[PreparedDataset] = None
    try:
        # config errors surface before the CSV is opened
        params = resolve_hyperparameters(hyperparameters)
        progress(0, "Reading dataset")
        dataset = prepare_training_data(dataset_path, schema, memory_rows=memory_rows)
        result = train(
            dataset,
            params,
            progress,
            storage=LocalStorage(storage_root),
            model_id=model_id,
            training_run_id=run_id,
        )
    except Exception as e:
        logger.exception("Training failed for model_id=%s", model_id)
        tracker.fail(model_id, STAGE, str(e))
        raise
    finally:
        if dataset is not None:
            dataset.close()

    tracker.done(model_id, STAGE, "Training complete")
    summary = {"run_id": run_id, **result.to_dict()}
    logger.info("Training summary: %s", json.dumps(summary["metrics"], indent=2))
    return summary
