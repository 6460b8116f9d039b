import json
from pathlib import Path

import pytest
from sklearn.linear_model import LogisticRegression

from riskml.common.exceptions import ArtifactNotFound, CorruptArtifact, EmptyDataset, FeatureMismatch, InvalidConfiguration
from riskml.common.features import prepare_evaluation_data, prepare_training_data
from riskml.common.io import LocalStorage
from riskml.common.preprocessing import PreprocessingStats
from riskml.common.progress import ProgressTracker
from riskml.inference.evaluate import evaluate, run_evaluation
from riskml.training.artifact_io import ArtifactCodec
from riskml.training.train import run_training, train


class RecordingBroadcaster:
    def __init__(self):
        self.events = []

    def publish(self, event) -> None:
        self.events.append(event)


def _fitted_model():
    samples = [[0.0, 1.0], [0.2, 0.8], [0.9, 0.1], [1.0, 0.0]]
    labels = [0, 0, 1, 1]
    stats = PreprocessingStats.fit(samples, imputation_strategy="mean", normalization="l2")
    clf = LogisticRegression().fit(stats.transform(samples), labels)
    return clf, stats, samples


# ---------------------------------------------------------------------
# ArtifactCodec
# ---------------------------------------------------------------------

def test_artifact_round_trip_reproduces_predictions(tmp_path: Path) -> None:
    clf, stats, samples = _fitted_model()
    codec = ArtifactCodec(LocalStorage(tmp_path))
    path = codec.save(clf, stats, ["a", "b"], {"accuracy": 1.0}, {"model_type": "logistic_regression"}, model_id="m1")

    assert path.startswith("models/m1/") and path.endswith(".json")
    loaded = codec.load(path)
    classifier, restored_stats, categories = loaded
    assert categories == ["a", "b"]
    assert restored_stats.stats == stats.stats
    assert list(classifier.predict(restored_stats.transform(samples))) == list(clf.predict(stats.transform(samples)))

    sidecar = json.loads((tmp_path / path).read_text())
    for key in ("model_file", "feature_means", "feature_std_devs", "categories", "normalization", "imputer", "metrics", "hyperparameters"):
        assert key in sidecar


def test_latest_artifact_resolves_newest_version(tmp_path: Path) -> None:
    clf, stats, _ = _fitted_model()
    codec = ArtifactCodec(LocalStorage(tmp_path))
    assert codec.latest_artifact("m1") is None
    codec.save(clf, stats, [], {}, {}, model_id="m1", version="20240101000000")
    newest = codec.save(clf, stats, [], {}, {}, model_id="m1", version="20240102000000")
    assert codec.latest_artifact("m1") == newest


def test_missing_artifact_or_blob_raises_not_found(tmp_path: Path) -> None:
    clf, stats, _ = _fitted_model()
    storage = LocalStorage(tmp_path)
    codec = ArtifactCodec(storage)
    with pytest.raises(ArtifactNotFound):
        codec.load("models/m1/nope.json")

    path = codec.save(clf, stats, [], {}, {}, model_id="m1", version="20240101000000")
    (tmp_path / "models/m1/20240101000000.model").unlink()
    with pytest.raises(ArtifactNotFound):
        codec.load(path)


@pytest.mark.parametrize(
    "mutate",
    [
        lambda d: d.update(feature_means=[]),
        lambda d: d.update(feature_std_devs=["x", 1.0]),
        lambda d: d.update(feature_std_devs=d["feature_std_devs"][:1]),
        lambda d: d.update(categories=[1, 2]),
        lambda d: d.pop("model_file"),
    ],
)
def test_malformed_sidecar_raises_corrupt(tmp_path: Path, mutate) -> None:
    clf, stats, _ = _fitted_model()
    codec = ArtifactCodec(LocalStorage(tmp_path))
    path = codec.save(clf, stats, ["a"], {}, {}, model_id="m1")
    sidecar = json.loads((tmp_path / path).read_text())
    mutate(sidecar)
    (tmp_path / path).write_text(json.dumps(sidecar))
    with pytest.raises(CorruptArtifact):
        codec.load(path)


def test_undecodable_sidecar_and_blob_raise_corrupt(tmp_path: Path) -> None:
    clf, stats, _ = _fitted_model()
    codec = ArtifactCodec(LocalStorage(tmp_path))
    path = codec.save(clf, stats, [], {}, {}, model_id="m1", version="20240101000000")

    (tmp_path / "models/m1/20240101000000.model").write_bytes(b"not a pickle")
    with pytest.raises(CorruptArtifact):
        codec.load(path)

    (tmp_path / path).write_text("{broken")
    with pytest.raises(CorruptArtifact):
        codec.load(path)


# ---------------------------------------------------------------------
# Training
# ---------------------------------------------------------------------

def test_train_end_to_end_logistic_regression(tmp_path: Path, balanced_csv: Path) -> None:
    progress, epochs = [], []

    def record(pct, msg=None, metrics=None):
        progress.append(pct)
        if metrics is not None:
            epochs.append(metrics)

    with prepare_training_data(balanced_csv) as dataset:
        result = train(
            dataset,
            {"model_type": "logistic_regression", "log_interval": 100},
            record,
            storage=LocalStorage(tmp_path),
            model_id="city",
        )

    assert result.metrics["accuracy"] >= 0.8
    assert result.hyperparameters["model_type"] == "logistic_regression"
    assert progress[:3] == [10, 25, 40]
    assert progress[-3:] == [70, 85, 95]
    assert 55 in progress
    grid_end = progress.index(55)
    assert len([p for p in progress if 40 < p <= 55]) == 8 + 1
    assert all(40 <= p <= 55 for p in progress[3:grid_end])
    assert all(55 <= p <= 70 for p in progress[grid_end:-2])
    assert progress == sorted(progress)

    total = result.hyperparameters["iterations"]
    assert [m["current_epoch"] for m in epochs] == list(range(100, total + 1, 100))
    assert all(m["total_epochs"] == total for m in epochs)
    assert all(m["loss"] >= 0.0 and 0.0 <= m["accuracy"] <= 1.0 for m in epochs)

    sidecar = json.loads((tmp_path / result.artifact_path).read_text())
    assert len(sidecar["feature_means"]) == 7
    assert sidecar["categories"] == ["assault", "burglary"]
    assert sidecar["grid_search"]["evaluations"]
    assert sidecar["feature_importances"][0]["name"] in {"Risk Score", "Category Assault", "Category Burglary"}


@pytest.mark.parametrize("model_type", ["naive_bayes", "decision_tree", "knn", "svc", "mlp"])
def test_train_other_model_families(tmp_path: Path, balanced_csv: Path, model_type: str) -> None:
    with prepare_training_data(balanced_csv) as dataset:
        result = train(
            dataset,
            {"model_type": model_type, "cv_folds": 2, "iterations": 200},
            storage=LocalStorage(tmp_path),
            model_id=model_type,
        )
    assert 0.0 <= result.metrics["accuracy"] <= 1.0
    assert result.metrics["auc_source"] in {"probability", "prediction"}
    assert ArtifactCodec(LocalStorage(tmp_path)).load(result.artifact_path).stats.n_features == 7


def test_svc_without_probabilities_scores_auc_from_predictions(tmp_path: Path, balanced_csv: Path) -> None:
    with prepare_training_data(balanced_csv) as dataset:
        result = train(
            dataset,
            {"model_type": "svc", "probability_estimates": False},
            storage=LocalStorage(tmp_path),
            model_id="svc",
        )
    assert result.hyperparameters["probability_estimates"] is False
    assert result.metrics["auc_source"] == "prediction"


def test_train_empty_dataset_raises(tmp_path: Path, csv_writer) -> None:
    path = csv_writer(
        tmp_path / "empty.csv",
        ["timestamp", "latitude", "longitude", "category"],
        [["garbage", 1.0, 2.0, "a"]],
    )
    with prepare_training_data(path) as dataset:
        with pytest.raises(EmptyDataset):
            train(dataset, {}, storage=LocalStorage(tmp_path / "store"), model_id="m")
    assert not (tmp_path / "store").exists()


def test_train_unknown_model_type_raises(tmp_path: Path, balanced_csv: Path) -> None:
    with prepare_training_data(balanced_csv) as dataset:
        with pytest.raises(InvalidConfiguration):
            train(dataset, {"model_type": "xgboost"}, storage=LocalStorage(tmp_path), model_id="m")


def test_run_training_rejects_bad_config_before_reading_dataset(tmp_path: Path) -> None:
    tracker = ProgressTracker()
    with pytest.raises(InvalidConfiguration):
        run_training(
            dataset_path=str(tmp_path / "missing.csv"),
            model_id="city",
            hyperparameters={"model_type": "xgboost"},
            storage_root=str(tmp_path),
            tracker=tracker,
        )
    assert tracker.status("city", "training") == "failed"


def test_run_training_marks_tracker_done(tmp_path: Path, balanced_csv: Path) -> None:
    broadcaster = RecordingBroadcaster()
    tracker = ProgressTracker(broadcaster)
    summary = run_training(
        dataset_path=str(balanced_csv),
        model_id="city",
        storage_root=str(tmp_path),
        tracker=tracker,
        run_id="run-1",
    )
    assert summary["run_id"] == "run-1"
    assert tracker.status("city", "training") == "done"
    assert broadcaster.events[-1].percent == 100.0
    sidecar = json.loads((tmp_path / summary["artifact_path"]).read_text())
    assert sidecar["training_run_id"] == "run-1"


def test_run_training_failure_marks_tracker_failed(tmp_path: Path, csv_writer) -> None:
    path = csv_writer(tmp_path / "bad.csv", ["timestamp", "category"], [["2024-01-01", "a"]])
    broadcaster = RecordingBroadcaster()
    tracker = ProgressTracker(broadcaster)
    with pytest.raises(InvalidConfiguration):
        run_training(dataset_path=str(path), model_id="city", storage_root=str(tmp_path), tracker=tracker)
    assert tracker.status("city", "training") == "failed"
    assert broadcaster.events[-1].status == "failed"


# ---------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------

def test_evaluate_with_trained_artifact(tmp_path: Path, balanced_csv: Path) -> None:
    storage = LocalStorage(tmp_path)
    with prepare_training_data(balanced_csv) as dataset:
        result = train(dataset, {}, storage=storage, model_id="city")

    artifact = ArtifactCodec(storage).load(result.artifact_path)
    progress = []
    with prepare_evaluation_data(balanced_csv, None, artifact.categories) as dataset:
        metrics = evaluate(artifact, dataset, lambda pct, msg=None: progress.append(pct))

    assert progress == [15, 35, 55, 85]
    assert metrics["rows"] == 10
    assert metrics["accuracy"] >= 0.8
    assert metrics["auc_source"] == "probability"
    assert 0.0 <= metrics["auc"] <= 1.0
    assert metrics["confusion_matrix"]["labels"] == [0, 1]


def test_evaluate_feature_arity_mismatch_raises(tmp_path: Path, balanced_csv: Path) -> None:
    storage = LocalStorage(tmp_path)
    with prepare_training_data(balanced_csv) as dataset:
        result = train(dataset, {}, storage=storage, model_id="city")
    artifact = ArtifactCodec(storage).load(result.artifact_path)
    assert artifact.stats.n_features == 7

    with prepare_evaluation_data(balanced_csv, None, []) as dataset:
        with pytest.raises(FeatureMismatch) as exc:
            evaluate(artifact, dataset)
    assert (exc.value.expected, exc.value.actual) == (7, 5)


def test_evaluate_empty_dataset_raises(tmp_path: Path, balanced_csv: Path, csv_writer) -> None:
    storage = LocalStorage(tmp_path)
    with prepare_training_data(balanced_csv) as dataset:
        result = train(dataset, {}, storage=storage, model_id="city")
    artifact = ArtifactCodec(storage).load(result.artifact_path)

    empty = csv_writer(tmp_path / "empty.csv", ["timestamp", "latitude", "longitude", "category", "label"], [])
    with prepare_evaluation_data(empty, None, artifact.categories) as dataset:
        with pytest.raises(EmptyDataset):
            evaluate(artifact, dataset)


def test_run_evaluation_uses_latest_artifact_and_writes_plots(tmp_path: Path, balanced_csv: Path) -> None:
    run_training(dataset_path=str(balanced_csv), model_id="city", storage_root=str(tmp_path / "store"))
    tracker = ProgressTracker()
    summary = run_evaluation(
        dataset_path=str(balanced_csv),
        model_id="city",
        storage_root=str(tmp_path / "store"),
        tracker=tracker,
        plots_dir=str(tmp_path / "plots"),
    )
    assert summary["artifact_path"].startswith("models/city/")
    assert summary["metrics"]["rows"] == 10
    assert tracker.status("city", "evaluating") == "done"
    assert Path(summary["plots"]["confusion_matrix"]).is_file()


def test_run_evaluation_without_artifact_raises(tmp_path: Path, balanced_csv: Path) -> None:
    tracker = ProgressTracker()
    with pytest.raises(ArtifactNotFound):
        run_evaluation(dataset_path=str(balanced_csv), model_id="ghost", storage_root=str(tmp_path), tracker=tracker)
    assert tracker.status("ghost", "evaluating") == "failed"
