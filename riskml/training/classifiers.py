"""Closed set of supported model families and the scikit-learn estimator behind each."""

from __future__ import annotations

from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional

import numpy as np
from sklearn.base import BaseEstimator, ClassifierMixin
from sklearn.naive_bayes import GaussianNB
from sklearn.linear_model import SGDClassifier
from sklearn.metrics import log_loss
from sklearn.neighbors import KNeighborsClassifier
from sklearn.neural_network import MLPClassifier
from sklearn.svm import SVC
from sklearn.tree import DecisionTreeClassifier

from riskml.common.exceptions import InvalidConfiguration


class ModelType(str, Enum):
    LOGISTIC_REGRESSION = "logistic_regression"
    NAIVE_BAYES = "naive_bayes"
    DECISION_TREE = "decision_tree"
    SVC = "svc"
    KNN = "knn"
    MLP = "mlp"

    @classmethod
    def parse(cls, value: Any) -> "ModelType":
        if value is None or (isinstance(value, str) and not value.strip()):
            return cls.LOGISTIC_REGRESSION
        if isinstance(value, ModelType):
            return value
        key = str(value).strip().lower().replace("-", "_").replace(" ", "_")
        try:
            return cls(key)
        except ValueError:
            raise InvalidConfiguration(f'Unknown model_type "{value}".') from None


_SVC_KERNELS = {"linear": "linear", "polynomial": "poly", "rbf": "rbf", "sigmoid": "sigmoid"}


def make_classifier(model_type: ModelType, params: Mapping[str, Any]) -> ClassifierMixin:
    """
    Build an unfitted estimator from resolved hyperparameters.

    ``params`` must already be coerced/clamped (see ``hyperparameters.resolve_hyperparameters``).
    """
    seed = params.get("random_state", 42)

    if model_type is ModelType.LOGISTIC_REGRESSION:
        # fit_classifier drives it one partial_fit epoch at a time
        return SGDClassifier(
            loss="log_loss",
            penalty="l2",
            alpha=float(params["l2_penalty"]),
            learning_rate="constant",
            eta0=float(params["learning_rate"]),
            max_iter=int(params["iterations"]),
            tol=None,
            random_state=seed,
        )

    if model_type is ModelType.NAIVE_BAYES:
        return GaussianNB()

    if model_type is ModelType.DECISION_TREE:
        return DecisionTreeClassifier(
            max_depth=int(params["max_depth"]),
            min_samples_split=int(params["min_samples_split"]),
            random_state=seed,
        )

    if model_type is ModelType.SVC:
        opts: Dict[str, Any] = dict(params.get("kernel_options") or {})
        return SVC(
            C=float(params["cost"]),
            tol=float(params["tolerance"]),
            cache_size=float(params["cache_size"]),
            shrinking=bool(params["shrinking"]),
            probability=bool(params["probability_estimates"]),
            kernel=_SVC_KERNELS[params["kernel"]],
            degree=int(opts.get("degree", 3)),
            gamma=float(opts["gamma"]) if "gamma" in opts else "scale",
            coef0=float(opts.get("coef0", 0.0)),
            random_state=seed,
        )

    if model_type is ModelType.KNN:
        return KNeighborsClassifier(n_neighbors=int(params["k"]))

    if model_type is ModelType.MLP:
        return MLPClassifier(
            hidden_layer_sizes=tuple(int(h) for h in params["hidden_layers"]),
            learning_rate_init=float(params["learning_rate"]),
            max_iter=int(params["iterations"]),
            random_state=seed,
        )

    raise InvalidConfiguration(f"Unsupported model_type {model_type!r}.")


EpochCallback = Callable[[int, int, float, float], Any]


def _fit_by_epoch(
    clf: SGDClassifier,
    samples,
    labels,
    iterations: int,
    log_interval: int,
    epoch_callback: Optional[EpochCallback],
) -> SGDClassifier:
    """
    ``iterations`` passes of ``partial_fit``. Every ``log_interval`` epochs (and
    on the last one) ``epoch_callback(epoch, total, loss, accuracy)`` receives
    the training log-loss and accuracy.
    """
    x = np.asarray(samples, dtype=float)
    y = np.asarray(labels, dtype=int)
    classes = np.unique(y)
    for epoch in range(1, iterations + 1):
        clf.partial_fit(x, y, classes=classes)
        if epoch_callback is not None and (epoch % log_interval == 0 or epoch == iterations):
            loss = float(log_loss(y, clf.predict_proba(x), labels=classes))
            epoch_callback(epoch, iterations, loss, float(clf.score(x, y)))
    return clf


def fit_classifier(
    model_type: ModelType,
    params: Mapping[str, Any],
    samples,
    labels,
    epoch_callback: Optional[EpochCallback] = None,
) -> ClassifierMixin:
    """
    Fit with the guards the small-data paths need: KNN ``k`` is capped at the
    sample count, and a single-class training set yields a constant predictor.

    Logistic regression trains epoch by epoch (``iterations`` epochs at
    ``learning_rate``) and reports through ``epoch_callback`` every
    ``log_interval`` epochs.
    """
    params = dict(params)
    if model_type is ModelType.KNN:
        params["k"] = max(1, min(int(params["k"]), len(samples)))
    if len(set(int(v) for v in labels)) < 2:
        return ConstantClassifier().fit(samples, labels)
    clf = make_classifier(model_type, params)
    if model_type is ModelType.LOGISTIC_REGRESSION:
        return _fit_by_epoch(
            clf,
            samples,
            labels,
            int(params["iterations"]),
            max(1, int(params.get("log_interval", 200))),
            epoch_callback,
        )
    clf.fit(samples, labels)
    return clf


class ConstantClassifier(ClassifierMixin, BaseEstimator):
    """Predicts the only class seen in training; used when a split has one label."""

    def fit(self, samples, labels):
        self.classes_ = sorted(set(int(v) for v in labels)) or [0]
        return self

    def predict(self, samples):
        return np.full(len(samples), self.classes_[0], dtype=int)

    def predict_proba(self, samples):
        return np.ones((len(samples), 1), dtype=float)
