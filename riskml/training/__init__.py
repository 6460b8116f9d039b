"""
Training package for the riskml pipeline.

Modules:
    entrypoint.py      - CLI entrypoint for training runs.
    hyperparameters.py - Hyperparameter coercion/clamping and search-grid construction.
    classifiers.py     - Supported model families and their scikit-learn estimators.
    grid_search.py     - Cross-validated grid search over hyperparameter combinations.
    train.py           - Split, fit, validate and persist one model.
    artifact_io.py     - Save/load model artifacts (joblib blob + validated JSON sidecar).
"""
__all__ = [
    "entrypoint",
    "hyperparameters",
    "classifiers",
    "grid_search",
    "train",
    "artifact_io",
]
