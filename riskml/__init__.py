"""
riskml: train and evaluate incident-risk classifiers from tabular CSV data.

Packages:
    common      - Config/storage I/O, dataset preparation, preprocessing, metrics, progress.
    training    - Hyperparameters, grid search, model fitting and artifact persistence.
    inference   - Evaluation of persisted artifacts against labelled datasets.
"""
__all__ = [
    "common",
    "training",
    "inference",
]
