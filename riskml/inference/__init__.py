"""
Inference package for the riskml pipeline.

Modules:
    entrypoint.py   - CLI entrypoint for evaluation runs.
    evaluate.py     - Loads a model artifact, scores a labelled CSV, computes metrics.
    plots.py        - Confusion-matrix and ROC PNGs for evaluation runs.
"""
__all__ = [
    "entrypoint",
    "evaluate",
    "plots",
]
