"""
Common utilities and shared logic for the riskml pipeline.

Modules:
    io.py              - Config loading, local artifact storage and chunked CSV reading.
    buffer.py          - Memory-bounded row buffer with spillover to a temp file.
    features.py        - Dataset analysis, risk/label derivation and feature-row building.
    preprocessing.py   - Column mapping, Imputer, standardization and row-wise Normalizer.
    metrics.py         - Classification report, AUC and feature importances.
    progress.py        - Throttled progress tracking with a TTL snapshot cache.
    exceptions.py      - Typed pipeline errors.
    utils.py           - Miscellaneous utilities shared by training and inference code.
"""

__all__ = [
    "io",
    "buffer",
    "features",
    "preprocessing",
    "metrics",
    "progress",
    "exceptions",
    "utils",
]
