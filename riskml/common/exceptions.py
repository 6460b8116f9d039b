"""Typed failures raised by the training and evaluation pipeline.

All of them derive from :class:`PipelineError` so a run's failure handler can
catch the pipeline's own errors separately from programming errors.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for pipeline failures."""


class EmptyDataset(PipelineError):
    """The dataset produced zero usable rows after parsing."""


class InvalidConfiguration(PipelineError):
    """Unknown imputer/normalizer/model_type value, or a dataset missing required columns."""


class ArtifactNotFound(PipelineError):
    """The artifact sidecar or its model blob does not exist."""


class CorruptArtifact(PipelineError):
    """The artifact sidecar or blob exists but cannot be decoded or validated."""


class FeatureMismatch(PipelineError):
    """Evaluation feature vectors disagree with the artifact's persisted arity."""

    def __init__(self, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Feature vector has {actual} values but the model artifact expects {expected}."
        )
