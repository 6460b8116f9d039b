"""
Artifact I/O for trained models.

An artifact is two files under one versioned path in the storage collaborator:

    models/<model_id>/<version>.model   joblib-serialized classifier
    models/<model_id>/<version>.json    sidecar: preprocessing stats, categories,
                                        metrics, hyperparameters, grid search, importances

``ArtifactCodec.load`` validates the sidecar against :class:`ArtifactSidecar`
and fails with ``ArtifactNotFound`` / ``CorruptArtifact`` instead of letting a
half-written or hand-edited artifact reach the evaluator.
"""

from __future__ import annotations

import io
import json
from dataclasses import dataclass
from typing import Annotated, Any, Dict, List, Optional

import joblib
from pydantic import BaseModel, ConfigDict, Field, StrictStr, ValidationError, model_validator

from riskml.common.exceptions import ArtifactNotFound, CorruptArtifact
from riskml.common.preprocessing import (
    FeatureStatistics,
    Imputer,
    Normalizer,
    PreprocessingStats,
)
from riskml.common.utils import get_logger, make_version, utcnow_iso


MODELS_PREFIX = "models"

FiniteFloat = Annotated[float, Field(allow_inf_nan=False)]


# =========================
# Sidecar schema
# =========================

class ImputerConfig(BaseModel):
    strategy: str = "mean"
    statistics: List[FiniteFloat] = Field(default_factory=list)
    missing_value: Optional[Any] = None
    fill_value: FiniteFloat = 0.0


class NormalizationConfig(BaseModel):
    type: str = "l2"


class ArtifactSidecar(BaseModel):
    model_config = ConfigDict(extra="allow", protected_namespaces=())

    model_file: StrictStr = Field(min_length=1)
    feature_means: List[FiniteFloat] = Field(min_length=1)
    feature_std_devs: List[FiniteFloat] = Field(min_length=1)
    categories: List[StrictStr] = Field(default_factory=list)
    normalization: NormalizationConfig = Field(default_factory=NormalizationConfig)
    imputer: ImputerConfig = Field(default_factory=ImputerConfig)
    metrics: Dict[str, Any] = Field(default_factory=dict)
    hyperparameters: Dict[str, Any] = Field(default_factory=dict)
    feature_importances: List[Dict[str, Any]] = Field(default_factory=list)
    grid_search: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _lengths_agree(self) -> "ArtifactSidecar":
        if len(self.feature_means) != len(self.feature_std_devs):
            raise ValueError("feature_means and feature_std_devs differ in length")
        stats = self.imputer.statistics
        if stats and len(stats) != len(self.feature_means):
            raise ValueError("imputer statistics length does not match feature_means")
        return self


@dataclass
class LoadedArtifact:
    classifier: Any
    stats: PreprocessingStats
    categories: List[str]
    sidecar: Dict[str, Any]
    path: str

    @property
    def hyperparameters(self) -> Dict[str, Any]:
        return dict(self.sidecar.get("hyperparameters") or {})

    def __iter__(self):
        return iter((self.classifier, self.stats, self.categories))


def _error_summary(e: ValidationError) -> str:
    parts = []
    for err in e.errors()[:5]:
        loc = ".".join(str(x) for x in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}")
    return "; ".join(parts)


# =========================
# Codec
# =========================

class ArtifactCodec:
    def __init__(self, storage):
        self.storage = storage
        self.logger = get_logger("riskml.training.artifact_io")

    @staticmethod
    def artifact_paths(model_id: str, version: str) -> tuple[str, str]:
        base = f"{MODELS_PREFIX}/{model_id}/{version}"
        return f"{base}.json", f"{base}.model"

    def save(
        self,
        classifier: Any,
        stats: PreprocessingStats,
        categories: List[str],
        metrics: Dict[str, Any],
        hyperparameters: Dict[str, Any],
        *,
        model_id: str,
        feature_names: Optional[List[str]] = None,
        training_run_id: Optional[str] = None,
        feature_importances: Optional[List[Dict[str, Any]]] = None,
        grid_search: Optional[Dict[str, Any]] = None,
        category_overflowed: bool = False,
        version: Optional[str] = None,
    ) -> str:
        """Write blob then sidecar; returns the sidecar path."""
        version = version or make_version()
        json_path, model_path = self.artifact_paths(model_id, version)

        buf = io.BytesIO()
        joblib.dump(classifier, buf)
        self.storage.put(model_path, buf.getvalue())

        sidecar: Dict[str, Any] = {
            "model_id": model_id,
            "version": version,
            "training_run_id": training_run_id,
            "trained_at": utcnow_iso(),
            "model_type": hyperparameters.get("model_type"),
            "feature_names": list(feature_names or []),
            "model_file": model_path,
            **stats.to_sidecar(),
            "categories": list(categories),
            "category_overflowed": bool(category_overflowed),
            "metrics": metrics,
            "hyperparameters": hyperparameters,
            "feature_importances": list(feature_importances or []),
            "grid_search": dict(grid_search or {}),
        }
        self.storage.put(json_path, json.dumps(sidecar, indent=2).encode("utf-8"))
        self.logger.info("Saved artifact model_id=%s version=%s -> %s", model_id, version, json_path)
        return json_path

    def load(self, path: str) -> LoadedArtifact:
        if not self.storage.exists(path):
            self.logger.error("Artifact sidecar missing at %s", self.storage.path(path))
            raise ArtifactNotFound("Model artifact was not found.")

        try:
            raw = json.loads(self.storage.get(path).decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise CorruptArtifact(f"Model artifact could not be decoded: {e.__class__.__name__}") from e
        if not isinstance(raw, dict):
            raise CorruptArtifact("Model artifact could not be decoded: expected a JSON object.")

        try:
            sidecar = ArtifactSidecar.model_validate(raw)
        except ValidationError as e:
            raise CorruptArtifact(f"Model artifact failed validation: {_error_summary(e)}") from e

        if not self.storage.exists(sidecar.model_file):
            self.logger.error("Artifact blob missing at %s", self.storage.path(sidecar.model_file))
            raise ArtifactNotFound("Trained model file was not found.")
        try:
            classifier = joblib.load(io.BytesIO(self.storage.get(sidecar.model_file)))
        except Exception as e:
            raise CorruptArtifact(f"Trained model file could not be restored: {e.__class__.__name__}") from e

        try:
            stats = PreprocessingStats(
                imputer=Imputer.from_config(sidecar.imputer.model_dump()),
                stats=FeatureStatistics(means=list(sidecar.feature_means), std_devs=list(sidecar.feature_std_devs)),
                normalizer=Normalizer(sidecar.normalization.type),
            )
        except Exception as e:
            raise CorruptArtifact(f"Model artifact preprocessing config is invalid: {e}") from e

        return LoadedArtifact(
            classifier=classifier,
            stats=stats,
            categories=list(sidecar.categories),
            sidecar=raw,
            path=path,
        )

    def latest_artifact(self, model_id: str) -> Optional[str]:
        """Newest sidecar for ``model_id`` (versions sort lexically by time)."""
        candidates = [p for p in self.storage.list(f"{MODELS_PREFIX}/{model_id}") if p.endswith(".json")]
        return candidates[-1] if candidates else None
