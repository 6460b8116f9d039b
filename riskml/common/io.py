"""
I/O utilities shared by training and inference.

- Config:
    load_env_config(): load configs/env.yaml (local-only) with fallback to configs/env.example.yaml,
    with optional environment variable overrides.
    load_mapping_file(): read a YAML/JSON mapping (schema or hyperparameters) supplied on the CLI.

- Storage:
    LocalStorage: the file-storage collaborator (exists/get/put/path/list) rooted at a directory.

- Datasets:
    read_csv_header(), iter_csv_records(): stream a CSV as raw strings in bounded chunks.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

import pandas as pd


# =========================
# Config
# =========================

_ENV_PATH = Path("configs/env.yaml")               # local (not committed)
_ENV_EXAMPLE_PATH = Path("configs/env.example.yaml")  # committed default


def _read_yaml(path: Path) -> Dict[str, Any]:
    import yaml  # PyYAML
    with path.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def load_env_config() -> Dict[str, Any]:
    """
    Load environment config for the pipeline.

    Order of precedence:
      1) Environment variables (RISKML_STORAGE_ROOT, RISKML_LOG_LEVEL, ...) - if present.
      2) configs/env.yaml - developer-local overrides (not committed).
      3) configs/env.example.yaml - repo default.

    Returns:
        dict with keys used across the project (storage_root, log_level, buffer_memory_rows, ...).
    """
    cfg: Dict[str, Any] = {}
    if _ENV_EXAMPLE_PATH.exists():
        cfg.update(_read_yaml(_ENV_EXAMPLE_PATH))
    if _ENV_PATH.exists():
        cfg.update(_read_yaml(_ENV_PATH))

    env_overrides = {
        "storage_root": os.getenv("RISKML_STORAGE_ROOT"),
        "log_level": os.getenv("RISKML_LOG_LEVEL"),
        "buffer_memory_rows": os.getenv("RISKML_BUFFER_ROWS"),
        "progress_ttl_seconds": os.getenv("RISKML_PROGRESS_TTL"),
    }
    for k, v in env_overrides.items():
        if v:
            cfg[k] = v

    cfg.setdefault("storage_root", "storage")
    cfg.setdefault("log_level", "INFO")
    cfg.setdefault("buffer_memory_rows", 10_000)
    cfg.setdefault("progress_ttl_seconds", 600)
    cfg.setdefault("progress_threshold", 5.0)
    cfg["buffer_memory_rows"] = int(cfg["buffer_memory_rows"])
    cfg["progress_ttl_seconds"] = float(cfg["progress_ttl_seconds"])
    cfg["progress_threshold"] = float(cfg["progress_threshold"])
    return cfg


def load_mapping_file(path: Optional[str]) -> Dict[str, Any]:
    """Read a YAML or JSON mapping from ``path``; ``None`` gives an empty dict."""
    if not path:
        return {}
    p = Path(path)
    if p.suffix.lower() == ".json":
        data = json.loads(p.read_text(encoding="utf-8"))
    else:
        data = _read_yaml(p)
    if not isinstance(data, dict):
        raise ValueError(f"Expected a mapping in {path}, got {type(data).__name__}")
    return data


# =========================
# Storage
# =========================

class LocalStorage:
    """
    Disk-backed storage rooted at ``root``. Paths are relative strings such as
    ``models/<model_id>/<version>.json``.
    """

    def __init__(self, root: str | Path):
        self.root = Path(root)

    def path(self, rel: str) -> str:
        return str(self.root / rel)

    def exists(self, rel: str) -> bool:
        return (self.root / rel).is_file()

    def get(self, rel: str) -> bytes:
        return (self.root / rel).read_bytes()

    def put(self, rel: str, data: bytes) -> None:
        target = self.root / rel
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_name(target.name + ".tmp")
        tmp.write_bytes(data)
        os.replace(tmp, target)

    def list(self, prefix: str) -> List[str]:
        """Relative paths of files directly under ``prefix`` (sorted)."""
        base = self.root / prefix
        if not base.is_dir():
            return []
        return sorted(
            str(p.relative_to(self.root)).replace(os.sep, "/")
            for p in base.iterdir()
            if p.is_file()
        )


# =========================
# CSV helpers
# =========================

def read_csv_header(path: str | Path) -> List[str]:
    """Raw header row (no normalization); empty list for an empty file."""
    try:
        df = pd.read_csv(
            path,
            header=None,
            nrows=1,
            dtype=str,
            keep_default_na=False,
            encoding="utf-8",
            encoding_errors="replace",
            on_bad_lines="skip",
        )
    except pd.errors.EmptyDataError:
        return []
    if df.empty:
        return []
    return [str(c) for c in df.iloc[0].tolist()]


def iter_csv_records(path: str | Path, *, chunksize: int = 5_000) -> Iterator[List[Optional[str]]]:
    """
    Yield data rows as lists of raw strings (``None`` for empty or absent cells),
    reading ``chunksize`` rows at a time so memory stays bounded.

    Lines with more fields than the header are dropped; undecodable bytes
    become U+FFFD.
    """
    width = len(read_csv_header(path))
    if width == 0:
        return
    try:
        reader = pd.read_csv(
            path,
            header=None,
            names=list(range(width)),
            skiprows=1,
            index_col=False,
            dtype=str,
            keep_default_na=False,
            skip_blank_lines=True,
            chunksize=chunksize,
            encoding="utf-8",
            encoding_errors="replace",
            on_bad_lines="skip",
        )
        with reader:
            for chunk in reader:
                for values in chunk.itertuples(index=False, name=None):
                    yield [v if isinstance(v, str) and v != "" else None for v in values]
    except pd.errors.EmptyDataError:
        return
