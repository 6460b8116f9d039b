"""Memory-bounded row store used between dataset parsing and model fitting.

The first ``memory_rows`` rows stay in a Python list; the rest are written as
JSON lines to a private temporary file. Iteration replays both parts in
insertion order and can be restarted any number of times.

Labels are resolved lazily: each stored row keeps its raw label (or ``None``)
and its risk score, and a :class:`LabelPolicy` decides the final 0/1 label when
the row is read back. This lets the derivation threshold be computed after
all rows have been seen.
"""

from __future__ import annotations

import json
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime
from typing import Iterator, List, Optional

from riskml.common.utils import get_logger


DEFAULT_MEMORY_ROWS = 10_000


@dataclass(frozen=True)
class BufferedRow:
    features: List[float]
    risk: float
    raw_label: Optional[int] = None
    timestamp: Optional[str] = None

    def to_json(self) -> str:
        return json.dumps(
            {"f": self.features, "r": self.risk, "l": self.raw_label, "t": self.timestamp},
            allow_nan=True,
        )

    @classmethod
    def from_json(cls, line: str) -> "BufferedRow":
        d = json.loads(line)
        return cls(features=[float(v) for v in d["f"]], risk=float(d["r"]), raw_label=d.get("l"), timestamp=d.get("t"))


@dataclass(frozen=True)
class LabeledRow:
    features: List[float]
    label: int
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class LabelPolicy:
    """
    threshold > 1.0 means no derived positives. When ``force_max_risk_positive``
    is set the first row carrying ``max_risk`` is labelled 1.
    """

    threshold: float = 1.1
    max_risk: float = 0.0
    force_max_risk_positive: bool = False

    def resolve(self, raw_label: Optional[int], risk: float) -> int:
        if raw_label is not None:
            return 1 if raw_label > 0 else 0
        if self.threshold > 1.0:
            return 0
        return 1 if (risk >= self.threshold and risk > 0.0) else 0


class RowBuffer:
    """
    Append-only buffer of parsed rows with transparent spillover to disk.

    Use as a context manager (or call :meth:`close`) so the spill file is
    removed on every exit path.
    """

    def __init__(self, memory_rows: int = DEFAULT_MEMORY_ROWS, *, spill_dir: Optional[str] = None):
        self.memory_rows = max(0, int(memory_rows))
        self.spill_dir = spill_dir
        self.label_policy = LabelPolicy()
        self._memory: List[BufferedRow] = []
        self._spill_path: Optional[str] = None
        self._spill_handle = None
        self._spilled = 0
        self._closed = False
        self.logger = get_logger("riskml.common.buffer")

    # ---------- writing ----------

    def append(self, row: BufferedRow) -> None:
        if self._closed:
            raise RuntimeError("RowBuffer is closed.")
        if len(self._memory) < self.memory_rows:
            self._memory.append(row)
            return
        if self._spill_handle is None:
            fd, self._spill_path = tempfile.mkstemp(prefix="riskml-rows-", suffix=".jsonl", dir=self.spill_dir)
            self._spill_handle = os.fdopen(fd, "w+", encoding="utf-8")
            self.logger.info("Row buffer exceeded %d in-memory rows; spilling to %s", self.memory_rows, self._spill_path)
        self._spill_handle.write(row.to_json() + "\n")
        self._spilled += 1

    def set_label_policy(self, policy: LabelPolicy) -> None:
        self.label_policy = policy

    # ---------- reading ----------

    def iter_buffered(self) -> Iterator[BufferedRow]:
        """Stored rows before label resolution, in insertion order."""
        if self._closed:
            raise RuntimeError("RowBuffer is closed.")
        yield from list(self._memory)
        if self._spill_handle is not None:
            self._spill_handle.flush()
            with open(self._spill_path, "r", encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if line:
                        yield BufferedRow.from_json(line)

    def __iter__(self) -> Iterator[LabeledRow]:
        policy = self.label_policy
        forced = False
        for row in self.iter_buffered():
            label = policy.resolve(row.raw_label, row.risk)
            if policy.force_max_risk_positive and not forced and abs(row.risk - policy.max_risk) < 1e-9:
                label = 1
                forced = True
            ts = datetime.fromisoformat(row.timestamp) if row.timestamp else None
            yield LabeledRow(features=list(row.features), label=label, timestamp=ts)

    def count(self) -> int:
        return len(self._memory) + self._spilled

    def __len__(self) -> int:
        return self.count()

    @property
    def spilled(self) -> bool:
        return self._spill_path is not None

    @property
    def spill_path(self) -> Optional[str]:
        return self._spill_path

    def materialize(self) -> tuple[List[List[float]], List[int]]:
        """Full (features, labels) lists for estimators that need in-memory arrays."""
        samples: List[List[float]] = []
        labels: List[int] = []
        for row in self:
            samples.append(row.features)
            labels.append(row.label)
        return samples, labels

    # ---------- cleanup ----------

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._memory = []
        if self._spill_handle is not None:
            self._spill_handle.close()
            self._spill_handle = None
        if self._spill_path and os.path.exists(self._spill_path):
            os.remove(self._spill_path)

    def __enter__(self) -> "RowBuffer":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
