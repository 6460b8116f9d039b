"""
Throttled progress reporting for long-running training / evaluation runs.

Every report is written to a short-TTL snapshot cache keyed
``progress.<entity_id>.<stage>``; only significant changes are forwarded to
the broadcaster (first report for a key, a move of >= ``threshold`` points
from the last forwarded value, or reaching 100). Throttle baselines live on the
tracker instance and are keyed per (entity, stage), so concurrent runs sharing
one tracker never interfere.

Cache writes and broadcasts are best-effort: a failure is logged and the run
continues.
"""

from __future__ import annotations

import math
import threading
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Optional, Protocol, Tuple

from riskml.common.utils import best_effort, get_logger, utcnow_iso


STATUS_REPORTING = "reporting"
STATUS_DONE = "done"
STATUS_FAILED = "failed"


@dataclass
class ProgressSnapshot:
    percent: float
    message: Optional[str] = None
    current_epoch: Optional[int] = None
    total_epochs: Optional[int] = None
    loss: Optional[float] = None
    accuracy: Optional[float] = None
    status: str = STATUS_REPORTING
    updated_at: str = ""


@dataclass
class ProgressEvent:
    entity_id: str
    stage: str
    percent: float
    message: Optional[str]
    metrics: Optional[Dict[str, Any]]
    updated_at: str
    status: str = STATUS_REPORTING

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class Broadcaster(Protocol):
    def publish(self, event: ProgressEvent) -> None: ...


class SnapshotCache:
    """In-process key/value store with per-entry expiry (monotonic clock)."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._data: Dict[str, Tuple[float, Any]] = {}
        self._lock = threading.Lock()

    def put(self, key: str, value: Any, ttl_seconds: float) -> None:
        with self._lock:
            self._data[key] = (self._clock() + ttl_seconds, value)

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            expires, value = entry
            if self._clock() >= expires:
                del self._data[key]
                return None
            return value


def clamp_percent(percent: Any) -> float:
    """NaN -> 0, +inf -> 100, otherwise clamp to [0, 100] and round to 2 decimals."""
    try:
        p = float(percent)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(p):
        return 0.0
    if math.isinf(p):
        return 100.0 if p > 0 else 0.0
    return max(0.0, min(100.0, round(p, 2)))


def _metrics_payload(metrics: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not metrics:
        return None
    return {k: metrics.get(k) for k in ("current_epoch", "total_epochs", "loss", "accuracy")}


class ProgressTracker:
    def __init__(
        self,
        broadcaster: Optional[Broadcaster] = None,
        cache: Optional[SnapshotCache] = None,
        *,
        ttl_seconds: float = 600.0,
        threshold: float = 5.0,
    ):
        self.broadcaster = broadcaster
        self.cache = cache if cache is not None else SnapshotCache()
        self.ttl_seconds = float(ttl_seconds)
        self.threshold = float(threshold)
        self.logger = get_logger("riskml.common.progress")
        self._last_forwarded: Dict[Tuple[str, str], float] = {}
        self._last_reported: Dict[Tuple[str, str], float] = {}
        self._lock = threading.Lock()

    @staticmethod
    def cache_key(entity_id: str, stage: str) -> str:
        return f"progress.{entity_id}.{stage}"

    # ---------- side effects ----------

    @best_effort("progress cache write", "riskml.common.progress")
    def _store(self, key: str, snapshot: ProgressSnapshot) -> None:
        self.cache.put(key, snapshot, self.ttl_seconds)

    @best_effort("progress broadcast", "riskml.common.progress")
    def _publish(self, event: ProgressEvent) -> None:
        if self.broadcaster is not None:
            self.broadcaster.publish(event)

    # ---------- public API ----------

    def report(
        self,
        entity_id: str,
        stage: str,
        percent: Any,
        message: Optional[str] = None,
        metrics: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Record a checkpoint; returns True when it was forwarded to the broadcaster."""
        key = (str(entity_id), str(stage))
        pct = clamp_percent(percent)
        with self._lock:
            pct = max(pct, self._last_reported.get(key, 0.0))
            self._last_reported[key] = pct
            last = self._last_forwarded.get(key)
            forward = last is None or abs(pct - last) >= self.threshold or pct >= 100.0
            if forward:
                self._last_forwarded[key] = pct

        now = utcnow_iso()
        m = metrics or {}
        self._store(
            self.cache_key(*key),
            ProgressSnapshot(
                percent=pct,
                message=message,
                current_epoch=m.get("current_epoch"),
                total_epochs=m.get("total_epochs"),
                loss=m.get("loss"),
                accuracy=m.get("accuracy"),
                updated_at=now,
            ),
        )
        if forward:
            self._publish(ProgressEvent(key[0], key[1], pct, message, _metrics_payload(metrics), now))
        return forward

    def callback(self, entity_id: str, stage: str) -> Callable[..., bool]:
        """``progress(percent, message=None, metrics=None)`` bound to one entity/stage."""

        def _cb(percent: float, message: Optional[str] = None, metrics: Optional[Dict[str, Any]] = None) -> bool:
            return self.report(entity_id, stage, percent, message, metrics)

        return _cb

    def done(self, entity_id: str, stage: str, message: Optional[str] = None) -> None:
        key = (str(entity_id), str(stage))
        self.report(entity_id, stage, 100.0, message)
        self._finish(key, STATUS_DONE, 100.0, message)

    def fail(self, entity_id: str, stage: str, message: Optional[str] = None) -> None:
        """Terminal failure; always forwarded regardless of the throttle."""
        key = (str(entity_id), str(stage))
        with self._lock:
            pct = self._last_reported.get(key, 0.0)
        self._finish(key, STATUS_FAILED, pct, message)
        self._publish(ProgressEvent(key[0], key[1], pct, message, None, utcnow_iso(), STATUS_FAILED))

    def _finish(self, key: Tuple[str, str], status: str, pct: float, message: Optional[str]) -> None:
        with self._lock:
            self._last_forwarded.pop(key, None)
            self._last_reported.pop(key, None)
        self._store(
            self.cache_key(*key),
            ProgressSnapshot(percent=pct, message=message, status=status, updated_at=utcnow_iso()),
        )

    def snapshot(self, entity_id: str, stage: str) -> Optional[ProgressSnapshot]:
        return self.cache.get(self.cache_key(str(entity_id), str(stage)))

    def status(self, entity_id: str, stage: str) -> str:
        """idle | reporting | done | failed (idle once the snapshot has expired)."""
        snap = self.snapshot(entity_id, stage)
        return snap.status if snap is not None else "idle"


class LoggingBroadcaster:
    """Broadcaster that writes forwarded events to the project log."""

    def __init__(self, name: str = "riskml.progress"):
        self.logger = get_logger(name)

    def publish(self, event: ProgressEvent) -> None:
        self.logger.info(
            "[%s:%s] %.2f%% %s%s",
            event.entity_id,
            event.stage,
            event.percent,
            event.message or "",
            f" ({event.status})" if event.status != STATUS_REPORTING else "",
        )
