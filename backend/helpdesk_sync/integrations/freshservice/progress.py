"""Live progress of the running sync, readable from any request handler."""

from __future__ import annotations

import datetime as dt
import threading
from dataclasses import asdict, dataclass, field, replace
from typing import Any

TOTAL_STEPS = 5


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


@dataclass(frozen=True)
class SyncProgress:
    step: int = 0
    total_steps: int = TOTAL_STEPS
    phase: str = "idle"
    message: str = ""
    current: int = 0
    total: int = 0
    updated_at: dt.datetime = field(default_factory=_utcnow)

    @property
    def percent(self) -> int:
        if self.total <= 0:
            return 0
        return min(100, round(self.current * 100 / self.total))

    def as_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["percent"] = self.percent
        return payload


class ProgressTracker:
    """Holds one immutable snapshot; writers swap it, readers copy the reference."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._snapshot = SyncProgress()

    def snapshot(self) -> SyncProgress:
        with self._lock:
            return self._snapshot

    def start_step(self, step: int, phase: str, message: str, *, total: int = 0) -> None:
        with self._lock:
            self._snapshot = SyncProgress(step=step, phase=phase, message=message, total=total)

    def update(self, **changes: Any) -> None:
        with self._lock:
            self._snapshot = replace(self._snapshot, updated_at=_utcnow(), **changes)

    def reset(self) -> None:
        with self._lock:
            self._snapshot = SyncProgress()
