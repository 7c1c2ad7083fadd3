from __future__ import annotations

import json
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Literal, Optional

EventKind = Literal["log", "progress", "artifact", "status"]


@dataclass(frozen=True)
class PipelineEvent:
    """
    A structured event emitted while a cut job runs.

    - kind="progress": stage + progress in [0,1]
    - kind="artifact": stage + artifact metadata (name, uri, size)
    - kind="log": a human-readable message
    - kind="status": coarse job state transitions
    """

    kind: EventKind
    stage: str
    ts_ns: int
    message: Optional[str] = None
    progress: Optional[float] = None
    artifact: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "kind": self.kind,
            "stage": self.stage,
            "ts_ns": self.ts_ns,
        }
        if self.message is not None:
            d["message"] = self.message
        if self.progress is not None:
            d["progress"] = self.progress
        if self.artifact is not None:
            d["artifact"] = self.artifact
        return d

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)


Emitter = Callable[[PipelineEvent], None]

# (percent 0..100, human-readable status)
ProgressCallback = Callable[[float, str], None]


class ThreadSafeEmitter:
    """
    Wrap any Emitter so it can safely be called from multiple threads.

    Used when layers are composited on a thread pool.
    """

    def __init__(self, emit: Emitter):
        self._emit = emit
        self._lock = threading.Lock()

    def __call__(self, event: PipelineEvent) -> None:
        with self._lock:
            self._emit(event)


_last_ns = 0
_ns_lock = threading.Lock()


def now_ns() -> int:
    """Wall clock in nanoseconds, strictly increasing within the process.

    Event sort keys are built from this, so two events never share a key.
    """
    global _last_ns
    with _ns_lock:
        ts = max(time.time_ns(), _last_ns + 1)
        _last_ns = ts
        return ts
