from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Literal, Optional

JobState = Literal["QUEUED", "RUNNING", "SUCCEEDED", "FAILED", "CANCELED"]

FINISHED_STATES = {"SUCCEEDED", "FAILED", "CANCELED"}


@dataclass(frozen=True)
class JobStatus:
    job_id: str
    state: JobState
    stage: str
    progress: float  # 0..1
    created_at_ms: int
    updated_at_ms: int
    message: Optional[str] = None
    error: Optional[str] = None
    layer_count: int = 0

    @property
    def finished(self) -> bool:
        return self.state in FINISHED_STATES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "state": self.state,
            "stage": self.stage,
            "progress": self.progress,
            "message": self.message,
            "created_at_ms": self.created_at_ms,
            "updated_at_ms": self.updated_at_ms,
            "error": self.error,
            "layer_count": self.layer_count,
        }
