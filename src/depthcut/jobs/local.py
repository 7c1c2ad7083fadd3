from __future__ import annotations

import logging
import shutil
import threading
import time
import traceback
import uuid
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..artifacts import LocalArtifactStore
from ..clients.replicate_client import ReplicateDepthClient
from ..config import CutConfig
from ..errors import InputError, JobCanceled
from ..events import PipelineEvent, now_ns
from ..pipeline import CutJob, DepthCutPipeline
from ..results import ResultSet
from .models import JobState, JobStatus

logger = logging.getLogger("depthcut.jobs")


def _now_ms() -> int:
    return int(time.time() * 1000)


class LocalJobStore:
    def __init__(self, *, base_dir: Path):
        self.base_dir = base_dir
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self._jobs: Dict[str, JobStatus] = {}
        self._events: Dict[str, List[Dict[str, Any]]] = {}
        self._results: Dict[str, ResultSet] = {}
        self._lock = threading.Lock()

    def create_job(self, *, job_id: str) -> None:
        now = _now_ms()
        status = JobStatus(
            job_id=job_id,
            state="QUEUED",
            stage="queued",
            progress=0.0,
            created_at_ms=now,
            updated_at_ms=now,
        )
        with self._lock:
            self._jobs[job_id] = status
            self._events[job_id] = []

    def update_job(
        self,
        *,
        job_id: str,
        state: Optional[JobState] = None,
        stage: Optional[str] = None,
        progress: Optional[float] = None,
        message: Optional[str] = None,
        error: Optional[str] = None,
        layer_count: Optional[int] = None,
    ) -> None:
        with self._lock:
            if job_id not in self._jobs:
                raise KeyError(f"Job {job_id} not found")
            status = self._jobs[job_id]
            status = replace(
                status,
                state=state or status.state,
                stage=stage or status.stage,
                progress=float(progress) if progress is not None else status.progress,
                message=message if message is not None else status.message,
                error=error if error is not None else status.error,
                layer_count=layer_count if layer_count is not None else status.layer_count,
                updated_at_ms=_now_ms(),
            )
            self._jobs[job_id] = status

    def get_job(self, *, job_id: str) -> JobStatus:
        with self._lock:
            status = self._jobs.get(job_id)
        if not status:
            raise KeyError(f"Job {job_id} not found")
        return status

    def has_job(self, *, job_id: str) -> bool:
        with self._lock:
            return job_id in self._jobs

    def list_jobs(self, *, state: Optional[JobState] = None, limit: int = 50) -> List[JobStatus]:
        with self._lock:
            jobs = list(self._jobs.values())
        if state is not None:
            jobs = [job for job in jobs if job.state == state]
        jobs.sort(key=lambda job: job.updated_at_ms, reverse=True)
        return jobs[:limit]

    def put_event(self, *, job_id: str, sort: int, event: Dict[str, Any]) -> None:
        with self._lock:
            # Late events from a deleted job are dropped.
            if job_id not in self._jobs:
                return
            self._events.setdefault(job_id, []).append({"sort": int(sort), "event": event})

    def list_events(self, *, job_id: str, after_sort: int = 0, limit: int = 200) -> List[Dict[str, Any]]:
        with self._lock:
            items = list(self._events.get(job_id, []))
        items = [item for item in items if int(item.get("sort", 0)) > int(after_sort)]
        items.sort(key=lambda item: int(item.get("sort", 0)))
        return items[:limit]

    def put_result(self, *, job_id: str, result: ResultSet) -> None:
        with self._lock:
            if job_id not in self._jobs:
                raise KeyError(f"Job {job_id} not found")
            self._results[job_id] = result

    def get_result(self, *, job_id: str) -> ResultSet:
        with self._lock:
            result = self._results.get(job_id)
        if result is None:
            raise KeyError(f"No result for job {job_id}")
        return result

    def delete_job(self, *, job_id: str) -> None:
        with self._lock:
            if job_id not in self._jobs:
                raise KeyError(f"Job {job_id} not found")
            self._jobs.pop(job_id, None)
            self._events.pop(job_id, None)
            self._results.pop(job_id, None)
        shutil.rmtree(self.base_dir / job_id, ignore_errors=True)


class LocalJobRunner:
    """Run cut jobs on background threads, recording status and events in a LocalJobStore."""

    def __init__(
        self,
        *,
        base_dir: Path,
        store: LocalJobStore,
        depth_client_factory=ReplicateDepthClient,
    ):
        self.base_dir = base_dir
        self.store = store
        self.depth_client_factory = depth_client_factory
        self._jobs: Dict[str, CutJob] = {}
        self._threads: Dict[str, threading.Thread] = {}
        self._lock = threading.Lock()

    def submit(
        self,
        *,
        image_bytes: bytes,
        depth_bytes: Optional[bytes] = None,
        generate_depth: bool = False,
        cut_config: Optional[Dict[str, Any]] = None,
        wait: bool = False,
    ) -> str:
        """
        Queue a job and return its id. Config problems raise immediately.

        Without `depth_bytes`, `generate_depth` must be set so the depth map is
        requested from the depth-estimation service first.
        """
        if not image_bytes:
            raise InputError("Please upload an image")
        if not depth_bytes and not generate_depth:
            raise InputError("Please upload a depth map or enable depth generation")

        cfg = CutConfig.from_env().merged(cut_config or {})
        job_id = str(uuid.uuid4())
        job = CutJob(config=cfg, color_source=image_bytes, depth_source=depth_bytes, job_id=job_id)

        self.store.create_job(job_id=job_id)
        thread = threading.Thread(
            target=self._run_job,
            kwargs={"job": job, "generate_depth": generate_depth and not depth_bytes},
            daemon=True,
            name=f"depthcut-job-{job_id[:8]}",
        )
        with self._lock:
            self._jobs[job_id] = job
            self._threads[job_id] = thread
        thread.start()
        if wait:
            thread.join()
        return job_id

    def cancel(self, job_id: str) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
        if job is None:
            return False
        job.cancel()
        return True

    def join(self, job_id: str, timeout: Optional[float] = None) -> None:
        with self._lock:
            thread = self._threads.get(job_id)
        if thread is not None:
            thread.join(timeout)

    def discard(self, job_id: str) -> None:
        """Cancel if running, then drop status, events, layers and files."""
        self.cancel(job_id)
        with self._lock:
            job = self._jobs.pop(job_id, None)
            self._threads.pop(job_id, None)
        if job is not None:
            job.discard()
        self.store.delete_job(job_id=job_id)

    def _emit(self, job_id: str, event: PipelineEvent) -> None:
        self.store.put_event(job_id=job_id, sort=event.ts_ns, event=event.to_dict())
        if event.kind == "progress" and event.stage == "overall" and event.progress is not None:
            self.store.update_job(job_id=job_id, progress=float(event.progress))
        elif event.kind == "log" and event.message:
            self.store.update_job(job_id=job_id, stage=event.stage, message=event.message)

    def _run_job(self, *, job: CutJob, generate_depth: bool) -> None:
        job_id = job.job_id
        try:
            self.store.update_job(job_id=job_id, state="RUNNING", stage="starting", progress=0.0)

            if generate_depth:
                self._generate_depth(job)

            pipeline = DepthCutPipeline(job.config)
            result = pipeline.run(
                job=job,
                emit=lambda event: self._emit(job_id, event),
                artifact_store=LocalArtifactStore(self.base_dir / job_id),
            )
            self.store.put_result(job_id=job_id, result=result)
            self._finish(job_id, "SUCCEEDED", "Job succeeded", layer_count=len(result))
        except JobCanceled as exc:
            self._finish(job_id, "CANCELED", str(exc), error=str(exc))
        except Exception as exc:
            logger.debug("job %s traceback:\n%s", job_id, traceback.format_exc(limit=30))
            self._finish(job_id, "FAILED", str(exc), error=str(exc))
        finally:
            # Only the ResultSet in the store outlives the run.
            job.discard()
            with self._lock:
                self._jobs.pop(job_id, None)
                self._threads.pop(job_id, None)
            if not self.store.has_job(job_id=job_id):
                shutil.rmtree(self.base_dir / job_id, ignore_errors=True)

    def _finish(
        self,
        job_id: str,
        state: JobState,
        message: str,
        *,
        error: Optional[str] = None,
        layer_count: Optional[int] = None,
    ) -> None:
        if not self.store.has_job(job_id=job_id):
            # Discarded while running.
            return
        ts = now_ns()
        # The status event lands before the state flips so event streams see it.
        self.store.put_event(
            job_id=job_id,
            sort=ts,
            event={"kind": "status", "stage": state.lower(), "ts_ns": ts, "message": message},
        )
        self.store.update_job(
            job_id=job_id,
            state=state,
            stage=state.lower(),
            progress=1.0 if state == "SUCCEEDED" else None,
            error=error,
            layer_count=layer_count,
        )

    def _generate_depth(self, job: CutJob) -> None:
        job_id = job.job_id

        def on_progress(percent: float, message: str) -> None:
            self._emit(job_id, PipelineEvent(kind="log", stage="depth", ts_ns=now_ns(), message=message))
            self._emit(
                job_id,
                PipelineEvent(kind="progress", stage="depth", ts_ns=now_ns(), progress=percent / 100.0),
            )

        with self.depth_client_factory() as client:
            job.depth_source = client.generate_depth(job.color_source, on_progress=on_progress)
        if job.canceled:
            raise JobCanceled(f"Job {job_id} was canceled")
