from __future__ import annotations

import json
import logging
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional

from PIL import Image

from .artifacts import ArtifactRef, ArtifactStore
from .borders import BorderStrategy, make_border
from .compositor import composite
from .config import CutConfig
from .depth import DepthField, extract_depth_field
from .errors import DepthCutError, JobCanceled, ResourceError
from .events import Emitter, PipelineEvent, ProgressCallback, ThreadSafeEmitter, now_ns
from .imaging import ImageSource, image_info, load_image
from .ranges import DepthRange, partition
from .results import Layer, ResultSet

logger = logging.getLogger("depthcut.pipeline")


class JobState(str, Enum):
    IDLE = "idle"
    EXTRACTING = "extracting"
    PARTITIONING = "partitioning"
    COMPOSITING = "compositing"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELED = "canceled"


TERMINAL_STATES = {JobState.COMPLETE, JobState.FAILED, JobState.CANCELED}


@dataclass
class CutJob:
    """One cut run. Owned by a single caller; never shared between jobs."""

    config: CutConfig
    color_source: Optional[ImageSource] = None
    depth_source: Optional[ImageSource] = None
    job_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    state: JobState = JobState.IDLE
    error: Optional[str] = None
    color_image: Optional[Image.Image] = field(default=None, repr=False)
    depth_image: Optional[Image.Image] = field(default=None, repr=False)
    depth_field: Optional[DepthField] = field(default=None, repr=False)
    ranges: List[DepthRange] = field(default_factory=list)
    # Index-addressed so concurrent compositors never contend on an append.
    slots: List[Optional[Layer]] = field(default_factory=list, repr=False)
    _cancel: threading.Event = field(default_factory=threading.Event, repr=False)

    @property
    def canceled(self) -> bool:
        return self._cancel.is_set()

    def cancel(self) -> None:
        self._cancel.set()

    @property
    def layers(self) -> List[Layer]:
        return [layer for layer in self.slots if layer is not None]

    def discard(self) -> None:
        """Drop every buffer the job holds."""
        self.color_source = None
        self.depth_source = None
        self.color_image = None
        self.depth_image = None
        self.depth_field = None
        self.slots = []

    def reset(self) -> None:
        self.cancel()
        self.discard()
        self.ranges = []
        self.state = JobState.IDLE
        self.error = None
        self._cancel = threading.Event()


class DepthCutPipeline:
    def __init__(self, config: Optional[CutConfig] = None, *, border: Optional[BorderStrategy] = None):
        self.config = config or CutConfig.from_env()
        self.border = border

    def new_job(self, color: ImageSource, depth: ImageSource, *, job_id: Optional[str] = None) -> CutJob:
        job = CutJob(config=self.config, color_source=color, depth_source=depth)
        if job_id:
            job.job_id = job_id
        return job

    def run(
        self,
        color: Optional[ImageSource] = None,
        depth: Optional[ImageSource] = None,
        *,
        job: Optional[CutJob] = None,
        on_progress: Optional[ProgressCallback] = None,
        emit: Optional[Emitter] = None,
        artifact_store: Optional[ArtifactStore] = None,
    ) -> ResultSet:
        """
        Run a whole job and return its ordered ResultSet.

        - color / depth: paths, encoded bytes or decoded images (ignored if `job` is given)
        - on_progress: called with (percent, message) in ascending layer order
        - emit: optional structured event sink
        - artifact_store: if given, layers + manifest.json are published after the
          last layer completes (never partially)
        """
        if job is None:
            job = self.new_job(color, depth)

        layers = list(self.iter_layers(job, on_progress=on_progress, emit=emit))
        result = ResultSet(layers, ranges=job.ranges)

        if artifact_store is not None:
            self._publish(job, result, artifact_store, emit)
        return result

    def iter_layers(
        self,
        job: CutJob,
        *,
        on_progress: Optional[ProgressCallback] = None,
        emit: Optional[Emitter] = None,
    ) -> Iterator[Layer]:
        """
        Lazily produce the job's layers in ascending ordinal order.

        Single consumption: the job ends in COMPLETE, FAILED or CANCELED.
        """
        if job.state is not JobState.IDLE:
            raise DepthCutError(f"Job {job.job_id} already ran (state={job.state.value})")

        emitter: Emitter = ThreadSafeEmitter(emit) if emit is not None else (lambda _e: None)

        def report(percent: float, message: str, stage: str) -> None:
            percent = max(0.0, min(100.0, percent))
            if on_progress is not None:
                on_progress(percent, message)
            emitter(PipelineEvent(kind="log", stage=stage, ts_ns=now_ns(), message=message))
            emitter(PipelineEvent(kind="progress", stage="overall", ts_ns=now_ns(), progress=percent / 100.0))

        def transition(state: JobState) -> None:
            job.state = state
            emitter(PipelineEvent(kind="status", stage=state.value, ts_ns=now_ns(), message=f"Job {state.value}"))

        try:
            # Config problems are rejected before any image work starts.
            cfg = CutConfig.build(**job.config.model_dump())
            border = self.border or make_border(cfg.border_mode, cfg.border_color)
            partition(cfg.layer_count, cfg.depth_overlap)

            logger.info(
                "job %s layers=%d overlap=%s border=%d concurrency=%d",
                job.job_id,
                cfg.layer_count,
                cfg.depth_overlap,
                cfg.border_width,
                cfg.concurrency,
            )

            transition(JobState.EXTRACTING)
            report(10, "Loading images...", "extract")
            job.color_image = load_image(job.color_source, label="color image")
            job.depth_image = load_image(job.depth_source, label="depth image")
            color_info = image_info(job.color_image)
            depth_info = image_info(job.depth_image)
            logger.info(
                "color %dx%d (%sMP) depth %dx%d (%sMP)",
                color_info["width"],
                color_info["height"],
                color_info["megapixels"],
                depth_info["width"],
                depth_info["height"],
                depth_info["megapixels"],
            )
            self._check_canceled(job)

            report(20, "Resizing depth map...", "extract")
            job.depth_field = extract_depth_field(
                job.color_image,
                job.depth_image,
                channel=cfg.depth_channel,
                invert=cfg.depth_invert,
            )
            report(30, "Converting depth data...", "extract")
            self._check_canceled(job)

            transition(JobState.PARTITIONING)
            job.ranges = partition(cfg.layer_count, cfg.depth_overlap)
            logger.info("depth ranges: [%s]", ", ".join(r.label for r in job.ranges))

            transition(JobState.COMPOSITING)
            total = len(job.ranges)
            job.slots = [None] * total
            for layer in self._composite_all(job, cfg, border):
                job.slots[layer.index] = layer
                report(
                    30 + (layer.ordinal / total) * 60,
                    f"Processed layer {layer.ordinal}/{total} (depth {layer.label})",
                    "composite",
                )
                yield layer

            transition(JobState.COMPLETE)
            report(100, "Done", "done")
            logger.info("job %s produced %d layers", job.job_id, total)

        except JobCanceled:
            job.discard()
            transition(JobState.CANCELED)
            logger.info("job %s canceled", job.job_id)
            raise
        except DepthCutError as exc:
            self._fail(job, exc, transition)
            raise
        except MemoryError as exc:
            err = ResourceError(f"Depth cut failed: out of memory ({exc})")
            self._fail(job, err, transition)
            raise err from exc
        except Exception as exc:
            err = DepthCutError(f"Depth cut failed: {exc}")
            self._fail(job, err, transition)
            raise err from exc
        finally:
            # A consumer that stops iterating early leaves the job unfinished.
            if job.state not in TERMINAL_STATES:
                job.discard()
                transition(JobState.CANCELED)
                logger.info("job %s abandoned before completion", job.job_id)

    def _composite_all(self, job: CutJob, cfg: CutConfig, border: BorderStrategy) -> Iterator[Layer]:
        assert job.color_image is not None and job.depth_field is not None
        color = job.color_image
        field_ = job.depth_field

        def work(rng: DepthRange) -> Layer:
            return composite(
                color,
                field_,
                rng,
                cfg.border_width,
                border=border,
                preview_size=cfg.preview_size,
            )

        if cfg.concurrency <= 1 or len(job.ranges) <= 1:
            for rng in job.ranges:
                self._check_canceled(job)
                yield work(rng)
            return

        ex = ThreadPoolExecutor(max_workers=cfg.concurrency, thread_name_prefix=f"depthcut-{job.job_id[:8]}")
        try:
            futures: List[Future] = [ex.submit(work, rng) for rng in job.ranges]
            # Waiting on futures in submission order keeps progress ascending.
            for fut in futures:
                self._check_canceled(job)
                yield fut.result()
        finally:
            ex.shutdown(wait=True, cancel_futures=True)

    @staticmethod
    def _check_canceled(job: CutJob) -> None:
        if job.canceled:
            raise JobCanceled(f"Job {job.job_id} was canceled")

    @staticmethod
    def _fail(job: CutJob, exc: Exception, transition) -> None:
        job.discard()
        job.error = str(exc)
        transition(JobState.FAILED)
        logger.error("job %s failed: %s", job.job_id, exc)

    def _publish(
        self,
        job: CutJob,
        result: ResultSet,
        store: ArtifactStore,
        emit: Optional[Emitter],
    ) -> List[ArtifactRef]:
        refs: List[ArtifactRef] = []

        def put(name: str, data: bytes, content_type: str) -> ArtifactRef:
            ref = store.put_bytes(name=name, data=data, content_type=content_type)
            refs.append(ref)
            if emit is not None:
                emit(PipelineEvent(kind="artifact", stage="artifact", ts_ns=now_ns(), artifact=ref.to_dict()))
            return ref

        for layer in result:
            put(f"layers/{layer.filename}", layer.png, "image/png")
            put(f"previews/{layer.filename}", layer.preview_png, "image/png")

        manifest: Dict[str, Any] = {
            "job_id": job.job_id,
            "config": job.config.model_dump(mode="json"),
            "layers": [l.to_dict() for l in result],
            "stats": result.stats(),
        }
        put(
            "manifest.json",
            json.dumps(manifest, ensure_ascii=False, indent=2).encode("utf-8"),
            "application/json",
        )
        return refs
