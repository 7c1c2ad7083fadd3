from __future__ import annotations

import json

import pytest
from PIL import Image

from depthcut.artifacts import LocalArtifactStore
from depthcut.config import CutConfig
from depthcut.errors import ConfigError, DepthCutError, InputError, JobCanceled
from depthcut.pipeline import DepthCutPipeline, JobState

from conftest import png_bytes


def _pipeline(**cfg) -> DepthCutPipeline:
    return DepthCutPipeline(CutConfig.build(**cfg))


def test_run_produces_ordered_layers(red_image, gradient_depth):
    result = _pipeline(layer_count=4, depth_overlap=0).run(red_image, gradient_depth)
    assert [l.ordinal for l in result] == [1, 2, 3, 4]
    assert [l.label for l in result] == ["0~25", "25~50", "50~75", "75~100"]
    assert all(l.opaque_pixels == 2500 for l in result)


def test_accepts_encoded_bytes(red_image, gradient_depth):
    result = _pipeline(layer_count=2).run(png_bytes(red_image), png_bytes(gradient_depth))
    assert len(result) == 2


def test_accepts_paths(tmp_path, red_image, gradient_depth):
    color = tmp_path / "color.png"
    depth = tmp_path / "depth.png"
    red_image.save(color)
    gradient_depth.save(depth)
    assert len(_pipeline(layer_count=3).run(color, depth)) == 3


def test_progress_sequence(red_image, gradient_depth):
    calls = []
    _pipeline(layer_count=4, depth_overlap=0).run(
        red_image, gradient_depth, on_progress=lambda p, m: calls.append((p, m))
    )
    percents = [p for p, _ in calls]
    assert percents == [10, 20, 30, 45, 60, 75, 90, 100]
    assert calls[0][1] == "Loading images..."
    assert calls[3][1] == "Processed layer 1/4 (depth 0~25)"
    assert calls[-1][1] == "Done"


def test_concurrent_run_keeps_order(red_image, gradient_depth):
    calls = []
    sequential = _pipeline(layer_count=8, border_width=2).run(red_image, gradient_depth)
    concurrent = _pipeline(layer_count=8, border_width=2, concurrency=4).run(
        red_image, gradient_depth, on_progress=lambda p, m: calls.append(p)
    )
    assert [l.png for l in concurrent] == [l.png for l in sequential]
    assert calls == sorted(calls)


def test_job_states(red_image, gradient_depth):
    pipeline = _pipeline(layer_count=2)
    job = pipeline.new_job(red_image, gradient_depth)
    states = []
    pipeline.run(job=job, emit=lambda e: states.append(e.stage) if e.kind == "status" else None)
    assert states == ["extracting", "partitioning", "compositing", "complete"]
    assert job.state is JobState.COMPLETE
    assert len(job.layers) == 2


def test_job_runs_once(red_image, gradient_depth):
    pipeline = _pipeline(layer_count=2)
    job = pipeline.new_job(red_image, gradient_depth)
    pipeline.run(job=job)
    with pytest.raises(DepthCutError):
        pipeline.run(job=job)
    job.reset()
    assert job.state is JobState.IDLE


def test_missing_depth_fails(red_image):
    pipeline = _pipeline(layer_count=2)
    job = pipeline.new_job(red_image, None)
    with pytest.raises(InputError):
        pipeline.run(job=job)
    assert job.state is JobState.FAILED
    assert job.error
    assert job.layers == []


def test_unreadable_image_fails(gradient_depth):
    with pytest.raises(InputError):
        _pipeline().run(b"definitely not a png", gradient_depth)


def test_config_checked_before_loading():
    pipeline = _pipeline()
    job = pipeline.new_job(b"garbage", b"garbage")
    job.config = job.config.model_copy(update={"layer_count": 0})
    with pytest.raises(ConfigError):
        pipeline.run(job=job)
    assert job.state is JobState.FAILED


def test_cancel_discards_layers(red_image, gradient_depth):
    pipeline = _pipeline(layer_count=4)
    job = pipeline.new_job(red_image, gradient_depth)

    def on_progress(percent, message):
        if message.startswith("Processed layer 1/"):
            job.cancel()

    with pytest.raises(JobCanceled):
        pipeline.run(job=job, on_progress=on_progress)
    assert job.state is JobState.CANCELED
    assert job.layers == []


def test_iter_layers_is_lazy(red_image, gradient_depth):
    pipeline = _pipeline(layer_count=4)
    job = pipeline.new_job(red_image, gradient_depth)
    it = pipeline.iter_layers(job)
    first = next(it)
    assert first.ordinal == 1
    assert job.state is JobState.COMPOSITING
    it.close()
    assert job.state is JobState.CANCELED


def test_abandoned_iteration_emits_canceled_status(red_image, gradient_depth):
    events = []
    pipeline = _pipeline(layer_count=4)
    job = pipeline.new_job(red_image, gradient_depth)
    it = pipeline.iter_layers(job, emit=events.append)
    next(it)
    it.close()

    statuses = [e.stage for e in events if e.kind == "status"]
    assert statuses == ["extracting", "partitioning", "compositing", "canceled"]
    assert job.layers == []


def test_publishes_artifacts(tmp_path, red_image, gradient_depth):
    events = []
    store = LocalArtifactStore(tmp_path)
    result = _pipeline(layer_count=3).run(red_image, gradient_depth, emit=events.append, artifact_store=store)

    for layer in result:
        assert (tmp_path / "layers" / layer.filename).read_bytes() == layer.png
        assert (tmp_path / "previews" / layer.filename).exists()
    manifest = json.loads((tmp_path / "manifest.json").read_text(encoding="utf-8"))
    assert manifest["config"]["layer_count"] == 3
    assert [l["filename"] for l in manifest["layers"]] == ["0000.png", "0001.png", "0002.png"]
    assert manifest["stats"]["total_layers"] == 3

    artifacts = [e.artifact["name"] for e in events if e.kind == "artifact"]
    assert artifacts[-1] == "manifest.json"
    assert len(artifacts) == 7


def test_failed_run_publishes_nothing(tmp_path, red_image):
    store = LocalArtifactStore(tmp_path)
    with pytest.raises(InputError):
        _pipeline().run(red_image, Image.new("L", (1, 1)).tobytes(), artifact_store=store)
    assert not (tmp_path / "manifest.json").exists()
    assert not (tmp_path / "layers").exists()
