from __future__ import annotations

import threading

import pytest

from depthcut.errors import ConfigError, InputError
from depthcut.jobs import LocalJobRunner, LocalJobStore

from conftest import png_bytes


class FakeDepthClient:
    def __init__(self, depth_png: bytes, gate: threading.Event = None):
        self.depth_png = depth_png
        self.gate = gate
        self.started = threading.Event()

    def __call__(self):
        return self

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return None

    def generate_depth(self, image_bytes, *, on_progress=None):
        self.started.set()
        if on_progress is not None:
            on_progress(10, "Encoding image...")
        if self.gate is not None:
            self.gate.wait(5)
        return self.depth_png


def test_job_store_roundtrip(tmp_path):
    store = LocalJobStore(base_dir=tmp_path)
    store.create_job(job_id="j1")

    st = store.get_job(job_id="j1")
    assert st.job_id == "j1"
    assert st.state == "QUEUED"
    assert st.progress == 0.0

    store.update_job(job_id="j1", state="RUNNING", stage="composite", progress=0.5)
    st2 = store.get_job(job_id="j1")
    assert st2.state == "RUNNING"
    assert st2.stage == "composite"
    assert abs(st2.progress - 0.5) < 1e-9

    store.put_event(job_id="j1", sort=1, event={"kind": "log", "stage": "x", "message": "hi"})
    store.put_event(job_id="j1", sort=2, event={"kind": "progress", "stage": "overall", "progress": 0.1})

    evs = store.list_events(job_id="j1", after_sort=0)
    assert [e["sort"] for e in evs] == [1, 2]
    assert [e["sort"] for e in store.list_events(job_id="j1", after_sort=1)] == [2]

    store.delete_job(job_id="j1")
    with pytest.raises(KeyError):
        store.get_job(job_id="j1")


def _runner(tmp_path, factory=None) -> LocalJobRunner:
    store = LocalJobStore(base_dir=tmp_path)
    if factory is None:
        return LocalJobRunner(base_dir=tmp_path, store=store)
    return LocalJobRunner(base_dir=tmp_path, store=store, depth_client_factory=factory)


def test_runner_completes_job(tmp_path, red_image, gradient_depth):
    runner = _runner(tmp_path)
    job_id = runner.submit(
        image_bytes=png_bytes(red_image),
        depth_bytes=png_bytes(gradient_depth),
        cut_config={"layer_count": 4},
        wait=True,
    )
    status = runner.store.get_job(job_id=job_id)
    assert status.state == "SUCCEEDED"
    assert status.progress == 1.0
    assert status.layer_count == 4
    assert len(runner.store.get_result(job_id=job_id)) == 4
    assert (tmp_path / job_id / "manifest.json").exists()

    events = runner.store.list_events(job_id=job_id)
    kinds = {e["event"]["kind"] for e in events}
    assert {"log", "progress", "artifact", "status"} <= kinds
    assert events[-1]["event"]["stage"] == "succeeded"


def test_runner_records_failures(tmp_path, red_image):
    runner = _runner(tmp_path)
    job_id = runner.submit(image_bytes=png_bytes(red_image), depth_bytes=b"not an image", wait=True)
    status = runner.store.get_job(job_id=job_id)
    assert status.state == "FAILED"
    assert "depth image" in status.error
    with pytest.raises(KeyError):
        runner.store.get_result(job_id=job_id)
    assert not (tmp_path / job_id / "manifest.json").exists()


def test_submit_validates_up_front(tmp_path, red_image):
    runner = _runner(tmp_path)
    with pytest.raises(InputError):
        runner.submit(image_bytes=png_bytes(red_image))
    with pytest.raises(InputError):
        runner.submit(image_bytes=b"", depth_bytes=b"x")
    with pytest.raises(ConfigError):
        runner.submit(image_bytes=b"x", depth_bytes=b"x", cut_config={"layer_count": 0})
    assert runner.store.list_jobs() == []


def test_runner_generates_missing_depth(tmp_path, red_image, gradient_depth):
    fake = FakeDepthClient(png_bytes(gradient_depth))
    runner = _runner(tmp_path, fake)
    job_id = runner.submit(
        image_bytes=png_bytes(red_image),
        generate_depth=True,
        cut_config={"layer_count": 2},
        wait=True,
    )
    assert runner.store.get_job(job_id=job_id).state == "SUCCEEDED"
    stages = [e["event"]["stage"] for e in runner.store.list_events(job_id=job_id)]
    assert stages[0] == "depth"


def test_cancel_while_generating(tmp_path, red_image, gradient_depth):
    gate = threading.Event()
    fake = FakeDepthClient(png_bytes(gradient_depth), gate=gate)
    runner = _runner(tmp_path, fake)
    job_id = runner.submit(image_bytes=png_bytes(red_image), generate_depth=True)

    assert fake.started.wait(5)
    assert runner.cancel(job_id) is True
    gate.set()
    runner.join(job_id, timeout=5)

    status = runner.store.get_job(job_id=job_id)
    assert status.state == "CANCELED"
    assert status.finished


def test_discard_removes_everything(tmp_path, red_image, gradient_depth):
    runner = _runner(tmp_path)
    job_id = runner.submit(
        image_bytes=png_bytes(red_image),
        depth_bytes=png_bytes(gradient_depth),
        cut_config={"layer_count": 2},
        wait=True,
    )
    runner.discard(job_id)
    with pytest.raises(KeyError):
        runner.store.get_job(job_id=job_id)
    assert not (tmp_path / job_id).exists()
    assert runner.cancel(job_id) is False


def test_finished_job_releases_working_buffers(tmp_path, red_image, gradient_depth):
    runner = _runner(tmp_path)
    job_id = runner.submit(
        image_bytes=png_bytes(red_image),
        depth_bytes=png_bytes(gradient_depth),
        cut_config={"layer_count": 2},
        wait=True,
    )
    assert runner.store.get_job(job_id=job_id).state == "SUCCEEDED"
    assert job_id not in runner._jobs
    assert job_id not in runner._threads
    assert runner.cancel(job_id) is False
    # The result set stays available.
    assert len(runner.store.get_result(job_id=job_id)) == 2


def test_failed_job_releases_working_buffers(tmp_path, red_image):
    runner = _runner(tmp_path)
    job_id = runner.submit(image_bytes=png_bytes(red_image), depth_bytes=b"not an image", wait=True)
    assert runner.store.get_job(job_id=job_id).state == "FAILED"
    assert job_id not in runner._jobs
    assert job_id not in runner._threads


def test_discard_while_running(tmp_path, red_image, gradient_depth):
    gate = threading.Event()
    fake = FakeDepthClient(png_bytes(gradient_depth), gate=gate)
    runner = _runner(tmp_path, fake)
    job_id = runner.submit(image_bytes=png_bytes(red_image), generate_depth=True)

    assert fake.started.wait(5)
    thread = runner._threads[job_id]
    job = runner._jobs[job_id]
    runner.discard(job_id)

    assert job.canceled
    with pytest.raises(KeyError):
        runner.store.get_job(job_id=job_id)

    gate.set()
    thread.join(5)
    assert not thread.is_alive()

    # The canceled run leaves nothing behind once it unwinds.
    assert runner.store.list_events(job_id=job_id) == []
    with pytest.raises(KeyError):
        runner.store.get_result(job_id=job_id)
    assert not (tmp_path / job_id).exists()
    assert job_id not in runner._jobs
    assert job.depth_field is None
