from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, File, Form, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response, StreamingResponse

from ..clients.replicate_client import ReplicateDepthClient
from ..errors import ConfigError, DepthGenerationError, InputError
from ..jobs.local import LocalJobRunner, LocalJobStore
from ..ranges import partition
from ..results import ResultSet
from ..stack import stack_layout

app = FastAPI(title="depthcut", version="0.2.0")
logger = logging.getLogger("depthcut.api")


def _cors_origins() -> list[str]:
    raw = os.getenv("DEPTHCUT_CORS_ORIGINS", "").strip()
    if not raw:
        return ["*"]
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["Content-Disposition"],
)


def _configure_logging() -> None:
    level_name = os.getenv("DEPTHCUT_LOG_LEVEL", "info").upper()
    level = getattr(logging, level_name, logging.INFO)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    logging.getLogger("depthcut").setLevel(level)
    logger.setLevel(level)


_configure_logging()

LOCAL_BASE_DIR = Path(os.getenv("DEPTHCUT_LOCAL_DIR", "local-data/depthcut")).resolve()
LOCAL_STORE = LocalJobStore(base_dir=LOCAL_BASE_DIR)
LOCAL_RUNNER = LocalJobRunner(base_dir=LOCAL_BASE_DIR, store=LOCAL_STORE)
DEPTH_CLIENT_FACTORY = ReplicateDepthClient


def _parse_json_dict(raw: Optional[str], *, label: str) -> Optional[Dict[str, Any]]:
    if not raw:
        return None
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid {label} JSON") from exc
    if not isinstance(parsed, dict):
        raise HTTPException(status_code=400, detail=f"{label} must be a JSON object")
    return parsed


def _parse_indices(raw: Optional[str]) -> Optional[List[int]]:
    if raw is None or not raw.strip():
        return None
    try:
        return [int(part) for part in raw.split(",") if part.strip()]
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="layers must be comma-separated integers") from exc


def _job_or_404(job_id: str) -> Dict[str, Any]:
    try:
        return LOCAL_STORE.get_job(job_id=job_id).to_dict()
    except KeyError:
        raise HTTPException(status_code=404, detail="Job not found")


def _result_or_404(job_id: str) -> ResultSet:
    _job_or_404(job_id)
    try:
        return LOCAL_STORE.get_result(job_id=job_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Result not ready")


def _layer_links(job_id: str, result: ResultSet) -> List[Dict[str, Any]]:
    items = []
    for layer in result:
        d = layer.to_dict()
        d["url"] = f"/v1/jobs/{job_id}/layers/{layer.filename}"
        d["preview_url"] = f"/v1/jobs/{job_id}/previews/{layer.filename}"
        items.append(d)
    return items


@app.get("/healthz")
def healthz() -> Dict[str, str]:
    return {"ok": "true"}


@app.get("/v1/ranges")
def get_ranges(layer_count: int = 8, overlap: float = 1.0) -> List[Dict[str, Any]]:
    try:
        return [r.to_dict() for r in partition(layer_count, overlap)]
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


@app.post("/v1/depth")
async def generate_depth(image: UploadFile = File(...)) -> Response:
    """Run only the depth-estimation step and return the depth map."""
    raw = await image.read()
    if not raw:
        raise HTTPException(status_code=400, detail="Empty upload")
    try:
        with DEPTH_CLIENT_FACTORY() as client:
            data = await asyncio.to_thread(client.generate_depth, raw)
    except (ConfigError, InputError) as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except DepthGenerationError as exc:
        raise HTTPException(status_code=502, detail=str(exc))
    return Response(content=data, media_type="image/png")


@app.post("/v1/jobs")
async def create_job(
    image: Optional[UploadFile] = File(None),
    depth: Optional[UploadFile] = File(None),
    generate_depth: bool = Form(False),
    cutConfig: Optional[str] = Form(None),
    layer_count: Optional[int] = Form(None),
    depth_overlap: Optional[float] = Form(None),
    border_width: Optional[int] = Form(None),
    wait: bool = Form(False),
) -> Dict[str, Any]:
    """
    Create an async cut job. Upload an image plus a depth map (or set
    `generate_depth`) and receive a job_id immediately.
    """
    if image is None:
        raise HTTPException(status_code=400, detail="Missing image upload")
    raw = await image.read()
    if not raw:
        raise HTTPException(status_code=400, detail="Empty upload")
    depth_raw = await depth.read() if depth is not None else None

    overrides: Dict[str, Any] = {}
    cut_cfg = _parse_json_dict(cutConfig, label="cutConfig")
    if cut_cfg:
        overrides.update(cut_cfg)
    if layer_count is not None:
        overrides["layer_count"] = int(layer_count)
    if depth_overlap is not None:
        overrides["depth_overlap"] = float(depth_overlap)
    if border_width is not None:
        overrides["border_width"] = int(border_width)

    try:
        job_id = await asyncio.to_thread(
            LOCAL_RUNNER.submit,
            image_bytes=raw,
            depth_bytes=depth_raw or None,
            generate_depth=generate_depth,
            cut_config=overrides,
            wait=wait,
        )
    except (ConfigError, InputError) as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    logger.info(
        "create_job job_id=%s filename=%s depth=%s overrides_keys=%s",
        job_id,
        image.filename or "input.png",
        "upload" if depth_raw else "generate",
        sorted(overrides.keys()),
    )
    logger.debug("create_job overrides=%s", overrides)
    return {"job_id": job_id}


@app.get("/v1/jobs")
def list_jobs(status: Optional[str] = None, limit: int = 25) -> List[Dict[str, Any]]:
    if limit < 1:
        raise HTTPException(status_code=400, detail="limit must be >= 1")
    state = status.upper() if status else None
    return [job.to_dict() for job in LOCAL_STORE.list_jobs(state=state, limit=limit)]


@app.get("/v1/jobs/{job_id}")
def get_job(job_id: str) -> Dict[str, Any]:
    d = _job_or_404(job_id)
    if d["state"] == "SUCCEEDED":
        result = LOCAL_STORE.get_result(job_id=job_id)
        d["result"] = {
            "layers": _layer_links(job_id, result),
            "stats": result.stats(),
            "bundle_url": f"/v1/jobs/{job_id}/bundle",
        }
    return d


@app.delete("/v1/jobs/{job_id}")
def delete_job(job_id: str) -> Dict[str, Any]:
    _job_or_404(job_id)
    LOCAL_RUNNER.discard(job_id)
    logger.info("delete_job job_id=%s", job_id)
    return {"job_id": job_id, "deleted": True}


@app.get("/v1/jobs/{job_id}/layers")
def list_layers(job_id: str) -> List[Dict[str, Any]]:
    return _layer_links(job_id, _result_or_404(job_id))


@app.get("/v1/jobs/{job_id}/layers/{filename}")
def get_layer(job_id: str, filename: str) -> Response:
    layer = _result_or_404(job_id).by_filename(filename)
    if layer is None:
        raise HTTPException(status_code=404, detail="Layer not found")
    return Response(content=layer.png, media_type="image/png")


@app.get("/v1/jobs/{job_id}/previews/{filename}")
def get_preview(job_id: str, filename: str) -> Response:
    layer = _result_or_404(job_id).by_filename(filename)
    if layer is None:
        raise HTTPException(status_code=404, detail="Layer not found")
    return Response(content=layer.preview_png, media_type="image/png")


@app.get("/v1/jobs/{job_id}/bundle")
def get_bundle(job_id: str, layers: Optional[str] = None) -> Response:
    """ZIP of all layers, or of the comma-separated 0-based `layers` selection."""
    result = _result_or_404(job_id)
    indices = _parse_indices(layers)
    try:
        data = result.to_zip(indices)
    except InputError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    name = result.bundle_filename(selected=indices is not None)
    return Response(
        content=data,
        media_type="application/zip",
        headers={"Content-Disposition": f'attachment; filename="{name}"'},
    )


@app.get("/v1/jobs/{job_id}/stack")
def get_stack(job_id: str, spacing: float = 0.5) -> Dict[str, Any]:
    return stack_layout(_result_or_404(job_id), spacing_ratio=spacing)


@app.get("/v1/jobs/{job_id}/events")
async def stream_events(job_id: str, after: int = 0) -> StreamingResponse:
    """
    Server-Sent Events (SSE) stream of job logs/progress/artifact/status events.

    Use `after` as the last seen sort key (nanoseconds). The stream ends once
    the job has finished and every event has been sent.
    """
    _job_or_404(job_id)

    async def gen():
        last = int(after)
        while True:
            events = LOCAL_STORE.list_events(job_id=job_id, after_sort=last, limit=200)
            if not events:
                try:
                    finished = LOCAL_STORE.get_job(job_id=job_id).finished
                except KeyError:
                    break
                if finished:
                    break
                yield ": keep-alive\n\n"
                await asyncio.sleep(1.0)
                continue
            for item in events:
                last = int(item["sort"])
                data = json.dumps(item, ensure_ascii=False)
                yield f"id: {last}\n"
                yield "event: job\n"
                yield f"data: {data}\n\n"
            await asyncio.sleep(0.2)

    return StreamingResponse(gen(), media_type="text/event-stream")
