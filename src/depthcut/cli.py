from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional

import typer
from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn, TimeElapsedColumn
from rich.table import Table

from .artifacts import ArtifactStore, LocalArtifactStore, S3ArtifactStore
from .clients.replicate_client import ReplicateDepthClient
from .config import CutConfig
from .errors import DepthCutError
from .events import PipelineEvent
from .logging import get_logger, setup_logging
from .pipeline import DepthCutPipeline
from .ranges import partition
from .results import layer_filename

app = typer.Typer(no_args_is_help=True, add_completion=False)
console = Console()
logger = get_logger("cli")


def _progress() -> Progress:
    return Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TextColumn("{task.percentage:>3.0f}%"),
        TimeElapsedColumn(),
        console=console,
    )


def _parse_select(raw: Optional[str]) -> Optional[List[int]]:
    if not raw:
        return None
    try:
        return [int(part) for part in raw.split(",") if part.strip()]
    except ValueError:
        raise typer.BadParameter("--select takes comma-separated layer indices, e.g. 0,2,5")


def _fetch_depth(image: Path) -> bytes:
    with _progress() as progress:
        task_id = progress.add_task("depth", total=100)

        def on_progress(percent: float, message: str) -> None:
            progress.update(task_id, completed=percent, description=message)

        with ReplicateDepthClient() as client:
            return client.generate_depth(image.read_bytes(), on_progress=on_progress)


@app.command()
def cut(
    image: Path = typer.Option(..., "--image", exists=True, readable=True, dir_okay=False, help="Color image path"),
    depth: Optional[Path] = typer.Option(
        None, "--depth", exists=True, readable=True, dir_okay=False, help="Depth map path"
    ),
    generate: bool = typer.Option(False, "--generate", help="Generate the depth map with Replicate"),
    out: Path = typer.Option(..., "--out", help="Output folder for layers (will be created)"),
    layers: Optional[int] = typer.Option(None, "--layers", help="Number of depth layers"),
    overlap: Optional[float] = typer.Option(None, "--overlap", help="Depth overlap added to each range"),
    border: Optional[int] = typer.Option(None, "--border", help="Border width in pixels"),
    border_mode: Optional[str] = typer.Option(None, "--border-mode", help="Border mode (outline|extend)"),
    border_color: Optional[str] = typer.Option(None, "--border-color", help="Outline color, #rrggbb[aa] or r,g,b[,a]"),
    channel: Optional[str] = typer.Option(None, "--channel", help="Depth channel (R|G|B|A|L)"),
    invert: Optional[bool] = typer.Option(None, "--invert/--no-invert", help="Flip depth polarity"),
    concurrency: Optional[int] = typer.Option(None, "--concurrency", help="Compositor threads"),
    zip_bundle: bool = typer.Option(False, "--zip", help="Also write a ZIP bundle of the layers"),
    select: Optional[str] = typer.Option(None, "--select", help="Comma-separated layer indices for the ZIP"),
    s3_bucket: Optional[str] = typer.Option(None, "--s3-bucket", help="Also publish layers to this S3 bucket"),
    s3_prefix: str = typer.Option("depthcut", "--s3-prefix", help="Key prefix for S3 publishing"),
    log_level: str = typer.Option("INFO", help="Logging level (DEBUG, INFO, WARNING, ERROR)"),
):
    """Cut an image into depth layers and write them as PNGs."""
    setup_logging(log_level)
    if depth is None and not generate:
        raise typer.BadParameter("pass --depth or --generate")
    indices = _parse_select(select)

    overrides: Dict[str, Any] = {
        "layer_count": layers,
        "depth_overlap": overlap,
        "border_width": border,
        "border_mode": border_mode,
        "border_color": border_color,
        "depth_channel": channel.upper() if channel else None,
        "depth_invert": invert,
        "concurrency": concurrency,
    }
    try:
        cfg = CutConfig.from_env().merged(overrides)
        depth_source: Any = depth if depth is not None else _fetch_depth(image)

        pipeline = DepthCutPipeline(cfg)
        job = pipeline.new_job(image, depth_source)
        store: ArtifactStore = LocalArtifactStore(out)
        if s3_bucket:
            store = S3ArtifactStore(
                bucket=s3_bucket,
                prefix=s3_prefix,
                job_id=job.job_id,
                mirror=LocalArtifactStore(out),
            )

        with _progress() as progress:
            task_id = progress.add_task("cut", total=100)

            def emit(ev: PipelineEvent) -> None:
                if ev.kind == "progress" and ev.progress is not None:
                    progress.update(task_id, completed=ev.progress * 100)
                elif ev.kind == "log" and ev.message:
                    progress.update(task_id, description=ev.message)
                elif ev.kind == "artifact" and ev.artifact:
                    logger.debug("artifact %s -> %s", ev.artifact.get("name"), ev.artifact.get("uri"))

            result = pipeline.run(job=job, emit=emit, artifact_store=store)

        if zip_bundle:
            name = result.bundle_filename(selected=indices is not None)
            (out / name).write_bytes(result.to_zip(indices))
            console.print(f"ZIP: {out / name}")
    except DepthCutError as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        raise typer.Exit(code=1)

    stats = result.stats() or {}
    console.print("\n[bold green]Done.[/bold green]")
    console.print(f"Layers: {stats.get('total_layers', 0)} in {out / 'layers'}")
    console.print(f"Total size: {stats.get('total_size_mb', 0)} MB")
    console.print(f"Manifest: {out / 'manifest.json'}")


@app.command()
def ranges(
    layers: int = typer.Option(8, "--layers", help="Number of depth layers"),
    overlap: float = typer.Option(1.0, "--overlap", help="Depth overlap added to each range"),
):
    """Print the depth ranges a cut would use."""
    try:
        items = partition(layers, overlap)
    except DepthCutError as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        raise typer.Exit(code=1)

    table = Table(title=f"{layers} layers, overlap {overlap:g}")
    table.add_column("layer", justify="right")
    table.add_column("file")
    table.add_column("min", justify="right")
    table.add_column("max", justify="right")
    for r in items:
        table.add_row(str(r.index + 1), layer_filename(r.index), f"{r.min:g}", f"{r.max:g}")
    console.print(table)


@app.command("generate-depth")
def generate_depth(
    image: Path = typer.Option(..., "--image", exists=True, readable=True, dir_okay=False, help="Color image path"),
    out: Path = typer.Option(..., "--out", help="Where to write the depth map"),
    check_token: bool = typer.Option(False, "--check-token", help="Validate the API token first"),
    log_level: str = typer.Option("INFO", help="Logging level (DEBUG, INFO, WARNING, ERROR)"),
):
    """Fetch a depth map for an image from Replicate."""
    setup_logging(log_level)
    try:
        if check_token:
            with ReplicateDepthClient() as client:
                if not client.validate_token():
                    console.print("[bold red]Error:[/bold red] invalid Replicate API token")
                    raise typer.Exit(code=1)
        data = _fetch_depth(image)
    except DepthCutError as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        raise typer.Exit(code=1)

    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_bytes(data)
    console.print(f"Depth map: {out}")


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", "--host"),
    port: int = typer.Option(8000, "--port"),
    reload: bool = typer.Option(False, "--reload"),
):
    """Run the HTTP API."""
    import uvicorn

    uvicorn.run("depthcut.api.app:app", host=host, port=port, reload=reload)


if __name__ == "__main__":
    app()
