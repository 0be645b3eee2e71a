"""Command-line interface for CrowdCut."""

from __future__ import annotations

import asyncio
import json
import shutil
from dataclasses import asdict
from pathlib import Path
from typing import Annotated, Optional

import typer
from tqdm import tqdm

from crowdcut import Pipeline, __version__
from crowdcut.config import PipelineConfig, WorkflowOptions
from crowdcut.errors import CrowdCutError
from crowdcut.jobs.events import Event
from crowdcut.jobs.queue import JobQueue
from crowdcut.media.engine import FFmpegEngine
from crowdcut.models.schema import WorkflowResult
from crowdcut.services.cleanup import CleanupService

app = typer.Typer(
    name="crowdcut",
    help="Merge several recordings of one event into a single edited video.",
    add_completion=False,
    no_args_is_help=True,
)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"crowdcut {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        Optional[bool],
        typer.Option(
            "--version",
            "-v",
            help="Show version and exit.",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """CrowdCut: merge crowd-sourced recordings."""
    pass


async def _run_workflow(
    config: PipelineConfig, clips: list[Path], name: str, quiet: bool
) -> WorkflowResult:
    async with Pipeline(config) as pipeline:
        project = pipeline.create_project(name)
        for clip in clips:
            pipeline.add_recording(project.id, clip)

        bar = tqdm(
            total=100,
            desc="upload",
            unit="%",
            bar_format="{desc}: {percentage:3.0f}%|{bar}| [{elapsed}]",
            disable=quiet,
        )

        def on_progress(event: Event) -> None:
            bar.set_description(event.payload["stage"])
            bar.n = event.payload["progress"]
            bar.refresh()

        subscription = pipeline.events.subscribe(
            project_id=project.id,
            event_names=["workflow.progress"],
            callback=on_progress,
        )
        try:
            return await pipeline.run(project.id)
        finally:
            subscription.unsubscribe()
            bar.close()


@app.command()
def run(
    clips: Annotated[
        list[Path],
        typer.Argument(
            help="Recordings of the same event (.mp4, .mov, .avi, .mkv, .webm)",
            exists=True,
            readable=True,
        ),
    ],
    output: Annotated[
        Optional[Path],
        typer.Option(
            "--output",
            "-o",
            help="Copy the stitched video here (default: leave it in the work dir)",
        ),
    ] = None,
    work_dir: Annotated[
        Path,
        typer.Option(
            "--work-dir",
            "-d",
            help="Directory for frames, standardized copies and renders",
        ),
    ] = Path("./crowdcut_output"),
    standardize: Annotated[
        bool,
        typer.Option(
            "--standardize/--no-standardize",
            help="Transcode every clip to a common format before analysis",
        ),
    ] = True,
    name: Annotated[
        str,
        typer.Option("--name", "-n", help="Project name"),
    ] = "crowdcut",
    quiet: Annotated[
        bool,
        typer.Option(
            "--quiet",
            "-q",
            help="Suppress progress output",
        ),
    ] = False,
) -> None:
    """Synchronize, score and stitch clips into one video.

    Example:
        crowdcut run front.mp4 balcony.mp4 side.mov -o concert.mp4
    """
    import logging

    from crowdcut.utils.logging import get_logger

    get_logger(level=logging.WARNING if quiet else logging.INFO)

    config = PipelineConfig(
        work_dir=str(work_dir),
        workflow=WorkflowOptions(standardize=standardize),
    )

    try:
        result = asyncio.run(_run_workflow(config, clips, name, quiet))
    except CrowdCutError as e:
        typer.secho(f"Error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)

    if not result.success:
        typer.secho(f"Workflow failed: {result.error}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)

    final_path = Path(result.final_video_path)
    if output:
        output.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(final_path, output)
        final_path = output

    if not quiet:
        typer.echo(json.dumps(result.to_wire(), indent=2))
    typer.echo(f"Output written to: {final_path}")


@app.command()
def probe(
    clip: Annotated[
        Path,
        typer.Argument(help="Media file to inspect", exists=True, readable=True),
    ],
) -> None:
    """Show duration, resolution and streams of a media file."""
    config = PipelineConfig()
    engine = FFmpegEngine(ffmpeg=config.get_ffmpeg(), ffprobe=config.get_ffprobe())
    try:
        result = engine.probe(clip)
    except CrowdCutError as e:
        typer.secho(f"Error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)

    data = asdict(result)
    data.pop("streams")
    typer.echo(json.dumps(data, indent=2))


@app.command()
def clean(
    work_dir: Annotated[
        Path,
        typer.Option("--work-dir", "-d", help="Working directory to sweep"),
    ] = Path("./crowdcut_output"),
    max_age: Annotated[
        float,
        typer.Option("--max-age", help="Remove scratch files older than this many hours"),
    ] = 24.0,
    dry_run: Annotated[
        bool,
        typer.Option("--dry-run", help="Only report what would be removed"),
    ] = False,
) -> None:
    """Remove scratch files left behind by interrupted runs."""
    service = CleanupService(JobQueue(), work_dir)
    stats = service.clean_temp_files(max_age, dry_run=dry_run)

    verb = "Would remove" if dry_run else "Removed"
    typer.echo(f"{verb} {stats.temp_entries_removed} scratch entries ({stats.disk_space_freed} bytes)")
    for error in stats.errors:
        typer.secho(error, fg=typer.colors.YELLOW, err=True)
    if stats.errors:
        raise typer.Exit(1)


@app.command()
def info() -> None:
    """Show version, media tools and default settings."""
    config = PipelineConfig()
    typer.echo(f"CrowdCut v{__version__}")
    typer.echo("")

    typer.echo("Media tools:")
    for label, binary in (("ffmpeg", config.get_ffmpeg()), ("ffprobe", config.get_ffprobe())):
        location = shutil.which(binary)
        typer.echo(f"  {label}: {location or 'not found'}")

    typer.echo("")
    typer.echo("Defaults:")
    typer.echo(f"  Output: {config.stitching.output_resolution} @ {config.stitching.output_frame_rate}fps")
    typer.echo(f"  Segment length: {config.stitching.min_segment_duration}s")
    typer.echo(f"  Sync search: +/-{config.sync.max_offset_seconds}s")
    typer.echo("")
    typer.echo("Supported Formats:")
    typer.echo("  Video: .mp4, .mov, .avi, .mkv, .webm")


if __name__ == "__main__":
    app()
