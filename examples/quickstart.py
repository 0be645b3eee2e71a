#!/usr/bin/env python3
"""CrowdCut Quickstart Example.

This script merges several recordings of the same event into one
synchronized, quality-aware video.

Usage:
    python examples/quickstart.py clip1.mp4 clip2.mp4 [clip3.mp4 ...]

Requirements:
    - ffmpeg and ffprobe on PATH (or CROWDCUT_FFMPEG / CROWDCUT_FFPROBE set)
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path


async def run(clips: list[Path]) -> None:
    """Run the full workflow and print a summary."""
    import crowdcut

    async with crowdcut.Pipeline({"work_dir": "./crowdcut_output"}) as pipeline:
        project = pipeline.create_project("quickstart")
        for clip in clips:
            recording = pipeline.add_recording(project.id, clip)
            print(f"Added {clip.name}: {recording.duration:.1f}s")

        def on_progress(event) -> None:
            payload = event.payload
            print(f"  [{payload['progress']:3d}%] {payload['stage']}: {payload['message']}")

        pipeline.events.subscribe(
            project_id=project.id, event_names=["workflow.progress"], callback=on_progress
        )
        result = await pipeline.run(project.id)

    if not result.success:
        print(f"\nWorkflow failed: {result.error}")
        sys.exit(1)

    print("\n" + "=" * 50)
    print("RESULT")
    print("=" * 50)

    if result.sync_result:
        sync = result.sync_result
        print(f"Sync: {sync.method} (confidence {sync.confidence:.0f}%)")
        for aligned in sync.aligned_videos:
            print(f"  {aligned.recording_id}: {aligned.offset_seconds:+.2f}s")

    for metrics in result.quality_metrics or []:
        print(f"Quality {metrics.recording_id}: {metrics.scores.overall}")

    stitched = result.stitching_result
    print(f"\nSegments: {len(stitched.timeline.segments)}")
    print(f"Duration: {stitched.duration:.1f}s")
    print(f"Output saved to: {result.final_video_path}")


def main() -> None:
    """Run the quickstart example."""
    if len(sys.argv) < 2:
        print("Usage: python quickstart.py <clip> [<clip> ...]")
        print("\nExample:")
        print("  python quickstart.py front.mp4 balcony.mp4")
        sys.exit(1)

    clips = [Path(arg) for arg in sys.argv[1:]]
    for clip in clips:
        if not clip.exists():
            print(f"Error: File not found: {clip}")
            sys.exit(1)

    asyncio.run(run(clips))


if __name__ == "__main__":
    main()
