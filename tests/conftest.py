"""Pytest configuration and fixtures for CrowdCut tests."""

from __future__ import annotations

import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Sequence

import numpy as np
import pytest
from PIL import Image

from crowdcut.errors import MediaEngineError
from crowdcut.media.engine import AudioTrack, FilterGraph, FrameGrab, OutputSpec, ProbeResult
from crowdcut.models.schema import Project, Recording
from crowdcut.store.memory import InMemoryProjectStore, InMemoryRecordingStore


@dataclass
class FakeClip:
    """One camera's view of the synthetic event."""

    start: float = 0.0
    duration: float = 20.0
    has_audio: bool = True
    silent: bool = False


@dataclass
class FakeEngine:
    """In-process MediaEngine over a synthetic event.

    Audio is seeded white noise on a shared event clock; a clip starting at
    ``start`` hears ``noise[start:start + duration]``. Frames are coloured
    block patterns keyed by the whole event second they show, so two clips
    looking at the same moment produce identical images.
    """

    clips: dict[str, FakeClip] = field(default_factory=dict)
    fail_audio: set[str] = field(default_factory=set)
    fail_frames: set[str] = field(default_factory=set)
    fail_render: str | None = None
    renders: list[tuple[list[Path], FilterGraph, OutputSpec, Path]] = field(default_factory=list)
    aliases: dict[str, str] = field(default_factory=dict)

    def _name(self, path: Path) -> str:
        name = Path(path).name
        return self.aliases.get(name, name)

    def _clip(self, path: Path) -> FakeClip:
        return self.clips.get(self._name(path), FakeClip())

    def probe(self, path: Path) -> ProbeResult:
        clip = self._clip(path)
        return ProbeResult(
            duration=clip.duration,
            width=640,
            height=360,
            fps=30.0,
            format_name="mov,mp4,m4a,3gp",
            has_video=True,
            has_audio=clip.has_audio,
            audio_channels=2 if clip.has_audio else 0,
            audio_sample_rate=44100 if clip.has_audio else None,
            codec_name="h264",
        )

    def extract_audio(
        self, path: Path, sample_rate: int, max_duration: float | None = None
    ) -> AudioTrack:
        name = self._name(path)
        if name in self.fail_audio:
            raise MediaEngineError(f"Audio extraction for {name} failed: decoder error")
        clip = self._clip(path)
        length = clip.duration if max_duration is None else min(clip.duration, max_duration)
        count = int(length * sample_rate)
        if clip.silent:
            return AudioTrack(samples=np.zeros(count, dtype=np.float32), sample_rate=sample_rate)

        event_end = max([c.start + c.duration for c in self.clips.values()] + [clip.duration])
        noise = np.random.default_rng(7).standard_normal(int(event_end * sample_rate) + 1)
        offset = int(round(clip.start * sample_rate))
        return AudioTrack(
            samples=noise[offset : offset + count].astype(np.float32) * 0.1,
            sample_rate=sample_rate,
        )

    def extract_frames(
        self,
        path: Path,
        timestamps: Sequence[float],
        output_dir: Path,
        max_width: int | None = None,
    ) -> list[FrameGrab]:
        name = self._name(path)
        if name in self.fail_frames:
            raise MediaEngineError(f"No frames extracted from {name}")
        clip = self._clip(path)
        output_dir.mkdir(parents=True, exist_ok=True)

        grabs: list[FrameGrab] = []
        for i, ts in enumerate(timestamps):
            out = output_dir / f"{Path(path).stem}_{i:04d}.png"
            event_image(round(clip.start + ts)).save(out)
            grabs.append((ts, out))
        return grabs

    def render(
        self,
        inputs: Sequence[Path],
        graph: FilterGraph,
        spec: OutputSpec,
        output_path: Path,
    ) -> Path:
        self.renders.append((list(inputs), graph, spec, output_path))
        if self.fail_render and output_path.name.startswith(self.fail_render):
            raise MediaEngineError(f"Render of {output_path.name} failed: encoder error")
        if len(inputs) == 1:
            self.aliases[output_path.name] = self._name(inputs[0])
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_bytes(b"rendered video")
        return output_path


def event_image(second: int, width: int = 64, height: int = 36) -> Image.Image:
    """Block pattern unique to one second of the event."""
    rng = np.random.default_rng(1000 + second)
    blocks = rng.integers(0, 256, size=(4, 4, 3), dtype=np.uint8)
    pixels = blocks.repeat(height // 4, axis=0).repeat(width // 4, axis=1)
    return Image.fromarray(pixels)


@pytest.fixture
def temp_dir() -> Path:
    """Create a temporary directory for test outputs."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def projects() -> InMemoryProjectStore:
    return InMemoryProjectStore()


@pytest.fixture
def recordings() -> InMemoryRecordingStore:
    return InMemoryRecordingStore()


@pytest.fixture
def project(projects: InMemoryProjectStore) -> Project:
    return projects.add(Project(name="concert"))


@pytest.fixture
def add_clip(
    temp_dir: Path,
    engine: FakeEngine,
    recordings: InMemoryRecordingStore,
    project: Project,
) -> Callable[..., Recording]:
    """Register a clip with the fake engine and store its recording."""

    def _add(
        name: str,
        start: float = 0.0,
        duration: float = 20.0,
        has_audio: bool = True,
        silent: bool = False,
        **fields: object,
    ) -> Recording:
        path = temp_dir / "uploads" / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"fake video")
        engine.clips[name] = FakeClip(
            start=start, duration=duration, has_audio=has_audio, silent=silent
        )
        return recordings.add(
            Recording(
                project_id=fields.pop("project_id", project.id),
                file_path=str(path),
                duration=duration,
                has_audio=has_audio,
                **fields,
            )
        )

    return _add
