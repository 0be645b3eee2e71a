"""Tests for the command-line interface."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from typer.testing import CliRunner

from crowdcut import __version__, cli
from crowdcut.analysis.angles import FixedAngleClassifier
from crowdcut.analysis.frames import ConstantFrameAnalyzer
from crowdcut.config import SyncOptions
from crowdcut.pipeline import Pipeline

from conftest import FakeClip

runner = CliRunner()

SCENARIO_TIMEOUT = 30.0


@pytest.fixture
def fake_pipeline(monkeypatch: pytest.MonkeyPatch, engine):
    """Route the CLI's Pipeline through the in-process fake engine."""

    def build(config):
        config = config.model_copy(update={"sync": SyncOptions(sample_rate=1000, sample_stride=1)})
        pipeline = Pipeline(
            config,
            engine=engine,
            frame_analyzer=ConstantFrameAnalyzer(),
            angle_classifier=FixedAngleClassifier({}),
        )
        pipeline.queue.tick_interval = 0.01
        pipeline.workflow.poll_interval = 0.01
        return pipeline

    monkeypatch.setattr(cli, "Pipeline", build)

    # A shutdown that never returns fails the test instead of hanging it.
    run_workflow = cli._run_workflow

    async def bounded(*args):
        return await asyncio.wait_for(run_workflow(*args), SCENARIO_TIMEOUT)

    monkeypatch.setattr(cli, "_run_workflow", bounded)
    return engine


class TestCli:
    """Tests for the crowdcut commands."""

    def test_version(self) -> None:
        result = runner.invoke(cli.app, ["--version"])

        assert result.exit_code == 0
        assert f"crowdcut {__version__}" in result.output

    def test_info(self) -> None:
        result = runner.invoke(cli.app, ["info"])

        assert result.exit_code == 0
        assert "ffmpeg:" in result.output
        assert ".webm" in result.output

    def test_run_missing_clip(self, temp_dir: Path) -> None:
        result = runner.invoke(cli.app, ["run", str(temp_dir / "missing.mp4")])

        assert result.exit_code != 0

    def test_run_writes_output(self, fake_pipeline, temp_dir: Path) -> None:
        """A successful run copies the stitched video to --output."""
        clips = []
        for name, start in (("a.mp4", 0.0), ("b.mp4", 2.0)):
            path = temp_dir / name
            path.write_bytes(b"fake video")
            fake_pipeline.clips[name] = FakeClip(start=start, duration=12.0)
            clips.append(str(path))
        output = temp_dir / "final" / "concert.mp4"

        result = runner.invoke(
            cli.app,
            ["run", *clips, "-o", str(output), "-d", str(temp_dir / "work"), "--quiet"],
        )

        assert result.exit_code == 0, result.output
        assert output.read_bytes() == b"rendered video"
        assert f"Output written to: {output}" in result.output

    def test_run_unsupported_format(self, fake_pipeline, temp_dir: Path) -> None:
        path = temp_dir / "notes.txt"
        path.write_text("not a video")

        result = runner.invoke(cli.app, ["run", str(path), "-d", str(temp_dir / "work"), "-q"])

        assert result.exit_code == 1
        assert "Unsupported format" in result.output

    def test_probe(self, temp_dir: Path) -> None:
        clip = temp_dir / "a.mp4"
        clip.write_bytes(b"fake video")
        mock_result = MagicMock()
        mock_result.returncode = 0
        mock_result.stdout = json.dumps(
            {
                "format": {"duration": "10.0", "format_name": "mp4"},
                "streams": [{"codec_type": "video", "width": 640, "height": 360}],
            }
        )

        with patch("subprocess.run", return_value=mock_result):
            result = runner.invoke(cli.app, ["probe", str(clip)])

        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["duration"] == 10.0
        assert "streams" not in data
