from __future__ import annotations

import json
import subprocess
from pathlib import Path

import pytest

import video

PROBE_PAYLOAD = {
    "streams": [
        {"codec_type": "video", "codec_name": "h264", "width": 1920, "height": 1080},
        {"codec_type": "audio", "codec_name": "aac"},
    ],
    "format": {"format_name": "mov,mp4,m4a,3gp,3g2,mj2", "duration": "12.480000"},
}


def test_build_command_defaults_to_mp4():
    cmd = video.build_transcode_command("in.mov", "out.mp4", {})
    assert cmd[0] == "ffmpeg"
    assert cmd[cmd.index("-i") + 1] == "in.mov"
    assert cmd[cmd.index("-c:v") + 1] == "libx264"
    assert cmd[cmd.index("-c:a") + 1] == "aac"
    assert "-movflags" in cmd
    assert "-vf" not in cmd
    assert cmd[-1] == "out.mp4"


def test_build_command_full_operations():
    ops = {
        "format": "webm",
        "quality": "high",
        "resolution": "720p",
        "trim": {"start": 5, "duration": 10},
        "crop": {"width": 640, "height": 360, "x": 10, "y": 20},
    }
    cmd = video.build_transcode_command("in.mp4", "out.webm", ops)

    # seek goes before the input, duration after it
    assert cmd.index("-ss") < cmd.index("-i") < cmd.index("-t")
    assert cmd[cmd.index("-ss") + 1] == "5"
    assert cmd[cmd.index("-t") + 1] == "10"
    assert cmd[cmd.index("-c:v") + 1] == "libvpx"
    assert cmd[cmd.index("-b:v") + 1] == "2500k"
    assert cmd[cmd.index("-b:a") + 1] == "320k"
    assert cmd[cmd.index("-vf") + 1] == "crop=640:360:10:20,scale=1280:720"
    assert "-movflags" not in cmd


def test_validate_operations():
    assert video.validate_operations({"format": "mp4", "quality": "low"}) == []
    errors = video.validate_operations(
        {"format": "gif", "quality": "ultra", "resolution": "8k", "trim": {"start": -1, "duration": 2}}
    )
    assert errors == ["invalid_format", "invalid_quality", "invalid_resolution", "invalid_trim"]
    assert video.validate_operations({"crop": {"width": 10}}) == ["invalid_crop"]


def test_parse_probe():
    info = video.parse_probe(PROBE_PAYLOAD)
    assert info["duration"] == pytest.approx(12.48)
    assert info["resolution"] == "1920x1080"
    assert info["video_codec"] == "h264"
    assert info["audio_codec"] == "aac"


def test_parse_probe_without_video_stream():
    with pytest.raises(video.VideoProcessingError):
        video.parse_probe({"streams": [{"codec_type": "audio"}], "format": {}})


def test_probe_runs_ffprobe(monkeypatch: pytest.MonkeyPatch):
    seen = {}

    def fake_run(cmd, **kwargs):
        seen["cmd"] = cmd
        seen["kwargs"] = kwargs
        return subprocess.CompletedProcess(cmd, 0, stdout=json.dumps(PROBE_PAYLOAD), stderr="")

    monkeypatch.setattr(video.subprocess, "run", fake_run)
    info = video.probe("clip.mp4")

    assert seen["cmd"][0] == "ffprobe"
    assert "-show_streams" in seen["cmd"]
    assert seen["kwargs"]["check"] is True
    assert info["width"] == 1920


def test_transcode_failure_carries_stderr(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    src = tmp_path / "in.mp4"
    src.write_bytes(b"\x00")

    def fake_run(cmd, **kwargs):
        raise subprocess.CalledProcessError(1, cmd, output="", stderr="Invalid data found when processing input")

    monkeypatch.setattr(video.subprocess, "run", fake_run)
    with pytest.raises(video.VideoProcessingError, match="Invalid data found"):
        video.transcode(src, tmp_path / "out.mp4", {})


def test_transcode_timeout(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    src = tmp_path / "in.mp4"
    src.write_bytes(b"\x00")

    def fake_run(cmd, **kwargs):
        raise subprocess.TimeoutExpired(cmd, kwargs["timeout"])

    monkeypatch.setattr(video.subprocess, "run", fake_run)
    with pytest.raises(video.VideoProcessingError, match="timed out"):
        video.transcode(src, tmp_path / "out.mp4", {}, timeout=3)


def test_missing_binary(monkeypatch: pytest.MonkeyPatch):
    def fake_run(cmd, **kwargs):
        raise FileNotFoundError(cmd[0])

    monkeypatch.setattr(video.subprocess, "run", fake_run)
    with pytest.raises(video.VideoProcessingError, match="not found"):
        video.probe("clip.mp4")


def test_transcode_missing_source(tmp_path: Path):
    with pytest.raises(video.VideoProcessingError, match="missing"):
        video.transcode(tmp_path / "nope.mp4", tmp_path / "out.mp4", {})
