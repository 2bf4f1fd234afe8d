from __future__ import annotations

import shutil
import subprocess
from pathlib import Path

from .utils import subprocess_flags as _subprocess_flags


class MediaToolError(RuntimeError):
    pass


def _require_cmd(cmd: str) -> str:
    path = shutil.which(cmd)
    if not path:
        raise MediaToolError(
            f"Required executable '{cmd}' not found in PATH. "
            "Install ffmpeg/ffprobe and ensure they are available on PATH."
        )
    return path


def _run(cmd: list[str]) -> subprocess.CompletedProcess:
    proc = subprocess.run(cmd, capture_output=True, text=True, **_subprocess_flags())
    if proc.returncode != 0:
        msg = (proc.stderr or proc.stdout or "").strip()
        raise MediaToolError(f"{cmd[0]} failed (exit={proc.returncode}). {msg}")
    return proc


def ffprobe_duration_seconds(video_path: Path) -> float:
    _require_cmd("ffprobe")
    cmd = [
        "ffprobe",
        "-v",
        "error",
        "-show_entries",
        "format=duration",
        "-of",
        "default=noprint_wrappers=1:nokey=1",
        str(video_path),
    ]
    out = _run(cmd).stdout.strip()
    try:
        duration = float(out)
    except ValueError as e:
        raise MediaToolError(f"ffprobe returned non-numeric duration: {out!r}") from e
    if duration <= 0:
        raise MediaToolError(f"ffprobe returned non-positive duration: {duration}")
    return duration


class FFmpegMediaTool:
    """Media operations the workflow needs, backed by ffmpeg/ffprobe."""

    def probe_duration(self, path: Path) -> float:
        return ffprobe_duration_seconds(Path(path))

    def extract_clip(self, path: Path, out_path: Path, start: float, length: float) -> Path:
        _require_cmd("ffmpeg")
        if length <= 0:
            raise MediaToolError("clip length must be > 0")
        out_path = Path(out_path)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        cmd = [
            "ffmpeg",
            "-hide_banner",
            "-loglevel",
            "error",
            "-y",
            "-ss",
            f"{max(0.0, start):.3f}",
            "-i",
            str(path),
            "-t",
            f"{length:.3f}",
            "-c:v",
            "libx264",
            "-preset",
            "veryfast",
            "-crf",
            "27",
            "-c:a",
            "aac",
            "-movflags",
            "+faststart",
            str(out_path),
        ]
        _run(cmd)
        if not out_path.is_file() or out_path.stat().st_size <= 0:
            raise MediaToolError(f"ffmpeg produced no clip at {out_path}")
        return out_path

    def split_into_segments(self, path: Path, out_dir: Path, prefix: str, segment_seconds: int) -> list[Path]:
        """Stream-copy ``path`` into roughly ``segment_seconds`` long mp4 parts."""
        _require_cmd("ffmpeg")
        out_dir = Path(out_dir)
        out_dir.mkdir(parents=True, exist_ok=True)
        for stale in out_dir.glob(f"{prefix}_*.mp4"):
            stale.unlink(missing_ok=True)
        pattern = out_dir / f"{prefix}_%03d.mp4"
        cmd = [
            "ffmpeg",
            "-hide_banner",
            "-loglevel",
            "error",
            "-y",
            "-i",
            str(path),
            "-map",
            "0",
            "-c",
            "copy",
            "-f",
            "segment",
            "-segment_time",
            str(max(1, int(segment_seconds))),
            "-reset_timestamps",
            "1",
            str(pattern),
        ]
        try:
            _run(cmd)
        except MediaToolError:
            for partial in out_dir.glob(f"{prefix}_*.mp4"):
                partial.unlink(missing_ok=True)
            raise
        parts = sorted(p for p in out_dir.glob(f"{prefix}_*.mp4") if p.is_file() and p.stat().st_size > 0)
        if not parts:
            raise MediaToolError(f"ffmpeg produced no segments for {path}")
        return parts

    def extract_audio_chunks(self, path: Path, out_dir: Path, prefix: str, chunk_seconds: int) -> list[Path]:
        """Extract mono 16 kHz AAC audio split into ``chunk_seconds`` pieces."""
        _require_cmd("ffmpeg")
        out_dir = Path(out_dir)
        out_dir.mkdir(parents=True, exist_ok=True)
        pattern = out_dir / f"{prefix}_%03d.m4a"
        cmd = [
            "ffmpeg",
            "-hide_banner",
            "-loglevel",
            "error",
            "-y",
            "-i",
            str(path),
            "-vn",
            "-ac",
            "1",
            "-ar",
            "16000",
            "-c:a",
            "aac",
            "-b:a",
            "48k",
            "-f",
            "segment",
            "-segment_time",
            str(max(60, int(chunk_seconds))),
            "-reset_timestamps",
            "1",
            str(pattern),
        ]
        _run(cmd)
        return sorted(p for p in out_dir.glob(f"{prefix}_*.m4a") if p.is_file() and p.stat().st_size > 0)
