"""Recording discovery and temp-file naming."""

from __future__ import annotations

import hashlib
import re
import time
from datetime import datetime
from pathlib import Path, PurePosixPath
from typing import Callable, Optional

RECORDING_SUFFIX = ".mp4"
_RECORDING_STAMP_RE = re.compile(r"_(\d{4}-\d{2}-\d{2})-(\d{2})-(\d{2})-(\d{2})\.mp4$", re.IGNORECASE)
_SAFE_NAME_RE = re.compile(r"[^A-Za-z0-9._-]+")


def find_recordings(root: Path) -> list[Path]:
    """All ``*.mp4`` files below ``root``, sorted by path."""
    root = Path(root)
    if not root.is_dir():
        return []
    return sorted(p for p in root.rglob("*") if p.is_file() and p.suffix.lower() == RECORDING_SUFFIX)


def relative_key(root: Path, path: Path) -> str:
    root = Path(root).resolve()
    path = Path(path).resolve()
    try:
        return path.relative_to(root).as_posix()
    except ValueError:
        return path.as_posix()


def is_safe_key(key: str) -> bool:
    if not key or key in (".", ".."):
        return False
    pure = PurePosixPath(key)
    if pure.is_absolute():
        return False
    return ".." not in pure.parts


def resolve_key(root: Path, key: str) -> Optional[Path]:
    """Map an identity key back to a path under ``root``; None for unsafe keys."""
    if not is_safe_key(key):
        return None
    return Path(root) / PurePosixPath(key)


def is_stable(
    path: Path,
    *,
    min_age_seconds: int,
    wait_seconds: int,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.time,
) -> bool:
    """True when the file is old enough and did not change during ``wait_seconds``."""
    try:
        first = Path(path).stat()
    except OSError:
        return False
    if clock() - first.st_mtime < min_age_seconds:
        return False
    if wait_seconds <= 0:
        return True
    sleep(wait_seconds)
    try:
        second = Path(path).stat()
    except OSError:
        return False
    return first.st_mtime == second.st_mtime and first.st_size == second.st_size


def detect_recording_datetime(path: Path) -> datetime:
    """Recording start from a ``*_YYYY-MM-DD-HH-MM-SS.mp4`` name, else the file mtime."""
    path = Path(path)
    match = _RECORDING_STAMP_RE.search(path.name)
    if match:
        date, hour, minute, second = match.groups()
        try:
            return datetime.strptime(f"{date} {hour}:{minute}:{second}", "%Y-%m-%d %H:%M:%S")
        except ValueError:
            pass
    try:
        return datetime.fromtimestamp(path.stat().st_mtime)
    except OSError:
        return datetime.now()


def _key_digest(key: str) -> str:
    return hashlib.sha1(key.encode("utf-8")).hexdigest()[:12]


def safe_stem(key: str) -> str:
    stem = PurePosixPath(key).stem or "recording"
    return _SAFE_NAME_RE.sub("_", stem).strip("_") or "recording"


def clip_temp_path(temp_dir: Path, key: str) -> Path:
    return Path(temp_dir) / f"{safe_stem(key)}_{_key_digest(key)}.mp4"


def write_transcript_file(temp_dir: Path, key: str, transcript: str) -> Path:
    temp_dir = Path(temp_dir)
    temp_dir.mkdir(parents=True, exist_ok=True)
    path = temp_dir / f"transcript_{safe_stem(key)}_{_key_digest(key)}.txt"
    path.write_text(f"Транскрипт для: {key}\n\n{transcript}\n", encoding="utf-8")
    return path
