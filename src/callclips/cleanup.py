"""Delete source recordings that were completed more than N days ago.

Dry-run by default; nothing is removed without ``apply=True``. Recordings
without a parseable ``processed_at`` stamp are never touched.
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from .state import StateStore
from .text import format_file_size
from .utils import parse_iso

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400


@dataclass
class CleanupSummary:
    total_records: int = 0
    eligible_records: int = 0
    existing_files: int = 0
    missing_files: int = 0
    unsafe_keys_skipped: int = 0
    deleted_files: int = 0
    failed_deletes: int = 0
    bytes_eligible: int = 0
    bytes_deleted: int = 0
    pruned_dirs: int = 0

    def lines(self, *, applied: bool, pruned: bool) -> list[str]:
        out = [
            f"- completed records in state: {self.total_records}",
            f"- eligible old completed records: {self.eligible_records}",
            f"- existing files among eligible: {self.existing_files}",
            f"- missing files among eligible: {self.missing_files}",
            f"- unsafe keys skipped: {self.unsafe_keys_skipped}",
            f"- bytes eligible: {format_file_size(self.bytes_eligible)}",
        ]
        if applied:
            out.append(f"- deleted files: {self.deleted_files}")
            out.append(f"- failed deletes: {self.failed_deletes}")
            out.append(f"- bytes deleted: {format_file_size(self.bytes_deleted)}")
            if pruned:
                out.append(f"- pruned empty dirs: {self.pruned_dirs}")
        return out


def normalize_key(key: str) -> Optional[str]:
    """Return a clean relative key, or None for keys that could escape the root."""
    key = key.strip().replace("\\", "/").lstrip("/")
    if not key:
        return None
    parts = key.split("/")
    if any(part in ("", ".", "..") for part in parts):
        return None
    return "/".join(parts)


def prune_empty_dirs(root: Path) -> int:
    removed = 0
    for dirpath, _dirnames, _filenames in os.walk(root, topdown=False):
        path = Path(dirpath)
        if path == Path(root):
            continue
        try:
            path.rmdir()
        except OSError:
            continue
        removed += 1
    return removed


def cleanup_recordings(
    state: StateStore,
    recordings_root: Path,
    *,
    days: int = 14,
    apply: bool = False,
    prune: bool = False,
    now: Optional[float] = None,
    echo: Callable[[str], None] = print,
) -> CleanupSummary:
    if days < 0:
        raise ValueError("days must be >= 0")
    recordings_root = Path(recordings_root)
    cutoff = (time.time() if now is None else now) - days * SECONDS_PER_DAY
    keys = state.completed_keys()
    summary = CleanupSummary(total_records=len(keys))

    for key in keys:
        record = state.get_completed(key)
        if record is None or not record.processed_at.strip():
            continue
        try:
            processed_at = parse_iso(record.processed_at).timestamp()
        except ValueError:
            logger.debug("Skipping %s: unparseable processed_at %r", key, record.processed_at)
            continue
        if processed_at > cutoff:
            continue

        clean = normalize_key(key)
        if clean is None:
            summary.unsafe_keys_skipped += 1
            continue

        summary.eligible_records += 1
        path = recordings_root / clean
        if not path.is_file():
            summary.missing_files += 1
            continue

        summary.existing_files += 1
        try:
            size = path.stat().st_size
        except OSError:
            size = 0
        summary.bytes_eligible += size

        if not apply:
            echo(f"[DRY] {path}")
            continue
        try:
            path.unlink()
        except OSError as exc:
            summary.failed_deletes += 1
            logger.warning("Failed to delete %s: %s", path, exc)
            echo(f"[ERR] {path}")
            continue
        summary.deleted_files += 1
        summary.bytes_deleted += size
        echo(f"[DEL] {path}")

    if apply and prune:
        summary.pruned_dirs = prune_empty_dirs(recordings_root)
    return summary
