"""Adaptive split-and-resend for recordings the transport rejects as too large."""

from __future__ import annotations

import hashlib
import logging
import math
from pathlib import Path
from typing import Optional

from .ffmpeg import FFmpegMediaTool, MediaToolError
from .messaging import MessagingError, MessagingGateway, PayloadTooLargeError

logger = logging.getLogger(__name__)

MIN_TARGET_BYTES = 5 * 1024 * 1024
SIZE_SAFETY_FACTOR = 0.98
OVERSHOOT_TOLERANCE = 1.08
SHRINK_FACTOR = 0.85
MIN_SEGMENT_SECONDS = 90
MIN_SHRUNK_SECONDS = 60
MAX_ATTEMPTS = 6


def target_bytes(upload_max_bytes: int) -> int:
    return max(MIN_TARGET_BYTES, int(upload_max_bytes))


def initial_segment_seconds(duration: float, size: int, target: int) -> int:
    """Segment length expected to keep every part under ``target`` bytes.

    Proportional estimate with a small safety margin, floored at 90s and
    capped at the recording length.
    """
    cap = max(1, math.ceil(duration))
    if duration <= 0 or size <= 0:
        return min(MIN_SEGMENT_SECONDS, cap)
    estimate = math.floor(duration * (target / size) * SIZE_SAFETY_FACTOR)
    return min(cap, max(MIN_SEGMENT_SECONDS, estimate))


def shrink_segment_seconds(seconds: int) -> int:
    return max(MIN_SHRUNK_SECONDS, math.floor(seconds * SHRINK_FACTOR))


def part_caption(caption: str, index: int, total: int) -> str:
    return f"{caption}\nчасть {index}/{total}"


class DeliveryRetrier:
    def __init__(
        self,
        *,
        gateway: MessagingGateway,
        media: FFmpegMediaTool,
        temp_dir: Path,
        upload_max_bytes: int,
        max_attempts: int = MAX_ATTEMPTS,
    ) -> None:
        self.gateway = gateway
        self.media = media
        self.temp_dir = Path(temp_dir)
        self.target = target_bytes(upload_max_bytes)
        self.max_attempts = max(1, int(max_attempts))

    def deliver(self, destination: str, path: Path, caption: str, key: str, *, announce: bool = True) -> bool:
        """Send ``path`` as a series of parts. Returns True once every part went out.

        A size rejection on any part shrinks the segment length and restarts
        the whole split. Any other failure aborts and returns False. The
        "sending in N parts" notice goes out at most once, and only when
        ``announce`` is set.
        """
        path = Path(path)
        try:
            size = path.stat().st_size
            duration = self.media.probe_duration(path)
        except (OSError, MediaToolError) as exc:
            logger.warning("Cannot prepare split delivery for %s: %s", key, exc)
            return False

        seconds = initial_segment_seconds(duration, size, self.target)
        prefix = "part_" + hashlib.sha1(key.encode("utf-8")).hexdigest()[:12]
        notice_sent = not announce

        for attempt in range(1, self.max_attempts + 1):
            logger.info(
                "Split attempt %d/%d for %s: segment=%ss target=%d bytes",
                attempt,
                self.max_attempts,
                key,
                seconds,
                self.target,
            )
            parts: list[Path] = []
            try:
                parts = self.media.split_into_segments(path, self.temp_dir, prefix, seconds)
                largest = max(part.stat().st_size for part in parts)
                if largest > self.target * OVERSHOOT_TOLERANCE:
                    logger.info("Largest part is %d bytes, over the upload limit; shrinking segments", largest)
                    seconds = shrink_segment_seconds(seconds)
                    continue

                if not notice_sent:
                    notice_sent = True
                    self._notify(destination, f"Отправляю запись частями: {len(parts)} шт.")

                total = len(parts)
                for index, part in enumerate(parts, start=1):
                    self.gateway.send_file(destination, part, part_caption(caption, index, total), "video/mp4")
                logger.info("Delivered %s in %d parts", key, total)
                return True
            except PayloadTooLargeError as exc:
                logger.info("Part rejected as too large (%s); shrinking segments", exc)
                seconds = shrink_segment_seconds(seconds)
            except (MessagingError, MediaToolError, OSError) as exc:
                logger.warning("Split delivery of %s failed: %s", key, exc)
                return False
            finally:
                for part in parts:
                    part.unlink(missing_ok=True)

        logger.warning("Giving up on split delivery of %s after %d attempts", key, self.max_attempts)
        return False

    def _notify(self, destination: str, text: str) -> Optional[int]:
        try:
            return self.gateway.send_text(destination, text)
        except MessagingError as exc:
            logger.warning("Split notice not sent: %s", exc)
            return None
