"""Formatting sizes and logging throttled backup progress."""

import logging
import threading
import time
from collections.abc import Callable
from datetime import timedelta

ProgressFunc = Callable[[str, str, int, int, int, int], None]


def format_bytes(size: int) -> str:
    """Format a byte count with a binary unit: B, KB, MB or GB."""
    if size >= 1 << 30:
        return f"{size / (1 << 30):.1f} GB"
    if size >= 1 << 20:
        return f"{size / (1 << 20):.1f} MB"
    if size >= 1 << 10:
        return f"{size / (1 << 10):.1f} KB"
    return f"{size} B"


def logging_progress(logger: logging.Logger, interval: timedelta | float) -> ProgressFunc:
    """Return a progress callback that logs at most once per interval per group and stage.

    "scanning" and "done" are always logged.
    """
    seconds = interval.total_seconds() if isinstance(interval, timedelta) else float(interval)
    lock = threading.Lock()
    last_logged: dict[str, float] = {}

    def report(
        group: str, stage: str, current: int, total: int, done_bytes: int, total_bytes: int
    ) -> None:
        with lock:
            now = time.monotonic()
            key = f"{group}:{stage}"
            if stage not in ("done", "scanning"):
                last = last_logged.get(key)
                if last is not None and now - last < seconds:
                    return
            last_logged[key] = now

            if stage == "scanning":
                logger.info("backup progress group=%s stage=scanning", group)
            elif stage == "uploading":
                logger.info(
                    "backup progress group=%s stage=uploading files=%d/%d size=%s/%s",
                    group,
                    current,
                    total,
                    format_bytes(done_bytes),
                    format_bytes(total_bytes),
                )
            elif stage == "done":
                logger.info(
                    "backup progress group=%s stage=done files=%d total_size=%s",
                    group,
                    total,
                    format_bytes(total_bytes),
                )

    return report