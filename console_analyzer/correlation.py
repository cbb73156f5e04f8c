"""Temporal correlation between a log entry and recent network activity."""
from __future__ import annotations

from typing import List, Iterable

from .config import TIME_WINDOW_MS
from .models import LogEntry, NetworkRecord


def is_related(log: LogEntry, record: NetworkRecord, window_ms: int = TIME_WINDOW_MS) -> bool:
    """Whether a network record plausibly explains a log entry.

    The record must have settled within ``window_ms`` of the log (inclusive) and
    have failed, or be mentioned by URL in the log message.
    """
    if abs(log.timestamp - record.settled_time) > window_ms:
        return False

    return (
        record.outcome in ("error", "timeout")
        or (record.status is not None and record.status >= 400)
        or (bool(record.url) and record.url in log.message)
    )


def correlate(log: LogEntry, records: Iterable[NetworkRecord],
              window_ms: int = TIME_WINDOW_MS) -> List[NetworkRecord]:
    """Select related records, preserving window order."""
    return [r for r in records if is_related(log, r, window_ms)]
