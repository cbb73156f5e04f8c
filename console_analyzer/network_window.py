"""Bounded window of recent network records."""
from __future__ import annotations

import re
from collections import OrderedDict
from typing import List, Optional, Iterable

from .config import DEFAULT_MAX_NETWORK_RECORDS
from .models import NetworkRecord

# Requests made by dev tooling rather than the application
DEV_TOOLS_URL_PATTERNS = [
    re.compile(r'\.map(\?.*)?$', re.IGNORECASE),
    re.compile(r'node_modules/\.vite/', re.IGNORECASE),
    re.compile(r'__vite_ping', re.IGNORECASE),
    re.compile(r'/@vite/', re.IGNORECASE),
    re.compile(r'/@react-refresh', re.IGNORECASE),
    re.compile(r'hot-update\.(js|json)', re.IGNORECASE),
    re.compile(r'__webpack_hmr', re.IGNORECASE),
    re.compile(r'sockjs-node', re.IGNORECASE),
]


def is_dev_tools_request(url: str) -> bool:
    return any(p.search(url) for p in DEV_TOOLS_URL_PATTERNS)


class NetworkWindow:
    """Append/update-by-id store that keeps only the newest records."""

    def __init__(self, max_records: int = DEFAULT_MAX_NETWORK_RECORDS,
                 filter_dev_tools: bool = True):
        if max_records < 1:
            raise ValueError("max_records must be at least 1")
        self.max_records = max_records
        self.filter_dev_tools = filter_dev_tools
        self._records: "OrderedDict[str, NetworkRecord]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._records)

    def record(self, rec: NetworkRecord) -> bool:
        """Add a new record or replace the one with the same id.

        An update keeps the record's original position. Returns False when the
        record was filtered out.
        """
        if self.filter_dev_tools and is_dev_tools_request(rec.url):
            return False

        self._records[rec.id] = rec
        while len(self._records) > self.max_records:
            self._records.popitem(last=False)
        return True

    def extend(self, records: Iterable[NetworkRecord]) -> None:
        for rec in records:
            self.record(rec)

    def get(self, record_id: str) -> Optional[NetworkRecord]:
        return self._records.get(record_id)

    def records(self) -> List[NetworkRecord]:
        """Records in capture order, oldest first."""
        return list(self._records.values())

    def clear(self) -> None:
        self._records.clear()
