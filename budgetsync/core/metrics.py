from __future__ import annotations

import threading
from typing import Dict


class MetricsStore:
    """Thread-safe in-memory counters for sync traffic."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = {
            "uploads": 0,
            "uploads_rejected": 0,
            "downloads": 0,
            "resets": 0,
            "deleted": 0,
            "purged": 0,
            "bytes_uploaded": 0,
        }

    def _bump(self, counter: str) -> None:
        with self._lock:
            self._counters[counter] += 1

    def record_upload(self, size_bytes: int) -> None:
        with self._lock:
            self._counters["uploads"] += 1
            self._counters["bytes_uploaded"] += size_bytes

    def record_upload_rejected(self) -> None:
        self._bump("uploads_rejected")

    def record_download(self) -> None:
        self._bump("downloads")

    def record_reset(self) -> None:
        self._bump("resets")

    def record_tombstone(self) -> None:
        self._bump("deleted")

    def record_purge(self) -> None:
        self._bump("purged")

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._counters)


metrics = MetricsStore()
