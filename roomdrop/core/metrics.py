from __future__ import annotations

import threading
from typing import Dict


class MetricsStore:
    """Thread-safe in-memory counters for the current process."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = {
            "rooms_created": 0,
            "rooms_deleted": 0,
            "rooms_swept": 0,
            "uploads": 0,
            "uploads_rejected": 0,
            "bytes_uploaded": 0,
        }

    def record_room_created(self) -> None:
        with self._lock:
            self._counters["rooms_created"] += 1

    def record_room_deleted(self) -> None:
        with self._lock:
            self._counters["rooms_deleted"] += 1

    def record_sweep(self, count: int) -> None:
        if count <= 0:
            return
        with self._lock:
            self._counters["rooms_swept"] += count

    def record_upload(self, size_bytes: int) -> None:
        with self._lock:
            self._counters["uploads"] += 1
            self._counters["bytes_uploaded"] += size_bytes

    def record_rejection(self) -> None:
        with self._lock:
            self._counters["uploads_rejected"] += 1

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._counters)


metrics = MetricsStore()
