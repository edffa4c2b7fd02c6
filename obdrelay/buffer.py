from __future__ import annotations

import threading
from typing import Dict


class SampleBuffer:
    """Latest value per sample key, shared by producers and the relay loop.

    A put that races with a drain lands entirely before or entirely after it;
    the mapping is only ever touched under the lock.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._data: Dict[str, str] = {}

    def put(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value

    def drain(self) -> Dict[str, str]:
        with self._lock:
            snapshot = self._data
            self._data = {}
        return snapshot

    def clear(self) -> int:
        with self._lock:
            dropped = len(self._data)
            self._data = {}
        return dropped

    def is_empty(self) -> bool:
        with self._lock:
            return not self._data

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def snapshot(self) -> Dict[str, str]:
        with self._lock:
            return dict(self._data)
