"""Bounded accumulation of subprocess output."""

from __future__ import annotations

import threading

DEFAULT_MAX_OUTPUT_BYTES = 10 * 1024 * 1024


def truncation_marker(max_bytes: int) -> str:
    if max_bytes % (1024 * 1024) == 0:
        limit = f"{max_bytes // (1024 * 1024)}MB"
    else:
        limit = f"{max_bytes} bytes"
    return f"\n\n[OUTPUT TRUNCATED: exceeded {limit} limit]"


TRUNCATION_MARKER = truncation_marker(DEFAULT_MAX_OUTPUT_BYTES)


class OutputCollector:
    """Keep at most ``max_bytes`` of a stream, then one truncation marker."""

    def __init__(self, max_bytes: int = DEFAULT_MAX_OUTPUT_BYTES) -> None:
        if max_bytes <= 0:
            raise ValueError("max_bytes must be > 0")
        self.max_bytes = max_bytes
        self._chunks: list[bytes] = []
        self._size = 0
        self._truncated = False
        self._lock = threading.Lock()

    @property
    def truncated(self) -> bool:
        return self._truncated

    @property
    def size(self) -> int:
        return self._size

    def append(self, chunk: bytes) -> None:
        with self._lock:
            if self._truncated or not chunk:
                return
            remaining = self.max_bytes - self._size
            if len(chunk) <= remaining:
                self._chunks.append(chunk)
                self._size += len(chunk)
                return
            if remaining > 0:
                self._chunks.append(chunk[:remaining])
                self._size += remaining
            self._truncated = True

    def text(self) -> str:
        with self._lock:
            body = b"".join(self._chunks).decode("utf-8", errors="replace")
            if self._truncated:
                return body + truncation_marker(self.max_bytes)
            return body
