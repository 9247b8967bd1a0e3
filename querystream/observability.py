"""
Observability for querystream

Process-wide streaming counters, reported by the health endpoint. Detailed
per-stream events go to the log; these counters only give the totals.
"""

import threading
from dataclasses import asdict, dataclass
from typing import Any, Dict


@dataclass
class StreamCounters:
    """Snapshot of the stream counters."""
    streams_started: int = 0
    streams_completed: int = 0
    streams_failed: int = 0
    streams_cancelled: int = 0
    rows_streamed: int = 0
    bytes_sent: int = 0


class StreamStats:
    """Thread-safe stream counters shared by all requests."""

    def __init__(self):
        self._lock = threading.Lock()
        self._counters = StreamCounters()

    def stream_started(self) -> None:
        with self._lock:
            self._counters.streams_started += 1

    def chunk_sent(self, rows: int, nbytes: int) -> None:
        with self._lock:
            self._counters.rows_streamed += rows
            self._counters.bytes_sent += nbytes

    def stream_completed(self) -> None:
        with self._lock:
            self._counters.streams_completed += 1

    def stream_failed(self) -> None:
        with self._lock:
            self._counters.streams_failed += 1

    def stream_cancelled(self) -> None:
        with self._lock:
            self._counters.streams_cancelled += 1

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return asdict(self._counters)

    def reset(self) -> None:
        with self._lock:
            self._counters = StreamCounters()
