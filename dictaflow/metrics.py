"""
Thread-safe metrics logging with batched writes.

Usage:
    metrics = MetricsWriter(config.metrics_file)
    metrics.log("stream_request", provider="openai", latency_ms=234)
"""

import json
import threading
import time
from pathlib import Path
from queue import Empty, Queue
from typing import Any, List, Optional


class MetricsWriter:
    """
    Thread-safe metrics writer with atomic appends.
    Uses a queue to batch writes from multiple threads.
    """

    def __init__(self, metrics_file: Path):
        self.metrics_file = Path(metrics_file)
        self._queue: "Queue[dict]" = Queue()
        self._shutdown = threading.Event()
        self._write_lock = threading.Lock()
        self._writer_thread = threading.Thread(target=self._writer_loop, name="metrics-writer", daemon=True)
        self._writer_thread.start()

    def log(self, event: str, **kwargs: Any) -> None:
        """
        Queue a metric for writing. Non-blocking.

        Args:
            event: Event name (e.g., "session_start", "stream_request", "server_spawned")
            **kwargs: Additional fields to log
        """
        entry = {
            "ts": time.time(),
            "event": event,
            **kwargs
        }
        self._queue.put(entry)

    def _writer_loop(self) -> None:
        """Background thread that batches and writes metrics."""
        while not self._shutdown.is_set():
            try:
                entries = [self._queue.get(timeout=1.0)]
                entries.extend(self._drain())
                self._write_entries(entries)
            except Empty:
                continue
            except Exception as e:
                print(f"MetricsWriter error: {e}")

    def _drain(self) -> List[dict]:
        entries = []
        while True:
            try:
                entries.append(self._queue.get_nowait())
            except Empty:
                return entries

    def _write_entries(self, entries: List[dict]) -> None:
        # Serialized so a flush from another thread can't interleave lines
        with self._write_lock:
            try:
                self.metrics_file.parent.mkdir(parents=True, exist_ok=True)
                with open(self.metrics_file, "a") as f:
                    for entry in entries:
                        f.write(json.dumps(entry, default=str) + "\n")
            except Exception as e:
                print(f"Failed to write metrics: {e}")

    def flush(self) -> None:
        """Write any pending metrics to disk now."""
        entries = self._drain()
        if entries:
            self._write_entries(entries)

    def shutdown(self) -> None:
        """Shutdown the writer thread gracefully."""
        self._shutdown.set()
        self._writer_thread.join(timeout=2.0)
        self.flush()


# Global instance (initialized lazily)
_metrics: Optional[MetricsWriter] = None


def get_metrics(metrics_file: Path) -> MetricsWriter:
    """Get or create the global metrics writer."""
    global _metrics
    if _metrics is None:
        _metrics = MetricsWriter(metrics_file)
    return _metrics


# Typed helper functions for consistent event logging

def log_session_complete(
    metrics: MetricsWriter,
    session_id: str,
    provider: str,
    audio_seconds: float,
    partial_count: int,
    final_text: str,
) -> None:
    """Log session_complete event."""
    metrics.log(
        "session_complete",
        session_id=session_id,
        provider=provider,
        audio_seconds=round(audio_seconds, 2),
        partial_count=partial_count,
        final_text=final_text[:500],  # Truncate for metrics
    )


def log_stream_request(
    metrics: MetricsWriter,
    session_id: str,
    provider: str,
    audio_bytes: int,
    rms: float,
    latency_ms: int,
) -> None:
    """Log stream_request event."""
    metrics.log(
        "stream_request",
        session_id=session_id,
        provider=provider,
        audio_bytes=audio_bytes,
        rms=round(rms, 1),
        latency_ms=latency_ms,
    )
