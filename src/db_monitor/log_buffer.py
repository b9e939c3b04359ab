"""
Slow query log buffering and persistence.

Events are batched in memory and appended to a newline-delimited JSON file
when the batch is full, when the oldest buffered event has waited longer
than the flush interval, or on shutdown. Events leave the buffer only after
they were written successfully.
"""

import asyncio
import json
import os
import threading
import time
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from ..shared.logging_config import get_logger
from ..shared.metrics_collector import MetricsCollector
from .exceptions import LogFlushError, MonitoringError
from .models import QueryEvent


class SlowQueryLogBuffer:
    """Batches QueryEvents and flushes them to an append-only log file."""

    def __init__(
        self,
        log_file: str,
        batch_size: int = 50,
        flush_interval_seconds: float = 5.0,
        max_file_size: int = 100 * 1024 * 1024,
        rotate_files: int = 5,
        metrics: Optional[MetricsCollector] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.log_file = Path(log_file)
        self.batch_size = batch_size
        self.flush_interval_seconds = flush_interval_seconds
        self.max_file_size = max_file_size
        self.rotate_files = rotate_files
        self.metrics = metrics or MetricsCollector()
        self.clock = clock
        self.logger = get_logger(__name__, 'slow_query_log')

        self._events: List[QueryEvent] = []
        self._oldest_at: Optional[float] = None
        self._lock = threading.Lock()
        self._flush_lock: Optional[asyncio.Lock] = None
        self._flush_task: Optional[asyncio.Task] = None

        self.stats = {
            'events_buffered': 0,
            'events_written': 0,
            'flushes': 0,
            'flush_failures': 0,
            'rotations': 0,
        }

    def setup(self) -> bool:
        """Create the log directory if missing. Returns False on failure."""
        try:
            self.log_file.parent.mkdir(parents=True, exist_ok=True)
            return True
        except OSError as e:
            self.logger.error(
                f"Failed to create logging directory: {e}",
                operation="setup",
                directory=str(self.log_file.parent),
            )
            return False

    def append(self, event: QueryEvent) -> bool:
        """Buffer an event. Returns True when a flush is due."""
        with self._lock:
            if not self._events:
                self._oldest_at = self.clock()
            self._events.append(event)
            self.stats['events_buffered'] += 1
            return self._flush_due_locked()

    def _flush_due_locked(self) -> bool:
        if not self._events:
            return False
        if len(self._events) >= self.batch_size:
            return True
        return (
            self._oldest_at is not None
            and self.clock() - self._oldest_at >= self.flush_interval_seconds
        )

    def flush_due(self) -> bool:
        with self._lock:
            return self._flush_due_locked()

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)

    def pending_events(self) -> List[QueryEvent]:
        with self._lock:
            return list(self._events)

    async def flush(self) -> int:
        """
        Write buffered events. Returns how many were written.

        Failures are logged and leave the events buffered for the next flush.
        """
        if self._flush_lock is None:
            self._flush_lock = asyncio.Lock()

        async with self._flush_lock:
            with self._lock:
                batch = list(self._events)
            if not batch:
                return 0

            lines = ''.join(json.dumps(e.to_log_record(), default=str) + '\n' for e in batch)

            try:
                await asyncio.to_thread(self._write, lines)
            except LogFlushError as e:
                self.stats['flush_failures'] += 1
                self.metrics.get_counter('db_log_flush_failures_total', 'Failed slow query log flushes').increment()
                self.logger.error(
                    f"Failed to flush slow query log buffer: {e}",
                    operation="flush",
                    buffered=len(batch),
                )
                return 0

            with self._lock:
                del self._events[:len(batch)]
                self._oldest_at = self.clock() if self._events else None

            self.stats['flushes'] += 1
            self.stats['events_written'] += len(batch)
            self.metrics.get_counter('db_log_records_written_total', 'Slow query log records written').increment(len(batch))
            self.logger.info(f"Flushed {len(batch)} slow query logs", operation="flush")
            return len(batch)

    def schedule_flush(self) -> Optional[asyncio.Task]:
        """
        Start a flush in the background without waiting for it.

        At most one background flush exists at a time; while it is pending
        the same task is returned.
        """
        if self._flush_task is not None and not self._flush_task.done():
            return self._flush_task

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return None

        self._flush_task = loop.create_task(self.flush())
        return self._flush_task

    async def stop(self) -> int:
        """Wait for the background flush, then flush what remains."""
        task = self._flush_task
        if task is not None and not task.done():
            await asyncio.gather(task, return_exceptions=True)
        return await self.flush()

    def _write(self, data: str) -> None:
        try:
            self.log_file.parent.mkdir(parents=True, exist_ok=True)
            self._rotate_if_needed(len(data.encode('utf-8')))
            with open(self.log_file, 'a', encoding='utf-8') as f:
                f.write(data)
        except OSError as e:
            raise LogFlushError(str(e)) from e

    def _rotate_if_needed(self, incoming_bytes: int) -> None:
        try:
            current = self.log_file.stat().st_size
        except FileNotFoundError:
            return

        if current == 0 or current + incoming_bytes <= self.max_file_size:
            return

        if self.rotate_files <= 0:
            self.log_file.unlink()
        else:
            for index in range(self.rotate_files - 1, 0, -1):
                source = Path(f"{self.log_file}.{index}")
                if source.exists():
                    os.replace(source, f"{self.log_file}.{index + 1}")
            os.replace(self.log_file, f"{self.log_file}.1")

        self.stats['rotations'] += 1


@dataclass
class LogFileAnalysis:
    """Summary of a slow query log file."""
    total_entries: int
    severity_distribution: Dict[str, int] = field(default_factory=dict)
    top_slow_queries: List[Dict[str, Any]] = field(default_factory=list)


def analyze_log_file(log_file_path: str) -> LogFileAnalysis:
    """
    Summarize a slow query log.

    Malformed lines are skipped. Queries are grouped by their first 100
    characters and the top 10 are ranked by maximum execution time.
    """
    try:
        with open(log_file_path, 'r', encoding='utf-8') as f:
            lines = [line for line in f.read().splitlines() if line.strip()]
    except OSError as e:
        raise MonitoringError(f"Failed to analyze log file: {e}") from e

    entries = []
    for line in lines:
        try:
            parsed = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            entries.append(parsed)

    severity_distribution: Counter = Counter()
    frequency: Dict[str, Dict[str, float]] = {}

    for entry in entries:
        severity_distribution[entry.get('severity', 'UNKNOWN')] += 1
        query = (entry.get('query') or 'unknown')[:100]
        current = frequency.setdefault(query, {'maxTime': 0, 'count': 0})
        current['count'] += 1
        current['maxTime'] = max(current['maxTime'], entry.get('executionTime') or 0)

    top = sorted(
        ({'query': query, **data} for query, data in frequency.items()),
        key=lambda item: item['maxTime'],
        reverse=True,
    )[:10]

    return LogFileAnalysis(
        total_entries=len(entries),
        severity_distribution=dict(severity_distribution),
        top_slow_queries=top,
    )
