"""
Census Sync - Progress Reporting

JobCounters are owned by the bulk engine and only ever grow. The
ProgressReporter runs as its own task, sampling the counters into
BulkJobStatus snapshots and publishing them on a bounded ProgressStream:

    async for status in job.stream:
        print(f"{status.progress}% ({status.added} added)")

A slow consumer loses intermediate snapshots, never the final one.
"""

import asyncio
import logging
from collections import deque
from typing import Callable, Deque, Optional

from census.models import BulkJobStatus

logger = logging.getLogger(__name__)


class JobCounters:
    """Running totals of a bulk job"""

    def __init__(self, total: int):
        self.total = total
        self.processed = 0
        self.added = 0
        self.cancelled = False

    def advance(self, processed: int, added: int):
        self.processed += processed
        self.added += added

    def snapshot(self) -> BulkJobStatus:
        return BulkJobStatus(
            processed=self.processed,
            total=self.total,
            added=self.added,
            cancelled=self.cancelled,
        )


class ProgressStream:
    """Bounded single-consumer async stream of job snapshots"""

    def __init__(self, capacity: int = 10):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self.dropped = 0
        self._buffer: Deque[BulkJobStatus] = deque()
        self._ready = asyncio.Event()
        self._closed = False

    @classmethod
    def closed_stream(cls) -> "ProgressStream":
        stream = cls()
        stream.close()
        return stream

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, status: BulkJobStatus) -> bool:
        """Queue an intermediate snapshot; dropped if the buffer is full."""
        if self._closed:
            return False
        if len(self._buffer) >= self.capacity:
            self.dropped += 1
            return False
        self._buffer.append(status)
        self._ready.set()
        return True

    def publish_final(self, status: BulkJobStatus):
        """Queue the terminal snapshot, evicting the oldest if needed, and close."""
        if self._closed:
            return
        if len(self._buffer) >= self.capacity:
            self._buffer.popleft()
            self.dropped += 1
        self._buffer.append(status)
        self.close()

    def close(self):
        self._closed = True
        self._ready.set()

    def __aiter__(self):
        return self

    async def __anext__(self) -> BulkJobStatus:
        while True:
            if self._buffer:
                return self._buffer.popleft()
            if self._closed:
                raise StopAsyncIteration
            self._ready.clear()
            await self._ready.wait()


class ProgressReporter:
    """
    Periodic snapshot publisher.

    Emits once on start, once per interval while the job runs and once
    more when `done` is set, then closes the stream.
    """

    def __init__(
        self,
        stream: ProgressStream,
        snapshot: Callable[[], BulkJobStatus],
        done: asyncio.Event,
        interval: float = 10.0,
        job_id: Optional[str] = None,
    ):
        self.stream = stream
        self.snapshot = snapshot
        self.done = done
        self.interval = interval
        self.job_id = job_id

    async def run(self):
        try:
            self.stream.publish(self.snapshot())
            while not self.done.is_set():
                try:
                    await asyncio.wait_for(self.done.wait(), timeout=self.interval)
                except asyncio.TimeoutError:
                    status = self.snapshot()
                    logger.debug(f"Job {self.job_id}: {status.processed}/{status.total} processed")
                    self.stream.publish(status)
            self.stream.publish_final(self.snapshot())
        finally:
            # Consumers must never hang on a reporter that died
            self.stream.close()
