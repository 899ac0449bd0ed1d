"""
Capture job registry.

Jobs live in process memory for the lifetime of the service. The registry is
bounded: when full, the oldest finished job is evicted. Running jobs are never
evicted, so the registry may temporarily exceed its capacity while many jobs
are in flight.
"""

import asyncio
from collections import OrderedDict
import logging
from typing import Any

from epcishub.capture.models import CaptureJob

logger = logging.getLogger(__name__)


class CaptureJobRegistry:
    """
    Insertion-ordered store of capture jobs keyed by capture id.

    Inserts are serialised with an asyncio.Lock; each job object is mutated
    only by the task processing it.

    Example:
        >>> registry = CaptureJobRegistry(maxsize=2)
        >>> await registry.add(job)
        >>> registry.get(job.capture_id) is job
        True
    """

    def __init__(self, maxsize: int = 10000):
        if maxsize <= 0:
            raise ValueError(f"maxsize must be positive, got {maxsize}")

        self._jobs: OrderedDict[str, CaptureJob] = OrderedDict()
        self._maxsize = maxsize
        self._lock = asyncio.Lock()
        self._evictions = 0

    async def add(self, job: CaptureJob) -> None:
        async with self._lock:
            if len(self._jobs) >= self._maxsize:
                self._evict_oldest_finished()
            self._jobs[job.capture_id] = job

    def _evict_oldest_finished(self) -> None:
        for capture_id, job in self._jobs.items():
            if not job.running:
                del self._jobs[capture_id]
                self._evictions += 1
                logger.debug(f"Evicted finished capture job {capture_id}")
                return

    def get(self, capture_id: str) -> CaptureJob | None:
        return self._jobs.get(capture_id)

    def list_jobs(self) -> list[CaptureJob]:
        """Jobs in submission order."""
        return list(self._jobs.values())

    def __len__(self) -> int:
        return len(self._jobs)

    def __contains__(self, capture_id: str) -> bool:
        return capture_id in self._jobs

    def get_stats(self) -> dict[str, Any]:
        running = sum(1 for job in self._jobs.values() if job.running)
        return {
            "size": len(self._jobs),
            "maxsize": self._maxsize,
            "running": running,
            "evictions": self._evictions,
        }
