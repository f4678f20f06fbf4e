"""
Per-job run guard.

Each job identity (e.g. ``reconcile:oldtimerfarm``) gets its own lock.
A trigger that finds its job already running is skipped, not queued.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Dict, Optional

logger = logging.getLogger(__name__)


class RunGuard:
    """Try-acquire locks keyed by job identity."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, job: str) -> asyncio.Lock:
        lock = self._locks.get(job)
        if lock is None:
            lock = self._locks[job] = asyncio.Lock()
        return lock

    def is_running(self, job: str) -> bool:
        lock = self._locks.get(job)
        return lock is not None and lock.locked()

    def running_jobs(self):
        return sorted(job for job, lock in self._locks.items() if lock.locked())

    @asynccontextmanager
    async def try_run(self, job: str):
        """
        Yield True if this caller owns the job, False if it is already running.

            async with guard.try_run("reconcile:source") as acquired:
                if not acquired:
                    return None
                ...
        """
        lock = self._lock_for(job)
        if lock.locked():
            logger.warning(f"[RunGuard] {job} is already running, skipping")
            yield False
            return

        # No await between the check and the acquire, so this cannot block
        await lock.acquire()
        try:
            yield True
        finally:
            lock.release()


# Global instance
_run_guard: Optional[RunGuard] = None


def get_run_guard() -> RunGuard:
    global _run_guard
    if _run_guard is None:
        _run_guard = RunGuard()
    return _run_guard
