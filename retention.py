import asyncio
import logging
import time
from typing import Callable, Dict, List, Optional

from job_registry import JobRegistry
from job_store import JobStore

logger = logging.getLogger("pembroider_service.retention")

ActivityCheck = Callable[[str], bool]


class RetentionSweeper:
    def __init__(
        self,
        store: JobStore,
        *,
        retention_seconds: float,
        interval_seconds: float = 3600.0,
        registry: Optional[JobRegistry] = None,
        is_active: Optional[ActivityCheck] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.retention_seconds = retention_seconds
        self.interval_seconds = interval_seconds
        self.registry = registry
        self.is_active = is_active
        self.clock = clock
        self._task: Optional[asyncio.Task] = None
        self._deferred: Dict[str, asyncio.Task] = {}

    @property
    def enabled(self) -> bool:
        return self.retention_seconds > 0

    def sweep(self, now: Optional[float] = None) -> List[str]:
        """Delete job directories last modified before the retention cutoff.

        Jobs still queued or running are never touched. A directory that cannot
        be inspected or removed is logged and skipped.
        """
        if not self.enabled:
            return []
        cutoff = (self.clock() if now is None else now) - self.retention_seconds
        deleted: List[str] = []
        for job_id, path in self.store.iter_job_dirs():
            if self.is_active is not None and self.is_active(job_id):
                continue
            try:
                mtime = path.stat().st_mtime
            except FileNotFoundError:
                continue
            except OSError as exc:
                logger.warning("job %s: cannot stat %s during sweep: %s", job_id, path, exc)
                continue
            if mtime >= cutoff:
                continue
            if self._delete(job_id):
                deleted.append(job_id)
        if deleted:
            logger.info("Retention sweep removed %s expired job(s)", len(deleted))
        return deleted

    def start(self) -> None:
        if not self.enabled or self._task is not None:
            return
        self._task = asyncio.create_task(self._run_periodically(), name="retention-sweeper")
        logger.info(
            "Retention sweeper started (ttl=%.0fs, interval=%.0fs)",
            self.retention_seconds,
            self.interval_seconds,
        )

    async def stop(self) -> None:
        tasks = list(self._deferred.values())
        if self._task is not None:
            tasks.append(self._task)
        self._task = None
        self._deferred.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def schedule_deletion(self, job_id: str, delay_seconds: float) -> Optional[asyncio.Task]:
        if delay_seconds <= 0 or job_id in self._deferred:
            return None
        task = asyncio.create_task(self._delete_later(job_id, delay_seconds), name=f"delete-{job_id}")
        self._deferred[job_id] = task
        return task

    async def _delete_later(self, job_id: str, delay_seconds: float) -> None:
        try:
            await asyncio.sleep(delay_seconds)
            if self.is_active is not None and self.is_active(job_id):
                logger.info("job %s: skipping deferred deletion; job is active", job_id)
                return
            self._delete(job_id)
        finally:
            self._deferred.pop(job_id, None)

    async def _run_periodically(self) -> None:
        while True:
            try:
                self.sweep()
            except Exception:
                logger.exception("Retention sweep failed")
            await asyncio.sleep(self.interval_seconds)

    def _delete(self, job_id: str) -> bool:
        deleted = self.store.delete_job(job_id)
        if deleted and self.registry is not None:
            self.registry.forget(job_id)
        return deleted
