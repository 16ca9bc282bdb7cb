import logging
from collections import OrderedDict
from typing import Callable, Dict, List, Optional

from job_errors import RENDER_ERROR_TITLES, UnknownJob
from job_models import (
    OUTCOME_STATUS,
    DoneOutcome,
    ErrorOutcome,
    JobOutcome,
    JobRecord,
    JobStatus,
    output_urls,
    utcnow,
)
from job_store import JobPaths, JobStore

logger = logging.getLogger("pembroider_service.registry")

PositionProvider = Callable[[str], Optional[int]]

KEEP_FINISHED = 32


class JobRegistry:
    """In-memory job id -> status record map, mirrored into each job's status.json.

    Each job's record is written only by the task driving that job. Only the
    ``keep_finished`` most recently finished records stay in memory once their
    mirror is on disk. Lookups for ids missing from memory (evicted, or from
    before a restart) are rebuilt from the job directory and flagged as
    reconstructed.
    """

    def __init__(self, store: JobStore, *, keep_finished: int = KEEP_FINISHED):
        self.store = store
        self.keep_finished = max(keep_finished, 0)
        self._records: Dict[str, JobRecord] = {}
        self._finished: "OrderedDict[str, None]" = OrderedDict()
        self._positions: Optional[PositionProvider] = None

    def bind_positions(self, provider: PositionProvider) -> None:
        self._positions = provider

    def __contains__(self, job_id: str) -> bool:
        return job_id in self._records

    def __len__(self) -> int:
        return len(self._records)

    def register(self, paths: JobPaths, layers: Optional[List[str]] = None) -> JobRecord:
        if paths.id in self._records:
            raise ValueError(f"job {paths.id} is already registered")
        record = JobRecord(id=paths.id, layers=list(layers or []))
        self._records[paths.id] = record
        self.store.write_status(record)
        logger.info("job %s: registered (queued)", paths.id)
        return record

    def mark_running(self, job_id: str, command: Optional[List[str]] = None) -> JobRecord:
        record = self._require(job_id)
        if record.status is not JobStatus.queued:
            logger.warning("job %s: ignoring running transition from %s", job_id, record.status.value)
            return record
        now = utcnow()
        record.status = JobStatus.running
        record.started_at = now
        record.updated_at = now
        if command is not None:
            record.command = list(command)
        self.store.write_status(record)
        return record

    def finish(self, job_id: str, outcome: JobOutcome) -> JobRecord:
        record = self._require(job_id)
        if record.status.terminal:
            logger.warning(
                "job %s: ignoring %s outcome; already %s",
                job_id,
                outcome.kind,
                record.status.value,
            )
            return record
        now = utcnow()
        record.status = OUTCOME_STATUS[outcome.kind]
        record.outcome = outcome
        record.finished_at = now
        record.updated_at = now
        if self.store.write_status(record) or not self.store.exists(job_id):
            self._finished[job_id] = None
            self._evict_finished()
        else:
            logger.warning("job %s: keeping finished record in memory; status mirror not written", job_id)
        logger.info("job %s: %s", job_id, record.status.value)
        return record

    def forget(self, job_id: str) -> None:
        self._records.pop(job_id, None)
        self._finished.pop(job_id, None)

    def peek(self, job_id: str) -> Optional[JobRecord]:
        return self._records.get(job_id)

    def get(self, job_id: str) -> JobRecord:
        record = self._records.get(job_id)
        if record is None:
            return self._reconstruct(job_id)
        snapshot = record.model_copy(deep=True)
        if snapshot.status is JobStatus.queued and self._positions is not None:
            snapshot.queue_position = self._positions(job_id)
        return snapshot

    def _evict_finished(self) -> None:
        while len(self._finished) > self.keep_finished:
            job_id, _ = self._finished.popitem(last=False)
            self._records.pop(job_id, None)

    def _require(self, job_id: str) -> JobRecord:
        record = self._records.get(job_id)
        if record is None:
            raise UnknownJob(f"Job '{job_id}' does not exist.")
        return record

    def _reconstruct(self, job_id: str) -> JobRecord:
        paths = self.store.paths(job_id)
        if not paths.root.is_dir():
            raise UnknownJob(f"Job '{job_id}' does not exist.")

        mirrored = self.store.read_status(job_id)
        if mirrored is not None and mirrored.status.terminal:
            mirrored.reconstructed = True
            return mirrored

        record = mirrored or JobRecord(id=job_id)
        record.reconstructed = True
        record.queue_position = None
        if paths.outputs_present():
            record.status = JobStatus.done
            record.outcome = DoneOutcome(files=output_urls(job_id))
        else:
            record.status = JobStatus.error
            record.outcome = ErrorOutcome(
                error_kind="RenderInterrupted",
                message=RENDER_ERROR_TITLES["RenderInterrupted"],
                command=record.command,
            )
        logger.info("job %s: reconstructed status %s from disk", job_id, record.status.value)
        return record
