import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

from job_errors import InternalError, JobAlreadySubmitted, UnknownJob
from job_models import CanceledOutcome, DoneOutcome, ErrorOutcome, JobOutcome, JobRecord, output_urls
from job_registry import JobRegistry
from job_store import JobPaths, JobStore
from render_invoker import RenderInvoker, RenderResult

logger = logging.getLogger("pembroider_service.queue")

FinishedCallback = Callable[[JobRecord], None]


@dataclass
class _Submission:
    job_id: str
    paths: JobPaths
    future: asyncio.Future
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    task: Optional[asyncio.Task] = None
    cancel_requested: bool = False


@dataclass
class QueueStats:
    submitted: int = 0
    admitted: int = 0
    canceled_waiting: int = 0


class RenderQueue:
    """Admits at most ``max_concurrent`` renders at a time, in arrival order.

    All bookkeeping happens on the event loop thread; the renders themselves
    are separate processes supervised by the invoker.
    """

    def __init__(
        self,
        invoker: RenderInvoker,
        registry: JobRegistry,
        store: JobStore,
        *,
        max_concurrent: int = 1,
        on_finished: Optional[FinishedCallback] = None,
    ):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.invoker = invoker
        self.registry = registry
        self.store = store
        self.max_concurrent = max_concurrent
        self.on_finished = on_finished
        self.stats = QueueStats()
        self._waiting: "OrderedDict[str, _Submission]" = OrderedDict()
        self._running: Dict[str, _Submission] = {}
        registry.bind_positions(self.position)

    @property
    def running_count(self) -> int:
        return len(self._running)

    @property
    def waiting_count(self) -> int:
        return len(self._waiting)

    def is_active(self, job_id: str) -> bool:
        return job_id in self._waiting or job_id in self._running

    def position(self, job_id: str) -> Optional[int]:
        for index, waiting_id in enumerate(self._waiting, start=1):
            if waiting_id == job_id:
                return index
        return None

    def pending(self, job_id: str) -> Optional[asyncio.Future]:
        submission = self._waiting.get(job_id) or self._running.get(job_id)
        return submission.future if submission else None

    def submit(self, job_id: str) -> asyncio.Future:
        if self.is_active(job_id):
            raise JobAlreadySubmitted(f"Job '{job_id}' is already queued or running.")
        record = self.registry.peek(job_id)
        if record is None and self.store.exists(job_id):
            raise JobAlreadySubmitted(f"Job '{job_id}' is no longer pending.")
        if record is None:
            raise UnknownJob(f"Job '{job_id}' must be registered before it is submitted.")
        if record.status.terminal:
            raise JobAlreadySubmitted(f"Job '{job_id}' already finished ({record.status.value}).")

        loop = asyncio.get_running_loop()
        submission = _Submission(job_id=job_id, paths=self.store.paths(job_id), future=loop.create_future())
        self._waiting[job_id] = submission
        self.stats.submitted += 1
        logger.info("job %s: queued (position %s)", job_id, len(self._waiting))
        self._admit()
        return submission.future

    def cancel(self, job_id: str) -> bool:
        submission = self._waiting.pop(job_id, None)
        if submission is not None:
            self.stats.canceled_waiting += 1
            record = self.registry.finish(job_id, CanceledOutcome(was_running=False))
            logger.info("job %s: canceled while queued", job_id)
            self._resolve(submission, record)
            self._notify(record)
            return True

        submission = self._running.get(job_id)
        if submission is None:
            return False
        if not submission.cancel_requested:
            submission.cancel_requested = True
            submission.cancel_event.set()
            logger.info("job %s: cancel requested while running", job_id)
        return True

    async def shutdown(self) -> None:
        for job_id in list(self._waiting):
            self.cancel(job_id)
        tasks = [submission.task for submission in self._running.values() if submission.task is not None]
        for job_id in list(self._running):
            self.cancel(job_id)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _admit(self) -> None:
        while self._waiting and len(self._running) < self.max_concurrent:
            job_id, submission = self._waiting.popitem(last=False)
            self._running[job_id] = submission
            self.stats.admitted += 1
            self.registry.mark_running(job_id, self.invoker.build_command(submission.paths.root))
            submission.task = asyncio.create_task(self._run(submission), name=f"render-{job_id}")

    async def _run(self, submission: _Submission) -> None:
        job_id = submission.job_id
        outcome: Optional[JobOutcome] = None
        try:
            result = await self.invoker.invoke(submission.paths.root, submission.cancel_event)
            outcome = self._outcome_for(submission, result)
        except Exception as exc:
            logger.exception("job %s: unexpected error while rendering", job_id)
            outcome = ErrorOutcome(
                error_kind=InternalError.__name__,
                message=f"{InternalError.title}: {exc}",
                command=self.invoker.build_command(submission.paths.root),
            )
        finally:
            self._running.pop(job_id, None)
            if outcome is None:
                # The task itself was cancelled, e.g. the loop is shutting down.
                outcome = CanceledOutcome(was_running=True)
            record = self.registry.finish(job_id, outcome)
            self._resolve(submission, record)
            self._admit()
        self._notify(record)

    @staticmethod
    def _outcome_for(submission: _Submission, result: RenderResult) -> JobOutcome:
        if submission.cancel_requested or result.canceled:
            return CanceledOutcome(was_running=True, exit_code=result.exit_code)
        if result.error is not None:
            return ErrorOutcome(
                error_kind=result.error.kind,
                message=result.error.message,
                exit_code=result.exit_code,
                command=result.command,
                stdout=result.stdout,
                stderr=result.stderr,
                duration_seconds=result.duration_seconds,
            )
        return DoneOutcome(files=output_urls(submission.job_id), duration_seconds=result.duration_seconds)

    @staticmethod
    def _resolve(submission: _Submission, record: JobRecord) -> None:
        if not submission.future.done():
            submission.future.set_result(record.model_copy(deep=True))

    def _notify(self, record: JobRecord) -> None:
        if self.on_finished is None:
            return
        try:
            self.on_finished(record)
        except Exception:
            logger.exception("job %s: on_finished callback failed", record.id)
