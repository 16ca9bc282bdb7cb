import asyncio
from pathlib import Path

import pytest

from job_errors import JobAlreadySubmitted, RenderExitError
from job_models import JobStatus
from job_registry import JobRegistry
from job_store import JobStore
from render_invoker import RenderResult
from render_queue import RenderQueue


class FakeInvoker:
    """Stands in for the renderer; each job runs until the test releases it."""

    def __init__(self, honor_cancel: bool = True):
        self.honor_cancel = honor_cancel
        self.started = []
        self.active = 0
        self.max_active = 0
        self._releases = {}

    def build_command(self, job_dir):
        return ["fake-render", str(job_dir)]

    def release(self, job_id, result=None):
        self._releases[job_id].set_result(result or RenderResult(command=["fake-render"], exit_code=0))

    async def invoke(self, job_dir, cancel_event=None):
        job_id = Path(job_dir).name
        self.started.append(job_id)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        release = asyncio.get_running_loop().create_future()
        self._releases[job_id] = release
        try:
            waiters = {release}
            cancel_wait = None
            if cancel_event is not None and self.honor_cancel:
                cancel_wait = asyncio.ensure_future(cancel_event.wait())
                waiters.add(cancel_wait)
            done, _ = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
            if cancel_wait is not None:
                cancel_wait.cancel()
            if release in done:
                return release.result()
            return RenderResult(command=["fake-render"], exit_code=-9, canceled=True)
        finally:
            self.active -= 1


class ExplodingInvoker(FakeInvoker):
    async def invoke(self, job_dir, cancel_event=None):
        if not self.started:
            self.started.append(Path(job_dir).name)
            raise RuntimeError("renderer wrapper crashed")
        return await super().invoke(job_dir, cancel_event)


async def settle():
    for _ in range(10):
        await asyncio.sleep(0)


@pytest.fixture
def store(tmp_path):
    return JobStore(tmp_path / "jobs")


@pytest.fixture
def registry(store):
    return JobRegistry(store)


def _new_jobs(store, registry, count):
    ids = []
    for _ in range(count):
        paths = store.create_job()
        registry.register(paths, ["layer.png"])
        ids.append(paths.id)
    return ids


def test_fifo_admission_with_single_slot(store, registry):
    invoker = FakeInvoker()

    async def scenario():
        queue = RenderQueue(invoker, registry, store, max_concurrent=1)
        a, b, c = _new_jobs(store, registry, 3)
        futures = {job_id: queue.submit(job_id) for job_id in (a, b, c)}
        await settle()

        assert registry.get(a).status is JobStatus.running
        assert registry.get(b).status is JobStatus.queued
        assert registry.get(b).queue_position == 1
        assert registry.get(c).queue_position == 2

        invoker.release(a)
        record = await futures[a]
        await settle()

        assert record.status is JobStatus.done
        assert registry.get(b).status is JobStatus.running
        assert registry.get(c).queue_position == 1

        invoker.release(b)
        await futures[b]
        await settle()
        invoker.release(c)
        await futures[c]
        return a, b, c

    a, b, c = asyncio.run(scenario())
    assert invoker.started == [a, b, c]
    assert invoker.max_active == 1


def test_running_never_exceeds_limit_and_waiting_is_accounted(store, registry):
    invoker = FakeInvoker()

    async def scenario():
        queue = RenderQueue(invoker, registry, store, max_concurrent=2)
        ids = _new_jobs(store, registry, 6)
        futures = [queue.submit(job_id) for job_id in ids]
        await settle()
        queue.cancel(ids[4])

        def check():
            stats = queue.stats
            assert queue.running_count <= 2
            assert queue.waiting_count == stats.submitted - stats.admitted - stats.canceled_waiting

        check()
        for job_id in ids:
            if job_id == ids[4]:
                continue
            await settle()
            check()
            invoker.release(job_id)
            await settle()
            check()
        await asyncio.gather(*futures)

    asyncio.run(scenario())
    assert invoker.max_active == 2


def test_cancel_queued_job_never_starts_it(store, registry):
    invoker = FakeInvoker()

    async def scenario():
        queue = RenderQueue(invoker, registry, store, max_concurrent=1)
        a, b, c, d = _new_jobs(store, registry, 4)
        futures = {job_id: queue.submit(job_id) for job_id in (a, b, c, d)}
        await settle()

        assert queue.cancel(c) is True
        canceled = await futures[c]
        assert canceled.status is JobStatus.canceled
        assert canceled.outcome.was_running is False
        assert queue.position(b) == 1
        assert queue.position(d) == 2

        for job_id in (a, b, d):
            await settle()
            invoker.release(job_id)
            await futures[job_id]
        return a, b, c, d

    a, b, c, d = asyncio.run(scenario())
    assert c not in invoker.started
    assert invoker.started == [a, b, d]
    assert registry.get(c).status is JobStatus.canceled


def test_cancel_running_job_overrides_exit_code(store, registry):
    invoker = FakeInvoker(honor_cancel=False)

    async def scenario():
        queue = RenderQueue(invoker, registry, store, max_concurrent=1)
        (job_id,) = _new_jobs(store, registry, 1)
        future = queue.submit(job_id)
        await settle()

        assert queue.cancel(job_id) is True
        invoker.release(job_id, RenderResult(command=["fake-render"], exit_code=0))
        return await future

    record = asyncio.run(scenario())
    assert record.status is JobStatus.canceled
    assert record.outcome.was_running is True


def test_cancel_unknown_or_finished_job_returns_false(store, registry):
    invoker = FakeInvoker()

    async def scenario():
        queue = RenderQueue(invoker, registry, store)
        (job_id,) = _new_jobs(store, registry, 1)
        future = queue.submit(job_id)
        await settle()
        invoker.release(job_id)
        await future
        return queue.cancel(job_id), queue.cancel("not-a-job")

    assert asyncio.run(scenario()) == (False, False)


def test_duplicate_submission_is_rejected(store, registry):
    invoker = FakeInvoker()

    async def scenario():
        queue = RenderQueue(invoker, registry, store)
        (job_id,) = _new_jobs(store, registry, 1)
        future = queue.submit(job_id)
        await settle()
        with pytest.raises(JobAlreadySubmitted):
            queue.submit(job_id)
        invoker.release(job_id)
        await future
        with pytest.raises(JobAlreadySubmitted):
            queue.submit(job_id)

    asyncio.run(scenario())
    assert len(invoker.started) == 1


def test_render_errors_are_recorded_on_the_job(store, registry):
    invoker = FakeInvoker()

    async def scenario():
        queue = RenderQueue(invoker, registry, store)
        (job_id,) = _new_jobs(store, registry, 1)
        future = queue.submit(job_id)
        await settle()
        invoker.release(
            job_id,
            RenderResult(
                command=["fake-render", "job"],
                exit_code=2,
                stdout="some output",
                stderr="stack trace",
                error=RenderExitError("Renderer exited with code 2."),
            ),
        )
        return await future

    record = asyncio.run(scenario())
    assert record.status is JobStatus.error
    assert record.outcome.error_kind == "RenderExitError"
    assert record.outcome.exit_code == 2
    assert record.outcome.stderr == "stack trace"
    assert record.outcome.command == ["fake-render", "job"]


def test_unexpected_failure_does_not_stall_the_queue(store, registry):
    invoker = ExplodingInvoker()

    async def scenario():
        queue = RenderQueue(invoker, registry, store)
        a, b = _new_jobs(store, registry, 2)
        future_a = queue.submit(a)
        future_b = queue.submit(b)
        record_a = await future_a
        await settle()
        invoker.release(b)
        record_b = await future_b
        return record_a, record_b

    record_a, record_b = asyncio.run(scenario())
    assert record_a.status is JobStatus.error
    assert record_a.outcome.error_kind == "InternalError"
    assert record_b.status is JobStatus.done


def test_on_finished_runs_for_every_terminal_job(store, registry):
    invoker = FakeInvoker()
    finished = []

    async def scenario():
        queue = RenderQueue(invoker, registry, store, on_finished=lambda record: finished.append(record.id))
        a, b = _new_jobs(store, registry, 2)
        future_a = queue.submit(a)
        queue.submit(b)
        queue.cancel(b)
        await settle()
        invoker.release(a)
        await future_a
        return a, b

    a, b = asyncio.run(scenario())
    assert finished == [b, a]


def test_shutdown_cancels_waiting_and_running_jobs(store, registry):
    invoker = FakeInvoker()

    async def scenario():
        queue = RenderQueue(invoker, registry, store, max_concurrent=1)
        a, b = _new_jobs(store, registry, 2)
        queue.submit(a)
        queue.submit(b)
        await settle()
        await queue.shutdown()
        return a, b

    a, b = asyncio.run(scenario())
    assert registry.get(a).status is JobStatus.canceled
    assert registry.get(b).status is JobStatus.canceled
    assert invoker.started == [a]


def test_evicted_finished_job_cannot_be_resubmitted(store):
    registry = JobRegistry(store, keep_finished=0)
    invoker = FakeInvoker()

    async def scenario():
        queue = RenderQueue(invoker, registry, store)
        (job_id,) = _new_jobs(store, registry, 1)
        future = queue.submit(job_id)
        await settle()
        invoker.release(job_id)
        await future
        assert job_id not in registry
        with pytest.raises(JobAlreadySubmitted):
            queue.submit(job_id)
        return job_id

    job_id = asyncio.run(scenario())
    assert registry.get(job_id).status is JobStatus.done
