"""
Tests for the JobWorker processing loop.
"""

import asyncio
from datetime import datetime

import pytest

from db.database import JobStoreError
from models.job import COMPLETED, FAILED
from models.outcome import OtherFailure, RateLimited, Success
from workers import job_worker
from workers.job_worker import JobWorker

from conftest import ScriptedProcessor


class TestRunOnce:
    """One iteration at a time, with simulated time."""

    @pytest.mark.asyncio
    async def test_idle_returns_poll_interval(self, store, clock):
        worker = JobWorker(ScriptedProcessor(), poll_interval=1.5, clock=clock)
        assert await worker.run_once() == 1.5

    @pytest.mark.asyncio
    async def test_success_rate_limit_and_failure_in_one_pass(self, store, clock):
        processor = ScriptedProcessor({
            "A": [Success({"name": "A"})],
            "B": [RateLimited(5)],
            "C": [OtherFailure("Missing field: email")],
        })
        worker = JobWorker(processor, clock=clock)
        a = await store.enqueue_job({"name": "A"})
        b = await store.enqueue_job({"name": "B"})
        c = await store.enqueue_job({"name": "C"})
        start = clock.now

        assert await worker.run_once() == 0.0
        assert await worker.run_once() == 5
        assert await worker.run_once() == 0.0
        assert await worker.run_once() == worker.poll_interval

        job_a, job_b, job_c = [await store.get_job(i) for i in (a, b, c)]
        assert (job_a.status, job_a.result) == (COMPLETED, {"name": "A"})
        assert (job_b.status, job_b.retry_after) == (FAILED, start + 5)
        assert job_b.result == {"error": "rate limited"}
        assert (job_c.status, job_c.retry_after) == (FAILED, None)
        assert job_c.result == {"error": "Missing field: email"}

        clock.advance(5)
        assert await worker.run_once() == 0.0
        assert (await store.get_job(b)).status == COMPLETED
        assert await worker.run_once() == worker.poll_interval
        assert processor.calls == ["A", "B", "C", "B"]

    @pytest.mark.asyncio
    async def test_rate_limited_job_can_be_throttled_repeatedly(self, store, clock):
        processor = ScriptedProcessor({"A": [RateLimited(2), RateLimited(3)]})
        worker = JobWorker(processor, clock=clock)
        job_id = await store.enqueue_job({"name": "A"})

        await worker.run_once()
        clock.advance(2)
        assert await worker.run_once() == 3
        assert (await store.get_job(job_id)).retry_after == clock.now + 3

        clock.advance(3)
        await worker.run_once()
        job = await store.get_job(job_id)
        assert job.status == COMPLETED
        assert job.attempts == 3

    @pytest.mark.asyncio
    async def test_processor_exception_becomes_permanent_failure(self, store, clock):
        processor = ScriptedProcessor({"A": [RuntimeError("disk on fire")]})
        worker = JobWorker(processor, clock=clock)
        job_id = await store.enqueue_job({"name": "A"})

        assert await worker.run_once() == 0.0
        job = await store.get_job(job_id)
        assert job.status == FAILED
        assert job.retry_after is None
        assert job.result == {"error": "disk on fire"}

    @pytest.mark.asyncio
    async def test_slow_job_times_out(self, store, clock):
        class Slow:
            async def process(self, payload):
                await asyncio.sleep(5)

        worker = JobWorker(Slow(), job_timeout=0.01, clock=clock)
        job_id = await store.enqueue_job({"name": "A"})

        await worker.run_once()
        job = await store.get_job(job_id)
        assert job.status == FAILED
        assert job.result["error"].startswith("Timed out")

    @pytest.mark.asyncio
    async def test_active_job_id_is_set_while_processing(self, store, clock):
        seen = []

        class Peek:
            async def process(self, payload):
                seen.append(worker.active_job_id)
                return Success({})

        worker = JobWorker(Peek(), clock=clock)
        job_id = await store.enqueue_job({"name": "A"})
        await worker.run_once()

        assert seen == [job_id]
        assert worker.active_job_id is None

    @pytest.mark.asyncio
    async def test_active_job_id_is_held_until_outcome_is_stored(self, store, clock, monkeypatch):
        held = []
        real_mark_completed = job_worker.mark_completed

        async def recording_mark_completed(job_id, result, attempts=None):
            held.append(worker.active_job_id)
            return await real_mark_completed(job_id, result, attempts=attempts)

        monkeypatch.setattr(job_worker, "mark_completed", recording_mark_completed)
        worker = JobWorker(ScriptedProcessor(), clock=clock)
        job_id = await store.enqueue_job({"name": "A"})
        await worker.run_once()

        assert held == [job_id]
        assert worker.active_job_id is None
        assert (await store.get_job(job_id)).status == COMPLETED

    @pytest.mark.asyncio
    async def test_unserializable_result_fails_permanently(self, store, clock):
        processor = ScriptedProcessor({"A": [Success({"when": datetime(2024, 1, 1)})]})
        worker = JobWorker(processor, poll_interval=0.5, clock=clock)
        job_id = await store.enqueue_job({"name": "A"})

        assert await worker.run_once() == 0.0
        job = await store.get_job(job_id)
        assert job.status == FAILED
        assert job.retry_after is None
        assert job.result == {"error": job_worker.UNSERIALIZABLE_MESSAGE}

        # never picked up again
        assert await worker.run_once() == 0.5
        assert processor.calls == ["A"]

    @pytest.mark.asyncio
    async def test_two_workers_cannot_both_transition_a_job(self, store, clock):
        both_fetched = asyncio.Event()
        entered = []

        class Gate:
            async def process(self, payload):
                entered.append(payload["name"])
                if len(entered) == 2:
                    both_fetched.set()
                await both_fetched.wait()
                return Success({"worker": len(entered)})

        job_id = await store.enqueue_job({"name": "A"})
        first, second = JobWorker(Gate(), clock=clock), JobWorker(Gate(), clock=clock)

        await asyncio.gather(first.run_once(), second.run_once())

        job = await store.get_job(job_id)
        assert entered == ["A", "A"]
        assert job.status == COMPLETED
        assert job.attempts == 1


class TestLifecycle:
    """start()/stop() and the background loop."""

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, store):
        worker = JobWorker(ScriptedProcessor(), poll_interval=0.01)
        assert worker.start() is True
        assert worker.start() is False
        assert worker.running
        await worker.stop()
        assert not worker.running

    @pytest.mark.asyncio
    async def test_stop_without_start_is_a_noop(self):
        await JobWorker(ScriptedProcessor()).stop()

    @pytest.mark.asyncio
    async def test_loop_drains_queue_in_order(self, store):
        processor = ScriptedProcessor()
        worker = JobWorker(processor, poll_interval=0.01)
        ids = [await store.enqueue_job({"name": n}) for n in ("A", "B", "C")]

        worker.start()
        try:
            for _ in range(200):
                if len(processor.calls) == 3:
                    break
                await asyncio.sleep(0.01)
            # give the last mark_completed a moment to land
            for _ in range(200):
                jobs = [await store.get_job(i) for i in ids]
                if all(j.status == COMPLETED for j in jobs):
                    break
                await asyncio.sleep(0.01)
        finally:
            await worker.stop()

        assert processor.calls == ["A", "B", "C"]
        assert [j.status for j in jobs] == [COMPLETED] * 3

    @pytest.mark.asyncio
    async def test_rate_limit_pauses_whole_loop(self, store):
        calls = []

        class Throttled:
            async def process(self, payload):
                calls.append((payload["name"], asyncio.get_running_loop().time()))
                if payload["name"] == "A":
                    return RateLimited(0.2)
                return Success({})

        worker = JobWorker(Throttled(), poll_interval=0.01)
        await store.enqueue_job({"name": "A"})
        await store.enqueue_job({"name": "B"})

        worker.start()
        try:
            for _ in range(300):
                if any(name == "B" for name, _ in calls):
                    break
                await asyncio.sleep(0.01)
        finally:
            await worker.stop()

        first, a_at = calls[0]
        b_at = next(t for name, t in calls if name == "B")
        # B was ready all along but had to wait out A's throttle
        assert first == "A"
        assert b_at - a_at >= 0.18

    @pytest.mark.asyncio
    async def test_loop_survives_storage_errors(self, store, monkeypatch):
        calls = []

        async def flaky_fetch(now):
            calls.append(now)
            if len(calls) == 1:
                raise JobStoreError("database is locked")
            return None

        monkeypatch.setattr(job_worker, "fetch_next_ready_job", flaky_fetch)
        worker = JobWorker(ScriptedProcessor(), poll_interval=0.01)
        worker.start()
        try:
            for _ in range(200):
                if len(calls) >= 3:
                    break
                await asyncio.sleep(0.01)
            assert worker.running
        finally:
            await worker.stop()

        assert len(calls) >= 3
