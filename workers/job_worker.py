"""
Background job worker.

A single JobWorker drains the jobs table one job at a time:

- run_once()   fetches the oldest ready job, hands its payload to the
               processor and records the outcome. Returns the delay before
               the next iteration.
- start()      spawns the loop task; a no-op while one is already running.
- stop()       cancels the loop task and waits for it to exit.

Scheduling per outcome:
    Success       mark completed, continue immediately
    RateLimited   mark failed with retry_after = now + N, pause the whole
                  loop for N seconds (the limit is shared by every call)
    OtherFailure  mark failed with no retry_after (terminal), continue
    nothing ready sleep poll_interval

Only one worker may run per process: fetch and mark are separate statements,
so two loops could pick the same job. The attempts token passed to mark_*
makes the second transition a no-op if that ever happens.
"""

import asyncio
import logging
import os
import time
from typing import Callable, Protocol

from db.database import fetch_next_ready_job, mark_completed, mark_failed
from models.job import Job
from models.outcome import OtherFailure, Outcome, RateLimited, Success

logger = logging.getLogger(__name__)

POLL_INTERVAL: float = float(os.getenv("POLL_INTERVAL_SECONDS", "1"))
JOB_TIMEOUT: float = float(os.getenv("JOB_TIMEOUT_SECONDS", "300"))

RATE_LIMITED_MESSAGE = "rate limited"
UNSERIALIZABLE_MESSAGE = "Result is not serializable"


class Processor(Protocol):
    async def process(self, payload: dict) -> Outcome: ...


class JobWorker:
    def __init__(
        self,
        processor: Processor,
        poll_interval: float = POLL_INTERVAL,
        job_timeout: float | None = JOB_TIMEOUT,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.processor = processor
        self.poll_interval = poll_interval
        self.job_timeout = job_timeout or None  # 0 disables the deadline
        self._clock = clock
        self._task: asyncio.Task | None = None
        self.active_job_id: int | None = None

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> bool:
        """Start the loop. Returns False if it was already running."""
        if self.running:
            return False
        self._task = asyncio.create_task(self._loop(), name="job-worker")
        logger.info("Job worker started", extra={"poll_interval": self.poll_interval})
        return True

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Job worker stopped")

    # ── Loop ──────────────────────────────────────────────────────────────────

    async def _loop(self) -> None:
        while True:
            try:
                delay = await self.run_once()
            except Exception as exc:
                # Store unavailable: nothing can progress until it recovers
                logger.error("worker_loop error", extra={"error": str(exc)}, exc_info=True)
                delay = self.poll_interval
            # sleep(0) still yields to the request handlers between jobs
            await asyncio.sleep(delay)

    async def run_once(self) -> float:
        job = await fetch_next_ready_job(self._clock())
        if job is None:
            return self.poll_interval

        logger.info("Job started", extra={"job_id": job.id, "attempt": job.attempts + 1})
        # Held until the outcome is stored so status polls never see a stale state
        self.active_job_id = job.id
        try:
            outcome = await self._process(job)
            return await self._record(job, outcome)
        finally:
            self.active_job_id = None

    async def _record(self, job: Job, outcome: Outcome) -> float:
        if isinstance(outcome, Success):
            try:
                accepted = await mark_completed(job.id, outcome.output, attempts=job.attempts)
            except (TypeError, ValueError) as exc:
                # Unencodable output would otherwise leave the job ready forever
                logger.error(
                    "Job result is not serializable",
                    extra={"job_id": job.id, "error": str(exc)},
                )
                accepted = await mark_failed(
                    job.id, UNSERIALIZABLE_MESSAGE, attempts=job.attempts
                )
            else:
                logger.info("Job completed", extra={"job_id": job.id})
            delay = 0.0

        elif isinstance(outcome, RateLimited):
            retry_at = self._clock() + outcome.retry_after
            accepted = await mark_failed(
                job.id, RATE_LIMITED_MESSAGE, retry_after=retry_at, attempts=job.attempts
            )
            delay = outcome.retry_after
            logger.warning(
                "Job rate limited, pausing worker",
                extra={"job_id": job.id, "retry_after": outcome.retry_after},
            )

        else:
            accepted = await mark_failed(job.id, outcome.message, attempts=job.attempts)
            delay = 0.0
            logger.error("Job failed", extra={"job_id": job.id, "error": outcome.message})

        if not accepted:
            logger.warning(
                "Job was already transitioned by another worker",
                extra={"job_id": job.id},
            )
        return delay

    async def _process(self, job: Job) -> Outcome:
        try:
            return await asyncio.wait_for(
                self.processor.process(job.payload), timeout=self.job_timeout
            )
        except asyncio.TimeoutError:
            return OtherFailure(f"Timed out after {self.job_timeout:g}s")
        except Exception as exc:
            logger.error(
                "Processor raised", extra={"job_id": job.id, "error": str(exc)}, exc_info=True
            )
            return OtherFailure(str(exc) or type(exc).__name__)
