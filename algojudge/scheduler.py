"""Bounded pool of judge workers.

Submissions wait in a bounded priority queue (contest before practice when
enabled, FIFO otherwise) and are picked up by a fixed number of worker tasks.
Each worker judges one submission at a time. Infrastructure failures are
retried a few times with a fresh workspace before the submission is closed
with ``System Error``.
"""
import asyncio
import itertools
import logging
import time
from dataclasses import dataclass, field
from functools import partial
from typing import Awaitable, Callable, Dict, List, Optional

from algojudge.config import (
    JUDGE_RETRY_DELAY,
    MAX_CONCURRENT_JUDGES,
    MAX_JUDGE_RETRIES,
    MAX_QUEUED_SUBMISSIONS,
    PRIORITIZE_CONTESTS,
)
from algojudge.judge import Judge, JudgeResult, ProblemConfig
from algojudge.models import JudgeStatus

logger = logging.getLogger(__name__)

INFRASTRUCTURE_MESSAGE = "Judging failed due to an internal error, please try again."


class Backpressure(Exception):
    """The judge queue is full; the submission was not accepted."""


@dataclass
class JudgeJob:
    submission_id: int
    code: str
    language: str
    problem: ProblemConfig
    contest_id: Optional[str] = None
    enqueued_at: float = field(default_factory=time.perf_counter)


ResultHook = Callable[[JudgeJob, JudgeResult], Awaitable[None]]


class JudgeScheduler:
    def __init__(self, workers: int = MAX_CONCURRENT_JUDGES, queue_size: int = MAX_QUEUED_SUBMISSIONS,
                 max_retries: int = MAX_JUDGE_RETRIES, retry_delay: float = JUDGE_RETRY_DELAY,
                 prioritize_contests: bool = PRIORITIZE_CONTESTS,
                 on_result: Optional[ResultHook] = None, judge_factory=Judge):
        self.workers = workers
        self.queue_size = queue_size
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.prioritize_contests = prioritize_contests
        self.on_result = on_result
        self.judge_factory = judge_factory
        self._queue: Optional[asyncio.PriorityQueue] = None
        self._tasks: List[asyncio.Task] = []
        self._sequence = itertools.count()
        self._live: Dict[int, JudgeStatus] = {}

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    @property
    def pending(self) -> int:
        return self._queue.qsize() if self._queue else 0

    def live_status(self, submission_id: int) -> Optional[JudgeStatus]:
        return self._live.get(submission_id)

    async def start(self):
        if self.running:
            return
        self._queue = asyncio.PriorityQueue(maxsize=self.queue_size)
        self._tasks = [asyncio.ensure_future(self._worker(i)) for i in range(self.workers)]
        logger.info("[Scheduler] Started %d judge workers (queue size %d)", self.workers, self.queue_size)

    async def stop(self):
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        # Anything still queued is abandoned
        while self._queue and not self._queue.empty():
            _, _, job, future = self._queue.get_nowait()
            self._live.pop(job.submission_id, None)
            if not future.done():
                future.cancel()
        logger.info("[Scheduler] Stopped")

    def submit(self, job: JudgeJob) -> "asyncio.Future[JudgeResult]":
        """Enqueue a submission. Raises Backpressure instead of growing the queue."""
        if not self.running:
            raise RuntimeError("Scheduler is not running")
        future = asyncio.get_running_loop().create_future()
        priority = 0 if (self.prioritize_contests and job.contest_id) else 1
        try:
            self._queue.put_nowait((priority, next(self._sequence), job, future))
        except asyncio.QueueFull:
            raise Backpressure(f"Judge queue is full ({self.queue_size} pending)") from None
        self._live[job.submission_id] = JudgeStatus.QUEUED
        logger.info("[Judge #%s] Queued (%d pending)", job.submission_id, self.pending)
        return future

    def _set_live(self, submission_id: int, status: JudgeStatus):
        self._live[submission_id] = status

    async def _worker(self, idx: int):
        while True:
            _, _, job, future = await self._queue.get()
            try:
                result = await self._judge(job)
                result.submission_time_ms = int((time.perf_counter() - job.enqueued_at) * 1000)
                await self._finalize(job, result)
                if not future.done():
                    future.set_result(result)
            except Exception as e:
                logger.exception("[Judge #%s] Failed to finalize result", job.submission_id)
                if not future.done():
                    future.set_exception(e)
            finally:
                self._live.pop(job.submission_id, None)
                self._queue.task_done()

    async def _finalize(self, job: JudgeJob, result: JudgeResult):
        """Hand the result to on_result, retrying transient storage failures."""
        if not self.on_result:
            return
        attempt = 0
        while True:
            try:
                await self.on_result(job, result)
                return
            except Exception as e:
                attempt += 1
                if attempt > self.max_retries:
                    raise
                logger.warning("[Judge #%s] Failed to store result (%s), retry %d/%d...",
                               job.submission_id, e, attempt, self.max_retries)
                await asyncio.sleep(self.retry_delay)

    async def _judge(self, job: JudgeJob) -> JudgeResult:
        attempt = 0
        while True:
            judge = self.judge_factory(
                job.submission_id, job.code, job.language,
                on_state=partial(self._set_live, job.submission_id),
            )
            try:
                return await judge.run(job.problem)
            except Exception as e:
                attempt += 1
                if attempt > self.max_retries:
                    logger.error("[Judge #%s] Infrastructure failure after %d attempts: %s",
                                 job.submission_id, attempt, e, exc_info=True)
                    return JudgeResult(
                        JudgeStatus.SYSTEM_ERROR,
                        total_tests=len(job.problem.test_cases),
                        message=INFRASTRUCTURE_MESSAGE,
                    )
                logger.warning("[Judge #%s] Infrastructure failure (%s), retry %d/%d...",
                               job.submission_id, e, attempt, self.max_retries)
                self._set_live(job.submission_id, JudgeStatus.QUEUED)
                await asyncio.sleep(self.retry_delay)
