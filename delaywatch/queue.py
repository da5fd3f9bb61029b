"""
Job queue used between the poll scheduler and the poll workers.

``JobQueue`` is the contract the engine relies on: priority ordering, delayed
jobs, deduplication by job id, retries with exponential backoff and
repeatable schedules. ``InMemoryJobQueue`` implements it on asyncio for a
single process. Dedup by job id holds while a job is waiting, delayed or
running and is released once it completes or fails.
"""
import asyncio
import enum
import heapq
import itertools
import logging
import uuid
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential

from delaywatch.business_days import utcnow

logger = logging.getLogger(__name__)


class JobState(str, enum.Enum):
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


LIVE_STATES = (JobState.WAITING, JobState.DELAYED, JobState.ACTIVE)


@dataclass
class JobOptions:
    job_id: Optional[str] = None
    # Lower value runs first
    priority: int = 0
    delay: float = 0.0
    attempts: int = 1
    backoff_seconds: float = 0.0


@dataclass
class Job:
    id: str
    queue_name: str
    payload: Dict[str, Any]
    options: JobOptions
    state: JobState = JobState.WAITING
    attempts_made: int = 0
    result: Any = None
    error: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    @property
    def priority(self) -> int:
        return self.options.priority

    @property
    def max_attempts(self) -> int:
        return max(self.options.attempts, 1)

    @property
    def is_final_attempt(self) -> bool:
        return self.attempts_made >= self.max_attempts


JobHandler = Callable[[Job], Awaitable[Any]]


class JobQueue(ABC):
    @abstractmethod
    async def enqueue(self, queue_name: str, payload: Dict[str, Any],
                      options: Optional[JobOptions] = None) -> Optional[Job]:
        """Add a job; returns ``None`` when a live job with the same id exists."""

    @abstractmethod
    async def consume(self, queue_name: str, handler: JobHandler, concurrency: int = 1) -> None:
        """Start ``concurrency`` consumers running ``handler`` for each job."""

    @abstractmethod
    async def add_repeatable(self, queue_name: str, payload: Dict[str, Any], every_seconds: float,
                             job_id: str, options: Optional[JobOptions] = None) -> None:
        """Enqueue ``payload`` every ``every_seconds`` under a fixed job id."""

    @abstractmethod
    async def get_job(self, queue_name: str, job_id: str) -> Optional[Job]:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...


class InMemoryJobQueue(JobQueue):
    def __init__(self, keep_finished: int = 1000):
        self.keep_finished = keep_finished

        self._heaps: Dict[str, List[Tuple[int, int, str]]] = {}
        self._ready: Dict[str, asyncio.Semaphore] = {}
        self._live: Dict[str, Dict[str, Job]] = {}
        self._finished: Dict[str, "OrderedDict[str, Job]"] = {}
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._consumers: List[asyncio.Task] = []
        self._sequence = itertools.count()
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._closed = False

    def _queue(self, queue_name: str) -> Dict[str, Job]:
        if queue_name not in self._live:
            self._heaps[queue_name] = []
            self._ready[queue_name] = asyncio.Semaphore(0)
            self._live[queue_name] = {}
            self._finished[queue_name] = OrderedDict()
        return self._live[queue_name]

    async def enqueue(self, queue_name: str, payload: Dict[str, Any],
                      options: Optional[JobOptions] = None) -> Optional[Job]:
        if self._closed:
            raise RuntimeError("queue is closed")

        options = options or JobOptions()
        live = self._queue(queue_name)
        job_id = options.job_id or uuid.uuid4().hex

        existing = live.get(job_id)
        if existing is not None:
            logger.debug(f"Job {job_id} already {existing.state.value} on {queue_name}, skipping")
            return None

        job = Job(id=job_id, queue_name=queue_name, payload=dict(payload), options=options)
        live[job_id] = job
        self._finished[queue_name].pop(job_id, None)

        if options.delay > 0:
            job.state = JobState.DELAYED
            loop = asyncio.get_running_loop()
            self._timers[f"{queue_name}:{job_id}"] = loop.call_later(options.delay, self._promote, job)
        else:
            self._push(job)

        return job

    def _push(self, job: Job) -> None:
        job.state = JobState.WAITING
        heapq.heappush(self._heaps[job.queue_name], (job.priority, next(self._sequence), job.id))
        self._ready[job.queue_name].release()

    def _promote(self, job: Job) -> None:
        self._timers.pop(f"{job.queue_name}:{job.id}", None)
        if self._live[job.queue_name].get(job.id) is job and job.state == JobState.DELAYED:
            self._push(job)

    async def _next_job(self, queue_name: str) -> Job:
        await self._ready[queue_name].acquire()
        _, _, job_id = heapq.heappop(self._heaps[queue_name])
        return self._live[queue_name][job_id]

    async def consume(self, queue_name: str, handler: JobHandler, concurrency: int = 1) -> None:
        self._queue(queue_name)
        for index in range(concurrency):
            task = asyncio.create_task(
                self._consume_loop(queue_name, handler),
                name=f"{queue_name}-consumer-{index}",
            )
            self._consumers.append(task)
        logger.info(f"✅ Started {concurrency} consumer(s) for queue {queue_name}")

    async def _consume_loop(self, queue_name: str, handler: JobHandler) -> None:
        while True:
            job = await self._next_job(queue_name)
            await self.run_job(job, handler)

    async def run_job(self, job: Job, handler: JobHandler) -> None:
        """Run one job to completion or failure, retrying per its options."""
        job.state = JobState.ACTIVE
        retrying = AsyncRetrying(
            stop=stop_after_attempt(job.max_attempts),
            wait=wait_exponential(multiplier=job.options.backoff_seconds),
            before_sleep=lambda state: logger.warning(
                f"⚠️ Job {job.id} attempt {state.attempt_number}/{job.max_attempts} failed: "
                f"{state.outcome.exception()}"
            ),
            reraise=True,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    job.attempts_made += 1
                    job.result = await handler(job)
        except Exception as e:
            job.error = f"{type(e).__name__}: {e}"
            self._finish(job, JobState.FAILED)
            logger.error(f"❌ Job {job.id} on {job.queue_name} failed after {job.attempts_made} attempt(s): {job.error}")
        else:
            self._finish(job, JobState.COMPLETED)

    def _finish(self, job: Job, state: JobState) -> None:
        job.state = state
        job.finished_at = utcnow()

        live = self._live[job.queue_name]
        if live.get(job.id) is job:
            del live[job.id]

        finished = self._finished[job.queue_name]
        finished[job.id] = job
        while len(finished) > self.keep_finished:
            finished.popitem(last=False)

    async def add_repeatable(self, queue_name: str, payload: Dict[str, Any], every_seconds: float,
                             job_id: str, options: Optional[JobOptions] = None) -> None:
        if self._scheduler is None:
            self._scheduler = AsyncIOScheduler()
        options = replace(options, job_id=job_id) if options else JobOptions(job_id=job_id)

        self._scheduler.add_job(
            self.enqueue,
            "interval",
            seconds=every_seconds,
            args=[queue_name, payload, options],
            id=f"repeat:{queue_name}:{job_id}",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        if not self._scheduler.running:
            self._scheduler.start()

        logger.info(f"✅ Repeatable job {job_id} on {queue_name} every {every_seconds:.0f}s")

    async def get_job(self, queue_name: str, job_id: str) -> Optional[Job]:
        self._queue(queue_name)
        return self._live[queue_name].get(job_id) or self._finished[queue_name].get(job_id)

    def count(self, queue_name: str, *states: JobState) -> int:
        states = states or LIVE_STATES
        return sum(1 for job in self._queue(queue_name).values() if job.state in states)

    async def drain(self, queue_name: str, poll_interval: float = 0.01) -> None:
        """Wait until the queue has no waiting or running jobs."""
        while self.count(queue_name, JobState.WAITING, JobState.ACTIVE):
            await asyncio.sleep(poll_interval)

    async def close(self) -> None:
        self._closed = True

        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)

        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()

        for task in self._consumers:
            task.cancel()
        await asyncio.gather(*self._consumers, return_exceptions=True)
        self._consumers.clear()

        logger.info("✅ Job queue closed")
