'''
Background Job Processor

Runs cascade deletions, orphan cleanups and reconciliation passes on the
application's event loop:
1- a priority heap (high, medium, low; FIFO within a priority),
2- at most `worker_limit` jobs at a time, never two with the same entity id,
3- transient store failures re-queued with exponential backoff, then fatal,
4- a circuit breaker that stops dequeuing while the store keeps failing,
5- lifecycle events published on a JobEventBus,
6- finished records kept up to a count and an age, oldest evicted first.
'''
import asyncio
from collections import OrderedDict
from dataclasses import dataclass
from datetime import timedelta
import heapq
import itertools
import time
from typing import Any, Awaitable, Callable, Optional
from uuid import UUID

from ..common.config import settings
from ..common.exceptions import FatalError, NotFoundError, StateError
from ..common.logger import log
from ..database.engine import is_transient_storage_error
from ..models.enums import JobEventType, JobPriority, JobStatus, JobType
from ..models.jobs import JobEvent, JobRecord, QueueStatus
from ..models.schedule import utcnow
from .circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from .job_events import JobEventBus, Subscription


@dataclass
class JobContext:
    """Handed to every handler: the job and a way to report progress."""
    job: JobRecord
    processor: "BackgroundJobProcessor"

    @property
    def payload(self) -> dict[str, Any]:
        return self.job.payload

    async def report_progress(self, percentage: int, detail: Optional[str] = None):
        self.job.progress = max(0, min(100, int(percentage)))
        self.processor._publish(self.job, JobEventType.PROGRESS, percentage=self.job.progress, detail=detail)


Handler = Callable[[JobContext], Awaitable[Optional[dict[str, Any]]]]


class BackgroundJobProcessor:
    def __init__(
        self,
        handlers: dict[JobType, Handler],
        worker_limit: Optional[int] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        event_bus: Optional[JobEventBus] = None,
        max_retries: Optional[int] = None,
        backoff_base_seconds: Optional[float] = None,
        is_store_failure: Callable[[BaseException], bool] = is_transient_storage_error,
        retention_max_finished: Optional[int] = None,
        retention_seconds: Optional[float] = None
    ):
        self.handlers = dict(handlers)
        self.worker_limit = worker_limit or settings.JOB_WORKER_LIMIT
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            name="job-store",
            config=CircuitBreakerConfig(
                failure_threshold=settings.CIRCUIT_FAILURE_THRESHOLD,
                cooldown_seconds=settings.CIRCUIT_COOLDOWN_SECONDS
            )
        )
        self.event_bus = event_bus or JobEventBus(settings.JOB_EVENT_QUEUE_SIZE)
        self.max_retries = settings.JOB_MAX_RETRIES if max_retries is None else max_retries
        self.backoff_base_seconds = (
            settings.JOB_BACKOFF_BASE_SECONDS if backoff_base_seconds is None else backoff_base_seconds
        )
        self.is_store_failure = is_store_failure
        self.retention_max_finished = (
            settings.JOB_RETENTION_MAX_FINISHED if retention_max_finished is None else retention_max_finished
        )
        self.retention_seconds = settings.JOB_RETENTION_SECONDS if retention_seconds is None else retention_seconds

        self._jobs: dict[UUID, JobRecord] = {}
        self._finished: OrderedDict[UUID, None] = OrderedDict()
        self._heap: list[tuple[int, int, UUID]] = []
        self._sequence = itertools.count()
        self._running: dict[UUID, asyncio.Task] = {}
        self._running_entities: set[str] = set()
        self._background: set[asyncio.Task] = set()
        self._wakeup = asyncio.Event()
        self._dispatcher: Optional[asyncio.Task] = None
        self._metrics = {"completed": 0, "failed": 0, "fatal": 0, "cancelled": 0, "retries": 0, "total_duration_ms": 0.0}

    # --- 1. Lifecycle ---

    @property
    def is_running(self) -> bool:
        return self._dispatcher is not None and not self._dispatcher.done()

    async def start(self):
        if self.is_running:
            return
        self._dispatcher = asyncio.create_task(self._dispatch_loop(), name="job-dispatcher")
        log.info(f"Background job processor started with {self.worker_limit} workers.")

    async def stop(self, timeout: float = 10.0):
        """Stops dequeuing, cancels timers and waits for running jobs."""
        if self._dispatcher is not None:
            self._dispatcher.cancel()
            await asyncio.gather(self._dispatcher, return_exceptions=True)
            self._dispatcher = None
        for task in list(self._background):
            task.cancel()
        await asyncio.gather(*self._background, return_exceptions=True)
        if self._running:
            done, pending = await asyncio.wait(list(self._running.values()), timeout=timeout)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        log.info("Background job processor stopped.")

    # --- 2. Public API ---

    async def enqueue(
        self,
        job_type: JobType,
        payload: Optional[dict[str, Any]] = None,
        priority: JobPriority = JobPriority.MEDIUM,
        entity_id: Optional[str] = None,
        max_retries: Optional[int] = None
    ) -> JobRecord:
        if job_type not in self.handlers:
            raise StateError(f"No handler registered for job type '{job_type}'.")
        job = JobRecord(
            job_type=job_type,
            priority=priority,
            entity_id=str(entity_id) if entity_id is not None else None,
            payload=payload or {},
            max_retries=self.max_retries if max_retries is None else max_retries
        )
        self._jobs[job.id] = job
        self._push(job)
        self._publish(job, JobEventType.QUEUED)
        log.info(f"Queued {job.job_type.value} job {job.id} (priority={job.priority.value}, entity={job.entity_id}).")
        return job

    async def cancel(self, job_id: UUID) -> JobRecord:
        """Cancels a job that has not started yet."""
        job = self.get_job_status(job_id)
        if job.status != JobStatus.QUEUED:
            raise StateError(f"Job {job_id} is {job.status.value} and can no longer be cancelled.")
        job.status = JobStatus.CANCELLED
        job.finished_at = utcnow()
        self._metrics["cancelled"] += 1
        self._publish(job, JobEventType.CANCELLED)
        log.info(f"Cancelled job {job_id}.")
        self._retire(job)
        return job

    def get_job_status(self, job_id: UUID) -> JobRecord:
        job = self._jobs.get(job_id)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found.")
        return job

    def list_jobs(self, status: Optional[JobStatus] = None) -> list[JobRecord]:
        jobs = sorted(self._jobs.values(), key=lambda j: j.created_at)
        return [j for j in jobs if status is None or j.status == status]

    def get_queue_status(self) -> QueueStatus:
        counts = {status: 0 for status in JobStatus}
        for job in self._jobs.values():
            counts[job.status] += 1
        finished = self._metrics["completed"] + self._metrics["failed"] + self._metrics["fatal"]
        metrics = {key: float(value) for key, value in self._metrics.items()}
        metrics["average_duration_ms"] = self._metrics["total_duration_ms"] / finished if finished else 0.0
        metrics["events_published"] = float(self.event_bus.published)
        metrics["events_dropped"] = float(self.event_bus.dropped)
        return QueueStatus(
            counts=counts,
            running_entities=sorted(self._running_entities),
            circuit_state=self.circuit_breaker.state.value,
            workers=self.worker_limit,
            metrics=metrics
        )

    def subscribe(self, job_id: Optional[UUID] = None, entity_id: Optional[str] = None) -> Subscription:
        return self.event_bus.subscribe(job_id=job_id, entity_id=entity_id)

    def schedule_periodic(
        self,
        job_type: JobType,
        interval_seconds: float,
        payload: Optional[dict[str, Any]] = None,
        priority: JobPriority = JobPriority.LOW
    ) -> Optional[asyncio.Task]:
        """Enqueues job_type every interval. An interval of 0 disables the schedule."""
        if not interval_seconds or interval_seconds <= 0:
            log.info(f"Periodic {job_type.value} job disabled.")
            return None

        entity_id = f"periodic:{job_type.value}"

        async def _loop():
            while True:
                await asyncio.sleep(interval_seconds)
                if any(j.entity_id == entity_id and not j.is_finished for j in self._jobs.values()):
                    log.info(f"Previous periodic {job_type.value} job still pending, skipping this run.")
                    continue
                await self.enqueue(job_type, payload=dict(payload or {}), priority=priority, entity_id=entity_id)

        task = asyncio.create_task(_loop(), name=f"periodic-{job_type.value}")
        self._track(task)
        log.info(f"Scheduled periodic {job_type.value} job every {interval_seconds}s.")
        return task

    # --- 3. Dispatching ---

    def _track(self, task: asyncio.Task):
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _push(self, job: JobRecord):
        heapq.heappush(self._heap, (job.priority.rank, next(self._sequence), job.id))
        self._wakeup.set()

    def _pop_runnable(self) -> Optional[tuple[tuple[int, int, UUID], JobRecord]]:
        deferred = []
        found = None
        while self._heap:
            entry = heapq.heappop(self._heap)
            job = self._jobs.get(entry[2])
            if job is None or job.status != JobStatus.QUEUED:
                continue
            if job.entity_id is not None and job.entity_id in self._running_entities:
                deferred.append(entry)
                continue
            found = (entry, job)
            break
        for entry in deferred:
            heapq.heappush(self._heap, entry)
        return found

    def _fill_workers(self) -> Optional[float]:
        """Starts as many jobs as allowed. Returns how long to sleep when the breaker holds jobs back."""
        while len(self._running) < self.worker_limit:
            picked = self._pop_runnable()
            if picked is None:
                return None
            entry, job = picked
            if not self.circuit_breaker.allow_request():
                heapq.heappush(self._heap, entry)
                return self.circuit_breaker.seconds_until_probe() or None
            self._start_job(job)
        return None

    async def _dispatch_loop(self):
        while True:
            self._wakeup.clear()
            timeout = self._fill_workers()
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout)
            except asyncio.TimeoutError:
                pass

    def _start_job(self, job: JobRecord):
        job.status = JobStatus.RUNNING
        job.attempts += 1
        job.started_at = job.started_at or utcnow()
        if job.entity_id is not None:
            self._running_entities.add(job.entity_id)
        self._running[job.id] = asyncio.create_task(self._run_job(job), name=f"job-{job.id}")

    async def _run_job(self, job: JobRecord):
        handler = self.handlers[job.job_type]
        started = time.perf_counter()
        log.info(f"Running {job.job_type.value} job {job.id} (attempt {job.attempts}).")
        try:
            result = await handler(JobContext(job=job, processor=self))
        except asyncio.CancelledError:
            self.circuit_breaker.release_probe()
            self._finish(job, JobStatus.FAILED, started, error="Processor stopped while the job was running.")
            raise
        except FatalError as e:
            self.circuit_breaker.record_failure()
            self._finish(job, JobStatus.FATAL, started, error=str(e))
        except Exception as e:
            if self.is_store_failure(e):
                self.circuit_breaker.record_failure()
                self._retry_or_give_up(job, e, started)
            else:
                self.circuit_breaker.release_probe()
                log.error(f"Job {job.id} failed: {e}", exc_info=True)
                self._finish(job, JobStatus.FAILED, started, error=str(e) or e.__class__.__name__)
        else:
            self.circuit_breaker.record_success()
            job.result = result or {}
            job.progress = 100
            self._finish(job, JobStatus.COMPLETED, started)
        finally:
            if job.entity_id is not None:
                self._running_entities.discard(job.entity_id)
            self._running.pop(job.id, None)
            self._wakeup.set()

    def _retry_or_give_up(self, job: JobRecord, error: Exception, started: float):
        if job.attempts > job.max_retries:
            self._finish(job, JobStatus.FATAL, started, error=f"Gave up after {job.attempts} attempts: {error}")
            return
        delay = self.backoff_base_seconds * (2 ** (job.attempts - 1))
        job.status = JobStatus.QUEUED
        job.error = str(error)
        self._metrics["retries"] += 1
        log.warning(f"Job {job.id} hit a transient failure (attempt {job.attempts}), retrying in {delay:.2f}s: {error}")
        self._publish(job, JobEventType.PROGRESS, percentage=job.progress, detail=f"retrying in {delay:.2f}s")

        async def _requeue():
            await asyncio.sleep(delay)
            if job.status == JobStatus.QUEUED:
                self._push(job)

        self._track(asyncio.create_task(_requeue()))

    def _finish(self, job: JobRecord, status: JobStatus, started: float, error: Optional[str] = None):
        job.status = status
        job.finished_at = utcnow()
        job.error = error
        self._metrics["total_duration_ms"] += (time.perf_counter() - started) * 1000
        if status == JobStatus.COMPLETED:
            self._metrics["completed"] += 1
            self._publish(job, JobEventType.COMPLETED, summary=job.result)
            log.info(f"Job {job.id} completed.")
        else:
            self._metrics["fatal" if status == JobStatus.FATAL else "failed"] += 1
            self._publish(job, JobEventType.FAILED, reason=error)
            log.error(f"Job {job.id} ended as {status.value}: {error}")
        self._retire(job)

    def _retire(self, job: JobRecord):
        """Records a finished job and evicts the oldest finished records beyond the retention bounds."""
        self._finished[job.id] = None
        cutoff = utcnow() - timedelta(seconds=self.retention_seconds)
        while self._finished:
            oldest_id = next(iter(self._finished))
            oldest = self._jobs.get(oldest_id)
            expired = oldest is None or oldest.finished_at is None or oldest.finished_at < cutoff
            if len(self._finished) <= self.retention_max_finished and not expired:
                break
            self._finished.popitem(last=False)
            self._jobs.pop(oldest_id, None)

    def _publish(self, job: JobRecord, event_type: JobEventType, **fields):
        self.event_bus.publish(JobEvent(
            job_id=job.id,
            event_type=event_type,
            job_type=job.job_type,
            entity_id=job.entity_id,
            **fields
        ))


# The app's processor. Created and started by the lifespan.
job_processor: Optional[BackgroundJobProcessor] = None


def get_job_processor() -> BackgroundJobProcessor:
    """FastAPI dependency for routes that need the running processor."""
    if job_processor is None:
        raise StateError("Background job processor is not running.")
    return job_processor


def get_optional_job_processor() -> Optional[BackgroundJobProcessor]:
    return job_processor
