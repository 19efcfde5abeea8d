"""
In-process job queue with a bounded worker pool.

    enqueue ──► FIFO ──► up to N running handlers ──► done
                 ▲                 │ raises
                 │                 ▼
                 └── sleep(base * 2^attempts) ◄── attempts < max_attempts
                                   │ otherwise
                                   ▼
                        request forced to 'failed'

A polling loop re-discovers 'accepted' requests in the store that no
in-memory job is tracking (e.g. after a restart) and enqueues them.

Job types form a closed enum; the handler table must cover every member
or construction fails.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping, Optional

from .models import RequestStatus
from .store import SQLiteStore

logger = logging.getLogger(__name__)


class JobType(str, Enum):
    VERIFY_DOCUMENT = "verify_document"


@dataclass
class Job:
    type: JobType
    payload: dict[str, Any]
    max_attempts: int = 3
    attempts: int = 0
    id: str = field(default_factory=lambda: f"job_{uuid.uuid4().hex[:12]}")
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def request_id(self) -> Optional[int]:
        return self.payload.get("request_id")


Handler = Callable[[dict[str, Any]], Awaitable[None]]
FailureHook = Callable[[Job, BaseException], Awaitable[None]]
Sleep = Callable[[float], Awaitable[None]]


class JobQueue:
    """FIFO queue, N concurrent handlers, exponential-backoff retries.

    Usage:
        queue = JobQueue(store, {JobType.VERIFY_DOCUMENT: handle})
        queue.enqueue(JobType.VERIFY_DOCUMENT, {"request_id": 42})
        await queue.join()
    """

    def __init__(
        self,
        store: SQLiteStore,
        handlers: Mapping[JobType, Handler],
        *,
        concurrency: int = 3,
        max_attempts: int = 3,
        base_delay_ms: int = 1000,
        poll_interval_ms: int = 2000,
        sleep: Sleep = asyncio.sleep,
        on_permanent_failure: Optional[FailureHook] = None,
    ):
        missing = [t.value for t in JobType if t not in handlers]
        if missing:
            raise ValueError(f"No handler for job type(s): {', '.join(missing)}")
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")

        self.store = store
        self.concurrency = concurrency
        self.max_attempts = max_attempts
        self.base_delay_ms = base_delay_ms
        self.poll_interval_ms = poll_interval_ms
        self._handlers = dict(handlers)
        self._sleep = sleep
        self._on_permanent_failure = on_permanent_failure

        self._pending: deque[Job] = deque()
        self._active: dict[str, Job] = {}
        self._waiting: dict[str, Job] = {}
        self._tasks: set[asyncio.Task] = set()
        self._poll_task: Optional[asyncio.Task] = None

    # ─── Public API ──────────────────────────────────────────────────

    def enqueue(self, job_type: JobType, payload: dict[str, Any]) -> str:
        """Append a job and start it if a worker slot is free. Returns the job id."""
        job = Job(type=job_type, payload=dict(payload), max_attempts=self.max_attempts)
        self._pending.append(job)
        logger.info("Enqueued %s %s %s", job.id, job.type.value, job.payload)
        self._drain()
        return job.id

    def is_tracked(self, request_id: int) -> bool:
        """True if any pending, running or retry-waiting job targets this request."""
        jobs = [*self._pending, *self._active.values(), *self._waiting.values()]
        return any(j.request_id == request_id for j in jobs)

    async def poll_once(self) -> int:
        """Enqueue 'accepted' requests nobody is tracking. Returns how many."""
        added = 0
        for request in await self.store.list_pending(self.concurrency):
            if not self.is_tracked(request.id):
                self.enqueue(JobType.VERIFY_DOCUMENT, {"request_id": request.id})
                added += 1
        return added

    async def start_polling(self) -> None:
        if self._poll_task is not None:
            return
        orphans = await self.store.count_by_status(RequestStatus.PROCESSING)
        if orphans:
            logger.warning(
                "%d request(s) left in 'processing' by a previous run; they are not resumed",
                orphans,
            )
        self._poll_task = asyncio.create_task(self._poll_loop())
        logger.info("Started polling every %dms", self.poll_interval_ms)

    async def stop_polling(self) -> None:
        task, self._poll_task = self._poll_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Stopped polling")

    async def join(self) -> None:
        """Wait until nothing is pending, running or waiting to retry."""
        while self._tasks or self._pending:
            if self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)
            else:
                await asyncio.sleep(0)

    async def close(self) -> None:
        """Stop polling and abandon retry timers. Running handlers are awaited."""
        await self.stop_polling()
        for task in list(self._tasks):
            if task.get_name().startswith("retry:"):
                task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def status(self) -> dict[str, Any]:
        return {
            "is_running": self._poll_task is not None,
            "queue_length": len(self._pending),
            "active_jobs": len(self._active),
            "waiting_retries": len(self._waiting),
            "concurrency": self.concurrency,
        }

    # ─── Internals ───────────────────────────────────────────────────

    def _spawn(self, coro: Awaitable[None], name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _drain(self) -> None:
        while len(self._active) < self.concurrency and self._pending:
            job = self._pending.popleft()
            self._active[job.id] = job
            self._spawn(self._run(job), f"run:{job.id}")

    async def _run(self, job: Job) -> None:
        handler = self._handlers[job.type]
        job.attempts += 1
        try:
            await handler(job.payload)
        except Exception as e:
            await self._handle_failure(job, e)
        finally:
            self._active.pop(job.id, None)
            self._drain()

    async def _handle_failure(self, job: Job, error: Exception) -> None:
        logger.warning("Job %s failed (attempt %d/%d): %s", job.id, job.attempts, job.max_attempts, error)
        if job.attempts < job.max_attempts:
            delay_ms = self.base_delay_ms * 2 ** job.attempts
            self._waiting[job.id] = job
            self._spawn(self._retry_after(job, delay_ms), f"retry:{job.id}")
            return

        logger.error("Job %s permanently failed after %d attempts", job.id, job.attempts)
        if job.request_id is not None:
            try:
                await self.store.update_status(
                    job.request_id,
                    RequestStatus.FAILED,
                    issues=[f"Processing failed after maximum retry attempts: {error}"],
                    confidence=None,
                    risk_score=None,
                    processed_at=datetime.now(timezone.utc),
                )
            except Exception as update_err:
                logger.error("Could not mark request %s failed: %s", job.request_id, update_err)

        if self._on_permanent_failure is not None:
            try:
                await self._on_permanent_failure(job, error)
            except Exception as hook_err:
                logger.error("Permanent-failure hook for %s raised: %s", job.id, hook_err)

    async def _retry_after(self, job: Job, delay_ms: int) -> None:
        try:
            await self._sleep(delay_ms / 1000)
        finally:
            self._waiting.pop(job.id, None)
        self._pending.append(job)
        self._drain()

    async def _poll_loop(self) -> None:
        while True:
            try:
                await self.poll_once()
            except Exception as e:
                logger.error("Polling error: %s", e)
            await asyncio.sleep(self.poll_interval_ms / 1000)
