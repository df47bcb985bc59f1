#!/usr/bin/env python3
"""
Bounded FIFO work queue for network jobs.

Jobs are coroutine factories. At most ``concurrency`` of them run at once;
each completion frees its slot and immediately dispatches the next queued
job. A job that overruns ``timeout`` has its slot reclaimed and, unless
configured otherwise, is cancelled.
"""

from asyncio import CancelledError, Event, Future, Task, create_task, get_running_loop, wait
from collections import deque
from dataclasses import dataclass, field
from functools import partial
from itertools import count
from typing import Any, Awaitable, Callable, Deque, Optional, Set

from config import get_logger
from errors import JobTimeoutError

logger = get_logger("workqueue")

_job_ids = count(1)


@dataclass
class QueueJob:
    """A unit of deferred work and the future its outcome is delivered to."""

    name: str
    factory: Callable[[], Awaitable[Any]]
    future: Future
    job_id: int = field(default_factory=lambda: next(_job_ids))
    timed_out: bool = False

    def __str__(self) -> str:
        return f"{self.name}#{self.job_id}"


class WorkQueue:
    """Run submitted jobs in submission order with a concurrency cap and per-job timeout."""

    def __init__(
        self,
        concurrency: int = 100,
        timeout: Optional[float] = 60.0,
        cancel_on_timeout: bool = True,
        on_timeout: Optional[Callable[[QueueJob], None]] = None,
        on_error: Optional[Callable[[QueueJob, BaseException], None]] = None,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.concurrency = concurrency
        self.timeout = timeout
        self.cancel_on_timeout = cancel_on_timeout
        self.on_timeout = on_timeout
        self.on_error = on_error

        self._pending: Deque[QueueJob] = deque()
        self._active = 0
        self._runners: Set[Task] = set()
        self._jobs: Set[Task] = set()
        self._idle = Event()
        self._idle.set()
        self.timeouts = 0
        self.errors = 0

    @property
    def running(self) -> int:
        """Jobs currently holding a concurrency slot."""
        return self._active

    @property
    def pending(self) -> int:
        """Jobs waiting for a slot."""
        return len(self._pending)

    def submit(self, name: str, factory: Callable[[], Awaitable[Any]]) -> Future:
        """Queue a job and return the future that receives its result.

        Must be called from within a running event loop.
        """
        job = QueueJob(name=name, factory=factory, future=get_running_loop().create_future())
        self._pending.append(job)
        self._idle.clear()
        logger.debug(f"Queued job {job} ({self.pending} pending, {self.running} running)")
        self._dispatch()
        return job.future

    def _dispatch(self) -> None:
        """Start queued jobs until the concurrency limit is reached."""
        while self._pending and self._active < self.concurrency:
            job = self._pending.popleft()
            if job.future.done():
                # Caller gave up (future cancelled) before the job started
                continue
            self._active += 1
            runner = create_task(self._run(job))
            self._runners.add(runner)
            runner.add_done_callback(self._runners.discard)
        if not self._pending and self._active == 0:
            self._idle.set()

    async def _run(self, job: QueueJob) -> None:
        """Hold one slot for the job until it finishes or times out."""
        task = create_task(job.factory())
        self._jobs.add(task)
        task.add_done_callback(self._jobs.discard)
        task.add_done_callback(partial(self._settle, job))
        try:
            done, _ = await wait({task}, timeout=self.timeout)
            if not done:
                self._handle_timeout(job, task)
        finally:
            self._active -= 1
            self._dispatch()

    def _handle_timeout(self, job: QueueJob, task: Task) -> None:
        job.timed_out = True
        self.timeouts += 1
        logger.warning(f"Job Timeout: {job} exceeded {self.timeout:g}s"
                       f"{'; cancelling' if self.cancel_on_timeout else '; releasing slot'}")
        self._notify(self.on_timeout, job)
        if self.cancel_on_timeout:
            task.cancel()

    def _settle(self, job: QueueJob, task: Task) -> None:
        """Deliver the task's outcome to the job's future, exactly once."""
        if job.future.done():
            return
        if task.cancelled():
            if job.timed_out:
                job.future.set_exception(JobTimeoutError(job.name, self.timeout))
            else:
                job.future.cancel()
            return
        error = task.exception()
        if error is not None:
            self.errors += 1
            logger.debug(f"Job Error: {job}: {error!r}")
            self._notify(self.on_error, job, error)
            job.future.set_exception(error)
        else:
            job.future.set_result(task.result())

    def _notify(self, callback: Optional[Callable[..., None]], *args: Any) -> None:
        """Call an observer; observer failures must never disturb the queue."""
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.exception(f"Queue observer {getattr(callback, '__name__', callback)!r} failed")

    async def join(self) -> None:
        """Wait until no job is queued or holding a slot."""
        await self._idle.wait()

    async def close(self) -> None:
        """Cancel queued and running work and wait for it to unwind."""
        while self._pending:
            self._pending.popleft().future.cancel()
        tasks = list(self._jobs) + list(self._runners)
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except CancelledError:
                pass
            except Exception as e:
                logger.debug(f"Job finished with {e!r} during close")
        self._idle.set()
