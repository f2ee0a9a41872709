"""Bounded fan-out of per-device fetches.

The collector runs a fixed number of worker coroutines that pull submitted
work from a queue. Each piece of work carries its own deadline:

- Blocking callables run on a dedicated daemon thread so an abandoned call
  never holds on to a pool slot or a shared executor worker
- Coroutine functions are awaited directly and cancelled at the deadline
- A timed-out call may keep running on the far end; its result is discarded
- Nothing is retried; callers resubmit explicitly
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from time import monotonic
from typing import Any, Callable, Dict, Iterable, List, Optional

from ..core.config import settings
from ..core.models import DeviceIdentity

logger = logging.getLogger(__name__)


class TaskState(str, Enum):
    """Lifecycle of a submitted fetch."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


TERMINAL_STATES = frozenset({TaskState.COMPLETED, TaskState.TIMED_OUT, TaskState.FAILED})


class CollectorTimeoutError(TimeoutError):
    """Recorded against a task that exceeded its deadline."""


@dataclass(slots=True)
class TaskOutcome:
    """Terminal result of one submission."""

    identity: DeviceIdentity
    state: TaskState
    result: Any = None
    error: Optional[BaseException] = None
    duration: float = 0.0

    @property
    def completed(self) -> bool:
        return self.state == TaskState.COMPLETED

    @property
    def timed_out(self) -> bool:
        return self.state == TaskState.TIMED_OUT

    @property
    def failed(self) -> bool:
        return self.state == TaskState.FAILED


@dataclass(slots=True)
class _CollectorTask:
    """Internal representation of queued work."""

    identity: DeviceIdentity
    func: Callable[[DeviceIdentity], Any]
    timeout: Optional[float]
    state: TaskState = TaskState.PENDING
    submitted_at: float = field(default_factory=monotonic)
    started_at: Optional[float] = None
    outcome: Optional[TaskOutcome] = None

    def transition(self, state: TaskState) -> None:
        if state == TaskState.RUNNING and self.state != TaskState.PENDING:
            raise RuntimeError(f"Task for {self.identity} cannot start from {self.state.value}")
        if state in TERMINAL_STATES and self.state != TaskState.RUNNING:
            raise RuntimeError(f"Task for {self.identity} cannot finish from {self.state.value}")
        self.state = state


def _settle(future: "asyncio.Future[Any]", result: Any, error: Optional[BaseException]) -> None:
    if future.done():
        # Abandoned after its deadline; the late result is dropped.
        return
    if error is not None:
        future.set_exception(error)
    else:
        future.set_result(result)


class BoundedCollector:
    """Run per-device work with at most ``max_concurrency`` tasks in flight."""

    def __init__(
        self,
        max_concurrency: Optional[int] = None,
        per_task_timeout: Optional[float] = None,
        *,
        description: str = "collect",
    ) -> None:
        if max_concurrency is None:
            max_concurrency = settings.collector_max_concurrency
        if per_task_timeout is None:
            per_task_timeout = settings.collector_task_timeout

        self.max_concurrency = max(1, int(max_concurrency))
        self.per_task_timeout = float(per_task_timeout) if per_task_timeout else None
        self.description = description

        self._tasks: Dict[DeviceIdentity, _CollectorTask] = {}
        self._order: List[DeviceIdentity] = []

        # Metrics
        self._running = 0
        self._peak_running = 0
        self._completed = 0
        self._timed_out = 0
        self._failed = 0
        self._abandoned_threads = 0

    def submit(
        self,
        identity: DeviceIdentity,
        work_fn: Callable[[DeviceIdentity], Any],
        *,
        timeout: Optional[float] = None,
    ) -> None:
        """Queue ``work_fn(identity)`` for execution by the next ``drain``."""

        existing = self._tasks.get(identity)
        if existing is not None and existing.state not in TERMINAL_STATES:
            raise ValueError(f"{identity} is already queued for {self.description}")

        effective_timeout = self.per_task_timeout if timeout is None else max(0.01, float(timeout))
        self._tasks[identity] = _CollectorTask(
            identity=identity,
            func=work_fn,
            timeout=effective_timeout,
        )
        if identity not in self._order:
            self._order.append(identity)

    async def drain(self) -> Dict[DeviceIdentity, TaskOutcome]:
        """Run every pending submission and return the outcome per identity."""

        pending = [
            self._tasks[identity]
            for identity in self._order
            if self._tasks[identity].state == TaskState.PENDING
        ]

        if pending:
            queue: asyncio.Queue[Optional[_CollectorTask]] = asyncio.Queue()
            for task in pending:
                queue.put_nowait(task)

            worker_count = min(self.max_concurrency, len(pending))
            for _ in range(worker_count):
                queue.put_nowait(None)

            logger.info(
                "Collector (%s) draining %d task(s) with %d worker(s), timeout=%s",
                self.description,
                len(pending),
                worker_count,
                f"{self.per_task_timeout:.1f}s" if self.per_task_timeout else "none",
            )

            started = monotonic()
            workers = [
                asyncio.create_task(self._worker(queue), name=f"collector-{self.description}-{index}")
                for index in range(worker_count)
            ]
            try:
                await asyncio.gather(*workers)
            except asyncio.CancelledError:
                for worker in workers:
                    worker.cancel()
                await asyncio.gather(*workers, return_exceptions=True)
                raise

            logger.info(
                "Collector (%s) drained in %.2fs (completed=%d timed_out=%d failed=%d)",
                self.description,
                monotonic() - started,
                self._completed,
                self._timed_out,
                self._failed,
            )

        outcomes: Dict[DeviceIdentity, TaskOutcome] = {}
        for identity in self._order:
            task = self._tasks[identity]
            if task.outcome is not None:
                outcomes[identity] = task.outcome
        return outcomes

    async def collect(
        self,
        identities: Iterable[DeviceIdentity],
        work_fn: Callable[[DeviceIdentity], Any],
    ) -> Dict[DeviceIdentity, TaskOutcome]:
        """Submit ``work_fn`` for every identity and drain."""

        for identity in identities:
            self.submit(identity, work_fn)
        return await self.drain()

    async def _worker(self, queue: "asyncio.Queue[Optional[_CollectorTask]]") -> None:
        while True:
            task = await queue.get()
            if task is None:
                queue.task_done()
                return
            try:
                await self._execute(task)
            finally:
                queue.task_done()

    async def _execute(self, task: _CollectorTask) -> None:
        task.transition(TaskState.RUNNING)
        task.started_at = monotonic()
        self._running += 1
        self._peak_running = max(self._peak_running, self._running)

        logger.debug("Starting %s task for %s", self.description, task.identity)

        is_coroutine = inspect.iscoroutinefunction(task.func)
        try:
            if is_coroutine:
                future: asyncio.Future[Any] = asyncio.ensure_future(task.func(task.identity))
            else:
                future = self._run_in_thread(task)

            # A TimeoutError raised by the work itself is a failure, not a deadline.
            try:
                done, _pending = await asyncio.wait({future}, timeout=task.timeout)
            except asyncio.CancelledError:
                future.cancel()
                raise

            if future not in done:
                future.cancel()
                if is_coroutine:
                    await asyncio.wait({future})
                message = (
                    f"{self.description} for {task.identity} timed out after {task.timeout:.1f}s"
                )
                logger.warning(message)
                self._finish(task, TaskState.TIMED_OUT, error=CollectorTimeoutError(message))
                if not is_coroutine:
                    self._abandoned_threads += 1
                return

            try:
                result = future.result()
            except Exception as exc:
                logger.warning("%s for %s failed: %s", self.description, task.identity, exc)
                logger.debug("Failure detail for %s", task.identity, exc_info=True)
                self._finish(task, TaskState.FAILED, error=exc)
            else:
                self._finish(task, TaskState.COMPLETED, result=result)
        finally:
            self._running -= 1

    def _finish(
        self,
        task: _CollectorTask,
        state: TaskState,
        *,
        result: Any = None,
        error: Optional[BaseException] = None,
    ) -> None:
        task.transition(state)
        duration = monotonic() - (task.started_at or task.submitted_at)
        task.outcome = TaskOutcome(
            identity=task.identity,
            state=state,
            result=result,
            error=error,
            duration=duration,
        )
        if state == TaskState.COMPLETED:
            self._completed += 1
            logger.debug(
                "%s task for %s completed in %.2fs", self.description, task.identity, duration
            )
        elif state == TaskState.TIMED_OUT:
            self._timed_out += 1
        else:
            self._failed += 1

    def _run_in_thread(self, task: _CollectorTask) -> "asyncio.Future[Any]":
        """Start the blocking call on its own daemon thread."""

        loop = asyncio.get_running_loop()
        future: asyncio.Future[Any] = loop.create_future()

        def runner() -> None:
            result: Any = None
            error: Optional[BaseException] = None
            try:
                result = task.func(task.identity)
            except Exception as exc:
                error = exc
            try:
                loop.call_soon_threadsafe(_settle, future, result, error)
            except RuntimeError:
                # Event loop already closed; the run has moved on.
                logger.debug("Discarding late %s result for %s", self.description, task.identity)

        thread = threading.Thread(
            target=runner,
            name=f"{self.description}-{task.identity.canonical}",
            daemon=True,
        )
        thread.start()
        return future

    def get_metrics(self) -> Dict[str, Any]:
        """Return a snapshot of the collector state for diagnostics."""

        states: Dict[str, int] = {state.value: 0 for state in TaskState}
        for task in self._tasks.values():
            states[task.state.value] += 1

        return {
            "description": self.description,
            "max_concurrency": self.max_concurrency,
            "per_task_timeout": self.per_task_timeout,
            "running": self._running,
            "peak_running": self._peak_running,
            "completed": self._completed,
            "timed_out": self._timed_out,
            "failed": self._failed,
            "abandoned_threads": self._abandoned_threads,
            "states": states,
        }


__all__ = [
    "BoundedCollector",
    "CollectorTimeoutError",
    "TaskOutcome",
    "TaskState",
]
