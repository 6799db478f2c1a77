"""Bounded-concurrency task queue with retries."""

import asyncio
import inspect
import itertools
import logging
import random
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional, Set
from . import backoff
from .models import RetryConfig, TaskRecord, TaskState, utcnow

logger = logging.getLogger(__name__)

# A task body receives the 1-based attempt number and returns a value or an awaitable.
TaskFn = Callable[[int], Any]


class RetryExhaustedError(Exception):
    """Set on a task handle once every allowed attempt has failed."""

    def __init__(self, task_id: str, attempts: int, last_error: BaseException):
        super().__init__(
            f"Task {task_id} ultimately failed after {attempts} attempts: {last_error}"
        )
        self.task_id = task_id
        self.attempts = attempts
        self.last_error = last_error


class SchedulerClosedError(RuntimeError):
    """Raised when submitting to a closed scheduler."""


class _Entry:
    __slots__ = ("record", "fn", "config", "future", "attempt")

    def __init__(self, record: TaskRecord, fn: TaskFn, config: RetryConfig, future: asyncio.Future):
        self.record = record
        self.fn = fn
        self.config = config
        self.future = future
        self.attempt = 1


class RetryScheduler:
    """Runs submitted tasks at most ``concurrency`` at a time, retrying failures.

    Pending attempts are admitted FIFO. A failed attempt releases its slot
    immediately; the task waits out its backoff delay on a timer and then
    rejoins the tail of the pending queue as the next attempt. Each task
    ends exactly once: its handle resolves with the task's result, or is
    rejected with :class:`RetryExhaustedError` after ``max_attempts``.

    When a running attempt is cancelled from outside (event loop teardown)
    the scheduler halts: nothing more is admitted and every queued or
    backing-off handle is cancelled.

    Must be used from a single event loop thread.
    """

    def __init__(
        self,
        concurrency: int = 1,
        config: Optional[RetryConfig] = None,
        rng: Optional[random.Random] = None,
        history_size: int = 1000,
    ):
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {concurrency}")
        self.concurrency = concurrency
        self.config = config or RetryConfig()
        self._rng = rng
        self._pending: Deque[_Entry] = deque()
        self._tasks: Dict[str, _Entry] = {}
        self._parked: Dict[str, asyncio.TimerHandle] = {}
        self._running: Set[asyncio.Task] = set()
        self._waiters: List[asyncio.Future] = []
        self._history: Deque[TaskRecord] = deque(maxlen=history_size)
        self._finished = {TaskState.COMPLETED: 0, TaskState.DEAD: 0, TaskState.CANCELLED: 0}
        self._in_flight = 0
        self._seq = itertools.count(1)
        self._closed = False
        self._halted = False

    @property
    def in_flight(self) -> int:
        """Attempts currently holding a slot."""
        return self._in_flight

    @property
    def closed(self) -> bool:
        return self._closed

    def submit(
        self,
        task: TaskFn,
        config: Optional[RetryConfig] = None,
        name: Optional[str] = None,
    ) -> "asyncio.Future[Any]":
        """Queue ``task`` and return a future for its final outcome.

        The task may be invoked several times with increasing attempt
        numbers, so it must be safe to run again after a partial failure.

        Callers must observe the returned future. A terminal failure is
        delivered as :class:`RetryExhaustedError`; leaving it unobserved is a
        caller defect that asyncio reports as "exception was never retrieved".
        """
        if self._closed:
            raise SchedulerClosedError("Scheduler is closed; no further tasks accepted")

        loop = asyncio.get_running_loop()
        task_id = name or f"task-{next(self._seq)}"
        if task_id in self._tasks:
            raise ValueError(f"Task {task_id} is already scheduled")

        entry = _Entry(TaskRecord(id=task_id), task, config or self.config, loop.create_future())
        self._tasks[task_id] = entry
        self._pending.append(entry)
        entry.future.add_done_callback(lambda f: self._on_handle_done(entry))
        logger.debug("Task %s submitted (%d pending)", task_id, len(self._pending))
        self._pump()
        return entry.future

    def attempts(self, task_id: str) -> Optional[int]:
        """Current attempt number of a live task, or None once it has finished."""
        entry = self._tasks.get(task_id)
        return entry.attempt if entry else None

    def close(self) -> None:
        """Stop accepting submissions. Accepted tasks still run to completion."""
        self._closed = True

    async def join(self) -> None:
        """Wait until no task is pending, running or waiting out a backoff."""
        if self._is_idle():
            return
        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        await waiter

    async def shutdown(self) -> None:
        self.close()
        await self.join()

    def stats(self) -> Dict[str, int]:
        """Get task statistics."""
        stats = {state.value: 0 for state in TaskState}
        for entry in self._tasks.values():
            stats[entry.record.state.value] += 1
        for state, count in self._finished.items():
            stats[state.value] = count
        stats["total"] = len(self._tasks) + sum(self._finished.values())
        stats["in_flight"] = self._in_flight
        return stats

    def history(self) -> List[TaskRecord]:
        """Records of recently finished tasks, oldest first."""
        return list(self._history)

    def _is_idle(self) -> bool:
        return not self._pending and not self._parked and self._in_flight == 0

    def _pump(self) -> None:
        """Admit pending attempts while slots are free."""
        while not self._halted and self._in_flight < self.concurrency and self._pending:
            entry = self._pending.popleft()
            if entry.future.done():
                # Handle was cancelled by the caller while queued.
                self._finish(entry, TaskState.CANCELLED)
                continue

            self._in_flight += 1
            entry.record.state = TaskState.PROCESSING
            entry.record.attempts = entry.attempt
            entry.record.updated_at = utcnow()
            runner = asyncio.get_running_loop().create_task(self._run_attempt(entry))
            self._running.add(runner)
            runner.add_done_callback(self._running.discard)

        if self._is_idle():
            for waiter in self._waiters:
                if not waiter.done():
                    waiter.set_result(None)
            self._waiters.clear()

    async def _run_attempt(self, entry: _Entry) -> None:
        error: Optional[BaseException] = None
        result: Any = None
        try:
            result = entry.fn(entry.attempt)
            if inspect.isawaitable(result):
                result = await result
        except asyncio.CancelledError as e:
            if asyncio.current_task().cancelling():
                self._in_flight -= 1
                entry.future.cancel()
                self._finish(entry, TaskState.CANCELLED)
                self._halt()
                raise
            # Raised by the task body itself: an ordinary failed attempt.
            error = e
        except Exception as e:
            error = e
        self._in_flight -= 1

        if entry.future.done():
            self._finish(entry, TaskState.CANCELLED)
        elif error is None:
            entry.future.set_result(result)
            self._finish(entry, TaskState.COMPLETED)
            logger.debug("Task %s completed after %d attempt(s)", entry.record.id, entry.attempt)
        else:
            self._handle_failure(entry, error)
        self._pump()

    def _handle_failure(self, entry: _Entry, error: BaseException) -> None:
        task_id = entry.record.id
        entry.record.error_message = str(error) or type(error).__name__

        if entry.attempt >= entry.config.max_attempts:
            logger.error(
                "Task %s ultimately failed after %d attempts: %r", task_id, entry.attempt, error
            )
            exhausted = RetryExhaustedError(task_id, entry.attempt, error)
            exhausted.__cause__ = error
            entry.future.set_exception(exhausted)
            self._finish(entry, TaskState.DEAD)
            return

        wait_ms = backoff.delay(entry.attempt + 1, entry.config, self._rng)
        logger.info(
            "Task %s failed on attempt %d: %r; retrying in %d ms",
            task_id, entry.attempt, error, wait_ms,
        )
        entry.record.state = TaskState.WAITING
        entry.record.updated_at = utcnow()
        loop = asyncio.get_running_loop()
        self._parked[task_id] = loop.call_later(wait_ms / 1000.0, self._requeue, entry)

    def _requeue(self, entry: _Entry) -> None:
        self._parked.pop(entry.record.id, None)
        if entry.future.done():
            self._finish(entry, TaskState.CANCELLED)
            self._pump()
            return
        entry.attempt += 1
        entry.record.state = TaskState.PENDING
        entry.record.updated_at = utcnow()
        self._pending.append(entry)
        self._pump()

    def _on_handle_done(self, entry: _Entry) -> None:
        # Only a handle cancelled during backoff still has a timer armed.
        timer = self._parked.pop(entry.record.id, None)
        if timer is None:
            return
        timer.cancel()
        logger.debug("Task %s cancelled while waiting to retry", entry.record.id)
        self._finish(entry, TaskState.CANCELLED)
        self._pump()

    def _halt(self) -> None:
        """Admit nothing more; cancel every task that is not running."""
        self._closed = True
        self._halted = True
        dropped = list(self._pending)
        self._pending.clear()
        for task_id, timer in self._parked.items():
            timer.cancel()
            dropped.append(self._tasks[task_id])
        self._parked.clear()
        for entry in dropped:
            entry.future.cancel()
            if entry.record.id in self._tasks:
                self._finish(entry, TaskState.CANCELLED)
        if dropped:
            logger.warning("Scheduler halted; %d queued task(s) cancelled", len(dropped))
        self._pump()

    def _finish(self, entry: _Entry, state: TaskState) -> None:
        entry.record.state = state
        entry.record.updated_at = utcnow()
        self._tasks.pop(entry.record.id, None)
        self._finished[state] += 1
        self._history.append(entry.record)


def with_timeout(fn: TaskFn, seconds: Optional[float]) -> TaskFn:
    """Bound each attempt of ``fn`` to ``seconds``; a timeout counts as a failed attempt."""
    if not seconds:
        return fn

    async def run(attempt: int) -> Any:
        result = fn(attempt)
        if inspect.isawaitable(result):
            return await asyncio.wait_for(result, timeout=seconds)
        return result

    return run
