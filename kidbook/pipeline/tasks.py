"""
Stage hand-off: a task queue naming ``(book_id, stage)`` and the workers that consume it.

Completing a stage only enqueues the next one; the worker that picks the task
up re-checks the record status, so a duplicated or replayed task is harmless.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Optional, Protocol

from kidbook.common.errors import KidBookError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StageTask:
    book_id: str
    stage: str
    attempt: int = 1


class TaskQueue(Protocol):
    def enqueue(self, task: StageTask) -> None:
        ...

    def get(self, timeout: float | None = None) -> Optional[StageTask]:
        ...

    def task_done(self) -> None:
        ...


class StageRunner(Protocol):
    def run_stage(self, book_id: str, stage: str) -> Any:
        ...


class InMemoryTaskQueue:
    """Process-local queue backed by :class:`queue.Queue`."""

    def __init__(self) -> None:
        self._queue: "queue.Queue[StageTask]" = queue.Queue()

    def enqueue(self, task: StageTask) -> None:
        logger.debug("Enqueued %s for book %s (attempt %d)", task.stage, task.book_id, task.attempt)
        self._queue.put(task)

    def get(self, timeout: float | None = None) -> Optional[StageTask]:
        try:
            if timeout is not None and timeout <= 0:
                return self._queue.get_nowait()
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def task_done(self) -> None:
        self._queue.task_done()

    def join(self) -> None:
        self._queue.join()

    @property
    def unfinished_tasks(self) -> int:
        return self._queue.unfinished_tasks

    def __len__(self) -> int:
        return self._queue.qsize()


def _execute(
    task: StageTask,
    runner: StageRunner,
    task_queue: TaskQueue,
    *,
    max_attempts: int,
    requeue_delay: float,
    sleep: Callable[[float], None],
) -> None:
    try:
        runner.run_stage(task.book_id, task.stage)
    except KidBookError as exc:
        # Already recorded on the book by the stage boundary.
        logger.warning("Stage %s for book %s failed: %s", task.stage, task.book_id, exc)
    except Exception:
        if task.attempt >= max_attempts:
            logger.exception(
                "Stage %s for book %s failed after %d attempts; giving up.",
                task.stage,
                task.book_id,
                task.attempt,
            )
            return
        logger.exception(
            "Stage %s for book %s raised unexpectedly; re-enqueueing (attempt %d of %d).",
            task.stage,
            task.book_id,
            task.attempt + 1,
            max_attempts,
        )
        if requeue_delay > 0:
            sleep(requeue_delay)
        task_queue.enqueue(replace(task, attempt=task.attempt + 1))


def drain(
    task_queue: TaskQueue,
    runner: StageRunner,
    *,
    max_attempts: int = 3,
    max_tasks: int | None = None,
) -> int:
    """
    Run queued tasks in the calling thread until the queue is empty.

    Returns the number of tasks processed.
    """
    processed = 0
    while max_tasks is None or processed < max_tasks:
        task = task_queue.get(timeout=0)
        if task is None:
            break
        try:
            _execute(
                task,
                runner,
                task_queue,
                max_attempts=max_attempts,
                requeue_delay=0,
                sleep=time.sleep,
            )
        finally:
            task_queue.task_done()
        processed += 1
    return processed


class StageWorkerPool:
    """
    Threads that consume :class:`StageTask` items and run them through the orchestrator.

    Errors the stage boundary has already written to the record are logged and
    dropped. Anything else (a repository outage, a bug) re-enqueues the task
    with an incremented attempt until ``max_attempts``.
    """

    def __init__(
        self,
        task_queue: TaskQueue,
        runner: StageRunner,
        *,
        workers: int = 2,
        max_attempts: int = 3,
        retry_delay: float = 1.0,
        poll_timeout: float = 0.2,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if workers < 1:
            raise ValueError("workers must be at least 1.")
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1.")

        self._queue = task_queue
        self._runner = runner
        self._workers = workers
        self._max_attempts = max_attempts
        self._retry_delay = retry_delay
        self._poll_timeout = poll_timeout
        self._sleep = sleep

        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self._state_lock = threading.Condition()
        self._in_flight = 0

    @property
    def running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def start(self) -> "StageWorkerPool":
        if self.running:
            return self
        self._stop.clear()
        self._threads = [
            threading.Thread(target=self._work, name=f"kidbook-worker-{index}", daemon=True)
            for index in range(self._workers)
        ]
        for thread in self._threads:
            thread.start()
        logger.info("Started %d stage worker(s)", self._workers)
        return self

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []
        logger.info("Stage workers stopped")

    def wait_idle(self, timeout: float | None = None) -> bool:
        """
        Block until no task is queued or running. Returns False on timeout.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._state_lock:
                if self._in_flight == 0 and _queue_empty(self._queue):
                    return True
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._state_lock.wait(min(self._poll_timeout, remaining) if remaining else self._poll_timeout)

    def _work(self) -> None:
        while not self._stop.is_set():
            with self._state_lock:
                task = self._queue.get(timeout=0)
                if task is not None:
                    self._in_flight += 1
            if task is None:
                self._stop.wait(self._poll_timeout)
                continue
            try:
                _execute(
                    task,
                    self._runner,
                    self._queue,
                    max_attempts=self._max_attempts,
                    requeue_delay=self._retry_delay,
                    sleep=self._sleep,
                )
            finally:
                self._queue.task_done()
                with self._state_lock:
                    self._in_flight -= 1
                    self._state_lock.notify_all()

    def __enter__(self) -> "StageWorkerPool":
        return self.start()

    def __exit__(self, *exc_info: object) -> None:
        self.stop()


def _queue_empty(task_queue: TaskQueue) -> bool:
    size = getattr(task_queue, "__len__", None)
    if size is not None:
        return size() == 0
    return getattr(task_queue, "unfinished_tasks", 0) == 0
