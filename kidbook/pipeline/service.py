"""
Creation boundary: admits a request, stores the record and starts the pipeline.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from datetime import datetime
from typing import Any, Callable, Mapping, Optional

from kidbook.common.errors import DailyLimitReached
from kidbook.records import BookRecord, BookRepository
from kidbook.records.models import (
    STAGE_STORY,
    STATUS_GENERATING_STORY,
    initial_progress,
    utcnow,
)
from kidbook.story_generation import BookInputs

from .rate_limit import DailyBookLimiter
from .tasks import StageTask, StageWorkerPool, TaskQueue

logger = logging.getLogger(__name__)


def placeholder_title(inputs: BookInputs) -> str:
    return f"A {inputs.theme} Story"


class BookCreationService:
    def __init__(
        self,
        repository: BookRepository,
        task_queue: TaskQueue,
        *,
        limiter: Optional[DailyBookLimiter] = None,
        namespace: str = "",
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._queue = task_queue
        self._limiter = limiter if limiter is not None else DailyBookLimiter(repository, clock=clock)
        self._namespace = namespace
        self._id_factory = id_factory
        self._clock = clock

    def create_book(self, owner_id: str, inputs: BookInputs | Mapping[str, Any]) -> BookRecord:
        """
        Create a book for ``owner_id`` and enqueue its Story stage.

        Raises :class:`DailyLimitReached` when the owner is over the daily
        limit and ``ValueError`` when ``inputs`` is a mapping that fails validation.
        """
        if not owner_id:
            raise ValueError("owner_id is required.")

        if self._limiter.has_reached_daily_limit(owner_id):
            logger.info("Owner %s reached the daily limit of %d books", owner_id, self._limiter.limit)
            raise DailyLimitReached(owner_id, self._limiter.limit)

        book_inputs = inputs if isinstance(inputs, BookInputs) else BookInputs.from_mapping(inputs)
        now = self._clock()
        record = self._repository.create(
            BookRecord(
                id=self._id_factory(),
                owner_id=owner_id,
                inputs=book_inputs,
                namespace=self._namespace,
                status=STATUS_GENERATING_STORY,
                progress=initial_progress(),
                title=placeholder_title(book_inputs),
                created_at=now,
                updated_at=now,
            )
        )
        logger.info("Created book %s for %s (%s)", record.id, owner_id, record.title)

        try:
            self._queue.enqueue(StageTask(book_id=record.id, stage=STAGE_STORY))
        except Exception:
            logger.exception("Could not enqueue the story stage for book %s", record.id)
        return record


def wait_for_book(
    repository: BookRepository,
    book_id: str,
    pool: StageWorkerPool,
    *,
    timeout: float | None = None,
    poll_interval: float = 0.5,
    wake: Optional[threading.Event] = None,
) -> Optional[BookRecord]:
    """
    Block until ``book_id`` is complete or failed and return the record.

    Also returns, with the record still in progress, when ``timeout`` expires
    or when the workers are idle with nothing queued, which means the book's
    task was dropped and nothing will advance it. ``wake`` cuts a poll short.
    """
    deadline = None if timeout is None else time.monotonic() + timeout
    while True:
        record = repository.get(book_id)
        if record is None or record.is_terminal:
            return record

        if pool.wait_idle(timeout=0):
            record = repository.get(book_id)
            if record is not None and not record.is_terminal:
                logger.warning(
                    "Workers are idle but book %s is still %s; nothing will advance it.",
                    book_id,
                    record.status,
                )
            return record

        delay = poll_interval
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.warning("Timed out waiting for book %s (status %s)", book_id, record.status)
                return record
            delay = min(delay, remaining)

        if wake is not None:
            wake.wait(delay)
        else:
            time.sleep(delay)
