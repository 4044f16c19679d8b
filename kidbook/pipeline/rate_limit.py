"""
Per-owner admission control for book creation.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable

from kidbook.records import BookRepository
from kidbook.records.models import utcnow

logger = logging.getLogger(__name__)

DAILY_BOOK_LIMIT = 3


class DailyBookLimiter:
    """
    Counts an owner's books created in the trailing ``window``.

    The check fails open: if the repository cannot be queried the owner is
    let through and the error is logged.
    """

    def __init__(
        self,
        repository: BookRepository,
        *,
        limit: int = DAILY_BOOK_LIMIT,
        window: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if limit < 1:
            raise ValueError("limit must be at least 1.")
        self._repository = repository
        self.limit = limit
        self.window = window
        self._clock = clock

    def has_reached_daily_limit(self, owner_id: str) -> bool:
        since = self._clock() - self.window
        try:
            count = self._repository.count_created_since(owner_id, since)
        except Exception:
            logger.exception("Could not check the daily limit for %s; allowing the request.", owner_id)
            return False
        logger.debug("Owner %s created %d book(s) since %s", owner_id, count, since.isoformat())
        return count >= self.limit
