"""
Error taxonomy shared by the KidBook generation pipeline.
"""

from __future__ import annotations

from typing import Sequence


class KidBookError(Exception):
    """Base class for every error raised by the pipeline itself."""


class ValidationError(KidBookError):
    """
    Structured generator output does not meet the expected shape.

    Never retried: the owning stage fails immediately.
    """

    def __init__(self, message: str, problems: Sequence[str] | None = None) -> None:
        self.problems = list(problems or [])
        if self.problems:
            message = f"{message}: " + "; ".join(self.problems)
        super().__init__(message)


class GeneratorError(KidBookError):
    """An external generator call or poll failed or returned unusable output."""

    def __init__(self, message: str, *, job_id: str | None = None) -> None:
        self.job_id = job_id
        if job_id:
            message = f"{message} (job {job_id})"
        super().__init__(message)


class StorageError(KidBookError):
    """Artifact upload or fetch failed."""


class PreconditionMismatch(KidBookError):
    """The record status no longer matches what a write or stage expected."""

    def __init__(self, book_id: str, expected: str, actual: str) -> None:
        self.book_id = book_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Book {book_id} is in status '{actual}', expected '{expected}'."
        )


class IntegrityError(KidBookError):
    """Persisted data does not match expectations (missing record, foreign namespace)."""


class DailyLimitReached(KidBookError):
    """The owner already created the maximum number of books in the trailing window."""

    def __init__(self, owner_id: str, limit: int) -> None:
        self.owner_id = owner_id
        self.limit = limit
        super().__init__(
            f"Daily limit reached. You can create up to {limit} books per day."
        )


# Errors a sub-item may recover from by trying again.
RETRYABLE_ERRORS: tuple[type[KidBookError], ...] = (GeneratorError, StorageError)
