"""
KidBook package exposing story generation, the staged pipeline, and PDF tooling.
"""

from .pdf_generation import StorybookPDFBuilder
from .pipeline import (
    BookCreationService,
    DailyBookLimiter,
    InMemoryTaskQueue,
    PipelineOrchestrator,
    RetryPolicy,
    StageWorkerPool,
)
from .records import BookRecord, InMemoryBookRepository, SqliteBookRepository
from .story_generation import BookInputs

__all__ = [
    "BookCreationService",
    "BookInputs",
    "BookRecord",
    "DailyBookLimiter",
    "InMemoryBookRepository",
    "InMemoryTaskQueue",
    "PipelineOrchestrator",
    "RetryPolicy",
    "SqliteBookRepository",
    "StageWorkerPool",
    "StorybookPDFBuilder",
]
