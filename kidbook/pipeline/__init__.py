"""
End-to-end orchestration for KidBook generation runs.
"""

from .orchestrator import PipelineOrchestrator, RetryPolicy, StageOutcome
from .rate_limit import DAILY_BOOK_LIMIT, DailyBookLimiter
from .service import BookCreationService, wait_for_book
from .tasks import InMemoryTaskQueue, StageTask, StageWorkerPool, TaskQueue, drain

__all__ = [
    "PipelineOrchestrator",
    "RetryPolicy",
    "StageOutcome",
    "DAILY_BOOK_LIMIT",
    "DailyBookLimiter",
    "BookCreationService",
    "InMemoryTaskQueue",
    "StageTask",
    "StageWorkerPool",
    "TaskQueue",
    "drain",
    "wait_for_book",
]
