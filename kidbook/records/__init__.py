"""
Book records: the persisted state of each generation run.
"""

from .models import (
    STAGES,
    BookRecord,
    BookSnapshot,
    Character,
    Page,
    StageSpec,
    can_transition,
    check_transition,
)
from .repository import BaseBookRepository, BookRepository, InMemoryBookRepository
from .sqlite_repository import SqliteBookRepository

__all__ = [
    "STAGES",
    "BookRecord",
    "BookSnapshot",
    "Character",
    "Page",
    "StageSpec",
    "can_transition",
    "check_transition",
    "BookRepository",
    "BaseBookRepository",
    "InMemoryBookRepository",
    "SqliteBookRepository",
]
