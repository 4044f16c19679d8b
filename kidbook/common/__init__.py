"""
Common utilities shared across KidBook modules.
"""

from .config import PipelineSettings
from .errors import (
    DailyLimitReached,
    GeneratorError,
    IntegrityError,
    KidBookError,
    PreconditionMismatch,
    StorageError,
    ValidationError,
)
from .llm import (
    JSON_RESPONSE_FORMAT,
    ChatResult,
    CompletionCallable,
    call_chat_completion,
    extract_json_object,
)

__all__ = [
    "ChatResult",
    "CompletionCallable",
    "call_chat_completion",
    "extract_json_object",
    "JSON_RESPONSE_FORMAT",
    "PipelineSettings",
    "KidBookError",
    "ValidationError",
    "GeneratorError",
    "StorageError",
    "PreconditionMismatch",
    "IntegrityError",
    "DailyLimitReached",
]
