"""
AI image generation package for KidBook.
"""

from .prompting import (
    NEGATIVE_PROMPT,
    REFERENCE_TYPES,
    StorybookPrompt,
    build_page_prompt,
    build_reference_prompt,
    order_characters,
)
from .replicate_service import (
    ImageGenerator,
    PollResult,
    ReplicateImageGenerator,
    normalize_image_outputs,
)

__all__ = [
    "NEGATIVE_PROMPT",
    "REFERENCE_TYPES",
    "StorybookPrompt",
    "build_page_prompt",
    "build_reference_prompt",
    "order_characters",
    "ImageGenerator",
    "PollResult",
    "ReplicateImageGenerator",
    "normalize_image_outputs",
]
