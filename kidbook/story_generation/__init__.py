"""
Story planning utilities for crafting personalized KidBook narratives.
"""

from .inputs import AGE_RANGES, CHARACTER_COUNTS, TONES, BookInputs
from .plan import BookPlan, PlanCharacter, PlanPage, parse_book_plan
from .prompting import StoryPrompt, build_plan_prompt
from .story_service import BookPlanGenerator, TextGenerator

__all__ = [
    "AGE_RANGES",
    "CHARACTER_COUNTS",
    "TONES",
    "BookInputs",
    "BookPlan",
    "PlanCharacter",
    "PlanPage",
    "parse_book_plan",
    "StoryPrompt",
    "build_plan_prompt",
    "BookPlanGenerator",
    "TextGenerator",
]
