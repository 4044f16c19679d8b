"""
Service layer for producing book plans via LiteLLM-compatible models.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Protocol

from kidbook.common import (
    JSON_RESPONSE_FORMAT,
    ChatResult,
    CompletionCallable,
    call_chat_completion,
    extract_json_object,
)
from kidbook.common.errors import GeneratorError, ValidationError

from .inputs import BookInputs
from .plan import BookPlan, parse_book_plan
from .prompting import StoryPrompt, build_plan_prompt

logger = logging.getLogger(__name__)


class TextGenerator(Protocol):
    def generate(self, inputs: BookInputs) -> BookPlan:
        ...


class BookPlanGenerator:
    """
    Turns validated book inputs into a schema-checked :class:`BookPlan`.

    Output that cannot be parsed or fails validation raises
    :class:`ValidationError` and is never retried or repaired.
    """

    def __init__(
        self,
        *,
        api_key: str | None = None,
        model: str | None = None,
        completion_fn: CompletionCallable | None = None,
        temperature: float = 0.7,
        max_output_tokens: int = 4000,
    ) -> None:
        self._api_key = api_key or os.getenv("OPENAI_API_KEY") or os.getenv("LITELLM_API_KEY")
        self._model = (
            model
            or os.getenv("KIDBOOK_STORY_MODEL")
            or os.getenv("OPENAI_STORY_MODEL")
            or os.getenv("LITELLM_MODEL")
            or "gpt-4o"
        )
        self._completion_fn: CompletionCallable = completion_fn or call_chat_completion
        self._temperature = temperature
        self._max_output_tokens = max_output_tokens

    @property
    def model(self) -> str:
        """Return the model identifier in use."""
        return self._model

    def generate(self, inputs: BookInputs, **response_kwargs: Any) -> BookPlan:
        prompt: StoryPrompt = build_plan_prompt(inputs)
        messages = [
            {"role": "system", "content": prompt.system},
            {"role": "user", "content": prompt.user},
        ]

        try:
            result: ChatResult = self._completion_fn(
                model=self._model,
                messages=messages,
                temperature=self._temperature,
                max_tokens=self._max_output_tokens,
                api_key=self._api_key,
                response_format=JSON_RESPONSE_FORMAT,
                **response_kwargs,
            )
        except GeneratorError:
            raise
        except Exception as exc:
            raise GeneratorError(f"Story model call failed: {exc}") from exc

        if not result.text:
            raise GeneratorError("Story model returned empty content.")
        if result.truncated:
            logger.warning("Story reply from %s hit the token limit; the plan may be incomplete.", self._model)

        try:
            payload = extract_json_object(result.text)
        except ValidationError:
            logger.error("Story model did not return valid JSON: %.200s", result.text)
            raise

        plan = parse_book_plan(payload)
        if len(plan.characters) != inputs.character_count:
            logger.warning(
                "Plan has %d characters, %d were requested.",
                len(plan.characters),
                inputs.character_count,
            )
        return plan
