"""
LiteLLM chat helper used by the story generator.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Sequence

from litellm import completion

from .errors import GeneratorError, ValidationError

logger = logging.getLogger(__name__)

ChatMessage = Mapping[str, Any]

JSON_RESPONSE_FORMAT: Mapping[str, str] = {"type": "json_object"}

_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL | re.IGNORECASE)


@dataclass(frozen=True)
class ChatResult:
    """
    Text of the first choice plus the provider response it came from.
    """

    text: str
    raw: Any
    finish_reason: str | None = None

    @property
    def truncated(self) -> bool:
        return self.finish_reason == "length"


CompletionCallable = Callable[..., ChatResult]


def call_chat_completion(
    *,
    model: str,
    messages: Sequence[ChatMessage],
    response_format: Mapping[str, Any] | None = None,
    **options: Any,
) -> ChatResult:
    """
    Send ``messages`` through LiteLLM and return the first choice.

    ``options`` with a ``None`` value are left out so provider defaults apply.
    Transport failures and malformed responses raise :class:`GeneratorError`.
    """
    payload: dict[str, Any] = {"model": model, "messages": [dict(m) for m in messages]}
    payload.update({key: value for key, value in options.items() if value is not None})
    if response_format is not None:
        payload["response_format"] = dict(response_format)

    logger.debug("Calling %s with %d message(s)", model, len(payload["messages"]))
    try:
        response = completion(**payload)
    except Exception as exc:
        raise GeneratorError(f"{model} request failed: {exc}") from exc

    try:
        choice = response["choices"][0]
        content = choice["message"]["content"]
    except (KeyError, IndexError, TypeError) as exc:
        raise GeneratorError(f"{model} returned an unexpected response shape.") from exc

    finish_reason = choice.get("finish_reason") if hasattr(choice, "get") else None
    return ChatResult(text=str(content or "").strip(), raw=response, finish_reason=finish_reason)


def extract_json_object(text: str) -> dict[str, Any]:
    """
    Parse the JSON object in a model reply, tolerating a markdown code fence.
    """
    body = text.strip()
    fenced = _FENCE_RE.match(body)
    if fenced:
        body = fenced.group(1)

    start, end = body.find("{"), body.rfind("}")
    if start == -1 or end < start:
        raise ValidationError("Model reply does not contain a JSON object")

    try:
        payload = json.loads(body[start : end + 1])
    except json.JSONDecodeError as exc:
        raise ValidationError("Model reply is not valid JSON", [str(exc)]) from exc
    if not isinstance(payload, dict):
        raise ValidationError("Model reply is not a JSON object")
    return payload
