"""
Structured representation of the preferences submitted for one book.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal, Mapping

AgeRange = Literal["3-5", "6-8", "9-12"]
Tone = Literal["silly", "warm", "adventurous"]

AGE_RANGES: tuple[str, ...] = ("3-5", "6-8", "9-12")
TONES: tuple[str, ...] = ("silly", "warm", "adventurous")
CHARACTER_COUNTS: tuple[int, ...] = (3, 4, 5)

MAX_CHILD_NAME_LENGTH = 50
MAX_SPECIAL_DETAIL_LENGTH = 200


def _lookup(data: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return None


def _coerce_optional_str(value: Any) -> str | None:
    if value is None:
        return None

    text = str(value).strip()
    return text or None


def _require_str(value: Any, field_name: str) -> str:
    text = _coerce_optional_str(value)
    if text is None:
        raise ValueError(f"'{field_name}' is required.")
    return text


@dataclass(frozen=True)
class BookInputs:
    """
    Immutable snapshot of the book preferences.

    Attributes
    ----------
    child_name:
        Name of the child the story is written for.
    age_range:
        Reading band, one of ``3-5``, ``6-8`` or ``9-12``.
    theme / setting:
        Free-form story theme and where the story takes place.
    tone:
        One of ``silly``, ``warm`` or ``adventurous``.
    character_count:
        How many characters the plan should contain (3 to 5).
    special_detail:
        Optional element the family wants woven into the story.
    """

    child_name: str
    age_range: AgeRange
    theme: str
    setting: str
    tone: Tone
    character_count: int
    special_detail: str | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "BookInputs":
        """
        Validate a dict-like payload (camelCase or snake_case keys).
        """
        child_name = _require_str(_lookup(data, "childName", "child_name"), "childName")
        if len(child_name) > MAX_CHILD_NAME_LENGTH:
            raise ValueError(
                f"'childName' must be at most {MAX_CHILD_NAME_LENGTH} characters."
            )

        age_range = _require_str(_lookup(data, "ageRange", "age_range"), "ageRange")
        if age_range not in AGE_RANGES:
            raise ValueError(
                f"'ageRange' must be one of {', '.join(AGE_RANGES)}, got {age_range!r}."
            )

        tone = _require_str(data.get("tone"), "tone").lower()
        if tone not in TONES:
            raise ValueError(f"'tone' must be one of {', '.join(TONES)}, got {tone!r}.")

        raw_count = _lookup(data, "characterCount", "character_count")
        try:
            character_count = int(raw_count)
        except (TypeError, ValueError) as exc:
            raise ValueError(
                f"'characterCount' must be an integer, got {raw_count!r}."
            ) from exc
        if character_count not in CHARACTER_COUNTS:
            raise ValueError("'characterCount' must be 3, 4 or 5.")

        special_detail = _coerce_optional_str(
            _lookup(data, "specialDetail", "special_detail")
        )
        if special_detail and len(special_detail) > MAX_SPECIAL_DETAIL_LENGTH:
            raise ValueError(
                f"'specialDetail' must be at most {MAX_SPECIAL_DETAIL_LENGTH} characters."
            )

        return cls(
            child_name=child_name,
            age_range=age_range,  # type: ignore[arg-type]
            theme=_require_str(data.get("theme"), "theme"),
            setting=_require_str(data.get("setting"), "setting"),
            tone=tone,  # type: ignore[arg-type]
            character_count=character_count,
            special_detail=special_detail,
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "childName": self.child_name,
            "ageRange": self.age_range,
            "theme": self.theme,
            "setting": self.setting,
            "tone": self.tone,
            "characterCount": self.character_count,
        }
        if self.special_detail:
            payload["specialDetail"] = self.special_detail
        return payload

    def context_bullets(self) -> list[str]:
        bullets = [
            f"Child's name: {self.child_name} (use this name for the main protagonist)",
            f"Age range: {self.age_range}",
            f"Theme: {self.theme}",
            f"Setting: {self.setting}",
            f"Tone: {self.tone}",
            f"Number of characters: {self.character_count}",
        ]
        if self.special_detail:
            bullets.append(f"Special detail/request: {self.special_detail}")
        return bullets

    def summary_for_prompt(self) -> str:
        """
        Format the inputs as a readable block suitable for LLM prompting.
        """
        return "\n".join(f"- {line}" for line in self.context_bullets())
