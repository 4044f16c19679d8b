"""
Prompt construction utilities for KidBook illustration generation.

Characters always appear in a deterministic order (protagonist first, then
declaration order) and are described by their visual signature verbatim, so
every page asks for the same cast in the same words.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, Sequence, TypeVar

BASE_STYLE_PROMPT = (
    "children's book illustration style, soft watercolor textures, warm and inviting colors, "
    "gentle lighting, rounded shapes, friendly and approachable characters, high quality, "
    "detailed, professional children's book art, storybook illustration"
)

NEGATIVE_PROMPT = (
    "scary, dark, violent, blood, gore, realistic, photorealistic, ugly, deformed, distorted, "
    "low quality, blurry, adult content, nsfw, text, watermark, signature"
)

COVER_PREFIX = "Book cover illustration, title page style, centered composition."

REFERENCE_TYPES: tuple[str, ...] = ("front_portrait", "action_pose")

_POSE_DIRECTIONS = {
    "front_portrait": (
        "front-facing portrait, neutral standing pose, looking directly at viewer, "
        "full body visible, centered composition, simple solid color background"
    ),
    "action_pose": (
        "three-quarter view, dynamic action pose, expressive, showing personality, "
        "full body visible, simple solid color background"
    ),
}


class DepictedCharacter(Protocol):
    name: str
    visual_signature: str
    role: str


CharacterT = TypeVar("CharacterT", bound=DepictedCharacter)


@dataclass(frozen=True)
class StorybookPrompt:
    """Container for the positive and negative prompts passed to the image model."""

    positive: str
    negative: str = NEGATIVE_PROMPT

    @property
    def text(self) -> str:
        """Prompt as sent to models without a separate negative prompt input."""
        if not self.negative.strip():
            return self.positive
        return f"{self.positive} Avoid: {self.negative.strip().rstrip('.')}."


def order_characters(characters: Sequence[CharacterT]) -> list[CharacterT]:
    """
    Protagonist first; everyone else keeps their declaration order.
    """
    return sorted(characters, key=lambda c: 0 if c.role == "protagonist" else 1)


def _character_block(character: DepictedCharacter) -> str:
    return f"[{character.name.upper()}]: {character.visual_signature.strip()}"


def build_page_prompt(
    scene_description: str,
    characters: Sequence[DepictedCharacter] = (),
    *,
    is_cover: bool = False,
) -> StorybookPrompt:
    """
    Build the structured prompt for one page illustration.

    Layout: optional cover prefix, the scene, one block per character in
    deterministic order, then the shared base style.
    """
    if not scene_description or not scene_description.strip():
        raise ValueError("scene_description must be a non-empty string.")

    parts: list[str] = []
    if is_cover:
        parts.append(COVER_PREFIX)

    parts.append(scene_description.strip().rstrip(".") + ".")

    if characters:
        blocks = [_character_block(c) for c in order_characters(characters)]
        parts.append(f"Characters in scene: {'. '.join(blocks)}.")

    parts.append(BASE_STYLE_PROMPT)
    return StorybookPrompt(positive=" ".join(parts))


def build_reference_prompt(character: DepictedCharacter, ref_type: str) -> StorybookPrompt:
    """
    Prompt for one canonical reference image of ``character``.
    """
    pose = _POSE_DIRECTIONS.get(ref_type)
    if pose is None:
        raise ValueError(
            f"Unknown reference type '{ref_type}'. Expected one of {', '.join(REFERENCE_TYPES)}."
        )
    signature = character.visual_signature.strip().rstrip(".")
    return StorybookPrompt(positive=f"{signature}. {pose}. {BASE_STYLE_PROMPT}")
