"""
Prompt construction utilities for the KidBook story planning step.
"""

from __future__ import annotations

from dataclasses import dataclass

from .inputs import BookInputs

READING_LEVELS = {
    "3-5": "Simple sentences, repetition, 1-2 sentences per page. Basic vocabulary.",
    "6-8": "2-3 sentences per page, slightly more complex plots.",
    "9-12": "2-4 sentences per page, richer vocabulary, engaging narrative.",
}

PLAN_FORMAT = """{
  "title": "Book Title",
  "summary": "Brief summary of the story",
  "characters": [
    {
      "name": "Character Name",
      "description": "Personality traits and role in the story",
      "visualSignature": "Detailed appearance used verbatim for every illustration (e.g. 'A small blue rabbit wearing a red scarf, white belly, floppy ears')",
      "role": "protagonist | supporting | antagonist"
    }
  ],
  "pages": [
    {
      "pageNumber": 0,
      "pageText": "Cover text",
      "sceneDescription": "Visual description for the cover image featuring the main characters",
      "charactersOnPage": ["Character Name"]
    },
    {
      "pageNumber": 1,
      "pageText": "Story text for page 1",
      "sceneDescription": "Visual description for page 1",
      "charactersOnPage": ["Character Name"]
    }
  ]
}"""


@dataclass(frozen=True)
class StoryPrompt:
    """
    Container for the system and user prompts passed to the chat model.
    """

    system: str
    user: str


def build_plan_prompt(inputs: BookInputs) -> StoryPrompt:
    """
    Build the prompt pair used to request a complete book plan as strict JSON.
    """
    reading_rules = "\n".join(
        f"  - Age {band}: {rule}" for band, rule in READING_LEVELS.items()
    )

    system_prompt = f"""You are a professional children's book author and editor.
Your task is to generate a detailed "Book Plan" for an illustrated children's book.
You must output strict, valid JSON only. No markdown formatting, no commentary.

Structure constraints:
1. The book MUST have exactly 11 pages (1 cover + 10 content pages).
2. Page 0 is always the cover. Pages 1-10 are the story content.
3. Include 3-5 consistent characters and mark exactly one of them as the protagonist.
4. Every name listed in "charactersOnPage" must match a character name exactly.

Output JSON format:
{PLAN_FORMAT}

Content rules:
- Reading level:
{reading_rules}
- Give the plot a clear beginning, middle and end within the 10 story pages.
- The "visualSignature" must describe each character precisely enough to draw them the same way on every page.
- Keep the story safe, kind and free of frightening peril.
"""

    user_prompt = f"""Generate a Book Plan for:
{inputs.summary_for_prompt()}

Remember:
- Output valid JSON only.
- Exactly 11 page entries (page 0 = cover, pages 1-10 = story).
- Exactly {inputs.character_count} characters.
- Adjust the reading level for age {inputs.age_range}."""

    return StoryPrompt(system=system_prompt, user=user_prompt)
