"""
The book plan returned by the text generator and its shape validation.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Sequence

from kidbook.common.errors import ValidationError

PAGE_COUNT = 11
COVER_PAGE_NUMBER = 0
LAST_PAGE_NUMBER = 10
MIN_CHARACTERS = 3
MAX_CHARACTERS = 5

ROLES: tuple[str, ...] = ("protagonist", "supporting", "antagonist")
DEFAULT_ROLE = "supporting"


@dataclass(frozen=True)
class PlanCharacter:
    name: str
    description: str
    visual_signature: str
    role: str = DEFAULT_ROLE


@dataclass(frozen=True)
class PlanPage:
    page_number: int
    text: str
    scene_description: str
    character_names: tuple[str, ...] = ()

    @property
    def is_cover(self) -> bool:
        return self.page_number == COVER_PAGE_NUMBER


@dataclass(frozen=True)
class BookPlan:
    """
    Validated plan: title, 3-5 characters and 11 pages sorted by number.
    """

    title: str
    summary: str
    characters: tuple[PlanCharacter, ...]
    pages: tuple[PlanPage, ...]

    @property
    def protagonist(self) -> PlanCharacter:
        return next(c for c in self.characters if c.role == "protagonist")

    def characters_for(self, page: PlanPage) -> list[PlanCharacter]:
        by_name = {c.name.lower(): c for c in self.characters}
        return [by_name[name.lower()] for name in page.character_names]


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def parse_book_plan(payload: Any) -> BookPlan:
    """
    Validate raw generator output and build a :class:`BookPlan`.

    Every problem found is collected so a single :class:`ValidationError`
    describes the whole payload.
    """
    if not isinstance(payload, Mapping):
        raise ValidationError("Book plan must be a JSON object")

    problems: list[str] = []

    title = _text(payload.get("title"))
    if not title:
        problems.append("title is missing")

    characters = _parse_characters(payload.get("characters"), problems)
    pages = _parse_pages(payload.get("pages"), problems)

    known_names = {c.name.lower() for c in characters}
    for page in pages:
        for name in page.character_names:
            if name.lower() not in known_names:
                problems.append(
                    f"page {page.page_number} references unknown character '{name}'"
                )

    if problems:
        raise ValidationError("Generated book plan failed validation", problems)

    return BookPlan(
        title=title,
        summary=_text(payload.get("summary")),
        characters=tuple(characters),
        pages=tuple(sorted(pages, key=lambda p: p.page_number)),
    )


def _parse_characters(raw: Any, problems: list[str]) -> list[PlanCharacter]:
    if not isinstance(raw, Sequence) or isinstance(raw, (str, bytes)):
        problems.append("characters must be a list")
        return []

    if not MIN_CHARACTERS <= len(raw) <= MAX_CHARACTERS:
        problems.append(
            f"expected {MIN_CHARACTERS}-{MAX_CHARACTERS} characters, got {len(raw)}"
        )

    characters: list[PlanCharacter] = []
    seen: set[str] = set()
    for index, entry in enumerate(raw):
        if not isinstance(entry, Mapping):
            problems.append(f"character {index} is not an object")
            continue

        name = _text(entry.get("name"))
        signature = _text(entry.get("visualSignature") or entry.get("visual_signature"))
        role = _text(entry.get("role")).lower() or DEFAULT_ROLE

        if not name:
            problems.append(f"character {index} has no name")
            continue
        if name.lower() in seen:
            problems.append(f"character name '{name}' is used twice")
            continue
        if not signature:
            problems.append(f"character '{name}' has no visualSignature")
        if role not in ROLES:
            problems.append(f"character '{name}' has unknown role '{role}'")

        seen.add(name.lower())
        characters.append(
            PlanCharacter(
                name=name,
                description=_text(entry.get("description")),
                visual_signature=signature,
                role=role,
            )
        )

    protagonists = [c for c in characters if c.role == "protagonist"]
    if len(protagonists) > 1:
        problems.append(
            "only one protagonist is allowed, got "
            + ", ".join(c.name for c in protagonists)
        )
    elif not protagonists and characters:
        first = characters[0]
        characters[0] = PlanCharacter(
            name=first.name,
            description=first.description,
            visual_signature=first.visual_signature,
            role="protagonist",
        )

    return characters


def _parse_pages(raw: Any, problems: list[str]) -> list[PlanPage]:
    if not isinstance(raw, Sequence) or isinstance(raw, (str, bytes)):
        problems.append("pages must be a list")
        return []

    if len(raw) != PAGE_COUNT:
        problems.append(f"expected exactly {PAGE_COUNT} pages, got {len(raw)}")

    pages: list[PlanPage] = []
    seen_numbers: set[int] = set()
    for index, entry in enumerate(raw):
        if not isinstance(entry, Mapping):
            problems.append(f"page entry {index} is not an object")
            continue

        raw_number = entry.get("pageNumber", entry.get("page_number"))
        if isinstance(raw_number, bool) or not isinstance(raw_number, (int, float)):
            problems.append(f"page entry {index} has no numeric pageNumber")
            continue
        number = int(raw_number)
        if number != raw_number or not COVER_PAGE_NUMBER <= number <= LAST_PAGE_NUMBER:
            problems.append(f"page number {raw_number!r} is outside 0-10")
            continue
        if number in seen_numbers:
            problems.append(f"page number {number} appears twice")
            continue
        seen_numbers.add(number)

        names_raw = entry.get("charactersOnPage", entry.get("characters_on_page")) or []
        if isinstance(names_raw, str) or not isinstance(names_raw, Sequence):
            problems.append(f"page {number} charactersOnPage must be a list")
            names_raw = []

        pages.append(
            PlanPage(
                page_number=number,
                text=_text(entry.get("pageText") or entry.get("text")),
                scene_description=_text(
                    entry.get("sceneDescription") or entry.get("scene_description")
                ),
                character_names=tuple(
                    name for name in (_text(item) for item in names_raw) if name
                ),
            )
        )

    if COVER_PAGE_NUMBER not in seen_numbers:
        problems.append("cover page (page 0) is missing")
    missing = [
        n for n in range(COVER_PAGE_NUMBER + 1, LAST_PAGE_NUMBER + 1) if n not in seen_numbers
    ]
    if missing:
        problems.append("missing pages " + ", ".join(str(n) for n in missing))

    for page in pages:
        if not page.scene_description:
            problems.append(f"page {page.page_number} has no sceneDescription")

    return pages
