"""
Book record data model and the generation state machine.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Set

from kidbook.story_generation import BookInputs

STATUS_DRAFT = "draft"
STATUS_GENERATING_STORY = "generating_story"
STATUS_GENERATING_CHARACTER_REFS = "generating_character_refs"
STATUS_GENERATING_IMAGES = "generating_images"
STATUS_GENERATING_PDF = "generating_pdf"
STATUS_COMPLETE = "complete"
STATUS_FAILED = "failed"

BOOK_STATUSES = (
    STATUS_DRAFT,
    STATUS_GENERATING_STORY,
    STATUS_GENERATING_CHARACTER_REFS,
    STATUS_GENERATING_IMAGES,
    STATUS_GENERATING_PDF,
    STATUS_COMPLETE,
    STATUS_FAILED,
)

TERMINAL_STATUSES = {STATUS_COMPLETE, STATUS_FAILED}

ITEM_PENDING = "pending"
ITEM_GENERATING = "generating"
ITEM_COMPLETE = "complete"
ITEM_FAILED = "failed"

PROGRESS_STORY = "story"
PROGRESS_CHARACTER_REFS = "characterRefs"
PROGRESS_IMAGES = "images"
PROGRESS_PDF = "pdf"
PROGRESS_KEYS = (PROGRESS_STORY, PROGRESS_CHARACTER_REFS, PROGRESS_IMAGES, PROGRESS_PDF)

ROLE_PROTAGONIST = "protagonist"

_FORWARD_ORDER = [
    STATUS_DRAFT,
    STATUS_GENERATING_STORY,
    STATUS_GENERATING_CHARACTER_REFS,
    STATUS_GENERATING_IMAGES,
    STATUS_GENERATING_PDF,
    STATUS_COMPLETE,
]

_ALLOWED_TRANSITIONS: Dict[str, Set[str]] = {
    status: set(_FORWARD_ORDER[index + 1:]) | {STATUS_FAILED}
    for index, status in enumerate(_FORWARD_ORDER[:-1])
}
_ALLOWED_TRANSITIONS[STATUS_COMPLETE] = set()
_ALLOWED_TRANSITIONS[STATUS_FAILED] = set()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def can_transition(current: str, target: str) -> bool:
    return target in _ALLOWED_TRANSITIONS.get(current, set())


def check_transition(current: str, target: str) -> None:
    if not can_transition(current, target):
        raise ValueError(f"Illegal status transition: {current} -> {target}")


def initial_progress() -> Dict[str, str]:
    return {key: ITEM_PENDING for key in PROGRESS_KEYS}


@dataclass(frozen=True)
class StageSpec:
    """One pipeline stage: what it requires, where it leads, how it reports."""

    name: str
    precondition: str
    next_status: str
    progress_key: str
    error_stage: str
    next_stage: Optional[str] = None


STAGE_STORY = "story"
STAGE_CHARACTER_REFS = "character_refs"
STAGE_IMAGES = "images"
STAGE_DOCUMENT = "document"

STAGES: Dict[str, StageSpec] = {
    STAGE_STORY: StageSpec(
        name=STAGE_STORY,
        precondition=STATUS_GENERATING_STORY,
        next_status=STATUS_GENERATING_CHARACTER_REFS,
        progress_key=PROGRESS_STORY,
        error_stage="story_generation",
        next_stage=STAGE_CHARACTER_REFS,
    ),
    STAGE_CHARACTER_REFS: StageSpec(
        name=STAGE_CHARACTER_REFS,
        precondition=STATUS_GENERATING_CHARACTER_REFS,
        next_status=STATUS_GENERATING_IMAGES,
        progress_key=PROGRESS_CHARACTER_REFS,
        error_stage="character_ref_generation",
        next_stage=STAGE_IMAGES,
    ),
    STAGE_IMAGES: StageSpec(
        name=STAGE_IMAGES,
        precondition=STATUS_GENERATING_IMAGES,
        next_status=STATUS_GENERATING_PDF,
        progress_key=PROGRESS_IMAGES,
        error_stage="image_generation",
        next_stage=STAGE_DOCUMENT,
    ),
    STAGE_DOCUMENT: StageSpec(
        name=STAGE_DOCUMENT,
        precondition=STATUS_GENERATING_PDF,
        next_status=STATUS_COMPLETE,
        progress_key=PROGRESS_PDF,
        error_stage="pdf_generation",
    ),
}

STAGE_FOR_STATUS: Dict[str, str] = {spec.precondition: name for name, spec in STAGES.items()}


def _parse_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if value:
        return datetime.fromisoformat(str(value))
    return utcnow()


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value)
    return text or None


@dataclass
class Character:
    id: str
    name: str
    description: str
    visual_signature: str
    role: str
    ref_image_urls: List[str] = field(default_factory=list)
    ref_status: str = ITEM_PENDING
    error_message: Optional[str] = None

    def has_complete_refs(self, expected: int) -> bool:
        return self.ref_status == ITEM_COMPLETE and len(self.ref_image_urls) >= expected

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Character":
        return cls(
            id=str(data["id"]),
            name=str(data.get("name", "")),
            description=str(data.get("description", "")),
            visual_signature=str(data.get("visualSignature", "")),
            role=str(data.get("role") or "supporting"),
            ref_image_urls=[str(url) for url in data.get("refImageUrls") or []],
            ref_status=str(data.get("refStatus") or ITEM_PENDING),
            error_message=_optional_str(data.get("errorMessage")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "visualSignature": self.visual_signature,
            "role": self.role,
            "refImageUrls": list(self.ref_image_urls),
            "refStatus": self.ref_status,
            "errorMessage": self.error_message,
        }


@dataclass
class Page:
    id: str
    page_number: int
    text: str
    scene_description: str
    character_ids: List[str] = field(default_factory=list)
    image_url: Optional[str] = None
    image_status: str = ITEM_PENDING
    error_message: Optional[str] = None

    @property
    def is_cover(self) -> bool:
        return self.page_number == 0

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Page":
        return cls(
            id=str(data["id"]),
            page_number=int(data["pageNumber"]),
            text=str(data.get("text", "")),
            scene_description=str(data.get("sceneDescription", "")),
            character_ids=[str(cid) for cid in data.get("characterIds") or []],
            image_url=_optional_str(data.get("imageUrl")),
            image_status=str(data.get("imageStatus") or ITEM_PENDING),
            error_message=_optional_str(data.get("errorMessage")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "pageNumber": self.page_number,
            "text": self.text,
            "sceneDescription": self.scene_description,
            "characterIds": list(self.character_ids),
            "imageUrl": self.image_url,
            "imageStatus": self.image_status,
            "errorMessage": self.error_message,
        }


@dataclass
class BookRecord:
    """
    Persisted state of one generation run.

    ``inputs`` is set at creation and never changes. ``document_url`` is only
    present once ``status`` is ``complete``; ``error_message`` and
    ``error_stage`` only once it is ``failed``.
    """

    id: str
    owner_id: str
    inputs: BookInputs
    namespace: str = ""
    status: str = STATUS_DRAFT
    progress: Dict[str, str] = field(default_factory=initial_progress)
    title: str = ""
    summary: Optional[str] = None
    cover_image_url: Optional[str] = None
    document_url: Optional[str] = None
    error_message: Optional[str] = None
    error_stage: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "BookRecord":
        progress = initial_progress()
        progress.update({str(k): str(v) for k, v in (data.get("progress") or {}).items()})
        return cls(
            id=str(data["id"]),
            owner_id=str(data["ownerId"]),
            inputs=BookInputs.from_mapping(data["inputs"]),
            namespace=str(data.get("namespace") or ""),
            status=str(data.get("status") or STATUS_DRAFT),
            progress=progress,
            title=str(data.get("title") or ""),
            summary=_optional_str(data.get("summary")),
            cover_image_url=_optional_str(data.get("coverImageUrl")),
            document_url=_optional_str(data.get("documentUrl")),
            error_message=_optional_str(data.get("errorMessage")),
            error_stage=_optional_str(data.get("errorStage")),
            created_at=_parse_datetime(data.get("createdAt")),
            updated_at=_parse_datetime(data.get("updatedAt")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "ownerId": self.owner_id,
            "namespace": self.namespace,
            "inputs": self.inputs.to_dict(),
            "status": self.status,
            "progress": dict(self.progress),
            "title": self.title,
            "summary": self.summary,
            "coverImageUrl": self.cover_image_url,
            "documentUrl": self.document_url,
            "errorMessage": self.error_message,
            "errorStage": self.error_stage,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }


# Fields update_book may write; identity, inputs and createdAt are fixed.
MUTABLE_BOOK_FIELDS = {
    "status",
    "title",
    "summary",
    "cover_image_url",
    "document_url",
    "error_message",
    "error_stage",
}
MUTABLE_CHARACTER_FIELDS = {"ref_image_urls", "ref_status", "error_message"}
MUTABLE_PAGE_FIELDS = {"image_url", "image_status", "error_message"}


@dataclass
class BookSnapshot:
    """A consistent view of a record and its sub-entities, handed to observers."""

    record: BookRecord
    characters: List[Character] = field(default_factory=list)
    pages: List[Page] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        payload = self.record.to_dict()
        payload["characters"] = [c.to_dict() for c in self.characters]
        payload["pages"] = [p.to_dict() for p in self.pages]
        return payload
