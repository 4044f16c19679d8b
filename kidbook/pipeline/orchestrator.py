"""
Drives a book record through Story, CharacterRefs, Images and Document.

Every stage entry point is safe to call more than once: it reloads the
record, does nothing unless the status matches the stage's precondition, and
guards each write with that status so a record that moved on mid-stage is
never overwritten.
"""

from __future__ import annotations

import functools
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Sequence, TypeVar

from kidbook.ai_generation import (
    REFERENCE_TYPES,
    ImageGenerator,
    build_page_prompt,
    build_reference_prompt,
    order_characters,
)
from kidbook.common.errors import (
    RETRYABLE_ERRORS,
    IntegrityError,
    PreconditionMismatch,
)
from kidbook.pdf_generation import DocumentAssembler, DocumentPage
from kidbook.records import BookRepository
from kidbook.records.models import (
    ITEM_COMPLETE,
    ITEM_FAILED,
    ITEM_GENERATING,
    ROLE_PROTAGONIST,
    STAGE_CHARACTER_REFS,
    STAGE_DOCUMENT,
    STAGE_FOR_STATUS,
    STAGE_IMAGES,
    STAGE_STORY,
    STAGES,
    STATUS_FAILED,
    BookRecord,
    Character,
    Page,
    StageSpec,
)
from kidbook.storage import (
    ArtifactStore,
    character_ref_path,
    document_path,
    download,
    extension_for,
    page_image_path,
)
from kidbook.story_generation import TextGenerator

from .tasks import StageTask, TaskQueue

logger = logging.getLogger(__name__)

T = TypeVar("T")

Fetcher = Callable[[str], tuple[bytes, str]]

OUTCOME_COMPLETED = "completed"
OUTCOME_SKIPPED = "skipped"


@dataclass(frozen=True)
class RetryPolicy:
    """How often a single character or page is attempted before the stage fails."""

    attempts: int = 2
    backoff: tuple[float, ...] = (2.0, 5.0, 12.0)

    def __post_init__(self) -> None:
        if self.attempts < 1:
            raise ValueError("attempts must be at least 1.")

    def delay(self, attempt: int) -> float:
        if not self.backoff:
            return 0.0
        return self.backoff[min(attempt - 1, len(self.backoff) - 1)]


@dataclass(frozen=True)
class StageOutcome:
    book_id: str
    stage: str
    outcome: str
    status: str

    @property
    def skipped(self) -> bool:
        return self.outcome == OUTCOME_SKIPPED


class PipelineOrchestrator:
    """
    Runs pipeline stages against injected collaborators.

    Parameters
    ----------
    repository:
        Book record store; every write passes the stage precondition as ``expected_status``.
    text_generator / image_generator / document_assembler:
        The external generators.
    artifact_store:
        Where downloaded images and the final document are persisted.
    task_queue:
        Receives ``StageTask(book_id, next_stage)`` after each completed stage.
        Without one, stages are only advanced through :meth:`run_to_completion`.
    namespace:
        Tenant namespace; records from another namespace are refused.
    retry_policy:
        Per-character and per-page retry on generator and storage errors.
    skip_completed_items:
        When a stage is re-invoked, keep characters and pages already marked complete.
    fetch:
        Downloads a generator output URL and returns ``(bytes, content_type)``.
    refs_per_character:
        Number of reference images generated per character.
    """

    def __init__(
        self,
        *,
        repository: BookRepository,
        text_generator: TextGenerator,
        image_generator: ImageGenerator,
        artifact_store: ArtifactStore,
        document_assembler: DocumentAssembler,
        task_queue: Optional[TaskQueue] = None,
        namespace: str = "",
        retry_policy: Optional[RetryPolicy] = None,
        skip_completed_items: bool = True,
        fetch: Fetcher = download,
        refs_per_character: int = len(REFERENCE_TYPES),
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if not 1 <= refs_per_character <= len(REFERENCE_TYPES):
            raise ValueError(
                f"refs_per_character must be between 1 and {len(REFERENCE_TYPES)}."
            )

        self._repository = repository
        self._text_generator = text_generator
        self._image_generator = image_generator
        self._artifact_store = artifact_store
        self._assembler = document_assembler
        self._queue = task_queue
        self._namespace = namespace
        self._retry_policy = retry_policy or RetryPolicy()
        self._skip_completed_items = skip_completed_items
        self._fetch = fetch
        self._refs_per_character = refs_per_character
        self._id_factory = id_factory
        self._sleep = sleep

        self._handlers: dict[str, Callable[[BookRecord, StageSpec], None]] = {
            STAGE_STORY: self._story,
            STAGE_CHARACTER_REFS: self._character_refs,
            STAGE_IMAGES: self._images,
            STAGE_DOCUMENT: self._document,
        }

    # ------------------------------------------------------------------ entry points

    def run_story(self, book_id: str) -> StageOutcome:
        return self.run_stage(book_id, STAGE_STORY)

    def run_character_refs(self, book_id: str) -> StageOutcome:
        return self.run_stage(book_id, STAGE_CHARACTER_REFS)

    def run_images(self, book_id: str) -> StageOutcome:
        return self.run_stage(book_id, STAGE_IMAGES)

    def run_document(self, book_id: str) -> StageOutcome:
        return self.run_stage(book_id, STAGE_DOCUMENT)

    def run_stage(self, book_id: str, stage: str, *, hand_off: bool = True) -> StageOutcome:
        """
        Run one stage if the record is waiting for it.

        A status mismatch, at entry or at any guarded write, is a no-op that
        returns a skipped outcome. Any other error marks the record failed
        with this stage's tag and is re-raised.
        """
        spec = STAGES.get(stage)
        if spec is None:
            raise ValueError(f"Unknown stage '{stage}'. Expected one of {', '.join(STAGES)}.")

        record = self._load(book_id)
        if record.status != spec.precondition:
            logger.info(
                "Skipping %s for book %s: status is %s, expected %s",
                stage,
                book_id,
                record.status,
                spec.precondition,
            )
            return StageOutcome(book_id, stage, OUTCOME_SKIPPED, record.status)

        logger.info("Starting %s for book %s", stage, book_id)
        try:
            self._repository.update_book(
                book_id,
                progress={spec.progress_key: ITEM_GENERATING},
                expected_status=spec.precondition,
            )
            self._handlers[stage](record, spec)
        except PreconditionMismatch as exc:
            logger.info(
                "Book %s left %s while %s was running (now %s); stopping quietly.",
                book_id,
                spec.precondition,
                stage,
                exc.actual,
            )
            return StageOutcome(book_id, stage, OUTCOME_SKIPPED, exc.actual)
        except Exception as exc:
            self._record_failure(book_id, spec, exc)
            raise

        logger.info("Finished %s for book %s -> %s", stage, book_id, spec.next_status)
        if hand_off:
            self._hand_off(book_id, spec)
        return StageOutcome(book_id, stage, OUTCOME_COMPLETED, spec.next_status)

    def run_to_completion(self, book_id: str) -> BookRecord:
        """
        Run every remaining stage inline, without the task queue.
        """
        while True:
            record = self._load(book_id)
            stage = STAGE_FOR_STATUS.get(record.status)
            if stage is None:
                return record
            outcome = self.run_stage(book_id, stage, hand_off=False)
            if outcome.skipped:
                return self._load(book_id)

    # ------------------------------------------------------------------ stages

    def _story(self, record: BookRecord, spec: StageSpec) -> None:
        plan = self._text_generator.generate(record.inputs)

        characters = [
            Character(
                id=self._id_factory(),
                name=planned.name,
                description=planned.description,
                visual_signature=planned.visual_signature,
                role=planned.role,
            )
            for planned in plan.characters
        ]
        ids_by_name = {character.name.lower(): character.id for character in characters}
        pages = [
            Page(
                id=self._id_factory(),
                page_number=planned.page_number,
                text=planned.text,
                scene_description=planned.scene_description,
                character_ids=[ids_by_name[name.lower()] for name in planned.character_names],
            )
            for planned in plan.pages
        ]

        self._repository.write_story(
            record.id,
            characters=characters,
            pages=pages,
            fields={"title": plan.title, "summary": plan.summary, "status": spec.next_status},
            progress={spec.progress_key: ITEM_COMPLETE},
            expected_status=spec.precondition,
        )
        logger.info(
            "Stored story '%s' for book %s: %d characters, %d pages",
            plan.title,
            record.id,
            len(characters),
            len(pages),
        )

    def _character_refs(self, record: BookRecord, spec: StageSpec) -> None:
        characters = self._repository.list_characters(record.id)
        if not characters:
            raise IntegrityError(f"Book {record.id} has no characters to illustrate.")

        for character in order_characters(characters):
            if self._skip_completed_items and character.has_complete_refs(self._refs_per_character):
                logger.info("Character %s already has references; skipping.", character.name)
                continue
            self._run_sub_item(
                label=f"references for {character.name}",
                start=functools.partial(
                    self._repository.update_character,
                    record.id,
                    character.id,
                    {"ref_status": ITEM_GENERATING, "error_message": None},
                    expected_status=spec.precondition,
                ),
                work=functools.partial(self._generate_references, record.id, character, spec),
                fail=lambda message, character=character: self._repository.update_character(
                    record.id,
                    character.id,
                    {"ref_status": ITEM_FAILED, "error_message": message},
                    expected_status=spec.precondition,
                ),
            )

        self._advance(record.id, spec)

    def _generate_references(self, book_id: str, character: Character, spec: StageSpec) -> None:
        urls: list[str] = []
        for index, ref_type in enumerate(REFERENCE_TYPES[: self._refs_per_character]):
            prompt = build_reference_prompt(character, ref_type)
            source_url = self._image_generator.generate(prompt)
            urls.append(
                self._persist(
                    functools.partial(character_ref_path, book_id, character.id, index),
                    source_url,
                )
            )

        self._repository.update_character(
            book_id,
            character.id,
            {"ref_image_urls": urls, "ref_status": ITEM_COMPLETE, "error_message": None},
            expected_status=spec.precondition,
        )

    def _images(self, record: BookRecord, spec: StageSpec) -> None:
        characters = {c.id: c for c in self._repository.list_characters(record.id)}
        pages = self._repository.list_pages(record.id)
        if not pages:
            raise IntegrityError(f"Book {record.id} has no pages to illustrate.")

        reference = self._protagonist_reference(characters.values())
        cover_url = record.cover_image_url

        for page in pages:
            if self._skip_completed_items and page.image_status == ITEM_COMPLETE and page.image_url:
                logger.info("Page %d of book %s already illustrated; skipping.", page.page_number, record.id)
                if page.is_cover:
                    cover_url = page.image_url
                continue

            depicted = [characters[cid] for cid in page.character_ids if cid in characters]
            url = self._run_sub_item(
                label=f"image for page {page.page_number}",
                start=functools.partial(
                    self._repository.update_page,
                    record.id,
                    page.id,
                    {"image_status": ITEM_GENERATING, "error_message": None},
                    expected_status=spec.precondition,
                ),
                work=functools.partial(
                    self._generate_page_image, record.id, page, depicted, reference, spec
                ),
                fail=lambda message, page=page: self._repository.update_page(
                    record.id,
                    page.id,
                    {"image_status": ITEM_FAILED, "error_message": message},
                    expected_status=spec.precondition,
                ),
            )
            if page.is_cover:
                cover_url = url
                self._repository.update_book(
                    record.id,
                    {"cover_image_url": url},
                    expected_status=spec.precondition,
                )

        self._advance(record.id, spec, {"cover_image_url": cover_url})

    def _protagonist_reference(self, characters: Iterable[Character]) -> Optional[str]:
        if not self._image_generator.supports_reference_image:
            return None
        for character in characters:
            if character.role == ROLE_PROTAGONIST and character.ref_image_urls:
                return character.ref_image_urls[0]
        return None

    def _generate_page_image(
        self,
        book_id: str,
        page: Page,
        depicted: Sequence[Character],
        reference: Optional[str],
        spec: StageSpec,
    ) -> str:
        prompt = build_page_prompt(page.scene_description, depicted, is_cover=page.is_cover)
        source_url = self._image_generator.generate(prompt, reference)
        url = self._persist(
            functools.partial(page_image_path, book_id, page.page_number),
            source_url,
        )
        self._repository.update_page(
            book_id,
            page.id,
            {"image_url": url, "image_status": ITEM_COMPLETE, "error_message": None},
            expected_status=spec.precondition,
        )
        return url

    def _document(self, record: BookRecord, spec: StageSpec) -> None:
        pages = [
            DocumentPage(page_number=page.page_number, text=page.text, image_url=page.image_url)
            for page in self._repository.list_pages(record.id)
        ]
        if not pages:
            raise IntegrityError(f"Book {record.id} has no pages to assemble.")

        data = self._assembler.assemble(
            record.title,
            pages,
            image_loader=self._artifact_store.get,
        )
        url = self._with_retries(
            f"document for book {record.id}",
            functools.partial(
                self._artifact_store.put,
                document_path(record.id),
                data,
                "application/pdf",
            ),
        )
        self._advance(record.id, spec, {"document_url": url})

    # ------------------------------------------------------------------ helpers

    def _load(self, book_id: str) -> BookRecord:
        record = self._repository.get(book_id)
        if record is None:
            raise IntegrityError(f"Book {book_id} not found.")
        if record.namespace != self._namespace:
            raise IntegrityError(
                f"Book {book_id} belongs to namespace '{record.namespace}', "
                f"not '{self._namespace}'."
            )
        return record

    def _persist(self, path_for: Callable[[str], str], source_url: str) -> str:
        data, content_type = self._fetch(source_url)
        return self._artifact_store.put(path_for(extension_for(content_type)), data, content_type)

    def _run_sub_item(
        self,
        *,
        label: str,
        start: Callable[[], object],
        work: Callable[[], T],
        fail: Callable[[str], object],
    ) -> T:
        start()
        try:
            return self._with_retries(label, work)
        except PreconditionMismatch:
            raise
        except Exception as exc:
            fail(str(exc) or exc.__class__.__name__)
            raise

    def _with_retries(self, label: str, work: Callable[[], T]) -> T:
        attempt = 1
        while True:
            logger.info("Generating %s (attempt %d)", label, attempt)
            try:
                return work()
            except PreconditionMismatch:
                raise
            except RETRYABLE_ERRORS as exc:
                if attempt >= self._retry_policy.attempts:
                    logger.error("Giving up on %s after %d attempt(s): %s", label, attempt, exc)
                    raise
                delay = self._retry_policy.delay(attempt)
                logger.warning("Retrying %s in %.1fs: %s", label, delay, exc)
                self._sleep(delay)
                attempt += 1

    def _advance(self, book_id: str, spec: StageSpec, fields: Optional[dict] = None) -> None:
        self._repository.update_book(
            book_id,
            {**(fields or {}), "status": spec.next_status},
            progress={spec.progress_key: ITEM_COMPLETE},
            expected_status=spec.precondition,
        )

    def _record_failure(self, book_id: str, spec: StageSpec, exc: BaseException) -> None:
        message = str(exc) or exc.__class__.__name__
        logger.error("Stage %s failed for book %s: %s", spec.name, book_id, message)
        try:
            self._repository.update_book(
                book_id,
                {
                    "status": STATUS_FAILED,
                    "error_message": message,
                    "error_stage": spec.error_stage,
                },
                progress={spec.progress_key: ITEM_FAILED},
                expected_status=spec.precondition,
            )
        except PreconditionMismatch as mismatch:
            logger.info(
                "Not recording failure for book %s; it is already %s.", book_id, mismatch.actual
            )
        except Exception:
            logger.exception("Could not record failure of %s for book %s", spec.name, book_id)

    def _hand_off(self, book_id: str, spec: StageSpec) -> None:
        if self._queue is None or spec.next_stage is None:
            return
        try:
            self._queue.enqueue(StageTask(book_id=book_id, stage=spec.next_stage))
        except Exception:
            # The record already carries the next status; re-enqueueing the stage resumes it.
            logger.exception("Could not enqueue %s for book %s", spec.next_stage, book_id)
