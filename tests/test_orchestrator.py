from __future__ import annotations

import pytest

from conftest import FakeTextGenerator, ScriptedImageGenerator, plan_payload
from kidbook.common.errors import GeneratorError, IntegrityError, StorageError, ValidationError
from kidbook.pipeline import drain
from kidbook.records.models import (
    ITEM_COMPLETE,
    ITEM_FAILED,
    ITEM_PENDING,
    STATUS_COMPLETE,
    STATUS_FAILED,
    STATUS_GENERATING_CHARACTER_REFS,
    STATUS_GENERATING_IMAGES,
    STATUS_GENERATING_PDF,
    STATUS_GENERATING_STORY,
    BOOK_STATUSES,
)


def _fail_when(fragment, error_factory, *, times=None):
    """Fail generator calls whose prompt contains ``fragment``; ``times`` limits how often."""
    state = {"count": 0}

    def fail(prompt, call_number):
        if fragment not in prompt.positive:
            return None
        if times is not None and state["count"] >= times:
            return None
        state["count"] += 1
        return error_factory()

    return fail


def _advance_to_images(repository, orchestrator, book_id):
    orchestrator.run_story(book_id)
    orchestrator.run_character_refs(book_id)
    assert repository.get(book_id).status == STATUS_GENERATING_IMAGES


def test_full_run_produces_complete_book(make_orchestrator, new_book, repository, artifact_store, task_queue, image_generator):
    orchestrator = make_orchestrator()
    book = new_book()
    statuses = []
    repository.subscribe(book.id, lambda snapshot: statuses.append(snapshot.record.status))

    outcome = orchestrator.run_story(book.id)
    assert outcome.outcome == "completed"
    assert outcome.status == STATUS_GENERATING_CHARACTER_REFS
    assert len(task_queue) == 1

    assert drain(task_queue, orchestrator) == 3

    record = repository.get(book.id)
    assert record.status == STATUS_COMPLETE
    assert record.title == "Leo and the Moon Map"
    assert record.progress == {
        "story": ITEM_COMPLETE,
        "characterRefs": ITEM_COMPLETE,
        "images": ITEM_COMPLETE,
        "pdf": ITEM_COMPLETE,
    }
    assert record.error_message is None and record.error_stage is None

    characters = repository.list_characters(book.id)
    assert [c.name for c in characters] == ["Leo", "Pip", "Zorg"]
    assert all(c.ref_status == ITEM_COMPLETE and len(c.ref_image_urls) == 2 for c in characters)

    pages = repository.list_pages(book.id)
    assert [p.page_number for p in pages] == list(range(11))
    assert all(p.image_status == ITEM_COMPLETE for p in pages)
    assert record.cover_image_url == pages[0].image_url
    assert pages[0].image_url.endswith(f"{book.id}/cover.png")
    assert pages[3].image_url.endswith(f"{book.id}/pages/page_3.png")

    assert record.document_url.endswith(f"{book.id}/document.pdf")
    assert artifact_store.get(record.document_url).startswith(b"%PDF")

    assert len(image_generator.calls) == 3 * 2 + 11
    protagonist_ref = characters[0].ref_image_urls[0]
    page_calls = image_generator.calls[6:]
    assert all(reference == protagonist_ref for _, reference in page_calls)
    assert page_calls[0][0].startswith("Book cover illustration")

    order = [BOOK_STATUSES.index(status) for status in statuses if status != STATUS_FAILED]
    assert order == sorted(order)
    assert statuses[-1] == STATUS_COMPLETE


def test_run_to_completion_drives_every_stage_inline(make_orchestrator, new_book, repository, task_queue):
    orchestrator = make_orchestrator()
    book = new_book()

    record = orchestrator.run_to_completion(book.id)

    assert record.status == STATUS_COMPLETE
    assert len(task_queue) == 0


def test_stages_are_idempotent_after_completion(make_orchestrator, new_book, repository, text_generator, image_generator):
    orchestrator = make_orchestrator()
    book = new_book()
    orchestrator.run_to_completion(book.id)
    finished = repository.get(book.id)
    calls = len(image_generator.calls)

    for run in (orchestrator.run_story, orchestrator.run_character_refs, orchestrator.run_images, orchestrator.run_document):
        assert run(book.id).skipped

    assert text_generator.calls == 1
    assert len(image_generator.calls) == calls
    assert repository.get(book.id) == finished


def test_stage_invoked_out_of_order_is_a_no_op(make_orchestrator, new_book, repository, image_generator):
    orchestrator = make_orchestrator()
    book = new_book(status=STATUS_GENERATING_STORY)

    outcome = orchestrator.run_images(book.id)

    assert outcome.skipped
    assert outcome.status == STATUS_GENERATING_STORY
    assert image_generator.calls == []
    assert repository.get(book.id) == book


def test_missing_or_foreign_record_is_an_integrity_error(make_orchestrator, new_book, repository, text_generator):
    orchestrator = make_orchestrator()
    foreign = new_book(namespace="someone-elses-namespace")

    with pytest.raises(IntegrityError):
        orchestrator.run_story("no-such-book")
    with pytest.raises(IntegrityError, match="namespace"):
        orchestrator.run_story(foreign.id)

    assert text_generator.calls == 0
    assert repository.get(foreign.id) == foreign


def test_story_validation_error_fails_the_book_without_retry(make_orchestrator, new_book, repository, task_queue):
    text_generator = FakeTextGenerator(error=ValidationError("Generated book plan failed validation", ["title is missing"]))
    orchestrator = make_orchestrator(text_generator=text_generator)
    book = new_book()

    with pytest.raises(ValidationError):
        orchestrator.run_story(book.id)

    record = repository.get(book.id)
    assert text_generator.calls == 1
    assert record.status == STATUS_FAILED
    assert record.error_stage == "story_generation"
    assert "title is missing" in record.error_message
    assert record.progress["story"] == ITEM_FAILED
    assert record.progress["characterRefs"] == ITEM_PENDING
    assert len(task_queue) == 0


def test_character_ref_failure_marks_character_and_book(make_orchestrator, new_book, repository, task_queue, sleeps):
    image_generator = ScriptedImageGenerator(
        fail=_fail_when("purple comet", lambda: GeneratorError("Image generation failed: timeout", job_id="pred-9"))
    )
    orchestrator = make_orchestrator(image_generator=image_generator)
    book = new_book()
    orchestrator.run_story(book.id)
    task_queue.get(timeout=0)
    task_queue.task_done()

    with pytest.raises(GeneratorError):
        orchestrator.run_character_refs(book.id)

    record = repository.get(book.id)
    assert record.status == STATUS_FAILED
    assert record.error_stage == "character_ref_generation"
    assert "pred-9" in record.error_message
    assert record.progress["characterRefs"] == ITEM_FAILED

    characters = {c.name: c for c in repository.list_characters(book.id)}
    assert characters["Leo"].ref_status == ITEM_COMPLETE
    assert characters["Pip"].ref_status == ITEM_COMPLETE
    assert characters["Zorg"].ref_status == ITEM_FAILED
    assert "timeout" in characters["Zorg"].error_message

    comet_calls = [p for p, _ in image_generator.calls if "purple comet" in p]
    assert len(comet_calls) == 2
    assert sleeps == [0.5]
    assert len(task_queue) == 0
    assert orchestrator.run_images(book.id).skipped


def test_transient_page_failure_is_retried(make_orchestrator, new_book, repository, sleeps):
    image_generator = ScriptedImageGenerator(
        fail=_fail_when("Scene 3 on the moon", lambda: StorageError("upload interrupted"), times=1)
    )
    orchestrator = make_orchestrator(image_generator=image_generator)
    book = new_book()

    record = orchestrator.run_to_completion(book.id)

    assert record.status == STATUS_COMPLETE
    page_three = repository.list_pages(book.id)[3]
    assert page_three.image_status == ITEM_COMPLETE
    assert page_three.error_message is None
    assert sleeps == [0.5]


def test_validation_error_on_a_page_is_not_retried(make_orchestrator, new_book, repository):
    image_generator = ScriptedImageGenerator(
        fail=_fail_when("Scene 5 on the moon", lambda: ValidationError("unusable output"))
    )
    orchestrator = make_orchestrator(image_generator=image_generator)
    book = new_book()

    with pytest.raises(ValidationError):
        orchestrator.run_to_completion(book.id)

    record = repository.get(book.id)
    assert record.status == STATUS_FAILED
    assert record.error_stage == "image_generation"
    assert len([p for p, _ in image_generator.calls if "Scene 5 on the moon" in p]) == 1
    pages = repository.list_pages(book.id)
    assert pages[5].image_status == ITEM_FAILED
    assert pages[6].image_status == ITEM_PENDING
    assert record.document_url is None


def test_reinvoked_image_stage_skips_completed_pages(make_orchestrator, new_book, repository, image_generator):
    orchestrator = make_orchestrator()
    book = new_book()
    _advance_to_images(repository, orchestrator, book.id)
    for page in repository.list_pages(book.id)[:5]:
        repository.update_page(
            book.id,
            page.id,
            {"image_url": f"memory://artifacts/earlier/{page.page_number}.png", "image_status": ITEM_COMPLETE},
        )
    calls_before = len(image_generator.calls)

    orchestrator.run_images(book.id)

    record = repository.get(book.id)
    assert record.status == STATUS_GENERATING_PDF
    assert len(image_generator.calls) - calls_before == 6
    assert record.cover_image_url == "memory://artifacts/earlier/0.png"


def test_skip_completed_items_can_be_disabled(make_orchestrator, new_book, repository, image_generator):
    orchestrator = make_orchestrator(skip_completed_items=False)
    book = new_book()
    _advance_to_images(repository, orchestrator, book.id)
    first_page = repository.list_pages(book.id)[1]
    repository.update_page(book.id, first_page.id, {"image_url": "memory://old.png", "image_status": ITEM_COMPLETE})
    calls_before = len(image_generator.calls)

    orchestrator.run_images(book.id)

    assert len(image_generator.calls) - calls_before == 11
    assert repository.list_pages(book.id)[1].image_url != "memory://old.png"


def test_record_moved_mid_stage_stops_quietly(make_orchestrator, new_book, repository):
    holder = {}

    def cancel_on_second_call(prompt, call_number):
        if call_number == 2:
            repository.update_book(holder["book_id"], {"status": STATUS_FAILED})
        return None

    image_generator = ScriptedImageGenerator(fail=cancel_on_second_call)
    orchestrator = make_orchestrator(image_generator=image_generator)
    book = new_book()
    holder["book_id"] = book.id
    orchestrator.run_story(book.id)

    outcome = orchestrator.run_character_refs(book.id)

    assert outcome.skipped
    assert outcome.status == STATUS_FAILED
    assert len(image_generator.calls) == 2
    record = repository.get(book.id)
    assert record.error_stage is None
    assert repository.list_characters(book.id)[0].ref_status != ITEM_COMPLETE


def test_document_failure_is_tagged_pdf_generation(make_orchestrator, new_book, repository):
    class BrokenAssembler:
        def assemble(self, title, pages, image_loader=None):
            raise RuntimeError("font cache corrupted")

    orchestrator = make_orchestrator(document_assembler=BrokenAssembler())
    book = new_book()

    with pytest.raises(RuntimeError):
        orchestrator.run_to_completion(book.id)

    record = repository.get(book.id)
    assert record.status == STATUS_FAILED
    assert record.error_stage == "pdf_generation"
    assert record.error_message == "font cache corrupted"
    assert record.progress["images"] == ITEM_COMPLETE
    assert record.progress["pdf"] == ITEM_FAILED


def test_document_stage_tolerates_missing_page_image(make_orchestrator, new_book, repository, artifact_store):
    orchestrator = make_orchestrator()
    book = new_book()
    _advance_to_images(repository, orchestrator, book.id)
    orchestrator.run_images(book.id)
    page = repository.list_pages(book.id)[4]
    repository.update_page(book.id, page.id, {"image_url": "memory://artifacts/vanished.png"})

    outcome = orchestrator.run_document(book.id)

    assert outcome.status == STATUS_COMPLETE
    pdf = artifact_store.get(repository.get(book.id).document_url)
    assert b"Page 4" in pdf


def test_text_only_image_model_gets_no_reference(make_orchestrator, new_book):
    image_generator = ScriptedImageGenerator(supports_reference_image=False)
    orchestrator = make_orchestrator(image_generator=image_generator)
    book = new_book()

    orchestrator.run_to_completion(book.id)

    assert all(reference is None for _, reference in image_generator.calls)


def test_invalid_stage_name_and_ref_count(make_orchestrator, new_book):
    with pytest.raises(ValueError):
        make_orchestrator().run_stage(new_book().id, "video")
    with pytest.raises(ValueError):
        make_orchestrator(refs_per_character=3)


def _protagonist_declared_second():
    return plan_payload(
        [
            {"name": "Ada", "description": "A helpful owl.", "visualSignature": "SIG-ADA grey owl with round glasses", "role": "supporting"},
            {"name": "Bo", "description": "A brave girl.", "visualSignature": "SIG-BO girl with a red scarf", "role": "protagonist"},
            {"name": "Cy", "description": "A sneaky fox.", "visualSignature": "SIG-CY fox with a striped tail", "role": "antagonist"},
        ]
    )


def _signatures(calls):
    return [next(tag for tag in ("SIG-ADA", "SIG-BO", "SIG-CY") if tag in prompt) for prompt, _ in calls]


def test_character_refs_start_with_the_protagonist(make_orchestrator, new_book, repository, image_generator):
    orchestrator = make_orchestrator(text_generator=FakeTextGenerator(_protagonist_declared_second()))
    book = new_book()
    orchestrator.run_story(book.id)

    orchestrator.run_character_refs(book.id)

    assert _signatures(image_generator.calls) == ["SIG-BO", "SIG-BO", "SIG-ADA", "SIG-ADA", "SIG-CY", "SIG-CY"]
    assert [c.name for c in repository.list_characters(book.id)] == ["Ada", "Bo", "Cy"]


def test_character_refs_stop_after_the_first_failing_character(make_orchestrator, new_book, repository):
    image_generator = ScriptedImageGenerator(
        fail=_fail_when("SIG-BO", lambda: GeneratorError("Image generation failed: nsfw"))
    )
    orchestrator = make_orchestrator(
        text_generator=FakeTextGenerator(_protagonist_declared_second()),
        image_generator=image_generator,
    )
    book = new_book()
    orchestrator.run_story(book.id)

    with pytest.raises(GeneratorError):
        orchestrator.run_character_refs(book.id)

    assert _signatures(image_generator.calls) == ["SIG-BO", "SIG-BO"]
    characters = {c.name: c for c in repository.list_characters(book.id)}
    assert characters["Bo"].ref_status == ITEM_FAILED
    assert characters["Ada"].ref_status == ITEM_PENDING
    assert characters["Cy"].ref_status == ITEM_PENDING
    assert repository.get(book.id).error_stage == "character_ref_generation"
