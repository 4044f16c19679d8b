from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from conftest import CREATED_AT, TickingClock
from kidbook.common.errors import IntegrityError, PreconditionMismatch
from kidbook.records import (
    BookRecord,
    Character,
    InMemoryBookRepository,
    Page,
    SqliteBookRepository,
    can_transition,
    check_transition,
)
from kidbook.records.models import (
    BOOK_STATUSES,
    ITEM_COMPLETE,
    ITEM_PENDING,
    STATUS_COMPLETE,
    STATUS_DRAFT,
    STATUS_FAILED,
    STATUS_GENERATING_CHARACTER_REFS,
    STATUS_GENERATING_IMAGES,
    STATUS_GENERATING_PDF,
    STATUS_GENERATING_STORY,
)


@pytest.fixture(params=["memory", "sqlite"])
def repo(request, tmp_path):
    if request.param == "memory":
        yield InMemoryBookRepository(clock=TickingClock())
    else:
        repository = SqliteBookRepository(tmp_path / "books.db", clock=TickingClock())
        yield repository
        repository.close()


def _record(book_inputs, book_id="b1", owner_id="owner-1", created_at=CREATED_AT, status=STATUS_GENERATING_STORY):
    return BookRecord(
        id=book_id,
        owner_id=owner_id,
        inputs=book_inputs,
        namespace="ns",
        status=status,
        title="A space Story",
        created_at=created_at,
        updated_at=created_at,
    )


def _story(book_id="b1"):
    characters = [
        Character(id="c1", name="Leo", description="", visual_signature="boy", role="protagonist"),
        Character(id="c2", name="Pip", description="", visual_signature="robot", role="supporting"),
    ]
    pages = [
        Page(id=f"p{n}", page_number=n, text=f"text {n}", scene_description=f"scene {n}", character_ids=["c1"])
        for n in (2, 0, 1)
    ]
    return characters, pages


def test_state_machine_allows_forward_moves_and_failure_only():
    assert can_transition(STATUS_GENERATING_STORY, STATUS_GENERATING_CHARACTER_REFS)
    assert can_transition(STATUS_DRAFT, STATUS_GENERATING_STORY)
    assert can_transition(STATUS_GENERATING_IMAGES, STATUS_FAILED)
    assert not can_transition(STATUS_GENERATING_IMAGES, STATUS_GENERATING_STORY)
    for status in BOOK_STATUSES:
        assert not can_transition(STATUS_COMPLETE, status)
        assert not can_transition(STATUS_FAILED, status)
    with pytest.raises(ValueError, match="Illegal status transition"):
        check_transition(STATUS_COMPLETE, STATUS_FAILED)


def test_record_round_trips_through_dict(book_inputs):
    record = _record(book_inputs)
    record.progress["story"] = ITEM_COMPLETE

    restored = BookRecord.from_dict(record.to_dict())

    assert restored == record
    assert record.to_dict()["inputs"]["childName"] == "Leo"


def test_create_get_and_duplicate(repo, book_inputs):
    repo.create(_record(book_inputs))

    stored = repo.get("b1")
    assert stored.status == STATUS_GENERATING_STORY
    assert stored.progress == {"story": ITEM_PENDING, "characterRefs": ITEM_PENDING, "images": ITEM_PENDING, "pdf": ITEM_PENDING}
    assert stored.inputs == book_inputs
    assert repo.get("missing") is None
    with pytest.raises(IntegrityError):
        repo.create(_record(book_inputs))


def test_update_book_checks_expected_status(repo, book_inputs):
    repo.create(_record(book_inputs))

    with pytest.raises(PreconditionMismatch) as excinfo:
        repo.update_book("b1", {"title": "Other"}, expected_status=STATUS_GENERATING_IMAGES)
    assert excinfo.value.actual == STATUS_GENERATING_STORY
    assert repo.get("b1").title == "A space Story"

    updated = repo.update_book(
        "b1",
        {"status": STATUS_GENERATING_CHARACTER_REFS},
        progress={"story": ITEM_COMPLETE},
        expected_status=STATUS_GENERATING_STORY,
    )
    assert updated.status == STATUS_GENERATING_CHARACTER_REFS
    assert repo.get("b1").progress["story"] == ITEM_COMPLETE


def test_update_book_rejects_immutable_fields_and_illegal_transitions(repo, book_inputs):
    repo.create(_record(book_inputs))

    with pytest.raises(ValueError, match="inputs"):
        repo.update_book("b1", {"inputs": None})
    with pytest.raises(ValueError, match="Illegal status transition"):
        repo.update_book("b1", {"status": STATUS_DRAFT})
    with pytest.raises(ValueError, match="progress"):
        repo.update_book("b1", progress={"video": ITEM_COMPLETE})
    with pytest.raises(IntegrityError):
        repo.update_book("missing", {"title": "x"})


def test_updated_at_never_decreases(repo, book_inputs):
    repo.create(_record(book_inputs))
    stamps = [repo.get("b1").updated_at]

    repo.update_book("b1", progress={"story": "generating"})
    stamps.append(repo.get("b1").updated_at)
    characters, pages = _story()
    repo.write_story("b1", characters=characters, pages=pages, fields={"title": "Moon"})
    stamps.append(repo.get("b1").updated_at)
    repo.update_page("b1", "p1", {"image_status": ITEM_COMPLETE})
    stamps.append(repo.get("b1").updated_at)

    assert stamps == sorted(stamps)
    assert stamps[-1] > stamps[0]


def test_write_story_and_sub_item_updates(repo, book_inputs):
    repo.create(_record(book_inputs))
    characters, pages = _story()

    repo.write_story(
        "b1",
        characters=characters,
        pages=pages,
        fields={"title": "Moon", "summary": "s", "status": STATUS_GENERATING_CHARACTER_REFS},
        progress={"story": ITEM_COMPLETE},
        expected_status=STATUS_GENERATING_STORY,
    )

    assert [c.name for c in repo.list_characters("b1")] == ["Leo", "Pip"]
    assert [p.page_number for p in repo.list_pages("b1")] == [0, 1, 2]

    repo.update_character(
        "b1",
        "c1",
        {"ref_image_urls": ["u1", "u2"], "ref_status": ITEM_COMPLETE},
        expected_status=STATUS_GENERATING_CHARACTER_REFS,
    )
    assert repo.list_characters("b1")[0].has_complete_refs(2)

    with pytest.raises(PreconditionMismatch):
        repo.update_page("b1", "p0", {"image_url": "x"}, expected_status=STATUS_GENERATING_IMAGES)
    with pytest.raises(ValueError):
        repo.update_page("b1", "p0", {"text": "rewritten"})
    with pytest.raises(IntegrityError):
        repo.update_character("b1", "nobody", {"ref_status": ITEM_COMPLETE})


def test_subscribers_receive_snapshots_until_unsubscribed(repo, book_inputs):
    repo.create(_record(book_inputs))
    seen = []
    unsubscribe = repo.subscribe("b1", seen.append)

    repo.update_book("b1", {"status": STATUS_GENERATING_CHARACTER_REFS})
    seen[-1].record.title = "mutated by listener"
    unsubscribe()
    repo.update_book("b1", {"status": STATUS_GENERATING_PDF})

    assert len(seen) == 1
    assert seen[0].record.status == STATUS_GENERATING_CHARACTER_REFS
    assert repo.get("b1").title == "A space Story"


def test_failing_listener_does_not_break_writes(repo, book_inputs):
    repo.create(_record(book_inputs))
    seen = []

    def broken(snapshot):
        raise RuntimeError("listener bug")

    repo.subscribe("b1", broken)
    repo.subscribe("b1", seen.append)
    repo.update_book("b1", {"title": "Still saved"})

    assert repo.get("b1").title == "Still saved"
    assert seen and seen[0].record.title == "Still saved"


def test_count_created_since(repo, book_inputs):
    now = datetime(2024, 5, 2, 12, 0, tzinfo=timezone.utc)
    repo.create(_record(book_inputs, "b1", created_at=now - timedelta(hours=30)))
    repo.create(_record(book_inputs, "b2", created_at=now - timedelta(hours=5)))
    repo.create(_record(book_inputs, "b3", created_at=now - timedelta(minutes=1)))
    repo.create(_record(book_inputs, "b4", owner_id="someone-else", created_at=now))

    assert repo.count_created_since("owner-1", now - timedelta(hours=24)) == 2
    assert repo.count_created_since("owner-1", now - timedelta(hours=48)) == 3
    assert repo.count_created_since("nobody", now - timedelta(hours=24)) == 0


def test_sqlite_repository_persists_across_connections(tmp_path, book_inputs):
    path = tmp_path / "books.db"
    first = SqliteBookRepository(path)
    first.create(_record(book_inputs))
    characters, pages = _story()
    first.write_story("b1", characters=characters, pages=pages, fields={"title": "Moon"})
    first.close()

    second = SqliteBookRepository(path)
    try:
        snapshot = second.snapshot("b1")
        assert snapshot.record.title == "Moon"
        assert [p.id for p in snapshot.pages] == ["p0", "p1", "p2"]
        assert snapshot.to_dict()["characters"][0]["visualSignature"] == "boy"
    finally:
        second.close()
