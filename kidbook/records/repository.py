"""
Book record repositories with field-level updates and change notifications.
"""

from __future__ import annotations

import copy
import logging
import threading
from collections import defaultdict
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Sequence

from kidbook.common.errors import IntegrityError, PreconditionMismatch

from .models import (
    MUTABLE_BOOK_FIELDS,
    MUTABLE_CHARACTER_FIELDS,
    MUTABLE_PAGE_FIELDS,
    PROGRESS_KEYS,
    BookRecord,
    BookSnapshot,
    Character,
    Page,
    check_transition,
    utcnow,
)

logger = logging.getLogger(__name__)

Listener = Callable[[BookSnapshot], None]
Clock = Callable[[], datetime]


class BookRepository(Protocol):
    def create(self, record: BookRecord) -> BookRecord:
        ...

    def get(self, book_id: str) -> Optional[BookRecord]:
        ...

    def update_book(
        self,
        book_id: str,
        fields: Mapping[str, Any] | None = None,
        *,
        progress: Mapping[str, str] | None = None,
        expected_status: str | None = None,
    ) -> BookRecord:
        ...

    def write_story(
        self,
        book_id: str,
        *,
        characters: Sequence[Character],
        pages: Sequence[Page],
        fields: Mapping[str, Any],
        progress: Mapping[str, str] | None = None,
        expected_status: str | None = None,
    ) -> BookRecord:
        ...

    def list_characters(self, book_id: str) -> List[Character]:
        ...

    def list_pages(self, book_id: str) -> List[Page]:
        ...

    def update_character(
        self,
        book_id: str,
        character_id: str,
        fields: Mapping[str, Any],
        *,
        expected_status: str | None = None,
    ) -> Character:
        ...

    def update_page(
        self,
        book_id: str,
        page_id: str,
        fields: Mapping[str, Any],
        *,
        expected_status: str | None = None,
    ) -> Page:
        ...

    def count_created_since(self, owner_id: str, since: datetime) -> int:
        ...

    def snapshot(self, book_id: str) -> Optional[BookSnapshot]:
        ...

    def subscribe(self, book_id: str, listener: Listener) -> Callable[[], None]:
        ...


def _check_fields(fields: Mapping[str, Any], allowed: set[str], kind: str) -> None:
    unknown = sorted(set(fields) - allowed)
    if unknown:
        raise ValueError(f"Cannot update {kind} fields: {', '.join(unknown)}.")


class BaseBookRepository:
    """
    Listener bookkeeping and update rules shared by every repository.

    Subclasses call :meth:`_notify` after a mutation has been committed and
    outside of any storage lock.
    """

    def __init__(self, *, clock: Clock = utcnow) -> None:
        self._clock = clock
        self._listeners: Dict[str, List[Listener]] = defaultdict(list)
        self._listener_lock = threading.Lock()

    # ------------------------------------------------------------------ observation

    def snapshot(self, book_id: str) -> Optional[BookSnapshot]:
        record = self.get(book_id)  # type: ignore[attr-defined]
        if record is None:
            return None
        return BookSnapshot(
            record=record,
            characters=self.list_characters(book_id),  # type: ignore[attr-defined]
            pages=self.list_pages(book_id),  # type: ignore[attr-defined]
        )

    def subscribe(self, book_id: str, listener: Listener) -> Callable[[], None]:
        """
        Register ``listener`` for changes to ``book_id``; returns an unsubscribe callable.
        """
        with self._listener_lock:
            self._listeners[book_id].append(listener)

        def unsubscribe() -> None:
            with self._listener_lock:
                listeners = self._listeners.get(book_id, [])
                if listener in listeners:
                    listeners.remove(listener)
                if not listeners:
                    self._listeners.pop(book_id, None)

        return unsubscribe

    def _notify(self, book_id: str) -> None:
        with self._listener_lock:
            listeners = list(self._listeners.get(book_id, ()))
        if not listeners:
            return

        snapshot = self.snapshot(book_id)
        if snapshot is None:
            return
        for listener in listeners:
            try:
                listener(copy.deepcopy(snapshot))
            except Exception:
                logger.exception("Listener for book %s raised; continuing.", book_id)

    # ------------------------------------------------------------------ update rules

    def _touch(self, record: BookRecord) -> None:
        now = self._clock()
        record.updated_at = now if now > record.updated_at else record.updated_at

    @staticmethod
    def _check_expected(record: BookRecord, expected_status: str | None) -> None:
        if expected_status is not None and record.status != expected_status:
            raise PreconditionMismatch(record.id, expected_status, record.status)

    def _apply_book_update(
        self,
        record: BookRecord,
        fields: Mapping[str, Any],
        progress: Mapping[str, str] | None,
    ) -> None:
        _check_fields(fields, MUTABLE_BOOK_FIELDS, "book")
        if progress:
            _check_fields(progress, set(PROGRESS_KEYS), "progress")

        new_status = fields.get("status")
        if new_status is not None and new_status != record.status:
            check_transition(record.status, new_status)

        for key, value in fields.items():
            setattr(record, key, value)
        if progress:
            record.progress.update(progress)
        self._touch(record)

    @staticmethod
    def _apply_character_update(character: Character, fields: Mapping[str, Any]) -> None:
        _check_fields(fields, MUTABLE_CHARACTER_FIELDS, "character")
        for key, value in fields.items():
            setattr(character, key, list(value) if key == "ref_image_urls" else value)

    @staticmethod
    def _apply_page_update(page: Page, fields: Mapping[str, Any]) -> None:
        _check_fields(fields, MUTABLE_PAGE_FIELDS, "page")
        for key, value in fields.items():
            setattr(page, key, value)


class InMemoryBookRepository(BaseBookRepository):
    """
    Lock-guarded in-process repository. Every read returns a copy.
    """

    def __init__(self, *, clock: Clock = utcnow) -> None:
        super().__init__(clock=clock)
        self._lock = threading.RLock()
        self._books: Dict[str, BookRecord] = {}
        self._characters: Dict[str, Dict[str, Character]] = {}
        self._pages: Dict[str, Dict[str, Page]] = {}

    def _require(self, book_id: str) -> BookRecord:
        record = self._books.get(book_id)
        if record is None:
            raise IntegrityError(f"Book {book_id} not found.")
        return record

    def create(self, record: BookRecord) -> BookRecord:
        with self._lock:
            if record.id in self._books:
                raise IntegrityError(f"Book {record.id} already exists.")
            self._books[record.id] = copy.deepcopy(record)
            self._characters[record.id] = {}
            self._pages[record.id] = {}
            stored = copy.deepcopy(record)
        self._notify(record.id)
        return stored

    def get(self, book_id: str) -> Optional[BookRecord]:
        with self._lock:
            record = self._books.get(book_id)
            return copy.deepcopy(record) if record is not None else None

    def update_book(
        self,
        book_id: str,
        fields: Mapping[str, Any] | None = None,
        *,
        progress: Mapping[str, str] | None = None,
        expected_status: str | None = None,
    ) -> BookRecord:
        with self._lock:
            record = self._require(book_id)
            self._check_expected(record, expected_status)
            updated = copy.deepcopy(record)
            self._apply_book_update(updated, fields or {}, progress)
            self._books[book_id] = updated
            result = copy.deepcopy(updated)
        self._notify(book_id)
        return result

    def write_story(
        self,
        book_id: str,
        *,
        characters: Sequence[Character],
        pages: Sequence[Page],
        fields: Mapping[str, Any],
        progress: Mapping[str, str] | None = None,
        expected_status: str | None = None,
    ) -> BookRecord:
        with self._lock:
            record = self._require(book_id)
            self._check_expected(record, expected_status)
            updated = copy.deepcopy(record)
            self._apply_book_update(updated, fields, progress)
            self._books[book_id] = updated
            self._characters[book_id] = {c.id: copy.deepcopy(c) for c in characters}
            self._pages[book_id] = {p.id: copy.deepcopy(p) for p in pages}
            result = copy.deepcopy(updated)
        self._notify(book_id)
        return result

    def list_characters(self, book_id: str) -> List[Character]:
        with self._lock:
            return [copy.deepcopy(c) for c in self._characters.get(book_id, {}).values()]

    def list_pages(self, book_id: str) -> List[Page]:
        with self._lock:
            pages = [copy.deepcopy(p) for p in self._pages.get(book_id, {}).values()]
        return sorted(pages, key=lambda page: page.page_number)

    def update_character(
        self,
        book_id: str,
        character_id: str,
        fields: Mapping[str, Any],
        *,
        expected_status: str | None = None,
    ) -> Character:
        with self._lock:
            record = self._require(book_id)
            self._check_expected(record, expected_status)
            character = self._characters[book_id].get(character_id)
            if character is None:
                raise IntegrityError(f"Character {character_id} not found on book {book_id}.")
            updated = copy.deepcopy(character)
            self._apply_character_update(updated, fields)
            self._characters[book_id][character_id] = updated
            self._touch(record)
            result = copy.deepcopy(updated)
        self._notify(book_id)
        return result

    def update_page(
        self,
        book_id: str,
        page_id: str,
        fields: Mapping[str, Any],
        *,
        expected_status: str | None = None,
    ) -> Page:
        with self._lock:
            record = self._require(book_id)
            self._check_expected(record, expected_status)
            page = self._pages[book_id].get(page_id)
            if page is None:
                raise IntegrityError(f"Page {page_id} not found on book {book_id}.")
            updated = copy.deepcopy(page)
            self._apply_page_update(updated, fields)
            self._pages[book_id][page_id] = updated
            self._touch(record)
            result = copy.deepcopy(updated)
        self._notify(book_id)
        return result

    def count_created_since(self, owner_id: str, since: datetime) -> int:
        with self._lock:
            return sum(
                1
                for record in self._books.values()
                if record.owner_id == owner_id and record.created_at >= since
            )
