"""SQLite-backed book record repository."""

from __future__ import annotations

import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, List, Mapping, Optional, Sequence

from kidbook.common.errors import IntegrityError

from .models import BookRecord, Character, Page, utcnow
from .repository import BaseBookRepository, Clock

DEFAULT_SQLITE_TIMEOUT_SECONDS = 30.0
DEFAULT_BUSY_TIMEOUT_MS = 8_000

_SCHEMA_SQL = """
PRAGMA foreign_keys = ON;

CREATE TABLE IF NOT EXISTS books (
    book_id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    namespace TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    data_json TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS characters (
    book_id TEXT NOT NULL,
    character_id TEXT NOT NULL,
    position INTEGER NOT NULL,
    data_json TEXT NOT NULL,
    PRIMARY KEY (book_id, character_id),
    FOREIGN KEY(book_id) REFERENCES books(book_id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS pages (
    book_id TEXT NOT NULL,
    page_id TEXT NOT NULL,
    page_number INTEGER NOT NULL,
    data_json TEXT NOT NULL,
    PRIMARY KEY (book_id, page_id),
    FOREIGN KEY(book_id) REFERENCES books(book_id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_books_owner_created ON books(owner_id, created_at);
CREATE INDEX IF NOT EXISTS idx_pages_number ON pages(book_id, page_number);
"""


def _utc_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _as_json(data: object) -> str:
    return json.dumps(data, ensure_ascii=False, sort_keys=True)


class SqliteBookRepository(BaseBookRepository):
    """
    Durable repository; each mutation runs in its own ``BEGIN IMMEDIATE``
    transaction so the status re-check and the write are atomic.
    """

    def __init__(self, db_path: str | Path, *, clock: Clock = utcnow) -> None:
        super().__init__(clock=clock)
        raw = str(db_path)
        if raw != ":memory:":
            path = Path(raw).expanduser().resolve()
            path.parent.mkdir(parents=True, exist_ok=True)
            raw = str(path)
        self.db_path = raw
        self._lock = threading.RLock()
        self.conn = sqlite3.connect(
            raw,
            timeout=DEFAULT_SQLITE_TIMEOUT_SECONDS,
            isolation_level=None,
            check_same_thread=False,
        )
        self.conn.row_factory = sqlite3.Row
        self._configure_connection()
        self.init_schema()

    def _configure_connection(self) -> None:
        self.conn.execute("PRAGMA foreign_keys = ON")
        self.conn.execute(f"PRAGMA busy_timeout = {int(DEFAULT_BUSY_TIMEOUT_MS)}")
        if self.db_path != ":memory:":
            self.conn.execute("PRAGMA journal_mode = WAL")
        self.conn.execute("PRAGMA synchronous = NORMAL")

    def init_schema(self) -> None:
        with self._lock:
            self.conn.executescript(_SCHEMA_SQL)

    def close(self) -> None:
        with self._lock:
            self.conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            self.conn.execute("BEGIN IMMEDIATE")
            try:
                yield self.conn
            except BaseException:
                self.conn.execute("ROLLBACK")
                raise
            else:
                self.conn.execute("COMMIT")

    # ------------------------------------------------------------------ row helpers

    def _load_book(self, conn: sqlite3.Connection, book_id: str) -> Optional[BookRecord]:
        row = conn.execute(
            "SELECT data_json FROM books WHERE book_id = ?", (book_id,)
        ).fetchone()
        if not row:
            return None
        return BookRecord.from_dict(json.loads(row["data_json"]))

    def _require(self, conn: sqlite3.Connection, book_id: str) -> BookRecord:
        record = self._load_book(conn, book_id)
        if record is None:
            raise IntegrityError(f"Book {book_id} not found.")
        return record

    @staticmethod
    def _save_book(conn: sqlite3.Connection, record: BookRecord) -> None:
        conn.execute(
            """
            UPDATE books
               SET status = ?, updated_at = ?, data_json = ?
             WHERE book_id = ?
            """,
            (record.status, _utc_iso(record.updated_at), _as_json(record.to_dict()), record.id),
        )

    @staticmethod
    def _insert_character(
        conn: sqlite3.Connection, book_id: str, position: int, character: Character
    ) -> None:
        conn.execute(
            "INSERT INTO characters(book_id, character_id, position, data_json) VALUES (?, ?, ?, ?)",
            (book_id, character.id, position, _as_json(character.to_dict())),
        )

    @staticmethod
    def _insert_page(conn: sqlite3.Connection, book_id: str, page: Page) -> None:
        conn.execute(
            "INSERT INTO pages(book_id, page_id, page_number, data_json) VALUES (?, ?, ?, ?)",
            (book_id, page.id, page.page_number, _as_json(page.to_dict())),
        )

    # ------------------------------------------------------------------ repository API

    def create(self, record: BookRecord) -> BookRecord:
        with self._transaction() as conn:
            if self._load_book(conn, record.id) is not None:
                raise IntegrityError(f"Book {record.id} already exists.")
            conn.execute(
                """
                INSERT INTO books(book_id, owner_id, namespace, status, created_at, updated_at, data_json)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.id,
                    record.owner_id,
                    record.namespace,
                    record.status,
                    _utc_iso(record.created_at),
                    _utc_iso(record.updated_at),
                    _as_json(record.to_dict()),
                ),
            )
        self._notify(record.id)
        return record

    def get(self, book_id: str) -> Optional[BookRecord]:
        with self._lock:
            return self._load_book(self.conn, book_id)

    def update_book(
        self,
        book_id: str,
        fields: Mapping[str, Any] | None = None,
        *,
        progress: Mapping[str, str] | None = None,
        expected_status: str | None = None,
    ) -> BookRecord:
        with self._transaction() as conn:
            record = self._require(conn, book_id)
            self._check_expected(record, expected_status)
            self._apply_book_update(record, fields or {}, progress)
            self._save_book(conn, record)
        self._notify(book_id)
        return record

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
        with self._transaction() as conn:
            record = self._require(conn, book_id)
            self._check_expected(record, expected_status)
            self._apply_book_update(record, fields, progress)
            conn.execute("DELETE FROM characters WHERE book_id = ?", (book_id,))
            conn.execute("DELETE FROM pages WHERE book_id = ?", (book_id,))
            for position, character in enumerate(characters):
                self._insert_character(conn, book_id, position, character)
            for page in pages:
                self._insert_page(conn, book_id, page)
            self._save_book(conn, record)
        self._notify(book_id)
        return record

    def list_characters(self, book_id: str) -> List[Character]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT data_json FROM characters WHERE book_id = ? ORDER BY position",
                (book_id,),
            ).fetchall()
        return [Character.from_dict(json.loads(row["data_json"])) for row in rows]

    def list_pages(self, book_id: str) -> List[Page]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT data_json FROM pages WHERE book_id = ? ORDER BY page_number",
                (book_id,),
            ).fetchall()
        return [Page.from_dict(json.loads(row["data_json"])) for row in rows]

    def update_character(
        self,
        book_id: str,
        character_id: str,
        fields: Mapping[str, Any],
        *,
        expected_status: str | None = None,
    ) -> Character:
        with self._transaction() as conn:
            record = self._require(conn, book_id)
            self._check_expected(record, expected_status)
            row = conn.execute(
                "SELECT data_json FROM characters WHERE book_id = ? AND character_id = ?",
                (book_id, character_id),
            ).fetchone()
            if not row:
                raise IntegrityError(f"Character {character_id} not found on book {book_id}.")
            character = Character.from_dict(json.loads(row["data_json"]))
            self._apply_character_update(character, fields)
            conn.execute(
                "UPDATE characters SET data_json = ? WHERE book_id = ? AND character_id = ?",
                (_as_json(character.to_dict()), book_id, character_id),
            )
            self._touch(record)
            self._save_book(conn, record)
        self._notify(book_id)
        return character

    def update_page(
        self,
        book_id: str,
        page_id: str,
        fields: Mapping[str, Any],
        *,
        expected_status: str | None = None,
    ) -> Page:
        with self._transaction() as conn:
            record = self._require(conn, book_id)
            self._check_expected(record, expected_status)
            row = conn.execute(
                "SELECT data_json FROM pages WHERE book_id = ? AND page_id = ?",
                (book_id, page_id),
            ).fetchone()
            if not row:
                raise IntegrityError(f"Page {page_id} not found on book {book_id}.")
            page = Page.from_dict(json.loads(row["data_json"]))
            self._apply_page_update(page, fields)
            conn.execute(
                "UPDATE pages SET data_json = ? WHERE book_id = ? AND page_id = ?",
                (_as_json(page.to_dict()), book_id, page_id),
            )
            self._touch(record)
            self._save_book(conn, record)
        self._notify(book_id)
        return page

    def count_created_since(self, owner_id: str, since: datetime) -> int:
        with self._lock:
            row = self.conn.execute(
                "SELECT COUNT(*) AS total FROM books WHERE owner_id = ? AND created_at >= ?",
                (owner_id, _utc_iso(since)),
            ).fetchone()
        return int(row["total"])
