"""
Note storage.

Two interchangeable stores sit behind ``NoteStore``:

* ``SqliteNoteStore`` – durable, one SQLite file, safe across processes.
* ``MemoryNoteStore`` – in-process list for local development and tests.

Both offer ``insert_if_no_overlap`` which checks for an overlapping note
and inserts in one indivisible step.  That call is the only thing standing
between concurrent visitors and two notes drawn on top of each other.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone

from guestbook.geometry import Bounds, overlaps
from guestbook.profanity import ProfanityFlag

log = logging.getLogger(__name__)

SQLITE_TIMEOUT = 5.0  # seconds to wait for the write lock
PAGE_INDEX_MAX = 2**63 - 1  # largest SQLite INTEGER


class StoreError(Exception):
    """The store could not be reached or answered with an error."""


class StoreNotConfigured(StoreError):
    """A durable store was requested but no database was configured."""


def utc_now() -> datetime:
    """Return an *aware* datetime in UTC."""
    return datetime.now(timezone.utc)


def _iso(dt: datetime) -> str:
    return dt.isoformat(timespec="microseconds")


@dataclass(frozen=True)
class NoteDraft:
    """A note as submitted: everything except its id and timestamp."""

    page_index: int
    row_start: int
    row_end: int
    col_start: int
    col_end: int
    text: str
    author: str
    profanity_flags: tuple[ProfanityFlag, ...] = field(default_factory=tuple)

    @property
    def bounds(self) -> Bounds:
        return Bounds(self.row_start, self.row_end, self.col_start, self.col_end)


@dataclass(frozen=True)
class Note:
    id: str
    page_index: int
    row_start: int
    row_end: int
    col_start: int
    col_end: int
    text: str
    author: str
    profanity_flags: tuple[ProfanityFlag, ...]
    created_at: str

    @classmethod
    def from_draft(cls, draft: NoteDraft, *, id: str, created_at: str) -> "Note":
        return cls(
            id=id,
            page_index=draft.page_index,
            row_start=draft.row_start,
            row_end=draft.row_end,
            col_start=draft.col_start,
            col_end=draft.col_end,
            text=draft.text,
            author=draft.author,
            profanity_flags=tuple(draft.profanity_flags),
            created_at=created_at,
        )

    @property
    def bounds(self) -> Bounds:
        return Bounds(self.row_start, self.row_end, self.col_start, self.col_end)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "page_index": self.page_index,
            "row_start": self.row_start,
            "row_end": self.row_end,
            "col_start": self.col_start,
            "col_end": self.col_end,
            "text": self.text,
            "author": self.author,
            "profanity_flags": [f.to_dict() for f in self.profanity_flags],
            "created_at": self.created_at,
        }


class NoteStore(ABC):
    @abstractmethod
    def get_notes_by_page(self, page_index: int) -> list[Note]:
        """Notes on one page, oldest first."""

    @abstractmethod
    def get_all_notes(self) -> list[Note]:
        """Every note, ordered by page then age."""

    @abstractmethod
    def insert_if_no_overlap(self, draft: NoteDraft) -> Note | None:
        """
        Insert *draft* unless it overlaps a note on the same page.

        Returns the stored note, or ``None`` when nothing was inserted.
        """

    @abstractmethod
    def clear(self) -> None:
        """Drop every note (development and tests only)."""


###############################################################################
# In-memory store
###############################################################################
class MemoryNoteStore(NoteStore):
    def __init__(self):
        self._notes: list[Note] = []
        self._lock = threading.Lock()
        self._last_created: datetime | None = None

    def get_notes_by_page(self, page_index: int) -> list[Note]:
        with self._lock:
            notes = [n for n in self._notes if n.page_index == page_index]
        return sorted(notes, key=lambda n: n.created_at)

    def get_all_notes(self) -> list[Note]:
        with self._lock:
            notes = list(self._notes)
        return sorted(notes, key=lambda n: (n.page_index, n.created_at))

    def insert_if_no_overlap(self, draft: NoteDraft) -> Note | None:
        with self._lock:
            for n in self._notes:
                if n.page_index == draft.page_index and overlaps(n, draft):
                    return None

            now = utc_now()
            if self._last_created is not None and now < self._last_created:
                now = self._last_created
            self._last_created = now

            note = Note.from_draft(
                draft, id=str(uuid.uuid4()), created_at=_iso(now)
            )
            self._notes.append(note)
            return note

    def clear(self) -> None:
        with self._lock:
            self._notes.clear()
            self._last_created = None


###############################################################################
# SQLite store
###############################################################################
SCHEMA = """
CREATE TABLE IF NOT EXISTS guestbook_notes (
    id              TEXT PRIMARY KEY,
    page_index      INTEGER NOT NULL CHECK (page_index >= 0),
    row_start       INTEGER NOT NULL,
    row_end         INTEGER NOT NULL,
    col_start       INTEGER NOT NULL,
    col_end         INTEGER NOT NULL,
    text            TEXT NOT NULL,
    author          TEXT NOT NULL,
    profanity_flags TEXT NOT NULL DEFAULT '[]',
    created_at      TEXT NOT NULL,
    CHECK (row_end > row_start),
    CHECK (col_end > col_start)
);
CREATE INDEX IF NOT EXISTS idx_guestbook_notes_page
    ON guestbook_notes(page_index, created_at);
"""

INSERT_IF_FREE_SQL = """
INSERT INTO guestbook_notes (
    id, page_index, row_start, row_end, col_start, col_end,
    text, author, profanity_flags, created_at
)
SELECT ?, ?, ?, ?, ?, ?, ?, ?, ?, ?
WHERE NOT EXISTS (
    SELECT 1 FROM guestbook_notes
    WHERE page_index = ?
      AND row_start < ?
      AND row_end > ?
      AND col_start < ?
      AND col_end > ?
)
"""


def _row_to_note(row: sqlite3.Row) -> Note:
    flags = json.loads(row["profanity_flags"] or "[]")
    return Note(
        id=row["id"],
        page_index=row["page_index"],
        row_start=row["row_start"],
        row_end=row["row_end"],
        col_start=row["col_start"],
        col_end=row["col_end"],
        text=row["text"],
        author=row["author"],
        profanity_flags=tuple(ProfanityFlag.from_dict(f) for f in flags),
        created_at=row["created_at"],
    )


class SqliteNoteStore(NoteStore):
    """
    Notes in a SQLite file.

    Each call opens its own connection so the store can be shared between
    threads.  The conditional insert runs inside ``BEGIN IMMEDIATE``: the
    write lock is taken before the overlap check, so a second writer waits
    instead of reading a snapshot that is about to go stale.
    """

    def __init__(self, path: str | None):
        if not path:
            raise StoreNotConfigured("Guestbook storage is not configured")
        self.path = str(path)
        self._schema_ready = False

    def _connect(self) -> sqlite3.Connection:
        db = sqlite3.connect(
            self.path, timeout=SQLITE_TIMEOUT, isolation_level=None
        )
        db.row_factory = sqlite3.Row
        if not self._schema_ready:
            db.executescript(SCHEMA)
            self._schema_ready = True
        return db

    def init_schema(self) -> None:
        self._schema_ready = False
        self._connect().close()

    def _query(self, sql: str, params: tuple = ()) -> list[Note]:
        try:
            db = self._connect()
            try:
                rows = db.execute(sql, params).fetchall()
            finally:
                db.close()
        except (sqlite3.Error, OverflowError) as exc:
            raise StoreError(f"query failed: {exc}") from exc
        return [_row_to_note(r) for r in rows]

    def get_notes_by_page(self, page_index: int) -> list[Note]:
        return self._query(
            "SELECT * FROM guestbook_notes WHERE page_index=? "
            "ORDER BY created_at, rowid",
            (page_index,),
        )

    def get_all_notes(self) -> list[Note]:
        return self._query(
            "SELECT * FROM guestbook_notes ORDER BY page_index, created_at, rowid"
        )

    def insert_if_no_overlap(self, draft: NoteDraft) -> Note | None:
        note_id = str(uuid.uuid4())
        flags_json = json.dumps([f.to_dict() for f in draft.profanity_flags])
        try:
            db = self._connect()
            try:
                db.execute("BEGIN IMMEDIATE")
                try:
                    created_at = self._next_created_at(db)
                    cur = db.execute(
                        INSERT_IF_FREE_SQL,
                        (
                            note_id,
                            draft.page_index,
                            draft.row_start,
                            draft.row_end,
                            draft.col_start,
                            draft.col_end,
                            draft.text,
                            draft.author,
                            flags_json,
                            created_at,
                            draft.page_index,
                            draft.row_end,
                            draft.row_start,
                            draft.col_end,
                            draft.col_start,
                        ),
                    )
                    inserted = cur.rowcount == 1
                    db.execute("COMMIT")
                except BaseException:
                    db.execute("ROLLBACK")
                    raise
            finally:
                db.close()
        except (sqlite3.Error, OverflowError) as exc:
            raise StoreError(f"conditional insert failed: {exc}") from exc

        if not inserted:
            log.info(
                "placement rejected: page %s rows %s-%s cols %s-%s overlaps",
                draft.page_index,
                draft.row_start,
                draft.row_end,
                draft.col_start,
                draft.col_end,
            )
            return None
        return Note.from_draft(draft, id=note_id, created_at=created_at)

    @staticmethod
    def _next_created_at(db: sqlite3.Connection) -> str:
        # keep timestamps non-decreasing even if the wall clock steps back
        now = _iso(utc_now())
        last = db.execute("SELECT MAX(created_at) FROM guestbook_notes").fetchone()[0]
        return max(now, last) if last else now

    def clear(self) -> None:
        try:
            db = self._connect()
            try:
                db.execute("DELETE FROM guestbook_notes")
            finally:
                db.close()
        except (sqlite3.Error, OverflowError) as exc:
            raise StoreError(f"clear failed: {exc}") from exc
