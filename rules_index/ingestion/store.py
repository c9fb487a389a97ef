"""
SQLite persistence for sources, their raw input and every derived record.

Tables
------
  rules_sources          – one row per rulebook, carries the index lifecycle
  rules_source_inputs    – the raw (uncleaned) page texts of a source
  rules_pages / rules_sections / rules_chunks / rules_tables
  rules_datasets / rules_dataset_rows

Every derived table references ``rules_sources`` with ``ON DELETE CASCADE``;
list / dict fields are stored as JSON text.

Lifecycle
---------
``begin_indexing`` is a single compare-and-swap ``UPDATE``: it succeeds only
when the source is idle (``not_indexed`` / ``indexed`` / ``failed``) or when
a previous ``indexing`` lease is older than ``index_lease_seconds``.

``replace_index`` deletes the previous generation and inserts the new one
inside one ``BEGIN IMMEDIATE`` transaction, so a failed swap leaves the old
generation untouched.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterator

from rules_index.config import settings
from rules_index.ingestion.config import ingest_settings
from rules_index.ingestion.errors import (
    IndexingInProgressError,
    InvalidTransitionError,
    SourceNotFoundError,
)
from rules_index.ingestion.schemas import (
    Chunk,
    Dataset,
    DatasetRow,
    IndexBundle,
    IndexFailure,
    IndexStats,
    IndexStatus,
    Page,
    ScoreHints,
    Section,
    Source,
    Table,
    utc_now,
)

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Status transitions
# ═══════════════════════════════════════════════════════════════════════════

ALLOWED_TRANSITIONS: dict[IndexStatus, frozenset[IndexStatus]] = {
    IndexStatus.NOT_INDEXED: frozenset({IndexStatus.INDEXING}),
    IndexStatus.INDEXING: frozenset({IndexStatus.INDEXED, IndexStatus.FAILED}),
    IndexStatus.INDEXED: frozenset({IndexStatus.INDEXING}),
    IndexStatus.FAILED: frozenset({IndexStatus.INDEXING}),
}

IDLE_STATUSES = tuple(s.value for s, targets in ALLOWED_TRANSITIONS.items() if IndexStatus.INDEXING in targets)


def check_transition(current: IndexStatus, target: IndexStatus) -> None:
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransitionError(
            f"Cannot move index status from {current.value!r} to {target.value!r}"
        )


# ═══════════════════════════════════════════════════════════════════════════
# Schema
# ═══════════════════════════════════════════════════════════════════════════

SCHEMA = """
CREATE TABLE IF NOT EXISTS rules_sources (
    id               TEXT PRIMARY KEY,
    campaign_id      TEXT NOT NULL,
    type             TEXT NOT NULL,
    title            TEXT NOT NULL,
    tags             TEXT NOT NULL DEFAULT '[]',
    index_status     TEXT NOT NULL DEFAULT 'not_indexed',
    index_stats      TEXT,
    index_error      TEXT,
    last_indexed_at  TEXT,
    index_started_at TEXT,
    created_at       TEXT NOT NULL,
    updated_at       TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_rules_sources_campaign ON rules_sources (campaign_id);

CREATE TABLE IF NOT EXISTS rules_source_inputs (
    source_id  TEXT PRIMARY KEY REFERENCES rules_sources (id) ON DELETE CASCADE,
    pages      TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS rules_pages (
    id          TEXT PRIMARY KEY,
    source_id   TEXT NOT NULL REFERENCES rules_sources (id) ON DELETE CASCADE,
    page_number INTEGER NOT NULL,
    text        TEXT NOT NULL,
    char_count  INTEGER NOT NULL,
    UNIQUE (source_id, page_number)
);

CREATE TABLE IF NOT EXISTS rules_sections (
    id           TEXT PRIMARY KEY,
    source_id    TEXT NOT NULL REFERENCES rules_sources (id) ON DELETE CASCADE,
    title        TEXT NOT NULL,
    section_path TEXT NOT NULL,
    level        INTEGER NOT NULL,
    page_start   INTEGER NOT NULL,
    page_end     INTEGER NOT NULL,
    text         TEXT,
    keywords     TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS rules_chunks (
    id           TEXT PRIMARY KEY,
    source_id    TEXT NOT NULL REFERENCES rules_sources (id) ON DELETE CASCADE,
    section_id   TEXT REFERENCES rules_sections (id) ON DELETE CASCADE,
    text         TEXT NOT NULL,
    page_start   INTEGER NOT NULL,
    page_end     INTEGER NOT NULL,
    section_path TEXT NOT NULL,
    order_index  INTEGER NOT NULL,
    keywords     TEXT NOT NULL,
    score_hints  TEXT NOT NULL,
    UNIQUE (source_id, order_index)
);

CREATE TABLE IF NOT EXISTS rules_tables (
    id             TEXT PRIMARY KEY,
    source_id      TEXT NOT NULL REFERENCES rules_sources (id) ON DELETE CASCADE,
    section_id     TEXT REFERENCES rules_sections (id) ON DELETE CASCADE,
    kind           TEXT NOT NULL,
    title_guess    TEXT,
    header_context TEXT,
    page_number    INTEGER NOT NULL,
    raw_text       TEXT,
    parsed_rows    TEXT,
    confidence     TEXT NOT NULL,
    keywords       TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS rules_datasets (
    id           TEXT PRIMARY KEY,
    source_id    TEXT NOT NULL REFERENCES rules_sources (id) ON DELETE CASCADE,
    name         TEXT NOT NULL,
    dataset_type TEXT NOT NULL,
    fields       TEXT NOT NULL,
    confidence   TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS rules_dataset_rows (
    id          TEXT PRIMARY KEY,
    dataset_id  TEXT NOT NULL REFERENCES rules_datasets (id) ON DELETE CASCADE,
    data        TEXT NOT NULL,
    page_number INTEGER,
    source_path TEXT
);
"""

# Child tables first
DERIVED_TABLES = ("rules_chunks", "rules_tables", "rules_sections", "rules_pages", "rules_datasets")


def _dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False)


def _loads(value: str | None) -> Any:
    return json.loads(value) if value is not None else None


# ── Row converters ───────────────────────────────────────────────────────

def _source_from_row(row: sqlite3.Row) -> Source:
    stats = _loads(row["index_stats"])
    error = _loads(row["index_error"])
    return Source(
        id=row["id"],
        campaign_id=row["campaign_id"],
        type=row["type"],
        title=row["title"],
        tags=_loads(row["tags"]),
        index_status=row["index_status"],
        index_stats=IndexStats.model_validate(stats) if stats else None,
        index_error=IndexFailure.model_validate(error) if error else None,
        last_indexed_at=row["last_indexed_at"],
        index_started_at=row["index_started_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _page_from_row(row: sqlite3.Row) -> Page:
    return Page(**dict(row))


def _section_from_row(row: sqlite3.Row) -> Section:
    data = dict(row)
    data["section_path"] = _loads(data["section_path"])
    data["keywords"] = _loads(data["keywords"])
    return Section(**data)


def _chunk_from_row(row: sqlite3.Row) -> Chunk:
    data = dict(row)
    data["section_path"] = _loads(data["section_path"])
    data["keywords"] = _loads(data["keywords"])
    data["score_hints"] = ScoreHints.model_validate(_loads(data["score_hints"]))
    return Chunk(**data)


def _table_from_row(row: sqlite3.Row) -> Table:
    data = dict(row)
    data["parsed_rows"] = _loads(data["parsed_rows"])
    data["keywords"] = _loads(data["keywords"])
    return Table(**data)


def _dataset_from_row(row: sqlite3.Row) -> Dataset:
    data = dict(row)
    data["fields"] = _loads(data["fields"])
    return Dataset(**data)


def _dataset_row_from_row(row: sqlite3.Row) -> DatasetRow:
    data = dict(row)
    data["data"] = _loads(data["data"])
    return DatasetRow(**data)


# ═══════════════════════════════════════════════════════════════════════════
# Store
# ═══════════════════════════════════════════════════════════════════════════

class RulesStore:
    """Thin wrapper around one SQLite file; every call opens its own connection."""

    def __init__(self, db_path: Path | str | None = None):
        self.db_path = Path(db_path) if db_path else settings.sqlite_path

    # ── Connections ──────────────────────────────────────────────────────

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.db_path), isolation_level=None, timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def create_schema(self) -> None:
        with self._connect() as conn:
            conn.executescript(SCHEMA)
        logger.info("Rules store ready at %s", self.db_path)

    # ── Sources ──────────────────────────────────────────────────────────

    def insert_source(self, source: Source) -> Source:
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO rules_sources (id, campaign_id, type, title, tags, index_status, "
                "created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    source.id,
                    source.campaign_id,
                    source.type.value,
                    source.title,
                    _dumps(source.tags),
                    source.index_status.value,
                    source.created_at,
                    source.updated_at,
                ),
            )
        return source

    def _fetch_source(self, conn: sqlite3.Connection, source_id: str) -> Source:
        row = conn.execute("SELECT * FROM rules_sources WHERE id = ?", (source_id,)).fetchone()
        if row is None:
            raise SourceNotFoundError(source_id)
        return _source_from_row(row)

    def get_source(self, source_id: str) -> Source:
        with self._connect() as conn:
            return self._fetch_source(conn, source_id)

    def list_sources(self, campaign_id: str | None = None) -> list[Source]:
        with self._connect() as conn:
            if campaign_id is None:
                rows = conn.execute("SELECT * FROM rules_sources ORDER BY created_at, rowid").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM rules_sources WHERE campaign_id = ? ORDER BY created_at, rowid",
                    (campaign_id,),
                ).fetchall()
        return [_source_from_row(r) for r in rows]

    def update_source(
        self,
        source_id: str,
        *,
        title: str | None = None,
        tags: list[str] | None = None,
    ) -> Source:
        with self._transaction() as conn:
            current = self._fetch_source(conn, source_id)
            conn.execute(
                "UPDATE rules_sources SET title = ?, tags = ?, updated_at = ? WHERE id = ?",
                (
                    title if title is not None else current.title,
                    _dumps(tags if tags is not None else current.tags),
                    utc_now(),
                    source_id,
                ),
            )
            return self._fetch_source(conn, source_id)

    def delete_source(self, source_id: str) -> None:
        """Delete a source; its input and every derived row cascade."""
        with self._transaction() as conn:
            cur = conn.execute("DELETE FROM rules_sources WHERE id = ?", (source_id,))
            if cur.rowcount == 0:
                raise SourceNotFoundError(source_id)
        logger.info("Deleted source %s", source_id)

    # ── Raw input ────────────────────────────────────────────────────────

    def set_input(self, source_id: str, pages: list[str]) -> None:
        with self._transaction() as conn:
            self._fetch_source(conn, source_id)
            conn.execute(
                "INSERT INTO rules_source_inputs (source_id, pages, updated_at) VALUES (?, ?, ?) "
                "ON CONFLICT (source_id) DO UPDATE SET pages = excluded.pages, "
                "updated_at = excluded.updated_at",
                (source_id, _dumps(pages), utc_now()),
            )

    def get_input(self, source_id: str) -> list[str]:
        """Raw page texts of a source; empty when nothing was stored yet."""
        with self._connect() as conn:
            self._fetch_source(conn, source_id)
            row = conn.execute(
                "SELECT pages FROM rules_source_inputs WHERE source_id = ?", (source_id,)
            ).fetchone()
        return _loads(row["pages"]) if row else []

    # ── Index lifecycle ──────────────────────────────────────────────────

    def begin_indexing(self, source_id: str, lease_seconds: int | None = None) -> Source:
        """Take the indexing lease or raise ``IndexingInProgressError``."""
        lease = ingest_settings.index_lease_seconds if lease_seconds is None else lease_seconds
        now = datetime.now(timezone.utc)
        expired_before = (now - timedelta(seconds=lease)).isoformat()
        placeholders = ", ".join("?" for _ in IDLE_STATUSES)

        with self._transaction() as conn:
            cur = conn.execute(
                "UPDATE rules_sources SET index_status = ?, index_started_at = ?, updated_at = ? "
                f"WHERE id = ? AND (index_status IN ({placeholders}) "
                "OR (index_status = ? AND (index_started_at IS NULL OR index_started_at < ?)))",
                (
                    IndexStatus.INDEXING.value,
                    now.isoformat(),
                    now.isoformat(),
                    source_id,
                    *IDLE_STATUSES,
                    IndexStatus.INDEXING.value,
                    expired_before,
                ),
            )
            if cur.rowcount == 0:
                self._fetch_source(conn, source_id)
                raise IndexingInProgressError(source_id)
            return self._fetch_source(conn, source_id)

    def _finish(self, conn: sqlite3.Connection, source_id: str, target: IndexStatus) -> None:
        current = self._fetch_source(conn, source_id)
        check_transition(current.index_status, target)

    def mark_indexed(self, source_id: str, stats: IndexStats) -> Source:
        now = utc_now()
        with self._transaction() as conn:
            self._finish(conn, source_id, IndexStatus.INDEXED)
            conn.execute(
                "UPDATE rules_sources SET index_status = ?, index_stats = ?, index_error = NULL, "
                "last_indexed_at = ?, index_started_at = NULL, updated_at = ? WHERE id = ?",
                (
                    IndexStatus.INDEXED.value,
                    _dumps(stats.model_dump(by_alias=True)),
                    now,
                    now,
                    source_id,
                ),
            )
            return self._fetch_source(conn, source_id)

    def mark_failed(self, source_id: str, error: IndexFailure) -> Source:
        with self._transaction() as conn:
            self._finish(conn, source_id, IndexStatus.FAILED)
            conn.execute(
                "UPDATE rules_sources SET index_status = ?, index_error = ?, "
                "index_started_at = NULL, updated_at = ? WHERE id = ?",
                (IndexStatus.FAILED.value, _dumps(error.model_dump()), utc_now(), source_id),
            )
            return self._fetch_source(conn, source_id)

    # ── Derived records ──────────────────────────────────────────────────

    def replace_index(self, source_id: str, bundle: IndexBundle) -> None:
        """Swap the previous generation of derived rows for *bundle*, atomically."""
        batch_size = ingest_settings.chunk_insert_batch_size

        with self._transaction() as conn:
            self._fetch_source(conn, source_id)
            for table in DERIVED_TABLES:
                conn.execute(f"DELETE FROM {table} WHERE source_id = ?", (source_id,))

            conn.executemany(
                "INSERT INTO rules_pages (id, source_id, page_number, text, char_count) "
                "VALUES (?, ?, ?, ?, ?)",
                [(p.id, source_id, p.page_number, p.text, p.char_count) for p in bundle.pages],
            )
            conn.executemany(
                "INSERT INTO rules_sections (id, source_id, title, section_path, level, "
                "page_start, page_end, text, keywords) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                [
                    (s.id, source_id, s.title, _dumps(s.section_path), s.level,
                     s.page_start, s.page_end, s.text, _dumps(s.keywords))
                    for s in bundle.sections
                ],
            )

            chunk_rows = [
                (c.id, source_id, c.section_id, c.text, c.page_start, c.page_end,
                 _dumps(c.section_path), c.order_index, _dumps(c.keywords),
                 _dumps(c.score_hints.model_dump(by_alias=True)))
                for c in bundle.chunks
            ]
            for start in range(0, len(chunk_rows), batch_size):
                conn.executemany(
                    "INSERT INTO rules_chunks (id, source_id, section_id, text, page_start, "
                    "page_end, section_path, order_index, keywords, score_hints) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    chunk_rows[start:start + batch_size],
                )

            conn.executemany(
                "INSERT INTO rules_tables (id, source_id, section_id, kind, title_guess, "
                "header_context, page_number, raw_text, parsed_rows, confidence, keywords) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                [
                    (t.id, source_id, t.section_id, t.kind.value, t.title_guess,
                     t.header_context, t.page_number, t.raw_text,
                     _dumps(t.parsed_rows) if t.parsed_rows is not None else None,
                     t.confidence.value, _dumps(t.keywords))
                    for t in bundle.tables
                ],
            )
            conn.executemany(
                "INSERT INTO rules_datasets (id, source_id, name, dataset_type, fields, confidence) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                [
                    (d.id, source_id, d.name, d.dataset_type.value, _dumps(d.fields), d.confidence.value)
                    for d in bundle.datasets
                ],
            )
            conn.executemany(
                "INSERT INTO rules_dataset_rows (id, dataset_id, data, page_number, source_path) "
                "VALUES (?, ?, ?, ?, ?)",
                [
                    (r.id, r.dataset_id, _dumps(r.data), r.page_number, r.source_path)
                    for r in bundle.dataset_rows
                ],
            )

        logger.info(
            "Stored index for %s: %d pages, %d sections, %d chunks, %d tables, %d datasets",
            source_id, len(bundle.pages), len(bundle.sections), len(bundle.chunks),
            len(bundle.tables), len(bundle.datasets),
        )

    def _select(self, sql: str, params: tuple[Any, ...]) -> list[sqlite3.Row]:
        with self._connect() as conn:
            return conn.execute(sql, params).fetchall()

    def list_pages(self, source_id: str) -> list[Page]:
        rows = self._select(
            "SELECT id, source_id, page_number, text, char_count FROM rules_pages "
            "WHERE source_id = ? ORDER BY page_number",
            (source_id,),
        )
        return [_page_from_row(r) for r in rows]

    def list_sections(self, source_id: str) -> list[Section]:
        rows = self._select(
            "SELECT * FROM rules_sections WHERE source_id = ? ORDER BY page_start, rowid",
            (source_id,),
        )
        return [_section_from_row(r) for r in rows]

    def list_chunks(self, source_id: str) -> list[Chunk]:
        rows = self._select(
            "SELECT * FROM rules_chunks WHERE source_id = ? ORDER BY order_index", (source_id,)
        )
        return [_chunk_from_row(r) for r in rows]

    def list_tables(self, source_id: str) -> list[Table]:
        rows = self._select(
            "SELECT * FROM rules_tables WHERE source_id = ? ORDER BY page_number, rowid",
            (source_id,),
        )
        return [_table_from_row(r) for r in rows]

    def get_table(self, table_id: str) -> Table | None:
        rows = self._select("SELECT * FROM rules_tables WHERE id = ?", (table_id,))
        return _table_from_row(rows[0]) if rows else None

    def list_datasets(self, source_id: str) -> list[Dataset]:
        rows = self._select(
            "SELECT * FROM rules_datasets WHERE source_id = ? ORDER BY rowid", (source_id,)
        )
        return [_dataset_from_row(r) for r in rows]

    def get_dataset(self, dataset_id: str) -> Dataset | None:
        rows = self._select("SELECT * FROM rules_datasets WHERE id = ?", (dataset_id,))
        return _dataset_from_row(rows[0]) if rows else None

    def list_dataset_rows(self, dataset_id: str) -> list[DatasetRow]:
        rows = self._select(
            "SELECT * FROM rules_dataset_rows WHERE dataset_id = ? ORDER BY rowid", (dataset_id,)
        )
        return [_dataset_row_from_row(r) for r in rows]

    def entity_counts(self, source_id: str) -> dict[str, int]:
        """Row counts per derived table, keyed by entity name."""
        counts: dict[str, int] = {}
        with self._connect() as conn:
            for name, table in (
                ("pages", "rules_pages"),
                ("sections", "rules_sections"),
                ("chunks", "rules_chunks"),
                ("tables", "rules_tables"),
                ("datasets", "rules_datasets"),
            ):
                counts[name] = conn.execute(
                    f"SELECT COUNT(*) FROM {table} WHERE source_id = ?", (source_id,)
                ).fetchone()[0]
            counts["dataset_rows"] = conn.execute(
                "SELECT COUNT(*) FROM rules_dataset_rows r JOIN rules_datasets d "
                "ON r.dataset_id = d.id WHERE d.source_id = ?",
                (source_id,),
            ).fetchone()[0]
        return counts
