"""
Pydantic models for every record that flows through the indexing pipeline.

One ``Source`` per uploaded / pasted rulebook, and six derived record types
that are rebuilt from scratch on every index run:

  - Page        – cleaned text of one (pseudo-)page
  - Section     – a titled region with a page span and a nesting path
  - Chunk       – a bounded, overlapping slice of text with score hints
  - Table       – a detected table with parsed rows and a confidence tier
  - Dataset     – a named aggregation of same-type tables
  - DatasetRow  – one structured record belonging to a dataset

``IndexStats`` and ``ScoreHints`` serialise with camelCase keys because the
persisted JSON is read by the dashboard as-is.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def new_id() -> str:
    return str(uuid.uuid4())


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ── Enums ────────────────────────────────────────────────────────────────

class SourceType(str, Enum):
    PDF = "pdf"
    PASTED_TEXT = "pasted_text"
    EXTERNAL_JSON = "external_json"


class IndexStatus(str, Enum):
    NOT_INDEXED = "not_indexed"
    INDEXING = "indexing"
    INDEXED = "indexed"
    FAILED = "failed"


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class DatasetType(str, Enum):
    EQUIPMENT = "equipment"
    SKILLS = "skills"
    SPELLS = "spells"
    TABLES = "tables"
    INJURIES = "injuries"
    OTHER = "other"


class TableKind(str, Enum):
    ROLL_TABLE = "roll_table"
    STATS_TABLE = "stats_table"
    EQUIPMENT = "equipment"
    GENERIC = "generic"


class IndexStage(str, Enum):
    EXTRACTING = "extracting"
    EMPTY = "empty"
    CLEANING = "cleaning"
    SECTIONS = "sections"
    CHUNKING = "chunking"
    DETECTING_TABLES = "detecting_tables"
    DETECTING_DATASETS = "detecting_datasets"
    SAVING = "saving"


# ── Source & run bookkeeping ─────────────────────────────────────────────

class IndexStats(BaseModel):
    """Snapshot written to the source after every run (never merged)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    pages: int = 0
    sections: int = 0
    chunks: int = 0
    tables_high: int = 0
    tables_medium: int = 0
    tables_low: int = 0
    datasets: int = 0
    dataset_rows: int = 0
    empty_pages: int = 0
    avg_chars_per_page: int = 0
    scanned_suspect: bool = False
    time_ms_by_stage: dict[str, int] = Field(default_factory=dict)


class IndexFailure(BaseModel):
    """Which stage failed, and why."""

    stage: str
    message: str
    timestamp: str = Field(default_factory=utc_now)


class Source(BaseModel):
    id: str = Field(default_factory=new_id)
    campaign_id: str
    type: SourceType
    title: str
    tags: list[str] = Field(default_factory=list)
    index_status: IndexStatus = IndexStatus.NOT_INDEXED
    index_stats: IndexStats | None = None
    index_error: IndexFailure | None = None
    last_indexed_at: str | None = None
    index_started_at: str | None = None
    created_at: str = Field(default_factory=utc_now)
    updated_at: str = Field(default_factory=utc_now)


class IndexingResult(BaseModel):
    success: bool
    stats: IndexStats | None = None
    error: IndexFailure | None = None
    duration_seconds: float = 0.0


# ── Derived records ──────────────────────────────────────────────────────

class Page(BaseModel):
    id: str = Field(default_factory=new_id)
    source_id: str
    page_number: int
    text: str
    char_count: int = 0


class Section(BaseModel):
    id: str = Field(default_factory=new_id)
    source_id: str
    title: str
    section_path: list[str] = Field(default_factory=list)
    level: int = 1
    page_start: int
    page_end: int
    text: str | None = None
    keywords: list[str] = Field(default_factory=list)


class ScoreHints(BaseModel):
    """Boolean hints that bias downstream relevance ranking."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    has_roll_ranges: bool = False
    has_table_pattern: bool = False
    has_list_pattern: bool = False
    has_dice_notation: bool = False


class Chunk(BaseModel):
    id: str = Field(default_factory=new_id)
    source_id: str
    section_id: str | None = None
    text: str
    page_start: int
    page_end: int
    section_path: list[str] = Field(default_factory=list)
    order_index: int
    keywords: list[str] = Field(default_factory=list)
    score_hints: ScoreHints = Field(default_factory=ScoreHints)


class Table(BaseModel):
    id: str = Field(default_factory=new_id)
    source_id: str
    section_id: str | None = None
    kind: TableKind
    title_guess: str | None = None
    header_context: str | None = None
    page_number: int
    raw_text: str | None = None
    parsed_rows: list[dict[str, str]] | None = None
    confidence: Confidence
    keywords: list[str] = Field(default_factory=list)


class Dataset(BaseModel):
    id: str = Field(default_factory=new_id)
    source_id: str
    name: str
    dataset_type: DatasetType
    fields: list[str] = Field(default_factory=list)
    confidence: Confidence


class DatasetRow(BaseModel):
    id: str = Field(default_factory=new_id)
    dataset_id: str
    data: dict[str, Any]
    page_number: int | None = None
    source_path: str | None = None


class IndexBundle(BaseModel):
    """Everything one run produces for a source, ready to swap into storage."""

    source_id: str
    pages: list[Page] = Field(default_factory=list)
    sections: list[Section] = Field(default_factory=list)
    chunks: list[Chunk] = Field(default_factory=list)
    tables: list[Table] = Field(default_factory=list)
    datasets: list[Dataset] = Field(default_factory=list)
    dataset_rows: list[DatasetRow] = Field(default_factory=list)

    def stats(self) -> IndexStats:
        return IndexStats(
            pages=len(self.pages),
            sections=len(self.sections),
            chunks=len(self.chunks),
            tables_high=sum(1 for t in self.tables if t.confidence == Confidence.HIGH),
            tables_medium=sum(1 for t in self.tables if t.confidence == Confidence.MEDIUM),
            tables_low=sum(1 for t in self.tables if t.confidence == Confidence.LOW),
            datasets=len(self.datasets),
            dataset_rows=len(self.dataset_rows),
        )
