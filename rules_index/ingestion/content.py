"""
Typed content variants for stored tables and rule cards.

Stored content is validated on read into exactly one of:

  - RollTableContent       – columns ``Roll`` / ``Result``
  - StatsTableContent      – 3+ free columns (a unit or weapon profile)
  - EquipmentTableContent  – columns ``Name`` / ``Cost`` / ``Effect``
  - GenericTableContent    – 2+ free columns
  - CardContent            – a titled block of rules text
  - TextContent            – plain text

The ``type`` field is the discriminator; an unknown ``type`` or a payload
that does not fit its shape raises ``ContentValidationError``.
"""

from __future__ import annotations

import re
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, model_validator

from rules_index.ingestion.errors import ContentValidationError
from rules_index.ingestion.schemas import Confidence, Table, TableKind

ROLL_COLUMNS = ["Roll", "Result"]
EQUIPMENT_COLUMNS = ["Name", "Cost", "Effect"]


class _TableContentBase(BaseModel):
    title: str | None = None
    columns: list[str]
    rows: list[dict[str, str]] = Field(default_factory=list)
    confidence: Confidence = Confidence.LOW

    @model_validator(mode="after")
    def check_rows_match_columns(self):
        for row in self.rows:
            unknown = set(row) - set(self.columns)
            if unknown:
                raise ValueError(f"row has keys outside the columns: {sorted(unknown)}")
        return self


class RollTableContent(_TableContentBase):
    type: Literal["roll_table"] = "roll_table"
    columns: list[str] = Field(default_factory=lambda: list(ROLL_COLUMNS))

    @model_validator(mode="after")
    def check_fixed_columns(self):
        if self.columns != ROLL_COLUMNS:
            raise ValueError(f"roll table columns must be {ROLL_COLUMNS}")
        return self


class StatsTableContent(_TableContentBase):
    type: Literal["stats_table"] = "stats_table"
    columns: list[str] = Field(min_length=3)


class EquipmentTableContent(_TableContentBase):
    type: Literal["equipment"] = "equipment"
    columns: list[str] = Field(default_factory=lambda: list(EQUIPMENT_COLUMNS))

    @model_validator(mode="after")
    def check_fixed_columns(self):
        if self.columns != EQUIPMENT_COLUMNS:
            raise ValueError(f"equipment columns must be {EQUIPMENT_COLUMNS}")
        return self


class GenericTableContent(_TableContentBase):
    type: Literal["generic"] = "generic"
    columns: list[str] = Field(min_length=2)


class CardContent(BaseModel):
    type: Literal["card"] = "card"
    title: str
    body: str


class TextContent(BaseModel):
    type: Literal["text"] = "text"
    body: str


Content = Annotated[
    Union[
        RollTableContent,
        StatsTableContent,
        EquipmentTableContent,
        GenericTableContent,
        CardContent,
        TextContent,
    ],
    Field(discriminator="type"),
]

_content_adapter: TypeAdapter[Content] = TypeAdapter(Content)


def parse_content(payload: dict[str, Any]) -> Content:
    """Validate a stored content payload into its concrete variant."""
    try:
        return _content_adapter.validate_python(payload)
    except ValidationError as exc:
        raise ContentValidationError(
            f"Invalid content payload (type={payload.get('type')!r}): {exc.error_count()} error(s)",
            original_error=exc,
        ) from exc


# ═══════════════════════════════════════════════════════════════════════════
# Building content from stored tables
# ═══════════════════════════════════════════════════════════════════════════

_PIPE_SEPARATOR = re.compile(r"^\|\s*:?-+:?\s*(?:\|\s*:?-+:?\s*)+\|$")


def _split_pipe_row(line: str) -> list[str]:
    inner = line[1:] if line.startswith("|") else line
    inner = inner[:-1] if inner.endswith("|") else inner
    return [cell.strip() for cell in inner.split("|")]


def parse_markdown_pipe_table(raw: str | None) -> tuple[list[str], list[dict[str, str]]] | None:
    """Recover ``(columns, rows)`` from a markdown pipe table inside *raw*."""
    if not raw:
        return None
    lines = [
        line.strip()
        for line in raw.splitlines()
        if line.strip().startswith("|") and line.strip().endswith("|")
    ]
    if len(lines) < 3 or not _PIPE_SEPARATOR.match(lines[1]):
        return None

    columns = [h or f"Column {i + 1}" for i, h in enumerate(_split_pipe_row(lines[0]))]
    rows: list[dict[str, str]] = []
    for line in lines[2:]:
        cells = _split_pipe_row(line)
        if not any(cells):
            continue
        rows.append({col: (cells[i] if i < len(cells) else "") for i, col in enumerate(columns)})

    if not rows:
        return None
    return columns, rows


def _columns_of(rows: list[dict[str, str]]) -> list[str]:
    columns: dict[str, None] = {}
    for row in rows:
        columns.update(dict.fromkeys(row))
    return list(columns)


def table_content(table: Table) -> Content:
    """Build the typed content variant for a stored table.

    Parsed rows win; otherwise a markdown pipe table in ``raw_text`` is
    recovered as generic content; otherwise the raw text is returned as
    plain text.
    """
    if table.parsed_rows:
        payload: dict[str, Any] = {
            "type": table.kind.value,
            "title": table.title_guess,
            "columns": _columns_of(table.parsed_rows),
            "rows": table.parsed_rows,
            "confidence": table.confidence.value,
        }
        return parse_content(payload)

    recovered = parse_markdown_pipe_table(table.raw_text)
    if recovered is not None:
        columns, rows = recovered
        kind = TableKind.GENERIC if len(columns) < 3 or table.kind != TableKind.STATS_TABLE else table.kind
        return parse_content({
            "type": kind.value,
            "title": table.title_guess,
            "columns": columns,
            "rows": rows,
            "confidence": table.confidence.value,
        })

    return TextContent(body=table.raw_text or "")
