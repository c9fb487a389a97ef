"""
Heuristic table detection over page text.

Detectors (tried in priority order at every unconsumed line)
------------------------------------------------------------
1. **Roll table**      – ``1-2: Result`` / ``3: Result`` / D66 ``11 Result`` rows.
2. **Stats table**     – a header of stat-line abbreviations (M WS BS S T ...).
3. **Equipment table** – ``Sword 10gc [effect]`` / ``Shield - 5 gc`` rows.
4. **Generic table**   – tab or 3+ space separated columns.

Each detector checks its own trigger and returns ``None`` on a near miss
(e.g. only two roll rows) – that is "nothing here", not an error.

Consumed line ranges live in a ``ConsumedLines`` object that is created per
``detect_tables`` call and handed to every detector, so no two accepted
candidates of one pass ever share a line.

Output
------
Each accepted candidate becomes a ``Table`` with parsed rows (string-keyed
records), a title guess, header context, keywords and a confidence tier
derived only from the candidate's structure.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Callable

from rules_index.ingestion.keywords import TABLE_TERMS, dedupe, find_terms, title_words
from rules_index.ingestion.schemas import Confidence, Table, TableKind

logger = logging.getLogger(__name__)


@dataclass
class TableCandidate:
    """One accepted detection; ``start_line``/``end_line`` are inclusive."""

    kind: TableKind
    start_line: int
    end_line: int
    raw_text: str
    title_guess: str | None
    header_context: str | None
    confidence: Confidence
    parsed_rows: list[dict[str, str]] = field(default_factory=list)

    @property
    def lines(self) -> range:
        return range(self.start_line, self.end_line + 1)


class ConsumedLines:
    """Run-local record of line ranges already claimed by a candidate."""

    def __init__(self) -> None:
        self._ranges: list[tuple[int, int]] = []

    def __contains__(self, line: int) -> bool:
        return any(start <= line <= end for start, end in self._ranges)

    def overlaps(self, start: int, end: int) -> bool:
        return any(start <= r_end and r_start <= end for r_start, r_end in self._ranges)

    def claim(self, start: int, end: int) -> None:
        if self.overlaps(start, end):
            raise ValueError(f"Lines {start}-{end} are already claimed")
        self._ranges.append((start, end))

    @property
    def ranges(self) -> list[tuple[int, int]]:
        return sorted(self._ranges)


Detector = Callable[[list[str], int, ConsumedLines], "TableCandidate | None"]


# ── Shared helpers ───────────────────────────────────────────────────────

def _look_back_title(
    lines: list[str],
    start: int,
    limit: int,
    accept: Callable[[str], bool],
) -> str | None:
    for i in range(start - 1, max(-1, start - limit - 1), -1):
        line = lines[i].strip()
        if line and accept(line):
            return line
    return None


def _context(lines: list[str], start: int, span: int = 3) -> str | None:
    context = "\n".join(line.strip() for line in lines[max(0, start - span):start]).strip()
    return context or None


def _raw_span(lines: list[str], start: int, end: int) -> str:
    return "\n".join(lines[max(0, start - 2):end + 1]).strip("\n")


# ═══════════════════════════════════════════════════════════════════════════
# 1. Roll tables
# ═══════════════════════════════════════════════════════════════════════════

_ROLL_TRIGGER = re.compile(r"^(?:\d+\s*[-–]\s*\d+\s*[:.\s]|\d+\s*:|[1-6]{2}\s)")
_ROLL_RANGE_ROW = re.compile(r"^(\d+)\s*[-–]\s*(\d+)[:.\s]+(.+)$")
_ROLL_SINGLE_ROW = re.compile(r"^(\d+)[:.\s]+(.+)$")
_ROLL_D66_ROW = re.compile(r"^(\d{2})\s*[-–]?\s*(.+)$")


def _match_roll_row(line: str) -> dict[str, str] | None:
    m = _ROLL_RANGE_ROW.match(line)
    if m:
        return {"Roll": f"{m.group(1)}-{m.group(2)}", "Result": m.group(3).strip()}
    for pattern in (_ROLL_SINGLE_ROW, _ROLL_D66_ROW):
        m = pattern.match(line)
        if m:
            return {"Roll": m.group(1), "Result": m.group(2).strip()}
    return None


def _roll_confidence(rows: list[dict[str, str]]) -> Confidence:
    has_d6 = len(rows) == 6 or any("-" in r["Roll"] for r in rows)
    has_d66 = any(re.fullmatch(r"\d{2}", r["Roll"]) for r in rows)
    return Confidence.HIGH if has_d6 or has_d66 else Confidence.MEDIUM


def detect_roll_table(lines: list[str], start: int, consumed: ConsumedLines) -> TableCandidate | None:
    if not _ROLL_TRIGGER.match(lines[start].strip()):
        return None
    first = _match_roll_row(lines[start].strip())
    if first is None:
        return None

    rows = [first]
    end = start
    misses = 0
    for i in range(start + 1, len(lines)):
        if i in consumed:
            break
        line = lines[i].strip()
        row = _match_roll_row(line) if line else None
        if row is not None:
            rows.append(row)
            end, misses = i, 0
            continue
        if line and line[0].islower():
            # soft-wrapped result text
            rows[-1]["Result"] = f"{rows[-1]['Result']} {line}"
            end, misses = i, 0
            continue
        misses += 1
        if len(rows) > 2 or misses >= 2:
            break

    if len(rows) < 3:
        return None

    title = _look_back_title(lines, start, 5, lambda l: not l[0].isdigit() and len(l) < 60)
    has_d66 = any(re.fullmatch(r"\d{2}", r["Roll"]) for r in rows)
    return TableCandidate(
        kind=TableKind.ROLL_TABLE,
        start_line=start,
        end_line=end,
        raw_text=_raw_span(lines, start, end),
        title_guess=title or ("D66 Table" if has_d66 else "D6 Table"),
        header_context=_context(lines, start),
        confidence=_roll_confidence(rows),
        parsed_rows=rows,
    )


# ═══════════════════════════════════════════════════════════════════════════
# 2. Stats tables (unit profiles, weapon profiles)
# ═══════════════════════════════════════════════════════════════════════════

_STAT_HEADERS = re.compile(r"\b(?:M|WS|BS|S|T|W|I|A|Ld|Sv|Mv|Rng|Acc|Str|AP|Dmg)\b")
_COLUMN_SPLIT = re.compile(r"\s{2,}|\t")


def _split_columns(line: str, separator: re.Pattern[str]) -> list[str]:
    return [part.strip() for part in separator.split(line.strip()) if part.strip()]


def _unique_headers(headers: list[str]) -> list[str]:
    """Suffix repeated header names (``Name``, ``Name 2``) so row keys stay distinct."""
    seen: dict[str, int] = {}
    unique: list[str] = []
    for header in headers:
        name = header
        while name in seen:
            seen[header] += 1
            name = f"{header} {seen[header]}"
        seen.setdefault(header, 1)
        seen.setdefault(name, 1)
        unique.append(name)
    return unique


def detect_stats_table(lines: list[str], start: int, consumed: ConsumedLines) -> TableCandidate | None:
    header_line = lines[start]
    if not _STAT_HEADERS.search(header_line):
        return None
    headers = _unique_headers(_split_columns(header_line, _COLUMN_SPLIT))
    if len(headers) < 3:
        return None

    rows: list[dict[str, str]] = []
    end = start
    for i in range(start + 1, min(len(lines), start + 20)):
        if i in consumed:
            break
        line = lines[i].strip()
        if not line:
            if rows:
                break
            continue
        values = _split_columns(lines[i], _COLUMN_SPLIT)
        if len(values) >= len(headers) - 1:
            rows.append({h: (values[idx] if idx < len(values) else "") for idx, h in enumerate(headers)})
            end = i
        elif rows:
            break
        else:
            return None

    if not rows:
        return None

    title = _look_back_title(
        lines, start, 3, lambda l: not _STAT_HEADERS.search(l) and len(l) < 60
    )
    return TableCandidate(
        kind=TableKind.STATS_TABLE,
        start_line=start,
        end_line=end,
        raw_text=_raw_span(lines, start, end),
        title_guess=title or "Stats Table",
        header_context=_context(lines, start),
        confidence=Confidence.HIGH,
        parsed_rows=rows,
    )


# ═══════════════════════════════════════════════════════════════════════════
# 3. Equipment / price lists
# ═══════════════════════════════════════════════════════════════════════════

_EQUIPMENT_ROWS = (
    re.compile(r"^(.+?)\s+(\d+)\s*(gc|gold|pts?|points?)(\s+.+)?$", re.IGNORECASE),
    re.compile(r"^(.+?)\s*[-–]\s*(\d+)\s*(gc|gold|pts?)$", re.IGNORECASE),
)
_EQUIPMENT_TITLE = re.compile(r"equipment|weapon|armou?r|item|gear", re.IGNORECASE)
_EQUIPMENT_SCAN = 30


def _match_equipment_row(line: str) -> dict[str, str] | None:
    for pattern in _EQUIPMENT_ROWS:
        m = pattern.match(line)
        if m:
            effect = m.group(4) if m.lastindex and m.lastindex >= 4 else None
            return {
                "Name": m.group(1).strip(),
                "Cost": f"{m.group(2)} {m.group(3)}",
                "Effect": (effect or "").strip(),
            }
    return None


def detect_equipment_table(lines: list[str], start: int, consumed: ConsumedLines) -> TableCandidate | None:
    first = _match_equipment_row(lines[start].strip())
    if first is None:
        return None

    rows = [first]
    end = start
    for i in range(start + 1, min(len(lines), start + _EQUIPMENT_SCAN)):
        if i in consumed:
            break
        line = lines[i].strip()
        if not line:
            if len(rows) > 2:
                break
            continue
        row = _match_equipment_row(line)
        if row is not None:
            rows.append(row)
            end = i
        elif len(rows) > 2:
            break

    if len(rows) < 3:
        return None

    title = _look_back_title(lines, start, 3, lambda l: bool(_EQUIPMENT_TITLE.search(l)))
    return TableCandidate(
        kind=TableKind.EQUIPMENT,
        start_line=start,
        end_line=end,
        raw_text=_raw_span(lines, start, end),
        title_guess=title or "Equipment",
        header_context=_context(lines, start),
        confidence=Confidence.MEDIUM,
        parsed_rows=rows,
    )


# ═══════════════════════════════════════════════════════════════════════════
# 4. Generic column tables
# ═══════════════════════════════════════════════════════════════════════════

_TAB_SPLIT = re.compile(r"\t+")
_WIDE_SPACE_SPLIT = re.compile(r"\s{3,}")
_GENERIC_SCAN = 30


def detect_generic_table(lines: list[str], start: int, consumed: ConsumedLines) -> TableCandidate | None:
    header_line = lines[start].strip()
    if "\t" in header_line:
        separator = _TAB_SPLIT
    elif re.search(r" {3,}", header_line):
        separator = _WIDE_SPACE_SPLIT
    else:
        return None

    headers = _unique_headers(_split_columns(header_line, separator))
    if len(headers) < 2:
        return None

    rows: list[dict[str, str]] = []
    end = start
    for i in range(start + 1, min(len(lines), start + _GENERIC_SCAN)):
        if i in consumed:
            break
        line = lines[i].strip()
        if not line:
            if len(rows) >= 2:
                break
            continue
        values = _split_columns(line, separator)
        if len(values) >= 2 and len(values) >= len(headers) - 1:
            rows.append({h: (values[idx] if idx < len(values) else "") for idx, h in enumerate(headers)})
            end = i
        else:
            break

    if len(rows) < 2:
        return None

    return TableCandidate(
        kind=TableKind.GENERIC,
        start_line=start,
        end_line=end,
        raw_text="\n".join(lines[start:end + 1]),
        title_guess=None,
        header_context=_context(lines, start, span=2),
        confidence=Confidence.LOW,
        parsed_rows=rows,
    )


DETECTORS: tuple[Detector, ...] = (
    detect_roll_table,
    detect_stats_table,
    detect_equipment_table,
    detect_generic_table,
)


# ═══════════════════════════════════════════════════════════════════════════
# Dispatcher
# ═══════════════════════════════════════════════════════════════════════════

def table_keywords(candidate: TableCandidate) -> list[str]:
    keywords = [candidate.kind.value.replace("_", " ")]
    keywords.extend(title_words(candidate.title_guess))
    keywords.extend(find_terms(candidate.raw_text, TABLE_TERMS))
    return dedupe(keywords)


def find_table_candidates(text: str) -> list[TableCandidate]:
    """Run every detector over *text*; candidates never share a line."""
    lines = text.split("\n")
    consumed = ConsumedLines()
    candidates: list[TableCandidate] = []

    for i in range(len(lines)):
        if i in consumed or not lines[i].strip():
            continue
        for detector in DETECTORS:
            candidate = detector(lines, i, consumed)
            if candidate is None:
                continue
            if consumed.overlaps(candidate.start_line, candidate.end_line):
                logger.debug("Dropping overlapping %s at line %d.", candidate.kind.value, i)
                continue
            consumed.claim(candidate.start_line, candidate.end_line)
            candidates.append(candidate)
            break

    return candidates


def detect_tables(
    text: str,
    page_number: int,
    source_id: str,
    section_id: str | None = None,
    section_at: Callable[[int], str | None] | None = None,
) -> list[Table]:
    """Detect all tables on one page of (layout-preserving) text.

    ``section_at`` maps a candidate's first line to its section id; without
    it every table gets ``section_id``.
    """
    tables = [
        Table(
            source_id=source_id,
            section_id=section_at(c.start_line) if section_at else section_id,
            kind=c.kind,
            title_guess=c.title_guess,
            header_context=c.header_context,
            page_number=page_number,
            raw_text=c.raw_text,
            parsed_rows=c.parsed_rows or None,
            confidence=c.confidence,
            keywords=table_keywords(c),
        )
        for c in find_table_candidates(text)
    ]
    if tables:
        logger.debug(
            "Page %d: %d table(s) – %s",
            page_number,
            len(tables),
            ", ".join(f"{t.kind.value}/{t.confidence.value}" for t in tables),
        )
    return tables
