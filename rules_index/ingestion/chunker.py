"""
Section-aware chunking with overlap.

Segments
--------
Each detected section body is chunked on its own so a chunk never straddles
two sections; without sections every page is a segment.

Sizing
------
Paragraphs are packed greedily up to ``chunk_target_size``. A chunk still
below ``chunk_min_size`` keeps absorbing text (up to ``chunk_max_size`` minus
the overlap budget), so only the last chunk of a segment can be short.
Chunk *k+1* is prefixed with the tail of chunk *k* (at most ``chunk_overlap``
characters, cut on a word boundary).

Every chunk carries score hints and keywords computed from its own text, and
an ``order_index`` that is contiguous across the whole source.
"""

from __future__ import annotations

import logging
import re
from collections import deque
from dataclasses import dataclass

from rules_index.ingestion.config import ingest_settings
from rules_index.ingestion.keywords import dedupe, extract_keywords
from rules_index.ingestion.schemas import Chunk, Page, ScoreHints, Section
from rules_index.ingestion.sections import PageLine, SectionSpan

logger = logging.getLogger(__name__)

_ROLL_RANGE = re.compile(r"\b\d+\s*[-–]\s*\d+\b")
_DICE = re.compile(r"\b\d*[dD]\d+\b")
_LIST_LINE = re.compile(r"^\s*(?:[-•*]|\d+[.)])\s")
_DELIMITED_LINE = re.compile(r"\|.*\||\t| {3,}|^\s*\d+\s*[-–:.)]\s*\S")
_SENTENCE_BREAK = re.compile(r"(?<=[.!?])\s+(?=[A-Z0-9])")
_PATTERN_MIN_LINES = 3


@dataclass
class _Piece:
    text: str
    page_start: int
    page_end: int

    def join(self, other: _Piece) -> _Piece:
        return _Piece(
            f"{self.text}\n\n{other.text}",
            min(self.page_start, other.page_start),
            max(self.page_end, other.page_end),
        )


# ═══════════════════════════════════════════════════════════════════════════
# Score hints
# ═══════════════════════════════════════════════════════════════════════════

def analyze_score_hints(text: str) -> ScoreHints:
    """Regex checks used by the downstream matcher to bias relevance."""
    lines = [line for line in text.split("\n") if line.strip()]
    return ScoreHints(
        has_roll_ranges=bool(_ROLL_RANGE.search(text)),
        has_table_pattern=sum(1 for l in lines if _DELIMITED_LINE.search(l)) >= _PATTERN_MIN_LINES,
        has_list_pattern=sum(1 for l in lines if _LIST_LINE.match(l)) >= _PATTERN_MIN_LINES,
        has_dice_notation=bool(_DICE.search(text)),
    )


# ═══════════════════════════════════════════════════════════════════════════
# Splitting
# ═══════════════════════════════════════════════════════════════════════════

def _paragraphs(lines: list[PageLine]) -> list[_Piece]:
    """Group consecutive non-blank lines; blank lines and page breaks split."""
    pieces: list[_Piece] = []
    buf: list[PageLine] = []

    def flush() -> None:
        if buf:
            text = "\n".join(pl.text.strip() for pl in buf)
            pieces.append(_Piece(text, buf[0].page_number, buf[-1].page_number))
            buf.clear()

    for pl in lines:
        if not pl.text.strip():
            flush()
            continue
        if buf and pl.page_number != buf[-1].page_number:
            flush()
        buf.append(pl)
    flush()
    return pieces


def _cut_at_word(text: str, limit: int) -> tuple[str, str]:
    """Split *text* into a head of at most *limit* chars and the remainder."""
    if len(text) <= limit:
        return text, ""
    cut = text.rfind(" ", 0, limit + 1)
    newline = text.rfind("\n", 0, limit + 1)
    cut = max(cut, newline)
    if cut <= 0:
        cut = limit
    return text[:cut].rstrip(), text[cut:].lstrip()


def _split_long(piece: _Piece, limit: int) -> list[_Piece]:
    """Break an oversized paragraph at sentence, then word, boundaries."""
    if len(piece.text) <= limit:
        return [piece]

    parts: list[str] = []
    current = ""
    for sentence in _SENTENCE_BREAK.split(piece.text):
        while len(sentence) > limit:
            head, sentence = _cut_at_word(sentence, limit)
            if current:
                parts.append(current)
                current = ""
            parts.append(head)
        candidate = f"{current} {sentence}" if current else sentence
        if len(candidate) <= limit:
            current = candidate
        else:
            parts.append(current)
            current = sentence
    if current:
        parts.append(current)
    return [_Piece(p, piece.page_start, piece.page_end) for p in parts if p.strip()]


def _pack(pieces: list[_Piece], target: int, min_size: int, body_max: int) -> list[_Piece]:
    bodies: list[_Piece] = []
    queue = deque(p for piece in pieces for p in _split_long(piece, target))
    current: _Piece | None = None

    while queue:
        piece = queue.popleft()
        if current is None:
            current = piece
            continue

        joined = len(current.text) + 2 + len(piece.text)
        if joined <= target or (len(current.text) < min_size and joined <= body_max):
            current = current.join(piece)
            continue

        if len(current.text) < min_size:
            room = target - len(current.text) - 2
            head, tail = _cut_at_word(piece.text, room)
            current = current.join(_Piece(head, piece.page_start, piece.page_end))
            if tail:
                queue.appendleft(_Piece(tail, piece.page_start, piece.page_end))
            bodies.append(current)
            current = None
            continue

        bodies.append(current)
        current = piece

    if current is not None:
        bodies.append(current)
    return bodies


def _overlap_tail(text: str, overlap: int) -> str:
    if overlap <= 0:
        return ""
    if len(text) <= overlap:
        return text.strip()
    tail = text[-overlap:]
    boundary = re.search(r"\s", tail)
    if boundary:
        tail = tail[boundary.end():]
    return tail.strip()


def chunk_segment(lines: list[PageLine]) -> list[_Piece]:
    """Chunk one segment (a section body or a page) into overlapped pieces."""
    overlap = ingest_settings.chunk_overlap
    bodies = _pack(
        _paragraphs(lines),
        target=ingest_settings.chunk_target_size,
        min_size=ingest_settings.chunk_min_size,
        body_max=ingest_settings.chunk_max_size - overlap - 2,
    )

    chunks: list[_Piece] = []
    for k, body in enumerate(bodies):
        if k == 0:
            chunks.append(body)
            continue
        tail = _overlap_tail(bodies[k - 1].text, overlap)
        text = f"{tail}\n\n{body.text}" if tail else body.text
        chunks.append(_Piece(text, body.page_start, body.page_end))
    return chunks


# ═══════════════════════════════════════════════════════════════════════════
# Source-level chunking
# ═══════════════════════════════════════════════════════════════════════════

def _page_lines(page: Page) -> list[PageLine]:
    return [PageLine(page.page_number, line) for line in page.text.split("\n")]


def create_chunks(
    source_id: str,
    pages: list[Page],
    spans: list[SectionSpan] | None = None,
) -> list[Chunk]:
    """Chunk the whole source; ``order_index`` runs 0..N-1 in emission order."""
    segments: list[tuple[Section | None, list[PageLine]]]
    if spans:
        segments = [(span.section, span.lines) for span in spans]
    else:
        segments = [(None, _page_lines(page)) for page in pages]

    chunks: list[Chunk] = []
    for section, lines in segments:
        for piece in chunk_segment(lines):
            chunks.append(
                Chunk(
                    source_id=source_id,
                    section_id=section.id if section else None,
                    text=piece.text,
                    page_start=piece.page_start,
                    page_end=piece.page_end,
                    section_path=list(section.section_path) if section else [],
                    order_index=len(chunks),
                    keywords=dedupe(extract_keywords(piece.text)),
                    score_hints=analyze_score_hints(piece.text),
                )
            )

    logger.debug("Created %d chunk(s) from %d segment(s).", len(chunks), len(segments))
    return chunks
