"""
Section detection over cleaned page text.

Heading patterns (all conservative, none authoritative)
-------------------------------------------------------
1. **All caps** – the line equals its upper-cased form, 4–59 chars, has a letter.
2. **Numbered** – ``1 Title``, ``2.1 Title``, ``3.1.4 Title``; depth = level.
3. **Title shape** – a short capitalised line, then a blank line, then a body
   line of 50+ characters.

Headings keep their line position so the caller can assign page spans and
collect the body lines that follow them.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from rules_index.ingestion.keywords import dedupe, extract_keywords
from rules_index.ingestion.schemas import Page, Section

logger = logging.getLogger(__name__)

_MIN_TITLE = 4
_MAX_TITLE = 59
_BODY_MIN = 50

_NUMBERED = re.compile(r"^(\d+(?:\.\d+){0,2})\.?\s+([A-Z][A-Za-z\s'’&:\-]*)$")
_NUMBERED_ITEM = re.compile(r"^\d+(?:\.\d+)*[.:)\-–]?\s")
_ROLL_ROW = re.compile(r"^\d+\s*[-–:]")
_TITLE_SHAPE = re.compile(r"^[A-Z][A-Za-z\s\-:']*$")

INTRODUCTION_TITLE = "Introduction"


class HeadingPattern:
    ALL_CAPS = "all_caps"
    NUMBERED = "numbered"
    TITLE_SHAPE = "title_shape"


@dataclass
class HeadingCandidate:
    title: str
    line_index: int
    level: int
    pattern: str


@dataclass
class PageLine:
    page_number: int
    text: str
    line_index: int = 0


@dataclass
class SectionSpan:
    """A detected section plus the body lines the chunker splits.

    ``heading_line`` is the heading's line index within ``page_start``
    (``-1`` for the introduction, which starts before any heading).
    """

    section: Section
    lines: list[PageLine] = field(default_factory=list)
    heading_line: int = -1

    @property
    def position(self) -> tuple[int, int]:
        return self.section.page_start, self.heading_line


def _next_non_blank(lines: list[str], start: int) -> str | None:
    for line in lines[start:]:
        if line.strip():
            return line.strip()
    return None


def _match_heading(lines: list[str], i: int) -> HeadingCandidate | None:
    line = lines[i].strip()
    if not (_MIN_TITLE <= len(line) <= _MAX_TITLE):
        return None

    numbered = _NUMBERED.match(line)
    if numbered:
        # "1 Parry / 2 Riposte ..." is a list, not a run of headings
        following = _next_non_blank(lines, i + 1)
        preceding = _next_non_blank(lines[i - 1::-1], 0) if i > 0 else None
        if not any(n is not None and _NUMBERED_ITEM.match(n) for n in (following, preceding)):
            level = numbered.group(1).count(".") + 1
            return HeadingCandidate(line, i, level, HeadingPattern.NUMBERED)

    if line == line.upper() and re.search(r"[A-Za-z]", line) and not _ROLL_ROW.match(line):
        return HeadingCandidate(line, i, 1, HeadingPattern.ALL_CAPS)

    if line.endswith((".", ",")) or not _TITLE_SHAPE.match(line):
        return None
    if i + 2 < len(lines) and not lines[i + 1].strip() and len(lines[i + 2].strip()) >= _BODY_MIN:
        return HeadingCandidate(line, i, 2, HeadingPattern.TITLE_SHAPE)
    return None


def find_headings(lines: list[str]) -> list[HeadingCandidate]:
    """Return heading-like lines with their position and nesting level."""
    headings: list[HeadingCandidate] = []
    for i in range(len(lines)):
        candidate = _match_heading(lines, i)
        if candidate is not None:
            headings.append(candidate)
    return headings


def detect_sections(source_id: str, pages: list[Page]) -> list[SectionSpan]:
    """Split the source into titled sections with page spans.

    Text before the first heading becomes an ``Introduction`` section. When
    no heading is found at all, no sections are returned and the chunker
    falls back to page-based segments.
    """
    all_lines = [
        PageLine(page.page_number, line, index)
        for page in pages
        for index, line in enumerate(page.text.split("\n"))
    ]
    headings = find_headings([pl.text for pl in all_lines])
    if not headings:
        logger.debug("No headings found in source %s.", source_id)
        return []

    spans: list[SectionSpan] = []
    preamble = all_lines[: headings[0].line_index]
    if any(pl.text.strip() for pl in preamble):
        spans.append(_build_span(source_id, INTRODUCTION_TITLE, 1, [INTRODUCTION_TITLE],
                                 preamble[0].page_number, preamble))

    stack: list[tuple[int, str]] = []
    for idx, heading in enumerate(headings):
        while stack and stack[-1][0] >= heading.level:
            stack.pop()
        path = [title for _, title in stack] + [heading.title]
        stack.append((heading.level, heading.title))

        end = headings[idx + 1].line_index if idx + 1 < len(headings) else len(all_lines)
        body = all_lines[heading.line_index + 1 : end]
        start = all_lines[heading.line_index]
        span = _build_span(source_id, heading.title, heading.level, path, start.page_number, body)
        span.heading_line = start.line_index
        spans.append(span)

    logger.debug("Detected %d section(s) in source %s.", len(spans), source_id)
    return spans


def _build_span(
    source_id: str,
    title: str,
    level: int,
    path: list[str],
    page_start: int,
    body: list[PageLine],
) -> SectionSpan:
    content = [pl for pl in body if pl.text.strip()]
    page_end = max([page_start] + [pl.page_number for pl in content])
    text = "\n".join(pl.text for pl in body).strip()
    section = Section(
        source_id=source_id,
        title=title,
        section_path=path,
        level=level,
        page_start=page_start,
        page_end=page_end,
        text=text or None,
        keywords=dedupe(extract_keywords(f"{title}\n{text}")),
    )
    return SectionSpan(section=section, lines=body)
