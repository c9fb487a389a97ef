"""
Text cleaning for raw extracted rulebook text.

Two passes
----------
1. ``remove_repeated_headers_footers`` – cross-page: lines that repeat at the
   top / bottom of most pages (running titles, footers) are dropped.
2. ``clean_text`` – per page: line endings, page-number lines, copyright
   lines, whitespace runs, control characters.

The table detector needs the column layout (tabs, multi-space gaps) that
``clean_text`` normally collapses, so it is given the layout-preserving
variant (``collapse_whitespace=False``).
"""

from __future__ import annotations

import logging
import re
from collections import Counter

from rules_index.ingestion.config import ingest_settings

logger = logging.getLogger(__name__)

_MULTI_BLANK = re.compile(r"\n{3,}")
_PAGE_NUMBER_LINES = (
    re.compile(r"^[ \t]*\d+[ \t]*$", re.MULTILINE),
    re.compile(r"^[ \t]*page[ \t]+\d+[ \t]*$", re.MULTILINE | re.IGNORECASE),
    re.compile(r"^[ \t]*-[ \t]*\d+[ \t]*-[ \t]*$", re.MULTILINE),
)
_COPYRIGHT_LINE = re.compile(
    r"^.*(?:©|Â©|\ball rights reserved\b|^[ \t]*copyright\b).*$",
    re.MULTILINE | re.IGNORECASE,
)
_HORIZONTAL_WS = re.compile(r"[ \t\f\v]+")
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


def normalize_line_endings(text: str) -> str:
    return text.replace("\r\n", "\n").replace("\r", "\n")


def clean_text(text: str, *, collapse_whitespace: bool = True) -> str:
    """Strip PDF artifacts from one page (or one blob) of raw text."""
    cleaned = normalize_line_endings(text)
    cleaned = _MULTI_BLANK.sub("\n\n", cleaned)

    for pattern in _PAGE_NUMBER_LINES:
        cleaned = pattern.sub("", cleaned)
    cleaned = _COPYRIGHT_LINE.sub("", cleaned)

    if collapse_whitespace:
        cleaned = _HORIZONTAL_WS.sub(" ", cleaned)
        cleaned = "\n".join(line.strip() for line in cleaned.split("\n"))
    else:
        cleaned = "\n".join(line.rstrip() for line in cleaned.split("\n"))

    cleaned = _CONTROL_CHARS.sub("", cleaned)

    # Removed lines leave blank runs behind
    cleaned = re.sub(r"\n[ \t]*(?=\n)", "\n", cleaned)
    cleaned = _MULTI_BLANK.sub("\n\n", cleaned)
    return cleaned.strip() if collapse_whitespace else cleaned.strip("\n")


def _edge_lines(page: str, n: int) -> list[str]:
    lines = [line for line in page.split("\n") if line.strip()]
    if len(lines) <= 2 * n:
        return lines
    return lines[:n] + lines[-n:]


def remove_repeated_headers_footers(pages: list[str]) -> list[str]:
    """Drop running headers / footers that repeat across most pages.

    A line is a header/footer candidate when, after trimming and lowercasing,
    it shows up among the first or last ``header_footer_scan_lines``
    non-blank lines of at least ``header_footer_min_ratio`` of all pages and
    is shorter than ``header_footer_max_length`` characters. Candidates are
    removed from every page they appear on.
    """
    if len(pages) < ingest_settings.header_footer_min_pages:
        return pages

    n = ingest_settings.header_footer_scan_lines
    frequency: Counter[str] = Counter()
    for page in pages:
        seen = {line.strip().lower() for line in _edge_lines(page, n)}
        frequency.update(seen)

    threshold = len(pages) * ingest_settings.header_footer_min_ratio
    repeated = {
        line
        for line, count in frequency.items()
        if count >= threshold and 0 < len(line) < ingest_settings.header_footer_max_length
    }
    if not repeated:
        return pages

    logger.debug("Stripping %d repeated header/footer line(s): %s", len(repeated), sorted(repeated))
    return [
        "\n".join(line for line in page.split("\n") if line.strip().lower() not in repeated).strip("\n")
        for page in pages
    ]


def split_into_pseudo_pages(text: str, chars_per_page: int | None = None) -> list[str]:
    """Split pasted text into pseudo-pages at paragraph boundaries."""
    chars_per_page = chars_per_page or ingest_settings.pseudo_page_size
    pages: list[str] = []
    current = ""

    for paragraph in re.split(r"\n\s*\n", normalize_line_endings(text)):
        if not paragraph.strip():
            continue
        if current and len(current) + len(paragraph) + 2 > chars_per_page:
            pages.append(current.strip())
            current = paragraph
        else:
            current = f"{current}\n\n{paragraph}" if current else paragraph

    if current.strip():
        pages.append(current.strip())
    return pages
