"""
Quality checks over cleaned pages.

Each check is a pure function over the page list. The pipeline folds the
results into ``IndexStats``; nothing here rejects a source.
"""

from __future__ import annotations

import logging

from rules_index.ingestion.config import ingest_settings
from rules_index.ingestion.schemas import Page

logger = logging.getLogger(__name__)


def is_empty_page(page: Page) -> bool:
    return page.char_count < ingest_settings.empty_page_chars


def page_stats(pages: list[Page]) -> tuple[int, int]:
    """Return ``(empty_pages, avg_chars_per_page)``."""
    if not pages:
        return 0, 0
    empty = sum(1 for p in pages if is_empty_page(p))
    avg = round(sum(p.char_count for p in pages) / len(pages))
    return empty, avg


def looks_scanned(pages: list[Page]) -> bool:
    """Heuristic: most pages have (almost) no text layer."""
    if not pages:
        return False
    empty, _ = page_stats(pages)
    ratio = empty / len(pages)
    if ratio >= ingest_settings.scanned_empty_ratio:
        logger.warning(
            "%d of %d pages carry no usable text (%.0f%%); the source looks scanned.",
            empty, len(pages), ratio * 100,
        )
        return True
    return False
