"""
PDF text-layer reading via PyMuPDF (fitz).

Responsibilities
- Open a PDF and return the native text of every page, in page order.
- Keep the line structure (and column whitespace) so headings and tables
  survive into the cleaner and the table detector.

Image-only pages simply come back (near) empty; there is no OCR here.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

import fitz  # PyMuPDF

from rules_index.ingestion.config import ingest_settings

logger = logging.getLogger(__name__)


@dataclass
class PageData:
    """Native text of one PDF page."""

    page_number: int  # 1-based
    raw_text: str
    has_text_layer: bool


def parse_pdf(pdf_path: Path) -> list[PageData]:
    """Read every page's text layer.

    If ``ingest_settings.max_pages > 0`` only the first N pages are read.
    """
    pages: list[PageData] = []
    with fitz.open(str(pdf_path)) as doc:
        total = len(doc)
        limit = min(total, ingest_settings.max_pages or total)
        for idx in range(limit):
            page: fitz.Page = doc[idx]
            text = page.get_text("text", flags=fitz.TEXT_PRESERVE_WHITESPACE)
            pages.append(
                PageData(
                    page_number=idx + 1,
                    raw_text=text,
                    has_text_layer=len(text.strip()) >= ingest_settings.empty_page_chars,
                )
            )

    no_text = sum(1 for p in pages if not p.has_text_layer)
    logger.info("Parsed %d pages from %s (%d without a text layer).", len(pages), pdf_path.name, no_text)
    return pages


def extract_page_texts(pdf_path: Path) -> list[str]:
    """Raw text per page, ready to be stored as a source's input."""
    return [page.raw_text for page in parse_pdf(pdf_path)]
