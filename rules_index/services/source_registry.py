"""
Source registry – create, update and delete rulebook sources.

A source is registered together with its raw input:

  - pdf            → one raw text per PDF page (PyMuPDF text layer)
  - pasted_text    → the blob split into ~8000-char pseudo-pages
  - external_json  → ``{"pages": [{"pageNumber": n, "text": ...}]}`` or
                     ``{"text": "..."}``

Index status is not touched here; the store moves it along its allowed
transitions when a run starts and finishes.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from rules_index.ingestion.errors import RulesIndexError
from rules_index.ingestion.keywords import dedupe
from rules_index.ingestion.schemas import Source, SourceType
from rules_index.ingestion.store import RulesStore
from rules_index.ingestion.text_cleaner import split_into_pseudo_pages

logger = logging.getLogger(__name__)

__all__ = [
    "create_source",
    "create_pasted_source",
    "create_pdf_source",
    "create_json_source",
    "pages_from_json",
    "set_input",
    "set_text_input",
    "get_source",
    "list_sources",
    "update_source",
    "delete_source",
]


def _clean_tags(tags: list[str] | None) -> list[str]:
    return dedupe([t.strip() for t in tags or [] if t.strip()])


def create_source(
    store: RulesStore,
    campaign_id: str,
    source_type: SourceType,
    title: str,
    tags: list[str] | None = None,
) -> Source:
    """Register a new source in ``not_indexed``."""
    source = Source(
        campaign_id=campaign_id,
        type=source_type,
        title=title.strip(),
        tags=_clean_tags(tags),
    )
    store.insert_source(source)
    logger.info("Registered %s source %s (%r) for campaign %s", source_type.value, source.id, source.title, campaign_id)
    return source


def create_pasted_source(
    store: RulesStore,
    campaign_id: str,
    title: str,
    text: str,
    tags: list[str] | None = None,
) -> Source:
    source = create_source(store, campaign_id, SourceType.PASTED_TEXT, title, tags)
    set_text_input(store, source.id, text)
    return source


def create_pdf_source(
    store: RulesStore,
    campaign_id: str,
    title: str,
    path: Path,
    tags: list[str] | None = None,
) -> Source:
    from rules_index.ingestion.pdf_parser import extract_page_texts

    pages = extract_page_texts(Path(path))
    source = create_source(store, campaign_id, SourceType.PDF, title, tags)
    set_input(store, source.id, pages)
    return source


def create_json_source(
    store: RulesStore,
    campaign_id: str,
    title: str,
    payload: dict[str, Any],
    tags: list[str] | None = None,
) -> Source:
    pages = pages_from_json(payload)
    source = create_source(store, campaign_id, SourceType.EXTERNAL_JSON, title, tags)
    set_input(store, source.id, pages)
    return source


def pages_from_json(payload: dict[str, Any]) -> list[str]:
    """Turn an external JSON payload into raw page texts (ordered by page number)."""
    if isinstance(payload.get("pages"), list):
        entries: list[tuple[int, str]] = []
        for idx, entry in enumerate(payload["pages"], start=1):
            if not isinstance(entry, dict) or not isinstance(entry.get("text"), str):
                raise RulesIndexError(f"Page entry {idx} must be an object with a 'text' string")
            number = entry.get("pageNumber", entry.get("page_number", idx))
            try:
                number = int(number)
            except (TypeError, ValueError):
                raise RulesIndexError(f"Page entry {idx} has an invalid pageNumber") from None
            if any(number == seen for seen, _ in entries):
                raise RulesIndexError(f"Page entry {idx} repeats pageNumber {number}")
            entries.append((number, entry["text"]))
        return [text for _, text in sorted(entries, key=lambda e: e[0])]
    if isinstance(payload.get("text"), str):
        return split_into_pseudo_pages(payload["text"])
    raise RulesIndexError("JSON payload needs a 'pages' list or a 'text' string")


def set_input(store: RulesStore, source_id: str, pages: list[str]) -> Source:
    """Replace the raw input of a source; it is picked up by the next run."""
    store.set_input(source_id, pages)
    logger.info("Stored %d input page(s) for source %s", len(pages), source_id)
    return store.get_source(source_id)


def set_text_input(store: RulesStore, source_id: str, text: str) -> Source:
    return set_input(store, source_id, split_into_pseudo_pages(text))


def get_source(store: RulesStore, source_id: str) -> Source:
    return store.get_source(source_id)


def list_sources(store: RulesStore, campaign_id: str | None = None) -> list[Source]:
    return store.list_sources(campaign_id)


def update_source(
    store: RulesStore,
    source_id: str,
    *,
    title: str | None = None,
    tags: list[str] | None = None,
) -> Source:
    return store.update_source(
        source_id,
        title=title.strip() if title is not None else None,
        tags=_clean_tags(tags) if tags is not None else None,
    )


def delete_source(store: RulesStore, source_id: str) -> None:
    store.delete_source(source_id)
