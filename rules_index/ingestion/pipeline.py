"""
End-to-end indexing pipeline orchestrator.

Wires together: raw input → header/footer stripping → cleaning → sections →
chunking → table detection → dataset aggregation → atomic store swap.

Designed for:
- Idempotent re-indexing (every run fully replaces the previous generation).
- One run per source at a time (the store's indexing lease).
- Failures that never escape: any stage error is recorded on the source as
  ``{stage, message, timestamp}`` and returned in the ``IndexingResult``.
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from functools import partial
from typing import Iterator

from rules_index.ingestion.chunker import create_chunks
from rules_index.ingestion.datasets import aggregate_datasets
from rules_index.ingestion.errors import IndexingError, RulesIndexError
from rules_index.ingestion.quality import looks_scanned, page_stats
from rules_index.ingestion.schemas import (
    IndexBundle,
    IndexFailure,
    IndexingResult,
    IndexStage,
    IndexStats,
    Page,
    Table,
)
from rules_index.ingestion.sections import SectionSpan, detect_sections
from rules_index.ingestion.store import RulesStore
from rules_index.ingestion.tables import detect_tables
from rules_index.ingestion.text_cleaner import clean_text, remove_repeated_headers_footers

logger = logging.getLogger(__name__)

EMPTY_INPUT_MESSAGE = "No pages found to index"

# Module-level state
_store: RulesStore | None = None


def get_store() -> RulesStore:
    global _store
    if _store is None:
        _store = RulesStore()
        _store.create_schema()
    return _store


@contextmanager
def _stage(stage: IndexStage, timings: dict[str, int]) -> Iterator[None]:
    """Time one stage and tag any exception it raises with the stage name."""
    t0 = time.perf_counter()
    try:
        yield
    except IndexingError:
        raise
    except Exception as exc:
        raise IndexingError(stage.value, str(exc) or type(exc).__name__, exc) from exc
    finally:
        timings[stage.value] = timings.get(stage.value, 0) + int((time.perf_counter() - t0) * 1000)


def _section_at(spans: list[SectionSpan], page_number: int, line_index: int) -> str | None:
    """Id of the last section whose heading sits at or above *line_index* of *page_number*."""
    match: str | None = None
    for span in spans:
        if span.position <= (page_number, line_index):
            match = span.section.id
    return match


def build_index(source_id: str, raw_pages: list[str]) -> tuple[IndexBundle, dict[str, int]]:
    """Run the pure stages over *raw_pages*; returns the bundle and stage timings."""
    timings: dict[str, int] = {}
    if not any(page.strip() for page in raw_pages):
        raise IndexingError(IndexStage.EMPTY.value, EMPTY_INPUT_MESSAGE)

    # ── Cleaning ─────────────────────────────────────────────────────
    with _stage(IndexStage.CLEANING, timings):
        stripped = remove_repeated_headers_footers(raw_pages)
        layout_texts = [clean_text(text, collapse_whitespace=False) for text in stripped]
        pages: list[Page] = []
        for number, layout_text in enumerate(layout_texts, start=1):
            text = clean_text(layout_text)
            pages.append(Page(source_id=source_id, page_number=number, text=text, char_count=len(text)))

    # ── Sections ─────────────────────────────────────────────────────
    with _stage(IndexStage.SECTIONS, timings):
        spans = detect_sections(source_id, pages)
        sections = [span.section for span in spans]

    # ── Chunking ─────────────────────────────────────────────────────
    with _stage(IndexStage.CHUNKING, timings):
        chunks = create_chunks(source_id, pages, spans)

    # ── Tables (on layout-preserving text) ───────────────────────────
    with _stage(IndexStage.DETECTING_TABLES, timings):
        tables: list[Table] = []
        # Layout text keeps the line structure of page.text, so line indices match
        for page, layout_text in zip(pages, layout_texts):
            tables.extend(
                detect_tables(
                    layout_text,
                    page.page_number,
                    source_id,
                    section_at=partial(_section_at, spans, page.page_number),
                )
            )

    # ── Datasets ─────────────────────────────────────────────────────
    with _stage(IndexStage.DETECTING_DATASETS, timings):
        datasets, dataset_rows = aggregate_datasets(source_id, tables, sections)

    bundle = IndexBundle(
        source_id=source_id,
        pages=pages,
        sections=sections,
        chunks=chunks,
        tables=tables,
        datasets=datasets,
        dataset_rows=dataset_rows,
    )
    logger.info(
        "  %s: %d pages → %d sections, %d chunks, %d tables, %d datasets.",
        source_id, len(pages), len(sections), len(chunks), len(tables), len(datasets),
    )
    return bundle, timings


def compute_stats(bundle: IndexBundle, timings: dict[str, int]) -> IndexStats:
    stats = bundle.stats()
    stats.empty_pages, stats.avg_chars_per_page = page_stats(bundle.pages)
    stats.scanned_suspect = looks_scanned(bundle.pages)
    stats.time_ms_by_stage = dict(timings)
    return stats


def index_source(
    source_id: str,
    *,
    store: RulesStore | None = None,
    raw_pages: list[str] | None = None,
) -> IndexingResult:
    """Index (or re-index) one source.

    Args:
        source_id: The source to index.
        store: Store to use; defaults to the module-level store.
        raw_pages: Replacement raw input. When given it is stored as the
            source's input before the run, otherwise the stored input is used.

    Returns:
        ``IndexingResult``; a failed run has ``success=False`` and the error.

    Raises:
        SourceNotFoundError: unknown *source_id*.
        IndexingInProgressError: another run holds the lease.
    """
    store = store or get_store()
    t0 = time.time()
    store.begin_indexing(source_id)
    logger.info("═══ Indexing source: %s ═══", source_id)

    timings: dict[str, int] = {}
    try:
        with _stage(IndexStage.EXTRACTING, timings):
            if raw_pages is not None:
                store.set_input(source_id, raw_pages)
            pages = store.get_input(source_id)

        bundle, stage_timings = build_index(source_id, pages)
        timings.update(stage_timings)

        with _stage(IndexStage.SAVING, timings):
            store.replace_index(source_id, bundle)
        stats = compute_stats(bundle, timings)
        with _stage(IndexStage.SAVING, timings):
            store.mark_indexed(source_id, stats)

    except IndexingError as exc:
        failure = IndexFailure(stage=exc.stage, message=exc.message)
        logger.error("Indexing %s failed at stage %s: %s", source_id, exc.stage, exc.message)
        try:
            store.mark_failed(source_id, failure)
        except RulesIndexError as mark_exc:
            # Source deleted mid-run, or the lease was retaken and finished
            logger.warning("Could not record failure on %s: %s", source_id, mark_exc.message)
        elapsed = time.time() - t0
        return IndexingResult(success=False, error=failure, duration_seconds=elapsed)

    elapsed = time.time() - t0
    logger.info(
        "Indexing complete for %s: %d pages, %d chunks, %d tables (H/M/L %d/%d/%d) in %.1fs.",
        source_id,
        stats.pages,
        stats.chunks,
        stats.tables_high + stats.tables_medium + stats.tables_low,
        stats.tables_high,
        stats.tables_medium,
        stats.tables_low,
        elapsed,
    )
    return IndexingResult(success=True, stats=stats, duration_seconds=elapsed)
