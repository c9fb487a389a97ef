"""
Indexing pipeline configuration.

All values can be overridden via environment variables prefixed with
``INGEST_`` (e.g. ``INGEST_CHUNK_TARGET_SIZE=1500``).
"""

from __future__ import annotations

from pydantic_settings import BaseSettings


class IngestSettings(BaseSettings):
    """Tuneable knobs for every pipeline stage."""

    # ── PDF text layer ───────────────────────────────────────────────────
    max_pages: int = 0  # 0 = unlimited

    # ── Pasted text ──────────────────────────────────────────────────────
    pseudo_page_size: int = 8000  # characters per pseudo-page

    # ── Header / footer stripping ────────────────────────────────────────
    header_footer_scan_lines: int = 5  # first/last N non-blank lines per page
    header_footer_min_ratio: float = 0.60  # share of pages a line must hit
    header_footer_max_length: int = 100  # longer lines are never stripped
    header_footer_min_pages: int = 3  # fewer pages = not enough signal

    # ── Chunking ─────────────────────────────────────────────────────────
    chunk_target_size: int = 1800  # characters
    chunk_min_size: int = 500
    chunk_max_size: int = 2500
    chunk_overlap: int = 200
    chunk_insert_batch_size: int = 100

    # ── Quality ──────────────────────────────────────────────────────────
    empty_page_chars: int = 20  # a page below this counts as empty
    scanned_empty_ratio: float = 0.50  # share of empty pages that flags a scan

    # ── Source lease ─────────────────────────────────────────────────────
    index_lease_seconds: int = 900  # an "indexing" lease older than this may be retaken

    model_config = {
        "env_prefix": "INGEST_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
    }


ingest_settings = IngestSettings()
