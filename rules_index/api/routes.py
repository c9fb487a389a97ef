"""REST API routes for the Campaign Rules Index."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Iterator

from fastapi import APIRouter, Depends, HTTPException, Response
from pydantic import BaseModel, Field

from rules_index.ingestion.content import Content, table_content
from rules_index.ingestion.errors import (
    ContentValidationError,
    IndexingInProgressError,
    RulesIndexError,
    SourceNotFoundError,
)
from rules_index.ingestion.pipeline import get_store, index_source
from rules_index.ingestion.schemas import (
    Chunk,
    Dataset,
    DatasetRow,
    IndexingResult,
    Page,
    Section,
    Source,
    SourceType,
    Table,
)
from rules_index.ingestion.store import RulesStore
from rules_index.services import source_registry

logger = logging.getLogger(__name__)

router = APIRouter()


# ---------------------------------------------------------------------------
# Request / Response schemas
# ---------------------------------------------------------------------------

class CreateSourceRequest(BaseModel):
    campaign_id: str = Field(..., min_length=1)
    type: SourceType = SourceType.PASTED_TEXT
    title: str = Field(..., min_length=1)
    tags: list[str] = Field(default_factory=list)
    text: str | None = Field(None, description="Rules text for a pasted_text source.")
    payload: dict[str, Any] | None = Field(None, description="Page dump for an external_json source.")


class UpdateSourceRequest(BaseModel):
    title: str | None = Field(None, min_length=1)
    tags: list[str] | None = None


class SourceInputRequest(BaseModel):
    text: str | None = None
    pages: list[str] | None = None
    payload: dict[str, Any] | None = None


class HealthResponse(BaseModel):
    status: str
    sources: int


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------

@contextmanager
def _http_errors() -> Iterator[None]:
    try:
        yield
    except SourceNotFoundError as exc:
        raise HTTPException(status_code=404, detail=exc.message) from exc
    except IndexingInProgressError as exc:
        raise HTTPException(status_code=409, detail=exc.message) from exc
    except (ContentValidationError, RulesIndexError) as exc:
        raise HTTPException(status_code=422, detail=exc.message) from exc


def _input_pages(body: SourceInputRequest | CreateSourceRequest) -> list[str] | None:
    """Raw pages from whichever input field is set, or ``None`` when none is."""
    if getattr(body, "pages", None) is not None:
        return body.pages
    if body.payload is not None:
        return source_registry.pages_from_json(body.payload)
    if body.text is not None:
        from rules_index.ingestion.text_cleaner import split_into_pseudo_pages

        return split_into_pseudo_pages(body.text)
    return None


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.get("/health", response_model=HealthResponse, tags=["system"])
def health_check(store: RulesStore = Depends(get_store)):
    """Return service health and the number of registered sources."""
    return HealthResponse(status="ok", sources=len(store.list_sources()))


@router.post("/sources", response_model=Source, status_code=201, tags=["sources"])
def create_source(body: CreateSourceRequest, store: RulesStore = Depends(get_store)):
    """Register a pasted-text or external-JSON source together with its input."""
    if body.type == SourceType.PDF:
        raise HTTPException(status_code=422, detail="PDF sources are registered through the CLI")
    with _http_errors():
        pages = _input_pages(body)
        source = source_registry.create_source(store, body.campaign_id, body.type, body.title, body.tags)
        if pages is not None:
            source = source_registry.set_input(store, source.id, pages)
    return source


@router.get("/sources", response_model=list[Source], tags=["sources"])
def list_sources(campaign_id: str | None = None, store: RulesStore = Depends(get_store)):
    return source_registry.list_sources(store, campaign_id)


@router.get("/sources/{source_id}", response_model=Source, tags=["sources"])
def get_source(source_id: str, store: RulesStore = Depends(get_store)):
    with _http_errors():
        return source_registry.get_source(store, source_id)


@router.patch("/sources/{source_id}", response_model=Source, tags=["sources"])
def update_source(source_id: str, body: UpdateSourceRequest, store: RulesStore = Depends(get_store)):
    with _http_errors():
        return source_registry.update_source(store, source_id, title=body.title, tags=body.tags)


@router.delete("/sources/{source_id}", status_code=204, tags=["sources"])
def delete_source(source_id: str, store: RulesStore = Depends(get_store)):
    """Delete a source and everything indexed from it."""
    with _http_errors():
        source_registry.delete_source(store, source_id)
    return Response(status_code=204)


@router.put("/sources/{source_id}/input", response_model=Source, tags=["sources"])
def replace_input(source_id: str, body: SourceInputRequest, store: RulesStore = Depends(get_store)):
    """Replace the raw input; takes effect on the next index run."""
    with _http_errors():
        pages = _input_pages(body)
        if pages is None:
            raise HTTPException(status_code=422, detail="Provide one of 'text', 'pages' or 'payload'")
        return source_registry.set_input(store, source_id, pages)


@router.post("/sources/{source_id}/index", response_model=IndexingResult, tags=["indexing"])
def run_index(source_id: str, store: RulesStore = Depends(get_store)):
    """Index (or re-index) a source. 409 while another run holds the lease."""
    with _http_errors():
        return index_source(source_id, store=store)


@router.get("/sources/{source_id}/pages", response_model=list[Page], tags=["index"])
def list_pages(source_id: str, store: RulesStore = Depends(get_store)):
    with _http_errors():
        source_registry.get_source(store, source_id)
    return store.list_pages(source_id)


@router.get("/sources/{source_id}/sections", response_model=list[Section], tags=["index"])
def list_sections(source_id: str, store: RulesStore = Depends(get_store)):
    with _http_errors():
        source_registry.get_source(store, source_id)
    return store.list_sections(source_id)


@router.get("/sources/{source_id}/chunks", response_model=list[Chunk], tags=["index"])
def list_chunks(source_id: str, store: RulesStore = Depends(get_store)):
    with _http_errors():
        source_registry.get_source(store, source_id)
    return store.list_chunks(source_id)


@router.get("/sources/{source_id}/tables", response_model=list[Table], tags=["index"])
def list_tables(source_id: str, store: RulesStore = Depends(get_store)):
    with _http_errors():
        source_registry.get_source(store, source_id)
    return store.list_tables(source_id)


@router.get("/sources/{source_id}/datasets", response_model=list[Dataset], tags=["index"])
def list_datasets(source_id: str, store: RulesStore = Depends(get_store)):
    with _http_errors():
        source_registry.get_source(store, source_id)
    return store.list_datasets(source_id)


@router.get("/datasets/{dataset_id}/rows", response_model=list[DatasetRow], tags=["index"])
def list_dataset_rows(dataset_id: str, store: RulesStore = Depends(get_store)):
    if store.get_dataset(dataset_id) is None:
        raise HTTPException(status_code=404, detail=f"Dataset not found: {dataset_id}")
    return store.list_dataset_rows(dataset_id)


@router.get("/tables/{table_id}/content", response_model=Content, tags=["index"])
def get_table_content(table_id: str, store: RulesStore = Depends(get_store)):
    """Return a stored table as its typed content variant."""
    table = store.get_table(table_id)
    if table is None:
        raise HTTPException(status_code=404, detail=f"Table not found: {table_id}")
    with _http_errors():
        return table_content(table)
