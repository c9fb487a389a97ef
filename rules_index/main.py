"""Application entry-point – creates the FastAPI app and runs startup tasks."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from rules_index.api.routes import router
from rules_index.config import settings
from rules_index.ingestion.pipeline import get_store

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: make sure the rules store schema exists."""
    logger.info("=== Checking rules store ===")
    store = get_store()
    sources = store.list_sources()
    logger.info("Rules store at %s holds %d source(s).", store.db_path, len(sources))
    logger.info("=== Startup complete ===")
    yield


app = FastAPI(
    title=settings.app_title,
    description=(
        "Turns uploaded tabletop-wargame rulebooks into pages, sections, "
        "chunks, detected tables and aggregated datasets."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

app.include_router(router, prefix="/api")
