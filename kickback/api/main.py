"""
kickback.api.main — FastAPI application entry point
===================================================

Read-only view over balances, the coin ledger and the chat queue.  There
are no write routes: chat events enter through the ingestion service and
coins are only ever credited by the worker.

Run with::

    uvicorn kickback.api.main:app --port 8000
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI

load_dotenv()

from kickback import __version__  # noqa: E402
from kickback.api.deps import get_engine  # noqa: E402
from kickback.api.routes.public import router as public_router  # noqa: E402

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle — warm the DB engine."""
    engine = get_engine()
    logger.info("Kickback API started — engine ready (%s)", engine.url.database)
    yield
    logger.info("Kickback API shutting down")


app = FastAPI(
    title="Kickback API",
    version=__version__,
    lifespan=lifespan,
)

app.include_router(public_router, prefix="/api")


@app.get("/api/health")
def health():
    return {"status": "ok"}
