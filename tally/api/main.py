"""
tally.api.main — FastAPI application entry point
==================================================

Run with::

    uvicorn tally.api.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

load_dotenv()

from tally import __version__  # noqa: E402
from tally.api.deps import get_engine, get_event_bus  # noqa: E402
from tally.api.routes.admin import router as admin_router  # noqa: E402
from tally.api.routes.events import router as events_router  # noqa: E402
from tally.api.routes.ledger import router as ledger_router  # noqa: E402
from tally.database.engine import init_db  # noqa: E402
from tally.errors import (  # noqa: E402
    AccountFrozenError,
    AlreadyCheckedInError,
    AmountOutOfRangeError,
    DuplicateTransactionError,
    InsufficientFundsError,
    InvalidAmountError,
    LedgerError,
    SelfTransferError,
    UnknownCurrencyError,
)

logger = logging.getLogger(__name__)

_LEDGER_ERROR_STATUS: dict[type[LedgerError], int] = {
    InvalidAmountError: status.HTTP_400_BAD_REQUEST,
    SelfTransferError: status.HTTP_400_BAD_REQUEST,
    AmountOutOfRangeError: status.HTTP_400_BAD_REQUEST,
    UnknownCurrencyError: status.HTTP_404_NOT_FOUND,
    InsufficientFundsError: status.HTTP_409_CONFLICT,
    AccountFrozenError: status.HTTP_409_CONFLICT,
    DuplicateTransactionError: status.HTTP_409_CONFLICT,
    AlreadyCheckedInError: status.HTTP_409_CONFLICT,
}


def _cors_origins() -> list[str]:
    """Resolve allowed CORS origins from env with safe defaults.

    Priority:
      1) CORS_ALLOW_ORIGINS (comma-separated)
      2) FRONTEND_URL (single origin)
    """
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if raw:
        return [origin.strip().rstrip("/") for origin in raw.split(",") if origin.strip()]

    frontend_url = os.getenv("FRONTEND_URL", "").strip()
    if frontend_url:
        return [frontend_url.rstrip("/")]

    return []


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle — ensure schema, build the event bus."""
    engine = get_engine()
    init_db(engine)
    get_event_bus()
    logger.info("Tally API started — engine ready (%s)", engine.url.database)
    yield
    logger.info("Tally API shutting down")


app = FastAPI(
    title="Tally Ledger API",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    code = _LEDGER_ERROR_STATUS.get(type(exc), status.HTTP_400_BAD_REQUEST)
    logger.info("%s %s rejected: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=code, content={"detail": str(exc)})


# Mount routers
app.include_router(ledger_router, prefix="/api")
app.include_router(admin_router, prefix="/api")
app.include_router(events_router, prefix="/api")


@app.get("/api/health")
def health():
    return {"status": "ok"}
