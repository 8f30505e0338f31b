# stock_hub/main.py
# Stock Hub - portal ingestion, purchase ledger and stock reconciliation
from __future__ import annotations
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from stock_hub.settings import settings
from stock_hub.database import init_db, close_db, check_db_health
from stock_hub.errors import StockHubError
from stock_hub.scheduler import SyncScheduler
from stock_hub.services.orchestrator import FetchOrchestrator

from stock_hub.routers.sync import router as sync_router
from stock_hub.routers.purchases import router as purchases_router
from stock_hub.routers.inventory import router as inventory_router
from stock_hub.routers.reconciliation import router as reconciliation_router
from stock_hub.routers.item_alias import router as item_alias_router

# ---------------------------------------------------------
# Logging setup
# ---------------------------------------------------------
from stock_hub.logging_setup import setup_logging
setup_logging(settings)

logger = logging.getLogger(__name__)

VERSION = "1.0.0"

# ---------------------------------------------------------
# Lifespan: database, orchestrator, scheduler
# ---------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    await init_db()
    logger.info("Database initialized")

    if getattr(app.state, "orchestrator", None) is None:
        app.state.orchestrator = FetchOrchestrator()
    app.state.scheduler = None
    if settings.SCHEDULER_ENABLED:
        app.state.scheduler = SyncScheduler(app.state.orchestrator)
        app.state.scheduler.start()

    yield

    if app.state.scheduler is not None:
        await app.state.scheduler.stop()
    await app.state.orchestrator.shutdown()
    await close_db()
    logger.info("Database closed")

# ---------------------------------------------------------
# FastAPI app + CORS
# ---------------------------------------------------------
app = FastAPI(
    title="Stock Hub API",
    version=VERSION,
    description="Portal ingestion, purchase ledger and stock reconciliation",
    lifespan=lifespan,
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(StockHubError)
async def stock_hub_error_handler(request: Request, exc: StockHubError):
    if exc.http_status >= 500:
        logger.error(f"{request.method} {request.url.path} -> {exc.code}: {exc.message}")
    return JSONResponse(status_code=exc.http_status, content={"success": False, "error": exc.to_dict()})


app.include_router(sync_router)
app.include_router(purchases_router)
app.include_router(inventory_router)
app.include_router(reconciliation_router)
app.include_router(item_alias_router)

# ---------------------------------------------------------
# Endpoints
# ---------------------------------------------------------
@app.get("/health")
async def health():
    """Liveness with database status."""
    result = {"status": "ok", "version": VERSION}
    db_health = await check_db_health()
    result["database"] = db_health
    if db_health.get("status") != "healthy":
        result["status"] = "degraded"
    return result
