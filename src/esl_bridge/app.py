"""
HTTP surface: the button webhook and the cron triggers for the sync queue
and the button log poll.

Run with:
    uvicorn esl_bridge.app:app
or:
    esl-bridge serve
"""

import hmac
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import structlog
from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.concurrency import run_in_threadpool

from esl_bridge import __version__
from esl_bridge.bridge import EslBridge
from esl_bridge.errors import BridgeError
from esl_bridge.webhook import WEBHOOK_PATH

logger = structlog.get_logger(__name__)

QUEUE_TRIGGER_PATH = "/api/cron/sync-queue"
BUTTON_POLL_PATH = "/api/cron/esl-buttons"
MAX_BATCH_LIMIT = 500
MAX_POLL_MINUTES = 24 * 60

router = APIRouter()


def get_bridge(request: Request) -> EslBridge:
    return request.app.state.bridge


def check_cron_secret(
    bridge: EslBridge = Depends(get_bridge),
    authorization: str | None = Header(default=None),
) -> bool:
    secret = bridge.settings.cron_secret
    if not secret:
        return True
    return hmac.compare_digest(authorization or "", f"Bearer {secret}")


@router.post(WEBHOOK_PATH)
async def button_event(request: Request, bridge: EslBridge = Depends(get_bridge)):
    # Always 200: the platform retries anything else.
    try:
        payload = await request.json()
    except ValueError:
        logger.error("Failed to parse webhook body")
        return JSONResponse({"status": "error", "message": "Invalid JSON body"})

    body = await run_in_threadpool(bridge.webhook.handle, payload)
    return JSONResponse(body)


@router.get(WEBHOOK_PATH)
def button_event_status(bridge: EslBridge = Depends(get_bridge)):
    return bridge.webhook.describe()


@router.api_route(QUEUE_TRIGGER_PATH, methods=["GET", "POST"])
def process_sync_queue(
    bridge: EslBridge = Depends(get_bridge),
    authorized: bool = Depends(check_cron_secret),
    limit: int | None = Query(default=None, ge=1, le=MAX_BATCH_LIMIT),
):
    if not authorized:
        return JSONResponse({"error": "Unauthorized"}, status_code=401)

    logger.info("Starting sync queue processing")
    start_time = time.monotonic()
    try:
        results = bridge.process_queue(limit)
    except SQLAlchemyError as e:
        logger.error("Error processing sync queue", error=str(e))
        return JSONResponse(
            {"error": "Failed to process sync queue", "message": str(e)},
            status_code=500,
        )
    duration_ms = round((time.monotonic() - start_time) * 1000)
    logger.info("Sync queue processed", duration_ms=duration_ms, **results.model_dump())

    return {
        "success": True,
        **results.model_dump(),
        "durationMs": duration_ms,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.api_route(BUTTON_POLL_PATH, methods=["GET", "POST"])
def poll_button_logs(
    bridge: EslBridge = Depends(get_bridge),
    authorized: bool = Depends(check_cron_secret),
    minutes: int | None = Query(default=None, ge=1, le=MAX_POLL_MINUTES),
):
    if not authorized:
        return JSONResponse({"error": "Unauthorized"}, status_code=401)

    start_time = time.monotonic()
    try:
        result = bridge.poll_button_logs(minutes)
    except BridgeError as e:
        logger.error("Button log poll failed", error=str(e))
        return JSONResponse(
            {"error": "Failed to sync ESL button events", "details": str(e)},
            status_code=503,
        )
    except SQLAlchemyError as e:
        logger.error("Button log poll failed", error=str(e))
        return JSONResponse(
            {"error": "Failed to sync ESL button events", "details": str(e)},
            status_code=500,
        )

    return {
        "success": True,
        "totalEvents": result.total_events,
        "totalProcessed": result.processed,
        "duplicates": result.duplicates,
        "skipped": result.skipped,
        "errors": result.errors,
        "wokenTags": result.woken_tags,
        "durationMs": round((time.monotonic() - start_time) * 1000),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/api/sync-queue/stats")
def sync_queue_stats(
    bridge: EslBridge = Depends(get_bridge),
    authorized: bool = Depends(check_cron_secret),
):
    if not authorized:
        return JSONResponse({"error": "Unauthorized"}, status_code=401)
    return {"queue": bridge.queue.stats(), "storeId": bridge.stores.cached()}


def create_app(bridge: EslBridge | None = None) -> FastAPI:
    """Build the app; without a bridge, one is created from settings on startup."""
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if bridge is not None:
            app.state.bridge = bridge
            yield
            return
        owned = EslBridge.from_settings()
        owned.create_schema()
        app.state.bridge = owned
        try:
            yield
        finally:
            owned.close()

    app = FastAPI(title="ESL Bridge", version=__version__, lifespan=lifespan)
    app.include_router(router)
    if bridge is not None:
        app.state.bridge = bridge
    return app


app = create_app()
