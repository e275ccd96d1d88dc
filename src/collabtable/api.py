"""FastAPI application: health probe, sync routes and read-only table views."""

import asyncio
import logging

from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from collabtable import db, notifications
from collabtable.auth import UnauthorizedError, get_device_id, require_password
from collabtable.clock import now_ms
from collabtable.config import config
from collabtable.sync import engine, router as sync_router

logger = logging.getLogger("collabtable.api")

STATS_INTERVAL = 30
PRUNE_INTERVAL = 3600

app = FastAPI(title="collabtable", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(UnauthorizedError)
async def unauthorized_handler(request: Request, exc: UnauthorizedError):
    return JSONResponse(status_code=401, content={"error": "Unauthorized", "message": exc.message})


async def prune_loop():
    """Background task to periodically prune old notification events."""
    while True:
        try:
            days = config.retention_days
            if days > 0:
                deleted = await notifications.prune_notifications(days)
                if deleted > 0:
                    logger.info(f"Pruned {deleted} notifications older than {days} days.")
        except Exception as e:
            logger.error(f"Error in prune_loop: {e}")

        await asyncio.sleep(PRUNE_INTERVAL)


async def stats_loop():
    """Log sync throughput every STATS_INTERVAL seconds when there was any."""
    while True:
        await asyncio.sleep(STATS_INTERVAL)
        line = engine.stats.report()
        if line:
            logger.info(f"Last {STATS_INTERVAL}s: {line}")


@app.on_event("startup")
async def startup():
    await db.init_db()
    logger.info(f"Database ready at {db.db_path()}")
    app.state.background_tasks = [
        asyncio.create_task(prune_loop()),
        asyncio.create_task(stats_loop()),
    ]


@app.on_event("shutdown")
async def shutdown():
    tasks = getattr(app.state, "background_tasks", [])
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
    app.state.background_tasks = []
    logger.info("Background tasks stopped.")


@app.get("/health")
async def health():
    """Unauthenticated connectivity probe."""
    return {"status": "ok", "timestamp": now_ms()}


api_router = APIRouter(prefix="/api", dependencies=[Depends(require_password)])


@api_router.get("/lists")
async def lists():
    return await db.get_lists()


@api_router.get("/lists/{list_id}")
async def get_list(list_id: str):
    row = await db.get_list(list_id)
    if row is None:
        return JSONResponse(status_code=404, content={"error": "List not found"})
    return row


@api_router.get("/lists/{list_id}/fields")
async def list_fields(list_id: str):
    return await db.get_fields_for_list(list_id)


@api_router.get("/lists/{list_id}/items")
async def list_items(list_id: str):
    return await db.get_items_for_list(list_id)


@api_router.get("/items/{item_id}/values")
async def item_values(item_id: str):
    return await db.get_values_for_item(item_id)


@api_router.get("/notifications/poll")
async def poll_notifications(
    since: int = Query(0),
    device_id: str | None = Depends(get_device_id),
):
    """Change events from other devices newer than ``since`` (ms)."""
    try:
        rows, next_since = await notifications.poll_page(since, device_id)
    except Exception as e:
        logger.error(f"Notification poll failed: {e}")
        return JSONResponse(status_code=500, content={"error": "Failed to poll notifications"})
    events = [{k: v for k, v in row.items() if v is not None} for row in rows]
    return {"notifications": events, "serverTimestamp": next_since}


app.include_router(api_router)
app.include_router(sync_router)
