"""
KikiStatus main entry point.

Starts a FastAPI HTTP server that:
  1. Serves the current status snapshot at /status (public, CORS-open, never cached)
  2. Serves the same file at /static/<file name> for the static-fallback source
  3. Optionally runs the activity watcher loop in the background
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import FileResponse, JSONResponse
from starlette.responses import Response

from kikistatus.config import HOST, PORT, STATUS_FILE, WATCHER_ENABLED
from kikistatus.classifier import ActivityClassifier
from kikistatus.hooks import build_hooks
from kikistatus.publisher import SnapshotPublisher
from kikistatus.store import SnapshotReadError, read_snapshot
from kikistatus.watcher import StatusWatcher

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("kikistatus")


@asynccontextmanager
async def lifespan(app: FastAPI):
    watcher = None
    task = None
    # The publisher writes a temp file beside the status file
    Path(STATUS_FILE).parent.mkdir(parents=True, exist_ok=True)
    if WATCHER_ENABLED:
        watcher = StatusWatcher(ActivityClassifier(), SnapshotPublisher(STATUS_FILE, build_hooks()))
        task = asyncio.create_task(watcher.run(), name="kiki-watcher")
    logger.info(f"KikiStatus running at http://{HOST}:{PORT}/status")
    yield
    if watcher is not None:
        watcher.stop()
        await task


app = FastAPI(
    title="KikiStatus",
    description="Public read-only activity status feed.",
    version="0.1.0",
    lifespan=lifespan,
)


# ─────────────────────────────────────────────
# Cross-origin access and cache suppression
# ─────────────────────────────────────────────

STATUS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
    "Cache-Control": "no-cache, no-store, must-revalidate",
}


@app.middleware("http")
async def status_headers(request: Request, call_next):
    """Every response is uncacheable and readable from any origin; pre-flights get an empty 200."""
    if request.method == "OPTIONS":
        response = Response(status_code=200)
    else:
        response = await call_next(request)
    response.headers.update(STATUS_HEADERS)
    return response


# ─────────────────────────────────────────────
# Status feed
# ─────────────────────────────────────────────

@app.get("/status")
async def api_status():
    try:
        snapshot = await asyncio.to_thread(read_snapshot, STATUS_FILE)
    except SnapshotReadError as e:
        logger.warning(str(e))
        return JSONResponse({"error": "Failed to read status"}, status_code=500)
    return snapshot.to_wire()


# ─────────────────────────────────────────────
# Health check
# ─────────────────────────────────────────────

@app.get("/health")
async def health():
    return {"status": "ok", "service": "KikiStatus"}


# ─────────────────────────────────────────────
# Static fallback: the raw status file, nothing else from its directory
# ─────────────────────────────────────────────

@app.get("/static/{filename}")
async def static_status(filename: str):
    path = Path(STATUS_FILE)
    if filename != path.name or not path.is_file():
        return JSONResponse({"detail": "Not Found"}, status_code=404)
    return FileResponse(path, media_type="application/json")


# ─────────────────────────────────────────────
# Entry point
# ─────────────────────────────────────────────

if __name__ == "__main__":
    uvicorn.run("kikistatus.main:app", host=HOST, port=PORT, reload=True)
