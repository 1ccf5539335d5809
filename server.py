"""
Page Preview - FastAPI Server
Version: 0.1.0

Full-page capture service: scroll-and-stitch capture of web pages with an
activity-aware preview cache.
"""

import logging
import os
from pathlib import Path
from typing import Optional
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn

from activity_tracker import ActivityTracker
from batch_loader import BatchLoader
from capture_models import CacheSettings, CaptureSettings
from capture_orchestrator import CaptureOrchestrator
from fragment_acquirer import FragmentAcquirer
from image_assembler import ImageAssembler
from page_driver import BrowserSession
from preview_store import PreviewStore
from smart_cache import SmartResultCache
from utils.error_handler import PreviewError, handle_api_error
import routes
from routes import health, previews

VERSION = "0.1.0"

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='[%(asctime)s] %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)

logger = logging.getLogger(__name__)

# Configuration (loaded from environment)
DATA_DIR = os.getenv("DATA_DIR", "data")
PREVIEW_DB_PATH = os.getenv("PREVIEW_DB_PATH", str(Path(DATA_DIR) / "previews.db"))
ACTIVITY_STATE_PATH = os.getenv("ACTIVITY_STATE_PATH", str(Path(DATA_DIR) / "activity_state.json"))
CACHE_MAX_ENTRIES = int(os.getenv("CACHE_MAX_ENTRIES", "50"))
CACHE_INACTIVITY_MINUTES = float(os.getenv("CACHE_INACTIVITY_MINUTES", "30"))
CACHE_QUOTA_MB = int(os.getenv("CACHE_QUOTA_MB", "500"))
CAPTURE_VIEWPORT_WIDTH = int(os.getenv("CAPTURE_VIEWPORT_WIDTH", "1280"))
CAPTURE_VIEWPORT_HEIGHT = int(os.getenv("CAPTURE_VIEWPORT_HEIGHT", "800"))
CAPTURE_HEADLESS = os.getenv("CAPTURE_HEADLESS", "true").lower() == "true"
CAPTURE_RATE_PER_SECOND = int(os.getenv("CAPTURE_RATE_PER_SECOND", "2"))

# Create FastAPI app
app = FastAPI(
    title="Page Preview API",
    version=VERSION,
    description="Full-page web capture with an activity-aware preview cache"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Preview-Timestamp"]
)


@app.middleware("http")
async def track_activity(request: Request, call_next):
    """Every API call counts as use of the tool"""
    tracker = routes.get_deps().activity_tracker
    if tracker and request.url.path.startswith("/api") and request.url.path != "/api/health":
        tracker.update_activity()
    return await call_next(request)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Log and return detailed validation errors"""
    logger.error(f"[VALIDATION ERROR] {request.method} {request.url}: {exc.errors()}")
    return JSONResponse(
        status_code=422,
        content={"success": False, "detail": exc.errors()}
    )


@app.exception_handler(PreviewError)
async def preview_exception_handler(request: Request, exc: PreviewError):
    return handle_api_error(exc)


app.include_router(health.router)
app.include_router(previews.router)

# Services (configured on startup)
activity_tracker: Optional[ActivityTracker] = None
preview_cache: Optional[SmartResultCache] = None
browser_session: Optional[BrowserSession] = None


async def start_activity_and_cache(tracker: ActivityTracker, cache: SmartResultCache):
    """
    Start the tracker and cache so the startup sweep sees the persisted
    activity state, before this run's own startup counts as activity.
    """
    tracker.load()
    await cache.start()
    await tracker.start()


@app.on_event("startup")
async def startup_event():
    """Create services and start background tasks"""
    global activity_tracker, preview_cache, browser_session

    logger.info(f"[Server] Starting Page Preview v{VERSION}")
    logger.info(f"[Server] Data dir: {DATA_DIR}, cache db: {PREVIEW_DB_PATH}")

    cache_settings = CacheSettings(
        inactivity_window_seconds=CACHE_INACTIVITY_MINUTES * 60,
        max_entries=CACHE_MAX_ENTRIES,
        quota_bytes=CACHE_QUOTA_MB * 1024 * 1024,
    )

    activity_tracker = ActivityTracker(
        state_file=ACTIVITY_STATE_PATH,
        inactivity_window=cache_settings.inactivity_window_seconds,
    )
    preview_cache = SmartResultCache(PreviewStore(PREVIEW_DB_PATH), activity_tracker, cache_settings)
    await start_activity_and_cache(activity_tracker, preview_cache)

    browser_session = BrowserSession(
        viewport_width=CAPTURE_VIEWPORT_WIDTH,
        viewport_height=CAPTURE_VIEWPORT_HEIGHT,
        headless=CAPTURE_HEADLESS,
    )

    orchestrator = CaptureOrchestrator(
        preview_cache,
        acquirer=FragmentAcquirer(max_calls_per_second=CAPTURE_RATE_PER_SECOND),
        assembler=ImageAssembler(),
        settings=CaptureSettings(),
    )

    routes.set_dependencies(
        activity_tracker=activity_tracker,
        preview_cache=preview_cache,
        orchestrator=orchestrator,
        batch_loader=BatchLoader(orchestrator),
        browser_session=browser_session,
        version=VERSION,
    )
    logger.info("[Server] ✅ Capture pipeline initialized")


@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup on shutdown"""
    logger.info("[Server] Shutting down Page Preview...")

    deps = routes.get_deps()
    if deps.batch_loader:
        deps.batch_loader.cancel()
    if preview_cache:
        await preview_cache.stop()
        preview_cache.store.close()
    if activity_tracker:
        await activity_tracker.stop()
    if browser_session:
        await browser_session.stop()

    logger.info("[Server] Shutdown complete")


if __name__ == "__main__":
    port = int(os.getenv("PORT", 3000))

    logger.info(f"Starting Page Preview v{VERSION}")
    logger.info(f"API: http://localhost:{port}/api")

    uvicorn.run(
        app,
        host="0.0.0.0",
        port=port,
        log_level="info"
    )
