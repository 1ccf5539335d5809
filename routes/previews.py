"""
Preview Routes - Capture, Cache and Batch Management

Provides endpoints for full-page previews:
- Capture a page (cache-first) and fetch the stitched image or a thumbnail
- List, delete and clear cached previews
- Manual expiry sweep and quota enforcement, cache statistics
- Load-all batches with cooperative cancellation
- Activity status of the tool
"""

from fastapi import APIRouter, HTTPException, Response
from pydantic import BaseModel, Field
from typing import List, Optional
import asyncio
import hashlib
import logging
from routes import get_deps
from capture_orchestrator import CaptureSubject
from image_assembler import compress_image, make_thumbnail
from capture_heuristics import is_capturable_url
from utils.error_handler import PreviewError, UncapturableSubjectError, handle_api_error, create_success_response

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["previews"])


# Request models
class CaptureOverrides(BaseModel):
    scroll_delay_ms: Optional[int] = Field(None, ge=0)
    initial_delay_multiplier: Optional[float] = Field(None, ge=1.0)
    max_capture_height: Optional[int] = Field(None, gt=0)
    max_positions: Optional[int] = Field(None, gt=0)
    max_capture_attempts: Optional[int] = Field(None, ge=1)
    backoff_multiplier: Optional[float] = Field(None, gt=1.0)
    backoff_floor_ms: Optional[float] = Field(None, gt=0)
    backoff_ceiling_ms: Optional[float] = Field(None, gt=0)


class CaptureRequest(BaseModel):
    url: str
    subject_id: Optional[str] = None
    title: Optional[str] = None
    icon_ref: Optional[str] = None
    force: bool = False
    settings: Optional[CaptureOverrides] = None


class LoadAllRequest(BaseModel):
    urls: List[str]
    settings: Optional[CaptureOverrides] = None


def subject_id_for(url: str) -> str:
    """Stable subject id for a URL"""
    return hashlib.sha1(url.encode("utf-8")).hexdigest()[:16]


def _overrides(settings: Optional[CaptureOverrides]) -> dict:
    if settings is None:
        return {}
    return settings.model_dump(exclude_none=True)


def _require_cache():
    deps = get_deps()
    if not deps.preview_cache:
        raise HTTPException(status_code=503, detail="Preview cache not initialized")
    return deps.preview_cache


# =============================================================================
# CACHE ENDPOINTS
# =============================================================================

@router.get("/previews")
async def list_previews():
    """List cached previews (metadata only)"""
    cache = _require_cache()
    previews = await cache.list_metadata()
    return {"success": True, "previews": previews, "count": len(previews)}


@router.get("/previews/stats")
async def get_preview_stats():
    """Cache metrics, storage estimate and capture diagnostics"""
    deps = get_deps()
    cache = _require_cache()

    stats = {
        "cache": cache.get_metrics(),
        "storage": await cache.storage_estimate(),
    }
    if deps.orchestrator:
        stats["capture"] = deps.orchestrator.get_diagnostics()
    return create_success_response(data=stats)


@router.post("/previews/sweep")
async def sweep_expired_previews():
    """Remove expired previews now (no-op while the tool is active)"""
    cache = _require_cache()
    removed = await cache.sweep_expired()
    return create_success_response(data={"removed": removed}, message=f"Removed {removed} expired previews")


@router.post("/previews/enforce-quota")
async def enforce_preview_quota():
    """Evict oldest previews beyond the cache budget"""
    cache = _require_cache()
    removed = await cache.enforce_quota()
    return create_success_response(data={"removed": removed}, message=f"Evicted {removed} previews")


@router.delete("/previews")
async def clear_previews():
    cache = _require_cache()
    removed = await cache.clear_all()
    return create_success_response(data={"removed": removed}, message="Preview cache cleared")


# =============================================================================
# LOAD ALL
# =============================================================================

@router.post("/previews/load-all")
async def start_load_all(request: LoadAllRequest):
    """Start a background batch capture of several pages"""
    deps = get_deps()
    if not deps.batch_loader or not deps.browser_session:
        raise HTTPException(status_code=503, detail="Batch loader not initialized")
    if deps.batch_loader.running:
        raise HTTPException(status_code=409, detail="Load all already running")

    async def run_batch():
        subjects = [
            CaptureSubject(subject_id=subject_id_for(url), driver=None, url=url)
            for url in request.urls
        ]
        try:
            await deps.batch_loader.load_all(
                subjects,
                _overrides(request.settings),
                open_driver=deps.browser_session.open,
                close_driver=deps.browser_session.close,
            )
        except Exception as e:
            logger.error(f"[API] Load all failed: {e}", exc_info=True)

    asyncio.create_task(run_batch())
    logger.info(f"[API] Load all started for {len(request.urls)} pages")
    return create_success_response(data={"total": len(request.urls)}, message="Load all started")


@router.get("/previews/load-all")
async def get_load_all_status():
    deps = get_deps()
    if not deps.batch_loader:
        raise HTTPException(status_code=503, detail="Batch loader not initialized")
    current = deps.batch_loader.current
    return {
        "running": deps.batch_loader.running,
        "result": current.to_dict() if current else None,
    }


@router.delete("/previews/load-all")
async def cancel_load_all():
    deps = get_deps()
    if not deps.batch_loader:
        raise HTTPException(status_code=503, detail="Batch loader not initialized")
    deps.batch_loader.cancel()
    return create_success_response(message="Cancellation requested")


# =============================================================================
# CAPTURE
# =============================================================================

@router.post("/previews/capture")
async def capture_preview(request: CaptureRequest):
    """
    Return a preview for a page, capturing it when not cached.

    Returns the preview dimensions and capture diagnostics; fetch the image
    from /api/previews/{subject_id}.
    """
    deps = get_deps()
    if not deps.orchestrator or not deps.browser_session:
        raise HTTPException(status_code=503, detail="Capture pipeline not initialized")

    subject_id = request.subject_id or subject_id_for(request.url)
    driver = None
    try:
        if not is_capturable_url(request.url):
            raise UncapturableSubjectError(request.url)
        report = None
        if not request.force:
            report = await deps.orchestrator.cached_report(subject_id)
        if report is None:
            driver = await deps.browser_session.open(request.url)
            subject = CaptureSubject(
                subject_id=subject_id,
                driver=driver,
                title=request.title or "",
                url=request.url,
                icon_ref=request.icon_ref,
            )
            report = await deps.orchestrator.capture(subject, _overrides(request.settings))
    except PreviewError as e:
        return handle_api_error(e)
    finally:
        if driver is not None:
            await deps.browser_session.close(driver)

    result = report.result
    truncated = None
    if report.truncated:
        truncated = {
            "max_height": report.truncated.max_height,
            "actual_height": report.truncated.actual_height,
            "reason": report.truncated.reason,
        }

    return create_success_response(data={
        "subject_id": subject_id,
        "width": result.width,
        "height": result.height,
        "partial": result.partial,
        "scale": result.scale,
        "from_cache": report.from_cache,
        "truncated": truncated,
        "scroll_issues": len(report.scroll_issues),
        "position_failures": [
            {"position": f.position, "attempts": f.attempts, "error": f.error}
            for f in report.position_failures
        ],
        "elapsed": round(report.elapsed, 2),
    })


# =============================================================================
# SINGLE PREVIEW
# =============================================================================

@router.get("/previews/{subject_id}")
async def get_preview(subject_id: str, format: str = "png"):
    """
    Stitched image for a subject (404 when absent or expired).

    format=jpeg re-encodes the PNG for smaller downloads.
    """
    cache = _require_cache()
    entry = await cache.get(subject_id)
    if entry is None:
        raise HTTPException(status_code=404, detail=f"No preview for '{subject_id}'")

    headers = {"X-Preview-Timestamp": str(entry.metadata.timestamp)}
    if format == "jpeg":
        content = await asyncio.to_thread(compress_image, entry.image_data)
        return Response(content=content, media_type="image/jpeg", headers=headers)
    if format != "png":
        raise HTTPException(status_code=400, detail=f"Unsupported format '{format}'")
    return Response(content=entry.image_data, media_type="image/png", headers=headers)


@router.get("/previews/{subject_id}/thumbnail")
async def get_preview_thumbnail(subject_id: str, max_dimension: int = 400):
    cache = _require_cache()
    entry = await cache.get(subject_id)
    if entry is None:
        raise HTTPException(status_code=404, detail=f"No preview for '{subject_id}'")
    thumbnail = await asyncio.to_thread(make_thumbnail, entry.image_data, max_dimension)
    return Response(content=thumbnail, media_type="image/jpeg")


@router.delete("/previews/{subject_id}")
async def delete_preview(subject_id: str):
    cache = _require_cache()
    removed = await cache.remove(subject_id)
    if not removed:
        raise HTTPException(status_code=404, detail=f"No preview for '{subject_id}'")
    return create_success_response(message=f"Preview '{subject_id}' deleted")


# =============================================================================
# ACTIVITY
# =============================================================================

@router.get("/activity")
async def get_activity():
    deps = get_deps()
    if not deps.activity_tracker:
        raise HTTPException(status_code=503, detail="Activity tracker not initialized")
    return deps.activity_tracker.get_status()


@router.post("/activity")
async def record_activity():
    """Explicit heartbeat from a client UI"""
    deps = get_deps()
    if not deps.activity_tracker:
        raise HTTPException(status_code=503, detail="Activity tracker not initialized")
    deps.activity_tracker.update_activity()
    return deps.activity_tracker.get_status()
