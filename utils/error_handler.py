"""
Centralized Error Handling Module for Page Preview

Provides the capture/cache error taxonomy, consistent error responses,
logging, and user-friendly messages.
"""

import logging
import traceback
from typing import Dict, Any, Optional
from fastapi import status
from fastapi.responses import JSONResponse

logger = logging.getLogger("page_preview")


# =============================================================================
# ERROR HINTS - User-friendly troubleshooting suggestions
# =============================================================================

ERROR_HINTS = {
    "rate_limited": {
        "message": "Screenshot capture rate exceeded",
        "hint": "The capture backs off automatically. If it keeps happening, raise the scroll delay for this page.",
        "docs": "/docs/capture-settings"
    },
    "no_fragments": {
        "message": "No usable screenshot fragments were captured",
        "hint": "The page may have blocked capture or navigated away. Reload the page and retry the capture.",
        "docs": "/docs/capture-troubleshooting"
    },
    "timeout": {
        "message": "Capture timed out",
        "hint": "Very long or infinite-scroll pages can exceed the timeout. Lower the maximum capture height and retry.",
        "docs": "/docs/capture-settings"
    },
    "capture_in_progress": {
        "message": "A capture is already running for this page",
        "hint": "Wait for the current capture to finish before starting another one.",
        "docs": "/docs/capture"
    },
    "uncapturable": {
        "message": "This page cannot be captured",
        "hint": "Only http and https pages can be captured. Browser-internal pages are not supported.",
        "docs": "/docs/capture"
    },
    "store_corruption": {
        "message": "Preview cache was damaged and has been rebuilt",
        "hint": "Previously cached previews were discarded. They will be recaptured on demand.",
        "docs": "/docs/cache"
    },
    "scroll_position": {
        "message": "Page could not be scrolled to the requested position",
        "hint": "The page may use a custom scroll container. The preview may show seams or repeated content.",
        "docs": "/docs/capture-troubleshooting"
    },
}


def get_error_with_hint(error_type: str, original_message: str = "") -> dict:
    """
    Get error message with troubleshooting hint.

    Args:
        error_type: Key from ERROR_HINTS dictionary
        original_message: Original error message to include

    Returns:
        Dict with error, hint, and optional docs link
    """
    hint_info = ERROR_HINTS.get(error_type, {})
    return {
        "error": original_message or hint_info.get("message", "Unknown error"),
        "hint": hint_info.get("hint", ""),
        "docs": hint_info.get("docs", "")
    }


def classify_error(error_message: str) -> str:
    """
    Classify an error message to determine the appropriate hint type.

    Args:
        error_message: The error message to classify

    Returns:
        Error type key for ERROR_HINTS lookup
    """
    msg = error_message.lower()

    if "capture rate" in msg or "rate limit" in msg:
        return "rate_limited"
    if "no usable" in msg or "failed to load any images" in msg:
        return "no_fragments"
    if "timeout" in msg or "timed out" in msg:
        return "timeout"
    if "already in progress" in msg:
        return "capture_in_progress"
    if "cannot be captured" in msg or "not capturable" in msg:
        return "uncapturable"
    if "corrupt" in msg or "malformed" in msg:
        return "store_corruption"
    if "scroll" in msg:
        return "scroll_position"

    return ""


class PreviewError(Exception):
    """Base exception for all Page Preview errors"""

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)


class RateLimitedError(PreviewError):
    """Raised when the host capture primitive refuses a call due to its rate limit"""

    def __init__(self, message: str = "Exceeded screenshot capture rate"):
        super().__init__(message, code="RATE_LIMITED")


class TransientCaptureError(PreviewError):
    """Raised when a single fragment capture fails for a non rate-limit reason"""

    def __init__(self, message: str, position: Optional[tuple] = None):
        super().__init__(
            message, code="TRANSIENT_CAPTURE_FAILURE", details={"position": position}
        )


class PositionUnreachableError(PreviewError):
    """Raised when the viewport cannot be moved to a planned offset"""

    def __init__(self, wanted: tuple, actual: tuple):
        super().__init__(
            f"Scroll position not achieved: wanted {wanted}, got {actual}",
            code="POSITION_UNREACHABLE",
            details={"wanted": wanted, "actual": actual},
        )


class NoUsableFragmentsError(PreviewError):
    """Raised when none of the captured fragments could be decoded"""

    def __init__(self, fragment_count: int = 0):
        super().__init__(
            f"No usable fragments out of {fragment_count} captured",
            code="NO_USABLE_FRAGMENTS",
            details={"fragment_count": fragment_count},
        )


class AssemblyOversizeError(PreviewError):
    """Raised when an image exceeds raster limits and cannot be tiled"""

    def __init__(self, width: int, height: int):
        super().__init__(
            f"Image {width}x{height} exceeds raster limits",
            code="ASSEMBLY_OVERSIZE",
            details={"width": width, "height": height},
        )


class StoreCorruptionError(PreviewError):
    """Raised when the persistent preview store is structurally damaged"""

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message, code="STORE_CORRUPTION", details={"path": path})


class StoreUnavailableError(PreviewError):
    """Raised when the preview store is temporarily unusable (locked, I/O error); the data is intact"""

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message, code="STORE_UNAVAILABLE", details={"path": path})


class CaptureInProgressError(PreviewError):
    """Raised when a capture is requested for a subject that is already being captured"""

    def __init__(self, subject_id: str):
        super().__init__(
            f"Capture already in progress for '{subject_id}'",
            code="CAPTURE_IN_PROGRESS",
            details={"subject_id": subject_id},
        )


class CaptureTimeoutError(PreviewError):
    """Raised when a capture run exceeds its overall timeout"""

    def __init__(self, subject_id: str, timeout: float):
        super().__init__(
            f"Capture of '{subject_id}' timed out after {timeout:.1f}s",
            code="CAPTURE_TIMEOUT",
            details={"subject_id": subject_id, "timeout": timeout},
        )


class UncapturableSubjectError(PreviewError):
    """Raised for pages the host does not allow capturing (browser-internal URLs)"""

    def __init__(self, url: str):
        super().__init__(
            f"Page '{url}' cannot be captured",
            code="UNCAPTURABLE_SUBJECT",
            details={"url": url},
        )


class CaptureFailedError(PreviewError):
    """Raised when the page agent reports a fatal capture error"""

    def __init__(self, message: str, subject_id: Optional[str] = None):
        super().__init__(
            message, code="CAPTURE_FAILED", details={"subject_id": subject_id}
        )


def create_error_response(
    error: Exception,
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
    include_traceback: bool = False,
) -> JSONResponse:
    """
    Create a standardized error response

    Args:
        error: The exception that occurred
        status_code: HTTP status code
        include_traceback: Include full traceback in response (debug only)

    Returns:
        JSONResponse with error details
    """
    error_response = {
        "success": False,
        "error": {"message": str(error), "type": error.__class__.__name__},
    }

    if isinstance(error, PreviewError):
        error_response["error"]["code"] = error.code
        error_response["error"]["details"] = error.details
        error_response["error"]["user_message"] = get_user_friendly_message(error)
        hint = get_error_with_hint(classify_error(error.message), error.message)
        if hint["hint"]:
            error_response["error"]["hint"] = hint["hint"]

    if include_traceback:
        error_response["error"]["traceback"] = traceback.format_exc()

    logger.error(f"{error.__class__.__name__}: {error}", exc_info=True)

    return JSONResponse(status_code=status_code, content=error_response)


def handle_api_error(error: Exception) -> JSONResponse:
    """
    Handle API errors with appropriate status codes

    Args:
        error: The exception to handle

    Returns:
        JSONResponse with appropriate status code
    """
    if isinstance(error, CaptureInProgressError):
        return create_error_response(error, status.HTTP_409_CONFLICT)

    elif isinstance(error, (UncapturableSubjectError, ValueError)):
        return create_error_response(error, status.HTTP_400_BAD_REQUEST)

    elif isinstance(error, (NoUsableFragmentsError, AssemblyOversizeError)):
        return create_error_response(error, status.HTTP_422_UNPROCESSABLE_ENTITY)

    elif isinstance(error, CaptureTimeoutError):
        return create_error_response(error, status.HTTP_504_GATEWAY_TIMEOUT)

    elif isinstance(error, (StoreCorruptionError, StoreUnavailableError)):
        return create_error_response(error, status.HTTP_503_SERVICE_UNAVAILABLE)

    else:
        return create_error_response(error, status.HTTP_500_INTERNAL_SERVER_ERROR)


def get_user_friendly_message(error: Exception) -> str:
    """
    Get a user-friendly error message for frontend display

    Args:
        error: The exception

    Returns:
        User-friendly error message
    """
    if isinstance(error, NoUsableFragmentsError):
        return "Could not capture any part of the page. Please retry the capture."

    elif isinstance(error, AssemblyOversizeError):
        return "The page is too large to assemble. Lower the maximum capture height."

    elif isinstance(error, CaptureTimeoutError):
        return "The capture took too long and was stopped. Please retry."

    elif isinstance(error, CaptureInProgressError):
        return "This page is already being captured."

    elif isinstance(error, UncapturableSubjectError):
        return "This page cannot be captured."

    elif isinstance(error, StoreCorruptionError):
        return "The preview cache was reset. Previews will be recaptured."

    elif isinstance(error, StoreUnavailableError):
        return "The preview cache is busy. Please retry."

    elif isinstance(error, CaptureFailedError):
        return f"Capture failed: {error.message}"

    else:
        return f"An unexpected error occurred: {str(error)}"


def create_success_response(
    data: Any = None,
    message: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Create a standardized success response

    Args:
        data: The response data payload
        message: Optional success message

    Returns:
        Dict with success response format: {success: True, data: ..., message: ...}
    """
    response = {"success": True}
    if data is not None:
        response["data"] = data
    if message:
        response["message"] = message
    return response


class ErrorContext:
    """
    Context manager that re-raises foreign exceptions as a PreviewError subclass

    Usage:
        with ErrorContext("reading preview", raise_as=StoreCorruptionError, catch=sqlite3.DatabaseError):
            ...
    """

    def __init__(self, operation: str, raise_as: type = PreviewError, catch: tuple = (Exception,)):
        self.operation = operation
        self.raise_as = raise_as
        self.catch = catch

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is not None and issubclass(exc_type, self.catch):
            if not isinstance(exc_val, PreviewError):
                logger.error(f"Error during {self.operation}: {exc_val}")
                raise self.raise_as(f"Failed {self.operation}: {exc_val}") from exc_val
        return False
