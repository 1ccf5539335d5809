"""
Page Preview - Capture Models

Pydantic models for capture/cache configuration and preview metadata,
dataclasses for the per-run capture data and the typed messages exchanged
between the orchestrator and the page agent.
"""

import time
from typing import Optional, List, Tuple
from dataclasses import dataclass, field
from enum import Enum
from pydantic import BaseModel, Field


class CaptureState(str, Enum):
    """Capture run state machine"""
    IDLE = "idle"
    POSITIONING = "positioning"
    CAPTURING = "capturing"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"


class CaptureSettings(BaseModel):
    """Per-run capture tuning. Every field can be overridden per capture."""
    scroll_delay_ms: int = Field(300, ge=0, description="Settle delay between scroll and capture")
    initial_delay_multiplier: float = Field(2.0, ge=1.0, description="Settle delay multiplier before the first fragment")
    max_capture_height: int = Field(30000, gt=0)
    max_primary_dimension: int = Field(30000, gt=0)
    max_secondary_dimension: int = Field(8000, gt=0)
    max_positions: int = Field(500, gt=0, description="Ceiling on planned scroll positions")
    max_capture_attempts: int = Field(3, ge=1)
    scroll_pad: int = Field(200, ge=0, description="Row overlap to avoid seams")

    # Rate-limit backoff
    backoff_initial_ms: float = Field(500, gt=0)
    backoff_multiplier: float = Field(1.5, gt=1.0)
    backoff_floor_ms: float = Field(500, gt=0)
    backoff_ceiling_ms: float = Field(3000, gt=0)
    backoff_relax_divisor: float = Field(1.2, gt=1.0)

    infinite_scroll_threshold: int = Field(2000, ge=0)
    position_tolerance: int = Field(10, ge=0)
    corrected_position_tolerance: int = Field(15, ge=0)

    @property
    def initial_delay_ms(self) -> float:
        return self.scroll_delay_ms * self.initial_delay_multiplier

    def with_overrides(self, **overrides) -> "CaptureSettings":
        """Return a copy with the non-None overrides applied"""
        values = {k: v for k, v in overrides.items() if v is not None}
        return self.model_copy(update=values)


class CacheSettings(BaseModel):
    """Smart result cache tuning"""
    inactivity_window_seconds: float = Field(30 * 60, gt=0)
    max_entries: int = Field(50, gt=0)
    warning_ratio: float = Field(0.85, gt=0, le=1)
    critical_ratio: float = Field(0.95, gt=0, le=1)
    critical_target_ratio: float = Field(0.7, gt=0, le=1)
    quota_bytes: int = Field(500 * 1024 * 1024, gt=0)
    sweep_interval_seconds: float = Field(10 * 60, gt=0)


class PreviewMetadata(BaseModel):
    """Metadata stored alongside a cached preview"""
    title: str = ""
    source_url: str = ""
    icon_ref: Optional[str] = None
    timestamp: float = Field(default_factory=time.time)


@dataclass(frozen=True)
class CacheEntry:
    """One cached preview, unique per subject"""
    subject_id: str
    image_data: bytes
    metadata: PreviewMetadata


@dataclass(frozen=True)
class PageDimensions:
    """Document and viewport size as reported by the page"""
    full_width: int
    full_height: int
    viewport_width: int
    viewport_height: int


@dataclass(frozen=True)
class CapturePlan:
    """Ordered grid of scroll offsets covering the page, bottom-to-top"""
    full_width: int
    full_height: int
    viewport_width: int
    viewport_height: int
    usable_width: int
    usable_height: int
    positions: Tuple[Tuple[int, int], ...]
    truncated: bool = False  # usable height clamped below content height
    limited: bool = False  # positions reduced to the max_positions ceiling


@dataclass
class Fragment:
    """One viewport-sized capture at a scroll offset"""
    x: int
    y: int
    image_data: bytes
    captured_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class AssembledResult:
    """Final stitched image"""
    image_data: bytes
    width: int
    height: int
    partial: bool = False
    scale: float = 1.0
    fragments_used: int = 0
    fragments_skipped: int = 0


# =============================================================================
# MESSAGE PROTOCOL - orchestrator <-> page agent
# =============================================================================

@dataclass
class CaptureMessage:
    """Base message; every message carries the capture run's correlation id"""
    correlation_id: str


@dataclass
class BeginCapture(CaptureMessage):
    params: Optional[CaptureSettings] = None


@dataclass
class Ack(CaptureMessage):
    accepted: bool = True
    error: Optional[str] = None


@dataclass
class Progress(CaptureMessage):
    percent: int = 0
    status: str = ""


@dataclass
class CaptureTruncated(CaptureMessage):
    max_height: int = 0
    actual_height: int = 0
    reason: Optional[str] = None


@dataclass
class CaptureError(CaptureMessage):
    message: str = ""


@dataclass
class CaptureComplete(CaptureMessage):
    fragments: List[Fragment] = field(default_factory=list)
    full_width: int = 0
    full_height: int = 0


@dataclass
class ScrollPositionIssue(CaptureMessage):
    wanted: Tuple[int, int] = (0, 0)
    actual: Tuple[int, int] = (0, 0)
    methods_tried: List[str] = field(default_factory=list)


@dataclass
class PositionFailed(CaptureMessage):
    position: Tuple[int, int] = (0, 0)
    attempts: int = 0
    error: str = ""


@dataclass
class FragmentRequest(CaptureMessage):
    x: int = 0
    y: int = 0
    requested_x: int = 0
    requested_y: int = 0
    position_error: bool = False
    full_width: int = 0
    full_height: int = 0
    viewport_width: int = 0
    viewport_height: int = 0


@dataclass
class FragmentResponse(CaptureMessage):
    fragment: Optional[Fragment] = None
    error: Optional[str] = None
    rate_limited: bool = False

    @property
    def success(self) -> bool:
        return self.fragment is not None


@dataclass
class CaptureReport:
    """Outcome of one orchestrated capture"""
    subject_id: str
    result: Optional[AssembledResult] = None
    from_cache: bool = False
    truncated: Optional[CaptureTruncated] = None
    scroll_issues: List[ScrollPositionIssue] = field(default_factory=list)
    position_failures: List[PositionFailed] = field(default_factory=list)
    elapsed: float = 0.0
