"""
Page Preview - Capture Orchestrator
Long-lived side of the capture pipeline.

Looks up the cache, starts a page agent for the subject, serves its
fragment requests through the FragmentAcquirer, assembles the fragments
and stores the result. At most one capture per subject runs at a time.
"""

import asyncio
import io
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Optional, Set

from PIL import Image

from capture_channel import CaptureChannel
from capture_heuristics import capture_timeout_ms, is_capturable_url, scroll_delay_ms, TIMEOUT_BUFFER_MS
from capture_models import (
    Ack,
    AssembledResult,
    BeginCapture,
    CacheEntry,
    CaptureComplete,
    CaptureError,
    CaptureReport,
    CaptureSettings,
    CaptureTruncated,
    Fragment,
    FragmentRequest,
    FragmentResponse,
    PositionFailed,
    PreviewMetadata,
    Progress,
    ScrollPositionIssue,
)
from fragment_acquirer import FragmentAcquirer
from image_assembler import ImageAssembler
from page_agent import PageAgent
from utils.error_handler import (
    CaptureFailedError,
    CaptureInProgressError,
    CaptureTimeoutError,
    RateLimitedError,
    TransientCaptureError,
    UncapturableSubjectError,
)

logger = logging.getLogger(__name__)

MAX_SCROLL_ISSUES = 10
MAX_POSITION_FAILURES = 5


@dataclass
class CaptureSubject:
    """A page to capture and the driver controlling it"""
    subject_id: str
    driver: object
    title: str = ""
    url: str = ""
    icon_ref: Optional[str] = None

    def __post_init__(self):
        if not self.url:
            self.url = getattr(self.driver, "url", "") or ""


class CaptureOrchestrator:
    """
    Coordinates cache lookups and capture runs.

    Features:
    - Cache-first lookup with activity-aware expiry
    - One in-flight capture per subject (second request is rejected)
    - Adaptive overall timeout; page state is restored on timeout
    - Recent diagnostics (scroll issues, skipped positions)
    """

    def __init__(
        self,
        cache,
        acquirer: Optional[FragmentAcquirer] = None,
        assembler: Optional[ImageAssembler] = None,
        settings: Optional[CaptureSettings] = None,
        adaptive_scroll_delay: bool = True,
        timeout: Optional[float] = None,
        sleep=asyncio.sleep,
        on_progress: Optional[Callable[[str, Progress], None]] = None,
    ):
        """
        Args:
            cache: SmartResultCache for results
            acquirer: FragmentAcquirer (host capture primitive with rate limit)
            assembler: ImageAssembler for stitching
            settings: Base capture settings
            adaptive_scroll_delay: Pick the scroll delay from the page URL
            timeout: Fixed overall timeout in seconds (adaptive when None)
            sleep: Awaitable sleep(seconds) handed to page agents
            on_progress: Optional callback(subject_id, Progress)
        """
        self.cache = cache
        self.acquirer = acquirer or FragmentAcquirer()
        self.assembler = assembler or ImageAssembler()
        self.settings = settings or CaptureSettings()
        self.adaptive_scroll_delay = adaptive_scroll_delay
        self.timeout = timeout
        self._sleep = sleep
        self.on_progress = on_progress

        self._in_flight: Set[str] = set()
        self.progress: Dict[str, dict] = {}
        self.scroll_issues: Deque[dict] = deque(maxlen=MAX_SCROLL_ISSUES)
        self.position_failures: Deque[dict] = deque(maxlen=MAX_POSITION_FAILURES)

        # Metrics
        self.captures_completed = 0
        self.captures_failed = 0
        self.cache_hits = 0

        logger.info("[CaptureOrchestrator] Initialized")

    def is_capturing(self, subject_id: str) -> bool:
        return subject_id in self._in_flight

    def run_settings(self, url: str, overrides: Optional[dict] = None) -> CaptureSettings:
        """Settings for one run: base, then URL-adaptive delay, then explicit overrides"""
        settings = self.settings
        overrides = dict(overrides or {})
        if self.adaptive_scroll_delay and overrides.get("scroll_delay_ms") is None:
            overrides["scroll_delay_ms"] = scroll_delay_ms(url)
        return settings.with_overrides(**overrides)

    def run_timeout(self, url: str) -> float:
        if self.timeout is not None:
            return self.timeout
        return (capture_timeout_ms(url) + TIMEOUT_BUFFER_MS) / 1000.0

    async def cached_report(self, subject_id: str) -> Optional[CaptureReport]:
        """Report for a cached preview, or None when it must be captured"""
        entry = await self.cache.get(subject_id)
        if entry is None:
            return None
        self.cache_hits += 1
        logger.debug(f"[CaptureOrchestrator] Using cached preview for {subject_id}")
        return CaptureReport(
            subject_id=subject_id,
            result=result_from_entry(entry),
            from_cache=True,
        )

    async def get_or_capture(self, subject: CaptureSubject, overrides: Optional[dict] = None,
                             force: bool = False) -> CaptureReport:
        """
        Return the cached preview for a subject, capturing it if absent.

        Args:
            subject: Page to preview
            overrides: CaptureSettings field overrides for this run
            force: Skip the cache lookup and recapture
        """
        if not force:
            report = await self.cached_report(subject.subject_id)
            if report is not None:
                return report
        return await self.capture(subject, overrides)

    async def capture(self, subject: CaptureSubject, overrides: Optional[dict] = None) -> CaptureReport:
        """
        Capture, assemble and cache a subject.

        Raises:
            UncapturableSubjectError: Not an http(s) page
            CaptureInProgressError: Subject already being captured
            CaptureTimeoutError: Run exceeded its timeout
            CaptureFailedError: Page agent reported a fatal error
            NoUsableFragmentsError: Nothing could be assembled
        """
        subject_id = subject.subject_id
        if not is_capturable_url(subject.url):
            raise UncapturableSubjectError(subject.url)
        if subject_id in self._in_flight:
            raise CaptureInProgressError(subject_id)

        self._in_flight.add(subject_id)
        settings = self.run_settings(subject.url, overrides)
        timeout = self.run_timeout(subject.url)
        channel = CaptureChannel()
        agent = PageAgent(subject.driver, channel, settings, sleep=self._sleep)
        agent_task = asyncio.create_task(agent.serve())
        report = CaptureReport(subject_id=subject_id)
        started = time.monotonic()

        logger.info(
            f"[CaptureOrchestrator] Capturing {subject_id} ({subject.url}), "
            f"timeout {timeout:.0f}s, scroll delay {settings.scroll_delay_ms}ms"
        )

        try:
            report.result = await asyncio.wait_for(
                self._supervise(subject, channel, settings, report), timeout
            )
        except asyncio.TimeoutError:
            self.captures_failed += 1
            logger.error(f"[CaptureOrchestrator] Capture of {subject_id} timed out after {timeout:.0f}s")
            raise CaptureTimeoutError(subject_id, timeout) from None
        except Exception:
            self.captures_failed += 1
            raise
        finally:
            if not agent_task.done():
                agent_task.cancel()
            # Waits for the agent to restore page state
            await asyncio.gather(agent_task, return_exceptions=True)
            self._in_flight.discard(subject_id)
            self.progress.pop(subject_id, None)

        report.elapsed = time.monotonic() - started
        self.captures_completed += 1

        title = subject.title or await subject.driver.title()
        metadata = PreviewMetadata(title=title, source_url=subject.url, icon_ref=subject.icon_ref)
        await self.cache.put(subject_id, report.result, metadata)

        logger.info(
            f"[CaptureOrchestrator] Captured {subject_id}: {report.result.width}x{report.result.height} "
            f"in {report.elapsed:.1f}s{' (partial)' if report.result.partial else ''}"
        )
        return report

    async def _supervise(self, subject: CaptureSubject, channel: CaptureChannel,
                         settings: CaptureSettings, report: CaptureReport) -> AssembledResult:
        subject_id = subject.subject_id
        await channel.send_to_agent(BeginCapture(channel.correlation_id, params=settings))

        while True:
            message = await channel.receive_for_orchestrator()

            if isinstance(message, FragmentRequest):
                response = await self._acquire(subject, channel, message)
                await channel.send_to_agent(response)

            elif isinstance(message, Progress):
                self.progress[subject_id] = {"percent": message.percent, "status": message.status}
                if self.on_progress:
                    self.on_progress(subject_id, message)

            elif isinstance(message, Ack):
                if not message.accepted:
                    raise CaptureFailedError(message.error or "Capture rejected", subject_id)
                logger.debug(f"[CaptureOrchestrator] Agent acknowledged capture of {subject_id}")

            elif isinstance(message, CaptureTruncated):
                report.truncated = message
                logger.info(
                    f"[CaptureOrchestrator] Capture of {subject_id} truncated: "
                    f"{message.max_height}px of {message.actual_height}px"
                    f"{f' ({message.reason})' if message.reason else ''}"
                )

            elif isinstance(message, ScrollPositionIssue):
                report.scroll_issues.append(message)
                self.scroll_issues.append({
                    "subject_id": subject_id,
                    "wanted": message.wanted,
                    "actual": message.actual,
                    "methods_tried": message.methods_tried,
                    "timestamp": time.time(),
                })

            elif isinstance(message, PositionFailed):
                report.position_failures.append(message)
                self.position_failures.append({
                    "subject_id": subject_id,
                    "position": message.position,
                    "attempts": message.attempts,
                    "error": message.error,
                    "timestamp": time.time(),
                })

            elif isinstance(message, CaptureError):
                raise CaptureFailedError(message.message, subject_id)

            elif isinstance(message, CaptureComplete):
                return await self.assembler.assemble(message.fragments)

    async def _acquire(self, subject: CaptureSubject, channel: CaptureChannel,
                       request: FragmentRequest) -> FragmentResponse:
        try:
            data = await self.acquirer.capture_visible_region(subject.driver)
        except RateLimitedError as e:
            return FragmentResponse(channel.correlation_id, error=e.message, rate_limited=True)
        except TransientCaptureError as e:
            return FragmentResponse(channel.correlation_id, error=e.message)

        return FragmentResponse(
            channel.correlation_id,
            fragment=Fragment(x=request.x, y=request.y, image_data=data),
        )

    def get_diagnostics(self) -> dict:
        return {
            "in_flight": sorted(self._in_flight),
            "progress": dict(self.progress),
            "scroll_issues": list(self.scroll_issues),
            "position_failures": list(self.position_failures),
            "captures_completed": self.captures_completed,
            "captures_failed": self.captures_failed,
            "cache_hits": self.cache_hits,
            "acquirer": self.acquirer.get_stats(),
        }


def result_from_entry(entry: CacheEntry) -> AssembledResult:
    """Rebuild an AssembledResult from a cached entry (reads only the image header)"""
    with Image.open(io.BytesIO(entry.image_data)) as img:
        width, height = img.size
    return AssembledResult(image_data=entry.image_data, width=width, height=height)
