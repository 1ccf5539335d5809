"""
Page Preview - Page Agent (Capture Coordinator)

Page-resident side of a capture run. Drives the position plan, moves the
viewport, requests one fragment per position from the orchestrator and
reports progress and diagnostics back over the capture channel.

State machine per run:
    idle -> positioning -> capturing -> (retrying | positioning) -> completed | failed

Page mutations (hidden overflow, hidden fixed elements, scroll position)
are held by PageStateGuard and restored on every exit path, including
cancellation by the orchestrator's timeout.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Optional, Tuple

from capture_channel import CaptureChannel
from capture_models import (
    Ack,
    BeginCapture,
    CapturePlan,
    CaptureComplete,
    CaptureError,
    CaptureSettings,
    CaptureState,
    CaptureTruncated,
    Fragment,
    FragmentRequest,
    FragmentResponse,
    PositionFailed,
    Progress,
    ScrollPositionIssue,
)
from position_planner import measure_dimensions, plan_capture
from utils.error_handler import PositionUnreachableError

logger = logging.getLogger(__name__)

Position = Tuple[int, int]

SCROLL_VERIFY_PAUSE_MS = 50
LIMITED_REASON = "Too many scroll positions required. The screenshot may have gaps."


@dataclass
class BackoffState:
    """
    Rate-limit backoff and per-position attempt counters for one run.

    Pure state: callers decide when to sleep, so this can be exercised
    without a timer.
    """
    current_delay_ms: float
    multiplier: float
    floor_ms: float
    ceiling_ms: float
    relax_divisor: float
    attempts: Dict[Position, int] = field(default_factory=dict)
    rate_limit_hits: int = 0

    @classmethod
    def from_settings(cls, settings: CaptureSettings) -> "BackoffState":
        return cls(
            current_delay_ms=settings.backoff_initial_ms,
            multiplier=settings.backoff_multiplier,
            floor_ms=settings.backoff_floor_ms,
            ceiling_ms=settings.backoff_ceiling_ms,
            relax_divisor=settings.backoff_relax_divisor,
        )

    def on_rate_limited(self) -> float:
        """Grow the delay multiplicatively up to the ceiling; returns the new delay"""
        self.rate_limit_hits += 1
        self.current_delay_ms = min(self.current_delay_ms * self.multiplier, self.ceiling_ms)
        return self.current_delay_ms

    def on_success(self, position: Optional[Position] = None) -> float:
        """Relax the delay toward the floor and clear the position's attempts"""
        self.current_delay_ms = max(self.current_delay_ms / self.relax_divisor, self.floor_ms)
        if position is not None:
            self.attempts.pop(position, None)
        return self.current_delay_ms

    def record_failure(self, position: Position) -> int:
        """Count a non rate-limit failure; returns attempts made so far"""
        self.attempts[position] = self.attempts.get(position, 0) + 1
        return self.attempts[position]

    def clear(self, position: Position):
        self.attempts.pop(position, None)


class PageStateGuard:
    """
    Scoped ownership of the page mutations made during capture.

    Entering snapshots scroll position and overflow styles, tags fixed
    elements and hides scrollbars. Exiting restores all of it, whatever
    the reason for the exit.
    """

    def __init__(self, driver):
        self.driver = driver
        self.fixed_count = 0
        self.restored = False
        self._state: Optional[Dict] = None

    async def __aenter__(self):
        self._state = await self.driver.save_state()
        self.fixed_count = await self.driver.tag_fixed_elements()
        await self.driver.hide_overflow()
        logger.debug(f"[PageStateGuard] Page state saved ({self.fixed_count} fixed elements)")
        return self

    async def __aexit__(self, exc_type, exc, tb):
        try:
            await self.restore()
        except Exception as e:
            if exc_type is None:
                raise
            # Keep the original failure; the restore error is secondary
            logger.error(f"[PageStateGuard] Restore failed after {exc_type.__name__}: {e}")
        return False

    async def restore(self):
        if self.restored or self._state is None:
            return
        self.restored = True
        await self.driver.restore_fixed_elements()
        await self.driver.restore_state(self._state)
        logger.debug("[PageStateGuard] Page state restored")


class PageAgent:
    """
    Capture Coordinator for one subject page.

    Args:
        driver: PageDriver for the subject page
        channel: CaptureChannel shared with the orchestrator
        settings: Capture settings (replaced by BeginCapture params if given)
        sleep: Awaitable sleep(seconds), injectable for tests
    """

    def __init__(self, driver, channel: CaptureChannel, settings: Optional[CaptureSettings] = None,
                 sleep=asyncio.sleep):
        self.driver = driver
        self.channel = channel
        self.settings = settings or CaptureSettings()
        self._sleep = sleep

        self.state = CaptureState.IDLE
        self.transitions: List[CaptureState] = [CaptureState.IDLE]
        self.plan: Optional[CapturePlan] = None
        self.backoff = BackoffState.from_settings(self.settings)

        self.processed = 0
        self.total = 0
        self.observed_max_height = 0
        self.growth_detected = False
        self.scroll_issues = 0
        self.failed_positions: List[Position] = []

    @property
    def correlation_id(self) -> str:
        return self.channel.correlation_id

    def _transition(self, new_state: CaptureState):
        if self.state != new_state:
            logger.debug(f"[PageAgent] {self.state.value} -> {new_state.value}")
        self.state = new_state
        self.transitions.append(new_state)

    async def _emit(self, message):
        await self.channel.send_to_orchestrator(message)

    async def _wait_ms(self, delay_ms: float):
        await self._sleep(delay_ms / 1000.0)

    async def serve(self) -> List[Fragment]:
        """Wait for begin_capture from the orchestrator and run the capture"""
        message = await self.channel.receive_for_agent()
        if not isinstance(message, BeginCapture):
            logger.warning(f"[PageAgent] Expected BeginCapture, got {type(message).__name__}")
            await self._emit(Ack(self.correlation_id, accepted=False, error="Expected begin_capture"))
            return []

        if self.state != CaptureState.IDLE:
            await self._emit(Ack(self.correlation_id, accepted=False, error="Capture already in progress"))
            return []

        if message.params is not None:
            self.settings = message.params
            self.backoff = BackoffState.from_settings(self.settings)

        return await self.run()

    async def run(self) -> List[Fragment]:
        """
        Execute one capture run.

        Returns:
            Fragments in capture order (empty if the run failed)
        """
        try:
            async with PageStateGuard(self.driver) as guard:
                fragments = await self._execute(guard)
        except asyncio.CancelledError:
            self._transition(CaptureState.FAILED)
            logger.warning("[PageAgent] Capture cancelled, page state restored")
            raise
        except Exception as e:
            self._transition(CaptureState.FAILED)
            logger.error(f"[PageAgent] Capture failed: {e}", exc_info=True)
            await self._emit(CaptureError(self.correlation_id, message=str(e)))
            return []

        truncation = self._truncation_message()
        if truncation:
            await self._emit(truncation)

        await self._emit(CaptureComplete(
            self.correlation_id,
            fragments=fragments,
            full_width=self.plan.full_width,
            full_height=self.plan.full_height,
        ))
        logger.info(
            f"[PageAgent] Capture complete: {len(fragments)} fragments, "
            f"{len(self.failed_positions)} skipped, {self.scroll_issues} scroll issues"
        )
        return fragments

    def _truncation_message(self) -> Optional[CaptureTruncated]:
        max_height = self.settings.max_capture_height
        if self.growth_detected and self.observed_max_height > max_height:
            return CaptureTruncated(
                self.correlation_id, max_height=max_height, actual_height=self.observed_max_height
            )
        if self.plan and self.plan.truncated:
            return CaptureTruncated(
                self.correlation_id,
                max_height=self.plan.usable_height,
                actual_height=self.plan.full_height,
            )
        return None

    async def _execute(self, guard: PageStateGuard) -> List[Fragment]:
        dimensions = await measure_dimensions(self.driver)
        self.plan = plan_capture(dimensions, self.settings)
        self.observed_max_height = dimensions.full_height

        await self._emit(Ack(self.correlation_id))

        if self.plan.limited:
            await self._emit(CaptureTruncated(
                self.correlation_id,
                max_height=self.settings.max_capture_height,
                actual_height=self.plan.full_height,
                reason=LIMITED_REASON,
            ))

        queue: Deque[Position] = deque(self.plan.positions)
        self.total = len(queue)
        fragments: List[Fragment] = []
        first_position = True

        logger.info(
            f"[PageAgent] Capturing {self.plan.full_width}x{self.plan.full_height} page in "
            f"{self.total} positions ({guard.fixed_count} fixed elements)"
        )

        while True:
            queue = await self._check_growth(queue)
            if not queue:
                break

            position = queue.popleft()

            self._transition(CaptureState.POSITIONING)
            requested, actual = await self._move_to(*position)

            # Keep page chrome on the first fragment, hide duplicates afterwards
            if first_position:
                first_position = False
            elif guard.fixed_count:
                await self.driver.hide_fixed_outside_viewport()

            self._transition(CaptureState.CAPTURING)
            if not fragments and self.processed == 0:
                await self._wait_ms(self.settings.initial_delay_ms)
            else:
                await self._wait_ms(self.settings.scroll_delay_ms)

            response = await self._request_fragment(requested, actual)

            if response.success:
                fragments.append(response.fragment)
                self.backoff.on_success(position)
                await self._position_done()
                await self._wait_ms(self.settings.scroll_delay_ms)
                continue

            if response.rate_limited:
                self._transition(CaptureState.RETRYING)
                delay = self.backoff.on_rate_limited()
                logger.info(f"[PageAgent] Rate limit hit. Using increased delay: {delay:.0f}ms")
                queue.appendleft(position)
                await self._wait_ms(delay)
                continue

            attempts = self.backoff.record_failure(position)
            if attempts < self.settings.max_capture_attempts:
                self._transition(CaptureState.RETRYING)
                logger.info(f"[PageAgent] Retrying capture at {position} (attempt {attempts + 1})")
                queue.appendleft(position)
                await self._wait_ms(self.settings.scroll_delay_ms * 2)
                continue

            logger.error(f"[PageAgent] Max capture attempts reached at {position}, skipping")
            self.backoff.clear(position)
            self.failed_positions.append(position)
            await self._emit(PositionFailed(
                self.correlation_id,
                position=position,
                attempts=attempts,
                error=response.error or "Unknown error",
            ))
            await self._position_done()

        self._transition(CaptureState.COMPLETED)
        return fragments

    async def _position_done(self):
        self.processed += 1
        percent = round(self.processed / self.total * 100) if self.total else 100
        await self._emit(Progress(
            self.correlation_id,
            percent=percent,
            status=f"Capturing screenshot {self.processed} of {self.total}",
        ))

    async def _check_growth(self, queue: Deque[Position]) -> Deque[Position]:
        """Detect indefinite page growth and cap remaining work at the max height"""
        current = await self.driver.document_height()
        threshold = self.settings.infinite_scroll_threshold
        if current <= self.observed_max_height + threshold:
            return queue

        self.observed_max_height = current
        self.growth_detected = True
        max_height = self.settings.max_capture_height
        logger.info(f"[PageAgent] Page grew to {current}px during capture")

        if current > max_height:
            kept = deque(p for p in queue if p[1] < max_height)
            dropped = len(queue) - len(kept)
            if dropped:
                self.total -= dropped
                logger.info(
                    f"[PageAgent] Infinite scroll detected, limiting capture height to "
                    f"{max_height}px ({dropped} positions dropped)"
                )
            return kept
        return queue

    async def _move_to(self, x: int, y: int) -> Tuple[Position, Position]:
        """
        Scroll to an offset, verifying and correcting the result.

        Returns:
            (requested, actual) offsets; actual is used for capture even when
            it is outside tolerance
        """
        max_x, max_y = await self.driver.max_scroll()
        target = (max(0, min(x, max_x)), max(0, min(y, max_y)))
        if target != (x, y):
            logger.debug(f"[PageAgent] Normalizing scroll target {(x, y)} to {target}")

        tolerance = self.settings.position_tolerance
        methods = ["scrollTo"]
        await self.driver.scroll_to(*target)
        actual = await self.driver.scroll_position()
        if _within(actual, target, tolerance):
            return target, actual

        methods.append("scrollTo with options")
        await self.driver.scroll_to(*target, smooth_options=True)
        await self._wait_ms(SCROLL_VERIFY_PAUSE_MS)
        actual = await self.driver.scroll_position()
        if _within(actual, target, tolerance):
            return target, actual

        methods.append("scrollBy adjustment")
        await self.driver.scroll_by(target[0] - actual[0], target[1] - actual[1])
        await self._wait_ms(SCROLL_VERIFY_PAUSE_MS)
        actual = await self.driver.scroll_position()
        if _within(actual, target, self.settings.corrected_position_tolerance):
            return target, actual

        self.scroll_issues += 1
        issue = PositionUnreachableError(target, actual)
        logger.warning(f"[PageAgent] {issue.message} after {len(methods)} methods")
        await self._emit(ScrollPositionIssue(
            self.correlation_id, wanted=target, actual=actual, methods_tried=methods
        ))
        return target, actual

    async def _request_fragment(self, requested: Position, actual: Position) -> FragmentResponse:
        plan = self.plan
        await self._emit(FragmentRequest(
            self.correlation_id,
            x=actual[0],
            y=actual[1],
            requested_x=requested[0],
            requested_y=requested[1],
            position_error=not _within(actual, requested, self.settings.corrected_position_tolerance),
            full_width=plan.full_width,
            full_height=plan.full_height,
            viewport_width=plan.viewport_width,
            viewport_height=plan.viewport_height,
        ))
        while True:
            message = await self.channel.receive_for_agent()
            if isinstance(message, FragmentResponse):
                return message
            logger.warning(f"[PageAgent] Ignoring {type(message).__name__} while awaiting fragment")


def _within(actual: Position, target: Position, tolerance: int) -> bool:
    return abs(actual[0] - target[0]) <= tolerance and abs(actual[1] - target[1]) <= tolerance
