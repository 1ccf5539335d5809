"""
Page Preview - Position Planner
Computes the grid of scroll offsets that tiles a page, bottom-to-top.
"""

import logging
from typing import List, Tuple

from capture_models import CapturePlan, CaptureSettings, PageDimensions

logger = logging.getLogger(__name__)

Position = Tuple[int, int]


def usable_dimensions(full_width: int, full_height: int, settings: CaptureSettings) -> Tuple[int, int]:
    """
    Clamp page dimensions to what can be captured.

    Height is capped at max_capture_height. Width is capped at the secondary
    dimension for very tall pages (so the area stays bounded), otherwise at
    the primary dimension.

    Returns:
        (usable_width, usable_height)
    """
    usable_height = min(full_height, settings.max_capture_height)
    if full_height > settings.max_primary_dimension:
        width_limit = settings.max_secondary_dimension
    else:
        width_limit = settings.max_primary_dimension
    usable_width = min(full_width, width_limit)
    return usable_width, usable_height


def row_step(viewport_height: int, scroll_pad: int) -> int:
    """Vertical distance between rows: viewport height minus the overlap pad"""
    if viewport_height > scroll_pad:
        return viewport_height - scroll_pad
    return viewport_height


def build_grid(usable_width: int, usable_height: int, viewport_width: int,
               viewport_height: int, scroll_pad: int) -> List[Position]:
    """
    Generate (x, y) offsets bottom-to-top, left-to-right.

    Offsets below zero clamp to 0, so the last row always starts at the top
    of the page.
    """
    y_delta = max(1, row_step(viewport_height, scroll_pad))
    x_delta = max(1, viewport_width)

    positions: List[Position] = []
    seen = set()
    y = usable_height - viewport_height
    while y > -y_delta:
        row_y = max(0, y)
        x = 0
        while x < usable_width:
            if (x, row_y) not in seen:
                seen.add((x, row_y))
                positions.append((x, row_y))
            x += x_delta
        y -= y_delta

    # Page smaller than one viewport: single capture at the origin
    if not positions:
        positions.append((0, 0))
    return positions


def limit_positions(positions: List[Position], max_positions: int) -> List[Position]:
    """
    Reduce the grid to at most max_positions while keeping every row.

    One position per row is always kept so vertical coverage is complete,
    even if the rows alone exceed the ceiling. Remaining budget is filled
    with other positions in grid order. Grid order is preserved.
    """
    if len(positions) <= max_positions:
        return list(positions)

    keep = set()
    rows = set()
    for pos in positions:
        if pos[1] not in rows:
            rows.add(pos[1])
            keep.add(pos)

    for pos in positions:
        if len(keep) >= max_positions:
            break
        keep.add(pos)

    return [pos for pos in positions if pos in keep]


def plan_capture(dimensions: PageDimensions, settings: CaptureSettings) -> CapturePlan:
    """
    Build the capture plan for a page.

    Args:
        dimensions: Page and viewport size reported by the page
        settings: Capture settings for this run

    Returns:
        CapturePlan with ordered positions and truncation/limit flags
    """
    usable_width, usable_height = usable_dimensions(
        dimensions.full_width, dimensions.full_height, settings
    )
    grid = build_grid(
        usable_width,
        usable_height,
        dimensions.viewport_width,
        dimensions.viewport_height,
        settings.scroll_pad,
    )

    limited = len(grid) > settings.max_positions
    if limited:
        logger.info(
            f"[PositionPlanner] Limiting capture to {settings.max_positions} positions "
            f"(originally {len(grid)})"
        )
        grid = limit_positions(grid, settings.max_positions)

    truncated = usable_height < dimensions.full_height
    if truncated:
        logger.info(
            f"[PositionPlanner] Page height {dimensions.full_height}px clamped to {usable_height}px"
        )

    logger.debug(
        f"[PositionPlanner] {dimensions.full_width}x{dimensions.full_height} page, "
        f"{dimensions.viewport_width}x{dimensions.viewport_height} viewport, {len(grid)} positions"
    )

    return CapturePlan(
        full_width=dimensions.full_width,
        full_height=dimensions.full_height,
        viewport_width=dimensions.viewport_width,
        viewport_height=dimensions.viewport_height,
        usable_width=usable_width,
        usable_height=usable_height,
        positions=tuple(grid),
        truncated=truncated,
        limited=limited,
    )


async def measure_dimensions(driver) -> PageDimensions:
    """Read page and viewport size through a PageDriver"""
    return await driver.measure()
