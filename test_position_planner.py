import pytest

from capture_models import CaptureSettings, PageDimensions
from position_planner import build_grid, limit_positions, plan_capture, row_step, usable_dimensions


def test_five_thousand_pixel_page_yields_five_rows_bottom_up():
    settings = CaptureSettings(scroll_pad=0)
    plan = plan_capture(PageDimensions(1000, 5000, 1000, 1000), settings)

    assert plan.positions == ((0, 4000), (0, 3000), (0, 2000), (0, 1000), (0, 0))
    assert not plan.truncated
    assert not plan.limited


@pytest.mark.parametrize("height,viewport", [
    (5000, 1000), (4500, 1000), (1234, 700), (800, 800), (300, 900), (29999, 1080), (10000, 150),
])
def test_grid_covers_page_with_bounded_step(height, viewport):
    settings = CaptureSettings()
    plan = plan_capture(PageDimensions(1280, height, 1280, viewport), settings)
    ys = sorted({y for _, y in plan.positions})

    assert ys[0] == 0
    assert all(y >= 0 for y in ys)
    assert ys[-1] + viewport >= min(height, settings.max_capture_height)
    step = row_step(viewport, settings.scroll_pad)
    assert all(b - a <= step for a, b in zip(ys, ys[1:]))


def test_rows_are_bottom_to_top_and_left_to_right():
    positions = build_grid(2500, 2000, 1000, 1000, scroll_pad=200)

    assert positions[:3] == [(0, 1000), (1000, 1000), (2000, 1000)]
    rows = [y for _, y in positions]
    assert rows == sorted(rows, reverse=True)
    assert positions[-1][1] == 0


def test_small_page_gets_single_position():
    assert build_grid(500, 400, 1000, 800, scroll_pad=200) == [(0, 0)]


def test_height_clamp_flags_truncation():
    settings = CaptureSettings(max_capture_height=6000)
    plan = plan_capture(PageDimensions(1000, 20000, 1000, 1000), settings)

    assert plan.truncated
    assert plan.usable_height == 6000
    assert max(y for _, y in plan.positions) < 6000


def test_width_uses_secondary_limit_for_very_tall_pages():
    settings = CaptureSettings(max_capture_height=100000)

    assert usable_dimensions(50000, 40000, settings) == (8000, 40000)
    assert usable_dimensions(50000, 20000, settings) == (30000, 20000)


def test_limit_keeps_one_position_per_row():
    positions = build_grid(5000, 5000, 1000, 1000, scroll_pad=0)
    limited = limit_positions(positions, 7)
    rows = {y for _, y in positions}

    assert len(limited) == 7
    assert {y for _, y in limited} == rows
    # grid order preserved
    assert limited == [p for p in positions if p in limited]


def test_limit_never_drops_rows_even_over_ceiling():
    positions = build_grid(2000, 10000, 1000, 1000, scroll_pad=0)
    limited = limit_positions(positions, 3)

    assert {y for _, y in limited} == {y for _, y in positions}


def test_plan_reports_limited():
    settings = CaptureSettings(max_positions=10, scroll_pad=0)
    plan = plan_capture(PageDimensions(3000, 5000, 1000, 1000), settings)

    assert plan.limited
    assert len(plan.positions) == 10
