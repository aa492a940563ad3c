"""Tests for automatic padding/shift suggestions."""

import numpy as np

from sheet_animator.optimizer import MAX_SHIFT, OptimizedSlice, find_content_bounds, optimize_slice_settings
from sheet_animator.pixel_buffer import PixelBuffer
from sheet_animator.slicing import AutoOptimizedFlags, SliceSettings


class TestContentBounds:
    """Tests for edge scanning."""

    def test_quadrant_margins(self, quadrant_sheet):
        bounds = find_content_bounds(quadrant_sheet)
        assert (bounds.left, bounds.right, bounds.top, bounds.bottom) == (8, 8, 8, 8)

    def test_near_black_counts_as_background(self, make_solid):
        sheet = make_solid(40, 40, (5, 5, 5, 255))
        sheet.data[10, 30] = (200, 50, 50, 255)
        bounds = find_content_bounds(sheet)
        assert (bounds.left, bounds.right, bounds.top, bounds.bottom) == (30, 9, 10, 29)

    def test_empty_sheet_has_no_bounds(self, make_solid):
        assert find_content_bounds(make_solid(16, 16, (255, 0, 255, 255))) is None


class TestOptimizeSliceSettings:
    """Tests for the suggestion itself."""

    def test_centred_content(self, quadrant_sheet):
        """Centred content gets symmetric padding capped at 10% and no shift."""
        result = optimize_slice_settings(quadrant_sheet, 2, 2)
        assert (result.padding_x, result.padding_y) == (6, 6)
        assert (result.shift_x, result.shift_y) == (0, 0)

    def test_off_centre_content_shift_is_clamped(self):
        sheet = PixelBuffer.blank(400, 100)
        sheet.data[20:80, 300:310] = (90, 90, 200, 255)
        result = optimize_slice_settings(sheet, 1, 1)
        assert result.shift_x == MAX_SHIFT
        assert result.padding_x == 40
        assert result.shift_y == 0

    def test_results_stay_within_limits(self):
        """Random sheets never produce padding beyond 10% or shift beyond 50."""
        rng = np.random.default_rng(1234)
        for _ in range(10):
            width, height = (int(v) for v in rng.integers(20, 300, size=2))
            data = rng.integers(0, 256, size=(height, width, 4), dtype=np.uint8)
            result = optimize_slice_settings(PixelBuffer(data), 3, 2)
            assert 0 <= result.padding_x <= int(width * 0.1)
            assert 0 <= result.padding_y <= int(height * 0.1)
            assert abs(result.shift_x) <= MAX_SHIFT
            assert abs(result.shift_y) <= MAX_SHIFT

    def test_empty_sheet_is_noop(self, make_solid):
        result = optimize_slice_settings(make_solid(32, 32, (0, 0, 0, 0)), 2, 2)
        assert result.is_noop

    def test_failure_returns_noop(self):
        """Bad input is logged and yields the no-op suggestion."""
        assert optimize_slice_settings(None, 2, 2) == OptimizedSlice()


class TestApplyTo:
    """Tests for writing a suggestion into settings."""

    def test_sets_values_and_flags(self):
        settings = SliceSettings(cols=2, rows=2, padding_left=9)
        updated = OptimizedSlice(padding_x=4, padding_y=2, shift_x=-3, shift_y=1).apply_to(settings)
        assert (updated.padding_x, updated.padding_y, updated.shift_x, updated.shift_y) == (4, 2, -3, 1)
        assert updated.padding_left is None
        assert updated.auto_optimized == AutoOptimizedFlags(True, True, True, True)
        assert (updated.cols, updated.rows) == (2, 2)
