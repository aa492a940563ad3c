"""Shared pytest fixtures for sheet_animator tests."""

import numpy as np
import pytest

from sheet_animator.pixel_buffer import PixelBuffer, encode_png


MAGENTA_RGBA = (255, 0, 255, 255)
QUADRANT_COLORS = [
    (255, 0, 0, 255),
    (0, 200, 0, 255),
    (0, 0, 255, 255),
    (255, 255, 0, 255),
]


def solid(width: int, height: int, rgba) -> PixelBuffer:
    data = np.zeros((height, width, 4), dtype=np.uint8)
    data[:, :] = rgba
    return PixelBuffer(data)


# =============================================================================
# Sheet Fixtures
# =============================================================================


@pytest.fixture
def quadrant_sheet() -> PixelBuffer:
    """64x64 magenta sheet, 2x2 cells, each with a 16x16 coloured square in its centre."""
    sheet = solid(64, 64, MAGENTA_RGBA)
    for index, color in enumerate(QUADRANT_COLORS):
        x0 = (index % 2) * 32 + 8
        y0 = (index // 2) * 32 + 8
        sheet.data[y0 : y0 + 16, x0 : x0 + 16] = color
    return sheet


@pytest.fixture
def quadrant_png(quadrant_sheet) -> bytes:
    """The quadrant sheet encoded as PNG bytes."""
    return encode_png(quadrant_sheet)


@pytest.fixture
def twin_cell_sheet() -> PixelBuffer:
    """128x64 transparent sheet with the same asymmetric shape in both 64x64 cells."""
    sheet = PixelBuffer.blank(128, 64)
    for cell_x in (0, 64):
        # body
        sheet.data[16:48, cell_x + 20 : cell_x + 36] = (40, 90, 200, 255)
        # arm sticking out to the right
        sheet.data[24:30, cell_x + 36 : cell_x + 50] = (220, 180, 60, 255)
    return sheet


@pytest.fixture
def red_frames() -> list:
    """Three opaque red 10x10 frames."""
    return [solid(10, 10, (255, 0, 0, 255)) for _ in range(3)]


@pytest.fixture
def gradient_frame() -> PixelBuffer:
    """12x8 frame with varied colour and a transparent left half."""
    data = np.zeros((8, 12, 4), dtype=np.uint8)
    data[..., 0] = np.arange(12, dtype=np.uint8)[None, :] * 20
    data[..., 1] = np.arange(8, dtype=np.uint8)[:, None] * 30
    data[..., 2] = 90
    data[:, 6:, 3] = 255
    return PixelBuffer(data)


@pytest.fixture
def make_solid():
    """Factory for single-colour buffers: ``make_solid(width, height, rgba)``."""
    return solid
