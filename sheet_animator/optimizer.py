from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Tuple

import numpy as np

from .chroma_key import magenta_like_mask
from .pixel_buffer import PixelBuffer, round_half_up
from .slicing import AutoOptimizedFlags, SliceSettings


logger = logging.getLogger(__name__)

BACKGROUND_ALPHA_MAX = 10
NEAR_BLACK_MAX = 20
MAX_PADDING_RATIO = 0.1
MAX_SHIFT = 50


@dataclass(slots=True)
class ContentBounds:
    """Background margins measured inward from each sheet edge."""

    left: int
    right: int
    top: int
    bottom: int


@dataclass(slots=True)
class OptimizedSlice:
    padding_x: int = 0
    padding_y: int = 0
    shift_x: int = 0
    shift_y: int = 0
    padding_left: int = 0
    padding_right: int = 0
    padding_top: int = 0
    padding_bottom: int = 0

    @property
    def is_noop(self) -> bool:
        return not any((self.padding_x, self.padding_y, self.shift_x, self.shift_y))

    def apply_to(self, settings: SliceSettings) -> SliceSettings:
        """Write the suggestion into ``settings`` and mark those fields as optimizer-owned.

        Per-edge paddings are cleared so the symmetric values take effect.
        """

        return replace(
            settings,
            padding_x=self.padding_x,
            padding_y=self.padding_y,
            shift_x=self.shift_x,
            shift_y=self.shift_y,
            padding_left=None,
            padding_right=None,
            padding_top=None,
            padding_bottom=None,
            auto_optimized=AutoOptimizedFlags(padding_x=True, padding_y=True, shift_x=True, shift_y=True),
        )


def background_mask(buffer: PixelBuffer) -> np.ndarray:
    rgb = buffer.data[..., :3].astype(np.int32)
    r, g, b = rgb[..., 0], rgb[..., 1], rgb[..., 2]
    near_black = (r < NEAR_BLACK_MAX) & (g < NEAR_BLACK_MAX) & (b < NEAR_BLACK_MAX)
    return (buffer.alpha < BACKGROUND_ALPHA_MAX) | magenta_like_mask(r, g, b) | near_black


def find_content_bounds(buffer: PixelBuffer) -> ContentBounds | None:
    """Scan inward from every edge to the first row/column holding content.

    Returns ``None`` when the whole sheet is background.
    """

    content = ~background_mask(buffer)
    rows = np.flatnonzero(content.any(axis=1))
    cols = np.flatnonzero(content.any(axis=0))
    if rows.size == 0 or cols.size == 0:
        return None
    return ContentBounds(
        left=int(cols[0]),
        right=int(buffer.width - 1 - cols[-1]),
        top=int(rows[0]),
        bottom=int(buffer.height - 1 - rows[-1]),
    )


def _axis_suggestion(near: int, far: int, dimension: int) -> Tuple[int, int, int, int]:
    limit = int(dimension * MAX_PADDING_RATIO)
    padding = max(0, min(near, far, limit))
    # grid centre follows the content centre; the symmetric window alone is always image-centred
    content_center = (near + (dimension - far)) / 2.0
    shift = round_half_up(content_center - dimension / 2.0)
    shift = max(-MAX_SHIFT, min(MAX_SHIFT, shift))
    return padding, shift, max(0, min(near, limit)), max(0, min(far, limit))


def optimize_slice_settings(buffer: PixelBuffer, cols: int, rows: int) -> OptimizedSlice:
    """Suggest padding and shift that frame the sheet's content.

    Best effort: any failure is logged and the no-op suggestion returned.
    """

    try:
        bounds = find_content_bounds(buffer)
        if bounds is None:
            logger.debug("optimize.empty size=%sx%s", buffer.width, buffer.height)
            return OptimizedSlice()
        padding_x, shift_x, edge_left, edge_right = _axis_suggestion(bounds.left, bounds.right, buffer.width)
        padding_y, shift_y, edge_top, edge_bottom = _axis_suggestion(bounds.top, bounds.bottom, buffer.height)
        result = OptimizedSlice(
            padding_x=padding_x,
            padding_y=padding_y,
            shift_x=shift_x,
            shift_y=shift_y,
            padding_left=edge_left,
            padding_right=edge_right,
            padding_top=edge_top,
            padding_bottom=edge_bottom,
        )
        logger.debug(
            "optimize.ok size=%sx%s grid=%sx%s bounds=%s result=%s",
            buffer.width,
            buffer.height,
            cols,
            rows,
            bounds,
            result,
        )
        return result
    except Exception:  # noqa: BLE001
        logger.warning("optimize.failed size=%s grid=%sx%s", getattr(buffer, "size", None), cols, rows, exc_info=True)
        return OptimizedSlice()
