"""Per-cell alignment of sliced frames.

Two strategies are offered. Template matching moves each cell's crop to the
position whose alpha silhouette best overlaps a reference crop. Content-anchor
alignment measures an anchor point on each frame's opaque shape (core, centre
of mass or bounding-box centre) and moves the crop so the anchor lands where
it sits in the anchor frame.

Both are explicit one-shot operations returning a fresh override list.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, List, Literal, Sequence, Tuple

import numpy as np

from .pixel_buffer import PixelBuffer, Rect
from .slicing import FrameOverride, crop_rect, render_cell
from .tasks import CancellationToken


logger = logging.getLogger(__name__)

GRID_SIZE = 32
MAX_OFFSET = 500
DEFAULT_MAX_WINDOW = 80
COARSE_STRIDE = 2
REFINE_RADIUS = 2
SCORE_EPSILON = 1e-6
ANCHOR_ALPHA_THRESHOLD = 8

AlignMode = Literal["temporal", "anchor"]
AnchorMode = Literal["core", "mass", "bounds"]
ReferenceMode = Literal["anchor", "previous"]
Offset = Tuple[float, float]


@dataclass(slots=True)
class MatchResult:
    offset_x: int
    offset_y: int
    score: float


def _clamp_offset(value: float) -> float:
    return max(-MAX_OFFSET, min(MAX_OFFSET, value))


def _sample_indices(origin: float, extent: float, count: int) -> np.ndarray:
    return np.floor(origin + (np.arange(count) + 0.5) * (extent / count)).astype(np.int64)


def _sample_alpha(alpha: np.ndarray, xs: np.ndarray, ys: np.ndarray) -> np.ndarray:
    height, width = alpha.shape
    valid_x = (xs >= 0) & (xs < width)
    valid_y = (ys >= 0) & (ys < height)
    grid = alpha[np.ix_(np.clip(ys, 0, height - 1), np.clip(xs, 0, width - 1))].astype(np.float32)
    grid *= np.outer(valid_y, valid_x)
    return grid


def alpha_grid(source: PixelBuffer, region: Rect | None = None, size: int = GRID_SIZE) -> np.ndarray:
    """Downsample alpha of ``region`` (default: whole buffer) to a ``size x size`` grid."""

    if region is None:
        region = Rect(0, 0, source.width, source.height)
    if region.width <= 0 or region.height <= 0:
        return np.zeros((size, size), dtype=np.float32)
    xs = _sample_indices(region.x, region.width, size)
    ys = _sample_indices(region.y, region.height, size)
    return _sample_alpha(source.alpha, xs, ys)


def overlap_score(reference: np.ndarray, candidate: np.ndarray) -> float:
    """``sum(min(ref, cand)) / (sum(ref) + eps)``; 1.0 means the reference is fully covered."""

    return float(np.minimum(reference, candidate).sum() / (reference.sum() + SCORE_EPSILON))


def default_search_radius(cell: Rect) -> int:
    return int(max(0, min(DEFAULT_MAX_WINDOW, cell.width / 2.0)))


def best_offset_by_template_match(
    sheet: PixelBuffer,
    cell: Rect,
    reference: np.ndarray | PixelBuffer,
    scale: float = 1.0,
    *,
    center: Offset = (0.0, 0.0),
    max_delta: int | None = None,
) -> MatchResult:
    """Search offsets around ``center`` for the crop that best covers ``reference``.

    The window is ``+-max_delta`` when given, otherwise ``+-min(80, cell_width/2)``.
    A stride-2 coarse pass is followed by a +-2 refinement around the winner.
    Ties go to the candidate nearest the window centre.
    """

    ref_grid = alpha_grid(reference) if isinstance(reference, PixelBuffer) else reference.astype(np.float32)
    radius = int(max_delta) if max_delta is not None else default_search_radius(cell)
    base = crop_rect(cell, FrameOverride(0.0, 0.0, scale))
    base_xs = _sample_indices(base.x, base.width, GRID_SIZE)
    base_ys = _sample_indices(base.y, base.height, GRID_SIZE)
    alpha = sheet.alpha
    cx = int(round(center[0]))
    cy = int(round(center[1]))
    cache: dict[Tuple[int, int], float] = {}

    def score_at(dx: int, dy: int) -> float:
        key = (dx, dy)
        if key not in cache:
            cache[key] = overlap_score(ref_grid, _sample_alpha(alpha, base_xs + dx, base_ys + dy))
        return cache[key]

    def search(candidates: List[Tuple[int, int]], origin: Tuple[int, int]) -> Tuple[int, int, float]:
        candidates.sort(key=lambda item: (item[0] - origin[0]) ** 2 + (item[1] - origin[1]) ** 2)
        best_x, best_y = candidates[0]
        best_score = score_at(best_x, best_y)
        for dx, dy in candidates[1:]:
            value = score_at(dx, dy)
            if value > best_score:
                best_x, best_y, best_score = dx, dy, value
        return best_x, best_y, best_score

    steps = range(-radius, radius + 1, COARSE_STRIDE)
    coarse = [(cx + sx, cy + sy) for sy in steps for sx in steps]
    if (cx, cy) not in coarse:
        coarse.append((cx, cy))
    best_x, best_y, _ = search(coarse, (cx, cy))
    refine = [
        (best_x + sx, best_y + sy)
        for sy in range(-REFINE_RADIUS, REFINE_RADIUS + 1)
        for sx in range(-REFINE_RADIUS, REFINE_RADIUS + 1)
    ]
    best_x, best_y, best_score = search(refine, (best_x, best_y))
    result = MatchResult(
        offset_x=int(_clamp_offset(best_x)),
        offset_y=int(_clamp_offset(best_y)),
        score=best_score,
    )
    logger.debug(
        "align.match cell=(%.1f,%.1f %.1fx%.1f) center=(%s,%s) radius=%s evaluated=%s best=(%s,%s) score=%.4f",
        cell.x,
        cell.y,
        cell.width,
        cell.height,
        cx,
        cy,
        radius,
        len(cache),
        result.offset_x,
        result.offset_y,
        result.score,
    )
    return result


def _visit_order(count: int, anchor_index: int) -> List[Tuple[int, int]]:
    """Pairs of ``(index, previous_index)`` walking outward from the anchor."""

    forward = [(index, index - 1) for index in range(anchor_index + 1, count)]
    backward = [(index, index + 1) for index in range(anchor_index - 1, -1, -1)]
    return forward + backward


def align_sequence(
    sheet: PixelBuffer,
    cells: Sequence[Rect],
    scale: float = 1.0,
    *,
    mode: AlignMode = "temporal",
    anchor_index: int = 0,
    anchor_offset: Offset = (0.0, 0.0),
    max_delta: int = 10,
    smoothing: float = 0.7,
    reference: ReferenceMode = "anchor",
    token: CancellationToken | None = None,
    progress: Callable[[int], None] | None = None,
) -> List[FrameOverride]:
    """Template-match every cell against a reference silhouette.

    ``temporal`` centres each search on the previous frame's smoothed offset
    (window ``+-max_delta``) and smooths ``s = a * s_prev + (1 - a) * raw``.
    ``anchor`` searches the default window around the anchor frame's offset.
    ``reference="previous"`` matches against the previous frame's aligned crop
    instead of the anchor crop.
    """

    count = len(cells)
    if count == 0:
        return []
    if not 0 <= anchor_index < count:
        raise IndexError(f"anchor_index {anchor_index} out of range for {count} cells")
    alpha_weight = max(0.0, min(1.0, float(smoothing)))
    start = (float(anchor_offset[0]), float(anchor_offset[1]))
    # every slot is overwritten before it is read as a previous offset
    offsets: List[Offset] = [start] * count

    def crop_grid(index: int) -> np.ndarray:
        offset = offsets[index]
        return alpha_grid(sheet, crop_rect(cells[index], FrameOverride(offset[0], offset[1], scale)))

    anchor_grid = crop_grid(anchor_index)
    order = _visit_order(count, anchor_index)
    for done, (index, previous) in enumerate(order, start=1):
        if token is not None:
            token.raise_if_cancelled()
        prev_offset = offsets[previous]
        ref_grid = crop_grid(previous) if reference == "previous" else anchor_grid
        if mode == "temporal":
            match = best_offset_by_template_match(
                sheet, cells[index], ref_grid, scale, center=prev_offset, max_delta=max_delta
            )
            smoothed = (
                alpha_weight * prev_offset[0] + (1.0 - alpha_weight) * match.offset_x,
                alpha_weight * prev_offset[1] + (1.0 - alpha_weight) * match.offset_y,
            )
        elif mode == "anchor":
            match = best_offset_by_template_match(sheet, cells[index], ref_grid, scale, center=start)
            smoothed = (float(match.offset_x), float(match.offset_y))
        else:
            raise ValueError(f"Unknown align mode: {mode!r}")
        offsets[index] = (_clamp_offset(smoothed[0]), _clamp_offset(smoothed[1]))
        if progress is not None:
            progress(int(done * 100 / max(1, len(order))))

    logger.debug(
        "align.sequence mode=%s reference=%s cells=%s anchor=%s offsets=%s",
        mode,
        reference,
        count,
        anchor_index,
        offsets,
    )
    return [FrameOverride(offset[0], offset[1], scale) for offset in offsets]


@dataclass(slots=True)
class ShapeAnchor:
    x: float
    y: float
    opaque_count: int


def content_anchor(frame: PixelBuffer, mode: AnchorMode = "core", alpha_threshold: int = ANCHOR_ALPHA_THRESHOLD) -> ShapeAnchor:
    """Measure the anchor point of a frame's opaque shape.

    ``mass`` is the centroid, ``bounds`` the bounding-box centre and ``core`` the
    centroid of the torso band (25%-65% of the bounding-box height), which
    ignores swinging limbs and the head. An empty frame anchors at its centre.
    """

    mask = frame.alpha > int(alpha_threshold)
    ys, xs = np.nonzero(mask)
    if xs.size == 0:
        logger.debug("align.anchor empty size=%sx%s", frame.width, frame.height)
        return ShapeAnchor(frame.width * 0.5, frame.height * 0.5, 0)
    left, right = float(xs.min()), float(xs.max())
    top, bottom = float(ys.min()), float(ys.max())
    if mode == "bounds":
        anchor = ShapeAnchor((left + right) * 0.5, (top + bottom) * 0.5, int(xs.size))
    elif mode == "mass":
        anchor = ShapeAnchor(float(xs.mean()), float(ys.mean()), int(xs.size))
    elif mode == "core":
        band_top = top + (bottom - top) * 0.25
        band_bottom = top + (bottom - top) * 0.65
        in_band = (ys >= band_top) & (ys <= band_bottom)
        if not in_band.any():
            in_band = np.ones_like(xs, dtype=bool)
        anchor = ShapeAnchor(float(xs[in_band].mean()), float(ys[in_band].mean()), int(xs.size))
    else:
        raise ValueError(f"Unknown anchor mode: {mode!r}")
    logger.debug(
        "align.anchor mode=%s opaque=%s bbox=(%s,%s)-(%s,%s) anchor=(%.3f,%.3f)",
        mode,
        anchor.opaque_count,
        left,
        top,
        right,
        bottom,
        anchor.x,
        anchor.y,
    )
    return anchor


def smooth_offsets(overrides: Sequence[FrameOverride], strength: float) -> List[FrameOverride]:
    """Pull each inner frame's offset towards the mean of its neighbours.

    Runs left to right, so each frame sees its already-smoothed predecessor.
    The first and last frames are left alone.
    """

    out = [FrameOverride(item.offset_x, item.offset_y, item.scale) for item in overrides]
    strength = max(0.0, min(1.0, float(strength)))
    if strength <= 0 or len(out) <= 2:
        return out
    for index in range(1, len(out) - 1):
        a, b, c = out[index - 1], out[index], out[index + 1]
        b.offset_x = b.offset_x * (1 - strength) + (a.offset_x + c.offset_x) / 2 * strength
        b.offset_y = b.offset_y * (1 - strength) + (a.offset_y + c.offset_y) / 2 * strength
    return out


def align_by_content_anchor(
    sheet: PixelBuffer,
    cells: Sequence[Rect],
    scale: float = 1.0,
    *,
    mode: AnchorMode = "core",
    anchor_index: int = 0,
    anchor_offset: Offset = (0.0, 0.0),
    smoothing: float = 0.7,
) -> List[FrameOverride]:
    """Offset every crop so its content anchor matches the anchor frame's.

    All cells are first cropped with ``anchor_offset``; the anchor frame keeps
    that offset and the rest move by their anchor difference. Neighbour
    smoothing is applied afterwards with ``smoothing`` as its strength.
    """

    count = len(cells)
    if count == 0:
        return []
    if not 0 <= anchor_index < count:
        raise IndexError(f"anchor_index {anchor_index} out of range for {count} cells")
    base_override = FrameOverride(float(anchor_offset[0]), float(anchor_offset[1]), scale)
    anchors = [content_anchor(render_cell(sheet, cell, base_override), mode) for cell in cells]
    reference = anchors[anchor_index]
    overrides: List[FrameOverride] = []
    for index, anchor in enumerate(anchors):
        if index == anchor_index or anchor.opaque_count == 0:
            overrides.append(FrameOverride(base_override.offset_x, base_override.offset_y, scale))
            continue
        # frames are rendered at cell resolution, so anchor deltas are sheet pixels scaled by the crop
        dx = (anchor.x - reference.x) * base_override.clamped_scale
        dy = (anchor.y - reference.y) * base_override.clamped_scale
        overrides.append(
            FrameOverride(
                _clamp_offset(base_override.offset_x + dx),
                _clamp_offset(base_override.offset_y + dy),
                scale,
            )
        )
    smoothed = smooth_offsets(overrides, smoothing)
    if smoothing > 0 and 0 < anchor_index < count - 1:
        smoothed[anchor_index] = FrameOverride(base_override.offset_x, base_override.offset_y, scale)
    logger.debug("align.content mode=%s cells=%s smoothing=%s", mode, count, smoothing)
    return smoothed
