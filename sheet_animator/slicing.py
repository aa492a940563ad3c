"""Grid slicing of sprite sheets into equally sized animation frames."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Sequence, Tuple

import numpy as np

from .chroma_key import (
    ChromaKeyColor,
    ChromaKeyTuning,
    MAGENTA,
    clean_floor_region,
    green_like_mask,
    magenta_like_mask,
    remove_background,
)
from .errors import InvalidGridError, InvalidSliceAreaError
from .pixel_buffer import PixelBuffer, Rect, round_half_up


logger = logging.getLogger(__name__)

MIN_OVERRIDE_SCALE = 0.25
MAX_OVERRIDE_SCALE = 1.0


class SliceMode(str, Enum):
    EQUAL = "equal"
    INFERRED = "inferred"


def _pick(payload: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in payload and payload[key] is not None:
            return payload[key]
    return default


def _grid_count(value: Any) -> Any:
    """Coerce a stored cols/rows value without hiding fractional counts."""

    if isinstance(value, str):
        try:
            value = float(value)
        except ValueError:
            return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


@dataclass(slots=True)
class AutoOptimizedFlags:
    padding_x: bool = False
    padding_y: bool = False
    shift_x: bool = False
    shift_y: bool = False

    def to_dict(self) -> Dict[str, bool]:
        return {
            "padding_x": self.padding_x,
            "padding_y": self.padding_y,
            "shift_x": self.shift_x,
            "shift_y": self.shift_y,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any] | None) -> "AutoOptimizedFlags":
        payload = payload or {}
        return cls(
            padding_x=bool(_pick(payload, "padding_x", "paddingX", default=False)),
            padding_y=bool(_pick(payload, "padding_y", "paddingY", default=False)),
            shift_x=bool(_pick(payload, "shift_x", "shiftX", default=False)),
            shift_y=bool(_pick(payload, "shift_y", "shiftY", default=False)),
        )


@dataclass(slots=True)
class PaddingFour:
    left: float
    right: float
    top: float
    bottom: float


# Which auto-optimized flag a user edit of each field invalidates.
_EDIT_FLAG_FIELDS = {
    "padding_x": "padding_x",
    "padding_left": "padding_x",
    "padding_right": "padding_x",
    "padding_y": "padding_y",
    "padding_top": "padding_y",
    "padding_bottom": "padding_y",
    "shift_x": "shift_x",
    "shift_y": "shift_y",
}


@dataclass(slots=True)
class SliceSettings:
    cols: int = 3
    rows: int = 2
    padding_x: float = 0
    padding_y: float = 0
    shift_x: float = 0
    shift_y: float = 0
    padding_left: float | None = None
    padding_right: float | None = None
    padding_top: float | None = None
    padding_bottom: float | None = None
    slice_mode: SliceMode = SliceMode.EQUAL
    inferred_cell_rects: List[Rect] = field(default_factory=list)
    auto_optimized: AutoOptimizedFlags = field(default_factory=AutoOptimizedFlags)

    @property
    def frame_count(self) -> int:
        return self.cols * self.rows

    def with_user_edit(self, **changes: Any) -> "SliceSettings":
        """Return a copy with ``changes`` applied, clearing the matching optimizer flags."""

        flags = replace(self.auto_optimized)
        for name in changes:
            flag = _EDIT_FLAG_FIELDS.get(name)
            if flag:
                setattr(flags, flag, False)
        return replace(self, auto_optimized=flags, **changes)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "cols": self.cols,
            "rows": self.rows,
            "padding_x": self.padding_x,
            "padding_y": self.padding_y,
            "shift_x": self.shift_x,
            "shift_y": self.shift_y,
            "slice_mode": self.slice_mode.value,
            "auto_optimized": self.auto_optimized.to_dict(),
        }
        for name in ("padding_left", "padding_right", "padding_top", "padding_bottom"):
            value = getattr(self, name)
            if value is not None:
                payload[name] = value
        if self.slice_mode is SliceMode.INFERRED:
            payload["inferred_cell_rects"] = [rect.to_dict() for rect in self.inferred_cell_rects]
        return payload

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "SliceSettings":
        mode_raw = str(_pick(payload, "slice_mode", "sliceMode", default="equal")).strip().lower()
        mode = SliceMode.INFERRED if mode_raw == SliceMode.INFERRED.value else SliceMode.EQUAL
        rects_raw = _pick(payload, "inferred_cell_rects", "inferredCellRects", default=[])
        rects = [Rect.from_dict(item) for item in rects_raw if isinstance(item, dict)] if isinstance(rects_raw, list) else []

        def _optional(*keys: str) -> float | None:
            value = _pick(payload, *keys)
            return None if value is None else float(value)

        return cls(
            cols=_grid_count(_pick(payload, "cols", default=3)),
            rows=_grid_count(_pick(payload, "rows", default=2)),
            padding_x=float(_pick(payload, "padding_x", "paddingX", default=0)),
            padding_y=float(_pick(payload, "padding_y", "paddingY", default=0)),
            shift_x=float(_pick(payload, "shift_x", "shiftX", default=0)),
            shift_y=float(_pick(payload, "shift_y", "shiftY", default=0)),
            padding_left=_optional("padding_left", "paddingLeft"),
            padding_right=_optional("padding_right", "paddingRight"),
            padding_top=_optional("padding_top", "paddingTop"),
            padding_bottom=_optional("padding_bottom", "paddingBottom"),
            slice_mode=mode,
            inferred_cell_rects=rects,
            auto_optimized=AutoOptimizedFlags.from_dict(_pick(payload, "auto_optimized", "autoOptimized")),
        )


@dataclass(slots=True)
class FrameOverride:
    offset_x: float = 0.0
    offset_y: float = 0.0
    scale: float = 1.0

    @property
    def clamped_scale(self) -> float:
        return max(MIN_OVERRIDE_SCALE, min(MAX_OVERRIDE_SCALE, float(self.scale)))

    @property
    def is_identity(self) -> bool:
        return self.offset_x == 0 and self.offset_y == 0 and self.clamped_scale == 1.0

    def to_dict(self) -> Dict[str, float]:
        return {"offset_x": self.offset_x, "offset_y": self.offset_y, "scale": self.scale}

    @classmethod
    def from_dict(cls, payload: Dict[str, Any] | None) -> "FrameOverride":
        payload = payload or {}
        return cls(
            offset_x=float(_pick(payload, "offset_x", "offsetX", default=0.0)),
            offset_y=float(_pick(payload, "offset_y", "offsetY", default=0.0)),
            scale=float(_pick(payload, "scale", default=1.0)),
        )


OverrideList = Sequence["FrameOverride | None"]


def overrides_to_list(overrides: OverrideList | None) -> List[Dict[str, float] | None]:
    return [None if item is None else item.to_dict() for item in (overrides or [])]


def overrides_from_list(payload: Sequence[Any] | None, count: int | None = None) -> List[FrameOverride | None]:
    items: List[FrameOverride | None] = []
    for entry in payload or []:
        items.append(FrameOverride.from_dict(entry) if isinstance(entry, dict) else None)
    if count is not None:
        items = (items + [None] * count)[:count]
    return items


@dataclass(slots=True)
class FrameChromaPass:
    """Per-frame chroma cleanup applied after each cell is composited."""

    target: ChromaKeyColor = MAGENTA
    fuzz_percent: float = 35
    tuning: ChromaKeyTuning = field(default_factory=ChromaKeyTuning)


@dataclass(slots=True)
class GridGeometry:
    start_x: int
    start_y: int
    effective_width: float
    effective_height: float
    cell_width: float
    cell_height: float
    cols: int
    rows: int

    @property
    def frame_size(self) -> Tuple[int, int]:
        return max(1, round_half_up(self.cell_width)), max(1, round_half_up(self.cell_height))

    def cell_rect(self, index: int) -> Rect:
        col = index % self.cols
        row = index // self.cols
        return Rect(
            x=self.start_x + col * self.cell_width,
            y=self.start_y + row * self.cell_height,
            width=self.cell_width,
            height=self.cell_height,
        )


def effective_padding(settings: SliceSettings) -> PaddingFour:
    return PaddingFour(
        left=settings.padding_left if settings.padding_left is not None else settings.padding_x,
        right=settings.padding_right if settings.padding_right is not None else settings.padding_x,
        top=settings.padding_top if settings.padding_top is not None else settings.padding_y,
        bottom=settings.padding_bottom if settings.padding_bottom is not None else settings.padding_y,
    )


def _is_positive_int(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, np.integer)):
        return value >= 1
    if isinstance(value, float) and value.is_integer():
        return value >= 1
    return False


def validate_settings(settings: SliceSettings) -> None:
    if not _is_positive_int(settings.cols) or not _is_positive_int(settings.rows):
        raise InvalidGridError(f"cols and rows must be positive integers (got {settings.cols!r} x {settings.rows!r})")
    for name in ("padding_x", "padding_y", "padding_left", "padding_right", "padding_top", "padding_bottom"):
        value = getattr(settings, name)
        if value is not None and value < 0:
            raise InvalidGridError(f"{name} must be >= 0 (got {value!r})")
    if settings.slice_mode is SliceMode.INFERRED:
        expected = int(settings.cols) * int(settings.rows)
        if expected != len(settings.inferred_cell_rects):
            raise InvalidGridError(
                f"inferred mode needs cols*rows == rect count ({expected} != {len(settings.inferred_cell_rects)})"
            )


def compute_grid_geometry(width: int, height: int, settings: SliceSettings) -> GridGeometry:
    """Resolve padding and shift into the grid origin and fractional cell size.

    Shift slides the grid window: it moves the start edge and consumes the far
    edge's padding, which can never go below zero.
    """

    validate_settings(settings)
    cols = int(settings.cols)
    rows = int(settings.rows)
    pad = effective_padding(settings)
    start_x = max(0, min(width - 1, round_half_up(pad.left + settings.shift_x)))
    start_y = max(0, min(height - 1, round_half_up(pad.top + settings.shift_y)))
    remaining_right = max(0.0, pad.right - settings.shift_x)
    remaining_bottom = max(0.0, pad.bottom - settings.shift_y)
    effective_width = width - start_x - remaining_right
    effective_height = height - start_y - remaining_bottom
    if effective_width <= 0 or effective_height <= 0:
        raise InvalidSliceAreaError(
            f"Effective slice area {effective_width}x{effective_height} is empty for sheet {width}x{height}"
        )
    geometry = GridGeometry(
        start_x=start_x,
        start_y=start_y,
        effective_width=effective_width,
        effective_height=effective_height,
        cell_width=effective_width / cols,
        cell_height=effective_height / rows,
        cols=cols,
        rows=rows,
    )
    logger.debug(
        "slice.grid sheet=%sx%s grid=%sx%s pad=(%s,%s,%s,%s) shift=(%s,%s) start=(%s,%s) cell=%.3fx%.3f",
        width,
        height,
        cols,
        rows,
        pad.left,
        pad.right,
        pad.top,
        pad.bottom,
        settings.shift_x,
        settings.shift_y,
        start_x,
        start_y,
        geometry.cell_width,
        geometry.cell_height,
    )
    return geometry


def cell_rects(width: int, height: int, settings: SliceSettings) -> List[Rect]:
    """Return the source rectangle of every cell, row-major."""

    if settings.slice_mode is SliceMode.INFERRED:
        validate_settings(settings)
        return [replace(rect) for rect in settings.inferred_cell_rects]
    geometry = compute_grid_geometry(width, height, settings)
    return [geometry.cell_rect(index) for index in range(geometry.cols * geometry.rows)]


def crop_rect(cell: Rect, override: FrameOverride | None) -> Rect:
    """Apply a per-frame override: scaled crop, centred in the cell, then offset."""

    if override is None:
        return replace(cell)
    scale = override.clamped_scale
    crop_w = cell.width * scale
    crop_h = cell.height * scale
    return Rect(
        x=cell.x + (cell.width - crop_w) / 2.0 + override.offset_x,
        y=cell.y + (cell.height - crop_h) / 2.0 + override.offset_y,
        width=crop_w,
        height=crop_h,
    )


def render_crop(sheet: PixelBuffer, crop: Rect, out_width: int, out_height: int) -> PixelBuffer:
    """Draw ``crop`` from the sheet into an ``out_width x out_height`` frame.

    Nearest-neighbour sampling; samples that fall outside the sheet stay
    transparent.
    """

    out = np.zeros((out_height, out_width, 4), dtype=np.uint8)
    if crop.width <= 0 or crop.height <= 0:
        return PixelBuffer(out)
    xs = np.floor(crop.x + (np.arange(out_width) + 0.5) * (crop.width / out_width)).astype(np.int64)
    ys = np.floor(crop.y + (np.arange(out_height) + 0.5) * (crop.height / out_height)).astype(np.int64)
    valid_x = (xs >= 0) & (xs < sheet.width)
    valid_y = (ys >= 0) & (ys < sheet.height)
    if valid_x.any() and valid_y.any():
        out[np.ix_(valid_y, valid_x)] = sheet.data[np.ix_(ys[valid_y], xs[valid_x])]
    return PixelBuffer(out)


def render_cell(
    sheet: PixelBuffer,
    cell: Rect,
    override: FrameOverride | None = None,
    out_size: Tuple[int, int] | None = None,
) -> PixelBuffer:
    if out_size is None:
        out_size = (max(1, round_half_up(cell.width)), max(1, round_half_up(cell.height)))
    return render_crop(sheet, crop_rect(cell, override), out_size[0], out_size[1])


def _apply_frame_chroma(frame: PixelBuffer, chroma: FrameChromaPass | None) -> PixelBuffer:
    if chroma is None:
        return frame
    cleaned = remove_background(
        frame,
        chroma.target,
        chroma.fuzz_percent,
        tuning=chroma.tuning,
        detect_target=False,
        edge_cleanup=False,
    )
    return clean_floor_region(cleaned, chroma.target, chroma.fuzz_percent, chroma.tuning)


def _override_at(overrides: OverrideList | None, index: int) -> FrameOverride | None:
    if overrides is None or index >= len(overrides):
        return None
    return overrides[index]


def _paste_centered(canvas: np.ndarray, frame: PixelBuffer) -> None:
    canvas_h, canvas_w = canvas.shape[:2]
    x0 = (canvas_w - frame.width) // 2
    y0 = (canvas_h - frame.height) // 2
    canvas[y0 : y0 + frame.height, x0 : x0 + frame.width] = frame.data


def slice_sheet(
    sheet: PixelBuffer,
    settings: SliceSettings,
    overrides: OverrideList | None = None,
    chroma: FrameChromaPass | None = None,
) -> List[PixelBuffer]:
    """Cut ``sheet`` into ``cols * rows`` frames of identical size."""

    if settings.slice_mode is SliceMode.INFERRED:
        return _slice_inferred(sheet, settings, overrides, chroma)

    geometry = compute_grid_geometry(sheet.width, sheet.height, settings)
    frame_size = geometry.frame_size
    frames: List[PixelBuffer] = []
    for index in range(geometry.cols * geometry.rows):
        override = _override_at(overrides, index)
        frame = render_cell(sheet, geometry.cell_rect(index), override, frame_size)
        frames.append(_apply_frame_chroma(frame, chroma))
    logger.debug(
        "slice.done frames=%s size=%sx%s overrides=%s chroma=%s",
        len(frames),
        frame_size[0],
        frame_size[1],
        sum(1 for item in (overrides or []) if item is not None),
        chroma.target.hex if chroma else None,
    )
    return frames


def _slice_inferred(
    sheet: PixelBuffer,
    settings: SliceSettings,
    overrides: OverrideList | None,
    chroma: FrameChromaPass | None,
) -> List[PixelBuffer]:
    validate_settings(settings)
    rects = settings.inferred_cell_rects
    if not rects:
        raise InvalidSliceAreaError("Inferred mode has no cell rectangles")
    canvas_w = max(max(1, round_half_up(rect.width)) for rect in rects)
    canvas_h = max(max(1, round_half_up(rect.height)) for rect in rects)
    frames: List[PixelBuffer] = []
    for index, rect in enumerate(rects):
        cell = render_cell(sheet, rect, _override_at(overrides, index))
        canvas = np.zeros((canvas_h, canvas_w, 4), dtype=np.uint8)
        _paste_centered(canvas, cell)
        frames.append(_apply_frame_chroma(PixelBuffer(canvas), chroma))
    logger.debug("slice.inferred frames=%s canvas=%sx%s", len(frames), canvas_w, canvas_h)
    return frames


def _content_runs(flags: np.ndarray, min_length: int) -> List[Tuple[int, int]]:
    runs: List[Tuple[int, int]] = []
    start = None
    for index, value in enumerate(flags.tolist()):
        if value and start is None:
            start = index
        elif not value and start is not None:
            if index - start >= min_length:
                runs.append((start, index))
            start = None
    if start is not None and len(flags) - start >= min_length:
        runs.append((start, len(flags)))
    return runs


def _expand_bands(bands: List[Tuple[int, int]], limit: int) -> List[Tuple[int, int]]:
    gaps = [nxt[0] - cur[1] for cur, nxt in zip(bands, bands[1:])]
    half = (min(gaps) // 2) if gaps else 0
    return [(max(0, start - half), min(limit, end + half)) for start, end in bands]


def foreground_mask(sheet: PixelBuffer, target: ChromaKeyColor | None = None, alpha_threshold: int = 10) -> np.ndarray:
    rgb = sheet.data[..., :3].astype(np.int32)
    r, g, b = rgb[..., 0], rgb[..., 1], rgb[..., 2]
    background = sheet.alpha < alpha_threshold
    if target is None or target.is_magenta:
        background |= magenta_like_mask(r, g, b)
    if target is not None and target.is_green:
        background |= green_like_mask(r, g, b)
    return ~background


def infer_cell_rects(
    sheet: PixelBuffer,
    target: ChromaKeyColor | None = None,
    *,
    min_band: int = 2,
) -> List[List[Rect]]:
    """Detect foreground blobs separated by background rows and columns.

    Returns one list of rectangles per detected row band, left to right.
    """

    mask = foreground_mask(sheet, target)
    row_bands = _expand_bands(_content_runs(mask.any(axis=1), min_band), sheet.height)
    grid: List[List[Rect]] = []
    for top, bottom in row_bands:
        band = mask[top:bottom]
        col_bands = _expand_bands(_content_runs(band.any(axis=0), min_band), sheet.width)
        row_rects = [Rect(x=left, y=top, width=right - left, height=bottom - top) for left, right in col_bands]
        if row_rects:
            grid.append(row_rects)
    logger.debug("slice.infer rows=%s counts=%s", len(grid), [len(row) for row in grid])
    return grid


def inferred_slice_settings(
    sheet: PixelBuffer,
    base: SliceSettings | None = None,
    target: ChromaKeyColor | None = None,
) -> SliceSettings:
    """Build inferred-mode settings from detected blobs (row-major)."""

    grid = infer_cell_rects(sheet, target)
    rects = [rect for row in grid for rect in row]
    if not rects:
        raise InvalidSliceAreaError("No foreground blobs found to infer cells from")
    counts = {len(row) for row in grid}
    if len(counts) == 1:
        cols, rows = counts.pop(), len(grid)
    else:
        cols, rows = len(rects), 1
    base = base or SliceSettings()
    return replace(base, cols=cols, rows=rows, slice_mode=SliceMode.INFERRED, inferred_cell_rects=rects)