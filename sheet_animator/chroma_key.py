"""Chroma-key background removal for generated sprite sheets.

Three entry points cover the pipeline:

* :func:`remove_chroma_key` is the plain Euclidean-distance key: alpha is
  cleared wherever the RGB distance to the target is within the fuzz radius.
* :func:`remove_background` is the full-sheet pass. It first re-targets the
  key using :func:`detect_dominant_color`, then unions the distance test with
  colour-family predicates for magenta and green screens, and finally fades
  tinted edge pixels. It reports progress and honours a cancellation token.
* :func:`clean_floor_region` is a looser pass limited to the bottom of a cell,
  where generated art tends to leave shadow spill under the feet.

Only the alpha channel is modified unless ``desaturate_edges`` is requested.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Callable, Dict, Tuple

import numpy as np

from .pixel_buffer import PixelBuffer, hex_to_rgb
from .tasks import CancellationToken


logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], None]

_CHUNK_PIXELS = 50_000


@dataclass(frozen=True)
class ChromaKeyColor:
    r: int
    g: int
    b: int
    label: str = ""

    @property
    def rgb(self) -> Tuple[int, int, int]:
        return (self.r, self.g, self.b)

    @property
    def hex(self) -> str:
        return f"#{self.r:02X}{self.g:02X}{self.b:02X}"

    @property
    def is_magenta(self) -> bool:
        return self.r > 200 and self.g < 100 and self.b > 200

    @property
    def is_green(self) -> bool:
        return self.g > 100 and self.r < 100


MAGENTA = ChromaKeyColor(255, 0, 255, "magenta")
GREEN = ChromaKeyColor(0, 177, 64, "green")

CHROMA_KEY_COLORS: Dict[str, ChromaKeyColor] = {
    "magenta": MAGENTA,
    "green": GREEN,
}


@dataclass(slots=True)
class ChromaKeyTuning:
    """Empirical thresholds for the looser passes.

    ``floor_ratio`` is the fraction of a cell's height (from the bottom) that the
    floor pass inspects.
    """

    floor_ratio: float = 0.3
    floor_distance_scale: float = 2.2
    floor_channel_gap: int = 50
    corner_sample_cap: int = 100
    dominant_min_count: int = 10


def resolve_chroma_color(value: str | ChromaKeyColor) -> ChromaKeyColor:
    """Return a named colour (``magenta``/``green``) or parse ``#RRGGBB``."""

    if isinstance(value, ChromaKeyColor):
        return value
    key = value.strip().lower()
    if key in CHROMA_KEY_COLORS:
        return CHROMA_KEY_COLORS[key]
    r, g, b = hex_to_rgb(key)
    return ChromaKeyColor(r, g, b, key)


def _channels(data: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    rgb = data[..., :3].astype(np.int32)
    return rgb[..., 0], rgb[..., 1], rgb[..., 2]


def _distance(r: np.ndarray, g: np.ndarray, b: np.ndarray, target: ChromaKeyColor) -> np.ndarray:
    dr = r - target.r
    dg = g - target.g
    db = b - target.b
    return np.sqrt((dr * dr + dg * dg + db * db).astype(np.float64))


def _fuzz_radius(fuzz_percent: float) -> float:
    return (float(fuzz_percent) / 100.0) * 255.0


def magenta_like_mask(r: np.ndarray, g: np.ndarray, b: np.ndarray) -> np.ndarray:
    return (r > 180) & (g < 100) & (b > 100)


def green_like_mask(r: np.ndarray, g: np.ndarray, b: np.ndarray) -> np.ndarray:
    return (g > 80) & (r < 120) & (b < 150) & (g > r) & (g > b)


def remove_chroma_key(buffer: PixelBuffer, target: ChromaKeyColor, fuzz_percent: float) -> PixelBuffer:
    """Clear alpha for pixels within ``fuzz_percent`` of ``target`` (Euclidean RGB)."""

    out = buffer.copy()
    r, g, b = _channels(out.data)
    mask = _distance(r, g, b, target) <= _fuzz_radius(fuzz_percent)
    out.data[..., 3][mask] = 0
    logger.debug(
        "chroma.key target=%s fuzz=%s removed=%s size=%sx%s",
        target.hex,
        fuzz_percent,
        int(np.count_nonzero(mask)),
        out.width,
        out.height,
    )
    return out


def _corner_samples(data: np.ndarray, cap: int) -> np.ndarray:
    height, width = data.shape[:2]
    total = width * height
    side = min(cap, int(math.floor(math.sqrt(total) / 10)))
    side = min(side, width, height)
    if side <= 0:
        return np.zeros((0, 3), dtype=np.int32)
    blocks = [
        data[:side, :side],
        data[:side, width - side :],
        data[height - side :, :side],
        data[height - side :, width - side :],
    ]
    return np.concatenate([block[..., :3].reshape(-1, 3) for block in blocks]).astype(np.int32)


def detect_dominant_color(
    buffer: PixelBuffer,
    requested: ChromaKeyColor,
    tuning: ChromaKeyTuning | None = None,
) -> ChromaKeyColor:
    """Pick the actual background colour from the four corner squares.

    Only colours of the requested family qualify. The winner is used when it
    appears more than ``dominant_min_count`` times; otherwise ``requested``.
    """

    tuning = tuning or ChromaKeyTuning()
    samples = _corner_samples(buffer.data, tuning.corner_sample_cap)
    if samples.size == 0:
        return requested
    looking_for_magenta = requested.is_magenta
    looking_for_green = requested.is_green
    colors, counts = np.unique(samples, axis=0, return_counts=True)
    r, g, b = colors[:, 0], colors[:, 1], colors[:, 2]
    eligible = np.zeros(len(colors), dtype=bool)
    if looking_for_magenta:
        eligible |= magenta_like_mask(r, g, b)
    if looking_for_green:
        eligible |= green_like_mask(r, g, b)
    if not eligible.any():
        logger.debug("chroma.detect no family match requested=%s", requested.hex)
        return requested
    eligible_counts = np.where(eligible, counts, -1)
    best = int(np.argmax(eligible_counts))
    best_count = int(counts[best])
    if best_count <= tuning.dominant_min_count:
        logger.debug("chroma.detect weak winner count=%s requested=%s", best_count, requested.hex)
        return requested
    detected = ChromaKeyColor(int(r[best]), int(g[best]), int(b[best]), requested.label)
    logger.debug(
        "chroma.detect requested=%s detected=%s count=%s samples=%s",
        requested.hex,
        detected.hex,
        best_count,
        len(samples),
    )
    return detected


def _family_mask(
    r: np.ndarray,
    g: np.ndarray,
    b: np.ndarray,
    target: ChromaKeyColor,
    fuzz: float,
) -> np.ndarray:
    distance = _distance(r, g, b, target)
    close = (
        (np.abs(r - target.r) <= fuzz)
        & (np.abs(g - target.g) <= fuzz)
        & (np.abs(b - target.b) <= fuzz)
    )
    mask = close | (distance <= fuzz)
    if target.is_magenta:
        pure = (r > 200) & (g < 60) & (b > 200) & ((r + b) > g * 3)
        screen = (r > 180) & (g < 80) & (b > 180) & ((r - g) > 120) & ((b - g) > 120)
        bright = (r > 220) & (g < 100) & (b > 220) & ((r + b) > g * 4)
        neon = (r > 230) & (g < 80) & (b > 230)
        edge = (r > 150) & (g < 100) & (b > 150) & ((r - g) > 80) & ((b - g) > 80)
        mask |= pure | screen | bright | neon | edge | (distance < fuzz * 1.5)
    if target.is_green:
        pure = (g > 180) & (r < 50) & (b < 50)
        standard = (g > 120) & (r < 50) & (b < 100) & ((g - r) > 100) & ((g - b) > 50)
        bright = (g > 150) & (r < 60) & (b < 80) & (g > r * 3) & (g > b * 2)
        neon = (g > 200) & (r < 60) & (b < 60)
        dark = (g > 100) & (g < 200) & (r < 40) & (b < 80) & (g > (r + b) * 1.5)
        edge = (g > 100) & (r < 60) & (b < 90) & ((g - r) > 60) & ((g - b) > 30)
        mask |= pure | standard | bright | neon | dark | edge | (distance < fuzz * 1.8)
    return mask


def _is_screen_green(target: ChromaKeyColor) -> bool:
    # edge passes use a narrower green test than the keying pass
    return target.g > 150 and target.r < 150 and target.b < 150


def _fade_tinted_edges(data: np.ndarray, target: ChromaKeyColor) -> None:
    r, g, b = _channels(data)
    alpha = data[..., 3].astype(np.int32)
    visible = alpha > 0
    if target.is_magenta:
        strong = visible & (r > 180) & (b > 150) & (g < 100)
        tint = visible & ~strong & (r > 120) & (b > 80) & (g < 120) & ((r + b) > g * 2)
        strength = (r + b) / (g + 1.0)
        remove_above, heavy_above = 3.0, 2.0
    elif _is_screen_green(target):
        strong = visible & (g > 150) & (r < 80) & (b < 100) & ((g - r) > 70)
        tint = visible & ~strong & (g > 100) & (r < 120) & (b < 120) & ((g - r) > 40) & ((g - b) > 20)
        strength = g / ((r + b) / 2.0 + 1.0)
        remove_above, heavy_above = 2.0, 1.5
    else:
        return
    remove = strong | (tint & (strength > remove_above))
    heavy = tint & ~remove & (strength > heavy_above)
    light = tint & ~remove & ~heavy & (alpha < 255)
    new_alpha = alpha.copy()
    new_alpha[heavy] = np.floor(alpha[heavy] * 0.4)
    new_alpha[light] = np.floor(alpha[light] * 0.6)
    new_alpha[remove] = 0
    data[..., 3] = new_alpha.astype(np.uint8)


def _desaturate_tinted_edges(data: np.ndarray, target: ChromaKeyColor) -> None:
    r, g, b = _channels(data)
    alpha = data[..., 3]
    partial = (alpha > 0) & (alpha < 255)
    if target.is_magenta:
        tinted = partial & ((r > 100) | (b > 100)) & (g < 100) & ((r + b) > g * 1.8)
    elif _is_screen_green(target):
        tinted = partial & (g > 80) & ((g - r) > 30) & ((g - b) > 15)
    else:
        return
    if not tinted.any():
        return
    gray = np.floor(0.299 * r + 0.587 * g + 0.114 * b + 0.5)
    for channel, values in enumerate((r, g, b)):
        blended = np.floor((values + gray) / 2.0 + 0.5).astype(np.uint8)
        data[..., channel] = np.where(tinted, blended, data[..., channel])


def remove_background(
    buffer: PixelBuffer,
    target: ChromaKeyColor = MAGENTA,
    fuzz_percent: float = 35,
    *,
    tuning: ChromaKeyTuning | None = None,
    detect_target: bool = True,
    edge_cleanup: bool = True,
    desaturate_edges: bool = False,
    progress: ProgressCallback | None = None,
    token: CancellationToken | None = None,
) -> PixelBuffer:
    """Aggressive full-frame background removal.

    Processes the buffer in row chunks so ``progress`` receives 0-100 updates and
    ``token`` can abort between chunks (raising ``OperationCancelled``).
    """

    tuning = tuning or ChromaKeyTuning()
    out = buffer.copy()
    data = out.data
    height, width = data.shape[:2]
    effective = detect_dominant_color(out, target, tuning) if detect_target else target
    fuzz = _fuzz_radius(fuzz_percent)
    rows_per_chunk = max(1, _CHUNK_PIXELS // max(1, width))
    removed = 0
    if progress is not None:
        progress(0)
    for top in range(0, height, rows_per_chunk):
        if token is not None:
            token.raise_if_cancelled()
        chunk = data[top : top + rows_per_chunk]
        r, g, b = _channels(chunk)
        mask = _family_mask(r, g, b, effective, fuzz) & (chunk[..., 3] > 0)
        chunk[..., 3][mask] = 0
        removed += int(np.count_nonzero(mask))
        if progress is not None:
            bottom = min(height, top + rows_per_chunk)
            progress(min(99, int(round((bottom / float(height)) * 100))))
    if token is not None:
        token.raise_if_cancelled()
    if edge_cleanup:
        _fade_tinted_edges(data, effective)
    if desaturate_edges:
        _desaturate_tinted_edges(data, effective)
    if progress is not None:
        progress(100)
    logger.debug(
        "chroma.background target=%s effective=%s fuzz=%s removed=%s size=%sx%s",
        target.hex,
        effective.hex,
        fuzz_percent,
        removed,
        width,
        height,
    )
    return out


def clean_floor_region(
    buffer: PixelBuffer,
    target: ChromaKeyColor = MAGENTA,
    fuzz_percent: float = 35,
    tuning: ChromaKeyTuning | None = None,
) -> PixelBuffer:
    """Looser spill removal over the bottom ``tuning.floor_ratio`` of the buffer."""

    tuning = tuning or ChromaKeyTuning()
    out = buffer.copy()
    height = out.height
    ratio = max(0.0, min(1.0, float(tuning.floor_ratio)))
    floor_rows = int(math.ceil(height * ratio))
    if floor_rows <= 0:
        return out
    region = out.data[height - floor_rows :]
    r, g, b = _channels(region)
    fuzz = _fuzz_radius(fuzz_percent)
    gap = int(tuning.floor_channel_gap)
    mask = _distance(r, g, b, target) <= fuzz * float(tuning.floor_distance_scale)
    if target.is_magenta:
        mask |= (r > 120) & (b > 100) & ((np.minimum(r, b) - g) > gap)
    if target.is_green:
        mask |= (g > 90) & ((g - np.maximum(r, b)) > gap)
    mask &= region[..., 3] > 0
    region[..., 3][mask] = 0
    logger.debug(
        "chroma.floor rows=%s/%s removed=%s target=%s",
        floor_rows,
        height,
        int(np.count_nonzero(mask)),
        target.hex,
    )
    return out


def remove_white_background(buffer: PixelBuffer, threshold: int = 230) -> PixelBuffer:
    """Clear alpha for pixels brighter than ``threshold`` on every channel."""

    out = buffer.copy()
    rgb = out.data[..., :3]
    mask = (rgb[..., 0] > threshold) & (rgb[..., 1] > threshold) & (rgb[..., 2] > threshold)
    out.data[..., 3][mask] = 0
    return out
