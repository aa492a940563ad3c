"""Utilities for converting RGBA frames into indexed palettes with a transparent slot."""
from __future__ import annotations

import logging
from typing import Sequence

import numpy as np
from PIL import Image

from .pixel_buffer import ColorTuple, PixelBuffer


logger = logging.getLogger(__name__)

TRANSPARENT_INDEX = 0


def _build_palette(colors: Sequence[ColorTuple]) -> list[int]:
    if len(colors) > 256:
        raise ValueError("Palettes are limited to 256 colors for indexed images")
    flat: list[int] = []
    for color in colors:
        flat.extend(color)
    padding = 256 - len(colors)
    if padding > 0:
        flat.extend([0, 0, 0] * padding)
    return flat


def quantize_frame(
    buffer: PixelBuffer,
    *,
    alpha_threshold: int = 128,
    max_colors: int = 255,
    dither: bool = False,
) -> Image.Image:
    """Return a ``P`` image whose index 0 is reserved for transparency.

    Pixels with alpha below ``alpha_threshold`` map to index 0; the rest are
    quantized (median cut) into at most ``max_colors`` entries stored at
    indices 1 and up.
    """

    max_colors = max(1, min(255, int(max_colors)))
    transparent = buffer.alpha < int(alpha_threshold)
    rgb = buffer.data[..., :3].copy()
    rgb[transparent] = 0
    height, width = transparent.shape

    indices = np.zeros((height, width), dtype=np.uint8)
    colors: list[ColorTuple] = [(0, 0, 0)]
    if not transparent.all():
        dither_flag = Image.Dither.FLOYDSTEINBERG if dither else Image.Dither.NONE
        quantized = Image.fromarray(rgb).quantize(
            colors=max_colors,
            method=Image.Quantize.MEDIANCUT,
            dither=dither_flag,
        )
        raw = quantized.getpalette() or []
        palette = raw[: max_colors * 3]
        colors.extend(tuple(palette[pos : pos + 3]) for pos in range(0, len(palette) - 2, 3))  # type: ignore[misc]
        shifted = np.array(quantized, dtype=np.uint16) + 1
        indices = np.where(transparent, TRANSPARENT_INDEX, shifted).astype(np.uint8)

    indexed = Image.frombytes("P", (width, height), indices.tobytes())
    indexed.putpalette(_build_palette(colors[:256]))
    indexed.info["transparency"] = TRANSPARENT_INDEX
    logger.debug(
        "quantize.frame size=%sx%s colors=%s transparent=%s threshold=%s",
        width,
        height,
        len(colors) - 1,
        int(np.count_nonzero(transparent)),
        alpha_threshold,
    )
    return indexed
