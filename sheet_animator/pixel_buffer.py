"""RGBA pixel buffers and raster decode/encode helpers."""
from __future__ import annotations

import base64
import binascii
import io
import logging
import math
import re
from dataclasses import dataclass
from typing import Tuple

import numpy as np
from PIL import Image, UnidentifiedImageError

from .errors import ImageDecodeError


logger = logging.getLogger(__name__)

ColorTuple = Tuple[int, int, int]

_DATA_URL_PREFIX = re.compile(r"^data:image/[a-zA-Z0-9.+-]+;base64,")


@dataclass(slots=True)
class Rect:
    x: float
    y: float
    width: float
    height: float

    def to_dict(self) -> dict:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}

    @classmethod
    def from_dict(cls, payload: dict) -> "Rect":
        return cls(
            x=max(0.0, float(payload.get("x", 0))),
            y=max(0.0, float(payload.get("y", 0))),
            width=max(0.0, float(payload.get("width", 0))),
            height=max(0.0, float(payload.get("height", 0))),
        )


@dataclass(slots=True)
class PixelBuffer:
    """Non-premultiplied RGBA pixels stored as a ``(height, width, 4)`` uint8 array."""

    data: np.ndarray

    def __post_init__(self) -> None:
        if self.data.ndim != 3 or self.data.shape[2] != 4:
            raise ValueError(f"Expected (height, width, 4) array, got shape {self.data.shape}")
        if self.data.dtype != np.uint8:
            self.data = self.data.astype(np.uint8)

    @property
    def width(self) -> int:
        return int(self.data.shape[1])

    @property
    def height(self) -> int:
        return int(self.data.shape[0])

    @property
    def size(self) -> Tuple[int, int]:
        return self.width, self.height

    @property
    def alpha(self) -> np.ndarray:
        return self.data[:, :, 3]

    @classmethod
    def blank(cls, width: int, height: int) -> "PixelBuffer":
        return cls(np.zeros((max(1, height), max(1, width), 4), dtype=np.uint8))

    @classmethod
    def from_bytes(cls, raw: bytes, width: int, height: int) -> "PixelBuffer":
        expected = width * height * 4
        if len(raw) != expected:
            raise ValueError(f"Expected {expected} bytes for {width}x{height} RGBA, got {len(raw)}")
        array = np.frombuffer(raw, dtype=np.uint8).reshape((height, width, 4)).copy()
        return cls(array)

    @classmethod
    def from_image(cls, image: Image.Image) -> "PixelBuffer":
        return cls(np.array(image.convert("RGBA"), dtype=np.uint8))

    def to_bytes(self) -> bytes:
        return self.data.tobytes()

    def to_image(self) -> Image.Image:
        return Image.fromarray(self.data)

    def copy(self) -> "PixelBuffer":
        return PixelBuffer(self.data.copy())

    def same_pixels(self, other: "PixelBuffer") -> bool:
        return self.data.shape == other.data.shape and bool(np.array_equal(self.data, other.data))


def round_half_up(value: float) -> int:
    """Round halves towards positive infinity (0.5 -> 1, -0.5 -> 0)."""

    return int(math.floor(value + 0.5))


def clean_base64(value: str) -> str:
    """Strip a ``data:image/...;base64,`` prefix if present."""

    return _DATA_URL_PREFIX.sub("", value.strip())


def hex_to_rgb(value: str) -> ColorTuple:
    value = value.strip()
    if value.startswith("#"):
        value = value[1:]
    if len(value) != 6:
        raise ValueError("Expected hex RGB in the form RRGGBB")
    r = int(value[0:2], 16)
    g = int(value[2:4], 16)
    b = int(value[4:6], 16)
    return (r, g, b)


def decode_image(blob: bytes | str) -> PixelBuffer:
    """Decode raster bytes, base64 text or a data URL into a PixelBuffer."""

    if isinstance(blob, str):
        try:
            raw = base64.b64decode(clean_base64(blob), validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ImageDecodeError(f"Invalid base64 image data: {exc}") from exc
    else:
        raw = bytes(blob)
    if not raw:
        raise ImageDecodeError("Image data is empty")
    try:
        with Image.open(io.BytesIO(raw)) as img:
            img.load()
            buffer = PixelBuffer.from_image(img)
    except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as exc:
        raise ImageDecodeError(f"Unsupported or corrupt image: {exc}") from exc
    logger.debug("decode_image size=%sx%s bytes=%s", buffer.width, buffer.height, len(raw))
    return buffer


def encode_png(buffer: PixelBuffer) -> bytes:
    out = io.BytesIO()
    buffer.to_image().save(out, format="PNG")
    return out.getvalue()


def encode_base64_png(buffer: PixelBuffer) -> str:
    return "data:image/png;base64," + base64.b64encode(encode_png(buffer)).decode("ascii")


def ensure_buffer(frame: PixelBuffer | bytes | str) -> PixelBuffer:
    """Accept a decoded buffer or encoded image data and return a PixelBuffer."""

    if isinstance(frame, PixelBuffer):
        return frame
    return decode_image(frame)
