from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Literal, Sequence

import numpy as np
from PIL import Image

from .pixel_buffer import PixelBuffer, ensure_buffer


logger = logging.getLogger(__name__)

Easing = Literal["linear", "ease-in", "ease-out", "ease-in-out"]
LoopMode = Literal["loop", "pingpong", "none"]

EASINGS: Dict[str, Callable[[float], float]] = {
    "linear": lambda t: t,
    "ease-in": lambda t: t * t,
    "ease-out": lambda t: t * (2 - t),
    "ease-in-out": lambda t: 2 * t * t if t < 0.5 else -1 + (4 - 2 * t) * t,
}

LOOP_MODES = ("loop", "pingpong", "none")


def apply_easing(t: float, easing: str = "ease-in-out") -> float:
    try:
        curve = EASINGS[easing]
    except KeyError:
        raise ValueError(f"Unknown easing: {easing!r} (expected one of {sorted(EASINGS)})") from None
    return curve(max(0.0, min(1.0, float(t))))


def _stretch(buffer: PixelBuffer, width: int, height: int) -> np.ndarray:
    if buffer.size == (width, height):
        return buffer.data
    resized = buffer.to_image().resize((width, height), Image.Resampling.NEAREST)
    return np.array(resized, dtype=np.uint8)


def blend_frames(
    frame_a: PixelBuffer | bytes | str,
    frame_b: PixelBuffer | bytes | str,
    t: float,
    easing: str = "ease-in-out",
) -> PixelBuffer:
    """Alpha-weighted cross-fade of two frames at phase ``t``.

    Colour is the average of both inputs weighted by ``alpha * phase``, so a
    transparent pixel never tints its visible neighbour. Where both weights are
    zero the output is transparent black. Frames of different sizes are both
    stretched to the larger dimensions.
    """

    a = ensure_buffer(frame_a)
    b = ensure_buffer(frame_b)
    eased = apply_easing(t, easing)
    if eased <= 0.0 and a.size == b.size:
        return a.copy()
    if eased >= 1.0 and a.size == b.size:
        return b.copy()
    width = max(a.width, b.width)
    height = max(a.height, b.height)
    data_a = _stretch(a, width, height).astype(np.float64)
    data_b = _stretch(b, width, height).astype(np.float64)

    weight_a = (data_a[..., 3] / 255.0) * (1.0 - eased)
    weight_b = (data_b[..., 3] / 255.0) * eased
    total = weight_a + weight_b
    visible = total > 0

    out = np.zeros((height, width, 4), dtype=np.uint8)
    safe_total = np.where(visible, total, 1.0)
    for channel in range(3):
        mixed = (data_a[..., channel] * weight_a + data_b[..., channel] * weight_b) / safe_total
        out[..., channel] = np.where(visible, np.floor(mixed + 0.5), 0).astype(np.uint8)
    out[..., 3] = np.where(visible, np.floor(total * 255.0 + 0.5), 0).astype(np.uint8)
    return PixelBuffer(out)


def interpolate_frames(
    frames: Sequence[PixelBuffer | bytes | str],
    insert_count: int,
    easing: str = "ease-in-out",
    loop: bool = True,
) -> List[PixelBuffer]:
    """Insert ``insert_count`` blended frames between consecutive keyframes.

    With ``loop`` the last frame also blends back into the first, giving
    ``n + n * k`` frames; otherwise ``n + (n - 1) * k``. Sequences shorter than
    two frames are returned unchanged. A pair that cannot be decoded is logged
    and contributes no in-between frames.
    """

    keyframes = [ensure_buffer(frame) for frame in frames]
    if len(keyframes) < 2 or insert_count <= 0:
        return keyframes
    apply_easing(0.0, easing)
    count = len(keyframes)
    result: List[PixelBuffer] = []
    for index, frame in enumerate(keyframes):
        result.append(frame)
        if not loop and index == count - 1:
            continue
        following = keyframes[(index + 1) % count]
        for step in range(1, insert_count + 1):
            t = step / float(insert_count + 1)
            result.append(blend_frames(frame, following, t, easing))
    logger.debug(
        "interpolate.done keyframes=%s inserted=%s loop=%s easing=%s total=%s",
        count,
        insert_count,
        loop,
        easing,
        len(result),
    )
    return result


def pingpong(frames: Sequence[PixelBuffer]) -> List[PixelBuffer]:
    """Forward then backward, without repeating either endpoint."""

    items = list(frames)
    if len(items) < 2:
        return items
    return items + items[-2:0:-1]


@dataclass(slots=True)
class SmoothAnimation:
    frames: List[PixelBuffer]
    fps: float
    inserted: int

    @property
    def delay_ms(self) -> int:
        return max(1, int(round(1000.0 / self.fps)))


def insert_count_for_fps(target_fps: float, original_fps: float, fallback: int) -> int:
    if target_fps > 0 and original_fps > 0 and target_fps > original_fps:
        return max(1, int(round(target_fps / original_fps)) - 1)
    return max(0, int(fallback))


def generate_smooth_animation(
    keyframes: Sequence[PixelBuffer | bytes | str],
    *,
    interpolation_frames: int = 2,
    easing: str = "ease-in-out",
    loop_mode: str = "loop",
    target_fps: float = 24,
    original_fps: float = 12,
) -> SmoothAnimation:
    """Interpolate keyframes up to ``target_fps`` and apply the loop mode.

    When the target rate is above the source rate the insert count is derived
    from their ratio, otherwise ``interpolation_frames`` is used.
    """

    if loop_mode not in LOOP_MODES:
        raise ValueError(f"Unknown loop mode: {loop_mode!r} (expected one of {LOOP_MODES})")
    inserted = insert_count_for_fps(target_fps, original_fps, interpolation_frames)
    frames = interpolate_frames(keyframes, inserted, easing, loop=(loop_mode == "loop"))
    if loop_mode == "pingpong":
        frames = pingpong(frames)
    if len(keyframes) < 2 or inserted <= 0:
        fps = float(original_fps)
        inserted = 0
    elif target_fps > original_fps:
        fps = float(target_fps)
    else:
        fps = float(original_fps) * (inserted + 1)
    logger.debug(
        "interpolate.smooth keyframes=%s inserted=%s loop=%s fps=%.2f frames=%s",
        len(keyframes),
        inserted,
        loop_mode,
        fps,
        len(frames),
    )
    return SmoothAnimation(frames=frames, fps=fps, inserted=inserted)
