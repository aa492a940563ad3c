"""Encode frame sequences into APNG, GIF and ZIP-of-PNG containers.

Every encoder builds the complete artifact in memory and either returns its
bytes or raises :class:`ExportError`; nothing is written on failure.
"""
from __future__ import annotations

import base64
import binascii
import io
import logging
import os
import shutil
import tempfile
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import List, Sequence

from PIL import GifImagePlugin, Image, ImageSequence

from .errors import ExportError, ImageDecodeError, SheetAnimatorError
from .pixel_buffer import PixelBuffer, clean_base64, encode_png, ensure_buffer, round_half_up
from .quantization import TRANSPARENT_INDEX, quantize_frame


logger = logging.getLogger(__name__)

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"
GIF_TRAILER = b";"
GIF_DISPOSE_TO_BACKGROUND = 2

FrameInput = PixelBuffer | bytes | str


def zip_entry_name(index: int) -> str:
    return f"frame_{index + 1:03d}.png"


def _decode_frames(frames: Sequence[FrameInput], format_name: str) -> List[PixelBuffer]:
    if not frames:
        raise ExportError(format_name, "no frames to encode")
    try:
        buffers = [ensure_buffer(frame) for frame in frames]
    except ImageDecodeError as exc:
        raise ExportError(format_name, str(exc)) from exc
    size = buffers[0].size
    for index, buffer in enumerate(buffers):
        if buffer.size != size:
            raise ExportError(
                format_name,
                f"frame {index} is {buffer.width}x{buffer.height}, expected {size[0]}x{size[1]}",
            )
    return buffers


def _validate_delay(delay_ms: int, format_name: str) -> int:
    try:
        delay = int(delay_ms)
    except (TypeError, ValueError) as exc:
        raise ExportError(format_name, f"invalid delay {delay_ms!r}") from exc
    if delay <= 0:
        raise ExportError(format_name, f"delay must be positive (got {delay})")
    return delay


def to_apng(frames: Sequence[FrameInput], delay_ms: int, *, loop: int = 0) -> bytes:
    """Encode full 32-bit RGBA frames as an animated PNG.

    Pillow merges consecutive identical frames into one frame with the summed
    duration; playback timing is unchanged.
    """

    buffers = _decode_frames(frames, "apng")
    delay = _validate_delay(delay_ms, "apng")
    images = [buffer.to_image() for buffer in buffers]
    out = io.BytesIO()
    try:
        images[0].save(
            out,
            format="PNG",
            save_all=True,
            append_images=images[1:],
            duration=delay,
            loop=loop,
            disposal=1,
            blend=0,
            default_image=False,
        )
    except (OSError, ValueError) as exc:
        raise ExportError("apng", str(exc)) from exc
    data = out.getvalue()
    logger.debug("export.apng frames=%s delay=%s bytes=%s", len(images), delay, len(data))
    return data


def gif_delay_ms(delay_ms: int) -> int:
    """Snap a delay to the 10 ms steps a GIF frame can store."""

    return max(1, round_half_up(delay_ms / 10.0)) * 10


def to_gif(
    frames: Sequence[FrameInput],
    delay_ms: int,
    *,
    loop: int = 0,
    alpha_threshold: int = 128,
    dither: bool = False,
) -> bytes:
    """Encode frames as an animated GIF.

    Each frame carries its own 256-entry colour table with index 0 reserved for
    transparency and uses disposal 2 (restore to background), so regions that
    turn transparent do not keep the previous frame's pixels. Frames are written
    one by one, so identical consecutive frames stay separate frames.

    GIF stores delays in centiseconds. ``delay_ms`` is rounded to the nearest
    10 ms with a floor of 10 ms; a frame is never written with a zero delay.
    """

    buffers = _decode_frames(frames, "gif")
    delay = gif_delay_ms(_validate_delay(delay_ms, "gif"))
    try:
        indexed = [
            quantize_frame(buffer, alpha_threshold=alpha_threshold, dither=dither) for buffer in buffers
        ]
        header, _used = GifImagePlugin.getheader(indexed[0], info={"loop": loop})
        chunks: List[bytes] = [bytes(item) for item in header]
        for image in indexed:
            chunks.extend(
                bytes(item)
                for item in GifImagePlugin.getdata(
                    image,
                    duration=delay,
                    disposal=GIF_DISPOSE_TO_BACKGROUND,
                    transparency=TRANSPARENT_INDEX,
                    include_color_table=True,
                )
            )
        chunks.append(GIF_TRAILER)
    except (OSError, ValueError) as exc:
        raise ExportError("gif", str(exc)) from exc
    data = b"".join(chunks)
    logger.debug("export.gif frames=%s delay=%s bytes=%s", len(indexed), delay, len(data))
    return data


def _png_bytes(frame: FrameInput) -> bytes:
    """Return PNG bytes, passing pre-encoded PNG data through untouched."""

    if isinstance(frame, PixelBuffer):
        return encode_png(frame)
    if isinstance(frame, str):
        try:
            raw = base64.b64decode(clean_base64(frame), validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ImageDecodeError(f"Invalid base64 image data: {exc}") from exc
    else:
        raw = bytes(frame)
    if raw.startswith(PNG_SIGNATURE):
        return raw
    return encode_png(ensure_buffer(raw))


def to_zip(frames: Sequence[FrameInput]) -> bytes:
    """Store each frame as ``frame_001.png``, ``frame_002.png``, ... in a ZIP archive."""

    if not frames:
        raise ExportError("zip", "no frames to encode")
    out = io.BytesIO()
    try:
        with zipfile.ZipFile(out, "w", compression=zipfile.ZIP_DEFLATED) as archive:
            for index, frame in enumerate(frames):
                archive.writestr(zip_entry_name(index), _png_bytes(frame))
    except (SheetAnimatorError, OSError, ValueError, zipfile.BadZipFile) as exc:
        raise ExportError("zip", str(exc)) from exc
    data = out.getvalue()
    logger.debug("export.zip frames=%s bytes=%s", len(frames), len(data))
    return data


@dataclass(slots=True)
class DecodedAnimation:
    frames: List[PixelBuffer]
    durations: List[int]
    loop: int | None


def decode_animation(data: bytes) -> DecodedAnimation:
    """Decode an animated GIF/APNG (or a still image) into RGBA frames."""

    try:
        with Image.open(io.BytesIO(data)) as image:
            frames: List[PixelBuffer] = []
            durations: List[int] = []
            for frame in ImageSequence.Iterator(image):
                durations.append(int(frame.info.get("duration", 0)))
                frames.append(PixelBuffer.from_image(frame))
            loop = image.info.get("loop")
    except (OSError, ValueError) as exc:
        raise ImageDecodeError(f"Unsupported or corrupt animation: {exc}") from exc
    return DecodedAnimation(frames=frames, durations=durations, loop=loop)


def read_zip_frames(data: bytes) -> List[PixelBuffer]:
    """Decode every PNG in a ZIP archive in name order."""

    try:
        with zipfile.ZipFile(io.BytesIO(data)) as archive:
            names = sorted(name for name in archive.namelist() if name.lower().endswith(".png"))
            return [ensure_buffer(archive.read(name)) for name in names]
    except zipfile.BadZipFile as exc:
        raise ImageDecodeError(f"Invalid ZIP archive: {exc}") from exc


def write_atomic(path: Path, data: bytes) -> Path:
    """Write ``data`` to a temp file beside ``path`` and rename it into place."""

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    handle, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(handle, "wb") as stream:
            stream.write(data)
        os.replace(temp_name, path)
    except BaseException:
        Path(temp_name).unlink(missing_ok=True)
        raise
    return path


def write_frames_atomic(directory: Path, frames: Sequence[FrameInput]) -> Path:
    """Write frames as ``frame_001.png``, ... into ``directory`` in one step.

    All frames are encoded first, written to a sibling temp folder and then
    swapped in, so a failure never leaves a partial frame set behind. An
    existing folder at ``directory`` is replaced.
    """

    if not frames:
        raise ExportError("frames", "no frames to encode")
    try:
        encoded = [_png_bytes(frame) for frame in frames]
    except (SheetAnimatorError, OSError, ValueError) as exc:
        raise ExportError("frames", str(exc)) from exc
    directory = Path(directory)
    directory.parent.mkdir(parents=True, exist_ok=True)
    staging = Path(tempfile.mkdtemp(prefix=f".{directory.name}.", suffix=".tmp", dir=directory.parent))
    backup: Path | None = None
    try:
        for index, data in enumerate(encoded):
            (staging / zip_entry_name(index)).write_bytes(data)
        if directory.exists():
            backup = Path(tempfile.mkdtemp(prefix=f".{directory.name}.", suffix=".old", dir=directory.parent))
            backup.rmdir()
            os.replace(directory, backup)
        os.replace(staging, directory)
    except BaseException:
        shutil.rmtree(staging, ignore_errors=True)
        if backup is not None and backup.exists() and not directory.exists():
            os.replace(backup, directory)
        raise
    if backup is not None:
        shutil.rmtree(backup, ignore_errors=True)
    logger.debug("export.frames dir=%s frames=%s", directory, len(encoded))
    return directory
