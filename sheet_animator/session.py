"""Stateful pipeline for one sprite sheet.

A :class:`SheetSession` owns the raw sheet, its background-removed version, the
slice settings, per-frame overrides and inclusion flags, and the current frame
list. Background removal runs on a worker thread (newest sheet wins); settings
edits are debounced into a single re-slice. A failed re-slice keeps the last
good frames and records the error in ``last_error``.
"""
from __future__ import annotations

import logging
import threading
from concurrent.futures import Future
from dataclasses import replace
from typing import Any, Callable, List, Literal

from .alignment import (
    AnchorMode,
    align_by_content_anchor,
    align_sequence,
    alpha_grid,
    best_offset_by_template_match,
    smooth_offsets,
)
from .chroma_key import remove_background
from .config import AnimatorConfig, fps_to_delay_ms
from .errors import ExportError, SheetAnimatorError
from .export import to_apng, to_gif, to_zip
from .interpolation import generate_smooth_animation
from .optimizer import OptimizedSlice, optimize_slice_settings
from .pixel_buffer import PixelBuffer, Rect, ensure_buffer
from .slicing import (
    FrameChromaPass,
    FrameOverride,
    SliceSettings,
    cell_rects,
    crop_rect,
    slice_sheet,
)
from .tasks import CancellationToken, Debouncer, LatestTaskRunner


logger = logging.getLogger(__name__)

ExportFormat = Literal["gif", "apng", "zip"]
AlignMethod = Literal["template", "content"]


class SheetSession:
    def __init__(
        self,
        config: AnimatorConfig | None = None,
        settings: SliceSettings | None = None,
        *,
        remove_chroma: bool = True,
        on_frames: Callable[[List[PixelBuffer]], None] | None = None,
        on_progress: Callable[[int], None] | None = None,
    ) -> None:
        self.config = config or AnimatorConfig()
        self.remove_chroma = remove_chroma
        self._lock = threading.RLock()
        self._settings = settings or SliceSettings()
        self._source: PixelBuffer | None = None
        self._processed: PixelBuffer | None = None
        self._overrides: List[FrameOverride | None] = []
        self._included: List[bool] = []
        self._frames: List[PixelBuffer] = []
        self._revision = 0
        self.last_error: SheetAnimatorError | None = None
        self._on_frames = on_frames
        self._runner: LatestTaskRunner[PixelBuffer] = LatestTaskRunner(
            on_result=self._accept_processed,
            on_progress=on_progress,
        )
        self._debouncer = Debouncer(self.reslice, delay=self.config.debounce_seconds)

    @property
    def settings(self) -> SliceSettings:
        with self._lock:
            return self._settings

    @property
    def frames(self) -> List[PixelBuffer]:
        with self._lock:
            return list(self._frames)

    @property
    def overrides(self) -> List[FrameOverride | None]:
        with self._lock:
            return list(self._overrides)

    @property
    def processed_sheet(self) -> PixelBuffer | None:
        with self._lock:
            return self._processed

    @property
    def source_sheet(self) -> PixelBuffer | None:
        with self._lock:
            return self._source

    def load_sheet(self, image: PixelBuffer | bytes | str) -> "Future[PixelBuffer]":
        """Decode ``image`` and start background removal on the worker.

        Decoding errors raise immediately. A newer call supersedes this one; the
        returned future then raises ``OperationCancelled``.
        """

        source = ensure_buffer(image)
        with self._lock:
            self._source = source
            self._revision += 1
            self._reset_frame_state(self._settings.frame_count)
        logger.debug("session.load size=%sx%s chroma=%s", source.width, source.height, self.remove_chroma)
        if not self.remove_chroma:
            return self._runner.submit(lambda token, report: source)
        color = self.config.chroma_color
        fuzz = self.config.fuzz_percent
        tuning = self.config.tuning

        def work(token: CancellationToken, report: Callable[[int], None]) -> PixelBuffer:
            return remove_background(source, color, fuzz, tuning=tuning, progress=report, token=token)

        return self._runner.submit(work)

    def _accept_processed(self, processed: PixelBuffer) -> None:
        with self._lock:
            self._processed = processed
            self._revision += 1
        self._debouncer.cancel()
        self.reslice()

    def _reset_frame_state(self, count: int) -> None:
        self._overrides = [None] * count
        self._included = [True] * count

    def _frame_chroma(self) -> FrameChromaPass | None:
        if not self.remove_chroma:
            return None
        return FrameChromaPass(self.config.chroma_color, self.config.fuzz_percent, self.config.tuning)

    def reslice(self) -> bool:
        """Slice the processed sheet now.

        Returns False if slicing failed or if the sheet, settings or overrides
        changed while slicing ran; the newer state's own re-slice then owns the
        frame list.
        """

        with self._lock:
            sheet = self._processed
            settings = self._settings
            overrides = list(self._overrides)
            revision = self._revision
        if sheet is None:
            return False
        try:
            frames = slice_sheet(sheet, settings, overrides, self._frame_chroma())
        except SheetAnimatorError as exc:
            with self._lock:
                if revision != self._revision:
                    logger.debug("session.reslice stale failure dropped revision=%s", revision)
                    return False
                self.last_error = exc
            logger.warning("session.reslice failed, keeping %s previous frame(s): %s", len(self._frames), exc)
            return False
        with self._lock:
            if revision != self._revision:
                logger.debug("session.reslice stale result dropped revision=%s current=%s", revision, self._revision)
                return False
            self._frames = frames
            self.last_error = None
            if len(self._included) != len(frames):
                self._included = (self._included + [True] * len(frames))[: len(frames)]
        if self._on_frames is not None:
            self._on_frames(list(frames))
        return True

    def flush(self) -> bool:
        """Run a pending debounced re-slice immediately."""

        return self._debouncer.flush()

    def set_settings(self, settings: SliceSettings, *, debounce: bool = True) -> None:
        with self._lock:
            grid_changed = (settings.cols, settings.rows) != (self._settings.cols, self._settings.rows)
            self._settings = settings
            self._revision += 1
            if grid_changed:
                self._reset_frame_state(settings.frame_count)
        if debounce:
            self._debouncer.trigger()
        else:
            self._debouncer.cancel()
            self.reslice()

    def update_settings(self, *, debounce: bool = True, **changes: Any) -> SliceSettings:
        """Apply a user edit; optimizer flags for the edited fields are cleared."""

        updated = self.settings.with_user_edit(**changes)
        self.set_settings(updated, debounce=debounce)
        return updated

    def auto_optimize(self) -> OptimizedSlice:
        sheet = self.processed_sheet
        if sheet is None:
            return OptimizedSlice()
        settings = self.settings
        suggestion = optimize_slice_settings(sheet, settings.cols, settings.rows)
        self.set_settings(suggestion.apply_to(settings), debounce=False)
        return suggestion

    def set_override(self, index: int, override: FrameOverride | None, *, debounce: bool = True) -> None:
        with self._lock:
            if not 0 <= index < len(self._overrides):
                raise IndexError(f"frame index {index} out of range")
            self._overrides[index] = override
            self._revision += 1
        if debounce:
            self._debouncer.trigger()
        else:
            self.reslice()

    def apply_first_override_to_all(self) -> None:
        """Copy frame 0's crop adjustment onto every frame."""

        with self._lock:
            first = self._overrides[0] if self._overrides else None
            self._overrides = [None if first is None else replace(first) for _ in self._overrides]
            self._revision += 1
        self._debouncer.cancel()
        self.reslice()

    def restore_state(
        self,
        settings: SliceSettings,
        overrides: List[FrameOverride | None],
        included: List[bool],
    ) -> bool:
        """Replace settings, overrides and inclusion flags in one step and re-slice."""

        count = settings.frame_count
        with self._lock:
            self._settings = settings
            self._overrides = (list(overrides) + [None] * count)[:count]
            self._included = (list(included) + [True] * count)[:count]
            self._revision += 1
        self._debouncer.cancel()
        return self.reslice()

    def set_frame_included(self, index: int, included: bool) -> None:
        with self._lock:
            if not 0 <= index < len(self._included):
                raise IndexError(f"frame index {index} out of range")
            self._included[index] = bool(included)

    def frame_included(self, index: int) -> bool:
        with self._lock:
            return self._included[index] if 0 <= index < len(self._included) else False

    def included_frames(self) -> List[PixelBuffer]:
        with self._lock:
            return [frame for frame, keep in zip(self._frames, self._included) if keep]

    def auto_align(
        self,
        method: AlignMethod = "template",
        *,
        mode: Literal["temporal", "anchor"] = "temporal",
        anchor_mode: AnchorMode = "core",
        refine_with_previous: bool = False,
    ) -> List[FrameOverride]:
        """Compute fresh overrides for every frame and re-slice.

        ``template`` runs the template-match aligner; ``content`` aligns content
        anchors and, with ``refine_with_previous``, refines each frame against
        the previous frame's aligned crop. Frame 0's current override is the
        anchor.
        """

        with self._lock:
            sheet = self._processed
            settings = self._settings
            first = self._overrides[0] if self._overrides else None
        if sheet is None:
            return []
        cells = cell_rects(sheet.width, sheet.height, settings)
        scale = first.clamped_scale if first is not None else 1.0
        anchor_offset = (first.offset_x, first.offset_y) if first is not None else (0.0, 0.0)
        smoothing = self.config.temporal_smoothing
        if method == "template":
            overrides = align_sequence(
                sheet,
                cells,
                scale,
                mode=mode,
                anchor_offset=anchor_offset,
                max_delta=self.config.align_max_delta,
                smoothing=smoothing,
            )
        elif method == "content":
            overrides = align_by_content_anchor(
                sheet,
                cells,
                scale,
                mode=anchor_mode,
                anchor_offset=anchor_offset,
                smoothing=smoothing,
            )
            if refine_with_previous and len(overrides) > 1:
                overrides = self._refine_with_previous(sheet, cells, overrides, scale, smoothing)
        else:
            raise ValueError(f"Unknown align method: {method!r}")
        with self._lock:
            self._overrides = list(overrides)
            self._revision += 1
        self._debouncer.cancel()
        self.reslice()
        logger.debug("session.align method=%s frames=%s", method, len(overrides))
        return list(overrides)

    def _refine_with_previous(
        self,
        sheet: PixelBuffer,
        cells: List[Rect],
        overrides: List[FrameOverride],
        scale: float,
        smoothing: float,
    ) -> List[FrameOverride]:
        refined = list(overrides)
        for index in range(1, len(cells)):
            previous = refined[index - 1]
            reference = alpha_grid(sheet, crop_rect(cells[index - 1], previous))
            current = refined[index]
            match = best_offset_by_template_match(
                sheet,
                cells[index],
                reference,
                scale,
                center=(current.offset_x, current.offset_y),
                max_delta=self.config.align_max_delta,
            )
            refined[index] = FrameOverride(match.offset_x, match.offset_y, scale)
        return smooth_offsets(refined, smoothing)

    def export(self, format_name: ExportFormat, *, interpolate: bool | None = None) -> bytes:
        """Encode the included frames, interpolated when enabled."""

        frames = self.included_frames()
        if not frames:
            raise ExportError(format_name, "no frames selected for export")
        if format_name == "zip":
            return to_zip(frames)
        use_interpolation = self.config.enable_interpolation if interpolate is None else interpolate
        delay = fps_to_delay_ms(self.config.fps)
        if use_interpolation:
            animation = generate_smooth_animation(
                frames,
                interpolation_frames=self.config.interpolation_frames,
                easing=self.config.easing,
                loop_mode=self.config.loop_mode,
                target_fps=self.config.target_fps,
                original_fps=self.config.fps,
            )
            frames, delay = animation.frames, animation.delay_ms
        if format_name == "gif":
            return to_gif(frames, delay, alpha_threshold=self.config.gif_alpha_threshold)
        if format_name == "apng":
            return to_apng(frames, delay)
        raise ExportError(str(format_name), "unsupported format")

    def close(self) -> None:
        self._debouncer.cancel()
        self._runner.shutdown(wait=True)

    def __enter__(self) -> "SheetSession":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
