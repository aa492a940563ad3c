"""Command-line interface for batch sprite-sheet animation export."""
from __future__ import annotations

import argparse
import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import List

from .alignment import align_by_content_anchor, align_sequence
from .chroma_key import ChromaKeyColor, remove_background, remove_white_background, resolve_chroma_color
from .config import AnimatorConfig, fps_to_delay_ms, load_config
from .errors import SheetAnimatorError
from .export import to_apng, to_gif, to_zip, write_atomic, write_frames_atomic
from .file_scanner import expand_inputs
from .interpolation import generate_smooth_animation
from .optimizer import optimize_slice_settings
from .pixel_buffer import PixelBuffer, decode_image
from .slicing import FrameChromaPass, SliceSettings, cell_rects, inferred_slice_settings, slice_sheet


logger = logging.getLogger(__name__)

_EXCEPTION_HOOK_INSTALLED = False

OUTPUT_SUFFIXES = {"gif": ".gif", "apng": ".png", "zip": ".zip"}


def setup_debug_logging() -> Path | None:
    """Log everything to a file when ``SHEET_ANIMATOR_DEBUG`` is set."""

    global _EXCEPTION_HOOK_INSTALLED
    if not os.environ.get("SHEET_ANIMATOR_DEBUG"):
        logging.getLogger("sheet_animator").addHandler(logging.NullHandler())
        return None
    log_path = Path(os.environ.get("SHEET_ANIMATOR_DEBUG_LOG", "sheet_animator_debug.log"))
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(log_path, mode="a", encoding="utf-8")
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s"))
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    # remove existing file handlers to avoid duplicates
    root_logger.handlers = [h for h in root_logger.handlers if not isinstance(h, logging.FileHandler)]
    root_logger.addHandler(handler)
    root_logger.info("sheet_animator debug logging enabled at %s", log_path)
    if not _EXCEPTION_HOOK_INSTALLED:
        previous_hook = sys.excepthook

        def _logging_excepthook(exc_type, exc_value, exc_traceback, _prev=previous_hook):
            root_logger.error(
                "Unhandled exception",
                exc_info=(exc_type, exc_value, exc_traceback),
            )
            _prev(exc_type, exc_value, exc_traceback)

        sys.excepthook = _logging_excepthook
        _EXCEPTION_HOOK_INSTALLED = True
    return log_path


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Slice sprite sheets and export animations")
    parser.add_argument("inputs", nargs="+", type=Path, help="Input sheet files or folders")
    parser.add_argument("--cols", type=int, default=3, help="Grid columns")
    parser.add_argument("--rows", type=int, default=2, help="Grid rows")
    parser.add_argument("--padding-x", type=float, default=0, help="Horizontal padding in pixels")
    parser.add_argument("--padding-y", type=float, default=0, help="Vertical padding in pixels")
    parser.add_argument("--shift-x", type=float, default=0, help="Horizontal grid shift in pixels")
    parser.add_argument("--shift-y", type=float, default=0, help="Vertical grid shift in pixels")
    parser.add_argument(
        "--format",
        choices=("gif", "apng", "zip", "frames"),
        default="gif",
        help="Output container (frames writes loose PNGs)",
    )
    parser.add_argument(
        "--chroma",
        default=None,
        help="Background key: magenta, green, #RRGGBB, white or none (default from config)",
    )
    parser.add_argument("--fuzz", type=float, default=None, help="Chroma key tolerance in percent")
    parser.add_argument("--fps", type=int, default=None, help="Playback frames per second")
    parser.add_argument(
        "--desaturate-edges",
        action="store_true",
        help="Grey out tinted semi-transparent edge pixels after keying",
    )
    layout = parser.add_mutually_exclusive_group()
    layout.add_argument("--auto-optimize", action="store_true", help="Derive padding/shift from content bounds")
    layout.add_argument("--infer", action="store_true", help="Detect cells from background gaps")
    parser.add_argument(
        "--align",
        choices=("none", "template", "core", "mass", "bounds"),
        default="none",
        help="Per-frame alignment: template matching or a content anchor",
    )
    parser.add_argument(
        "--align-mode",
        choices=("temporal", "anchor"),
        default="temporal",
        help="Template matching window strategy",
    )
    parser.add_argument("--interpolate", action="store_true", help="Insert blended in-between frames")
    parser.add_argument(
        "--loop-mode",
        choices=("loop", "pingpong", "none"),
        default=None,
        help="Loop handling for interpolation",
    )
    parser.add_argument("--recursive", action="store_true", help="Descend into subfolders")
    parser.add_argument(
        "--out",
        type=Path,
        default=None,
        help="Destination folder (defaults to <input>/out)",
    )
    parser.add_argument("--config", type=Path, default=None, help="JSON config file")
    return parser


@dataclass(slots=True)
class JobOptions:
    settings: SliceSettings
    config: AnimatorConfig
    chroma: ChromaKeyColor | None
    remove_white: bool
    desaturate_edges: bool
    auto_optimize: bool
    infer: bool
    align: str
    align_mode: str
    interpolate: bool
    format_name: str


@dataclass(slots=True)
class JobResult:
    output_path: Path
    frame_count: int


def _prepare_sheet(sheet: PixelBuffer, options: JobOptions) -> PixelBuffer:
    if options.remove_white:
        return remove_white_background(sheet, options.config.white_threshold)
    if options.chroma is None:
        return sheet
    return remove_background(
        sheet,
        options.chroma,
        options.config.fuzz_percent,
        tuning=options.config.tuning,
        desaturate_edges=options.desaturate_edges,
    )


def render_frames(sheet: PixelBuffer, options: JobOptions) -> List[PixelBuffer]:
    processed = _prepare_sheet(sheet, options)
    settings = options.settings
    if options.infer:
        settings = inferred_slice_settings(processed, settings, options.chroma)
    elif options.auto_optimize:
        settings = optimize_slice_settings(processed, settings.cols, settings.rows).apply_to(settings)
    overrides = None
    if options.align != "none":
        cells = cell_rects(processed.width, processed.height, settings)
        if options.align == "template":
            overrides = align_sequence(
                processed,
                cells,
                mode=options.align_mode,  # type: ignore[arg-type]
                max_delta=options.config.align_max_delta,
                smoothing=options.config.temporal_smoothing,
            )
        else:
            overrides = align_by_content_anchor(
                processed,
                cells,
                mode=options.align,  # type: ignore[arg-type]
                smoothing=options.config.temporal_smoothing,
            )
    chroma = None
    if options.chroma is not None and not options.remove_white:
        chroma = FrameChromaPass(options.chroma, options.config.fuzz_percent, options.config.tuning)
    return slice_sheet(processed, settings, overrides, chroma)


def process_sheet(input_path: Path, output_dir: Path, options: JobOptions) -> JobResult:
    sheet = decode_image(input_path.read_bytes())
    frames = render_frames(sheet, options)
    stem = input_path.stem
    if options.format_name == "frames":
        target_dir = write_frames_atomic(output_dir / stem, frames)
        return JobResult(output_path=target_dir, frame_count=len(frames))
    if options.format_name == "zip":
        data = to_zip(frames)
    else:
        delay = fps_to_delay_ms(options.config.fps)
        if options.interpolate:
            animation = generate_smooth_animation(
                frames,
                interpolation_frames=options.config.interpolation_frames,
                easing=options.config.easing,
                loop_mode=options.config.loop_mode,
                target_fps=options.config.target_fps,
                original_fps=options.config.fps,
            )
            frames, delay = animation.frames, animation.delay_ms
        if options.format_name == "gif":
            data = to_gif(frames, delay, alpha_threshold=options.config.gif_alpha_threshold)
        else:
            data = to_apng(frames, delay)
    suffix = OUTPUT_SUFFIXES[options.format_name]
    output_path = write_atomic(output_dir / f"{stem}{suffix}", data)
    return JobResult(output_path=output_path, frame_count=len(frames))


def main(argv: list[str] | None = None) -> int:
    setup_debug_logging()
    parser = build_parser()
    args = parser.parse_args(argv)

    config, warnings = load_config(args.config)
    for warning in warnings:
        print(f"[WARN] {warning}")
    if args.fuzz is not None:
        config.fuzz_percent = args.fuzz
    if args.fps is not None:
        if args.fps <= 0:
            parser.error("--fps must be positive")
        config.fps_override = args.fps
    if args.loop_mode is not None:
        config.loop_mode = args.loop_mode

    chroma_name = (args.chroma or config.chroma_key_color).strip().lower()
    remove_white = chroma_name == "white"
    chroma: ChromaKeyColor | None = None
    if chroma_name not in ("none", "white"):
        try:
            chroma = resolve_chroma_color(chroma_name)
        except ValueError as exc:
            parser.error(f"Invalid --chroma: {exc}")

    try:
        input_files = expand_inputs(args.inputs, args.recursive)
    except FileNotFoundError as exc:
        parser.error(f"Input path not found: {exc}")

    if not input_files:
        parser.error("No sheet images found")

    settings = SliceSettings(
        cols=args.cols,
        rows=args.rows,
        padding_x=args.padding_x,
        padding_y=args.padding_y,
        shift_x=args.shift_x,
        shift_y=args.shift_y,
    )
    options = JobOptions(
        settings=settings,
        config=config,
        chroma=chroma,
        remove_white=remove_white,
        desaturate_edges=args.desaturate_edges,
        auto_optimize=args.auto_optimize,
        infer=args.infer,
        align=args.align,
        align_mode=args.align_mode,
        interpolate=args.interpolate or config.enable_interpolation,
        format_name=args.format,
    )

    successes = 0
    failures = 0
    for file_path in input_files:
        out_dir = args.out or (file_path.parent / "out")
        try:
            result = process_sheet(file_path, out_dir, options)
        except (SheetAnimatorError, OSError) as exc:
            failures += 1
            print(f"[FAIL] {file_path}: {exc}")
            continue
        successes += 1
        print(f"[OK] {file_path.name} -> {result.output_path} ({result.frame_count} frames)")

    print(f"Completed {successes} file(s), {failures} failure(s).")
    return 0 if failures == 0 else 1


if __name__ == "__main__":
    raise SystemExit(main())
