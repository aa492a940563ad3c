"""Tests for the stateful sheet session."""

import io
import threading
import zipfile

import numpy as np
import pytest
from PIL import Image

from sheet_animator.chroma_key import remove_background
from sheet_animator.config import AnimatorConfig
from sheet_animator.errors import ExportError, InvalidSliceAreaError
from sheet_animator.pixel_buffer import PixelBuffer, encode_png
from sheet_animator.session import SheetSession
from sheet_animator.slicing import AutoOptimizedFlags, FrameOverride, SliceSettings, slice_sheet


@pytest.fixture
def session():
    with SheetSession(AnimatorConfig(debounce_ms=2000), SliceSettings(cols=2, rows=2)) as active:
        yield active


@pytest.fixture
def loaded(session, quadrant_png):
    session.load_sheet(quadrant_png).result(timeout=10)
    return session


class TestLoading:
    """Tests for sheet loading and slicing."""

    def test_load_produces_frames(self, loaded):
        frames = loaded.frames
        assert len(frames) == 4
        assert all(frame.size == (32, 32) for frame in frames)
        assert frames[0].data[0, 0, 3] == 0
        assert tuple(frames[0].data[16, 16]) == (255, 0, 0, 255)

    def test_processed_sheet_is_keyed(self, loaded):
        assert loaded.processed_sheet.data[0, 0, 3] == 0
        assert loaded.source_sheet.data[0, 0, 3] == 255

    def test_on_frames_callback(self, quadrant_png):
        received = []
        with SheetSession(settings=SliceSettings(cols=2, rows=2), on_frames=received.append) as session:
            session.load_sheet(quadrant_png).result(timeout=10)
        assert len(received[-1]) == 4

    def test_without_chroma_removal(self, quadrant_png):
        with SheetSession(settings=SliceSettings(cols=2, rows=2), remove_chroma=False) as session:
            session.load_sheet(quadrant_png).result(timeout=10)
            assert session.frames[0].data[0, 0, 3] == 255

    def test_frame_pass_keeps_sheet_edge_alpha(self):
        """Per-frame cleanup does not fade anti-aliased edges a second time."""
        pixels = np.zeros((16, 32, 4), dtype=np.uint8)
        pixels[...] = (255, 0, 255, 255)
        for left in (0, 16):
            pixels[2:6, left + 4 : left + 12] = (255, 0, 0, 255)
            pixels[2:6, left + 12 : left + 14] = (150, 90, 120, 200)
        sheet = PixelBuffer(pixels)
        assert remove_background(sheet).data[3, 12, 3] == 80
        with SheetSession(settings=SliceSettings(cols=2, rows=1)) as session:
            session.load_sheet(encode_png(sheet)).result(timeout=10)
            frames = session.frames
        assert [frame.data[3, 12, 3] for frame in frames] == [80, 80]
        assert [frame.data[3, 8, 3] for frame in frames] == [255, 255]


class TestEditing:
    """Tests for settings edits and overrides."""

    def test_bad_edit_keeps_previous_frames(self, loaded):
        """A slice failure records the error and leaves the frames alone."""
        before = loaded.frames
        loaded.update_settings(padding_x=60, debounce=False)
        assert isinstance(loaded.last_error, InvalidSliceAreaError)
        assert len(loaded.frames) == 4
        assert loaded.frames[0].same_pixels(before[0])

    def test_good_edit_clears_error(self, loaded):
        loaded.update_settings(padding_x=60, debounce=False)
        loaded.update_settings(padding_x=2, debounce=False)
        assert loaded.last_error is None
        assert loaded.frames[0].size == (30, 32)

    def test_debounced_edit_flushes(self, loaded):
        loaded.update_settings(padding_y=4)
        assert loaded.frames[0].size == (32, 32)
        assert loaded.flush() is True
        assert loaded.frames[0].size == (32, 28)

    def test_grid_change_resets_overrides(self, loaded):
        loaded.set_override(1, FrameOverride(3, 0), debounce=False)
        assert loaded.overrides[1] == FrameOverride(3, 0)
        loaded.update_settings(cols=1, debounce=False)
        assert loaded.overrides == [None, None]
        assert len(loaded.frames) == 2

    def test_override_index_checked(self, loaded):
        with pytest.raises(IndexError):
            loaded.set_override(9, FrameOverride())

    def test_apply_first_override_to_all(self, loaded):
        loaded.set_override(0, FrameOverride(2, 1, 0.5), debounce=False)
        loaded.apply_first_override_to_all()
        assert loaded.overrides == [FrameOverride(2, 1, 0.5)] * 4

    def test_auto_optimize_sets_flags(self, loaded):
        suggestion = loaded.auto_optimize()
        assert (suggestion.padding_x, suggestion.padding_y) == (6, 6)
        assert loaded.settings.auto_optimized == AutoOptimizedFlags(True, True, True, True)
        assert loaded.frames[0].size == (26, 26)

    def test_restore_state(self, loaded):
        settings = SliceSettings(cols=2, rows=1)
        assert loaded.restore_state(settings, [FrameOverride(1, 1)], [False])
        assert loaded.overrides == [FrameOverride(1, 1), None]
        assert [loaded.frame_included(i) for i in range(2)] == [False, True]


    def test_stale_reslice_is_dropped(self, loaded, monkeypatch):
        """A slow re-slice of older settings never replaces newer frames."""
        entered = threading.Event()
        release = threading.Event()

        def slow_slice(sheet, settings, overrides=None, chroma=None):
            if settings.cols == 1:
                entered.set()
                release.wait(timeout=10)
            return slice_sheet(sheet, settings, overrides, chroma)

        monkeypatch.setattr("sheet_animator.session.slice_sheet", slow_slice)
        worker = threading.Thread(
            target=loaded.set_settings,
            args=(SliceSettings(cols=1, rows=1),),
            kwargs={"debounce": False},
        )
        worker.start()
        assert entered.wait(timeout=10)
        loaded.set_settings(SliceSettings(cols=2, rows=1), debounce=False)
        release.set()
        worker.join(timeout=10)
        assert (loaded.settings.cols, loaded.settings.rows) == (2, 1)
        assert len(loaded.frames) == 2
        assert loaded.last_error is None

class TestAlignment:
    """Tests for session-level auto alignment."""

    def test_template_alignment_on_twins(self, twin_cell_sheet):
        with SheetSession(settings=SliceSettings(cols=2, rows=1), remove_chroma=False) as session:
            session.load_sheet(encode_png(twin_cell_sheet)).result(timeout=10)
            overrides = session.auto_align("template")
        assert [(o.offset_x, o.offset_y) for o in overrides] == [(0, 0), (0, 0)]

    def test_content_alignment_with_refinement(self, twin_cell_sheet):
        with SheetSession(settings=SliceSettings(cols=2, rows=1), remove_chroma=False) as session:
            session.load_sheet(encode_png(twin_cell_sheet)).result(timeout=10)
            overrides = session.auto_align("content", anchor_mode="bounds", refine_with_previous=True)
            assert session.overrides == overrides
        assert [(o.offset_x, o.offset_y) for o in overrides] == [(0, 0), (0, 0)]

    def test_unknown_method(self, loaded):
        with pytest.raises(ValueError):
            loaded.auto_align("guess")


class TestExport:
    """Tests for exporting the included frames."""

    def test_excluded_frames_are_skipped(self, loaded):
        loaded.set_frame_included(1, False)
        assert len(loaded.included_frames()) == 3
        with zipfile.ZipFile(io.BytesIO(loaded.export("zip"))) as archive:
            assert len(archive.namelist()) == 3

    def test_gif_export(self, loaded):
        """The 83 ms delay for 12 fps is stored as 8 centiseconds."""
        data = loaded.export("gif")
        assert data.startswith(b"GIF89a")
        with Image.open(io.BytesIO(data)) as image:
            assert image.n_frames == 4
            assert image.info["duration"] == 80

    def test_interpolated_export(self, loaded):
        """12 fps keyframes smoothed to 24 fps double the frame count."""
        data = loaded.export("apng", interpolate=True)
        with Image.open(io.BytesIO(data)) as image:
            assert image.n_frames == 8

    def test_nothing_included(self, loaded):
        for index in range(4):
            loaded.set_frame_included(index, False)
        with pytest.raises(ExportError):
            loaded.export("gif")

    def test_unknown_format(self, loaded):
        with pytest.raises(ExportError):
            loaded.export("bmp")
