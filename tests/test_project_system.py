"""Tests for saved project snapshots."""

import json

import pytest

from sheet_animator.config import AnimatorConfig
from sheet_animator.project_system import (
    PROJECT_MANIFEST_NAME,
    PROJECT_SHEET_NAME,
    ProjectService,
    ProjectSnapshot,
    _safe_name,
)
from sheet_animator.session import SheetSession
from sheet_animator.slicing import FrameOverride, SliceSettings


@pytest.fixture
def service(tmp_path):
    return ProjectService(tmp_path / "projects")


class TestProjectService:
    """Tests for snapshot storage."""

    def test_create_and_load(self, service, quadrant_sheet):
        settings = SliceSettings(cols=2, rows=2, padding_x=3)
        snapshot = service.create_snapshot(
            "Walk Cycle",
            quadrant_sheet,
            settings,
            [FrameOverride(1, 2), None, None, None],
            [True, False, True, True],
            chroma_key_color="green",
            fuzz_percent=20,
        )
        folder = service.project_dir(snapshot.project_id)
        assert (folder / PROJECT_MANIFEST_NAME).is_file()
        assert (folder / PROJECT_SHEET_NAME).is_file()
        assert snapshot.project_id.startswith("WalkCycle-")

        loaded, sheet = service.load_snapshot(snapshot.project_id)
        assert sheet.same_pixels(quadrant_sheet)
        assert loaded.settings == settings
        assert loaded.overrides[0] == FrameOverride(1, 2)
        assert loaded.included == [True, False, True, True]
        assert (loaded.chroma_key_color, loaded.fuzz_percent) == ("green", 20)

    def test_ids_are_unique(self, service, quadrant_sheet):
        first = service.create_snapshot("sheet", quadrant_sheet, SliceSettings())
        second = service.create_snapshot("sheet", quadrant_sheet, SliceSettings())
        assert first.project_id != second.project_id

    def test_list_skips_broken_manifests(self, service, quadrant_sheet):
        service.create_snapshot("good", quadrant_sheet, SliceSettings())
        broken = service.root / "broken"
        broken.mkdir(parents=True)
        (broken / PROJECT_MANIFEST_NAME).write_text("{oops", encoding="utf-8")
        snapshots, warnings = service.list_snapshots()
        assert [item.name for item in snapshots] == ["good"]
        assert len(warnings) == 1
        assert warnings[0].startswith("broken:")

    def test_list_on_missing_root(self, tmp_path):
        assert ProjectService(tmp_path / "nothing").list_snapshots() == ([], [])

    def test_tampered_sheet_rejected(self, service, quadrant_sheet):
        snapshot = service.create_snapshot("sheet", quadrant_sheet, SliceSettings())
        (service.project_dir(snapshot.project_id) / PROJECT_SHEET_NAME).write_bytes(b"changed")
        with pytest.raises(ValueError):
            service.load_snapshot(snapshot.project_id)

    def test_missing_snapshot(self, service):
        with pytest.raises(FileNotFoundError):
            service.load_snapshot("ghost")

    def test_delete(self, service, quadrant_sheet):
        snapshot = service.create_snapshot("sheet", quadrant_sheet, SliceSettings())
        assert service.delete_snapshot(snapshot.project_id) is True
        assert service.delete_snapshot(snapshot.project_id) is False
        assert not service.project_dir(snapshot.project_id).exists()


class TestSessionRoundTrip:
    """Tests for saving and restoring a live session."""

    def test_save_and_restore(self, service, quadrant_png):
        settings = SliceSettings(cols=2, rows=2)
        with SheetSession(AnimatorConfig(debounce_ms=2000), settings) as session:
            session.load_sheet(quadrant_png).result(timeout=10)
            session.set_override(2, FrameOverride(0, 3), debounce=False)
            session.set_frame_included(3, False)
            snapshot = service.save_session(session, "quad")

        with SheetSession(AnimatorConfig(debounce_ms=2000)) as restored:
            service.restore_session(restored, snapshot.project_id)
            assert (restored.settings.cols, restored.settings.rows) == (2, 2)
            assert restored.overrides[2] == FrameOverride(0, 3)
            assert len(restored.included_frames()) == 3
            assert len(restored.frames) == 4

    def test_save_without_sheet(self, service):
        with SheetSession() as session:
            with pytest.raises(ValueError):
                service.save_session(session, "empty")


class TestSnapshotPayload:
    """Tests for manifest parsing."""

    def test_missing_id_rejected(self):
        with pytest.raises(ValueError):
            ProjectSnapshot.from_dict({"name": "x"})

    def test_defaults_filled(self):
        snapshot = ProjectSnapshot.from_dict({"project_id": "abc", "slice_settings": {"cols": 2, "rows": 1}})
        assert snapshot.name == "abc"
        assert snapshot.overrides == [None, None]
        assert snapshot.updated_at == snapshot.created_at

    def test_manifest_is_json(self, service, quadrant_sheet):
        snapshot = service.create_snapshot("sheet", quadrant_sheet, SliceSettings(cols=2, rows=2))
        manifest = json.loads((service.project_dir(snapshot.project_id) / PROJECT_MANIFEST_NAME).read_text())
        assert manifest["schema_version"] == 1
        assert manifest["slice_settings"]["cols"] == 2
        assert len(manifest["frame_overrides"]) == 4

    def test_safe_name(self):
        assert _safe_name("../evil name!") == "evilname"
        assert _safe_name("***") == "sheet"

    def test_fractional_grid_rejected(self):
        with pytest.raises(ValueError, match="Invalid snapshot"):
            ProjectSnapshot.from_dict({"project_id": "abc", "slice_settings": {"cols": 1.5, "rows": 1}})
