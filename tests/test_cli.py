"""Tests for the batch command-line interface and file scanning."""

import io
import zipfile

import pytest
from PIL import Image

from sheet_animator import cli
from sheet_animator.file_scanner import ScanOptions, expand_inputs, iter_sheet_files


@pytest.fixture
def sheet_file(tmp_path, quadrant_png):
    path = tmp_path / "quad.png"
    path.write_bytes(quadrant_png)
    return path


class TestFileScanner:
    """Tests for input discovery."""

    def test_skips_output_folders(self, tmp_path, quadrant_png):
        (tmp_path / "a.png").write_bytes(quadrant_png)
        (tmp_path / "notes.txt").write_text("x")
        (tmp_path / "out").mkdir()
        (tmp_path / "out" / "frame_001.png").write_bytes(quadrant_png)
        (tmp_path / "nested").mkdir()
        (tmp_path / "nested" / "b.webp").write_bytes(b"")
        found = list(iter_sheet_files(ScanOptions(roots=[tmp_path])))
        assert [path.relative_to(tmp_path).as_posix() for path in found] == ["a.png", "nested/b.webp"]

    def test_non_recursive(self, tmp_path, quadrant_png):
        (tmp_path / "a.png").write_bytes(quadrant_png)
        (tmp_path / "nested").mkdir()
        (tmp_path / "nested" / "b.png").write_bytes(quadrant_png)
        assert [p.name for p in expand_inputs([tmp_path], recursive=False)] == ["a.png"]

    def test_missing_input_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            expand_inputs([tmp_path / "nope.png"], recursive=False)


class TestMain:
    """Tests for the cli entry point."""

    def test_zip_output(self, sheet_file, capsys):
        code = cli.main([str(sheet_file), "--cols", "2", "--rows", "2", "--format", "zip"])
        assert code == 0
        output = sheet_file.parent / "out" / "quad.zip"
        with zipfile.ZipFile(output) as archive:
            assert len(archive.namelist()) == 4
        stdout = capsys.readouterr().out
        assert "[OK] quad.png" in stdout
        assert "Completed 1 file(s), 0 failure(s)." in stdout

    def test_gif_output_with_out_dir(self, sheet_file, tmp_path):
        out_dir = tmp_path / "exports"
        code = cli.main([str(sheet_file), "--cols", "2", "--rows", "2", "--out", str(out_dir), "--fps", "10"])
        assert code == 0
        with Image.open(out_dir / "quad.gif") as image:
            assert image.n_frames == 4
            assert image.info["duration"] == 100

    def test_frames_output(self, sheet_file):
        assert cli.main([str(sheet_file), "--cols", "2", "--rows", "2", "--format", "frames"]) == 0
        folder = sheet_file.parent / "out" / "quad"
        assert sorted(p.name for p in folder.iterdir()) == [
            "frame_001.png",
            "frame_002.png",
            "frame_003.png",
            "frame_004.png",
        ]

    def test_rerun_ignores_own_output(self, sheet_file, capsys):
        """A second run over the folder does not pick up exported frames."""
        args = [str(sheet_file.parent), "--cols", "2", "--rows", "2", "--format", "frames", "--recursive"]
        assert cli.main(args) == 0
        capsys.readouterr()
        assert cli.main(args) == 0
        assert "Completed 1 file(s)" in capsys.readouterr().out

    def test_chroma_none_keeps_background(self, sheet_file):
        cli.main([str(sheet_file), "--cols", "2", "--rows", "2", "--format", "zip", "--chroma", "none"])
        with zipfile.ZipFile(sheet_file.parent / "out" / "quad.zip") as archive:
            with Image.open(io.BytesIO(archive.read("frame_001.png"))) as frame:
                assert frame.convert("RGBA").getpixel((0, 0)) == (255, 0, 255, 255)

    def test_auto_optimize_and_align(self, sheet_file):
        code = cli.main(
            [str(sheet_file), "--cols", "2", "--rows", "2", "--format", "zip", "--auto-optimize", "--align", "core"]
        )
        assert code == 0

    def test_corrupt_file_fails(self, tmp_path, capsys):
        bad = tmp_path / "bad.png"
        bad.write_bytes(b"not an image")
        assert cli.main([str(bad)]) == 1
        assert "[FAIL]" in capsys.readouterr().out

    def test_bad_grid_fails(self, sheet_file, capsys):
        assert cli.main([str(sheet_file), "--cols", "0"]) == 1
        assert "[FAIL]" in capsys.readouterr().out

    def test_missing_input_exits(self, tmp_path):
        with pytest.raises(SystemExit):
            cli.main([str(tmp_path / "missing.png")])

    def test_invalid_chroma_exits(self, sheet_file):
        with pytest.raises(SystemExit):
            cli.main([str(sheet_file), "--chroma", "ultraviolet"])

    def test_infer_and_auto_optimize_are_exclusive(self, sheet_file):
        with pytest.raises(SystemExit):
            cli.main([str(sheet_file), "--infer", "--auto-optimize"])

    def test_config_warning_printed(self, sheet_file, tmp_path, capsys):
        config = tmp_path / "cfg.json"
        config.write_text('{"mystery": 1}', encoding="utf-8")
        cli.main([str(sheet_file), "--cols", "2", "--rows", "2", "--config", str(config), "--format", "zip"])
        assert "[WARN] cfg.json: unknown key 'mystery'" in capsys.readouterr().out
