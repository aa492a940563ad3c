"""Directory scanning helpers for batch sheet processing."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Iterator, List, Sequence

_SHEET_EXTENSIONS = {
    ".png",
    ".webp",
    ".jpg",
    ".jpeg",
    ".bmp",
}


def is_supported_sheet(path: Path) -> bool:
    return path.suffix.lower() in _SHEET_EXTENSIONS


@dataclass(slots=True)
class ScanOptions:
    roots: Sequence[Path]
    recursive: bool = True
    allowed_exts: Iterable[str] | None = None
    skip_dirs: Sequence[str] = ("out",)


def iter_sheet_files(options: ScanOptions) -> Iterator[Path]:
    """Yield sheet images under the given roots in sorted order.

    Folders named in ``skip_dirs`` (our own output folders by default) are not
    descended into, so re-running a batch never picks up exported frames.
    """

    allowed = None
    if options.allowed_exts is not None:
        allowed = {ext.lower() if ext.startswith(".") else f".{ext.lower()}" for ext in options.allowed_exts}
    skip = {name.lower() for name in options.skip_dirs}
    for root in options.roots:
        root = root.expanduser()
        candidates = root.rglob("*") if options.recursive else root.glob("*")
        for path in sorted(candidates):
            if any(part.lower() in skip for part in path.relative_to(root).parts[:-1]):
                continue
            if not path.is_file():
                continue
            if allowed is None:
                if is_supported_sheet(path):
                    yield path
            elif path.suffix.lower() in allowed:
                yield path


def expand_inputs(inputs: Iterable[Path], recursive: bool) -> List[Path]:
    """Resolve a mix of files and folders into a flat file list."""

    files: List[Path] = []
    for path in inputs:
        if path.is_file():
            files.append(path)
        elif path.is_dir():
            files.extend(iter_sheet_files(ScanOptions(roots=[path], recursive=recursive)))
        else:
            raise FileNotFoundError(path)
    return files
