from __future__ import annotations

import hashlib
import json
import logging
import shutil
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List

from .export import write_atomic
from .pixel_buffer import PixelBuffer, decode_image, encode_png
from .session import SheetSession
from .errors import InvalidGridError
from .slicing import FrameOverride, SliceSettings, overrides_from_list, overrides_to_list, validate_settings


logger = logging.getLogger(__name__)

PROJECT_SCHEMA_VERSION = 1
PROJECT_MANIFEST_NAME = "project.json"
PROJECT_SHEET_NAME = "sheet.png"


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _safe_name(name: str) -> str:
    filtered = "".join(ch for ch in name if ch.isalnum() or ch in {"-", "_", "."}).strip("._")
    return filtered or "sheet"


@dataclass
class ProjectSnapshot:
    project_id: str
    name: str
    created_at: str
    updated_at: str
    settings: SliceSettings
    overrides: List[FrameOverride | None] = field(default_factory=list)
    included: List[bool] = field(default_factory=list)
    chroma_key_color: str = "magenta"
    fuzz_percent: float = 35
    sheet_file: str = PROJECT_SHEET_NAME
    sheet_hash: str = ""
    schema_version: int = PROJECT_SCHEMA_VERSION

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schema_version": self.schema_version,
            "project_id": self.project_id,
            "name": self.name,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "slice_settings": self.settings.to_dict(),
            "frame_overrides": overrides_to_list(self.overrides),
            "frame_included": list(self.included),
            "chroma_key_color": self.chroma_key_color,
            "fuzz_percent": self.fuzz_percent,
            "sheet_file": self.sheet_file,
            "sheet_hash": self.sheet_hash,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "ProjectSnapshot":
        project_id = str(payload.get("project_id", "")).strip()
        if not project_id:
            raise ValueError("Invalid snapshot: missing project_id")
        settings_raw = payload.get("slice_settings", {})
        if not isinstance(settings_raw, dict):
            raise ValueError("Invalid snapshot: slice_settings must be an object")
        settings = SliceSettings.from_dict(settings_raw)
        try:
            validate_settings(settings)
        except InvalidGridError as exc:
            raise ValueError(f"Invalid snapshot: {exc}") from exc
        created_at = str(payload.get("created_at", "")).strip() or _utc_now_iso()
        included_raw = payload.get("frame_included", [])
        overrides_raw = payload.get("frame_overrides", [])
        return cls(
            project_id=project_id,
            name=str(payload.get("name", "")).strip() or project_id,
            created_at=created_at,
            updated_at=str(payload.get("updated_at", "")).strip() or created_at,
            settings=settings,
            overrides=overrides_from_list(overrides_raw if isinstance(overrides_raw, list) else [], settings.frame_count),
            included=[bool(item) for item in included_raw] if isinstance(included_raw, list) else [],
            chroma_key_color=str(payload.get("chroma_key_color", "magenta")).strip().lower() or "magenta",
            fuzz_percent=float(payload.get("fuzz_percent", 35)),
            sheet_file=str(payload.get("sheet_file", PROJECT_SHEET_NAME)).strip() or PROJECT_SHEET_NAME,
            sheet_hash=str(payload.get("sheet_hash", "")).strip().lower(),
            schema_version=int(payload.get("schema_version", PROJECT_SCHEMA_VERSION)),
        )


class ProjectService:
    """Saved-project history: one folder per snapshot holding a manifest and the sheet PNG."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root).expanduser().resolve()

    def project_dir(self, project_id: str) -> Path:
        return self.root / _safe_name(project_id)

    def _unique_id(self, name: str) -> str:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")
        base = f"{_safe_name(name)}-{stamp}"
        candidate = base
        counter = 2
        while self.project_dir(candidate).exists():
            candidate = f"{base}_{counter}"
            counter += 1
        return candidate

    def create_snapshot(
        self,
        name: str,
        sheet: PixelBuffer,
        settings: SliceSettings,
        overrides: List[FrameOverride | None] | None = None,
        included: List[bool] | None = None,
        *,
        chroma_key_color: str = "magenta",
        fuzz_percent: float = 35,
    ) -> ProjectSnapshot:
        project_id = self._unique_id(name)
        folder = self.project_dir(project_id)
        folder.mkdir(parents=True, exist_ok=False)
        sheet_path = write_atomic(folder / PROJECT_SHEET_NAME, encode_png(sheet))
        now = _utc_now_iso()
        snapshot = ProjectSnapshot(
            project_id=project_id,
            name=name.strip() or project_id,
            created_at=now,
            updated_at=now,
            settings=settings,
            overrides=list(overrides or [None] * settings.frame_count),
            included=list(included or [True] * settings.frame_count),
            chroma_key_color=chroma_key_color,
            fuzz_percent=fuzz_percent,
            sheet_file=PROJECT_SHEET_NAME,
            sheet_hash=self.hash_file(sheet_path),
        )
        self.save_manifest(snapshot)
        logger.debug("project.create id=%s frames=%s", project_id, settings.frame_count)
        return snapshot

    def save_manifest(self, snapshot: ProjectSnapshot) -> None:
        snapshot.updated_at = _utc_now_iso()
        data = json.dumps(snapshot.to_dict(), indent=2).encode("utf-8")
        write_atomic(self.project_dir(snapshot.project_id) / PROJECT_MANIFEST_NAME, data)

    def list_snapshots(self) -> tuple[List[ProjectSnapshot], List[str]]:
        snapshots: List[ProjectSnapshot] = []
        warnings: List[str] = []
        if not self.root.is_dir():
            return snapshots, warnings
        for manifest in sorted(self.root.glob(f"*/{PROJECT_MANIFEST_NAME}")):
            try:
                payload = json.loads(manifest.read_text(encoding="utf-8"))
            except (OSError, ValueError) as exc:
                warnings.append(f"{manifest.parent.name}: invalid JSON ({exc})")
                continue
            if not isinstance(payload, dict):
                warnings.append(f"{manifest.parent.name}: root must be an object")
                continue
            try:
                snapshots.append(ProjectSnapshot.from_dict(payload))
            except (TypeError, ValueError) as exc:
                warnings.append(f"{manifest.parent.name}: {exc}")
        snapshots.sort(key=lambda item: (item.updated_at, item.project_id), reverse=True)
        return snapshots, warnings

    def load_snapshot(self, project_id: str) -> tuple[ProjectSnapshot, PixelBuffer]:
        folder = self.project_dir(project_id)
        manifest_path = folder / PROJECT_MANIFEST_NAME
        if not manifest_path.exists():
            raise FileNotFoundError(f"Project manifest not found: {manifest_path}")
        snapshot = ProjectSnapshot.from_dict(json.loads(manifest_path.read_text(encoding="utf-8")))
        sheet_path = folder / snapshot.sheet_file
        if not sheet_path.exists():
            raise FileNotFoundError(f"Project sheet not found: {sheet_path}")
        if snapshot.sheet_hash and self.hash_file(sheet_path) != snapshot.sheet_hash:
            raise ValueError(f"Sheet image for '{project_id}' does not match its recorded hash")
        return snapshot, decode_image(sheet_path.read_bytes())

    def delete_snapshot(self, project_id: str) -> bool:
        folder = self.project_dir(project_id)
        if not (folder / PROJECT_MANIFEST_NAME).exists():
            return False
        shutil.rmtree(folder)
        logger.debug("project.delete id=%s", project_id)
        return True

    def save_session(self, session: SheetSession, name: str) -> ProjectSnapshot:
        sheet = session.source_sheet
        if sheet is None:
            raise ValueError("Session has no sheet loaded")
        return self.create_snapshot(
            name,
            sheet,
            session.settings,
            session.overrides,
            [session.frame_included(index) for index in range(session.settings.frame_count)],
            chroma_key_color=session.config.chroma_key_color,
            fuzz_percent=session.config.fuzz_percent,
        )

    def restore_session(self, session: SheetSession, project_id: str) -> ProjectSnapshot:
        """Load a snapshot into ``session``, waiting for background removal to finish."""

        snapshot, sheet = self.load_snapshot(project_id)
        session.config.chroma_key_color = snapshot.chroma_key_color
        session.config.fuzz_percent = snapshot.fuzz_percent
        session.load_sheet(sheet).result()
        session.restore_state(snapshot.settings, snapshot.overrides, snapshot.included)
        return snapshot

    def hash_file(self, path: Path) -> str:
        digest = hashlib.sha1()
        with path.open("rb") as stream:
            while True:
                chunk = stream.read(1024 * 1024)
                if not chunk:
                    break
                digest.update(chunk)
        return digest.hexdigest()
