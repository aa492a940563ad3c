from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Callable, Dict, List, Tuple

from .chroma_key import CHROMA_KEY_COLORS, ChromaKeyColor, ChromaKeyTuning, resolve_chroma_color
from .interpolation import EASINGS, LOOP_MODES


logger = logging.getLogger(__name__)

ANIMATION_FPS_MULTIPLIER = 3


@dataclass(slots=True)
class AnimatorConfig:
    chroma_key_color: str = "magenta"
    fuzz_percent: float = 35
    speed: int = 4
    fps_override: int | None = None
    enable_interpolation: bool = False
    interpolation_frames: int = 2
    easing: str = "ease-in-out"
    loop_mode: str = "loop"
    target_fps: float = 24
    debounce_ms: int = 50
    align_max_delta: int = 10
    temporal_smoothing: float = 0.7
    white_threshold: int = 230
    gif_alpha_threshold: int = 128
    tuning: ChromaKeyTuning = field(default_factory=ChromaKeyTuning)

    @property
    def fps(self) -> int:
        if self.fps_override:
            return int(self.fps_override)
        return max(1, self.speed * ANIMATION_FPS_MULTIPLIER)

    @property
    def chroma_color(self) -> ChromaKeyColor:
        return resolve_chroma_color(self.chroma_key_color)

    @property
    def debounce_seconds(self) -> float:
        return max(0, self.debounce_ms) / 1000.0

    def to_dict(self) -> Dict[str, Any]:
        payload = {item.name: getattr(self, item.name) for item in fields(self) if item.name != "tuning"}
        payload["tuning"] = {item.name: getattr(self.tuning, item.name) for item in fields(self.tuning)}
        return payload


def fps_to_delay_ms(fps: float) -> int:
    if fps <= 0:
        raise ValueError(f"fps must be positive (got {fps!r})")
    return max(1, int(round(1000.0 / float(fps))))


def _check_chroma(value: Any) -> str:
    text = str(value).strip().lower()
    if text not in CHROMA_KEY_COLORS:
        resolve_chroma_color(text)
    return text


def _check_choice(choices: Any) -> Callable[[Any], str]:
    def check(value: Any) -> str:
        text = str(value).strip().lower()
        if text not in choices:
            raise ValueError(f"expected one of {sorted(choices)}")
        return text

    return check


def _bounded(kind: Callable[[Any], Any], low: float, high: float) -> Callable[[Any], Any]:
    def check(value: Any) -> Any:
        if isinstance(value, bool):
            raise ValueError("booleans are not numbers")
        converted = kind(value)
        if not low <= converted <= high:
            raise ValueError(f"must be within [{low}, {high}]")
        return converted

    return check


def _flag(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    raise ValueError("expected true or false")


_FIELD_PARSERS: Dict[str, Callable[[Any], Any]] = {
    "chroma_key_color": _check_chroma,
    "fuzz_percent": _bounded(float, 0, 100),
    "speed": _bounded(int, 1, 60),
    "fps_override": _bounded(int, 1, 100),
    "enable_interpolation": _flag,
    "interpolation_frames": _bounded(int, 0, 16),
    "easing": _check_choice(EASINGS),
    "loop_mode": _check_choice(LOOP_MODES),
    "target_fps": _bounded(float, 1, 100),
    "debounce_ms": _bounded(int, 0, 5000),
    "align_max_delta": _bounded(int, 0, 500),
    "temporal_smoothing": _bounded(float, 0, 1),
    "white_threshold": _bounded(int, 0, 255),
    "gif_alpha_threshold": _bounded(int, 1, 255),
}

_TUNING_PARSERS: Dict[str, Callable[[Any], Any]] = {
    "floor_ratio": _bounded(float, 0, 1),
    "floor_distance_scale": _bounded(float, 0, 10),
    "floor_channel_gap": _bounded(int, 0, 255),
    "corner_sample_cap": _bounded(int, 1, 1000),
    "dominant_min_count": _bounded(int, 0, 100000),
}


def config_from_dict(payload: Dict[str, Any], source: str = "config") -> Tuple[AnimatorConfig, List[str]]:
    """Build a config from ``payload``; bad or unknown keys become warnings."""

    warnings: List[str] = []
    values: Dict[str, Any] = {}
    for key, raw in payload.items():
        if key == "tuning":
            continue
        parser = _FIELD_PARSERS.get(key)
        if parser is None:
            warnings.append(f"{source}: unknown key '{key}'")
            continue
        try:
            values[key] = parser(raw)
        except (TypeError, ValueError) as exc:
            warnings.append(f"{source}: invalid '{key}' ({exc})")

    tuning = ChromaKeyTuning()
    tuning_raw = payload.get("tuning", {})
    if not isinstance(tuning_raw, dict):
        warnings.append(f"{source}: 'tuning' must be an object")
        tuning_raw = {}
    for key, raw in tuning_raw.items():
        parser = _TUNING_PARSERS.get(key)
        if parser is None:
            warnings.append(f"{source}: unknown tuning key '{key}'")
            continue
        try:
            setattr(tuning, key, parser(raw))
        except (TypeError, ValueError) as exc:
            warnings.append(f"{source}: invalid tuning '{key}' ({exc})")

    config = replace(AnimatorConfig(), tuning=tuning, **values)
    for warning in warnings:
        logger.warning("config.%s", warning)
    return config, warnings


def load_config(path: Path | None) -> Tuple[AnimatorConfig, List[str]]:
    """Read a JSON config file. A missing path yields the defaults."""

    if path is None:
        return AnimatorConfig(), []
    path = Path(path)
    if not path.exists():
        return AnimatorConfig(), [f"{path.name}: not found, using defaults"]
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        return AnimatorConfig(), [f"{path.name}: invalid JSON ({exc})"]
    if not isinstance(payload, dict):
        return AnimatorConfig(), [f"{path.name}: root must be an object"]
    return config_from_dict(payload, source=path.name)
