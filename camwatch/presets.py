# camwatch/presets.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional

from .config import settings
from .errors import InvalidQuality


@dataclass(frozen=True)
class QualityPreset:
    name: str
    width: int
    height: int
    x264_preset: str
    crf: int
    maxrate: str    # e.g. "1500k"
    bufsize: str
    audio_bitrate: str

    def video_args(self) -> list[str]:
        return [
            "-vf", f"scale={self.width}:{self.height}",
            "-c:v", "libx264",
            "-preset", self.x264_preset,
            "-crf", str(self.crf),
            "-maxrate", self.maxrate,
            "-bufsize", self.bufsize,
            "-pix_fmt", "yuv420p",
        ]

    def audio_args(self) -> list[str]:
        return ["-c:a", "aac", "-b:a", self.audio_bitrate]


# Closed vocabulary: adding a preset is fine, removing one breaks stored camera defaults.
PRESETS: Dict[str, QualityPreset] = {
    "low": QualityPreset("low", 640, 480, "fast", 28, "500k", "1000k", "64k"),
    "medium": QualityPreset("medium", 1280, 720, "medium", 25, "1500k", "3000k", "128k"),
    "high": QualityPreset("high", 1920, 1080, "slow", 22, "4000k", "8000k", "192k"),
}


def preset_names() -> list[str]:
    return list(PRESETS)


def resolve_preset(name: Optional[str] = None) -> QualityPreset:
    key = (name or settings.STREAM_QUALITY or "medium").strip().lower()
    try:
        return PRESETS[key]
    except KeyError:
        raise InvalidQuality(f"Invalid quality preset: {name}") from None
