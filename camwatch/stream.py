# camwatch/stream.py
from __future__ import annotations

import enum
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, Optional

if TYPE_CHECKING:
    from .supervisor import ProcessHandle

PLAYLIST_NAME = "playlist.m3u8"
SEGMENT_PATTERN = "segment_%03d.ts"


class StreamStatus(str, enum.Enum):
    starting = "starting"
    running = "running"
    stopping = "stopping"
    stopped = "stopped"
    reconnecting = "reconnecting"
    failed = "failed"


# States in which a stream owns a process handle
ACTIVE_STATES = frozenset({StreamStatus.starting, StreamStatus.running, StreamStatus.reconnecting})


@dataclass
class StreamStats:
    frames: int = 0
    errors: int = 0
    restarts: int = 0

    def as_dict(self) -> Dict[str, int]:
        return {"frames": self.frames, "errors": self.errors, "restarts": self.restarts}


@dataclass
class Stream:
    id: str
    source_address: str
    quality: str
    output_dir: Path
    options: Dict[str, Any] = field(default_factory=dict)
    url_prefix: str = "/hls"
    status: StreamStatus = StreamStatus.starting
    process: Optional["ProcessHandle"] = field(default=None, repr=False)
    stats: StreamStats = field(default_factory=StreamStats)
    started_at: float = field(default_factory=time.time)
    last_activity: float = field(default_factory=time.time)
    current_frame: int = 0
    last_error: Optional[str] = None

    @property
    def playlist_path(self) -> Path:
        return self.output_dir / PLAYLIST_NAME

    @property
    def playlist_url(self) -> str:
        return f"{self.url_prefix.rstrip('/')}/{self.id}/{PLAYLIST_NAME}"

    @property
    def uptime(self) -> float:
        return max(0.0, time.time() - self.started_at)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATES

    def record_progress(self, frame: Optional[int] = None) -> None:
        self.last_activity = time.time()
        self.stats.frames += 1
        if frame is not None:
            self.current_frame = frame

    def snapshot(self) -> Dict[str, Any]:
        # source_address stays out of snapshots: camera URLs embed credentials
        return {
            "id": self.id,
            "status": self.status.value,
            "quality": self.quality,
            "cameraId": self.options.get("cameraId"),
            "startTime": int(self.started_at * 1000),
            "lastActivity": int(self.last_activity * 1000),
            "uptime": int(self.uptime * 1000),
            "playlistUrl": self.playlist_url,
            "stats": self.stats.as_dict(),
            "currentFrame": self.current_frame,
            "lastError": self.last_error,
        }
