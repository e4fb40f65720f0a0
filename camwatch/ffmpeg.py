# camwatch/ffmpeg.py
from __future__ import annotations

import os
import re
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from .config import settings
from .presets import QualityPreset
from .stream import PLAYLIST_NAME, SEGMENT_PATTERN

# ──────────────────────────────────────────────────────────────────────────────
# Binary lookup
# ──────────────────────────────────────────────────────────────────────────────
def _first_nonempty(*vals: Optional[str]) -> str:
    for v in vals:
        if v:
            return v
    return ""

def _ff_bin_from_bundle(name: str) -> str:
    names = [name + (".exe" if os.name == "nt" else ""), name]
    cand = []
    if getattr(sys, "frozen", False):
        exe_dir = os.path.dirname(sys.executable)
        cand += [os.path.join(exe_dir, n) for n in names]
    cand += [os.path.abspath(os.path.join("bin", n)) for n in names]
    for p in cand:
        if os.path.isfile(p):
            return p
    return ""

def ffmpeg_exe() -> str:
    # Precedence: env/settings -> bundled -> PATH fallback
    return _first_nonempty(
        os.getenv("FFMPEG_BIN"),
        os.getenv("FFMPEG_PATH"),
        getattr(settings, "FFMPEG_PATH", None),
        _ff_bin_from_bundle("ffmpeg"),
    ) or "ffmpeg"

# ──────────────────────────────────────────────────────────────────────────────
# Command builder
# ──────────────────────────────────────────────────────────────────────────────
def build_hls_command(
    source: str,
    output_dir: Path,
    preset: QualityPreset,
    *,
    ffmpeg: Optional[str] = None,
    seg_dur: Optional[int] = None,
    list_size: Optional[int] = None,
    rtsp_transport: Optional[str] = None,
) -> list[str]:
    """Compose the ffmpeg argv that pulls ``source`` and writes a rolling HLS window.

    Options placed before ``-i`` apply to the input; everything after it shapes
    the output. Progress goes to stderr as ``key=value`` lines via ``-progress``.
    """
    seg_dur = int(seg_dur or settings.HLS_SEGMENT_SECS)
    list_size = int(list_size or settings.HLS_LIST_SIZE)
    transport = settings.RTSP_TRANSPORT if rtsp_transport is None else rtsp_transport

    base = [
        ffmpeg or ffmpeg_exe(), "-hide_banner", "-nostdin", "-y",
        "-nostats", "-progress", "pipe:2",
    ]
    if transport and source.lower().startswith(("rtsp://", "rtsps://")):
        base += ["-rtsp_transport", transport]
    base += [
        # camera clocks drift; normalise input timestamps before muxing
        "-fflags", "+genpts+discardcorrupt",
        "-use_wallclock_as_timestamps", "1",
        "-i", source,
        "-map", "0:v:0", "-map", "0:a?",
    ]

    vpart = [
        *preset.video_args(),
        "-sc_threshold", "0",
        "-force_key_frames", f"expr:gte(t,n_forced*{seg_dur})",
    ]
    apart = preset.audio_args()

    hls = [
        "-avoid_negative_ts", "make_zero",
        "-f", "hls",
        "-hls_time", str(seg_dur),
        "-hls_list_size", str(list_size),
        "-hls_flags", "delete_segments+append_list+temp_file",
        "-hls_segment_type", "mpegts",
        "-hls_segment_filename", str(output_dir / SEGMENT_PATTERN),
    ]
    return [*base, *vpart, *apart, *hls, str(output_dir / PLAYLIST_NAME)]

# ──────────────────────────────────────────────────────────────────────────────
# Diagnostic output parsing
# ──────────────────────────────────────────────────────────────────────────────
_LINE_SPLIT = re.compile(r"[\r\n]+")
_FRAME_RE = re.compile(r"\bframe=\s*(\d+)")
_ERROR_RE = re.compile(r"error", re.IGNORECASE)

PROGRESS = "progress"
ERROR = "error"
OTHER = "other"


@dataclass(frozen=True)
class DiagnosticLine:
    kind: str
    text: str
    frame: Optional[int] = None


def classify_line(text: str) -> DiagnosticLine:
    m = _FRAME_RE.search(text)
    if m:
        return DiagnosticLine(PROGRESS, text, int(m.group(1)))
    if _ERROR_RE.search(text):
        return DiagnosticLine(ERROR, text)
    return DiagnosticLine(OTHER, text)


class DiagnosticParser:
    """Incremental splitter for ffmpeg's stderr.

    ffmpeg terminates stats lines with ``\\r`` and everything else with ``\\n``;
    chunks arrive at arbitrary boundaries, so a partial trailing line is held
    back until the next chunk (or :meth:`close`).
    """

    def __init__(self, encoding: str = "utf-8") -> None:
        self._encoding = encoding
        self._pending = ""

    def feed(self, chunk: bytes | str) -> List[DiagnosticLine]:
        if isinstance(chunk, bytes):
            chunk = chunk.decode(self._encoding, errors="replace")
        parts = _LINE_SPLIT.split(self._pending + chunk)
        self._pending = parts.pop()
        return [classify_line(p.strip()) for p in parts if p.strip()]

    def close(self) -> List[DiagnosticLine]:
        rest, self._pending = self._pending.strip(), ""
        return [classify_line(rest)] if rest else []
