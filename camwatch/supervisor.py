# camwatch/supervisor.py
from __future__ import annotations

import asyncio, contextlib, logging, os, shlex, signal, time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Deque, Optional

from .config import settings
from .errors import LaunchFailed
from .ffmpeg import DiagnosticLine, DiagnosticParser, PROGRESS, ERROR, build_hls_command
from .presets import QualityPreset
from .stream import Stream

log = logging.getLogger("ffmpeg")

TAIL_LINES = 50          # diagnostic lines kept per process for error reports
DEBUG_FIRST_LINES = 10   # first lines of each process echoed at DEBUG
READ_CHUNK = 4096

# Windows process priority hint for ffmpeg to keep the coordinator responsive
_WIN_BELOW_NORMAL = 0x00004000 if os.name == 'nt' else 0

Spawn = Callable[..., Awaitable[asyncio.subprocess.Process]]
FailureCallback = Callable[[Stream, "ProcessHandle", str], None]
ExitCallback = Callable[[Stream, "ProcessHandle"], None]


# ──────────────────────────────────────────────────────────────────────────────
# Process handle
# ──────────────────────────────────────────────────────────────────────────────
@dataclass
class ProcessHandle:
    stream_id: str
    proc: asyncio.subprocess.Process
    cmd: list[str]
    started_at: float = field(default_factory=time.monotonic)
    last_progress: float = field(default_factory=time.monotonic)
    tail: Deque[str] = field(default_factory=lambda: deque(maxlen=TAIL_LINES))
    lines_seen: int = 0
    confirmed: bool = False   # playlist appeared inside the startup window
    stopping: bool = False    # termination was requested; exits are not failures
    reported: bool = False    # a failure or clean exit has been reported already
    returncode: Optional[int] = None
    exited: asyncio.Event = field(default_factory=asyncio.Event, repr=False)
    reader_task: Optional[asyncio.Task] = field(default=None, repr=False)
    watchdog_task: Optional[asyncio.Task] = field(default=None, repr=False)

    @property
    def pid(self) -> Optional[int]:
        return self.proc.pid

    @property
    def running(self) -> bool:
        return not self.exited.is_set() and self.proc.returncode is None

    def tail_text(self) -> str:
        return "\n".join(self.tail)

    def last_error(self) -> Optional[str]:
        for line in reversed(self.tail):
            if "error" in line.lower():
                return line
        return None


def _nonempty(p: Path) -> bool:
    try:
        return p.stat().st_size > 0
    except OSError:
        return False


def _interrupt(proc: asyncio.subprocess.Process) -> None:
    # SIGINT lets ffmpeg finalise the playlist; Windows only offers terminate()
    if os.name == "nt":
        proc.terminate()
    else:
        proc.send_signal(signal.SIGINT)


# ──────────────────────────────────────────────────────────────────────────────
# Supervisor
# ──────────────────────────────────────────────────────────────────────────────
class TranscodeSupervisor:
    """Runs one ffmpeg per stream and watches its stderr.

    Runtime failures (non-zero exit after confirmation, or no progress marker
    for ``liveness_timeout`` seconds) go to ``on_failure``; an unrequested clean
    exit goes to ``on_clean_exit``. Exits during startup or after
    :meth:`terminate` are never reported; :meth:`launch` raises instead.
    """

    def __init__(
        self,
        *,
        on_failure: Optional[FailureCallback] = None,
        on_clean_exit: Optional[ExitCallback] = None,
        ffmpeg: Optional[str] = None,
        startup_timeout: Optional[float] = None,
        liveness_timeout: Optional[float] = None,
        stop_grace: Optional[float] = None,
        seg_dur: Optional[int] = None,
        list_size: Optional[int] = None,
        spawn: Optional[Spawn] = None,
    ) -> None:
        self.on_failure = on_failure
        self.on_clean_exit = on_clean_exit
        self.ffmpeg = ffmpeg
        self.startup_timeout = float(settings.STARTUP_TIMEOUT_SECS if startup_timeout is None else startup_timeout)
        self.liveness_timeout = float(settings.LIVENESS_TIMEOUT_SECS if liveness_timeout is None else liveness_timeout)
        self.stop_grace = float(settings.STOP_GRACE_SECS if stop_grace is None else stop_grace)
        self.seg_dur = seg_dur
        self.list_size = list_size
        self._spawn: Spawn = spawn or asyncio.create_subprocess_exec

    def command_for(self, stream: Stream, preset: QualityPreset) -> list[str]:
        return build_hls_command(
            stream.source_address, stream.output_dir, preset,
            ffmpeg=self.ffmpeg, seg_dur=self.seg_dur, list_size=self.list_size,
        )

    async def launch(self, stream: Stream, preset: QualityPreset) -> ProcessHandle:
        cmd = self.command_for(stream, preset)
        log.debug("ffmpeg [%s] cwd=%s cmd=%s", stream.id, stream.output_dir, " ".join(shlex.quote(x) for x in cmd))
        try:
            proc = await self._spawn(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(stream.output_dir),
                creationflags=_WIN_BELOW_NORMAL,
            )
        except OSError as e:
            log.error("ffmpeg [%s] could not be spawned: %s", stream.id, e)
            raise LaunchFailed(f"Could not spawn transcoder: {e}") from e

        handle = ProcessHandle(stream_id=stream.id, proc=proc, cmd=cmd)
        stream.process = handle
        handle.reader_task = asyncio.create_task(self._read_diagnostics(stream, handle))

        try:
            ok = await self._wait_for_playlist(stream.playlist_path, handle)
        except asyncio.CancelledError:
            await self.terminate(handle, grace=0)
            raise

        if not ok or handle.exited.is_set():
            await self.terminate(handle, grace=0)
            tail = handle.tail_text()
            log.error("ffmpeg [%s] failed to start (code %s)\n%s", stream.id, handle.returncode, tail[-2000:])
            detail = handle.last_error() or "no playlist produced"
            raise LaunchFailed(f"Failed to create HLS playlist: {detail}", returncode=handle.returncode, tail=tail)

        handle.confirmed = True
        handle.last_progress = time.monotonic()
        handle.watchdog_task = asyncio.create_task(self._watch_liveness(stream, handle))
        return handle

    async def terminate(self, handle: Optional[ProcessHandle], grace: Optional[float] = None) -> Optional[int]:
        """Interrupt, wait ``grace`` seconds, then kill. Safe on exited processes."""
        if handle is None:
            return None
        grace = self.stop_grace if grace is None else max(0.0, grace)
        handle.stopping = True
        proc = handle.proc
        if proc.returncode is None:
            try:
                if grace > 0:
                    _interrupt(proc)
                    await asyncio.wait_for(proc.wait(), timeout=grace)
                else:
                    proc.kill()
            except ProcessLookupError:
                pass
            except asyncio.TimeoutError:
                log.warning("ffmpeg [%s] still running %.1fs after interrupt; killing", handle.stream_id, grace)
                with contextlib.suppress(ProcessLookupError):
                    proc.kill()
            await proc.wait()

        if handle.watchdog_task and not handle.watchdog_task.done():
            handle.watchdog_task.cancel()
        if handle.reader_task and not handle.reader_task.done():
            # stderr hits EOF once the process is gone; don't hang on a stuck pipe
            _, pending = await asyncio.wait({handle.reader_task}, timeout=1.0)
            for t in pending:
                t.cancel()
        handle.returncode = proc.returncode
        handle.exited.set()
        return proc.returncode

    # ── internals ────────────────────────────────────────────────────────────
    async def _wait_for_playlist(self, p: Path, handle: ProcessHandle, poll: float = 0.05) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.startup_timeout
        while loop.time() < deadline:
            if handle.exited.is_set():
                return False
            if _nonempty(p):
                return True
            await asyncio.sleep(poll)
        return _nonempty(p) and not handle.exited.is_set()

    def _observe(self, stream: Stream, handle: ProcessHandle, line: DiagnosticLine) -> None:
        handle.tail.append(line.text)
        handle.lines_seen += 1
        if handle.lines_seen <= DEBUG_FIRST_LINES:
            log.debug("ffmpeg [%s]: %s", stream.id, line.text)
        if line.kind == PROGRESS:
            handle.last_progress = time.monotonic()
            stream.record_progress(line.frame)
        elif line.kind == ERROR:
            stream.stats.errors += 1
            log.warning("ffmpeg [%s]: %s", stream.id, line.text)

    async def _read_diagnostics(self, stream: Stream, handle: ProcessHandle) -> None:
        parser = DiagnosticParser()
        reader = handle.proc.stderr
        if reader is not None:
            while True:
                chunk = await reader.read(READ_CHUNK)
                if not chunk:
                    break
                for line in parser.feed(chunk):
                    self._observe(stream, handle, line)
            for line in parser.close():
                self._observe(stream, handle, line)

        rc = await handle.proc.wait()
        handle.returncode = rc
        handle.exited.set()
        if handle.stopping or not handle.confirmed or handle.reported:
            log.debug("ffmpeg [%s] exited with code %s", stream.id, rc)
            return
        handle.reported = True
        if rc == 0:
            log.info("ffmpeg [%s] exited cleanly (source ended)", stream.id)
            if self.on_clean_exit:
                self.on_clean_exit(stream, handle)
            return
        reason = f"FFmpeg exited with code {rc}"
        err = handle.last_error()
        if err:
            reason = f"{reason}: {err}"
        log.warning("ffmpeg [%s] %s", stream.id, reason)
        if self.on_failure:
            self.on_failure(stream, handle, reason)

    async def _watch_liveness(self, stream: Stream, handle: ProcessHandle) -> None:
        tick = min(1.0, self.liveness_timeout / 4)
        while not handle.exited.is_set():
            await asyncio.sleep(tick)
            if handle.stopping or handle.reported or handle.exited.is_set():
                return
            idle = time.monotonic() - handle.last_progress
            if idle >= self.liveness_timeout:
                handle.reported = True
                reason = f"No progress from transcoder for {idle:.1f}s"
                log.warning("ffmpeg [%s] %s (pid %s still alive)", stream.id, reason, handle.pid)
                if self.on_failure:
                    self.on_failure(stream, handle, reason)
                return
