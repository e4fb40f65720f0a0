# camwatch/registry.py
from __future__ import annotations

import asyncio, logging, re, shutil, weakref
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from anyio import to_thread

from .config import settings
from .errors import AlreadyRunning, AtCapacity, InvalidStreamId, LaunchFailed, StreamNotFound, VendorError
from .events import (
    Listener, NotificationBus,
    STREAM_FAILED, STREAM_STARTED, STREAM_STOPPED,
)
from .janitor import SegmentJanitor
from .presets import resolve_preset
from .reconnect import ReconnectionController
from .stream import Stream, StreamStatus
from .supervisor import ProcessHandle, Spawn, TranscodeSupervisor

log = logging.getLogger("streams")

# stream ids name directories under the HLS root
_STREAM_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,127}$")


def validate_stream_id(stream_id: str) -> str:
    if not isinstance(stream_id, str) or not _STREAM_ID_RE.match(stream_id) or ".." in stream_id:
        raise InvalidStreamId(f"Invalid stream id: {stream_id!r}")
    return stream_id


class StreamRegistry:
    """Owns every live stream and enforces the concurrency ceiling.

    Operations on one stream id are serialised by a per-id lock; operations on
    different ids run concurrently. ``start`` and ``stop`` are the only calls
    that wait (startup confirmation, graceful exit); everything else reads or
    writes in-memory state.
    """

    def __init__(
        self,
        hls_root: Optional[Path] = None,
        *,
        max_streams: Optional[int] = None,
        default_quality: Optional[str] = None,
        url_prefix: Optional[str] = None,
        bus: Optional[NotificationBus] = None,
        supervisor: Optional[TranscodeSupervisor] = None,
        spawn: Optional[Spawn] = None,
        startup_timeout: Optional[float] = None,
        stop_grace: Optional[float] = None,
        liveness_timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
        reconnect_delay: Optional[float] = None,
        janitor_interval: Optional[float] = None,
        janitor_max_age: Optional[float] = None,
    ) -> None:
        self.hls_root = Path(hls_root or settings.HLS_PATH)
        self.max_streams = int(max_streams or settings.MAX_STREAMS)
        self.default_quality = default_quality or settings.STREAM_QUALITY
        self.url_prefix = url_prefix or settings.HLS_URL_PREFIX
        self.bus = bus or NotificationBus()

        self.supervisor = supervisor or TranscodeSupervisor(
            startup_timeout=startup_timeout,
            liveness_timeout=liveness_timeout,
            stop_grace=stop_grace,
            spawn=spawn,
        )
        self.supervisor.on_failure = self._on_process_failure
        self.supervisor.on_clean_exit = self._on_process_clean_exit

        self.reconnector = ReconnectionController(
            self.bus, self._relaunch, self._give_up,
            max_attempts=max_attempts, delay=reconnect_delay,
        )
        self.janitor = SegmentJanitor(
            self.hls_root, self.__contains__,
            interval=janitor_interval, max_age=janitor_max_age,
        )

        self._streams: Dict[str, Stream] = {}
        # entries vanish once no task holds or waits on the lock
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._background: Set[asyncio.Task] = set()
        # set once the stop in flight for an id has finished
        self._stopping: Dict[str, asyncio.Event] = {}

    # ── lifecycle ────────────────────────────────────────────────────────────
    async def initialize(self) -> None:
        self.hls_root.mkdir(parents=True, exist_ok=True)
        # first sweep runs immediately inside the loop task
        self.janitor.start()
        log.info("Stream manager ready (max %d streams, HLS root %s)", self.max_streams, self.hls_root)

    async def shutdown(self) -> None:
        log.info("Stopping all streams...")
        await self.janitor.stop()
        await self.reconnector.close()
        await self.stop_all()
        for t in list(self._background):
            t.cancel()
        if self._background:
            await asyncio.wait(self._background)
        await self.bus.close()
        log.info("All streams stopped")

    # ── queries ──────────────────────────────────────────────────────────────
    def __contains__(self, stream_id: object) -> bool:
        return stream_id in self._streams

    def __len__(self) -> int:
        return len(self._streams)

    def get(self, stream_id: str) -> Optional[Dict[str, Any]]:
        s = self._streams.get(stream_id)
        return s.snapshot() if s else None

    def list_all(self) -> List[Dict[str, Any]]:
        return [s.snapshot() for s in self._streams.values()]

    def active_count(self) -> int:
        return sum(1 for s in self._streams.values() if s.status is not StreamStatus.stopped)

    def stats(self) -> Dict[str, Any]:
        streams = list(self._streams.values())
        return {
            "totalStreams": len(streams),
            "maxStreams": self.max_streams,
            "activeConnections": sum(self.bus.subscriber_count(s.id) for s in streams),
            "runningStreams": sum(1 for s in streams if s.status is StreamStatus.running),
            "failedStreams": sum(1 for s in streams if s.status is StreamStatus.failed),
            "streams": [s.snapshot() for s in streams],
        }

    def output_dir_for(self, stream_id: str) -> Path:
        return self.hls_root / stream_id

    # ── start / stop ─────────────────────────────────────────────────────────
    def _lock_for(self, stream_id: str) -> asyncio.Lock:
        lock = self._locks.get(stream_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[stream_id] = lock
        return lock

    async def start(
        self,
        stream_id: str,
        source_address: str,
        quality: Optional[str] = None,
        options: Optional[Dict[str, Any]] = None,
    ) -> Stream:
        validate_stream_id(stream_id)
        if not source_address:
            raise VendorError(f"No RTSP URL available for stream {stream_id}")
        preset = resolve_preset(quality or self.default_quality)

        pending = self._stopping.get(stream_id)
        while pending is not None:
            await pending.wait()
            pending = self._stopping.get(stream_id)

        async with self._lock_for(stream_id):
            existing = self._streams.get(stream_id)
            if existing is not None:
                if existing.is_active:
                    if existing.source_address != source_address or existing.quality != preset.name:
                        raise AlreadyRunning(f"Stream {stream_id} is already running with different settings")
                    log.warning("Stream %s is already running", stream_id)
                    return existing
                # failed or stopping streams are replaced by a fresh one
                await self._discard(existing)

            if self.active_count() >= self.max_streams:
                raise AtCapacity(f"Maximum number of streams ({self.max_streams}) reached")

            stream = Stream(
                id=stream_id,
                source_address=source_address,
                quality=preset.name,
                output_dir=self.output_dir_for(stream_id),
                options=dict(options or {}),
                url_prefix=self.url_prefix,
            )
            self._streams[stream_id] = stream
            try:
                await to_thread.run_sync(_fresh_dir, stream.output_dir)
                await self.supervisor.launch(stream, preset)
            except BaseException as e:
                self._streams.pop(stream_id, None)
                stream.process = None
                stream.status = StreamStatus.stopped
                await self._remove_output(stream)
                if isinstance(e, OSError):
                    log.error("Failed to start stream %s: %s", stream_id, e)
                    raise LaunchFailed(f"Could not prepare output directory: {e}") from e
                if isinstance(e, LaunchFailed):
                    log.error("Failed to start stream %s: %s", stream_id, e)
                raise

            if stream.status is not StreamStatus.starting:
                # a stop claimed it during startup and tears it down once we release the lock
                log.info("Stream %s was stopped during startup", stream_id)
                raise StreamNotFound(f"Stream {stream_id} was stopped during startup")
            stream.status = StreamStatus.running
            log.info("Stream %s started (%s)", stream_id, preset.name)
            self.bus.publish(stream_id, STREAM_STARTED, {"status": stream.status.value, "playlistUrl": stream.playlist_url})
            return stream

    async def stop(self, stream_id: str) -> bool:
        """Stop and forget ``stream_id``. Returns ``False`` when it is not registered.

        A start for the same id waits until this stop has finished, so a stop
        is never overtaken by a later start.
        """
        stream = self._streams.get(stream_id)
        if stream is None:
            log.warning("Stream %s not found", stream_id)
            return False
        pending = self._stopping.get(stream_id)
        if pending is not None:
            await pending.wait()
            log.warning("Stream %s not found", stream_id)
            return False
        done = self._stopping[stream_id] = asyncio.Event()
        stream.status = StreamStatus.stopping
        try:
            await self.reconnector.cancel(stream_id)
            async with self._lock_for(stream_id):
                if self._streams.get(stream_id) is not stream:
                    # torn down by another path while we waited for the lock
                    return stream.status is StreamStatus.stopped
                stream.status = StreamStatus.stopping
                await self._teardown(stream)
        finally:
            if self._stopping.get(stream_id) is done:
                del self._stopping[stream_id]
            done.set()
        log.info("Stream %s stopped", stream_id)
        self.bus.publish(stream_id, STREAM_STOPPED, {"status": StreamStatus.stopped.value})
        return True

    async def restart(self, stream_id: str) -> Stream:
        stream = self._streams.get(stream_id)
        if stream is None:
            raise StreamNotFound(f"Stream {stream_id} not found")
        source, quality, options = stream.source_address, stream.quality, dict(stream.options)
        await self.stop(stream_id)
        return await self.start(stream_id, source, quality, options)

    async def stop_all(self) -> int:
        ids = list(self._streams)
        if not ids:
            return 0
        results = await asyncio.gather(*(self.stop(sid) for sid in ids), return_exceptions=True)
        for sid, r in zip(ids, results):
            if isinstance(r, BaseException):
                log.error("Error stopping stream %s: %s", sid, r)
        return sum(1 for r in results if r is True)

    # ── subscriptions ────────────────────────────────────────────────────────
    def subscribe(self, stream_id: str, listener: Listener) -> None:
        self.bus.subscribe(stream_id, listener, snapshot=self.get(stream_id))

    def unsubscribe(self, listener: Listener, stream_id: Optional[str] = None) -> None:
        self.bus.unsubscribe(listener, stream_id)

    # ── internals ────────────────────────────────────────────────────────────
    async def _teardown(self, stream: Stream) -> None:
        """Kill the process, delete the output and drop the entry (lock held)."""
        try:
            await self.supervisor.terminate(stream.process)
        finally:
            stream.process = None
            self._streams.pop(stream.id, None)
            stream.status = StreamStatus.stopped
            await self._remove_output(stream)

    async def _remove_output(self, stream: Stream) -> None:
        try:
            await to_thread.run_sync(_remove_dir, stream.output_dir)
        except OSError as e:
            # the janitor retries orphans on its next pass
            log.warning("Could not remove %s: %s", stream.output_dir, e)

    async def _discard(self, stream: Stream) -> None:
        await self.reconnector.cancel(stream.id)
        await self._teardown(stream)
        log.info("Stream %s replaced", stream.id)
        self.bus.publish(stream.id, STREAM_STOPPED, {"status": StreamStatus.stopped.value})

    async def _relaunch(self, stream_id: str) -> bool:
        async with self._lock_for(stream_id):
            stream = self._streams.get(stream_id)
            if stream is None or stream.status is not StreamStatus.reconnecting:
                return False
            preset = resolve_preset(stream.quality)
            await self.supervisor.terminate(stream.process)
            try:
                await to_thread.run_sync(_fresh_dir, stream.output_dir)
                await self.supervisor.launch(stream, preset)
            except OSError as e:
                raise LaunchFailed(f"Could not prepare output directory: {e}") from e
            stream.status = StreamStatus.running
            stream.last_error = None
            self.bus.publish(stream_id, STREAM_STARTED, {"status": stream.status.value, "playlistUrl": stream.playlist_url})
            return True

    async def _give_up(self, stream: Stream, reason: str) -> None:
        async with self._lock_for(stream.id):
            if self._streams.get(stream.id) is not stream or stream.status in (StreamStatus.stopping, StreamStatus.stopped):
                return
            await self.supervisor.terminate(stream.process, grace=0)
            stream.process = None
            stream.status = StreamStatus.failed
            stream.last_error = reason
        self.bus.publish(stream.id, STREAM_FAILED, {
            "status": StreamStatus.failed.value,
            "error": "Maximum reconnection attempts reached",
            "reason": reason,
            "attempts": self.reconnector.max_attempts,
        })

    def _is_current(self, stream: Stream, handle: ProcessHandle) -> bool:
        return (
            self._streams.get(stream.id) is stream
            and stream.process is handle
            and stream.status in (StreamStatus.running, StreamStatus.reconnecting)
        )

    def _on_process_failure(self, stream: Stream, handle: ProcessHandle, reason: str) -> None:
        if not self._is_current(stream, handle):
            return
        self.reconnector.handle_failure(stream, reason)

    def _on_process_clean_exit(self, stream: Stream, handle: ProcessHandle) -> None:
        if not self._is_current(stream, handle):
            return
        self._spawn_background(self.stop(stream.id))

    def _spawn_background(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)


def _fresh_dir(d: Path) -> None:
    if d.exists():
        shutil.rmtree(d)
    d.mkdir(parents=True, exist_ok=True)


def _remove_dir(d: Path) -> None:
    if d.exists():
        shutil.rmtree(d)
