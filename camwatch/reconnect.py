# camwatch/reconnect.py
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional

from .config import settings
from .errors import LaunchFailed
from .events import NotificationBus, STREAM_RECONNECTING
from .stream import Stream, StreamStatus

log = logging.getLogger("streams")

Relaunch = Callable[[str], Awaitable[bool]]
GiveUp = Callable[[Stream, str], Awaitable[None]]


class ReconnectionController:
    """Retries failed streams a fixed number of times with a fixed delay.

    The delay is flat, not exponential: every stream gets exactly
    ``max_attempts`` tries ``delay`` seconds apart before ``give_up`` marks it
    failed. At most one recovery task runs per stream; failures reported
    while one is in flight are deferred until it finishes.

    ``relaunch(stream_id)`` must stop the old process and start a new one,
    returning ``False`` when the stream is no longer eligible (stopped in the
    meantime) and raising :class:`LaunchFailed` when the new process does not
    come up.
    """

    def __init__(
        self,
        bus: NotificationBus,
        relaunch: Relaunch,
        give_up: GiveUp,
        *,
        max_attempts: Optional[int] = None,
        delay: Optional[float] = None,
    ) -> None:
        self.bus = bus
        self._relaunch = relaunch
        self._give_up = give_up
        self.max_attempts = int(settings.RECONNECT_MAX_ATTEMPTS if max_attempts is None else max_attempts)
        self.delay = float(settings.RECONNECT_DELAY_SECS if delay is None else delay)
        self._attempts: Dict[str, int] = {}
        self._pending: Dict[str, asyncio.Task] = {}
        self._deferred: Dict[str, str] = {}

    def attempts(self, stream_id: str) -> int:
        return self._attempts.get(stream_id, 0)

    def pending(self, stream_id: str) -> bool:
        task = self._pending.get(stream_id)
        return task is not None and not task.done()

    def handle_failure(self, stream: Stream, reason: str) -> None:
        sid = stream.id
        stream.last_error = reason
        if self.pending(sid):
            log.debug("stream %s: reconnection already in flight; deferring %r", sid, reason)
            self._deferred[sid] = reason
            return
        self._pending[sid] = asyncio.get_running_loop().create_task(self._recover(stream, reason))

    async def cancel(self, stream_id: str) -> None:
        """Abort any in-flight recovery for ``stream_id`` and forget its history."""
        self._attempts.pop(stream_id, None)
        self._deferred.pop(stream_id, None)
        task = self._pending.pop(stream_id, None)
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        await asyncio.wait({task})

    async def close(self) -> None:
        for sid in list(self._pending):
            await self.cancel(sid)

    async def _recover(self, stream: Stream, reason: str) -> None:
        sid = stream.id
        try:
            while True:
                attempt = self._attempts.get(sid, 0)
                if attempt >= self.max_attempts:
                    log.error("Stream %s failed permanently after %d attempts: %s", sid, attempt, reason)
                    self._attempts.pop(sid, None)
                    await self._give_up(stream, reason)
                    return

                attempt += 1
                self._attempts[sid] = attempt
                stream.status = StreamStatus.reconnecting
                stream.stats.restarts += 1
                log.warning(
                    "Stream %s error: %s. Reconnecting in %.1fs (attempt %d/%d)",
                    sid, reason, self.delay, attempt, self.max_attempts,
                )
                self.bus.publish(sid, STREAM_RECONNECTING, {
                    "attempt": attempt,
                    "maxAttempts": self.max_attempts,
                    "reason": reason,
                })
                await asyncio.sleep(self.delay)

                try:
                    relaunched = await self._relaunch(sid)
                except LaunchFailed as e:
                    reason = str(e)
                    stream.last_error = reason
                    continue
                if relaunched:
                    # a stream that comes back starts with a clean slate
                    self._attempts[sid] = 0
                    log.info("Stream %s reconnected", sid)
                return
        finally:
            if self._pending.get(sid) is asyncio.current_task():
                del self._pending[sid]
            deferred = self._deferred.pop(sid, None)
            if deferred and stream.status is StreamStatus.running:
                self.handle_failure(stream, deferred)
