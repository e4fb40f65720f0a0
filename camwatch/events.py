"""Per-stream fan-out of lifecycle events to real-time listeners."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from typing import Any, Dict, Optional, Protocol, Set

log = logging.getLogger("events")

STREAM_STARTED = "stream_started"
STREAM_STOPPED = "stream_stopped"
STREAM_RECONNECTING = "stream_reconnecting"
STREAM_FAILED = "stream_failed"
STREAM_STATUS = "stream_status"


class Listener(Protocol):
    async def send_json(self, data: Any) -> None: ...


def make_message(event_type: str, data: Dict[str, Any]) -> Dict[str, Any]:
    return {"type": event_type, "data": data, "timestamp": int(time.time() * 1000)}


class _Mailbox:
    """FIFO of pending messages for one listener, drained by a single task."""

    def __init__(self, bus: "NotificationBus", listener: Listener, max_queue_size: int) -> None:
        self.listener = listener
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue_size)
        self.task = asyncio.get_running_loop().create_task(self._pump(bus))

    async def _pump(self, bus: "NotificationBus") -> None:
        while True:
            message = await self.queue.get()
            try:
                await self.listener.send_json(message)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # Closed transport: drop the listener instead of surfacing an error
                log.info("dropping listener %s: %s", _describe(self.listener), e)
                bus._discard(self.listener)
                return
            finally:
                self.queue.task_done()


def _describe(listener: Listener) -> str:
    client = getattr(listener, "client", None)
    return f"{type(listener).__name__}({client})" if client else f"{type(listener).__name__}@{id(listener):x}"


class NotificationBus:
    """Delivers lifecycle events to listeners subscribed to a stream id.

    ``publish`` never blocks: messages are queued per listener and sent by that
    listener's pump task, so each listener sees events in publish order. A
    listener whose ``send_json`` raises, or whose mailbox fills up, is
    unsubscribed from every stream.
    """

    def __init__(self, *, max_queue_size: int = 256) -> None:
        if max_queue_size <= 0:
            raise ValueError("max_queue_size must be positive")
        self._max_queue_size = max_queue_size
        self._subscribers: Dict[str, Set[int]] = {}
        self._mailboxes: Dict[int, _Mailbox] = {}

    # ── subscription ─────────────────────────────────────────────────────────
    def subscribe(self, stream_id: str, listener: Listener, snapshot: Optional[Dict[str, Any]] = None) -> None:
        key = id(listener)
        box = self._mailboxes.get(key)
        if box is None:
            box = _Mailbox(self, listener, self._max_queue_size)
            self._mailboxes[key] = box
        self._subscribers.setdefault(stream_id, set()).add(key)
        log.debug("%s subscribed to %s", _describe(listener), stream_id)
        if snapshot is not None:
            self._enqueue(box, make_message(STREAM_STATUS, snapshot))

    def unsubscribe(self, listener: Listener, stream_id: Optional[str] = None) -> None:
        """Remove ``listener`` from one stream, or from every stream. Unknown listeners are ignored."""
        if stream_id is None:
            self._discard(listener)
            return
        key = id(listener)
        members = self._subscribers.get(stream_id)
        if members is not None:
            members.discard(key)
            if not members:
                del self._subscribers[stream_id]
        if not any(key in m for m in self._subscribers.values()):
            self._discard(listener)

    def _discard(self, listener: Listener) -> None:
        key = id(listener)
        for sid in list(self._subscribers):
            members = self._subscribers[sid]
            members.discard(key)
            if not members:
                del self._subscribers[sid]
        box = self._mailboxes.pop(key, None)
        if box is None:
            return
        # release anyone blocked in flush() on this mailbox
        while not box.queue.empty():
            box.queue.get_nowait()
            box.queue.task_done()
        if box.task is not asyncio.current_task():
            box.task.cancel()

    def subscriber_count(self, stream_id: Optional[str] = None) -> int:
        if stream_id is not None:
            return len(self._subscribers.get(stream_id, ()))
        return sum(len(m) for m in self._subscribers.values())

    # ── delivery ─────────────────────────────────────────────────────────────
    def publish(self, stream_id: str, event_type: str, payload: Optional[Dict[str, Any]] = None) -> int:
        """Queue ``event_type`` for every listener of ``stream_id``; returns how many."""
        if not event_type or not isinstance(event_type, str):
            raise ValueError("event_type must be a non-empty string")
        data = {"streamId": stream_id, **(payload or {})}
        message = make_message(event_type, data)
        # copy: a failed delivery may unsubscribe while we iterate
        keys = list(self._subscribers.get(stream_id, ()))
        delivered = 0
        for key in keys:
            box = self._mailboxes.get(key)
            if box is not None and self._enqueue(box, message):
                delivered += 1
        return delivered

    def _enqueue(self, box: _Mailbox, message: Dict[str, Any]) -> bool:
        try:
            box.queue.put_nowait(message)
            return True
        except asyncio.QueueFull:
            log.warning("listener %s fell %d events behind; unsubscribing", _describe(box.listener), box.queue.qsize())
            self._discard(box.listener)
            return False

    async def flush(self, timeout: Optional[float] = None) -> None:
        """Wait until every queued message has been handed to its listener."""
        joins = [asyncio.ensure_future(b.queue.join()) for b in list(self._mailboxes.values())]
        if not joins:
            return
        done, pending = await asyncio.wait(joins, timeout=timeout)
        for t in pending:
            t.cancel()

    async def close(self) -> None:
        boxes = list(self._mailboxes.values())
        self._mailboxes.clear()
        self._subscribers.clear()
        for b in boxes:
            b.task.cancel()
        for b in boxes:
            with contextlib.suppress(asyncio.CancelledError):
                await b.task
