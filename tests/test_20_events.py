import asyncio

from camwatch.events import NotificationBus, STREAM_STARTED, STREAM_STATUS, STREAM_STOPPED

from conftest import Recorder


class Broken:
    async def send_json(self, data):
        raise RuntimeError("socket closed")


class Stuck:
    def __init__(self):
        self.gate = asyncio.Event()

    async def send_json(self, data):
        await self.gate.wait()


def test_publish_reaches_only_subscribers_in_order():
    async def runner():
        bus = NotificationBus()
        a, b = Recorder(), Recorder()
        bus.subscribe("cam1", a)
        bus.subscribe("cam2", b)
        assert bus.publish("cam1", STREAM_STARTED, {"status": "running"}) == 1
        bus.publish("cam1", STREAM_STOPPED)
        await bus.flush(1)
        await bus.close()
        return a, b

    a, b = asyncio.run(runner())
    assert a.types() == [STREAM_STARTED, STREAM_STOPPED]
    assert a.messages[0]["data"] == {"streamId": "cam1", "status": "running"}
    assert isinstance(a.messages[0]["timestamp"], int)
    assert b.messages == []


def test_subscribe_delivers_snapshot_first():
    async def runner():
        bus = NotificationBus()
        r = Recorder()
        bus.subscribe("cam1", r, snapshot={"id": "cam1", "status": "running"})
        bus.publish("cam1", STREAM_STOPPED)
        await bus.flush(1)
        await bus.close()
        return r

    r = asyncio.run(runner())
    assert r.types() == [STREAM_STATUS, STREAM_STOPPED]
    assert r.messages[0]["data"]["status"] == "running"


def test_failing_listener_is_dropped_and_others_still_served():
    async def runner():
        bus = NotificationBus()
        good, bad = Recorder(), Broken()
        for sid in ("cam1", "cam2"):
            bus.subscribe(sid, bad)
        bus.subscribe("cam1", good)
        bus.publish("cam1", STREAM_STARTED)
        await bus.flush(1)
        counts = (bus.subscriber_count("cam1"), bus.subscriber_count("cam2"))
        bus.publish("cam1", STREAM_STOPPED)
        await bus.flush(1)
        await bus.close()
        return good, counts

    good, counts = asyncio.run(runner())
    assert counts == (1, 0)
    assert good.types() == [STREAM_STARTED, STREAM_STOPPED]


def test_slow_listener_is_unsubscribed_when_mailbox_fills():
    async def runner():
        bus = NotificationBus(max_queue_size=1)
        slow = Stuck()
        bus.subscribe("cam1", slow)
        for _ in range(3):
            bus.publish("cam1", STREAM_STARTED)
        count = bus.subscriber_count("cam1")
        await asyncio.wait_for(bus.flush(), 1)
        await bus.close()
        return count

    assert asyncio.run(runner()) == 0


def test_unsubscribe_single_stream_or_all():
    async def runner():
        bus = NotificationBus()
        r = Recorder()
        bus.subscribe("cam1", r)
        bus.subscribe("cam2", r)
        bus.unsubscribe(r, "cam1")
        first = (bus.subscriber_count("cam1"), bus.subscriber_count("cam2"))
        bus.unsubscribe(r)
        bus.unsubscribe(r)  # unknown listener: no-op
        second = bus.subscriber_count()
        await bus.close()
        return first, second

    assert asyncio.run(runner()) == ((0, 1), 0)


def test_publish_without_subscribers_is_a_noop():
    async def runner():
        bus = NotificationBus()
        n = bus.publish("nobody", STREAM_STARTED)
        await bus.close()
        return n

    assert asyncio.run(runner()) == 0
