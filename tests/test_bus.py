import asyncio
import json

import pytest

from src.chat.bus import Connection, DeliveryBus, MESSAGE_APPENDED


class RecordingSocket:
    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail
        self.close_code = None

    async def send_text(self, text):
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(json.loads(text))

    async def close(self, code=1000):
        self.close_code = code


def connect(bus, user_id, *rooms, queue_size=16, ws=None):
    conn = Connection(ws or RecordingSocket(), user_id, queue_size=queue_size)
    bus.register(conn)
    for room in rooms:
        bus.join(conn, room)
    return conn


def queued(conn):
    items = []
    while not conn.queue.empty():
        items.append(conn.queue.get_nowait())
    return items


def test_publish_reaches_room_members_only():
    bus = DeliveryBus()
    a = connect(bus, "alice", "c1")
    b = connect(bus, "bob", "c1")
    c = connect(bus, "carol", "c2")

    assert bus.publish("c1", MESSAGE_APPENDED, {"message": {"seq": 1}}) == 2
    assert queued(a) == queued(b) == [{"type": MESSAGE_APPENDED, "conversation_id": "c1", "message": {"seq": 1}}]
    assert queued(c) == []


def test_publish_preserves_order_and_honours_exclude():
    bus = DeliveryBus()
    a = connect(bus, "alice", "c1")
    b = connect(bus, "bob", "c1")

    for seq in range(1, 4):
        bus.publish("c1", MESSAGE_APPENDED, {"message": {"seq": seq}})
    bus.publish("c1", "typing-start", {"sender_id": "alice"}, exclude=a)

    assert [e["message"]["seq"] for e in queued(a)] == [1, 2, 3]
    assert [e["type"] for e in queued(b)] == [MESSAGE_APPENDED] * 3 + ["typing-start"]


def test_is_viewing_follows_membership():
    bus = DeliveryBus()
    a = connect(bus, "alice", "c1", "c2")
    assert bus.is_viewing("c1", "alice")
    assert not bus.is_viewing("c1", "bob")

    bus.leave(a, "c1")
    assert not bus.is_viewing("c1", "alice")
    assert "c1" not in bus.rooms

    bus.unregister(a)
    assert not bus.is_viewing("c2", "alice")
    assert bus.connections == {}
    assert a.rooms == set()


def test_full_queue_drops_the_connection():
    bus = DeliveryBus()
    slow = connect(bus, "alice", "c1", "c2", queue_size=1)
    fast = connect(bus, "bob", "c1")

    assert bus.publish("c1", MESSAGE_APPENDED, {"message": {"seq": 1}}) == 2
    assert bus.publish("c1", MESSAGE_APPENDED, {"message": {"seq": 2}}) == 1

    assert slow.closed
    assert slow.close_code == 1013
    assert bus.members("c1") == [fast]
    assert bus.members("c2") == []
    assert slow.id not in bus.connections
    assert not bus.is_viewing("c1", "alice")


@pytest.mark.asyncio
async def test_dropped_connection_closes_its_socket():
    bus = DeliveryBus()
    ws = RecordingSocket()
    slow = connect(bus, "alice", "c1", queue_size=1, ws=ws)
    for seq in range(1, 4):
        bus.publish("c1", MESSAGE_APPENDED, {"message": {"seq": seq}})

    await asyncio.wait_for(slow.run_writer(), timeout=1)

    assert ws.close_code == 1013
    assert ws.sent == []
    assert slow.enqueue({"type": "joined"}) is False


def test_publish_to_empty_room():
    assert DeliveryBus().publish("nobody", MESSAGE_APPENDED, {}) == 0


@pytest.mark.asyncio
async def test_writer_sends_in_queue_order():
    ws = RecordingSocket()
    conn = Connection(ws, "alice")
    for seq in range(1, 4):
        conn.enqueue({"seq": seq})

    writer = asyncio.create_task(conn.run_writer())
    while len(ws.sent) < 3:
        await asyncio.sleep(0)
    writer.cancel()

    assert [p["seq"] for p in ws.sent] == [1, 2, 3]
    assert ws.close_code is None


@pytest.mark.asyncio
async def test_writer_stops_after_failed_send():
    conn = Connection(RecordingSocket(fail=True), "alice")
    conn.enqueue({"seq": 1})

    ws = conn.ws
    await asyncio.wait_for(conn.run_writer(), timeout=1)
    assert conn.closed
    assert ws.close_code == 1011
    assert conn.enqueue({"seq": 2}) is False
