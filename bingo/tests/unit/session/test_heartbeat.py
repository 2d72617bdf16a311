import asyncio

from bingo.session.heartbeat import HeartbeatMonitor
from bingo.session.room import Player, Room
from bingo.tests.mocks import MockConnection


def _room_with(conn: MockConnection) -> Room:
    room = Room(room_id="room1")
    room.players[conn.connection_id] = Player(connection=conn, name="Alice", room_id="room1", join_order=1)
    return room


class TestHeartbeatMonitor:
    async def test_closes_silent_connection(self):
        monitor = HeartbeatMonitor(check_interval=0.01, timeout=0.02)
        conn = MockConnection()
        room = _room_with(conn)
        monitor.record_connect(conn.connection_id)

        monitor.start_for_room("room1", {"room1": room}.get)
        await asyncio.sleep(0.1)
        await monitor.stop_all()

        assert conn.is_closed
        assert conn.close_reason == "heartbeat_timeout"

    async def test_pings_keep_connection_open(self):
        monitor = HeartbeatMonitor(check_interval=0.01, timeout=0.05)
        conn = MockConnection()
        room = _room_with(conn)
        monitor.record_connect(conn.connection_id)
        monitor.start_for_room("room1", {"room1": room}.get)

        for _ in range(8):
            await asyncio.sleep(0.01)
            monitor.record_ping(conn.connection_id)
        await monitor.stop_all()

        assert not conn.is_closed

    async def test_untracked_ping_ignored(self):
        monitor = HeartbeatMonitor()

        monitor.record_ping("ghost")

        assert monitor._last_ping == {}

    async def test_loop_exits_when_room_gone(self):
        monitor = HeartbeatMonitor(check_interval=0.01)

        monitor.start_for_room("room1", lambda _room_id: None)
        await asyncio.sleep(0.05)

        assert not monitor.is_running("room1")

    async def test_stop_for_room(self):
        monitor = HeartbeatMonitor(check_interval=10)
        monitor.start_for_room("room1", lambda _room_id: None)

        await monitor.stop_for_room("room1")

        assert not monitor.is_running("room1")
