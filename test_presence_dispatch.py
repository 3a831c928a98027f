import asyncio

import pytest

from conftest import OFFICE_LAT, OFFICE_LNG, PRINCIPALS, FakeChannel
from services.presence_broadcaster import PresenceBroadcaster
from services.presence_channel import WebSocketChannel
from services.presence_dispatch import EVENT_HANDLERS, SocketContext, dispatch
from services.presence_registry import PresenceRegistry


@pytest.fixture
def broadcaster(evaluator):
    return PresenceBroadcaster(PresenceRegistry(), evaluator)


def _context(broadcaster, uid: str) -> SocketContext:
    channel = FakeChannel(f"conn-{uid}")
    principal = PRINCIPALS[uid]
    asyncio.run(
        broadcaster.registry.register(channel.connection_id, principal.summary(), principal.is_observer, channel)
    )
    return SocketContext(
        connection_id=channel.connection_id,
        principal=principal,
        channel=channel,
        broadcaster=broadcaster,
    )


def test_every_inbound_event_has_one_handler():
    assert set(EVENT_HANDLERS) == {
        "ping",
        "pong",
        "location_update",
        "attendance_event",
        "get_online_users",
        "broadcast_announcement",
        "send_notification",
    }


def test_ping_gets_pong(broadcaster):
    ctx = _context(broadcaster, "emp-1")

    asyncio.run(dispatch(ctx, {"event": "ping"}))

    assert ctx.channel.events() == ["pong"]


@pytest.mark.parametrize("message", [[], "ping", {"data": {}}, {"event": 7}])
def test_malformed_frames_get_an_error(broadcaster, message):
    ctx = _context(broadcaster, "emp-1")

    asyncio.run(dispatch(ctx, message))

    assert ctx.channel.events() == ["error"]


def test_unknown_event(broadcaster):
    ctx = _context(broadcaster, "emp-1")

    asyncio.run(dispatch(ctx, {"event": "teleport", "data": {}}))

    assert ctx.channel.messages == [("error", {"message": "Unknown event: teleport"})]


def test_location_update_is_acknowledged_and_fanned_out(broadcaster):
    boss = _context(broadcaster, "boss")
    employee = _context(broadcaster, "emp-1")

    asyncio.run(
        dispatch(employee, {"event": "location_update", "data": {"lat": OFFICE_LAT, "lon": OFFICE_LNG}})
    )

    assert employee.channel.events() == ["location_update_ack"]
    assert boss.channel.events() == ["staff_location_update"]


def test_location_update_accepts_long_field_names(broadcaster):
    boss = _context(broadcaster, "boss")
    employee = _context(broadcaster, "emp-1")

    asyncio.run(
        dispatch(
            employee,
            {"event": "location_update", "data": {"latitude": OFFICE_LAT, "longitude": OFFICE_LNG}},
        )
    )

    assert boss.channel.messages[0][1]["location"]["latitude"] == OFFICE_LAT


def test_location_update_with_invalid_coordinates(broadcaster):
    boss = _context(broadcaster, "boss")
    employee = _context(broadcaster, "emp-1")

    asyncio.run(dispatch(employee, {"event": "location_update", "data": {"lat": 95, "lon": OFFICE_LNG}}))

    assert employee.channel.events() == ["error"]
    assert employee.channel.messages[0][1]["message"] == "Invalid location data"
    assert boss.channel.events() == []


def test_location_update_with_missing_fields(broadcaster):
    employee = _context(broadcaster, "emp-1")

    asyncio.run(dispatch(employee, {"event": "location_update", "data": {"lat": OFFICE_LAT}}))

    assert employee.channel.events() == ["error"]
    assert "details" in employee.channel.messages[0][1]


def test_client_attendance_event_is_informational(broadcaster):
    boss = _context(broadcaster, "boss")
    employee = _context(broadcaster, "emp-1")

    asyncio.run(
        dispatch(employee, {"event": "attendance_event", "data": {"event": "arrived_at_gate", "details": "north"}})
    )

    assert boss.channel.events() == ["attendance_event"]
    assert boss.channel.messages[0][1]["event"] == "arrived_at_gate"


def test_online_users_for_observer_only(broadcaster):
    boss = _context(broadcaster, "boss")
    employee = _context(broadcaster, "emp-1")

    asyncio.run(dispatch(boss, {"event": "get_online_users"}))
    asyncio.run(dispatch(employee, {"event": "get_online_users"}))

    event, payload = boss.channel.messages[0]
    assert event == "online_users"
    assert payload["count"] == 2
    assert employee.channel.events() == ["error"]


def test_announcement_needs_observer(broadcaster):
    boss = _context(broadcaster, "boss")
    employee = _context(broadcaster, "emp-1")

    asyncio.run(dispatch(employee, {"event": "broadcast_announcement", "data": {"message": "hi all"}}))
    assert employee.channel.events() == ["error"]
    assert boss.channel.events() == []

    asyncio.run(dispatch(boss, {"event": "broadcast_announcement", "data": {"message": "Lunch is here"}}))
    assert boss.channel.events() == ["announcement"]
    assert employee.channel.events() == ["error", "announcement"]


def test_send_notification_reports_delivery(broadcaster):
    boss = _context(broadcaster, "boss")
    employee = _context(broadcaster, "emp-1")

    asyncio.run(
        dispatch(
            boss,
            {"event": "send_notification", "data": {"targetUserId": "emp-1", "notification": {"title": "Hi"}}},
        )
    )

    assert employee.channel.messages == [("notification", {"title": "Hi"})]
    assert boss.channel.messages == [("notification_ack", {"target_user_id": "emp-1", "delivered": True})]


class RecordingSocket:
    def __init__(self):
        self.sent = []

    async def send_json(self, data):
        self.sent.append(data)


def test_channel_drops_when_its_queue_is_full():
    channel = WebSocketChannel("c1", RecordingSocket(), max_queue=1)

    assert channel.enqueue("pong", {}) is True
    assert channel.enqueue("pong", {}) is False


def test_channel_sender_delivers_in_order_and_stamps_time():
    socket = RecordingSocket()

    async def scenario():
        channel = WebSocketChannel("c1", socket)
        sender = asyncio.create_task(channel.run_sender())
        channel.enqueue("first", {"n": 1})
        channel.enqueue("second", {"n": 2, "timestamp": "kept"})
        # None is the sender's stop marker
        channel._queue.put_nowait(None)
        await sender
        return channel

    channel = asyncio.run(scenario())

    assert [message["event"] for message in socket.sent] == ["first", "second"]
    assert socket.sent[0]["data"]["timestamp"].endswith("Z")
    assert socket.sent[1]["data"]["timestamp"] == "kept"
    assert channel.closed
    assert channel.enqueue("third", {}) is False


def test_location_update_rejects_boolean_coordinates(broadcaster):
    boss = _context(broadcaster, "boss")
    employee = _context(broadcaster, "emp-1")

    asyncio.run(dispatch(employee, {"event": "location_update", "data": {"lat": True, "lon": True}}))

    assert employee.channel.events() == ["error"]
    assert boss.channel.events() == []


def test_online_users_needs_a_live_observer_session(broadcaster):
    boss = _context(broadcaster, "boss")
    # A newer socket for the same observer replaced this one
    asyncio.run(broadcaster.registry.unregister(boss.connection_id))

    asyncio.run(dispatch(boss, {"event": "get_online_users"}))

    assert boss.channel.messages == [("error", {"message": "Observer privileges required"})]
