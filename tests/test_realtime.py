import asyncio
from datetime import datetime, timezone
from uuid import UUID, uuid4

import pytest

from app.core.exceptions import SubscriptionError
from app.schemas.message import MessageEvent, MessageResponse
from app.services.realtime_service import MessageEventHub, RealtimeBridge

ALICE = UUID("00000000-0000-0000-0000-00000000000a")
BOB = UUID("00000000-0000-0000-0000-00000000000b")


def make_event(sender_id: UUID, recipient_id: UUID, message_id: UUID | None = None) -> MessageEvent:
    return MessageEvent(
        message=MessageResponse(
            id=message_id or uuid4(),
            sender_id=sender_id,
            recipient_id=recipient_id,
            content="ping",
            read=False,
            created_at=datetime.now(timezone.utc),
        )
    )


class Recorder:
    def __init__(self, expected: int = 1) -> None:
        self.events: list[MessageEvent] = []
        self.expected = expected
        self.done = asyncio.Event()

    async def __call__(self, event: MessageEvent) -> None:
        self.events.append(event)
        if len(self.events) >= self.expected:
            self.done.set()


@pytest.mark.asyncio
async def test_publish_only_reaches_recipient():
    hub = MessageEventHub()
    alice = hub.subscribe(ALICE)
    bob = hub.subscribe(BOB)

    delivered = hub.publish(make_event(ALICE, BOB))

    assert delivered == 1
    assert bob._queue.qsize() == 1
    assert alice._queue.empty()


@pytest.mark.asyncio
async def test_no_replay_of_events_before_subscribe():
    hub = MessageEventHub()
    hub.publish(make_event(ALICE, BOB))

    subscription = hub.subscribe(BOB)

    assert subscription._queue.empty()


@pytest.mark.asyncio
async def test_unsubscribe_ends_iteration():
    hub = MessageEventHub()
    subscription = hub.subscribe(BOB)

    hub.unsubscribe(subscription)

    assert hub.subscriber_count(BOB) == 0
    with pytest.raises(StopAsyncIteration):
        await subscription.__anext__()


@pytest.mark.asyncio
async def test_slow_subscriber_is_dropped_with_error():
    hub = MessageEventHub(buffer_size=2)
    subscription = hub.subscribe(BOB)

    assert hub.publish(make_event(ALICE, BOB)) == 1
    assert hub.publish(make_event(ALICE, BOB)) == 1
    assert hub.publish(make_event(ALICE, BOB)) == 0

    assert subscription.closed
    assert hub.subscriber_count(BOB) == 0
    await subscription.__anext__()
    await subscription.__anext__()
    with pytest.raises(SubscriptionError):
        await subscription.__anext__()


@pytest.mark.asyncio
async def test_bridge_delivers_events():
    hub = MessageEventHub()
    recorder = Recorder(expected=2)
    bridge = RealtimeBridge(BOB, recorder, hub=hub)
    await bridge.start()

    hub.publish(make_event(ALICE, BOB))
    hub.publish(make_event(ALICE, BOB))
    await asyncio.wait_for(recorder.done.wait(), timeout=1)

    assert len(recorder.events) == 2
    assert bridge.connected
    await bridge.stop()


@pytest.mark.asyncio
async def test_bridge_processes_each_event_once():
    hub = MessageEventHub()
    recorder = Recorder(expected=2)
    bridge = RealtimeBridge(BOB, recorder, hub=hub)
    await bridge.start()
    duplicate_id = uuid4()

    hub.publish(make_event(ALICE, BOB, duplicate_id))
    hub.publish(make_event(ALICE, BOB, duplicate_id))
    hub.publish(make_event(ALICE, BOB))
    await asyncio.wait_for(recorder.done.wait(), timeout=1)
    await asyncio.sleep(0.01)

    assert [e.message.id for e in recorder.events].count(duplicate_id) == 1
    assert len(recorder.events) == 2
    await bridge.stop()


@pytest.mark.asyncio
async def test_bridge_stop_unsubscribes_once():
    hub = MessageEventHub()
    bridge = RealtimeBridge(BOB, Recorder(), hub=hub)
    await bridge.start()
    assert hub.subscriber_count(BOB) == 1

    calls = []
    original = hub.unsubscribe

    def counting_unsubscribe(subscription):
        calls.append(subscription)
        original(subscription)

    hub.unsubscribe = counting_unsubscribe
    await bridge.stop()
    await bridge.stop()

    assert len(calls) == 1
    assert hub.subscriber_count(BOB) == 0
    assert not bridge.connected


@pytest.mark.asyncio
async def test_bridge_cannot_start_twice():
    hub = MessageEventHub()
    bridge = RealtimeBridge(BOB, Recorder(), hub=hub)
    await bridge.start()

    with pytest.raises(RuntimeError):
        await bridge.start()
    await bridge.stop()


@pytest.mark.asyncio
async def test_handler_error_does_not_stop_bridge():
    hub = MessageEventHub()
    received = []
    done = asyncio.Event()

    async def flaky(event: MessageEvent) -> None:
        received.append(event)
        if len(received) == 1:
            raise RuntimeError("handler blew up")
        done.set()

    bridge = RealtimeBridge(BOB, flaky, hub=hub)
    await bridge.start()
    hub.publish(make_event(ALICE, BOB))
    hub.publish(make_event(ALICE, BOB))
    await asyncio.wait_for(done.wait(), timeout=1)

    assert len(received) == 2
    await bridge.stop()


@pytest.mark.asyncio
async def test_bridge_reconnects_after_drop_and_refreshes():
    hub = MessageEventHub()
    recorder = Recorder(expected=1)
    reconnected = asyncio.Event()

    async def on_reconnect() -> None:
        reconnected.set()

    bridge = RealtimeBridge(
        BOB,
        recorder,
        hub=hub,
        on_reconnect=on_reconnect,
        reconnect_delay=0.01,
        max_reconnect_attempts=3,
    )
    await bridge.start()

    hub.disconnect_all()
    await asyncio.wait_for(reconnected.wait(), timeout=1)

    assert bridge.connected
    assert hub.subscriber_count(BOB) == 1
    hub.publish(make_event(ALICE, BOB))
    await asyncio.wait_for(recorder.done.wait(), timeout=1)
    await bridge.stop()


@pytest.mark.asyncio
async def test_bridge_gives_up_after_max_attempts():
    hub = MessageEventHub()
    attempts = []

    bridge = RealtimeBridge(
        BOB,
        Recorder(),
        hub=hub,
        reconnect_delay=0.001,
        max_reconnect_attempts=2,
    )
    await bridge.start()

    def refuse(recipient_id):
        attempts.append(recipient_id)
        raise SubscriptionError("channel unavailable")

    hub.subscribe = refuse
    hub.disconnect_all()
    await asyncio.wait_for(bridge._task, timeout=1)

    assert len(attempts) == 2
    assert not bridge.connected
    await bridge.stop()


@pytest.mark.asyncio
async def test_close_all_ends_bridge_without_reconnecting():
    hub = MessageEventHub()
    reconnects = []

    async def on_reconnect() -> None:
        reconnects.append(True)

    bridge = RealtimeBridge(
        BOB,
        Recorder(),
        hub=hub,
        on_reconnect=on_reconnect,
        reconnect_delay=0.001,
        max_reconnect_attempts=3,
    )
    await bridge.start()

    hub.close_all()
    await asyncio.wait_for(bridge._task, timeout=1)

    assert not bridge.connected
    assert hub.subscriber_count(BOB) == 0
    assert reconnects == []
    await bridge.stop()
