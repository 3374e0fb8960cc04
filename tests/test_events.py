"""
Tests for the event bus.
"""

from formation_engine.services.orchestration import EventBus, EventKind, FormationEvent


async def test_listener_receives_events():
    bus = EventBus()
    received = []
    bus.subscribe(received.append)

    event = await bus.emit(EventKind.STEP_CHANGED, "session-1", current_step="name_set")

    assert received == [event]
    assert event.data == {"current_step": "name_set"}
    assert event.to_dict()["kind"] == "step_changed"


async def test_kind_filter():
    bus = EventBus()
    errors = []
    bus.subscribe(errors.append, EventKind.ERROR)

    await bus.emit(EventKind.PROGRESS_UPDATE, "session-1", progress=50)
    await bus.emit(EventKind.ERROR, "session-1", error="API_UNAVAILABLE")

    assert [e.kind for e in errors] == [EventKind.ERROR]


async def test_cancel_detaches_listener():
    bus = EventBus()
    received = []
    subscription = bus.subscribe(received.append)

    subscription.cancel()
    subscription.cancel()
    await bus.emit(EventKind.STATUS_CHANGED, "session-1")

    assert received == []
    assert bus.listener_count == 0


async def test_subscription_as_context_manager():
    bus = EventBus()
    received = []

    with bus.subscribe(received.append):
        await bus.emit(EventKind.STATUS_CHANGED, "session-1")
    await bus.emit(EventKind.STATUS_CHANGED, "session-1")

    assert len(received) == 1


async def test_failing_listener_does_not_affect_others():
    bus = EventBus()
    received = []

    def broken(event: FormationEvent):
        raise RuntimeError("listener bug")

    bus.subscribe(broken)
    bus.subscribe(received.append)

    await bus.emit(EventKind.FILING_COMPLETE, "session-1", filing_id="filing-1")

    assert len(received) == 1


async def test_async_listener_is_awaited():
    bus = EventBus()
    received = []

    async def listener(event: FormationEvent):
        received.append(event.kind)

    bus.subscribe(listener)
    await bus.emit(EventKind.PAYMENT_COMPLETE, "session-1")

    assert received == [EventKind.PAYMENT_COMPLETE]
