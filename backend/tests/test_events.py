"""EventBus delivery rules."""

from distpos.events import EventBus


class _Listener:
    def __init__(self):
        self.calls = []

    def on_event(self, **payload):
        self.calls.append(payload)


def test_emit_delivers_payload_to_every_subscriber():
    bus = EventBus()
    a, b = [], []
    bus.subscribe("order.saved", lambda **p: a.append(p))
    bus.subscribe("order.saved", lambda **p: b.append(p))

    bus.emit("order.saved", order_id=7)

    assert a == b == [{"order_id": 7}]


def test_unsubscribe_handle():
    bus = EventBus()
    seen = []
    unsubscribe = bus.subscribe("locks.changed", lambda **p: seen.append(p))

    unsubscribe()
    bus.emit("locks.changed", order_id=1)

    assert seen == []


def test_failing_listener_does_not_stop_delivery():
    bus = EventBus()
    seen = []

    def broken(**payload):
        raise RuntimeError("listener bug")

    bus.subscribe("settlement.completed", broken)
    bus.subscribe("settlement.completed", lambda **p: seen.append(p))

    bus.emit("settlement.completed", order_id=3)

    assert seen == [{"order_id": 3}]


def test_bound_method_listeners_are_weak():
    bus = EventBus()
    listener = _Listener()
    bus.subscribe("locks.refreshed", listener.on_event)

    bus.emit("locks.refreshed", locks=[])
    assert listener.calls == [{"locks": []}]

    del listener
    bus.emit("locks.refreshed", locks=[])
    assert bus._subs["locks.refreshed"] == []
