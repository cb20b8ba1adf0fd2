"""Tests for the receive loop, driven by a scripted transport."""

import threading

from peerchat import codec
from peerchat.errors import TransportClosed, TransportError
from peerchat.receiver import ReceiveLoop
from peerchat.transport import Datagram

PEER = ("10.0.0.7", 6666)


class ScriptedTransport:
    """Hands out the scripted items in order; exceptions are raised, then it reports closed."""

    def __init__(self, *items):
        self.items = list(items)
        self.lock = threading.Lock()

    def receive(self):
        with self.lock:
            item = self.items.pop(0) if self.items else TransportClosed("transport closed")
        if isinstance(item, Exception):
            raise item
        return item


def _datagram(now, sender="bob", room="lobby", text="hi", lat=1.0, lon=2.0):
    return Datagram(PEER, codec.encode(sender, room, text, now, lat, lon))


def _run(loop):
    thread = threading.Thread(target=loop.run)
    thread.start()
    thread.join(5)
    assert not thread.is_alive()


def test_skips_empty_and_malformed_then_processes(recording_store, now):
    transport = ScriptedTransport(
        Datagram(PEER, b""),
        Datagram(PEER, b"{broken"),
        _datagram(now),
        TransportError("boom"),
    )
    loop = ReceiveLoop(transport, recording_store)
    _run(loop)

    assert recording_store.ops() == ["insert_chatroom", "upsert_peer", "append_message"]
    assert recording_store.texts() == ["hi"]
    assert not loop.healthy


def test_folds_datagram_in_order(recording_store, now):
    message = ReceiveLoop(ScriptedTransport(), recording_store).handle(_datagram(now, lat=None, lon=None))

    assert recording_store.calls == [
        ("insert_chatroom", "lobby"),
        ("upsert_peer", "bob", None, None, now),
        ("append_message", "lobby", "hi", now, None, None, "bob"),
    ]
    assert message.id == 1
    assert message.sender == "bob"
    assert str(message) == "hi"


def test_handle_ignores_bad_payloads(recording_store):
    loop = ReceiveLoop(ScriptedTransport(), recording_store)
    assert loop.handle(Datagram(PEER, b"")) is None
    assert loop.handle(Datagram(PEER, b'{"name": "bob"}')) is None
    assert recording_store.calls == []


def test_stop_before_run(recording_store, now):
    transport = ScriptedTransport(_datagram(now))
    loop = ReceiveLoop(transport, recording_store)
    loop.stop()
    _run(loop)
    assert recording_store.calls == []
    assert loop.healthy


def test_closed_under_running_loop_is_unhealthy(recording_store, now):
    loop = ReceiveLoop(ScriptedTransport(_datagram(now)), recording_store)
    _run(loop)
    assert recording_store.texts() == ["hi"]
    assert not loop.healthy


def test_closed_after_stop_stays_healthy(recording_store):
    class StopThenClose:
        def receive(self):
            loop.stop()
            raise TransportClosed("transport closed")

    loop = ReceiveLoop(StopThenClose(), recording_store)
    _run(loop)
    assert loop.healthy


def test_storage_error_ends_loop(recording_store, storage_error, now):
    recording_store.fail["upsert_peer"] = storage_error
    transport = ScriptedTransport(_datagram(now), _datagram(now, text="never"))
    loop = ReceiveLoop(transport, recording_store)
    _run(loop)

    assert not loop.healthy
    assert recording_store.ops() == ["insert_chatroom"]
    # the second datagram was never read
    assert len(transport.items) == 1


def test_listener_sees_each_message(recording_store, now):
    seen = []
    transport = ScriptedTransport(_datagram(now, text="one"), _datagram(now, text="two"))
    _run(ReceiveLoop(transport, recording_store, on_message=seen.append))
    assert [m.message_text for m in seen] == ["one", "two"]
    assert [m.id for m in seen] == [1, 2]


def test_listener_errors_do_not_stop_loop(recording_store, now):
    def explode(message):
        raise RuntimeError("listener bug")

    transport = ScriptedTransport(_datagram(now, text="one"), _datagram(now, text="two"))
    _run(ReceiveLoop(transport, recording_store, on_message=explode))
    assert recording_store.texts() == ["one", "two"]


def test_join_without_start(recording_store):
    assert ReceiveLoop(ScriptedTransport(), recording_store).join(0) is True
