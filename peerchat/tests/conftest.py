"""Shared test fixtures."""

import itertools
import socket
import threading
import time
from datetime import datetime, timezone

import pytest

from peerchat.errors import StorageError
from peerchat.relay import ChatRelay
from peerchat.store import ChatStore
from peerchat.transport import UdpTransport


class RecordingStore:
    """
    In-memory gateway that logs every call, in order, to `calls`.

    Chatrooms are idempotent and peers are upserted, like ChatStore. Set
    `fail[op] = exc` to make an operation raise, or `gate[op] = Event()` to
    make it block until the event is set.
    """

    def __init__(self):
        self.lock = threading.Lock()
        self.calls = []
        self.chatrooms = []
        self.peers = {}
        self.messages = []
        self.fail = {}
        self.gate = {}
        self._ids = itertools.count(1)

    def _enter(self, op, *args):
        gate = self.gate.get(op)
        if gate is not None:
            gate.wait(10)
        if op in self.fail:
            raise self.fail[op]
        with self.lock:
            self.calls.append((op,) + args)

    def insert_chatroom(self, name):
        self._enter("insert_chatroom", name)
        with self.lock:
            if name not in self.chatrooms:
                self.chatrooms.append(name)

    def upsert_peer(self, name, latitude, longitude, timestamp):
        self._enter("upsert_peer", name, latitude, longitude, timestamp)
        with self.lock:
            self.peers[name] = (latitude, longitude, timestamp)

    def append_message(self, chatroom, text, timestamp, latitude, longitude, sender):
        self._enter("append_message", chatroom, text, timestamp, latitude, longitude, sender)
        with self.lock:
            message_id = next(self._ids)
            self.messages.append((message_id, chatroom, text, timestamp, latitude, longitude, sender))
            return message_id

    def record(self, *event):
        """Add a non-store event (e.g. a completion signal) to the same timeline."""
        with self.lock:
            self.calls.append(event)

    def ops(self):
        with self.lock:
            return [c[0] for c in self.calls]

    def texts(self):
        with self.lock:
            return [m[2] for m in self.messages]


def _wait_for(predicate, timeout=5.0, interval=0.01):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def wait_for():
    return _wait_for


@pytest.fixture
def now():
    return datetime(2024, 3, 14, 15, 9, 26, 535897, tzinfo=timezone.utc)


@pytest.fixture
def recording_store():
    return RecordingStore()


@pytest.fixture
def sqlite_store(tmp_path):
    store = ChatStore.sqlite(str(tmp_path / "messages.db")).open()
    yield store
    store.close()


@pytest.fixture
def loopback():
    """Factory for transports bound to an ephemeral port on 127.0.0.1."""
    opened = []

    def make(**kw):
        t = UdpTransport(0, "127.0.0.1", **kw).open()
        opened.append(t)
        return t

    yield make
    for t in opened:
        t.close()


@pytest.fixture
def sink():
    """A plain UDP socket to send to; yields (socket, 'host:port')."""
    s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    s.bind(("127.0.0.1", 0))
    s.settimeout(5)
    yield s, f"127.0.0.1:{s.getsockname()[1]}"
    s.close()


@pytest.fixture
def make_relay():
    """Factory for relays on an ephemeral loopback port; all are stopped at teardown."""
    relays = []

    def make(store, name="alice", **kw):
        kw.setdefault("ack_delay", 0)
        relay = ChatRelay(store, port=0, host="127.0.0.1", sender_name=lambda: name, **kw)
        relays.append(relay)
        return relay

    yield make
    for relay in relays:
        relay.stop()


@pytest.fixture
def storage_error():
    return StorageError("disk full")
