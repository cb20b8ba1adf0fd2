# relay.py
"""
ChatRelay owns the UDP transport and the two background loops.

    store = ChatStore.sqlite("messages.db").open()
    relay = ChatRelay(store, port=6666)
    relay.start()
    relay.send("10.0.0.7", "lobby", "hi", datetime.now(timezone.utc), 40.7, -74.0,
               completion=lambda result: print(result))
    ...
    relay.stop()

The relay never opens or closes the store; whoever built it does.
"""

import enum
import logging
import threading
from concurrent.futures import Future
from datetime import datetime
from typing import Callable, Optional

from peerchat import settings
from peerchat.errors import InactiveRelay
from peerchat.models import Message
from peerchat.receiver import ReceiveLoop
from peerchat.sender import SendResult, SendWorker
from peerchat.transport import UdpTransport

logger = logging.getLogger(__name__)

# How long stop() waits for the receive thread after closing the socket
STOP_TIMEOUT = 5.0


class RelayState(enum.Enum):
    CREATED = "created"
    RUNNING = "running"
    STOPPED = "stopped"


class ChatRelay:
    def __init__(self, store, port: Optional[int] = None, host: Optional[str] = None,
                 sender_name: Callable[[], str] = settings.get_sender_name,
                 ack_delay: Optional[float] = None,
                 on_message: Optional[Callable[[Message], None]] = None,
                 transport=None):
        self._store = store
        self._transport = transport or UdpTransport(
            settings.CHAT_PORT if port is None else port,
            settings.CHAT_HOST if host is None else host,
            peer_port=settings.CHAT_PORT,
        )
        self._sender_name = sender_name
        self._ack_delay = settings.CHAT_ACK_DELAY if ack_delay is None else ack_delay
        self._on_message = on_message
        self._state = RelayState.CREATED
        self._lock = threading.Lock()
        self._send_worker = None
        self._receive_loop = None

    @property
    def state(self) -> RelayState:
        return self._state

    @property
    def port(self) -> int:
        return self._transport.port

    @property
    def receiver_healthy(self) -> bool:
        return self._receive_loop is not None and self._receive_loop.healthy

    @property
    def receiver_alive(self) -> bool:
        return self._receive_loop is not None and self._receive_loop.alive

    def start(self) -> "ChatRelay":
        with self._lock:
            if self._state is not RelayState.CREATED:
                raise InactiveRelay(f"cannot start a relay that is {self._state.value}")
            self._transport.open()
            self._send_worker = SendWorker(self._transport, self._store, self._sender_name, self._ack_delay)
            self._receive_loop = ReceiveLoop(self._transport, self._store, self._on_message)
            self._send_worker.start()
            self._receive_loop.start()
            self._state = RelayState.RUNNING
        logger.info("Chat relay running on port %d", self.port)
        return self

    def stop(self, timeout: float = STOP_TIMEOUT) -> None:
        """
        Stop both loops and close the socket. Queued sends are reported FAILED
        without waiting; the receive thread is given `timeout` seconds to exit.
        """
        with self._lock:
            if self._state is not RelayState.RUNNING:
                self._state = RelayState.STOPPED
                return
            self._state = RelayState.STOPPED
            discarded = self._send_worker.stop()
            self._receive_loop.stop()
            # closing the socket is what unblocks the receive wait
            self._transport.close()

        # completions may call back into stop(); the lock is released by now
        self._send_worker.fail(discarded)
        if not self._receive_loop.join(timeout):
            logger.error("Receive loop still running %.1fs after stop", timeout)
        logger.info("Chat relay stopped")

    def send(self, destination: str, chatroom: str, text: str, timestamp: datetime,
             latitude: Optional[float], longitude: Optional[float],
             completion: Optional[Callable[[SendResult], None]] = None) -> Future:
        """
        Queue a message for `destination` ('host' or 'host:port').

        Returns at once. The outcome arrives exactly once, through the returned
        Future and through `completion` if given, on the send worker's thread.
        """
        if self._state is not RelayState.RUNNING:
            raise InactiveRelay(f"relay is {self._state.value}")
        return self._send_worker.submit(destination, chatroom, text, timestamp, latitude, longitude, completion)

    def __enter__(self):
        return self.start()

    def __exit__(self, *exc):
        self.stop()
