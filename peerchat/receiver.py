# receiver.py
"""
Receive loop: blocks on the transport, decodes each datagram and folds it
into the store (chatroom, then peer, then message).

Empty or malformed datagrams are logged and skipped. Anything else that goes
wrong (socket or database) marks the loop unhealthy and ends it; nothing
restarts it automatically.
"""

import logging
import threading
from typing import Callable, Optional

from peerchat import codec
from peerchat.errors import DecodeError, TransportClosed
from peerchat.models import Message
from peerchat.transport import Datagram

logger = logging.getLogger(__name__)

RECEIVE_TAG = "ChatReceiveThread"


class ReceiveLoop:
    def __init__(self, transport, store, on_message: Optional[Callable[[Message], None]] = None):
        self._transport = transport
        self._store = store
        self._on_message = on_message
        self._finished = threading.Event()
        self._healthy = True
        self._thread = None

    @property
    def healthy(self) -> bool:
        return self._healthy

    @property
    def alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        self._thread = threading.Thread(target=self.run, name=RECEIVE_TAG, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Ask the loop to finish. The caller must also close the transport to end a blocked wait."""
        self._finished.set()

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the loop thread; True once it has exited."""
        if self._thread is None:
            return True
        if self._thread is threading.current_thread():
            # stop() from a listener; the loop exits once the listener returns
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def run(self) -> None:
        while not self._finished.is_set() and self._healthy:
            try:
                datagram = self._transport.receive()
                self.handle(datagram)
            except TransportClosed:
                if not self._finished.is_set():
                    logger.error("Transport closed under a running receive loop")
                    self._healthy = False
                break
            except Exception:
                logger.exception("Problems receiving packet.")
                self._healthy = False
        logger.debug("Receive loop exiting (healthy=%s)", self._healthy)

    def handle(self, datagram: Datagram) -> Optional[Message]:
        """
        Fold one datagram into the store and return the stored message.
        Returns None, touching nothing, when the payload is empty or malformed.
        Storage errors propagate.
        """
        if not datagram.data:
            # some network stacks hand over empty datagrams; not fatal
            logger.debug("....missing data, skipping....")
            return None

        logger.debug("Message received from %s: %s", datagram.address, datagram.data)
        try:
            envelope = codec.decode(datagram.data)
        except DecodeError as e:
            logger.warning("Skipping malformed datagram from %s: %s", datagram.address, e)
            return None

        self._store.insert_chatroom(envelope.chatroom)
        self._store.upsert_peer(envelope.sender, envelope.latitude, envelope.longitude, envelope.timestamp)
        message_id = self._store.append_message(envelope.chatroom, envelope.text, envelope.timestamp,
                                                envelope.latitude, envelope.longitude, envelope.sender)

        message = Message(id=message_id, chatroom=envelope.chatroom, message_text=envelope.text,
                          timestamp=envelope.timestamp, latitude=envelope.latitude,
                          longitude=envelope.longitude, sender=envelope.sender)
        logger.debug("Stored message %s from %s in %r", message_id, envelope.sender, envelope.chatroom)
        self._notify(message)
        return message

    def _notify(self, message: Message) -> None:
        if self._on_message is None:
            return
        try:
            self._on_message(message)
        except Exception:
            logger.exception("on_message listener failed for message %s", message.id)
