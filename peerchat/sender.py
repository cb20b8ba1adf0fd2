# sender.py
"""
Send worker: one background thread draining a FIFO queue of outgoing
messages. Each request is stored locally, encoded, and written to the
transport; its Future is then resolved DELIVERED or FAILED.
"""

import enum
import logging
import queue
import threading
from concurrent.futures import Future, InvalidStateError
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from peerchat import codec
from peerchat.errors import InactiveRelay, StorageError, TransportError

logger = logging.getLogger(__name__)

SEND_TAG = "ChatSendThread"


class SendResult(enum.Enum):
    DELIVERED = "delivered"
    FAILED = "failed"


@dataclass
class SendRequest:
    destination: str
    chatroom: str
    text: str
    timestamp: datetime
    latitude: Optional[float]
    longitude: Optional[float]
    future: Future


_STOP = object()


def attach_completion(future: Future, completion: Callable[[SendResult], None]) -> None:
    """Call `completion` once with the outcome, whatever thread resolves the future."""
    def done(f):
        completion(SendResult.FAILED if f.cancelled() else f.result())
    future.add_done_callback(done)


class SendWorker:
    def __init__(self, transport, store, sender_name: Callable[[], str], ack_delay: float = 0.0):
        self._transport = transport
        self._store = store
        self._sender_name = sender_name
        self._ack_delay = ack_delay
        self._queue = queue.Queue()
        self._lock = threading.Lock()
        self._closed = False
        self._stopping = threading.Event()
        self._thread = None

    def start(self) -> None:
        self._thread = threading.Thread(target=self._run, name=SEND_TAG, daemon=True)
        self._thread.start()

    def submit(self, destination: str, chatroom: str, text: str, timestamp: datetime,
               latitude: Optional[float], longitude: Optional[float],
               completion: Optional[Callable[[SendResult], None]] = None) -> Future:
        future = Future()
        if completion is not None:
            attach_completion(future, completion)
        request = SendRequest(destination, chatroom, text, timestamp, latitude, longitude, future)
        # the lock keeps a submit from slipping in behind stop()'s drain
        with self._lock:
            if self._closed:
                raise InactiveRelay("send worker is stopped")
            self._queue.put(request)
        logger.debug("Queued message for %s in %r", destination, chatroom)
        return future

    def stop(self) -> List[SendRequest]:
        """
        Refuse new work and tell the thread to exit. Does not wait.

        Returns the requests that were still queued. Pass them to fail()
        while holding no locks: resolving them runs their completions.
        """
        with self._lock:
            if self._closed:
                return []
            self._closed = True
            self._stopping.set()
            discarded = []
            while True:
                try:
                    item = self._queue.get_nowait()
                except queue.Empty:
                    break
                if item is not _STOP:
                    discarded.append(item)
            self._queue.put(_STOP)
        return discarded

    def fail(self, requests: List[SendRequest]) -> None:
        for request in requests:
            self._resolve(request, SendResult.FAILED)
        if requests:
            logger.warning("Relay stopped with %d unsent message(s); reported as failed", len(requests))

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                break
            # a caller may have cancelled the future while it sat in the queue
            if not item.future.set_running_or_notify_cancel():
                logger.debug("Skipping cancelled send to %s", item.destination)
                continue
            self._resolve(item, self._process(item))
        logger.debug("Send worker exiting")

    def _process(self, request: SendRequest) -> SendResult:
        try:
            sender = self._sender_name()

            # Stored before transmission: visible locally even if the network write fails
            self._store.insert_chatroom(request.chatroom)
            self._store.append_message(request.chatroom, request.text, request.timestamp,
                                       request.latitude, request.longitude, sender)

            payload = codec.encode(sender, request.chatroom, request.text, request.timestamp,
                                   request.latitude, request.longitude)
            logger.debug("Sending data: %s", payload)
            self._transport.send(request.destination, payload)

        except TransportError as e:
            logger.warning("Send to %s failed: %s", request.destination, e)
            return SendResult.FAILED
        except StorageError as e:
            logger.warning("Could not store outgoing message for %s: %s", request.destination, e)
            return SendResult.FAILED
        except Exception:
            logger.exception("Unexpected error sending to %s", request.destination)
            return SendResult.FAILED

        if self._ack_delay > 0:
            # cut short by stop(); the datagram is already out
            self._stopping.wait(self._ack_delay)
        return SendResult.DELIVERED

    @staticmethod
    def _resolve(request: SendRequest, result: SendResult) -> None:
        try:
            request.future.set_result(result)
        except InvalidStateError:
            # cancelled by the caller; its completion already fired
            logger.debug("Send to %s was cancelled", request.destination)
