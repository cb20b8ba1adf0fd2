# transport.py
"""
UDP endpoint shared by the send worker (writer) and the receive loop (reader).

Python sockets tolerate sendto() and recvfrom() from two threads at once, so
no locking happens here. Closing the transport is the only way to cancel a
blocked receive(): close() pokes an internal socket pair that receive() is
selecting on, then closes the UDP socket.
"""

import logging
import select
import socket
import threading
from typing import NamedTuple, Optional, Tuple

from peerchat.errors import TransportClosed, TransportError

logger = logging.getLogger(__name__)

# Largest payload a UDP/IPv4 datagram can carry
MAX_DATAGRAM = 65507


class Datagram(NamedTuple):
    address: Optional[Tuple[str, int]]
    data: bytes


class UdpTransport:
    def __init__(self, port: int, host: str = "0.0.0.0", peer_port: Optional[int] = None,
                 bufsize: int = MAX_DATAGRAM):
        """
        port: local port to bind (0 = any free port)
        peer_port: port assumed for destinations that name only a host; defaults to the bound port
        """
        self.host = host
        self.default_port = port
        self.peer_port = peer_port
        self.bufsize = bufsize
        self._sock = None
        self._bound_port = None
        self._wake_r = None
        self._wake_w = None
        self._closed = threading.Event()
        self._lock = threading.Lock()
        self._waiters = 0

    @property
    def port(self) -> int:
        """Port actually bound (differs from the configured one when that was 0)."""
        if self._bound_port is None:
            return self.default_port
        return self._bound_port

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def open(self) -> "UdpTransport":
        if self._sock is not None or self.closed:
            raise TransportError("transport already opened")
        s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            s.bind((self.host, self.default_port))
        except OSError as e:
            s.close()
            raise TransportError(f"cannot bind {self.host}:{self.default_port}: {e}") from e
        self._sock = s
        self._bound_port = s.getsockname()[1]
        self._wake_r, self._wake_w = socket.socketpair()
        logger.info("UDP transport bound on %s:%d", self.host, self.port)
        return self

    def resolve(self, address: str) -> Tuple[str, int]:
        """Turn 'host' or 'host:port' into a socket address."""
        host, sep, port_text = address.rpartition(":")
        if not sep:
            host, port_text = address, ""
        if not host:
            raise TransportError(f"no host in destination {address!r}")

        if port_text:
            try:
                port = int(port_text)
            except ValueError:
                raise TransportError(f"bad port in destination {address!r}") from None
        else:
            port = self.peer_port or self.port
        if not 0 < port < 65536:
            raise TransportError(f"port out of range in destination {address!r}")

        try:
            infos = socket.getaddrinfo(host, port, socket.AF_INET, socket.SOCK_DGRAM)
        except (socket.gaierror, UnicodeError) as e:
            raise TransportError(f"unknown host {host!r}: {e}") from e
        if not infos:
            raise TransportError(f"unknown host {host!r}")
        return infos[0][4][:2]

    def send(self, address: str, payload: bytes) -> None:
        if self._sock is None or self.closed:
            raise TransportError("transport is not open")
        target = self.resolve(address)
        try:
            self._sock.sendto(payload, target)
        except OSError as e:
            raise TransportError(f"send to {target[0]}:{target[1]} failed: {e}") from e
        logger.debug("Sent %d bytes to %s:%d", len(payload), *target)

    def receive(self) -> Datagram:
        """Block until a datagram arrives; raises TransportClosed once close() is called."""
        if self._sock is None:
            raise TransportError("transport is not open")
        with self._lock:
            if self.closed:
                raise TransportClosed("transport closed")
            self._waiters += 1
        try:
            readable, _, _ = select.select([self._sock, self._wake_r], [], [])
            if self.closed or self._wake_r in readable:
                raise TransportClosed("transport closed")
            data, addr = self._sock.recvfrom(self.bufsize)
        except (OSError, ValueError) as e:
            # select()/recvfrom() on a socket closed underneath us
            if self.closed:
                raise TransportClosed("transport closed") from e
            if isinstance(e, OSError):
                raise TransportError(f"receive failed: {e}") from e
            raise
        finally:
            with self._lock:
                self._waiters -= 1
                release = self.closed and self._waiters == 0
            if release:
                self._close_wakeup()
        return Datagram(address=addr, data=data)

    def close(self) -> None:
        with self._lock:
            if self.closed:
                return
            self._closed.set()
            if self._wake_w is not None:
                try:
                    self._wake_w.send(b"\0")
                except OSError:
                    logger.debug("Wake-up write failed; socket close will still end the wait")
            if self._sock is not None:
                self._sock.close()
            # a receiver still inside select() needs the pair; it releases it on the way out
            release = self._waiters == 0
        if release:
            self._close_wakeup()
        logger.info("UDP transport closed")

    def _close_wakeup(self) -> None:
        for s in (self._wake_w, self._wake_r):
            if s is not None:
                s.close()

    def __enter__(self):
        return self.open()

    def __exit__(self, *exc):
        self.close()
