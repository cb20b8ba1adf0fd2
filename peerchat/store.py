# store.py
"""
Persistence gateway shared by the relay and whatever renders the chat.

Every call opens its own connection and closes it before returning, so the
send worker and the receive loop can use one ChatStore from their own
threads. The peer upsert is a single INSERT ... ON CONFLICT/ON DUPLICATE KEY
statement, which leaves the existence check to the database.
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import List, Optional

from Crypto.Hash import SHA256

from peerchat import db, settings
from peerchat.codec import parse_timestamp, serialize_timestamp
from peerchat.errors import StorageError
from peerchat.models import Chatroom, Message, Peer

logger = logging.getLogger(__name__)

MESSAGE_COLUMNS = "id, chatroom, message_text, ts, latitude, longitude, sender"


def message_digest(sender: str, chatroom: str, timestamp: datetime, text: str) -> str:
    """Stable id of a message's content; retransmitted datagrams share it."""
    base = "|".join((sender, chatroom, serialize_timestamp(timestamp), text)).encode()
    return SHA256.new(base).hexdigest()


def _message(row) -> Message:
    id_, chatroom, text, ts, lat, lon, sender = row
    return Message(id=id_, chatroom=chatroom, message_text=text, timestamp=parse_timestamp(ts),
                   latitude=lat, longitude=lon, sender=sender)


def _peer(row) -> Peer:
    id_, name, lat, lon, last_seen = row
    return Peer(id=id_, name=name, latitude=lat, longitude=lon,
                last_seen=parse_timestamp(last_seen) if last_seen else None)


class ChatStore:
    def __init__(self, connect, dialect: str = db.SQLITE, prepare=None):
        """
        connect: zero-argument callable returning a DB-API connection
        dialect: db.SQLITE or db.MYSQL
        prepare: optional callable run once by open() before the schema (e.g. create the MySQL database)
        """
        if dialect not in db.DIALECTS:
            raise ValueError(f"unknown dialect {dialect!r}")
        self._connect = connect
        self.dialect = dialect
        self._prepare = prepare
        self._open = False

    @classmethod
    def sqlite(cls, path: str) -> "ChatStore":
        return cls(db.sqlite_connector(path), db.SQLITE)

    @classmethod
    def mysql(cls) -> "ChatStore":
        return cls(db.mysql_conn, db.MYSQL, prepare=db.ensure_database)

    @classmethod
    def from_settings(cls) -> "ChatStore":
        if settings.DB_BACKEND == db.MYSQL:
            return cls.mysql()
        if settings.DB_BACKEND == db.SQLITE:
            return cls.sqlite(settings.SQLITE_PATH)
        raise ValueError(f"DB_BACKEND must be one of {db.DIALECTS}, got {settings.DB_BACKEND!r}")

    # ---------------------------- LIFECYCLE ----------------------------
    def open(self) -> "ChatStore":
        if self._prepare is not None:
            try:
                self._prepare()
            except db.DB_ERRORS as e:
                raise StorageError(f"cannot prepare {self.dialect} database: {e}") from e
        self._open = True
        try:
            with self._cursor() as c:
                db.create_schema(c, self.dialect)
        except StorageError:
            self._open = False
            raise
        logger.info("Chat store open (%s)", self.dialect)
        return self

    def close(self) -> None:
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    def __enter__(self):
        return self.open()

    def __exit__(self, *exc):
        self.close()

    @contextmanager
    def _cursor(self, transaction: bool = False):
        if not self._open:
            raise StorageError("store is closed")
        try:
            conn = self._connect()
        except db.DB_ERRORS as e:
            raise StorageError(f"cannot connect to {self.dialect} database: {e}") from e
        try:
            begin = getattr(conn, "begin", None)
            if transaction and begin is not None:
                begin()
            c = conn.cursor()
            yield c
            conn.commit()
        except db.DB_ERRORS as e:
            self._rollback(conn)
            raise StorageError(f"{self.dialect} error: {e}") from e
        except BaseException:
            self._rollback(conn)
            raise
        finally:
            conn.close()

    @staticmethod
    def _rollback(conn) -> None:
        try:
            conn.rollback()
        except db.DB_ERRORS:
            logger.debug("Rollback failed", exc_info=True)

    def _q(self, sql: str) -> str:
        return db.q(sql, self.dialect)

    # ---------------------------- WRITES ----------------------------
    def insert_chatroom(self, name: str) -> None:
        """Create the chatroom unless it already exists."""
        with self._cursor() as c:
            c.execute(self._q(f"{db.insert_ignore(self.dialect)} chatrooms (name) VALUES (?)"), (name,))

    def upsert_peer(self, name: str, latitude: Optional[float], longitude: Optional[float],
                    timestamp: Optional[datetime]) -> None:
        """Insert the peer, or refresh location and last-seen if the name is known."""
        last_seen = serialize_timestamp(timestamp) if timestamp is not None else None
        with self._cursor() as c:
            c.execute(self._q(db.upsert_peer_sql(self.dialect)), (name, latitude, longitude, last_seen))

    def append_message(self, chatroom: str, text: str, timestamp: datetime,
                       latitude: Optional[float], longitude: Optional[float], sender: str) -> int:
        """
        Insert one message and return its id.

        The sender gets a bare peer row first if it has none (the local user on
        the send path), so the foreign key always holds. An existing peer row
        is left untouched.
        """
        digest = message_digest(sender, chatroom, timestamp, text)
        with self._cursor(transaction=True) as c:
            c.execute(self._q(f"{db.insert_ignore(self.dialect)} peers (name) VALUES (?)"), (sender,))
            c.execute(self._q("""
                INSERT INTO messages (chatroom, message_text, ts, latitude, longitude, sender, digest)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """), (chatroom, text, serialize_timestamp(timestamp), latitude, longitude, sender, digest))
            return c.lastrowid

    def delete_peer(self, name: str) -> bool:
        """Remove a peer; their messages go with them."""
        with self._cursor() as c:
            c.execute(self._q("DELETE FROM peers WHERE name = ?"), (name,))
            return c.rowcount > 0

    def reset(self) -> None:
        """Drop and recreate every table."""
        with self._cursor() as c:
            db.drop_tables(c, self.dialect)
            db.create_schema(c, self.dialect)

    # ---------------------------- QUERIES ----------------------------
    def fetch_all_messages(self, chatroom: str, collapse_duplicates: bool = False) -> List[Message]:
        """Messages of one chatroom, oldest first. collapse_duplicates keeps the first copy of each digest."""
        sql = f"SELECT {MESSAGE_COLUMNS} FROM messages WHERE chatroom = ?"
        params = [chatroom]
        if collapse_duplicates:
            sql += " AND id IN (SELECT MIN(id) FROM messages WHERE chatroom = ? GROUP BY digest)"
            params.append(chatroom)
        with self._cursor() as c:
            c.execute(self._q(sql + " ORDER BY id ASC"), params)
            return [_message(r) for r in (c.fetchall() or [])]

    def fetch_messages_from_peer(self, name: str) -> List[Message]:
        with self._cursor() as c:
            c.execute(self._q(f"SELECT {MESSAGE_COLUMNS} FROM messages WHERE sender = ? ORDER BY id ASC"), (name,))
            return [_message(r) for r in (c.fetchall() or [])]

    def fetch_all_peers(self) -> List[Peer]:
        with self._cursor() as c:
            c.execute("SELECT id, name, latitude, longitude, last_seen FROM peers ORDER BY name")
            return [_peer(r) for r in (c.fetchall() or [])]

    def get_peer(self, name: str) -> Optional[Peer]:
        with self._cursor() as c:
            c.execute(self._q("SELECT id, name, latitude, longitude, last_seen FROM peers WHERE name = ?"), (name,))
            row = c.fetchone()
        return _peer(row) if row else None

    def fetch_chatrooms(self) -> List[Chatroom]:
        with self._cursor() as c:
            c.execute("SELECT id, name FROM chatrooms ORDER BY name")
            return [Chatroom(id=id_, name=name) for id_, name in (c.fetchall() or [])]
