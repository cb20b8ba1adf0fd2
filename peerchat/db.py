# db.py
"""
Connection helpers and schema for the chat store.

SQL elsewhere is written SQLite-style with '?' placeholders; q() rewrites it
for MySQL. Both backends get the same three tables: chatrooms, peers, messages.
"""

import sqlite3

import pymysql

from peerchat import settings
from peerchat.errors import StorageError

MYSQL = "mysql"
SQLITE = "sqlite"
DIALECTS = (MYSQL, SQLITE)

CONNECT_KW = dict(
    host=settings.DB_HOST,
    user=settings.DB_USER,
    password=settings.DB_PASSWORD,
    port=settings.DB_PORT,
    connect_timeout=10,
    autocommit=True,
    charset='utf8mb4',
)

# Driver exceptions the store translates into StorageError
DB_ERRORS = (pymysql.Error, sqlite3.Error)


def _connect_no_db():
    return pymysql.connect(**CONNECT_KW)


def _connect_with_db():
    return pymysql.connect(database=settings.DB_NAME, **CONNECT_KW)


def ensure_database():
    conn = _connect_no_db()
    try:
        c = conn.cursor()
        # backticks to avoid weird names
        c.execute(f"CREATE DATABASE IF NOT EXISTS `{settings.DB_NAME}` DEFAULT CHARACTER SET utf8mb4 COLLATE utf8mb4_unicode_ci")
        conn.commit()
    finally:
        conn.close()


def mysql_conn():
    return _connect_with_db()


def sqlite_connector(path: str):
    """Return a zero-argument factory opening `path` with foreign keys enforced."""
    def connect():
        conn = sqlite3.connect(path, timeout=10)
        conn.execute("PRAGMA foreign_keys = ON")
        return conn
    return connect


def q(sql: str, dialect: str = MYSQL) -> str:
    """Translate SQLite-style '?' placeholders to MySQL '%s'."""
    if dialect == MYSQL:
        return sql.replace("?", "%s")
    return sql


def insert_ignore(dialect: str) -> str:
    return "INSERT IGNORE INTO" if dialect == MYSQL else "INSERT OR IGNORE INTO"


def upsert_peer_sql(dialect: str) -> str:
    # One statement, so the existence check and the write are atomic in the database
    if dialect == MYSQL:
        return """
            INSERT INTO peers (name, latitude, longitude, last_seen)
            VALUES (?, ?, ?, ?)
            ON DUPLICATE KEY UPDATE latitude=VALUES(latitude),
                                    longitude=VALUES(longitude),
                                    last_seen=VALUES(last_seen)
        """
    return """
        INSERT INTO peers (name, latitude, longitude, last_seen)
        VALUES (?, ?, ?, ?)
        ON CONFLICT(name) DO UPDATE SET latitude=excluded.latitude,
                                        longitude=excluded.longitude,
                                        last_seen=excluded.last_seen
    """


TABLES_IN_ORDER = [
    # drop in dependency-friendly order
    "messages",
    "peers",
    "chatrooms",
]

# Timestamps are stored as ISO-8601 text (codec.serialize_timestamp); digest is
# the SHA-256 hex of sender|room|ts|text, shared by retransmitted copies.
CREATE_STMTS = {
    MYSQL: [
        """
        CREATE TABLE IF NOT EXISTS chatrooms (
            id   BIGINT AUTO_INCREMENT PRIMARY KEY,
            name VARCHAR(255) NOT NULL UNIQUE
        ) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4
        """,
        """
        CREATE TABLE IF NOT EXISTS peers (
            id        BIGINT AUTO_INCREMENT PRIMARY KEY,
            name      VARCHAR(255) NOT NULL UNIQUE,
            latitude  DOUBLE NULL,
            longitude DOUBLE NULL,
            last_seen VARCHAR(64) NULL
        ) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4
        """,
        """
        CREATE TABLE IF NOT EXISTS messages (
            id           BIGINT AUTO_INCREMENT PRIMARY KEY,
            chatroom     VARCHAR(255) NOT NULL,
            message_text TEXT NOT NULL,
            ts           VARCHAR(64) NOT NULL,
            latitude     DOUBLE NULL,
            longitude    DOUBLE NULL,
            sender       VARCHAR(255) NOT NULL,
            digest       CHAR(64) NOT NULL,
            INDEX idx_msg_sender (sender),
            INDEX idx_msg_room (chatroom),
            INDEX idx_msg_digest (digest),
            CONSTRAINT fk_msg_sender FOREIGN KEY (sender)
                REFERENCES peers (name) ON DELETE CASCADE
        ) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4
        """,
    ],
    SQLITE: [
        """
        CREATE TABLE IF NOT EXISTS chatrooms (
            id   INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL UNIQUE
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS peers (
            id        INTEGER PRIMARY KEY AUTOINCREMENT,
            name      TEXT NOT NULL UNIQUE,
            latitude  REAL,
            longitude REAL,
            last_seen TEXT
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS messages (
            id           INTEGER PRIMARY KEY AUTOINCREMENT,
            chatroom     TEXT NOT NULL,
            message_text TEXT NOT NULL,
            ts           TEXT NOT NULL,
            latitude     REAL,
            longitude    REAL,
            sender       TEXT NOT NULL REFERENCES peers (name) ON DELETE CASCADE,
            digest       TEXT NOT NULL
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_msg_sender ON messages (sender)",
        "CREATE INDEX IF NOT EXISTS idx_msg_room ON messages (chatroom)",
        "CREATE INDEX IF NOT EXISTS idx_msg_digest ON messages (digest)",
    ],
}


def _exec(cursor, sql, dialect):
    """Small helper so if something breaks, you see exactly what."""
    try:
        cursor.execute(sql)
    except DB_ERRORS as e:
        raise StorageError(f"{dialect} error on SQL:\n{sql}\n{e}") from e


def create_schema(cursor, dialect: str, dry_run: bool = False) -> list:
    """Run (or, when dry_run, only return) the CREATE statements for `dialect`."""
    stmts = [" ".join(sql.split()) for sql in CREATE_STMTS[dialect]]
    if not dry_run:
        for sql in CREATE_STMTS[dialect]:
            _exec(cursor, sql, dialect)
    return stmts


def drop_tables(cursor, dialect: str, dry_run: bool = False) -> list:
    stmts = [f"DROP TABLE IF EXISTS {t}" for t in TABLES_IN_ORDER]
    if not dry_run:
        for sql in stmts:
            _exec(cursor, sql, dialect)
    return stmts
