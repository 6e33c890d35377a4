"""SQLite storage for user traffic counters and limits."""

from __future__ import annotations

import sqlite3
import threading
from dataclasses import dataclass
from typing import Callable, Tuple

from tunnelkit.statistics import UserMetadata

NAME = "sqlite"

_SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    hash TEXT PRIMARY KEY,
    sent TEXT,
    recv TEXT,
    max_ip_num INTEGER,
    send_limit INTEGER,
    recv_limit INTEGER
)
"""


def _encode(value: int) -> bytes:
    return value.to_bytes(8, "big")


def _decode(raw: bytes) -> int:
    if len(raw) != 8:
        raise ValueError(f"traffic counter must be 8 bytes, got {len(raw)}")
    return int.from_bytes(raw, "big")


@dataclass
class StoredUser:
    """A user row; traffic counters are kept as 8-byte big-endian values."""

    hash: str
    sent: int = 0
    recv: int = 0
    max_ip_num: int = 0
    send_limit: int = 0
    recv_limit: int = 0

    @classmethod
    def from_bytes(cls, hash, sent, recv, max_ip_num, send_limit, recv_limit) -> "StoredUser":
        return cls(
            hash=hash,
            sent=_decode(bytes(sent)),
            recv=_decode(bytes(recv)),
            max_ip_num=max_ip_num or 0,
            send_limit=send_limit or 0,
            recv_limit=recv_limit or 0,
        )

    def traffic(self) -> Tuple[int, int]:
        return self.sent, self.recv

    def speed_limit(self) -> Tuple[int, int]:
        return self.send_limit, self.recv_limit

    def ip_limit(self) -> int:
        return self.max_ip_num


class SqlitePersistencer:
    """Persists users in an SQLite database file."""

    def __init__(self, path: str) -> None:
        self._db = sqlite3.connect(path, check_same_thread=False)
        self._lock = threading.Lock()
        with self._lock, self._db:
            self._db.execute(_SCHEMA)

    def __enter__(self) -> "SqlitePersistencer":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def save_user(self, user: UserMetadata) -> None:
        """Insert the user or overwrite every column of an existing row."""
        if user is None:
            raise ValueError("user is nil")
        sent, recv = user.traffic()
        send_limit, recv_limit = user.speed_limit()
        with self._lock, self._db:
            self._db.execute(
                "INSERT INTO users (hash, sent, recv, max_ip_num, send_limit, recv_limit) "
                "VALUES (?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(hash) DO UPDATE SET sent=excluded.sent, recv=excluded.recv, "
                "max_ip_num=excluded.max_ip_num, send_limit=excluded.send_limit, "
                "recv_limit=excluded.recv_limit",
                (user.hash, _encode(sent), _encode(recv), user.ip_limit(), send_limit, recv_limit),
            )

    def load_user(self, hash: str) -> StoredUser:
        """Return the stored user; KeyError if there is none."""
        with self._lock:
            row = self._db.execute(
                "SELECT hash, sent, recv, max_ip_num, send_limit, recv_limit "
                "FROM users WHERE hash = ? LIMIT 1",
                (hash,),
            ).fetchone()
        if row is None:
            raise KeyError(hash)
        return StoredUser.from_bytes(*row)

    def delete_user(self, hash: str) -> None:
        with self._lock, self._db:
            self._db.execute("DELETE FROM users WHERE hash = ?", (hash,))

    def list_user(self, visit: Callable[[str, StoredUser], bool]) -> None:
        """Call visit for each stored user until it returns a false value."""
        with self._lock:
            rows = self._db.execute(
                "SELECT hash, sent, recv, max_ip_num, send_limit, recv_limit FROM users"
            ).fetchall()
        for row in rows:
            user = StoredUser.from_bytes(*row)
            if not visit(user.hash, user):
                break

    def update_user_traffic(self, hash: str, sent: int, recv: int) -> None:
        with self._lock, self._db:
            self._db.execute(
                "UPDATE users SET sent = ?, recv = ? WHERE hash = ?",
                (_encode(sent), _encode(recv), hash),
            )

    def close(self) -> None:
        with self._lock:
            self._db.close()