"""In-memory user accounting: traffic counters, speed limits and IP limits."""

from __future__ import annotations

import hashlib
import logging
import threading
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from tunnelkit.sqlite_store import SqlitePersistencer
from tunnelkit.statistics import AuthError, Persistencer, UserMetadata, register_authenticator_creator

logger = logging.getLogger(__name__)

NAME = "MEMORY"

_U64 = 1 << 64


@dataclass(frozen=True)
class MemoryConfig:
    """Passwords to accept, and an optional SQLite file to persist users in."""

    passwords: Tuple[str, ...] = ()
    sqlite: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "passwords", tuple(self.passwords))


def sha224_hex(password: str) -> str:
    """Return the hex SHA-224 digest that identifies a user."""
    return hashlib.sha224(password.encode()).hexdigest()


class RateLimiter:
    """A token bucket refilled at `limit` tokens per second, holding up to `burst`."""

    def __init__(self, limit: float, burst: int, cancelled: Optional[threading.Event] = None) -> None:
        if limit <= 0:
            raise ValueError("rate limit must be positive")
        self._limit = float(limit)
        self._burst = int(burst)
        self._tokens = float(burst)
        self._last = time.monotonic()
        self._lock = threading.Lock()
        self._cancelled = cancelled if cancelled is not None else threading.Event()

    @property
    def limit(self) -> float:
        return self._limit

    @property
    def burst(self) -> int:
        return self._burst

    def wait(self, n: int) -> bool:
        """Block until n tokens are available.

        Returns False if the limiter was cancelled while waiting; raises
        ValueError if n exceeds the burst size.
        """
        if n > self._burst:
            raise ValueError(f"rate: Wait(n={n}) exceeds limiter's burst {self._burst}")
        if self._cancelled.is_set():
            return False
        with self._lock:
            now = time.monotonic()
            self._tokens = min(float(self._burst), self._tokens + (now - self._last) * self._limit)
            self._last = now
            self._tokens -= n
            delay = -self._tokens / self._limit if self._tokens < 0 else 0.0
        if delay <= 0:
            return True
        if self._cancelled.wait(delay):
            with self._lock:
                self._tokens += n
            return False
        return True


class User:
    """A user's live traffic counters, speed limiters and connected IPs."""

    def __init__(self, hash: str, *, speed_interval: float = 1.0, traffic_interval: float = 10.0) -> None:
        self.hash = hash
        self._speed_interval = speed_interval
        self._traffic_interval = traffic_interval
        self._counter_lock = threading.Lock()
        self._sent = 0
        self._recv = 0
        self._last_sent = 0
        self._last_recv = 0
        self._send_speed = 0
        self._recv_speed = 0
        self._ip_lock = threading.Lock()
        self._ips: set = set()
        self._max_ip_num = 0
        self._limiter_lock = threading.Lock()
        self._send_limiter: Optional[RateLimiter] = None
        self._recv_limiter: Optional[RateLimiter] = None
        self._stopped = threading.Event()

    def __repr__(self) -> str:
        return f"User(hash={self.hash!r})"

    def _start(self, persistencer: Optional[Persistencer]) -> None:
        threading.Thread(target=self._speed_loop, daemon=True).start()
        if persistencer is not None:
            threading.Thread(target=self._traffic_loop, args=(persistencer,), daemon=True).start()

    def _stop(self) -> None:
        self._stopped.set()

    def close(self) -> None:
        """Reset the counters and stop background work and pending waits."""
        self.reset_traffic()
        self._stop()

    def add_ip(self, ip: str) -> bool:
        """Record a connecting IP; False if the IP limit would be exceeded."""
        if self._max_ip_num <= 0:
            return True
        with self._ip_lock:
            if ip in self._ips:
                return True
            if len(self._ips) + 1 > self._max_ip_num:
                return False
            self._ips.add(ip)
            return True

    def del_ip(self, ip: str) -> bool:
        """Forget a connected IP; False if it was not recorded."""
        if self._max_ip_num <= 0:
            return True
        with self._ip_lock:
            if ip not in self._ips:
                return False
            self._ips.discard(ip)
            return True

    def ip_count(self) -> int:
        with self._ip_lock:
            return len(self._ips)

    def _set_ip_limit(self, limit: int) -> None:
        self._max_ip_num = limit

    def ip_limit(self) -> int:
        return self._max_ip_num

    @staticmethod
    def _throttle(limiter: Optional[RateLimiter], amount: int) -> None:
        if limiter is not None and amount >= 0:
            try:
                limiter.wait(amount)
            except ValueError:
                pass

    def add_sent_traffic(self, sent: int) -> None:
        """Count sent bytes, waiting first if a send limit applies."""
        with self._limiter_lock:
            limiter = self._send_limiter
        self._throttle(limiter, sent)
        with self._counter_lock:
            self._sent = (self._sent + sent) % _U64

    def add_recv_traffic(self, recv: int) -> None:
        """Count received bytes, waiting first if a receive limit applies."""
        with self._limiter_lock:
            limiter = self._recv_limiter
        self._throttle(limiter, recv)
        with self._counter_lock:
            self._recv = (self._recv + recv) % _U64

    def set_speed_limit(self, send: int, recv: int) -> None:
        """Limit bytes per second in each direction; zero or less removes the limit."""
        with self._limiter_lock:
            self._send_limiter = RateLimiter(send, send * 2, self._stopped) if send > 0 else None
            self._recv_limiter = RateLimiter(recv, recv * 2, self._stopped) if recv > 0 else None

    def speed_limit(self) -> Tuple[int, int]:
        with self._limiter_lock:
            send = int(self._send_limiter.limit) if self._send_limiter is not None else 0
            recv = int(self._recv_limiter.limit) if self._recv_limiter is not None else 0
        return send, recv

    def _set_traffic(self, sent: int, recv: int) -> None:
        with self._counter_lock:
            self._sent = sent
            self._recv = recv

    def traffic(self) -> Tuple[int, int]:
        with self._counter_lock:
            return self._sent, self._recv

    def reset_traffic(self) -> Tuple[int, int]:
        """Zero the counters and return their previous values."""
        with self._counter_lock:
            sent, recv = self._sent, self._recv
            self._sent = self._recv = 0
            self._last_sent = self._last_recv = 0
        return sent, recv

    def speed(self) -> Tuple[int, int]:
        """Bytes sent and received during the last measuring interval."""
        with self._counter_lock:
            return self._send_speed, self._recv_speed

    def _update_speed(self) -> None:
        with self._counter_lock:
            self._send_speed = (self._sent - self._last_sent) % _U64
            self._recv_speed = (self._recv - self._last_recv) % _U64
            self._last_sent = self._sent
            self._last_recv = self._recv

    def _speed_loop(self) -> None:
        while not self._stopped.wait(self._speed_interval):
            self._update_speed()

    def _traffic_loop(self, persistencer: Persistencer) -> None:
        last = (0, 0)
        while not self._stopped.wait(self._traffic_interval):
            current = self.traffic()
            if current == last:
                continue
            logger.debug("Update %s traffic", self.hash)
            try:
                persistencer.update_user_traffic(self.hash, *current)
            except Exception as exc:  # background thread: report and retry later
                logger.debug("Update user %s traffic failed: %s", self.hash, exc)
                continue
            last = current


class MemoryAuthenticator:
    """Keeps users in memory, optionally mirroring them to a persistencer."""

    def __init__(
        self,
        persistencer: Optional[Persistencer] = None,
        *,
        owns_persistencer: bool = False,
        speed_interval: float = 1.0,
        traffic_interval: float = 10.0,
    ) -> None:
        self._users: Dict[str, User] = {}
        self._lock = threading.Lock()
        self._persistencer = persistencer
        self._owns_persistencer = owns_persistencer
        self._speed_interval = speed_interval
        self._traffic_interval = traffic_interval
        if persistencer is not None:
            self._load_users(persistencer)

    def __enter__(self) -> "MemoryAuthenticator":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _new_user(self, hash: str) -> User:
        return User(hash, speed_interval=self._speed_interval, traffic_interval=self._traffic_interval)

    def _load_users(self, persistencer: Persistencer) -> None:
        def visit(hash: str, stored: UserMetadata) -> bool:
            with self._lock:
                if hash in self._users:
                    logger.error("hash %s is already exist", hash)
                    return True
                user = self._new_user(hash)
                user._set_ip_limit(stored.ip_limit())
                user.set_speed_limit(*stored.speed_limit())
                user._set_traffic(*stored.traffic())
                user._start(persistencer)
                self._users[hash] = user
            return True

        try:
            persistencer.list_user(visit)
        except Exception as exc:
            logger.error("List user from persistencer: %s", exc)

    def _save(self, user: User) -> None:
        if self._persistencer is None:
            return
        try:
            self._persistencer.save_user(user)
        except Exception as exc:
            logger.error("Save user %s failed: %s", user.hash, exc)

    def _get(self, hash: str) -> User:
        with self._lock:
            user = self._users.get(hash)
        if user is None:
            raise AuthError(f"user {hash} not found")
        return user

    def auth_user(self, hash: str) -> Tuple[bool, Optional[User]]:
        with self._lock:
            user = self._users.get(hash)
        return user is not None, user

    def add_user(self, hash: str) -> None:
        with self._lock:
            if hash in self._users:
                raise AuthError(f"hash {hash} is already exist")
            user = self._new_user(hash)
            user._start(self._persistencer)
            self._users[hash] = user
        self._save(user)

    def del_user(self, hash: str) -> None:
        with self._lock:
            user = self._users.pop(hash, None)
        if user is None:
            raise AuthError(f"hash {hash} not found")
        user.close()
        if self._persistencer is not None:
            try:
                self._persistencer.delete_user(hash)
            except Exception as exc:
                logger.error("Delete user %s failed: %s", hash, exc)

    def list_users(self) -> List[User]:
        with self._lock:
            return list(self._users.values())

    def set_user_traffic(self, hash: str, sent: int, recv: int) -> None:
        user = self._get(hash)
        user._set_traffic(sent, recv)
        self._save(user)

    def set_user_speed_limit(self, hash: str, send: int, recv: int) -> None:
        user = self._get(hash)
        user.set_speed_limit(send, recv)
        self._save(user)

    def set_user_ip_limit(self, hash: str, limit: int) -> None:
        user = self._get(hash)
        user._set_ip_limit(limit)
        self._save(user)

    def close(self) -> None:
        """Stop every user's background work; close an owned persistencer."""
        for user in self.list_users():
            user._stop()
        if self._owns_persistencer and self._persistencer is not None:
            closer = getattr(self._persistencer, "close", None)
            if closer is not None:
                closer()


def _add_passwords(auth: MemoryAuthenticator, passwords: Sequence[str]) -> None:
    for password in passwords:
        try:
            auth.add_user(sha224_hex(password))
        except AuthError as exc:
            logger.debug("%s", exc)


def new_memory_authenticator(config: MemoryConfig) -> MemoryAuthenticator:
    """Create an authenticator from config, loading stored and configured users."""
    persistencer = SqlitePersistencer(config.sqlite) if config.sqlite else None
    auth = MemoryAuthenticator(persistencer, owns_persistencer=persistencer is not None)
    _add_passwords(auth, config.passwords)
    logger.debug("memory authenticator created")
    return auth


register_authenticator_creator(NAME, new_memory_authenticator)