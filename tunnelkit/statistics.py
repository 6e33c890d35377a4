"""Interfaces for user accounting and a registry of authenticator drivers."""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, Hashable, List, Optional, Protocol, Tuple, runtime_checkable

logger = logging.getLogger(__name__)

NAME = "STATISTICS"


class AuthError(Exception):
    """Raised for authenticator and user-management failures."""


@runtime_checkable
class UserMetadata(Protocol):
    """What is persisted about a user."""

    hash: str

    def traffic(self) -> Tuple[int, int]: ...

    def speed_limit(self) -> Tuple[int, int]: ...

    def ip_limit(self) -> int: ...


@runtime_checkable
class Persistencer(Protocol):
    """Storage for user metadata."""

    def save_user(self, user: UserMetadata) -> None: ...

    def load_user(self, hash: str) -> UserMetadata: ...

    def delete_user(self, hash: str) -> None: ...

    def list_user(self, visit: Callable[[str, UserMetadata], bool]) -> None: ...

    def update_user_traffic(self, hash: str, sent: int, recv: int) -> None: ...


@runtime_checkable
class Authenticator(Protocol):
    """Checks user hashes and manages their limits and traffic."""

    def auth_user(self, hash: str) -> Tuple[bool, Optional[Any]]: ...

    def add_user(self, hash: str) -> None: ...

    def del_user(self, hash: str) -> None: ...

    def set_user_traffic(self, hash: str, sent: int, recv: int) -> None: ...

    def set_user_speed_limit(self, hash: str, send: int, recv: int) -> None: ...

    def set_user_ip_limit(self, hash: str, limit: int) -> None: ...

    def list_users(self) -> List[Any]: ...

    def close(self) -> None: ...


Creator = Callable[[Hashable], Authenticator]

_lock = threading.Lock()
_creators: Dict[str, Creator] = {}
_created: Dict[Hashable, Authenticator] = {}


def register_authenticator_creator(name: str, creator: Creator) -> None:
    """Register a driver factory under a name (looked up in upper case)."""
    _creators[name] = creator


def new_authenticator(key: Hashable, name: str) -> Authenticator:
    """Return the authenticator for key, creating it with the named driver once."""
    with _lock:
        existing = _created.get(key)
        if existing is not None:
            logger.debug("authenticator has been created: %s", name)
            return existing
        creator = _creators.get(name.upper())
        if creator is None:
            raise AuthError(f"auth driver name {name} not found")
        auth = creator(key)
        _created[key] = auth
        return auth