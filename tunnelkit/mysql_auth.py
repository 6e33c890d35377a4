"""An authenticator that syncs quotas and traffic with a MySQL users table."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Optional

import pymysql

from tunnelkit.memory import MemoryAuthenticator, MemoryConfig, _add_passwords
from tunnelkit.sqlite_store import SqlitePersistencer
from tunnelkit.statistics import AuthError, Persistencer, register_authenticator_creator

logger = logging.getLogger(__name__)

NAME = "MYSQL"

_UPDATE_SQL = "UPDATE `users` SET `upload`=`upload`+%s, `download`=`download`+%s WHERE `password`=%s;"
_SELECT_SQL = "SELECT password,quota,download,upload FROM users"


@dataclass(frozen=True)
class MySQLConfig:
    """Connection settings and the check interval in seconds."""

    enabled: bool = False
    server_host: str = ""
    server_port: int = 3306
    database: str = ""
    username: str = ""
    password: str = ""
    check_rate: int = 30
    memory: MemoryConfig = field(default_factory=MemoryConfig)


def connect_database(config: MySQLConfig) -> Any:
    """Open a MySQL connection described by config."""
    try:
        return pymysql.connect(
            host=config.server_host,
            port=config.server_port,
            user=config.username,
            password=config.password,
            database=config.database,
            charset="utf8",
            autocommit=True,
        )
    except pymysql.MySQLError as exc:
        raise AuthError("Failed to connect to database server") from exc


class MySQLAuthenticator(MemoryAuthenticator):
    """A memory authenticator periodically reconciled with the database."""

    def __init__(
        self,
        db: Any,
        check_rate: float = 30,
        persistencer: Optional[Persistencer] = None,
        *,
        owns_persistencer: bool = False,
        speed_interval: float = 1.0,
        traffic_interval: float = 10.0,
    ) -> None:
        super().__init__(
            persistencer,
            owns_persistencer=owns_persistencer,
            speed_interval=speed_interval,
            traffic_interval=traffic_interval,
        )
        self._db = db
        self._db_lock = threading.Lock()
        self._update_interval = check_rate
        self._halt = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _push_traffic(self) -> None:
        for user in self.list_users():
            sent, recv = user.reset_traffic()
            # The table counts from the user's side: our "sent" is their download.
            try:
                with self._db_lock, self._db.cursor() as cursor:
                    cursor.execute(_UPDATE_SQL, (recv, sent, user.hash))
            except pymysql.MySQLError as exc:
                logger.error("failed to update data to user table: %s", exc)
        logger.info("buffered data has been written into the database")

    def _pull_users(self) -> None:
        try:
            with self._db_lock, self._db.cursor() as cursor:
                cursor.execute(_SELECT_SQL)
                rows = list(cursor.fetchall())
        except pymysql.MySQLError as exc:
            logger.error("failed to pull data from the database: %s", exc)
            return
        for row in rows:
            try:
                hash, quota, download, upload = row
                quota, download, upload = int(quota), int(download), int(upload)
            except (TypeError, ValueError) as exc:
                logger.error("failed to obtain data from the query result: %s", exc)
                break
            try:
                if download + upload < quota or quota < 0:
                    self.add_user(hash)
                else:
                    self.del_user(hash)
            except AuthError as exc:
                logger.debug("%s", exc)

    def sync_once(self) -> None:
        """Write buffered traffic to the database, then apply quotas from it."""
        self._push_traffic()
        self._pull_users()

    def _run(self) -> None:
        while True:
            self.sync_once()
            if self._halt.wait(self._update_interval):
                logger.debug("MySQL daemon exiting...")
                return

    def start(self) -> None:
        """Start the background sync thread."""
        if self._thread is None:
            self._thread = threading.Thread(target=self._run, daemon=True)
            self._thread.start()

    def close(self) -> None:
        """Stop syncing, close the database and the users."""
        self._halt.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=5.0)
        with self._db_lock:
            try:
                self._db.close()
            except pymysql.MySQLError as exc:
                logger.debug("closing database: %s", exc)
        super().close()


def _new_mysql_authenticator(config: MySQLConfig) -> MySQLAuthenticator:
    db = connect_database(config)
    persistencer = SqlitePersistencer(config.memory.sqlite) if config.memory.sqlite else None
    auth = MySQLAuthenticator(
        db, config.check_rate, persistencer, owns_persistencer=persistencer is not None
    )
    _add_passwords(auth, config.memory.passwords)
    auth.start()
    logger.debug("mysql authenticator created")
    return auth


register_authenticator_creator(NAME, _new_mysql_authenticator)