"""
stores.py — Configuration stores that receive certificate paths.

Both stores expose the same narrow capability::

    store.apply({"certFile": "/ssl/cert.pem", "keyFile": "/ssl/key.pem"}) -> bool

``apply`` returns ``True`` if the store was modified and ``False`` if it
already held those values.  Updates are all-or-nothing: a JSON document is
rewritten through a temp file and ``os.replace``; a SQLite settings table is
updated inside a single transaction.
"""

from __future__ import annotations

import json
import logging
import os
import re
import sqlite3
import stat
import threading
from typing import Any, Protocol
from urllib.parse import quote

from certsync.errors import (
    ConfigRecordMissing,
    ConfigStoreMalformed,
    ConfigWriteError,
)
from certsync.utils import atomic_write_json

logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class ConfigStore(Protocol):
    def describe(self) -> str: ...

    def apply(self, updates: dict[str, str]) -> bool: ...


# ---------------------------------------------------------------------------
# JSON document
# ---------------------------------------------------------------------------


class JsonFileStore:
    """A JSON config file such as ``/etc/x-ui/config.json``.

    Keys may be dotted (``"tls.certFile"``) to reach nested objects; the
    parent objects must already exist.
    """

    def __init__(self, path: str) -> None:
        self.path = os.path.abspath(path)

    def describe(self) -> str:
        return f"json:{self.path}"

    def _load(self) -> dict[str, Any]:
        if not os.path.exists(self.path):
            raise ConfigRecordMissing(self.describe(), "config file not found")
        try:
            with open(self.path, encoding="utf-8") as fh:
                data = json.load(fh)
        except ValueError as exc:
            raise ConfigStoreMalformed(self.describe(), f"invalid JSON: {exc}") from exc
        except OSError as exc:
            raise ConfigWriteError(self.describe(), f"read failed: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigStoreMalformed(self.describe(), "top level is not an object")
        return data

    def _parent(self, data: dict[str, Any], key: str) -> tuple[dict[str, Any], str]:
        *parents, leaf = key.split(".")
        node = data
        for i, part in enumerate(parents):
            if part not in node:
                where = ".".join(parents[: i + 1])
                raise ConfigRecordMissing(self.describe(), f"missing object {where!r}")
            node = node[part]
            if not isinstance(node, dict):
                where = ".".join(parents[: i + 1])
                raise ConfigStoreMalformed(self.describe(), f"{where!r} is not an object")
        return node, leaf

    def apply(self, updates: dict[str, str]) -> bool:
        data = self._load()
        changed = False
        for key, value in updates.items():
            node, leaf = self._parent(data, key)
            if node.get(leaf) != value:
                node[leaf] = value
                changed = True
        if not changed:
            return False

        try:
            mode = stat.S_IMODE(os.stat(self.path).st_mode)
            atomic_write_json(self.path, data, mode=mode)
        except OSError as exc:
            raise ConfigWriteError(self.describe(), f"write failed: {exc}") from exc
        logger.debug("Rewrote %s with keys %s", self.path, ", ".join(updates))
        return True


# ---------------------------------------------------------------------------
# SQLite key/value settings table
# ---------------------------------------------------------------------------


class SqliteSettingsStore:
    """A key/value settings table, e.g. 3x-ui's ``x-ui.db``.

    The database is opened read-write only; it is never created.  Every
    key in an update must already have a row.

    Parameters:
        path:         Database file.
        table:        Settings table name (default ``settings``).
        key_column:   Column holding setting names.
        value_column: Column holding setting values.
        timeout:      Seconds to wait for a database lock.
    """

    def __init__(
        self,
        path: str,
        table: str = "settings",
        key_column: str = "key",
        value_column: str = "value",
        timeout: float = 5.0,
    ) -> None:
        for ident in (table, key_column, value_column):
            if not _IDENTIFIER.match(ident):
                raise ValueError(f"invalid SQL identifier: {ident!r}")
        self.path = os.path.abspath(path)
        self.table = table
        self.key_column = key_column
        self.value_column = value_column
        self.timeout = timeout
        self._conn: sqlite3.Connection | None = None
        self._conn_lock = threading.Lock()

    def describe(self) -> str:
        return f"sqlite:{self.path}#{self.table}"

    def _connect(self) -> sqlite3.Connection:
        if not os.path.exists(self.path):
            raise ConfigRecordMissing(self.describe(), "database file not found")
        try:
            return sqlite3.connect(
                f"file:{quote(self.path)}?mode=rw",
                uri=True,
                timeout=self.timeout,
                isolation_level=None,
            )
        except sqlite3.Error as exc:
            raise ConfigWriteError(self.describe(), f"cannot open: {exc}") from exc

    def apply(self, updates: dict[str, str]) -> bool:
        select = (
            f'SELECT "{self.value_column}" FROM "{self.table}" '
            f'WHERE "{self.key_column}" = ?'
        )
        update = (
            f'UPDATE "{self.table}" SET "{self.value_column}" = ? '
            f'WHERE "{self.key_column}" = ?'
        )
        conn = self._connect()
        with self._conn_lock:
            self._conn = conn
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                changed = False
                for key, value in updates.items():
                    rows = conn.execute(select, (key,)).fetchall()
                    if not rows:
                        raise ConfigRecordMissing(
                            self.describe(), f"no settings row for {key!r}"
                        )
                    if any(row[0] != value for row in rows):
                        conn.execute(update, (value, key))
                        changed = True
                conn.execute("COMMIT")
            except BaseException:
                if conn.in_transaction:
                    try:
                        conn.rollback()
                    except sqlite3.Error as exc:
                        logger.warning("Rollback on %s failed: %s", self.path, exc)
                raise
        except sqlite3.OperationalError as exc:
            msg = str(exc)
            if msg.startswith(("no such table", "no such column")):
                raise ConfigRecordMissing(self.describe(), msg) from exc
            raise ConfigWriteError(self.describe(), msg) from exc
        except sqlite3.DatabaseError as exc:
            raise ConfigStoreMalformed(self.describe(), str(exc)) from exc
        finally:
            with self._conn_lock:
                self._conn = None
            conn.close()
        return changed

    def interrupt(self) -> None:
        """Abort the statement a timed-out ``apply`` is stuck in."""
        with self._conn_lock:
            if self._conn is not None:
                logger.debug("Interrupting write to %s", self.path)
                self._conn.interrupt()


def open_store(kind: str, path: str, **options: Any) -> ConfigStore:
    """Build a store from its CLI name (``json`` or ``sqlite``)."""
    if kind == "json":
        return JsonFileStore(path)
    if kind == "sqlite":
        return SqliteSettingsStore(path, **options)
    raise ValueError(f"unknown store type: {kind!r}")
