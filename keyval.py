#!/usr/bin/env python3
"""
KeyVal Storage Primitives

KeyVal is a small persistent key-value store of strings on top of a single
SQLite table. A store owns exactly one connection; every operation holds the
store lock for its whole duration, so one store can be shared by the threads
of a process. Multi-process writers are not coordinated.
"""

import contextlib
import functools
import logging
import os
import sqlite3
import threading
from collections import namedtuple
from typing import Dict, Iterator, Optional, Tuple

logger = logging.getLogger(__name__)

# Default constants
DATABASE_NAME = "store.kv.db"
TABLE_NAME = "kv_store"
COLUMN_KEY = "key"
COLUMN_VAL = "val"
SCHEMA_VERSION = 1

_SIDECAR_SUFFIXES = ("", "-journal", "-wal", "-shm")
_TRUTHY = ("1", "true", "yes", "on")


class StorageError(Exception):
    """Base class of every error raised by the store."""


class StorageUnavailable(StorageError):
    """The database could not be created or opened."""


class OperationFailed(StorageError):
    """A single operation failed against an open store."""


class StoreClosed(StorageError):
    """The store was used after close()."""


def location_default() -> str:
    """Return the directory holding the database.

    Returns:
        str: $KEYVAL_DIRECTORY if set, otherwise the current directory
    """
    return os.environ.get("KEYVAL_DIRECTORY") or os.getcwd()


def reset_default() -> bool:
    """Return True when $KEYVAL_DB_DELETE asks for a purge on every open."""
    return os.environ.get("KEYVAL_DB_DELETE", "").strip().lower() in _TRUTHY


def db_path(location: Optional[str] = None) -> str:
    """Path of the database file inside location."""
    if location is None:
        location = location_default()
    return os.path.join(os.fspath(location), DATABASE_NAME)


# KeyValStore namedtuple to hold configuration and state, state["sqlite"] is
# the live connection or None once the store is closed.
KeyValStore = namedtuple("KeyValStore", ["db_path", "lock", "state"])


def transactional(func):
    """Run func with the store connection, under the store lock.

    The connection is committed when func returns and rolled back when
    SQLite raises, in which case the error is re-raised as OperationFailed
    and the store stays usable.
    """

    @functools.wraps(func)
    def wrapper(store, *args, **kwargs):
        with store.lock:
            cnx = store.state["sqlite"]
            if cnx is None:
                raise StoreClosed("store is closed: {}".format(store.db_path))
            try:
                out = func(cnx, *args, **kwargs)
                cnx.commit()
            except sqlite3.Error as exc:
                cnx.rollback()
                msg = "{} failed on {}: {}".format(func.__name__, store.db_path, exc)
                raise OperationFailed(msg) from exc
            else:
                return out

    return wrapper


def _schema_upgrade(cnx: sqlite3.Connection, old: int, new: int) -> None:
    # Nothing to do here, every released schema is version 1.
    logger.debug("schema upgrade from %d to %d is a no-op", old, new)


def _schema_ensure(cnx: sqlite3.Connection) -> None:
    """Create the kv_store table if absent and record the schema version."""
    cnx.execute("PRAGMA foreign_keys=ON")
    version = cnx.execute("PRAGMA user_version").fetchone()[0]
    cnx.execute(
        f"""
        CREATE TABLE IF NOT EXISTS {TABLE_NAME} (
            {COLUMN_KEY} TEXT PRIMARY KEY,
            {COLUMN_VAL} TEXT
        )
        """
    )
    if version == 0:
        logger.info("created schema version %d", SCHEMA_VERSION)
    elif version < SCHEMA_VERSION:
        _schema_upgrade(cnx, version, SCHEMA_VERSION)
    elif version > SCHEMA_VERSION:
        logger.warning(
            "database schema version %d is newer than %d, continuing",
            version,
            SCHEMA_VERSION,
        )
        cnx.commit()
        return
    cnx.execute(f"PRAGMA user_version = {SCHEMA_VERSION:d}")
    cnx.commit()


def open(location: Optional[str] = None, reset: Optional[bool] = None) -> KeyValStore:
    """
    Open the store at location, creating the database and table if needed.

    Args:
        location: Directory holding store.kv.db, see location_default().
        reset: Purge the database before opening, see reset_default().

    Returns:
        An open KeyValStore.

    Raises:
        StorageUnavailable: If the directory or the database cannot be
            created or opened, or the file is not a database.
    """
    if location is None:
        location = location_default()
    if reset is None:
        reset = reset_default()
    if reset:
        purge(location)

    path = db_path(location)
    try:
        os.makedirs(os.fspath(location), exist_ok=True)
    except OSError as exc:
        raise StorageUnavailable("cannot create {}: {}".format(location, exc)) from exc

    try:
        cnx = sqlite3.connect(path, check_same_thread=False)
    except sqlite3.Error as exc:
        raise StorageUnavailable("cannot open {}: {}".format(path, exc)) from exc

    try:
        cnx.row_factory = sqlite3.Row
        cnx.execute("PRAGMA journal_mode=WAL")
        _schema_ensure(cnx)
    except sqlite3.Error as exc:
        cnx.close()
        raise StorageUnavailable("cannot initialize {}: {}".format(path, exc)) from exc

    logger.info("opened %s", path)
    return KeyValStore(db_path=path, lock=threading.Lock(), state={"sqlite": cnx})


def close(store: KeyValStore) -> None:
    """Close the store. Closing twice is a no-op."""
    with store.lock:
        cnx = store.state["sqlite"]
        if cnx is None:
            return
        store.state["sqlite"] = None
        cnx.close()
    logger.info("closed %s", store.db_path)


@contextlib.contextmanager
def opened(
    location: Optional[str] = None, reset: Optional[bool] = None
) -> Iterator[KeyValStore]:
    """Open a store for the duration of a with block."""
    store = open(location, reset=reset)
    try:
        yield store
    finally:
        close(store)


def purge(location: Optional[str] = None) -> None:
    """Delete the database at location with all its data.

    Works whether or not a store is open on it; a handle that is still
    open must not be used afterwards.
    """
    path = db_path(location)
    for suffix in _SIDECAR_SUFFIXES:
        try:
            os.remove(path + suffix)
        except FileNotFoundError:
            pass
        except OSError as exc:
            raise StorageError("cannot purge {}: {}".format(path + suffix, exc)) from exc
    logger.info("purged %s", path)


@transactional
def set(cnx, key: str, val: str) -> None:
    """Set the given value to the given key.

    Updates the row in place and falls back to a replace-write when no row
    was touched. Both statements commit together.
    """
    assert isinstance(key, str), f"key must be str, got {type(key)}"
    assert isinstance(val, str), f"val must be str, got {type(val)}"
    with contextlib.closing(cnx.cursor()) as cursor:
        cursor.execute(
            f"UPDATE {TABLE_NAME} SET {COLUMN_VAL} = ? WHERE {COLUMN_KEY} = ?",
            (val, key),
        )
        if cursor.rowcount == 0:
            cursor.execute(
                f"INSERT OR REPLACE INTO {TABLE_NAME} ({COLUMN_KEY}, {COLUMN_VAL}) VALUES (?, ?)",
                (key, val),
            )
    logger.debug("set %r", key)


@transactional
def get(cnx, key: str) -> Optional[str]:
    """Retrieve the value of key, or None when the key is absent."""
    assert isinstance(key, str), f"key must be str, got {type(key)}"
    with contextlib.closing(
        cnx.execute(
            f"SELECT {COLUMN_VAL} FROM {TABLE_NAME} WHERE {COLUMN_KEY} = ?", (key,)
        )
    ) as cursor:
        row = cursor.fetchone()
    return row[COLUMN_VAL] if row else None


@transactional
def delete(cnx, key: str) -> None:
    """Delete the key-val pair, absent keys are ignored."""
    assert isinstance(key, str), f"key must be str, got {type(key)}"
    with contextlib.closing(cnx.cursor()) as cursor:
        cursor.execute(f"DELETE FROM {TABLE_NAME} WHERE {COLUMN_KEY} = ?", (key,))
    logger.debug("delete %r", key)


def _row_entry(row) -> Optional[Tuple[str, str]]:
    try:
        return row[COLUMN_KEY], row[COLUMN_VAL]
    except (IndexError, KeyError):
        return None


@transactional
def query(cnx, pattern: str) -> Dict[str, str]:
    """Return every key-val pair whose key matches pattern.

    Args:
        pattern: A LIKE pattern where * stands for any run of characters,
            e.g. "user.*" or "*.name".

    Returns:
        Dict of matching keys to their values, empty when nothing matches.
    """
    assert isinstance(pattern, str), f"pattern must be str, got {type(pattern)}"
    like = pattern.replace("*", "%")
    out = {}
    with contextlib.closing(
        cnx.execute(
            f"SELECT {COLUMN_KEY}, {COLUMN_VAL} FROM {TABLE_NAME} WHERE {COLUMN_KEY} LIKE ?",
            (like,),
        )
    ) as cursor:
        for row in cursor:
            entry = _row_entry(row)
            if entry is None:
                logger.debug("skipping unresolvable row for pattern %r", pattern)
                continue
            out[entry[0]] = entry[1]
    return out
