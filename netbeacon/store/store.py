"""SQLite-backed store-and-forward buffer.

One database file under the state directory holds a ``records`` table
(bucket, key, value) and a ``meta`` table of tracking values. Byte totals
and record counts per bucket are kept in meta and updated in the same
transaction as every insert and delete, so they never need a table scan.

If the file exists but cannot be opened as a database, it is renamed aside
to ``<name>.broken.<unix>.db`` and a fresh, empty store is created; the
store's ``recovered_from`` attribute then names the renamed file.
"""

from __future__ import annotations

import logging
import os
import sqlite3
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import timedelta
from pathlib import Path
from typing import Any

from netbeacon.store.schema import (
    EVICTABLE_ORDER,
    META_PREFIX_BYTES,
    META_PREFIX_RECORDS,
    StoreClosedError,
    StoreError,
    decode_u64,
    encode_u64,
    meta_key,
    new_key,
    validate_bucket,
)

DEFAULT_FILENAME = "beacon-state.db"

_log = logging.getLogger(__name__)

_SCHEMA = (
    "CREATE TABLE IF NOT EXISTS records ("
    " bucket TEXT NOT NULL, key BLOB NOT NULL, value BLOB NOT NULL,"
    " PRIMARY KEY (bucket, key)) WITHOUT ROWID",
    "CREATE TABLE IF NOT EXISTS meta (key BLOB PRIMARY KEY, value BLOB NOT NULL) WITHOUT ROWID",
)


@dataclass(frozen=True)
class StoreOptions:
    """Tunables for Store.open; zero values take the defaults."""

    max_bytes: int = 0
    max_age: timedelta = timedelta(0)
    open_timeout: float = 0.0


def default_options() -> StoreOptions:
    """The production defaults: 5 GiB, 14 days, 5 second open timeout."""
    return StoreOptions(
        max_bytes=5 * 1024 * 1024 * 1024,
        max_age=timedelta(days=14),
        open_timeout=5.0,
    )


def _fill_defaults(options: StoreOptions | None) -> StoreOptions:
    defaults = default_options()
    if options is None:
        return defaults
    return replace(
        options,
        max_bytes=options.max_bytes or defaults.max_bytes,
        max_age=options.max_age or defaults.max_age,
        open_timeout=options.open_timeout or defaults.open_timeout,
    )


# --- meta helpers, called inside Store.transaction() ---


def get_meta(tx: sqlite3.Connection, key: bytes) -> bytes | None:
    """The meta value stored under key, or None."""
    row = tx.execute("SELECT value FROM meta WHERE key = ?", (bytes(key),)).fetchone()
    return None if row is None else bytes(row[0])


def put_meta(tx: sqlite3.Connection, key: bytes, value: bytes) -> None:
    """Store value under key in meta, replacing any previous value."""
    tx.execute("INSERT OR REPLACE INTO meta (key, value) VALUES (?, ?)", (bytes(key), bytes(value)))


def _delete_meta(tx: sqlite3.Connection, key: bytes) -> None:
    tx.execute("DELETE FROM meta WHERE key = ?", (bytes(key),))


def _add_counter(tx: sqlite3.Connection, prefix: str, bucket: Any, delta: int) -> None:
    key = meta_key(prefix, bucket)
    current = decode_u64(get_meta(tx, key))
    put_meta(tx, key, encode_u64(max(0, current + delta)))


def add_bytes(tx: sqlite3.Connection, bucket: Any, delta: int) -> None:
    """Adjust the byte total of bucket by delta, clamped at zero."""
    _add_counter(tx, META_PREFIX_BYTES, bucket, delta)


def add_records(tx: sqlite3.Connection, bucket: Any, delta: int) -> None:
    """Adjust the record count of bucket by delta, clamped at zero."""
    _add_counter(tx, META_PREFIX_RECORDS, bucket, delta)


# --- record helpers, called inside Store.transaction() ---


def _first_record(tx: sqlite3.Connection, bucket: Any) -> tuple[bytes, bytes] | None:
    row = tx.execute(
        "SELECT key, value FROM records WHERE bucket = ? ORDER BY key LIMIT 1",
        (str(bucket),),
    ).fetchone()
    return None if row is None else (bytes(row[0]), bytes(row[1]))


def _next_record(tx: sqlite3.Connection, bucket: Any, after: bytes) -> tuple[bytes, bytes] | None:
    row = tx.execute(
        "SELECT key, value FROM records WHERE bucket = ? AND key > ? ORDER BY key LIMIT 1",
        (str(bucket), bytes(after)),
    ).fetchone()
    return None if row is None else (bytes(row[0]), bytes(row[1]))


def _delete_record(tx: sqlite3.Connection, bucket: Any, key: bytes) -> int | None:
    """Delete one record; return its payload size, or None if it was absent."""
    row = tx.execute(
        "SELECT length(value) FROM records WHERE bucket = ? AND key = ?",
        (str(bucket), bytes(key)),
    ).fetchone()
    if row is None:
        return None
    tx.execute("DELETE FROM records WHERE bucket = ? AND key = ?", (str(bucket), bytes(key)))
    return int(row[0])


def _connect(path: Path, options: StoreOptions) -> sqlite3.Connection:
    conn = sqlite3.connect(
        str(path),
        timeout=options.open_timeout,
        isolation_level=None,
        check_same_thread=False,
    )
    try:
        for statement in _SCHEMA:
            conn.execute(statement)
        os.chmod(path, 0o600)
    except BaseException:
        conn.close()
        raise
    return conn


class Store:
    """The buffer: put, read, delete and account records per bucket.

    Safe to share between threads; operations are serialised by a lock.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        path: Path,
        options: StoreOptions,
        recovered_from: Path | None = None,
    ) -> None:
        self._conn = conn
        self._path = path
        self._options = options
        self._lock = threading.RLock()
        self._closed = False
        self.recovered_from = recovered_from

    @classmethod
    def open(cls, state_dir: str | os.PathLike[str], options: StoreOptions | None = None) -> Store:
        """Open or create the store in state_dir, recovering from a corrupt file."""
        opts = _fill_defaults(options)
        directory = Path(state_dir)
        try:
            directory.mkdir(mode=0o700, parents=True, exist_ok=True)
        except OSError as exc:
            raise StoreError(f"store: mkdir state: {exc}") from exc
        path = directory / DEFAULT_FILENAME

        try:
            return cls(_connect(path, opts), path, opts)
        except sqlite3.OperationalError as exc:
            if "locked" in str(exc):
                raise StoreError(f"store: database is in use: {exc}") from exc
            open_error: Exception = exc
        except sqlite3.DatabaseError as exc:
            open_error = exc

        broken: Path | None = path.with_name(f"{path.name}.broken.{int(time.time())}.db")
        try:
            os.rename(path, broken)
        except FileNotFoundError:
            broken = None
        except OSError as exc:
            raise StoreError(
                f"store: open failed and rename-aside failed: open={open_error} rename={exc}"
            ) from exc
        try:
            conn = _connect(path, opts)
        except sqlite3.DatabaseError as exc:
            raise StoreError(f"store: open failed even after recovery: {exc}") from exc
        _log.warning("store: database was corrupt and has been renamed aside to %s", broken)
        return cls(conn, path, opts, recovered_from=broken)

    def close(self) -> None:
        """Close the database; later operations raise StoreClosedError."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._conn.close()

    def __enter__(self) -> Store:
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        self.close()

    def path(self) -> Path:
        """The database file's path."""
        return self._path

    def options(self) -> StoreOptions:
        """The effective options, with defaults filled in."""
        return self._options

    def _check_open(self) -> None:
        if self._closed:
            raise StoreClosedError("store: closed")

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block as one write transaction; rolled back if it raises.

        Transactions do not nest.
        """
        with self._lock:
            self._check_open()
            conn = self._conn
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def put(self, bucket: Any, payload: bytes) -> bytes:
        """Store payload in bucket and return its new key."""
        self._check_open()
        name = validate_bucket(bucket)
        key = new_key()
        value = bytes(payload)
        with self.transaction() as tx:
            tx.execute(
                "INSERT INTO records (bucket, key, value) VALUES (?, ?, ?)",
                (str(name), key, value),
            )
            add_bytes(tx, name, len(value))
            add_records(tx, name, 1)
        return key

    def get(self, bucket: Any, key: bytes) -> bytes | None:
        """The payload at (bucket, key), or None if there is none."""
        self._check_open()
        name = validate_bucket(bucket)
        with self.transaction() as tx:
            row = tx.execute(
                "SELECT value FROM records WHERE bucket = ? AND key = ?",
                (str(name), bytes(key)),
            ).fetchone()
        return None if row is None else bytes(row[0])

    def items(self, bucket: Any) -> list[tuple[bytes, bytes]]:
        """Every (key, payload) pair in bucket, oldest first."""
        self._check_open()
        name = validate_bucket(bucket)
        with self.transaction() as tx:
            rows = tx.execute(
                "SELECT key, value FROM records WHERE bucket = ? ORDER BY key",
                (str(name),),
            ).fetchall()
        return [(bytes(k), bytes(v)) for k, v in rows]

    def delete(self, bucket: Any, key: bytes) -> None:
        """Remove one record; deleting a missing key does nothing."""
        self._check_open()
        name = validate_bucket(bucket)
        with self.transaction() as tx:
            size = _delete_record(tx, name, key)
            if size is None:
                return
            add_bytes(tx, name, -size)
            add_records(tx, name, -1)

    def count(self, bucket: Any) -> int:
        """Number of records in bucket, from the meta counter."""
        self._check_open()
        name = validate_bucket(bucket)
        with self.transaction() as tx:
            return decode_u64(get_meta(tx, meta_key(META_PREFIX_RECORDS, name)))

    def bytes_used(self, bucket: Any) -> int:
        """Total payload bytes in bucket, from the meta counter."""
        self._check_open()
        name = validate_bucket(bucket)
        with self.transaction() as tx:
            return decode_u64(get_meta(tx, meta_key(META_PREFIX_BYTES, name)))

    def total_evictable_bytes(self) -> int:
        """Payload bytes across flows, logs and snmp; configs is not counted."""
        with self.transaction() as tx:
            return sum(
                decode_u64(get_meta(tx, meta_key(META_PREFIX_BYTES, b))) for b in EVICTABLE_ORDER
            )