"""FIFO replay of buffered records with a persistent cursor.

:func:`replay` walks a bucket oldest first, starting after the stored
cursor, and hands each record to a send function. A record whose send
succeeds is deleted, and the cursor advanced to it, in one transaction, so
a crash can never deliver a record twice. A failing send halts replay and
leaves the record in place. An optional :class:`RateLimiter` paces the
sends.
"""

from __future__ import annotations

import sqlite3
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Optional

from netbeacon.store.schema import (
    META_PREFIX_CURSOR,
    Bucket,
    StoreError,
    meta_key,
    validate_bucket,
)
from netbeacon.store.store import (
    Store,
    _delete_meta,
    _delete_record,
    _first_record,
    _next_record,
    add_bytes,
    add_records,
    get_meta,
    put_meta,
)

SendFunc = Callable[[bytes, bytes], Any]


class ReplayCancelledError(Exception):
    """Replay stopped because its cancel event was set.

    ``stats`` holds what was delivered before the cancellation.
    """

    def __init__(self, message: str = "replay cancelled", stats: Optional[ReplayStats] = None) -> None:
        super().__init__(message)
        self.stats = stats


@dataclass
class ReplayStats:
    """Summary of one replay call."""

    delivered: int = 0
    bytes_delivered: int = 0
    last_error: Optional[BaseException] = None


class RateLimiter:
    """Token bucket: rate tokens per second, holding at most burst tokens."""

    def __init__(self, rate: float, burst: int = 1) -> None:
        if not rate > 0:
            raise ValueError(f"rate must be positive: {rate}")
        if burst < 1:
            raise ValueError(f"burst must be at least 1: {burst}")
        self.rate = float(rate)
        self.burst = int(burst)
        self._tokens = float(burst)
        self._updated = time.monotonic()
        self._lock = threading.Lock()

    def wait(self, cancel: Optional[threading.Event] = None) -> None:
        """Block until a token is available; raise ReplayCancelledError if cancelled."""
        if cancel is not None and cancel.is_set():
            raise ReplayCancelledError("rate limiter wait cancelled")
        with self._lock:
            now = time.monotonic()
            self._tokens = min(self.burst, self._tokens + (now - self._updated) * self.rate)
            self._updated = now
            self._tokens -= 1
            delay = -self._tokens / self.rate if self._tokens < 0 else 0.0
        if delay <= 0:
            return
        if cancel is None:
            time.sleep(delay)
            return
        if cancel.wait(delay):
            with self._lock:
                self._tokens = min(self.burst, self._tokens + 1)
            raise ReplayCancelledError("rate limiter wait cancelled")


def get_cursor(tx: sqlite3.Connection, bucket: Any) -> Optional[bytes]:
    """The replay cursor of bucket, or None if unset."""
    return get_meta(tx, meta_key(META_PREFIX_CURSOR, bucket))


def set_cursor(tx: sqlite3.Connection, bucket: Any, value: bytes) -> None:
    """Set the replay cursor of bucket to the last delivered key."""
    put_meta(tx, meta_key(META_PREFIX_CURSOR, bucket), value)


def cursor(store: Store, bucket: Any) -> Optional[bytes]:
    """The current replay cursor of bucket, or None if unset."""
    store._check_open()
    name = validate_bucket(bucket)
    with store.transaction() as tx:
        return get_cursor(tx, name)


def reset_cursor(store: Store, bucket: Any) -> None:
    """Clear the cursor so the next replay starts at the oldest record."""
    store._check_open()
    name = validate_bucket(bucket)
    with store.transaction() as tx:
        _delete_meta(tx, meta_key(META_PREFIX_CURSOR, name))


def _peek_next(store: Store, bucket: Bucket) -> Optional[tuple[bytes, bytes]]:
    with store.transaction() as tx:
        after = get_cursor(tx, bucket)
        if after is None:
            return _first_record(tx, bucket)
        return _next_record(tx, bucket, after)


def _commit_delivered(store: Store, bucket: Bucket, key: bytes, size: int) -> None:
    try:
        with store.transaction() as tx:
            _delete_record(tx, bucket, key)
            add_bytes(tx, bucket, -size)
            add_records(tx, bucket, -1)
            set_cursor(tx, bucket, key)
    except sqlite3.Error as exc:
        raise StoreError(f"store: commit replay: {exc}") from exc


def replay(
    store: Store,
    bucket: Any,
    send: SendFunc,
    max_records: int = 0,
    limiter: Optional[RateLimiter] = None,
    cancel: Optional[threading.Event] = None,
) -> ReplayStats:
    """Send records of bucket oldest first, deleting each one delivered.

    ``max_records`` of 0 means no limit. When send raises, replay stops and
    returns with the exception in ``last_error``; the record stays. Raises
    ReplayCancelledError, carrying the stats so far, when cancel is set.
    """
    store._check_open()
    name = validate_bucket(bucket)
    if send is None:
        raise ValueError("store.replay: send is None")

    stats = ReplayStats()
    while max_records == 0 or stats.delivered < max_records:
        try:
            if cancel is not None and cancel.is_set():
                raise ReplayCancelledError("replay cancelled")
            if limiter is not None:
                limiter.wait(cancel)
        except ReplayCancelledError as exc:
            exc.stats = stats
            stats.last_error = exc
            raise

        record = _peek_next(store, name)
        if record is None:
            break
        key, payload = record

        try:
            send(key, payload)
        except Exception as exc:
            stats.last_error = exc
            return stats

        _commit_delivered(store, name, key, len(payload))
        stats.delivered += 1
        stats.bytes_delivered += len(payload)

    return stats