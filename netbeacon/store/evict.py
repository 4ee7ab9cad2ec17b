"""Cap enforcement for the store-and-forward buffer.

When the evictable byte total exceeds ``max_bytes`` or the oldest
evictable record is older than ``max_age``, records are deleted oldest
first from ``flows``, then ``logs``, then ``snmp`` until both caps hold.
The ``configs`` bucket is never touched.
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

from netbeacon.store.schema import (
    EVICTABLE_ORDER,
    META_EVICT_LAST_KEY,
    META_PREFIX_BYTES,
    Bucket,
    decode_u64,
    encode_u64,
    key_timestamp,
    meta_key,
)
from netbeacon.store.store import Store, add_bytes, add_records, get_meta, put_meta


@dataclass
class BucketEviction:
    """Records and bytes one bucket lost in an eviction run."""

    records: int = 0
    bytes: int = 0


@dataclass
class EvictionResult:
    """Summary of one evict_if_needed run.

    ``reason`` is ``"bytes_cap"``, ``"age_cap"``, ``"both"`` or ``""`` when
    nothing needed evicting.
    """

    records_evicted: int = 0
    bytes_evicted: int = 0
    by_bucket: dict[Bucket, BucketEviction] = field(default_factory=dict)
    reason: str = ""


def _to_ms(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


def _total_evictable_bytes(tx: sqlite3.Connection) -> int:
    return sum(decode_u64(get_meta(tx, meta_key(META_PREFIX_BYTES, b))) for b in EVICTABLE_ORDER)


def _oldest_record(tx: sqlite3.Connection, bucket: Bucket) -> Optional[tuple[bytes, int]]:
    row = tx.execute(
        "SELECT key, length(value) FROM records WHERE bucket = ? ORDER BY key LIMIT 1",
        (str(bucket),),
    ).fetchone()
    return None if row is None else (bytes(row[0]), int(row[1]))


def _oldest_evictable_timestamp(tx: sqlite3.Connection) -> int:
    """Unix-ms timestamp of the oldest evictable record, or 0 if there is none."""
    stamps = [
        key_timestamp(rec[0])
        for rec in (_oldest_record(tx, b) for b in EVICTABLE_ORDER)
        if rec is not None
    ]
    return min(stamps, default=0)


def evict_if_needed(store: Store, now: Optional[datetime] = None) -> EvictionResult:
    """Evict oldest records until the byte and age caps both hold.

    Raises StoreClosedError if the store has been closed.
    """
    moment = now if now is not None else datetime.now(timezone.utc)
    now_ms = _to_ms(moment)
    opts = store.options()
    cutoff = now_ms - int(opts.max_age / timedelta(milliseconds=1))
    result = EvictionResult()

    with store.transaction() as tx:

        def caps_exceeded() -> tuple[bool, bool]:
            oldest = _oldest_evictable_timestamp(tx)
            return _total_evictable_bytes(tx) > opts.max_bytes, oldest != 0 and oldest < cutoff

        bytes_over, age_over = caps_exceeded()
        if not (bytes_over or age_over):
            return result
        if bytes_over and age_over:
            result.reason = "both"
        elif bytes_over:
            result.reason = "bytes_cap"
        else:
            result.reason = "age_cap"

        for bucket in EVICTABLE_ORDER:
            while any(caps_exceeded()):
                record = _oldest_record(tx, bucket)
                if record is None:
                    break
                key, size = record
                tx.execute("DELETE FROM records WHERE bucket = ? AND key = ?", (str(bucket), key))
                add_bytes(tx, bucket, -size)
                add_records(tx, bucket, -1)
                stat = result.by_bucket.setdefault(bucket, BucketEviction())
                stat.records += 1
                stat.bytes += size
                result.records_evicted += 1
                result.bytes_evicted += size

        put_meta(tx, META_EVICT_LAST_KEY, encode_u64(max(0, now_ms)))
    return result


def evict_last(store: Store) -> Optional[datetime]:
    """When eviction last ran, or None if it never has."""
    with store.transaction() as tx:
        ms = decode_u64(get_meta(tx, META_EVICT_LAST_KEY))
    if ms == 0:
        return None
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)