"""Bucket names, record keys and meta encoding for the store-and-forward buffer.

The buffer holds four data buckets plus a meta area:

* ``flows``: per-batch NetFlow blobs, evicted first
* ``logs``: gzip-NDJSON log batches
* ``snmp``: SNMP MIB snapshots
* ``configs``: device config dumps, never evicted
* meta: byte totals, record counts, replay cursors, last-eviction time

Record keys are 16-byte UUIDv7 values. Their first 48 bits are a
millisecond Unix timestamp, so byte order of the keys is insertion (FIFO)
order. Keys minted within one millisecond carry an increasing sequence
number, so that order holds even for bursts.

Default caps are 5 GiB or 14 days, whichever is hit first. Eviction drops
the oldest records from ``flows``, then ``logs``, then ``snmp``.
"""

from __future__ import annotations

import os
import threading
import time
from enum import Enum
from typing import Any


class Bucket(str, Enum):
    """One of the four data streams the beacon buffers."""

    FLOWS = "flows"
    LOGS = "logs"
    SNMP = "snmp"
    CONFIGS = "configs"

    def __str__(self) -> str:
        return self.value

    @staticmethod
    def is_valid(name: Any) -> bool:
        """Report whether name is one of the four data buckets."""
        try:
            Bucket(name)
        except ValueError:
            return False
        return True


# Data buckets in eviction-priority order; configs comes last and is never evicted.
DATA_BUCKETS = (Bucket.FLOWS, Bucket.LOGS, Bucket.SNMP, Bucket.CONFIGS)

# The buckets eviction may touch, in the order it drains them.
EVICTABLE_ORDER = (Bucket.FLOWS, Bucket.LOGS, Bucket.SNMP)

META_PREFIX_BYTES = "bytes"
META_PREFIX_CURSOR = "cursor"
META_PREFIX_RECORDS = "records"

META_EVICT_LAST_KEY = b"evict_last"


class StoreError(Exception):
    """Base class for store failures."""


class InvalidBucketError(StoreError, ValueError):
    """The bucket name is not one of the four data buckets."""


class StoreClosedError(StoreError):
    """The store has been closed."""


def validate_bucket(bucket: Any) -> Bucket:
    """Return bucket as a Bucket, or raise InvalidBucketError."""
    try:
        return Bucket(bucket)
    except ValueError:
        raise InvalidBucketError(f"store: invalid bucket name: {bucket!r}") from None


class _KeyClock:
    """Mints UUIDv7 keys that sort strictly in the order they were minted."""

    _MAX_SEQ = 0xFFF

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._last_ms = 0
        self._seq = 0

    def next_key(self) -> bytes:
        with self._lock:
            now_ms = time.time_ns() // 1_000_000
            if now_ms > self._last_ms:
                self._last_ms = now_ms
                self._seq = 0
            else:
                self._seq += 1
                if self._seq > self._MAX_SEQ:
                    self._last_ms += 1
                    self._seq = 0
            ms, seq = self._last_ms, self._seq

        tail = bytearray(os.urandom(8))
        tail[0] = (tail[0] & 0x3F) | 0x80  # RFC 4122 variant
        head = ms.to_bytes(6, "big") + ((0x7 << 12) | seq).to_bytes(2, "big")
        return head + bytes(tail)


_CLOCK = _KeyClock()


def new_key() -> bytes:
    """Mint a fresh 16-byte UUIDv7 record key."""
    return _CLOCK.next_key()


def key_timestamp(key: bytes) -> int:
    """The Unix millisecond timestamp embedded in a UUIDv7 key; 0 if too short."""
    if len(key) < 6:
        return 0
    return int.from_bytes(key[:6], "big")


def meta_key(prefix: str, bucket: Any) -> bytes:
    """The meta key for a tracking field of bucket, e.g. ``b"bytes:flows"``."""
    return f"{prefix}:{bucket}".encode()


def encode_u64(value: int) -> bytes:
    """Eight big-endian bytes for an unsigned 64-bit value."""
    return value.to_bytes(8, "big", signed=False)


def decode_u64(data: bytes | None) -> int:
    """The big-endian value in data, or 0 unless data is exactly 8 bytes."""
    if data is None or len(data) != 8:
        return 0
    return int.from_bytes(data, "big", signed=False)