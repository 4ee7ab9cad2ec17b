import threading
import time

import pytest

from netbeacon.store.replay import (
    RateLimiter,
    ReplayCancelledError,
    cursor,
    get_cursor,
    replay,
    reset_cursor,
    set_cursor,
)
from netbeacon.store.schema import Bucket, InvalidBucketError, StoreClosedError
from netbeacon.store.store import Store


@pytest.fixture
def store(tmp_path):
    s = Store.open(tmp_path)
    yield s
    s.close()


def _collect(into):
    def send(_key, payload):
        into.append(payload.decode())

    return send


def test_replay_delivers_in_order_and_deletes(store):
    for v in ("a", "b", "c"):
        store.put(Bucket.LOGS, v.encode())
    delivered = []
    stats = replay(store, Bucket.LOGS, _collect(delivered))
    assert delivered == ["a", "b", "c"]
    assert stats.delivered == 3
    assert stats.bytes_delivered == 3
    assert stats.last_error is None
    assert store.count(Bucket.LOGS) == 0
    assert store.bytes_used(Bucket.LOGS) == 0


def test_replay_halts_on_send_error(store):
    for i in range(5):
        store.put(Bucket.LOGS, f"v{i}".encode())
    sentinel = RuntimeError("transient send failure")
    calls = 0

    def send(_key, _payload):
        nonlocal calls
        calls += 1
        if calls == 3:
            raise sentinel

    stats = replay(store, Bucket.LOGS, send)
    assert stats.last_error is sentinel
    assert stats.delivered == 2
    assert store.count(Bucket.LOGS) == 3


def test_replay_resumes_from_cursor(store):
    for i in range(4):
        store.put(Bucket.LOGS, f"v{i}".encode())
    seen = []
    stats = replay(store, Bucket.LOGS, _collect(seen), max_records=2)
    assert stats.delivered == 2
    assert seen == ["v0", "v1"]

    seen = []
    stats = replay(store, Bucket.LOGS, _collect(seen))
    assert stats.delivered == 2
    assert seen == ["v2", "v3"]


def test_replay_max_records_budget(store):
    for _ in range(100):
        store.put(Bucket.LOGS, b"x")
    stats = replay(store, Bucket.LOGS, lambda _k, _p: None, max_records=10)
    assert stats.delivered == 10
    assert store.count(Bucket.LOGS) == 90


def test_replay_cancelled_before_start(store):
    for _ in range(5):
        store.put(Bucket.LOGS, b"x")
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(ReplayCancelledError) as info:
        replay(store, Bucket.LOGS, lambda _k, _p: None, cancel=cancel)
    assert info.value.stats.delivered == 0
    assert store.count(Bucket.LOGS) == 5


def test_reset_cursor(store):
    store.put(Bucket.LOGS, b"a")
    last = store.put(Bucket.LOGS, b"b")
    replay(store, Bucket.LOGS, lambda _k, _p: None)
    assert cursor(store, Bucket.LOGS) == last
    reset_cursor(store, Bucket.LOGS)
    assert cursor(store, Bucket.LOGS) is None


def test_cursor_points_at_last_delivered_key(store):
    keys = [store.put(Bucket.FLOWS, bytes([i])) for i in range(4)]
    replay(store, Bucket.FLOWS, lambda _k, _p: None, max_records=2)
    assert cursor(store, Bucket.FLOWS) == keys[1]


def test_replay_starts_after_manually_set_cursor(store):
    first = store.put(Bucket.LOGS, b"a")
    store.put(Bucket.LOGS, b"b")
    store.put(Bucket.LOGS, b"c")
    with store.transaction() as tx:
        set_cursor(tx, Bucket.LOGS, first)
        assert get_cursor(tx, Bucket.LOGS) == first
    seen = []
    replay(store, Bucket.LOGS, _collect(seen))
    assert seen == ["b", "c"]
    assert store.get(Bucket.LOGS, first) == b"a"


def test_count_tracks_replay(store):
    for i in range(4):
        store.put(Bucket.FLOWS, bytes([i]))
    stats = replay(store, Bucket.FLOWS, lambda _k, _p: None, max_records=2)
    assert stats.delivered == 2
    assert store.count(Bucket.FLOWS) == 2


def test_replay_invalid_bucket(store):
    with pytest.raises(InvalidBucketError):
        replay(store, "bogus", lambda _k, _p: None)


def test_replay_after_close(store):
    store.close()
    with pytest.raises(StoreClosedError):
        replay(store, Bucket.LOGS, lambda _k, _p: None)
    with pytest.raises(StoreClosedError):
        cursor(store, Bucket.LOGS)


def test_replay_requires_send(store):
    with pytest.raises(ValueError):
        replay(store, Bucket.LOGS, None)


def test_replay_paced_by_limiter(store):
    for _ in range(4):
        store.put(Bucket.LOGS, b"x")
    limiter = RateLimiter(rate=50, burst=1)
    start = time.monotonic()
    stats = replay(store, Bucket.LOGS, lambda _k, _p: None, limiter=limiter)
    elapsed = time.monotonic() - start
    assert stats.delivered == 4
    assert elapsed >= 0.05


def test_limiter_wait_cancelled():
    limiter = RateLimiter(rate=0.1, burst=1)
    limiter.wait()
    cancel = threading.Event()
    threading.Timer(0.05, cancel.set).start()
    with pytest.raises(ReplayCancelledError):
        limiter.wait(cancel)


@pytest.mark.parametrize("rate,burst", [(0, 1), (-1, 1), (1, 0)])
def test_limiter_rejects_bad_arguments(rate, burst):
    with pytest.raises(ValueError):
        RateLimiter(rate, burst)