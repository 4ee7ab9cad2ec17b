import random
import time
from datetime import timedelta

import pytest

from netbeacon.store.schema import (
    META_PREFIX_RECORDS,
    Bucket,
    InvalidBucketError,
    StoreClosedError,
    encode_u64,
    meta_key,
)
from netbeacon.store.store import (
    DEFAULT_FILENAME,
    Store,
    StoreOptions,
    add_bytes,
    add_records,
    default_options,
    get_meta,
    put_meta,
)


@pytest.fixture
def store(tmp_path):
    s = Store.open(tmp_path)
    yield s
    s.close()


# --- open / close ---


def test_open_creates_database(store, tmp_path):
    assert store.path() == tmp_path / DEFAULT_FILENAME
    assert store.path().exists()
    assert store.recovered_from is None


def test_open_fills_default_options(store):
    opts = store.options()
    assert opts.max_bytes == 5 * 1024 * 1024 * 1024
    assert opts.max_age == timedelta(days=14)
    assert opts.open_timeout == 5.0
    assert opts == default_options()


def test_open_keeps_given_options(tmp_path):
    with Store.open(tmp_path, StoreOptions(max_bytes=500, max_age=timedelta(hours=1))) as s:
        assert s.options().max_bytes == 500
        assert s.options().max_age == timedelta(hours=1)
        assert s.options().open_timeout == 5.0


def test_open_creates_missing_state_dir(tmp_path):
    target = tmp_path / "a" / "b"
    with Store.open(target) as s:
        assert s.path().parent == target


def test_open_idempotent_data_persists(tmp_path):
    s1 = Store.open(tmp_path)
    s1.put(Bucket.LOGS, b"seed")
    s1.close()

    with Store.open(tmp_path) as s2:
        assert s2.count(Bucket.LOGS) == 1
        assert s2.bytes_used(Bucket.LOGS) == 4


def test_open_recovers_corrupt_file(tmp_path):
    (tmp_path / DEFAULT_FILENAME).write_bytes(b"not a database file at all")

    with Store.open(tmp_path) as s:
        assert s.recovered_from is not None
        assert s.recovered_from.exists()
        matches = list(tmp_path.glob("*.broken.*"))
        assert len(matches) == 1
        s.put(Bucket.LOGS, b"fresh")
        assert s.count(Bucket.LOGS) == 1


def test_close_is_idempotent(tmp_path):
    s = Store.open(tmp_path)
    s.close()
    s.close()
    with pytest.raises(StoreClosedError):
        s.count(Bucket.LOGS)


def test_put_after_close_raises(tmp_path):
    s = Store.open(tmp_path)
    s.close()
    with pytest.raises(StoreClosedError):
        s.put(Bucket.LOGS, b"x")


def test_context_manager_closes(tmp_path):
    with Store.open(tmp_path) as s:
        s.put(Bucket.SNMP, b"x")
    with pytest.raises(StoreClosedError):
        s.items(Bucket.SNMP)


# --- put / get / items / delete / count / bytes ---


def test_put_get_round_trip(store):
    key = store.put(Bucket.LOGS, b"hello")
    assert len(key) == 16
    assert store.get(Bucket.LOGS, key) == b"hello"


def test_get_missing_returns_none(store):
    assert store.get(Bucket.LOGS, bytes(16)) is None


def test_get_is_scoped_to_bucket(store):
    key = store.put(Bucket.LOGS, b"hello")
    assert store.get(Bucket.FLOWS, key) is None


def test_put_invalid_bucket(store):
    with pytest.raises(InvalidBucketError):
        store.put("nope", b"x")


def test_put_accepts_bucket_name(store):
    key = store.put("configs", b"cfg")
    assert store.get(Bucket.CONFIGS, key) == b"cfg"


def test_put_copies_payload(store):
    buf = bytearray(b"abc")
    key = store.put(Bucket.LOGS, buf)
    buf[0] = ord("z")
    assert store.get(Bucket.LOGS, key) == b"abc"


def test_insertion_order_equals_fifo(store):
    want = ["a", "b", "c", "d", "e"]
    for value in want:
        store.put(Bucket.LOGS, value.encode())
        time.sleep(0.002)
    assert [v.decode() for _, v in store.items(Bucket.LOGS)] == want


def test_fifo_within_same_millisecond(store):
    want = [f"v{i}".encode() for i in range(50)]
    for value in want:
        store.put(Bucket.FLOWS, value)
    assert [v for _, v in store.items(Bucket.FLOWS)] == want


def test_bytes_tracked_across_put_delete(store):
    keys = [store.put(Bucket.LOGS, b"x" * 100) for _ in range(100)]
    assert store.bytes_used(Bucket.LOGS) == 100 * 100

    for key in keys[::2]:
        store.delete(Bucket.LOGS, key)
    assert store.bytes_used(Bucket.LOGS) == 50 * 100
    assert store.count(Bucket.LOGS) == 50


def test_delete_nonexistent_is_noop(store):
    store.put(Bucket.LOGS, b"keep")
    store.delete(Bucket.LOGS, bytes(16))
    assert store.count(Bucket.LOGS) == 1
    assert store.bytes_used(Bucket.LOGS) == 4


def test_total_evictable_bytes_sums_three_buckets(store):
    store.put(Bucket.FLOWS, b"1234567890")
    store.put(Bucket.LOGS, b"ABCDEFGHIJ")
    store.put(Bucket.SNMP, b"klmnopqrst")
    store.put(Bucket.CONFIGS, b"UVWXYZ-not-counted")
    assert store.total_evictable_bytes() == 30


def test_property_byte_total_exact(store):
    rng = random.Random(42)
    shadow = 0
    keys = []
    for _ in range(1000):
        if rng.randrange(3) < 2:
            size = rng.randrange(200) + 1
            keys.append(store.put(Bucket.LOGS, bytes(size)))
            shadow += size
        elif keys:
            idx = rng.randrange(len(keys))
            payload = store.get(Bucket.LOGS, keys[idx])
            if payload is not None:
                shadow -= len(payload)
            store.delete(Bucket.LOGS, keys.pop(idx))
    assert store.bytes_used(Bucket.LOGS) == shadow
    assert store.count(Bucket.LOGS) == len(keys)


def test_count_tracks_meta_records_counter(store):
    assert store.count(Bucket.FLOWS) == 0

    for i in range(5):
        store.put(Bucket.FLOWS, bytes([i]))
    assert store.count(Bucket.FLOWS) == 5

    first_key, _ = store.items(Bucket.FLOWS)[0]
    store.delete(Bucket.FLOWS, first_key)
    assert store.count(Bucket.FLOWS) == 4

    for key, _ in store.items(Bucket.FLOWS):
        store.delete(Bucket.FLOWS, key)
    assert store.count(Bucket.FLOWS) == 0

    with store.transaction() as tx:
        raw = get_meta(tx, meta_key(META_PREFIX_RECORDS, Bucket.FLOWS))
    assert raw == encode_u64(0)


# --- meta helpers and transactions ---


def test_add_bytes_clamps_at_zero(store):
    store.put(Bucket.LOGS, b"abc")
    with store.transaction() as tx:
        add_bytes(tx, Bucket.LOGS, -50)
        add_records(tx, Bucket.LOGS, -5)
    assert store.bytes_used(Bucket.LOGS) == 0
    assert store.count(Bucket.LOGS) == 0


def test_put_meta_get_meta_round_trip(store):
    with store.transaction() as tx:
        put_meta(tx, b"custom", b"value")
        put_meta(tx, b"custom", b"other")
    with store.transaction() as tx:
        assert get_meta(tx, b"custom") == b"other"
        assert get_meta(tx, b"absent") is None


def test_transaction_rolls_back_on_error(store):
    with pytest.raises(RuntimeError):
        with store.transaction() as tx:
            add_records(tx, Bucket.SNMP, 7)
            raise RuntimeError("boom")
    assert store.count(Bucket.SNMP) == 0


def test_transaction_after_close_raises(tmp_path):
    s = Store.open(tmp_path)
    s.close()
    with pytest.raises(StoreClosedError):
        with s.transaction():
            pass