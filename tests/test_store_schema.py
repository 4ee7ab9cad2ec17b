import time

import pytest

from netbeacon.store.schema import (
    DATA_BUCKETS,
    EVICTABLE_ORDER,
    Bucket,
    InvalidBucketError,
    StoreError,
    decode_u64,
    encode_u64,
    key_timestamp,
    meta_key,
    new_key,
    validate_bucket,
)


def test_bucket_is_valid():
    assert Bucket.is_valid(Bucket.FLOWS)
    assert Bucket.is_valid(Bucket.LOGS)
    assert Bucket.is_valid(Bucket.SNMP)
    assert Bucket.is_valid(Bucket.CONFIGS)
    assert Bucket.is_valid("logs")
    assert not Bucket.is_valid("bogus")
    assert not Bucket.is_valid("meta")
    assert not Bucket.is_valid(None)


def test_bucket_str_is_its_name():
    assert str(validate_bucket("snmp")) == "snmp"


def test_validate_bucket_accepts_names():
    assert validate_bucket("configs") is Bucket.CONFIGS
    assert validate_bucket(Bucket.FLOWS) is Bucket.FLOWS


def test_validate_bucket_rejects_unknown():
    with pytest.raises(InvalidBucketError):
        validate_bucket("nope")
    assert issubclass(InvalidBucketError, StoreError)


def test_configs_never_evictable():
    assert [validate_bucket(str(b)) for b in DATA_BUCKETS] == [
        Bucket.FLOWS,
        Bucket.LOGS,
        Bucket.SNMP,
        Bucket.CONFIGS,
    ]
    assert [validate_bucket(str(b)) for b in EVICTABLE_ORDER] == [
        Bucket.FLOWS,
        Bucket.LOGS,
        Bucket.SNMP,
    ]
    assert validate_bucket("configs") not in EVICTABLE_ORDER


def test_new_key_shape():
    key = new_key()
    assert len(key) == 16
    assert key[6] >> 4 == 7
    assert key[8] >> 6 == 0b10


def test_new_key_timestamp_is_now():
    before = int(time.time() * 1000)
    key = new_key()
    after = int(time.time() * 1000)
    assert before - 5 <= key_timestamp(key) <= after + 5


def test_new_keys_strictly_increase():
    keys = [new_key() for _ in range(5000)]
    assert keys == sorted(keys)
    assert len(set(keys)) == len(keys)


def test_key_timestamp_known_value():
    key = bytes.fromhex("0000000003e8") + bytes(10)
    assert key_timestamp(key) == 1000


def test_key_timestamp_short_key_is_zero():
    assert key_timestamp(b"\x01\x02\x03") == 0
    assert key_timestamp(b"") == 0


def test_meta_key_format():
    assert meta_key("bytes", Bucket.FLOWS) == b"bytes:flows"
    assert meta_key("cursor", "logs") == b"cursor:logs"


def test_encode_u64_big_endian():
    assert encode_u64(1) == b"\x00" * 7 + b"\x01"
    assert encode_u64(0x0102030405060708) == bytes(range(1, 9))


@pytest.mark.parametrize("value", [0, 1, 255, 2**32, 2**64 - 1])
def test_u64_round_trip(value):
    assert decode_u64(encode_u64(value)) == value


def test_encode_u64_rejects_negative():
    with pytest.raises(OverflowError):
        encode_u64(-1)


def test_decode_u64_wrong_length_is_zero():
    assert decode_u64(None) == 0
    assert decode_u64(b"\x01\x02") == 0
    assert decode_u64(b"\x01" * 9) == 0