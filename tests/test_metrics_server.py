import logging
import urllib.error
import urllib.request

import pytest

from netbeacon.metrics.registry import (
    DEK_VERIFY_FAILED_TOTAL,
    ENROLLMENT_TOTAL,
    set_build_info,
)
from netbeacon.metrics.server import MetricsServer, is_loopback_bind


def fetch_body(url: str) -> str:
    with urllib.request.urlopen(url, timeout=2) as resp:
        return resp.read().decode()


@pytest.fixture
def server():
    s = MetricsServer("127.0.0.1:0")
    s.start()
    yield s
    s.close()


class _ListHandler(logging.Handler):
    def __init__(self):
        super().__init__(level=logging.DEBUG)
        self.records = []

    def emit(self, record):
        self.records.append(record)


def _capturing_logger(name):
    logger = logging.getLogger(name)
    logger.setLevel(logging.INFO)
    logger.propagate = False
    handler = _ListHandler()
    logger.handlers = [handler]
    return logger, handler


def test_server_start_close_round_trip(server):
    ENROLLMENT_TOTAL.labels("success").inc()
    DEK_VERIFY_FAILED_TOTAL.inc()
    set_build_info("v0.1.0-test", "deadbeef")

    body = fetch_body(f"http://{server.addr()}/metrics")
    assert "beacon_enrollment_total" in body
    assert "beacon_dek_verify_failed_total" in body
    assert 'beacon_build_info{commit="deadbeef",version="v0.1.0-test"}' in body


def test_healthz_endpoint(server):
    assert fetch_body(f"http://{server.addr()}/healthz") == "ok\n"


def test_unknown_path_is_404(server):
    with pytest.raises(urllib.error.HTTPError) as info:
        fetch_body(f"http://{server.addr()}/nope")
    assert info.value.code == 404


def test_close_idempotent():
    s = MetricsServer("127.0.0.1:0")
    assert s.close() is None  # close before start is a no-op
    s.start()
    addr = s.addr()
    assert fetch_body(f"http://{addr}/healthz") == "ok\n"
    s.close()
    s.close()
    with pytest.raises(OSError):
        fetch_body(f"http://{addr}/healthz")


def test_addr_before_start_is_bind_addr():
    s = MetricsServer("127.0.0.1:0")
    assert s.addr() == "127.0.0.1:0"


def test_addr_reports_real_port(server):
    host, _, port = server.addr().rpartition(":")
    assert host == "127.0.0.1"
    assert int(port) > 0


def test_server_defaults_to_loopback():
    assert MetricsServer("").bind_addr == "127.0.0.1:9090"
    assert MetricsServer().bind_addr == "127.0.0.1:9090"


def test_bind_failure_raises(server):
    other = MetricsServer(server.addr())
    with pytest.raises(OSError):
        other.start()


@pytest.mark.parametrize(
    "addr", ["127.0.0.1:9090", "127.0.0.1:0", "localhost:9090", "[::1]:9090"]
)
def test_is_loopback_bind_recognizes_loopback(addr):
    assert is_loopback_bind(addr) is True


@pytest.mark.parametrize(
    "addr",
    [
        "0.0.0.0:9090",
        "[::]:9090",
        "192.168.1.5:9090",
        "10.0.0.1:9090",
        ":9090",
        "example.com:9090",
        "not-an-address",
    ],
)
def test_is_loopback_bind_recognizes_non_loopback(addr):
    assert is_loopback_bind(addr) is False


def test_start_emits_warn_on_non_loopback():
    logger, handler = _capturing_logger("test.metrics.nonloopback")
    s = MetricsServer("0.0.0.0:0", logger=logger)
    s.start()
    try:
        _, _, port = s.addr().rpartition(":")
        assert int(port) > 0
        assert fetch_body(f"http://127.0.0.1:{port}/healthz") == "ok\n"
        messages = [r.getMessage() for r in handler.records]
        assert "metrics.non_loopback_bind" in messages
        record = handler.records[messages.index("metrics.non_loopback_bind")]
        assert record.levelno == logging.WARNING
        assert record.risk == "unauthenticated_metrics_exposed"
        assert record.addr == "0.0.0.0:0"
    finally:
        s.close()


def test_start_silent_on_loopback():
    logger, handler = _capturing_logger("test.metrics.loopback")
    s = MetricsServer("127.0.0.1:0", logger=logger)
    s.start()
    try:
        assert all("non_loopback_bind" not in r.getMessage() for r in handler.records)
        assert fetch_body(f"http://{s.addr()}/healthz") == "ok\n"
    finally:
        s.close()