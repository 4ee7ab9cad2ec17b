# netbeacon

`netbeacon` holds the building blocks of a network monitoring beacon: the
agent that sits inside a network, probes devices, buffers what it collects
while the platform cannot be reached, and reports its own health.

It uses only the Python standard library.

## What is inside

| Module | Purpose |
| --- | --- |
| `netbeacon.safedial` | SSRF-safe dialing. Every resolved address is checked against a block-list (loopback, link-local/instance metadata, multicast, broadcast, unspecified); DNS is resolved exactly once. |
| `netbeacon.redaction` | A logging handler that scrubs bootstrap tokens, data keys, CSRs and other secrets from log records, and a one-line JSON formatter. |
| `netbeacon.probe` | Device latency probe: TCP connects on ports 22, 161, 80 (first success wins), median of N samples, plus a scheduler. |
| `netbeacon.store.schema` | Bucket names (`flows`, `logs`, `snmp`, `configs`), time-ordered UUIDv7 record keys, meta encoding. |
| `netbeacon.store.store` | The SQLite-backed store-and-forward buffer with per-bucket byte and record counters. |
| `netbeacon.store.evict` | Size and age cap enforcement. |
| `netbeacon.store.replay` | FIFO replay with a persistent cursor and an optional rate limiter. |
| `netbeacon.metrics.registry` | A small Prometheus-style registry and the beacon's eighteen instruments. |
| `netbeacon.metrics.server` | An HTTP server for `/metrics` and `/healthz`, loopback by default. |
| `netbeacon.mesh.mdm` | Building and writing the Linux WARP MDM enrollment file. |

## Refusing dangerous destinations

```python
from netbeacon.safedial import dial, is_forbidden

is_forbidden("169.254.169.254")    # True: cloud metadata endpoint
is_forbidden("::ffff:127.0.0.1")   # True: IPv4-mapped loopback is unmapped first
is_forbidden("10.0.0.5")           # False: private address space is allowed

sock = dial("tcp", "10.0.0.5", 22, timeout=2.0)
sock.close()
```

`dial` and `Dialer.dial` raise `ForbiddenIPError`, `DNSLookupError`,
`EmptyResolveError` or `BadPortError` when policy refuses a target; all derive
from `SafeDialError`. Connection failures surface as `OSError`. If a hostname
resolves to several addresses and any one is forbidden, the whole dial is
refused; otherwise the first address is dialled as an IP literal.
`Dialer(resolver, connector)` lets you supply your own resolver (with
`lookup_ip(network, host)`) and connector (with
`connect(network, address, timeout)`); the defaults are `SystemResolver` and
`SocketConnector`.

## Keeping secrets out of logs

```python
import logging
from netbeacon.redaction import JsonFormatter, RedactingHandler, redact_message

inner = logging.StreamHandler()
inner.setFormatter(JsonFormatter())
logger = logging.getLogger("beacon")
logger.addHandler(RedactingHandler(inner))

logger.warning("enroll start", extra={"bootstrap_token": "token"})
# ... "bootstrap_token":"[REDACTED]" ...

redact_message("token nbb_leaked_abcdef0123456789abcdef accepted")
# 'token [REDACTED] accepted'
```

Attributes passed through `extra=` whose key is sensitive (`bootstrap_token`,
`dek`, `data_key`, `data_key_b64`, `csr_pem`, `beacon_key`, `private_key`,
`Authorization`, ...) become `[REDACTED]`; nested mappings are scrubbed the same
way, and the message and string values are swept for `nbb_` tokens.
`RedactingHandler.with_attrs(...)` and `with_group(name)` return handlers with
bound attributes or a group path. `contains_token_pattern(s)` reports whether
a string holds something token-shaped.

## Buffering data while offline

```python
from netbeacon.store.schema import Bucket
from netbeacon.store.store import Store, default_options

with Store.open("/var/lib/netbeacon", default_options()) as store:
    key = store.put(Bucket.LOGS, b"hello")
    store.get(Bucket.LOGS, key)     # b'hello'
    store.count(Bucket.LOGS)        # 1
    store.bytes_used(Bucket.LOGS)   # 5
```

The store is a single SQLite file, `beacon-state.db`, in the state directory.
`items(bucket)` lists records oldest first, `delete(bucket, key)` removes one,
and `total_evictable_bytes()` sums `flows`, `logs` and `snmp`. Unknown buckets
raise `InvalidBucketError`; use after `close()` raises `StoreClosedError`. If
the file cannot be opened as a database, it is renamed aside to
`beacon-state.db.broken.<unix>.db`, a fresh store is created, and
`store.recovered_from` names the renamed file.

### Eviction

`StoreOptions(max_bytes, max_age, open_timeout)` sets the caps; zero values
take the defaults of 5 GiB, 14 days and 5 seconds.

```python
from netbeacon.store.evict import evict_if_needed, evict_last

result = evict_if_needed(store)   # EvictionResult
result.reason                     # "bytes_cap", "age_cap", "both" or ""
evict_last(store)                 # datetime of the last run, or None
```

Records are deleted oldest first from `flows`, then `logs`, then `snmp` until
both caps hold. `configs` is never evicted.

### Replay

```python
from netbeacon.store.replay import RateLimiter, replay

stats = replay(store, Bucket.LOGS, send=lambda key, payload: upload(payload),
               max_records=100, limiter=RateLimiter(rate=50, burst=10))
stats.delivered, stats.bytes_delivered, stats.last_error
```

Each delivered record is deleted and the cursor advanced in one transaction.
If `send` raises, replay stops, the record stays, and the exception is in
`stats.last_error`. Setting the `cancel` event raises `ReplayCancelledError`,
carrying the stats so far. `cursor(store, bucket)` and
`reset_cursor(store, bucket)` read and clear the cursor.

## Probing devices

```python
from netbeacon.probe import NoSamplesError, ProbeOptions, Scheduler, median_probe

try:
    result = median_probe("10.0.0.5", ProbeOptions(sample_count=3))
    result.median_latency_ms, result.port_hit
except NoSamplesError as exc:
    exc.result.probe_count   # 0

scheduler = Scheduler(interval=300.0)
scheduler.set_devices(["10.0.0.1", "10.0.0.2"])
scheduler.run_once()
scheduler.snapshot()   # {ip: ProbeResult}
```

`Scheduler.run(stop)` runs a cycle every interval until the `threading.Event`
is set, starting after the first interval. Every connect goes through
`netbeacon.safedial`.

## Metrics

`netbeacon.metrics.registry` defines `Counter`, `Gauge`, `Histogram`, the
`Registry` that renders them in the Prometheus text format, the shared
`REGISTRY` holding the beacon's instruments (for example
`POLL_TOTAL.labels("modified").inc()`), and `set_build_info(version, commit)`.

```python
from netbeacon.metrics.server import MetricsServer

server = MetricsServer("127.0.0.1:0")
server.start()
server.addr()    # e.g. "127.0.0.1:40123"
server.close()
```

The server serves `/metrics` and `/healthz` in a background thread and logs a
warning when the bind address is not loopback (see `is_loopback_bind`).

## WARP MDM file

```python
from netbeacon.mesh.mdm import (
    LINUX_MDM_PATH, derive_team_slug, ensure_access_suffix,
    render_mdm_xml, write_file_atomic_0600,
)

slug = derive_team_slug("https://netbrain-dev.cloudflareaccess.com/")   # 'netbrain-dev'
client_id = ensure_access_suffix("abc")                                 # 'abc.access'
write_file_atomic_0600(LINUX_MDM_PATH, render_mdm_xml(slug, client_id, "secret"))
```

The file is written through a same-directory temp file and rename, at mode
0600 throughout.

## What this package does not do

- It does not drive `warp-cli` or the WARP service: there is no status
  polling, no `mdm refresh`, and no service restart. `netbeacon.mesh.mdm` only
  builds and writes the enrollment file.
- It has no command-line program or daemon that wires these pieces together,
  and nothing that uploads buffered records to a platform; `replay` calls the
  send function you give it.