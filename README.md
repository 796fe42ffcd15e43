# hepserve

Building blocks for a HEP (Homer Encapsulation Protocol) capture server:

- **Listeners** that accept HEP packets over UDP, TCP, TLS and WebSocket and
  put each raw packet on a queue.
- **Metrics** for SIP, RTCP, RTCP-XR, VQ-RTCPXR, X-RTP-Stat, RTP agent and
  Horaclifix reports, kept in Prometheus-style gauges and counters and
  rendered in the text exposition format.
- **SQL templates** for PostgreSQL capture tables partitioned by time.

## Modules

| Module | What it holds |
| --- | --- |
| `hepserve.registry` | `GaugeVec`, `CounterVec` and the `Metrics` collection with `render()` |
| `hepserve.xr` | `extract_xr`, `split_comma_int`, `norm_max` helpers for quality reports |
| `hepserve.dissect` | `dissect_rtcp_stats`, `dissect_rtcpxr_stats`, `dissect_xrtp_stats`, `dissect_rtp_stats`, `dissect_horaclifix_stats` |
| `hepserve.targets` | `TargetConfig`, `parse_targets`, `reload_targets`, `cut_space` |
| `hepserve.prometheus` | `SipInfo`, `MetricPacket` and `MetricsExporter` |
| `hepserve.listener` | `HEPListener`, `HEPStats`, `WSFrame`, `parse_tls_version`, `websocket_accept_key`, `unmask`, `read_ws_frame` |
| `hepserve.sql_pg` | `PartitionTable`, the statement tuples and `partition_tables()` |

## Quality report helpers

```python
from hepserve.xr import extract_xr, split_comma_int

stats = "CS=0;PS=100;PR=100;PL=3,2;JI=10,12;"
loss = extract_xr("PL=", stats)          # "3,2"
received, sent = split_comma_int(loss)   # (3, 2)
```

`extract_xr` returns an empty string when the key is absent. `split_comma_int`
raises `SplitError` (a `ValueError`) when the text is not two comma separated
integers.

## Metrics

```python
from hepserve.registry import Metrics
from hepserve.dissect import dissect_xrtp_stats

metrics = Metrics()
dissect_xrtp_stats(metrics, "carrier-a", "CS=1200;PS=100;PR=100;PL=3,2;JI=10,12;DL=40,30,50;")
print(metrics.xrtp_mos.get(("carrier-a",)))
print(metrics.render())
```

`MetricsExporter(target_ip, target_name, config_path, metrics)` takes comma
separated target IP and target name lists (a `ValueError` is raised when their
lengths differ), maps packet source and destination addresses onto target
names and updates the metrics for every `MetricPacket` passed to `handle()` or
fed through `expose()`. For SIP packets it counts methods and responses, Q.850
reason causes, and the session and registration request delays. `reload()`
re-reads `PromTargetIP="..."` and `PromTargetName="..."` from the
configuration file at `config_path`.

## Listeners

```python
import queue
import threading
from hepserve.listener import HEPListener

packets = queue.Queue()
listener = HEPListener(packets)
threading.Thread(target=listener.serve_udp, args=("0.0.0.0:9060",), daemon=True).start()
# ... packets.get() yields raw HEP packets as bytes
listener.stop()
```

`serve_tcp`, `serve_tls` and `serve_ws` work the same way and block until
`stop()` is called; the bound addresses are recorded in `listener.addresses`.
Stream transports read length-prefixed HEP frames and close the connection on
a size outside 6 to 65507 bytes. `serve_tls(addr, cert_folder, min_version)`
uses the certificate and key kept in `cert_folder/hepserve/`, creating a
self-signed pair there when none exists. `parse_tls_version` accepts `"1.0"`,
`"1.1"`, `"1.2"` and `"1.3"` and falls back to TLS 1.2 otherwise. Packet
counts are kept in `listener.stats`.

## PostgreSQL templates

`hepserve.sql_pg.partition_tables()` returns the partitioned tables (log,
ISUP, report, RTCP, call, registration, default). Each `PartitionTable` gives
the statements to create the parent table, one partition and its indexes, to
list old partitions and to drop one. The statements carry the placeholders
`{{date}}`, `{{time}}`, `{{startTime}}`, `{{endTime}}` and `{{partName}}`.

## What this package does not do

- It does not decode HEP packets: the listeners deliver raw bytes, and
  building `MetricPacket` objects from them is left to the caller.
- It has no command or long-running server that wires listeners to the
  exporter, and no HTTP endpoint: `Metrics.render()` returns text for you to
  serve.
- It does not connect to any database. The PostgreSQL statements are
  templates only; nothing here fills them in, runs them on a schedule or
  drops old partitions, and there are no MySQL/MariaDB templates.