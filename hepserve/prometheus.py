"""Metric exporter fed with decoded HEP packets."""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

from .dissect import (
    dissect_horaclifix_stats,
    dissect_rtcp_stats,
    dissect_rtcpxr_stats,
    dissect_rtp_stats,
    dissect_xrtp_stats,
)
from .registry import Metrics
from .targets import TargetConfig, parse_targets, reload_targets
from .xr import extract_xr

log = logging.getLogger(__name__)

INVITE = "INVITE"
REGISTER = "REGISTER"
CACHE_ENTRIES = 1_000_000

_REQUEST_PAIRS = frozenset({(INVITE, INVITE), (REGISTER, REGISTER)})
_ANSWERS = frozenset({"180", "181", "182", "183", "200"})
_B2B_SUFFIX = "_b2b-1"
_U64 = (1 << 64) - 1


@dataclass
class SipInfo:
    """The SIP fields the exporter looks at."""

    first_method: str = ""
    cseq_method: str = ""
    reason_val: str = ""
    rtp_stat_val: str = ""


@dataclass
class MetricPacket:
    """A decoded HEP packet as seen by the exporter."""

    node_name: str = ""
    proto_string: str = ""
    proto_type: int = 0
    payload: str = ""
    src_ip: str = ""
    dst_ip: str = ""
    sid: str = ""
    timestamp_ns: int = 0
    target_name: str = ""
    sip: SipInfo | None = None


class _Cache:
    """A bounded, thread-safe map that forgets its oldest entries first."""

    def __init__(self, max_entries: int):
        self._max = max_entries
        self._data: OrderedDict[str, int | None] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> int | None:
        with self._lock:
            return self._data.get(key)

    def has(self, key: str) -> bool:
        with self._lock:
            return key in self._data

    def set(self, key: str, value: int | None) -> None:
        with self._lock:
            self._data[key] = value
            self._data.move_to_end(key)
            while len(self._data) > self._max:
                self._data.popitem(last=False)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)


def _strip_b2b(call_id: str) -> str:
    while call_id.endswith(_B2B_SUFFIX):
        call_id = call_id[: -len(_B2B_SUFFIX)]
    return call_id


class MetricsExporter:
    """Update metric families from HEP packets, labelled by configured targets."""

    def __init__(self, target_ip, target_name, config_path, metrics):
        self.metrics: Metrics = metrics
        self.config_path = config_path
        self._lock = threading.Lock()
        self._cache = _Cache(CACHE_ENTRIES)
        try:
            targets = parse_targets(target_ip, target_name)
        except ValueError:
            log.info("please give every PromTargetIP a unique IP and PromTargetName a unique name")
            raise
        if targets.empty:
            log.info("expose metrics without or unbalanced targets")
        else:
            for number, (ip, name) in enumerate(zip(targets.ips, targets.names), 1):
                log.info("prometheus tag assignment %d: %s -> %s", number, ip, name)
        self._targets: TargetConfig = targets

    def handle(self, pkt):
        """Update the metrics from one packet."""
        metrics = self.metrics
        with self._lock:
            targets = self._targets

        payload_len = len(pkt.payload.encode("utf-8", "surrogatepass"))
        metrics.packets_by_type.inc((pkt.node_name, pkt.proto_string))
        metrics.packets_by_size.set((pkt.node_name, pkt.proto_string), payload_len)

        src_target = dst_target = ""
        src_hit = dst_hit = False
        if not targets.empty:
            found = targets.lookup(pkt.src_ip)
            if found is not None:
                src_target, src_hit = found, True
            found = targets.lookup(pkt.dst_ip)
            if found is not None:
                dst_target, dst_hit = found, True

        if pkt.sip is not None and pkt.proto_type == 1:
            self._handle_sip(pkt, pkt.sip, targets.empty, src_target, src_hit, dst_target, dst_hit)
        elif pkt.proto_type == 5:
            if src_hit:
                dissect_rtcp_stats(metrics, src_target, "src", pkt.node_name, pkt.payload)
            if dst_hit:
                dissect_rtcp_stats(metrics, dst_target, "dst", pkt.node_name, pkt.payload)
            if not src_hit and not dst_hit:
                dissect_rtcp_stats(metrics, "unknown", "", pkt.node_name, pkt.payload)
        elif pkt.proto_type == 34:
            dissect_rtp_stats(metrics, pkt.node_name, pkt.payload)
        elif pkt.proto_type == 35:
            dissect_rtcpxr_stats(metrics, pkt.node_name, pkt.payload)
        elif pkt.proto_type == 38:
            dissect_horaclifix_stats(metrics, pkt.payload)

    def _handle_sip(self, pkt, sip, empty, src_target, src_hit, dst_target, dst_hit):
        metrics = self.metrics
        cache = self._cache
        node = pkt.node_name
        first, cseq = sip.first_method, sip.cseq_method
        has_cause = "850" in sip.reason_val

        if not empty:
            if src_hit:
                metrics.method_responses.inc((src_target, "src", node, first, cseq))
                if has_cause:
                    cause = extract_xr("cause=", sip.reason_val)
                    metrics.reason_cause.inc((src_target, cause, first))
            if dst_hit:
                metrics.method_responses.inc((dst_target, "dst", node, first, cseq))
            if not src_hit and not dst_hit:
                metrics.method_responses.inc(("unknown", "", node, first, cseq))

        skip = not dst_target and not src_target and not empty
        call_id = _strip_b2b(pkt.sid)
        ptn = pkt.timestamp_ns & _U64

        if not skip and (first, cseq) in _REQUEST_PAIRS:
            stored = cache.get(call_id)
            if stored is None or ptn < stored:
                cache.set(call_id, ptn)
                cache.set(pkt.src_ip + call_id, ptn)

        if not skip and cseq in (INVITE, REGISTER) and first in _ANSWERS:
            did = pkt.dst_ip + call_id
            stored = cache.get(did)
            if stored is not None:
                delay = (ptn - stored) & _U64
                target = dst_target or src_target
                if cseq == INVITE:
                    metrics.srd.set((target, node), delay)
                else:
                    metrics.rrd.set((target, node), delay)
                    cache.delete(call_id)
                cache.delete(did)

        if empty:
            key = call_id + first + cseq
            if cache.has(key):
                return
            cache.set(key, None)
            metrics.method_responses.inc((pkt.target_name, "", node, first, cseq))
            if has_cause:
                cause = extract_xr("cause=", sip.reason_val)
                metrics.reason_cause.inc((src_target, cause, first))

        if sip.rtp_stat_val:
            dissect_xrtp_stats(metrics, src_target, sip.rtp_stat_val)

    def expose(self, packets: Iterable[MetricPacket]):
        """Handle every packet the iterable yields."""
        for pkt in packets:
            self.handle(pkt)

    def reload(self):
        """Re-read the target assignments from the configuration file."""
        if self.config_path is None:
            log.error("no configuration file to reload targets from")
            return
        try:
            text = Path(self.config_path).read_bytes().decode("utf-8", "replace")
        except OSError as err:
            log.error("%s", err)
            return
        try:
            targets = reload_targets(text)
        except ValueError as err:
            log.info("%s", err)
            log.info("please give every PromTargetIP a unique IP and PromTargetName a unique name")
            return
        with self._lock:
            self._targets = targets
        log.info("successfully reloaded PromTargetIP: %r", list(targets.ips))
        log.info("successfully reloaded PromTargetName: %r", list(targets.names))