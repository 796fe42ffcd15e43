"""In-process metric vectors and the metric set exposed by the exporter."""

from __future__ import annotations

import math
import threading
from collections.abc import Iterable, Sequence

LabelValues = tuple[str, ...]

# JSON paths read from RTCP, RTP agent and horaclifix reports.
# An integer element selects an array item.
RTCP_PATHS: tuple[tuple[str | int, ...], ...] = (
    ("report_blocks", 0, "fraction_lost"),
    ("report_blocks", 0, "packets_lost"),
    ("report_blocks", 0, "ia_jitter"),
    ("report_blocks", 0, "dlsr"),
    ("report_blocks_xr", "fraction_lost"),
    ("report_blocks_xr", "fraction_discard"),
    ("report_blocks_xr", "burst_density"),
    ("report_blocks_xr", "gap_density"),
    ("report_blocks_xr", "burst_duration"),
    ("report_blocks_xr", "gap_duration"),
    ("report_blocks_xr", "round_trip_delay"),
    ("report_blocks_xr", "end_system_delay"),
)

RTP_PATHS: tuple[tuple[str, ...], ...] = (
    ("DELTA",),
    ("JITTER",),
    ("MOS",),
    ("PACKET_LOSS",),
)

HORACLIFIX_PATHS: tuple[tuple[str, ...], ...] = tuple(
    (key,)
    for key in (
        "NAME",
        "INC_REALM",
        "OUT_REALM",
        "INC_MOS",
        "INC_RVAL",
        "INC_RTP_PK",
        "INC_RTP_PK_LOSS",
        "INC_RTP_AVG_JITTER",
        "INC_RTP_MAX_JITTER",
        "INC_RTCP_PK",
        "INC_RTCP_PK_LOSS",
        "INC_RTCP_AVG_JITTER",
        "INC_RTCP_MAX_JITTER",
        "INC_RTCP_AVG_LAT",
        "INC_RTCP_MAX_LAT",
        "OUT_MOS",
        "OUT_RVAL",
        "OUT_RTP_PK",
        "OUT_RTP_PK_LOSS",
        "OUT_RTP_AVG_JITTER",
        "OUT_RTP_MAX_JITTER",
        "OUT_RTCP_PK",
        "OUT_RTCP_PK_LOSS",
        "OUT_RTCP_AVG_JITTER",
        "OUT_RTCP_MAX_JITTER",
        "OUT_RTCP_AVG_LAT",
        "OUT_RTCP_MAX_LAT",
    )
)


def _format_value(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if value.is_integer() and abs(value) < 1e15:
        return str(int(value))
    return repr(value)


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


class _MetricVec:
    """A named family of samples keyed by label values."""

    kind = "untyped"

    def __init__(self, name: str, help: str, labelnames: Iterable[str]):
        self.name = name
        self.help = help
        self.labelnames: LabelValues = tuple(labelnames)
        self._values: dict[LabelValues, float] = {}
        self._lock = threading.Lock()

    def _key(self, labels: Sequence[str]) -> LabelValues:
        key = tuple(str(v) for v in labels)
        if len(key) != len(self.labelnames):
            raise ValueError(
                f"{self.name}: expected {len(self.labelnames)} label values, got {len(key)}"
            )
        return key

    def get(self, labels: Sequence[str]) -> float:
        """Return the sample for the given label values; KeyError if unset."""
        key = self._key(labels)
        with self._lock:
            return self._values[key]

    def samples(self) -> dict[LabelValues, float]:
        """Return a snapshot of all samples."""
        with self._lock:
            return dict(self._values)

    def render(self) -> str:
        lines = [f"# HELP {self.name} {self.help}", f"# TYPE {self.name} {self.kind}"]
        for key, value in self.samples().items():
            if key:
                pairs = ",".join(
                    f'{n}="{_escape(v)}"' for n, v in zip(self.labelnames, key)
                )
                lines.append(f"{self.name}{{{pairs}}} {_format_value(value)}")
            else:
                lines.append(f"{self.name} {_format_value(value)}")
        return "\n".join(lines) + "\n"


class GaugeVec(_MetricVec):
    """A gauge family: each sample holds the last value set."""

    kind = "gauge"

    def __init__(self, name, help, labelnames):
        super().__init__(name, help, labelnames)

    def set(self, labels, value):
        key = self._key(labels)
        with self._lock:
            self._values[key] = float(value)

    def get(self, labels):
        return super().get(labels)

    def samples(self):
        return super().samples()


class CounterVec(_MetricVec):
    """A counter family: each sample only goes up."""

    kind = "counter"

    def __init__(self, name, help, labelnames):
        super().__init__(name, help, labelnames)

    def inc(self, labels, amount=1.0):
        if amount < 0:
            raise ValueError("counter cannot decrease in value")
        key = self._key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + float(amount)

    def get(self, labels):
        return super().get(labels)

    def samples(self):
        return super().samples()


_DIR3 = ("target_name", "direction", "node_id")
_HORACLIFIX = ("sbc_name", "direction", "inc_realm", "out_realm")


class Metrics:
    """The full set of metric families the exporter maintains."""

    def __init__(self):
        # HEP, SIP
        self.packets_by_type = CounterVec(
            "heplify_packets_total", "Total packets by HEP type", ("node_id", "type"))
        self.packets_by_size = GaugeVec(
            "heplify_packets_size", "Packet size by HEP type", ("node_id", "type"))
        self.method_responses = CounterVec(
            "heplify_method_response", "SIP method and response counter",
            ("target_name", "direction", "node_id", "response", "method"))
        self.reason_cause = CounterVec(
            "heplify_reason_isup_total", "ISUP Q.850 cause from reason header",
            ("target_name", "cause", "method"))
        self.srd = GaugeVec(
            "heplify_kpi_srd", "SIP Session Request Delay KPI", ("target_name", "node_id"))
        self.rrd = GaugeVec(
            "heplify_kpi_rrd", "SIP Registration Request Delay", ("target_name", "node_id"))
        self.log_alert = CounterVec(
            "heplify_log_alert_total", "Log errors and warnings", ("node_id", "level", "host"))

        # X-RTP-Stat
        self.xrtp_cs = GaugeVec("heplify_xrtp_cs", "XRTP call setup time", ("target_name",))
        self.xrtp_jir = GaugeVec("heplify_xrtp_jir", "XRTP received jitter", ("target_name",))
        self.xrtp_jis = GaugeVec("heplify_xrtp_jis", "XRTP sent jitter", ("target_name",))
        self.xrtp_plr = GaugeVec("heplify_xrtp_plr", "XRTP received packets lost", ("target_name",))
        self.xrtp_pls = GaugeVec("heplify_xrtp_pls", "XRTP sent packets lost", ("target_name",))
        self.xrtp_dle = GaugeVec("heplify_xrtp_dle", "XRTP mean rtt", ("target_name",))
        self.xrtp_mos = GaugeVec("heplify_xrtp_mos", "XRTP mos", ("target_name",))

        # RTCP
        self.rtcp_fraction_lost = GaugeVec(
            "heplify_rtcp_fraction_lost", "RTCP fraction lost", _DIR3)
        self.rtcp_packets_lost = GaugeVec(
            "heplify_rtcp_packets_lost", "RTCP packets lost", _DIR3)
        self.rtcp_jitter = GaugeVec("heplify_rtcp_jitter", "RTCP jitter", _DIR3)
        self.rtcp_dlsr = GaugeVec("heplify_rtcp_dlsr", "RTCP dlsr", _DIR3)

        # RTCP-XR
        self.rtcpxr_fraction_lost = GaugeVec(
            "heplify_rtcpxr_fraction_lost", "RTCPXR fraction lost", _DIR3)
        self.rtcpxr_fraction_discard = GaugeVec(
            "heplify_rtcpxr_fraction_discard", "RTCPXR fraction discard", _DIR3)
        self.rtcpxr_burst_density = GaugeVec(
            "heplify_rtcpxr_burst_density", "RTCPXR burst density", _DIR3)
        self.rtcpxr_burst_duration = GaugeVec(
            "heplify_rtcpxr_burst_duration", "RTCPXR burst duration", _DIR3)
        self.rtcpxr_gap_density = GaugeVec(
            "heplify_rtcpxr_gap_density", "RTCPXR gap density", _DIR3)
        self.rtcpxr_gap_duration = GaugeVec(
            "heplify_rtcpxr_gap_duration", "RTCPXR gap duration", _DIR3)
        self.rtcpxr_round_trip_delay = GaugeVec(
            "heplify_rtcpxr_round_trip_delay", "RTCPXR round trip delay", _DIR3)
        self.rtcpxr_end_system_delay = GaugeVec(
            "heplify_rtcpxr_end_system_delay", "RTCPXR end system delay", _DIR3)

        # VQ-RTCP-XR
        self.vqrtcpxr_nlr = GaugeVec(
            "heplify_vqrtcpxr_nlr", "VQ-RTCPXR network packet loss rate", ("node_id",))
        self.vqrtcpxr_jdr = GaugeVec(
            "heplify_vqrtcpxr_jdr", "VQ-RTCPXR jitter buffer discard rate", ("node_id",))
        self.vqrtcpxr_iaj = GaugeVec(
            "heplify_vqrtcpxr_iaj", "VQ-RTCPXR interarrival jitter", ("node_id",))
        self.vqrtcpxr_moslq = GaugeVec(
            "heplify_vqrtcpxr_moslq", "VQ-RTCPXR MOS listening voice quality", ("node_id",))
        self.vqrtcpxr_moscq = GaugeVec(
            "heplify_vqrtcpxr_moscq", "VQ-RTCPXR MOS conversation voice quality", ("node_id",))

        # RTP agent
        self.rtpagent_delta = GaugeVec("heplify_rtpagent_delta", "RTPAgent delta", ("node_id",))
        self.rtpagent_jitter = GaugeVec("heplify_rtpagent_jitter", "RTPAgent jitter", ("node_id",))
        self.rtpagent_mos = GaugeVec("heplify_rtpagent_mos", "RTPAgent mos", ("node_id",))
        self.rtpagent_packets_lost = GaugeVec(
            "heplify_rtpagent_packets_lost", "RTPAgent packets lost", ("node_id",))

        # Horaclifix
        self.horaclifix_rtp_mos = GaugeVec("horaclifix_rtp_mos", "Incoming RTP MOS", _HORACLIFIX)
        self.horaclifix_rtp_rval = GaugeVec("horaclifix_rtp_rval", "Incoming RTP rVal", _HORACLIFIX)
        self.horaclifix_rtp_packets = GaugeVec(
            "horaclifix_rtp_packets", "Incoming RTP packets", _HORACLIFIX)
        self.horaclifix_rtp_lost_packets = GaugeVec(
            "horaclifix_rtp_lost_packets", "Incoming RTP lostPackets", _HORACLIFIX)
        self.horaclifix_rtp_avg_jitter = GaugeVec(
            "horaclifix_rtp_avg_jitter", "Incoming RTP avgJitter", _HORACLIFIX)
        self.horaclifix_rtp_max_jitter = GaugeVec(
            "horaclifix_rtp_max_jitter", "Incoming RTP maxJitter", _HORACLIFIX)
        self.horaclifix_rtcp_packets = GaugeVec(
            "horaclifix_rtcp_packets", "Incoming RTCP packets", _HORACLIFIX)
        self.horaclifix_rtcp_lost_packets = GaugeVec(
            "horaclifix_rtcp_lost_packets", "Incoming RTCP lostPackets", _HORACLIFIX)
        self.horaclifix_rtcp_avg_jitter = GaugeVec(
            "horaclifix_rtcp_avg_jitter", "Incoming RTCP avgJitter", _HORACLIFIX)
        self.horaclifix_rtcp_max_jitter = GaugeVec(
            "horaclifix_rtcp_max_jitter", "Incoming RTCP maxJitter", _HORACLIFIX)
        self.horaclifix_rtcp_avg_lat = GaugeVec(
            "horaclifix_rtcp_avg_lat", "Incoming RTCP avgLat", _HORACLIFIX)
        self.horaclifix_rtcp_max_lat = GaugeVec(
            "horaclifix_rtcp_max_lat", "Incoming RTCP maxLat", _HORACLIFIX)

    def _families(self) -> list[_MetricVec]:
        return [v for v in vars(self).values() if isinstance(v, _MetricVec)]

    def render(self):
        """Return all families in the Prometheus text exposition format."""
        return "".join(family.render() for family in self._families())