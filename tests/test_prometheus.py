import json

import pytest

from hepserve.prometheus import MetricPacket, MetricsExporter, SipInfo
from hepserve.registry import Metrics

NODE = "node1"


def make(target_ip="", target_name="", config_path=None):
    metrics = Metrics()
    return MetricsExporter(target_ip, target_name, config_path, metrics), metrics


def sip_pkt(first, cseq, src="10.0.0.1", dst="10.0.0.2", sid="call-1", ts=0, **sip_fields):
    return MetricPacket(
        node_name=NODE,
        proto_string="sip",
        proto_type=1,
        payload="SIP/2.0",
        src_ip=src,
        dst_ip=dst,
        sid=sid,
        timestamp_ns=ts,
        target_name="tn",
        sip=SipInfo(first_method=first, cseq_method=cseq, **sip_fields),
    )


def test_unbalanced_targets_raise():
    with pytest.raises(ValueError):
        MetricsExporter("10.0.0.1,10.0.0.2", "pbx", None, Metrics())


def test_packet_counters():
    exporter, metrics = make()
    pkt = sip_pkt("INVITE", "INVITE")
    exporter.handle(pkt)
    exporter.handle(sip_pkt("INVITE", "INVITE", sid="call-2"))
    assert metrics.packets_by_type.get((NODE, "sip")) == 2.0
    assert metrics.packets_by_size.get((NODE, "sip")) == len(pkt.payload)


def test_src_target_counts_responses():
    exporter, metrics = make("10.0.0.1", "pbx")
    exporter.handle(sip_pkt("INVITE", "INVITE"))
    assert metrics.method_responses.get(("pbx", "src", NODE, "INVITE", "INVITE")) == 1.0
    with pytest.raises(KeyError):
        metrics.method_responses.get(("pbx", "dst", NODE, "INVITE", "INVITE"))


def test_dst_target_counts_responses():
    exporter, metrics = make("10.0.0.2", "pbx")
    exporter.handle(sip_pkt("200", "INVITE"))
    assert metrics.method_responses.get(("pbx", "dst", NODE, "200", "INVITE")) == 1.0


def test_unknown_when_no_target_matches():
    exporter, metrics = make("10.0.0.9", "pbx")
    exporter.handle(sip_pkt("BYE", "BYE"))
    assert metrics.method_responses.get(("unknown", "", NODE, "BYE", "BYE")) == 1.0


def test_empty_targets_deduplicate():
    exporter, metrics = make()
    exporter.handle(sip_pkt("200", "INVITE"))
    exporter.handle(sip_pkt("200", "INVITE"))
    exporter.handle(sip_pkt("200", "INVITE", sid="call-2"))
    assert metrics.method_responses.get(("tn", "", NODE, "200", "INVITE")) == 2.0


def test_session_request_delay():
    exporter, metrics = make("10.0.0.1", "pbx")
    t1, t2 = 1_000, 4_000
    exporter.handle(sip_pkt("INVITE", "INVITE", ts=t1))
    exporter.handle(sip_pkt("180", "INVITE", src="10.0.0.2", dst="10.0.0.1", ts=t2))
    assert metrics.srd.get(("pbx", NODE)) == t2 - t1


def test_srd_uses_earliest_invite():
    exporter, metrics = make("10.0.0.1", "pbx")
    exporter.handle(sip_pkt("INVITE", "INVITE", ts=5_000))
    exporter.handle(sip_pkt("INVITE", "INVITE", ts=2_000))
    exporter.handle(sip_pkt("183", "INVITE", src="10.0.0.2", dst="10.0.0.1", ts=9_000))
    assert metrics.srd.get(("pbx", NODE)) == 9_000 - 2_000


def test_b2b_suffix_is_stripped():
    exporter, metrics = make("10.0.0.1", "pbx")
    exporter.handle(sip_pkt("INVITE", "INVITE", sid="abc_b2b-1_b2b-1", ts=100))
    exporter.handle(sip_pkt("200", "INVITE", src="10.0.0.2", dst="10.0.0.1", sid="abc", ts=700))
    assert metrics.srd.get(("pbx", NODE)) == 700 - 100


def test_registration_delay_measured_once():
    exporter, metrics = make("10.0.0.1", "pbx")
    exporter.handle(sip_pkt("REGISTER", "REGISTER", ts=10))
    exporter.handle(sip_pkt("200", "REGISTER", src="10.0.0.2", dst="10.0.0.1", ts=60))
    exporter.handle(sip_pkt("200", "REGISTER", src="10.0.0.2", dst="10.0.0.1", ts=999))
    assert metrics.rrd.get(("pbx", NODE)) == 60 - 10
    assert metrics.srd.samples() == {}


def test_unknown_endpoints_skip_delay():
    exporter, metrics = make("10.0.0.9", "pbx")
    exporter.handle(sip_pkt("INVITE", "INVITE", ts=1))
    exporter.handle(sip_pkt("200", "INVITE", src="10.0.0.2", dst="10.0.0.1", ts=5))
    assert metrics.srd.samples() == {}


def test_reason_cause():
    exporter, metrics = make("10.0.0.1", "pbx")
    exporter.handle(sip_pkt("BYE", "BYE", reason_val='Q.850;cause=16;text="Normal"'))
    assert metrics.reason_cause.get(("pbx", "16", "BYE")) == 1.0


def test_xrtp_stats_use_src_target():
    exporter, metrics = make("10.0.0.1", "pbx")
    exporter.handle(sip_pkt("BYE", "BYE", rtp_stat_val="PL=1,2;PR=10;PS=10"))
    assert metrics.xrtp_plr.get(("pbx",)) == 1.0
    assert metrics.xrtp_pls.get(("pbx",)) == 2.0


def test_rtcp_dispatch():
    exporter, metrics = make("10.0.0.1", "pbx")
    payload = json.dumps({"report_blocks": [{"fraction_lost": 3}]})
    exporter.handle(MetricPacket(node_name=NODE, proto_string="rtcp", proto_type=5,
                                 payload=payload, src_ip="10.0.0.1", dst_ip="10.0.0.5"))
    exporter.handle(MetricPacket(node_name=NODE, proto_string="rtcp", proto_type=5,
                                 payload=payload, src_ip="10.0.0.7", dst_ip="10.0.0.5"))
    assert metrics.rtcp_fraction_lost.get(("pbx", "src", NODE)) == 3.0
    assert metrics.rtcp_fraction_lost.get(("unknown", "", NODE)) == 3.0


def test_vq_report_dispatch():
    exporter, metrics = make()
    exporter.handle(MetricPacket(node_name=NODE, proto_string="log", proto_type=35,
                                 payload="NLR=1.5 JDR=0.25"))
    assert metrics.vqrtcpxr_nlr.get((NODE,)) == 1.5
    assert metrics.vqrtcpxr_jdr.get((NODE,)) == 0.25


def test_expose_handles_every_packet():
    exporter, metrics = make()
    exporter.expose([sip_pkt("INVITE", "INVITE", sid=f"c{i}") for i in range(3)])
    assert metrics.packets_by_type.get((NODE, "sip")) == 3.0


def test_reload_replaces_targets(tmp_path):
    config = tmp_path / "server.toml"
    config.write_text('PromTargetIP = "10.0.0.9"\nPromTargetName = "edge"\n')
    exporter, metrics = make("10.0.0.1", "pbx", config)
    exporter.reload()
    exporter.handle(sip_pkt("BYE", "BYE", src="10.0.0.9"))
    assert metrics.method_responses.get(("edge", "src", NODE, "BYE", "BYE")) == 1.0


def test_reload_invalid_keeps_targets(tmp_path):
    config = tmp_path / "server.toml"
    config.write_text('PromTargetIP = "10.0.0.9,10.0.0.8"\nPromTargetName = "edge"\n')
    exporter, metrics = make("10.0.0.1", "pbx", config)
    exporter.reload()
    exporter.handle(sip_pkt("BYE", "BYE"))
    assert metrics.method_responses.get(("pbx", "src", NODE, "BYE", "BYE")) == 1.0


def test_reload_missing_file_keeps_targets(tmp_path):
    exporter, metrics = make("10.0.0.1", "pbx", tmp_path / "absent.toml")
    exporter.reload()
    exporter.handle(sip_pkt("BYE", "BYE"))
    assert metrics.method_responses.get(("pbx", "src", NODE, "BYE", "BYE")) == 1.0