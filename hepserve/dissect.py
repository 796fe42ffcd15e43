"""Turn quality reports carried in HEP packets into metric samples."""

from __future__ import annotations

import json
import math
import re
from typing import Any

from .registry import HORACLIFIX_PATHS, RTCP_PATHS, RTP_PATHS, Metrics
from .xr import SplitError, extract_xr, norm_max, split_comma_int

_INF_NAN = re.compile(r"[+-]?(inf|infinity|nan)", re.IGNORECASE)
_INT = re.compile(r"[+-]?[0-9]+")
_INT64_MIN = -(1 << 63)
_INT64_MAX = (1 << 63) - 1
_MISSING = object()

# (gauge attribute, apply norm_max) in the order of RTCP_PATHS.
_RTCP_GAUGES = (
    ("rtcp_fraction_lost", True),
    ("rtcp_packets_lost", True),
    ("rtcp_jitter", True),
    ("rtcp_dlsr", True),
    ("rtcpxr_fraction_lost", False),
    ("rtcpxr_fraction_discard", False),
    ("rtcpxr_burst_density", False),
    ("rtcpxr_gap_density", False),
    ("rtcpxr_burst_duration", False),
    ("rtcpxr_gap_duration", False),
    ("rtcpxr_round_trip_delay", False),
    ("rtcpxr_end_system_delay", False),
)

_RTP_GAUGES = (
    "rtpagent_delta",
    "rtpagent_jitter",
    "rtpagent_mos",
    "rtpagent_packets_lost",
)

_VQ_GAUGES = (
    ("NLR=", "vqrtcpxr_nlr"),
    ("JDR=", "vqrtcpxr_jdr"),
    ("IAJ=", "vqrtcpxr_iaj"),
    ("MOSLQ=", "vqrtcpxr_moslq"),
    ("MOSCQ=", "vqrtcpxr_moscq"),
)

# (gauge attribute, divisor) for each horaclifix value of one direction.
_HORACLIFIX_VALUES = (
    ("horaclifix_rtp_mos", 100.0),
    ("horaclifix_rtp_rval", 100.0),
    ("horaclifix_rtp_packets", 1.0),
    ("horaclifix_rtp_lost_packets", 1.0),
    ("horaclifix_rtp_avg_jitter", 1.0),
    ("horaclifix_rtp_max_jitter", 1.0),
    ("horaclifix_rtcp_packets", 1.0),
    ("horaclifix_rtcp_lost_packets", 1.0),
    ("horaclifix_rtcp_avg_jitter", 1.0),
    ("horaclifix_rtcp_max_jitter", 1.0),
    ("horaclifix_rtcp_avg_lat", 1.0),
    ("horaclifix_rtcp_max_lat", 1.0),
)

_HORACLIFIX_NAME, _HORACLIFIX_INC_REALM, _HORACLIFIX_OUT_REALM = (
    path[0] for path in HORACLIFIX_PATHS[:3]
)
_HORACLIFIX_GAUGES: dict[str, tuple[str, str, float]] = {
    path[0]: (direction, attr, divisor)
    for direction, paths in (
        ("inc", HORACLIFIX_PATHS[3:15]),
        ("out", HORACLIFIX_PATHS[15:27]),
    )
    for path, (attr, divisor) in zip(paths, _HORACLIFIX_VALUES)
}


class _Number(str):
    """The raw text of a JSON number."""


def _parse_float(text: str) -> float:
    if not text or not text.isascii() or "_" in text or text.strip() != text:
        raise ValueError(f"invalid float {text!r}")
    value = float(text)
    if math.isinf(value) and not _INF_NAN.fullmatch(text):
        raise ValueError(f"float {text!r} out of range")
    return value


def _try_float(text: str) -> float | None:
    try:
        return _parse_float(text)
    except ValueError:
        return None


def _atoi_or_zero(text: str) -> int:
    if not _INT.fullmatch(text):
        return 0
    return min(max(int(text), _INT64_MIN), _INT64_MAX)


def _trunc_div(a: int, b: int) -> int:
    quotient = abs(a) // abs(b)
    return quotient if (a < 0) == (b < 0) else -quotient


def _load(data: str | bytes) -> Any:
    try:
        return json.loads(
            data, parse_float=_Number, parse_int=_Number, parse_constant=_Number
        )
    except ValueError:
        return None


def _walk(doc: Any, path: tuple[str | int, ...]) -> Any:
    node = doc
    for step in path:
        if isinstance(step, int):
            if not isinstance(node, list) or not 0 <= step < len(node):
                return _MISSING
            node = node[step]
        else:
            if not isinstance(node, dict) or step not in node:
                return _MISSING
            node = node[step]
    return node


def _as_float(value: Any) -> float | None:
    if isinstance(value, str):
        return _try_float(str(value))
    return None


def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return str(value)
    if value is True:
        return "true"
    if value is False:
        return "false"
    if value is None:
        return "null"
    return json.dumps(value, separators=(",", ":"))


def dissect_rtcpxr_stats(metrics: Metrics, node_id: str, stats: str) -> None:
    """Record the VQ-RTCPXR values found in a report string."""
    for key, attr in _VQ_GAUGES:
        value = _try_float(extract_xr(key, stats))
        if value is not None:
            getattr(metrics, attr).set((node_id,), value)


def dissect_xrtp_stats(metrics: Metrics, target_name: str, stats: str) -> None:
    """Record X-RTP-Stat values and an estimated MOS for a target."""
    labels = (target_name,)
    plr = pls = jir = jis = dle = 0

    cs = _try_float(extract_xr("CS=", stats))
    if cs is not None:
        metrics.xrtp_cs.set(labels, cs / 1000)

    plt = extract_xr("PL=", stats)
    if len(plt) > 1:
        try:
            plr, pls = split_comma_int(plt)
        except SplitError as err:
            plr, pls = err.first, 0
        else:
            metrics.xrtp_plr.set(labels, plr)
            metrics.xrtp_pls.set(labels, pls)

    jit = extract_xr("JI=", stats)
    if len(jit) > 1:
        try:
            jir, jis = split_comma_int(jit)
        except SplitError as err:
            jir, jis = err.first, 0
        else:
            metrics.xrtp_jir.set(labels, jir)
            metrics.xrtp_jis.set(labels, jis)

    dlt = extract_xr("DL=", stats)
    if len(dlt) > 1:
        try:
            dle, _ = split_comma_int(dlt)
            usable = True
        except SplitError as err:
            dle = err.first
            usable = dle > 0
        if usable:
            metrics.xrtp_dle.set(labels, dle)

    pr = _atoi_or_zero(extract_xr("PR=", stats))
    ps = _atoi_or_zero(extract_xr("PS=", stats))
    if pr == 0 and ps == 0:
        pr, ps = 1, 1

    loss = _trunc_div((plr + pls) * 100, pr + ps)
    el = jir * 2 + dle + 10

    if el < 160:
        r = 93.2 - el / 40
    else:
        r = 93.2 - (el - 120) / 10
    r -= loss * 2.5

    mos = 1 + 0.035 * r + 0.000007 * r * (r - 60) * (100 - r)
    if mos < 1 or mos > 5:
        mos = 1.0
    metrics.xrtp_mos.set(labels, mos)


def dissect_rtcp_stats(
    metrics: Metrics,
    target_name: str,
    direction: str,
    node_id: str,
    data: str | bytes,
) -> None:
    """Record RTCP and RTCP-XR values from a JSON report."""
    doc = _load(data)
    if doc is None:
        return
    labels = (target_name, direction, node_id)
    for path, (attr, normalize) in zip(RTCP_PATHS, _RTCP_GAUGES):
        value = _as_float(_walk(doc, path))
        if value is None:
            continue
        getattr(metrics, attr).set(labels, norm_max(value) if normalize else value)


def dissect_rtp_stats(metrics: Metrics, node_id: str, data: str | bytes) -> None:
    """Record RTP agent values from a JSON report."""
    doc = _load(data)
    if doc is None:
        return
    for path, attr in zip(RTP_PATHS, _RTP_GAUGES):
        value = _as_float(_walk(doc, path))
        if value is not None:
            getattr(metrics, attr).set((node_id,), value)


def dissect_horaclifix_stats(metrics: Metrics, data: str | bytes) -> None:
    """Record horaclifix values; labels take the names read so far in the document."""
    doc = _load(data)
    if not isinstance(doc, dict):
        return
    sbc_name = inc_realm = out_realm = ""
    for key, value in doc.items():
        if key == _HORACLIFIX_NAME:
            sbc_name = _as_text(value)
        elif key == _HORACLIFIX_INC_REALM:
            inc_realm = _as_text(value)
        elif key == _HORACLIFIX_OUT_REALM:
            out_realm = _as_text(value)
        elif key in _HORACLIFIX_GAUGES:
            direction, attr, divisor = _HORACLIFIX_GAUGES[key]
            number = _as_float(value)
            if number is None:
                continue
            getattr(metrics, attr).set(
                (sbc_name, direction, inc_realm, out_realm), number / divisor
            )