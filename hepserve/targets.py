"""Target IP to target name assignments used to label metrics."""

from __future__ import annotations

from dataclasses import dataclass, field

_IP_KEY = 'PromTargetIP="'
_NAME_KEY = 'PromTargetName="'
# Python counts these as whitespace; they are not separators here.
_NOT_SPACE = frozenset("\x1c\x1d\x1e\x1f")


@dataclass(frozen=True)
class TargetConfig:
    """Target assignments; ``empty`` means metrics carry no target labels."""

    ips: tuple[str, ...] = ("",)
    names: tuple[str, ...] = ("",)
    empty: bool = True
    mapping: dict[str, str] = field(default_factory=dict)

    def lookup(self, ip: str) -> str | None:
        """Return the target name of ``ip``, or None."""
        return self.mapping.get(ip)


def cut_space(text: str) -> str:
    """Remove every whitespace character from ``text``."""
    return "".join(ch for ch in text if not (ch.isspace() and ch not in _NOT_SPACE))


def parse_targets(target_ip: str, target_name: str) -> TargetConfig:
    """Build the assignment from comma separated IPs and names.

    Raises ValueError when the two lists differ in length.
    """
    ips = cut_space(target_ip).split(",")
    names = cut_space(target_name).split(",")
    if len(ips) != len(names):
        raise ValueError("faulty PromTargetIP or PromTargetName")
    if not ips[0] or not names[0]:
        ips[0] = ""
        names[0] = ""
        return TargetConfig(tuple(ips), tuple(names), True, {})
    return TargetConfig(tuple(ips), tuple(names), False, dict(zip(ips, names)))


def _quoted_list(text: str, key: str, min_len: int) -> list[str] | None:
    start = text.find(key)
    if start < 0:
        return None
    start += len(key)
    end = text.find('"', start)
    if end < 0 or end - start < min_len:
        return None
    return text[start:end].split(",")


def reload_targets(text: str) -> TargetConfig:
    """Read PromTargetIP and PromTargetName from configuration text.

    Raises ValueError when either is missing or their lengths differ.
    """
    compact = cut_space(text)
    ips = _quoted_list(compact, _IP_KEY, 7)
    names = _quoted_list(compact, _NAME_KEY, 1)
    if ips is None or names is None or len(ips) != len(names):
        raise ValueError(
            f"failed to reload PromTargetIP {ips!r} and PromTargetName {names!r}"
        )
    return TargetConfig(tuple(ips), tuple(names), False, dict(zip(ips, names)))