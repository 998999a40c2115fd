from __future__ import annotations

import dataclasses
import logging
import re
import typing

from . import EmptyResultError
from . import StatsParseFailure


logger = logging.getLogger(__name__)

TETHER_COUNTERS_CHAIN = "natctrl_tether_counters"

# IPv4 rows carry "--" in the opt column, IPv6 rows leave it blank:
#       26     2373 RETURN     all  --  wlan0  rmnet0  0.0.0.0/0   0.0.0.0/0
#       26     2373 RETURN     all      wlan0  rmnet0  ::/0        ::/0
ROW_RE = re.compile(
    r'^\s*(?P<packets>\d+)\s+(?P<bytes>\d+)\s+RETURN\s+all\s+'
    r'(?:--\s+)?(?P<iface0>\S+)\s+(?P<iface1>\S+)\s+(?:0\.|::/)\S*')


@dataclasses.dataclass
class TetherStats:
    int_iface: str = ""
    ext_iface: str = ""
    rx_bytes: int = -1
    rx_packets: int = -1
    tx_bytes: int = -1
    tx_packets: int = -1

    @property
    def key(self) -> typing.FrozenSet[str]:
        return frozenset((self.int_iface, self.ext_iface))

    def stats_line(self) -> str:
        return (f'{self.int_iface} {self.ext_iface} '
                f'{self.rx_bytes} {self.rx_packets} '
                f'{self.tx_bytes} {self.tx_packets}')

    def reversed(self) -> "TetherStats":
        return TetherStats(self.ext_iface, self.int_iface,
                           self.tx_bytes, self.tx_packets,
                           self.rx_bytes, self.rx_packets)

    def add(self, other: "TetherStats") -> None:
        if (other.int_iface, other.ext_iface) != \
                (self.int_iface, self.ext_iface):
            other = other.reversed()
        self.rx_bytes += other.rx_bytes
        self.rx_packets += other.rx_packets
        self.tx_bytes += other.tx_bytes
        self.tx_packets += other.tx_packets


@dataclasses.dataclass(frozen=True)
class TetherStatsFilter:
    int_iface: str = ""
    ext_iface: str = ""
    rx_bytes: int = -1
    rx_packets: int = -1
    tx_bytes: int = -1
    tx_packets: int = -1

    @property
    def lookup_mode(self) -> bool:
        return bool(self.int_iface or self.ext_iface)

    def orient(self, stats: TetherStats) -> typing.Optional[TetherStats]:
        """Return ``stats`` as seen from this filter, or None on mismatch"""
        for candidate in (stats, stats.reversed()):
            if self.int_iface and self.int_iface != candidate.int_iface:
                continue
            if self.ext_iface and self.ext_iface != candidate.ext_iface:
                continue
            if all(want == -1 or want == have for want, have in (
                    (self.rx_bytes, candidate.rx_bytes),
                    (self.rx_packets, candidate.rx_packets),
                    (self.tx_bytes, candidate.tx_bytes),
                    (self.tx_packets, candidate.tx_packets))):
                return candidate
        return None


class TetherStatsList:
    """Counters summed per interface pair, in order of first appearance."""

    def __init__(self) -> None:
        self._totals: typing.Dict[typing.FrozenSet[str], TetherStats] = {}

    def add(self, stats: typing.Iterable[TetherStats]) -> TetherStatsList:
        for stat in stats:
            total = self._totals.get(stat.key)
            if total is None:
                self._totals[stat.key] = dataclasses.replace(stat)
            else:
                total.add(stat)
        return self

    def totals(self) -> typing.List[TetherStats]:
        return list(self._totals.values())

    def select(self, filt: TetherStatsFilter) -> typing.List[TetherStats]:
        return [oriented for oriented in map(filt.orient, self.totals())
                if oriented is not None]


def raw_text(output: str) -> str:
    return "".join(line + "\n" for line in output.splitlines())


def parse_tether_counters(
    output: str,
    require_header: bool = True,
) -> typing.List[TetherStats]:
    """
    Parse one family's listing of the tether counters chain.

    Rows come in pairs: in -> out followed by out -> in for the same two
    interfaces. The first of each pair supplies rx, the second tx.
    """
    lines = output.splitlines()
    if require_header and (len(lines) < 2 or not lines[0].startswith("Chain ")):
        raise StatsParseFailure(
            f'Missing header listing {TETHER_COUNTERS_CHAIN}', raw_text(output))

    result = []
    pending: typing.Optional[TetherStats] = None
    for line in lines:
        m = ROW_RE.match(line)
        if not m:
            continue
        packets, byts = int(m.group('packets')), int(m.group('bytes'))
        iface0, iface1 = m.group('iface0'), m.group('iface1')
        if pending is None:
            pending = TetherStats(iface0, iface1, byts, packets)
            continue
        if (pending.int_iface, pending.ext_iface) != (iface1, iface0):
            logger.error("Unexpected input/output interfaces: %s %s "
                         "(expected %s %s)", iface0, iface1,
                         pending.ext_iface, pending.int_iface)
            raise StatsParseFailure(
                f'Unpaired interfaces {iface0} {iface1}', raw_text(output))
        pending.tx_bytes, pending.tx_packets = byts, packets
        result.append(pending)
        pending = None

    if pending is not None:
        logger.error("Odd number of tether counter rows; %s %s unpaired",
                     pending.int_iface, pending.ext_iface)
        raise StatsParseFailure(
            f'Unpaired interfaces {pending.int_iface} {pending.ext_iface}',
            raw_text(output))
    return result


def aggregate(
    outputs: typing.Iterable[str],
    filt: TetherStatsFilter,
) -> typing.List[TetherStats]:
    """Sum every family's counters and apply ``filt``."""
    stats = TetherStatsList()
    for output in outputs:
        stats.add(parse_tether_counters(
            output, require_header=not filt.lookup_mode))
    if not filt.lookup_mode and not stats.totals():
        raise EmptyResultError('Expected at least one interface pair')
    return stats.select(filt)
