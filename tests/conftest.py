import collections
import typing

import pytest

from bandwidth_control import IptablesTarget
from bandwidth_control import SinkSubmissionFailure
from bandwidth_control.controller import BandwidthController
from bandwidth_control.iptables import IptablesExecutor
from bandwidth_control.quota_state import QuotaStateTracker

V4 = IptablesTarget.V4
V6 = IptablesTarget.V6
V4V6 = IptablesTarget.V4V6


class FakeRuleSink:
    """Records every call and replays canned listing output / return codes"""

    def __init__(self) -> None:
        self.restores: typing.List[typing.Tuple[IptablesTarget, str]] = []
        self.commands: typing.List[typing.Tuple[IptablesTarget, str]] = []
        self.lists: typing.List[typing.Tuple[IptablesTarget, str, str]] = []
        self.outputs: typing.Deque[str] = collections.deque()
        self.return_values: typing.Deque[int] = collections.deque()
        self.restore_ok = True

    def add_output(self, *outputs: str) -> None:
        self.outputs.extend(outputs)

    def set_return_values(self, values: typing.Iterable[int]) -> None:
        self.return_values = collections.deque(values)

    def restore(self, family, script):
        self.restores.append((family, script))
        return self.restore_ok

    def execute(self, family, args):
        self.commands.append((family, ' '.join(args)))
        if self.return_values:
            return self.return_values.popleft() == 0
        return True

    def list(self, family, table, args):
        self.lists.append((family, table, ' '.join(args)))
        if not self.outputs:
            return None
        return self.outputs.popleft()

    def take_restores(self):
        restores, self.restores = self.restores, []
        return restores

    def take_commands(self):
        commands, self.commands = self.commands, []
        return commands


class StatefulRuleSink(FakeRuleSink):
    """
    Models the chains each family really has, so single commands fail
    the way iptables would: deleting a missing rule, flushing a missing
    chain, declaring one twice, or deleting one that still has rules.
    """

    def __init__(self) -> None:
        super().__init__()
        self.chains: typing.Dict[IptablesTarget, typing.Dict[str, list]] = {
            V4: {}, V6: {}}
        self.failures: typing.Set[typing.Tuple[IptablesTarget, str]] = set()

    def fail(self, family, cmd):
        """Make the next run of ``cmd`` for ``family`` fail"""
        self.failures.add((family, cmd))

    def rules(self, family, chain):
        return self.chains[family].get(chain, [])

    def execute(self, family, args):
        line = ' '.join(args)
        self.commands.append((family, line))
        if (family, line) in self.failures:
            self.failures.discard((family, line))
            return False
        op, chain, rest = args[0], args[1], list(args[2:])
        chains = self.chains[family]
        if op == '-N':
            if chain in chains:
                return False
            chains[chain] = []
        elif op == '-X':
            if chains.get(chain, True):
                return False
            del chains[chain]
        elif op == '-F':
            if chain not in chains:
                return False
            chains[chain].clear()
        else:
            rules = chains.setdefault(chain, [])
            if op == '-I' and rest and rest[0].isdigit():
                rest = rest[1:]
            rule = ' '.join(rest)
            if op == '-D':
                if rule not in rules:
                    return False
                rules.remove(rule)
            elif op == '-I':
                rules.insert(0, rule)
            else:
                rules.append(rule)
        return True


class FakeQuotaHandle:
    def __init__(self) -> None:
        self.updates: typing.List[typing.Tuple[str, int]] = []
        self.values: typing.Dict[str, int] = {}
        self.fail = False

    def update(self, name, value):
        if self.fail:
            raise SinkSubmissionFailure(f'Failed to update quota {name}')
        self.updates.append((name, value))
        self.values[name] = value

    def read(self, name):
        if name not in self.values:
            raise SinkSubmissionFailure(f'Failed to read quota {name}')
        return self.values[name]


def restores(*expected: typing.Tuple[IptablesTarget, str]):
    """Expand (target, script) pairs into the per-family calls a sink sees"""
    return [(family, script)
            for target, script in expected
            for family in target.families]


def commands(*expected: str):
    """Every single command runs for IPv4 then IPv6"""
    return [(family, cmd) for cmd in expected for family in (V4, V6)]


@pytest.fixture
def sink():
    return FakeRuleSink()


@pytest.fixture
def quotas():
    return FakeQuotaHandle()


@pytest.fixture
def state():
    return QuotaStateTracker()


@pytest.fixture
def controller(sink, quotas, state):
    return BandwidthController(IptablesExecutor(sink, quotas), state)


@pytest.fixture
def live_sink():
    return StatefulRuleSink()


@pytest.fixture
def live_controller(live_sink, quotas, state):
    return BandwidthController(IptablesExecutor(live_sink, quotas), state)
