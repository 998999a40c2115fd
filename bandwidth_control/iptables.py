from __future__ import annotations

import logging
import os
import subprocess
import typing

from . import IptablesTarget
from . import SinkSubmissionFailure
from . import TopologyInconsistency
from .rules import IptablesCommand
from .rules import RestoreScript


logger = logging.getLogger(__name__)

V4 = IptablesTarget.V4
V6 = IptablesTarget.V6


class RuleSink(typing.Protocol):
    def restore(self, family: IptablesTarget, script: str) -> bool:
        ...

    def execute(self, family: IptablesTarget,
                args: typing.Sequence[str]) -> bool:
        ...

    def list(self, family: IptablesTarget, table: str,
             args: typing.Sequence[str]) -> typing.Optional[str]:
        ...


class QuotaHandle(typing.Protocol):
    def update(self, name: str, value: int) -> None:
        ...

    def read(self, name: str) -> int:
        ...


class SubprocessRuleSink:
    """Talks to the real iptables binaries, one process per call."""

    def __init__(self, conf: typing.Optional[typing.Dict[str, str]] = None):
        conf = conf or {}
        self.binaries = {
            V4: conf.get('iptables', 'iptables'),
            V6: conf.get('ip6tables', 'ip6tables'),
        }
        self.restore_binaries = {
            V4: conf.get('iptables_restore', 'iptables-restore'),
            V6: conf.get('ip6tables_restore', 'ip6tables-restore'),
        }

    def _run(self, cmd: typing.List[str],
             stdin: typing.Optional[str] = None
             ) -> typing.Optional[subprocess.CompletedProcess]:
        try:
            return subprocess.run(
                cmd,
                input=stdin,
                capture_output=True,
                encoding='utf-8',
            )
        except OSError as e:
            logger.error("Could not run %s: %s", cmd[0], e)
            return None

    def restore(self, family: IptablesTarget, script: str) -> bool:
        proc = self._run(
            [self.restore_binaries[family], '--noflush', '-w'], script)
        if proc is None:
            return False
        if proc.returncode != 0:
            logger.error("%s failed (rc=%d): %s\n%s",
                         self.restore_binaries[family], proc.returncode,
                         proc.stderr.strip(), script)
            return False
        return True

    def execute(self, family: IptablesTarget,
                args: typing.Sequence[str]) -> bool:
        proc = self._run([self.binaries[family], '-w'] + list(args))
        if proc is None:
            return False
        if proc.returncode != 0:
            logger.debug("%s %s failed (rc=%d): %s", self.binaries[family],
                         ' '.join(args), proc.returncode, proc.stderr.strip())
            return False
        return True

    def list(self, family: IptablesTarget, table: str,
             args: typing.Sequence[str]) -> typing.Optional[str]:
        proc = self._run(
            [self.binaries[family], '-w', '-t', table] + list(args))
        if proc is None or proc.returncode != 0:
            return None
        return proc.stdout


class ProcQuotaHandle:
    """Live quota2 counters under /proc/net/xt_quota/<name>."""

    def __init__(self, quota_dir: str = '/proc/net/xt_quota') -> None:
        self.quota_dir = quota_dir

    def update(self, name: str, value: int) -> None:
        path = os.path.join(self.quota_dir, name)
        try:
            with open(path, 'w') as fp:
                fp.write(f'{value}\n')
        except IOError as e:
            raise SinkSubmissionFailure(
                f'Failed to update quota {name}: {e}') from e

    def read(self, name: str) -> int:
        path = os.path.join(self.quota_dir, name)
        try:
            with open(path) as fp:
                return int(fp.read().strip())
        except (IOError, ValueError) as e:
            raise SinkSubmissionFailure(
                f'Failed to read quota {name}: {e}') from e


class IptablesExecutor:
    """
    Submits rule batches to a sink, once per address family.

    Any failure raises immediately and the rest of the operation is
    abandoned; the only tolerated failures are commands built with
    ``check=False`` and the flush-or-declare pair in :meth:`prep_chain`.
    """

    def __init__(self, sink: RuleSink, quotas: QuotaHandle) -> None:
        self.sink = sink
        self.quotas = quotas

    def restore(self, target: IptablesTarget, script: RestoreScript) -> None:
        text = str(script)
        for family in target.families:
            if not self.sink.restore(family, text):
                raise SinkSubmissionFailure(
                    f'iptables-restore ({family.value}) failed:\n{text}')

    def run(self, *commands: IptablesCommand) -> int:
        """Returns how many unchecked commands failed."""
        tolerated = 0
        for cmd in commands:
            for family in (V4, V6):
                if self.sink.execute(family, cmd.args):
                    continue
                if cmd.check:
                    raise SinkSubmissionFailure(
                        f'Failed to run ({family.value}): {cmd}')
                logger.debug("Ignoring failure (%s): %s", family.value, cmd)
                tolerated += 1
        return tolerated

    def prep_chain(self, flush: IptablesCommand,
                   declare: IptablesCommand) -> None:
        failures = {V4: 0, V6: 0}
        for cmd in (flush, declare):
            for family in (V4, V6):
                if not self.sink.execute(family, cmd.args):
                    failures[family] += 1
        for family, count in failures.items():
            if count != 1:
                raise TopologyInconsistency(
                    f'Expected exactly one of "{flush}" and "{declare}" to '
                    f'fail for {family.value}, got {count}')

    def list(self, family: IptablesTarget, table: str,
             *args: str) -> str:
        out = self.sink.list(family, table, args)
        if out is None:
            raise SinkSubmissionFailure(
                f'Failed to list {table} ({family.value}): {" ".join(args)}')
        return out

    def update_quota(self, name: str, value: int) -> None:
        self.quotas.update(name, value)

    def read_quota(self, name: str) -> int:
        return self.quotas.read(name)
