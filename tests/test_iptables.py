import subprocess
from unittest import mock

import pytest

from bandwidth_control import SinkSubmissionFailure
from bandwidth_control import TopologyInconsistency
from bandwidth_control import rules
from bandwidth_control.iptables import IptablesExecutor
from bandwidth_control.iptables import ProcQuotaHandle
from bandwidth_control.iptables import SubprocessRuleSink

from conftest import V4, V6, V4V6


def completed(returncode=0, stdout='', stderr=''):
    return subprocess.CompletedProcess([], returncode, stdout, stderr)


class TestIptablesExecutor:
    def test_restore_stops_at_first_failure(self, sink, quotas):
        sink.restore_ok = False
        executor = IptablesExecutor(sink, quotas)
        with pytest.raises(SinkSubmissionFailure):
            executor.restore(V4V6, rules.data_saver_script(True))
        assert [f for f, _ in sink.restores] == [V4]

    def test_run_tolerates_unchecked(self, sink, quotas):
        sink.set_return_values([1, 1, 0, 0])
        executor = IptablesExecutor(sink, quotas)
        assert executor.run(
            rules.IptablesCommand.parse("-D x", check=False),
            rules.IptablesCommand.parse("-A x")) == 2
        assert sink.commands == [
            (V4, "-D x"), (V6, "-D x"), (V4, "-A x"), (V6, "-A x")]

    def test_run_aborts_on_checked_failure(self, sink, quotas):
        sink.set_return_values([0, 1])
        executor = IptablesExecutor(sink, quotas)
        with pytest.raises(SinkSubmissionFailure):
            executor.run(rules.IptablesCommand.parse("-A x"),
                         rules.IptablesCommand.parse("-A y"))
        assert len(sink.commands) == 2

    @pytest.mark.parametrize('values', [
        [1, 1, 0, 0],
        [0, 0, 1, 1],
        # each family may disagree on whether the chain existed
        [1, 0, 0, 1],
    ])
    def test_prep_chain_exactly_one(self, sink, quotas, values):
        sink.set_return_values(values)
        IptablesExecutor(sink, quotas).prep_chain(
            *rules.prep_chain_commands("bw_costly_x"))

    @pytest.mark.parametrize('values', [
        [0, 0, 0, 0],
        [1, 1, 1, 1],
        [1, 0, 1, 0],
    ])
    def test_prep_chain_inconsistent(self, sink, quotas, values):
        sink.set_return_values(values)
        with pytest.raises(TopologyInconsistency):
            IptablesExecutor(sink, quotas).prep_chain(
                *rules.prep_chain_commands("bw_costly_x"))

    def test_list_failure(self, sink, quotas):
        with pytest.raises(SinkSubmissionFailure):
            IptablesExecutor(sink, quotas).list(V4, "filter", "-S")


class TestSubprocessRuleSink:
    def test_restore(self):
        sink = SubprocessRuleSink({'ip6tables_restore': '/sbin/ip6r'})
        with mock.patch('subprocess.run', return_value=completed()) as run:
            assert sink.restore(V6, "*filter\nCOMMIT\n")
        run.assert_called_once_with(
            ['/sbin/ip6r', '--noflush', '-w'],
            input="*filter\nCOMMIT\n",
            capture_output=True,
            encoding='utf-8',
        )

    def test_restore_failure(self):
        sink = SubprocessRuleSink()
        with mock.patch('subprocess.run',
                        return_value=completed(1, stderr='boom')):
            assert not sink.restore(V4, "*filter\nCOMMIT\n")
        with mock.patch('subprocess.run', side_effect=OSError('missing')):
            assert not sink.restore(V4, "*filter\nCOMMIT\n")

    def test_execute(self):
        sink = SubprocessRuleSink()
        with mock.patch('subprocess.run', return_value=completed(1)) as run:
            assert not sink.execute(V4, ('-F', 'bw_costly_x'))
        assert run.call_args[0][0] == ['iptables', '-w', '-F', 'bw_costly_x']

    def test_list(self):
        sink = SubprocessRuleSink()
        with mock.patch('subprocess.run',
                        return_value=completed(stdout='-N foo\n')) as run:
            assert sink.list(V6, 'filter', ('-S',)) == '-N foo\n'
        assert run.call_args[0][0] == ['ip6tables', '-w', '-t', 'filter', '-S']
        with mock.patch('subprocess.run', return_value=completed(1)):
            assert sink.list(V6, 'filter', ('-S',)) is None


class TestProcQuotaHandle:
    def test_update_and_read(self, tmp_path):
        handle = ProcQuotaHandle(str(tmp_path))
        handle.update('wlan0', 123)
        assert (tmp_path / 'wlan0').read_text() == '123\n'
        assert handle.read('wlan0') == 123

    def test_missing_dir(self, tmp_path):
        handle = ProcQuotaHandle(str(tmp_path / 'nope'))
        with pytest.raises(SinkSubmissionFailure):
            handle.update('wlan0', 1)
        with pytest.raises(SinkSubmissionFailure):
            handle.read('wlan0')
