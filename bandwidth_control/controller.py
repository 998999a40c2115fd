"""
High-level bandwidth operations.

Every operation that depends on tracked state holds the tracker's lock for
the affected key while it decides what to do, submits the rules, and
records the result. A failed submission raises and leaves the tracker as
it was, so the operation can simply be retried. Removals tolerate rules
that are already gone, so a removal that got halfway can be repeated.
Enabling or disabling rewrites every chain and runs with all keys held.
"""
from __future__ import annotations

import logging
import typing

from . import BW_COSTLY_SHARED
from . import BW_HAPPY_BOX
from . import BW_PENALTY_BOX
from . import GLOBAL_ALERT_NAME
from . import SHARED_QUOTA_NAME
from . import BandwidthError
from . import InvalidArgument
from . import IptablesTarget
from . import IptJump
from . import IptOp
from . import check_alert_bytes
from . import check_bytes
from . import check_iface_name
from . import config_true_value
from . import rules
from .iptables import IptablesExecutor
from .quota_state import QuotaAction
from .quota_state import QuotaStateTracker
from .quota_state import decide
from .response import Response
from .response import ResponseCode
from .response import ResponseWriter
from .tether_stats import TETHER_COUNTERS_CHAIN
from .tether_stats import TetherStatsFilter
from .tether_stats import aggregate


logger = logging.getLogger(__name__)

V4 = IptablesTarget.V4
V6 = IptablesTarget.V6
V4V6 = IptablesTarget.V4V6

TETHER_STATS_DONE = "Tethering stats list completed"


class BandwidthController:
    def __init__(
        self,
        executor: IptablesExecutor,
        state: typing.Optional[QuotaStateTracker] = None,
        conf: typing.Optional[typing.Dict[str, str]] = None,
    ) -> None:
        self.iptables = executor
        self.state = state if state is not None else QuotaStateTracker()
        self.configure(conf or {})

    def configure(self, conf: typing.Dict[str, str]) -> None:
        self.enabled = config_true_value(conf.get('enabled', 'true'))

    # -----------------------------------------------------------------------
    # topology

    def _flush_existing_costly_tables(self, delete: bool) -> None:
        try:
            rule_list = self.iptables.list(V4, "filter",
                                           *rules.list_chains_args())
        except BandwidthError as e:
            logger.error("Failed to list existing costly tables: %s", e)
            return
        stale = rules.find_stale_costly_chains(rule_list)
        if not stale:
            return
        logger.info("Cleaning up stale costly chains: %s", ", ".join(stale))
        try:
            self.iptables.restore(
                V4V6, rules.cleanup_stale_chains_script(stale, delete))
        except BandwidthError as e:
            logger.error("Failed to clean up costly tables: %s", e)

    def _flush_clean_tables(self, delete: bool) -> None:
        self._flush_existing_costly_tables(delete)
        try:
            self.iptables.restore(V4V6, rules.flush_static_chains_script())
        except BandwidthError as e:
            logger.error("Failed to flush bandwidth chains: %s", e)

    def setup_iptables_hooks(self) -> None:
        # allowed to fail; enable_bandwidth_control() repeats the flush
        self._flush_clean_tables(delete=True)

    def enable_bandwidth_control(self, force: bool = False) -> None:
        if not force and not self.enabled:
            logger.info("Bandwidth control disabled by configuration")
            return
        with self.state.locked_all():
            # whatever was installed before is about to be flushed
            self.state.reset()
            self._flush_clean_tables(delete=False)
            self.iptables.restore(V4V6, rules.basic_accounting_script())

    def disable_bandwidth_control(self) -> None:
        with self.state.locked_all():
            self.state.reset()
            self._flush_clean_tables(delete=False)

    def enable_data_saver(self, enable: bool) -> None:
        self.iptables.restore(V4V6, rules.data_saver_script(enable))

    # -----------------------------------------------------------------------
    # special apps

    def _manipulate_special_apps(self, uids: typing.Sequence[str],
                                 chain: str, jump: IptJump, op: IptOp) -> None:
        for uid in uids:
            if not uid.isdigit():
                raise InvalidArgument(f'Invalid uid: {uid!r}')
        self.iptables.restore(
            V4V6, rules.special_apps_script(op, chain, jump, uids))

    def add_nice_apps(self, uids: typing.Sequence[str]) -> None:
        self._manipulate_special_apps(
            uids, BW_HAPPY_BOX, IptJump.RETURN, IptOp.INSERT)

    def remove_nice_apps(self, uids: typing.Sequence[str]) -> None:
        self._manipulate_special_apps(
            uids, BW_HAPPY_BOX, IptJump.RETURN, IptOp.DELETE)

    def add_naughty_apps(self, uids: typing.Sequence[str]) -> None:
        self._manipulate_special_apps(
            uids, BW_PENALTY_BOX, IptJump.REJECT, IptOp.INSERT)

    def remove_naughty_apps(self, uids: typing.Sequence[str]) -> None:
        self._manipulate_special_apps(
            uids, BW_PENALTY_BOX, IptJump.REJECT, IptOp.DELETE)

    # -----------------------------------------------------------------------
    # per-interface quotas

    def set_interface_quota(self, iface: str, max_bytes: int) -> None:
        check_iface_name(iface)
        if check_bytes(max_bytes) == -1:
            self.remove_interface_quota(iface)
            return

        with self.state.locked(iface):
            record = self.state.lookup(iface)
            action = decide(record and record.quota, max_bytes)
            if action is QuotaAction.CREATE:
                chain = rules.costly_chain(iface)
                self.iptables.prep_chain(*rules.prep_chain_commands(chain))
                self.iptables.run(
                    rules.penalty_jump_command(chain),
                    *rules.hook_commands(iface, chain),
                    rules.quota_command(IptOp.APPEND, iface, max_bytes),
                )
            elif action is QuotaAction.UPDATE_IN_PLACE:
                logger.debug("Updating quota for %s in place: %d -> %d",
                             iface, record.quota, max_bytes)
                self.iptables.update_quota(iface, max_bytes)
            self.state.upsert(iface, max_bytes)

    def get_interface_quota(self, iface: str) -> int:
        check_iface_name(iface)
        if self.state.lookup(iface) is None:
            raise InvalidArgument(f'No quota set for {iface}')
        return self.iptables.read_quota(iface)

    def remove_interface_quota(self, iface: str) -> None:
        check_iface_name(iface)
        with self.state.locked(iface):
            if self.state.lookup(iface) is None:
                raise InvalidArgument(f'No such iface {iface} to delete')
            chain = rules.costly_chain(iface)
            # a leftover chain is picked up again by the next prep_chain()
            if self.iptables.run(*rules.unhook_commands(iface, chain),
                                 *rules.remove_chain_commands(chain)):
                logger.warning("Some rules for %s were already gone", iface)
            self.state.remove(iface)

    # -----------------------------------------------------------------------
    # shared quota

    def set_interface_shared_quota(self, iface: str, max_bytes: int) -> None:
        check_iface_name(iface)
        if check_bytes(max_bytes) == -1:
            self.remove_interface_shared_quota(iface)
            return

        with self.state.locked(SHARED_QUOTA_NAME):
            group = self.state.shared_group()
            if self.state.shared_member(iface) is None:
                self.iptables.run(
                    *rules.hook_commands(iface, BW_COSTLY_SHARED))
                if group is None:
                    self.iptables.run(rules.quota_command(
                        IptOp.INSERT, SHARED_QUOTA_NAME, max_bytes))
                    self.state.join(iface, max_bytes)
                    return
                self.state.join(iface, group.quota)

            group = self.state.shared_group()
            if decide(group.quota, max_bytes) is QuotaAction.UPDATE_IN_PLACE:
                logger.debug("Updating shared quota in place: %d -> %d",
                             group.quota, max_bytes)
                self.iptables.update_quota(SHARED_QUOTA_NAME, max_bytes)
                self.state.set_shared_quota(max_bytes)

    def get_interface_shared_quota(self) -> int:
        if self.state.shared_group() is None:
            raise InvalidArgument('No shared quota set')
        return self.iptables.read_quota(SHARED_QUOTA_NAME)

    def remove_interface_shared_quota(self, iface: str) -> None:
        check_iface_name(iface)
        with self.state.locked(SHARED_QUOTA_NAME):
            group = self.state.shared_group()
            if self.state.shared_member(iface) is None:
                raise InvalidArgument(f'No such iface {iface} to delete')
            commands = rules.unhook_commands(iface, BW_COSTLY_SHARED)
            last = group.refcount == 1
            if last:
                commands.append(rules.quota_command(
                    IptOp.DELETE, SHARED_QUOTA_NAME, group.quota,
                    check=False))
            if self.iptables.run(*commands):
                logger.warning("Some shared quota rules for %s were already "
                               "gone", iface)
            if last and group.alert:
                self._remove_costly_alert(SHARED_QUOTA_NAME, group.alert)
            self.state.leave(iface)

    # -----------------------------------------------------------------------
    # alerts

    def run_iptables_alert_cmd(self, op: IptOp, name: str, quota: int) -> None:
        self.iptables.restore(V4V6, rules.alert_script(op, name, quota))

    def run_iptables_alert_fwd_cmd(self, op: IptOp, name: str,
                                   quota: int) -> None:
        self.iptables.restore(
            V4V6, rules.forward_alert_script(op, name, quota))

    def set_global_alert(self, max_bytes: int) -> None:
        check_alert_bytes(max_bytes)
        with self.state.locked(QuotaStateTracker.GLOBAL_KEY):
            if self.state.global_alert:
                self.iptables.update_quota(GLOBAL_ALERT_NAME, max_bytes)
            else:
                self.run_iptables_alert_cmd(
                    IptOp.INSERT, GLOBAL_ALERT_NAME, max_bytes)
                if self.state.global_alert_tether_count:
                    self.run_iptables_alert_fwd_cmd(
                        IptOp.INSERT, GLOBAL_ALERT_NAME, max_bytes)
            self.state.global_alert = max_bytes

    def remove_global_alert(self) -> None:
        with self.state.locked(QuotaStateTracker.GLOBAL_KEY):
            quota = self.state.global_alert
            if not quota:
                raise InvalidArgument("No prior alert set")
            self.run_iptables_alert_cmd(IptOp.DELETE, GLOBAL_ALERT_NAME, quota)
            if self.state.global_alert_tether_count:
                self.run_iptables_alert_fwd_cmd(
                    IptOp.DELETE, GLOBAL_ALERT_NAME, quota)
            self.state.global_alert = 0

    def set_global_alert_in_forward_chain(self) -> None:
        with self.state.locked(QuotaStateTracker.GLOBAL_KEY):
            count = self.state.global_alert_tether_count
            # only the first tether user installs the rule
            if count == 0 and self.state.global_alert:
                self.run_iptables_alert_fwd_cmd(
                    IptOp.INSERT, GLOBAL_ALERT_NAME, self.state.global_alert)
            self.state.global_alert_tether_count = count + 1

    def remove_global_alert_in_forward_chain(self) -> None:
        with self.state.locked(QuotaStateTracker.GLOBAL_KEY):
            count = self.state.global_alert_tether_count
            if not count:
                raise InvalidArgument("No prior alert set")
            if count == 1 and self.state.global_alert:
                self.run_iptables_alert_fwd_cmd(
                    IptOp.DELETE, GLOBAL_ALERT_NAME, self.state.global_alert)
            self.state.global_alert_tether_count = count - 1

    def _set_costly_alert(self, cost_name: str, current: int,
                          max_bytes: int) -> None:
        check_alert_bytes(max_bytes)
        if current:
            self.iptables.update_quota(cost_name + "Alert", max_bytes)
        else:
            self.iptables.restore(V4V6, rules.costly_alert_script(
                IptOp.APPEND, cost_name, max_bytes))

    def _remove_costly_alert(self, cost_name: str, current: int) -> None:
        if not current:
            raise InvalidArgument(f'No prior alert set for {cost_name}')
        self.iptables.restore(V4V6, rules.costly_alert_script(
            IptOp.DELETE, cost_name, current))

    def set_shared_alert(self, max_bytes: int) -> None:
        with self.state.locked(SHARED_QUOTA_NAME):
            group = self.state.shared_group()
            if group is None:
                raise InvalidArgument(
                    "Need to have a prior shared quota set to set an alert")
            self._set_costly_alert(SHARED_QUOTA_NAME, group.alert, max_bytes)
            self.state.set_shared_alert(max_bytes)

    def remove_shared_alert(self) -> None:
        with self.state.locked(SHARED_QUOTA_NAME):
            group = self.state.shared_group()
            self._remove_costly_alert(SHARED_QUOTA_NAME,
                                      group.alert if group else 0)
            self.state.set_shared_alert(0)

    def set_interface_alert(self, iface: str, max_bytes: int) -> None:
        check_iface_name(iface)
        with self.state.locked(iface):
            record = self.state.lookup(iface)
            if record is None:
                raise InvalidArgument(
                    "Need to have a prior interface quota set to set an alert")
            self._set_costly_alert(iface, record.alert, max_bytes)
            record.alert = max_bytes

    def remove_interface_alert(self, iface: str) -> None:
        check_iface_name(iface)
        with self.state.locked(iface):
            record = self.state.lookup(iface)
            if record is None:
                raise InvalidArgument(f'No prior alert set for {iface}')
            self._remove_costly_alert(iface, record.alert)
            record.alert = 0

    # -----------------------------------------------------------------------
    # tethering

    def tether_stats_responses(
        self,
        filt: typing.Optional[TetherStatsFilter] = None,
    ) -> typing.List[Response]:
        filt = filt or TetherStatsFilter()
        outputs = [
            self.iptables.list(family, "filter",
                               "-nvx", "-L", TETHER_COUNTERS_CHAIN)
            for family in (V4, V6)
        ]
        matches = aggregate(outputs, filt)
        if filt.lookup_mode:
            if matches:
                return [(ResponseCode.TETHERING_STATS_RESULT,
                         matches[0].stats_line())]
            return [(ResponseCode.COMMAND_OKAY, TETHER_STATS_DONE)]
        responses: typing.List[Response] = [
            (ResponseCode.TETHERING_STATS_LIST_RESULT, stats.stats_line())
            for stats in matches
        ]
        responses.append((ResponseCode.COMMAND_OKAY, TETHER_STATS_DONE))
        return responses

    def get_tether_stats(
        self,
        writer: ResponseWriter,
        filt: typing.Optional[TetherStatsFilter] = None,
    ) -> None:
        writer.send_all(self.tether_stats_responses(filt))
