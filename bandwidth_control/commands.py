"""
Line-oriented command protocol.

Each request is one line, ``<command> [args...]``; each reply is one or
more ``<code> <message>`` lines.
"""
from __future__ import annotations

import logging
import typing

from . import BandwidthError
from . import StatsParseFailure
from .controller import BandwidthController
from .response import Response
from .response import ResponseCode
from .tether_stats import TetherStatsFilter


logger = logging.getLogger(__name__)

OK_MESSAGE = "Bandwidth command succeeded"
FAIL_MESSAGE = "Bandwidth command failed"


class CommandSyntaxError(Exception):
    pass


class CommandParameterError(Exception):
    pass


def parse_bytes(value: str) -> int:
    try:
        return int(value)
    except ValueError:
        raise CommandParameterError(f'Invalid bytes value: {value!r}')


class CommandDispatcher:
    ALIASES = {
        'siq': 'setiquota',
        'riq': 'removeiquota',
        'giq': 'getiquota',
        'sq': 'setquota',
        'rq': 'removequota',
        'gq': 'getquota',
        'aha': 'addniceapps',
        'rha': 'removeniceapps',
        'ana': 'addnaughtyapps',
        'rna': 'removenaughtyapps',
        'sga': 'setglobalalert',
        'rga': 'removeglobalalert',
        'ssa': 'setsharedalert',
        'rsa': 'removesharedalert',
        'sia': 'setinterfacealert',
        'ria': 'removeinterfacealert',
        'gts': 'gettetherstats',
    }

    # (min args, max args or None for unbounded, usage)
    USAGE: typing.Dict[str, typing.Tuple[int, typing.Optional[int], str]] = {
        'enable': (0, 0, 'enable'),
        'disable': (0, 0, 'disable'),
        'datasaver': (1, 1, 'datasaver <0|1>'),
        'setiquota': (2, 2, 'setiquota <interface> <bytes>'),
        'removeiquota': (1, 1, 'removeiquota <interface>'),
        'getiquota': (1, 1, 'getiquota <interface>'),
        'setquota': (2, None, 'setquota <bytes> <interface> ...'),
        'removequota': (1, None, 'removequota <interface> ...'),
        'getquota': (0, 0, 'getquota'),
        'addniceapps': (1, None, 'addniceapps <appUid> ...'),
        'removeniceapps': (1, None, 'removeniceapps <appUid> ...'),
        'addnaughtyapps': (1, None, 'addnaughtyapps <appUid> ...'),
        'removenaughtyapps': (1, None, 'removenaughtyapps <appUid> ...'),
        'setglobalalert': (1, 1, 'setglobalalert <bytes>'),
        'removeglobalalert': (0, 0, 'removeglobalalert'),
        'setglobalalertinforwardchain': (
            0, 0, 'setglobalalertinforwardchain'),
        'removeglobalalertinforwardchain': (
            0, 0, 'removeglobalalertinforwardchain'),
        'setsharedalert': (1, 1, 'setsharedalert <bytes>'),
        'removesharedalert': (0, 0, 'removesharedalert'),
        'setinterfacealert': (2, 2, 'setinterfacealert <interface> <bytes>'),
        'removeinterfacealert': (1, 1, 'removeinterfacealert <interface>'),
        'gettetherstats': (0, 2, 'gettetherstats [<intIface> <extIface>]'),
    }

    # commands that do not depend on what earlier commands installed
    STATELESS = frozenset([
        'enable',
        'disable',
        'datasaver',
        'addniceapps',
        'removeniceapps',
        'addnaughtyapps',
        'removenaughtyapps',
        'gettetherstats',
    ])

    def __init__(self, controller: BandwidthController) -> None:
        self.controller = controller

    def is_stateless(self, line: str) -> bool:
        argv = line.split()
        return bool(argv) and \
            self.ALIASES.get(argv[0], argv[0]) in self.STATELESS

    def dispatch(self, line: str) -> typing.List[Response]:
        argv = line.split()
        if not argv:
            return [(ResponseCode.COMMAND_SYNTAX_ERROR, "Missing command")]
        name = self.ALIASES.get(argv[0], argv[0])
        args = argv[1:]
        if name not in self.USAGE:
            return [(ResponseCode.COMMAND_SYNTAX_ERROR,
                     f'Unknown bandwidth cmd {argv[0]}')]
        min_args, max_args, usage = self.USAGE[name]
        if len(args) < min_args or (max_args is not None
                                    and len(args) > max_args):
            return [(ResponseCode.COMMAND_SYNTAX_ERROR, f'Usage: {usage}')]

        handler = getattr(self, 'cmd_' + name)
        try:
            return handler(*args) or [(ResponseCode.COMMAND_OKAY, OK_MESSAGE)]
        except CommandSyntaxError as e:
            return [(ResponseCode.COMMAND_SYNTAX_ERROR, f'{e} ({usage})')]
        except CommandParameterError as e:
            return [(ResponseCode.COMMAND_PARAMETER_ERROR, str(e))]
        except StatsParseFailure as e:
            logger.error("%s failed: %s\n%s", name, e, e.payload)
            return [(ResponseCode.OPERATION_FAILED, FAIL_MESSAGE)]
        except BandwidthError as e:
            logger.error("%s failed: %s", name, e)
            return [(ResponseCode.OPERATION_FAILED, FAIL_MESSAGE)]

    def cmd_enable(self) -> None:
        self.controller.enable_bandwidth_control(force=True)

    def cmd_disable(self) -> None:
        self.controller.disable_bandwidth_control()

    def cmd_datasaver(self, value: str) -> None:
        if value not in ('0', '1'):
            raise CommandParameterError(f'Invalid value: {value!r}')
        self.controller.enable_data_saver(value == '1')

    def cmd_setiquota(self, iface: str, value: str) -> None:
        self.controller.set_interface_quota(iface, parse_bytes(value))

    def cmd_removeiquota(self, iface: str) -> None:
        self.controller.remove_interface_quota(iface)

    def cmd_getiquota(self, iface: str) -> typing.List[Response]:
        quota = self.controller.get_interface_quota(iface)
        return [(ResponseCode.QUOTA_COUNTER_RESULT, str(quota))]

    def cmd_setquota(self, value: str, *ifaces: str) -> None:
        max_bytes = parse_bytes(value)
        for iface in ifaces:
            self.controller.set_interface_shared_quota(iface, max_bytes)

    def cmd_removequota(self, *ifaces: str) -> None:
        for iface in ifaces:
            self.controller.remove_interface_shared_quota(iface)

    def cmd_getquota(self) -> typing.List[Response]:
        quota = self.controller.get_interface_shared_quota()
        return [(ResponseCode.QUOTA_COUNTER_RESULT, str(quota))]

    def cmd_addniceapps(self, *uids: str) -> None:
        self.controller.add_nice_apps(uids)

    def cmd_removeniceapps(self, *uids: str) -> None:
        self.controller.remove_nice_apps(uids)

    def cmd_addnaughtyapps(self, *uids: str) -> None:
        self.controller.add_naughty_apps(uids)

    def cmd_removenaughtyapps(self, *uids: str) -> None:
        self.controller.remove_naughty_apps(uids)

    def cmd_setglobalalert(self, value: str) -> None:
        self.controller.set_global_alert(parse_bytes(value))

    def cmd_removeglobalalert(self) -> None:
        self.controller.remove_global_alert()

    def cmd_setglobalalertinforwardchain(self) -> None:
        self.controller.set_global_alert_in_forward_chain()

    def cmd_removeglobalalertinforwardchain(self) -> None:
        self.controller.remove_global_alert_in_forward_chain()

    def cmd_setsharedalert(self, value: str) -> None:
        self.controller.set_shared_alert(parse_bytes(value))

    def cmd_removesharedalert(self) -> None:
        self.controller.remove_shared_alert()

    def cmd_setinterfacealert(self, iface: str, value: str) -> None:
        self.controller.set_interface_alert(iface, parse_bytes(value))

    def cmd_removeinterfacealert(self, iface: str) -> None:
        self.controller.remove_interface_alert(iface)

    def cmd_gettetherstats(self, *ifaces: str) -> typing.List[Response]:
        if len(ifaces) == 1:
            raise CommandSyntaxError('Need both interfaces')
        filt = TetherStatsFilter(*ifaces)
        return self.controller.tether_stats_responses(filt)
