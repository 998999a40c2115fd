import eventlet
eventlet.monkey_patch()

import argparse
import configparser
import logging
import os
import socket
import sys
import typing

import coloredlogs

from .commands import CommandDispatcher
from .controller import BandwidthController
from .iptables import IptablesExecutor
from .iptables import ProcQuotaHandle
from .iptables import SubprocessRuleSink
from .quota_state import QuotaStateTracker
from .response import ResponseWriter
from .response import format_responses


logger = logging.getLogger('bandwidth_control')

CONF_SECTION = 'bandwidth_control'
DEFAULT_CONF = '/etc/bandwidth_control.conf'
DEFAULT_LISTEN = '/run/bandwidth_control.sock'


def load_conf(path: str) -> typing.Dict[str, str]:
    parser = configparser.ConfigParser()
    if not parser.read(path):
        logger.debug("No config at %s; using defaults", path)
    if not parser.has_section(CONF_SECTION):
        return {}
    return dict(parser.items(CONF_SECTION))


def make_dispatcher(conf: typing.Dict[str, str]) -> CommandDispatcher:
    executor = IptablesExecutor(
        SubprocessRuleSink(conf),
        ProcQuotaHandle(conf.get('quota_dir', '/proc/net/xt_quota')),
    )
    return CommandDispatcher(
        BandwidthController(executor, QuotaStateTracker(), conf))


def listen(address: str) -> socket.socket:
    host, sep, port = address.rpartition(':')
    if sep and port.isdigit():
        return eventlet.listen((host or '0.0.0.0', int(port)))
    try:
        os.unlink(address)
    except FileNotFoundError:
        pass
    return eventlet.listen(address, family=socket.AF_UNIX)


def handle(dispatcher: CommandDispatcher, conn: socket.socket) -> None:
    with conn, conn.makefile('rb') as rfile, conn.makefile('wb') as wfile:
        writer = ResponseWriter(wfile)
        for raw in rfile:
            line = raw.decode('utf-8', 'replace').strip()
            if not line:
                continue
            logger.debug("Command: %s", line)
            writer.send_all(dispatcher.dispatch(line))


def serve(dispatcher: CommandDispatcher, address: str) -> None:
    controller = dispatcher.controller
    controller.setup_iptables_hooks()
    controller.enable_bandwidth_control()

    server = listen(address)
    pool = eventlet.GreenPool()
    logger.info("Listening on %s", address)
    while True:
        try:
            conn, _ = server.accept()
        except KeyboardInterrupt:
            break
        pool.spawn_n(handle, dispatcher, conn)


def main(argv: typing.Optional[typing.List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog='bandwidth_control',
        description='Bandwidth accounting and quota controller')
    parser.add_argument('--config', default=DEFAULT_CONF,
                        help='INI config file (default: %(default)s)')
    parser.add_argument('--log-level', default=None,
                        help='override the configured log level')
    parser.add_argument('command', nargs='+',
                        help='"serve", or a single stateless command '
                             'to run once')
    args = parser.parse_args(argv)

    conf = load_conf(args.config)
    coloredlogs.install(
        level=args.log_level or conf.get('log_level', 'INFO'),
        logger=logger,
        fmt="%(asctime)s %(name)s [%(levelname)s] %(message)s",
    )

    dispatcher = make_dispatcher(conf)
    if args.command == ['serve']:
        serve(dispatcher, conf.get('listen', DEFAULT_LISTEN))
        return 0

    line = ' '.join(args.command)
    if not dispatcher.is_stateless(line):
        # a fresh process knows nothing about what the server installed
        parser.error(f'{args.command[0]} needs the running server; send it '
                     f'to {conf.get("listen", DEFAULT_LISTEN)} instead')
    responses = dispatcher.dispatch(line)
    print(format_responses(responses), end='')
    return 0 if responses[-1][0] < 400 else 1


if __name__ == '__main__':
    sys.exit(main())
