"""
scanner-button: finds Canon multi-function printers on the local network, and runs a command
when the scan button of one of them is pressed.
"""
import argparse
import asyncio
import logging
import math
import signal
import socket
import sys

import psutil
from configobj import ConfigObjError
from tabulate import tabulate

from scanbutton.conduit.session import TRACE, format_address, parse_address
from scanbutton.config.config import apply_conf, load_config
from scanbutton.discovery import LocalAddress, discover
from scanbutton.launcher import CommandLauncher, dispatch
from scanbutton.listener import EventListener
from scanbutton.support.cancellation import CancellationToken
from scanbutton.support.retry_strategy import ExponentialBackoffStrategy

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s %(levelname)-7s %(name)s: %(message)s'

COMMAND_HELP = """\
command to execute when the scan button is pressed. The settings chosen on the
device are passed in environment variables:
  SCANNER_COLOR_MODE = COLOR | MONO
  SCANNER_PAGE       = A4 | LETTER | 10x15 | 13x18 | AUTO
  SCANNER_FORMAT     = JPEG | TIFF | PDF | KOMPAKT_PDF
  SCANNER_DPI        = 75 | 150 | 300 | 600
  SCANNER_SOURCE     = FLATBED | FEEDER
  SCANNER_ADF_TYPE   = SIMPLEX | DUPLEX
  SCANNER_ADF_ORIENT = PORTRAIT | LANDSCAPE
"""


def seconds(text):
    """ a duration of at least one second """
    try:
        value = float(text)
    except ValueError:
        raise argparse.ArgumentTypeError("`%s` is not a number" % text) from None
    if not math.isfinite(value) or value < 1:
        raise argparse.ArgumentTypeError("`%s` is not in range [1, +inf)" % text)
    return int(value) if value.is_integer() else value


def factor(text):
    try:
        value = float(text)
    except ValueError:
        raise argparse.ArgumentTypeError("`%s` is not a number" % text) from None
    if not math.isfinite(value) or value <= 1:
        raise argparse.ArgumentTypeError("`%s` is not in range (1.0, +inf)" % text)
    return value


def scanner_address(text):
    """ host[:port]; the port is filled in from the configuration when missing """
    try:
        return parse_address(text, default_port=None)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from None


def resolve(address):
    """ checks that the host resolves, returning the address unchanged """
    host, port = address
    try:
        socket.getaddrinfo(host, port, type=socket.SOCK_DGRAM)
    except (socket.gaierror, UnicodeError) as e:
        raise ValueError("unable to resolve %s: %s" % (host, e)) from e
    return host, port


def add_global_options(parser, suppress=False):
    """ The options accepted before and after the subcommand. """
    default = (lambda value: argparse.SUPPRESS) if suppress else (lambda value: value)
    parser.add_argument('--max-waiting', metavar='SECS', type=seconds, default=default(None),
                        help='seconds to wait for a response (default 5)')
    parser.add_argument('-v', '--verbose', action='count', default=default(0),
                        help='show more messages; repeat for more detail')
    parser.add_argument('-q', '--quiet', action='store_true', default=default(False),
                        help='only show critical errors')
    parser.add_argument('--config', metavar='FILE', default=default(None),
                        help='configuration file overriding ~/.scanbutton.cfg')


def build_parser():
    parser = argparse.ArgumentParser(
        prog='scanner-button',
        description='A utility for Canon multi-function printers: detects the printers on the LAN, '
                    'or listens for scan button presses and runs a command.')
    add_global_options(parser)
    subcommands = parser.add_subparsers(dest='subcommand', metavar='COMMAND')
    subcommands.required = True

    scan = subcommands.add_parser('scan', help='scan for Canon multi-function printers in the LAN')
    add_global_options(scan, suppress=True)
    scan.set_defaults(port=None, inquire=None)

    listen = subcommands.add_parser('listen', help='listen for scan button presses and execute a command',
                                    formatter_class=argparse.RawDescriptionHelpFormatter, epilog=COMMAND_HELP)
    add_global_options(listen, suppress=True)
    listen.add_argument('-s', '--scanner', metavar='ADDR', type=scanner_address, required=True,
                        help='the address of the scanner, host[:port]')
    listen.add_argument('--hostname', help='name of this host shown on the scanner (default: the host name)')
    listen.add_argument('--backoff-factor', metavar='FACTOR', type=factor,
                        help='exponential factor of backing off when retrying the connection (default 2)')
    listen.add_argument('--backoff-maximum', metavar='SECS', type=seconds,
                        help='maximum seconds of backing off when retrying the connection (default 1800)')
    listen.add_argument('command', help='command to execute when the scan button is pressed')
    listen.add_argument('args', nargs=argparse.REMAINDER, help='arguments to the command')
    listen.set_defaults(port=None, poll_interval=None, max_missed_polls=None)
    return parser


def parse_args(parser, argv=None):
    """
    Parses the command line and fills the options not given from the configuration files.
    Invalid options and configuration exit with status 2.
    """
    args = parser.parse_args(argv)
    try:
        settings = load_config(config_file=args.config)
    except (ConfigObjError, IOError) as e:
        parser.error(str(e))
    apply_conf(settings[args.subcommand], args)
    if args.subcommand == 'listen':
        if args.backoff_factor <= 1:
            parser.error("backoff factor %s is not in range (1.0, +inf)" % args.backoff_factor)
        if args.backoff_maximum < args.max_waiting:
            parser.error("backoff maximum %s is less than the maximum waiting time %s"
                         % (args.backoff_maximum, args.max_waiting))
        host, port = args.scanner
        try:
            args.scanner = resolve((host, port or args.port))
        except ValueError as e:
            parser.error(str(e))
    return args


def log_level(verbose, quiet):
    """
    >>> log_level(0, False) == logging.WARNING
    True
    >>> log_level(2, False) == logging.DEBUG
    True
    """
    if quiet:
        return logging.CRITICAL
    return [logging.WARNING, logging.INFO, logging.DEBUG, TRACE][min(verbose, 3)]


def configure_logging(verbose, quiet):
    logging.addLevelName(TRACE, 'TRACE')
    logging.basicConfig(level=log_level(verbose, quiet), format=LOG_FORMAT, stream=sys.stderr)
    logging.getLogger().setLevel(log_level(verbose, quiet))


def local_addresses(log=logger):
    """ the addresses of the network interfaces that are up """
    stats = psutil.net_if_stats()
    for name, addrs in psutil.net_if_addrs().items():
        stat = stats.get(name)
        if stat is None or not stat.isup:
            continue
        for addr in addrs:
            if addr.family not in (socket.AF_INET, socket.AF_INET6):
                continue
            try:
                yield LocalAddress(addr.address, addr.broadcast if addr.family == socket.AF_INET else None, name)
            except ValueError as e:
                log.debug("ignoring address %s on %s: %s" % (addr.address, name, e))


def format_records(records, verbose=0):
    """ a table of the devices found, ordered by address """
    if not records:
        return "no devices found"
    headers = ['IP', 'Port', 'MAC', 'Model', 'Latency (ms)']
    if verbose:
        headers.append('Identity')
    rows = []
    for record in sorted(records, key=lambda r: r.identity.address):
        identity = record.identity
        host, port = identity.address
        row = [host, port, identity.mac_address or '', identity.model or '', '%.1f' % (record.latency * 1000)]
        if verbose:
            fields = identity.device_id.fields if identity.device_id else {}
            row.append('\n'.join('%s: %s' % (k, v) for k, v in sorted(fields.items())))
        rows.append(row)
    return tabulate(rows, headers=headers)


def install_signal_handlers(token: CancellationToken):
    """ SIGINT and SIGTERM set the token. Returns the signals handled. """
    loop = asyncio.get_running_loop()
    handled = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, token.cancel)
        except (NotImplementedError, RuntimeError):
            # not supported by the event loop; KeyboardInterrupt still ends the run
            continue
        handled.append(sig)
    return handled


async def run_until_shutdown(main, *args):
    token = CancellationToken()
    handled = install_signal_handlers(token)
    try:
        return await main(token, *args)
    finally:
        loop = asyncio.get_running_loop()
        for sig in handled:
            loop.remove_signal_handler(sig)


async def scan(token, args):
    addresses = list(local_addresses())
    if not addresses:
        logger.error("no network interface is up")
        return 1
    logger.info("broadcasting from %s" % ', '.join(str(a.ip) for a in addresses))
    records = await discover(addresses, args.max_waiting, args.inquire, token, args.port)
    print(format_records(records, args.verbose))
    return 0


async def listen(token, args):
    strategy = ExponentialBackoffStrategy(args.max_waiting, args.backoff_factor, args.backoff_maximum)
    listener = EventListener(args.scanner, args.hostname, token, strategy, max_waiting=args.max_waiting,
                             poll_interval=args.poll_interval, max_missed_polls=args.max_missed_polls)
    launcher = CommandLauncher([args.command] + list(args.args))
    logger.info("listening to %s as %s" % (format_address(args.scanner), listener.hostname))
    await dispatch(listener.events(), launcher)
    return 0


commands = {
    'scan': scan,
    'listen': listen,
}


def main(argv=None):
    """ :return: the exit status """
    parser = build_parser()
    try:
        args = parse_args(parser, argv)
    except SystemExit as e:
        return e.code
    configure_logging(args.verbose, args.quiet)
    logger.debug("options: %s" % vars(args))
    try:
        return asyncio.run(run_until_shutdown(commands[args.subcommand], args))
    except KeyboardInterrupt:
        return 130


def run():
    sys.exit(main())


if __name__ == '__main__':  # pragma no cover
    run()
