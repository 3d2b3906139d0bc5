"""
Command Line Commands

The supervisor binary does four things, selected with ``-c``:

    announce  Run the supervisor for one service under ExaBGP
    validate  Check one or all service sections and print the errors
    list      Print the resolved settings ("facts") of one or all services
    status    Print the status files written by running supervisors

Each parsed command is a small dataclass; ``dispatch`` pattern-matches on it.
"""

import argparse
import os
import sys
from dataclasses import dataclass
from typing import Optional, TextIO, Union

from . import __version__
from .config import Settings, validate_settings
from .config_store import ConfigError, ConfigSnapshot, ConfigStore
from .daemon import cleanup, run_loop, setup_signal_handlers, startup
from .validation import format_errors, validate_service

COMMANDS = ('list', 'announce', 'validate', 'status')


@dataclass(frozen=True)
class Announce:
    name: str


@dataclass(frozen=True)
class Validate:
    name: Optional[str] = None


@dataclass(frozen=True)
class Status:
    name: Optional[str] = None


@dataclass(frozen=True)
class List:
    name: Optional[str] = None


Command = Union[Announce, Validate, Status, List]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='exabgp-healthcheck',
        description='Health check supervisor that announces or withdraws routes through ExaBGP.',
        epilog='Example: exabgp-healthcheck -c announce -n web -f /etc/exabgp/healthcheck.conf',
    )
    parser.add_argument('-c', '--command', choices=COMMANDS, default='list',
                        help='What to do (default: list)')
    parser.add_argument('-n', '--name', help='Service section to act on; all services if omitted')
    parser.add_argument('-f', '--config', help='Configuration file (default: $HEALTHCHECK_CONFIG)')
    parser.add_argument('-d', '--health-dir', help='Status and PID directory (default: $HEALTHCHECK_DIR)')
    parser.add_argument('-v', '--version', action='version', version=f'%(prog)s {__version__}')
    return parser


def parse_args(argv=None, settings: Optional[Settings] = None):
    """
    Parse the command line into a command and the effective settings.

    Usage errors (unknown command, ``announce`` without ``--name``) print the
    usage and exit with status 2.

    Returns:
        tuple: (Command, Settings)
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    settings = settings or Settings()
    if args.config:
        settings.config_file = args.config
    if args.health_dir:
        settings.health_dir = args.health_dir

    if args.command == 'announce':
        if not args.name:
            parser.error("No check name was specified (use -n)")
        command = Announce(args.name)
    elif args.command == 'validate':
        command = Validate(args.name)
    elif args.command == 'status':
        command = Status(args.name)
    else:
        command = List(args.name)

    return command, settings


def _load_snapshot(settings: Settings, out: TextIO) -> Optional[ConfigSnapshot]:
    errors = validate_settings(settings, 'list')
    if errors:
        out.write(''.join(f"Error: {e}\n" for e in errors))
        return None
    try:
        return ConfigStore(settings.config_file).load()
    except ConfigError as e:
        out.write(f"Error: {e}\n")
        return None


def _services(snapshot: ConfigSnapshot, name: Optional[str]) -> list[str]:
    return [name] if name else snapshot.service_sections()


def run_validate(settings: Settings, name: Optional[str], out: TextIO) -> int:
    snapshot = _load_snapshot(settings, out)
    if snapshot is None:
        return 1

    exit_code = 0
    for service in _services(snapshot, name):
        errors = validate_service(snapshot, service)
        if errors:
            out.write(f"Validating configuration for check {service}: Invalid\n")
            out.write(format_errors(errors))
            exit_code = 1
        else:
            out.write(f"Validating configuration for check {service}: Valid\n")
    return exit_code


def write_facts(snapshot: ConfigSnapshot, service: str, out: TextIO) -> None:
    facts = [
        ("Service Name", service),
        ("Check Command", snapshot.get(service, 'command')),
        ("Check Interval", snapshot.get(service, 'interval')),
        ("Check Timeout", snapshot.get(service, 'timeout')),
        ("Disable File", snapshot.get(service, 'disable')),
        ("Service Rise", snapshot.get(service, 'rise')),
        ("Service Fall", snapshot.get(service, 'fall')),
        ("Service Log", snapshot.get(service, 'logfile')),
        ("Debug Log", snapshot.get(service, 'debug')),
        ("Log Check Output", snapshot.get(service, 'logcheck')),
        ("Route Metric", snapshot.get(service, 'metric')),
        ("Route Nexthop", snapshot.get(service, 'nexthop')),
    ]
    for label, value in facts:
        out.write(f" - {label}: {value}\n")
    out.write(" - Announce IP's:\n")
    for ip in snapshot.get_all(service, 'ip'):
        out.write(f"   - {ip}\n")


def run_list(settings: Settings, name: Optional[str], out: TextIO) -> int:
    snapshot = _load_snapshot(settings, out)
    if snapshot is None:
        return 1

    services = _services(snapshot, name)
    for i, service in enumerate(services):
        out.write(f"Facts for {service}:\n")
        if validate_service(snapshot, service):
            out.write(f"Error: Invalid configuration. Perhaps try exabgp-healthcheck -c validate -n {service}\n")
        else:
            write_facts(snapshot, service, out)
        if not name and i < len(services) - 1:
            out.write("\n")
    return 0


def run_status(settings: Settings, name: Optional[str], out: TextIO) -> int:
    if name:
        services = [name]
    else:
        snapshot = _load_snapshot(settings, out)
        if snapshot is None:
            return 1
        services = snapshot.service_sections()

    for i, service in enumerate(services):
        path = settings.status_file(service)
        if not os.path.isfile(path):
            out.write(f"NO STATUS FILE FOR {service} - PERHAPS IT HAS NOT RUN YET\n")
        else:
            try:
                with open(path) as f:
                    content = f.read()
            except OSError as e:
                out.write(f"Error: Could not read status file {path}: {e}\n")
                continue
            out.write(f"STATUS FOR {service}:\n")
            out.write(content)
        if not name and i < len(services) - 1:
            out.write("\n")
    return 0


def run_announce(settings: Settings, name: str) -> int:
    setup_signal_handlers(settings.interactive)
    ctx = startup(settings, name)
    try:
        run_loop(ctx)
    finally:
        cleanup(ctx)
    return 0


def dispatch(command: Command, settings: Settings, out: Optional[TextIO] = None) -> int:
    """
    Run a parsed command.

    Returns:
        int: Process exit status.
    """
    if out is None:
        out = sys.stdout

    match command:
        case Announce(name=name):
            return run_announce(settings, name)
        case Validate(name=name):
            return run_validate(settings, name, out)
        case Status(name=name):
            return run_status(settings, name, out)
        case List(name=name):
            return run_list(settings, name, out)
        case _:
            raise TypeError(f"Unknown command: {command!r}")
