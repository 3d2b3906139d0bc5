"""
Service Configuration Store

Loads the ini-style health-check configuration, resolves per-service keys
with fallback to the ``global`` section, and detects edits to the file
between polls using a content fingerprint.

File Format:
    [global]
    interval = 5
    timeout = 2
    rise = 3
    fall = 2
    metric = 100
    logfile = /var/log/exabgp/healthcheck.log
    logcheck = no
    debug = no
    disable = /etc/exabgp/disable-all

    [web]
    command = "curl -fsS http://127.0.0.1/health"
    nexthop = 192.0.2.1
    ip = 198.51.100.10
    ip = 198.51.100.11/32

The ``ip`` key is repeatable. Repeated keys and indented continuation lines
both accumulate, in file order.

Snapshots:
    A ConfigSnapshot is immutable. A reload builds a brand new snapshot and
    the caller swaps it in only once it has validated, so a half-valid
    configuration is never active.
"""

import configparser
import hashlib
import ipaddress
import os
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Mapping, Optional, Tuple

from .announce import normalize_prefix
from .logging_setup import get_logger

GLOBAL_SECTION = 'global'


class ConfigError(Exception):
    """The configuration source is missing, unreadable or unusable."""


class _MultiValueDict(dict):
    """
    Section storage for ConfigParser that keeps repeated keys.

    ConfigParser stores a freshly read option as a one-element list and later
    joins lists into newline separated strings. Extending instead of replacing
    list values makes a repeated key accumulate like a continuation line.
    """

    def __setitem__(self, key, value):
        if isinstance(value, list) and key in self and isinstance(self[key], list):
            self[key].extend(value)
        else:
            super().__setitem__(key, value)


def parse_config_text(text: str, source: str = '<config>') -> Dict[str, Dict[str, List[str]]]:
    """
    Parse ini text into ``{section: {key: [values...]}}``.

    Raises:
        ConfigError: If the text is not valid ini.
    """
    parser = configparser.ConfigParser(
        strict=False,
        interpolation=None,
        dict_type=_MultiValueDict,
        default_section='__defaults__',
    )
    try:
        parser.read_string(text, source=source)
    except configparser.Error as e:
        raise ConfigError(f"Could not parse {source}: {e}") from e

    sections: Dict[str, Dict[str, List[str]]] = {}
    for name in parser.sections():
        options: Dict[str, List[str]] = {}
        for key, raw in parser.items(name, raw=True):
            if raw is None:
                options[key] = []
                continue
            options[key] = [line.strip() for line in raw.splitlines() if line.strip()]
        sections[name] = options
    return sections


def lookup(sections: Mapping[str, Mapping[str, List[str]]], section: str, key: str) -> Optional[List[str]]:
    """
    Resolve ``key`` for ``section``, falling back to the global section.

    Order: the section's own value, then ``global``, then None. A key that is
    present but empty in the section still shadows the global value.
    """
    own = sections.get(section)
    if own is not None and key in own:
        return list(own[key])
    shared = sections.get(GLOBAL_SECTION)
    if shared is not None and key in shared:
        return list(shared[key])
    return None


def fingerprint_bytes(data: bytes) -> str:
    return hashlib.md5(data).hexdigest()


def fingerprint(path: str) -> str:
    """MD5 hex digest of the file at ``path``. Raises OSError if unreadable."""
    with open(path, 'rb') as f:
        return fingerprint_bytes(f.read())


@dataclass(frozen=True)
class ConfigSnapshot:
    """Parsed configuration plus the fingerprint of the bytes it came from."""
    fingerprint: str
    sections: Dict[str, Dict[str, List[str]]] = field(default_factory=dict)

    @classmethod
    def from_text(cls, text: str, source: str = '<config>') -> 'ConfigSnapshot':
        return cls(
            fingerprint=fingerprint_bytes(text.encode('utf-8')),
            sections=parse_config_text(text, source),
        )

    def has_section(self, section: str) -> bool:
        return section in self.sections

    def service_sections(self) -> List[str]:
        """All sections except the global one, in file order."""
        return [name for name in self.sections if name != GLOBAL_SECTION]

    def get(self, section: str, key: str) -> Optional[str]:
        """Single value for ``key``; the last one wins if it was repeated."""
        values = lookup(self.sections, section, key)
        if not values:
            return None
        return values[-1]

    def get_all(self, section: str, key: str) -> List[str]:
        return lookup(self.sections, section, key) or []


class ConfigStore:
    """
    Handle on the configuration file and the currently active snapshot.

    ``load()`` never changes the active snapshot; callers decide whether to
    ``swap()`` the result in after validating it.
    """

    def __init__(self, path: str):
        self.path = path
        self.snapshot: Optional[ConfigSnapshot] = None

    def load(self) -> ConfigSnapshot:
        """
        Read and parse the file into a new snapshot.

        Raises:
            ConfigError: If the file is missing, unreadable or not valid ini.
        """
        if not os.path.isfile(self.path):
            raise ConfigError(f"The configuration file does not exist: {self.path}")
        try:
            with open(self.path, 'rb') as f:
                data = f.read()
        except OSError as e:
            raise ConfigError(f"Could not read configuration file {self.path}: {e}") from e

        try:
            text = data.decode('utf-8')
        except UnicodeDecodeError as e:
            raise ConfigError(f"Configuration file {self.path} is not valid UTF-8: {e}") from e

        return ConfigSnapshot(
            fingerprint=fingerprint_bytes(data),
            sections=parse_config_text(text, self.path),
        )

    def swap(self, snapshot: ConfigSnapshot) -> None:
        self.snapshot = snapshot

    def changed(self) -> bool:
        """
        True if the file content differs from the active snapshot.

        A read failure is logged and reported as no change, so the supervisor
        keeps running on the last good snapshot.
        """
        if self.snapshot is None:
            return True
        try:
            current = fingerprint(self.path)
        except OSError as e:
            get_logger().warning(f"Could not fingerprint configuration file {self.path}: {e}")
            return False
        return current != self.snapshot.fingerprint

    def get(self, section: str, key: str) -> Optional[str]:
        if self.snapshot is None:
            return None
        return self.snapshot.get(section, key)

    def get_all(self, section: str, key: str) -> List[str]:
        if self.snapshot is None:
            return []
        return self.snapshot.get_all(section, key)


def _flag(raw: Optional[str]) -> bool:
    return (raw or '').strip().lower() == 'yes'


@dataclass(frozen=True)
class ServiceConfig:
    """
    Fully resolved settings of one service, with global fallback applied.

    Only built from snapshots that passed validation; ``from_snapshot`` raises
    ConfigError rather than guessing if a value still cannot be converted.
    """
    name: str
    command: str
    interval: float
    timeout: float
    rise: int
    fall: int
    metric: int
    nexthop: str
    ips: Tuple[str, ...]
    disable_file: str
    logfile: str
    debug: bool = False
    logcheck: bool = False

    @classmethod
    def from_snapshot(cls, snapshot: ConfigSnapshot, section: str) -> 'ServiceConfig':
        def required(key: str) -> str:
            val = snapshot.get(section, key)
            if not val:
                raise ConfigError(f"{section}: missing required key '{key}'")
            return val

        try:
            return cls(
                name=section,
                command=required('command'),
                interval=float(required('interval')),
                timeout=float(required('timeout')),
                rise=int(required('rise')),
                fall=int(required('fall')),
                metric=int(required('metric')),
                nexthop=required('nexthop'),
                ips=tuple(snapshot.get_all(section, 'ip')),
                disable_file=required('disable'),
                logfile=required('logfile'),
                debug=_flag(snapshot.get(section, 'debug')),
                logcheck=_flag(snapshot.get(section, 'logcheck')),
            )
        except ValueError as e:
            raise ConfigError(f"{section}: invalid value: {e}") from e

    @property
    def prefixes(self) -> List[str]:
        """Configured IPs with the default prefix length applied."""
        return [normalize_prefix(ip) for ip in self.ips]

    def routing_key(self) -> Tuple[FrozenSet[str], int, str]:
        """What a running announcement depends on: prefix set, metric, nexthop."""
        try:
            nexthop = str(ipaddress.ip_address(self.nexthop.strip()))
        except ValueError:
            nexthop = self.nexthop
        return frozenset(self.prefixes), self.metric, nexthop
