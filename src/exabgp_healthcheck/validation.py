import ipaddress
import math
import os
import re
from typing import List, Optional, Tuple, Union

from .config_store import ConfigSnapshot, GLOBAL_SECTION

YES_NO = ('yes', 'no')

# Plain ASCII decimal literals. Rejects nan/inf, exponents, digit
# separators and non-ASCII digits that int()/float() would accept.
_INT_RE = re.compile(r'[+-]?[0-9]+')
_NUMBER_RE = re.compile(r'[+-]?(?:[0-9]+(?:\.[0-9]*)?|\.[0-9]+)')


def _parse_int(raw: str) -> Optional[int]:
    text = raw.strip()
    if not _INT_RE.fullmatch(text):
        return None
    try:
        return int(text)
    except ValueError:
        # Over the interpreter's int string conversion limit
        return None


def _parse_number(raw: str) -> Optional[float]:
    text = raw.strip()
    if not _NUMBER_RE.fullmatch(text):
        return None
    number = float(text)
    # A long enough digit string still overflows to inf
    if not math.isfinite(number):
        return None
    return number


def _nearest_existing_dir(path: str) -> str:
    current = os.path.abspath(path)
    while not os.path.isdir(current):
        parent = os.path.dirname(current)
        if parent == current:
            break
        current = parent
    return current


def check_log_path(logfile: str, create_dirs: bool = False) -> List[str]:
    """
    Errors preventing the supervisor from logging to ``logfile``.

    With ``create_dirs`` the log directory is created when missing, as the
    announce path needs it anyway. Without it (``validate``/``list`` run by an
    operator) only creatability is checked, so nothing is left behind.
    """
    errors: List[str] = []
    logdir = os.path.dirname(os.path.abspath(logfile))

    if not os.path.isdir(logdir):
        if create_dirs:
            try:
                os.makedirs(logdir, exist_ok=True)
            except OSError as e:
                errors.append(f"Could not create log directory {logdir}: {e}")
                return errors
        else:
            ancestor = _nearest_existing_dir(logdir)
            if not os.access(ancestor, os.W_OK | os.X_OK):
                errors.append(f"Could not create log directory {logdir}: {ancestor} is not writable")
            return errors

    if os.path.isfile(logfile):
        if not os.access(logfile, os.W_OK):
            errors.append(f"Could not write to log file {logfile}")
    elif os.path.exists(logfile):
        errors.append(f"Log file path {logfile} is not a regular file")
    elif not os.access(logdir, os.W_OK | os.X_OK):
        errors.append(f"Could not create log file {logfile}: {logdir} is not writable")

    return errors


def split_prefix(entry: str) -> Tuple[str, Optional[str]]:
    """Split ``addr/len`` into its parts; a bare address has no length."""
    if '/' in entry:
        address, mask = entry.split('/', 1)
        return address.strip(), mask.strip()
    return entry.strip(), None


def _check_ip_entry(entry: str, nexthop: Union[ipaddress.IPv4Address, ipaddress.IPv6Address]) -> List[str]:
    errors: List[str] = []
    family = nexthop.version
    max_len = nexthop.max_prefixlen
    family_name = f"IPv{family}"

    address_text, mask_text = split_prefix(entry)

    prefix_len: Optional[int] = max_len
    if mask_text is not None:
        prefix_len = int(mask_text) if mask_text.isascii() and mask_text.isdigit() else None
        if prefix_len is None or prefix_len < 1 or prefix_len > max_len:
            errors.append(f"Netmask for address {entry} must be between 1 and {max_len}")
            prefix_len = None

    try:
        address = ipaddress.ip_address(address_text)
    except ValueError:
        errors.append(f"IP address {entry} is not a valid {family_name} address")
        return errors

    if address.version != family:
        errors.append(f"IP address {entry} is not a valid {family_name} address")
        return errors

    if prefix_len == max_len and address == nexthop:
        errors.append(f"IP address to advertise ({entry}) cannot be the same as the nexthop")

    return errors


def validate_service(snapshot: ConfigSnapshot, section: str, create_dirs: bool = False) -> List[str]:
    """
    Validates the configuration of one service section, with global fallback.

    Checks run in a fixed order and every violation is collected. Only the
    two section-existence checks stop early, since nothing else can be
    resolved without them.

    This includes:
    - Presence of the global and service sections.
    - logfile, metric (1-1000), interval, timeout (< interval), rise, fall.
    - logcheck and debug are yes/no.
    - command is set.
    - nexthop is an IPv4 or IPv6 address; its family drives IP validation.
    - At least one ip; each has the nexthop's family, a prefix length in
      range, and at full length is not the nexthop itself.
    - disable file is set.
    - The log directory and file can be written.

    Args:
        snapshot (ConfigSnapshot): Parsed configuration to check.
        section (str): Service section name.
        create_dirs (bool): Create a missing log directory while checking.

    Returns:
        list[str]: Human-readable error strings. Empty list means valid.
    """
    if not snapshot.has_section(GLOBAL_SECTION):
        return ["No configuration for the global section"]
    if not snapshot.has_section(section):
        return [f"No configuration for the {section} section"]

    errors: List[str] = []

    def value(key: str) -> Optional[str]:
        return snapshot.get(section, key)

    # Log file
    logfile = value('logfile')
    if not logfile:
        errors.append("No log file specified")

    # Metric
    metric = value('metric')
    if not metric:
        errors.append("No metric specified")
    elif _parse_int(metric) is None:
        errors.append("Metric specified is not a number")
    elif not 1 <= _parse_int(metric) <= 1000:
        errors.append("Metric specified must be between 1 and 1000")

    # Check interval
    interval_raw = value('interval')
    interval = None
    if not interval_raw:
        errors.append("No check interval specified")
    elif _parse_number(interval_raw) is None:
        errors.append("Check interval specified is not a number")
    elif _parse_number(interval_raw) <= 0:
        errors.append("Check interval must be greater than 0")
    else:
        interval = _parse_number(interval_raw)

    # Check timeout
    timeout_raw = value('timeout')
    timeout = None
    if not timeout_raw:
        errors.append("No timeout value specified")
    elif _parse_number(timeout_raw) is None:
        errors.append("Timeout specified is not a number")
    elif _parse_number(timeout_raw) <= 0:
        errors.append("Timeout must be greater than 0")
    else:
        timeout = _parse_number(timeout_raw)

    if interval is not None and timeout is not None and timeout >= interval:
        errors.append("The timeout specified is larger than the check interval")

    # Rise / fall
    for key, label in (('rise', 'Rise'), ('fall', 'Fall')):
        raw = value(key)
        if not raw:
            errors.append(f"No {key} value specified")
        elif _parse_int(raw) is None:
            errors.append(f"{label} value specified is not a number")
        elif _parse_int(raw) < 1:
            errors.append(f"{label} value must be at least 1")

    # Flags
    for key, label in (('logcheck', 'Logcheck'), ('debug', 'Debug')):
        raw = value(key)
        if not raw:
            errors.append(f"No {key} value specified")
        elif raw not in YES_NO:
            errors.append(f"{label} value must be yes or no")

    # Check command
    if not value('command'):
        errors.append("No check command specified")

    # Next hop
    nexthop = None
    nexthop_raw = value('nexthop')
    if not nexthop_raw:
        errors.append("Next hop IP address not supplied")
    else:
        try:
            nexthop = ipaddress.ip_address(nexthop_raw)
        except ValueError:
            errors.append("Next hop IP address not valid. It should be an IPv4 or IPv6 address.")

    # Prefixes to advertise
    ips = snapshot.get_all(section, 'ip')
    if not ips:
        errors.append("No IP addresses to advertise")
    elif nexthop is None:
        errors.append("IP address validation skipped due to nexthop configuration error")
    else:
        for entry in ips:
            errors.extend(_check_ip_entry(entry, nexthop))

    # Disable file
    if not value('disable'):
        errors.append("No disable file specified")

    # Logging must be possible
    if logfile:
        errors.extend(check_log_path(logfile, create_dirs=create_dirs))

    return errors


def format_errors(errors: List[str]) -> str:
    """Render an error list as one block for operators."""
    return ''.join(f"  - {error}\n" for error in errors)
