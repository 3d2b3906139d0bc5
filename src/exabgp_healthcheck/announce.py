"""
ExaBGP Announcement Emitter

Writes the text commands ExaBGP reads from a helper process's stdout:

    announce route <prefix> next-hop <nexthop> med <metric>
    withdraw route <prefix> next-hop <nexthop> med <metric>

One line per prefix, in configured order. Bare addresses get the full-length
mask for their family (/32 or /128) so ExaBGP always sees a prefix.

Nothing else may write to stdout while the supervisor runs; all logging goes
to stderr or files.
"""

import ipaddress
import sys
import time
from typing import Iterable, List, Optional, TextIO

from .logging_setup import get_logger
from .structured_events import ActionResult, StructuredEventLogger


def normalize_prefix(entry: str) -> str:
    """
    Return ``entry`` as a prefix with an explicit length.

    ``192.0.2.10`` -> ``192.0.2.10/32``, ``2001:db8::1`` -> ``2001:db8::1/128``.
    Entries that already carry a length keep it. IPv6 text is compressed to
    its canonical form. Unparseable entries are returned stripped but
    otherwise untouched; validation rejects them before they get here.
    """
    entry = entry.strip()
    try:
        return str(ipaddress.ip_interface(entry))
    except ValueError:
        return entry


class AnnouncementEmitter:
    """
    Emits announce/withdraw lines for a service's prefixes.

    Args:
        service (str): Service name, used in log messages.
        stream (TextIO): Where protocol lines go. Defaults to sys.stdout at
            call time so tests and redirection see the live stream.
        structured_logger (StructuredEventLogger): Optional structured event sink.
    """

    def __init__(self, service: str, stream: Optional[TextIO] = None,
                 structured_logger: Optional[StructuredEventLogger] = None):
        self.service = service
        self._stream = stream
        self.structured_logger = structured_logger

    @property
    def stream(self) -> TextIO:
        return self._stream if self._stream is not None else sys.stdout

    def announce(self, ips: Iterable[str], nexthop: str, metric: int) -> List[str]:
        """Announce every prefix. Callers only do this while the service is (going) up."""
        return self._emit('announce', ips, nexthop, metric)

    def withdraw(self, ips: Iterable[str], nexthop: str, metric: int) -> List[str]:
        """Withdraw every prefix. Safe to repeat; ExaBGP ignores unknown withdrawals."""
        return self._emit('withdraw', ips, nexthop, metric)

    def _emit(self, action: str, ips: Iterable[str], nexthop: str, metric: int) -> List[str]:
        logger = get_logger()
        start = time.time()
        prefixes = [normalize_prefix(ip) for ip in ips]
        lines = [f"{action} route {prefix} next-hop {nexthop} med {metric}" for prefix in prefixes]

        error_message = None
        try:
            for line in lines:
                logger.debug(f"{self.service}: Send to exabgp: {line}")
                self.stream.write(line + "\n")
            self.stream.flush()
        except (OSError, ValueError) as e:
            # A closed pipe means ExaBGP went away; it drops our routes itself.
            error_message = str(e)
            logger.error(f"{self.service}: Could not {action} routes: {e}")

        if self.structured_logger:
            self.structured_logger.log_route_change(
                service=self.service,
                action=action,
                prefixes=prefixes,
                nexthop=nexthop,
                metric=metric,
                result=ActionResult.FAILURE if error_message else ActionResult.SUCCESS,
                duration_ms=int((time.time() - start) * 1000),
                error_message=error_message,
            )
        return lines
