"""
Status Reporting and Process Lock

StatusReporter publishes the supervisor's state for operators: a small text
file under the health directory and the process title shown by ``ps``.
Nothing in the supervisor ever reads these back.

Status File Format:
    Service State: UP | FALLING 1/3
    Last State Change: 2025-01-31 14:02:11
    Nexthop: 192.0.2.1
    Managed IP's: 198.51.100.10/32 198.51.100.11/32

ProcessLock keeps a PID file next to the status file so two supervisors for
the same service cannot announce the same routes at once.
"""

import os
import tempfile
import time
from typing import Iterable, Optional

import psutil
import setproctitle

from .logging_setup import get_logger

TIMESTAMP_FORMAT = '%Y-%m-%d %H:%M:%S'


def format_status(status: str, nexthop: str, ips: Iterable[str], now: Optional[float] = None) -> str:
    timestamp = time.strftime(TIMESTAMP_FORMAT, time.localtime(now if now is not None else time.time()))
    return (
        f"Service State: {status}\n"
        f"Last State Change: {timestamp}\n"
        f"Nexthop: {nexthop}\n"
        f"Managed IP's: {' '.join(ips)}\n"
    )


def write_atomic(path: str, content: str) -> None:
    """Replace ``path`` with ``content`` so readers never see a partial file."""
    directory = os.path.dirname(path) or '.'
    fd, tmp_path = tempfile.mkstemp(prefix=f".{os.path.basename(path)}.", dir=directory)
    try:
        with os.fdopen(fd, 'w') as f:
            f.write(content)
        os.chmod(tmp_path, 0o644)
        os.replace(tmp_path, path)
    except OSError:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


class StatusReporter:
    """
    Args:
        service (str): Service name.
        status_file (str): Path of the status file, or None to skip the file.
        set_title (bool): Update the process title on every report.
    """

    def __init__(self, service: str, status_file: Optional[str] = None, set_title: bool = True):
        self.service = service
        self.status_file = status_file
        self.set_title = set_title
        self.last_status: Optional[str] = None

    def report(self, status: str, nexthop: str, ips: Iterable[str]) -> None:
        logger = get_logger()
        self.last_status = status
        logger.debug(f"{self.service}: Status {status}")

        if self.set_title:
            setproctitle.setproctitle(f"ExaBGP healthcheck: {self.service} {status}")

        if not self.status_file:
            return
        try:
            write_atomic(self.status_file, format_status(status, nexthop, ips))
        except OSError as e:
            logger.warning(f"{self.service}: Could not write status file {self.status_file}: {e}")


class LockHeldError(Exception):
    """Another live process already supervises this service."""

    def __init__(self, path: str, pid: int):
        super().__init__(f"{path} is held by running process {pid}")
        self.path = path
        self.pid = pid


def _read_pid(path: str) -> Optional[int]:
    try:
        with open(path) as f:
            text = f.read().strip()
    except FileNotFoundError:
        return None
    try:
        return int(text)
    except ValueError:
        return None


class ProcessLock:
    """PID file lock. Stale files left by a killed supervisor are taken over."""

    def __init__(self, path: str):
        self.path = path
        self.acquired = False

    def acquire(self) -> None:
        """
        Raises:
            LockHeldError: If the PID file names a live process other than us.
            OSError: If the PID file cannot be written.
        """
        logger = get_logger()
        pid = _read_pid(self.path)
        if pid is not None and pid != os.getpid() and psutil.pid_exists(pid):
            raise LockHeldError(self.path, pid)
        if pid is not None and pid != os.getpid():
            logger.warning(f"Removing stale PID file {self.path} left by process {pid}")

        write_atomic(self.path, f"{os.getpid()}\n")
        self.acquired = True
        logger.debug(f"Acquired PID file {self.path}")

    def release(self) -> None:
        """Remove the PID file, but only while it still holds our PID."""
        if not self.acquired:
            return
        self.acquired = False
        if _read_pid(self.path) != os.getpid():
            return
        try:
            os.unlink(self.path)
        except OSError as e:
            get_logger().warning(f"Could not remove PID file {self.path}: {e}")
