"""
Check Command Runner

Runs a service's health-check command through the shell with a hard
timeout. The command gets its own process group so that a timeout kills
everything it started, not just the shell.

Exit Codes:
    0                   The check passed.
    > 0                 The check failed with that exit status.
    128 + N             The check was killed by signal N, as a shell reports it.
    CHECK_SPAWN_FAILED  The command could not be started at all.
    CHECK_TIMED_OUT     The command did not finish within the timeout.

Every non-zero result is a failed check for the state machine.
"""

import os
import signal
import subprocess
import time
from dataclasses import dataclass

from .logging_setup import get_logger

CHECK_SPAWN_FAILED = -1
CHECK_TIMED_OUT = -2


@dataclass(frozen=True)
class CheckResult:
    exit_code: int
    output: str = ''
    duration: float = 0.0

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    @property
    def timed_out(self) -> bool:
        return self.exit_code == CHECK_TIMED_OUT


def strip_quotes(command: str) -> str:
    """Remove one pair of quotes wrapping the whole command, if present."""
    command = command.strip()
    if len(command) >= 2 and command[0] == command[-1] and command[0] in ('"', "'"):
        return command[1:-1]
    return command


def _kill_group(proc: subprocess.Popen) -> None:
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        proc.kill()


class CheckRunner:
    """Executes check commands for one service."""

    def __init__(self, service: str):
        self.service = service

    def run(self, command: str, timeout: float, log_output: bool = False) -> CheckResult:
        """
        Run ``command`` and wait at most ``timeout`` seconds for it.

        Args:
            command (str): Shell command line; one wrapping quote pair is stripped.
            timeout (float): Seconds before the process group is killed.
            log_output (bool): Log the captured stdout/stderr at debug level.

        Returns:
            CheckResult: Never raises for check failures.
        """
        logger = get_logger()
        cmd = strip_quotes(command)
        start = time.time()

        logger.debug(f"{self.service}: Running check command [{cmd}] with timeout {timeout}s")

        try:
            proc = subprocess.Popen(
                cmd,
                shell=True,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        except (OSError, ValueError) as e:
            logger.error(f"{self.service}: Cannot start check command [{cmd}], service marked down: {e}")
            return CheckResult(CHECK_SPAWN_FAILED, '', time.time() - start)

        try:
            raw_output, _ = proc.communicate(timeout=timeout)
            exit_code = proc.returncode
            if exit_code < 0:
                exit_code = 128 - exit_code
        except subprocess.TimeoutExpired:
            _kill_group(proc)
            raw_output, _ = proc.communicate()
            exit_code = CHECK_TIMED_OUT
            logger.error(f"{self.service}: Check command [{cmd}] timed out after {timeout}s")

        output = (raw_output or b'').decode('utf-8', errors='replace')
        duration = time.time() - start

        logger.debug(f"{self.service}: Executed check command [{cmd}]. Return code [{exit_code}]")
        if log_output:
            logger.debug(f"{self.service}: Output from [{cmd}]: {output.strip()}")

        return CheckResult(exit_code, output, duration)
