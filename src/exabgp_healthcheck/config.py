import os
import sys
from dataclasses import dataclass
from dotenv import load_dotenv

# Load environment variables from a .env file into the runtime environment
load_dotenv()


def _interactive_default() -> bool:
    mode = os.getenv('HEALTHCHECK_INTERACTIVE', 'auto').lower()
    if mode == 'auto':
        try:
            return sys.stdin.isatty()
        except (AttributeError, ValueError):
            return False
    return mode == 'true'


@dataclass
class Settings:
    """
    Process-level settings for the health-check supervisor, loaded from
    environment variables (optionally via a .env file).

    Per-service behaviour (check command, rise/fall, prefixes...) lives in the
    ini configuration file pointed to by ``config_file``; these settings only
    cover where things live and how logging behaves.

    Attributes:
        Paths:
            - config_file: ini file holding the global and per-service sections.
            - health_dir: Directory for status files and PID lock files.

        Logging:
            - logger_name: Name the supervisor logs as.
            - log_max_bytes: Log file size before rotation.
            - log_backup_count: Number of rotated backups to retain.
            - enable_structured_console: Output JSON to console for structured events.
            - enable_structured_file: Output JSON events to ``<logfile>.json``.

        Runtime:
            - interactive: Running from a terminal rather than under ExaBGP.
              Interactive runs log to the console and skip the status file
              and PID lock.
    """
    # Paths
    config_file: str = os.getenv('HEALTHCHECK_CONFIG', '/etc/exabgp/healthcheck.conf')
    health_dir: str = os.getenv('HEALTHCHECK_DIR', '/var/healthcheck/')

    # Logging
    logger_name: str = os.getenv('LOGGER_NAME', 'EXABGP_HEALTHCHECK').upper()
    log_max_bytes: int = int(os.getenv('LOG_MAX_BYTES', 10 * 1024 * 1024))
    log_backup_count: int = int(os.getenv('LOG_BACKUP_COUNT', 10))
    enable_structured_console: bool = os.getenv('ENABLE_STRUCTURED_CONSOLE', 'false').lower() == 'true'
    enable_structured_file: bool = os.getenv('ENABLE_STRUCTURED_FILE', 'false').lower() == 'true'

    # Runtime
    interactive: bool = _interactive_default()

    def status_file(self, service: str) -> str:
        return os.path.join(self.health_dir, service)

    def pid_file(self, service: str) -> str:
        return os.path.join(self.health_dir, f"{service}.run")


def validate_settings(settings: Settings, command: str = 'announce') -> list[str]:
    """
    Validates the process-level settings before any command runs.

    This includes:
    - The configuration file exists.
    - For ``announce``: the health directory exists and is writable, since
      running without a status file or PID lock risks duplicate route
      announcement or silent status loss.
    - Numeric ranges for log rotation.

    Args:
        settings (Settings): Loaded settings.
        command (str): The command about to run.

    Returns:
        list[str]: Human-readable error strings. Empty list means validation passed.
    """
    errors: list[str] = []

    if not settings.config_file:
        errors.append("No configuration file was specified")
    elif not os.path.isfile(settings.config_file):
        errors.append(f"The configuration file specified does not exist: {settings.config_file}")

    if command == 'announce' and not settings.interactive:
        if not os.path.isdir(settings.health_dir):
            errors.append(f"The directory {settings.health_dir} does not exist")
        elif not os.access(settings.health_dir, os.W_OK):
            errors.append(f"The directory {settings.health_dir} is not writable")

    numeric_ranges = {
        'LOG_MAX_BYTES': (settings.log_max_bytes, 1024, 1073741824),  # 1 KB to 1 GB
        'LOG_BACKUP_COUNT': (settings.log_backup_count, 1, 100),
    }
    for var, (val, mn, mx) in numeric_ranges.items():
        if val < mn or val > mx:
            errors.append(f"{var} must be between {mn} and {mx}, got {val}")

    return errors
