import os
import json
import logging
from logging.handlers import RotatingFileHandler

DEFAULT_LOGGER_NAME = "EXABGP_HEALTHCHECK"

LOG_FORMAT = '%(asctime)s %(process)d %(levelname)s %(message)s'

# Marker set on every handler installed here so a re-run can remove them
_HANDLER_TAG = '_healthcheck_handler'


def get_logger() -> logging.Logger:
    """The supervisor's logger, named by LOGGER_NAME like the rest of the daemon."""
    return logging.getLogger(os.getenv("LOGGER_NAME", DEFAULT_LOGGER_NAME).upper())


class StructuredFormatter(logging.Formatter):
    """
    Custom formatter that outputs JSON for structured logging.
    """
    def format(self, record):
        # Check if this is a structured log entry
        if hasattr(record, 'json_fields') and record.json_fields.get('structured_event'):
            # Output pure JSON for structured events
            return json.dumps(record.json_fields, separators=(',', ':'), default=str)
        else:
            # Use standard formatting for regular log messages
            return super().format(record)


class StructuredFilter(logging.Filter):
    """
    Filter that only allows structured log events to pass through.
    """
    def filter(self, record):
        # Only allow records that have json_fields with structured_event=True
        return (hasattr(record, 'json_fields') and
                record.json_fields.get('structured_event', False))


class NonStructuredFilter(logging.Filter):
    """
    Filter that only allows non-structured log events to pass through.
    """
    def filter(self, record):
        # Only allow records that DON'T have structured_event=True
        return not (hasattr(record, 'json_fields') and
                   record.json_fields.get('structured_event', False))


def _tag(handler: logging.Handler) -> logging.Handler:
    setattr(handler, _HANDLER_TAG, True)
    return handler


def _remove_installed_handlers(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        if getattr(handler, _HANDLER_TAG, False):
            logger.removeHandler(handler)
            try:
                handler.close()
            except Exception:
                pass


def _file_handler(path: str, level: int, max_bytes: int, backup_count: int,
                  formatter: logging.Formatter, log_filter: logging.Filter) -> RotatingFileHandler:
    fh = RotatingFileHandler(path, maxBytes=max_bytes, backupCount=backup_count)
    fh.setLevel(level)
    fh.setFormatter(formatter)
    fh.addFilter(log_filter)
    return _tag(fh)


def setup_logger(name: str | None, log_file: str | None, max_bytes: int, backup_count: int,
                 debug: bool = False, console: bool = False,
                 enable_structured_console: bool = False, enable_structured_file: bool = False):
    """
    Configure the supervisor's logger. Safe to call again: handlers installed
    by a previous call are closed and replaced, which is how the log sink is
    re-opened after the logfile or debug setting changes.

    Files written for ``log_file``:
        - ``<log_file>``        INFO and above
        - ``<log_file>.error``  ERROR and above
        - ``<log_file>.debug``  DEBUG and above, only when ``debug`` is set
        - ``<log_file>.json``   structured events, when enabled

    Console output always goes to stderr; stdout carries ExaBGP commands.

    Args:
        debug (bool): Also write the debug log file.
        console (bool): Log everything at DEBUG to the console (interactive runs).
        enable_structured_console (bool): Output JSON to console for structured events
        enable_structured_file (bool): Output JSON to a separate structured log file
    """

    # Create or retrieve a logger instance by name
    logger_name = name or os.getenv("LOGGER_NAME", DEFAULT_LOGGER_NAME)
    logger = logging.getLogger(logger_name.upper())
    logger.setLevel(logging.DEBUG)
    logger.propagate = False

    _remove_installed_handlers(logger)

    # Regular formatter for human-readable logs
    regular_formatter = logging.Formatter(LOG_FORMAT)

    # Structured formatter for JSON output
    structured_formatter = StructuredFormatter()

    # Set up console (stream) logging
    if console or enable_structured_console:
        ch = logging.StreamHandler()
        ch.setLevel(logging.DEBUG)
        if enable_structured_console:
            # Console shows structured JSON for structured events only
            ch.setFormatter(structured_formatter)
            ch.addFilter(StructuredFilter())
        else:
            # Console shows human-readable format for non-structured events only
            ch.setFormatter(regular_formatter)
            ch.addFilter(NonStructuredFilter())
        logger.addHandler(_tag(ch))

    # Set up regular file logging (non-structured events only)
    if log_file:
        try:
            log_dir = os.path.dirname(log_file)
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)
            logger.addHandler(_file_handler(log_file, logging.INFO, max_bytes, backup_count,
                                            regular_formatter, NonStructuredFilter()))
            logger.addHandler(_file_handler(f"{log_file}.error", logging.ERROR, max_bytes, backup_count,
                                            regular_formatter, NonStructuredFilter()))
            if debug:
                logger.addHandler(_file_handler(f"{log_file}.debug", logging.DEBUG, max_bytes, backup_count,
                                                regular_formatter, NonStructuredFilter()))
            logger.debug(f"File logging enabled: {log_file} (debug={'yes' if debug else 'no'})")
        except OSError as e:
            logger.warning(f"Could not setup file logging at {log_file}: {e}")

        # Set up structured JSON file logging (structured events only)
        if enable_structured_file:
            structured_log_file = f"{log_file}.json"
            try:
                logger.addHandler(_file_handler(structured_log_file, logging.DEBUG, max_bytes, backup_count,
                                                structured_formatter, StructuredFilter()))
                logger.debug(f"Structured JSON file logging enabled: {structured_log_file}")
            except OSError as e:
                logger.warning(f"Could not setup structured file logging at {structured_log_file}: {e}")

    return logger
