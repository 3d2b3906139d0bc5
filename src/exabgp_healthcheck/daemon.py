"""
Supervisor Loop for ExaBGP Health Checks

This module implements the long-running supervisor started by ExaBGP for one
service. It repeatedly runs the service's check command and decides, with
rise/fall hysteresis, whether the service's prefixes should be announced or
withdrawn. Decisions are written to stdout as ExaBGP text commands.

Control Loop:
    Every iteration:
    1. Config refresh: if the config file fingerprint changed, validate the new
       file for this service. Invalid files are logged and ignored (the last
       good configuration stays active and the change is seen again on the
       next poll). Valid files are swapped in whole.
    2. Disable file: its appearance withdraws routes and parks the service in
       DISABLED; its removal returns to INIT/DOWN with zeroed counters.
    3. Check: run the command (skipped while disabled) and feed the result
       through the hysteresis in state.py.
    4. Sleep ``max(interval - duration, 1)`` seconds, or until shutdown.

Route Changes While Up:
    When a reload changes the prefix set, metric or nexthop of a service that
    is currently UP, the old routes are withdrawn under the old parameters and
    the new routes announced under the new ones: one withdraw batch, then one
    announce batch. While DOWN the new configuration is adopted silently.

Signal Handling:
    - SIGTERM: Graceful shutdown. The current step finishes, the status becomes
      TERMINATED and the PID lock is released. Routes are NOT withdrawn;
      ExaBGP drops them when the helper process goes away.
    - SIGINT: Ignored under ExaBGP, same as SIGTERM when run from a terminal.

Observability:
    - Human readable log lines prefixed with the service name
    - Structured events for checks, route changes, state transitions,
      config reloads and disable file changes
    - A correlation ID per iteration ties the events of one poll together

Usage:
    from .daemon import startup, run_loop, cleanup
    from .config import Settings

    ctx = startup(Settings(), "web")
    try:
        run_loop(ctx)
    finally:
        cleanup(ctx)
"""

import math
import os
import signal
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Optional

from .announce import AnnouncementEmitter
from .check import CheckRunner
from .config import Settings, validate_settings
from .config_store import ConfigError, ConfigStore, ServiceConfig
from .logging_setup import get_logger, setup_logger
from .state import (
    STATUS_DISABLED,
    STATUS_INIT,
    STATUS_TERMINATED,
    ServiceState,
    Transition,
    apply_check_result,
    reset_state,
    should_report,
    status_label,
)
from .status import LockHeldError, ProcessLock, StatusReporter
from .structured_events import ActionResult, EventType, StructuredEventLogger
from .validation import format_errors, validate_service

# Global event used to signal graceful shutdown
# Set by signal handlers and checked by the main loop between iterations
shutdown_event = threading.Event()

MAX_CONSECUTIVE_ERRORS = 10
MIN_SLEEP_SECONDS = 1.0


@dataclass
class SupervisorContext:
    """
    Everything one supervisor owns. Passed explicitly to every step of the
    loop; nothing else mutates ``config`` or ``state``.

    Attributes:
        service (str): Section name of the supervised service.
        settings (Settings): Process-level settings.
        store (ConfigStore): Config file handle holding the active snapshot.
        config (ServiceConfig): Resolved settings from the active snapshot.
        state (ServiceState): Hysteresis state.
        runner (CheckRunner): Runs the check command.
        emitter (AnnouncementEmitter): Writes announce/withdraw lines.
        reporter (StatusReporter): Status file and process title.
        structured_logger (StructuredEventLogger): Structured event sink.
        lock (ProcessLock): PID lock, None in interactive mode.
    """
    service: str
    settings: Settings
    store: ConfigStore
    config: ServiceConfig
    runner: CheckRunner
    emitter: AnnouncementEmitter
    reporter: StatusReporter
    structured_logger: StructuredEventLogger
    state: ServiceState = field(default_factory=ServiceState)
    lock: Optional[ProcessLock] = None


def signal_handler(signum: int, frame) -> None:
    """
    Sets the shutdown event so the loop exits after its current step.

    Runs in the restricted signal context, so it only logs and sets the event.
    """
    logger = get_logger()

    signal_names = {
        signal.SIGTERM: 'SIGTERM',
        signal.SIGINT: 'SIGINT'
    }
    signal_name = signal_names.get(signum, f'Signal-{signum}')

    logger.info(f"Received {signal_name}, initiating graceful shutdown...")
    shutdown_event.set()


def setup_signal_handlers(interactive: bool) -> None:
    """
    Register shutdown handling.

    Under ExaBGP (``interactive`` False) SIGINT is ignored so a Ctrl+C aimed
    at ExaBGP in the foreground does not take the helpers down with it.
    """
    logger = get_logger()
    try:
        signal.signal(signal.SIGTERM, signal_handler)
        if interactive:
            signal.signal(signal.SIGINT, signal_handler)
        else:
            signal.signal(signal.SIGINT, signal.SIG_IGN)
        logger.debug(f"Signal handlers registered (SIGINT {'handled' if interactive else 'ignored'})")
    except (ValueError, OSError) as e:
        logger.warning(f"Failed to register signal handlers: {e}")


def configure_logging(settings: Settings, config: ServiceConfig):
    """(Re)open the log sink for the service's logfile and debug setting."""
    return setup_logger(
        name=settings.logger_name,
        log_file=config.logfile,
        max_bytes=settings.log_max_bytes,
        backup_count=settings.log_backup_count,
        debug=config.debug,
        console=settings.interactive,
        enable_structured_console=settings.enable_structured_console,
        enable_structured_file=settings.enable_structured_file,
    )


def report(ctx: SupervisorContext, status: str) -> None:
    ctx.reporter.report(status, ctx.config.nexthop, ctx.config.prefixes)


def _log_transition(ctx: SupervisorContext, old: ServiceState, reason: str) -> None:
    old_label = "DISABLED" if old.disabled else old.status.value
    new_label = "DISABLED" if ctx.state.disabled else ctx.state.status.value
    ctx.structured_logger.log_state_transition(
        service=ctx.service,
        old_state=old_label,
        new_state=new_label,
        reason=reason,
    )


def refresh_config(ctx: SupervisorContext) -> bool:
    """
    Reload the config file if its content changed since the active snapshot.

    The new file is validated for this service's section before anything is
    applied. On any failure the active snapshot, and with it the previous
    fingerprint, stays in place, so the next poll retries the same change.

    Returns:
        bool: True if a new configuration was applied.
    """
    logger = get_logger()
    service = ctx.service

    if not ctx.store.changed():
        return False

    logger.debug(f"{service}: Configuration file has changed since last check, validating config")

    try:
        snapshot = ctx.store.load()
        errors = validate_service(snapshot, service, create_dirs=True)
        new_config = None if errors else ServiceConfig.from_snapshot(snapshot, service)
    except ConfigError as e:
        errors = [str(e)]

    if errors:
        logger.error(f"{service}: Configuration file is not valid. Not reloading any changes. "
                     f"Errors:\n{format_errors(errors)}")
        ctx.structured_logger.log_config_reload(service, ActionResult.FAILURE, errors)
        return False

    old_config = ctx.config
    ctx.store.swap(snapshot)
    ctx.config = new_config

    if old_config.logfile != new_config.logfile or old_config.debug != new_config.debug:
        logger.info(f"{service}: Log settings changed, reopening log at {new_config.logfile}")
        configure_logging(ctx.settings, new_config)

    routes_refreshed = False
    if ctx.state.up and old_config.routing_key() != new_config.routing_key():
        if frozenset(old_config.prefixes) != frozenset(new_config.prefixes):
            logger.debug(f"{service}: IP list changed. Old IP's: {','.join(old_config.ips)}. "
                         f"New IP's: {','.join(new_config.ips)}.")
            logger.info(f"{service}: IP list has changed. Withdrawing and announcing routes")
        if old_config.metric != new_config.metric:
            logger.info(f"{service}: Metric for routes has changed. Withdrawing and announcing routes")
        if old_config.routing_key()[2] != new_config.routing_key()[2]:
            logger.info(f"{service}: Nexthop for routes has changed. Withdrawing and announcing routes")

        ctx.emitter.withdraw(old_config.ips, old_config.nexthop, old_config.metric)
        ctx.emitter.announce(new_config.ips, new_config.nexthop, new_config.metric)
        routes_refreshed = True

    # Keep the status file's nexthop and prefix list in step with the new config
    if ctx.reporter.last_status is not None:
        report(ctx, ctx.reporter.last_status)

    logger.info(f"{service}: Configuration file has been reloaded")
    ctx.structured_logger.log_config_reload(service, ActionResult.SUCCESS,
                                            routes_refreshed=routes_refreshed)
    return True


def check_disable_file(ctx: SupervisorContext) -> bool:
    """
    Apply disable file presence changes.

    Entering disabled withdraws routes if UP. Leaving disabled restarts from
    DOWN with zeroed counters and never announces by itself.

    Returns:
        bool: True while the service is disabled.
    """
    logger = get_logger()
    cfg = ctx.config
    present = os.path.exists(cfg.disable_file)

    if present and not ctx.state.disabled:
        old = ctx.state
        logger.info(f"{ctx.service}: Service has been disabled by file check. "
                    f"No further service checks will run until {cfg.disable_file} is removed.")
        if old.up:
            logger.debug(f"{ctx.service}: Withdrawing IP's and setting service to down due to service being disabled")
            ctx.emitter.withdraw(cfg.ips, cfg.nexthop, cfg.metric)
        ctx.state = reset_state(disabled=True)
        ctx.structured_logger.log_disable_change(ctx.service, True, cfg.disable_file)
        _log_transition(ctx, old, "disable_file_created")
        report(ctx, STATUS_DISABLED)

    elif not present and ctx.state.disabled:
        old = ctx.state
        logger.info(f"{ctx.service}: Service was previously disabled by file check. Setting back to enabled. "
                    f"Service checks need to pass before routes are announced.")
        ctx.state = reset_state(disabled=False)
        ctx.structured_logger.log_disable_change(ctx.service, False, cfg.disable_file)
        _log_transition(ctx, old, "disable_file_removed")
        report(ctx, STATUS_INIT)

    return ctx.state.disabled


def run_health_check(ctx: SupervisorContext) -> Transition:
    """
    Run the check once and act on the hysteresis outcome.

    Announces on WENT_UP, withdraws on WENT_DOWN, and rewrites the status
    whenever the visible state changed.
    """
    logger = get_logger()
    cfg = ctx.config
    service = ctx.service

    result = ctx.runner.run(cfg.command, cfg.timeout, log_output=cfg.logcheck)
    ctx.structured_logger.log_check_result(
        service=service,
        command=cfg.command,
        exit_code=result.exit_code,
        duration_ms=int(result.duration * 1000),
        timed_out=result.timed_out,
    )

    old = ctx.state
    ctx.state, transition, flipped = apply_check_result(
        old, result.success, result.exit_code, cfg.rise, cfg.fall)

    if transition is Transition.WENT_UP:
        logger.info(f"{service}: Last check succeeded. Service has met the number of success checks "
                    f"required, marking as up and announcing IP's")
        ctx.emitter.announce(cfg.ips, cfg.nexthop, cfg.metric)
        _log_transition(ctx, old, f"{cfg.rise} consecutive successful checks")
    elif transition is Transition.WENT_DOWN:
        logger.info(f"{service}: Last check failed. Service has met the number of failure checks "
                    f"required, marking service as down and withdrawing IP's")
        ctx.emitter.withdraw(cfg.ips, cfg.nexthop, cfg.metric)
        _log_transition(ctx, old, f"{cfg.fall} consecutive failed checks")
    elif transition is Transition.RISING:
        logger.info(f"{service}: Last check succeeded. Service needs "
                    f"{cfg.rise - ctx.state.rise_count} checks to succeed before it is active")
    elif transition is Transition.FALLING:
        logger.info(f"{service}: Last check failed. Service needs "
                    f"{cfg.fall - ctx.state.fall_count} checks to fail before it is down")

    if should_report(transition, flipped):
        report(ctx, status_label(ctx.state, transition, cfg.rise, cfg.fall))

    return transition


def poll_once(ctx: SupervisorContext) -> float:
    """
    One full iteration without the sleep.

    Returns:
        float: Seconds the iteration took.
    """
    start = time.time()
    get_logger().debug(f"{ctx.service}: Check start")

    refresh_config(ctx)
    if not check_disable_file(ctx):
        run_health_check(ctx)

    return time.time() - start


def compute_sleep(interval: float, duration: float) -> float:
    """Drift-corrected sleep, never shorter than MIN_SLEEP_SECONDS."""
    remaining = interval - duration
    if not math.isfinite(remaining):
        return MIN_SLEEP_SECONDS
    return max(remaining, MIN_SLEEP_SECONDS)


def run_loop(ctx: SupervisorContext) -> None:
    """
    Poll until shutdown is requested.

    An unexpected exception in one iteration is logged and the loop carries on
    at the next interval. After MAX_CONSECUTIVE_ERRORS such failures in a row
    the loop gives up.
    """
    logger = get_logger()
    structured_logger = ctx.structured_logger
    consecutive_errors = 0
    loop_start = time.time()

    logger.info(f"{ctx.service}: Supervisor loop starting with {ctx.config.interval}s check interval")

    while not shutdown_event.is_set():
        correlation_id = f"hc-{int(time.time())}-{str(uuid.uuid4())[:8]}"
        structured_logger.set_correlation_id(correlation_id)

        try:
            duration = poll_once(ctx)
            consecutive_errors = 0
            sleep_time = compute_sleep(ctx.config.interval, duration)
            logger.debug(f"{ctx.service}: Check complete. Sleeping {sleep_time:.2f} seconds before next check")

        except Exception as e:
            consecutive_errors += 1
            logger.exception(f"{ctx.service}: Unexpected error in main loop "
                             f"(consecutive error {consecutive_errors}/{MAX_CONSECUTIVE_ERRORS}): {e}")
            structured_logger.log_event({
                "event_type": EventType.DAEMON_LIFECYCLE.value,
                "timestamp": time.time(),
                "result": ActionResult.FAILURE.value,
                "component": "daemon",
                "operation": "poll",
                "details": {
                    "service": ctx.service,
                    "consecutive_errors": consecutive_errors,
                    "max_consecutive_errors": MAX_CONSECUTIVE_ERRORS
                },
                "error_message": str(e)
            })

            if consecutive_errors >= MAX_CONSECUTIVE_ERRORS:
                logger.critical(f"{ctx.service}: Reached maximum consecutive errors ({MAX_CONSECUTIVE_ERRORS}), "
                                "supervisor is exiting to prevent infinite failure loop")
                break

            sleep_time = max(ctx.config.interval, MIN_SLEEP_SECONDS)

        if shutdown_event.wait(sleep_time):
            logger.info(f"{ctx.service}: Shutdown signal received during sleep, exiting main loop")
            break

    structured_logger.log_event({
        "event_type": EventType.DAEMON_LIFECYCLE.value,
        "timestamp": time.time(),
        "result": ActionResult.SUCCESS.value,
        "component": "daemon",
        "operation": "shutdown",
        "details": {
            "service": ctx.service,
            "reason": "max_errors_exceeded" if consecutive_errors >= MAX_CONSECUTIVE_ERRORS else "graceful_shutdown",
            "final_state": ctx.state.status.value,
            "disabled": ctx.state.disabled,
            "total_uptime_seconds": int(time.time() - loop_start)
        }
    })
    logger.info(f"{ctx.service}: Main loop exited")


def _fail_startup(service: str, message: str, errors=None) -> None:
    logger = get_logger()
    structured_logger = StructuredEventLogger(logger.name)

    logger.error(message)
    for i, error in enumerate(errors or [], 1):
        logger.error(f"  {i}. {error}")

    structured_logger.log_event({
        "event_type": EventType.DAEMON_LIFECYCLE.value,
        "timestamp": time.time(),
        "result": ActionResult.FAILURE.value,
        "component": "daemon",
        "operation": "startup",
        "details": {
            "service": service,
            "validation_errors": list(errors or []),
        },
        "error_message": message
    })
    logger.critical(f"{service}: Cannot start supervisor. Please fix the above errors.")
    raise SystemExit(1)


def startup(settings: Settings, service: str) -> SupervisorContext:
    """
    Validate everything and build the supervisor context before the loop.

    Phases:
        1. Process settings (config file, health directory, rotation limits)
        2. Load and validate the service's section
        3. Open the service log
        4. Take the PID lock (skipped in interactive mode)
        5. Initial status: DISABLED if the disable file exists, else INIT

    Any failure logs at critical level and raises SystemExit(1). Startup is
    never retried: running without a valid config, status file or lock risks
    duplicate announcements.

    Returns:
        SupervisorContext: Ready for run_loop().
    """
    logger = get_logger()
    logger.info(f"{service}: Supervisor startup initiated - beginning validation sequence")

    # Phase 1: process settings
    errors = validate_settings(settings, 'announce')
    if errors:
        _fail_startup(service, "Settings validation failed with the following errors:", errors)

    # Phase 2: service configuration
    store = ConfigStore(settings.config_file)
    try:
        snapshot = store.load()
        errors = validate_service(snapshot, service, create_dirs=True)
        if errors:
            _fail_startup(service, f"{service}: The configuration file cannot be validated due to errors, "
                                   f"this script will not run.", errors)
        config = ServiceConfig.from_snapshot(snapshot, service)
    except ConfigError as e:
        _fail_startup(service, f"{service}: Could not load configuration: {e}")
    store.swap(snapshot)

    # Phase 3: service log
    configure_logging(settings, config)
    logger.info(f"{service}: Configuration valid, check command [{config.command}] every {config.interval}s")

    # Phase 4: PID lock
    lock = None
    if not settings.interactive:
        lock = ProcessLock(settings.pid_file(service))
        try:
            lock.acquire()
        except LockHeldError as e:
            _fail_startup(service, f"{service}: Process already locked, check there isn't already "
                                   f"a process running for this check ({e})")
        except OSError as e:
            _fail_startup(service, f"{service}: Cannot write PID file {lock.path}: {e}")

    structured_logger = StructuredEventLogger(settings.logger_name)
    ctx = SupervisorContext(
        service=service,
        settings=settings,
        store=store,
        config=config,
        runner=CheckRunner(service),
        emitter=AnnouncementEmitter(service, structured_logger=structured_logger),
        reporter=StatusReporter(
            service,
            status_file=None if settings.interactive else settings.status_file(service),
            set_title=not settings.interactive,
        ),
        structured_logger=structured_logger,
        lock=lock,
    )

    # Phase 5: initial state
    disabled = os.path.exists(config.disable_file)
    ctx.state = reset_state(disabled=disabled)
    report(ctx, STATUS_DISABLED if disabled else STATUS_INIT)

    structured_logger.log_event({
        "event_type": EventType.DAEMON_LIFECYCLE.value,
        "timestamp": time.time(),
        "result": ActionResult.SUCCESS.value,
        "component": "daemon",
        "operation": "startup",
        "details": {
            "service": service,
            "config_file": settings.config_file,
            "interactive": settings.interactive,
            "disabled": disabled,
            "prefixes": config.prefixes
        }
    })
    logger.info(f"{service}: Startup complete")
    return ctx


def cleanup(ctx: SupervisorContext) -> None:
    """
    Report TERMINATED and release the PID lock. Routes are left to ExaBGP.

    Safe to call more than once.
    """
    report(ctx, STATUS_TERMINATED)
    if ctx.lock is not None:
        ctx.lock.release()
    get_logger().info(f"{ctx.service}: Supervisor terminated")
