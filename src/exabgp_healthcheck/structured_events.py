import logging
import time
from typing import Dict, Any, List, Optional
from enum import Enum
from dataclasses import dataclass, asdict

class EventType(Enum):
    """Standard event types for structured logging"""
    CHECK_RESULT = "check_result"
    ROUTE_CHANGE = "route_change"
    STATE_TRANSITION = "state_transition"
    CONFIG_RELOAD = "config_reload"
    SERVICE_DISABLE = "service_disable"
    DAEMON_LIFECYCLE = "daemon_lifecycle"

class ActionResult(Enum):
    """Standard action results"""
    SUCCESS = "success"
    FAILURE = "failure"
    NO_CHANGE = "no_change"
    SKIPPED = "skipped"

@dataclass
class StructuredEvent:
    """Base structure for all structured log events"""
    event_type: str
    timestamp: float
    result: str
    component: str
    operation: str
    details: Dict[str, Any]
    duration_ms: Optional[int] = None
    error_message: Optional[str] = None
    correlation_id: Optional[str] = None

class StructuredEventLogger:
    """Handles structured logging for supervisor events"""

    def __init__(self, logger_name: str):
        self.logger = logging.getLogger(logger_name)
        self.correlation_id = None

    def set_correlation_id(self, correlation_id: str):
        """Set correlation ID for tracking related events across one polling iteration"""
        self.correlation_id = correlation_id

    def log_event(self, event) -> None:
        """Log a structured event with consistent schema"""
        # Handle both StructuredEvent dataclass instances and raw dictionaries
        if isinstance(event, StructuredEvent):
            if self.correlation_id:
                event.correlation_id = self.correlation_id
            log_data = {
                "structured_event": True,
                **asdict(event)
            }
        elif isinstance(event, dict):
            log_data = {
                "structured_event": True,
                **event
            }
            if self.correlation_id:
                log_data["correlation_id"] = self.correlation_id
        else:
            raise TypeError(f"Event must be StructuredEvent dataclass or dict, got {type(event)}")

        # Log at appropriate level based on result
        level = logging.INFO
        if isinstance(event, dict):
            result = event.get("result")
        else:
            result = event.result

        if result == ActionResult.FAILURE.value:
            level = logging.ERROR
        elif result == ActionResult.NO_CHANGE.value:
            level = logging.DEBUG

        # Format message for human readability while preserving structure
        if isinstance(event, dict):
            component = event.get("component", "unknown")
            operation = event.get("operation", "unknown")
            result_str = event.get("result", "unknown")
            error_message = event.get("error_message")
        else:
            component = event.component
            operation = event.operation
            result_str = event.result
            error_message = event.error_message

        message = f"{component}.{operation}: {result_str}"
        if error_message:
            message += f" - {error_message}"

        self.logger.log(level, message, extra={"json_fields": log_data})

    def log_check_result(self,
                         service: str,
                         command: str,
                         exit_code: int,
                         duration_ms: int = None,
                         timed_out: bool = False) -> None:
        """Log the outcome of one check command run"""

        result = ActionResult.SUCCESS if exit_code == 0 else ActionResult.FAILURE

        event = StructuredEvent(
            event_type=EventType.CHECK_RESULT.value,
            timestamp=time.time(),
            result=result.value,
            component="check",
            operation="run_check",
            details={
                "service": service,
                "command": command,
                "exit_code": exit_code,
                "timed_out": timed_out
            },
            duration_ms=duration_ms
        )

        self.log_event(event)

    def log_route_change(self,
                         service: str,
                         action: str,  # "announce" or "withdraw"
                         prefixes: List[str],
                         nexthop: str,
                         metric: int,
                         result: ActionResult,
                         duration_ms: int = None,
                         error_message: str = None) -> None:
        """Log a batch of announce/withdraw lines sent to ExaBGP"""

        event = StructuredEvent(
            event_type=EventType.ROUTE_CHANGE.value,
            timestamp=time.time(),
            result=result.value,
            component="exabgp",
            operation=f"{action}_routes",
            details={
                "service": service,
                "action": action,
                "prefixes": list(prefixes),
                "nexthop": nexthop,
                "metric": metric
            },
            duration_ms=duration_ms,
            error_message=error_message
        )

        self.log_event(event)

    def log_state_transition(self,
                             service: str,
                             old_state: str,
                             new_state: str,
                             reason: str) -> None:
        """Log service state transitions"""

        event = StructuredEvent(
            event_type=EventType.STATE_TRANSITION.value,
            timestamp=time.time(),
            result=ActionResult.SUCCESS.value,
            component="state_machine",
            operation="state_transition",
            details={
                "service": service,
                "old_state": old_state,
                "new_state": new_state,
                "reason": reason
            }
        )

        self.log_event(event)

    def log_config_reload(self,
                          service: str,
                          result: ActionResult,
                          errors: List[str] = None,
                          routes_refreshed: bool = False) -> None:
        """Log a configuration reload attempt"""

        event = StructuredEvent(
            event_type=EventType.CONFIG_RELOAD.value,
            timestamp=time.time(),
            result=result.value,
            component="config",
            operation="reload",
            details={
                "service": service,
                "validation_errors": list(errors or []),
                "routes_refreshed": routes_refreshed
            },
            error_message=f"{len(errors)} validation errors" if errors else None
        )

        self.log_event(event)

    def log_disable_change(self,
                           service: str,
                           disabled: bool,
                           disable_file: str) -> None:
        """Log the disable file appearing or disappearing"""

        event = StructuredEvent(
            event_type=EventType.SERVICE_DISABLE.value,
            timestamp=time.time(),
            result=ActionResult.SUCCESS.value,
            component="state_machine",
            operation="disable" if disabled else "enable",
            details={
                "service": service,
                "disabled": disabled,
                "disable_file": disable_file
            }
        )

        self.log_event(event)
