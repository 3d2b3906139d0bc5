from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional, Tuple


class ServiceStatus(Enum):
    DOWN = "DOWN"
    UP = "UP"


# Labels shown in the status file and process title outside the check cycle
STATUS_INIT = "INIT"
STATUS_DISABLED = "DISABLED"
STATUS_TERMINATED = "TERMINATED"


class Transition(Enum):
    """
    What a single check result did to the service.

    NONE:      Counters only (success while UP, failure while DOWN).
    RISING:    Success while DOWN, not yet ``rise`` in a row.
    WENT_UP:   The ``rise``-th consecutive success; routes must be announced.
    FALLING:   Failure while UP, not yet ``fall`` in a row.
    WENT_DOWN: The ``fall``-th consecutive failure; routes must be withdrawn.
    """
    NONE = "none"
    RISING = "rising"
    WENT_UP = "went_up"
    FALLING = "falling"
    WENT_DOWN = "went_down"


@dataclass(frozen=True)
class ServiceState:
    """
    Hysteresis state of one supervised service.

    Attributes:
        status (ServiceStatus): Whether routes are currently announced.
        disabled (bool): The disable file exists; checks are not run.
        rise_count (int): Consecutive successes while DOWN.
        fall_count (int): Consecutive failures while UP.
        last_success (bool or None): Outcome of the previous check, None before the first.
        last_exit_code (int or None): Exit code of the previous check.
    """
    status: ServiceStatus = ServiceStatus.DOWN
    disabled: bool = False
    rise_count: int = 0
    fall_count: int = 0
    last_success: Optional[bool] = None
    last_exit_code: Optional[int] = None

    @property
    def up(self) -> bool:
        return self.status is ServiceStatus.UP


def reset_state(disabled: bool) -> ServiceState:
    """
    Fresh DOWN state with zero counters.

    Used whenever the disable file appears or disappears: in both directions
    the service has to earn its routes again with a full rise sequence.
    """
    return ServiceState(status=ServiceStatus.DOWN, disabled=disabled)


def apply_check_result(state: ServiceState, success: bool, exit_code: int,
                       rise: int, fall: int) -> Tuple[ServiceState, Transition, bool]:
    """
    Feeds one check result through the rise/fall hysteresis.

    Rules:
      - A failure after a success (a flip) zeroes ``rise_count``; a success
        after a failure zeroes ``fall_count``. The first result of a run is
        never a flip.
      - Success while DOWN increments ``rise_count``. Reaching ``rise`` moves
        to UP and zeroes it.
      - Failure while UP increments ``fall_count``. Reaching ``fall`` moves
        to DOWN and zeroes it.
      - Success while UP and failure while DOWN only do the flip bookkeeping.

    Args:
        state (ServiceState): Current state; not modified.
        success (bool): Whether the check passed (exit code exactly 0).
        exit_code (int): Raw exit code, kept for diagnostics.
        rise (int): Consecutive successes needed to go UP.
        fall (int): Consecutive failures needed to go DOWN.

    Returns:
        tuple: (new_state, transition, flipped) where ``flipped`` is True if the
        result reversed the direction of the previous one.
    """
    rise_count = state.rise_count
    fall_count = state.fall_count

    flipped = state.last_success is not None and state.last_success != success
    if flipped:
        if success:
            fall_count = 0
        else:
            rise_count = 0

    status = state.status
    transition = Transition.NONE

    if success and status is ServiceStatus.DOWN:
        rise_count += 1
        if rise_count >= rise:
            status = ServiceStatus.UP
            rise_count = 0
            transition = Transition.WENT_UP
        else:
            transition = Transition.RISING
    elif not success and status is ServiceStatus.UP:
        fall_count += 1
        if fall_count >= fall:
            status = ServiceStatus.DOWN
            fall_count = 0
            transition = Transition.WENT_DOWN
        else:
            transition = Transition.FALLING

    new_state = replace(
        state,
        status=status,
        rise_count=rise_count,
        fall_count=fall_count,
        last_success=success,
        last_exit_code=exit_code,
    )
    return new_state, transition, flipped


def status_label(state: ServiceState, transition: Transition, rise: int, fall: int) -> str:
    """
    Human readable status after a check, as written to the status file.

        RISING  -> "DOWN | RISING n/rise"
        FALLING -> "UP | FALLING n/fall"
        else    -> "UP" or "DOWN"
    """
    if state.disabled:
        return STATUS_DISABLED
    if transition is Transition.RISING:
        return f"{ServiceStatus.DOWN.value} | RISING {state.rise_count}/{rise}"
    if transition is Transition.FALLING:
        return f"{ServiceStatus.UP.value} | FALLING {state.fall_count}/{fall}"
    return state.status.value


def should_report(transition: Transition, flipped: bool) -> bool:
    """Status only needs rewriting when something a reader would see changed."""
    return transition is not Transition.NONE or flipped
