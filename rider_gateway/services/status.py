"""
Ride status sets as observed by the rider. The backend is the only writer of
status; these sets decide which actions the UI offers.
"""
from rider_gateway.schemas.schemas import RideStatusEnum as S

# Forward rank. driver_assigned and accepted are two names for "a driver
# has been chosen" depending on which backend path set it.
STATUS_RANK: dict[S, int] = {
    S.pending: 0,
    S.searching_driver: 1,
    S.driver_assigned: 2,
    S.accepted: 2,
    S.driver_arriving: 3,
    S.driver_arrived: 4,
    S.in_progress: 5,
    S.completed: 6,
}

TERMINAL = frozenset({S.completed, S.cancelled})
BIDDING = frozenset({S.pending, S.searching_driver})
CANCELLABLE = frozenset({S.pending, S.searching_driver, S.driver_assigned, S.accepted})
REPORTABLE = frozenset({S.accepted, S.driver_assigned, S.driver_arriving, S.driver_arrived, S.in_progress})
FINISHABLE = frozenset({S.accepted, S.in_progress})
# Statuses that prove the backend accepted a bid payment.
ACCEPTED_FAMILY = frozenset({S.accepted, S.driver_assigned, S.driver_arriving, S.driver_arrived, S.in_progress})

def is_forward_transition(current: S, next_state: S) -> bool:
    if current == next_state:
        return True
    if current in TERMINAL:
        return False
    if next_state == S.cancelled:
        return True
    if next_state == S.completed:
        return current in FINISHABLE
    return STATUS_RANK[next_state] >= STATUS_RANK[current]


def can_cancel(status: S) -> bool:
    return status in CANCELLABLE


def can_report(status: S) -> bool:
    return status in REPORTABLE


def can_finish(status: S) -> bool:
    return status in FINISHABLE


def is_biddable(status: S) -> bool:
    return status in BIDDING


def is_terminal(status: S) -> bool:
    return status in TERMINAL
