"""
services/booking/transitions.py
The booking lifecycle as a single table: operation → (allowed source
statuses, resulting status). Operations with no resulting status mutate
the booking without moving it along the graph.
"""

from dataclasses import dataclass
from enum import Enum
from typing import FrozenSet, List, Optional

from shared.exceptions import InvalidState
from shared.models.models import BookingStatus as S


class BookingOperation(str, Enum):
    OPEN_SEARCH = "open_search"
    ROUTE_TO_BUSINESS = "route_to_business"
    MARK_NOT_FOUND = "mark_not_found"
    ASSIGN = "assign"
    CLAIM = "claim"
    ACCEPT = "accept"
    REJECT = "reject"
    RETURN_TO_BUSINESS = "return_to_business"
    ARRIVE = "arrive"
    UPLOAD_BEFORE_PHOTOS = "upload_before_photos"
    ISSUE_START_OTP = "issue_start_otp"
    START = "start"
    UPLOAD_AFTER_PHOTOS = "upload_after_photos"
    ISSUE_COMPLETION_OTP = "issue_completion_otp"
    COMPLETE = "complete"
    CANCEL = "cancel"
    RATE = "rate"
    RECORD_PAYMENT = "record_payment"


@dataclass(frozen=True)
class Transition:
    sources: FrozenSet[S]
    target: Optional[S] = None


TERMINAL_STATUSES: FrozenSet[S] = frozenset({S.RATED, S.CANCELLED, S.PARTNER_NOT_FOUND})

# Statuses in which a partner is committed to (or working on) a booking.
ACTIVE_WORK_STATUSES: FrozenSet[S] = frozenset(
    {S.PARTNER_ASSIGNED, S.PARTNER_ACCEPTED, S.ARRIVED, S.IN_PROGRESS}
)

CLAIMABLE_STATUSES: FrozenSet[S] = frozenset({S.SEARCHING_PARTNER, S.PENDING})

UNASSIGNED_STATUSES: FrozenSet[S] = frozenset({S.PENDING, S.SEARCHING_PARTNER, S.PENDING_ASSIGNMENT})
_PARTNER_HELD = frozenset({S.PARTNER_ASSIGNED, S.PARTNER_ACCEPTED})
_ON_SITE = frozenset({S.PARTNER_ACCEPTED, S.ARRIVED})

TRANSITIONS = {
    BookingOperation.OPEN_SEARCH: Transition(frozenset({S.PENDING}), S.SEARCHING_PARTNER),
    BookingOperation.ROUTE_TO_BUSINESS: Transition(frozenset({S.PENDING}), S.PENDING_ASSIGNMENT),
    BookingOperation.MARK_NOT_FOUND: Transition(
        frozenset({S.PENDING, S.SEARCHING_PARTNER}), S.PARTNER_NOT_FOUND
    ),
    BookingOperation.ASSIGN: Transition(UNASSIGNED_STATUSES, S.PARTNER_ASSIGNED),
    BookingOperation.CLAIM: Transition(CLAIMABLE_STATUSES, S.PARTNER_ACCEPTED),
    BookingOperation.ACCEPT: Transition(frozenset({S.PARTNER_ASSIGNED}), S.PARTNER_ACCEPTED),
    BookingOperation.REJECT: Transition(_PARTNER_HELD, S.SEARCHING_PARTNER),
    BookingOperation.RETURN_TO_BUSINESS: Transition(_PARTNER_HELD, S.PENDING_ASSIGNMENT),
    BookingOperation.ARRIVE: Transition(frozenset({S.PARTNER_ACCEPTED}), S.ARRIVED),
    BookingOperation.UPLOAD_BEFORE_PHOTOS: Transition(frozenset({S.ARRIVED, S.IN_PROGRESS})),
    BookingOperation.ISSUE_START_OTP: Transition(_ON_SITE),
    BookingOperation.START: Transition(_ON_SITE, S.IN_PROGRESS),
    BookingOperation.UPLOAD_AFTER_PHOTOS: Transition(frozenset({S.IN_PROGRESS})),
    BookingOperation.ISSUE_COMPLETION_OTP: Transition(frozenset({S.IN_PROGRESS})),
    BookingOperation.COMPLETE: Transition(frozenset({S.IN_PROGRESS}), S.COMPLETED),
    BookingOperation.CANCEL: Transition(
        frozenset(set(S) - {S.COMPLETED, S.CANCELLED, S.RATED}), S.CANCELLED
    ),
    BookingOperation.RATE: Transition(frozenset({S.COMPLETED}), S.RATED),
    BookingOperation.RECORD_PAYMENT: Transition(
        frozenset(set(S) - TERMINAL_STATUSES)
    ),
}


def ensure_allowed(operation: BookingOperation, current: S) -> Transition:
    """Return the transition for operation, or raise InvalidState."""
    transition = TRANSITIONS[operation]
    if current not in transition.sources:
        raise InvalidState(
            f"Cannot {operation.value.replace('_', ' ')} a booking in '{current.value}' status",
            current_status=current.value,
            operation=operation.value,
        )
    return transition


def is_allowed(operation: BookingOperation, current: S) -> bool:
    return current in TRANSITIONS[operation].sources


def allowed_operations(current: S) -> List[str]:
    return [op.value for op, t in TRANSITIONS.items() if current in t.sources]
