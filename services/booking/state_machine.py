"""
services/booking/state_machine.py
Booking lifecycle rules: job status crossed with payment status.

Status:  pending → accepted → in_progress → completed
         any non-terminal → cancelled
Payment: pending_payment → paid | payment_failed,  payment_failed → paid

The table is fixed. Each rule names who may request it and what the
transition does to the assigned worker's availability.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, Optional, Tuple

from shared.models.models import (
    Booking,
    BookingStatus,
    PaymentStatus,
    WorkerAvailability,
    WorkerProfile,
)
from shared.utils.exceptions import AuthorizationError, ConflictError


class Actor(str, Enum):
    HOMEOWNER = "homeowner"
    WORKER = "worker"
    SYSTEM = "system"    # payment confirmation


@dataclass(frozen=True)
class TransitionRule:
    allowed: FrozenSet[Actor]
    availability: Optional[WorkerAvailability] = None   # None leaves it untouched
    completes: bool = False


_H, _W, _S = Actor.HOMEOWNER, Actor.WORKER, Actor.SYSTEM

STATUS_TRANSITIONS: Dict[Tuple[BookingStatus, BookingStatus], TransitionRule] = {
    (BookingStatus.PENDING, BookingStatus.ACCEPTED): TransitionRule(
        frozenset({_W}), WorkerAvailability.BUSY
    ),
    (BookingStatus.PENDING, BookingStatus.CANCELLED): TransitionRule(
        frozenset({_H, _W})
    ),
    (BookingStatus.ACCEPTED, BookingStatus.IN_PROGRESS): TransitionRule(
        frozenset({_W}), WorkerAvailability.BUSY
    ),
    (BookingStatus.ACCEPTED, BookingStatus.CANCELLED): TransitionRule(
        frozenset({_H, _W}), WorkerAvailability.AVAILABLE
    ),
    (BookingStatus.IN_PROGRESS, BookingStatus.COMPLETED): TransitionRule(
        frozenset({_W, _S}), WorkerAvailability.AVAILABLE, completes=True
    ),
    (BookingStatus.IN_PROGRESS, BookingStatus.CANCELLED): TransitionRule(
        frozenset({_H, _W}), WorkerAvailability.AVAILABLE
    ),
    # Paying early closes the job without passing through in_progress
    (BookingStatus.PENDING, BookingStatus.COMPLETED): TransitionRule(
        frozenset({_S}), WorkerAvailability.AVAILABLE, completes=True
    ),
    (BookingStatus.ACCEPTED, BookingStatus.COMPLETED): TransitionRule(
        frozenset({_S}), WorkerAvailability.AVAILABLE, completes=True
    ),
}

# Book-and-pay-immediately: a booking may be born completed
PAID_ON_CREATION = TransitionRule(
    frozenset({_H}), WorkerAvailability.AVAILABLE, completes=True
)

PAYMENT_TRANSITIONS: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.PENDING_PAYMENT: frozenset({PaymentStatus.PAID, PaymentStatus.PAYMENT_FAILED}),
    PaymentStatus.PAYMENT_FAILED: frozenset({PaymentStatus.PAID}),
    PaymentStatus.PAID: frozenset(),
}

TERMINAL_STATUSES = frozenset({BookingStatus.COMPLETED, BookingStatus.CANCELLED})
IN_FLIGHT_STATUSES = frozenset({BookingStatus.ACCEPTED, BookingStatus.IN_PROGRESS})


def initial_state(
    payment_status: PaymentStatus,
) -> Tuple[BookingStatus, Optional[TransitionRule]]:
    """Starting status for a new booking and the rule to apply, if any."""
    if payment_status == PaymentStatus.PAID:
        return BookingStatus.COMPLETED, PAID_ON_CREATION
    return BookingStatus.PENDING, None


def check_status_transition(
    current: BookingStatus,
    target: BookingStatus,
    actor: Actor,
) -> TransitionRule:
    """
    Validate a status change requested by actor.
    Homeowners may only cancel; anything else from them is an
    AuthorizationError regardless of the current state.
    """
    if actor == Actor.HOMEOWNER and target != BookingStatus.CANCELLED:
        raise AuthorizationError(reason="homeowners may only cancel")

    rule = STATUS_TRANSITIONS.get((current, target))
    if rule is None:
        raise ConflictError(
            f"Cannot move booking from '{current.value}' to '{target.value}'"
        )
    if actor not in rule.allowed:
        raise AuthorizationError(
            reason=f"{actor.value} may not move booking to {target.value}"
        )
    return rule


def check_payment_transition(
    status: BookingStatus,
    payment_status: PaymentStatus,
    target: PaymentStatus,
) -> Optional[TransitionRule]:
    """
    Validate a payment event. Returns the status rule that a successful
    payment implies (None when the job is already completed).
    """
    if payment_status == PaymentStatus.PAID:
        raise ConflictError("Booking already marked as paid")
    if status == BookingStatus.CANCELLED:
        raise ConflictError("Cannot pay for a cancelled booking")
    if target not in PAYMENT_TRANSITIONS[payment_status]:
        raise ConflictError(
            f"Cannot move payment from '{payment_status.value}' to '{target.value}'"
        )

    if target != PaymentStatus.PAID or status == BookingStatus.COMPLETED:
        return None
    return check_status_transition(status, BookingStatus.COMPLETED, Actor.SYSTEM)


def apply_rule(
    booking: Booking,
    worker: WorkerProfile,
    target: BookingStatus,
    rule: Optional[TransitionRule],
    now: datetime,
) -> None:
    """Write the new status and its availability side effect. Caller holds the worker lock."""
    booking.status = target
    if rule is None:
        return
    if rule.completes:
        booking.completed_at = now
    if rule.availability is not None:
        worker.availability = rule.availability
