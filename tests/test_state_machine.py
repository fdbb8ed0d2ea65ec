"""
tests/test_state_machine.py
Tests for the booking status/payment transition table.
"""

from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

from services.booking.state_machine import (
    PAID_ON_CREATION,
    STATUS_TRANSITIONS,
    TERMINAL_STATUSES,
    Actor,
    apply_rule,
    check_payment_transition,
    check_status_transition,
    initial_state,
)
from shared.models.models import BookingStatus, PaymentStatus, WorkerAvailability
from shared.utils.exceptions import AuthorizationError, ConflictError


# ── Status ────────────────────────────────────────────────────

@pytest.mark.parametrize(
    "current, target, availability",
    [
        (BookingStatus.PENDING, BookingStatus.ACCEPTED, WorkerAvailability.BUSY),
        (BookingStatus.ACCEPTED, BookingStatus.IN_PROGRESS, WorkerAvailability.BUSY),
        (BookingStatus.IN_PROGRESS, BookingStatus.COMPLETED, WorkerAvailability.AVAILABLE),
        (BookingStatus.ACCEPTED, BookingStatus.CANCELLED, WorkerAvailability.AVAILABLE),
        (BookingStatus.IN_PROGRESS, BookingStatus.CANCELLED, WorkerAvailability.AVAILABLE),
        (BookingStatus.PENDING, BookingStatus.CANCELLED, None),
    ],
)
def test_worker_transitions(current, target, availability):
    rule = check_status_transition(current, target, Actor.WORKER)
    assert rule.availability == availability


@pytest.mark.parametrize(
    "current",
    [BookingStatus.PENDING, BookingStatus.ACCEPTED, BookingStatus.IN_PROGRESS],
)
def test_homeowner_can_cancel_any_open_booking(current):
    rule = check_status_transition(current, BookingStatus.CANCELLED, Actor.HOMEOWNER)
    assert Actor.HOMEOWNER in rule.allowed


@pytest.mark.parametrize(
    "current",
    [BookingStatus.PENDING, BookingStatus.ACCEPTED, BookingStatus.COMPLETED, BookingStatus.CANCELLED],
)
@pytest.mark.parametrize(
    "target",
    [BookingStatus.ACCEPTED, BookingStatus.IN_PROGRESS, BookingStatus.COMPLETED],
)
def test_homeowner_non_cancel_is_not_authorized(current, target):
    """Checked before the table, so even invalid pairs report 403."""
    with pytest.raises(AuthorizationError):
        check_status_transition(current, target, Actor.HOMEOWNER)


@pytest.mark.parametrize("current", sorted(TERMINAL_STATUSES, key=lambda s: s.value))
@pytest.mark.parametrize("target", list(BookingStatus))
def test_terminal_states_have_no_exits(current, target):
    with pytest.raises(ConflictError):
        check_status_transition(current, target, Actor.WORKER)


def test_worker_cannot_skip_in_progress():
    with pytest.raises(ConflictError):
        check_status_transition(BookingStatus.PENDING, BookingStatus.IN_PROGRESS, Actor.WORKER)


def test_only_payment_completes_without_in_progress():
    with pytest.raises(AuthorizationError):
        check_status_transition(BookingStatus.ACCEPTED, BookingStatus.COMPLETED, Actor.WORKER)
    rule = check_status_transition(BookingStatus.ACCEPTED, BookingStatus.COMPLETED, Actor.SYSTEM)
    assert rule.completes


def test_every_completion_frees_the_worker():
    for (_, target), rule in STATUS_TRANSITIONS.items():
        if target == BookingStatus.COMPLETED:
            assert rule.completes
            assert rule.availability == WorkerAvailability.AVAILABLE


# ── Payment ───────────────────────────────────────────────────

def test_initial_state():
    assert initial_state(PaymentStatus.PENDING_PAYMENT) == (BookingStatus.PENDING, None)
    assert initial_state(PaymentStatus.PAID) == (BookingStatus.COMPLETED, PAID_ON_CREATION)


@pytest.mark.parametrize(
    "status",
    [BookingStatus.PENDING, BookingStatus.ACCEPTED, BookingStatus.IN_PROGRESS],
)
def test_payment_completes_open_booking(status):
    rule = check_payment_transition(status, PaymentStatus.PENDING_PAYMENT, PaymentStatus.PAID)
    assert rule.completes
    assert rule.availability == WorkerAvailability.AVAILABLE


def test_payment_after_failure_is_allowed():
    rule = check_payment_transition(
        BookingStatus.ACCEPTED, PaymentStatus.PAYMENT_FAILED, PaymentStatus.PAID
    )
    assert rule.completes


def test_payment_of_completed_booking_changes_payment_only():
    assert check_payment_transition(
        BookingStatus.COMPLETED, PaymentStatus.PENDING_PAYMENT, PaymentStatus.PAID
    ) is None


def test_second_payment_is_conflict():
    with pytest.raises(ConflictError):
        check_payment_transition(BookingStatus.COMPLETED, PaymentStatus.PAID, PaymentStatus.PAID)


def test_cancelled_booking_cannot_be_paid():
    with pytest.raises(ConflictError):
        check_payment_transition(
            BookingStatus.CANCELLED, PaymentStatus.PENDING_PAYMENT, PaymentStatus.PAID
        )


def test_failure_after_failure_is_conflict():
    with pytest.raises(ConflictError):
        check_payment_transition(
            BookingStatus.PENDING, PaymentStatus.PAYMENT_FAILED, PaymentStatus.PAYMENT_FAILED
        )


def test_failure_does_not_move_status():
    assert check_payment_transition(
        BookingStatus.PENDING, PaymentStatus.PENDING_PAYMENT, PaymentStatus.PAYMENT_FAILED
    ) is None


# ── Apply ─────────────────────────────────────────────────────

def test_apply_rule_sets_completion_and_availability():
    booking = SimpleNamespace(status=BookingStatus.IN_PROGRESS, completed_at=None)
    worker = SimpleNamespace(availability=WorkerAvailability.BUSY)
    now = datetime.now(timezone.utc)
    rule = check_status_transition(BookingStatus.IN_PROGRESS, BookingStatus.COMPLETED, Actor.WORKER)

    apply_rule(booking, worker, BookingStatus.COMPLETED, rule, now)

    assert booking.status == BookingStatus.COMPLETED
    assert booking.completed_at == now
    assert worker.availability == WorkerAvailability.AVAILABLE


def test_apply_rule_pending_cancel_leaves_availability():
    booking = SimpleNamespace(status=BookingStatus.PENDING, completed_at=None)
    worker = SimpleNamespace(availability=WorkerAvailability.OFFLINE)
    rule = check_status_transition(BookingStatus.PENDING, BookingStatus.CANCELLED, Actor.HOMEOWNER)

    apply_rule(booking, worker, BookingStatus.CANCELLED, rule, datetime.now(timezone.utc))

    assert booking.status == BookingStatus.CANCELLED
    assert booking.completed_at is None
    assert worker.availability == WorkerAvailability.OFFLINE
