from __future__ import annotations

from enum import Enum

from .errors import InvalidTransitionError


class InvoiceStatus(str, Enum):
    DRAFT = "DRAFT"
    SENT = "SENT"
    VIEWED = "VIEWED"
    PAID = "PAID"
    OVERDUE = "OVERDUE"
    SEND_FAILED = "SEND_FAILED"


# Self-edges are idempotent re-asserts. Nothing returns to DRAFT.
ALLOWED_TRANSITIONS: dict[InvoiceStatus, frozenset[InvoiceStatus]] = {
    InvoiceStatus.DRAFT: frozenset({InvoiceStatus.SENT}),
    InvoiceStatus.SENT: frozenset(
        {
            InvoiceStatus.SENT,
            InvoiceStatus.VIEWED,
            InvoiceStatus.PAID,
            InvoiceStatus.OVERDUE,
            InvoiceStatus.SEND_FAILED,
        }
    ),
    InvoiceStatus.VIEWED: frozenset({InvoiceStatus.VIEWED, InvoiceStatus.PAID, InvoiceStatus.OVERDUE}),
    InvoiceStatus.OVERDUE: frozenset({InvoiceStatus.OVERDUE, InvoiceStatus.PAID}),
    InvoiceStatus.PAID: frozenset({InvoiceStatus.PAID}),
    InvoiceStatus.SEND_FAILED: frozenset({InvoiceStatus.SENT}),
}

OVERDUE_SOURCES: frozenset[InvoiceStatus] = frozenset({InvoiceStatus.SENT, InvoiceStatus.VIEWED})
REMINDER_STATUSES: frozenset[InvoiceStatus] = frozenset(
    {InvoiceStatus.SENT, InvoiceStatus.VIEWED, InvoiceStatus.OVERDUE}
)


def coerce_status(value: InvoiceStatus | str) -> InvoiceStatus:
    if isinstance(value, InvoiceStatus):
        return value
    return InvoiceStatus(str(value).strip().upper())


def can_transition(current: InvoiceStatus | str, target: InvoiceStatus | str) -> bool:
    return coerce_status(target) in ALLOWED_TRANSITIONS[coerce_status(current)]


def ensure_transition(current: InvoiceStatus | str, target: InvoiceStatus | str) -> InvoiceStatus:
    """Return the target status, or raise InvalidTransitionError if the edge is not in the table."""
    current_status = coerce_status(current)
    target_status = coerce_status(target)
    if target_status not in ALLOWED_TRANSITIONS[current_status]:
        raise InvalidTransitionError(current_status.value, target_status.value)
    return target_status


def dispatch_target(current: InvoiceStatus | str) -> InvoiceStatus:
    """Status an invoice should hold after a send is dispatched.

    DRAFT and SEND_FAILED move to SENT; invoices that already progressed past
    SENT keep their status so a re-send never moves them backward.
    """
    current_status = coerce_status(current)
    if current_status in {InvoiceStatus.DRAFT, InvoiceStatus.SEND_FAILED, InvoiceStatus.SENT}:
        return InvoiceStatus.SENT
    return current_status
