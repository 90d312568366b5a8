from __future__ import annotations

import pytest

from invoice_notify.errors import InvalidTransitionError
from invoice_notify.state_machine import (
    ALLOWED_TRANSITIONS,
    InvoiceStatus,
    can_transition,
    coerce_status,
    dispatch_target,
    ensure_transition,
)


def test_every_status_has_a_transition_row() -> None:
    assert set(ALLOWED_TRANSITIONS) == set(InvoiceStatus)


def test_nothing_moves_back_to_draft() -> None:
    for status in InvoiceStatus:
        assert not can_transition(status, InvoiceStatus.DRAFT)


def test_paid_never_becomes_overdue_but_overdue_can_be_paid() -> None:
    assert not can_transition(InvoiceStatus.PAID, InvoiceStatus.OVERDUE)
    assert can_transition(InvoiceStatus.OVERDUE, InvoiceStatus.PAID)


def test_sent_re_assert_is_idempotent() -> None:
    assert ensure_transition(InvoiceStatus.SENT, InvoiceStatus.SENT) == InvoiceStatus.SENT


def test_send_failed_only_from_sent_and_back_only_to_sent() -> None:
    assert can_transition(InvoiceStatus.SENT, InvoiceStatus.SEND_FAILED)
    assert not can_transition(InvoiceStatus.VIEWED, InvoiceStatus.SEND_FAILED)
    assert ALLOWED_TRANSITIONS[InvoiceStatus.SEND_FAILED] == frozenset({InvoiceStatus.SENT})


def test_ensure_transition_rejects_edges_outside_the_table() -> None:
    with pytest.raises(InvalidTransitionError) as exc_info:
        ensure_transition(InvoiceStatus.PAID, InvoiceStatus.SENT)
    assert exc_info.value.current == "PAID"
    assert exc_info.value.target == "SENT"


def test_coerce_status_accepts_lowercase_strings_and_rejects_unknown_values() -> None:
    assert coerce_status(" overdue ") == InvoiceStatus.OVERDUE
    with pytest.raises(ValueError):
        coerce_status("ARCHIVED")


def test_dispatch_target_never_moves_an_invoice_backward() -> None:
    assert dispatch_target(InvoiceStatus.DRAFT) == InvoiceStatus.SENT
    assert dispatch_target(InvoiceStatus.SEND_FAILED) == InvoiceStatus.SENT
    assert dispatch_target(InvoiceStatus.SENT) == InvoiceStatus.SENT
    assert dispatch_target(InvoiceStatus.VIEWED) == InvoiceStatus.VIEWED
    assert dispatch_target(InvoiceStatus.OVERDUE) == InvoiceStatus.OVERDUE
    assert dispatch_target(InvoiceStatus.PAID) == InvoiceStatus.PAID
