from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

import pytest

from _builders import SHARED_STORE, seed_invoice
from invoice_notify.config import Settings
from invoice_notify.errors import ConfigurationError, InvalidTransitionError, NotFoundError
from invoice_notify.state_machine import InvoiceStatus
from invoice_notify.store import OUTBOX_CLAIM_TIMEOUT, InMemoryInvoiceStore, create_invoice_store


def test_mark_sent_with_outbox_writes_status_and_entry_together() -> None:
    store = InMemoryInvoiceStore()
    seed_invoice(store)

    invoice, entry = store.mark_sent_with_outbox(
        1, 10, target=InvoiceStatus.SENT, topic="email-invoice", payload_json="{}"
    )

    assert invoice.status == InvoiceStatus.SENT
    assert store.list_pending_outbox(limit=10) == [entry]


def test_rejected_transition_leaves_no_outbox_entry() -> None:
    store = InMemoryInvoiceStore()
    seed_invoice(store, status=InvoiceStatus.PAID)

    with pytest.raises(InvalidTransitionError):
        store.mark_sent_with_outbox(1, 10, target=InvoiceStatus.SENT, topic="email-invoice", payload_json="{}")

    assert store.get_invoice(1, 10).status == InvoiceStatus.PAID
    assert store.list_pending_outbox(limit=10) == []


def test_mark_outbox_relayed_removes_entry_from_pending() -> None:
    store = InMemoryInvoiceStore()
    seed_invoice(store)
    _, entry = store.mark_sent_with_outbox(1, 10, target=InvoiceStatus.SENT, topic="email-invoice", payload_json="{}")

    store.mark_outbox_relayed(entry.outbox_id, job_id="job_000001")

    assert store.list_pending_outbox(limit=10) == []
    assert store.get_outbox_entry(entry.outbox_id).job_id == "job_000001"


def test_outbox_claim_is_exclusive_until_it_goes_stale() -> None:
    store = InMemoryInvoiceStore()
    seed_invoice(store)
    _, entry = store.mark_sent_with_outbox(1, 10, target=InvoiceStatus.SENT, topic="email-invoice", payload_json="{}")
    claimed_at = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    first = store.claim_pending_outbox(limit=10, now=claimed_at)
    second = store.claim_pending_outbox(limit=10, now=claimed_at + timedelta(seconds=30))
    stale = store.claim_pending_outbox(limit=10, now=claimed_at + OUTBOX_CLAIM_TIMEOUT)

    assert [value.outbox_id for value in first] == [entry.outbox_id]
    assert second == []
    assert [value.outbox_id for value in stale] == [entry.outbox_id]
    assert [value.outbox_id for value in store.list_pending_outbox(limit=10)] == [entry.outbox_id]


def test_bulk_mark_overdue_only_touches_sent_and_viewed_past_due() -> None:
    store = InMemoryInvoiceStore()
    seed_invoice(store, invoice_id=1, sequence=1, status=InvoiceStatus.SENT, due_date=date(2026, 3, 1))
    seed_invoice(store, invoice_id=2, sequence=2, status=InvoiceStatus.VIEWED, due_date=date(2026, 3, 9))
    seed_invoice(store, invoice_id=3, sequence=3, status=InvoiceStatus.PAID, due_date=date(2026, 3, 1))
    seed_invoice(store, invoice_id=4, sequence=4, status=InvoiceStatus.SENT, due_date=date(2026, 3, 10))
    seed_invoice(store, invoice_id=5, sequence=5, status=InvoiceStatus.DRAFT, due_date=date(2026, 3, 1))

    assert store.bulk_mark_overdue(due_before=date(2026, 3, 10)) == 2
    assert store.bulk_mark_overdue(due_before=date(2026, 3, 10)) == 0

    statuses = {value.id: value.status for value in store.list_invoices_by_status(InvoiceStatus)}
    assert statuses == {
        1: InvoiceStatus.OVERDUE,
        2: InvoiceStatus.OVERDUE,
        3: InvoiceStatus.PAID,
        4: InvoiceStatus.SENT,
        5: InvoiceStatus.DRAFT,
    }


def test_last_reminder_sent_at_never_decreases() -> None:
    store = InMemoryInvoiceStore()
    seed_invoice(store)
    later = datetime(2026, 3, 5, tzinfo=timezone.utc)

    store.set_last_reminder_sent_at(1, 10, later)
    store.set_last_reminder_sent_at(1, 10, later - timedelta(days=2))

    assert store.get_invoice(1, 10).last_reminder_sent_at == later


def test_mark_send_failed_if_sent_is_a_no_op_for_other_statuses() -> None:
    store = InMemoryInvoiceStore()
    seed_invoice(store, status=InvoiceStatus.VIEWED)

    assert store.mark_send_failed_if_sent(1, 10) is False
    assert store.get_invoice(1, 10).status == InvoiceStatus.VIEWED


def test_lookups_are_tenant_scoped() -> None:
    store = InMemoryInvoiceStore()
    seed_invoice(store, workspace_id=1)

    with pytest.raises(NotFoundError):
        store.get_invoice_by_sequence(2, 1)
    assert store.get_client(2, 100) is None


def test_returned_records_are_copies() -> None:
    store = InMemoryInvoiceStore()
    seed_invoice(store)

    invoice = store.get_invoice(1, 10)
    invoice.status = InvoiceStatus.PAID

    assert store.get_invoice(1, 10).status == InvoiceStatus.DRAFT


def test_invoice_store_defaults_to_in_process_store() -> None:
    assert isinstance(create_invoice_store(Settings()), InMemoryInvoiceStore)


def test_invoice_store_factory_is_loaded_from_import_path() -> None:
    store = create_invoice_store(Settings(invoice_store_factory="_builders:shared_store"))

    assert store is SHARED_STORE


@pytest.mark.parametrize("target", ["_builders", "_builders:missing_factory", "no_such_module:factory"])
def test_unloadable_invoice_store_factory_is_a_configuration_error(target: str) -> None:
    with pytest.raises(ConfigurationError):
        create_invoice_store(Settings(invoice_store_factory=target))
