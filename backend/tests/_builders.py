from __future__ import annotations

from datetime import date, datetime
from typing import Sequence

from invoice_notify.errors import UpstreamServiceError
from invoice_notify.models import InvoiceRenderPayload, ReceiptRenderPayload
from invoice_notify.state_machine import InvoiceStatus
from invoice_notify.store import (
    BusinessRecord,
    ClientRecord,
    InMemoryInvoiceStore,
    InvoiceItemRecord,
    InvoiceRecord,
    PaymentRecord,
)


def seed_invoice(
    store: InMemoryInvoiceStore,
    *,
    workspace_id: int = 1,
    invoice_id: int = 10,
    sequence: int = 1,
    status: InvoiceStatus = InvoiceStatus.DRAFT,
    due_date: date = date(2026, 3, 1),
    client_id: int | None = 100,
    client_email: str | None = "client@example.com",
    client_name: str = "Acme Client",
    before_due_days: int | None = None,
    after_due_days: int | None = None,
    with_client: bool = True,
    with_business: bool = True,
    notification_email: str | None = "owner@example.com",
    last_reminder_sent_at: datetime | None = None,
) -> InvoiceRecord:
    if with_client and client_id is not None:
        store.upsert_client(
            ClientRecord(
                workspace_id=workspace_id,
                id=client_id,
                name=client_name,
                email="billing@acme.example.com",
                business_name="Acme Corp",
                reminder_before_due_interval_days=before_due_days,
                reminder_after_due_interval_days=after_due_days,
            )
        )
    if with_business:
        store.upsert_business(
            BusinessRecord(
                workspace_id=workspace_id,
                id=7,
                name="Studio North",
                address="1 Main St",
                email="hello@studionorth.example.com",
                notification_email=notification_email,
            )
        )
    invoice = InvoiceRecord(
        workspace_id=workspace_id,
        id=invoice_id,
        sequence=sequence,
        invoice_number=f"INV-{sequence:04d}",
        client_id=client_id,
        business_id=7,
        status=status,
        issue_date=date(2026, 2, 1),
        due_date=due_date,
        currency="USD",
        subtotal=200.0,
        total_tax=20.0,
        total=220.0,
        client_email=client_email,
        items=[InvoiceItemRecord(name="Design work", quantity=2, unit_price=100.0, tax=20.0)],
        last_reminder_sent_at=last_reminder_sent_at,
    )
    store.upsert_invoice(invoice)
    return invoice


def seed_payment(
    store: InMemoryInvoiceStore,
    *,
    workspace_id: int = 1,
    invoice_id: int = 10,
    payment_id: int = 500,
    amount: float = 120.0,
    paid_at: datetime | None = None,
) -> PaymentRecord:
    payment = PaymentRecord(
        workspace_id=workspace_id,
        invoice_id=invoice_id,
        id=payment_id,
        amount=amount,
        method="bank_transfer",
        paid_at=paid_at or datetime(2026, 2, 20, 15, 0),
    )
    store.upsert_payment(payment)
    return payment


class FakeRenderClient:
    def __init__(
        self,
        *,
        fail_one: BaseException | None = None,
        fail_batch_numbers: set[str] | None = None,
        drop_batch_numbers: set[str] | None = None,
    ) -> None:
        self.fail_one = fail_one
        self.fail_batch_numbers = fail_batch_numbers or set()
        self.drop_batch_numbers = drop_batch_numbers or set()
        self.rendered: list[str] = []
        self.receipts: list[ReceiptRenderPayload] = []
        self.batches: list[list[str]] = []

    def render_one(self, payload: InvoiceRenderPayload) -> bytes:
        if self.fail_one is not None:
            raise self.fail_one
        self.rendered.append(payload.invoice.invoice_number)
        return f"%PDF-{payload.invoice.invoice_number}".encode()

    def render_receipt(self, payload: ReceiptRenderPayload) -> bytes:
        self.receipts.append(payload)
        return f"%PDF-receipt-{payload.invoice.invoice_number}".encode()

    def render_batch(self, payloads: Sequence[InvoiceRenderPayload]) -> list[bytes]:
        numbers = [value.invoice.invoice_number for value in payloads]
        self.batches.append(numbers)
        if self.fail_batch_numbers.intersection(numbers):
            raise UpstreamServiceError("render service error: 500", status_code=500)
        documents: list[bytes] = []
        for number in numbers:
            if number in self.drop_batch_numbers:
                documents.append(b"")
            else:
                documents.append(f"%PDF-{number}".encode())
        return documents


SHARED_STORE = InMemoryInvoiceStore()


def shared_store(settings) -> InMemoryInvoiceStore:
    return SHARED_STORE
