from __future__ import annotations

import importlib
import logging
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta, timezone
from itertools import count
from threading import Lock
from typing import Iterable, Protocol

from .config import Settings
from .errors import ConfigurationError, NotFoundError
from .state_machine import OVERDUE_SOURCES, InvoiceStatus, ensure_transition

logger = logging.getLogger(__name__)

OUTBOX_CLAIM_TIMEOUT = timedelta(seconds=60)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ClientRecord:
    workspace_id: int
    id: int
    name: str
    email: str | None = None
    business_name: str | None = None
    address: str | None = None
    phone: str | None = None
    nit: str | None = None
    reminder_before_due_interval_days: int | None = None
    reminder_after_due_interval_days: int | None = None


@dataclass
class BusinessRecord:
    workspace_id: int
    id: int
    name: str
    address: str | None = None
    email: str | None = None
    phone: str | None = None
    nit: str | None = None
    logo: str | None = None
    notification_email: str | None = None


@dataclass
class InvoiceItemRecord:
    name: str
    quantity: float
    unit_price: float
    tax: float = 0.0
    quantity_unit: str = "unit"
    description: str | None = None

    @property
    def total(self) -> float:
        return round(self.quantity * self.unit_price + self.tax, 2)


@dataclass
class InvoiceRecord:
    workspace_id: int
    id: int
    sequence: int
    invoice_number: str
    client_id: int | None
    business_id: int | None
    status: InvoiceStatus
    issue_date: date
    due_date: date
    currency: str = "USD"
    subtotal: float = 0.0
    discount: float = 0.0
    total_tax: float = 0.0
    total: float = 0.0
    client_email: str | None = None
    purchase_order: str | None = None
    notes: str | None = None
    terms: str | None = None
    items: list[InvoiceItemRecord] = field(default_factory=list)
    last_reminder_sent_at: datetime | None = None
    updated_at: datetime = field(default_factory=_now_utc)


@dataclass
class PaymentRecord:
    workspace_id: int
    invoice_id: int
    id: int
    amount: float
    method: str
    paid_at: datetime | None = None
    notes: str | None = None


@dataclass
class OutboxEntry:
    outbox_id: int
    workspace_id: int
    invoice_id: int
    topic: str
    payload_json: str
    created_at: datetime
    relayed_at: datetime | None = None
    claimed_at: datetime | None = None
    job_id: str | None = None


class InvoiceStore(Protocol):
    def get_invoice_by_sequence(self, workspace_id: int, sequence: int) -> InvoiceRecord: ...

    def get_invoice(self, workspace_id: int, invoice_id: int) -> InvoiceRecord: ...

    def get_client(self, workspace_id: int, client_id: int | None) -> ClientRecord | None: ...

    def get_business(self, workspace_id: int, business_id: int | None) -> BusinessRecord | None: ...

    def get_payment(self, workspace_id: int, invoice_id: int, payment_id: int) -> PaymentRecord: ...

    def list_payments(self, workspace_id: int, invoice_id: int) -> list[PaymentRecord]: ...

    def transition_status(
        self, workspace_id: int, invoice_id: int, target: InvoiceStatus
    ) -> InvoiceRecord: ...

    def mark_sent_with_outbox(
        self, workspace_id: int, invoice_id: int, *, target: InvoiceStatus, topic: str, payload_json: str
    ) -> tuple[InvoiceRecord, OutboxEntry]: ...

    def mark_send_failed_if_sent(self, workspace_id: int, invoice_id: int) -> bool: ...

    def list_pending_outbox(self, *, limit: int) -> list[OutboxEntry]: ...

    def get_outbox_entry(self, outbox_id: int) -> OutboxEntry: ...

    def claim_pending_outbox(self, *, limit: int, now: datetime | None = None) -> list[OutboxEntry]: ...

    def release_outbox_claim(self, outbox_id: int) -> None: ...

    def mark_outbox_relayed(self, outbox_id: int, *, job_id: str) -> None: ...

    def bulk_mark_overdue(self, *, due_before: date) -> int: ...

    def list_invoices_by_status(self, statuses: Iterable[InvoiceStatus]) -> list[InvoiceRecord]: ...

    def set_last_reminder_sent_at(self, workspace_id: int, invoice_id: int, sent_at: datetime) -> None: ...


class InMemoryInvoiceStore:
    """Thread-safe in-memory store; every mutation is a narrow update under one lock."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._outbox_counter = count(1)
        self._invoices: dict[tuple[int, int], InvoiceRecord] = {}
        self._clients: dict[tuple[int, int], ClientRecord] = {}
        self._businesses: dict[tuple[int, int], BusinessRecord] = {}
        self._payments: dict[tuple[int, int, int], PaymentRecord] = {}
        self._outbox: dict[int, OutboxEntry] = {}

    def reset(self) -> None:
        with self._lock:
            self._outbox_counter = count(1)
            self._invoices.clear()
            self._clients.clear()
            self._businesses.clear()
            self._payments.clear()
            self._outbox.clear()

    def upsert_client(self, record: ClientRecord) -> None:
        with self._lock:
            self._clients[(record.workspace_id, record.id)] = replace(record)

    def upsert_business(self, record: BusinessRecord) -> None:
        with self._lock:
            self._businesses[(record.workspace_id, record.id)] = replace(record)

    def upsert_invoice(self, record: InvoiceRecord) -> None:
        with self._lock:
            self._invoices[(record.workspace_id, record.id)] = replace(record, items=list(record.items))

    def upsert_payment(self, record: PaymentRecord) -> None:
        with self._lock:
            self._payments[(record.workspace_id, record.invoice_id, record.id)] = replace(record)

    def get_invoice_by_sequence(self, workspace_id: int, sequence: int) -> InvoiceRecord:
        with self._lock:
            for record in self._invoices.values():
                if record.workspace_id == workspace_id and record.sequence == sequence:
                    return self._copy(record)
        raise NotFoundError("invoice", f"workspace={workspace_id} sequence={sequence}")

    def get_invoice(self, workspace_id: int, invoice_id: int) -> InvoiceRecord:
        with self._lock:
            return self._copy(self._require_invoice(workspace_id, invoice_id))

    def get_client(self, workspace_id: int, client_id: int | None) -> ClientRecord | None:
        if client_id is None:
            return None
        with self._lock:
            record = self._clients.get((workspace_id, client_id))
            return replace(record) if record is not None else None

    def get_business(self, workspace_id: int, business_id: int | None) -> BusinessRecord | None:
        if business_id is None:
            return None
        with self._lock:
            record = self._businesses.get((workspace_id, business_id))
            return replace(record) if record is not None else None

    def get_payment(self, workspace_id: int, invoice_id: int, payment_id: int) -> PaymentRecord:
        with self._lock:
            record = self._payments.get((workspace_id, invoice_id, payment_id))
            if record is None:
                raise NotFoundError("payment", f"workspace={workspace_id} invoice={invoice_id} id={payment_id}")
            return replace(record)

    def list_payments(self, workspace_id: int, invoice_id: int) -> list[PaymentRecord]:
        with self._lock:
            rows = [
                replace(value)
                for key, value in self._payments.items()
                if key[0] == workspace_id and key[1] == invoice_id
            ]
        return sorted(rows, key=lambda value: value.id)

    def transition_status(self, workspace_id: int, invoice_id: int, target: InvoiceStatus) -> InvoiceRecord:
        with self._lock:
            record = self._require_invoice(workspace_id, invoice_id)
            record.status = ensure_transition(record.status, target)
            record.updated_at = _now_utc()
            return self._copy(record)

    def mark_sent_with_outbox(
        self,
        workspace_id: int,
        invoice_id: int,
        *,
        target: InvoiceStatus,
        topic: str,
        payload_json: str,
    ) -> tuple[InvoiceRecord, OutboxEntry]:
        with self._lock:
            record = self._require_invoice(workspace_id, invoice_id)
            next_status = ensure_transition(record.status, target)
            now = _now_utc()
            entry = OutboxEntry(
                outbox_id=next(self._outbox_counter),
                workspace_id=workspace_id,
                invoice_id=invoice_id,
                topic=topic,
                payload_json=payload_json,
                created_at=now,
            )
            record.status = next_status
            record.updated_at = now
            self._outbox[entry.outbox_id] = entry
            return self._copy(record), replace(entry)

    def mark_send_failed_if_sent(self, workspace_id: int, invoice_id: int) -> bool:
        with self._lock:
            record = self._invoices.get((workspace_id, invoice_id))
            if record is None or record.status != InvoiceStatus.SENT:
                return False
            record.status = ensure_transition(record.status, InvoiceStatus.SEND_FAILED)
            record.updated_at = _now_utc()
            return True

    def list_pending_outbox(self, *, limit: int) -> list[OutboxEntry]:
        with self._lock:
            pending = [replace(value) for value in self._outbox.values() if value.relayed_at is None]
        pending.sort(key=lambda value: value.outbox_id)
        return pending[:limit]

    def claim_pending_outbox(self, *, limit: int, now: datetime | None = None) -> list[OutboxEntry]:
        """Take unrelayed entries for publishing; another caller skips them until released or stale."""
        current = now or _now_utc()
        with self._lock:
            claimable = sorted(
                (
                    value
                    for value in self._outbox.values()
                    if value.relayed_at is None
                    and (value.claimed_at is None or current - value.claimed_at >= OUTBOX_CLAIM_TIMEOUT)
                ),
                key=lambda value: value.outbox_id,
            )[:limit]
            for value in claimable:
                value.claimed_at = current
            return [replace(value) for value in claimable]

    def release_outbox_claim(self, outbox_id: int) -> None:
        with self._lock:
            entry = self._outbox.get(outbox_id)
            if entry is not None and entry.relayed_at is None:
                entry.claimed_at = None

    def get_outbox_entry(self, outbox_id: int) -> OutboxEntry:
        with self._lock:
            entry = self._outbox.get(outbox_id)
            if entry is None:
                raise NotFoundError("outbox entry", outbox_id)
            return replace(entry)

    def mark_outbox_relayed(self, outbox_id: int, *, job_id: str) -> None:
        with self._lock:
            entry = self._outbox.get(outbox_id)
            if entry is None:
                raise NotFoundError("outbox entry", outbox_id)
            entry.relayed_at = _now_utc()
            entry.job_id = job_id

    def bulk_mark_overdue(self, *, due_before: date) -> int:
        with self._lock:
            updated = 0
            now = _now_utc()
            for record in self._invoices.values():
                if record.status not in OVERDUE_SOURCES:
                    continue
                if record.due_date >= due_before:
                    continue
                record.status = ensure_transition(record.status, InvoiceStatus.OVERDUE)
                record.updated_at = now
                updated += 1
            return updated

    def list_invoices_by_status(self, statuses: Iterable[InvoiceStatus]) -> list[InvoiceRecord]:
        wanted = set(statuses)
        with self._lock:
            rows = [self._copy(value) for value in self._invoices.values() if value.status in wanted]
        return sorted(rows, key=lambda value: (value.workspace_id, value.due_date, value.id))

    def set_last_reminder_sent_at(self, workspace_id: int, invoice_id: int, sent_at: datetime) -> None:
        with self._lock:
            record = self._require_invoice(workspace_id, invoice_id)
            if record.last_reminder_sent_at is not None and record.last_reminder_sent_at >= sent_at:
                return
            record.last_reminder_sent_at = sent_at
            record.updated_at = _now_utc()

    def _require_invoice(self, workspace_id: int, invoice_id: int) -> InvoiceRecord:
        record = self._invoices.get((workspace_id, invoice_id))
        if record is None:
            raise NotFoundError("invoice", f"workspace={workspace_id} id={invoice_id}")
        return record

    def _copy(self, record: InvoiceRecord) -> InvoiceRecord:
        return replace(record, items=list(record.items))


def create_invoice_store(settings: Settings) -> InvoiceStore:
    """Build the store named by INVOICE_STORE_FACTORY, or a process-local one."""
    target = settings.invoice_store_factory
    if not target:
        return InMemoryInvoiceStore()
    module_name, _, attribute = target.partition(":")
    if not module_name or not attribute:
        raise ConfigurationError(f"INVOICE_STORE_FACTORY must look like 'package.module:callable', got {target!r}")
    try:
        factory = getattr(importlib.import_module(module_name), attribute)
    except (ImportError, AttributeError) as exc:
        raise ConfigurationError(f"INVOICE_STORE_FACTORY {target!r} could not be loaded: {exc}") from exc
    logger.info("using invoice store from %s", target)
    return factory(settings)
