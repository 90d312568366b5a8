from __future__ import annotations

from datetime import date, datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .state_machine import InvoiceStatus

MAX_BATCH_PAYLOADS = 500


class _WireModel(BaseModel):
    """Payload shared with the rendering service; camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class RenderInvoiceSection(_WireModel):
    invoice_number: str = Field(min_length=1)
    issue_date: date
    due_date: date
    purchase_order: str | None = None
    currency: str = Field(min_length=3, max_length=3)
    subtotal: float
    discount: float = 0.0
    total_tax: float = 0.0
    total: float
    notes: str | None = None
    terms: str | None = None


class RenderClientSection(_WireModel):
    name: str = Field(min_length=1)
    business_name: str | None = None
    address: str | None = None
    phone: str | None = None
    email: str | None = None
    nit: str | None = None


class RenderCompanySection(_WireModel):
    name: str = Field(min_length=1)
    address: str | None = None
    email: str | None = None
    phone: str | None = None
    nit: str | None = None
    logo: str | None = None


class RenderLineItem(_WireModel):
    name: str = Field(min_length=1)
    description: str | None = None
    quantity: float
    quantity_unit: str
    unit_price: float
    tax: float = 0.0
    total: float


class InvoiceRenderPayload(_WireModel):
    invoice: RenderInvoiceSection
    client: RenderClientSection
    company: RenderCompanySection
    items: list[RenderLineItem] = Field(default_factory=list)


class BatchRenderRequest(_WireModel):
    payloads: list[InvoiceRenderPayload] = Field(min_length=1, max_length=MAX_BATCH_PAYLOADS)


class BatchRenderResponse(_WireModel):
    documents: list[str]


class ReceiptInvoiceSection(_WireModel):
    invoice_number: str = Field(min_length=1)
    total: float
    currency: str = Field(min_length=3, max_length=3)
    status: str
    total_paid: float
    balance: float


class ReceiptPaymentSection(_WireModel):
    id: str
    amount: float
    method: str
    date: str
    notes: str | None = None


class ReceiptPaymentHistoryItem(_WireModel):
    date: str
    method: str
    amount: float


class ReceiptRenderPayload(_WireModel):
    company: RenderCompanySection
    client: RenderClientSection
    invoice: ReceiptInvoiceSection
    payment: ReceiptPaymentSection
    payments: list[ReceiptPaymentHistoryItem] = Field(default_factory=list)


class InvoiceSendRequest(BaseModel):
    email: str = Field(min_length=3, max_length=320)
    subject: str = Field(min_length=1, max_length=998)
    message: str = Field(default="", max_length=20000)

    @field_validator("email", "subject")
    @classmethod
    def _normalize_text(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("text fields cannot be blank")
        return normalized


class ReceiptSendRequest(BaseModel):
    email: str | None = Field(default=None, max_length=320)
    subject: str | None = Field(default=None, max_length=998)
    message: str | None = Field(default=None, max_length=20000)


class DispatchAcknowledgement(BaseModel):
    message: str
    workspace_id: int
    invoice_id: int
    status: InvoiceStatus
    outbox_id: int | None = None
    job_id: str | None = None


class InvoiceStatusResponse(BaseModel):
    workspace_id: int
    invoice_id: int
    sequence: int
    invoice_number: str
    status: InvoiceStatus
    last_reminder_sent_at: datetime | None = None


class OutboxRelayResponse(BaseModel):
    relayed_count: int


class ReminderRunRequest(BaseModel):
    now_override: datetime | None = None
    skip_overdue_sweep: bool = False


class ReminderRunResponse(BaseModel):
    run_at: datetime
    overdue_marked: int
    evaluated_count: int
    eligible_count: int
    skipped_count: int
    sent: int
    failed: int


class QueueJobItem(BaseModel):
    job_id: str
    topic: str
    status: str
    attempts: int
    max_attempts: int
    available_at: datetime
    last_error: str | None = None
    created_at: datetime
    finished_at: datetime | None = None


class QueueJobListResponse(BaseModel):
    topic: str
    items: list[QueueJobItem]
