from __future__ import annotations

from datetime import datetime, timezone

from .errors import NotFoundError
from .models import (
    InvoiceRenderPayload,
    ReceiptInvoiceSection,
    ReceiptPaymentHistoryItem,
    ReceiptPaymentSection,
    ReceiptRenderPayload,
    RenderClientSection,
    RenderCompanySection,
    RenderInvoiceSection,
    RenderLineItem,
)
from .store import BusinessRecord, ClientRecord, InvoiceRecord, InvoiceStore, PaymentRecord


def _format_date(value: datetime | None) -> str:
    # Payments recorded without a timestamp are reported as made today.
    if value is None:
        value = datetime.now(timezone.utc)
    return value.date().isoformat()


def _client_section(invoice: InvoiceRecord, client: ClientRecord) -> RenderClientSection:
    return RenderClientSection(
        name=client.name,
        business_name=client.business_name,
        address=client.address,
        phone=client.phone,
        email=invoice.client_email or client.email,
        nit=client.nit,
    )


def build_invoice_payload(
    invoice: InvoiceRecord,
    client: ClientRecord,
    business: BusinessRecord,
) -> InvoiceRenderPayload:
    return InvoiceRenderPayload(
        invoice=RenderInvoiceSection(
            invoice_number=invoice.invoice_number,
            issue_date=invoice.issue_date,
            due_date=invoice.due_date,
            purchase_order=invoice.purchase_order,
            currency=invoice.currency,
            subtotal=invoice.subtotal,
            discount=invoice.discount,
            total_tax=invoice.total_tax,
            total=invoice.total,
            notes=invoice.notes,
            terms=invoice.terms,
        ),
        client=_client_section(invoice, client),
        company=RenderCompanySection(
            name=business.name,
            address=business.address,
            email=business.email,
            phone=business.phone,
            nit=business.nit,
            logo=business.logo,
        ),
        items=[
            RenderLineItem(
                name=item.name,
                description=item.description,
                quantity=item.quantity,
                quantity_unit=item.quantity_unit,
                unit_price=item.unit_price,
                tax=item.tax,
                total=item.total,
            )
            for item in invoice.items
        ],
    )


def build_receipt_payload(
    invoice: InvoiceRecord,
    client: ClientRecord,
    business: BusinessRecord,
    payment: PaymentRecord,
    payments: list[PaymentRecord],
) -> ReceiptRenderPayload:
    total_paid = round(sum(value.amount for value in payments), 2)
    history = sorted(
        payments,
        key=lambda value: value.paid_at.timestamp() if value.paid_at is not None else 0.0,
        reverse=True,
    )
    return ReceiptRenderPayload(
        company=RenderCompanySection(name=business.name, address=business.address, logo=business.logo),
        client=RenderClientSection(name=client.name, email=invoice.client_email or client.email),
        invoice=ReceiptInvoiceSection(
            invoice_number=invoice.invoice_number,
            total=invoice.total,
            currency=invoice.currency,
            status=invoice.status.value,
            total_paid=total_paid,
            balance=round(invoice.total - total_paid, 2),
        ),
        payment=ReceiptPaymentSection(
            id=str(payment.id),
            amount=payment.amount,
            method=payment.method,
            date=_format_date(payment.paid_at),
            notes=payment.notes,
        ),
        payments=[
            ReceiptPaymentHistoryItem(
                date=_format_date(value.paid_at),
                method=value.method,
                amount=value.amount,
            )
            for value in history
        ],
    )


def load_invoice_payload(store: InvoiceStore, invoice: InvoiceRecord) -> InvoiceRenderPayload:
    """Resolve the client and issuing business of an invoice and project it for rendering."""
    client = store.get_client(invoice.workspace_id, invoice.client_id)
    if client is None:
        raise NotFoundError("client", f"invoice={invoice.id}")
    business = store.get_business(invoice.workspace_id, invoice.business_id)
    if business is None:
        raise NotFoundError("business", f"invoice={invoice.id}")
    return build_invoice_payload(invoice, client, business)
