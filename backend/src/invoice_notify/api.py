from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, HTTPException, Query, status

from .config import get_settings
from .dispatcher import OutboxRelay, SendDispatcher
from .email_client import EmailClient, create_email_client
from .errors import InvalidTransitionError, NotFoundError
from .jobs import TOPICS
from .models import (
    DispatchAcknowledgement,
    InvoiceSendRequest,
    InvoiceStatusResponse,
    OutboxRelayResponse,
    QueueJobItem,
    QueueJobListResponse,
    ReceiptSendRequest,
    ReminderRunRequest,
    ReminderRunResponse,
)
from .queue_broker import JobStatus, QueueBroker, create_queue_broker
from .reminders import ReminderScheduler
from .render_client import RenderClient, create_render_client
from .store import InvoiceRecord, InvoiceStore, create_invoice_store

_settings = get_settings()
router = APIRouter(prefix=_settings.api_prefix, tags=["notifications"])

invoice_store: InvoiceStore = create_invoice_store(_settings)
queue_broker: QueueBroker = create_queue_broker(_settings)
email_client: EmailClient = create_email_client(_settings)
render_client: RenderClient | None = create_render_client(_settings)
outbox_relay = OutboxRelay(invoice_store, queue_broker)
dispatcher = SendDispatcher(invoice_store, queue_broker, outbox_relay)


def reset_runtime_state_for_tests() -> None:
    queue_broker.reset()
    for component in (invoice_store, email_client):
        reset = getattr(component, "reset", None)
        if callable(reset):
            reset()


def reminder_scheduler() -> ReminderScheduler:
    return ReminderScheduler(
        store=invoice_store,
        render_client=render_client,
        email_client=email_client,
        batch_size=_settings.reminder_batch_size,
    )


def _status_response(invoice: InvoiceRecord) -> InvoiceStatusResponse:
    return InvoiceStatusResponse(
        workspace_id=invoice.workspace_id,
        invoice_id=invoice.id,
        sequence=invoice.sequence,
        invoice_number=invoice.invoice_number,
        status=invoice.status,
        last_reminder_sent_at=invoice.last_reminder_sent_at,
    )


@router.post(
    "/workspaces/{workspace_id}/invoices/{sequence}/send",
    response_model=DispatchAcknowledgement,
    status_code=status.HTTP_202_ACCEPTED,
)
def send_invoice(workspace_id: int, sequence: int, payload: InvoiceSendRequest) -> DispatchAcknowledgement:
    try:
        return dispatcher.dispatch_invoice_send(
            workspace_id,
            sequence,
            payload.email,
            payload.subject,
            payload.message,
        )
    except NotFoundError as exc:
        raise HTTPException(status.HTTP_404_NOT_FOUND, str(exc)) from exc
    except InvalidTransitionError as exc:
        raise HTTPException(status.HTTP_409_CONFLICT, str(exc)) from exc


@router.patch("/workspaces/{workspace_id}/invoices/{invoice_id}/send", response_model=InvoiceStatusResponse)
def mark_invoice_sent(workspace_id: int, invoice_id: int) -> InvoiceStatusResponse:
    try:
        invoice = dispatcher.confirm_invoice_sent(workspace_id, invoice_id)
    except NotFoundError as exc:
        raise HTTPException(status.HTTP_404_NOT_FOUND, str(exc)) from exc
    except InvalidTransitionError as exc:
        raise HTTPException(status.HTTP_409_CONFLICT, str(exc)) from exc
    return _status_response(invoice)


@router.post(
    "/workspaces/{workspace_id}/invoices/{invoice_id}/payments/{payment_id}/receipt/send",
    response_model=DispatchAcknowledgement,
    status_code=status.HTTP_202_ACCEPTED,
)
def send_receipt(
    workspace_id: int,
    invoice_id: int,
    payment_id: int,
    payload: ReceiptSendRequest | None = None,
) -> DispatchAcknowledgement:
    request_payload = payload or ReceiptSendRequest()
    try:
        return dispatcher.dispatch_receipt_send(
            workspace_id,
            invoice_id,
            payment_id,
            email=request_payload.email,
            subject=request_payload.subject,
            message=request_payload.message,
        )
    except NotFoundError as exc:
        raise HTTPException(status.HTTP_404_NOT_FOUND, str(exc)) from exc


@router.post("/outbox/relay", response_model=OutboxRelayResponse)
def relay_outbox() -> OutboxRelayResponse:
    return OutboxRelayResponse(relayed_count=outbox_relay.relay_pending())


@router.post("/reminders/run", response_model=ReminderRunResponse)
def run_reminders(payload: ReminderRunRequest | None = None) -> ReminderRunResponse:
    request_payload = payload or ReminderRunRequest()
    run_at = request_payload.now_override or datetime.now(timezone.utc)
    scheduler = reminder_scheduler()
    overdue_marked = 0 if request_payload.skip_overdue_sweep else scheduler.run_overdue_sweep(run_at)
    result = scheduler.run_reminders(run_at)
    return ReminderRunResponse(
        run_at=run_at,
        overdue_marked=overdue_marked,
        evaluated_count=result.evaluated,
        eligible_count=result.eligible,
        skipped_count=result.skipped,
        sent=result.sent,
        failed=result.failed,
    )


@router.get("/queues/{topic}/jobs", response_model=QueueJobListResponse)
def list_queue_jobs(
    topic: str,
    status_filter: JobStatus | None = Query(default=None, alias="status"),
    limit: int = 100,
) -> QueueJobListResponse:
    if topic not in TOPICS:
        raise HTTPException(status.HTTP_404_NOT_FOUND, f"unknown queue topic: {topic}")
    jobs = queue_broker.list_jobs(topic, status=status_filter, limit=max(1, min(limit, 500)))
    return QueueJobListResponse(
        topic=topic,
        items=[
            QueueJobItem(
                job_id=job.job_id,
                topic=job.topic,
                status=job.status,
                attempts=job.attempts,
                max_attempts=job.max_attempts,
                available_at=job.available_at,
                last_error=job.last_error,
                created_at=job.created_at,
                finished_at=job.finished_at,
            )
            for job in jobs
        ],
    )
