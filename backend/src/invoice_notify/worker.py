from __future__ import annotations

import logging
import signal
import threading
from typing import Iterable

from .email_client import EmailClient, mask_email, message_to_html, notify_send_failure
from .errors import (
    ConfigurationError,
    JobDecodeError,
    NotFoundError,
    PermanentJobError,
    RecipientValidationError,
)
from .jobs import EMAIL_INVOICE_TOPIC, TOPICS, InvoiceEmailJob, ReceiptEmailJob, decode_job
from .queue_broker import QueueBroker, QueuedJob
from .render_client import RenderClient
from .render_payloads import build_receipt_payload, load_invoice_payload
from .state_machine import InvoiceStatus, can_transition
from .store import InvoiceStore

logger = logging.getLogger(__name__)

INVOICE_ATTACHMENT_NOTE = "Please find the invoice attached as a PDF."
EMAIL_FOOTER = "This email was sent by the invoicing system."


def _permanent_lookup(fn, *args):
    try:
        return fn(*args)
    except NotFoundError as exc:
        raise PermanentJobError(exc) from exc


class Worker:
    """Consumes notification jobs: render the document, email it, then record the outcome."""

    def __init__(
        self,
        *,
        store: InvoiceStore,
        broker: QueueBroker,
        render_client: RenderClient | None,
        email_client: EmailClient,
        operator_email: str = "",
        poll_interval_seconds: float = 1.0,
    ) -> None:
        self._store = store
        self._broker = broker
        self._render_client = render_client
        self._email_client = email_client
        self._operator_email = operator_email.strip()
        self._poll_interval_seconds = poll_interval_seconds

    def run_once(self, topic: str) -> QueuedJob | None:
        job = self._broker.reserve(topic)
        if job is None:
            return None
        return self.process(job)

    def run_forever(self, topics: Iterable[str], stop_event: threading.Event) -> None:
        topic_list = list(topics)
        logger.info("worker started for topics %s", ", ".join(topic_list))
        while not stop_event.is_set():
            handled = False
            for topic in topic_list:
                if stop_event.is_set():
                    break
                try:
                    handled = self.run_once(topic) is not None or handled
                except Exception:
                    logger.exception("worker loop error on topic %s", topic)
            if not handled:
                stop_event.wait(self._poll_interval_seconds)
        logger.info("worker stopped for topics %s", ", ".join(topic_list))

    def process(self, job: QueuedJob) -> QueuedJob:
        if job.status == "failed":
            return self._dead_letter_stalled(job)
        message: InvoiceEmailJob | ReceiptEmailJob | None = None
        try:
            message = decode_job(job.payload_json)
            if isinstance(message, InvoiceEmailJob):
                self._send_invoice(message)
            else:
                self._send_receipt(message)
        except (JobDecodeError, PermanentJobError, RecipientValidationError) as exc:
            logger.warning("job %s failed permanently: %s", job.job_id, exc)
            return self._fail(job, message, exc, retryable=False)
        except Exception as exc:
            logger.warning("job %s attempt %s/%s failed: %s", job.job_id, job.attempts, job.max_attempts, exc)
            return self._fail(job, message, exc, retryable=True)
        return self._broker.complete(job.job_id)

    def _render_client_or_raise(self) -> RenderClient:
        if self._render_client is None:
            raise ConfigurationError("RENDER_SERVICE_URL or RENDER_SERVICE_SECRET not configured")
        return self._render_client

    def _send_invoice(self, job: InvoiceEmailJob) -> None:
        invoice = _permanent_lookup(self._store.get_invoice_by_sequence, job.workspace_id, job.sequence)
        # A client or business that is not visible yet may still appear; let the queue retry.
        payload = load_invoice_payload(self._store, invoice)

        document = self._render_client_or_raise().render_one(payload)
        body = f"{job.message}\n{INVOICE_ATTACHMENT_NOTE}" if job.message else INVOICE_ATTACHMENT_NOTE
        self._email_client.send_with_attachment(
            to=job.email,
            subject=job.subject,
            html=message_to_html(body, footer=EMAIL_FOOTER),
            document=document,
            filename=f"invoice-{invoice.invoice_number}.pdf",
        )
        logger.info("invoice %s emailed to %s", invoice.invoice_number, mask_email(job.email))

        current = self._store.get_invoice(job.workspace_id, invoice.id)
        if current.status != InvoiceStatus.SENT and can_transition(current.status, InvoiceStatus.SENT):
            self._store.transition_status(job.workspace_id, invoice.id, InvoiceStatus.SENT)

    def _send_receipt(self, job: ReceiptEmailJob) -> None:
        invoice = _permanent_lookup(self._store.get_invoice, job.workspace_id, job.invoice_id)
        payment = _permanent_lookup(self._store.get_payment, job.workspace_id, job.invoice_id, job.payment_id)
        recipient = job.email or invoice.client_email
        if not recipient:
            raise RecipientValidationError("", "no recipient email for receipt")
        client = self._store.get_client(job.workspace_id, invoice.client_id)
        if client is None:
            raise NotFoundError("client", f"invoice={invoice.id}")
        business = self._store.get_business(job.workspace_id, invoice.business_id)
        if business is None:
            raise NotFoundError("business", f"invoice={invoice.id}")

        payments = self._store.list_payments(job.workspace_id, job.invoice_id)
        payload = build_receipt_payload(invoice, client, business, payment, payments)
        document = self._render_client_or_raise().render_receipt(payload)

        subject = job.subject or f"Payment receipt - Invoice {invoice.invoice_number}"
        message = job.message or (
            f"This is a confirmation that we received your payment of {payment.amount:.2f} "
            f"{invoice.currency} on {payload.payment.date}."
        )
        self._email_client.send_with_attachment(
            to=recipient,
            subject=subject,
            html=message_to_html(message, footer=EMAIL_FOOTER),
            document=document,
            filename=f"receipt-{invoice.invoice_number}-{payment.id}.pdf",
        )
        logger.info("receipt for invoice %s emailed to %s", invoice.invoice_number, mask_email(recipient))

    def _fail(
        self,
        job: QueuedJob,
        message: InvoiceEmailJob | ReceiptEmailJob | None,
        exc: Exception,
        *,
        retryable: bool,
    ) -> QueuedJob:
        updated = self._broker.fail(job.job_id, error=str(exc) or type(exc).__name__, retryable=retryable)
        if updated.status == "failed":
            reason = exc.reason if isinstance(exc, RecipientValidationError) else str(exc)
            self._dead_letter(updated, message, reason)
        return updated

    def _dead_letter_stalled(self, job: QueuedJob) -> QueuedJob:
        """Compensate for a job whose final attempt never reported back."""
        try:
            message = decode_job(job.payload_json)
        except JobDecodeError:
            message = None
        self._dead_letter(job, message, f"final attempt did not finish: {job.last_error}")
        return job

    def _dead_letter(
        self,
        job: QueuedJob,
        message: InvoiceEmailJob | ReceiptEmailJob | None,
        reason: str,
    ) -> None:
        if message is None:
            logger.error("job %s on %s dead-lettered with an undecodable payload", job.job_id, job.topic)
            return

        invoice_number: str | None = None
        notify_to = self._operator_email or None
        try:
            if isinstance(message, InvoiceEmailJob):
                invoice = self._store.get_invoice_by_sequence(message.workspace_id, message.sequence)
            else:
                invoice = self._store.get_invoice(message.workspace_id, message.invoice_id)
        except NotFoundError:
            invoice = None
        if invoice is not None:
            invoice_number = invoice.invoice_number
            business = self._store.get_business(invoice.workspace_id, invoice.business_id)
            if business is not None and business.notification_email:
                notify_to = business.notification_email
            if job.topic == EMAIL_INVOICE_TOPIC and self._store.mark_send_failed_if_sent(
                invoice.workspace_id, invoice.id
            ):
                logger.warning("invoice %s marked SEND_FAILED after job %s", invoice_number, job.job_id)

        recipient = message.email or (invoice.client_email if invoice is not None else None) or "unknown recipient"
        notify_send_failure(
            self._email_client,
            notify_to=notify_to,
            kind="invoice" if job.topic == EMAIL_INVOICE_TOPIC else "receipt",
            recipient_email=recipient,
            invoice_number=invoice_number,
            reason=reason,
        )


def run_workers(
    worker: Worker,
    *,
    topics: Iterable[str] = TOPICS,
    stop_event: threading.Event | None = None,
    install_signal_handlers: bool = True,
) -> None:
    """Run one consumer thread per topic until SIGINT/SIGTERM or the stop event is set."""
    stop = stop_event or threading.Event()

    if install_signal_handlers and threading.current_thread() is threading.main_thread():

        def _handle_signal(signum, _frame) -> None:
            logger.info("received signal %s; finishing in-flight jobs", signum)
            stop.set()

        signal.signal(signal.SIGINT, _handle_signal)
        signal.signal(signal.SIGTERM, _handle_signal)

    threads = [
        threading.Thread(
            target=worker.run_forever,
            args=([topic], stop),
            name=f"worker-{topic}",
            daemon=True,
        )
        for topic in topics
    ]
    for thread in threads:
        thread.start()
    try:
        while any(thread.is_alive() for thread in threads):
            for thread in threads:
                thread.join(timeout=0.5)
    finally:
        stop.set()
        for thread in threads:
            thread.join()
