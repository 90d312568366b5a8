from __future__ import annotations

import logging

from .errors import NotFoundError
from .jobs import InvoiceEmailJob, ReceiptEmailJob, encode_job, topic_for
from .models import DispatchAcknowledgement
from .queue_broker import QueueBroker, publish_job
from .state_machine import InvoiceStatus, dispatch_target
from .store import InvoiceRecord, InvoiceStore

logger = logging.getLogger(__name__)

DEFAULT_RELAY_LIMIT = 100


class OutboxRelay:
    """Publishes outbox entries that were written with a status change but not yet queued."""

    def __init__(self, store: InvoiceStore, broker: QueueBroker) -> None:
        self._store = store
        self._broker = broker

    def relay_pending(self, limit: int = DEFAULT_RELAY_LIMIT) -> int:
        relayed = 0
        claimed = self._store.claim_pending_outbox(limit=limit)
        for index, entry in enumerate(claimed):
            try:
                job = self._broker.enqueue(entry.topic, entry.payload_json)
            except Exception:
                for value in claimed[index:]:
                    self._store.release_outbox_claim(value.outbox_id)
                raise
            self._store.mark_outbox_relayed(entry.outbox_id, job_id=job.job_id)
            relayed += 1
            logger.info(
                "relayed outbox entry %s for invoice %s as job %s",
                entry.outbox_id,
                entry.invoice_id,
                job.job_id,
            )
        return relayed


class SendDispatcher:
    def __init__(self, store: InvoiceStore, broker: QueueBroker, relay: OutboxRelay | None = None) -> None:
        self._store = store
        self._broker = broker
        self._relay = relay or OutboxRelay(store, broker)

    def dispatch_invoice_send(
        self,
        workspace_id: int,
        invoice_sequence: int,
        recipient_email: str,
        subject: str,
        message: str = "",
    ) -> DispatchAcknowledgement:
        """Mark the invoice sent and queue its email; delivery happens asynchronously."""
        invoice = self._store.get_invoice_by_sequence(workspace_id, invoice_sequence)
        if self._store.get_client(workspace_id, invoice.client_id) is None:
            raise NotFoundError("client", f"invoice={invoice.id}")

        job = InvoiceEmailJob(
            sequence=invoice.sequence,
            invoice_id=invoice.id,
            workspace_id=workspace_id,
            email=recipient_email,
            subject=subject,
            message=message,
        )
        updated, entry = self._store.mark_sent_with_outbox(
            workspace_id,
            invoice.id,
            target=dispatch_target(invoice.status),
            topic=topic_for(job),
            payload_json=encode_job(job),
        )
        job_id = self._relay_now(entry.outbox_id)
        return DispatchAcknowledgement(
            message="Invoice queued for delivery",
            workspace_id=workspace_id,
            invoice_id=updated.id,
            status=updated.status,
            outbox_id=entry.outbox_id,
            job_id=job_id,
        )

    def confirm_invoice_sent(self, workspace_id: int, invoice_id: int) -> InvoiceRecord:
        current = self._store.get_invoice(workspace_id, invoice_id)
        if current.status == InvoiceStatus.SENT:
            return current
        return self._store.transition_status(workspace_id, invoice_id, InvoiceStatus.SENT)

    def dispatch_receipt_send(
        self,
        workspace_id: int,
        invoice_id: int,
        payment_id: int,
        email: str | None = None,
        subject: str | None = None,
        message: str | None = None,
    ) -> DispatchAcknowledgement:
        invoice = self._store.get_invoice(workspace_id, invoice_id)
        self._store.get_payment(workspace_id, invoice_id, payment_id)
        job = ReceiptEmailJob(
            payment_id=payment_id,
            invoice_id=invoice_id,
            workspace_id=workspace_id,
            email=email,
            subject=subject,
            message=message,
        )
        queued = publish_job(self._broker, job)
        return DispatchAcknowledgement(
            message="Receipt queued for delivery",
            workspace_id=workspace_id,
            invoice_id=invoice.id,
            status=invoice.status,
            job_id=queued.job_id,
        )

    def _relay_now(self, outbox_id: int) -> str | None:
        try:
            self._relay.relay_pending()
        except Exception:
            logger.exception("outbox relay failed; entry %s stays pending for reconciliation", outbox_id)
            return None
        return self._store.get_outbox_entry(outbox_id).job_id
