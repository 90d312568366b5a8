from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone

from pydantic import ValidationError

from .email_client import EmailClient, mask_email, message_to_html
from .models import MAX_BATCH_PAYLOADS, InvoiceRenderPayload
from .render_client import RenderClient
from .render_payloads import build_invoice_payload
from .state_machine import REMINDER_STATUSES
from .store import BusinessRecord, ClientRecord, InvoiceRecord, InvoiceStore

logger = logging.getLogger(__name__)

DEFAULT_REMINDER_BATCH_SIZE = 50
REMINDER_FOOTER = "Please find the document attached."


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _start_of_day(value: date) -> datetime:
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


@dataclass(frozen=True)
class ReminderRunResult:
    sent: int = 0
    failed: int = 0
    eligible: int = 0
    skipped: int = 0
    evaluated: int = 0


@dataclass(frozen=True)
class DailyRunResult:
    run_at: datetime
    overdue_marked: int
    reminders: ReminderRunResult


@dataclass(frozen=True)
class _Candidate:
    invoice: InvoiceRecord
    client: ClientRecord
    business: BusinessRecord | None
    past_due: bool


def evaluate_reminder_eligibility(
    due_date: date,
    last_reminder_sent_at: datetime | None,
    client: ClientRecord,
    today: date,
) -> bool:
    """Decide whether a reminder is due today.

    Past-due invoices use the client's after-due interval, others the
    before-due interval; an unset interval or one below 1 day disables
    reminders in that direction. Without a previous reminder the invoice is
    eligible as soon as an interval applies.
    """
    is_past_due = due_date < today
    interval = (
        client.reminder_after_due_interval_days if is_past_due else client.reminder_before_due_interval_days
    )
    if interval is None or interval < 1:
        return False
    if last_reminder_sent_at is None:
        days_since_last = interval
    else:
        elapsed = _start_of_day(today) - _coerce_utc(last_reminder_sent_at)
        days_since_last = elapsed // timedelta(days=1)
    return days_since_last >= interval


def seconds_until_next_run(now: datetime | None = None) -> float:
    current = _coerce_utc(now or _now_utc())
    next_midnight = _start_of_day(current.date() + timedelta(days=1))
    return (next_midnight - current).total_seconds()


def _reminder_message(invoice_number: str, *, past_due: bool) -> str:
    state = "overdue" if past_due else "due soon"
    return (
        f"This is a friendly reminder that invoice {invoice_number} is {state}. "
        "Please arrange payment at your earliest convenience."
    )


class ReminderScheduler:
    def __init__(
        self,
        *,
        store: InvoiceStore,
        render_client: RenderClient | None,
        email_client: EmailClient,
        batch_size: int = DEFAULT_REMINDER_BATCH_SIZE,
    ) -> None:
        self._store = store
        self._render_client = render_client
        self._email_client = email_client
        self._batch_size = min(MAX_BATCH_PAYLOADS, max(1, batch_size))

    @property
    def batch_size(self) -> int:
        return self._batch_size

    def run_overdue_sweep(self, now: datetime | None = None) -> int:
        """Move SENT/VIEWED invoices due before today (UTC) to OVERDUE."""
        current = _coerce_utc(now or _now_utc())
        marked = self._store.bulk_mark_overdue(due_before=current.date())
        logger.info("overdue sweep marked %s invoice(s)", marked)
        return marked

    def run_reminders(self, now: datetime | None = None) -> ReminderRunResult:
        current = _coerce_utc(now or _now_utc())
        if self._render_client is None:
            logger.warning("rendering is not configured; skipping reminder run")
            return ReminderRunResult()

        today = current.date()
        evaluated = 0
        eligible: list[_Candidate] = []
        for invoice in self._store.list_invoices_by_status(REMINDER_STATUSES):
            client = self._store.get_client(invoice.workspace_id, invoice.client_id)
            if client is None:
                continue
            evaluated += 1
            if not evaluate_reminder_eligibility(invoice.due_date, invoice.last_reminder_sent_at, client, today):
                continue
            eligible.append(
                _Candidate(
                    invoice=invoice,
                    client=client,
                    business=self._store.get_business(invoice.workspace_id, invoice.business_id),
                    past_due=invoice.due_date < today,
                )
            )

        sent = 0
        failed = 0
        for start in range(0, len(eligible), self._batch_size):
            chunk_sent, chunk_failed = self._send_chunk(eligible[start : start + self._batch_size], current)
            sent += chunk_sent
            failed += chunk_failed

        result = ReminderRunResult(
            sent=sent,
            failed=failed,
            eligible=len(eligible),
            skipped=evaluated - len(eligible),
            evaluated=evaluated,
        )
        logger.info(
            "reminder run: evaluated=%s eligible=%s sent=%s failed=%s",
            result.evaluated,
            result.eligible,
            result.sent,
            result.failed,
        )
        return result

    def run_daily(self, now: datetime | None = None) -> DailyRunResult:
        current = _coerce_utc(now or _now_utc())
        overdue = self.run_overdue_sweep(current)
        return DailyRunResult(run_at=current, overdue_marked=overdue, reminders=self.run_reminders(current))

    def run_daily_loop(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            delay = seconds_until_next_run()
            logger.info("next reminder run in %.0f seconds", delay)
            if stop_event.wait(delay):
                break
            try:
                self.run_daily()
            except Exception:
                logger.exception("daily reminder run failed")

    def _send_chunk(self, chunk: list[_Candidate], now: datetime) -> tuple[int, int]:
        failed = 0
        renderable: list[_Candidate] = []
        payloads: list[InvoiceRenderPayload] = []
        for candidate in chunk:
            if candidate.business is None:
                failed += 1
                continue
            try:
                payloads.append(build_invoice_payload(candidate.invoice, candidate.client, candidate.business))
            except ValidationError as exc:
                logger.warning(
                    "invoice %s cannot be rendered (%s error(s)); leaving it out of the batch",
                    candidate.invoice.invoice_number,
                    exc.error_count(),
                )
                failed += 1
                continue
            renderable.append(candidate)
        if not renderable:
            return 0, failed

        try:
            documents = self._render_client.render_batch(payloads)
        except Exception:
            logger.exception("reminder batch render failed for %s invoice(s)", len(renderable))
            return 0, failed + len(renderable)

        sent = 0
        for index, candidate in enumerate(renderable):
            invoice = candidate.invoice
            document = documents[index] if index < len(documents) else None
            recipient = invoice.client_email or candidate.client.email
            if not document or not recipient:
                failed += 1
                continue
            try:
                self._email_client.send_with_attachment(
                    to=recipient,
                    subject=f"Reminder: Invoice {invoice.invoice_number}",
                    html=message_to_html(
                        _reminder_message(invoice.invoice_number, past_due=candidate.past_due),
                        footer=REMINDER_FOOTER,
                    ),
                    document=document,
                    filename=f"invoice-{invoice.invoice_number}.pdf",
                )
                self._store.set_last_reminder_sent_at(invoice.workspace_id, invoice.id, now)
            except Exception:
                logger.exception(
                    "reminder failed for invoice %s (%s)",
                    invoice.invoice_number,
                    mask_email(recipient),
                )
                failed += 1
                continue
            sent += 1
        return sent, failed
