from __future__ import annotations

from datetime import date

from fastapi.testclient import TestClient

from _builders import FakeRenderClient, seed_invoice, seed_payment
from invoice_notify import api as api_module
from invoice_notify.jobs import InvoiceEmailJob, decode_job
from invoice_notify.main import create_app
from invoice_notify.state_machine import InvoiceStatus


def _client() -> TestClient:
    api_module.reset_runtime_state_for_tests()
    api_module.render_client = None
    return TestClient(create_app())


def _send_payload(email: str = "client@example.com") -> dict:
    return {"email": email, "subject": "Invoice INV-0001", "message": "Hello\nThanks"}


def test_send_invoice_marks_sent_and_enqueues_job() -> None:
    client = _client()
    seed_invoice(api_module.invoice_store)

    response = client.post("/api/v1/workspaces/1/invoices/1/send", json=_send_payload())

    assert response.status_code == 202
    data = response.json()
    assert data["message"] == "Invoice queued for delivery"
    assert data["status"] == "SENT"
    assert data["invoice_id"] == 10
    assert data["job_id"]
    assert api_module.invoice_store.get_invoice(1, 10).status == InvoiceStatus.SENT

    jobs = api_module.queue_broker.list_jobs("email-invoice")
    assert [value.job_id for value in jobs] == [data["job_id"]]
    message = decode_job(jobs[0].payload_json)
    assert isinstance(message, InvoiceEmailJob)
    assert message.email == "client@example.com"


def test_send_invoice_for_unknown_sequence_is_404() -> None:
    client = _client()

    response = client.post("/api/v1/workspaces/1/invoices/42/send", json=_send_payload())

    assert response.status_code == 404
    assert api_module.queue_broker.list_jobs("email-invoice") == []


def test_send_invoice_validates_body() -> None:
    client = _client()
    seed_invoice(api_module.invoice_store)

    blank_subject = client.post(
        "/api/v1/workspaces/1/invoices/1/send",
        json={"email": "client@example.com", "subject": "   "},
    )
    missing_email = client.post("/api/v1/workspaces/1/invoices/1/send", json={"subject": "Invoice"})

    assert blank_subject.status_code == 422
    assert missing_email.status_code == 422
    assert api_module.invoice_store.get_invoice(1, 10).status == InvoiceStatus.DRAFT


def test_mark_sent_endpoint_is_idempotent() -> None:
    client = _client()
    seed_invoice(api_module.invoice_store)

    first = client.patch("/api/v1/workspaces/1/invoices/10/send")
    second = client.patch("/api/v1/workspaces/1/invoices/10/send")

    assert first.status_code == 200
    assert second.status_code == 200
    assert second.json()["status"] == "SENT"
    assert second.json()["invoice_number"] == "INV-0001"


def test_mark_sent_rejects_invalid_transition_and_unknown_invoice() -> None:
    client = _client()
    seed_invoice(api_module.invoice_store, status=InvoiceStatus.PAID)

    conflict = client.patch("/api/v1/workspaces/1/invoices/10/send")
    missing = client.patch("/api/v1/workspaces/1/invoices/99/send")

    assert conflict.status_code == 409
    assert missing.status_code == 404


def test_send_receipt_accepts_empty_body() -> None:
    client = _client()
    seed_invoice(api_module.invoice_store, status=InvoiceStatus.SENT)
    seed_payment(api_module.invoice_store)

    response = client.post("/api/v1/workspaces/1/invoices/10/payments/500/receipt/send")
    missing = client.post("/api/v1/workspaces/1/invoices/10/payments/501/receipt/send", json={})

    assert response.status_code == 202
    assert response.json()["message"] == "Receipt queued for delivery"
    assert len(api_module.queue_broker.list_jobs("email-receipt")) == 1
    assert missing.status_code == 404


def test_outbox_relay_endpoint_reports_nothing_pending_after_dispatch() -> None:
    client = _client()
    seed_invoice(api_module.invoice_store)
    client.post("/api/v1/workspaces/1/invoices/1/send", json=_send_payload())

    response = client.post("/api/v1/outbox/relay")

    assert response.status_code == 200
    assert response.json() == {"relayed_count": 0}


def test_reminder_run_without_render_configuration_only_sweeps() -> None:
    client = _client()
    seed_invoice(api_module.invoice_store, status=InvoiceStatus.SENT, due_date=date(2026, 3, 1), after_due_days=1)

    response = client.post("/api/v1/reminders/run", json={"now_override": "2026-03-10T00:05:00Z"})

    assert response.status_code == 200
    data = response.json()
    assert data["overdue_marked"] == 1
    assert data["sent"] == 0
    assert data["eligible_count"] == 0


def test_reminder_run_sends_due_reminders() -> None:
    client = _client()
    api_module.render_client = FakeRenderClient()
    try:
        seed_invoice(api_module.invoice_store, status=InvoiceStatus.OVERDUE, due_date=date(2026, 3, 1), after_due_days=2)

        response = client.post(
            "/api/v1/reminders/run",
            json={"now_override": "2026-03-10T00:05:00Z", "skip_overdue_sweep": True},
        )
    finally:
        api_module.render_client = None

    assert response.status_code == 200
    data = response.json()
    assert data["overdue_marked"] == 0
    assert (data["evaluated_count"], data["eligible_count"], data["sent"], data["failed"]) == (1, 1, 1, 0)
    assert api_module.invoice_store.get_invoice(1, 10).last_reminder_sent_at is not None


def test_queue_listing_filters_by_status() -> None:
    client = _client()
    seed_invoice(api_module.invoice_store)
    client.post("/api/v1/workspaces/1/invoices/1/send", json=_send_payload())

    waiting = client.get("/api/v1/queues/email-invoice/jobs", params={"status": "waiting"})
    completed = client.get("/api/v1/queues/email-invoice/jobs", params={"status": "completed"})
    unknown = client.get("/api/v1/queues/email-sms/jobs")

    assert waiting.status_code == 200
    assert [value["status"] for value in waiting.json()["items"]] == ["waiting"]
    assert waiting.json()["items"][0]["attempts"] == 0
    assert completed.json()["items"] == []
    assert unknown.status_code == 404
