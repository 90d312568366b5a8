from __future__ import annotations

import json

import pytest
from pydantic import ValidationError

from invoice_notify.errors import JobDecodeError
from invoice_notify.jobs import (
    EMAIL_INVOICE_TOPIC,
    EMAIL_RECEIPT_TOPIC,
    InvoiceEmailJob,
    ReceiptEmailJob,
    decode_job,
    encode_job,
    topic_for,
)


def test_invoice_job_encodes_kind_and_version() -> None:
    job = InvoiceEmailJob(
        sequence=3,
        invoice_id=42,
        workspace_id=1,
        email=" client@example.com ",
        subject="Invoice INV-0003",
        message="Hi there",
    )
    raw = json.loads(encode_job(job))
    assert raw["kind"] == "email-invoice"
    assert raw["version"] == 1
    assert raw["email"] == "client@example.com"
    assert topic_for(job) == EMAIL_INVOICE_TOPIC


def test_decode_dispatches_on_kind() -> None:
    decoded = decode_job(
        json.dumps(
            {
                "kind": "email-receipt",
                "version": 1,
                "payment_id": 9,
                "invoice_id": 42,
                "workspace_id": 1,
                "subject": "   ",
            }
        )
    )
    assert isinstance(decoded, ReceiptEmailJob)
    assert decoded.subject is None
    assert topic_for(decoded) == EMAIL_RECEIPT_TOPIC


@pytest.mark.parametrize(
    "raw",
    [
        '{"kind": "email-sms", "version": 1}',
        '{"kind": "email-invoice", "version": 2, "sequence": 1, "invoice_id": 1, "workspace_id": 1,'
        ' "email": "a@b.co", "subject": "x"}',
        "not json",
    ],
)
def test_decode_rejects_unknown_kinds_versions_and_garbage(raw: str) -> None:
    with pytest.raises(JobDecodeError):
        decode_job(raw)


def test_invoice_job_requires_a_subject() -> None:
    with pytest.raises(ValidationError):
        InvoiceEmailJob(sequence=1, invoice_id=1, workspace_id=1, email="a@b.co", subject="  ")
