from __future__ import annotations

import base64
import io
import json
import socket
import urllib.error
from datetime import date
from unittest.mock import MagicMock, patch

import pytest

from invoice_notify.config import Settings
from invoice_notify.errors import ConfigurationError, UpstreamServiceError
from invoice_notify.models import (
    InvoiceRenderPayload,
    RenderClientSection,
    RenderCompanySection,
    RenderInvoiceSection,
    RenderLineItem,
)
from invoice_notify.render_client import HttpRenderClient, create_render_client


def _payload(number: str = "INV-0001") -> InvoiceRenderPayload:
    return InvoiceRenderPayload(
        invoice=RenderInvoiceSection(
            invoice_number=number,
            issue_date=date(2026, 2, 1),
            due_date=date(2026, 3, 1),
            currency="USD",
            subtotal=100.0,
            total=100.0,
        ),
        client=RenderClientSection(name="Acme", email="client@example.com"),
        company=RenderCompanySection(name="Studio North"),
        items=[RenderLineItem(name="Work", quantity=1, quantity_unit="hour", unit_price=100.0, total=100.0)],
    )


def _mock_response(body: bytes, status: int = 200) -> MagicMock:
    """Create a mock HTTP response that works as a context manager."""
    response = MagicMock()
    response.status = status
    response.read.return_value = body
    response.__enter__ = MagicMock(return_value=response)
    response.__exit__ = MagicMock(return_value=False)
    return response


def _client() -> HttpRenderClient:
    return HttpRenderClient(base_url="https://render.test/", secret="render-secret-001", timeout_seconds=12)


@patch("invoice_notify.render_client.urllib.request.urlopen")
def test_render_one_posts_camel_case_payload_with_secret_header(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response(b"%PDF-1.4 fake")

    document = _client().render_one(_payload())

    assert document == b"%PDF-1.4 fake"
    request_arg = mock_urlopen.call_args[0][0]
    assert request_arg.full_url == "https://render.test/generate-invoice"
    assert request_arg.get_header("X-render-service-key") == "render-secret-001"
    assert mock_urlopen.call_args[1]["timeout"] == 12
    sent_body = json.loads(request_arg.data.decode("utf-8"))
    assert sent_body["invoice"]["invoiceNumber"] == "INV-0001"
    assert sent_body["invoice"]["dueDate"] == "2026-03-01"
    assert sent_body["items"][0]["unitPrice"] == 100.0


@patch("invoice_notify.render_client.urllib.request.urlopen")
def test_render_batch_decodes_documents_in_order(mock_urlopen: MagicMock) -> None:
    encoded = [base64.b64encode(value).decode("ascii") for value in (b"first", b"second")]
    mock_urlopen.return_value = _mock_response(json.dumps({"documents": encoded}).encode("utf-8"))

    documents = _client().render_batch([_payload("INV-0001"), _payload("INV-0002")])

    assert documents == [b"first", b"second"]
    request_arg = mock_urlopen.call_args[0][0]
    assert request_arg.full_url == "https://render.test/generate-batch"
    sent_body = json.loads(request_arg.data.decode("utf-8"))
    assert [value["invoice"]["invoiceNumber"] for value in sent_body["payloads"]] == ["INV-0001", "INV-0002"]


@patch("invoice_notify.render_client.urllib.request.urlopen")
def test_render_batch_with_no_payloads_makes_no_request(mock_urlopen: MagicMock) -> None:
    assert _client().render_batch([]) == []
    mock_urlopen.assert_not_called()


@patch("invoice_notify.render_client.urllib.request.urlopen")
def test_render_batch_unreadable_body_raises_upstream_error(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response(b"<html>oops</html>")

    with pytest.raises(UpstreamServiceError):
        _client().render_batch([_payload()])


@patch("invoice_notify.render_client.urllib.request.urlopen")
def test_non_2xx_carries_status_and_body(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = urllib.error.HTTPError(
        url="https://render.test/generate-invoice",
        code=500,
        msg="Internal Server Error",
        hdrs=None,  # type: ignore[arg-type]
        fp=io.BytesIO(b'{"error": "Failed to generate PDF"}'),
    )

    with pytest.raises(UpstreamServiceError) as exc_info:
        _client().render_one(_payload())

    assert exc_info.value.status_code == 500
    assert "Failed to generate PDF" in (exc_info.value.body or "")


@patch("invoice_notify.render_client.urllib.request.urlopen")
def test_network_errors_and_timeouts_raise_upstream_error(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = urllib.error.URLError("connection refused")
    with pytest.raises(UpstreamServiceError):
        _client().render_one(_payload())

    mock_urlopen.side_effect = socket.timeout("timed out")
    with pytest.raises(UpstreamServiceError):
        _client().render_one(_payload())


def test_missing_configuration() -> None:
    with pytest.raises(ConfigurationError):
        HttpRenderClient(base_url="", secret="x")
    with pytest.raises(ConfigurationError):
        HttpRenderClient(base_url="https://render.test", secret="  ")
    assert create_render_client(Settings()) is None
    configured = create_render_client(Settings(render_service_url="https://render.test", render_service_secret="s"))
    assert isinstance(configured, HttpRenderClient)
