from __future__ import annotations

import base64
import html
import json
import logging
import re
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Literal, Protocol

from .config import Settings
from .errors import ConfigurationError, RecipientValidationError, UpstreamServiceError

logger = logging.getLogger(__name__)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
# Provider statuses that mean the request itself is unacceptable, not that the provider is down.
_VALIDATION_STATUSES = {400, 403, 422}


@dataclass(frozen=True)
class EmailAttachment:
    filename: str
    content: bytes


@dataclass(frozen=True)
class SentEmail:
    to: str
    subject: str
    html: str
    attachments: tuple[EmailAttachment, ...] = ()
    provider_message_id: str | None = None
    sent_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class EmailClient(Protocol):
    def send_with_attachment(
        self,
        *,
        to: str,
        subject: str,
        html: str,
        document: bytes,
        filename: str,
    ) -> SentEmail: ...

    def send_plain(self, *, to: str, subject: str, html: str) -> SentEmail: ...


def validate_recipient(address: str) -> str:
    normalized = address.strip()
    if not _EMAIL_RE.match(normalized):
        raise RecipientValidationError(address, "malformed address")
    return normalized


def mask_email(address: str) -> str:
    normalized = address.strip()
    if "@" not in normalized:
        return "***"
    local, domain = normalized.split("@", 1)
    if len(local) <= 1:
        return f"*@{domain}"
    return f"{local[0]}***@{domain}"


def message_to_html(message: str, *, heading: str | None = None, footer: str) -> str:
    """Wrap a plain-text message in the email layout; one paragraph per line."""
    paragraphs = "".join(f"<p>{html.escape(line)}</p>" for line in message.split("\n"))
    heading_html = f'<h2 style="color: #333;">{html.escape(heading)}</h2>' if heading else ""
    return (
        '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">'
        f"{heading_html}"
        f'<div style="margin: 20px 0; line-height: 1.6; color: #666;">{paragraphs}</div>'
        f'<p style="margin-top: 30px; color: #999; font-size: 12px;">{html.escape(footer)}</p>'
        "</div>"
    )


class StubEmailClient:
    """Records messages instead of delivering them.

    Recipients containing "bounce" are rejected as invalid and recipients
    containing "fail" raise a transient provider error.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self.sent: list[SentEmail] = []

    def reset(self) -> None:
        with self._lock:
            self.sent.clear()

    def send_with_attachment(
        self,
        *,
        to: str,
        subject: str,
        html: str,
        document: bytes,
        filename: str,
    ) -> SentEmail:
        return self._record(to, subject, html, (EmailAttachment(filename=filename, content=document),))

    def send_plain(self, *, to: str, subject: str, html: str) -> SentEmail:
        return self._record(to, subject, html, ())

    def _record(self, to: str, subject: str, body: str, attachments: tuple[EmailAttachment, ...]) -> SentEmail:
        recipient = validate_recipient(to)
        lowered = recipient.lower()
        if "bounce" in lowered:
            raise RecipientValidationError(recipient, "stub provider rejected recipient")
        if "fail" in lowered:
            raise UpstreamServiceError("stub provider forced failure", status_code=503)
        with self._lock:
            message = SentEmail(
                to=recipient,
                subject=subject,
                html=body,
                attachments=attachments,
                provider_message_id=f"stub-{len(self.sent) + 1}",
            )
            self.sent.append(message)
        return message


class HttpEmailClient:
    """Delivers email through a Resend-compatible HTTP API."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        from_email: str,
        timeout_seconds: int = 30,
    ) -> None:
        stripped_url = base_url.strip().rstrip("/")
        stripped_key = api_key.strip()
        if not stripped_key:
            raise ConfigurationError("EMAIL_API_KEY environment variable is not set")
        if not stripped_url:
            raise ConfigurationError("EMAIL_API_BASE_URL must not be empty")
        self._base_url = stripped_url
        self._api_key = stripped_key
        self._from_email = from_email
        self._timeout_seconds = timeout_seconds

    def send_with_attachment(
        self,
        *,
        to: str,
        subject: str,
        html: str,
        document: bytes,
        filename: str,
    ) -> SentEmail:
        attachment = EmailAttachment(filename=filename, content=document)
        return self._send(to, subject, html, (attachment,))

    def send_plain(self, *, to: str, subject: str, html: str) -> SentEmail:
        return self._send(to, subject, html, ())

    def _send(self, to: str, subject: str, body: str, attachments: tuple[EmailAttachment, ...]) -> SentEmail:
        recipient = validate_recipient(to)
        request_payload: dict[str, object] = {
            "from": self._from_email,
            "to": [recipient],
            "subject": subject,
            "html": body,
        }
        if attachments:
            request_payload["attachments"] = [
                {
                    "filename": value.filename,
                    "content": base64.b64encode(value.content).decode("ascii"),
                }
                for value in attachments
            ]
        response = self._post(recipient, request_payload)
        message_id = response.get("id")
        return SentEmail(
            to=recipient,
            subject=subject,
            html=body,
            attachments=attachments,
            provider_message_id=message_id if isinstance(message_id, str) else None,
        )

    def _post(self, recipient: str, body: dict[str, object]) -> dict[str, object]:
        request = urllib.request.Request(
            f"{self._base_url}/emails",
            data=json.dumps(body).encode("utf-8"),
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                raw = response.read()
        except urllib.error.HTTPError as exc:
            detail = _error_detail(exc)
            if exc.code in _VALIDATION_STATUSES:
                raise RecipientValidationError(recipient, f"HTTP {exc.code}: {detail}") from exc
            raise UpstreamServiceError(
                f"email provider error: HTTP {exc.code}",
                status_code=exc.code,
                body=detail,
            ) from exc
        except urllib.error.URLError as exc:
            raise UpstreamServiceError(f"email provider connection error: {exc.reason}") from exc
        except (socket.timeout, TimeoutError) as exc:
            raise UpstreamServiceError(f"email provider timed out: {exc}") from exc
        if not raw:
            return {}
        try:
            parsed = json.loads(raw.decode("utf-8"))
        except ValueError:
            return {}
        return parsed if isinstance(parsed, dict) else {}


def _error_detail(exc: urllib.error.HTTPError) -> str:
    try:
        raw = exc.read()
    except OSError:
        return exc.reason if isinstance(exc.reason, str) else ""
    if not raw:
        return exc.reason if isinstance(exc.reason, str) else ""
    text = raw.decode("utf-8", errors="replace")
    try:
        parsed = json.loads(text)
    except ValueError:
        return text[:500]
    if isinstance(parsed, dict) and isinstance(parsed.get("message"), str):
        return parsed["message"]
    return text[:500]


def notify_send_failure(
    email_client: EmailClient,
    *,
    notify_to: str | None,
    kind: Literal["invoice", "receipt"],
    recipient_email: str,
    invoice_number: str | None = None,
    reason: str | None = None,
) -> bool:
    """Tell the workspace operator that a send failed. Never raises."""
    if not notify_to:
        logger.warning("no operator address configured; skipping %s send-failure notification", kind)
        return False
    if kind == "invoice":
        subject = "Invoice could not be sent"
        context = f"The invoice{f' {invoice_number}' if invoice_number else ''} could not be sent"
    else:
        subject = "Payment receipt could not be sent"
        context = f"The payment receipt{f' for invoice {invoice_number}' if invoice_number else ''} could not be sent"
    lines = [
        f"{context} to {recipient_email} because the email address appears to be invalid or could not be delivered.",
        "Please check the recipient address and try again.",
    ]
    if reason:
        lines.append(f"Details: {reason}")
    try:
        email_client.send_plain(
            to=notify_to,
            subject=subject,
            html=message_to_html("\n".join(lines), heading="Email delivery failed", footer="Invoice notifications"),
        )
    except Exception:
        logger.exception("failed to send %s send-failure notification to %s", kind, mask_email(notify_to))
        return False
    return True


def create_email_client(settings: Settings) -> EmailClient:
    if settings.email_sender_type == "http":
        return HttpEmailClient(
            base_url=settings.email_api_base_url,
            api_key=settings.email_api_key,
            from_email=settings.email_from,
            timeout_seconds=settings.email_timeout_seconds,
        )
    return StubEmailClient()
