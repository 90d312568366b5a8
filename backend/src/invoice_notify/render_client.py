from __future__ import annotations

import base64
import binascii
import json
import logging
import socket
import urllib.error
import urllib.request
from typing import Protocol, Sequence

from .config import Settings
from .errors import ConfigurationError, UpstreamServiceError
from .models import BatchRenderResponse, InvoiceRenderPayload, ReceiptRenderPayload

logger = logging.getLogger(__name__)

RENDER_SECRET_HEADER = "X-Render-Service-Key"
DEFAULT_RENDER_TIMEOUT_SECONDS = 30


class RenderClient(Protocol):
    def render_one(self, payload: InvoiceRenderPayload) -> bytes: ...

    def render_receipt(self, payload: ReceiptRenderPayload) -> bytes: ...

    def render_batch(self, payloads: Sequence[InvoiceRenderPayload]) -> list[bytes]: ...


class HttpRenderClient:
    """Calls the document-rendering service over HTTP, authenticated by a shared secret header."""

    def __init__(
        self,
        *,
        base_url: str,
        secret: str,
        timeout_seconds: int = DEFAULT_RENDER_TIMEOUT_SECONDS,
    ) -> None:
        stripped_url = base_url.strip().rstrip("/")
        stripped_secret = secret.strip()
        if not stripped_url or not stripped_secret:
            raise ConfigurationError("RENDER_SERVICE_URL or RENDER_SERVICE_SECRET not configured")
        self._base_url = stripped_url
        self._secret = stripped_secret
        self._timeout_seconds = timeout_seconds

    def render_one(self, payload: InvoiceRenderPayload) -> bytes:
        return self._post("/generate-invoice", payload.to_wire())

    def render_receipt(self, payload: ReceiptRenderPayload) -> bytes:
        return self._post("/generate-receipt", payload.to_wire())

    def render_batch(self, payloads: Sequence[InvoiceRenderPayload]) -> list[bytes]:
        """Render N invoices in one request; the call either yields all documents or raises."""
        if not payloads:
            return []
        raw = self._post("/generate-batch", {"payloads": [value.to_wire() for value in payloads]})
        try:
            parsed = BatchRenderResponse.model_validate_json(raw)
            return [base64.b64decode(value, validate=True) for value in parsed.documents]
        except (ValueError, binascii.Error) as exc:
            raise UpstreamServiceError(f"render batch returned an unreadable body: {exc}") from exc

    def _post(self, path: str, body: dict) -> bytes:
        url = f"{self._base_url}{path}"
        request = urllib.request.Request(
            url,
            data=json.dumps(body).encode("utf-8"),
            headers={
                RENDER_SECRET_HEADER: self._secret,
                "Content-Type": "application/json",
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                return response.read()
        except urllib.error.HTTPError as exc:
            detail = _read_error_body(exc)
            logger.warning("render service returned HTTP %s for %s", exc.code, path)
            raise UpstreamServiceError(
                f"render service error: {exc.code} {detail}",
                status_code=exc.code,
                body=detail,
            ) from exc
        except urllib.error.URLError as exc:
            raise UpstreamServiceError(f"render service connection error: {exc.reason}") from exc
        except (socket.timeout, TimeoutError) as exc:
            raise UpstreamServiceError(f"render service timed out: {exc}") from exc


def _read_error_body(exc: urllib.error.HTTPError) -> str:
    try:
        raw = exc.read()
    except (OSError, AttributeError):
        return ""
    if not raw:
        return ""
    return raw.decode("utf-8", errors="replace")[:2000]


def create_render_client(settings: Settings) -> HttpRenderClient | None:
    """Return a configured client, or None when rendering is not configured."""
    if not settings.render_configured:
        return None
    return HttpRenderClient(
        base_url=settings.render_service_url,
        secret=settings.render_service_secret,
        timeout_seconds=settings.render_timeout_seconds,
    )
