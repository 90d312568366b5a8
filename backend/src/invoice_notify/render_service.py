from __future__ import annotations

import base64
import logging
from contextlib import asynccontextmanager
from typing import TypeVar

from fastapi import FastAPI, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from starlette.concurrency import run_in_threadpool

from .config import Settings, get_settings
from .errors import AuthenticationError, ConfigurationError, ValidationError
from .models import BatchRenderRequest, BatchRenderResponse, InvoiceRenderPayload, ReceiptRenderPayload
from .render_client import RENDER_SECRET_HEADER
from .render_engine import EnginePoolClosedError, EngineUnavailableError, RenderEnginePool
from .render_security import verify_render_secret

logger = logging.getLogger(__name__)

_ModelT = TypeVar("_ModelT", bound=BaseModel)


async def _parse_body(request: Request, model: type[_ModelT]) -> _ModelT:
    raw = await request.body()
    try:
        return model.model_validate_json(raw)
    except PydanticValidationError as exc:
        raise ValidationError(f"invalid payload: {exc.error_count()} error(s)") from exc


def _pdf_response(document: bytes, filename: str) -> Response:
    return Response(
        content=document,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


def create_render_app(settings: Settings | None = None, *, pool: RenderEnginePool | None = None) -> FastAPI:
    resolved = settings or get_settings()
    engine_pool = pool or RenderEnginePool(
        size=resolved.render_pool_size,
        acquire_timeout_seconds=resolved.render_pool_acquire_timeout_seconds,
    )

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        yield
        engine_pool.close()

    app = FastAPI(title=f"{resolved.app_name} Renderer", version="0.1.0", lifespan=lifespan)
    app.state.engine_pool = engine_pool

    @app.exception_handler(AuthenticationError)
    async def _unauthorized(_request: Request, exc: AuthenticationError) -> JSONResponse:
        logger.warning("render request rejected: %s", exc)
        return JSONResponse(status_code=status.HTTP_401_UNAUTHORIZED, content={"detail": "unauthorized"})

    @app.exception_handler(ValidationError)
    async def _bad_request(_request: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})

    @app.exception_handler(ConfigurationError)
    async def _misconfigured(_request: Request, exc: ConfigurationError) -> JSONResponse:
        logger.error("render request rejected: %s", exc)
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"detail": str(exc)})

    def _require_secret(request: Request) -> None:
        verification = verify_render_secret(
            configured_secret=resolved.render_service_secret,
            provided=request.headers.get(RENDER_SECRET_HEADER),
        )
        if verification.verified:
            return
        if verification.reason == "secret_not_configured":
            raise ConfigurationError("render service secret not configured")
        raise AuthenticationError(verification.reason or "unauthorized")

    async def _render(fn, *args):
        try:
            return await run_in_threadpool(fn, *args)
        except EngineUnavailableError as exc:
            raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, str(exc)) from exc
        except EnginePoolClosedError as exc:
            raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, "render service is shutting down") from exc
        except Exception as exc:
            logger.exception("document rendering failed")
            raise HTTPException(status.HTTP_500_INTERNAL_SERVER_ERROR, "failed to render document") from exc

    def _render_invoice(payload: InvoiceRenderPayload) -> bytes:
        with engine_pool.engine() as engine:
            return engine.render_invoice(payload)

    def _render_batch(payloads: list[InvoiceRenderPayload]) -> list[bytes]:
        with engine_pool.engine() as engine:
            return [engine.render_invoice(value) for value in payloads]

    def _render_receipt(payload: ReceiptRenderPayload) -> bytes:
        with engine_pool.engine() as engine:
            return engine.render_receipt(payload)

    @app.get("/health")
    def health() -> dict[str, object]:
        return {"status": "ok", "pool_size": engine_pool.size, "in_use": engine_pool.in_use}

    @app.post("/generate-invoice")
    async def generate_invoice(request: Request) -> Response:
        _require_secret(request)
        payload = await _parse_body(request, InvoiceRenderPayload)
        document = await _render(_render_invoice, payload)
        return _pdf_response(document, f"invoice-{payload.invoice.invoice_number}.pdf")

    @app.post("/generate-batch")
    async def generate_batch(request: Request) -> dict:
        _require_secret(request)
        batch = await _parse_body(request, BatchRenderRequest)
        documents = await _render(_render_batch, batch.payloads)
        logger.info("rendered batch of %s invoice(s)", len(documents))
        return BatchRenderResponse(
            documents=[base64.b64encode(value).decode("ascii") for value in documents]
        ).to_wire()

    @app.post("/generate-receipt")
    async def generate_receipt(request: Request) -> Response:
        _require_secret(request)
        payload = await _parse_body(request, ReceiptRenderPayload)
        document = await _render(_render_receipt, payload)
        return _pdf_response(document, f"receipt-{payload.invoice.invoice_number}-{payload.payment.id}.pdf")

    return app


app = create_render_app()
