from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Callable, Iterator

from .models import InvoiceRenderPayload, ReceiptRenderPayload
from .pdf_renderer import render_invoice_pdf, render_receipt_pdf

logger = logging.getLogger(__name__)


class EnginePoolClosedError(RuntimeError):
    pass


class EngineUnavailableError(RuntimeError):
    """No engine became free within the acquire timeout."""


class RenderEngine:
    """One document-rendering engine; a pool hands each out to a single request at a time."""

    def __init__(
        self,
        engine_id: int,
        *,
        invoice_renderer: Callable[[InvoiceRenderPayload], bytes] = render_invoice_pdf,
        receipt_renderer: Callable[[ReceiptRenderPayload], bytes] = render_receipt_pdf,
    ) -> None:
        self.engine_id = engine_id
        self.rendered_count = 0
        self._invoice_renderer = invoice_renderer
        self._receipt_renderer = receipt_renderer
        self.closed = False

    def render_invoice(self, payload: InvoiceRenderPayload) -> bytes:
        self.rendered_count += 1
        return self._invoice_renderer(payload)

    def render_receipt(self, payload: ReceiptRenderPayload) -> bytes:
        self.rendered_count += 1
        return self._receipt_renderer(payload)

    def close(self) -> None:
        self.closed = True


class RenderEnginePool:
    def __init__(
        self,
        *,
        size: int = 2,
        acquire_timeout_seconds: float = 30.0,
        engine_factory: Callable[[int], RenderEngine] = RenderEngine,
    ) -> None:
        if size < 1:
            raise ValueError("render engine pool size must be at least 1")
        self.size = size
        self._acquire_timeout_seconds = acquire_timeout_seconds
        self._engine_factory = engine_factory
        self._condition = threading.Condition()
        self._idle: list[RenderEngine] = []
        self._created = 0
        self._in_use = 0
        self._closed = False

    @property
    def in_use(self) -> int:
        with self._condition:
            return self._in_use

    def acquire(self, timeout: float | None = None) -> RenderEngine:
        wait_seconds = self._acquire_timeout_seconds if timeout is None else timeout
        with self._condition:
            ready = self._condition.wait_for(
                lambda: self._closed or self._idle or self._created < self.size,
                timeout=wait_seconds,
            )
            if self._closed:
                raise EnginePoolClosedError("render engine pool is closed")
            if not ready:
                raise EngineUnavailableError(f"no render engine free after {wait_seconds:.1f}s")
            if self._idle:
                engine = self._idle.pop()
            else:
                self._created += 1
                engine = self._engine_factory(self._created)
                logger.info("started render engine %s of %s", engine.engine_id, self.size)
            self._in_use += 1
            return engine

    def release(self, engine: RenderEngine) -> None:
        with self._condition:
            self._in_use -= 1
            if self._closed:
                engine.close()
            else:
                self._idle.append(engine)
            self._condition.notify()

    @contextmanager
    def engine(self, timeout: float | None = None) -> Iterator[RenderEngine]:
        engine = self.acquire(timeout)
        try:
            yield engine
        finally:
            self.release(engine)

    def close(self) -> None:
        """Stop handing out engines and close the idle ones; busy engines close on release."""
        with self._condition:
            if self._closed:
                return
            self._closed = True
            idle, self._idle = self._idle, []
            self._condition.notify_all()
        for engine in idle:
            engine.close()
        logger.info("render engine pool closed")
