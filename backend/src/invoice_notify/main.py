from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .api import outbox_relay, router
from .config import get_settings, runtime_secret_issues

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(_app: FastAPI):
    # Publish entries left pending by a previous process before serving traffic.
    relayed = outbox_relay.relay_pending()
    if relayed:
        logger.info("startup outbox reconciliation relayed %s entry(ies)", relayed)
    yield


def create_app() -> FastAPI:
    settings = get_settings()
    secret_issues = runtime_secret_issues(settings)
    if secret_issues:
        if settings.runtime_secret_guard_mode == "enforce":
            raise RuntimeError(
                "runtime secret guard blocked startup: "
                + "; ".join(secret_issues)
                + ". Remediation: configure the rendering service and email provider secrets "
                + "or set RUNTIME_SECRET_GUARD_MODE=warn for local development."
            )
        if settings.runtime_secret_guard_mode == "warn":
            for issue in secret_issues:
                logger.warning("runtime secret guard warning: %s", issue)

    app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=_lifespan)
    app.include_router(router)
    return app


app = create_app()
