from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from . import api
from .config import get_settings, runtime_secret_issues

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings = app.state.settings
    if settings.startup_probe_enabled:
        await api.runtime.remote.probe()
    try:
        yield
    finally:
        aclose = getattr(api.runtime.provider, "aclose", None)
        if aclose is not None:
            await aclose()


def create_app() -> FastAPI:
    settings = get_settings()
    secret_issues = runtime_secret_issues(settings)
    if secret_issues:
        if settings.runtime_secret_guard_mode == "enforce":
            raise RuntimeError(
                "runtime secret guard blocked startup: "
                + "; ".join(secret_issues)
                + ". Remediation: set TWILIO_ACCOUNT_SID and TWILIO_AUTH_TOKEN, "
                + "or set RUNTIME_SECRET_GUARD_MODE=warn for local development."
            )
        if settings.runtime_secret_guard_mode == "warn":
            for issue in secret_issues:
                logger.warning("runtime secret guard warning: %s", issue)
    if not settings.numbers:
        logger.warning("no WhatsApp numbers configured; every conversation will be shown as unrouted")

    app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=_lifespan)
    app.state.settings = settings
    app.include_router(api.router)
    return app


app = create_app()
