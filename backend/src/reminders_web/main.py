from __future__ import annotations

import logging

from fastapi import FastAPI

from .api import router
from .config import Settings, get_settings, runtime_secret_issues
from .engine import ReminderEngine, build_engine

logger = logging.getLogger(__name__)


def create_app(settings: Settings | None = None, engine: ReminderEngine | None = None) -> FastAPI:
    settings = settings or get_settings()
    secret_issues = runtime_secret_issues(settings)
    if secret_issues:
        if settings.runtime_secret_guard_mode == "enforce":
            raise RuntimeError(
                "runtime secret guard blocked startup: "
                + "; ".join(secret_issues)
                + ". Remediation: switch unused providers back to the stub senders "
                + "or set the required provider secrets."
            )
        if settings.runtime_secret_guard_mode == "warn":
            for issue in secret_issues:
                logger.warning("runtime secret guard warning: %s", issue)

    app = FastAPI(title=settings.app_name, version="0.1.0")
    app.state.engine = engine or build_engine(settings)

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "store_backend": settings.store_backend}

    app.include_router(router, prefix=settings.api_prefix)
    return app
