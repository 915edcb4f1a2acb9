from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api import router
from .config import Settings, get_settings, reminder_schedule_issues, runtime_config_issues
from .runtime import ReminderRuntime, build_runtime

logger = logging.getLogger(__name__)


def create_app(settings: Settings | None = None, runtime: ReminderRuntime | None = None) -> FastAPI:
    settings = settings or (runtime.settings if runtime is not None else get_settings())
    schedule_issues = reminder_schedule_issues(settings)
    if schedule_issues:
        raise RuntimeError("invalid reminder schedule configuration: " + "; ".join(schedule_issues))

    config_issues = runtime_config_issues(settings)
    if config_issues:
        if settings.runtime_config_guard_mode == "enforce":
            raise RuntimeError(
                "runtime config guard blocked startup: "
                + "; ".join(config_issues)
                + ". Remediation: set the missing variables or switch the affected backend "
                + "(WORKFLOW_TRIGGER_BACKEND, NOTIFIER_SENDER_TYPE, *_STORE_BACKEND)."
            )
        if settings.runtime_config_guard_mode == "warn":
            for issue in config_issues:
                logger.warning("runtime config guard warning: %s", issue)

    runtime = runtime or build_runtime(settings)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        runtime.start()
        try:
            yield
        finally:
            runtime.stop()

    app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
    app.state.runtime = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_allowed_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router, prefix=settings.api_prefix.rstrip("/"))
    return app


app = create_app()
