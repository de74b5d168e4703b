from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from helpdesk_sync.core.config import settings
from helpdesk_sync.core.exceptions import HelpdeskSyncException
from helpdesk_sync.core.logging import setup_logging
from helpdesk_sync.integrations.freshservice.auto_sync import start_auto_sync, stop_auto_sync
from helpdesk_sync.integrations.freshservice.service import SyncOrchestrator
from helpdesk_sync.routers import sync


def create_app(orchestrator: SyncOrchestrator | None = None) -> FastAPI:
    setup_logging(settings.LOG_LEVEL)
    sync_orchestrator = orchestrator or SyncOrchestrator()

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        await start_auto_sync(sync_orchestrator)
        try:
            yield
        finally:
            if sync_orchestrator.is_running:
                sync_orchestrator.force_stop()
            await stop_auto_sync()

    app = FastAPI(title=settings.APP_NAME, lifespan=lifespan)
    app.state.sync_orchestrator = sync_orchestrator
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(sync.router, prefix="/api/sync", tags=["sync"])

    @app.get("/health", tags=["health"])
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.exception_handler(HelpdeskSyncException)
    async def handle_sync_exception(_: Request, exc: HelpdeskSyncException) -> JSONResponse:
        headers = exc.headers if getattr(exc, "headers", None) else None
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)

    return app


app = create_app()
