from __future__ import annotations

import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.responses import RedirectResponse

from erp_console.api.guards import GuardRedirect
from erp_console.api.routers import ui
from erp_console.infra.audit import AuditMiddleware
from erp_console.infra.backend import BackendClient
from erp_console.infra.events import EventBus, event_bus
from erp_console.infra.storage import SessionStore, build_session_store, check_store_ready
from erp_console.services.session_service import SessionGate

LOG_LEVEL = os.getenv("ERP_LOG_LEVEL", "INFO")


def create_app(
    *,
    backend: BackendClient | None = None,
    store: SessionStore | None = None,
    gate: SessionGate | None = None,
    events: EventBus | None = None,
) -> FastAPI:
    backend_client = backend or BackendClient()
    session_store = store or build_session_store()
    session_gate = gate or SessionGate(session_store, backend_client, events=events or event_bus)

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        session_gate.init()
        try:
            yield
        finally:
            await session_gate.aclose()
            await backend_client.aclose()

    application = FastAPI(
        title="erp-console",
        description="Operator console for the multi-tenant ERP REST API.",
        version="0.1.0",
        lifespan=lifespan,
    )
    application.state.backend = backend_client
    application.state.session_store = session_store
    application.state.session_gate = session_gate

    application.add_middleware(AuditMiddleware)
    application.include_router(ui.router, tags=["ui"])

    @application.exception_handler(GuardRedirect)
    async def _guard_redirect(_request: Request, exc: GuardRedirect) -> RedirectResponse:
        return RedirectResponse(url=exc.location, status_code=status.HTTP_303_SEE_OTHER)

    @application.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @application.get("/readyz")
    def readyz() -> dict[str, object]:
        store_ok = check_store_ready(session_store)
        checks = {"session_store": "ok" if store_ok else "fail"}
        if not store_ok:
            raise HTTPException(
                status_code=503,
                detail={"status": "not_ready", "checks": checks},
            )
        return {"status": "ready", "checks": checks}

    return application


def configure_logging(level: str = LOG_LEVEL) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def build_app() -> FastAPI:
    """Entry point for ``uvicorn --factory erp_console.main:build_app``."""
    configure_logging()
    return create_app()
