from __future__ import annotations

from fastapi import Request

from erp_console.infra.backend import BackendClient
from erp_console.services.session_service import SessionGate


def get_session_gate(request: Request) -> SessionGate:
    return request.app.state.session_gate


def get_backend(request: Request) -> BackendClient:
    return request.app.state.backend
