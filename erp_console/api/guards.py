from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Annotated
from urllib.parse import quote

from fastapi import Depends, Request

from erp_console.api.deps import get_session_gate
from erp_console.services.session_service import SessionGate

LOGIN_PATH = "/ui/login"
HOME_PATH = "/ui/dashboard"


@dataclass(frozen=True)
class GuardDecision:
    allowed: bool
    redirect_to: str | None = None
    remember_next: bool = False


class GuardRedirect(Exception):
    def __init__(self, location: str) -> None:
        super().__init__(location)
        self.location = location


def evaluate_guard(gate: SessionGate, *, required_role: str | None = None) -> GuardDecision:
    if not gate.is_authenticated():
        return GuardDecision(allowed=False, redirect_to=LOGIN_PATH, remember_next=True)
    if required_role is not None and not gate.has_role(required_role):
        return GuardDecision(allowed=False, redirect_to=HOME_PATH)
    return GuardDecision(allowed=True)


def login_location(request: Request, return_to: str | None = None) -> str:
    requested_path = return_to or request.url.path
    if return_to is None and request.url.query:
        requested_path = f"{requested_path}?{request.url.query}"
    return f"{LOGIN_PATH}?next={quote(requested_path, safe='')}"


def _enforce(request: Request, gate: SessionGate, required_role: str | None) -> SessionGate:
    decision = evaluate_guard(gate, required_role=required_role)
    if not decision.allowed:
        if decision.remember_next:
            raise GuardRedirect(login_location(request))
        raise GuardRedirect(decision.redirect_to or HOME_PATH)
    request.state.profile = gate.profile
    return gate


def require_session(
    request: Request,
    gate: Annotated[SessionGate, Depends(get_session_gate)],
) -> SessionGate:
    return _enforce(request, gate, None)


def require_role(role: str) -> Callable[[Request, SessionGate], SessionGate]:
    def _checker(
        request: Request,
        gate: Annotated[SessionGate, Depends(get_session_gate)],
    ) -> SessionGate:
        return _enforce(request, gate, role)

    return _checker
