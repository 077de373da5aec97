from __future__ import annotations

import json

import httpx

from erp_console.api.guards import HOME_PATH, LOGIN_PATH, evaluate_guard
from erp_console.domain.permissions import ROLE_ADMIN, ROLE_USER
from erp_console.infra.backend import BackendClient
from erp_console.infra.storage import PROFILE_KEY, TOKEN_KEY, MemorySessionStore
from erp_console.services.session_service import SessionGate


def _gate(role: str | None) -> SessionGate:
    store = MemorySessionStore()
    if role is not None:
        store.write({TOKEN_KEY: "tok", PROFILE_KEY: json.dumps({"id": 1, "role": role})})
    backend = BackendClient("http://erp.test/api", transport=httpx.MockTransport(lambda r: httpx.Response(204)))
    gate = SessionGate(store, backend)
    gate.init()
    return gate


def test_unauthenticated_visitor_is_sent_to_login_with_return_path() -> None:
    decision = evaluate_guard(_gate(None))
    assert decision.allowed is False
    assert decision.redirect_to == LOGIN_PATH
    assert decision.remember_next is True

    admin_decision = evaluate_guard(_gate(None), required_role=ROLE_ADMIN)
    assert admin_decision.redirect_to == LOGIN_PATH


def test_role_guard_sends_other_roles_home() -> None:
    decision = evaluate_guard(_gate(ROLE_USER), required_role=ROLE_ADMIN)
    assert decision.allowed is False
    assert decision.redirect_to == HOME_PATH
    assert decision.remember_next is False


def test_authenticated_access() -> None:
    assert evaluate_guard(_gate(ROLE_USER)).allowed is True
    assert evaluate_guard(_gate(ROLE_ADMIN), required_role=ROLE_ADMIN).allowed is True
