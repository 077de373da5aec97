from __future__ import annotations

import logging
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from erp_console.domain.models import UserProfile, now_utc

audit_logger = logging.getLogger("erp_console.audit")

WRITE_METHODS = {"POST", "PUT", "PATCH", "DELETE"}
AUDIT_CONTEXT_STATE_KEY = "_audit_context"
SKIPPED_PATHS = {"/healthz", "/readyz"}


def _status_outcome(status_code: int) -> str:
    if status_code >= 500:
        return "error"
    if status_code in {401, 403, 404}:
        return "denied"
    if status_code >= 400:
        return "rejected"
    return "success"


def should_audit_request(method: str, path: str) -> bool:
    return method in WRITE_METHODS and path not in SKIPPED_PATHS


def set_audit_context(
    request: Request,
    *,
    action: str | None = None,
    resource: str | None = None,
    detail: dict[str, Any] | None = None,
) -> None:
    context_raw = getattr(request.state, AUDIT_CONTEXT_STATE_KEY, {})
    context = dict(context_raw) if isinstance(context_raw, dict) else {}
    if action is not None:
        context["action"] = action
    if resource is not None:
        context["resource"] = resource
    if detail:
        previous = context.get("detail")
        context["detail"] = {**previous, **detail} if isinstance(previous, dict) else dict(detail)
    setattr(request.state, AUDIT_CONTEXT_STATE_KEY, context)


class AuditMiddleware(BaseHTTPMiddleware):
    """Logs one structured line per console write request."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        response = await call_next(request)
        method = request.method
        path = request.url.path
        if not should_audit_request(method, path):
            return response

        context_raw = getattr(request.state, AUDIT_CONTEXT_STATE_KEY, {})
        context = context_raw if isinstance(context_raw, dict) else {}
        profile = getattr(request.state, "profile", None)
        who: dict[str, Any] = {"tenant_id": None, "actor_id": None}
        if isinstance(profile, UserProfile):
            who = {"tenant_id": profile.tenant_id, "actor_id": profile.id}

        action = context.get("action") or f"{method}:{path}"
        resource = context.get("resource") or path
        detail = context.get("detail") if isinstance(context.get("detail"), dict) else {}
        audit_logger.info(
            "%s %s -> %s",
            action,
            resource,
            _status_outcome(response.status_code),
            extra={
                "audit": {
                    "who": who,
                    "when": now_utc().isoformat(),
                    "where": {"path": path, "query": request.url.query},
                    "result": {
                        "status_code": response.status_code,
                        "outcome": _status_outcome(response.status_code),
                    },
                    "detail": detail,
                }
            },
        )
        return response
