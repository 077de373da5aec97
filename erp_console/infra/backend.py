from __future__ import annotations

import logging
import os
from typing import Any

import httpx
from pydantic import ValidationError

from erp_console.domain.models import ListPage, ListQuery, LoginRequest, LoginResponse, RegisterRequest

logger = logging.getLogger(__name__)

API_URL = os.getenv("ERP_API_URL", "http://localhost:3000/api")
_timeout_raw = os.getenv("ERP_API_TIMEOUT_SECONDS")
API_TIMEOUT_SECONDS: float | None = float(_timeout_raw) if _timeout_raw else None


class BackendError(Exception):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class UnauthorizedError(BackendError):
    pass


def auth_headers(token: str | None) -> dict[str, str]:
    if not token:
        return {}
    return {"Authorization": f"Bearer {token}"}


def _response_message(response: httpx.Response, fallback: str) -> str:
    try:
        body = response.json()
    except ValueError:
        return fallback
    if isinstance(body, dict):
        for key in ("message", "detail"):
            value = body.get(key)
            if isinstance(value, str) and value:
                return value
    return fallback


def raise_for_backend_status(response: httpx.Response, fallback: str) -> None:
    if response.is_success:
        return
    message = _response_message(response, fallback)
    if response.status_code == httpx.codes.UNAUTHORIZED:
        raise UnauthorizedError(message, response.status_code)
    raise BackendError(message, response.status_code)


def normalize_list_payload(payload: Any, query: ListQuery) -> ListPage:
    if isinstance(payload, list):
        rows = [item for item in payload if isinstance(item, dict)]
        return ListPage(data=rows, total=len(rows), page=query.page, limit=query.limit)
    if isinstance(payload, dict):
        raw_rows = payload.get("data")
        rows = [item for item in raw_rows if isinstance(item, dict)] if isinstance(raw_rows, list) else []
        raw_total = payload.get("total")
        total = raw_total if isinstance(raw_total, int) and raw_total >= 0 else len(rows)
        return ListPage(data=rows, total=total, page=query.page, limit=query.limit)
    raise BackendError("unexpected list response shape")


class BackendClient:
    """Thin async client for the ERP REST API.

    Tokens are passed per call; callers read them through the session gate so
    they never observe a stale credential during a login/logout transition.
    """

    def __init__(
        self,
        base_url: str = API_URL,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float | None = API_TIMEOUT_SECONDS,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/") + "/",
            transport=transport,
            timeout=timeout,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        fallback: str,
        token: str | None = None,
        json: Any = None,
        params: dict[str, Any] | None = None,
    ) -> httpx.Response:
        try:
            response = await self._client.request(
                method,
                path.lstrip("/"),
                json=json,
                params=params,
                headers=auth_headers(token),
            )
        except httpx.HTTPError as exc:
            logger.warning("%s %s failed: %s", method, path, exc)
            raise BackendError(fallback) from exc
        raise_for_backend_status(response, fallback)
        return response

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise BackendError("backend returned a non-JSON body", response.status_code) from exc

    async def login(self, email: str, password: str) -> LoginResponse:
        response = await self._request(
            "POST",
            "/auth/login",
            json=LoginRequest(email=email, password=password).model_dump(),
            fallback="Login failed.",
        )
        try:
            return LoginResponse.model_validate(self._json(response))
        except ValidationError as exc:
            raise BackendError("unexpected login response", response.status_code) from exc

    async def logout(self, token: str) -> None:
        await self._request("POST", "/auth/logout", token=token, fallback="Logout failed.")

    async def register(self, payload: RegisterRequest) -> str:
        response = await self._request(
            "POST",
            "/auth/register",
            json=payload.model_dump(by_alias=True),
            fallback="Registration failed.",
        )
        body = self._json(response)
        if isinstance(body, dict) and isinstance(body.get("message"), str):
            return body["message"]
        return "Registration received."

    async def fetch_page(self, resource: str, query: ListQuery, *, token: str | None) -> ListPage:
        response = await self._request(
            "GET",
            f"/{resource}",
            token=token,
            params=query.to_params(),
            fallback=f"Unable to load {resource}.",
        )
        return normalize_list_payload(self._json(response), query)

    async def get(self, resource: str, entity_id: str, *, token: str | None) -> dict[str, Any]:
        response = await self._request(
            "GET",
            f"/{resource}/{entity_id}",
            token=token,
            fallback=f"Unable to load {resource} record.",
        )
        body = self._json(response)
        if not isinstance(body, dict):
            raise BackendError(f"unexpected {resource} record shape", response.status_code)
        return body

    async def create(self, resource: str, payload: dict[str, Any], *, token: str | None) -> Any:
        response = await self._request(
            "POST",
            f"/{resource}",
            token=token,
            json=payload,
            fallback=f"Unable to create {resource} record.",
        )
        return self._json(response)

    async def update(
        self,
        resource: str,
        entity_id: str,
        payload: dict[str, Any],
        *,
        token: str | None,
    ) -> Any:
        response = await self._request(
            "PUT",
            f"/{resource}/{entity_id}",
            token=token,
            json=payload,
            fallback=f"Unable to update {resource} record.",
        )
        return self._json(response)

    async def delete(self, resource: str, entity_id: str, *, token: str | None) -> None:
        await self._request(
            "DELETE",
            f"/{resource}/{entity_id}",
            token=token,
            fallback=f"Unable to delete {resource} record.",
        )

    async def get_json(self, path: str, *, token: str | None) -> Any:
        response = await self._request("GET", path, token=token, fallback=f"Unable to load {path}.")
        return self._json(response)
