from __future__ import annotations

import asyncio
import json
import logging
from typing import Protocol

from pydantic import ValidationError

from erp_console.domain.models import LoginResponse, UserProfile
from erp_console.domain.permissions import ROLE_ADMIN, has_role
from erp_console.domain.state_machine import SessionState, can_transition
from erp_console.infra.backend import BackendError, auth_headers
from erp_console.infra.events import SESSION_LOGIN, SESSION_LOGOUT, EventBus
from erp_console.infra.storage import PROFILE_KEY, TOKEN_KEY, SessionStore

logger = logging.getLogger(__name__)

DEFAULT_LOGIN_ERROR = "Login failed."


class _AuthBackend(Protocol):
    async def login(self, email: str, password: str) -> LoginResponse: ...

    async def logout(self, token: str) -> None: ...


class SessionError(Exception):
    pass


class AuthError(SessionError):
    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class SessionGate:
    """Process-wide bearer token and user profile.

    The gate is the only writer of the session store. Route guards and page
    handlers read ``token``/``profile`` through it rather than from storage.
    """

    def __init__(
        self,
        store: SessionStore,
        backend: _AuthBackend,
        *,
        events: EventBus | None = None,
    ) -> None:
        self._store = store
        self._backend = backend
        self._events = events
        self._token: str | None = None
        self._profile: UserProfile | None = None
        self._pending: set[asyncio.Task[None]] = set()

    @property
    def token(self) -> str | None:
        return self._token

    @property
    def profile(self) -> UserProfile | None:
        return self._profile

    @property
    def state(self) -> SessionState:
        return SessionState.AUTHENTICATED if self._token else SessionState.ANONYMOUS

    def init(self) -> None:
        token = self._store.get(TOKEN_KEY) or None
        raw_profile = self._store.get(PROFILE_KEY)
        profile: UserProfile | None = None
        if token and raw_profile:
            try:
                profile = UserProfile.model_validate(json.loads(raw_profile))
            except (ValueError, ValidationError):
                logger.warning("stored profile is unreadable; keeping token without profile")
        elif raw_profile and not token:
            logger.info("discarding stored profile without a token")
            self._store.write({PROFILE_KEY: None})
        self._token = token
        self._profile = profile

    def is_authenticated(self) -> bool:
        return bool(self._token)

    def has_role(self, role: str) -> bool:
        return self.is_authenticated() and has_role(self._profile, role)

    def is_admin(self) -> bool:
        return self.has_role(ROLE_ADMIN)

    def auth_headers(self) -> dict[str, str]:
        return auth_headers(self._token)

    async def login(self, email: str, password: str) -> UserProfile:
        try:
            result = await self._backend.login(email, password)
        except BackendError as exc:
            raise AuthError(exc.message or DEFAULT_LOGIN_ERROR) from exc

        self._store.write(
            {
                TOKEN_KEY: result.token,
                PROFILE_KEY: result.user.model_dump_json(),
            }
        )
        self._token = result.token
        self._profile = result.user
        logger.info("session opened for %s (role=%s)", result.user.email, result.user.role)
        self._publish(SESSION_LOGIN, result.user)
        return result.user

    def logout(self) -> asyncio.Task[None] | None:
        previous = self.state
        token = self._token
        profile = self._profile
        self._token = None
        self._profile = None
        try:
            self._store.write({TOKEN_KEY: None, PROFILE_KEY: None})
        except Exception as exc:
            logger.warning("session store clear failed; in-memory session already cleared: %s", exc)
        if token is None or not can_transition(previous, SessionState.ANONYMOUS):
            return None

        logger.info("session closed locally")
        self._publish(SESSION_LOGOUT, profile)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("no running event loop; server-side session invalidation skipped")
            return None
        task = loop.create_task(self._invalidate_remote(token))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _invalidate_remote(self, token: str) -> None:
        try:
            await self._backend.logout(token)
        except Exception as exc:
            logger.warning("server-side logout failed; local session already cleared: %s", exc)

    async def aclose(self) -> None:
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

    def _publish(self, event_type: str, profile: UserProfile | None) -> None:
        if self._events is None:
            return
        tenant_id = profile.tenant_id if profile is not None and profile.tenant_id is not None else "unknown"
        actor_id = profile.id if profile is not None and profile.id is not None else None
        self._events.publish_dict(
            event_type,
            str(tenant_id),
            {"role": profile.role if profile is not None else None},
            actor_id=str(actor_id) if actor_id is not None else None,
        )
