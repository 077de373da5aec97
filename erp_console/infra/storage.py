from __future__ import annotations

import json
import logging
import os
import tempfile
from collections.abc import Mapping
from functools import lru_cache
from pathlib import Path
from typing import Protocol

from redis import Redis

logger = logging.getLogger(__name__)

TOKEN_KEY = "token"
PROFILE_KEY = "user"

SESSION_STORE_KIND = os.getenv("ERP_SESSION_STORE", "file")
SESSION_FILE = os.getenv("ERP_SESSION_FILE", str(Path.home() / ".erp_console" / "session.json"))
SESSION_PREFIX = os.getenv("ERP_SESSION_PREFIX", "erp_console:session:")
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")


class SessionStore(Protocol):
    def get(self, key: str) -> str | None: ...

    def write(self, items: Mapping[str, str | None]) -> None: ...


class MemorySessionStore:
    def __init__(self, initial: Mapping[str, str] | None = None) -> None:
        self._values: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> str | None:
        return self._values.get(key)

    def write(self, items: Mapping[str, str | None]) -> None:
        updated = dict(self._values)
        for key, value in items.items():
            if value is None:
                updated.pop(key, None)
            else:
                updated[key] = value
        self._values = updated

    def snapshot(self) -> dict[str, str]:
        return dict(self._values)


class FileSessionStore:
    """Session slots kept in one JSON object on disk, rewritten via temp file + rename."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def _read(self) -> dict[str, str]:
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        try:
            loaded = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("session file %s is not valid JSON; treating it as empty", self._path)
            return {}
        if not isinstance(loaded, dict):
            return {}
        return {key: value for key, value in loaded.items() if isinstance(value, str)}

    def get(self, key: str) -> str | None:
        return self._read().get(key)

    def write(self, items: Mapping[str, str | None]) -> None:
        values = self._read()
        for key, value in items.items():
            if value is None:
                values.pop(key, None)
            else:
                values[key] = value
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self._path.parent, prefix=".session-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(values, handle)
            os.replace(tmp_name, self._path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise


@lru_cache(maxsize=1)
def get_redis() -> Redis:
    return Redis.from_url(REDIS_URL, decode_responses=True)


class RedisSessionStore:
    def __init__(self, client: Redis | None = None, *, prefix: str = SESSION_PREFIX) -> None:
        self._client = client if client is not None else get_redis()
        self._prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def get(self, key: str) -> str | None:
        value = self._client.get(self._key(key))
        if value is None:
            return None
        return value if isinstance(value, str) else value.decode()

    def write(self, items: Mapping[str, str | None]) -> None:
        pipe = self._client.pipeline(transaction=True)
        for key, value in items.items():
            if value is None:
                pipe.delete(self._key(key))
            else:
                pipe.set(self._key(key), value)
        pipe.execute()


def check_store_ready(store: SessionStore) -> bool:
    try:
        store.get(TOKEN_KEY)
        return True
    except Exception as exc:
        logger.warning("session store not ready: %s", exc)
        return False


def build_session_store(kind: str | None = None) -> SessionStore:
    selected = (kind or SESSION_STORE_KIND).strip().lower()
    if selected == "memory":
        return MemorySessionStore()
    if selected == "redis":
        return RedisSessionStore()
    if selected == "file":
        return FileSessionStore(SESSION_FILE)
    raise ValueError(f"unknown session store: {selected}")
