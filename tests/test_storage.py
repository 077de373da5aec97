from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest

from erp_console.infra import storage
from erp_console.infra.storage import (
    PROFILE_KEY,
    TOKEN_KEY,
    FileSessionStore,
    MemorySessionStore,
    RedisSessionStore,
    build_session_store,
    check_store_ready,
)


class _FakePipeline:
    def __init__(self, client: _FakeRedis) -> None:
        self._client = client
        self._ops: list[tuple[str, str, str | None]] = []

    def set(self, key: str, value: str) -> None:
        self._ops.append(("set", key, value))

    def delete(self, key: str) -> None:
        self._ops.append(("delete", key, None))

    def execute(self) -> None:
        for op, key, value in self._ops:
            if op == "set" and value is not None:
                self._client.values[key] = value
            else:
                self._client.values.pop(key, None)
        self._client.executed += 1


class _FakeRedis:
    def __init__(self) -> None:
        self.values: dict[str, str] = {}
        self.executed = 0

    def get(self, key: str) -> str | None:
        return self.values.get(key)

    def pipeline(self, transaction: bool = True) -> _FakePipeline:
        assert transaction is True
        return _FakePipeline(self)


def test_memory_store_write_sets_and_deletes() -> None:
    store = MemorySessionStore()
    store.write({TOKEN_KEY: "tok", PROFILE_KEY: "{}"})
    assert store.get(TOKEN_KEY) == "tok"

    store.write({TOKEN_KEY: None, PROFILE_KEY: None})
    assert store.snapshot() == {}


def test_file_store_round_trip_and_layout(tmp_path: Path) -> None:
    path = tmp_path / "nested" / "session.json"
    store = FileSessionStore(path)
    assert store.get(TOKEN_KEY) is None

    store.write({TOKEN_KEY: "tok", PROFILE_KEY: json.dumps({"role": "admin"})})

    on_disk = json.loads(path.read_text(encoding="utf-8"))
    assert on_disk == {"token": "tok", "user": '{"role": "admin"}'}
    assert FileSessionStore(path).get(TOKEN_KEY) == "tok"
    assert not list(path.parent.glob(".session-*.tmp"))

    store.write({TOKEN_KEY: None})
    assert store.get(TOKEN_KEY) is None
    assert store.get(PROFILE_KEY) == '{"role": "admin"}'


def test_file_store_treats_corrupt_file_as_empty(tmp_path: Path) -> None:
    path = tmp_path / "session.json"
    path.write_text("not json", encoding="utf-8")
    store = FileSessionStore(path)

    assert store.get(TOKEN_KEY) is None
    store.write({TOKEN_KEY: "fresh"})
    assert store.get(TOKEN_KEY) == "fresh"


def test_redis_store_uses_prefixed_keys_in_one_transaction() -> None:
    client = _FakeRedis()
    store = RedisSessionStore(client, prefix="erp:test:")  # type: ignore[arg-type]

    store.write({TOKEN_KEY: "tok", PROFILE_KEY: "{}"})
    assert client.values == {"erp:test:token": "tok", "erp:test:user": "{}"}
    assert client.executed == 1
    assert store.get(TOKEN_KEY) == "tok"

    store.write({TOKEN_KEY: None, PROFILE_KEY: None})
    assert client.values == {}
    assert client.executed == 2


def test_build_session_store_selects_backend(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setattr(storage, "SESSION_FILE", str(tmp_path / "s.json"))
    fake = _FakeRedis()
    monkeypatch.setattr(storage, "get_redis", lambda: fake)

    assert isinstance(build_session_store("memory"), MemorySessionStore)
    file_store = build_session_store("file")
    assert isinstance(file_store, FileSessionStore)
    assert file_store.path == tmp_path / "s.json"
    assert isinstance(build_session_store("redis"), RedisSessionStore)
    with pytest.raises(ValueError):
        build_session_store("sqlite")


def test_check_store_ready_reports_failures() -> None:
    class _Broken:
        def get(self, key: str) -> Any:
            raise ConnectionError("down")

        def write(self, items: Any) -> None:
            raise ConnectionError("down")

    assert check_store_ready(MemorySessionStore()) is True
    assert check_store_ready(_Broken()) is False
