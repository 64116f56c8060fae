from __future__ import annotations

import asyncio

import pytest

from cloud.supabase_storage import SupabaseRealtimeStorage, SupabaseStorage, SupabaseStorageError
from state.adapters import Subscribable


class _FakeResponse:
    def __init__(self, data) -> None:
        self.data = data


class _FakeQuery:
    """Records the builder chain and runs it against the fake table on execute()."""

    def __init__(self, db: "_FakeSupabase", table: str) -> None:
        self._db = db
        self._table = table
        self._op = None
        self._payload = None
        self._filters = []
        self._limit = None
        self._on_conflict = None

    def select(self, columns: str):
        self._op, self._payload = "select", columns
        return self

    def upsert(self, record, on_conflict: str = ""):
        self._op, self._payload, self._on_conflict = "upsert", record, on_conflict
        return self

    def delete(self):
        self._op = "delete"
        return self

    def eq(self, column: str, value):
        self._filters.append((column, value))
        return self

    def limit(self, n: int):
        self._limit = n
        return self

    def execute(self):
        rows = self._db.tables.setdefault(self._table, [])
        self._db.calls.append((self._table, self._op, list(self._filters), self._on_conflict))
        matches = [r for r in rows if all(r.get(c) == v for c, v in self._filters)]
        if self._op == "select":
            out = [{self._payload: r.get(self._payload)} for r in matches]
            return _FakeResponse(out[: self._limit] if self._limit else out)
        if self._op == "upsert":
            key = self._on_conflict
            existing = [r for r in rows if r.get(key) == self._payload[key]]
            if existing:
                existing[0].update(self._payload)
            else:
                rows.append(dict(self._payload))
            return _FakeResponse([self._payload])
        if self._op == "delete":
            self._db.tables[self._table] = [r for r in rows if r not in matches]
            return _FakeResponse(matches)
        raise AssertionError(f"unexpected op {self._op}")


class _FakeSupabase:
    def __init__(self) -> None:
        self.tables = {}
        self.calls = []

    def table(self, name: str) -> _FakeQuery:
        return _FakeQuery(self, name)


@pytest.mark.asyncio
async def test_write_upserts_on_key_column_and_reads_back():
    db = _FakeSupabase()
    storage = SupabaseStorage(db)

    await storage.write("app", "blob-1")
    await storage.write("app", "blob-2")

    rows = db.tables["persist_store"]
    assert len(rows) == 1
    assert rows[0]["name"] == "app"
    assert rows[0]["data"] == "blob-2"
    assert rows[0]["updated_at"]
    assert db.calls[0][3] == "name"
    assert await storage.read("app") == "blob-2"


@pytest.mark.asyncio
async def test_read_missing_returns_none():
    assert await SupabaseStorage(_FakeSupabase()).read("nope") is None


@pytest.mark.asyncio
async def test_delete_removes_row():
    db = _FakeSupabase()
    storage = SupabaseStorage(db, table="states")
    await storage.write("a", "1")
    await storage.write("b", "2")
    await storage.delete("a")
    assert await storage.read("a") is None
    assert await storage.read("b") == "2"


@pytest.mark.asyncio
async def test_custom_columns():
    db = _FakeSupabase()
    storage = SupabaseStorage(db, key_column="store_key", value_column="payload", updated_at_column="modified")
    await storage.write("app", "x")
    assert set(db.tables["persist_store"][0]) == {"store_key", "payload", "modified"}
    assert await storage.read("app") == "x"


@pytest.mark.asyncio
async def test_non_text_value_raises():
    db = _FakeSupabase()
    db.tables["persist_store"] = [{"name": "app", "data": {"not": "text"}}]
    with pytest.raises(SupabaseStorageError):
        await SupabaseStorage(db).read("app")


def test_from_env_requires_url_and_key(monkeypatch):
    monkeypatch.delenv("SUPABASE_URL", raising=False)
    monkeypatch.setenv("SUPABASE_KEY", "k")
    with pytest.raises(RuntimeError) as ei:
        SupabaseStorage.from_env()
    assert "SUPABASE_URL" in str(ei.value)


class _FakeChannel:
    def __init__(self, topic: str, fail: bool = False) -> None:
        self.topic = topic
        self.fail = fail
        self.bindings = []
        self.subscribed = False

    def on_postgres_changes(self, event, callback, table="*", schema="public", filter=None):
        self.bindings.append({"event": event, "table": table, "schema": schema, "filter": filter, "callback": callback})
        return self

    async def subscribe(self, callback=None):
        if self.fail:
            raise ConnectionError("socket closed")
        self.subscribed = True
        return self

    def emit(self, payload) -> None:
        for binding in self.bindings:
            binding["callback"](payload)


class _FakeRealtime:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.channels = []
        self.removed = []

    def channel(self, topic: str) -> _FakeChannel:
        ch = _FakeChannel(topic, fail=self.fail)
        self.channels.append(ch)
        return ch

    async def remove_channel(self, channel) -> None:
        self.removed.append(channel)


async def _drain(rounds: int = 5) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


def test_only_realtime_variant_is_subscribable():
    assert not isinstance(SupabaseStorage(_FakeSupabase()), Subscribable)
    assert isinstance(SupabaseRealtimeStorage(_FakeSupabase(), _FakeRealtime()), Subscribable)


@pytest.mark.asyncio
async def test_subscribe_filters_on_key_and_emits_changes():
    realtime = _FakeRealtime()
    storage = SupabaseRealtimeStorage(_FakeSupabase(), realtime, table="states")
    changes = []

    storage.subscribe("app", changes.append)
    await _drain()

    channel = realtime.channels[0]
    assert channel.subscribed
    assert channel.bindings[0]["table"] == "states"
    assert channel.bindings[0]["filter"] == "name=eq.app"

    channel.emit({"data": {"type": "UPDATE", "record": {"name": "app", "data": "blob-1"}}})
    channel.emit({"eventType": "INSERT", "new": {"name": "app", "data": "blob-2"}})
    channel.emit({"data": {"type": "DELETE", "record": None, "old_record": {"name": "app"}}})

    assert [(c.key, c.value) for c in changes] == [("app", "blob-1"), ("app", "blob-2"), ("app", None)]


@pytest.mark.asyncio
async def test_malformed_event_goes_to_on_error():
    realtime = _FakeRealtime()
    storage = SupabaseRealtimeStorage(_FakeSupabase(), realtime)
    changes, errors = [], []
    storage.subscribe("app", changes.append, on_error=errors.append)
    await _drain()

    realtime.channels[0].emit({"data": {"type": "UPDATE", "record": {"data": {"not": "text"}}}})
    realtime.channels[0].emit("garbage")

    assert changes == []
    assert len(errors) == 2
    assert all(isinstance(e, SupabaseStorageError) for e in errors)


@pytest.mark.asyncio
async def test_unsubscribe_removes_channel():
    realtime = _FakeRealtime()
    storage = SupabaseRealtimeStorage(_FakeSupabase(), realtime)
    unsubscribe = storage.subscribe("app", lambda change: None)
    await _drain()

    unsubscribe()
    await _drain()

    assert realtime.removed == [realtime.channels[0]]


@pytest.mark.asyncio
async def test_failed_subscription_reported():
    storage = SupabaseRealtimeStorage(_FakeSupabase(), _FakeRealtime(fail=True))
    errors = []
    storage.subscribe("app", lambda change: None, on_error=errors.append)
    await _drain()

    assert len(errors) == 1
    assert isinstance(errors[0], SupabaseStorageError)


@pytest.mark.asyncio
async def test_close_removes_open_channels():
    realtime = _FakeRealtime()
    storage = SupabaseRealtimeStorage(_FakeSupabase(), realtime)
    storage.subscribe("a", lambda change: None)
    storage.subscribe("b", lambda change: None)
    await _drain()

    await storage.close()
    assert len(realtime.removed) == 2
