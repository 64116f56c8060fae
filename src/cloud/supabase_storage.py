from __future__ import annotations

import asyncio
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set, Tuple

from supabase import AsyncClient, Client, acreate_client, create_client

from state.adapters import ChangeCallback, ChangeEvent, ErrorCallback, Unsubscribe


logger = logging.getLogger(__name__)

ENV_URL = "SUPABASE_URL"
ENV_KEY = "SUPABASE_KEY"
ENV_TABLE = "SUPABASE_TABLE"

DEFAULT_TABLE = "persist_store"
DEFAULT_SCHEMA = "public"
DEFAULT_CHANNEL_PREFIX = "persist-sync"


class SupabaseStorageError(RuntimeError):
    """A row came back in a shape the adapter cannot use."""


def _env_credentials() -> Tuple[str, str]:
    url = os.environ.get(ENV_URL)
    key = os.environ.get(ENV_KEY)
    missing = [n for n, v in ((ENV_URL, url), (ENV_KEY, key)) if not v]
    if missing:
        raise RuntimeError(f"Missing required configuration: {', '.join(missing)}")
    return url, key


class SupabaseStorage:
    """
    StorageAdapter over one Supabase (PostgREST) table.

    Expected table
        create table persist_store (
            name text primary key,
            data text not null,
            updated_at timestamptz not null default now()
        );

    Notes
    - `write` upserts on the key column and stamps `updated_at` in UTC.
    - The supabase client is blocking, so every call runs in a worker thread.
    - Errors from the client propagate unchanged and are not retried.
    - Push notifications need SupabaseRealtimeStorage.
    """

    def __init__(
        self,
        client: Client,
        *,
        table: str = DEFAULT_TABLE,
        key_column: str = "name",
        value_column: str = "data",
        updated_at_column: str = "updated_at",
    ) -> None:
        if client is None:
            raise ValueError("client is required")
        self._db = client
        self._table = table
        self._key_column = key_column
        self._value_column = value_column
        self._updated_at_column = updated_at_column

    @classmethod
    def from_env(cls) -> "SupabaseStorage":
        url, key = _env_credentials()
        return cls(create_client(url, key), table=os.environ.get(ENV_TABLE) or DEFAULT_TABLE)

    @property
    def table(self) -> str:
        return self._table

    async def read(self, key: str) -> Optional[str]:
        return await asyncio.to_thread(self._read_sync, key)

    async def write(self, key: str, blob: str) -> None:
        await asyncio.to_thread(self._write_sync, key, blob)

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self._delete_sync, key)

    # -------- Blocking calls --------
    def _read_sync(self, key: str) -> Optional[str]:
        result = (
            self._db.table(self._table)
            .select(self._value_column)
            .eq(self._key_column, key)
            .limit(1)
            .execute()
        )
        rows = result.data or []
        if not rows:
            return None
        value = rows[0].get(self._value_column)
        if value is None:
            return None
        if not isinstance(value, str):
            raise SupabaseStorageError(
                f"column {self._value_column!r} of {self._table!r} holds {type(value).__name__}, expected text"
            )
        return value

    def _write_sync(self, key: str, blob: str) -> None:
        record: Dict[str, Any] = {
            self._key_column: key,
            self._value_column: blob,
            self._updated_at_column: _utc_now_iso(),
        }
        self._db.table(self._table).upsert(record, on_conflict=self._key_column).execute()
        logger.debug("upserted %r into %s", key, self._table)

    def _delete_sync(self, key: str) -> None:
        self._db.table(self._table).delete().eq(self._key_column, key).execute()


class SupabaseRealtimeStorage(SupabaseStorage):
    """
    SupabaseStorage that also implements `Subscribable` over Supabase Realtime.

    `subscribe(key, ...)` opens one `postgres_changes` channel filtered on the
    key column. INSERT and UPDATE deliver the new value column; DELETE
    delivers None. Channels need the async client (`acreate_client`), while
    reads and writes keep using the blocking one.

    The table must be part of the `supabase_realtime` publication, and
    filtered DELETE events need `replica identity full` on it.
    """

    def __init__(
        self,
        client: Client,
        realtime: AsyncClient,
        *,
        schema: str = DEFAULT_SCHEMA,
        channel_prefix: str = DEFAULT_CHANNEL_PREFIX,
        **kwargs: Any,
    ) -> None:
        super().__init__(client, **kwargs)
        if realtime is None:
            raise ValueError("realtime client is required")
        self._realtime = realtime
        self._schema = schema
        self._channel_prefix = channel_prefix
        self._next_token = 0
        self._opening: Dict[int, asyncio.Task] = {}
        self._channels: Dict[int, Any] = {}
        self._removing: Set[asyncio.Task] = set()

    @classmethod
    async def connect(cls) -> "SupabaseRealtimeStorage":
        """Build both clients from `SUPABASE_URL` / `SUPABASE_KEY`."""
        url, key = _env_credentials()
        realtime = await acreate_client(url, key)
        return cls(create_client(url, key), realtime, table=os.environ.get(ENV_TABLE) or DEFAULT_TABLE)

    async def close(self) -> None:
        for task in list(self._opening.values()):
            task.cancel()
        self._opening.clear()
        channels = list(self._channels.values())
        self._channels.clear()
        for channel in channels:
            await self._realtime.remove_channel(channel)

    # --------------- Subscribable ---------------
    def subscribe(
        self,
        key: str,
        callback: ChangeCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> Unsubscribe:
        self._next_token += 1
        token = self._next_token
        self._opening[token] = asyncio.create_task(self._open_channel(token, key, callback, on_error))

        def unsubscribe() -> None:
            opening = self._opening.pop(token, None)
            if opening is not None:
                opening.cancel()
            channel = self._channels.pop(token, None)
            if channel is not None:
                task = asyncio.create_task(self._realtime.remove_channel(channel))
                self._removing.add(task)
                task.add_done_callback(self._removing.discard)

        return unsubscribe

    async def _open_channel(
        self,
        token: int,
        key: str,
        callback: ChangeCallback,
        on_error: Optional[ErrorCallback],
    ) -> None:
        value_column = self._value_column

        def handle(payload: Any) -> None:
            try:
                change = _change_from_payload(key, payload, value_column)
            except SupabaseStorageError as ex:
                logger.warning("dropping realtime event for %r: %s", key, ex)
                if on_error is not None:
                    on_error(ex)
                return
            callback(change)

        channel = self._realtime.channel(f"{self._channel_prefix}-{key}")
        try:
            channel.on_postgres_changes(
                "*",
                callback=handle,
                table=self._table,
                schema=self._schema,
                filter=f"{self._key_column}=eq.{key}",
            )
            await channel.subscribe()
        except asyncio.CancelledError:
            raise
        except Exception as ex:
            err = SupabaseStorageError(f"realtime subscription for {key!r} failed: {ex}")
            logger.error("%s", err)
            if on_error is not None:
                on_error(err)
            return
        finally:
            self._opening.pop(token, None)
        self._channels[token] = channel
        logger.debug("realtime channel open for %r on %s", key, self._table)


def _change_from_payload(key: str, payload: Any, value_column: str) -> ChangeEvent:
    """Accepts both the wire shape (`data.type` / `data.record`) and the
    client-normalized one (`eventType` / `new`)."""
    data = payload.get("data", payload) if isinstance(payload, dict) else None
    if not isinstance(data, dict):
        raise SupabaseStorageError("unexpected realtime payload")
    event = data.get("type") or data.get("eventType")
    if event == "DELETE":
        return ChangeEvent(key=key, value=None)
    record = data.get("record") or data.get("new") or {}
    value = record.get(value_column)
    if value is not None and not isinstance(value, str):
        raise SupabaseStorageError(f"column {value_column!r} holds {type(value).__name__}, expected text")
    return ChangeEvent(key=key, value=value)


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


__all__ = ["DEFAULT_TABLE", "SupabaseRealtimeStorage", "SupabaseStorage", "SupabaseStorageError"]
