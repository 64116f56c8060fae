"""
Keeps one PersistentStore in sync with a remote StorageAdapter.

Sync runs on a periodic timer, on local changes (when `auto_sync`), and on
push events from a Subscribable remote. Outbound syncs are single-flight:
while one is running, new requests are dropped, not queued. The next tick
or change picks up whatever was missed.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Set

from state.adapters import ChangeEvent, StorageAdapter, Subscribable
from state.models import dump_json, load_json, strip_version
from state.store import ORIGIN_LOCAL, ORIGIN_REMOTE, PersistentStore

from .conflict import ConflictResolver
from .models import SyncResult


logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 5.0  # seconds

State = Dict[str, Any]


class SyncError(RuntimeError):
    """Remote data could not be used for sync."""


@dataclass
class SyncState:
    """Everything mutable an orchestrator owns. One per orchestrator."""

    running: bool = False
    pending: bool = False
    last_synced: Optional[str] = None
    timer: Optional[asyncio.Task] = None
    unsubscribe_remote: Optional[Callable[[], None]] = None
    unsubscribe_local: Optional[Callable[[], None]] = None
    inflight: Set[asyncio.Task] = field(default_factory=set)


def _parse_remote(blob: str) -> State:
    try:
        parsed = load_json(blob)
    except ValueError as ex:
        raise SyncError("remote state is not valid JSON") from ex
    if not isinstance(parsed, dict):
        raise SyncError("remote state is not a JSON object")
    return strip_version(parsed) or {}


class SyncOrchestrator:
    """
    Periodic and event-driven sync between a local store and a remote adapter.

    Usage
        async with SyncOrchestrator(store, remote, "my-store") as orch:
            ...

    or call `start()` / `stop()` explicitly. `sync_now()` can also be used
    on its own without starting the timer.

    Callbacks
    - on_sync(state): after a sync changed either side, and after a remote
      push was applied locally.
    - on_error(exc): transport or parse failure. Errors never escape the
      timer and are not retried before the next tick.
    """

    def __init__(
        self,
        store: PersistentStore,
        remote: StorageAdapter,
        key: Optional[str] = None,
        *,
        resolver: Optional[ConflictResolver] = None,
        interval: float = DEFAULT_INTERVAL,
        auto_sync: bool = True,
        on_sync: Optional[Callable[[State], None]] = None,
        on_error: Optional[Callable[[Exception], None]] = None,
    ) -> None:
        if interval < 0:
            raise ValueError("interval must be >= 0")
        self._store = store
        self._remote = remote
        self._key = key or store.name
        self._resolver = resolver or ConflictResolver()
        self._interval = interval
        self._auto_sync = auto_sync
        self._on_sync = on_sync
        self._on_error = on_error
        self._state = SyncState()

    # --------------- Lifecycle ---------------
    async def start(self) -> None:
        if self._state.running:
            return
        self._state.running = True
        if isinstance(self._remote, Subscribable):
            self._state.unsubscribe_remote = self._remote.subscribe(
                self._key, self._on_remote_change, on_error=self._report_error
            )
        self._state.unsubscribe_local = self._store.subscribe(self._on_local_change)
        if self._auto_sync and self._interval > 0:
            self._state.timer = asyncio.create_task(self._run_timer())
        logger.info("sync started for %r (interval=%ss)", self._key, self._interval)

    async def stop(self) -> None:
        """Stop the timer and drop subscriptions. In-flight writes are left to finish."""
        st = self._state
        st.running = False
        if st.unsubscribe_remote is not None:
            st.unsubscribe_remote()
            st.unsubscribe_remote = None
        if st.unsubscribe_local is not None:
            st.unsubscribe_local()
            st.unsubscribe_local = None
        if st.timer is not None:
            st.timer.cancel()
            with suppress(asyncio.CancelledError):
                await st.timer
            st.timer = None
        logger.info("sync stopped for %r", self._key)

    async def __aenter__(self) -> "SyncOrchestrator":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    # --------------- Inspection ---------------
    @property
    def is_running(self) -> bool:
        return self._state.running

    @property
    def is_syncing(self) -> bool:
        return self._state.pending

    @property
    def last_synced(self) -> Optional[State]:
        blob = self._state.last_synced
        return load_json(blob) if blob is not None else None

    @property
    def resolver(self) -> ConflictResolver:
        return self._resolver

    # --------------- Sync ---------------
    async def sync_now(self) -> Optional[SyncResult]:
        """
        Reconcile local and remote once.

        Returns None if another sync was in flight (dropped) or the sync
        failed (reported via on_error).
        """
        st = self._state
        if st.pending:
            logger.debug("sync already in flight for %r; dropping request", self._key)
            return None
        st.pending = True
        try:
            return await self._sync_once()
        except Exception as ex:
            self._report_error(ex)
            return None
        finally:
            st.pending = False

    async def force_push(self) -> bool:
        """Overwrite the remote copy with local state. False if dropped or failed."""
        st = self._state
        if st.pending:
            logger.debug("sync already in flight for %r; dropping push", self._key)
            return False
        st.pending = True
        try:
            local = self._store.get()
            blob = dump_json(local)
            await self._remote.write(self._key, blob)
            st.last_synced = blob
            self._notify_sync(local)
            return True
        except Exception as ex:
            self._report_error(ex)
            return False
        finally:
            st.pending = False

    async def _sync_once(self) -> SyncResult:
        remote_blob = await self._remote.read(self._key)
        local = self._store.get()
        local_json = dump_json(local)

        if remote_blob is None:
            await self._remote.write(self._key, local_json)
            self._state.last_synced = local_json
            self._notify_sync(local)
            return SyncResult(
                state=local,
                had_conflict=False,
                strategy_used=self._resolver.strategy,
                resolved_at=datetime.now(timezone.utc),
            )

        remote = _parse_remote(remote_blob)
        result = self._resolver.resolve_with_result(local, remote)
        resolved_json = dump_json(result.state)
        changed = False

        if resolved_json != local_json:
            self._store.set(result.state, replace=True, origin=ORIGIN_REMOTE)
            changed = True
        if resolved_json != dump_json(remote):
            await self._remote.write(self._key, resolved_json)
            changed = True

        self._state.last_synced = resolved_json
        if changed:
            self._notify_sync(result.state)
        return result

    # --------------- Triggers ---------------
    async def _run_timer(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            self._dispatch()

    def _dispatch(self) -> None:
        # Separate task so stop() cancelling the timer does not abort a write
        task = asyncio.create_task(self.sync_now())
        self._state.inflight.add(task)
        task.add_done_callback(self._state.inflight.discard)

    def _on_local_change(self, state: State, previous: State, origin: str) -> None:
        if origin != ORIGIN_LOCAL or not self._auto_sync or not self._state.running:
            return
        self._dispatch()

    def _on_remote_change(self, event: ChangeEvent) -> None:
        if event.value is None:
            return
        try:
            remote = _parse_remote(event.value)
        except SyncError as ex:
            self._report_error(ex)
            return

        # runs inside the adapter's notifier; nothing may propagate back into it
        try:
            local = self._store.get()
            result = self._resolver.resolve_with_result(local, remote)
            if not result.had_conflict:
                return
            resolved_json = dump_json(result.state)
            if resolved_json != dump_json(local):
                self._store.set(result.state, replace=True, origin=ORIGIN_REMOTE)
                self._notify_sync(result.state)
        except Exception as ex:
            self._report_error(ex)
            return
        if resolved_json != dump_json(remote) and self._state.running:
            # local won at least partly; propagate it back out
            self._dispatch()

    # --------------- Reporting ---------------
    def _notify_sync(self, state: State) -> None:
        if self._on_sync is not None:
            self._on_sync(state)

    def _report_error(self, ex: Exception) -> None:
        logger.warning("sync failed for %r: %s", self._key, ex)
        if self._on_error is not None:
            self._on_error(ex)


__all__ = ["DEFAULT_INTERVAL", "SyncError", "SyncOrchestrator", "SyncState"]
