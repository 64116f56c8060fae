from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

from .adapters import StorageAdapter
from .models import dump_json, load_json, strip_version


logger = logging.getLogger(__name__)

ORIGIN_LOCAL = "local"
ORIGIN_REMOTE = "remote"
ORIGIN_HYDRATE = "hydrate"

State = Dict[str, Any]
Listener = Callable[[State, State, str], None]


class PersistentStore:
    """
    In-memory application state backed by a (usually layered) StorageAdapter.

    Usage
    - `set()` is the only mutator. Every change is tagged with an origin
      ("local", "remote" or "hydrate") so listeners can tell a user edit from
      an update that arrived through sync.
    - `hydrate()` / `persist()` move the state through `storage` under `name`.
    - `partialize` picks the part of the state that gets persisted.
    """

    def __init__(
        self,
        storage: StorageAdapter,
        name: str,
        *,
        initial: Optional[State] = None,
        partialize: Optional[Callable[[State], State]] = None,
    ) -> None:
        if not name:
            raise ValueError("name is required")
        self._storage = storage
        self._name = name
        self._state: State = dict(initial or {})
        self._partialize = partialize
        self._listeners: List[Listener] = []

    @property
    def name(self) -> str:
        return self._name

    @property
    def storage(self) -> StorageAdapter:
        return self._storage

    def get(self) -> State:
        return self._state

    def set(self, update: State, *, replace: bool = False, origin: str = ORIGIN_LOCAL) -> None:
        previous = self._state
        self._state = dict(update) if replace else {**previous, **update}
        for listener in list(self._listeners):
            listener(self._state, previous, origin)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def snapshot(self) -> State:
        """The persisted view of the current state."""
        return self._partialize(self._state) if self._partialize else self._state

    async def hydrate(self) -> bool:
        """Merge the stored state into memory. Returns False if nothing usable was stored."""
        stored = await self._storage.read(self._name)
        if stored is None:
            return False
        try:
            parsed = load_json(stored)
        except ValueError:
            logger.warning("stored state for %r is not JSON; ignoring it", self._name)
            return False
        if not isinstance(parsed, dict):
            logger.warning("stored state for %r is not an object; ignoring it", self._name)
            return False
        self.set(strip_version(parsed) or {}, origin=ORIGIN_HYDRATE)
        return True

    async def persist(self) -> None:
        await self._storage.write(self._name, dump_json(self.snapshot()))

    async def clear(self) -> None:
        await self._storage.delete(self._name)


__all__ = [
    "ORIGIN_HYDRATE",
    "ORIGIN_LOCAL",
    "ORIGIN_REMOTE",
    "PersistentStore",
    "State",
]
