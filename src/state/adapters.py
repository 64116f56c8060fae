"""Storage adapter contract and the in-process implementation."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Protocol, runtime_checkable


logger = logging.getLogger(__name__)


@runtime_checkable
class StorageAdapter(Protocol):
    """Async key -> blob store.

    Every layer and every backend implements these three methods. No
    ordering is promised between concurrent calls on the same key.
    """

    async def read(self, key: str) -> Optional[str]: ...

    async def write(self, key: str, blob: str) -> None: ...

    async def delete(self, key: str) -> None: ...


@dataclass(frozen=True)
class ChangeEvent:
    key: str
    value: Optional[str]  # None when the key was deleted


ChangeCallback = Callable[[ChangeEvent], None]
ErrorCallback = Callable[[Exception], None]
Unsubscribe = Callable[[], None]


@runtime_checkable
class Subscribable(Protocol):
    """Optional capability: push notification of remote changes.

    `on_error` receives failures of the underlying feed (e.g. a dropped
    stream); implementations without such failures may ignore it.
    """

    def subscribe(
        self,
        key: str,
        callback: ChangeCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> Unsubscribe: ...


class MemoryStorage:
    """
    Dict-backed StorageAdapter that also implements `Subscribable`.

    Subscribers are called synchronously after each write/delete, for every
    write including ones made through this instance.
    """

    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self._data: Dict[str, str] = dict(initial or {})
        self._subscribers: Dict[str, List[ChangeCallback]] = {}

    async def read(self, key: str) -> Optional[str]:
        return self._data.get(key)

    async def write(self, key: str, blob: str) -> None:
        self._data[key] = blob
        self._notify(ChangeEvent(key=key, value=blob))

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)
        self._notify(ChangeEvent(key=key, value=None))

    def subscribe(
        self,
        key: str,
        callback: ChangeCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> Unsubscribe:
        self._subscribers.setdefault(key, []).append(callback)

        def unsubscribe() -> None:
            callbacks = self._subscribers.get(key, [])
            if callback in callbacks:
                callbacks.remove(callback)

        return unsubscribe

    def keys(self) -> List[str]:
        return list(self._data)

    def _notify(self, event: ChangeEvent) -> None:
        for callback in list(self._subscribers.get(event.key, [])):
            callback(event)


__all__ = [
    "ChangeCallback",
    "ChangeEvent",
    "ErrorCallback",
    "MemoryStorage",
    "StorageAdapter",
    "Subscribable",
    "Unsubscribe",
]
