from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple

from .adapters import StorageAdapter
from .models import load_json


Change = Tuple[Any, Any]  # (old value, new value); None means absent


def _decode(blob: Optional[str]) -> Any:
    if blob is None:
        return None
    try:
        return load_json(blob)
    except ValueError:
        return blob


class TrackedStorage:
    """
    StorageAdapter wrapper that remembers the last change made to each key.

    Values are recorded JSON-decoded when possible, raw text otherwise.
    `last_modified` only moves on writes; deletes are recorded as changes
    to None.
    """

    def __init__(
        self,
        inner: StorageAdapter,
        *,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._inner = inner
        self._clock = clock
        self._changes: Dict[str, Change] = {}
        self._modified: Dict[str, datetime] = {}

    async def read(self, key: str) -> Optional[str]:
        return await self._inner.read(key)

    async def write(self, key: str, blob: str) -> None:
        old = await self._inner.read(key)
        await self._inner.write(key, blob)
        self._changes[key] = (_decode(old), _decode(blob))
        self._modified[key] = self._clock()

    async def delete(self, key: str) -> None:
        old = await self._inner.read(key)
        await self._inner.delete(key)
        self._changes[key] = (_decode(old), None)

    def changes(self) -> Dict[str, Change]:
        return dict(self._changes)

    def clear_changes(self) -> None:
        self._changes.clear()

    def last_modified(self, key: str) -> Optional[datetime]:
        return self._modified.get(key)
