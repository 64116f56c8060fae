"""
Transform layers: StorageAdapters that wrap another StorageAdapter.

Each layer transforms values on the way in (`forward`) and out
(`inverse`). Reads are fail-open: if `inverse` raises, the caller gets the
inner value unchanged. `read_result` reports which path a read took.

`compose_storage` fixes the transform order. Values are migrated first,
then compressed, then encrypted on write (and the reverse on read), so the
wrapper objects nest as

    MigratingStorage( CompressedStorage( EncryptedStorage( base ) ) )

Migration sees plain JSON, compression sees plaintext and only ciphertext
leaves the process.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Optional

from common.compression import CompressionOptions, pack, unpack
from common.crypto import EncryptionOptions, decrypt, encrypt

from .adapters import StorageAdapter
from .migration import MigrationEngine
from .models import Migration, dump_json, load_json


logger = logging.getLogger(__name__)


class ReadOutcome(str, Enum):
    SUCCESS = "success"
    FALLBACK = "fallback"
    MISSING = "missing"


@dataclass(frozen=True)
class ReadResult:
    value: Optional[str]
    outcome: ReadOutcome
    error: Optional[Exception] = None


class TransformLayer:
    """Base class; subclasses implement `forward` and `inverse`."""

    name = "transform"

    def __init__(self, inner: StorageAdapter) -> None:
        self._inner = inner

    @property
    def inner(self) -> StorageAdapter:
        return self._inner

    def forward(self, value: str) -> str:
        raise NotImplementedError

    def inverse(self, blob: str) -> str:
        raise NotImplementedError

    async def read_result(self, key: str) -> ReadResult:
        stored = await self._inner.read(key)
        if stored is None:
            return ReadResult(value=None, outcome=ReadOutcome.MISSING)
        try:
            return ReadResult(value=self.inverse(stored), outcome=ReadOutcome.SUCCESS)
        except Exception as ex:
            logger.debug("%s layer could not invert %r (%s); returning stored value", self.name, key, ex)
            return ReadResult(value=stored, outcome=ReadOutcome.FALLBACK, error=ex)

    async def read(self, key: str) -> Optional[str]:
        return (await self.read_result(key)).value

    async def write(self, key: str, blob: str) -> None:
        await self._inner.write(key, self.forward(blob))

    async def delete(self, key: str) -> None:
        await self._inner.delete(key)


class EncryptedStorage(TransformLayer):
    name = "encryption"

    def __init__(
        self,
        inner: StorageAdapter,
        secret: str,
        options: Optional[EncryptionOptions] = None,
    ) -> None:
        if not secret:
            raise ValueError("Encryption secret is required")
        super().__init__(inner)
        self._secret = secret
        self._options = options or EncryptionOptions()

    def forward(self, value: str) -> str:
        return encrypt(value, self._secret, self._options)

    def inverse(self, blob: str) -> str:
        return decrypt(blob, self._secret, self._options)


class CompressedStorage(TransformLayer):
    """Writes tagged blobs (see `common.compression.pack`)."""

    name = "compression"

    def __init__(self, inner: StorageAdapter, options: Optional[CompressionOptions] = None) -> None:
        super().__init__(inner)
        self._options = options or CompressionOptions()

    def forward(self, value: str) -> str:
        return pack(value, self._options)

    def inverse(self, blob: str) -> str:
        return unpack(blob)


class MigratingStorage(TransformLayer):
    """
    Stamps the current schema version on write; upgrades stepwise on read.

    Values that are not JSON objects pass through untouched in both
    directions (on read, via the fail-open rule).
    """

    name = "migration"

    def __init__(self, inner: StorageAdapter, engine: MigrationEngine) -> None:
        super().__init__(inner)
        self._engine = engine

    @property
    def engine(self) -> MigrationEngine:
        return self._engine

    def forward(self, value: str) -> str:
        try:
            parsed = load_json(value)
        except ValueError:
            return value
        if not isinstance(parsed, dict):
            return value
        return dump_json(self._engine.stamp(parsed))

    def inverse(self, blob: str) -> str:
        parsed = load_json(blob)
        if not isinstance(parsed, dict):
            raise TypeError("stored value is not a JSON object")
        if not self._engine.needs_upgrade(parsed):
            return blob
        return dump_json(self._engine.migrate(parsed))


def compose_storage(
    base: StorageAdapter,
    *,
    migration: Optional[MigrationEngine] = None,
    compression: Optional[CompressionOptions] = None,
    secret: Optional[str] = None,
    encryption: Optional[EncryptionOptions] = None,
) -> StorageAdapter:
    """Wrap `base` with the selected layers.

    The wrapper closest to `base` is the last transform applied on write,
    so encryption is wrapped first and migration last.

    Encryption is enabled by passing `secret`; `encryption` alone only
    carries options and raises ValueError without a secret.
    """
    storage: StorageAdapter = base
    if secret is not None or encryption is not None:
        storage = EncryptedStorage(storage, secret or "", encryption)
    if compression is not None:
        storage = CompressedStorage(storage, compression)
    if migration is not None:
        storage = MigratingStorage(storage, migration)
    return storage


def migrating(
    base: StorageAdapter,
    version: int,
    migrations: Optional[Mapping[int, Migration]] = None,
    *,
    strict: bool = False,
) -> MigratingStorage:
    return MigratingStorage(base, MigrationEngine(version, migrations, strict=strict))


def layer_chain(storage: Any) -> list[str]:
    """Layer names from the outermost wrapper to the one around the base adapter."""
    names = []
    while isinstance(storage, TransformLayer):
        names.append(storage.name)
        storage = storage.inner
    return names


__all__ = [
    "CompressedStorage",
    "EncryptedStorage",
    "MigratingStorage",
    "ReadOutcome",
    "ReadResult",
    "TransformLayer",
    "compose_storage",
    "layer_chain",
    "migrating",
]
