from __future__ import annotations

import copy
import logging
from typing import Any, Dict, List, Mapping, Optional

from .adapters import StorageAdapter
from .models import (
    VERSION_FIELD,
    Migration,
    MigrationOptions,
    VersionedEnvelope,
    load_json,
)


logger = logging.getLogger(__name__)


class MigrationError(RuntimeError):
    """Base error for schema migrations."""


class MigrationGapError(MigrationError):
    """Strict mode found no migration for one or more intermediate versions."""

    def __init__(self, missing: List[int]) -> None:
        super().__init__(f"No migration registered for version(s): {', '.join(map(str, missing))}")
        self.missing = missing


class MigrationEngine:
    """
    Stepwise schema upgrades for JSON-object payloads.

    - `version` is the schema version current code writes.
    - `migrations[n]` upgrades a payload from version n-1 to n. Steps run in
      increasing order; each sees the output of the previous one.
    - A version with no registered step is skipped (lenient, the default) or
      raises MigrationGapError before any step runs (`strict=True`).
    - Payloads newer than the target are left alone: versions never go down.
    """

    def __init__(
        self,
        version: int,
        migrations: Optional[Mapping[int, Migration]] = None,
        *,
        strict: bool = False,
    ) -> None:
        opts = MigrationOptions(version=version, migrations=dict(migrations or {}), strict=strict)
        self._version = opts.version
        self._migrations: Dict[int, Migration] = opts.migrations
        self._strict = opts.strict

    @classmethod
    def from_options(cls, options: MigrationOptions) -> "MigrationEngine":
        return cls(options.version, options.migrations, strict=options.strict)

    @property
    def version(self) -> int:
        return self._version

    def missing_steps(self, from_version: int, to_version: Optional[int] = None) -> List[int]:
        target = self._version if to_version is None else to_version
        return [v for v in range(from_version + 1, target + 1) if v not in self._migrations]

    def upgrade(self, payload: Any, from_version: int, to_version: Optional[int] = None) -> Any:
        """Run the steps (from_version, to_version] over `payload`; does not stamp."""
        target = self._version if to_version is None else to_version
        if from_version >= target:
            return payload
        if self._strict:
            missing = self.missing_steps(from_version, target)
            if missing:
                raise MigrationGapError(missing)

        migrated = copy.deepcopy(payload)
        for v in range(from_version + 1, target + 1):
            step = self._migrations.get(v)
            if step is None:
                logger.debug("no migration for version %d; skipping", v)
                continue
            migrated = step(migrated)
        return migrated

    def migrate(self, data: Dict[str, Any], to_version: Optional[int] = None) -> Dict[str, Any]:
        """Upgrade a wire-form object (payload + `_version`) and stamp the new version.

        An already-current object comes back re-stamped and otherwise equal.
        """
        target = self._version if to_version is None else to_version
        envelope = VersionedEnvelope.from_wire(data)
        if envelope.schema_version > target:
            return dict(data)
        upgraded = self.upgrade(envelope.payload, envelope.schema_version, target)
        if not isinstance(upgraded, dict):
            raise MigrationError(f"migration to version {target} did not return an object")
        return VersionedEnvelope(payload=upgraded, schema_version=target).to_wire()

    def needs_upgrade(self, data: Dict[str, Any]) -> bool:
        return VersionedEnvelope.from_wire(data).schema_version < self._version

    def stamp(self, data: Dict[str, Any]) -> Dict[str, Any]:
        return {**data, VERSION_FIELD: self._version}


async def migrate_state(
    storage: StorageAdapter,
    key: str,
    to_version: int,
    migrations: Mapping[int, Migration],
    *,
    strict: bool = False,
) -> Any:
    """
    One-off "migrate now": read `key`, upgrade it to `to_version`, return it.

    Nothing is written back. Returns None when the key is absent and the raw
    stored text when it is not a JSON object.
    """
    stored = await storage.read(key)
    if stored is None:
        return None
    try:
        parsed = load_json(stored)
    except ValueError:
        logger.warning("stored value for %r is not JSON; returning it unchanged", key)
        return stored
    if not isinstance(parsed, dict):
        return stored
    engine = MigrationEngine(to_version, migrations, strict=strict)
    return engine.migrate(parsed)


__all__ = [
    "MigrationEngine",
    "MigrationError",
    "MigrationGapError",
    "migrate_state",
]
