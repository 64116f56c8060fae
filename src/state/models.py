from __future__ import annotations

import json
from typing import Any, Callable, Dict, Optional

from pydantic import BaseModel, Field, field_validator


VERSION_FIELD = "_version"

Migration = Callable[[Any], Any]


def dump_json(value: Any) -> str:
    # Deterministic JSON: stable key order, no extra whitespace
    return json.dumps(value, separators=(",", ":"), sort_keys=True, ensure_ascii=False)


def load_json(data: str) -> Any:
    return json.loads(data)


def coerce_version(raw: Any) -> int:
    """Read a stored `_version` value; anything unusable counts as 0."""
    if isinstance(raw, bool):
        return 0
    if isinstance(raw, int):
        return max(raw, 0)
    if isinstance(raw, float) and raw.is_integer():
        return max(int(raw), 0)
    if isinstance(raw, str) and raw.strip().isdigit():
        return int(raw.strip())
    return 0


class VersionedEnvelope(BaseModel):
    """
    A payload paired with the schema version it was written under.

    Wire form
    - The payload JSON object itself, with the reserved `_version` integer
      field added (see `to_wire` / `from_wire`).
    - A missing `_version` reads as version 0.
    """

    payload: Any = None
    schema_version: int = Field(default=0, ge=0)

    @classmethod
    def from_wire(cls, data: Dict[str, Any]) -> "VersionedEnvelope":
        payload = {k: v for k, v in data.items() if k != VERSION_FIELD}
        return cls(payload=payload, schema_version=coerce_version(data.get(VERSION_FIELD)))

    def to_wire(self) -> Dict[str, Any]:
        if not isinstance(self.payload, dict):
            raise TypeError("only JSON objects can carry a schema version")
        return {**self.payload, VERSION_FIELD: self.schema_version}


class MigrationOptions(BaseModel):
    """
    Schema version for newly written data plus the upgrade steps.

    `migrations[n]` turns a version n-1 payload into a version n payload.
    """

    version: int = Field(..., ge=0)
    migrations: Dict[int, Migration] = Field(default_factory=dict)
    strict: bool = Field(
        default=False,
        description="Raise on a missing intermediate step instead of skipping it",
    )

    @field_validator("migrations")
    @classmethod
    def _positive_targets(cls, value: Dict[int, Migration]) -> Dict[int, Migration]:
        bad = [v for v in value if v < 1]
        if bad:
            raise ValueError(f"migration target versions must be >= 1, got {sorted(bad)}")
        return value


def strip_version(state: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if state is None or VERSION_FIELD not in state:
        return state
    return {k: v for k, v in state.items() if k != VERSION_FIELD}
