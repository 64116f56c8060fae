from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Set

from pydantic import BaseModel, Field


DEFAULT_TIMESTAMP_FIELD = "_updatedAt"


class SyncStrategy(str, Enum):
    LAST_WRITE_WINS = "last-write-wins"
    SERVER_WINS = "server-wins"
    CLIENT_WINS = "client-wins"
    MERGE = "merge"
    CUSTOM = "custom"


class MergeOptions(BaseModel):
    """
    Knobs for the merge strategy (and the timestamp used by last-write-wins).

    - ignore_keys: top-level keys where local always wins.
    - force_last_write_wins_keys: top-level keys where remote always wins,
      even when both sides hold objects.
    """

    ignore_keys: Set[str] = Field(default_factory=set)
    force_last_write_wins_keys: Set[str] = Field(default_factory=set)
    timestamp_field: str = DEFAULT_TIMESTAMP_FIELD


class SyncResult(BaseModel):
    """Audit record for one resolve call. Returned to the caller, never stored."""

    state: Any
    had_conflict: bool
    strategy_used: SyncStrategy
    resolved_at: datetime
