"""
Conflict resolution between a local and a remote copy of state.

All strategies are pure functions of `(local, remote)`. `ConflictResolver`
adds the equality short-circuit, a switchable current strategy and an
audit record (`SyncResult`) per call.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Set

from state.models import dump_json

from .models import DEFAULT_TIMESTAMP_FIELD, MergeOptions, SyncResult, SyncStrategy


logger = logging.getLogger(__name__)

State = Dict[str, Any]
ConflictHandler = Callable[[State, State, MergeOptions], State]
MergeFunction = Callable[[State, State, MergeOptions], State]

DEFAULT_MAX_DEPTH = 100


class MergeDepthError(ValueError):
    """State is cyclic or nested deeper than the merge allows."""


def _to_millis(value: Any) -> float:
    """Epoch milliseconds for a timestamp field; missing or unparseable is 0."""
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, datetime):
        dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        return dt.timestamp() * 1000.0
    if isinstance(value, str) and value:
        try:
            return float(value)
        except ValueError:
            pass
        text = value[:-1] + "+00:00" if value.endswith("Z") else value
        try:
            return _to_millis(datetime.fromisoformat(text))
        except ValueError:
            return 0.0
    return 0.0


def last_write_wins(local: State, remote: State, timestamp_field: str = DEFAULT_TIMESTAMP_FIELD) -> State:
    """Remote only if its timestamp is strictly newer; ties keep local."""
    local_time = _to_millis(local.get(timestamp_field))
    remote_time = _to_millis(remote.get(timestamp_field))
    return remote if remote_time > local_time else local


def server_wins(local: State, remote: State) -> State:
    return remote


def client_wins(local: State, remote: State) -> State:
    return local


def merge_states(
    local: State,
    remote: State,
    options: Optional[MergeOptions] = None,
    *,
    max_depth: int = DEFAULT_MAX_DEPTH,
) -> State:
    """
    Recursive structural merge, remote-biased.

    Per key of either side:
    - in `ignore_keys`: keep local (absent stays absent)
    - in `force_last_write_wins_keys`: take remote; drop the key if remote lacks it
    - both values are dicts: merge recursively (key options do not apply below the top level)
    - otherwise: remote's value if remote has the key, else local's

    Lists are leaves: remote replaces local wholesale.
    """
    opts = options or MergeOptions()
    return _merge(
        local, remote, opts.ignore_keys, opts.force_last_write_wins_keys, max_depth, frozenset(), frozenset()
    )


def _merge(
    local: State,
    remote: State,
    ignore: Set[str],
    force_remote: Set[str],
    depth_left: int,
    local_path: frozenset,
    remote_path: frozenset,
) -> State:
    if depth_left <= 0:
        raise MergeDepthError("state is nested too deeply to merge")
    # ancestors on each side; seeing one again means a cycle
    if id(local) in local_path or id(remote) in remote_path:
        raise MergeDepthError("cyclic state cannot be merged")
    local_path = local_path | {id(local)}
    remote_path = remote_path | {id(remote)}

    result = dict(local)
    for key in {**local, **remote}:
        if key in ignore:
            continue
        if key in force_remote:
            if key in remote:
                result[key] = remote[key]
            else:
                result.pop(key, None)
            continue

        local_val = local.get(key)
        remote_val = remote.get(key)
        if isinstance(local_val, dict) and isinstance(remote_val, dict):
            result[key] = _merge(
                local_val, remote_val, set(), set(), depth_left - 1, local_path, remote_path
            )
        elif key in remote:
            result[key] = remote_val
    return result


def states_equal(a: Any, b: Any) -> bool:
    """Canonical-JSON equality; values JSON cannot encode (e.g. datetime) compare with ==."""
    try:
        return dump_json(a) == dump_json(b)
    except TypeError:
        return a == b


def state_diff(before: State, after: State) -> State:
    """Keys whose value changed from `before` to `after`; removed keys map to None."""
    diff: State = {}
    for key in {**before, **after}:
        if not states_equal(before.get(key), after.get(key)):
            diff[key] = after.get(key)
    return diff


DEFAULT_CONFLICT_STRATEGIES: Dict[str, Callable[..., State]] = {
    "last_write_wins": last_write_wins,
    "server_wins": server_wins,
    "client_wins": client_wins,
    "merge": merge_states,
}


class ConflictResolver:
    """
    Strategy-selectable resolver.

    `resolve_with_result` first compares canonical JSON of both sides; equal
    states return local with `had_conflict=False` and no strategy runs.
    The `custom` strategy without a handler behaves as last-write-wins.
    """

    def __init__(
        self,
        strategy: SyncStrategy | str = SyncStrategy.LAST_WRITE_WINS,
        *,
        on_conflict: Optional[ConflictHandler] = None,
        merge_strategy: Optional[MergeFunction] = None,
        options: Optional[MergeOptions] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._strategy = SyncStrategy(strategy)
        self._custom_handler = on_conflict
        self._merge = merge_strategy or merge_states
        self._options = options or MergeOptions()
        self._clock = clock

    @property
    def strategy(self) -> SyncStrategy:
        return self._strategy

    @property
    def options(self) -> MergeOptions:
        return self._options

    def set_strategy(self, strategy: SyncStrategy | str) -> None:
        self._strategy = SyncStrategy(strategy)

    def set_custom_handler(self, handler: ConflictHandler) -> None:
        self._custom_handler = handler

    def resolve(self, local: State, remote: State) -> State:
        return self.resolve_with_result(local, remote).state

    def resolve_with_result(self, local: State, remote: State) -> SyncResult:
        strategy = self._strategy
        if states_equal(local, remote):
            return SyncResult(state=local, had_conflict=False, strategy_used=strategy, resolved_at=self._clock())

        resolved = self._dispatch(strategy, local, remote)
        logger.info("resolved state conflict using %s", strategy.value)
        return SyncResult(state=resolved, had_conflict=True, strategy_used=strategy, resolved_at=self._clock())

    def _dispatch(self, strategy: SyncStrategy, local: State, remote: State) -> State:
        ts_field = self._options.timestamp_field
        if strategy is SyncStrategy.SERVER_WINS:
            return server_wins(local, remote)
        if strategy is SyncStrategy.CLIENT_WINS:
            return client_wins(local, remote)
        if strategy is SyncStrategy.MERGE:
            return self._merge(local, remote, self._options)
        if strategy is SyncStrategy.CUSTOM and self._custom_handler is not None:
            return self._custom_handler(local, remote, self._options)
        return last_write_wins(local, remote, ts_field)


__all__ = [
    "DEFAULT_CONFLICT_STRATEGIES",
    "ConflictResolver",
    "MergeDepthError",
    "client_wins",
    "last_write_wins",
    "merge_states",
    "server_wins",
    "state_diff",
    "states_equal",
]
