from __future__ import annotations

from datetime import datetime, timezone

import pytest

from cloud.conflict import (
    DEFAULT_CONFLICT_STRATEGIES,
    ConflictResolver,
    MergeDepthError,
    client_wins,
    last_write_wins,
    merge_states,
    server_wins,
    state_diff,
    states_equal,
)
from cloud.models import MergeOptions, SyncStrategy


FIXED = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _resolver(strategy, **kwargs) -> ConflictResolver:
    return ConflictResolver(strategy, clock=lambda: FIXED, **kwargs)


def test_merge_example():
    local = {"a": 1, "b": {"c": 2}}
    remote = {"a": 2, "b": {"d": 3}, "e": 4}
    assert merge_states(local, remote) == {"a": 2, "b": {"c": 2, "d": 3}, "e": 4}


def test_merge_is_idempotent():
    x = {"a": [1, 2], "b": {"c": {"d": None}}, "e": "s"}
    assert merge_states(x, x) == x


def test_merge_lists_replaced_wholesale():
    assert merge_states({"tags": [1, 2, 3]}, {"tags": [9]}) == {"tags": [9]}


def test_merge_dict_vs_scalar_takes_remote():
    assert merge_states({"a": {"x": 1}}, {"a": 5}) == {"a": 5}
    assert merge_states({"a": 5}, {"a": {"x": 1}}) == {"a": {"x": 1}}


def test_merge_ignore_keys_keep_local():
    opts = MergeOptions(ignore_keys={"ui", "draft"})
    out = merge_states({"ui": {"tab": 1}, "n": 1}, {"ui": {"tab": 2}, "draft": "x", "n": 2}, opts)
    assert out == {"ui": {"tab": 1}, "n": 2}


def test_merge_force_keys_take_remote():
    opts = MergeOptions(force_last_write_wins_keys={"settings", "gone"})
    out = merge_states(
        {"settings": {"a": 1, "b": 2}, "gone": 1},
        {"settings": {"a": 3}},
        opts,
    )
    assert out == {"settings": {"a": 3}}


def test_merge_key_options_only_at_top_level():
    opts = MergeOptions(ignore_keys={"x"})
    out = merge_states({"x": 1, "nested": {"x": 1}}, {"x": 2, "nested": {"x": 2}}, opts)
    assert out == {"x": 1, "nested": {"x": 2}}


def test_merge_rejects_cycles():
    cyclic = {"a": 1}
    cyclic["self"] = cyclic
    other = {"a": 2}
    other["self"] = other
    with pytest.raises(MergeDepthError):
        merge_states(cyclic, other)


def test_merge_shared_subtree_is_not_a_cycle():
    shared = {"k": 1}
    assert merge_states({"a": shared}, {"a": {"j": 2}, "b": shared}) == {"a": {"k": 1, "j": 2}, "b": {"k": 1}}


def test_merge_depth_limit():
    def nest(n):
        out = {}
        cur = out
        for _ in range(n):
            cur["n"] = {}
            cur = cur["n"]
        return out

    assert merge_states(nest(10), nest(10), max_depth=20) == nest(10)
    with pytest.raises(MergeDepthError):
        merge_states(nest(10), nest(10), max_depth=5)


def test_last_write_wins_remote_newer():
    assert last_write_wins({"_updatedAt": 100}, {"_updatedAt": 200}) == {"_updatedAt": 200}


def test_last_write_wins_tie_and_missing_favor_local():
    local = {"_updatedAt": 100, "v": "l"}
    assert last_write_wins(local, {"_updatedAt": 100, "v": "r"}) is local
    assert last_write_wins({"v": "l"}, {"v": "r"}) == {"v": "l"}


def test_last_write_wins_accepts_iso_and_datetime():
    local = {"_updatedAt": "2024-01-01T00:00:00Z"}
    remote = {"_updatedAt": datetime(2024, 1, 2, tzinfo=timezone.utc)}
    assert last_write_wins(local, remote) is remote
    # unparseable counts as epoch 0
    assert last_write_wins({"_updatedAt": "garbage"}, {"_updatedAt": 1}) == {"_updatedAt": 1}


def test_last_write_wins_custom_field():
    assert last_write_wins({"ts": 5}, {"ts": 4}, "ts") == {"ts": 5}


def test_server_and_client_wins():
    assert server_wins({"a": 1}, {"a": 2}) == {"a": 2}
    assert client_wins({"a": 1}, {"a": 2}) == {"a": 1}


@pytest.mark.parametrize("strategy", list(SyncStrategy))
def test_equal_states_short_circuit(strategy):
    calls = []

    def handler(local, remote, options):
        calls.append(1)
        return remote

    res = _resolver(strategy, on_conflict=handler).resolve_with_result({"a": {"b": 1}}, {"a": {"b": 1}})
    assert res.had_conflict is False
    assert res.strategy_used is strategy
    assert res.state == {"a": {"b": 1}}
    assert calls == []


def test_short_circuit_ignores_key_order():
    assert states_equal({"a": 1, "b": 2}, {"b": 2, "a": 1})
    assert not states_equal({"a": 1}, {"a": 1.5})


def test_resolver_last_write_wins_example():
    res = _resolver(SyncStrategy.LAST_WRITE_WINS).resolve_with_result({"_updatedAt": 100}, {"_updatedAt": 200})
    assert res.state == {"_updatedAt": 200}
    assert res.had_conflict is True
    assert res.strategy_used is SyncStrategy.LAST_WRITE_WINS
    assert res.resolved_at == FIXED


def test_resolver_merge_uses_options():
    resolver = _resolver("merge", options=MergeOptions(ignore_keys={"local_only"}))
    out = resolver.resolve({"local_only": 1, "a": 1}, {"local_only": 2, "a": 2})
    assert out == {"local_only": 1, "a": 2}


def test_resolver_custom_merge_function():
    resolver = _resolver(SyncStrategy.MERGE, merge_strategy=lambda l, r, o: {"merged": True})
    assert resolver.resolve({"a": 1}, {"a": 2}) == {"merged": True}


def test_custom_without_handler_falls_back_to_last_write_wins():
    resolver = _resolver(SyncStrategy.CUSTOM)
    assert resolver.resolve({"_updatedAt": 1}, {"_updatedAt": 2}) == {"_updatedAt": 2}

    resolver.set_custom_handler(lambda l, r, o: {"custom": True})
    assert resolver.resolve({"_updatedAt": 1}, {"_updatedAt": 2}) == {"custom": True}


def test_set_strategy():
    resolver = _resolver(SyncStrategy.SERVER_WINS)
    assert resolver.resolve({"a": 1}, {"a": 2}) == {"a": 2}
    resolver.set_strategy("client-wins")
    assert resolver.strategy is SyncStrategy.CLIENT_WINS
    assert resolver.resolve({"a": 1}, {"a": 2}) == {"a": 1}


def test_unknown_strategy_rejected():
    with pytest.raises(ValueError):
        ConflictResolver("newest")


def test_state_diff():
    before = {"a": 1, "b": {"c": 2}, "gone": True}
    after = {"a": 1, "b": {"c": 3}, "new": [1]}
    assert state_diff(before, after) == {"b": {"c": 3}, "new": [1], "gone": None}


def test_default_strategies_table():
    assert set(DEFAULT_CONFLICT_STRATEGIES) == {"last_write_wins", "server_wins", "client_wins", "merge"}
    assert DEFAULT_CONFLICT_STRATEGIES["merge"]({"a": 1}, {"b": 2}) == {"a": 1, "b": 2}


def test_resolver_handles_datetime_timestamps():
    local = {"_updatedAt": datetime(2024, 1, 1, tzinfo=timezone.utc), "v": "l"}
    remote = {"_updatedAt": datetime(2024, 6, 1, tzinfo=timezone.utc), "v": "r"}

    res = _resolver(SyncStrategy.LAST_WRITE_WINS).resolve_with_result(local, remote)
    assert res.had_conflict is True
    assert res.state is remote

    same = _resolver(SyncStrategy.SERVER_WINS).resolve_with_result(local, dict(local))
    assert same.had_conflict is False


def test_state_diff_with_datetime_values():
    t1 = datetime(2024, 1, 1, tzinfo=timezone.utc)
    t2 = datetime(2024, 1, 2, tzinfo=timezone.utc)
    assert state_diff({"at": t1, "n": 1}, {"at": t2, "n": 1}) == {"at": t2}
    assert states_equal({"at": t1}, {"at": t1})
