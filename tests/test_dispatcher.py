from __future__ import annotations

import sqlite3

import pytest

from cointoss_indexer.chain_log import ChainLog, EventKind
from cointoss_indexer.dispatcher import DispatchResult
from cointoss_indexer.entities import Creator, Event, NetworkStats, Player, Pool, network_stats_id
from cointoss_indexer.errors import MalformedEventError, StoreUnavailableError
from cointoss_indexer.handlers import HANDLERS
from cointoss_indexer.store import EntityStore
from tests.conftest import CHAIN_ID, CREATOR, ONE_CELO, PLAYER


def test_every_event_kind_has_a_handler():
    assert set(HANDLERS) == set(EventKind)


def test_unknown_event_is_dropped(store, dispatcher, make_log):
    log = make_log("OwnershipTransferred", previousOwner=CREATOR, newOwner=PLAYER)

    assert dispatcher.dispatch(log) is DispatchResult.IGNORED
    assert list(store.iter_kind(Event)) == []
    assert store.get_position(CHAIN_ID) is None
    assert dispatcher.counts[DispatchResult.IGNORED] == 1


def test_redelivery_is_a_noop(store, dispatcher, make_log):
    created = make_log("PoolCreated", poolId=1, creator=CREATOR, entryFee=ONE_CELO, maxPlayers=10)
    joined = make_log("PlayerJoined", poolId=1, player=PLAYER, currentPlayers=1, maxPlayers=10)

    assert dispatcher.dispatch(created) is DispatchResult.APPLIED
    assert dispatcher.dispatch(joined) is DispatchResult.APPLIED
    first_event = store.get(Event, "1-created")

    assert dispatcher.dispatch(created) is DispatchResult.DUPLICATE
    assert dispatcher.dispatch(joined) is DispatchResult.DUPLICATE

    assert store.get(Event, "1-created") == first_event
    assert store.get(Creator, CREATOR.lower()).total_pools_created == 1
    assert store.get(Pool, "1").prize_pool == ONE_CELO
    player = store.get(Player, PLAYER.lower())
    assert player.total_pools_joined == 1
    assert player.total_spent == ONE_CELO
    stats = store.get(NetworkStats, network_stats_id(CHAIN_ID))
    assert stats.total_pools == 1
    assert stats.total_volume == ONE_CELO


def test_total_pools_counts_pool_created_logs(store, dispatcher, make_log):
    for pool_id in range(1, 6):
        dispatcher.dispatch(make_log("PoolCreated", poolId=pool_id, creator=CREATOR, entryFee=1, maxPlayers=2))
    # Same pool id delivered again from a later position.
    dispatcher.dispatch(make_log("PoolCreated", poolId=3, creator=CREATOR, entryFee=1, maxPlayers=2))

    assert store.get(NetworkStats, network_stats_id(CHAIN_ID)).total_pools == 5
    assert store.get(Creator, CREATOR.lower()).total_pools_created == 5


def test_position_advances_with_each_applied_log(store, dispatcher, make_log):
    first = make_log("PoolCreated", poolId=1, creator=CREATOR, entryFee=1, maxPlayers=2)
    second = make_log("PoolCreated", poolId=2, creator=CREATOR, entryFee=1, maxPlayers=2)
    dispatcher.dispatch(first)
    assert store.get_position(CHAIN_ID) == first.position
    dispatcher.dispatch(second)
    assert store.get_position(CHAIN_ID) == second.position


def test_store_failure_leaves_nothing_behind(store, dispatcher, make_log, monkeypatch):
    created = make_log("PoolCreated", poolId=1, creator=CREATOR, entryFee=1, maxPlayers=2)
    dispatcher.dispatch(created)
    joined = make_log("PlayerJoined", poolId=1, player=PLAYER, currentPlayers=1, maxPlayers=2)

    calls = {"n": 0}
    original = EntityStore._write

    def flaky_write(cur, entity, block_number):
        calls["n"] += 1
        if calls["n"] == 2:
            raise sqlite3.OperationalError("disk I/O error")
        original(cur, entity, block_number)

    monkeypatch.setattr(EntityStore, "_write", staticmethod(flaky_write))
    with pytest.raises(StoreUnavailableError):
        dispatcher.dispatch(joined)

    assert store.get_position(CHAIN_ID) == created.position
    assert store.get(Pool, "1").current_players == 0
    assert store.get(Player, PLAYER.lower()) is None
    assert store.get(Event, f"1-{PLAYER.lower()}-joined") is None

    monkeypatch.undo()
    assert dispatcher.dispatch(joined) is DispatchResult.APPLIED
    assert store.get(Pool, "1").current_players == 1
    assert store.get_position(CHAIN_ID) == joined.position


def test_malformed_log_is_rejected(store, dispatcher, make_log):
    log = make_log("PoolCreated", poolId=1, creator=CREATOR, entryFee="not-a-number", maxPlayers=2)
    with pytest.raises(MalformedEventError):
        dispatcher.dispatch(log)
    assert store.get(Pool, "1") is None
    assert store.get_position(CHAIN_ID) is None


def test_missing_param_is_rejected(store, dispatcher, make_log):
    with pytest.raises(MalformedEventError):
        dispatcher.dispatch(make_log("GameCompleted", poolId=1, prizeAmount=1))


def test_chain_log_from_upstream_payload(store, dispatcher):
    log = ChainLog.from_dict(
        {
            "event": "PoolCreated",
            "chainId": CHAIN_ID,
            "block": {"number": "0x10", "timestamp": 1700000000},
            "logIndex": 3,
            "params": {"poolId": "12", "creator": CREATOR, "entryFee": str(ONE_CELO), "maxPlayers": 4},
            "transactionHash": "0xfeed",
        }
    )
    assert log.position == (16, 3)
    assert log.dedup_key == "16_3"

    dispatcher.dispatch(log)
    assert store.get(Pool, "12").entry_fee == ONE_CELO
    assert store.get(Event, "12-created").transaction_hash == "0xfeed"


def test_chain_log_from_incomplete_payload():
    with pytest.raises(MalformedEventError):
        ChainLog.from_dict({"event": "PoolCreated", "chainId": 1})
