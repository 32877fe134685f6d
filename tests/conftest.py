from __future__ import annotations

import itertools
from typing import Any, Callable

import pytest

from cointoss_indexer.chain_log import ChainLog
from cointoss_indexer.dispatcher import Dispatcher
from cointoss_indexer.store import EntityStore

CHAIN_ID = 42220
ONE_CELO = 10**18
CREATOR = "0xABC0000000000000000000000000000000000001"
PLAYER = "0xDEF0000000000000000000000000000000000002"


def player_address(n: int) -> str:
    return "0x" + f"{n:040x}"


@pytest.fixture
def store() -> EntityStore:
    s = EntityStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def dispatcher(store: EntityStore) -> Dispatcher:
    return Dispatcher(store)


@pytest.fixture
def make_log() -> Callable[..., ChainLog]:
    """Build logs with increasing (block, logIndex) positions."""
    counter = itertools.count(1)

    def _make(name: str, **params: Any) -> ChainLog:
        n = next(counter)
        return ChainLog(
            name=name,
            chain_id=CHAIN_ID,
            block_number=1000 + n,
            block_timestamp=1_700_000_000 + n * 5,
            log_index=0,
            params=params,
        )

    return _make


@pytest.fixture
def created_pool(dispatcher, make_log):
    dispatcher.dispatch(
        make_log("PoolCreated", poolId=1, creator=CREATOR, entryFee=ONE_CELO, maxPlayers=10)
    )
    return "1"


@pytest.fixture
def full_active_pool(dispatcher, make_log, created_pool):
    """Pool 1 with ten joined players (player_address(1..10)) and activated."""
    for n in range(1, 11):
        dispatcher.dispatch(
            make_log("PlayerJoined", poolId=1, player=player_address(n), currentPlayers=n, maxPlayers=10)
        )
    dispatcher.dispatch(make_log("PoolActivated", poolId=1, totalPlayers=10, prizePool=10 * ONE_CELO))
    return created_pool
