from __future__ import annotations

import asyncio
import os
from unittest.mock import AsyncMock, MagicMock

import pytest
from eth_abi import encode
from hexbytes import HexBytes
from web3 import Web3
from web3._utils.events import event_abi_to_log_topic

from cointoss_indexer.chain_log import EventKind
from cointoss_indexer.config import DEFAULT_ABI_DIR
from cointoss_indexer.dispatcher import DispatchResult
from cointoss_indexer.entities import Creator, Pool
from cointoss_indexer.errors import MalformedEventError
from cointoss_indexer.indexer import EventIndexer, _normalize_log
from cointoss_indexer.utils import _load_json
from tests.conftest import CHAIN_ID, CREATOR, ONE_CELO

CONTRACT = "0x" + "11" * 20


@pytest.fixture
def indexer(store) -> EventIndexer:
    config = {
        "chain_id": CHAIN_ID,
        "abi_dir": DEFAULT_ABI_DIR,
        "contracts": {"CoinToss": {"address": CONTRACT}},
    }
    idx = EventIndexer(config, store=store)
    asyncio.run(idx.load_contracts())
    idx.w3_http = MagicMock()
    idx.w3_http.codec = Web3().codec
    idx.w3_http.eth.get_block.return_value = {"timestamp": 1_700_000_000}
    return idx


def _pool_created_log() -> dict:
    abi_json = _load_json(os.path.join(DEFAULT_ABI_DIR, "CoinToss.json"))
    abi = next(item for item in abi_json if item.get("name") == "PoolCreated")
    creator_topic = "0x" + "00" * 12 + CREATOR[2:].lower()
    return {
        "address": CONTRACT,
        "topics": [
            "0x" + bytes(event_abi_to_log_topic(abi)).hex(),
            "0x" + (1).to_bytes(32, "big").hex(),
            creator_topic,
        ],
        "data": "0x" + encode(["uint256", "uint256"], [ONE_CELO, 10]).hex(),
        "blockNumber": "0x3e8",
        "logIndex": "0x0",
        "transactionIndex": "0x0",
        "transactionHash": "0x" + "ab" * 32,
        "blockHash": "0x" + "cd" * 32,
    }


def test_normalize_log():
    out = _normalize_log(
        {"address": CONTRACT, "blockNumber": "0x10", "logIndex": "2", "topics": ["0x01"], "data": "0x"}
    )
    assert out["blockNumber"] == 16
    assert out["logIndex"] == 2
    assert out["address"] == Web3.to_checksum_address(CONTRACT)
    assert isinstance(out["topics"][0], HexBytes)


def test_bundled_abi_covers_every_event_kind(indexer):
    names = {abi["name"] for abi in indexer.topic_to_abi[Web3.to_checksum_address(CONTRACT)].values()}
    assert names == {kind.value for kind in EventKind}


def test_process_log_decodes_and_dispatches(indexer, store):
    result = asyncio.run(indexer.process_log(_pool_created_log()))

    assert result is DispatchResult.APPLIED
    pool = store.get(Pool, "1")
    assert pool.entry_fee == ONE_CELO
    assert pool.max_players == 10
    assert pool.created_at_block == 1000
    assert pool.created_at == 1_700_000_000
    assert store.get(Creator, CREATOR.lower()).total_pools_created == 1


def test_unknown_topic_is_skipped(indexer, store):
    log = _pool_created_log()
    log["topics"][0] = "0x" + "ee" * 32
    assert asyncio.run(indexer.process_log(log)) is None
    assert store.get(Pool, "1") is None


def test_removed_log_is_not_applied(indexer):
    indexer.process_log = AsyncMock()
    asyncio.run(indexer._handle_ws_log({**_pool_created_log(), "removed": True}))
    indexer.process_log.assert_not_called()


def test_gap_before_ws_log_is_backfilled(indexer):
    indexer.process_log = AsyncMock()
    indexer.backfill_range = AsyncMock()
    indexer.last_processed_block = 990

    asyncio.run(indexer._handle_ws_log(_pool_created_log()))

    indexer.backfill_range.assert_awaited_once_with(991, 999)
    indexer.process_log.assert_awaited_once()
    assert indexer.last_processed_block == 999


def test_backfill_marks_blocks_done(indexer, store):
    indexer.w3_http.eth.get_logs.return_value = [_normalize_log(_pool_created_log())]
    indexer.last_processed_block = 999

    asyncio.run(indexer.backfill_range(1000, 1010))

    assert store.get(Pool, "1") is not None
    assert store.resume_block(CHAIN_ID, 0) == 1011
    assert indexer.last_processed_block == 1010


def test_load_contracts_requires_config():
    with pytest.raises(ValueError):
        asyncio.run(EventIndexer({"contracts": {}}).load_contracts())


def test_undecodable_log_stops_processing(indexer, store):
    log = {**_pool_created_log(), "data": "0x"}
    with pytest.raises(MalformedEventError):
        asyncio.run(indexer.process_log(log))
    assert store.get(Pool, "1") is None


def test_backfill_does_not_pass_an_undecodable_log(indexer, store):
    indexer.w3_http.eth.get_logs.return_value = [_normalize_log({**_pool_created_log(), "data": "0x"})]
    indexer.last_processed_block = 999

    with pytest.raises(MalformedEventError):
        asyncio.run(indexer.backfill_range(1000, 1010))

    assert store.get_position(CHAIN_ID) is None
    assert indexer.last_processed_block == 999
