from __future__ import annotations

import json

from cointoss_indexer.cli import main
from tests.conftest import CHAIN_ID, CREATOR, ONE_CELO, PLAYER


def _write_logs(path, logs) -> None:
    path.write_text("\n".join(json.dumps(log) for log in logs) + "\n", encoding="utf-8")


def _log(name: str, block: int, **params) -> dict:
    return {
        "event": name,
        "chainId": CHAIN_ID,
        "block": {"number": block, "timestamp": 1_700_000_000 + block},
        "logIndex": 0,
        "params": params,
    }


def test_replay_then_inspect(tmp_path, capsys):
    config = tmp_path / "config.json"
    config.write_text(json.dumps({"db_path": str(tmp_path / "cointoss.db")}), encoding="utf-8")
    logs = tmp_path / "logs.jsonl"
    _write_logs(
        logs,
        [
            _log("PoolCreated", 1, poolId=1, creator=CREATOR, entryFee=str(ONE_CELO), maxPlayers=2),
            _log("PlayerJoined", 2, poolId=1, player=PLAYER, currentPlayers=1, maxPlayers=2),
            _log("ScopeUpdated", 3, newScope=7),
            _log("PlayerJoined", 2, poolId=1, player=PLAYER, currentPlayers=1, maxPlayers=2),
        ],
    )

    assert main(["--config", str(config), "replay", str(logs)]) == 0
    counts = json.loads(capsys.readouterr().out)
    assert counts == {"applied": 2, "duplicate": 1, "ignored": 1}

    assert main(["--config", str(config), "entity", "Pool", "1"]) == 0
    pool = json.loads(capsys.readouterr().out)
    assert pool["current_players"] == 1
    assert pool["prize_pool"] == ONE_CELO
    assert pool["status"] == "WAITING_FOR_PLAYERS"

    assert main(["--config", str(config), "stats", "--chain-id", str(CHAIN_ID)]) == 0
    stats = json.loads(capsys.readouterr().out)
    assert stats["total_pools"] == 1
    assert stats["total_volume"] == ONE_CELO

    assert main(["--config", str(config), "events", "--pool", "1"]) == 0
    events = json.loads(capsys.readouterr().out)
    assert [e["event_type"] for e in events] == ["PLAYER_JOINED", "POOL_CREATED"]


def test_missing_entity_returns_error(tmp_path, capsys):
    config = tmp_path / "config.json"
    config.write_text(json.dumps({"db_path": str(tmp_path / "cointoss.db")}), encoding="utf-8")
    assert main(["--config", str(config), "entity", "Player", PLAYER]) == 1
