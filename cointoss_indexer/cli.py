"""CoinToss pool indexer.

Usage:
  cointoss-indexer --config config.json run
  cointoss-indexer --config config.json backfill --from-block 0
  cointoss-indexer --config config.json replay logs.jsonl
  cointoss-indexer --config config.json entity Pool 1
  cointoss-indexer --config config.json events --pool 1
  cointoss-indexer --config config.json stats --chain-id 42220

``replay`` reads one decoded log per line in the upstream JSON shape and is the
way to feed logs from another delivery layer.
"""

import argparse
import asyncio
import json
import os
import sys
from typing import Any, Dict, Iterable, List, Optional

from .chain_log import ChainLog
from .config import DEFAULTS, load_config
from .dispatcher import Dispatcher
from .entities import Event, NetworkStats, network_stats_id
from .errors import IndexerError
from .indexer import EventIndexer
from .store import EntityStore, entity_type
from .utils import _json_dumps, _log


def _read_jsonl(path: str) -> Iterable[Dict[str, Any]]:
    with open(path, "r", encoding="utf-8") as f:
        for lineno, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                yield json.loads(line)
            except json.JSONDecodeError as exc:
                raise IndexerError(f"{path}:{lineno}: invalid JSON: {exc}") from exc


def replay_file(store: EntityStore, path: str) -> Dict[str, int]:
    dispatcher = Dispatcher(store)
    for payload in _read_jsonl(path):
        dispatcher.dispatch(ChainLog.from_dict(payload))
    return {result.value: count for result, count in dispatcher.counts.items()}


def _query_events(store: EntityStore, pool: Optional[str], limit: int) -> List[Dict[str, Any]]:
    events = [e for e in store.iter_kind(Event) if pool is None or e.pool_id == pool]
    events.sort(key=lambda e: (e.block_number, e.log_index), reverse=True)
    return [e.to_dict() for e in events[:limit]]


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="CoinToss Pool Indexer")
    parser.add_argument("--config", default="config.json", help="Path to config JSON")

    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("run", help="Start indexing")

    backfill_parser = sub.add_parser("backfill", help="Manual backfill")
    backfill_parser.add_argument("--from-block", type=int, required=True)
    backfill_parser.add_argument("--to-block", type=int, default=None)

    replay_parser = sub.add_parser("replay", help="Apply decoded logs from a JSON-lines file")
    replay_parser.add_argument("path")

    entity_parser = sub.add_parser("entity", help="Show one derived entity")
    entity_parser.add_argument("kind", help="Pool, Player, Creator, PlayerPool, GameRound, ...")
    entity_parser.add_argument("id")

    events_parser = sub.add_parser("events", help="List audit events")
    events_parser.add_argument("--pool", type=str, default=None)
    events_parser.add_argument("--limit", type=int, default=200)

    stats_parser = sub.add_parser("stats", help="Show network stats")
    stats_parser.add_argument("--chain-id", type=int, default=None)

    args = parser.parse_args(argv)
    if os.path.exists(args.config):
        cfg = load_config(args.config)
    elif args.command in ("run", "backfill"):
        parser.error(f"config file not found: {args.config}")
    else:
        cfg = dict(DEFAULTS)

    if args.command == "run":
        indexer = EventIndexer(cfg)
        asyncio.run(indexer.start())
        return 0

    if args.command == "backfill":
        async def _run_backfill() -> None:
            indexer = EventIndexer(cfg)
            await indexer.init()
            to_block = args.to_block
            if to_block is None:
                if not indexer.w3_http:
                    raise RuntimeError("rpc_http is required")
                to_block = indexer.w3_http.eth.block_number
            await indexer.backfill_range(args.from_block, to_block)

        asyncio.run(_run_backfill())
        return 0

    store = EntityStore(cfg.get("db_path", "./cointoss.db"))
    try:
        if args.command == "replay":
            counts = replay_file(store, args.path)
            _log(f"Replay finished: {counts}")
            print(_json_dumps(counts))
            return 0

        if args.command == "entity":
            try:
                kind = entity_type(args.kind)
            except KeyError as exc:
                parser.error(str(exc))
            entity = store.get(kind, args.id.lower())
            if entity is None:
                _log(f"{kind.kind} {args.id} not found")
                return 1
            print(_json_dumps(entity.to_dict()))
            return 0

        if args.command == "events":
            print(_json_dumps(_query_events(store, args.pool, args.limit)))
            return 0

        if args.command == "stats":
            chain_id = args.chain_id if args.chain_id is not None else cfg.get("chain_id")
            if chain_id is None:
                parser.error("--chain-id is required when the config has no chain_id")
            stats = store.get(NetworkStats, network_stats_id(int(chain_id)))
            if stats is None:
                _log(f"No stats for chain {chain_id}")
                return 1
            print(_json_dumps(stats.to_dict()))
            return 0
    finally:
        store.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
