"""Live ingestion of CoinToss logs: HTTP backfill plus a websocket log subscription.

Logs are decoded against the contract ABI, sorted by (block, logIndex) and
handed one at a time to the :class:`Dispatcher`. Reorg handling is left to
the upstream node; logs flagged ``removed`` are reported and not applied.
"""

import asyncio
import json
import os
from typing import Any, Dict, List, Optional

from hexbytes import HexBytes
from web3 import Web3
from web3._utils.events import event_abi_to_log_topic, get_event_data
import websockets

from .chain_log import ChainLog
from .dispatcher import Dispatcher, DispatchResult
from .errors import MalformedEventError
from .store import EntityStore
from .utils import _load_json, _log, _parse_int, _to_checksum


def _normalize_log(log: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(log)
    if isinstance(out.get("transactionHash"), str):
        out["transactionHash"] = HexBytes(out["transactionHash"])
    if isinstance(out.get("data"), str):
        out["data"] = HexBytes(out["data"])
    if isinstance(out.get("topics"), list):
        out["topics"] = [HexBytes(t) if isinstance(t, str) else t for t in out["topics"]]
    for key in ("blockNumber", "transactionIndex", "logIndex"):
        if key in out:
            out[key] = _parse_int(out[key])
    if "address" in out and isinstance(out["address"], str):
        out["address"] = _to_checksum(out["address"])
    return out


class EventIndexer:
    def __init__(self, config: Dict[str, Any], store: Optional[EntityStore] = None):
        self.config = config
        self.rpc_ws = config.get("rpc_ws")
        self.rpc_http = config.get("rpc_http")
        self.db_path = config.get("db_path", "./cointoss.db")
        self.abi_dir = config.get("abi_dir")
        self.start_block = int(config.get("start_block", 0))
        self.reconnect_delay = int(config.get("reconnect_delay", 5))
        self.batch_size = int(config.get("batch_size", 1000))
        self.health_check_interval = int(config.get("health_check_interval", 30))
        self.health_check_threshold = int(config.get("health_check_threshold", 3))
        self.chain_id: Optional[int] = config.get("chain_id")

        self.w3_http = Web3(Web3.HTTPProvider(self.rpc_http)) if self.rpc_http else None
        self.contracts: Dict[str, Dict[str, Any]] = {}
        self.contract_addresses: List[str] = []
        self.topic_to_abi: Dict[str, Dict[str, Dict[str, Any]]] = {}

        self.store = store
        self.dispatcher: Optional[Dispatcher] = Dispatcher(store) if store else None
        self.db_lock = asyncio.Lock()

        self.last_processed_block: Optional[int] = None
        self._block_ts_cache: Dict[int, int] = {}
        self._ws_id = 0

    async def start(self) -> None:
        await self.init()
        await self.backfill_missed_blocks()
        await asyncio.gather(
            self.subscribe_to_events(),
            self._health_check_loop(),
        )

    async def init(self) -> None:
        if self.store is None:
            self.store = EntityStore(self.db_path)
            self.dispatcher = Dispatcher(self.store)
        await self.load_contracts()
        if self.chain_id is None:
            if not self.w3_http:
                raise RuntimeError("chain_id or rpc_http is required")
            self.chain_id = int(self.w3_http.eth.chain_id)
        self.chain_id = int(self.chain_id)
        resume = self.store.resume_block(self.chain_id, self.start_block)
        self.last_processed_block = resume - 1
        _log(f"Indexing chain {self.chain_id}, resuming at block {resume}")

    async def load_contracts(self) -> None:
        contracts_cfg = self.config.get("contracts", {})
        if not contracts_cfg:
            raise ValueError("config.contracts is empty")

        for name, entry in contracts_cfg.items():
            if isinstance(entry, dict):
                address = entry.get("address")
                abi_source = entry.get("abi")
            else:
                address = entry
                abi_source = None

            if not address:
                raise ValueError(f"Missing address for contract {name}")
            checksum = _to_checksum(address)
            abi = self._load_abi_for_contract(name, abi_source)
            if not abi:
                raise ValueError(f"No event ABI for contract {name}")
            self.contracts[checksum] = {"name": name, "address": checksum, "abi": abi}
            _log(f"Loaded {name} at {checksum}")

        self.contract_addresses = sorted(self.contracts.keys())
        self._build_event_maps()

    def _load_abi_for_contract(self, name: str, abi_source: Optional[Any]) -> Optional[List[Dict[str, Any]]]:
        if isinstance(abi_source, list):
            return abi_source
        if isinstance(abi_source, str):
            abi_path = abi_source
            if os.path.isdir(abi_path):
                abi_path = self._find_abi_file(name, abi_path)
            if abi_path and os.path.exists(abi_path):
                return self._extract_abi(_load_json(abi_path))
            raise FileNotFoundError(f"ABI path not found for {name}: {abi_source}")

        abi_path = self._find_abi_file(name, self.abi_dir)
        if abi_path:
            return self._extract_abi(_load_json(abi_path))
        _log(f"WARN: ABI not found for {name} (searched in {self.abi_dir})")
        return None

    @staticmethod
    def _extract_abi(abi_json: Any) -> Optional[List[Dict[str, Any]]]:
        if isinstance(abi_json, list):
            return abi_json
        if isinstance(abi_json, dict) and "abi" in abi_json:
            return abi_json.get("abi")
        return None

    @staticmethod
    def _find_abi_file(contract_name: str, abi_dir: Optional[str]) -> Optional[str]:
        if not abi_dir or not os.path.exists(abi_dir):
            return None
        for filename in (f"{contract_name}.json", f"{contract_name}.abi.json"):
            direct = os.path.join(abi_dir, filename)
            if os.path.exists(direct):
                return direct

        for root, _dirs, files in os.walk(abi_dir):
            if f"{contract_name}.json" in files:
                return os.path.join(root, f"{contract_name}.json")
        return None

    def _build_event_maps(self) -> None:
        self.topic_to_abi.clear()
        for address, meta in self.contracts.items():
            abi = meta.get("abi") or []
            topic_map: Dict[str, Dict[str, Any]] = {}
            for event_abi in abi:
                if not isinstance(event_abi, dict) or event_abi.get("type") != "event" or event_abi.get("anonymous"):
                    continue
                topic = HexBytes(event_abi_to_log_topic(event_abi)).hex()
                topic_map[topic] = event_abi
            self.topic_to_abi[address] = topic_map

    async def backfill_missed_blocks(self) -> None:
        if not self.w3_http:
            raise RuntimeError("rpc_http is required for backfills")
        latest = self.w3_http.eth.block_number
        last = self.last_processed_block if self.last_processed_block is not None else self.start_block - 1
        from_block = max(last + 1, self.start_block)
        if from_block > latest:
            return
        await self.backfill_range(from_block, latest)

    async def backfill_range(self, from_block: int, to_block: int) -> None:
        if not self.w3_http:
            raise RuntimeError("rpc_http is required for backfills")
        current = from_block
        batch_size = self.batch_size

        while current <= to_block:
            batch_to = min(current + batch_size - 1, to_block)
            try:
                logs = self.w3_http.eth.get_logs(
                    {
                        "fromBlock": current,
                        "toBlock": batch_to,
                        "address": self.contract_addresses,
                    }
                )
            except ValueError as exc:
                msg = str(exc).lower()
                if batch_size <= 1:
                    raise
                if "query returned more than" in msg or "too many" in msg:
                    batch_size = max(batch_size // 2, 1)
                    _log(
                        f"WARN: get_logs too large ({current}-{batch_to}), reducing batch size to {batch_size}"
                    )
                    continue
                raise
            logs = sorted(logs, key=lambda x: (x.get("blockNumber", 0), x.get("logIndex", 0)))
            for raw in logs:
                await self.process_log(raw)
            batch_ts = await self._get_block_timestamp(batch_to)
            async with self.db_lock:
                self.store.mark_block_done(self.chain_id, batch_to, batch_ts)
            self.last_processed_block = max(self.last_processed_block or 0, batch_to)
            if logs:
                _log(f"Backfilled {len(logs)} logs in blocks {current}-{batch_to}")
            current = batch_to + 1

    async def subscribe_to_events(self) -> None:
        if not self.rpc_ws:
            raise RuntimeError("rpc_ws is required for websocket subscription")

        backoff = max(self.reconnect_delay, 1)
        max_backoff = 60

        while True:
            try:
                await self.backfill_missed_blocks()
                async with websockets.connect(self.rpc_ws, ping_interval=20, ping_timeout=20) as ws:
                    _log("Websocket connected, subscribing to logs...")
                    sub_id = await self._ws_subscribe(ws)
                    _log(f"Subscribed: {sub_id}")
                    backoff = max(self.reconnect_delay, 1)

                    async for message in ws:
                        payload = json.loads(message)
                        if payload.get("method") == "eth_subscription":
                            log = payload.get("params", {}).get("result")
                            if log:
                                await self._handle_ws_log(log)
                        elif payload.get("id") is not None and payload.get("error"):
                            _log(f"WS error: {payload}")
            except MalformedEventError:
                raise
            except Exception as exc:
                _log(f"Websocket error: {exc}")
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, max_backoff)

    async def _ws_subscribe(self, ws: Any) -> str:
        self._ws_id += 1
        req_id = self._ws_id
        payload = {
            "jsonrpc": "2.0",
            "id": req_id,
            "method": "eth_subscribe",
            "params": ["logs", {"address": self.contract_addresses}],
        }
        await ws.send(json.dumps(payload))

        while True:
            message = await ws.recv()
            data = json.loads(message)
            if data.get("id") == req_id:
                if "result" in data:
                    return data["result"]
                raise RuntimeError(f"Subscribe failed: {data}")
            if data.get("method") == "eth_subscription":
                log = data.get("params", {}).get("result")
                if log:
                    await self._handle_ws_log(log)

    async def _handle_ws_log(self, log: Dict[str, Any]) -> None:
        normalized = _normalize_log(log)
        if normalized.get("removed"):
            _log(
                f"WARN: removed log at block {normalized.get('blockNumber')} "
                f"index {normalized.get('logIndex')} ignored; derived state is not rolled back"
            )
            return

        block_number = normalized.get("blockNumber")
        if block_number is not None and self.last_processed_block is not None:
            if block_number > self.last_processed_block + 1:
                await self.backfill_range(self.last_processed_block + 1, block_number - 1)

        await self.process_log(normalized)
        if block_number is not None:
            self.last_processed_block = max(self.last_processed_block or 0, block_number - 1)

    async def process_log(self, log: Dict[str, Any]) -> Optional[DispatchResult]:
        if self.dispatcher is None:
            raise RuntimeError("Store not initialized")

        normalized = _normalize_log(log)
        decoded = self._decode_log(normalized)
        if decoded is None:
            return None
        block_number = normalized.get("blockNumber")
        chain_log = ChainLog(
            name=decoded["event_name"],
            chain_id=self.chain_id,
            block_number=block_number,
            block_timestamp=await self._get_block_timestamp(block_number),
            log_index=normalized.get("logIndex", 0),
            params=decoded["args"],
            transaction_hash=normalized.get("transactionHash").hex()
            if normalized.get("transactionHash")
            else None,
        )
        async with self.db_lock:
            return self.dispatcher.dispatch(chain_log)

    def _decode_log(self, log: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        address = log.get("address")
        topics = log.get("topics") or []
        topic0 = topics[0].hex() if topics else None

        event_abi = self.topic_to_abi.get(address, {}).get(topic0)
        if event_abi is None:
            _log(f"WARN: unknown topic {topic0} from {address} at block {log.get('blockNumber')}, skipping")
            return None
        try:
            event_data = get_event_data(self.w3_http.codec, event_abi, log)
        except Exception as exc:
            raise MalformedEventError(
                f"cannot decode {event_abi.get('name')} log from {address} at block "
                f"{log.get('blockNumber')} index {log.get('logIndex')}: {exc}"
            ) from exc
        return {
            "event_name": event_data.get("event"),
            "args": dict(event_data.get("args", {})),
        }

    async def _get_block_timestamp(self, block_number: Optional[int]) -> Optional[int]:
        if block_number is None:
            return None
        if block_number in self._block_ts_cache:
            return self._block_ts_cache[block_number]
        block = self.w3_http.eth.get_block(block_number)
        ts = block.get("timestamp")
        self._block_ts_cache[block_number] = ts
        return ts

    async def _health_check_loop(self) -> None:
        while True:
            await asyncio.sleep(self.health_check_interval)
            try:
                if not self.w3_http or self.last_processed_block is None:
                    continue
                latest = self.w3_http.eth.block_number
                if latest > self.last_processed_block + self.health_check_threshold:
                    await self.backfill_missed_blocks()
            except Exception as exc:
                _log(f"Health check error: {exc}")
