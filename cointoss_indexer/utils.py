import json
import sys
import time
from enum import Enum
from typing import Any

from hexbytes import HexBytes
from web3 import Web3


def _log(msg: str) -> None:
    ts = time.strftime("%Y-%m-%d %H:%M:%S", time.gmtime())
    sys.stderr.write(f"[{ts} UTC] {msg}\n")
    sys.stderr.flush()


def _json_default(obj: Any) -> Any:
    if isinstance(obj, HexBytes):
        return obj.hex()
    if isinstance(obj, (bytes, bytearray)):
        return "0x" + obj.hex()
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, set):
        return sorted(obj)
    return str(obj)


def _json_dumps(obj: Any) -> str:
    return json.dumps(obj, default=_json_default, ensure_ascii=True, sort_keys=True)


def _load_json(path: str) -> Any:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def _to_checksum(addr: str) -> str:
    return Web3.to_checksum_address(addr)


def _db_addr(addr: Any) -> str:
    if isinstance(addr, (bytes, bytearray)):
        addr = "0x" + bytes(addr).hex()
    return str(addr).lower()


def _parse_int(value: Any) -> int:
    if isinstance(value, bool):
        raise TypeError("boolean is not a valid integer field")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        if value.startswith("0x"):
            return int(value, 16)
        return int(value)
    return int(value)
