import os
from typing import Any, Dict

from .utils import _load_json

DEFAULT_ABI_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "abi")

DEFAULTS: Dict[str, Any] = {
    "rpc_ws": None,
    "rpc_http": None,
    "chain_id": None,
    "db_path": "./cointoss.db",
    "abi_dir": DEFAULT_ABI_DIR,
    "start_block": 0,
    "batch_size": 1000,
    "reconnect_delay": 5,
    "health_check_interval": 30,
    "health_check_threshold": 3,
    "contracts": {},
}


def load_config(path: str) -> Dict[str, Any]:
    cfg = _load_json(path)
    if not isinstance(cfg, dict):
        raise ValueError(f"config {path} must be a JSON object")
    for key, value in DEFAULTS.items():
        if key not in cfg:
            cfg[key] = dict(value) if isinstance(value, dict) else value
    return cfg
