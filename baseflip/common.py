"""Small helpers shared by every BaseFlip component."""

import json
import os
import sys
import time
from typing import Any, Dict, List, Optional

from hexbytes import HexBytes
from web3 import Web3


ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

DEFAULT_CONFIG: Dict[str, Any] = {
    "rpc_http": "https://sepolia.base.org",
    "chain_id": 84532,
    "private_key": None,
    "baseflip_address": None,
    "cashout_or_die_address": None,
    "abi_dir": "./abis",
    "contracts": {},
    "events_db": None,
    "start_block": 0,
    "streak_db": "./streak_data.json",
    "referral_db": "./referral_data.json",
    "poll_interval": 10,
    "min_players": 2,
    "lobby_countdown": 30,
    "round_delay": 15,
    "grace_period": 5,
    "leaderboard_interval": 45,
    "leaderboard_size": 100,
    "scan_block_window": 500_000,
    "log_chunk_size": 10_000,
    "recent_rounds": 20,
    "recent_games": 10,
    "receipt_timeout": 180,
    "api_host": "0.0.0.0",
    "api_port": 3000,
}


def log(msg: str) -> None:
    ts = time.strftime("%Y-%m-%d %H:%M:%S", time.gmtime())
    sys.stderr.write(f"[{ts} UTC] {msg}\n")
    sys.stderr.flush()


def _json_default(obj: Any) -> Any:
    if isinstance(obj, (HexBytes, bytes, bytearray)):
        return Web3.to_hex(bytes(obj))
    if isinstance(obj, set):
        return sorted(obj)
    return str(obj)


def json_dumps(obj: Any, indent: Optional[int] = None) -> str:
    return json.dumps(obj, default=_json_default, ensure_ascii=True, indent=indent)


def load_json(path: str) -> Any:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def to_checksum(addr: str) -> str:
    return Web3.to_checksum_address(addr)


def norm_addr(addr: str) -> str:
    return str(addr or "").lower()


def parse_int(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError(f"not an integer: {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        if value.startswith("0x"):
            return int(value, 16)
        return int(value)
    return int(value)


def short_addr(addr: str) -> str:
    a = str(addr or "")
    if len(a) > 16:
        return f"{a[:6]}...{a[-4:]}"
    return a


def format_eth(wei: int) -> str:
    sign = "-" if wei < 0 else ""
    x = abs(wei)
    whole = x // 10**18
    frac = x % 10**18
    if frac == 0:
        return f"{sign}{whole}"
    s = f"{frac:018d}".rstrip("0")
    return f"{sign}{whole}.{s}"


def extract_abi(abi_json: Any) -> Optional[List[Dict[str, Any]]]:
    if isinstance(abi_json, list):
        return abi_json
    if isinstance(abi_json, dict) and "abi" in abi_json:
        return abi_json.get("abi")
    return None


def find_abi_file(contract_name: str, abi_dir: str) -> Optional[str]:
    if not abi_dir or not os.path.exists(abi_dir):
        return None
    for candidate in (f"{contract_name}.json", f"{contract_name}.abi.json"):
        direct = os.path.join(abi_dir, candidate)
        if os.path.exists(direct):
            return direct

    for root, _dirs, files in os.walk(abi_dir):
        for filename in sorted(files):
            if filename == f"{contract_name}.json":
                return os.path.join(root, filename)
    return None


def load_config(path: Optional[str]) -> Dict[str, Any]:
    cfg: Dict[str, Any] = dict(DEFAULT_CONFIG)
    if path and os.path.exists(path):
        cfg.update(load_json(path))
    elif path:
        log(f"WARN: config {path} not found, using defaults")

    env_overrides = {
        "private_key": "PRIVATE_KEY",
        "rpc_http": "RPC_HTTP",
        "baseflip_address": "BASEFLIP_CONTRACT_ADDRESS",
        "cashout_or_die_address": "CASHOUTORDIE_CONTRACT_ADDRESS",
    }
    for key, env_name in env_overrides.items():
        value = os.environ.get(env_name)
        if value:
            cfg[key] = value
    return cfg
