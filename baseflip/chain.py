"""web3 boundary for the BaseFlip and Cash-Out-or-Die contracts.

Everything that touches the RPC provider goes through ``ChainClient``:
contract reads are decoded into the named records of ``baseflip.models``,
logs are fetched in chunks and decoded against the contract ABI, and
resolving transactions are signed locally with the bot key.
"""

import os
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from eth_account import Account
from hexbytes import HexBytes
from web3 import Web3
from web3._utils.events import get_event_data
from web3.exceptions import Web3RPCError

from .common import ZERO_ADDRESS, extract_abi, find_abi_file, load_json, log, parse_int, to_checksum
from .models import (
    CallResult,
    GameState,
    PlayerSlot,
    PlayerStats,
    RoundState,
    UserStake,
    event_from_args,
)


BASEFLIP = "BaseFlip"
CASHOUT_OR_DIE = "CashOutOrDie"


def _fn(name: str, inputs: List[Tuple[str, str]], outputs: List[Tuple[str, str]],
        mutability: str = "view") -> Dict[str, Any]:
    return {
        "type": "function",
        "name": name,
        "stateMutability": mutability,
        "inputs": [{"name": n, "type": t} for n, t in inputs],
        "outputs": [{"name": n, "type": t} for n, t in outputs],
    }


def _event(name: str, inputs: List[Tuple[str, str, bool]]) -> Dict[str, Any]:
    return {
        "type": "event",
        "name": name,
        "anonymous": False,
        "inputs": [{"name": n, "type": t, "indexed": idx} for n, t, idx in inputs],
    }


BASEFLIP_ABI: List[Dict[str, Any]] = [
    _event("StakePlaced", [("roundId", "uint256", True), ("user", "address", True),
                           ("group", "uint8", False), ("amount", "uint256", False)]),
    _event("RoundStarted", [("roundId", "uint256", True), ("poolA", "uint256", False),
                            ("poolB", "uint256", False)]),
    _event("WinnerDeclared", [("roundId", "uint256", True), ("winningGroup", "uint8", False)]),
    _event("PayoutClaimed", [("roundId", "uint256", True), ("user", "address", True),
                             ("amount", "uint256", False)]),
    _fn("currentRoundId", [], [("", "uint256")]),
    _fn(
        "rounds",
        [("roundId", "uint256")],
        [
            ("levelId", "uint256"),
            ("poolA", "uint256"),
            ("poolB", "uint256"),
            ("roundStartTime", "uint256"),
            ("createdAt", "uint256"),
            ("isActive", "bool"),
            ("isCompleted", "bool"),
            ("isCancelled", "bool"),
            ("winningGroup", "uint8"),
        ],
    ),
    _fn("userStakes", [("roundId", "uint256"), ("user", "address")],
        [("amount", "uint256"), ("group", "uint8")]),
    _fn("getLeaderboardTop", [("n", "uint256")], [("addresses", "address[]"), ("points", "uint256[]")]),
    _fn("declareWinner", [("roundId", "uint256"), ("winningGroup", "uint8")], [], "nonpayable"),
    _fn("claimWinnings", [("roundId", "uint256")], [], "nonpayable"),
]

CASHOUT_OR_DIE_ABI: List[Dict[str, Any]] = [
    _fn("currentGameId", [], [("", "uint256")]),
    _fn(
        "games",
        [("gameId", "uint256")],
        [
            ("entryFee", "uint256"),
            ("totalPool", "uint256"),
            ("currentRound", "uint256"),
            ("startTime", "uint256"),
            ("isAcceptingPlayers", "bool"),
            ("isCompleted", "bool"),
            ("activePlayerCount", "uint256"),
        ],
    ),
    _fn("getGamePlayers", [("gameId", "uint256")], [("", "address[]")]),
    _fn(
        "getPlayerStats",
        [("gameId", "uint256"), ("player", "address")],
        [
            ("claimValue", "uint256"),
            ("currentChoice", "uint8"),
            ("isAlive", "bool"),
            ("hasCashedOut", "bool"),
            ("roundsWon", "uint256"),
        ],
    ),
    _fn(
        "gamePlayers",
        [("gameId", "uint256"), ("player", "address")],
        [
            ("claimValue", "uint256"),
            ("currentChoice", "uint8"),
            ("isAlive", "bool"),
            ("hasCashedOut", "bool"),
            ("hasSubmittedChoice", "bool"),
            ("roundsWon", "uint256"),
            ("joinedAt", "uint256"),
        ],
    ),
    _fn("startGame", [("gameId", "uint256")], [], "nonpayable"),
    _fn("declareRoundWinner", [("gameId", "uint256"), ("winningGroup", "uint8")], [], "nonpayable"),
    _fn("joinGame", [("gameId", "uint256"), ("choice", "uint8")], [], "payable"),
    _fn("submitChoice", [("gameId", "uint256"), ("choice", "uint8")], [], "nonpayable"),
    _fn("cashOut", [("gameId", "uint256")], [], "nonpayable"),
    _fn("claimVictory", [("gameId", "uint256")], [], "nonpayable"),
]

BUILTIN_ABIS = {BASEFLIP: BASEFLIP_ABI, CASHOUT_OR_DIE: CASHOUT_OR_DIE_ABI}


class TransactionFailed(RuntimeError):
    """A submitted transaction was mined with a failing status."""


def event_signature(event_abi: Dict[str, Any]) -> str:
    types = ",".join(item["type"] for item in event_abi.get("inputs", []))
    return f"{event_abi['name']}({types})"


def event_topic(event_abi: Dict[str, Any]) -> bytes:
    return bytes(Web3.keccak(text=event_signature(event_abi)))


def address_topic(addr: str) -> str:
    return "0x" + "0" * 24 + addr.lower().replace("0x", "")


def _is_range_too_large(exc: Exception) -> bool:
    msg = str(exc).lower()
    return any(s in msg for s in ("query returned more than", "too many", "block range", "limit exceeded"))


class ChainClient:
    def __init__(self, config: Dict[str, Any], w3: Optional[Web3] = None):
        self.config = config
        self.rpc_http = config.get("rpc_http")
        self.chain_id = int(config.get("chain_id", 84532))
        self.abi_dir = config.get("abi_dir", "./abis")
        self.log_chunk_size = int(config.get("log_chunk_size", 10_000))
        self.receipt_timeout = int(config.get("receipt_timeout", 180))

        if w3 is None:
            if not self.rpc_http:
                raise RuntimeError("rpc_http is required")
            w3 = Web3(Web3.HTTPProvider(self.rpc_http, request_kwargs={"timeout": 30}))
        self.w3 = w3

        private_key = config.get("private_key")
        self.account = Account.from_key(private_key) if private_key else None

        self.addresses: Dict[str, Optional[str]] = {
            BASEFLIP: config.get("baseflip_address"),
            CASHOUT_OR_DIE: config.get("cashout_or_die_address"),
        }
        self._contracts: Dict[str, Any] = {}
        self._abis: Dict[str, List[Dict[str, Any]]] = {}
        self.topic_to_abi: Dict[str, Dict[bytes, Dict[str, Any]]] = {}

    # -- contracts -------------------------------------------------------

    def address_of(self, name: str) -> str:
        address = self.addresses.get(name)
        if not address:
            raise ValueError(f"Missing address for contract {name}")
        return to_checksum(address)

    def abi_for(self, name: str) -> List[Dict[str, Any]]:
        if name not in self._abis:
            self._abis[name] = self._load_abi_for_contract(name)
            events = [item for item in self._abis[name] if item.get("type") == "event"]
            self.topic_to_abi[name] = {
                event_topic(item): item for item in events if not item.get("anonymous")
            }
        return self._abis[name]

    def _load_abi_for_contract(self, name: str) -> List[Dict[str, Any]]:
        entry = (self.config.get("contracts") or {}).get(name) or {}
        abi_source = entry.get("abi") if isinstance(entry, dict) else None
        if isinstance(abi_source, list):
            return abi_source
        if isinstance(abi_source, str):
            abi_path = abi_source
            if os.path.isdir(abi_path):
                abi_path = find_abi_file(name, abi_path)
            if abi_path and os.path.exists(abi_path):
                abi = extract_abi(load_json(abi_path))
                if abi:
                    return abi
            raise FileNotFoundError(f"ABI path not found for {name}: {abi_source}")

        abi_path = find_abi_file(name, self.abi_dir)
        if abi_path:
            abi = extract_abi(load_json(abi_path))
            if abi:
                return abi
        return BUILTIN_ABIS[name]

    def contract(self, name: str) -> Any:
        if name not in self._contracts:
            self._contracts[name] = self.w3.eth.contract(address=self.address_of(name), abi=self.abi_for(name))
        return self._contracts[name]

    # -- single-pool reads -----------------------------------------------

    def block_number(self) -> int:
        return int(self.w3.eth.block_number)

    def current_round_id(self) -> int:
        return int(self.contract(BASEFLIP).functions.currentRoundId().call())

    def get_round(self, round_id: int) -> RoundState:
        return RoundState.from_tuple(self.contract(BASEFLIP).functions.rounds(round_id).call())

    def get_user_stake(self, round_id: int, user: str) -> UserStake:
        raw = self.contract(BASEFLIP).functions.userStakes(round_id, to_checksum(user)).call()
        return UserStake.from_tuple(raw)

    def leaderboard_top(self, n: int = 100) -> Dict[str, int]:
        addresses, points = self.contract(BASEFLIP).functions.getLeaderboardTop(n).call()
        out: Dict[str, int] = {}
        for addr, pts in zip(addresses, points):
            if addr.lower() == ZERO_ADDRESS:
                continue
            out[addr.lower()] = int(pts)
        return out

    # -- elimination reads -----------------------------------------------

    def current_game_id(self) -> int:
        return int(self.contract(CASHOUT_OR_DIE).functions.currentGameId().call())

    def get_game(self, game_id: int) -> GameState:
        return GameState.from_tuple(self.contract(CASHOUT_OR_DIE).functions.games(game_id).call())

    def get_game_players(self, game_id: int) -> List[str]:
        return [a.lower() for a in self.contract(CASHOUT_OR_DIE).functions.getGamePlayers(game_id).call()]

    def get_player_stats(self, game_id: int, player: str) -> PlayerStats:
        raw = self.contract(CASHOUT_OR_DIE).functions.getPlayerStats(game_id, to_checksum(player)).call()
        return PlayerStats.from_tuple(raw)

    def get_player_slot(self, game_id: int, player: str) -> PlayerSlot:
        raw = self.contract(CASHOUT_OR_DIE).functions.gamePlayers(game_id, to_checksum(player)).call()
        return PlayerSlot.from_tuple(raw)

    def batch_call(self, calls: Sequence[Tuple[Callable[..., Any], Tuple[Any, ...]]]) -> List[CallResult]:
        """Run each read independently; one failure does not affect the others."""
        results: List[CallResult] = []
        for fn, args in calls:
            try:
                results.append(CallResult(success=True, value=fn(*args)))
            except Exception as exc:
                results.append(CallResult(success=False, error=str(exc)))
        return results

    # -- logs ------------------------------------------------------------

    def get_logs(self, name: str, from_block: int, to_block: int,
                 topics: Optional[List[Any]] = None) -> List[Dict[str, Any]]:
        """Fetch raw logs in chunks, halving the chunk when the provider refuses a range."""
        address = self.address_of(name)
        current = max(from_block, 0)
        batch_size = self.log_chunk_size
        out: List[Dict[str, Any]] = []

        while current <= to_block:
            batch_to = min(current + batch_size - 1, to_block)
            params: Dict[str, Any] = {"fromBlock": current, "toBlock": batch_to, "address": address}
            if topics:
                params["topics"] = topics
            try:
                logs = self.w3.eth.get_logs(params)
            except (ValueError, Web3RPCError) as exc:
                if batch_size <= 1 or not _is_range_too_large(exc):
                    raise
                batch_size = max(batch_size // 2, 1)
                log(f"WARN: get_logs too large ({current}-{batch_to}), reducing batch size to {batch_size}")
                continue
            out.extend(logs)
            current = batch_to + 1

        return sorted(out, key=lambda x: (x.get("blockNumber", 0), x.get("logIndex", 0)))

    def decode_log(self, name: str, raw: Dict[str, Any]) -> Optional[Tuple[str, Dict[str, Any]]]:
        self.abi_for(name)
        topics = raw.get("topics") or []
        if not topics:
            return None
        event_abi = self.topic_to_abi[name].get(bytes(HexBytes(topics[0])))
        if event_abi is None:
            return None
        try:
            data = get_event_data(self.w3.codec, event_abi, raw)
        except Exception as exc:
            log(f"WARN: Failed decoding {event_abi['name']} log: {exc}")
            return None
        return data["event"], dict(data["args"])

    def fetch_events(self, from_block: int, to_block: int, event_names: Iterable[str],
                     user: Optional[str] = None) -> List[Any]:
        """Fetch and decode BaseFlip events into typed records, oldest first."""
        abi = self.abi_for(BASEFLIP)
        wanted = [item for item in abi if item.get("type") == "event" and item.get("name") in set(event_names)]
        if not wanted:
            return []
        topic0 = [Web3.to_hex(event_topic(item)) for item in wanted]
        topics: List[Any] = [topic0]
        if user:
            topics.extend([None, address_topic(user)])

        events: List[Any] = []
        for raw in self.get_logs(BASEFLIP, from_block, to_block, topics=topics):
            decoded = self.decode_log(BASEFLIP, raw)
            if decoded is None:
                continue
            event_name, args = decoded
            try:
                event = event_from_args(
                    event_name,
                    args,
                    block_number=parse_int(raw.get("blockNumber", 0)),
                    log_index=parse_int(raw.get("logIndex", 0)),
                )
            except (KeyError, TypeError, ValueError) as exc:
                log(f"WARN: Skipping malformed {event_name} log: {exc}")
                continue
            if event is not None:
                events.append(event)
        return events

    # -- writes ----------------------------------------------------------

    def _transact(self, name: str, fn_name: str, *args: Any, value: int = 0) -> str:
        if self.account is None:
            raise RuntimeError("private_key is required to submit transactions")
        fn = getattr(self.contract(name).functions, fn_name)(*args)
        tx = fn.build_transaction(
            {
                "from": self.account.address,
                "nonce": self.w3.eth.get_transaction_count(self.account.address),
                "chainId": self.chain_id,
                "value": value,
            }
        )
        signed = self.account.sign_transaction(tx)
        tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
        receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.receipt_timeout)
        tx_hex = Web3.to_hex(tx_hash)
        if receipt.get("status") != 1:
            raise TransactionFailed(f"{fn_name} tx failed: {tx_hex}")
        return tx_hex

    def declare_winner(self, round_id: int, winning_group: int) -> str:
        return self._transact(BASEFLIP, "declareWinner", round_id, winning_group)

    def claim_winnings(self, round_id: int) -> str:
        return self._transact(BASEFLIP, "claimWinnings", round_id)

    def start_game(self, game_id: int) -> str:
        return self._transact(CASHOUT_OR_DIE, "startGame", game_id)

    def declare_round_winner(self, game_id: int, winning_group: int) -> str:
        return self._transact(CASHOUT_OR_DIE, "declareRoundWinner", game_id, winning_group)

    def join_game(self, game_id: int, choice: int, entry_fee: int) -> str:
        return self._transact(CASHOUT_OR_DIE, "joinGame", game_id, choice, value=entry_fee)

    def submit_choice(self, game_id: int, choice: int) -> str:
        return self._transact(CASHOUT_OR_DIE, "submitChoice", game_id, choice)

    def cash_out(self, game_id: int) -> str:
        return self._transact(CASHOUT_OR_DIE, "cashOut", game_id)

    def claim_victory(self, game_id: int) -> str:
        return self._transact(CASHOUT_OR_DIE, "claimVictory", game_id)

    @property
    def bot_address(self) -> Optional[str]:
        return self.account.address if self.account else None
