"""Typed records for contract events and contract state.

Contract view functions return positional tuples. Each struct below has a
single ``from_tuple`` decoder so the field order lives in exactly one place.
"""

from dataclasses import asdict, dataclass
from enum import IntEnum
from typing import Any, Dict, Optional, Sequence

from .common import norm_addr, parse_int


class Group(IntEnum):
    NONE = 0
    A = 1
    B = 2

    @classmethod
    def parse(cls, value: Any) -> "Group":
        return cls(parse_int(value))

    @property
    def label(self) -> str:
        if self is Group.NONE:
            return "None"
        return f"Pool {self.name}"


@dataclass(frozen=True)
class StakeEvent:
    round_id: int
    user: str
    group: Group
    amount: int
    block_number: Optional[int] = None
    log_index: Optional[int] = None


@dataclass(frozen=True)
class RoundStartedEvent:
    round_id: int
    pool_a: int
    pool_b: int
    block_number: Optional[int] = None
    log_index: Optional[int] = None


@dataclass(frozen=True)
class WinnerDeclaredEvent:
    round_id: int
    winning_group: Group
    block_number: Optional[int] = None
    log_index: Optional[int] = None


@dataclass(frozen=True)
class PayoutClaimedEvent:
    round_id: int
    user: str
    amount: int
    block_number: Optional[int] = None
    log_index: Optional[int] = None


@dataclass(frozen=True)
class RoundOutcome:
    round_id: int
    pool_a: int
    pool_b: int
    winning_group: Group


def event_from_args(name: str, args: Dict[str, Any], block_number: Optional[int] = None,
                    log_index: Optional[int] = None) -> Optional[Any]:
    """Build a typed event from decoded log arguments.

    Returns None for event names the core does not consume. Raises
    ValueError/KeyError/TypeError when arguments are missing or malformed.
    """
    if name == "StakePlaced":
        return StakeEvent(
            round_id=parse_int(args["roundId"]),
            user=norm_addr(args["user"]),
            group=Group.parse(args["group"]),
            amount=parse_int(args["amount"]),
            block_number=block_number,
            log_index=log_index,
        )
    if name == "RoundStarted":
        return RoundStartedEvent(
            round_id=parse_int(args["roundId"]),
            pool_a=parse_int(args["poolA"]),
            pool_b=parse_int(args["poolB"]),
            block_number=block_number,
            log_index=log_index,
        )
    if name == "WinnerDeclared":
        return WinnerDeclaredEvent(
            round_id=parse_int(args["roundId"]),
            winning_group=Group.parse(args["winningGroup"]),
            block_number=block_number,
            log_index=log_index,
        )
    if name == "PayoutClaimed":
        return PayoutClaimedEvent(
            round_id=parse_int(args["roundId"]),
            user=norm_addr(args["user"]),
            amount=parse_int(args["amount"]),
            block_number=block_number,
            log_index=log_index,
        )
    return None


@dataclass(frozen=True)
class RoundState:
    level_id: int
    pool_a: int
    pool_b: int
    round_start_time: int
    created_at: int
    is_active: bool
    is_completed: bool
    is_cancelled: bool
    winning_group: Group

    @classmethod
    def from_tuple(cls, raw: Sequence[Any]) -> "RoundState":
        return cls(
            level_id=int(raw[0]),
            pool_a=int(raw[1]),
            pool_b=int(raw[2]),
            round_start_time=int(raw[3]),
            created_at=int(raw[4]),
            is_active=bool(raw[5]),
            is_completed=bool(raw[6]),
            is_cancelled=bool(raw[7]),
            winning_group=Group(int(raw[8])),
        )

    @property
    def has_started(self) -> bool:
        return self.round_start_time > 0

    @property
    def needs_winner(self) -> bool:
        return (
            self.has_started
            and not self.is_completed
            and not self.is_cancelled
            and self.winning_group == Group.NONE
        )


@dataclass(frozen=True)
class UserStake:
    amount: int
    group: int

    @classmethod
    def from_tuple(cls, raw: Sequence[Any]) -> "UserStake":
        return cls(amount=int(raw[0]), group=int(raw[1]))


@dataclass(frozen=True)
class GameState:
    entry_fee: int
    total_pool: int
    current_round: int
    start_time: int
    is_accepting_players: bool
    is_completed: bool
    active_player_count: int

    @classmethod
    def from_tuple(cls, raw: Sequence[Any]) -> "GameState":
        return cls(
            entry_fee=int(raw[0]),
            total_pool=int(raw[1]),
            current_round=int(raw[2]),
            start_time=int(raw[3]),
            is_accepting_players=bool(raw[4]),
            is_completed=bool(raw[5]),
            active_player_count=int(raw[6]),
        )

    @property
    def in_progress(self) -> bool:
        return not self.is_accepting_players and not self.is_completed


@dataclass(frozen=True)
class PlayerStats:
    claim_value: int
    current_choice: int
    is_alive: bool
    has_cashed_out: bool
    rounds_won: int

    @classmethod
    def from_tuple(cls, raw: Sequence[Any]) -> "PlayerStats":
        return cls(
            claim_value=int(raw[0]),
            current_choice=int(raw[1]),
            is_alive=bool(raw[2]),
            has_cashed_out=bool(raw[3]),
            rounds_won=int(raw[4]),
        )

    @property
    def has_submitted_choice(self) -> bool:
        return self.current_choice != 0

    @property
    def is_surviving(self) -> bool:
        return self.is_alive and not self.has_cashed_out


@dataclass(frozen=True)
class PlayerSlot:
    claim_value: int
    current_choice: int
    is_alive: bool
    has_cashed_out: bool
    has_submitted_choice: bool
    rounds_won: int
    joined_at: int

    @classmethod
    def from_tuple(cls, raw: Sequence[Any]) -> "PlayerSlot":
        return cls(
            claim_value=int(raw[0]),
            current_choice=int(raw[1]),
            is_alive=bool(raw[2]),
            has_cashed_out=bool(raw[3]),
            has_submitted_choice=bool(raw[4]),
            rounds_won=int(raw[5]),
            joined_at=int(raw[6]),
        )


@dataclass
class CallResult:
    success: bool
    value: Any = None
    error: Optional[str] = None


@dataclass(frozen=True)
class ClaimableEntry:
    round_or_game_id: int
    amount: int
    game_type: str
    winning_group: Optional[int] = None
    user_group: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
