"""Leaderboard recomputation from the BaseFlip event log.

Points are never stored: every refresh replays the full log from scratch.
Each stake in a resolved round earns a share of a notional 100-point pool
per 0.1 ETH staked, split 80/20 between the winning and losing side:

    share  = amount / REFERENCE_UNIT * 100
    winner = round(share * 1.6)
    loser  = round(share * 0.4)

All arithmetic is done on integers so the same log always yields the same
leaderboard.
"""

import asyncio
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from .common import log, norm_addr
from .models import Group, RoundOutcome, RoundStartedEvent, StakeEvent, WinnerDeclaredEvent


REFERENCE_UNIT = 10**17  # 0.1 ETH in wei
WINNER_NUMERATOR = 160  # share * 1.6 == amount * 160 / REFERENCE_UNIT
LOSER_NUMERATOR = 40
MIN_AWARD = 1
DEFAULT_TOP_N = 100
REFERRAL_BONUS = 5
LEGACY_POINTS_NUM, LEGACY_POINTS_DEN = 3, 10

RANKED = "ranked"
OVERFLOW = "overflow"
UNRANKED = "unranked"


@dataclass(frozen=True)
class LeaderboardEntry:
    address: str
    points: int
    rank: int


@dataclass(frozen=True)
class FocusStats:
    address: str
    points: int
    rank: Optional[int]
    status: str

    @property
    def display_rank(self) -> str:
        if self.rank is not None:
            return str(self.rank)
        return "100+" if self.status == OVERFLOW else "Unranked"


@dataclass
class Leaderboard:
    entries: List[LeaderboardEntry]
    focus: Optional[FocusStats] = None
    points: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        current = None
        if self.focus is not None:
            current = asdict(self.focus)
            current["displayRank"] = self.focus.display_rank
        return {
            "entries": [asdict(e) for e in self.entries],
            "currentUser": current,
        }


def _round_half_up(numerator: int, denominator: int) -> int:
    return (2 * numerator + denominator) // (2 * denominator)


def stake_points(amount: int, is_winner: bool) -> int:
    factor = WINNER_NUMERATOR if is_winner else LOSER_NUMERATOR
    return max(_round_half_up(amount * factor, REFERENCE_UNIT), MIN_AWARD)


def build_outcomes(events: Iterable[Any]) -> Dict[int, RoundOutcome]:
    """Join RoundStarted pools with WinnerDeclared results; first declaration wins."""
    winners: Dict[int, Group] = {}
    pools: Dict[int, Tuple[int, int]] = {}
    for event in events:
        if isinstance(event, WinnerDeclaredEvent):
            if event.winning_group in (Group.A, Group.B):
                winners.setdefault(event.round_id, event.winning_group)
        elif isinstance(event, RoundStartedEvent):
            pools.setdefault(event.round_id, (event.pool_a, event.pool_b))
    return {
        rid: RoundOutcome(rid, pools[rid][0], pools[rid][1], winner)
        for rid, winner in winners.items()
        if rid in pools
    }


def _valid_stake(event: StakeEvent) -> bool:
    return (
        isinstance(event.amount, int)
        and event.amount >= 0
        and event.group in (Group.A, Group.B)
        and bool(event.user)
    )


def play_points(events: Iterable[Any]) -> Dict[str, int]:
    events = list(events)
    outcomes = build_outcomes(events)
    points: Dict[str, int] = {}
    for event in events:
        if not isinstance(event, StakeEvent) or not _valid_stake(event):
            continue
        outcome = outcomes.get(event.round_id)
        if outcome is None:
            continue
        user = norm_addr(event.user)
        awarded = stake_points(event.amount, event.group == outcome.winning_group)
        points[user] = points.get(user, 0) + awarded
    return points


def rank_points(points: Dict[str, int], top_n: int = DEFAULT_TOP_N) -> List[LeaderboardEntry]:
    ordered = sorted(points.items(), key=lambda item: -item[1])
    return [
        LeaderboardEntry(address=addr, points=pts, rank=i + 1)
        for i, (addr, pts) in enumerate(ordered[:top_n])
    ]


def focus_stats(address: str, points: Dict[str, int], entries: List[LeaderboardEntry]) -> FocusStats:
    addr = norm_addr(address)
    pts = points.get(addr, 0)
    for entry in entries:
        if entry.address == addr:
            return FocusStats(addr, pts, entry.rank, RANKED)
    return FocusStats(addr, pts, None, OVERFLOW if pts > 0 else UNRANKED)


def recompute(
    events: Iterable[Any],
    focus_address: Optional[str] = None,
    top_n: int = DEFAULT_TOP_N,
    referrals: Optional[Dict[str, List[str]]] = None,
    streak_bonuses: Optional[Dict[str, int]] = None,
    legacy_points: Optional[Dict[str, int]] = None,
) -> Leaderboard:
    points = play_points(events)

    for addr, farmed in (legacy_points or {}).items():
        addr = norm_addr(addr)
        if addr not in points and farmed:
            points[addr] = int(farmed) * LEGACY_POINTS_NUM // LEGACY_POINTS_DEN

    if referrals:
        earned = dict(points)
        for referrer, referees in referrals.items():
            qualified = [r for r in referees if earned.get(norm_addr(r), 0) > 0]
            if qualified:
                referrer = norm_addr(referrer)
                points[referrer] = points.get(referrer, 0) + len(qualified) * REFERRAL_BONUS

    for addr, bonus in (streak_bonuses or {}).items():
        if bonus > 0:
            addr = norm_addr(addr)
            points[addr] = points.get(addr, 0) + int(bonus)

    entries = rank_points(points, top_n)
    focus = focus_stats(focus_address, points, entries) if focus_address else None
    return Leaderboard(entries=entries, focus=focus, points=points)


class LeaderboardService:
    """Keeps the latest leaderboard snapshot, refreshing it on a fixed interval."""

    def __init__(
        self,
        load_events: Callable[[], Iterable[Any]],
        top_n: int = DEFAULT_TOP_N,
        interval: float = 45,
        referrals: Optional[Any] = None,
        streaks: Optional[Any] = None,
        legacy_points: Optional[Callable[[], Dict[str, int]]] = None,
    ):
        self.load_events = load_events
        self.top_n = top_n
        self.interval = interval
        self.referrals = referrals
        self.streaks = streaks
        self.legacy_points = legacy_points
        self.snapshot: Optional[Leaderboard] = None
        self.updated_at: Optional[int] = None

    def refresh(self) -> Leaderboard:
        events = list(self.load_events())
        legacy = None
        if self.legacy_points is not None:
            try:
                legacy = self.legacy_points()
            except Exception as exc:
                log(f"WARN: Could not fetch on-chain leaderboard: {exc}")
        referrals = self.referrals.raw_referrals() if self.referrals is not None else None
        bonuses = self.streaks.bonus_points() if self.streaks is not None else None

        self.snapshot = recompute(
            events,
            top_n=self.top_n,
            referrals=referrals,
            streak_bonuses=bonuses,
            legacy_points=legacy,
        )
        self.updated_at = int(time.time())
        log(f"Leaderboard refreshed: {len(events)} events, {len(self.snapshot.points)} addresses")
        return self.snapshot

    def view(self, focus_address: Optional[str] = None) -> Dict[str, Any]:
        if self.snapshot is None:
            return {"entries": [], "currentUser": None, "updatedAt": None}
        board = Leaderboard(entries=self.snapshot.entries, points=self.snapshot.points)
        if focus_address:
            board.focus = focus_stats(focus_address, self.snapshot.points, self.snapshot.entries)
        out = board.to_dict()
        out["updatedAt"] = self.updated_at
        return out

    async def run_forever(self) -> None:
        while True:
            try:
                await asyncio.to_thread(self.refresh)
            except Exception as exc:
                log(f"Leaderboard refresh error: {exc}")
            await asyncio.sleep(self.interval)
