"""Per-address win streaks with milestone bonuses and one-shot loss protection."""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from .common import log, norm_addr
from .store import JsonFileStore


WIN = "win"
LOSS = "loss"

# streak length -> bonus points; every multiple of 5 above 5 also pays MILESTONE_REPEAT_BONUS
MILESTONE_BONUSES = {2: 1, 3: 2, 5: 5}
MILESTONE_REPEAT_EVERY = 5
MILESTONE_REPEAT_BONUS = 5


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def milestone_bonus(streak: int) -> int:
    if streak in MILESTONE_BONUSES:
        return MILESTONE_BONUSES[streak]
    if streak > MILESTONE_REPEAT_EVERY and streak % MILESTONE_REPEAT_EVERY == 0:
        return MILESTONE_REPEAT_BONUS
    return 0


@dataclass
class UserStreak:
    current_streak: int = 0
    max_streak: int = 0
    last_round_id: int = 0
    last_result: Optional[str] = None
    streak_at_loss: int = 0
    total_bonus_points: int = 0
    last_update: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserStreak":
        return cls(
            current_streak=int(data.get("currentStreak", 0) or 0),
            max_streak=int(data.get("maxStreak", 0) or 0),
            last_round_id=int(data.get("lastRoundId", 0) or 0),
            last_result=data.get("lastResult"),
            streak_at_loss=int(data.get("streakAtLoss", 0) or 0),
            total_bonus_points=int(data.get("totalBonusPoints", 0) or 0),
            last_update=str(data.get("lastUpdate", "") or ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "currentStreak": self.current_streak,
            "maxStreak": self.max_streak,
            "lastRoundId": self.last_round_id,
            "lastResult": self.last_result,
            "streakAtLoss": self.streak_at_loss,
            "totalBonusPoints": self.total_bonus_points,
            "lastUpdate": self.last_update,
        }


def apply_result(streak: UserStreak, round_id: int, is_win: bool, now: str) -> bool:
    """Advance ``streak`` in place. Returns False for an already-recorded round."""
    if streak.last_round_id == round_id:
        return False

    streak.last_round_id = round_id
    streak.last_update = now
    streak.last_result = WIN if is_win else LOSS

    if is_win:
        streak.current_streak += 1
        streak.max_streak = max(streak.max_streak, streak.current_streak)
        streak.streak_at_loss = 0
        streak.total_bonus_points += milestone_bonus(streak.current_streak)
    else:
        streak.streak_at_loss = streak.current_streak
        streak.current_streak = 0
    return True


def apply_protection(streak: UserStreak, round_id: int, now: str) -> bool:
    if streak.last_result != LOSS or streak.last_round_id != round_id or streak.streak_at_loss <= 0:
        return False
    streak.current_streak = streak.streak_at_loss
    streak.streak_at_loss = 0
    streak.last_result = WIN
    streak.last_update = now
    return True


class StreakStore:
    def __init__(self, path: str, clock: Callable[[], str] = _utc_now):
        self.store = JsonFileStore(path, lambda: {"streaks": {}})
        self.clock = clock

    def _decode(self, addr: str, record: Any) -> Optional[UserStreak]:
        try:
            return UserStreak.from_dict(record)
        except (AttributeError, TypeError, ValueError) as exc:
            log(f"WARN: Skipping malformed streak record for {addr}: {exc}")
            return None

    def get_streak(self, address: str) -> UserStreak:
        addr = norm_addr(address)
        record = self.store.read()["streaks"].get(addr)
        streak = self._decode(addr, record) if record is not None else None
        return streak or UserStreak(last_update=self.clock())

    def all_streaks(self) -> Dict[str, UserStreak]:
        out: Dict[str, UserStreak] = {}
        for addr, record in self.store.read()["streaks"].items():
            streak = self._decode(addr, record)
            if streak is not None:
                out[addr] = streak
        return out

    def bonus_points(self) -> Dict[str, int]:
        return {
            addr: streak.total_bonus_points
            for addr, streak in self.all_streaks().items()
            if streak.total_bonus_points > 0
        }

    def record_result(self, address: str, round_id: int, is_win: bool) -> UserStreak:
        """Apply one round result. A malformed stored record is replaced by a fresh one."""
        addr = norm_addr(address)
        with self.store.mutate() as data:
            streaks = data["streaks"]
            streak = self._decode(addr, streaks[addr]) if addr in streaks else None
            if streak is None:
                streak = UserStreak(last_update=self.clock())
            if apply_result(streak, int(round_id), bool(is_win), self.clock()):
                streaks[addr] = streak.to_dict()
            return streak

    def protect_streak(self, address: str, round_id: int) -> bool:
        addr = norm_addr(address)
        with self.store.mutate() as data:
            record = data["streaks"].get(addr)
            if record is None:
                return False
            streak = self._decode(addr, record)
            if streak is None or not apply_protection(streak, int(round_id), self.clock()):
                return False
            data["streaks"][addr] = streak.to_dict()
            return True
