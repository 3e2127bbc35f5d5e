"""Polling bots that resolve BaseFlip rounds and drive Cash-Out-or-Die games.

Both bots poll contract state on a fixed interval instead of subscribing to
events; provider-side log filters were observed to drop silently. A round is
only marked processed after its resolving transaction is confirmed, so any
failure leaves it eligible for the next tick. Resubmitting an already
resolved round is rejected by the contract itself.
"""

import asyncio
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set

from .chain import BASEFLIP, CASHOUT_OR_DIE
from .common import format_eth, log, short_addr
from .models import Group


def coin_flip() -> int:
    """Uniform choice between Group.A and Group.B from the OS CSPRNG."""
    return secrets.randbelow(2) + 1


async def _call(fn: Callable[..., Any], *args: Any) -> Any:
    return await asyncio.to_thread(fn, *args)


class RoundResolutionBot:
    name = "auto-winner"

    def __init__(self, chain: Any, flip: Callable[[], int] = coin_flip):
        self.chain = chain
        self.flip = flip
        self.processed: Set[int] = set()
        self.last_processed_round = 0

    @property
    def contract_address(self) -> Optional[str]:
        return self.chain.addresses.get(BASEFLIP)

    def reset(self) -> None:
        self.processed.clear()
        self.last_processed_round = 0

    def status(self) -> Dict[str, Any]:
        return {
            "contractAddress": self.contract_address,
            "lastProcessedRound": self.last_processed_round,
            "processedRounds": len(self.processed),
        }

    def _mark(self, round_id: int) -> None:
        self.processed.add(round_id)
        self.last_processed_round = max(self.last_processed_round, round_id)

    async def tick(self) -> None:
        round_id = await _call(self.chain.current_round_id)
        # the previous round may have started just before the current one was opened
        for rid in (round_id, round_id - 1):
            if rid >= 1:
                await self.check_round(rid)

    async def check_round(self, round_id: int) -> bool:
        """Resolve ``round_id`` if it is waiting for a winner. True once it needs nothing more."""
        if round_id in self.processed:
            return True
        try:
            state = await _call(self.chain.get_round, round_id)
        except Exception as exc:
            log(f"WARN: Error checking round {round_id}: {exc}")
            return False

        if state.is_completed:
            self._mark(round_id)
            return True
        if not state.needs_winner:
            return False

        winner = Group(self.flip())
        log(f"Round {round_id} ready (pool A {format_eth(state.pool_a)} ETH, pool B {format_eth(state.pool_b)} ETH), declaring {winner.label}")
        try:
            tx_hash = await _call(self.chain.declare_winner, round_id, int(winner))
        except Exception as exc:
            log(f"ERROR: declareWinner({round_id}) failed: {exc}")
            return False

        log(f"Round {round_id} resolved: {winner.label} wins ({tx_hash})")
        self._mark(round_id)
        return True


@dataclass
class GameTracker:
    lobby_ready_at: Optional[float] = None
    round_seen_at: Dict[int, float] = field(default_factory=dict)
    last_declared_round: int = 0


class EliminationGameBot:
    name = "cashout-or-die"

    def __init__(
        self,
        chain: Any,
        min_players: int = 2,
        lobby_countdown: float = 30,
        round_delay: float = 15,
        grace_period: float = 5,
        clock: Callable[[], float] = time.time,
        flip: Callable[[], int] = coin_flip,
    ):
        self.chain = chain
        self.min_players = min_players
        self.lobby_countdown = lobby_countdown
        self.round_delay = round_delay
        self.grace_period = grace_period
        self.clock = clock
        self.flip = flip
        self.trackers: Dict[int, GameTracker] = {}
        self.finished: Set[int] = set()
        self.first_open_game = 1

    @property
    def contract_address(self) -> Optional[str]:
        return self.chain.addresses.get(CASHOUT_OR_DIE)

    @property
    def decision_window(self) -> float:
        return self.round_delay + self.grace_period

    def reset(self) -> None:
        self.trackers.clear()
        self.finished.clear()
        self.first_open_game = 1

    def status(self) -> Dict[str, Any]:
        return {
            "contractAddress": self.contract_address,
            "activeGames": sorted(self.trackers),
            "finishedGames": len(self.finished),
        }

    async def tick(self) -> None:
        current = await _call(self.chain.current_game_id)
        for game_id in range(self.first_open_game, current + 1):
            if game_id in self.finished:
                continue
            try:
                await self.manage_game(game_id)
            except Exception as exc:
                log(f"ERROR: Game {game_id}: {exc}")
        while self.first_open_game in self.finished:
            self.first_open_game += 1

    async def manage_game(self, game_id: int) -> None:
        state = await _call(self.chain.get_game, game_id)

        if state.is_completed:
            if game_id in self.trackers:
                log(f"Game {game_id} completed")
            self.trackers.pop(game_id, None)
            self.finished.add(game_id)
            return

        tracker = self.trackers.setdefault(game_id, GameTracker())
        if state.is_accepting_players:
            await self._manage_lobby(game_id, tracker)
        elif state.in_progress and state.current_round > tracker.last_declared_round:
            await self._manage_round(game_id, state.current_round, tracker)

    async def _manage_lobby(self, game_id: int, tracker: GameTracker) -> None:
        players = await _call(self.chain.get_game_players, game_id)
        if len(players) < self.min_players:
            tracker.lobby_ready_at = None
            return

        now = self.clock()
        if tracker.lobby_ready_at is None:
            tracker.lobby_ready_at = await self._lobby_start(game_id, players, now)
            log(f"Game {game_id}: {len(players)} players, starting in {self.lobby_countdown:.0f}s")
        if now - tracker.lobby_ready_at < self.lobby_countdown:
            return

        tx_hash = await _call(self.chain.start_game, game_id)
        tracker.lobby_ready_at = None
        log(f"Game {game_id} started with {len(players)} players ({tx_hash})")

    async def _lobby_start(self, game_id: int, players: List[str], now: float) -> float:
        """Countdown starts when the player that met the threshold joined, per the chain."""
        threshold_player = players[self.min_players - 1]
        try:
            slot = await _call(self.chain.get_player_slot, game_id, threshold_player)
        except Exception as exc:
            log(f"WARN: Could not read join time of {short_addr(threshold_player)}: {exc}")
            return now
        if slot.joined_at <= 0 or slot.joined_at > now:
            return now
        return float(slot.joined_at)

    async def _manage_round(self, game_id: int, round_no: int, tracker: GameTracker) -> None:
        now = self.clock()
        first_seen = tracker.round_seen_at.setdefault(round_no, now)
        if first_seen == now:
            log(f"Game {game_id} round {round_no}: waiting up to {self.decision_window:.0f}s for choices")

        if not await self.all_choices_submitted(game_id):
            if now - first_seen < self.decision_window:
                return
            log(f"Game {game_id} round {round_no}: decision window elapsed, forcing outcome")

        winner = Group(self.flip())
        tx_hash = await _call(self.chain.declare_round_winner, game_id, int(winner))
        tracker.last_declared_round = round_no
        tracker.round_seen_at.pop(round_no, None)
        log(f"Game {game_id} round {round_no}: {winner.label} survives ({tx_hash})")

    async def all_choices_submitted(self, game_id: int) -> bool:
        players = await _call(self.chain.get_game_players, game_id)
        calls = [(self.chain.get_player_stats, (game_id, p)) for p in players]
        results = await _call(self.chain.batch_call, calls)
        surviving = 0
        for result in results:
            if not result.success:
                return False
            stats = result.value
            if not stats.is_surviving:
                continue
            surviving += 1
            if not stats.has_submitted_choice:
                return False
        return surviving > 0


class BotController:
    """Owns one bot's poll loop.

    ``stop()`` lets an in-flight tick finish and ``start()`` refuses until it
    has. At most one loop drives the bot at a time.
    """

    def __init__(self, bot: Any, interval: float = 10):
        self.bot = bot
        self.interval = interval
        self.ticks = 0
        self.last_error: Optional[str] = None
        self.last_tick_at: Optional[int] = None
        self._task: Optional[asyncio.Task] = None
        self._stopping: Optional[asyncio.Event] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done() and not self._stopping.is_set()

    @property
    def stopping(self) -> bool:
        """Stop was requested but the in-flight tick has not finished yet."""
        return self._task is not None and not self._task.done() and self._stopping.is_set()

    def start(self) -> bool:
        if self._task is not None and not self._task.done():
            return False
        self._stopping = asyncio.Event()
        self._task = asyncio.get_running_loop().create_task(self._loop(self._stopping))
        log(f"{self.bot.name} bot started, polling every {self.interval}s")
        return True

    def stop(self) -> bool:
        if not self.running:
            return False
        self._stopping.set()
        log(f"{self.bot.name} bot stopping")
        return True

    def status(self) -> Dict[str, Any]:
        out = {
            "running": self.running,
            "stopping": self.stopping,
            "interval": self.interval,
            "ticks": self.ticks,
            "lastError": self.last_error,
            "lastTickAt": self.last_tick_at,
        }
        out.update(self.bot.status())
        return out

    async def run_once(self) -> None:
        try:
            await self.bot.tick()
            self.last_error = None
        except Exception as exc:
            self.last_error = str(exc)
            log(f"Error during polling: {exc}")
        self.ticks += 1
        self.last_tick_at = int(time.time())

    async def _loop(self, stopping: asyncio.Event) -> None:
        while not stopping.is_set():
            await self.run_once()
            try:
                await asyncio.wait_for(stopping.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
        self.bot.reset()
        log(f"{self.bot.name} bot stopped")

    async def run_forever(self) -> None:
        self.start()
        await self._task
