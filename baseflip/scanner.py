"""Find winnings an address can still claim from BaseFlip and Cash-Out-or-Die."""

from typing import Any, Dict, Iterable, List, Set, Tuple

from .common import log, norm_addr
from .events import EventLogSource
from .models import ClaimableEntry, PayoutClaimedEvent, StakeEvent


BASEFLIP_GAME = "baseflip"
CASHOUT_GAME = "cashout_or_die"
BATCH_SIZE = 50


class UnclaimedWinningsScanner:
    def __init__(
        self,
        chain: Any,
        block_window: int = 500_000,
        recent_rounds: int = 20,
        recent_games: int = 10,
        batch_size: int = BATCH_SIZE,
    ):
        self.chain = chain
        self.source = EventLogSource(chain, block_window)
        self.recent_rounds = recent_rounds
        self.recent_games = recent_games
        self.batch_size = batch_size

    def scan(self, address: str, include_games: bool = True) -> List[ClaimableEntry]:
        entries = self.scan_rounds(address)
        if include_games:
            entries.extend(self.scan_games(address))
        return entries

    # -- single pool -------------------------------------------------------

    def _user_events(self, address: str) -> Tuple[Set[int], Set[int]]:
        """Round ids the address staked in and round ids it already claimed, from logs."""
        try:
            events = self.source.fetch(("StakePlaced", "PayoutClaimed"), user=address)
        except Exception as exc:
            log(f"WARN: Stake log search failed for {address}: {exc}")
            return set(), set()
        staked = {e.round_id for e in events if isinstance(e, StakeEvent)}
        claimed = {e.round_id for e in events if isinstance(e, PayoutClaimedEvent)}
        return staked, claimed

    def candidate_rounds(self, address: str) -> List[int]:
        staked, claimed = self._user_events(address)
        try:
            current = self.chain.current_round_id()
        except Exception as exc:
            log(f"WARN: Could not read current round id, checking logged stakes only: {exc}")
            return sorted(staked - claimed, reverse=True)
        recent = set(range(max(1, current - self.recent_rounds + 1), current + 1))
        return sorted((staked | recent) - claimed, reverse=True)

    def scan_rounds(self, address: str) -> List[ClaimableEntry]:
        addr = norm_addr(address)
        round_ids = self.candidate_rounds(addr)
        out: List[ClaimableEntry] = []
        for i in range(0, len(round_ids), self.batch_size):
            out.extend(self._check_round_batch(addr, round_ids[i:i + self.batch_size]))
        return out

    def _check_round_batch(self, addr: str, batch: List[int]) -> Iterable[ClaimableEntry]:
        calls = []
        for rid in batch:
            calls.append((self.chain.get_round, (rid,)))
            calls.append((self.chain.get_user_stake, (rid, addr)))
        results = self.chain.batch_call(calls)

        for j, rid in enumerate(batch):
            round_res, stake_res = results[2 * j], results[2 * j + 1]
            if not (round_res.success and stake_res.success):
                continue
            state, stake = round_res.value, stake_res.value
            if state.is_completed and stake.amount > 0 and stake.group == int(state.winning_group):
                yield ClaimableEntry(
                    round_or_game_id=rid,
                    amount=stake.amount,
                    game_type=BASEFLIP_GAME,
                    winning_group=int(state.winning_group),
                    user_group=stake.group,
                )

    # -- elimination -------------------------------------------------------

    def scan_games(self, address: str) -> List[ClaimableEntry]:
        addr = norm_addr(address)
        try:
            current = self.chain.current_game_id()
        except Exception as exc:
            log(f"WARN: Could not read current game id: {exc}")
            return []
        game_ids = list(range(current, max(0, current - self.recent_games), -1))

        calls = []
        for gid in game_ids:
            calls.append((self.chain.get_game, (gid,)))
            calls.append((self.chain.get_player_stats, (gid, addr)))
        results = self.chain.batch_call(calls)

        out: List[ClaimableEntry] = []
        for j, gid in enumerate(game_ids):
            game_res, player_res = results[2 * j], results[2 * j + 1]
            if not (game_res.success and player_res.success):
                continue
            game, player = game_res.value, player_res.value
            if player.is_alive and not player.has_cashed_out and player.claim_value > 0 and game.is_completed:
                out.append(ClaimableEntry(round_or_game_id=gid, amount=player.claim_value, game_type=CASHOUT_GAME))
        return out

    # -- claiming ----------------------------------------------------------

    def claim_all(self, entries: Iterable[ClaimableEntry]) -> List[Dict[str, Any]]:
        """Submit a claim for each entry; failures are reported per entry, not raised."""
        results: List[Dict[str, Any]] = []
        for entry in entries:
            claim = self.chain.claim_winnings if entry.game_type == BASEFLIP_GAME else self.chain.claim_victory
            out = entry.to_dict()
            try:
                out["txHash"] = claim(entry.round_or_game_id)
            except Exception as exc:
                log(f"ERROR: Claim for {entry.game_type} #{entry.round_or_game_id} failed: {exc}")
                out["error"] = str(exc)
            results.append(out)
        return results
