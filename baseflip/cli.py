"""BaseFlip off-chain services.

Usage:
  baseflip --config config.json serve [--start-bot]
  baseflip --config config.json round-bot
  baseflip --config config.json elimination-bot
  baseflip --config config.json leaderboard [--address 0x...] [--top 100]
  baseflip --config config.json sync-events
  baseflip --config config.json scan --address 0x... [--claim]
  baseflip --config config.json streak show|record|protect --address 0x... [--round N] [--win]

Notes:
- PRIVATE_KEY and RPC_HTTP environment variables override the config file.
- Without `events_db` the leaderboard reads the last `scan_block_window`
  blocks on every refresh; with it, events are cached and only new blocks
  are fetched.
"""

import argparse
import asyncio
from typing import Any, Callable, Dict, Iterable, List, Optional

from .api import ApiServer, serve
from .bots import BotController, EliminationGameBot, RoundResolutionBot
from .chain import ChainClient
from .common import json_dumps, load_config, log, short_addr
from .events import SCORING_EVENTS, EventCache, EventLogSource
from .leaderboard import LeaderboardService
from .referrals import ReferralStore
from .scanner import UnclaimedWinningsScanner
from .streaks import StreakStore


def build_event_loader(cfg: Dict[str, Any], chain: ChainClient) -> Callable[[], Iterable[Any]]:
    if cfg.get("events_db"):
        cache = EventCache(
            cfg["events_db"],
            start_block=int(cfg.get("start_block", 0)),
            batch_size=int(cfg.get("log_chunk_size", 10_000)),
        )

        def _load() -> List[Any]:
            cache.sync(chain)
            return list(cache.iter_events(SCORING_EVENTS))

        return _load

    source = EventLogSource(chain, int(cfg.get("scan_block_window", 500_000)))
    return lambda: source.fetch(SCORING_EVENTS)


def build_leaderboard(cfg: Dict[str, Any], chain: ChainClient, referrals: ReferralStore,
                      streaks: StreakStore, top_n: Optional[int] = None) -> LeaderboardService:
    size = top_n or int(cfg.get("leaderboard_size", 100))
    return LeaderboardService(
        build_event_loader(cfg, chain),
        top_n=size,
        interval=float(cfg.get("leaderboard_interval", 45)),
        referrals=referrals,
        streaks=streaks,
        legacy_points=lambda: chain.leaderboard_top(size),
    )


def build_round_bot(cfg: Dict[str, Any], chain: ChainClient) -> BotController:
    if not cfg.get("baseflip_address") or not cfg.get("private_key"):
        raise ValueError("baseflip_address and private_key (or PRIVATE_KEY) must be set")
    return BotController(RoundResolutionBot(chain), interval=float(cfg.get("poll_interval", 10)))


def build_elimination_bot(cfg: Dict[str, Any], chain: ChainClient) -> BotController:
    if not cfg.get("cashout_or_die_address") or not cfg.get("private_key"):
        raise ValueError("cashout_or_die_address and private_key (or PRIVATE_KEY) must be set")
    min_players = int(cfg.get("min_players", 2))
    if min_players < 1:
        raise ValueError("min_players must be at least 1")
    bot = EliminationGameBot(
        chain,
        min_players=min_players,
        lobby_countdown=float(cfg.get("lobby_countdown", 30)),
        round_delay=float(cfg.get("round_delay", 15)),
        grace_period=float(cfg.get("grace_period", 5)),
    )
    return BotController(bot, interval=float(cfg.get("poll_interval", 10)))


def _banner(title: str, ctl: BotController, chain: ChainClient) -> None:
    log(f"{title}")
    log(f"  Contract: {ctl.bot.contract_address}")
    log(f"  Bot address: {short_addr(chain.bot_address or '')}")
    log(f"  Poll interval: {ctl.interval}s")


async def _run_serve(cfg: Dict[str, Any], start_bot: bool) -> None:
    referrals = ReferralStore(cfg["referral_db"])
    streaks = StreakStore(cfg["streak_db"])
    controller: Optional[BotController] = None
    leaderboard: Optional[LeaderboardService] = None
    background = []

    if cfg.get("baseflip_address"):
        chain = ChainClient(cfg)
        leaderboard = build_leaderboard(cfg, chain, referrals, streaks)
        background.append(leaderboard.run_forever())
        if cfg.get("private_key"):
            controller = build_round_bot(cfg, chain)
    else:
        log("WARN: baseflip_address not set, leaderboard and bot control disabled")

    app = ApiServer(referrals, streaks, controller, leaderboard).create_app()
    if controller is not None and start_bot:
        async def _start() -> None:
            controller.start()
        background.append(_start())
    await serve(app, cfg.get("api_host", "0.0.0.0"), int(cfg.get("api_port", 3000)), background)


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="BaseFlip off-chain services")
    parser.add_argument("--config", default="config.json", help="Path to config JSON")

    sub = parser.add_subparsers(dest="command", required=True)

    serve_parser = sub.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--start-bot", action="store_true", help="Start the auto-winner bot immediately")

    sub.add_parser("round-bot", help="Resolve BaseFlip rounds")
    sub.add_parser("elimination-bot", help="Drive Cash-Out-or-Die games")

    lb_parser = sub.add_parser("leaderboard", help="Recompute the leaderboard once")
    lb_parser.add_argument("--address", type=str, default=None)
    lb_parser.add_argument("--top", type=int, default=None)

    sub.add_parser("sync-events", help="Backfill the local event cache")

    scan_parser = sub.add_parser("scan", help="List unclaimed winnings")
    scan_parser.add_argument("--address", type=str, required=True)
    scan_parser.add_argument("--claim", action="store_true", help="Claim every entry found (address must be the bot key)")

    streak_parser = sub.add_parser("streak", help="Inspect or update a streak record")
    streak_parser.add_argument("action", choices=["show", "record", "protect"])
    streak_parser.add_argument("--address", type=str, required=True)
    streak_parser.add_argument("--round", type=int, default=None)
    streak_parser.add_argument("--win", action="store_true")

    args = parser.parse_args(argv)
    cfg = load_config(args.config)

    if args.command == "serve":
        try:
            asyncio.run(_run_serve(cfg, args.start_bot))
        except KeyboardInterrupt:
            log("Shutting down API...")
        return

    if args.command in ("round-bot", "elimination-bot"):
        chain = ChainClient(cfg)
        if args.command == "round-bot":
            ctl = build_round_bot(cfg, chain)
            _banner("BaseFlip auto-winner bot", ctl, chain)
        else:
            ctl = build_elimination_bot(cfg, chain)
            _banner("Cash-Out-or-Die game bot", ctl, chain)
        try:
            asyncio.run(ctl.run_forever())
        except KeyboardInterrupt:
            log("Shutting down bot...")
        return

    if args.command == "leaderboard":
        chain = ChainClient(cfg)
        service = build_leaderboard(cfg, chain, ReferralStore(cfg["referral_db"]), StreakStore(cfg["streak_db"]), args.top)
        service.refresh()
        print(json_dumps(service.view(args.address), indent=2))
        return

    if args.command == "sync-events":
        if not cfg.get("events_db"):
            raise ValueError("events_db must be set to use the event cache")
        chain = ChainClient(cfg)
        cache = EventCache(cfg["events_db"], int(cfg.get("start_block", 0)), int(cfg.get("log_chunk_size", 10_000)))
        added = cache.sync(chain)
        print(json_dumps({"added": added, "total": cache.count(), "lastBlock": cache.last_processed_block}))
        return

    if args.command == "scan":
        chain = ChainClient(cfg)
        scanner = UnclaimedWinningsScanner(
            chain,
            block_window=int(cfg.get("scan_block_window", 500_000)),
            recent_rounds=int(cfg.get("recent_rounds", 20)),
            recent_games=int(cfg.get("recent_games", 10)),
        )
        entries = scanner.scan(args.address, include_games=bool(cfg.get("cashout_or_die_address")))
        if args.claim:
            if chain.bot_address is None or chain.bot_address.lower() != args.address.lower():
                raise ValueError("--claim requires PRIVATE_KEY for the scanned address")
            print(json_dumps(scanner.claim_all(entries), indent=2))
            return
        print(json_dumps([e.to_dict() for e in entries], indent=2))
        return

    if args.command == "streak":
        store = StreakStore(cfg["streak_db"])
        if args.action == "show":
            print(json_dumps(store.get_streak(args.address).to_dict(), indent=2))
            return
        if args.round is None:
            parser.error("--round is required for record/protect")
        if args.action == "record":
            print(json_dumps(store.record_result(args.address, args.round, args.win).to_dict(), indent=2))
        else:
            print(json_dumps({"success": store.protect_streak(args.address, args.round)}))
        return


if __name__ == "__main__":
    main()
