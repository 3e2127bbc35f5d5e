"""HTTP API consumed by the BaseFlip frontend.

Routes:
  GET  /referrals?address=A | ?all=true | ?raw=true
  POST /referrals            {referrer, referee}
  GET  /streaks?address=A | ?all=true
  POST /streaks              {action: record|protect, address, roundId, isWin}
  GET  /auto-winner?action=start|stop|status
  GET  /leaderboard?address=A
  GET  /health
"""

import asyncio
from typing import Any, Dict, Optional

from aiohttp import web

from .common import log, parse_int
from .referrals import ReferralStore
from .streaks import StreakStore


def _error(msg: str, status: int = 400) -> web.Response:
    return web.json_response({"error": msg}, status=status)


async def _json_body(request: web.Request) -> Optional[Dict[str, Any]]:
    try:
        payload = await request.json()
    except Exception:
        return None
    return payload if isinstance(payload, dict) else None


@web.middleware
async def error_middleware(request: web.Request, handler: Any) -> web.StreamResponse:
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except Exception as exc:
        log(f"API error on {request.method} {request.path}: {exc}")
        return _error("Server error", status=500)


class ApiServer:
    def __init__(
        self,
        referrals: ReferralStore,
        streaks: StreakStore,
        bot_controller: Optional[Any] = None,
        leaderboard: Optional[Any] = None,
    ):
        self.referrals = referrals
        self.streaks = streaks
        self.bot_controller = bot_controller
        self.leaderboard = leaderboard

    def create_app(self) -> web.Application:
        app = web.Application(middlewares=[error_middleware])
        app.router.add_get("/referrals", self.referrals_get_handler)
        app.router.add_post("/referrals", self.referrals_post_handler)
        app.router.add_get("/streaks", self.streaks_get_handler)
        app.router.add_post("/streaks", self.streaks_post_handler)
        app.router.add_get("/auto-winner", self.auto_winner_handler)
        app.router.add_get("/leaderboard", self.leaderboard_handler)
        app.router.add_get("/health", self.health_handler)
        return app

    async def health_handler(self, request: web.Request) -> web.Response:
        return web.json_response({"ok": True})

    # -- referrals ---------------------------------------------------------

    async def referrals_get_handler(self, request: web.Request) -> web.Response:
        query = request.query
        if query.get("all") == "true":
            return web.json_response({"points": self.referrals.all_points()})
        if query.get("raw") == "true":
            return web.json_response({"referrals": self.referrals.raw_referrals()})
        address = query.get("address")
        if not address:
            return _error("Address required")
        return web.json_response(self.referrals.stats(address))

    async def referrals_post_handler(self, request: web.Request) -> web.Response:
        body = await _json_body(request)
        if body is None:
            return _error("Invalid request")
        referrer, referee = body.get("referrer"), body.get("referee")
        if not referrer or not referee:
            return _error("Referrer and referee required")

        if self.referrals.record_referral(str(referrer), str(referee)):
            log(f"Referral recorded: {referee} -> {referrer}")
            return web.json_response({"success": True, "message": "Referral recorded"})
        return web.json_response({"success": False, "message": "Referral not recorded"})

    # -- streaks -----------------------------------------------------------

    async def streaks_get_handler(self, request: web.Request) -> web.Response:
        query = request.query
        if query.get("all") == "true":
            return web.json_response({addr: s.to_dict() for addr, s in self.streaks.all_streaks().items()})
        address = query.get("address")
        if not address:
            return _error("Address required")
        return web.json_response(self.streaks.get_streak(address).to_dict())

    async def streaks_post_handler(self, request: web.Request) -> web.Response:
        body = await _json_body(request)
        if body is None:
            return _error("Invalid request")
        action, address = body.get("action"), body.get("address")
        try:
            round_id = parse_int(body.get("roundId"))
        except (TypeError, ValueError):
            round_id = 0
        if not address or round_id <= 0:
            return _error("Missing parameters")

        if action == "record":
            streak = self.streaks.record_result(str(address), round_id, bool(body.get("isWin")))
            return web.json_response({"success": True, "streak": streak.to_dict()})
        if action == "protect":
            return web.json_response({"success": self.streaks.protect_streak(str(address), round_id)})
        return _error("Invalid action")

    # -- bot control -------------------------------------------------------

    async def auto_winner_handler(self, request: web.Request) -> web.Response:
        if self.bot_controller is None:
            return web.json_response({"success": False, "message": "Bot not configured"}, status=503)
        action = request.query.get("action", "status")
        ctl = self.bot_controller

        if action == "start":
            if not ctl.start():
                message = "Bot is still stopping" if ctl.stopping else "Bot already running"
                return web.json_response({"success": False, "message": message})
            return web.json_response({"success": True, "message": "Auto-winner bot started"})
        if action == "stop":
            if not ctl.stop():
                return web.json_response({"success": False, "message": "Bot not running"})
            return web.json_response({"success": True, "message": "Auto-winner bot stopped"})
        if action == "status":
            out = {"success": True}
            out.update(ctl.status())
            return web.json_response(out)
        return web.json_response({"success": False, "message": "Invalid action"}, status=400)

    # -- leaderboard -------------------------------------------------------

    async def leaderboard_handler(self, request: web.Request) -> web.Response:
        if self.leaderboard is None:
            return _error("Leaderboard not configured", status=503)
        return web.json_response(self.leaderboard.view(request.query.get("address")))


async def serve(app: web.Application, host: str, port: int,
                background: Optional[list] = None) -> None:
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host=host, port=port)
    await site.start()
    log(f"API listening on http://{host}:{port}")
    tasks = [asyncio.create_task(coro) for coro in (background or [])]
    try:
        await asyncio.Event().wait()
    finally:
        for task in tasks:
            task.cancel()
        await runner.cleanup()
