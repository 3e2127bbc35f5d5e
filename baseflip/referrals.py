"""Referral bookkeeping: one permanent referrer per referee."""

from typing import Any, Dict, List

from .common import log, norm_addr
from .store import JsonFileStore


POINTS_PER_REFERRAL = 5


def _referee_list(referrer: str, value: Any) -> List[str]:
    if isinstance(value, list) and all(isinstance(v, str) for v in value):
        return value
    log(f"WARN: Skipping malformed referral record for {referrer}")
    return []


class ReferralStore:
    def __init__(self, path: str):
        self.store = JsonFileStore(path, lambda: {"referrals": {}, "referrers": {}})

    def record_referral(self, referrer: str, referee: str) -> bool:
        low_referrer = norm_addr(referrer)
        low_referee = norm_addr(referee)
        if not low_referrer or not low_referee or low_referrer == low_referee:
            return False

        with self.store.mutate() as data:
            if data["referrers"].get(low_referee):
                return False
            data["referrers"][low_referee] = low_referrer
            referees = _referee_list(low_referrer, data["referrals"].get(low_referrer, []))
            if low_referee not in referees:
                referees = referees + [low_referee]
            data["referrals"][low_referrer] = referees
        return True

    def stats(self, address: str) -> Dict[str, Any]:
        data = self.store.read()
        addr = norm_addr(address)
        referees = list(_referee_list(addr, data["referrals"].get(addr, [])))
        referred_by = data["referrers"].get(addr)
        return {
            "referralCount": len(referees),
            "refereeList": referees,
            "referredBy": referred_by if isinstance(referred_by, str) else None,
        }

    def raw_referrals(self) -> Dict[str, List[str]]:
        out: Dict[str, List[str]] = {}
        for referrer, referees in self.store.read()["referrals"].items():
            valid = _referee_list(referrer, referees)
            if valid:
                out[referrer] = list(valid)
        return out

    def all_points(self) -> Dict[str, int]:
        """Unqualified referral points; play-based qualification happens in the leaderboard."""
        return {
            referrer: len(referees) * POINTS_PER_REFERRAL
            for referrer, referees in self.raw_referrals().items()
        }
