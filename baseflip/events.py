"""BaseFlip event log: direct block-range reads and an incremental SQLite cache.

Usage of the cache:
  cache = EventCache("./events.db", start_block=0)
  cache.sync(chain)            # backfill from last processed block to head
  events = list(cache.iter_events())

Events are replayed in (block_number, log_index) order. Rows are keyed by
(block_number, log_index) so re-fetching a range never duplicates them.
"""

import json
import sqlite3
from dataclasses import asdict
from typing import Any, Dict, Iterable, Iterator, List, Optional

from .common import json_dumps, log
from .models import (
    PayoutClaimedEvent,
    RoundStartedEvent,
    StakeEvent,
    WinnerDeclaredEvent,
    event_from_args,
)


SCORING_EVENTS = ("StakePlaced", "RoundStarted", "WinnerDeclared")
ALL_EVENTS = SCORING_EVENTS + ("PayoutClaimed",)

_EVENT_NAMES = {
    StakeEvent: "StakePlaced",
    RoundStartedEvent: "RoundStarted",
    WinnerDeclaredEvent: "WinnerDeclared",
    PayoutClaimedEvent: "PayoutClaimed",
}

_ARG_NAMES = {
    "round_id": "roundId",
    "user": "user",
    "group": "group",
    "amount": "amount",
    "pool_a": "poolA",
    "pool_b": "poolB",
    "winning_group": "winningGroup",
}


def event_name_of(event: Any) -> str:
    return _EVENT_NAMES[type(event)]


def event_args(event: Any) -> Dict[str, Any]:
    out = {}
    for key, value in asdict(event).items():
        if key in _ARG_NAMES:
            out[_ARG_NAMES[key]] = int(value) if not isinstance(value, str) else value
    return out


class EventLogSource:
    """Reads BaseFlip events straight from the chain over a recent block window."""

    def __init__(self, chain: Any, block_window: int = 500_000):
        self.chain = chain
        self.block_window = block_window

    def window(self) -> tuple:
        latest = self.chain.block_number()
        return max(latest - self.block_window, 0), latest

    def fetch(self, names: Iterable[str] = SCORING_EVENTS, user: Optional[str] = None) -> List[Any]:
        from_block, to_block = self.window()
        return self.chain.fetch_events(from_block, to_block, list(names), user=user)


class EventCache:
    def __init__(self, db_path: str, start_block: int = 0, batch_size: int = 10_000):
        self.db_path = db_path
        self.start_block = int(start_block)
        self.batch_size = int(batch_size)
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.last_processed_block: Optional[int] = None
        self._init_db()

    def _init_db(self) -> None:
        cur = self.conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                block_number INTEGER NOT NULL,
                log_index INTEGER NOT NULL,
                event_name TEXT NOT NULL,
                decoded_args TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                UNIQUE(block_number, log_index)
            )
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_events_block ON events(block_number, log_index)")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_events_name ON events(event_name)")
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS sync_state (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                last_processed_block INTEGER NOT NULL,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
            """
        )
        cur.execute("SELECT last_processed_block FROM sync_state WHERE id = 1")
        row = cur.fetchone()
        if row is None:
            initial_block = max(self.start_block - 1, 0)
            cur.execute("INSERT INTO sync_state (id, last_processed_block) VALUES (1, ?)", (initial_block,))
            self.last_processed_block = initial_block
        else:
            self.last_processed_block = int(row["last_processed_block"])
        self.conn.commit()

    def close(self) -> None:
        self.conn.close()

    def store_events(self, events: Iterable[Any]) -> int:
        rows = [
            (
                event.block_number or 0,
                event.log_index or 0,
                event_name_of(event),
                json_dumps(event_args(event)),
            )
            for event in events
        ]
        if not rows:
            return 0
        cur = self.conn.cursor()
        try:
            cur.executemany(
                """
                INSERT OR IGNORE INTO events (
                    block_number, log_index, event_name, decoded_args
                ) VALUES (?, ?, ?, ?)
                """,
                rows,
            )
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        return cur.rowcount

    def update_sync_state(self, block_number: int) -> None:
        if self.last_processed_block is not None and block_number < self.last_processed_block:
            return
        self.conn.execute(
            """
            UPDATE sync_state
            SET last_processed_block = ?, updated_at = CURRENT_TIMESTAMP
            WHERE id = 1
            """,
            (block_number,),
        )
        self.conn.commit()
        self.last_processed_block = block_number

    def sync(self, chain: Any, to_block: Optional[int] = None) -> int:
        """Backfill every BaseFlip event since the last processed block. Returns rows added."""
        latest = chain.block_number() if to_block is None else to_block
        last = self.last_processed_block if self.last_processed_block is not None else self.start_block - 1
        current = max(last + 1, self.start_block)
        added = 0
        while current <= latest:
            batch_to = min(current + self.batch_size - 1, latest)
            events = chain.fetch_events(current, batch_to, ALL_EVENTS)
            added += self.store_events(events)
            self.update_sync_state(batch_to)
            current = batch_to + 1
        if added:
            log(f"Event cache: {added} new events up to block {latest}")
        return added

    def iter_events(self, names: Iterable[str] = ALL_EVENTS, up_to_block: Optional[int] = None) -> Iterator[Any]:
        wanted = list(names)
        placeholders = ",".join("?" for _ in wanted)
        params: List[Any] = list(wanted)
        where = f"event_name IN ({placeholders})"
        if up_to_block is not None:
            where += " AND block_number <= ?"
            params.append(up_to_block)
        rows = self.conn.execute(
            f"""
            SELECT block_number, log_index, event_name, decoded_args
            FROM events
            WHERE {where}
            ORDER BY block_number ASC, log_index ASC
            """,
            params,
        )
        for row in rows:
            try:
                args = json.loads(row["decoded_args"]) if row["decoded_args"] else {}
                event = event_from_args(row["event_name"], args, row["block_number"], row["log_index"])
            except (KeyError, TypeError, ValueError) as exc:
                log(f"WARN: Skipping unreadable cached {row['event_name']} event: {exc}")
                continue
            if event is not None:
                yield event

    def count(self) -> int:
        row = self.conn.execute("SELECT COUNT(*) AS n FROM events").fetchone()
        return int(row["n"])
