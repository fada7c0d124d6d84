"""SQLite database operations for scan history, API usage and persistent cache."""

import json
import logging
import time
import aiosqlite
from typing import Any, Optional

from .config import DATABASE_PATH
from .models import ScanResult

logger = logging.getLogger(__name__)


class Database:
    """SQLite database for storing scan history, quota usage and cached API data."""

    def __init__(self, db_path: str = DATABASE_PATH):
        self.db_path = db_path
        self._initialized = False

    async def initialize(self):
        """Create database tables if they don't exist."""
        if self._initialized:
            return

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS scan_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    sport_key TEXT NOT NULL,
                    sport_title TEXT NOT NULL,
                    scan_time TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    events_scanned INTEGER DEFAULT 0,
                    opportunities_found INTEGER DEFAULT 0,
                    api_requests_used INTEGER DEFAULT 1
                )
            """)

            await db.execute("""
                CREATE TABLE IF NOT EXISTS opportunities (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    scan_id INTEGER,
                    event_id TEXT,
                    sport_key TEXT NOT NULL,
                    game TEXT NOT NULL,
                    bet_type TEXT DEFAULT 'moneyline',
                    profit_margin REAL NOT NULL,
                    guaranteed_profit REAL NOT NULL,
                    total_stake REAL NOT NULL,
                    has_draw_risk INTEGER DEFAULT 0,
                    bets_json TEXT NOT NULL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    FOREIGN KEY (scan_id) REFERENCES scan_history(id)
                )
            """)

            await db.execute("""
                CREATE TABLE IF NOT EXISTS api_usage (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    endpoint TEXT NOT NULL,
                    requests_used INTEGER DEFAULT 1,
                    requests_remaining INTEGER
                )
            """)

            # expires_at is unix time
            await db.execute("""
                CREATE TABLE IF NOT EXISTS odds_cache (
                    cache_key TEXT PRIMARY KEY,
                    data_json TEXT NOT NULL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    expires_at REAL NOT NULL
                )
            """)

            await db.commit()
            self._initialized = True

    async def save_scan_result(self, result: ScanResult) -> int:
        """Save scan result to database."""
        await self.initialize()

        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute("""
                INSERT INTO scan_history (
                    sport_key, sport_title, scan_time,
                    events_scanned, opportunities_found, api_requests_used
                ) VALUES (?, ?, ?, ?, ?, ?)
            """, (
                result.sport_key,
                result.sport_title,
                result.scan_time.isoformat(),
                result.events_scanned,
                result.opportunities_found,
                result.api_requests_used,
            ))

            scan_id = cursor.lastrowid

            for opp in result.opportunities:
                bets_json = json.dumps([bet.model_dump() for bet in opp.bets])

                await db.execute("""
                    INSERT INTO opportunities (
                        scan_id, event_id, sport_key, game, bet_type,
                        profit_margin, guaranteed_profit, total_stake,
                        has_draw_risk, bets_json
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    scan_id,
                    opp.game_id,
                    result.sport_key,
                    opp.game,
                    opp.bet_type,
                    opp.profit_margin,
                    opp.guaranteed_profit,
                    opp.total_stake,
                    int(opp.has_draw_risk),
                    bets_json,
                ))

            await db.commit()
            return scan_id

    async def get_recent_scans(self, limit: int = 10) -> list[dict]:
        """Get recent scan history."""
        await self.initialize()

        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("""
                SELECT * FROM scan_history
                ORDER BY scan_time DESC, id DESC
                LIMIT ?
            """, (limit,))

            rows = await cursor.fetchall()
            return [dict(row) for row in rows]

    async def get_opportunities_by_scan(self, scan_id: int) -> list[dict]:
        """Get opportunities for a specific scan."""
        await self.initialize()

        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("""
                SELECT * FROM opportunities
                WHERE scan_id = ?
                ORDER BY profit_margin DESC
            """, (scan_id,))

            rows = await cursor.fetchall()

        opportunities = []
        for row in rows:
            item = dict(row)
            item["bets"] = json.loads(item.pop("bets_json"))
            item["has_draw_risk"] = bool(item["has_draw_risk"])
            opportunities.append(item)
        return opportunities

    async def log_api_usage(
        self,
        endpoint: str,
        requests_used: int = 1,
        requests_remaining: Optional[int] = None
    ):
        """Log API usage for tracking."""
        await self.initialize()

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("""
                INSERT INTO api_usage (endpoint, requests_used, requests_remaining)
                VALUES (?, ?, ?)
            """, (endpoint, requests_used, requests_remaining))
            await db.commit()

    async def _sum_usage(self, period: str) -> tuple[int, Optional[int]]:
        """Requests used and lowest reported remaining quota where ``period`` matches now."""
        await self.initialize()

        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute("""
                SELECT SUM(requests_used), MIN(requests_remaining)
                FROM api_usage
                WHERE strftime(?, timestamp) = strftime(?, 'now')
            """, (period, period))
            row = await cursor.fetchone()

        return row[0] or 0, row[1]

    async def get_api_usage_today(self) -> dict:
        used, remaining = await self._sum_usage("%Y-%m-%d")
        return {"total_used_today": used, "requests_remaining": remaining}

    async def get_api_usage_month(self) -> dict:
        used, remaining = await self._sum_usage("%Y-%m")
        return {"total_used_month": used, "requests_remaining": remaining}

    async def set_cache_entry(self, cache_key: str, data: Any, ttl: float):
        await self.initialize()

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("""
                INSERT INTO odds_cache (cache_key, data_json, expires_at)
                VALUES (?, ?, ?)
                ON CONFLICT(cache_key) DO UPDATE SET
                    data_json = excluded.data_json,
                    created_at = CURRENT_TIMESTAMP,
                    expires_at = excluded.expires_at
            """, (cache_key, json.dumps(data, default=str), time.time() + ttl))
            await db.commit()

    async def get_cache_entry(self, cache_key: str) -> Optional[tuple[Any, float]]:
        """Return ``(data, seconds_left)`` for an unexpired entry."""
        await self.initialize()

        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute("""
                SELECT data_json, expires_at FROM odds_cache
                WHERE cache_key = ?
            """, (cache_key,))
            row = await cursor.fetchone()

        if row is None:
            return None

        ttl_remaining = row[1] - time.time()
        if ttl_remaining <= 0:
            return None
        return json.loads(row[0]), ttl_remaining

    async def delete_cache_entry(self, cache_key: str):
        await self.initialize()

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("DELETE FROM odds_cache WHERE cache_key = ?", (cache_key,))
            await db.commit()

    async def cleanup_expired_cache(self) -> int:
        """Remove expired cache entries."""
        await self.initialize()

        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute("""
                DELETE FROM odds_cache
                WHERE expires_at < ?
            """, (time.time(),))
            await db.commit()
            return cursor.rowcount

    async def health_check(self) -> bool:
        try:
            await self.initialize()
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("SELECT 1")
        except aiosqlite.Error as e:
            logger.error("Database health check failed: %s", e)
            return False
        return True


# Singleton instance
_db: Optional[Database] = None


def get_database() -> Database:
    """Get or create the singleton Database instance."""
    global _db
    if _db is None:
        _db = Database()
    return _db
