import aiosqlite
import pytest

from sportsarb.arbitrage import find_arbitrage_opportunity
from sportsarb.models import ScanResult, TwoWayOdds


def scan_result(opportunities=()):
    return ScanResult(
        sport_key="soccer_epl",
        sport_title="Premier League",
        events_scanned=4,
        opportunities_found=len(opportunities),
        opportunities=list(opportunities),
    )


@pytest.mark.asyncio
async def test_save_and_read_scan(db):
    opp = find_arbitrage_opportunity(
        TwoWayOdds(team1=-110, team2=120),
        TwoWayOdds(team1=115, team2=-105),
        "Arsenal", "Chelsea", "Chelsea @ Arsenal",
        sport_key="soccer_epl",
    )
    opp.game_id = "evt9"

    scan_id = await db.save_scan_result(scan_result([opp]))

    scans = await db.get_recent_scans()
    assert [s["id"] for s in scans] == [scan_id]
    assert scans[0]["events_scanned"] == 4

    saved = await db.get_opportunities_by_scan(scan_id)
    assert len(saved) == 1
    assert saved[0]["event_id"] == "evt9"
    assert saved[0]["has_draw_risk"] is True
    assert saved[0]["profit_margin"] == pytest.approx(opp.profit_margin)
    assert [bet["team"] for bet in saved[0]["bets"]] == ["Arsenal", "Chelsea"]


@pytest.mark.asyncio
async def test_recent_scans_newest_first(db):
    first = await db.save_scan_result(scan_result())
    second = await db.save_scan_result(scan_result())

    scans = await db.get_recent_scans(limit=1)

    assert [s["id"] for s in scans] == [second]
    assert first != second


@pytest.mark.asyncio
async def test_api_usage(db):
    await db.log_api_usage("/sports", requests_used=1, requests_remaining=499)
    await db.log_api_usage("/sports/basketball_nba/odds", requests_used=3, requests_remaining=496)

    today = await db.get_api_usage_today()
    month = await db.get_api_usage_month()

    assert today == {"total_used_today": 4, "requests_remaining": 496}
    assert month == {"total_used_month": 4, "requests_remaining": 496}


@pytest.mark.asyncio
async def test_usage_empty(db):
    assert await db.get_api_usage_today() == {"total_used_today": 0, "requests_remaining": None}


@pytest.mark.asyncio
async def test_cache_entries(db):
    await db.set_cache_entry("arbitrage:nba", [{"game": "A @ B"}], ttl=300)

    data, ttl_remaining = await db.get_cache_entry("arbitrage:nba")
    assert data == [{"game": "A @ B"}]
    assert 0 < ttl_remaining <= 300

    await db.set_cache_entry("arbitrage:nba", {"replaced": True}, ttl=300)
    assert (await db.get_cache_entry("arbitrage:nba"))[0] == {"replaced": True}

    await db.delete_cache_entry("arbitrage:nba")
    assert await db.get_cache_entry("arbitrage:nba") is None


@pytest.mark.asyncio
async def test_expired_cache_entries(db):
    await db.set_cache_entry("stale", 1, ttl=-10)
    await db.set_cache_entry("fresh", 2, ttl=300)

    assert await db.get_cache_entry("stale") is None
    assert await db.cleanup_expired_cache() == 1
    assert await db.cleanup_expired_cache() == 0
    assert (await db.get_cache_entry("fresh"))[0] == 2


@pytest.mark.asyncio
async def test_health_check(db, tmp_path, caplog):
    assert await db.health_check()

    broken = type(db)(str(tmp_path / "missing" / "dir" / "arbitrage.db"))
    assert not await broken.health_check()
    assert "health check failed" in caplog.text


@pytest.mark.asyncio
async def test_initialize_is_idempotent(db):
    await db.initialize()
    await db.initialize()

    async with aiosqlite.connect(db.db_path) as conn:
        cursor = await conn.execute("SELECT name FROM sqlite_master WHERE type = 'table' ORDER BY name")
        tables = [row[0] for row in await cursor.fetchall()]

    assert {"scan_history", "opportunities", "api_usage", "odds_cache"} <= set(tables)
