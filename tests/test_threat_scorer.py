import asyncio
from datetime import datetime

import pytest

from soc_response.schemas.events import SecurityEventIn
from soc_response.services.scoring.contributors import (
    CountryChangeAnomaly,
    ScoreContributor,
    WatchlistUserRisk,
)
from soc_response.services.scoring.threat_scorer import ScoreContext, ThreatScorer

pytestmark = pytest.mark.asyncio

AFTERNOON = datetime(2024, 3, 5, 14, 0)
NIGHT = datetime(2024, 3, 5, 23, 30)


def _event(**kw) -> SecurityEventIn:
    data = {"event_type": "AUTHENTICATION", "severity": "MEDIUM", "source": "auth-service"}
    data.update(kw)
    return SecurityEventIn.model_validate(data)


class Boom(ScoreContributor):
    name = "boom"

    async def contribution(self, event):
        raise RuntimeError("lookup exploded")


class Slow(ScoreContributor):
    name = "slow"

    async def contribution(self, event):
        await asyncio.sleep(1)
        return 50.0


async def test_base_times_multiplier():
    scorer = ThreatScorer()
    ctx = await scorer.gather_context(_event(), AFTERNOON)
    assert scorer.score(_event(), ctx) == 15  # 10 * 1.5


async def test_score_is_clamped_to_100():
    event = _event(event_type="THREAT_DETECTED", severity="CRITICAL")
    assert ThreatScorer.score(event, ScoreContext(local_hour=12)) == 100


async def test_off_hours_bonus():
    scorer = ThreatScorer()
    ctx = await scorer.gather_context(_event(), NIGHT)
    assert ctx.local_hour == 23
    assert scorer.score(_event(), ctx) == 25


async def test_off_hours_respects_configured_timezone():
    # 14:00 UTC is 23:00 in Tokyo
    scorer = ThreatScorer(timezone_name="Asia/Tokyo")
    ctx = await scorer.gather_context(_event(), AFTERNOON)
    assert ctx.local_hour == 23
    assert scorer.score(_event(), ctx) == 25


async def test_failing_and_slow_contributors_count_as_zero():
    scorer = ThreatScorer([Boom(), Slow(), WatchlistUserRisk({"u1": 20})], lookup_timeout=0.05)
    event = _event(user_id="u1")
    ctx = await scorer.gather_context(event, AFTERNOON)

    assert ctx.contributions == {"boom": 0.0, "slow": 0.0, "user_risk": 20.0}
    assert "RuntimeError" in ctx.errors["boom"]
    assert "timed out" in ctx.errors["slow"]
    assert scorer.score(event, ctx) == 35


async def test_country_change_adds_points_once_country_differs():
    geo = CountryChangeAnomaly(points=15)
    assert await geo.contribution(_event(user_id="u1", metadata={"country": "DE"})) == 0.0
    assert await geo.contribution(_event(user_id="u1", metadata={"country": "DE"})) == 0.0
    assert await geo.contribution(_event(user_id="u1", metadata={"country": "BR"})) == 15


async def test_country_history_is_bounded_and_evicts_least_recent():
    geo = CountryChangeAnomaly(points=15, max_users=2)
    await geo.contribution(_event(user_id="u1", metadata={"country": "DE"}))
    await geo.contribution(_event(user_id="u2", metadata={"country": "FR"}))
    # touching u1 makes u2 the oldest entry
    await geo.contribution(_event(user_id="u1", metadata={"country": "DE"}))
    await geo.contribution(_event(user_id="u3", metadata={"country": "NL"}))

    assert len(geo._last_country) == 2
    # u2 was evicted, so a different country is a fresh sighting
    assert await geo.contribution(_event(user_id="u2", metadata={"country": "BR"})) == 0.0
    assert await geo.contribution(_event(user_id="u3", metadata={"country": "BR"})) == 15
