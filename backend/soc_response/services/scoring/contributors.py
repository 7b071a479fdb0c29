# backend/soc_response/services/scoring/contributors.py
"""
Contextual threat-score contributors.

Each contributor turns one external signal into a non-negative number of
points added on top of the base event score. They are strategies: swap or
extend the list handed to ThreatScorer without touching the scorer itself.
"""
from collections import OrderedDict
from ipaddress import ip_address
from typing import Any, Dict, Optional
import logging

import httpx

from soc_response.schemas.events import SecurityEventIn
from soc_response.services.core_service.retry import async_retry

logger = logging.getLogger(__name__)


ABUSEIPDB_URL = "https://api.abuseipdb.com/api/v2/check"


class ScoreContributor:
    name = "base"

    async def contribution(self, event: SecurityEventIn) -> float:
        raise NotImplementedError


def _is_internal_ip(value: str) -> bool:
    try:
        ip_obj = ip_address(value)
    except ValueError:
        return True
    return (
        ip_obj.is_private
        or ip_obj.is_loopback
        or ip_obj.is_link_local
        or ip_obj.is_reserved
        or ip_obj.is_multicast
    )


class AbuseIPDBReputation(ScoreContributor):
    """
    IP reputation from AbuseIPDB's abuseConfidenceScore (0–100), scaled by
    `weight`. Internal / unparsable addresses and a missing API key give 0.
    """
    name = "ip_reputation"

    def __init__(self, api_key: Optional[str], weight: float = 0.3, timeout: float = 5.0) -> None:
        self.api_key = api_key
        self.weight = weight
        self.timeout = timeout

    async def _fetch(self, ip: str) -> Optional[Dict[str, Any]]:
        headers = {"Key": self.api_key, "Accept": "application/json"}
        params = {"ipAddress": ip, "maxAgeInDays": 90}
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.get(ABUSEIPDB_URL, headers=headers, params=params)
            resp.raise_for_status()
            data = resp.json()
            return data.get("data") or data

    async def contribution(self, event: SecurityEventIn) -> float:
        if not self.api_key or not event.ip_address or _is_internal_ip(event.ip_address):
            return 0.0

        data = await async_retry(lambda: self._fetch(event.ip_address), attempts=2, base_delay=0.3)
        score = (data or {}).get("abuseConfidenceScore") or 0
        return float(score) * self.weight


class WatchlistUserRisk(ScoreContributor):
    """Per-user risk points from an operator-maintained watchlist."""
    name = "user_risk"

    def __init__(self, watchlist: Optional[Dict[str, float]] = None) -> None:
        self.watchlist = dict(watchlist or {})

    async def contribution(self, event: SecurityEventIn) -> float:
        if not event.user_id:
            return 0.0
        return float(self.watchlist.get(event.user_id, 0.0))


class CountryChangeAnomaly(ScoreContributor):
    """
    Geographic anomaly: the user shows up from a different country
    (metadata.country) than the last one we saw them from.
    """
    name = "geo_anomaly"

    def __init__(self, points: float = 15.0, max_users: int = 50_000) -> None:
        self.points = points
        self.max_users = max_users
        # LRU of user -> last country
        self._last_country: "OrderedDict[str, str]" = OrderedDict()

    async def contribution(self, event: SecurityEventIn) -> float:
        country = event.metadata.get("country")
        if not event.user_id or not country:
            return 0.0

        previous = self._last_country.pop(event.user_id, None)
        self._last_country[event.user_id] = country
        while len(self._last_country) > self.max_users:
            self._last_country.popitem(last=False)
        if previous and previous != country:
            logger.info(
                "Geo anomaly for user %s: %s -> %s", event.user_id, previous, country
            )
            return self.points
        return 0.0
