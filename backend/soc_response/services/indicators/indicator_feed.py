# backend/soc_response/services/indicators/indicator_feed.py
from typing import Any, List, Optional
import logging

import httpx
from pydantic import ValidationError as PydanticValidationError

from soc_response.schemas.indicators import ThreatIndicatorCreate
from soc_response.services.core_service.retry import async_retry

logger = logging.getLogger(__name__)


class HttpIndicatorFeed:
    """
    Pull IOCs from a JSON feed endpoint.

    Expected payload: either a list of indicator objects or
    {"indicators": [...]}, each shaped like ThreatIndicatorCreate.
    Returns [] when no feed URL is configured.
    """

    def __init__(self, url: Optional[str], token: Optional[str] = None, timeout: float = 10.0) -> None:
        self.url = url
        self.token = token
        self.timeout = timeout

    async def _fetch(self) -> Any:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.get(self.url, headers=headers)
            resp.raise_for_status()
            return resp.json()

    async def list_active(self) -> List[ThreatIndicatorCreate]:
        if not self.url:
            return []

        data = await async_retry(self._fetch, attempts=3, base_delay=0.5)
        items = data.get("indicators", []) if isinstance(data, dict) else data

        out: List[ThreatIndicatorCreate] = []
        skipped = 0
        for item in items or []:
            try:
                out.append(ThreatIndicatorCreate.model_validate(item))
            except PydanticValidationError:
                skipped += 1
        if skipped:
            logger.warning("Indicator feed: skipped %d malformed entries.", skipped)
        return out
