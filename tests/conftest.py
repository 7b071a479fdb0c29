import itertools
from datetime import datetime, timedelta
from typing import Any, Dict, List

import pytest
import pytest_asyncio

from soc_response.core.config import Settings
from soc_response.core.errors import DependencyError
from soc_response.db.session import build_engine, build_session_factory
from soc_response.schemas.events import SecurityEvent
from soc_response.services.alerting.alert_dispatcher import DeliveryResult
from soc_response.services.engine import SecurityEngine
from soc_response.services.scoring.threat_scorer import ThreatScorer

# Tuesday afternoon UTC: outside the off-hours window
BASE_TIME = datetime(2024, 3, 5, 14, 0, 0)


class FixedClock:
    """Manually advanced clock handed to every service."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeNotifier:
    """Records deliveries; channels in `fail_channels` raise DependencyError."""

    def __init__(self) -> None:
        self.sent: List[Dict[str, Any]] = []
        self.fail_channels: set = set()

    async def send(self, channel, recipients, title, message, severity) -> DeliveryResult:
        channel = channel.lower()
        if channel in self.fail_channels:
            raise DependencyError(f"{channel} webhook unavailable")
        self.sent.append(
            {
                "channel": channel,
                "recipients": list(recipients),
                "title": title,
                "message": message,
                "severity": severity,
            }
        )
        return DeliveryResult(channel=channel, delivered=True, recipients=len(recipients))

    def titles(self) -> List[str]:
        return [s["title"] for s in self.sent]


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(BASE_TIME)


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        DATABASE_URL_OVERRIDE="sqlite://",
        SEED_DEFAULT_RULES=True,
        ESCALATION_MINUTE_SECONDS=0.01,
        ACTION_RUNNER_DRY_RUN=True,
        INDICATOR_FEED_URL=None,
        ABUSEIPDB_API_KEY=None,
        SLACK_ALERT_WEBHOOK_URL=None,
        GENERIC_ALERT_WEBHOOK_URL=None,
    )


@pytest_asyncio.fixture
async def engine(settings, clock, notifier):
    db_engine = build_engine(settings.DATABASE_URL)
    eng = SecurityEngine(
        settings,
        db_engine,
        build_session_factory(db_engine),
        notifier=notifier,
        scorer=ThreatScorer(),
        clock=clock,
    )
    await eng.start(background=False)
    yield eng
    await eng.stop()
    db_engine.dispose()


@pytest.fixture
def make_event():
    """Factory for already-ingested SecurityEvent objects."""
    ids = itertools.count(1)

    def _make(offset_seconds: float = 0, **overrides: Any) -> SecurityEvent:
        data: Dict[str, Any] = {
            "id": f"evt-{next(ids)}",
            "event_type": "AUTHENTICATION",
            "severity": "MEDIUM",
            "source": "auth-service",
            "user_id": "u1",
            "ip_address": "203.0.113.7",
            "timestamp": BASE_TIME + timedelta(seconds=offset_seconds),
            "metadata": {"success": False},
        }
        data.update(overrides)
        return SecurityEvent.model_validate(data)

    return _make


@pytest.fixture
def event_payload():
    """Factory for ingestion payloads (dicts, as a collector would POST)."""

    def _payload(offset_seconds: float = 0, **overrides: Any) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "event_type": "AUTHENTICATION",
            "severity": "MEDIUM",
            "source": "auth-service",
            "user_id": "u1",
            "ip_address": "203.0.113.7",
            "timestamp": BASE_TIME + timedelta(seconds=offset_seconds),
            "metadata": {"success": False},
        }
        data.update(overrides)
        return data

    return _payload


@pytest.fixture
def incident_payload():
    def _payload(**overrides: Any) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "title": "Suspicious access to payroll database",
            "description": "Unusual queries against payroll tables from a service account.",
            "severity": "P2_HIGH",
            "category": "SECURITY_BREACH",
            "affected_systems": ["payroll-db"],
            "initial_evidence": ["evt-1"],
            "reported_by": "analyst-1",
        }
        data.update(overrides)
        return data

    return _payload
