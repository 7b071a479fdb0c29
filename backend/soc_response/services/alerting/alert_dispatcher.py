# backend/soc_response/services/alerting/alert_dispatcher.py
import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional

from soc_response.services.alerting.slack_alert_service import send_slack_alert
from soc_response.services.alerting.webhook_alert_service import send_generic_webhook_alert
from soc_response.services.core_service.retry import call_with_timeout

logger = logging.getLogger(__name__)


@dataclass
class DeliveryResult:
    channel: str
    delivered: bool
    recipients: int = 0
    detail: Optional[str] = None


class AlertDispatcher:
    """
    Notifier: one `send` verb for every channel.

    Slack goes to the incoming webhook; email, sms, teams and webhook
    deliveries go to the generic webhook tagged with their channel.
    An unconfigured destination is skipped, not failed. Transport errors and
    timeouts surface as DependencyError for the caller to isolate.
    """

    def __init__(
        self,
        slack_webhook_url: Optional[str] = None,
        generic_webhook_url: Optional[str] = None,
        timeout: float = 5.0,
    ) -> None:
        self.slack_webhook_url = slack_webhook_url
        self.generic_webhook_url = generic_webhook_url
        self.timeout = timeout

    async def send(
        self,
        channel: str,
        recipients: List[str],
        title: str,
        message: str,
        severity: str,
    ) -> DeliveryResult:
        channel = channel.lower()

        if channel == "slack":
            url = self.slack_webhook_url
            call = lambda: asyncio.to_thread(
                send_slack_alert, url, title, message, severity, recipients, self.timeout
            )
        else:
            url = self.generic_webhook_url
            call = lambda: asyncio.to_thread(
                send_generic_webhook_alert,
                url, channel, recipients, title, message, severity, self.timeout,
            )

        if not url:
            logger.info("No webhook configured for channel %s; skipping delivery.", channel)
            return DeliveryResult(channel=channel, delivered=False, detail="not configured")

        # worker-thread HTTP gets a little headroom over the requests timeout
        await call_with_timeout(call, self.timeout + 1.0, f"{channel} notification")
        logger.info("Delivered %s notification %r to %d recipients.", channel, title, len(recipients))
        return DeliveryResult(channel=channel, delivered=True, recipients=len(recipients))
