# backend/soc_response/services/alerting/webhook_alert_service.py
import logging
from datetime import datetime
from typing import List

import requests
from fastapi.encoders import jsonable_encoder

from soc_response.core.errors import DependencyError

logger = logging.getLogger(__name__)


def send_generic_webhook_alert(
    webhook_url: str,
    channel: str,
    recipients: List[str],
    title: str,
    message: str,
    severity: str,
    timeout: float = 5.0,
) -> int:
    """
    Generic JSON webhook for n8n, mail/SMS gateways, custom dashboards, etc.
    The receiving side routes on `channel`.

    Configure env:
      GENERIC_ALERT_WEBHOOK_URL=https://your-endpoint/ingest
    """
    payload = {
        "channel": channel,
        "recipients": recipients,
        "title": title,
        "message": message,
        "severity": severity,
        "sent_at": datetime.utcnow(),
    }

    # Make it JSON-safe (datetimes → isoformat, enums → values, etc.)
    json_payload = jsonable_encoder(payload)

    try:
        resp = requests.post(webhook_url, json=json_payload, timeout=timeout)
        resp.raise_for_status()
    except requests.RequestException as exc:
        logger.warning("Failed to send %s webhook alert: %s", channel, exc)
        raise DependencyError(f"{channel} delivery failed: {exc}")
    return resp.status_code
