# backend/soc_response/services/alerting/slack_alert_service.py
import logging
from typing import List

import requests
from fastapi.encoders import jsonable_encoder

from soc_response.core.errors import DependencyError

logger = logging.getLogger(__name__)

SEVERITY_EMOJI = {
    "CRITICAL": ":rotating_light:",
    "HIGH": ":warning:",
    "P1_CRITICAL": ":rotating_light:",
    "P2_HIGH": ":warning:",
}


def build_slack_payload(title: str, message: str, severity: str, recipients: List[str]) -> dict:
    emoji = SEVERITY_EMOJI.get(severity, ":information_source:")
    text_lines = [
        f"{emoji} *{title}*",
        f"*Severity*: `{severity}`",
    ]
    if recipients:
        text_lines.append(f"*To*: {', '.join(recipients)}")
    if message:
        text_lines.append("")
        text_lines.append(message)
    return {"text": "\n".join(text_lines)}


def send_slack_alert(
    webhook_url: str,
    title: str,
    message: str,
    severity: str,
    recipients: List[str],
    timeout: float = 5.0,
) -> int:
    """
    Post to a Slack Incoming Webhook.

    Configure env:
      SLACK_ALERT_WEBHOOK_URL=https://hooks.slack.com/services/...
    """
    payload = build_slack_payload(title, message, severity, recipients)

    # Make it JSON-safe (datetimes → isoformat, enums → values, etc.)
    json_payload = jsonable_encoder(payload)

    try:
        resp = requests.post(webhook_url, json=json_payload, timeout=timeout)
        resp.raise_for_status()
    except requests.RequestException as exc:
        logger.warning("Failed to send Slack alert: %s", exc)
        raise DependencyError(f"Slack delivery failed: {exc}")
    return resp.status_code
