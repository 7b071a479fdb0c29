# backend/soc_response/services/events/event_bus.py
import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, List

logger = logging.getLogger(__name__)

# payload: {"match": PatternMatch, "event": SecurityEvent}
TOPIC_PATTERN_MATCH = "pattern_match"
# payload: {"alert": TriggeredAlert, "rule": AlertRule, "event": SecurityEvent}
TOPIC_RULE_INCIDENT = "rule_incident"
# payload: {"event": SecurityEvent}
TOPIC_SECURITY_EVENT = "security_event"

Handler = Callable[[Dict[str, Any]], Awaitable[None]]


class EventBus:
    """
    In-process pub/sub between the detection side and incident handling.
    Handlers run in subscription order; one failing handler is logged and
    does not stop the others.
    """

    def __init__(self) -> None:
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)

    def subscribe(self, topic: str, handler: Handler) -> None:
        self._handlers[topic].append(handler)

    async def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        for handler in list(self._handlers.get(topic, ())):
            try:
                await handler(payload)
            except Exception:
                logger.exception("Bus handler %r failed on topic %s.", handler, topic)
