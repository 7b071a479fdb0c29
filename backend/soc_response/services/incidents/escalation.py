# backend/soc_response/services/incidents/escalation.py
import asyncio
import itertools
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Dict, Optional

logger = logging.getLogger(__name__)

# (incident_id, generation) -> None
FireCallback = Callable[[str, int], Awaitable[None]]


@dataclass
class EscalationHandle:
    incident_id: str
    generation: int
    due_at: datetime
    task: asyncio.Task


class EscalationScheduler:
    """
    One-shot escalation timers, at most one live handle per incident.

    Every schedule gets a fresh generation. The fire callback receives that
    generation and must `claim` it before acting: a claim only succeeds for
    the current, uncancelled handle, so a timer racing a resolution can never
    escalate after `cancel` has run.
    """

    def __init__(self, on_fire: FireCallback) -> None:
        self._on_fire = on_fire
        self._handles: Dict[str, EscalationHandle] = {}
        self._generations = itertools.count(1)

    def __len__(self) -> int:
        return len(self._handles)

    def get(self, incident_id: str) -> Optional[EscalationHandle]:
        return self._handles.get(incident_id)

    def schedule(self, incident_id: str, delay_seconds: float, due_at: datetime) -> EscalationHandle:
        self.cancel(incident_id)

        generation = next(self._generations)
        task = asyncio.create_task(
            self._run(incident_id, generation, max(0.0, delay_seconds)),
            name=f"escalation-{incident_id}-{generation}",
        )
        handle = EscalationHandle(incident_id, generation, due_at, task)
        self._handles[incident_id] = handle
        logger.info(
            "Escalation for %s armed (generation %d, due %s).",
            incident_id, generation, due_at.isoformat(),
        )
        return handle

    def cancel(self, incident_id: str) -> bool:
        """Returns True only when a live timer was actually cancelled."""
        handle = self._handles.pop(incident_id, None)
        if handle is None:
            return False
        if asyncio.current_task() is not handle.task:
            handle.task.cancel()
        logger.info("Escalation for %s cancelled (generation %d).", incident_id, handle.generation)
        return True

    def claim(self, incident_id: str, generation: int) -> bool:
        """Consume the handle if `generation` is still the live one."""
        handle = self._handles.get(incident_id)
        if handle is None or handle.generation != generation:
            return False
        del self._handles[incident_id]
        return True

    async def shutdown(self) -> None:
        tasks = [h.task for h in self._handles.values()]
        self._handles.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def _run(self, incident_id: str, generation: int, delay: float) -> None:
        await asyncio.sleep(delay)
        try:
            await self._on_fire(incident_id, generation)
        except Exception:
            logger.exception("Escalation for %s failed.", incident_id)
