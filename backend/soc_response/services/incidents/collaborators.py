# backend/soc_response/services/incidents/collaborators.py
import asyncio
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict

from soc_response.core.errors import DependencyError
from soc_response.schemas.incidents import Incident, IncidentSeverity
from soc_response.services.incidents.incident_config import ActionDefinition

logger = logging.getLogger(__name__)


class CommanderAssignment:
    """Severity -> on-call commander, from settings.INCIDENT_COMMANDERS."""

    def __init__(self, commanders: Dict[str, str], default: str = "security-commander-1") -> None:
        self.commanders = dict(commanders)
        self.default = default

    async def assign(self, severity: IncidentSeverity) -> str:
        return self.commanders.get(severity.value, self.default)


class ScriptActionRunner:
    """
    Runs a registered response script as `<script> <incident_id> <action_type>`.

    In dry-run mode nothing is executed and a simulated success is returned.
    A missing script, a non-zero exit or a timeout raises DependencyError.
    """

    def __init__(self, scripts_dir: str, dry_run: bool = True, timeout: float = 30.0) -> None:
        self.scripts_dir = Path(scripts_dir)
        self.dry_run = dry_run
        self.timeout = timeout

    async def execute(
        self,
        action_type: str,
        definition: ActionDefinition,
        context: Dict[str, Any],
    ) -> str:
        incident_id = str(context.get("incident_id", ""))

        if definition.script is None:
            return f"Manual action '{action_type}' confirmed by {context.get('actor', 'SYSTEM')}"

        if self.dry_run:
            logger.info("[dry-run] %s for incident %s", definition.script, incident_id)
            return f"[dry-run] {definition.script} completed for {incident_id}"

        script = self.scripts_dir / definition.script
        if not script.is_file():
            raise DependencyError(f"Action script not found: {script}")

        proc = await asyncio.create_subprocess_exec(
            str(script),
            incident_id,
            action_type,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise DependencyError(f"{definition.script} timed out after {self.timeout:.0f}s")

        if proc.returncode != 0:
            raise DependencyError(
                f"{definition.script} exited with {proc.returncode}: "
                f"{stderr.decode(errors='replace').strip()[:500]}"
            )
        return stdout.decode(errors="replace").strip()[:2000] or "Action completed successfully"


class PostIncidentScheduler:
    """Books a post-incident review N days after resolution."""

    def __init__(self, review_days: int = 5) -> None:
        self.review_days = review_days

    async def schedule_review(self, incident: Incident) -> datetime:
        resolved = incident.resolved_at or datetime.utcnow()
        due: datetime = resolved + timedelta(days=self.review_days)
        logger.info("Post-incident review for %s due %s.", incident.id, due.date().isoformat())
        return due
