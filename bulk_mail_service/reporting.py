"""Read-only views over the delivery store used by the dashboard."""

from __future__ import annotations

from typing import Any, Dict, List

from .errors import NotFoundError
from .persistence import Persistence


class DeliveryReporting:
    """Project email logs, delivery records and jobs for display."""

    def __init__(self, persistence: Persistence):
        self.persistence = persistence

    async def history(self) -> List[Dict[str, Any]]:
        """All email logs, newest first."""
        return await self.persistence.list_email_logs()

    async def scheduled(self) -> List[Dict[str, Any]]:
        """Jobs still waiting for promotion, soonest first."""
        return [self._public_job(job) for job in await self.persistence.list_scheduled_jobs("scheduled")]

    async def get_job(self, job_id: int) -> Dict[str, Any]:
        job = await self.persistence.get_scheduled_job(job_id)
        if job is None:
            raise NotFoundError("Scheduled email not found")
        return self._public_job(job)

    async def delivery_detail(self, log_id: int) -> List[Dict[str, Any]]:
        """Records of one log, each carrying the log subject and body."""
        return await self.persistence.list_delivery_records(log_id)

    async def stats(self) -> Dict[str, int]:
        """Record counts per status."""
        return await self.persistence.delivery_stats()

    @staticmethod
    def _public_job(job: Dict[str, Any]) -> Dict[str, Any]:
        # Attachment blobs stay in storage; only names are exposed.
        data = dict(job)
        stored = job.get("attachments")
        if not isinstance(stored, list):
            stored = []
        data["attachments"] = [att.get("filename") for att in stored if isinstance(att, dict)]
        return data
