"""Core orchestration logic for bulk and scheduled email delivery."""

from __future__ import annotations

import asyncio
import math
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

import aiosqlite

from . import recipients as recipient_codec
from .attachments import Attachment, AttachmentManager
from .errors import InvalidTransition, NotFoundError, StorageError, ValidationError
from .logger import get_logger
from .persistence import Persistence, RECORD_STATUSES
from .prometheus import MailMetrics
from .reporting import DeliveryReporting
from .scheduler import JobScheduler
from .tracking import with_pixel
from .transport import MailTransport, UnconfiguredTransport

DEFAULT_PUBLIC_BASE_URL = "http://localhost:8000"
DEFAULT_SCHEDULER_INTERVAL = 30.0
DEFAULT_PROMOTION_BATCH = 100
DEFAULT_CLEANUP_INTERVAL = 150.0
INTERRUPTED_JOB_ERROR = "Interrupted during dispatch"

# Manual status changes: target -> statuses it may be reached from.
MANUAL_TRANSITIONS = {
    "sent": ("pending",),
    "delivered": ("pending", "sent"),
    "failed": ("pending", "sent", "delivered"),
}


@dataclass
class SubmitResult:
    """Outcome of a submit call or of one promoted job."""

    scheduled: bool = False
    job_id: Optional[int] = None
    log_id: Optional[int] = None
    sent: int = 0
    failed: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PromotionResult:
    """Summary of one ``promote_due_jobs`` pass."""

    promoted: List[Dict[str, Any]] = field(default_factory=list)
    skipped: List[int] = field(default_factory=list)
    failed: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class BulkMailCore:
    """Coordinate validation, persistence, dispatch and scheduling."""

    def __init__(
        self,
        *,
        db_path: str | None = "/data/bulk_mail.db",
        transport: MailTransport | None = None,
        logger=None,
        metrics: MailMetrics | None = None,
        public_base_url: str = DEFAULT_PUBLIC_BASE_URL,
        attachments: AttachmentManager | None = None,
        start_active: bool = True,
        scheduler_interval: float = DEFAULT_SCHEDULER_INTERVAL,
        promotion_batch: int = DEFAULT_PROMOTION_BATCH,
        test_mode: bool = False,
        log_delivery_activity: bool = False,
        cleanup_interval: float = DEFAULT_CLEANUP_INTERVAL,
    ):
        """Prepare the runtime collaborators and scheduler state."""
        self.logger = logger or get_logger()
        self.persistence = Persistence(db_path or ":memory:")
        self.transport = transport or UnconfiguredTransport()
        self.metrics = metrics or MailMetrics()
        self.attachments = attachments or AttachmentManager()
        self.reporting = DeliveryReporting(self.persistence)
        self.public_base_url = public_base_url.rstrip("/")
        self._promotion_batch = max(1, int(promotion_batch))
        self._log_delivery_activity = bool(log_delivery_activity)
        self._test_mode = bool(test_mode)
        self._cleanup_interval = max(0.01, float(cleanup_interval))
        self._task_cleanup: Optional[asyncio.Task] = None
        interval = math.inf if test_mode else max(0.05, float(scheduler_interval))
        self.scheduler = JobScheduler(
            self.promote_due_jobs,
            interval=interval,
            active=start_active,
            logger=self.logger,
        )

    # --------------------------------------------------------------------- utils
    @staticmethod
    def _utc_now_epoch() -> int:
        """Return the current UTC timestamp as seconds since epoch."""
        return int(datetime.now(timezone.utc).timestamp())

    @staticmethod
    def _to_epoch(value: Any) -> Optional[int]:
        """Coerce a scheduled time (datetime, epoch or ISO string) to epoch seconds."""
        if value is None or value == "":
            return None
        if isinstance(value, bool):
            raise ValidationError("scheduled_at must be a datetime or a timestamp")
        if isinstance(value, (int, float)):
            return int(value)
        if isinstance(value, str):
            text = value.strip()
            try:
                return int(float(text))
            except ValueError:
                pass
            try:
                value = datetime.fromisoformat(text.replace("Z", "+00:00"))
            except ValueError as exc:
                raise ValidationError(f"Invalid scheduled_at value: {text}") from exc
        if isinstance(value, datetime):
            if value.tzinfo is None:
                value = value.replace(tzinfo=timezone.utc)
            return int(value.timestamp())
        raise ValidationError("scheduled_at must be a datetime or a timestamp")

    async def init(self) -> None:
        """Initialise persistence and refresh gauges."""
        await self.persistence.init_db()
        await self._refresh_scheduled_gauge()

    def _validate_request(
        self, payload: Dict[str, Any]
    ) -> Tuple[str, str, List[str], List[Attachment], Optional[int]]:
        if not isinstance(payload, dict):
            raise ValidationError("request must be an object")
        subject = payload.get("subject")
        body = payload.get("body")
        if not isinstance(subject, str) or not subject.strip():
            raise ValidationError("subject is required")
        if not isinstance(body, str) or not body.strip():
            raise ValidationError("body is required")
        try:
            recipients = recipient_codec.normalise(payload.get("recipients"))
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        if not recipients:
            raise ValidationError("at least one recipient is required")
        attachments = self.attachments.decode(payload.get("attachments"))
        scheduled_ts = self._to_epoch(payload.get("scheduled_at"))
        return subject.strip(), body, recipients, attachments, scheduled_ts

    # ------------------------------------------------------------------ commands
    async def handle_command(self, cmd: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Execute one of the scheduler control commands."""
        if cmd == "run now":
            self.scheduler.wake()
            return {"ok": True}
        if cmd == "suspend":
            self.scheduler.active = False
            return {"ok": True, "active": False}
        if cmd == "activate":
            self.scheduler.active = True
            return {"ok": True, "active": True}
        return {"ok": False, "error": "unknown command"}

    async def submit(self, payload: Dict[str, Any]) -> SubmitResult:
        """Accept a send request, either scheduling it or sending it right away.

        Raises :class:`ValidationError` before anything is stored when the
        subject, body or recipient list is missing.
        """
        subject, body, recipients, attachments, scheduled_ts = self._validate_request(payload)

        if scheduled_ts is not None and scheduled_ts > self._utc_now_epoch():
            try:
                job_id = await self.persistence.insert_scheduled_job(
                    recipients,
                    subject,
                    body,
                    scheduled_ts,
                    attachments=[att.to_payload() for att in attachments] or None,
                )
            except aiosqlite.Error as exc:
                raise StorageError(f"Failed to schedule email: {exc}") from exc
            self.logger.info(
                "Scheduled job %s for %d recipient(s) at %s",
                job_id,
                len(recipients),
                datetime.fromtimestamp(scheduled_ts, timezone.utc).isoformat(),
            )
            self.metrics.inc_job("scheduled")
            await self._refresh_scheduled_gauge()
            return SubmitResult(scheduled=True, job_id=job_id)

        return await self._send_now(recipients, subject, body, attachments)

    async def _send_now(
        self,
        recipients: Sequence[str],
        subject: str,
        body: str,
        attachments: Sequence[Attachment],
    ) -> SubmitResult:
        """Create the log and its pending records, then dispatch them."""
        try:
            log_id = await self.persistence.insert_email_log(
                recipients, subject, body, self._utc_now_epoch()
            )
            records, errors = await self.persistence.insert_delivery_records(log_id, recipients)
        except aiosqlite.Error as exc:
            raise StorageError(f"Failed to save email log: {exc}") from exc

        for item in errors:
            self.logger.error(
                "Failed to create delivery record for %s (log=%s): %s",
                item["recipient"],
                log_id,
                item["error"],
            )

        result = SubmitResult(log_id=log_id, errors=list(errors))
        await self._dispatch(result, subject, body, records, attachments)
        self.logger.info(
            "Email log %s processed: sent=%d failed=%d", log_id, result.sent, result.failed
        )
        return result

    async def _dispatch(
        self,
        result: SubmitResult,
        subject: str,
        body: str,
        records: Sequence[Dict[str, Any]],
        attachments: Sequence[Attachment],
    ) -> None:
        """Send to each pending record in order; one failure never stops the loop."""
        try:
            for record in records:
                record_id = record["id"]
                to = record["recipient"]
                html = with_pixel(body, self.public_base_url, record_id)
                if self._log_delivery_activity:
                    self.logger.info("Attempting delivery of record %s to %s", record_id, to)
                try:
                    await self.transport.send(to, subject, html, attachments)
                except Exception as exc:
                    reason = str(exc) or exc.__class__.__name__
                    self.logger.warning("Failed to send to %s (record=%s): %s", to, record_id, reason)
                    result.failed += 1
                    self.metrics.inc_failed()
                    await self._store_transition(
                        result, record_id, to, self.persistence.mark_failed(record_id, self._utc_now_epoch(), reason)
                    )
                    continue

                result.sent += 1
                self.metrics.inc_sent()
                if self._log_delivery_activity:
                    self.logger.info("Delivery succeeded for record %s (%s)", record_id, to)
                await self._store_transition(
                    result, record_id, to, self.persistence.mark_sent(record_id, self._utc_now_epoch())
                )
        finally:
            await self.transport.release()

    async def _store_transition(self, result: SubmitResult, record_id: int, to: str, update) -> None:
        """Await a status update, keeping storage failures out of the send loop."""
        try:
            await update
        except aiosqlite.Error as exc:
            self.logger.error("Failed to update delivery record %s: %s", record_id, exc)
            result.errors.append({"recipient": to, "record_id": record_id, "error": str(exc)})

    # ----------------------------------------------------------------- tracking
    async def track_open(self, record_id: int) -> bool:
        """Mark a record delivered after its tracking pixel was fetched.

        Returns ``True`` only for the first open of a non-failed record.
        """
        try:
            changed = await self.persistence.mark_delivered(record_id, self._utc_now_epoch())
        except (aiosqlite.Error, OverflowError) as exc:
            self.logger.error("Failed to update delivered status for record %s: %s", record_id, exc)
            return False
        if changed:
            self.metrics.inc_opened()
            if self._log_delivery_activity:
                self.logger.info("Record %s opened", record_id)
        return changed

    async def update_delivery_status(
        self,
        record_id: int,
        status: str,
        error: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Apply a manual status correction to one delivery record."""
        if status not in RECORD_STATUSES:
            raise ValidationError(f"Unknown status '{status}'")
        if status == "pending":
            raise ValidationError("Delivery records cannot be moved back to 'pending'")

        record = await self.persistence.get_delivery_record(record_id)
        if record is None:
            raise NotFoundError("Delivery log not found")
        current = record["status"]

        if current == status:
            if error is not None:
                await self.persistence.set_record_error(record_id, error)
            return await self.persistence.get_delivery_record(record_id)

        allowed = MANUAL_TRANSITIONS[status]
        if current not in allowed:
            raise InvalidTransition(current, status)

        now = self._utc_now_epoch()
        if status == "sent":
            changed = await self.persistence.mark_sent(record_id, now)
        elif status == "delivered":
            changed = await self.persistence.mark_delivered(record_id, now)
        else:
            if current == "delivered":
                self.logger.warning(
                    "Manual override: delivery record %s moved from 'delivered' to 'failed'",
                    record_id,
                )
            changed = await self.persistence.mark_failed(record_id, now, error, from_statuses=allowed)

        if not changed:
            # Lost a race with the dispatch loop or the pixel.
            latest = await self.persistence.get_delivery_record(record_id)
            raise InvalidTransition(latest["status"] if latest else current, status)
        if error is not None and status != "failed":
            await self.persistence.set_record_error(record_id, error)
        return await self.persistence.get_delivery_record(record_id)

    # --------------------------------------------------------------- scheduling
    async def promote_due_jobs(self, now_ts: Optional[int] = None) -> PromotionResult:
        """Turn every due scheduled job into an immediate send, exactly once."""
        now_ts = self._utc_now_epoch() if now_ts is None else int(now_ts)
        result = PromotionResult()
        due = await self.persistence.fetch_due_jobs(now_ts=now_ts, limit=self._promotion_batch)
        for job in due:
            job_id = job["id"]
            if not await self.persistence.claim_job(job_id):
                result.skipped.append(job_id)
                continue
            try:
                attachments = self.attachments.decode(job.get("attachments"))
                outcome = await self._send_now(job["recipients"], job["subject"], job["body"], attachments)
                await self.persistence.mark_job_sent(job_id, outcome.log_id)
            except (StorageError, ValidationError, aiosqlite.Error) as exc:
                self.logger.error("Promotion of scheduled job %s failed: %s", job_id, exc)
                await self.persistence.mark_job_failed(job_id, str(exc))
                self.metrics.inc_job("failed")
                result.failed.append({"job_id": job_id, "error": str(exc)})
                continue
            self.metrics.inc_job("promoted")
            self.logger.info("Scheduled job %s promoted to email log %s", job_id, outcome.log_id)
            result.promoted.append(
                {"job_id": job_id, "log_id": outcome.log_id, "sent": outcome.sent, "failed": outcome.failed}
            )
        if due:
            await self._refresh_scheduled_gauge()
        return result

    async def cancel(self, job_id: int) -> Dict[str, Any]:
        """Cancel a waiting job; finished jobs are reported unchanged."""
        job = await self.persistence.get_scheduled_job(job_id)
        if job is None:
            raise NotFoundError("Scheduled email not found")
        try:
            cancelled = await self.persistence.cancel_job(job_id)
        except aiosqlite.Error as exc:
            raise StorageError(f"Failed to cancel scheduled email: {exc}") from exc
        if cancelled:
            self.logger.info("Scheduled job %s cancelled", job_id)
            self.metrics.inc_job("cancelled")
            await self._refresh_scheduled_gauge()
            return {"ok": True, "id": job_id, "cancelled": True, "status": "cancelled"}
        latest = await self.persistence.get_scheduled_job(job_id)
        status = latest["status"] if latest else job["status"]
        return {"ok": True, "id": job_id, "cancelled": False, "status": status}

    # ----------------------------------------------------------------- lifecycle
    async def start(self) -> None:
        """Initialise storage and start the scheduler and maintenance tasks."""
        self.logger.debug("Starting BulkMailCore...")
        await self.init()
        await self._fail_interrupted_jobs()
        self.scheduler.start()
        if not self._test_mode:
            self._task_cleanup = asyncio.create_task(self._cleanup_loop(), name="smtp-cleanup-loop")

    async def stop(self) -> None:
        """Stop the background tasks and release transport resources."""
        await self.scheduler.stop()
        if self._task_cleanup is not None:
            self._task_cleanup.cancel()
            await asyncio.gather(self._task_cleanup, return_exceptions=True)
            self._task_cleanup = None
        await self.transport.close()

    async def _fail_interrupted_jobs(self) -> None:
        """Close out jobs a previous process claimed but never finished.

        Such jobs may already have reached some recipients, so they are
        marked ``failed`` rather than sent again.
        """
        stale = await self.persistence.fail_processing_jobs(INTERRUPTED_JOB_ERROR)
        for job_id in stale:
            self.logger.warning("Scheduled job %s was interrupted during dispatch; marked failed", job_id)
            self.metrics.inc_job("failed")

    async def _cleanup_loop(self) -> None:
        """Background coroutine that keeps SMTP pooled connections healthy."""
        while True:
            await asyncio.sleep(self._cleanup_interval)
            try:
                await self.transport.cleanup()
            except Exception:  # pragma: no cover
                self.logger.exception("SMTP pool cleanup failed")

    async def _refresh_scheduled_gauge(self) -> None:
        """Refresh the metric describing waiting jobs."""
        try:
            count = await self.persistence.count_scheduled_jobs()
        except aiosqlite.Error:
            self.logger.exception("Failed to refresh scheduled jobs gauge")
            return
        self.metrics.set_scheduled(count)
