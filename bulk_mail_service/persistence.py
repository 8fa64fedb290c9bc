"""SQLite backed persistence used by the delivery pipeline."""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Sequence, Tuple

import aiosqlite

from . import recipients as recipient_codec
from .logger import get_logger

logger = get_logger("persistence")

RECORD_STATUSES = ("pending", "sent", "delivered", "failed")


class Persistence:
    """Helper class responsible for reading and writing service state."""

    def __init__(self, db_path: str = "/data/bulk_mail.db"):
        """Persist data to the given database path (``:memory:`` allowed)."""
        self.db_path = db_path or ":memory:"

    async def init_db(self) -> None:
        """Create (or migrate) the database schema."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS email_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    recipients TEXT NOT NULL,
                    subject TEXT NOT NULL,
                    body TEXT NOT NULL,
                    sent_ts INTEGER,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )

            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS delivery_records (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    email_log_id INTEGER NOT NULL REFERENCES email_logs (id),
                    recipient TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    sent_ts INTEGER,
                    delivered_ts INTEGER,
                    failed_ts INTEGER,
                    error TEXT,
                    retry_count INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            await db.execute(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS idx_delivery_log_recipient
                ON delivery_records(email_log_id, recipient)
                """
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_delivery_status ON delivery_records(status)"
            )

            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS scheduled_jobs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    recipients TEXT NOT NULL,
                    subject TEXT NOT NULL,
                    body TEXT NOT NULL,
                    attachments TEXT,
                    scheduled_ts INTEGER NOT NULL,
                    status TEXT NOT NULL DEFAULT 'scheduled',
                    email_log_id INTEGER,
                    error TEXT,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            try:
                await db.execute("ALTER TABLE scheduled_jobs ADD COLUMN attachments TEXT")
            except aiosqlite.OperationalError:
                pass
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_jobs_due ON scheduled_jobs(status, scheduled_ts)"
            )

            await db.commit()

    @staticmethod
    def _rows_to_dicts(rows: Sequence[Tuple[Any, ...]], description: Sequence[Any]) -> List[Dict[str, Any]]:
        cols = [c[0] for c in description]
        return [dict(zip(cols, row)) for row in rows]

    @staticmethod
    def _decode_job_row(data: Dict[str, Any]) -> Dict[str, Any]:
        data["recipients"] = recipient_codec.decode(data.get("recipients"))
        raw = data.get("attachments")
        if raw:
            try:
                data["attachments"] = json.loads(raw)
            except json.JSONDecodeError as exc:
                # Left as stored so promotion rejects the job instead of sending without files.
                logger.error("Scheduled job %s has undecodable attachments: %s", data.get("id"), exc)
        else:
            data["attachments"] = []
        return data

    # Email logs ---------------------------------------------------------------
    async def insert_email_log(
        self,
        recipients: Sequence[str],
        subject: str,
        body: str,
        sent_ts: int,
    ) -> int:
        """Store the parent row of a bulk send and return its id."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "INSERT INTO email_logs (recipients, subject, body, sent_ts) VALUES (?, ?, ?, ?)",
                (recipient_codec.encode(recipients), subject, body, sent_ts),
            )
            await db.commit()
            return int(cursor.lastrowid)

    async def get_email_log(self, log_id: int) -> Optional[Dict[str, Any]]:
        """Return one email log with its recipients decoded, or ``None``."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT id, recipients, subject, body, sent_ts, created_at FROM email_logs WHERE id=?",
                (log_id,),
            ) as cur:
                row = await cur.fetchone()
                if not row:
                    return None
                data = dict(zip([c[0] for c in cur.description], row))
        data["recipients"] = recipient_codec.decode(data["recipients"])
        return data

    async def list_email_logs(self) -> List[Dict[str, Any]]:
        """Return every email log, newest first."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                """
                SELECT id, recipients, subject, body, sent_ts, created_at
                FROM email_logs
                ORDER BY sent_ts DESC, id DESC
                """
            ) as cur:
                rows = await cur.fetchall()
                result = self._rows_to_dicts(rows, cur.description)
        for item in result:
            item["recipients"] = recipient_codec.decode(item["recipients"])
        return result

    async def count_email_logs(self) -> int:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute("SELECT COUNT(*) FROM email_logs") as cur:
                row = await cur.fetchone()
        return int(row[0] if row else 0)

    # Delivery records ---------------------------------------------------------
    async def insert_delivery_records(
        self,
        email_log_id: int,
        recipients: Sequence[str],
    ) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
        """Create one ``pending`` record per recipient.

        Rows are inserted in order on a single connection and committed
        together. A row that fails to insert is reported in the second list
        and left out of the first one.
        """
        created: List[Dict[str, Any]] = []
        errors: List[Dict[str, Any]] = []
        async with aiosqlite.connect(self.db_path) as db:
            for recipient in recipients:
                try:
                    cursor = await db.execute(
                        """
                        INSERT INTO delivery_records (email_log_id, recipient, status)
                        VALUES (?, ?, 'pending')
                        """,
                        (email_log_id, recipient),
                    )
                except aiosqlite.Error as exc:
                    errors.append({"recipient": recipient, "error": str(exc)})
                    continue
                created.append({"id": int(cursor.lastrowid), "recipient": recipient, "status": "pending"})
            await db.commit()
        return created, errors

    async def get_delivery_record(self, record_id: int) -> Optional[Dict[str, Any]]:
        """Fetch a single delivery record or ``None`` when it does not exist."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute("SELECT * FROM delivery_records WHERE id=?", (record_id,)) as cur:
                row = await cur.fetchone()
                if not row:
                    return None
                return dict(zip([c[0] for c in cur.description], row))

    async def list_delivery_records(self, email_log_id: int) -> List[Dict[str, Any]]:
        """Return the records of a log joined with the log subject and body."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                """
                SELECT dr.id, dr.email_log_id, dr.recipient, dr.status, dr.sent_ts,
                       dr.delivered_ts, dr.failed_ts, dr.error, dr.retry_count,
                       dr.created_at, dr.updated_at, el.subject, el.body
                FROM delivery_records dr
                LEFT JOIN email_logs el ON dr.email_log_id = el.id
                WHERE dr.email_log_id = ?
                ORDER BY dr.id ASC
                """,
                (email_log_id,),
            ) as cur:
                rows = await cur.fetchall()
                return self._rows_to_dicts(rows, cur.description)

    async def mark_sent(self, record_id: int, sent_ts: int) -> bool:
        """Move a pending record to ``sent``."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE delivery_records
                SET status='sent', sent_ts=?, updated_at=CURRENT_TIMESTAMP
                WHERE id=? AND status='pending'
                """,
                (sent_ts, record_id),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def mark_failed(
        self,
        record_id: int,
        failed_ts: int,
        error: Optional[str],
        *,
        from_statuses: Sequence[str] = ("pending", "sent"),
    ) -> bool:
        """Move a record to ``failed`` if its current status is in ``from_statuses``."""
        placeholders = ",".join("?" for _ in from_statuses)
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                f"""
                UPDATE delivery_records
                SET status='failed', failed_ts=?, error=?, updated_at=CURRENT_TIMESTAMP
                WHERE id=? AND status IN ({placeholders})
                """,
                (failed_ts, error, record_id, *from_statuses),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def mark_delivered(self, record_id: int, delivered_ts: int) -> bool:
        """Move a pending or sent record to ``delivered``.

        Failed and already delivered rows are left untouched, so the first
        ``delivered_ts`` wins.
        """
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE delivery_records
                SET status='delivered', delivered_ts=?, updated_at=CURRENT_TIMESTAMP
                WHERE id=? AND status IN ('pending', 'sent')
                """,
                (delivered_ts, record_id),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def set_record_error(self, record_id: int, error: Optional[str]) -> None:
        """Replace the error text of a record without touching its status."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                "UPDATE delivery_records SET error=?, updated_at=CURRENT_TIMESTAMP WHERE id=?",
                (error, record_id),
            )
            await db.commit()

    async def delivery_stats(self) -> Dict[str, int]:
        """Return record counts per status, zero-filled for every known status."""
        stats = {status: 0 for status in RECORD_STATUSES}
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT status, COUNT(*) FROM delivery_records GROUP BY status"
            ) as cur:
                rows = await cur.fetchall()
        for status, count in rows:
            stats[status] = int(count)
        return stats

    # Scheduled jobs -----------------------------------------------------------
    async def insert_scheduled_job(
        self,
        recipients: Sequence[str],
        subject: str,
        body: str,
        scheduled_ts: int,
        attachments: Optional[List[Dict[str, Any]]] = None,
    ) -> int:
        """Store a deferred send and return its id."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                INSERT INTO scheduled_jobs (recipients, subject, body, attachments, scheduled_ts, status)
                VALUES (?, ?, ?, ?, ?, 'scheduled')
                """,
                (
                    recipient_codec.encode(recipients),
                    subject,
                    body,
                    json.dumps(attachments) if attachments else None,
                    scheduled_ts,
                ),
            )
            await db.commit()
            return int(cursor.lastrowid)

    async def get_scheduled_job(self, job_id: int) -> Optional[Dict[str, Any]]:
        """Fetch one job with recipients and attachments decoded."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute("SELECT * FROM scheduled_jobs WHERE id=?", (job_id,)) as cur:
                row = await cur.fetchone()
                if not row:
                    return None
                data = dict(zip([c[0] for c in cur.description], row))
        return self._decode_job_row(data)

    async def list_scheduled_jobs(self, status: Optional[str] = "scheduled") -> List[Dict[str, Any]]:
        """Return jobs (by default only waiting ones), soonest first."""
        query = "SELECT * FROM scheduled_jobs"
        params: Tuple[Any, ...] = ()
        if status is not None:
            query += " WHERE status=?"
            params = (status,)
        query += " ORDER BY scheduled_ts ASC, id ASC"
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(query, params) as cur:
                rows = await cur.fetchall()
                result = self._rows_to_dicts(rows, cur.description)
        return [self._decode_job_row(item) for item in result]

    async def fetch_due_jobs(self, *, now_ts: int, limit: int = 100) -> List[Dict[str, Any]]:
        """Return waiting jobs whose scheduled time has come."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                """
                SELECT * FROM scheduled_jobs
                WHERE status='scheduled' AND scheduled_ts <= ?
                ORDER BY scheduled_ts ASC, id ASC
                LIMIT ?
                """,
                (now_ts, limit),
            ) as cur:
                rows = await cur.fetchall()
                result = self._rows_to_dicts(rows, cur.description)
        return [self._decode_job_row(item) for item in result]

    async def claim_job(self, job_id: int) -> bool:
        """Atomically move a job from ``scheduled`` to ``processing``.

        Returns ``False`` when another caller already claimed or cancelled it.
        """
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE scheduled_jobs
                SET status='processing', updated_at=CURRENT_TIMESTAMP
                WHERE id=? AND status='scheduled'
                """,
                (job_id,),
            )
            await db.commit()
            return cursor.rowcount == 1

    async def mark_job_sent(self, job_id: int, email_log_id: int) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                UPDATE scheduled_jobs
                SET status='sent', email_log_id=?, updated_at=CURRENT_TIMESTAMP
                WHERE id=? AND status='processing'
                """,
                (email_log_id, job_id),
            )
            await db.commit()

    async def mark_job_failed(self, job_id: int, error: str) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                UPDATE scheduled_jobs
                SET status='failed', error=?, updated_at=CURRENT_TIMESTAMP
                WHERE id=? AND status='processing'
                """,
                (error, job_id),
            )
            await db.commit()

    async def fail_processing_jobs(self, error: str) -> List[int]:
        """Mark every job stuck in ``processing`` as failed and return their ids."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute("SELECT id FROM scheduled_jobs WHERE status='processing'") as cur:
                ids = [int(row[0]) for row in await cur.fetchall()]
            if ids:
                await db.execute(
                    """
                    UPDATE scheduled_jobs
                    SET status='failed', error=?, updated_at=CURRENT_TIMESTAMP
                    WHERE status='processing'
                    """,
                    (error,),
                )
                await db.commit()
        return ids

    async def cancel_job(self, job_id: int) -> bool:
        """Cancel a job that is still waiting. Returns ``True`` if it changed."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE scheduled_jobs
                SET status='cancelled', updated_at=CURRENT_TIMESTAMP
                WHERE id=? AND status='scheduled'
                """,
                (job_id,),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def count_scheduled_jobs(self) -> int:
        """Return the number of jobs still waiting for promotion."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT COUNT(*) FROM scheduled_jobs WHERE status='scheduled'"
            ) as cur:
                row = await cur.fetchone()
        return int(row[0] if row else 0)
