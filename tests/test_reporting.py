import aiosqlite
import pytest

from bulk_mail_service.errors import NotFoundError
from bulk_mail_service.persistence import Persistence
from bulk_mail_service.reporting import DeliveryReporting


@pytest.mark.asyncio
async def test_scheduled_view_hides_attachment_content(tmp_path):
    p = Persistence(str(tmp_path / "report.db"))
    await p.init_db()
    reporting = DeliveryReporting(p)
    job_id = await p.insert_scheduled_job(
        ["a@example.com"], "S", "B", 100, attachments=[{"filename": "a.txt", "content": "YQ=="}]
    )
    jobs = await reporting.scheduled()
    assert jobs[0]["attachments"] == ["a.txt"]
    assert (await reporting.get_job(job_id))["attachments"] == ["a.txt"]
    with pytest.raises(NotFoundError):
        await reporting.get_job(999)


@pytest.mark.asyncio
async def test_history_detail_and_stats(tmp_path):
    p = Persistence(str(tmp_path / "report.db"))
    await p.init_db()
    reporting = DeliveryReporting(p)
    log_id = await p.insert_email_log(["a@example.com"], "Subject", "Body", 5)
    await p.insert_delivery_records(log_id, ["a@example.com"])

    assert [log["id"] for log in await reporting.history()] == [log_id]
    detail = await reporting.delivery_detail(log_id)
    assert detail[0]["subject"] == "Subject"
    assert detail[0]["body"] == "Body"
    assert detail[0]["status"] == "pending"
    assert (await reporting.stats())["pending"] == 1
    assert await reporting.delivery_detail(999) == []


@pytest.mark.asyncio
async def test_undecodable_attachments_show_no_names(tmp_path):
    p = Persistence(str(tmp_path / "report.db"))
    await p.init_db()
    reporting = DeliveryReporting(p)
    job_id = await p.insert_scheduled_job(["a@example.com"], "S", "B", 100)
    async with aiosqlite.connect(p.db_path) as db:
        await db.execute("UPDATE scheduled_jobs SET attachments='{broken' WHERE id=?", (job_id,))
        await db.commit()

    assert (await reporting.get_job(job_id))["attachments"] == []
