"""ASGI application assembly for uvicorn.

Usage:
    uvicorn bulk_mail_service.server:create_server_app --factory --host 0.0.0.0 --port 8000

Settings come from :func:`bulk_mail_service.config.load_settings`.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI

from .api import create_app
from .attachments import AttachmentManager
from .config import load_settings
from .core import BulkMailCore
from .logger import get_logger
from .smtp_pool import SmtpSettings
from .transport import MailTransport, SmtpTransport, UnconfiguredTransport


def build_transport(settings: Dict[str, Any]) -> MailTransport:
    """Return the SMTP transport described by ``settings``."""
    host = settings.get("smtp_host")
    sender = settings.get("smtp_from")
    if not host:
        get_logger("server").warning("No SMTP host configured; every send will be recorded as failed")
        return UnconfiguredTransport()
    if not sender:
        return UnconfiguredTransport("Missing sender address (smtp from/user)")
    smtp = SmtpSettings(
        host=str(host),
        port=int(settings.get("smtp_port") or 587),
        user=settings.get("smtp_user"),
        password=settings.get("smtp_password"),
        use_tls=bool(settings.get("smtp_use_tls")),
        start_tls=bool(settings.get("smtp_start_tls")),
    )
    return SmtpTransport(smtp, sender=str(sender))


def build_service(settings: Dict[str, Any], transport: Optional[MailTransport] = None) -> BulkMailCore:
    """Instantiate :class:`BulkMailCore` from loaded settings."""
    return BulkMailCore(
        db_path=settings["db_path"],
        transport=transport or build_transport(settings),
        public_base_url=settings.get("public_base_url") or "http://localhost:8000",
        attachments=AttachmentManager(
            max_attachments=settings.get("max_attachments", 3),
            max_attachment_bytes=settings.get("max_attachment_bytes", 5 * 1024 * 1024),
        ),
        start_active=bool(settings.get("scheduler_active", True)),
        scheduler_interval=float(settings.get("scheduler_interval") or 30.0),
        test_mode=bool(settings.get("test_mode")),
        log_delivery_activity=bool(settings.get("log_delivery_activity")),
    )


def create_server_app(settings: Optional[Dict[str, Any]] = None) -> FastAPI:
    """Build the FastAPI app whose lifespan starts and stops the service."""
    settings = settings or load_settings()
    core = build_service(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler - starts and stops the core service."""
        await core.start()
        yield
        await core.stop()

    return create_app(core, api_token=settings.get("api_token"), lifespan=lifespan)
