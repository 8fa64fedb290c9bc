"""Attachment decoding and limits for bulk sends.

Attachments travel as ``{"filename": ..., "content": <base64>}`` objects in
HTTP payloads and in the ``scheduled_jobs.attachments`` column, and as raw
bytes once handed to a transport.
"""

from __future__ import annotations

import base64
import binascii
import mimetypes
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Tuple

from .errors import ValidationError

DEFAULT_MAX_ATTACHMENTS = 3
DEFAULT_MAX_ATTACHMENT_BYTES = 5 * 1024 * 1024


@dataclass(frozen=True)
class Attachment:
    filename: str
    content: bytes

    def to_payload(self) -> Dict[str, str]:
        """Return the JSON-friendly form stored with scheduled jobs."""
        return {
            "filename": self.filename,
            "content": base64.b64encode(self.content).decode("ascii"),
        }


class AttachmentManager:
    """Validate and decode inline attachments."""

    def __init__(
        self,
        max_attachments: int = DEFAULT_MAX_ATTACHMENTS,
        max_attachment_bytes: int = DEFAULT_MAX_ATTACHMENT_BYTES,
    ):
        self.max_attachments = max(0, int(max_attachments))
        self.max_attachment_bytes = max(1, int(max_attachment_bytes))

    def decode(self, items: Iterable[Dict[str, Any]] | None) -> List[Attachment]:
        """Turn payload dictionaries into :class:`Attachment` objects.

        Raises :class:`ValidationError` when the list is too long, an item has
        no filename or content, the content is not base64, or a file exceeds
        the size limit.
        """
        if items is not None and not isinstance(items, (list, tuple)):
            raise ValidationError("attachments must be a list")
        items = list(items or [])
        if len(items) > self.max_attachments:
            raise ValidationError(f"At most {self.max_attachments} attachments are allowed")
        result: List[Attachment] = []
        for att in items:
            if not isinstance(att, dict):
                raise ValidationError("each attachment must be an object")
            filename = (att.get("filename") or "").strip()
            content = att.get("content")
            if not filename:
                raise ValidationError("attachment filename is required")
            if not content:
                raise ValidationError(f"attachment '{filename}' has no content")
            try:
                data = base64.b64decode(content, validate=True)
            except (binascii.Error, ValueError) as exc:
                raise ValidationError(f"attachment '{filename}' is not valid base64") from exc
            if len(data) > self.max_attachment_bytes:
                raise ValidationError(
                    f"attachment '{filename}' exceeds {self.max_attachment_bytes} bytes"
                )
            result.append(Attachment(filename=filename, content=data))
        return result

    @staticmethod
    def guess_mime(filename: str) -> Tuple[str, str]:
        """Guess the MIME type for the given filename."""
        mt, _ = mimetypes.guess_type(filename)
        if not mt:
            return ("application", "octet-stream")
        return tuple(mt.split("/", 1))  # type: ignore[return-value]
