import base64

import pytest

from bulk_mail_service.attachments import Attachment, AttachmentManager
from bulk_mail_service.errors import ValidationError


def b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def test_decode_returns_attachments_in_order():
    manager = AttachmentManager()
    items = [
        {"filename": " report.pdf ", "content": b64(b"%PDF")},
        {"filename": "notes.txt", "content": b64(b"hi")},
    ]
    result = manager.decode(items)
    assert result == [Attachment("report.pdf", b"%PDF"), Attachment("notes.txt", b"hi")]
    assert manager.decode(None) == []


def test_payload_form_is_base64():
    att = Attachment("a.txt", b"hello")
    assert att.to_payload() == {"filename": "a.txt", "content": "aGVsbG8="}
    assert AttachmentManager().decode([att.to_payload()]) == [att]


@pytest.mark.parametrize(
    "items, message",
    [
        ([{"filename": "", "content": "YQ=="}], "filename"),
        ([{"filename": "a.txt", "content": ""}], "no content"),
        ([{"filename": "a.txt", "content": "not base64!"}], "base64"),
        ("[{\"filename\"", "must be a list"),
        (["a.txt"], "must be an object"),
    ],
)
def test_decode_rejects_bad_items(items, message):
    with pytest.raises(ValidationError) as excinfo:
        AttachmentManager().decode(items)
    assert message in str(excinfo.value)


def test_limits_are_enforced():
    manager = AttachmentManager(max_attachments=2, max_attachment_bytes=4)
    with pytest.raises(ValidationError):
        manager.decode([{"filename": f"{i}.txt", "content": "YQ=="} for i in range(3)])
    with pytest.raises(ValidationError):
        manager.decode([{"filename": "big.bin", "content": b64(b"12345")}])
    assert len(manager.decode([{"filename": "ok.bin", "content": b64(b"1234")}])) == 1


def test_guess_mime():
    assert AttachmentManager.guess_mime("photo.png") == ("image", "png")
    assert AttachmentManager.guess_mime("blob") == ("application", "octet-stream")
