"""Open-tracking pixel helpers."""

from __future__ import annotations

import base64

# 1x1 transparent GIF
PIXEL_GIF = base64.b64decode("R0lGODlhAQABAPAAAAAAAAAAACH5BAEAAAAALAAAAAABAAEAAAICRAEAOw==")
PIXEL_MEDIA_TYPE = "image/gif"
NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}
TRACK_PATH = "/api/track"


def pixel_url(base_url: str, record_id: int) -> str:
    """Return the tracking URL for one delivery record."""
    return f"{base_url.rstrip('/')}{TRACK_PATH}/{record_id}"


def with_pixel(html_body: str, base_url: str, record_id: int) -> str:
    """Append the invisible tracking image for ``record_id`` to an HTML body."""
    img = (
        f'<img src="{pixel_url(base_url, record_id)}" width="1" height="1" '
        'style="display:none" alt="" />'
    )
    return f"{html_body}{img}"
