"""Recipient list normalisation and the delimited column format.

Recipient lists are stored in ``email_logs.recipients`` and
``scheduled_jobs.recipients`` as a single string. ``encode`` joins the
addresses with ``", "``; ``decode`` splits on ``","`` and strips each item,
dropping empty entries. An address may therefore never contain a comma,
which :func:`normalise` enforces.
"""

from __future__ import annotations

from typing import Any, Iterable, List

DELIMITER = ","
JOINER = DELIMITER + " "


def encode(recipients: Iterable[str]) -> str:
    """Serialise an ordered recipient list for storage."""
    return JOINER.join(recipients)


def decode(value: str | None) -> List[str]:
    """Rebuild the ordered recipient list from its stored form."""
    if not value:
        return []
    return [part.strip() for part in value.split(DELIMITER) if part.strip()]


def normalise(value: Any) -> List[str]:
    """Return trimmed, de-duplicated recipients in submission order.

    ``value`` may be a list of addresses or one comma separated string.
    Raises :class:`ValueError` for items that cannot round-trip through
    :func:`encode`/:func:`decode`.
    """
    if value is None:
        return []
    if isinstance(value, str):
        items = value.split(DELIMITER)
    elif isinstance(value, (list, tuple)):
        items = []
        for item in value:
            if item is None:
                continue
            text = str(item)
            if DELIMITER in text.strip():
                raise ValueError(f"Recipient '{text.strip()}' must not contain '{DELIMITER}'")
            items.append(text)
    else:
        raise ValueError("recipients must be a list or a comma separated string")

    seen = set()
    result: List[str] = []
    for item in items:
        address = item.strip()
        if not address or address in seen:
            continue
        seen.add(address)
        result.append(address)
    return result
