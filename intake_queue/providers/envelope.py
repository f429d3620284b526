"""Header-only envelope extraction from raw RFC 822 bytes.

Uses ``email.parser.BytesHeaderParser`` which parses *only* the headers
without walking the MIME body, so listing a page of candidates never pays
for downloading or decoding attachments.
"""

from __future__ import annotations

import email.parser
import email.utils
from datetime import UTC, datetime
from typing import Any


def extract_envelope(raw_bytes: bytes) -> dict[str, Any]:
    """Extract listing fields from raw header bytes.

    Returns a dict with: message_id, subject, from, received_at, thread_id.
    """
    parser = email.parser.BytesHeaderParser()
    headers = parser.parsebytes(raw_bytes)

    message_id = (headers.get("Message-ID") or "").strip()
    return {
        "message_id": message_id,
        "subject": str(headers.get("Subject", "")),
        "from": str(headers.get("From", "")),
        "received_at": parse_date(headers.get("Date")),
        "thread_id": _thread_root(headers.get("References"), headers.get("In-Reply-To")),
    }


def parse_date(value: str | None) -> datetime | None:
    """RFC 2822 date to an aware UTC datetime, or ``None`` if unparseable."""
    if not value:
        return None
    try:
        parsed = email.utils.parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _thread_root(references: str | None, in_reply_to: str | None) -> str | None:
    """The first message of the conversation, as far as the headers tell."""
    if references:
        ids = references.split()
        if ids:
            return ids[0]
    if in_reply_to:
        return in_reply_to.strip() or None
    return None
