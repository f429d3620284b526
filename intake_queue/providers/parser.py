"""Full MIME parsing of a fetched message into a :class:`FetchedMessage`."""

from __future__ import annotations

import email
import email.message
import email.policy

from intake_queue.providers.base import Attachment, FetchedMessage


def parse_message(external_id: str, raw_bytes: bytes) -> FetchedMessage:
    msg = email.message_from_bytes(raw_bytes, policy=email.policy.default)
    return FetchedMessage(
        external_id=external_id,
        subject=str(msg.get("Subject", "")),
        sender=str(msg.get("From", "")),
        body_text=_body_text(msg),
        attachments=_attachments(msg),
    )


def _body_text(msg: email.message.EmailMessage) -> str | None:
    """First inline text/plain part; HTML-only messages yield ``None``."""
    for part in msg.walk():
        if part.get_content_maintype() == "multipart":
            continue
        if part.get_content_disposition() == "attachment":
            continue
        if part.get_content_type() == "text/plain":
            payload = part.get_content()
            if isinstance(payload, str):
                return payload
    return None


def _attachments(msg: email.message.EmailMessage) -> list[Attachment]:
    found: list[Attachment] = []
    for part in msg.walk():
        if part.get_content_maintype() == "multipart":
            continue
        filename = part.get_filename()
        if part.get_content_disposition() != "attachment" and not filename:
            continue

        payload = part.get_content()
        if isinstance(payload, str):
            payload = payload.encode("utf-8")
        elif not isinstance(payload, bytes):
            continue

        found.append(
            Attachment(
                filename=filename or "unnamed",
                content_type=part.get_content_type(),
                payload=payload,
            )
        )
    return found
