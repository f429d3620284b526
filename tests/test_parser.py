"""Tests for intake_queue.providers.parser."""

from __future__ import annotations

from intake_queue.providers.parser import parse_message
from tests.conftest import _build_multipart_email


class TestParseMessage:
    def test_plain_email(self, plain_eml_bytes: bytes):
        message = parse_message("42", plain_eml_bytes)
        assert message.external_id == "42"
        assert message.subject == "Application: Backend Engineer"
        assert message.sender == "candidate@example.com"
        assert message.body_text.strip() == "Hello, please see my resume."
        assert message.attachments == []

    def test_multipart_attachments(self, multipart_eml_bytes: bytes):
        message = parse_message("7", multipart_eml_bytes)
        assert message.body_text.strip() == "Resume attached"
        names = [a.filename for a in message.attachments]
        assert names == ["resume.pdf", "notes.txt"]
        pdf = message.attachments[0]
        assert pdf.content_type == "application/pdf"
        assert pdf.payload == b"%PDF-1.4 fake pdf content"
        assert pdf.extension == "pdf"

    def test_inline_part_with_filename_is_an_attachment(self):
        raw = _build_multipart_email(inline=[("cv.docx", "application/octet-stream", b"PK\x03\x04")])
        message = parse_message("8", raw)
        assert [a.filename for a in message.attachments] == ["cv.docx"]
        assert message.attachments[0].payload == b"PK\x03\x04"

    def test_html_only_has_no_text_body(self):
        from email.mime.text import MIMEText

        msg = MIMEText("<p>Hi</p>", "html")
        msg["Subject"] = "HTML"
        assert parse_message("9", msg.as_bytes()).body_text is None
