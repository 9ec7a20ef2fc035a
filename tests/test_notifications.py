from __future__ import annotations

from email import policy
from email.parser import BytesParser

import clamaction as app
from tests.helpers import TEST_LOG, FakeSMTPServer, fixture_bytes, make_action_config


METADATA = app.QuarantineMetadata(
    envelope_sender="alice@x.com",
    envelope_recipients=("bob@y.com", "carol@y.com"),
    virus_name="Eicar-Test-Signature",
    quarantine_time="2025-10-14T09:12:44+00:00",
)


def test_defang_address() -> None:
    assert app.defang_address("alice@mail.x.com") == "alice[at]mail[dot]x[dot]com"
    assert app.defang_address("") == ""


def test_compose_admin_notice_fills_template() -> None:
    text = app.compose_admin_notice(METADATA, "From: alice@x.com\n")

    assert "A potentially infected email sent to one or more of your users was detected." in text
    assert "Sender: alice@x.com\n" in text
    assert "Virus: Eicar-Test-Signature\n" in text
    assert "Recipients: bob@y.com, carol@y.com\n" in text
    assert "----- Forwarded headers from alice@x.com -----\n\nFrom: alice@x.com\n" in text


def test_compose_recipient_notice_fills_template() -> None:
    text = app.compose_recipient_notice(
        "admin@z.com",
        "alice[at]x[dot]com",
        "Eicar-Test-Signature",
        "kPqRsT",
        "Subject: hi\n",
    )

    assert "Contact your admin admin@z.com if you need assistance." in text
    assert "Sender: alice[at]x[dot]com\n" in text
    assert "Quarantine ID: kPqRsT\n" in text
    assert text.endswith("Mail-Info:\n--8<--\n\nSubject: hi\n\n--8<--\n")


def test_notify_admin_attaches_quarantined_message(tmp_path) -> None:
    config = make_action_config(tmp_path)
    raw = fixture_bytes("encoded_headers.eml")
    headers = app.parse_headers(raw, TEST_LOG)
    server = FakeSMTPServer()

    app.notify_admin(config, METADATA, raw, headers, TEST_LOG, smtp_factory=server)

    (sender, recipient, data), = server.delivered
    assert (sender, recipient) == ("clamav@z.com", "admin@z.com")
    parsed = BytesParser(policy=policy.compat32).parsebytes(data)
    assert parsed["Subject"] == app.SUBJECT_QUARANTINED
    assert parsed["From"] == "clamav@z.com"
    assert parsed["To"] == "admin@z.com"
    text_part, attachment = parsed.get_payload()
    body = text_part.get_payload(decode=True).decode("utf-8").replace("\r\n", "\n")
    assert "Received: from mx.example.test (mx.example.test [192.0.2.1]) by\n\trelay" in body
    assert "From: Renée Martin <renee@x.com>\n" in body
    assert attachment.get_filename() == "virus.kPqRsT.eml"


def test_notify_recipient_sends_redacted_summary(tmp_path) -> None:
    config = make_action_config(tmp_path)
    headers = app.parse_headers(fixture_bytes("encoded_headers.eml"), TEST_LOG)
    server = FakeSMTPServer()

    app.notify_recipient(config, "bob@y.com", headers, TEST_LOG, smtp_factory=server)

    (sender, recipient, data), = server.delivered
    assert (sender, recipient) == ("clamav@z.com", "bob@y.com")
    parsed = BytesParser(policy=policy.compat32).parsebytes(data)
    assert parsed.get_content_type() == "text/plain"
    body = parsed.get_payload(decode=True).decode("utf-8").replace("\r\n", "\n")
    assert "Sender: alice[at]x[dot]com\n" in body
    assert "Quarantine ID: kPqRsT\n" in body
    assert "Message-ID: <abc123@x.com>\n" in body
    assert "From: Renée Martin <renee@x.com>\n" in body
    assert "Received:" not in body
    assert "X-Note:" not in body
