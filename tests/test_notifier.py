"""Tests for run notifications."""

import aiosmtplib
import pytest

from errors import NotifyError
from host_manager import HostManager
from notifier import MailCommandTransport, Notifier, SmtpTransport, build_notifier, format_message
from config_model import SmtpConfig
from pipeline import RunResult, RunStatus, StageRecord, StageStatus


def _failure():
    return RunResult(
        status=RunStatus.FAILURE,
        stage="validate",
        detail="`nginx -t` exited with 1: bad config",
        stages=[
            StageRecord(name="certgen", mutates=True, depends_on=(), status=StageStatus.SUCCEEDED),
            StageRecord(name="validate", mutates=False, depends_on=("certgen",), status=StageStatus.FAILED),
            StageRecord(name="restart", mutates=True, depends_on=("certgen", "validate")),
        ],
        mutated=True,
    )


class _RecordingTransport:
    def __init__(self, fail_for=()):
        self.sent = []
        self.fail_for = fail_for

    def send(self, recipient, subject, body):
        if recipient in self.fail_for:
            raise NotifyError("transport refused")
        self.sent.append((recipient, subject, body))


def test_format_message_names_failing_stage():
    subject, body = format_message("django_app", _failure())

    assert subject == "[netsync] django_app: FAILURE (validate)"
    assert "bad config" in body
    assert "restart" in body and "pending" in body


def test_notifier_continues_after_a_failed_recipient():
    transport = _RecordingTransport(fail_for=("broken@example.com",))
    notifier = Notifier("django_app", ["broken@example.com", "ops@example.com"], transport)

    notifier.notify(_failure())

    assert [r for r, _, _ in transport.sent] == ["ops@example.com"]


def test_mail_command_transport(mock_host_manager):
    mock_host_manager["mail -s subject 5551234@sms.example.net"] = (0, "", "")

    MailCommandTransport().send("5551234@sms.example.net", "subject", "body")

    assert mock_host_manager.calls == ["mail -s subject 5551234@sms.example.net"]


def test_mail_command_transport_failure(mock_host_manager):
    mock_host_manager["mail -s subject not-an-address"] = (1, "", "mail: invalid address\n")

    try:
        MailCommandTransport().send("not-an-address", "subject", "body")
    except NotifyError as e:
        assert "invalid address" in str(e)
    else:
        raise AssertionError("NotifyError not raised")


def test_smtp_transport_wraps_smtp_errors(monkeypatch):
    async def _refuse(*args, **kwargs):
        raise aiosmtplib.SMTPException("connection refused")

    monkeypatch.setattr(aiosmtplib, "send", _refuse)
    transport = SmtpTransport(SmtpConfig(host="smtp.example.com", sender="netsync@example.com"))

    try:
        transport.send("ops@example.com", "subject", "body")
    except NotifyError as e:
        assert "ops@example.com" in str(e)
    else:
        raise AssertionError("NotifyError not raised")


def test_smtp_transport_builds_message(monkeypatch):
    captured = {}

    async def _send(message, **kwargs):
        captured["message"] = message
        captured["kwargs"] = kwargs

    monkeypatch.setattr(aiosmtplib, "send", _send)
    transport = SmtpTransport(SmtpConfig(host="smtp.example.com", port=2525, sender="netsync@example.com", starttls=False))

    transport.send("ops@example.com", "[netsync] ok", "all good\n")

    assert captured["message"]["To"] == "ops@example.com"
    assert captured["message"]["Subject"] == "[netsync] ok"
    assert captured["kwargs"]["hostname"] == "smtp.example.com"
    assert captured["kwargs"]["port"] == 2525
    assert captured["kwargs"]["start_tls"] is False


def test_smtp_transport_rejects_header_injection(monkeypatch):
    async def _send(*args, **kwargs):
        raise AssertionError("message must not be sent")

    monkeypatch.setattr(aiosmtplib, "send", _send)
    transport = SmtpTransport(SmtpConfig(host="smtp.example.com", sender="netsync@example.com"))

    with pytest.raises(NotifyError, match="Invalid mail header"):
        transport.send("ops@example.com\nBcc: x@example.net", "subject", "body")


def test_mail_command_transport_wraps_invalid_argument(monkeypatch):
    def _reject(*args, **kwargs):
        raise ValueError("embedded null byte")

    monkeypatch.setattr(HostManager, "_run_command", _reject)

    with pytest.raises(NotifyError, match="embedded null byte"):
        MailCommandTransport().send("ops@example.com\x00", "subject", "body")


def test_build_notifier(netsync_config):
    assert build_notifier(netsync_config) is None

    netsync_config.notify.recipients = ["ops@example.com"]
    notifier = build_notifier(netsync_config)
    assert notifier is not None
    assert type(notifier.transport) is MailCommandTransport
