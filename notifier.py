"""Best-effort run notifications.

The notifier observes a finished run; nothing it does can change the run's
outcome or exit status.
"""

from __future__ import annotations

import asyncio
import logging
import subprocess
from email.message import EmailMessage
from typing import Optional, Protocol

import aiosmtplib

from config_model import NetSyncConfig, SmtpConfig
from errors import NotifyError
from host_manager import HostManager
from pipeline import RunResult

logger = logging.getLogger(__name__)

MAIL_COMMAND_TIMEOUT = 60


class Transport(Protocol):
    def send(self, recipient: str, subject: str, body: str) -> None: ...


class MailCommandTransport:
    """Hands the message to the local mail transport, e.g. `mail -s <subject> <address>`.

    Addresses are passed through unvalidated; an SMS gateway alias is just
    another address.
    """

    def __init__(self, command: Optional[list[str]] = None, timeout: float = MAIL_COMMAND_TIMEOUT) -> None:
        self.command = command or ["mail"]
        self.timeout = timeout

    def send(self, recipient: str, subject: str, body: str) -> None:
        args = [*self.command, "-s", subject, recipient]
        try:
            (returncode, _, stderr) = HostManager._run_command(args, input=body, check=False, timeout=self.timeout)
        except ValueError as e:
            # e.g. an embedded NUL byte in the address
            raise NotifyError(f"Cannot hand message for {recipient!r} to {self.command[0]}: {e}") from e
        if returncode != 0:
            raise NotifyError(f"{self.command[0]} exited with {returncode}: {stderr.strip()}")


class SmtpTransport:
    def __init__(self, settings: SmtpConfig) -> None:
        self.settings = settings

    def send(self, recipient: str, subject: str, body: str) -> None:
        s = self.settings
        msg = EmailMessage()
        try:
            msg["From"] = s.sender
            msg["To"] = recipient
            msg["Subject"] = subject
        except ValueError as e:
            raise NotifyError(f"Invalid mail header for {recipient!r}: {e}") from e
        msg.set_content(body)
        try:
            asyncio.run(
                aiosmtplib.send(
                    msg,
                    hostname=s.host,
                    port=s.port,
                    username=s.username,
                    password=s.password,
                    start_tls=s.starttls,
                    timeout=s.timeout,
                )
            )
        except aiosmtplib.SMTPException as e:
            raise NotifyError(f"SMTP delivery to {recipient} failed: {e}") from e


def format_message(project: str, result: RunResult) -> tuple[str, str]:
    """Return (subject, body) describing a finished run."""
    if result.succeeded:
        subject = f"[netsync] {project}: SUCCESS"
    else:
        subject = f"[netsync] {project}: FAILURE ({result.stage})"

    lines = [f"Status: {result.status.value}", f"Stage:  {result.stage}", "", result.detail, "", "Stages:"]
    for record in result.stages:
        lines.append(f"  {record.name:<14} {record.status.value}")
    return subject, "\n".join(lines) + "\n"


class Notifier:
    def __init__(self, project: str, recipients: list[str], transport: Transport) -> None:
        self.project = project
        self.recipients = recipients
        self.transport = transport

    def notify(self, result: RunResult) -> None:
        """Send the run outcome to every recipient. Failures are logged, never raised."""
        subject, body = format_message(self.project, result)
        for recipient in self.recipients:
            try:
                self.transport.send(recipient, subject, body)
                logger.info("Sent run report to %s", recipient)
            except (NotifyError, OSError, subprocess.SubprocessError) as e:
                logger.error("Could not notify %s: %s", recipient, e)


def build_notifier(cfg: NetSyncConfig) -> Optional[Notifier]:
    """Return the configured notifier, or None when there is nobody to notify."""
    n = cfg.notify
    if not n.recipients:
        return None
    if n.transport == "smtp" and n.smtp is not None:
        transport: Transport = SmtpTransport(n.smtp)
    else:
        transport = MailCommandTransport(n.mail_command)
    return Notifier(project=cfg.project.name, recipients=n.recipients, transport=transport)
