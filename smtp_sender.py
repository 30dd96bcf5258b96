import logging
import smtplib
from dataclasses import dataclass, field
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr
from typing import List, Optional

import config

logger = logging.getLogger("escalation.smtp")


@dataclass
class SendResult:
    success: bool
    error: Optional[str] = None
    sent: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


class SmtpSender:
    """Sends the same reminder to many recipients over one SMTP session (SendBulkMessage)."""

    def __init__(self, host: str = None, port: int = None, username: str = None,
                 password: str = None, from_email: str = None, use_tls: bool = None,
                 timeout: int = None, from_name: str = "Survey Team"):
        self.host = host or config.EMAIL_HOST
        self.port = port or config.EMAIL_PORT
        self.username = username if username is not None else config.EMAIL_USER
        self.password = password if password is not None else config.EMAIL_PASS
        self.from_email = from_email or config.EMAIL_FROM
        self.use_tls = config.EMAIL_USE_TLS if use_tls is None else use_tls
        self.timeout = timeout or config.EMAIL_TIMEOUT_SECONDS
        self.from_name = from_name

    def _connect(self) -> smtplib.SMTP:
        if self.port == 465:
            server = smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout)
        else:
            server = smtplib.SMTP(self.host, self.port, timeout=self.timeout)
            if self.use_tls:
                server.starttls()
        if self.username:
            server.login(self.username, self.password)
        return server

    def build_message(self, to_email: str, subject: str, body: str) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = formataddr((self.from_name, self.from_email))
        msg["To"] = to_email
        msg.attach(MIMEText(body, "plain", "utf-8"))
        return msg

    def send_bulk_message(self, recipients: List[str], subject: str, body: str) -> SendResult:
        """
        One message per recipient. Success only if every recipient was accepted;
        otherwise the error lists who was missed.
        """
        if not recipients:
            return SendResult(success=False, error="No recipients")

        try:
            server = self._connect()
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"SMTP connection to {self.host}:{self.port} failed: {e}")
            return SendResult(success=False, error=f"SMTP connection failed: {e}", failed=list(recipients))

        result = SendResult(success=True)
        try:
            for to_email in recipients:
                try:
                    server.sendmail(self.from_email, [to_email],
                                    self.build_message(to_email, subject, body).as_string())
                    result.sent.append(to_email)
                except smtplib.SMTPException as e:
                    logger.warning(f"Reminder to {to_email} rejected: {e}")
                    result.failed.append(to_email)
        finally:
            try:
                server.quit()
            except (smtplib.SMTPException, OSError):
                pass

        if result.failed:
            result.success = False
            result.error = f"{len(result.failed)}/{len(recipients)} recipients failed: {', '.join(result.failed[:5])}"

        logger.info(f"Reminder sent to {len(result.sent)}/{len(recipients)} recipients")
        return result
