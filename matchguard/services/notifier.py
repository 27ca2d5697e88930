"""Administrator notifications for bans and high-severity session anomalies.

Delivery is best-effort: sends run on a small thread pool when one is
configured, and any delivery failure is logged and dropped so it can never
change a security decision.
"""
import logging
import smtplib
from concurrent.futures import Executor
from datetime import datetime, timezone
from email.message import EmailMessage
from pprint import pformat
from typing import Any, Optional, Protocol

from matchguard.core.config import Settings
from matchguard.schemas.security import BanRecord

logger = logging.getLogger(__name__)


class NotificationSender(Protocol):
    """Outbound mail transport."""

    def send(self, to: str, subject: str, body: str) -> None:
        ...


class SmtpNotificationSender:
    """Send plain-text mail through an SMTP server."""

    def __init__(
        self,
        host: str,
        port: int,
        user: str = "",
        password: str = "",
        sender: str = "",
        use_ssl: bool = True,
        timeout: float = 10.0,
    ):
        self._host = host
        self._port = port
        self._user = user
        self._password = password
        self._sender = sender or user
        self._use_ssl = use_ssl
        self._timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "SmtpNotificationSender":
        return cls(
            host=settings.SMTP_HOST,
            port=settings.SMTP_PORT,
            user=settings.SMTP_USER,
            password=settings.SMTP_PASSWORD,
            sender=settings.SMTP_FROM,
            use_ssl=settings.SMTP_USE_SSL,
        )

    def send(self, to: str, subject: str, body: str) -> None:
        msg = EmailMessage()
        msg["From"] = self._sender
        msg["To"] = to
        msg["Subject"] = subject
        msg.set_content(body)

        smtp_cls = smtplib.SMTP_SSL if self._use_ssl else smtplib.SMTP
        with smtp_cls(self._host, self._port, timeout=self._timeout) as server:
            if self._user:
                server.login(self._user, self._password)
            server.send_message(msg)


class LoggingNotificationSender:
    """Fallback sender used when SMTP is not configured."""

    def send(self, to: str, subject: str, body: str) -> None:
        logger.warning(f"Admin notification (mail not configured) to={to or '-'}: {subject}")


def _title(event_type: str) -> str:
    return event_type.replace("_", " ").title()


def _format_time(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


class AdminNotifier:
    """Formats administrator mails and hands them to a sender."""

    def __init__(
        self,
        sender: NotificationSender,
        admin_email: str,
        site_name: str,
        executor: Optional[Executor] = None,
    ):
        self._sender = sender
        self._admin_email = admin_email
        self._site_name = site_name
        self._executor = executor

    def _deliver(self, subject: str, body: str) -> None:
        try:
            self._sender.send(self._admin_email, subject, body)
        except Exception as e:
            logger.error(f"Failed to deliver admin notification '{subject}': {e}")

    def _dispatch(self, subject: str, body: str) -> None:
        if self._executor is None:
            self._deliver(subject, body)
            return
        try:
            self._executor.submit(self._deliver, subject, body)
        except RuntimeError as e:
            # Executor already shut down
            logger.error(f"Dropped admin notification '{subject}': {e}")

    def notify_ban(self, ban: BanRecord, user_agent: str = "") -> None:
        subject = f"[{self._site_name}] IP Address Banned: {ban.identity}"
        body = (
            "An IP address has been automatically banned due to suspicious activity:\n\n"
            f"IP Address: {ban.identity}\n"
            f"Ban Time: {_format_time(ban.started_at)}\n"
            f"Duration: {ban.duration // 3600} hours\n"
            f"Reason: {ban.reason}\n"
            f"User Agent: {user_agent}\n"
        )
        self._dispatch(subject, body)

    def notify_security_event(
        self,
        user_label: str,
        event_type: str,
        identity: str,
        timestamp: float,
        data: dict[str, Any],
    ) -> None:
        subject = f"[{self._site_name}] Security Alert: {_title(event_type)}"
        body = (
            "A security event has been detected:\n\n"
            f"User: {user_label}\n"
            f"Event: {_title(event_type)}\n"
            f"Time: {_format_time(timestamp)}\n"
            f"IP Address: {identity}\n"
            f"Additional Data: {pformat(data)}\n"
        )
        self._dispatch(subject, body)
