"""Trade notifications.

Delivery is fire-and-forget: a failed email is logged and never aborts the
job that produced it.
"""
from __future__ import annotations

from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
import logging
import smtplib
from typing import Any, Protocol

from .config import EmailConfig

logger = logging.getLogger(__name__)

SUBJECTS = {
    "entry": "Position {action}: {side} {symbol}",
    "close": "Position closed: {side} {symbol} ({exit_reason})",
    "cooldown": "Trading paused: {reason}",
    "post_fill_failure": "URGENT: order filled but not recorded ({symbol})",
    "weekly_report": "Weekly trading report {start} - {end}",
}


class Notifier(Protocol):
    def notify(self, kind: str, payload: dict[str, Any]) -> bool: ...


def _subject(kind: str, payload: dict[str, Any]) -> str:
    template = SUBJECTS.get(kind, kind)
    try:
        return template.format(**payload)
    except KeyError:
        return kind


def render_body(kind: str, payload: dict[str, Any]) -> str:
    if "body" in payload:
        return str(payload["body"])
    lines = [
        "Order Block Trading Bot",
        "",
        f"Event: {kind}",
        f"Time: {datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')}",
        "",
    ]
    for key, value in payload.items():
        lines.append(f"  {key}: {value}")
    return "\n".join(lines) + "\n"


class LogNotifier:
    def __init__(self) -> None:
        self.sent: list[tuple[str, dict[str, Any]]] = []

    def notify(self, kind: str, payload: dict[str, Any]) -> bool:
        self.sent.append((kind, payload))
        logger.info("Notification %s: %s", kind, _subject(kind, payload))
        return True


class EmailNotifier:
    def __init__(self, config: EmailConfig) -> None:
        self.config = config

    def build_message(self, kind: str, payload: dict[str, Any]) -> MIMEMultipart:
        msg = MIMEMultipart()
        msg["From"] = self.config.sender or self.config.username
        msg["To"] = self.config.recipient
        msg["Subject"] = f"[OB Bot] {_subject(kind, payload)}"
        msg.attach(MIMEText(render_body(kind, payload), "plain"))
        return msg

    def notify(self, kind: str, payload: dict[str, Any]) -> bool:
        if not self.config.enabled:
            logger.debug("Email disabled, dropping %s notification", kind)
            return False
        msg = self.build_message(kind, payload)
        try:
            with smtplib.SMTP(self.config.smtp_host, self.config.smtp_port, timeout=30) as smtp:
                smtp.starttls()
                if self.config.username:
                    smtp.login(self.config.username, self.config.password)
                smtp.send_message(msg)
        except (OSError, smtplib.SMTPException) as exc:
            logger.error("Failed to send %s email: %s", kind, exc)
            return False
        logger.info("Sent %s email to %s", kind, self.config.recipient)
        return True
