"""
Cronkeeper: Job Notifications

Side channel that tells operators about job outcomes. Notifications are
sent after the ledger write and outside the critical path: a notifier
failure is logged and never changes a job's result.

Key responsibilities:
- Define the notification payloads and the :class:`Notifier` port
- Send plain-text email through SMTP when configured
- Fall back to log-only notifications otherwise

External dependencies:
- smtplib / email: Standard library SMTP client and message building

Database tables accessed:
- None

Thread safety: Thread-safe (each send opens its own SMTP connection)

Author: Cronkeeper Team
Created: 2026-10-19
Last Modified: 2026-10-19
Status: Development
Version: v0.1.0
"""

# ============================================================================
# Imports
# ============================================================================

from __future__ import annotations

import json
import smtplib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime
from email.message import EmailMessage
from typing import Any, Callable, Dict, Optional, Tuple

from cronkeeper.core.config import NotificationConfig
from cronkeeper.core.logging import get_logger
from cronkeeper.core.time import utc_now

# ============================================================================
# Module Setup
# ============================================================================

logger = get_logger(__name__)


class NotificationError(Exception):
    """Raised by notifier backends when a message cannot be delivered."""


# ============================================================================
# Data Models
# ============================================================================


@dataclass
class JobFailureNotification:
    job_name: str
    error: str
    run_id: Optional[str] = None
    target_date: Optional[date] = None
    dataset: Optional[str] = None
    timestamp: datetime = field(default_factory=utc_now)
    meta: Dict[str, Any] = field(default_factory=dict)


@dataclass
class JobSuccessNotification:
    job_name: str
    run_id: Optional[str] = None
    target_date: Optional[date] = None
    row_count: Optional[int] = None
    duration_ms: Optional[int] = None
    timestamp: datetime = field(default_factory=utc_now)
    meta: Dict[str, Any] = field(default_factory=dict)


def render_failure(notification: JobFailureNotification) -> Tuple[str, str]:
    """Return ``(subject, body)`` for a failure notification."""

    subject = f"[cronkeeper] Job failed: {notification.job_name}"
    lines = [
        f"Job: {notification.job_name}",
        f"Run ID: {notification.run_id or '-'}",
        f"Target date: {notification.target_date or '-'}",
    ]
    if notification.dataset:
        lines.append(f"Dataset: {notification.dataset}")
    lines.append(f"Time (UTC): {notification.timestamp:%Y-%m-%d %H:%M:%S}")
    lines.append("")
    lines.append("Error:")
    lines.append(notification.error)
    if notification.meta:
        lines.append("")
        lines.append("Details:")
        lines.append(json.dumps(notification.meta, indent=2, default=str))
    return subject, "\n".join(lines)


def render_success(notification: JobSuccessNotification) -> Tuple[str, str]:
    """Return ``(subject, body)`` for a success notification."""

    subject = f"[cronkeeper] Job succeeded: {notification.job_name}"
    lines = [
        f"Job: {notification.job_name}",
        f"Run ID: {notification.run_id or '-'}",
        f"Target date: {notification.target_date or '-'}",
    ]
    if notification.row_count is not None:
        lines.append(f"Rows: {notification.row_count}")
    if notification.duration_ms is not None:
        lines.append(f"Duration: {notification.duration_ms / 1000:.1f}s")
    lines.append(f"Time (UTC): {notification.timestamp:%Y-%m-%d %H:%M:%S}")
    if notification.meta:
        lines.append("")
        lines.append("Details:")
        lines.append(json.dumps(notification.meta, indent=2, default=str))
    return subject, "\n".join(lines)


# ============================================================================
# Notifiers
# ============================================================================


class Notifier(ABC):
    """Best-effort notification port.

    ``notify_success`` and ``notify_failure`` never raise. Subclasses
    implement ``_send_success``/``_send_failure`` and return False when the
    message was intentionally not sent.
    """

    def notify_success(self, notification: JobSuccessNotification) -> bool:
        try:
            return self._send_success(notification)
        except Exception as exc:
            logger.error(
                "Success notification for job=%s failed: %s", notification.job_name, exc
            )
            return False

    def notify_failure(self, notification: JobFailureNotification) -> bool:
        try:
            return self._send_failure(notification)
        except Exception as exc:
            logger.error(
                "Failure notification for job=%s failed: %s", notification.job_name, exc
            )
            return False

    @abstractmethod
    def _send_success(self, notification: JobSuccessNotification) -> bool:
        ...

    @abstractmethod
    def _send_failure(self, notification: JobFailureNotification) -> bool:
        ...


class LoggingNotifier(Notifier):
    """Write notifications to the log only."""

    def _send_success(self, notification: JobSuccessNotification) -> bool:
        logger.info(
            "Job succeeded: job=%s run_id=%s target_date=%s",
            notification.job_name,
            notification.run_id,
            notification.target_date,
        )
        return True

    def _send_failure(self, notification: JobFailureNotification) -> bool:
        logger.error(
            "Job failed: job=%s run_id=%s target_date=%s error=%s",
            notification.job_name,
            notification.run_id,
            notification.target_date,
            notification.error,
        )
        return True


class EmailNotifier(Notifier):
    """Plain-text email over SMTP.

    Nothing is sent unless ``smtp_host`` and ``alert_email_to`` are set;
    success mail additionally requires ``notify_on_success``.
    """

    def __init__(
        self,
        config: NotificationConfig,
        smtp_factory: Callable[..., smtplib.SMTP] = smtplib.SMTP,
    ) -> None:
        self.config = config
        self._smtp_factory = smtp_factory

    def _deliver(self, subject: str, body: str) -> None:
        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = self.config.email_from
        message["To"] = self.config.alert_email_to
        message.set_content(body)

        try:
            with self._smtp_factory(self.config.smtp_host, self.config.smtp_port, timeout=30) as smtp:
                if self.config.smtp_use_tls:
                    smtp.starttls()
                if self.config.smtp_user:
                    smtp.login(self.config.smtp_user, self.config.smtp_password)
                smtp.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:
            raise NotificationError(f"SMTP delivery failed: {exc}") from exc

    def _send_failure(self, notification: JobFailureNotification) -> bool:
        if not self.config.is_configured:
            logger.info(
                "Email notification skipped (not configured): job=%s", notification.job_name
            )
            return False

        subject, body = render_failure(notification)
        self._deliver(subject, body)
        logger.info(
            "Failure notification email sent: job=%s run_id=%s",
            notification.job_name,
            notification.run_id,
        )
        return True

    def _send_success(self, notification: JobSuccessNotification) -> bool:
        if not self.config.notify_on_success or not self.config.is_configured:
            return False

        subject, body = render_success(notification)
        self._deliver(subject, body)
        logger.info(
            "Success notification email sent: job=%s run_id=%s",
            notification.job_name,
            notification.run_id,
        )
        return True


def build_notifier(config: NotificationConfig) -> Notifier:
    """Return an :class:`EmailNotifier` when SMTP is configured, else log only."""

    if config.is_configured:
        return EmailNotifier(config)
    logger.warning("SMTP_HOST or ALERT_EMAIL_TO not set, email notifications disabled")
    return LoggingNotifier()
