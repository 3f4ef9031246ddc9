"""Notification sink consumed by the expiration sweep.

Delivery (OS notifications, console output) is up to the front-end; the
lifecycle manager only calls these four methods.
"""

from __future__ import annotations

import logging
from typing import Protocol

from cloudkey.auth.session import Session

logger = logging.getLogger(__name__)


class NotificationSink(Protocol):
    def notify_expiring_soon(self, session: Session, minutes_remaining: int) -> None: ...

    def notify_auto_renew_needs_mfa(self, session: Session) -> None: ...

    def notify_auto_renew_failed(self, session: Session, error: Exception) -> None: ...

    def notify_auto_renew_succeeded(self, session: Session) -> None: ...


class LoggingNotificationSink:
    """Default sink: writes each notification to the log."""

    def notify_expiring_soon(self, session: Session, minutes_remaining: int) -> None:
        logger.warning("Session %s expires in %d minute(s)", session.alias, minutes_remaining)

    def notify_auto_renew_needs_mfa(self, session: Session) -> None:
        logger.warning("Session %s needs an MFA code to renew", session.alias)

    def notify_auto_renew_failed(self, session: Session, error: Exception) -> None:
        logger.error("Auto-renew of session %s failed: %s", session.alias, error)

    def notify_auto_renew_succeeded(self, session: Session) -> None:
        logger.info("Session %s renewed automatically", session.alias)
