"""
auth/notifications.py -- Outbound email seam.

Template rendering and delivery are someone else's job. Services talk to an
EmailSender; the default LoggingEmailSender only logs the message so local
development works without an SMTP server.

send_safely() is the only way services call a sender. Delivery failure is
logged and swallowed: by the time an email is sent the state change it
announces has already committed, and failing the request would suggest it
had not.
"""

from __future__ import annotations

import logging
from typing import Protocol

logger = logging.getLogger("keyward.notifications")


class EmailSender(Protocol):
    def send(self, to: str, subject: str, body: str) -> None: ...


class LoggingEmailSender:
    def send(self, to: str, subject: str, body: str) -> None:
        logger.info("Email to=%s subject=%r (%d chars)", to, subject, len(body))


def send_safely(sender: EmailSender, to: str, subject: str, body: str) -> bool:
    """Send an email, returning False instead of raising on failure."""
    try:
        sender.send(to, subject, body)
    except Exception:
        logger.exception("Failed to send %r to %s", subject, to)
        return False
    return True
