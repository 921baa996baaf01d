"""Outgoing transactional email.

Delivery is pluggable: the application holds one mailer on ``app.state`` and
services hand it fully rendered messages. The default mailer only logs that a
message was produced; message bodies carry single-use tokens and are never
logged.
"""

import logging
from dataclasses import dataclass
from typing import Protocol

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OutgoingEmail:
    to: str
    subject: str
    body: str


class Mailer(Protocol):
    async def send(self, message: OutgoingEmail) -> None: ...


def redact_email(address: str) -> str:
    """``jo***@example.com`` style address for log lines."""
    if "@" not in address:
        return "redacted"
    local, domain = address.split("@", 1)
    return f"{local[:2]}***@{domain}"


class LoggingMailer:
    """Mailer used when no delivery backend is wired in."""

    async def send(self, message: OutgoingEmail) -> None:
        logger.info(
            f"Email not delivered (no mail backend): {message.subject!r} "
            f"to {redact_email(message.to)}"
        )
