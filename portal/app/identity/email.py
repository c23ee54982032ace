"""
Account email delivery.

Mail delivery is outside this application; the default sender writes the
confirmation link to the log so a developer can follow it.
"""

import logging
from typing import Protocol

from ..models import LocalUser

logger = logging.getLogger(__name__)


class EmailSender(Protocol):
    async def send_confirmation_link(self, user: LocalUser, email: str, confirmation_link: str) -> None:
        ...


class NoOpEmailSender:
    """Logs confirmation links instead of sending them."""

    async def send_confirmation_link(self, user: LocalUser, email: str, confirmation_link: str) -> None:
        logger.info(
            "Confirmation link (not sent, no email sender configured)",
            extra={"user_id": user.id, "confirmation_link": confirmation_link},
        )
