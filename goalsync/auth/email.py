"""
GoalSync - Transactional Email

Boundary for the password reset and email verification messages. Real
delivery is a collaborator; the shipped sender only logs the links it
would send.
"""

from typing import Protocol
from urllib.parse import urlencode

from goalsync.logging import REDACTED, get_logger


logger = get_logger(__name__)


class EmailSender(Protocol):
    """
    Anything able to deliver the two auth emails.

    Implementations raise EmailDeliveryError when delivery fails.
    """

    async def send_password_reset(self, email: str, token: str) -> None: ...

    async def send_email_verification(self, email: str, token: str) -> None: ...


class LoggingEmailSender:
    """
    Logs the link instead of sending it.

    The token inside the link is masked unless ``expose_links`` is set,
    which the app only does in development mode. A logged reset link is as
    good as the account's password.
    """

    def __init__(self, frontend_url: str, expose_links: bool = False):
        self.frontend_url = frontend_url.rstrip("/")
        self.expose_links = expose_links

    def build_link(self, path: str, token: str) -> str:
        return f"{self.frontend_url}/{path}?{urlencode({'token': token})}"

    def loggable_link(self, path: str, token: str) -> str:
        return self.build_link(path, token if self.expose_links else REDACTED)

    async def send_password_reset(self, email: str, token: str) -> None:
        logger.info("password_reset_email", to=email, link=self.loggable_link("reset-password", token))

    async def send_email_verification(self, email: str, token: str) -> None:
        logger.info("verification_email", to=email, link=self.loggable_link("verify-email", token))
