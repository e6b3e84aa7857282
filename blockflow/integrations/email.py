"""Outbound email delivery."""

from abc import ABC, abstractmethod
from email.message import EmailMessage

import aiosmtplib
import structlog

from blockflow.config import settings
from blockflow.integrations.base import ExternalServiceError

logger = structlog.get_logger()


class EmailSender(ABC):
    """Sends one message to one or more recipients."""

    @abstractmethod
    async def send(
        self,
        to: list[str],
        subject: str,
        body: str,
        html: bool = False,
        sender: str | None = None,
    ) -> str | None:
        """Send a message.

        Returns:
            Provider message id, when the transport reports one

        Raises:
            ExternalServiceError: If delivery fails
        """


class SmtpEmailSender(EmailSender):
    """SMTP delivery through aiosmtplib.

    Port 465 uses implicit TLS; other ports upgrade with STARTTLS when
    ``use_tls`` is set.
    """

    def __init__(
        self,
        host: str | None = None,
        port: int | None = None,
        username: str | None = None,
        password: str | None = None,
        use_tls: bool | None = None,
        default_sender: str | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.host = host or settings.smtp_host
        self.port = port or settings.smtp_port
        self.username = username if username is not None else settings.smtp_username
        if password is None and settings.smtp_password is not None:
            password = settings.smtp_password.get_secret_value()
        self.password = password
        self.use_tls = settings.smtp_use_tls if use_tls is None else use_tls
        self.default_sender = default_sender or settings.email_from
        self.timeout = timeout

    async def send(
        self,
        to: list[str],
        subject: str,
        body: str,
        html: bool = False,
        sender: str | None = None,
    ) -> str | None:
        message = EmailMessage()
        message["From"] = sender or self.default_sender
        message["To"] = ", ".join(to)
        message["Subject"] = subject
        if html:
            message.set_content(body, subtype="html")
        else:
            message.set_content(body)

        try:
            _, response = await aiosmtplib.send(
                message,
                hostname=self.host,
                port=self.port,
                username=self.username,
                password=self.password,
                use_tls=self.use_tls and self.port == 465,
                start_tls=self.use_tls and self.port != 465,
                timeout=self.timeout,
            )
        except aiosmtplib.SMTPException as e:
            logger.error("email_send_failed", recipient_count=len(to), error=str(e))
            raise ExternalServiceError(f"Email delivery failed: {e}", "SMTP") from e

        logger.info("email_sent", recipient_count=len(to))
        return response
