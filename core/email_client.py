# core/email_client.py
"""
SMTP email transport

Builds a multipart/alternative message and hands it to the SMTP relay with
aiosmtplib. Every call is bounded by a timeout so a slow provider cannot stall
a delivery worker. Any failure, including a timeout, surfaces as
``EmailDeliveryError``; callers get no transient/permanent distinction.
"""

import asyncio
import logging
import uuid
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formatdate
from typing import Any, Dict, Optional

import aiosmtplib

from core.domain import SubscriberEmail

logger = logging.getLogger(__name__)


class DeliveryError(Exception):
    """Base exception for delivering newsletter content"""
    pass


class EmailDeliveryError(DeliveryError):
    """The transport did not accept the message"""

    def __init__(self, recipient: str, reason: str):
        self.recipient = recipient
        self.reason = reason
        super().__init__(f"Failed to send email to {recipient}: {reason}")


class EmailClient:

    def __init__(self,
                 hostname: str,
                 port: int,
                 sender: SubscriberEmail,
                 username: Optional[str] = None,
                 password: Optional[str] = None,
                 timeout: float = 10.0,
                 use_tls: bool = False,
                 start_tls: Optional[bool] = None,
                 validate_certs: bool = True):
        self.hostname = hostname
        self.port = port
        self.sender = sender
        self.username = username
        self.password = password
        self.timeout = timeout
        self.use_tls = use_tls
        self.start_tls = start_tls
        self.validate_certs = validate_certs

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> 'EmailClient':
        return cls(
            hostname=config['SMTP_HOST'],
            port=config['SMTP_PORT'],
            sender=SubscriberEmail.parse(config['EMAIL_SENDER']),
            username=config.get('SMTP_USERNAME'),
            password=config.get('SMTP_PASSWORD'),
            timeout=config.get('EMAIL_TIMEOUT_MS', 10000) / 1000.0,
            use_tls=config.get('SMTP_USE_TLS', False),
            start_tls=None if config.get('SMTP_USE_TLS') else config.get('SMTP_START_TLS'),
            validate_certs=config.get('SMTP_VALIDATE_CERTS', True),
        )

    def build_message(self, recipient: SubscriberEmail, subject: str,
                      html_content: str, text_content: str) -> MIMEMultipart:
        msg = MIMEMultipart('alternative')
        msg['Subject'] = subject
        msg['From'] = self.sender.value
        msg['To'] = recipient.value
        msg['Date'] = formatdate(localtime=True)
        msg['Message-ID'] = f"<{uuid.uuid4()}@{self.sender.value.rsplit('@', 1)[-1]}>"

        # Plain text first: clients prefer the last alternative they can render
        msg.attach(MIMEText(text_content, 'plain', 'utf-8'))
        msg.attach(MIMEText(html_content, 'html', 'utf-8'))
        return msg

    def send_email(self, recipient: SubscriberEmail, subject: str,
                   html_content: str, text_content: str) -> None:
        """
        Send one email synchronously

        Raises:
            EmailDeliveryError: on SMTP rejection, connection failure or timeout
        """
        msg = self.build_message(recipient, subject, html_content, text_content)
        asyncio.run(self._async_send(msg, recipient))
        logger.debug(f"Email to {recipient} accepted by {self.hostname}:{self.port}")

    async def _async_send(self, msg: MIMEMultipart, recipient: SubscriberEmail) -> None:
        try:
            await aiosmtplib.send(
                msg,
                hostname=self.hostname,
                port=self.port,
                username=self.username,
                password=self.password,
                use_tls=self.use_tls,
                start_tls=self.start_tls,
                validate_certs=self.validate_certs,
                timeout=self.timeout,
            )
        except aiosmtplib.SMTPResponseException as e:
            raise EmailDeliveryError(recipient.value, f"{e.code} {e.message}") from e
        except (aiosmtplib.SMTPException, asyncio.TimeoutError, OSError) as e:
            raise EmailDeliveryError(recipient.value, str(e) or e.__class__.__name__) from e
