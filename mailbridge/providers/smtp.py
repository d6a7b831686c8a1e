"""
SMTP submission for the IMAP based providers.

Port 465 uses implicit TLS; any other port upgrades with STARTTLS when TLS
is enabled. Authentication is either LOGIN with a password or XOAUTH2.
"""

import base64
import logging
import smtplib
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from typing import Any, Callable, List, Optional

from ..errors import AuthError
from ..models import SendParams, parse_addresses, split_addresses
from .imap_session import xoauth2_string

logger = logging.getLogger(__name__)

SmtpFactory = Callable[..., Any]


def build_mime_message(params: SendParams, from_address: str) -> EmailMessage:
    """
    Build the outgoing MIME message.

    The HTML body is the only text part; attachments are added as
    ``attachment`` parts. Bcc is not written to the headers.
    """
    domain = from_address.rsplit('@', 1)[-1].strip('> ') or None
    msg = EmailMessage()
    msg['From'] = from_address
    msg['To'] = ", ".join(formataddr(pair) for pair in parse_addresses(params.to))
    if params.cc:
        msg['Cc'] = ", ".join(formataddr(pair) for pair in parse_addresses(params.cc))
    msg['Subject'] = params.subject
    msg['Message-ID'] = make_msgid(domain=domain)
    if params.in_reply_to:
        msg['In-Reply-To'] = params.in_reply_to
    if params.references:
        msg['References'] = params.references

    msg.set_content(params.body, subtype='html')

    for attachment in params.attachments:
        maintype, _, subtype = attachment.mime_type.partition('/')
        msg.add_attachment(
            attachment.content,
            maintype=maintype or 'application',
            subtype=subtype or 'octet-stream',
            filename=attachment.filename
        )
    return msg


def recipients_of(params: SendParams) -> List[str]:
    return split_addresses(params.to) + split_addresses(params.cc) + split_addresses(params.bcc)


class SmtpSender:
    """Sends a single message per connection."""

    def __init__(
        self,
        host: str,
        port: int = 587,
        use_tls: bool = True,
        timeout: float = 30.0,
        smtp_factory: Optional[SmtpFactory] = None,
        smtp_ssl_factory: Optional[SmtpFactory] = None
    ):
        self.host = host
        self.port = port
        self.use_tls = use_tls
        self.timeout = timeout
        self._smtp_factory = smtp_factory or smtplib.SMTP
        self._smtp_ssl_factory = smtp_ssl_factory or smtplib.SMTP_SSL

    def _connect(self):
        logger.debug(f"Connecting to SMTP server {self.host}:{self.port}")
        if self.port == 465:
            return self._smtp_ssl_factory(self.host, self.port, timeout=self.timeout)
        connection = self._smtp_factory(self.host, self.port, timeout=self.timeout)
        if self.use_tls:
            connection.starttls()
        return connection

    @staticmethod
    def _authenticate_xoauth2(connection, user: str, access_token: str) -> None:
        encoded = base64.b64encode(xoauth2_string(user, access_token).encode('utf-8')).decode('ascii')
        connection.ehlo()
        code, response = connection.docmd('AUTH', 'XOAUTH2 ' + encoded)
        if code != 235:
            detail = response.decode('utf-8', errors='replace') if isinstance(response, bytes) else str(response)
            raise AuthError(f"XOAUTH2 authentication failed: {detail}")

    def send(
        self,
        message: EmailMessage,
        recipients: List[str],
        user: str,
        password: Optional[str] = None,
        access_token: Optional[str] = None
    ) -> None:
        """
        Connect, authenticate and submit one message.

        Raises:
            AuthError: If the server rejects the credentials
            smtplib.SMTPException / OSError: On any other failure
        """
        connection = self._connect()
        try:
            if access_token:
                self._authenticate_xoauth2(connection, user, access_token)
            elif password:
                try:
                    connection.login(user, password)
                except smtplib.SMTPAuthenticationError as e:
                    raise AuthError(f"SMTP authentication failed: {e}", needs_reauth=False) from e
            connection.send_message(message, to_addrs=recipients)
        finally:
            try:
                connection.quit()
            except (smtplib.SMTPException, OSError) as e:
                logger.debug(f"SMTP quit failed: {e}")
