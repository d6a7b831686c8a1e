"""
MIME body and attachment extraction.

Two part trees are supported: the JSON payload returned by the Gmail API and
raw RFC 822 source fetched over IMAP. Both are traversed with an explicit
stack so deeply nested multiparts cannot exhaust the recursion limit.
"""

import base64
import email
import logging
import re
from dataclasses import dataclass, field
from email import policy
from email.header import decode_header, make_header
from email.message import Message
from email.utils import getaddresses, parsedate_to_datetime
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

SNIPPET_LENGTH = 200


@dataclass
class AttachmentInfo:
    """Attachment leaf found while walking a part tree."""
    filename: str
    mime_type: str
    size: int
    content_id: Optional[str] = None
    attachment_id: Optional[str] = None
    data: Optional[bytes] = None

    @property
    def is_inline_image(self) -> bool:
        """Only inline images referenced by cid: are kept locally."""
        return bool(self.content_id) and self.mime_type.lower().startswith("image/")


@dataclass
class ExtractedBody:
    text: str = ""
    html: str = ""
    attachments: List[AttachmentInfo] = field(default_factory=list)

    @property
    def inline_images(self) -> List[AttachmentInfo]:
        return [att for att in self.attachments if att.is_inline_image]


def encode_base64url(data: bytes) -> str:
    """Base64 with '-'/'_' substitutions and no '=' padding."""
    return base64.urlsafe_b64encode(data).decode('ascii').rstrip('=')


def decode_base64url(data: str) -> bytes:
    """Decode base64url data, restoring any stripped padding."""
    padding = -len(data) % 4
    return base64.urlsafe_b64decode(data + '=' * padding)


def strip_angle_brackets(value: Optional[str]) -> Optional[str]:
    """Strip the surrounding <> of a Content-ID. Empty values become None."""
    if not value:
        return None
    stripped = value.strip()
    if stripped.startswith('<'):
        stripped = stripped[1:]
    if stripped.endswith('>'):
        stripped = stripped[:-1]
    return stripped or None


def get_header(headers: List[Dict[str, str]], name: str) -> str:
    """Case-insensitive lookup in a Gmail style header list."""
    lowered = name.lower()
    for header in headers or []:
        if header.get('name', '').lower() == lowered:
            return header.get('value', '')
    return ""


_FROM_PATTERN = re.compile(r'^(?:"?([^"]*)"?\s*)?<([^>]+)>\s*$')
_BRACKETED_ADDRESS = re.compile(r'<([^<>]+)>')


def parse_from_header(value: str) -> Tuple[str, str]:
    """
    Split a From header into (name, email).

    Accepts ``optional-quoted-name <email>``. Other headers with a bracketed
    address use the last ``<...>`` as the address and the text before it as
    the name. Without a usable bracketed address the whole header is taken as
    the address.

    Args:
        value: Raw header value

    Returns:
        Tuple of (display name, email address)
    """
    header = (value or "").strip()
    if '<' not in header:
        return "", header
    match = _FROM_PATTERN.match(header)
    if match:
        name = (match.group(1) or "").strip()
        return name, match.group(2).strip()

    bracketed = list(_BRACKETED_ADDRESS.finditer(header))
    if not bracketed:
        return "", header
    last = bracketed[-1]
    name = header[:last.start()].strip()
    if len(name) > 1 and name.startswith('"') and name.endswith('"'):
        name = name[1:-1]
    return name, last.group(1).strip()


def make_snippet(text: str, length: int = SNIPPET_LENGTH) -> str:
    """Whitespace-collapsed preview of a plain-text body."""
    return re.sub(r'\s+', ' ', text[:length]).strip()


def html_to_preview(html: str, length: int = SNIPPET_LENGTH) -> str:
    """Basic tag stripping for a preview when no plain-text body exists."""
    text = re.sub(r'<(script|style)[^>]*>.*?</\1>', ' ', html, flags=re.S | re.I)
    text = re.sub(r'<[^>]+>', ' ', text)
    return ' '.join(text.split())[:length]


# ---- Gmail JSON payloads ----

def extract_gmail_payload(payload: Optional[Dict[str, Any]]) -> ExtractedBody:
    """
    Walk a Gmail ``format=full`` payload tree.

    The first text/plain and the first text/html leaves with inline data
    become the bodies; every leaf carrying an ``attachmentId`` is collected
    as an attachment regardless of nesting depth.

    Args:
        payload: The ``payload`` object of a Gmail message

    Returns:
        ExtractedBody with decoded bodies and attachment descriptors
    """
    result = ExtractedBody()
    if not payload:
        return result

    stack = [payload]
    while stack:
        part = stack.pop()
        mime_type = (part.get('mimeType') or '').lower()
        body = part.get('body') or {}
        data = body.get('data')

        if mime_type == 'text/plain' and data and not body.get('attachmentId'):
            if not result.text:
                result.text = decode_base64url(data).decode('utf-8', errors='replace')
        elif mime_type == 'text/html' and data and not body.get('attachmentId'):
            if not result.html:
                result.html = decode_base64url(data).decode('utf-8', errors='replace')
        elif body.get('attachmentId'):
            headers = part.get('headers') or []
            result.attachments.append(AttachmentInfo(
                filename=part.get('filename') or 'attachment',
                mime_type=part.get('mimeType') or 'application/octet-stream',
                size=body.get('size', 0) or 0,
                content_id=strip_angle_brackets(get_header(headers, 'Content-ID')),
                attachment_id=body['attachmentId']
            ))

        # Reverse so children are visited in document order
        for child in reversed(part.get('parts') or []):
            stack.append(child)

    return result


# ---- Raw RFC 822 source ----

def decode_header_value(value: Optional[str]) -> str:
    """Decode an RFC 2047 encoded header value."""
    if not value:
        return ""
    try:
        return str(make_header(decode_header(str(value))))
    except (LookupError, UnicodeDecodeError, ValueError):
        return str(value)


def _decode_text_part(part: Message) -> str:
    payload = part.get_payload(decode=True)
    if not payload:
        return ""
    charset = part.get_content_charset() or 'utf-8'
    try:
        return payload.decode(charset, errors='replace')
    except LookupError:
        return payload.decode('utf-8', errors='replace')


def extract_message(msg: Message) -> ExtractedBody:
    """
    Walk a parsed MIME message.

    Text leaves explicitly marked as attachments are not used as bodies.
    Binary leaves with a filename or a Content-ID are returned as attachments
    with their decoded bytes.

    Args:
        msg: A message parsed by the email package

    Returns:
        ExtractedBody with bodies and attachments
    """
    result = ExtractedBody()
    stack = [msg]
    while stack:
        part = stack.pop()
        if part.is_multipart():
            for child in reversed(part.get_payload()):
                stack.append(child)
            continue

        content_type = part.get_content_type()
        disposition = (part.get_content_disposition() or '').lower()
        content_id = strip_angle_brackets(part.get('Content-ID'))
        filename = part.get_filename()

        if content_type == 'text/plain' and disposition != 'attachment' and not filename:
            if not result.text:
                result.text = _decode_text_part(part)
            continue
        if content_type == 'text/html' and disposition != 'attachment' and not filename:
            if not result.html:
                result.html = _decode_text_part(part)
            continue

        if disposition in ('attachment', 'inline') or filename or content_id:
            data = part.get_payload(decode=True) or b""
            result.attachments.append(AttachmentInfo(
                filename=decode_header_value(filename) or 'attachment',
                mime_type=content_type,
                size=len(data),
                content_id=content_id,
                data=data
            ))

    return result


def parse_raw_message(source: bytes) -> Message:
    """Parse raw message bytes."""
    return email.message_from_bytes(source, policy=policy.compat32)


def address_list(msg: Message, header: str) -> str:
    """Comma separated addresses of an address header."""
    values = msg.get_all(header, [])
    addresses = [addr for _, addr in getaddresses([str(v) for v in values]) if addr]
    return ", ".join(addresses)


def first_address(msg: Message, header: str) -> Tuple[str, str]:
    """(name, email) of the first mailbox in an address header."""
    values = msg.get_all(header, [])
    for name, addr in getaddresses([str(v) for v in values]):
        if addr:
            return decode_header_value(name), addr
    return "", ""


def header_date(msg: Message, fallback: int) -> int:
    """Unix timestamp of the Date header, or ``fallback``."""
    value = msg.get('Date')
    if not value:
        return fallback
    try:
        return int(parsedate_to_datetime(str(value)).timestamp())
    except (TypeError, ValueError, IndexError):
        logger.debug(f"Unparseable Date header: {value}")
        return fallback
