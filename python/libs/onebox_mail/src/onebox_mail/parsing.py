"""RFC822 parsing of fetched message sources."""

import email
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from email import policy
from email.message import EmailMessage
from email.utils import parsedate_to_datetime

from onebox_mail.exceptions import MessageParseError
from onebox_mail.models import FetchedMessage
from onebox_mail.sanitize import text_to_html

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ParsedMessage:
    """Envelope and body extracted from a raw message."""

    from_: str
    subject: str
    date: datetime
    html: str
    message_id: str | None


def _header(msg: EmailMessage, name: str) -> str:
    value = msg.get(name)
    return str(value).strip() if value is not None else ""


def _header_date(msg: EmailMessage) -> datetime | None:
    raw = _header(msg, "Date")
    if not raw:
        return None
    try:
        parsed = parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        logger.debug("Unparseable Date header: %r", raw)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _part_text(part: EmailMessage) -> str:
    try:
        return str(part.get_content())
    except (LookupError, UnicodeError):
        # Unknown or lying charset
        payload = part.get_payload(decode=True) or b""
        return payload.decode("utf-8", errors="replace")


def _body_html(msg: EmailMessage) -> str:
    part = msg.get_body(preferencelist=("html", "plain"))
    if part is None:
        return ""
    content = _part_text(part)
    if part.get_content_subtype() == "html":
        return content
    return text_to_html(content)


def parse_message(message: FetchedMessage) -> ParsedMessage:
    """
    Parse a fetched message into envelope fields and an HTML body.

    The date comes from the Date header, or the server INTERNALDATE when the
    header is missing or malformed.

    Args:
        message: Raw message as fetched

    Returns:
        ParsedMessage with unsanitized HTML

    Raises:
        MessageParseError: If the source cannot be parsed or has no usable date
    """
    try:
        msg = email.message_from_bytes(message.raw, policy=policy.default)
        if not isinstance(msg, EmailMessage):
            raise TypeError(f"unexpected message type {type(msg).__name__}")
        subject = _header(msg, "Subject")
        from_ = _header(msg, "From")
        message_id = _header(msg, "Message-ID") or None
        date = _header_date(msg) or message.internal_date
        html = _body_html(msg)
    except Exception as e:
        raise MessageParseError(message.uid, str(e)) from e

    if date is None:
        raise MessageParseError(message.uid, "no Date header and no INTERNALDATE")

    return ParsedMessage(
        from_=from_,
        subject=subject,
        date=date,
        html=html,
        message_id=message_id,
    )
