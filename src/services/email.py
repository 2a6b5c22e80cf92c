"""
Email processing utilities for the calendar invite pipeline.

This module provides functions for reading raw inbound messages (header/body
split, subject extraction) and for building the outbound calendar invite
(header-safe sanitization, multipart MIME construction).
"""

import html
import logging
import re
from email.message import EmailMessage
from email.utils import formatdate, make_msgid
from typing import Optional, Tuple

from domain.models import EventInfo

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 200
MAX_LOCATION_LENGTH = 200
MAX_DESCRIPTION_LENGTH = 500

NOT_SPECIFIED = 'Not specified'
NO_DESCRIPTION = 'No description'

_BLANK_LINE = re.compile(r'\r?\n[ \t]*\r?\n')
_SUBJECT_HEADER = re.compile(r'^subject:[ \t]?(.*)$', re.IGNORECASE | re.MULTILINE)
_HEADER_UNSAFE = re.compile(r'[\r\n\t]+')


def split_header_body(raw_message: str) -> Tuple[str, str]:
    """
    Split a raw message at the first blank line.

    Args:
        raw_message: Raw message text

    Returns:
        tuple: (header_block, body). Without a blank line the whole text is
        treated as a header-less body.

    Example:
        >>> split_header_body("Subject: Hi\\n\\nHello")
        ('Subject: Hi', 'Hello')
    """
    match = _BLANK_LINE.search(raw_message)
    if not match:
        return '', raw_message
    return raw_message[:match.start()], raw_message[match.end():]


def extract_subject(header_block: str) -> str:
    """Subject header value from a header block ('' if missing)."""
    match = _SUBJECT_HEADER.search(header_block)
    return match.group(1).strip() if match else ''


def build_email_content(raw_message: str) -> str:
    """
    Reduce a raw message to "Subject: ...\\n\\n<body>" for the completion prompt.
    """
    header_block, body = split_header_body(raw_message)
    subject = extract_subject(header_block)
    return f"Subject: {subject}\n\n{body.strip()}"


def sanitize_header_value(value: Optional[str], max_length: int) -> str:
    """
    Make a value safe for headers and single-line ICS properties.

    CR, LF and TAB runs become a single space; the result is trimmed and
    cut to max_length characters.
    """
    if value is None:
        return ''
    cleaned = _HEADER_UNSAFE.sub(' ', str(value)).strip()
    return cleaned[:max_length]


def sanitize_event_info(event_info: EventInfo) -> EventInfo:
    """Copy of event_info with title, location and description sanitized."""
    return EventInfo(
        has_event=event_info.has_event,
        title=sanitize_header_value(event_info.title, MAX_TITLE_LENGTH),
        description=sanitize_header_value(event_info.description, MAX_DESCRIPTION_LENGTH) or None,
        date_time=event_info.date_time,
        location=sanitize_header_value(event_info.location, MAX_LOCATION_LENGTH) or None,
        duration=event_info.duration
    )


def _text_summary(event_info: EventInfo) -> str:
    return (
        "Hello,\n\n"
        "I've detected event information in your email and created a calendar invite for you:\n\n"
        f"Event: {event_info.title}\n"
        f"Date/Time: {event_info.date_time or NOT_SPECIFIED}\n"
        f"Location: {event_info.location or NOT_SPECIFIED}\n"
        f"Description: {event_info.description or NO_DESCRIPTION}\n\n"
        "Please see the attached calendar invite.\n\n"
        "Best regards,\n"
        "Calendar AI Bot\n"
    )


def _html_summary(event_info: EventInfo) -> str:
    def esc(value: str) -> str:
        return html.escape(value, quote=True)

    return (
        "<html><body>\n"
        "<p>Hello,</p>\n"
        "<p>I've detected event information in your email and created a calendar invite for you:</p>\n"
        "<ul>\n"
        f"<li><strong>Event:</strong> {esc(event_info.title or '')}</li>\n"
        f"<li><strong>Date/Time:</strong> {esc(event_info.date_time or NOT_SPECIFIED)}</li>\n"
        f"<li><strong>Location:</strong> {esc(event_info.location or NOT_SPECIFIED)}</li>\n"
        f"<li><strong>Description:</strong> {esc(event_info.description or NO_DESCRIPTION)}</li>\n"
        "</ul>\n"
        "<p>Please see the attached calendar invite.</p>\n"
        "<p>Best regards,<br>Calendar AI Bot</p>\n"
        "</body></html>\n"
    )


def build_invite_message(
    event_info: EventInfo,
    to_address: str,
    from_address: str,
    subject: str,
    ics_content: str
) -> EmailMessage:
    """
    Build the outbound invite as a multipart MIME message.

    Structure:
        multipart/mixed
          multipart/alternative
            text/plain
            text/html
          text/calendar; method=REQUEST (base64, attachment "invite.ics")

    Args:
        event_info: Sanitized event information
        to_address: Recipient (the original sender)
        from_address: Bot address (also used as Reply-To)
        subject: Full subject line
        ics_content: ICS document

    Returns:
        EmailMessage: Ready to serialize with as_bytes()
    """
    msg = EmailMessage()
    msg['From'] = from_address
    msg['To'] = to_address
    msg['Reply-To'] = from_address
    msg['Subject'] = subject
    msg['Date'] = formatdate(usegmt=True)
    msg['Message-ID'] = make_msgid(domain=from_address.split('@', 1)[-1])

    msg.set_content(_text_summary(event_info))
    msg.add_alternative(_html_summary(event_info), subtype='html')

    # add_attachment converts the alternative container into multipart/mixed
    msg.add_attachment(
        ics_content.encode('utf-8'),
        maintype='text',
        subtype='calendar',
        filename='invite.ics',
        params={'method': 'REQUEST', 'charset': 'UTF-8'}
    )

    logger.info(f"Built invite message: to={to_address}, subject={subject}")
    return msg
