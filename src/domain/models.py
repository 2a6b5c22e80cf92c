"""
Data models for the calendar invite domain.

These type-safe data structures define clear contracts between components.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Dict, Any

from .config import BotConfig

UNTITLED_EVENT = "Untitled Event"


@dataclass
class EmailEnvelope:
    """
    Email envelope taken from the SES receipt notification.

    Attributes:
        from_headers: Raw From header values (e.g. ["Jane <jane@example.com>"])
        recipients: Addresses the message was delivered to
        message_id: SES message id (also the S3 object name)
        subject: Subject line from commonHeaders
    """
    from_headers: List[str]
    recipients: List[str]
    message_id: str
    subject: str = ""

    @classmethod
    def from_ses_mail(cls, mail: Dict[str, Any], recipients: List[str]) -> 'EmailEnvelope':
        """
        Build an envelope from the `mail` object of an SES record.

        Args:
            mail: ses.mail dict
            recipients: ses.receipt.recipients list

        Returns:
            EmailEnvelope
        """
        common_headers = mail.get('commonHeaders', {}) or {}

        from_field = common_headers.get('from', [])
        if isinstance(from_field, str):
            from_field = [from_field]

        return cls(
            from_headers=list(from_field or []),
            recipients=list(recipients or []),
            message_id=mail.get('messageId', ''),
            subject=common_headers.get('subject', '') or ''
        )


@dataclass
class EventInfo:
    """
    Structured event extracted by the completion service.

    Attributes:
        has_event: Whether the message describes an event
        title: Event title
        description: Free-text description
        date_time: Local ISO-8601 timestamp without offset
        location: Event location
        duration: ISO-8601 duration (e.g. "PT1H")
    """
    has_event: bool
    title: Optional[str] = None
    description: Optional[str] = None
    date_time: Optional[str] = None
    location: Optional[str] = None
    duration: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any) -> 'EventInfo':
        """
        Build EventInfo from the model's JSON object.

        Raises:
            ValueError: If the object does not match either allowed shape
        """
        if not isinstance(data, dict) or not isinstance(data.get('hasEvent'), bool):
            raise ValueError(f"Unexpected event payload: {data!r}")

        if not data['hasEvent']:
            return cls(has_event=False)

        date_time = data.get('dateTime')
        if not date_time or not isinstance(date_time, str):
            raise ValueError("Event payload is missing dateTime")
        # Must be usable for ICS generation
        datetime.fromisoformat(date_time)

        def _text(key: str) -> Optional[str]:
            value = data.get(key)
            return str(value) if value is not None else None

        return cls(
            has_event=True,
            title=_text('title') or UNTITLED_EVENT,
            description=_text('description'),
            date_time=date_time,
            location=_text('location'),
            duration=_text('duration')
        )

    def to_dict(self) -> Dict[str, Any]:
        """Dict in the completion service's camelCase shape (for logging)."""
        if not self.has_event:
            return {'hasEvent': False}
        return {
            'hasEvent': True,
            'title': self.title,
            'description': self.description,
            'dateTime': self.date_time,
            'location': self.location,
            'duration': self.duration,
        }


@dataclass
class PipelineContext:
    """
    State threaded through every pipeline stage.

    Created once per invocation and mutated additively by the stages,
    which run strictly one after another.

    Attributes:
        raw_event: Inbound SES notification
        config: Configuration snapshot for this invocation
        email: Envelope (set by the parse stage)
        sender_email: Normalized sender address (set by the whitelist stage)
        email_data: Raw message text (set by the fetch stage)
        event_info: Extraction result (set by the extraction stage)
        early_termination: Once True, remaining stages pass through
        sent_message_id: SES message id of the sent invite
    """
    raw_event: Dict[str, Any]
    config: BotConfig
    email: Optional[EmailEnvelope] = None
    sender_email: Optional[str] = None
    email_data: Optional[str] = None
    event_info: Optional[EventInfo] = None
    early_termination: bool = False
    sent_message_id: Optional[str] = None
