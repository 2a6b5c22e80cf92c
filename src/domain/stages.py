"""
Pipeline stages for the calendar invite bot.

Each stage takes the PipelineContext and returns Continue, Halt or Fail
(see domain.pipeline). Every stage after the first checks
context.early_termination and passes the context through unchanged when
it is set. Blocking I/O runs in a worker thread so the stage can be awaited.
"""

import asyncio
import logging
from datetime import date
from typing import List

from .errors import (
    EventParseError,
    InvalidAddressError,
    InvalidNotificationError,
    InviteSendError,
    MessageFetchError,
)
from .filters import (
    is_invitation_response,
    is_valid_address,
    is_whitelisted,
    normalize_address,
    parse_authentication_results,
)
from .models import EmailEnvelope, PipelineContext
from .pipeline import Continue, Fail, Stage, StageOutcome, halt
from integrations import completion
from services import email as email_service
from services import ics as ics_service
from services import prompts as prompt_service
from services import s3 as s3_service
from services import ses as ses_service
from services.timezones import get_offset_provider

logger = logging.getLogger(__name__)

SES_EVENT_SOURCE = 'aws:ses'
SES_EVENT_VERSION = '1.0'


async def parse_event(context: PipelineContext) -> StageOutcome:
    """
    Validate the SES notification and extract the envelope.

    Exactly one record with eventSource "aws:ses" and eventVersion "1.0"
    is accepted. The record must carry ses.mail with a messageId and a From
    header, and ses.receipt.
    """
    event = context.raw_event
    records = event.get('Records') if isinstance(event, dict) else None

    if (not isinstance(records, list)
            or len(records) != 1
            or not isinstance(records[0], dict)
            or records[0].get('eventSource') != SES_EVENT_SOURCE
            or records[0].get('eventVersion') != SES_EVENT_VERSION):
        logger.error(f"parse_event received invalid SES message: {event!r}")
        return Fail(InvalidNotificationError("Error: Received invalid SES message."))

    ses = records[0].get('ses')
    if not isinstance(ses, dict):
        logger.error("SES record has no ses object")
        return Fail(InvalidNotificationError("Error: Received invalid SES message."))

    mail = ses.get('mail')
    receipt = ses.get('receipt')
    if not isinstance(mail, dict) or not isinstance(receipt, dict):
        logger.error("SES record has no mail or receipt object")
        return Fail(InvalidNotificationError("Error: Received invalid SES message."))

    message_id = mail.get('messageId')
    if not isinstance(message_id, str) or not message_id.strip():
        logger.error(f"SES mail has no usable messageId: {message_id!r}")
        return Fail(InvalidNotificationError("Error: Received invalid SES message."))

    common_headers = mail.get('commonHeaders')
    from_field = common_headers.get('from') if isinstance(common_headers, dict) else None
    if not from_field or not isinstance(from_field, (str, list)):
        logger.error(f"SES mail has no From header: message_id={message_id}")
        return Fail(InvalidNotificationError("Error: Received invalid SES message."))

    context.email = EmailEnvelope.from_ses_mail(mail, receipt.get('recipients') or [])

    logger.info(
        f"Parsed SES notification: message_id={context.email.message_id}, "
        f"subject={context.email.subject}"
    )
    return Continue(context)


async def check_whitelist(context: PipelineContext) -> StageOutcome:
    """
    Normalize the sender and decide whether the message may be processed.

    Invitation responses and calendar-system notifications are dropped
    before the whitelist is consulted. Dropped messages halt the pipeline
    without an error and without a reply to the sender.
    """
    if context.early_termination:
        return Continue(context)

    config = context.config
    envelope = context.email
    from_header = envelope.from_headers[0] if envelope and envelope.from_headers else ''

    sender = normalize_address(from_header)
    context.sender_email = sender
    subject = envelope.subject if envelope else ''

    if is_invitation_response(
        subject,
        sender,
        config.invitation_subject_patterns,
        config.calendar_sender_patterns
    ):
        logger.info(f"Ignoring calendar invitation response from {sender}: {subject}")
        return halt(context)

    if not is_valid_address(sender):
        logger.info(f"Ignoring message with unusable sender address: {from_header!r}")
        return halt(context)

    if not config.whitelisted_emails:
        logger.warning("No whitelisted emails configured. Processing all emails.")
        return Continue(context)

    if not is_whitelisted(sender, config.whitelisted_emails, config.allow_plus_sign):
        logger.info(f"Email from {sender} not in whitelist. Ignoring.")
        return halt(context)

    logger.info(f"Email from {sender} is whitelisted. Processing.")
    return Continue(context)


async def fetch_message(context: PipelineContext) -> StageOutcome:
    """Load the raw message that SES stored in S3."""
    if context.early_termination:
        return Continue(context)

    config = context.config
    key = s3_service.build_object_key(config.email_key_prefix, context.email.message_id)
    logger.info(f"Fetching email at s3://{config.email_bucket}/{key}")

    try:
        context.email_data = await asyncio.to_thread(
            s3_service.fetch_email_text, config.email_bucket, key
        )
    except Exception as e:
        logger.error(f"Failed to fetch s3://{config.email_bucket}/{key}: {e}", exc_info=True)
        return Fail(MessageFetchError("Error: Failed to load message body from S3."))

    return Continue(context)


async def check_email_verification(context: PipelineContext) -> StageOutcome:
    """
    Require SPF and/or DKIM to pass, per configuration.

    Results come from the Authentication-Results header added by SES.
    Nothing is inspected when no verification is required.
    """
    if context.early_termination:
        return Continue(context)

    config = context.config
    if not (config.spf_required or config.dkim_required):
        return Continue(context)

    if context.email_data is None:
        logger.info(f"No message data to verify for {context.sender_email}. Ignoring.")
        return halt(context)

    results = parse_authentication_results(context.email_data)

    if not results.header_found:
        logger.info(f"No Authentication-Results header in message from {context.sender_email}. Ignoring.")
        return halt(context)

    if config.spf_required and not results.spf_passed:
        logger.info(f"SPF verification failed for {context.sender_email}: spf={results.spf}. Ignoring.")
        return halt(context)

    if config.dkim_required and not results.dkim_passed:
        logger.info(f"DKIM verification failed for {context.sender_email}: dkim={results.dkim}. Ignoring.")
        return halt(context)

    logger.info(f"Email verification passed for {context.sender_email}: spf={results.spf}, dkim={results.dkim}")
    return Continue(context)


async def parse_event_details(context: PipelineContext) -> StageOutcome:
    """Ask the completion service for structured event information."""
    if context.early_termination:
        return Continue(context)

    config = context.config
    logger.info("Parsing email content with completion service")

    try:
        email_content = email_service.build_email_content(context.email_data or '')
        prompt = prompt_service.build_event_extraction_prompt(
            email_content,
            config.default_timezone,
            today=date.today()
        )
        reply = await asyncio.to_thread(
            completion.complete,
            prompt,
            api_key=config.openai_api_key,
            model=config.openai_model,
            api_url=config.openai_api_url,
            max_tokens=config.max_tokens,
            timeout=config.request_timeout
        )
        context.event_info = completion.parse_event_response(reply)
    except Exception as e:
        logger.error(f"Error parsing event details: {e}", exc_info=True)
        return Fail(EventParseError("Error: Failed to parse event details."))

    logger.info(f"Event details parsed: {context.event_info.to_dict()}")
    return Continue(context)


async def send_calendar_invite(context: PipelineContext) -> StageOutcome:
    """Send the calendar invite back to the sender when an event was found."""
    if context.early_termination:
        return Continue(context)

    if context.event_info is None or not context.event_info.has_event:
        logger.info("No event information found. Not sending calendar invite.")
        return halt(context)

    config = context.config

    if not is_valid_address(context.sender_email):
        logger.error(f"Invalid sender email address: {context.sender_email!r}")
        return Fail(InvalidAddressError("Error: Invalid sender email address."))
    if not is_valid_address(config.from_email):
        logger.error(f"Invalid from email address: {config.from_email!r}")
        return Fail(InvalidAddressError("Error: Invalid from email address."))

    event_info = email_service.sanitize_event_info(context.event_info)
    subject = f"{config.subject_prefix}{event_info.title}"

    try:
        ics_content = ics_service.generate_ics(
            event_info,
            attendee_email=context.sender_email,
            organizer_email=config.from_email,
            timezone_name=config.default_timezone,
            offsets=get_offset_provider(config.use_timezone_database)
        )
        message = email_service.build_invite_message(
            event_info,
            to_address=context.sender_email,
            from_address=config.from_email,
            subject=subject,
            ics_content=ics_content
        )
    except ValueError as e:
        logger.error(f"Failed to build calendar invite: {e}", exc_info=True)
        return Fail(InviteSendError("Error: Calendar invite sending failed."))

    logger.info(f"Sending calendar invite to {context.sender_email} for event: {event_info.title}")

    try:
        context.sent_message_id = await asyncio.to_thread(
            ses_service.send_raw_email,
            config.from_email,
            context.sender_email,
            message.as_bytes(),
            config.from_email
        )
    except Exception as e:
        logger.error(f"SES send_email returned error: {e}", exc_info=True)
        return Fail(InviteSendError("Error: Calendar invite sending failed."))

    logger.info(f"Calendar invite sent successfully: message_id={context.sent_message_id}")
    return Continue(context)


DEFAULT_STAGES: List[Stage] = [
    parse_event,
    check_whitelist,
    fetch_message,
    check_email_verification,
    parse_event_details,
    send_calendar_invite,
]
