"""
Tests for the individual pipeline stages.
"""

import asyncio
import base64
import json
import pytest
from dataclasses import replace
from email import message_from_bytes, policy
from unittest.mock import Mock, patch, MagicMock
from botocore.exceptions import ClientError
import requests
import sys
import os

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../src'))

from domain import stages
from domain.errors import (
    EventParseError,
    InvalidAddressError,
    InvalidNotificationError,
    InviteSendError,
    MessageFetchError,
)
from domain.models import EventInfo
from domain.pipeline import Continue, Fail, Halt, run_stages


def _run(stage, context):
    return asyncio.run(stage(context))


def _run_all(stage_list, context):
    return asyncio.run(run_stages(stage_list, context))


def _completion_response(content, status_code=200):
    response = Mock()
    response.status_code = status_code
    body = {'choices': [{'message': {'content': content}}]}
    response.json.return_value = body
    response.text = json.dumps(body)
    return response


class TestParseEvent:
    """Test SES notification validation."""

    def test_valid_event(self, pipeline_context, ses_event):
        pipeline_context.raw_event = ses_event
        pipeline_context.email = None

        outcome = _run(stages.parse_event, pipeline_context)

        assert isinstance(outcome, Continue)
        assert outcome.context.email.message_id == 'o3vrnil0e2ic28trm7dfhrc2v0clambda4nbp0g1'
        assert outcome.context.email.from_headers == ['Jane Doe <Jane@Example.com>']
        assert outcome.context.email.recipients == ['bot@example.com']
        assert outcome.context.email.subject == 'Team Meeting Tomorrow at 2PM'

    @pytest.mark.parametrize('mutate', [
        lambda e: e.pop('Records'),
        lambda e: e['Records'].append(dict(e['Records'][0])),
        lambda e: e['Records'].clear(),
        lambda e: e['Records'][0].update(eventSource='aws:s3'),
        lambda e: e['Records'][0].update(eventVersion='2.0'),
        lambda e: e['Records'][0].pop('eventSource'),
        lambda e: e['Records'][0]['ses'].pop('mail'),
        lambda e: e['Records'][0].pop('ses'),
        lambda e: e['Records'][0]['ses'].pop('receipt'),
        lambda e: e['Records'][0]['ses']['mail'].pop('messageId'),
        lambda e: e['Records'][0]['ses']['mail'].update(messageId=''),
        lambda e: e['Records'][0]['ses']['mail'].update(messageId=12345),
        lambda e: e['Records'][0]['ses']['mail'].pop('commonHeaders'),
        lambda e: e['Records'][0]['ses']['mail']['commonHeaders'].pop('from'),
        lambda e: e['Records'][0]['ses']['mail']['commonHeaders'].update({'from': []}),
    ])
    def test_invalid_event(self, pipeline_context, ses_event, mutate):
        mutate(ses_event)
        pipeline_context.raw_event = ses_event

        outcome = _run(stages.parse_event, pipeline_context)

        assert isinstance(outcome, Fail)
        assert isinstance(outcome.error, InvalidNotificationError)
        assert 'invalid SES message' in str(outcome.error)

    @patch('services.s3.s3_client')
    def test_missing_message_id_never_reaches_storage(self, mock_s3, pipeline_context, ses_event):
        del ses_event['Records'][0]['ses']['mail']['messageId']
        pipeline_context.raw_event = ses_event
        pipeline_context.email = None

        outcome = _run_all(stages.DEFAULT_STAGES, pipeline_context)

        assert isinstance(outcome, Fail)
        assert isinstance(outcome.error, InvalidNotificationError)
        mock_s3.get_object.assert_not_called()

    def test_missing_from_fails_instead_of_halting(self, pipeline_context, ses_event):
        del ses_event['Records'][0]['ses']['mail']['commonHeaders']['from']
        pipeline_context.raw_event = ses_event
        pipeline_context.email = None

        outcome = _run_all(stages.DEFAULT_STAGES, pipeline_context)

        assert isinstance(outcome, Fail)
        assert isinstance(outcome.error, InvalidNotificationError)
        assert pipeline_context.early_termination is False

    def test_non_dict_event(self, pipeline_context):
        pipeline_context.raw_event = None

        outcome = _run(stages.parse_event, pipeline_context)

        assert isinstance(outcome, Fail)


class TestCheckWhitelist:
    """Test sender normalization, invitation detection and whitelist."""

    def test_whitelisted_sender(self, pipeline_context):
        outcome = _run(stages.check_whitelist, pipeline_context)

        assert isinstance(outcome, Continue)
        assert outcome.context.sender_email == 'jane@example.com'
        assert outcome.context.early_termination is False

    def test_uppercase_sender_is_normalized(self, pipeline_context):
        pipeline_context.email.from_headers = ['JANE@EXAMPLE.COM']

        outcome = _run(stages.check_whitelist, pipeline_context)

        assert isinstance(outcome, Continue)
        assert outcome.context.sender_email == 'jane@example.com'

    def test_non_whitelisted_sender_halts(self, pipeline_context):
        pipeline_context.email.from_headers = ['unauthorized@example.com']

        outcome = _run(stages.check_whitelist, pipeline_context)

        assert isinstance(outcome, Halt)
        assert outcome.context.early_termination is True

    def test_empty_whitelist_allows_all_with_warning(self, pipeline_context, caplog):
        pipeline_context.config = replace(pipeline_context.config, whitelisted_emails=frozenset())
        pipeline_context.email.from_headers = ['anyone@example.com']

        with caplog.at_level('WARNING'):
            outcome = _run(stages.check_whitelist, pipeline_context)

        assert isinstance(outcome, Continue)
        assert outcome.context.sender_email == 'anyone@example.com'
        assert 'No whitelisted emails configured' in caplog.text

    def test_plus_sign_sender(self, pipeline_context):
        pipeline_context.config = replace(pipeline_context.config, allow_plus_sign=True)
        pipeline_context.email.from_headers = ['Jane <jane+events@example.com>']

        outcome = _run(stages.check_whitelist, pipeline_context)

        assert isinstance(outcome, Continue)
        assert outcome.context.sender_email == 'jane+events@example.com'

    def test_plus_sign_requires_exact_match_by_default(self, pipeline_context):
        pipeline_context.email.from_headers = ['jane+events@example.com']

        outcome = _run(stages.check_whitelist, pipeline_context)

        assert pipeline_context.config.allow_plus_sign is False
        assert isinstance(outcome, Halt)

    @pytest.mark.parametrize('subject', [
        'Accepted: Team Meeting Tomorrow',
        'Declined: Weekly standup meeting',
        'Tentative: Project kickoff meeting',
    ])
    def test_invitation_responses_halt(self, pipeline_context, subject):
        pipeline_context.email.subject = subject

        outcome = _run(stages.check_whitelist, pipeline_context)

        assert isinstance(outcome, Halt)

    def test_calendar_system_halts_before_whitelist(self, pipeline_context):
        pipeline_context.config = replace(
            pipeline_context.config,
            whitelisted_emails=frozenset({'calendar-server@example.com'})
        )
        pipeline_context.email.from_headers = ['calendar-server@example.com']
        pipeline_context.email.subject = 'Meeting Response'

        outcome = _run(stages.check_whitelist, pipeline_context)

        assert isinstance(outcome, Halt)

    def test_sender_without_at_halts(self, pipeline_context):
        pipeline_context.config = replace(pipeline_context.config, whitelisted_emails=frozenset())
        pipeline_context.email.from_headers = ['Undisclosed']
        pipeline_context.email.subject = 'Hello'

        outcome = _run(stages.check_whitelist, pipeline_context)

        assert isinstance(outcome, Halt)

    def test_passes_through_when_terminated(self, pipeline_context):
        pipeline_context.early_termination = True

        outcome = _run(stages.check_whitelist, pipeline_context)

        assert isinstance(outcome, Continue)
        assert outcome.context.sender_email is None


class TestFetchMessage:
    """Test raw message retrieval."""

    @patch('services.s3.s3_client')
    def test_fetch_success(self, mock_s3_client, pipeline_context, raw_email):
        mock_s3_client.get_object.return_value = {
            'Body': MagicMock(read=lambda: raw_email.encode('utf-8'))
        }

        outcome = _run(stages.fetch_message, pipeline_context)

        assert isinstance(outcome, Continue)
        assert outcome.context.email_data == raw_email
        mock_s3_client.get_object.assert_called_once_with(
            Bucket='test-email-bucket',
            Key='emails/test-message-id'
        )

    @patch('services.s3.s3_client')
    def test_fetch_failure(self, mock_s3_client, pipeline_context):
        mock_s3_client.get_object.side_effect = ClientError(
            {'Error': {'Code': 'AccessDenied', 'Message': 'Access Denied'}},
            'GetObject'
        )

        outcome = _run(stages.fetch_message, pipeline_context)

        assert isinstance(outcome, Fail)
        assert isinstance(outcome.error, MessageFetchError)
        assert 'Failed to load message body' in str(outcome.error)

    @patch('services.s3.s3_client')
    def test_no_fetch_when_terminated(self, mock_s3_client, pipeline_context):
        pipeline_context.early_termination = True

        outcome = _run(stages.fetch_message, pipeline_context)

        assert isinstance(outcome, Continue)
        mock_s3_client.get_object.assert_not_called()


class TestCheckEmailVerification:
    """Test SPF/DKIM verification."""

    AUTH_PASS = 'Authentication-Results: example.com; spf=pass smtp.mailfrom=example.com; dkim=pass header.d=example.com'

    def _context(self, pipeline_context, auth_header=None, **flags):
        pipeline_context.config = replace(pipeline_context.config, **flags)
        pipeline_context.sender_email = 'test@example.com'
        header_line = f'{auth_header}\n' if auth_header else ''
        pipeline_context.email_data = f'From: test@example.com\n{header_line}Subject: Test\n\nTest body'
        return pipeline_context

    def test_not_required_skips_inspection(self, pipeline_context):
        ctx = self._context(pipeline_context, 'Authentication-Results: x; spf=fail; dkim=fail')

        with patch('domain.stages.parse_authentication_results') as mock_parse:
            outcome = _run(stages.check_email_verification, ctx)

        assert isinstance(outcome, Continue)
        assert outcome.context.early_termination is False
        mock_parse.assert_not_called()

    def test_both_pass(self, pipeline_context):
        ctx = self._context(pipeline_context, self.AUTH_PASS, require_email_verification=True)

        outcome = _run(stages.check_email_verification, ctx)

        assert isinstance(outcome, Continue)
        assert outcome.context.early_termination is False

    @pytest.mark.parametrize('auth_header', [
        'Authentication-Results: example.com; spf=pass smtp.mailfrom=example.com; dkim=fail',
        'Authentication-Results: example.com; spf=fail smtp.mailfrom=example.com; dkim=pass',
        'Authentication-Results: example.com; spf=none; dkim=pass',
        'Authentication-Results: example.com; spf=pass; dkim=none',
        'Authentication-Results: example.com; spf=fail; dkim=fail',
        'Authentication-Results: example.com; spf=softfail smtp.mailfrom=example.com; dkim=pass',
        'Authentication-Results: example.com; spf=neutral; dkim=pass',
        'Authentication-Results: example.com; spf=pass; dkim=policy',
        'Authentication-Results: example.com; spf=permerror; dkim=pass',
        'Authentication-Results: example.com; spf=pass; dkim=temperror',
        'Authentication-Results: example.com; dkim=pass header.d=example.com',
        'Authentication-Results: example.com; spf=pass smtp.mailfrom=example.com',
    ])
    def test_failures_halt(self, pipeline_context, auth_header):
        ctx = self._context(pipeline_context, auth_header, require_email_verification=True)

        outcome = _run(stages.check_email_verification, ctx)

        assert isinstance(outcome, Halt)
        assert outcome.context.early_termination is True

    def test_missing_header_halts(self, pipeline_context):
        ctx = self._context(pipeline_context, None, require_email_verification=True)

        outcome = _run(stages.check_email_verification, ctx)

        assert isinstance(outcome, Halt)

    def test_dkim_only(self, pipeline_context):
        ctx = self._context(
            pipeline_context,
            'Authentication-Results: example.com; spf=fail; dkim=pass',
            require_dkim_verification=True
        )

        outcome = _run(stages.check_email_verification, ctx)

        assert isinstance(outcome, Continue)

    def test_spf_only(self, pipeline_context):
        ctx = self._context(
            pipeline_context,
            'Authentication-Results: example.com; spf=pass; dkim=fail',
            require_spf_verification=True
        )

        outcome = _run(stages.check_email_verification, ctx)

        assert isinstance(outcome, Continue)

    def test_spf_only_failure(self, pipeline_context):
        ctx = self._context(
            pipeline_context,
            'Authentication-Results: example.com; spf=softfail; dkim=pass',
            require_spf_verification=True
        )

        outcome = _run(stages.check_email_verification, ctx)

        assert isinstance(outcome, Halt)

    def test_keeps_existing_termination(self, pipeline_context):
        ctx = self._context(pipeline_context, self.AUTH_PASS, require_email_verification=True)
        ctx.early_termination = True

        outcome = _run(stages.check_email_verification, ctx)

        assert isinstance(outcome, Continue)
        assert outcome.context.early_termination is True

    def test_missing_email_data_halts(self, pipeline_context):
        ctx = self._context(pipeline_context, self.AUTH_PASS, require_email_verification=True)
        ctx.email_data = None

        outcome = _run(stages.check_email_verification, ctx)

        assert isinstance(outcome, Halt)
        assert outcome.context.early_termination is True

    def test_missing_email_data_without_requirement(self, pipeline_context):
        ctx = self._context(pipeline_context, self.AUTH_PASS)
        ctx.email_data = None

        outcome = _run(stages.check_email_verification, ctx)

        assert isinstance(outcome, Continue)


class TestParseEventDetails:
    """Test event extraction through the completion service."""

    @pytest.fixture
    def ctx(self, pipeline_context):
        pipeline_context.sender_email = 'jane@example.com'
        pipeline_context.email_data = (
            "Subject: Team Meeting Tomorrow\n\n"
            "Let's have a meeting tomorrow at 2 PM in the conference room.\n"
            "We'll discuss the Q4 strategy."
        )
        return pipeline_context

    @patch('integrations.completion.requests.post')
    def test_event_found(self, mock_post, ctx):
        mock_post.return_value = _completion_response(json.dumps({
            'hasEvent': True,
            'title': 'Team Meeting Tomorrow',
            'description': 'Q4 strategy discussion',
            'dateTime': '2024-01-02T14:00:00',
            'location': 'conference room',
            'duration': 'PT1H'
        }))

        outcome = _run(stages.parse_event_details, ctx)

        assert isinstance(outcome, Continue)
        info = outcome.context.event_info
        assert info.has_event is True
        assert info.title == 'Team Meeting Tomorrow'
        assert info.location == 'conference room'
        assert info.date_time == '2024-01-02T14:00:00'

        request_body = mock_post.call_args.kwargs['json']
        prompt = request_body['messages'][0]['content']
        assert request_body['model'] == 'gpt-3.5-turbo'
        assert request_body['max_tokens'] == 500
        assert 'Subject: Team Meeting Tomorrow' in prompt
        assert 'Q4 strategy' in prompt
        assert 'UTC' in prompt
        assert mock_post.call_args.kwargs['headers']['Authorization'] == 'Bearer test-api-key'

    @patch('integrations.completion.requests.post')
    def test_no_event(self, mock_post, ctx):
        mock_post.return_value = _completion_response('{"hasEvent": false}')

        outcome = _run(stages.parse_event_details, ctx)

        assert isinstance(outcome, Continue)
        assert outcome.context.event_info.has_event is False

    @patch('integrations.completion.requests.post')
    def test_service_error(self, mock_post, ctx):
        mock_post.return_value = _completion_response('', status_code=500)

        outcome = _run(stages.parse_event_details, ctx)

        assert isinstance(outcome, Fail)
        assert isinstance(outcome.error, EventParseError)
        assert 'Failed to parse event details' in str(outcome.error)

    @patch('integrations.completion.requests.post')
    def test_transport_error(self, mock_post, ctx):
        mock_post.side_effect = requests.ConnectionError("connection reset")

        outcome = _run(stages.parse_event_details, ctx)

        assert isinstance(outcome, Fail)
        assert 'Failed to parse event details' in str(outcome.error)

    @patch('integrations.completion.requests.post')
    def test_non_json_reply(self, mock_post, ctx):
        mock_post.return_value = _completion_response('Sure! The meeting is tomorrow.')

        outcome = _run(stages.parse_event_details, ctx)

        assert isinstance(outcome, Fail)
        assert isinstance(outcome.error, EventParseError)

    @patch('integrations.completion.requests.post')
    def test_event_without_date_time(self, mock_post, ctx):
        mock_post.return_value = _completion_response('{"hasEvent": true, "title": "Lunch"}')

        outcome = _run(stages.parse_event_details, ctx)

        assert isinstance(outcome, Fail)

    @patch('integrations.completion.requests.post')
    def test_no_call_when_terminated(self, mock_post, ctx):
        ctx.early_termination = True

        outcome = _run(stages.parse_event_details, ctx)

        assert isinstance(outcome, Continue)
        mock_post.assert_not_called()


class TestSendCalendarInvite:
    """Test invite construction and sending."""

    @pytest.fixture
    def ctx(self, pipeline_context, event_info):
        pipeline_context.sender_email = 'jane@example.com'
        pipeline_context.event_info = event_info
        return pipeline_context

    @patch('services.ses.ses_client')
    def test_sends_invite(self, mock_ses_client, ctx):
        mock_ses_client.send_email.return_value = {'MessageId': 'test-message-id'}

        outcome = _run(stages.send_calendar_invite, ctx)

        assert isinstance(outcome, Continue)
        assert outcome.context.sent_message_id == 'test-message-id'
        mock_ses_client.send_email.assert_called_once()

        kwargs = mock_ses_client.send_email.call_args.kwargs
        assert kwargs['FromEmailAddress'] == 'bot@example.com'
        assert kwargs['Destination'] == {'ToAddresses': ['jane@example.com']}
        assert kwargs['ReplyToAddresses'] == ['bot@example.com']

        msg = message_from_bytes(kwargs['Content']['Raw']['Data'], policy=policy.default)
        assert msg['Subject'] == 'Calendar Invite: Team Meeting'
        assert msg['To'] == 'jane@example.com'
        assert msg.get_content_type() == 'multipart/mixed'

        parts = list(msg.iter_parts())
        assert parts[0].get_content_type() == 'multipart/alternative'
        alternatives = [p.get_content_type() for p in parts[0].iter_parts()]
        assert alternatives == ['text/plain', 'text/html']
        assert 'Team Meeting' in parts[0].get_body(preferencelist=('html',)).get_content()

        calendar = parts[1]
        assert calendar.get_content_type() == 'text/calendar'
        assert calendar.get_param('method') == 'REQUEST'
        assert calendar['Content-Transfer-Encoding'] == 'base64'
        assert calendar.get_content_disposition() == 'attachment'
        assert calendar.get_filename() == 'invite.ics'

        ics = base64.b64decode(calendar.get_payload()).decode('utf-8')
        assert 'BEGIN:VCALENDAR' in ics
        assert 'SUMMARY:Team Meeting' in ics
        assert 'LOCATION:Conference Room A' in ics
        assert 'ATTENDEE:mailto:jane@example.com' in ics
        assert 'ORGANIZER:mailto:bot@example.com' in ics
        assert 'DTSTART:20240102T140000Z' in ics

    @patch('services.ses.ses_client')
    def test_no_event_no_send(self, mock_ses_client, ctx):
        ctx.event_info = EventInfo(has_event=False)

        outcome = _run(stages.send_calendar_invite, ctx)

        assert isinstance(outcome, Halt)
        mock_ses_client.send_email.assert_not_called()

    @patch('services.ses.ses_client')
    def test_no_send_when_terminated(self, mock_ses_client, ctx):
        ctx.early_termination = True

        outcome = _run(stages.send_calendar_invite, ctx)

        assert isinstance(outcome, Continue)
        mock_ses_client.send_email.assert_not_called()

    @patch('services.ses.ses_client')
    def test_send_failure(self, mock_ses_client, ctx):
        mock_ses_client.send_email.side_effect = ClientError(
            {'Error': {'Code': 'MessageRejected', 'Message': 'Email address is not verified.'}},
            'SendEmail'
        )

        outcome = _run(stages.send_calendar_invite, ctx)

        assert isinstance(outcome, Fail)
        assert isinstance(outcome.error, InviteSendError)
        assert 'Calendar invite sending failed' in str(outcome.error)

    @patch('services.ses.ses_client')
    def test_invalid_sender(self, mock_ses_client, ctx):
        ctx.sender_email = 'not-an-address'

        outcome = _run(stages.send_calendar_invite, ctx)

        assert isinstance(outcome, Fail)
        assert isinstance(outcome.error, InvalidAddressError)
        assert 'sender' in str(outcome.error)
        mock_ses_client.send_email.assert_not_called()

    @patch('services.ses.ses_client')
    def test_invalid_from_address(self, mock_ses_client, ctx):
        ctx.config = replace(ctx.config, from_email='')

        outcome = _run(stages.send_calendar_invite, ctx)

        assert isinstance(outcome, Fail)
        assert isinstance(outcome.error, InvalidAddressError)
        assert 'from' in str(outcome.error)

    @patch('services.ses.ses_client')
    def test_title_is_sanitized_in_subject(self, mock_ses_client, ctx):
        mock_ses_client.send_email.return_value = {'MessageId': 'id'}
        ctx.event_info = replace(ctx.event_info, title='Standup\r\nBcc: victim@example.com')

        outcome = _run(stages.send_calendar_invite, ctx)

        assert isinstance(outcome, Continue)
        raw = mock_ses_client.send_email.call_args.kwargs['Content']['Raw']['Data']
        msg = message_from_bytes(raw, policy=policy.default)
        assert msg['Bcc'] is None
        assert msg['Subject'] == 'Calendar Invite: Standup Bcc: victim@example.com'

    @patch('services.ses.ses_client')
    def test_missing_optional_fields(self, mock_ses_client, ctx):
        mock_ses_client.send_email.return_value = {'MessageId': 'id'}
        ctx.event_info = EventInfo(has_event=True, title='Minimal Event', date_time='2024-01-02T10:00:00')

        outcome = _run(stages.send_calendar_invite, ctx)

        assert isinstance(outcome, Continue)
        raw = mock_ses_client.send_email.call_args.kwargs['Content']['Raw']['Data']
        msg = message_from_bytes(raw, policy=policy.default)
        html_body = msg.get_body(preferencelist=('html',)).get_content()
        assert 'Not specified' in html_body
        assert 'No description' in html_body


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
