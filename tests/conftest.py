"""
Pytest configuration and fixtures for all tests.
"""

import os
import sys
import pytest

# Add src to Python path before any imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../src'))

# Set up test environment variables before importing any modules
os.environ.setdefault('AWS_DEFAULT_REGION', 'us-east-1')
os.environ.setdefault('AWS_ACCESS_KEY_ID', 'testing')
os.environ.setdefault('AWS_SECRET_ACCESS_KEY', 'testing')
os.environ.setdefault('OPENAI_API_KEY', 'test-api-key')
os.environ.setdefault('EMAIL_BUCKET', 'test-email-bucket')
os.environ.setdefault('FROM_EMAIL', 'bot@example.com')
os.environ.setdefault('LOG_LEVEL', 'INFO')

from domain.config import BotConfig  # noqa: E402
from domain.models import EmailEnvelope, EventInfo, PipelineContext  # noqa: E402
from services import prompts  # noqa: E402


@pytest.fixture(autouse=True)
def fresh_prompt_cache():
    """Every test starts without cached prompt templates."""
    prompts.clear_cache()
    yield


@pytest.fixture
def bot_config():
    """Configuration with a whitelist and no verification."""
    return BotConfig(
        openai_api_key='test-api-key',
        from_email='bot@example.com',
        subject_prefix='Calendar Invite: ',
        email_bucket='test-email-bucket',
        email_key_prefix='emails/',
        whitelisted_emails=frozenset({'jane@example.com', 'john@example.com'}),
        default_timezone='UTC'
    )


@pytest.fixture
def ses_event():
    """SES receipt notification with one record."""
    return {
        'Records': [{
            'eventSource': 'aws:ses',
            'eventVersion': '1.0',
            'ses': {
                'mail': {
                    'messageId': 'o3vrnil0e2ic28trm7dfhrc2v0clambda4nbp0g1',
                    'commonHeaders': {
                        'from': ['Jane Doe <Jane@Example.com>'],
                        'to': ['bot@example.com'],
                        'subject': 'Team Meeting Tomorrow at 2PM'
                    }
                },
                'receipt': {
                    'recipients': ['bot@example.com']
                }
            }
        }]
    }


@pytest.fixture
def raw_email():
    """Raw inbound message as stored by SES."""
    return (
        "Return-Path: <jane@example.com>\r\n"
        "Authentication-Results: amazonses.com;\r\n"
        " spf=pass (spfCheck: domain of example.com designates 192.0.2.1 as permitted sender) smtp.mailfrom=jane@example.com;\r\n"
        " dkim=pass header.i=@example.com;\r\n"
        " dmarc=pass header.from=example.com;\r\n"
        "From: Jane Doe <jane@example.com>\r\n"
        "To: bot@example.com\r\n"
        "Subject: Team Meeting Tomorrow at 2PM\r\n"
        "\r\n"
        "Let's meet tomorrow at 2 PM in Conference Room A to review Q4.\r\n"
    )


@pytest.fixture
def event_info():
    """Extracted event."""
    return EventInfo(
        has_event=True,
        title='Team Meeting',
        description='Quarterly review meeting',
        date_time='2024-01-02T14:00:00',
        location='Conference Room A',
        duration='PT1H'
    )


@pytest.fixture
def pipeline_context(bot_config):
    """Context as it looks after the parse stage."""
    return PipelineContext(
        raw_event={},
        config=bot_config,
        email=EmailEnvelope(
            from_headers=['Jane Doe <jane@example.com>'],
            recipients=['bot@example.com'],
            message_id='test-message-id',
            subject='Team Meeting Tomorrow at 2PM'
        )
    )
