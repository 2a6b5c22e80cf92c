"""
Configuration snapshot for the calendar invite bot.

Environment variables:
- OPENAI_API_KEY: API key for the completion service (required)
- OPENAI_MODEL: Model name (default: gpt-3.5-turbo)
- OPENAI_API_URL: Chat completions endpoint (default: OpenAI)
- OPENAI_TIMEOUT_SECONDS: HTTP timeout for the completion call (default: 30)
- MAX_TOKENS: Maximum tokens for the model response (default: 500)
- FROM_EMAIL: Address the bot sends from
- SUBJECT_PREFIX: Calendar invite subject prefix
- EMAIL_BUCKET: S3 bucket where SES stores inbound messages
- EMAIL_KEY_PREFIX: S3 key prefix where SES stores inbound messages
- ALLOW_PLUS_SIGN: Ignore "+tag" suffixes when matching the whitelist (default: false)
- WHITELISTED_EMAILS: Comma-separated list of allowed senders (empty = all)
- DEFAULT_TIMEZONE: Time zone events are interpreted in
- USE_TIMEZONE_DATABASE: Resolve DEFAULT_TIMEZONE with the IANA database
- REQUIRE_EMAIL_VERIFICATION: Require both SPF and DKIM to pass
- REQUIRE_SPF_VERIFICATION: Require SPF to pass
- REQUIRE_DKIM_VERIFICATION: Require DKIM to pass
- INVITATION_SUBJECT_PATTERNS: Comma-separated override of subject patterns
- CALENDAR_SENDER_PATTERNS: Comma-separated override of sender patterns
"""

import os
from dataclasses import dataclass
from typing import FrozenSet, Mapping, Optional, Tuple

from .errors import ConfigurationError

DEFAULT_OPENAI_API_URL = 'https://api.openai.com/v1/chat/completions'

# Subjects of accept/decline notifications sent by calendar clients
DEFAULT_INVITATION_SUBJECT_PATTERNS: Tuple[str, ...] = (
    'accepted:',
    'declined:',
    'tentative:',
    'has accepted',
    'has declined',
    'has tentatively accepted',
    'invitation response',
    'meeting response',
    'calendar response',
    're: invitation',
)

# Sender substrings of calendar systems
DEFAULT_CALENDAR_SENDER_PATTERNS: Tuple[str, ...] = (
    'calendar-server@',
    'calendar@',
    'calendar-notification@',
    'calendar.google.com',
    'outlook.office365.com',
    'exchange.',
    'calendar-daemon@',
    'noreply@calendar',
    'no-reply@calendar',
)

_TRUE_VALUES = ('true', '1', 'yes', 'on')


def _parse_bool(value: Optional[str], default: bool) -> bool:
    if value is None or value.strip() == '':
        return default
    return value.strip().lower() in _TRUE_VALUES


def _parse_list(value: Optional[str]) -> Tuple[str, ...]:
    if not value:
        return ()
    return tuple(item.strip().lower() for item in value.split(',') if item.strip())


def _parse_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got: {raw!r}")


@dataclass(frozen=True)
class BotConfig:
    """
    Immutable configuration, loaded once per invocation.

    An empty whitelist allows every sender (a warning is logged per message).
    """
    openai_api_key: str = ''
    openai_model: str = 'gpt-3.5-turbo'
    openai_api_url: str = DEFAULT_OPENAI_API_URL
    max_tokens: int = 500
    request_timeout: int = 30
    from_email: str = 'noreply@example.com'
    subject_prefix: str = 'Calendar Invite: '
    email_bucket: str = ''
    email_key_prefix: str = 'emails/'
    allow_plus_sign: bool = False
    whitelisted_emails: FrozenSet[str] = frozenset()
    default_timezone: str = 'Europe/Amsterdam'
    use_timezone_database: bool = False
    require_email_verification: bool = False
    require_spf_verification: bool = False
    require_dkim_verification: bool = False
    invitation_subject_patterns: Tuple[str, ...] = DEFAULT_INVITATION_SUBJECT_PATTERNS
    calendar_sender_patterns: Tuple[str, ...] = DEFAULT_CALENDAR_SENDER_PATTERNS

    @property
    def spf_required(self) -> bool:
        return self.require_email_verification or self.require_spf_verification

    @property
    def dkim_required(self) -> bool:
        return self.require_email_verification or self.require_dkim_verification

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> 'BotConfig':
        """
        Read configuration from environment variables.

        Args:
            env: Mapping to read from (defaults to os.environ)

        Returns:
            BotConfig

        Raises:
            ConfigurationError: If a numeric variable is not an integer
        """
        if env is None:
            env = os.environ

        return cls(
            openai_api_key=env.get('OPENAI_API_KEY', ''),
            openai_model=env.get('OPENAI_MODEL') or 'gpt-3.5-turbo',
            openai_api_url=env.get('OPENAI_API_URL') or DEFAULT_OPENAI_API_URL,
            max_tokens=_parse_int(env, 'MAX_TOKENS', 500),
            request_timeout=_parse_int(env, 'OPENAI_TIMEOUT_SECONDS', 30),
            from_email=env.get('FROM_EMAIL') or 'noreply@example.com',
            subject_prefix=env.get('SUBJECT_PREFIX', 'Calendar Invite: '),
            email_bucket=env.get('EMAIL_BUCKET', ''),
            email_key_prefix=env.get('EMAIL_KEY_PREFIX', 'emails/'),
            allow_plus_sign=_parse_bool(env.get('ALLOW_PLUS_SIGN'), False),
            whitelisted_emails=frozenset(_parse_list(env.get('WHITELISTED_EMAILS'))),
            default_timezone=env.get('DEFAULT_TIMEZONE') or 'Europe/Amsterdam',
            use_timezone_database=_parse_bool(env.get('USE_TIMEZONE_DATABASE'), False),
            require_email_verification=_parse_bool(env.get('REQUIRE_EMAIL_VERIFICATION'), False),
            require_spf_verification=_parse_bool(env.get('REQUIRE_SPF_VERIFICATION'), False),
            require_dkim_verification=_parse_bool(env.get('REQUIRE_DKIM_VERIFICATION'), False),
            invitation_subject_patterns=(
                _parse_list(env.get('INVITATION_SUBJECT_PATTERNS'))
                or DEFAULT_INVITATION_SUBJECT_PATTERNS
            ),
            calendar_sender_patterns=(
                _parse_list(env.get('CALENDAR_SENDER_PATTERNS'))
                or DEFAULT_CALENDAR_SENDER_PATTERNS
            ),
        )

    def validate(self) -> None:
        """
        Check settings required before any stage runs.

        Raises:
            ConfigurationError: If OPENAI_API_KEY is missing
        """
        if not self.openai_api_key:
            raise ConfigurationError("OPENAI_API_KEY environment variable is required")
