"""
Sender filtering rules.

Pure functions used by the whitelist and verification stages:
- Address normalization ("Jane <Jane@Example.com>" -> "jane@example.com")
- Invitation-response detection (accept/decline notifications, calendar systems)
- Whitelist membership
- SPF/DKIM status from Authentication-Results headers
"""

import re
from dataclasses import dataclass
from typing import Iterable, Optional

from services.email import split_header_body

_ANGLE_ADDRESS = re.compile(r'<([^<>]+)>')
_FOLDED_LINE = re.compile(r'\r?\n[ \t]+')
_AUTH_RESULTS_HEADER = re.compile(r'^authentication-results:(.*)$', re.IGNORECASE | re.MULTILINE)
_SPF_RESULT = re.compile(r'(?<![\w.-])spf\s*=\s*([a-z]+)', re.IGNORECASE)
_DKIM_RESULT = re.compile(r'(?<![\w.-])dkim\s*=\s*([a-z]+)', re.IGNORECASE)

PASS = 'pass'


def normalize_address(from_header: str) -> str:
    """
    Extract and lower-case the address from a From header value.

    Args:
        from_header: "Display Name <addr>" or bare "addr"

    Returns:
        str: Lower-cased address

    Example:
        >>> normalize_address("Jane Doe <JaneDoe@Example.com>")
        'janedoe@example.com'
    """
    match = _ANGLE_ADDRESS.search(from_header or '')
    address = match.group(1) if match else (from_header or '')
    return address.strip().lower()


def strip_plus_suffix(address: str) -> str:
    """Drop a "+tag" suffix from the local part ("jane+cal@x.com" -> "jane@x.com")."""
    local, sep, domain = address.partition('@')
    if not sep or '+' not in local:
        return address
    return f"{local.split('+', 1)[0]}@{domain}"


def is_valid_address(address: Optional[str]) -> bool:
    """Non-empty and contains '@'."""
    return bool(address) and '@' in address


def is_invitation_response(
    subject: Optional[str],
    sender: Optional[str],
    subject_patterns: Iterable[str],
    sender_patterns: Iterable[str]
) -> bool:
    """
    Classify a message as a calendar-system notification.

    Matches are case-insensitive substring checks: the subject against
    subject_patterns, the sender address against sender_patterns.

    Returns:
        True if the message should not be processed
    """
    subject_lower = (subject or '').lower()
    sender_lower = (sender or '').lower()

    if any(pattern.lower() in subject_lower for pattern in subject_patterns):
        return True

    return any(pattern.lower() in sender_lower for pattern in sender_patterns)


def is_whitelisted(address: str, whitelist: Iterable[str], allow_plus_sign: bool = False) -> bool:
    """
    Case-insensitive whitelist membership.

    An empty whitelist allows every address; callers are expected to log
    a warning for that case.
    """
    allowed = {entry.strip().lower() for entry in whitelist if entry.strip()}
    if not allowed:
        return True

    candidate = address.lower()
    if candidate in allowed:
        return True

    return allow_plus_sign and strip_plus_suffix(candidate) in allowed


@dataclass(frozen=True)
class AuthenticationResults:
    """
    SPF and DKIM results reported by the receiving MTA.

    Attributes:
        spf: Lower-cased SPF result (e.g. "pass", "softfail"), None if absent
        dkim: Lower-cased DKIM result, None if absent
        header_found: Whether any Authentication-Results header was present
    """
    spf: Optional[str] = None
    dkim: Optional[str] = None
    header_found: bool = False

    @property
    def spf_passed(self) -> bool:
        return self.spf == PASS

    @property
    def dkim_passed(self) -> bool:
        return self.dkim == PASS


def parse_authentication_results(raw_message: str) -> AuthenticationResults:
    """
    Read SPF/DKIM results from the Authentication-Results header(s).

    Folded header lines are unfolded first. When several headers exist, the
    first one carrying a result for a mechanism wins.

    Args:
        raw_message: Raw message text (headers + body)

    Returns:
        AuthenticationResults
    """
    header_block, _ = split_header_body(raw_message or '')
    unfolded = _FOLDED_LINE.sub(' ', header_block)

    spf = None
    dkim = None
    header_found = False

    for match in _AUTH_RESULTS_HEADER.finditer(unfolded):
        header_found = True
        value = match.group(1)

        if spf is None:
            spf_match = _SPF_RESULT.search(value)
            if spf_match:
                spf = spf_match.group(1).lower()

        if dkim is None:
            dkim_match = _DKIM_RESULT.search(value)
            if dkim_match:
                dkim = dkim_match.group(1).lower()

    return AuthenticationResults(spf=spf, dkim=dkim, header_found=header_found)
