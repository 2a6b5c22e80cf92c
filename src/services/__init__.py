"""
Utility functions for Lambda handler operations.

This package contains reusable service functions for S3 retrieval, SES
sending, MIME and ICS construction, time zone offsets and prompt loading.
"""

__all__ = ['email', 'ics', 'prompts', 's3', 'ses', 'timezones']
