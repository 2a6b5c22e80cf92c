"""
S3 operations utilities for Lambda handlers.

This module fetches the raw inbound messages that the SES receipt rule
stores in S3.
"""

import logging

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

logger = logging.getLogger(__name__)

# Configure S3 client with timeouts to prevent infinite hangs
s3_config = Config(
    retries={
        'max_attempts': 1,  # 1 attempt total (no retries)
        'mode': 'standard'
    },
    connect_timeout=10,  # 10 seconds to establish connection
    read_timeout=60      # 60 seconds max for reading response
)

# Initialize S3 client at module level (thread-safe, reused across invocations)
s3_client = boto3.client('s3', config=s3_config)
logger.info("S3 client initialized with timeouts: connect=10s, read=60s, max_attempts=1")


def build_object_key(key_prefix: str, message_id: str) -> str:
    """S3 key where SES stored a message: prefix + SES message id."""
    return f"{key_prefix or ''}{message_id}"


def fetch_email_from_s3(bucket: str, key: str) -> bytes:
    """
    Fetch raw email content from S3.

    Args:
        bucket: S3 bucket name
        key: S3 object key (path to the email file)

    Returns:
        bytes: The raw email content as bytes

    Raises:
        ValueError: If bucket/key is empty or the object/bucket does not exist
        ClientError: For other S3 errors

    Example:
        >>> email_bytes = fetch_email_from_s3(
        ...     bucket="my-ses-bucket",
        ...     key="emails/0000014a-f4d4-4f36-8f6c-example"
        ... )
        >>> print(len(email_bytes))
        12345
    """
    if not bucket:
        raise ValueError("S3 bucket name cannot be empty")
    if not key:
        raise ValueError("S3 object key cannot be empty")

    try:
        response = s3_client.get_object(Bucket=bucket, Key=key)
        return response['Body'].read()
    except ClientError as e:
        error_code = e.response.get('Error', {}).get('Code', '')
        if error_code == 'NoSuchKey':
            logger.error(f"S3 object not found: s3://{bucket}/{key}")
            raise ValueError(f"Email file not found in S3: {key}")
        elif error_code == 'NoSuchBucket':
            logger.error(f"S3 bucket not found: {bucket}")
            raise ValueError(f"S3 bucket not found: {bucket}")
        else:
            logger.error(f"Failed to fetch from S3 s3://{bucket}/{key}: {e}")
            raise


def fetch_email_text(bucket: str, key: str) -> str:
    """
    Fetch a raw message and decode it as UTF-8 text.

    Undecodable bytes are replaced rather than failing the fetch.
    """
    raw = fetch_email_from_s3(bucket, key)
    logger.info(f"Fetched {len(raw):,} bytes from s3://{bucket}/{key}")
    return raw.decode('utf-8', errors='replace')
